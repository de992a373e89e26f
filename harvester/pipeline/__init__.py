"""Staged pipeline: store, state machine, workers, orchestration and recovery."""
