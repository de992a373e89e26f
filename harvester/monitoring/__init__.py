"""Logging, structured events, run metrics and the pipeline health summary."""
