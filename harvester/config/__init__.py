"""Configuration: settings and source seed files."""
