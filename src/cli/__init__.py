"""Command-line interface: run, status, close, health."""
