"""Command-line interface for Pulse."""
