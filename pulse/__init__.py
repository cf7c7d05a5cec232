"""Pulse - recurring connection health checks and live operation progress.

This package provides:
- Cron-driven scheduling of connection tests with atomic run claims
- A bounded worker pool executing externally supplied connection tests
- A broadcast hub delivering progress snapshots to subscribed observers
- A FastAPI surface and Typer CLI on top of the scheduling service
"""

__version__ = "1.0.0"
