"""HTTP API (FastAPI)."""

from task_reconciler.api.app import create_app

__all__ = ["create_app"]
