"""
Import sub-modules so Celery can register their @app.task decorators.
"""

from vpnpool.workers.tasks import maintenance, reaper

__all__ = ["maintenance", "reaper"]
