"""Background workers for webhook-service.

Each worker is a standalone module exporting a single async task function
compatible with :class:`backend_common.worker.WorkerTask`.

The :data:`worker` instance aggregates all tasks and provides
``start_background_worker`` / ``stop_background_worker`` lifecycle hooks.
"""
from __future__ import annotations

from backend_common.worker import BackgroundWorker, WorkerTask

from webhook_service.settings import settings
from webhook_service.workers.webhook_purge import webhook_purge_delivered
from webhook_service.workers.webhook_reclaim import webhook_reclaim_stuck

worker = BackgroundWorker(
    interval_seconds=settings.worker_interval_seconds,
    tasks=[
        WorkerTask(name="webhook_reclaim_stuck", fn=webhook_reclaim_stuck),
        WorkerTask(name="webhook_purge_delivered", fn=webhook_purge_delivered),
    ],
)

start_background_worker = worker.start
stop_background_worker = worker.stop

__all__ = [
    "worker",
    "start_background_worker",
    "stop_background_worker",
]
