import logging
import os

from celery import Celery

from matchflow.core.env import load_env
from matchflow.core.settings import load_reconciler_settings

load_env()

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

RECONCILE_INTERVAL_SECONDS = load_reconciler_settings().interval_seconds

logger.info(
    "Reconciler config: interval=%ss streaming=%s ai=%s",
    RECONCILE_INTERVAL_SECONDS,
    os.environ.get("STREAMING_API_BASE_URL"),
    os.environ.get("AI_API_BASE_URL"),
)

celery = Celery(
    "matchflow_worker",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["matchflow.workers.reconciler"],
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "reconcile-tick": {
            "task": "matchflow.workers.reconciler.reconcile_tick",
            "schedule": RECONCILE_INTERVAL_SECONDS,
            # a tick queued behind a slow one is stale by the next interval
            "options": {"expires": RECONCILE_INTERVAL_SECONDS},
        },
    },
)
