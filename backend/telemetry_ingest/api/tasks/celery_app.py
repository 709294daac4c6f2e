"""
Celery application and background tasks
Forwards input updates to the process engine queue and keeps the input
registry cache reconciled with the database
"""
from celery import Celery
from celery.schedules import crontab
import logging

from telemetry_ingest.core.cache import get_cache
from telemetry_ingest.core.config import settings
from telemetry_ingest.core.database import get_db_context
from telemetry_ingest.services.registry import InputRegistry

logger = logging.getLogger(__name__)

# Initialize Celery app
celery_app = Celery(
    "telemetry_ingest",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,
    worker_prefetch_multiplier=1,
)

# Scheduled tasks configuration
celery_app.conf.beat_schedule = {
    "reconcile-input-cache": {
        "task": "telemetry_ingest.tasks.reconcile_input_cache",
        "schedule": crontab(minute=f"*/{settings.CACHE_SWEEP_MINUTES}"),
    },
}


@celery_app.task(name="telemetry_ingest.tasks.reconcile_input_cache")
def reconcile_input_cache():
    """
    Rebuild the registry cache of every user from the database
    Repairs index sets left stale by failed cache writes
    """
    cache = get_cache()
    if cache is None:
        return {"success": True, "users": 0, "inputs": 0}
    
    try:
        with get_db_context() as db:
            registry = InputRegistry(db, cache, prefix=settings.REDIS_PREFIX)
            
            users = 0
            inputs = 0
            for userid in registry.list_userids():
                try:
                    inputs += registry.rebuild_cache(userid)
                    users += 1
                except Exception as e:
                    logger.error(f"Cache rebuild failed for user {userid}: {e}")
                    continue
            
            logger.info(f"Input cache reconciled for {users} users ({inputs} inputs)")
            return {"success": True, "users": users, "inputs": inputs}
    
    except Exception as e:
        logger.error(f"Input cache reconciliation failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}
