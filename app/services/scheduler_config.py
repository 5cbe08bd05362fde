import logging

from celery.schedules import crontab

from app.config import settings
from app.db import SessionLocal
from app.services.collections.config import load_collections_config

logger = logging.getLogger(__name__)

# Local wall-clock times of the daily jobs, in the Celery timezone.
ANCHOR_RUN_AT = (5, 0)
PREPARE_BATCH_AT = (6, 0)
EXPORT_PENDING_AT = (6, 30)


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or settings.redis_url
    backend = settings.celery_result_backend or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone or "UTC",
        "task_acks_late": True,
    }


def _daily(task_name: str, at: tuple[int, int]) -> dict:
    hour, minute = at
    return {"task": task_name, "schedule": crontab(hour=hour, minute=minute)}


def build_beat_schedule() -> dict:
    """Daily collections jobs, registered only when ``jobs_enabled`` is on."""
    schedule: dict[str, dict] = {}
    session = SessionLocal()
    try:
        config = load_collections_config(session)
        if not config.jobs_enabled:
            logger.info("Collections jobs disabled; beat schedule left empty")
            return schedule
        schedule["collections_anchor_run"] = _daily(
            "app.tasks.collections.run_anchor", ANCHOR_RUN_AT
        )
        schedule["collections_prepare_batch"] = _daily(
            "app.tasks.collections.prepare_presentment_batch", PREPARE_BATCH_AT
        )
        schedule["collections_export_pending"] = _daily(
            "app.tasks.collections.export_pending_batches", EXPORT_PENDING_AT
        )
    except Exception:
        logger.exception("Failed to load collections scheduler settings from database.")
    finally:
        session.close()
    return schedule
