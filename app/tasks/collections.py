import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.schemas.collections import AnchorRunRequest, ExportPendingRequest, PreparePresentmentRequest
from app.services import collections as collections_service
from app.services.collections.config import load_collections_config

logger = logging.getLogger(__name__)

JOB_ACTOR = "scheduler"


@celery_app.task(name="app.tasks.collections.run_anchor")
def run_anchor():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        summary = collections_service.anchor_runner.run(
            session, AnchorRunRequest(actor_user_id=JOB_ACTOR)
        )
        if summary.errors:
            status = "partial"
        return summary.model_dump(mode="json")
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Anchor run failed.")
        raise
    finally:
        session.close()
        observe_job("collections_anchor_run", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.collections.prepare_presentment_batch")
def prepare_presentment_batch():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = collections_service.presentment_batches.prepare(
            session, PreparePresentmentRequest(actor_user_id=JOB_ACTOR)
        )
        payload = {"prepare": result.model_dump(mode="json"), "export": None}
        if result.batch_id and not result.no_op and load_collections_config(session).batch_auto_export:
            exported = collections_service.presentment_batches.export(
                session, result.batch_id, JOB_ACTOR
            )
            payload["export"] = exported.model_dump(mode="json")
        return payload
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Presentment batch preparation failed.")
        raise
    finally:
        session.close()
        observe_job("collections_prepare_batch", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.collections.export_pending_batches")
def export_pending_batches():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = collections_service.presentment_batches.export_pending(
            session, ExportPendingRequest(actor_user_id=JOB_ACTOR)
        )
        if result.errors:
            status = "partial"
            logger.warning("Export of pending batches had %s failures", len(result.errors))
        return result.model_dump(mode="json")
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Export of pending batches failed.")
        raise
    finally:
        session.close()
        observe_job("collections_export_pending", status, time.monotonic() - start)
