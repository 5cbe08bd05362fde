"""Collections endpoints: anchor runs, presentment batches and bank responses."""

from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session, selectinload

from app.db import get_db
from app.models.billing import Charge
from app.models.collections import FileBatchDirection
from app.schemas.collections import (
    AnchorRunRequest,
    AnchorSummary,
    ChargeRead,
    ExportPendingRequest,
    ExportPendingResult,
    ExportPresentmentRequest,
    ExportPresentmentResult,
    FileBatchRead,
    ImportResponseResult,
    PreparePresentmentRequest,
    PreparePresentmentResult,
)
from app.services import collections as collections_service
from app.services.object_storage import ObjectNotFoundError

router = APIRouter(prefix="/collections", tags=["collections"])


@router.post("/anchor-runs", response_model=AnchorSummary, status_code=status.HTTP_200_OK)
def run_anchor(payload: AnchorRunRequest, db: Session = Depends(get_db)):
    return collections_service.anchor_runner.run(db, payload)


@router.post("/batches/prepare", response_model=PreparePresentmentResult)
def prepare_batch(payload: PreparePresentmentRequest, db: Session = Depends(get_db)):
    return collections_service.presentment_batches.prepare(db, payload)


@router.post("/batches/export", response_model=ExportPendingResult)
def export_pending_batches(payload: ExportPendingRequest, db: Session = Depends(get_db)):
    return collections_service.presentment_batches.export_pending(db, payload)


@router.post("/batches/{batch_id}/export", response_model=ExportPresentmentResult)
def export_batch(
    batch_id: uuid.UUID,
    payload: ExportPresentmentRequest | None = None,
    db: Session = Depends(get_db),
):
    actor = payload.actor_user_id if payload else None
    return collections_service.presentment_batches.export(db, batch_id, actor)


@router.post("/batches/{batch_id}/responses", response_model=ImportResponseResult)
async def import_response(
    batch_id: uuid.UUID,
    file: UploadFile = File(...),
    actor_user_id: str | None = Form(default=None),
    db: Session = Depends(get_db),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return collections_service.response_importer.import_file(
        db,
        batch_id,
        file.filename,
        data,
        content_type=file.content_type,
        actor_user_id=actor_user_id,
    )


@router.get("/batches", response_model=list[FileBatchRead])
def list_batches(
    date_from: date | None = None,
    date_to: date | None = None,
    direction: FileBatchDirection | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return collections_service.presentment_batches.list_batches(
        db, date_from, date_to, direction, limit=limit, offset=offset
    )


@router.get("/batches/{batch_id}/file")
def download_batch_file(batch_id: uuid.UUID, db: Session = Depends(get_db)):
    try:
        batch, content = collections_service.presentment_batches.download(db, batch_id)
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Batch file not found") from exc
    file_name = batch.original_file_name or f"batch-{batch.id}.txt"
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/charges/{charge_id}", response_model=ChargeRead)
def get_charge(charge_id: uuid.UUID, db: Session = Depends(get_db)):
    charge = (
        db.query(Charge)
        .options(selectinload(Charge.attempts))
        .filter(Charge.id == charge_id)
        .first()
    )
    if not charge:
        raise HTTPException(status_code=404, detail="Charge not found")
    return charge
