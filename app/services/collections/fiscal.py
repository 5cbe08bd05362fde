"""Fiscal documents for paid charges.

Issuance is an upsert on ``(charge, document_type)``. The ``mock`` mode issues
immediately with a synthetic authorization code; the ``real`` mode depends on
an external tax-authority client that is not part of this service, so every
attempt is recorded as FAILED and stays retryable.
"""

import hashlib
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.billing import Charge, FiscalDocument, FiscalDocumentStatus
from app.schemas.collections import FiscalAutorunResult, FiscalIssueResult
from app.services.collections import dates
from app.services.collections.config import CollectionsConfig, load_collections_config
from app.services.collections.errors import ChargeNotFound, FiscalIssuerUnavailable
from app.services.common import get_by_id, utcnow
from app.services.events import emit_event
from app.services.events.types import EventType

logger = logging.getLogger(__name__)

MOCK_AUTHORIZATION_VALIDITY_DAYS = 10


def _result(document: FiscalDocument, already_issued: bool = False) -> FiscalIssueResult:
    return FiscalIssueResult(
        document_id=document.id,
        charge_id=document.charge_id,
        document_type=document.document_type,
        status=document.status,
        already_issued=already_issued,
        issuer_reference=document.issuer_reference,
        retry_count=document.retry_count or 0,
        error_message=document.error_message,
    )


def _mock_authorization(charge: Charge) -> str:
    digest = hashlib.sha256(f"mock-cae:{charge.id}".encode("utf-8")).hexdigest()
    return str(int(digest, 16))[:14]


class FiscalIssuer:
    @staticmethod
    def _get_or_create(db: Session, charge: Charge, document_type: str) -> FiscalDocument:
        query = (
            db.query(FiscalDocument)
            .filter(FiscalDocument.charge_id == charge.id)
            .filter(FiscalDocument.document_type == document_type)
        )
        document = query.first()
        if document:
            return document
        nested = db.begin_nested()
        try:
            document = FiscalDocument(
                charge_id=charge.id,
                document_type=document_type,
                status=FiscalDocumentStatus.pending,
                external_reference=f"charge:{charge.id}",
                payload={
                    "tenant_id": str(charge.tenant_id),
                    "tenant_charge_no": charge.tenant_charge_no,
                    "label": charge.label,
                    "total_usd": str(charge.total_usd),
                    "amount_ars": str(charge.amount_ars_paid or charge.amount_ars_due),
                },
            )
            db.add(document)
            db.flush()
            nested.commit()
        except IntegrityError:
            nested.rollback()
            document = query.one()
        return document

    @staticmethod
    def _authorize(document: FiscalDocument, charge: Charge, config: CollectionsConfig) -> None:
        if config.fiscal_mode != "mock":
            raise FiscalIssuerUnavailable(
                "Tax authority issuer is not available",
                charge_id=str(charge.id),
                mode=config.fiscal_mode,
            )
        now = utcnow()
        document.issuer_reference = _mock_authorization(charge)
        document.issuer_reference_due = dates.local_today(config.timezone, now) + timedelta(
            days=MOCK_AUTHORIZATION_VALIDITY_DAYS
        )
        document.document_number = f"{charge.tenant_charge_no or 0:08d}"
        document.status = FiscalDocumentStatus.issued
        document.issued_at = now
        document.error_message = None

    @staticmethod
    def issue(
        db: Session,
        charge_id,
        document_type: str | None = None,
        config: CollectionsConfig | None = None,
        actor: str | None = None,
    ) -> FiscalIssueResult:
        config = config or load_collections_config(db)
        document_type = document_type or config.fiscal_document_type
        charge = get_by_id(db, Charge, charge_id)
        if not charge:
            raise ChargeNotFound("Charge not found", charge_id=str(charge_id))

        document = FiscalIssuer._get_or_create(db, charge, document_type)
        if document.status == FiscalDocumentStatus.issued:
            return _result(document, already_issued=True)

        try:
            FiscalIssuer._authorize(document, charge, config)
        except FiscalIssuerUnavailable as exc:
            document.status = FiscalDocumentStatus.failed
            document.retry_count = (document.retry_count or 0) + 1
            document.error_message = exc.message
            logger.warning(
                f"Fiscal document for charge {charge.id} failed "
                f"(attempt {document.retry_count}): {exc.message}"
            )
            event_type = EventType.fiscal_document_failed
        else:
            event_type = EventType.fiscal_document_issued

        emit_event(
            db,
            event_type,
            {
                "document_id": str(document.id),
                "document_type": document_type,
                "issuer_reference": document.issuer_reference,
                "retry_count": document.retry_count,
                "error": document.error_message,
            },
            actor=actor,
            tenant_id=charge.tenant_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
        )
        db.flush()
        return _result(document)

    @staticmethod
    def autorun_for_paid_charges(
        db: Session, charge_ids, config: CollectionsConfig | None = None, actor: str | None = None
    ) -> FiscalAutorunResult:
        config = config or load_collections_config(db)
        if not config.fiscal_autorun:
            return FiscalAutorunResult(enabled=False)
        result = FiscalAutorunResult(enabled=True)
        for charge_id in dict.fromkeys(charge_ids):
            issued = FiscalIssuer.issue(db, charge_id, config=config, actor=actor)
            if issued.status == FiscalDocumentStatus.issued:
                if not issued.already_issued:
                    result.issued += 1
            else:
                result.failed += 1
        return result


fiscal_issuer = FiscalIssuer()


def issue_fiscal_document(db: Session, charge_id, document_type: str | None = None) -> FiscalIssueResult:
    return FiscalIssuer.issue(db, charge_id, document_type)


def autorun_for_paid_charges(db: Session, charge_ids) -> FiscalAutorunResult:
    return FiscalIssuer.autorun_for_paid_charges(db, charge_ids)
