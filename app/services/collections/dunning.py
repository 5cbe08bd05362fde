"""Entry points the reconciliation flow calls into the dunning subsystem."""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.billing import OPEN_ATTEMPT_STATUSES, Attempt, Charge, ChargeStatus
from app.models.collections import DIRECT_DEBIT_COLLECTION_CHANNEL
from app.schemas.collections import ClosureResult, RejectionResult
from app.services.collections.errors import ChargeNotFound
from app.services.collections.reconciliation import ReconciliationEngine
from app.services.common import get_by_id, utcnow

logger = logging.getLogger(__name__)

FIRST_REJECTION_STAGE = 1
REPEATED_REJECTION_STAGE = 2


class DunningHook:
    @staticmethod
    def on_attempt_paid(
        db: Session,
        charge_id,
        amount: Decimal | None = None,
        paid_at: datetime | None = None,
        source_ref: str | None = None,
        actor: str | None = None,
    ) -> ClosureResult:
        return ReconciliationEngine.close_charge_as_paid(
            db,
            charge_id,
            amount=amount,
            paid_at=paid_at,
            source_ref=source_ref,
            channel=DIRECT_DEBIT_COLLECTION_CHANNEL,
            actor=actor,
            source="direct_debit_reconciliation",
        )

    @staticmethod
    def advance_stage(db: Session, charge: Charge, new_stage: int) -> int:
        """Raise ``dunning_stage``; stages never move backwards and paid charges are left alone."""
        previous = charge.dunning_stage or 0
        target = max(previous, max(0, int(new_stage)))
        if charge.status == ChargeStatus.paid or target == previous:
            return previous
        now = utcnow()
        charge.dunning_stage = target
        charge.last_dunning_action_at = now
        if previous == 0 and not charge.overdue_since:
            charge.overdue_since = now
        db.flush()
        return target

    @staticmethod
    def on_attempt_rejected(
        db: Session,
        charge_id,
        attempt_id,
        reason_code: str | None = None,
        reason_text: str | None = None,
    ) -> RejectionResult:
        charge = get_by_id(db, Charge, charge_id)
        if not charge:
            raise ChargeNotFound("Charge not found", charge_id=str(charge_id))
        attempt = get_by_id(db, Attempt, attempt_id)
        if not attempt or attempt.charge_id != charge.id:
            return RejectionResult(
                charge_id=charge.id, stage=charge.dunning_stage or 0, reason="attempt_not_found"
            )

        stage = DunningHook.advance_stage(
            db,
            charge,
            FIRST_REJECTION_STAGE if attempt.attempt_no <= 1 else REPEATED_REJECTION_STAGE,
        )
        pending_future = (
            db.query(func.count(Attempt.id))
            .filter(Attempt.charge_id == charge.id)
            .filter(Attempt.attempt_no > attempt.attempt_no)
            .filter(Attempt.status.in_(OPEN_ATTEMPT_STATUSES))
            .scalar()
        )
        final_attempt_no = (
            db.query(func.max(Attempt.attempt_no)).filter(Attempt.charge_id == charge.id).scalar()
            or attempt.attempt_no
        )
        final_rejection = pending_future == 0 and attempt.attempt_no >= final_attempt_no
        if final_rejection:
            logger.warning(
                f"Charge {charge.id} rejected on its last direct-debit attempt "
                f"({reason_code or 'no code'})"
            )
        return RejectionResult(
            charge_id=charge.id,
            stage=stage,
            final_rejection=final_rejection,
            reason=(reason_text or reason_code) if final_rejection else "attempts_remaining",
        )


dunning = DunningHook()
