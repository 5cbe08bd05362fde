import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.metrics import COLLECTIONS_CHARGES_CREATED
from app.models.billing import (
    Attempt,
    AttemptStatus,
    BillingCycle,
    BillingCycleStatus,
    BillingPaymentMethod,
    BillingSubscription,
    Charge,
    ChargeStatus,
    PaymentMethodStatus,
    ReconciliationStatus,
    SubscriptionStatus,
)
from app.models.collections import DIRECT_DEBIT_COLLECTION_CHANNEL, OFFICE_BANKING_CHANNEL
from app.schemas.collections import (
    AnchorRunError,
    AnchorRunRequest,
    AnchorSummary,
    FxRateUsed,
)
from app.services.collections import dates
from app.services.collections.adapters import external_reference_for
from app.services.collections.business_calendar import add_business_days
from app.services.collections.config import CollectionsConfig, load_collections_config
from app.services.collections.errors import CollectionsError, NoEligiblePaymentMethod
from app.services.collections.fx import FxRateResolver, ResolvedFxRate
from app.services.collections.pricing import active_adjustments, build_pricing_snapshot
from app.services.common import coerce_uuid
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.numbering import next_charge_number

logger = logging.getLogger(__name__)


@dataclass
class _SubscriptionOutcome:
    cycle_created: bool = False
    charge_created: bool = False
    attempts_created: int = 0
    missing_payment_method: bool = False

    @property
    def idempotent(self) -> bool:
        return not self.cycle_created and not self.charge_created and self.attempts_created == 0


def idempotency_key_for(subscription_id, anchor_date: date) -> str:
    return f"{subscription_id}:{anchor_date.isoformat()}"


def select_payment_method(db: Session, subscription_id) -> BillingPaymentMethod | None:
    """Default method first, then oldest; ACTIVE/PENDING methods win over others."""
    ordering = (
        case((BillingPaymentMethod.is_default.is_(True), 0), else_=1),
        BillingPaymentMethod.created_at.asc(),
        BillingPaymentMethod.id.asc(),
    )
    query = db.query(BillingPaymentMethod).filter(
        BillingPaymentMethod.subscription_id == subscription_id
    )
    preferred = (
        query.filter(
            BillingPaymentMethod.status.in_(
                [PaymentMethodStatus.active, PaymentMethodStatus.pending]
            )
        )
        .order_by(*ordering)
        .first()
    )
    if preferred:
        return preferred
    return query.order_by(*ordering).first()


def attempt_schedule(
    anchor: date, config: CollectionsConfig, tz_name: str
) -> list[date]:
    """Local calendar dates of every attempt for a charge anchored at ``anchor``.

    Offsets count business days only when the subscription lives in the
    calendar's timezone; otherwise they are plain calendar days.
    """
    use_business_days = config.use_business_days and tz_name == config.timezone
    scheduled = []
    for offset in config.retry_offsets:
        if use_business_days and offset > 0:
            scheduled.append(add_business_days(anchor, offset, config.holidays))
        else:
            scheduled.append(anchor + timedelta(days=offset))
    return scheduled


def _charge_label(anchor: date) -> str:
    return f"Subscription {anchor.month:02d}/{anchor.year}"


class AnchorRunner:
    """Materializes cycles, charges and attempts for subscriptions whose anchor arrived."""

    @staticmethod
    def run(db: Session, payload: AnchorRunRequest) -> AnchorSummary:
        config = load_collections_config(db)
        run_date = payload.anchor_date or dates.local_today(config.timezone)
        resolver = FxRateResolver(db, config.fx_type)

        query = db.query(BillingSubscription).filter(
            BillingSubscription.status == SubscriptionStatus.active
        )
        if payload.tenant_ids:
            query = query.filter(BillingSubscription.tenant_id.in_(payload.tenant_ids))
        subscriptions = query.order_by(
            BillingSubscription.tenant_id.asc(), BillingSubscription.created_at.asc()
        ).all()

        summary = AnchorSummary(
            anchor_date=run_date,
            override_fx=payload.override_fx,
            subscriptions_total=len(subscriptions),
        )
        fx_used: dict[date, ResolvedFxRate] = {}

        for subscription in subscriptions:
            subscription_id = subscription.id
            tenant_id = subscription.tenant_id
            anchor_day = subscription.anchor_day or config.anchor_day
            anchor = subscription.next_anchor_date or dates.anchor_date_for_month(
                run_date, anchor_day
            )
            if anchor > run_date:
                summary.subscriptions_not_due += 1
                continue

            try:
                fx = resolver.resolve(anchor, override_fx=payload.override_fx)
                nested = db.begin_nested()
                try:
                    outcome = AnchorRunner._process_subscription(
                        db, subscription, anchor, anchor_day, fx, config, payload.actor_user_id
                    )
                    nested.commit()
                except Exception:
                    nested.rollback()
                    raise
                db.commit()
            except CollectionsError as exc:
                logger.warning(
                    f"Anchor run failed for subscription {subscription_id}: {exc.message}"
                )
                summary.errors.append(
                    AnchorRunError(
                        tenant_id=tenant_id,
                        subscription_id=subscription_id,
                        code=exc.code,
                        message=exc.message,
                    )
                )
                continue
            except Exception as exc:
                logger.exception(f"Anchor run crashed for subscription {subscription_id}")
                summary.errors.append(
                    AnchorRunError(
                        tenant_id=tenant_id,
                        subscription_id=subscription_id,
                        code="unexpected_error",
                        message=str(exc) or exc.__class__.__name__,
                    )
                )
                continue

            fx_used[fx.rate_date] = fx
            summary.subscriptions_processed += 1
            summary.cycles_created += int(outcome.cycle_created)
            summary.charges_created += int(outcome.charge_created)
            if outcome.charge_created:
                COLLECTIONS_CHARGES_CREATED.inc()
            summary.attempts_created += outcome.attempts_created
            if outcome.idempotent:
                summary.skipped_idempotent += 1
            if outcome.missing_payment_method:
                error = NoEligiblePaymentMethod(
                    "Charge created without a payment method; no attempt can be presented"
                )
                logger.warning(f"Subscription {subscription_id}: {error.message}")
                summary.errors.append(
                    AnchorRunError(
                        tenant_id=tenant_id,
                        subscription_id=subscription_id,
                        code=error.code,
                        message=error.message,
                    )
                )

        summary.fx_rates_used = [
            FxRateUsed(rate_date=rate_date, ars_per_usd=fx.ars_per_usd)
            for rate_date, fx in sorted(fx_used.items())
        ]
        logger.info(
            f"Anchor run {run_date.isoformat()}: processed={summary.subscriptions_processed} "
            f"cycles={summary.cycles_created} charges={summary.charges_created} "
            f"attempts={summary.attempts_created} idempotent={summary.skipped_idempotent} "
            f"not_due={summary.subscriptions_not_due} errors={len(summary.errors)}"
        )
        return summary

    @staticmethod
    def _process_subscription(
        db: Session,
        subscription: BillingSubscription,
        anchor: date,
        anchor_day: int,
        fx: ResolvedFxRate,
        config: CollectionsConfig,
        actor: str | None,
    ) -> _SubscriptionOutcome:
        outcome = _SubscriptionOutcome()
        tz_name = subscription.timezone or config.timezone
        following_anchor = dates.next_anchor_date(anchor, anchor_day)

        existing_cycle = (
            db.query(BillingCycle)
            .filter(BillingCycle.subscription_id == subscription.id)
            .filter(BillingCycle.anchor_date == anchor)
            .first()
        )
        if existing_cycle:
            if not subscription.next_anchor_date or subscription.next_anchor_date <= anchor:
                subscription.next_anchor_date = following_anchor
            return outcome

        method = select_payment_method(db, subscription.id)
        discount_pct = (
            subscription.direct_debit_discount_pct
            if subscription.direct_debit_discount_pct is not None
            else config.direct_debit_discount_pct
        )
        pricing = build_pricing_snapshot(
            subscription,
            active_adjustments(db, subscription.tenant_id, anchor),
            fx,
            direct_debit=bool(method and method.is_direct_debit),
            discount_pct=discount_pct,
            vat_rate=config.default_vat_rate,
        )

        cycle = BillingCycle(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            anchor_date=anchor,
            period_start=anchor,
            period_end=following_anchor,
            status=BillingCycleStatus.frozen,
            fx_type=pricing.fx_type,
            fx_rate_date=pricing.fx_rate_date,
            fx_rate_ars_per_usd=pricing.fx_rate_ars_per_usd,
            base_amount_usd=pricing.base_amount_usd,
            addons_total_usd=pricing.addons_total_usd,
            discount_pct=pricing.discount_pct,
            discount_amount_usd=pricing.discount_amount_usd,
            net_amount_usd=pricing.net_amount_usd,
            vat_rate=pricing.vat_rate,
            vat_amount_usd=pricing.vat_amount_usd,
            total_usd=pricing.total_usd,
            total_ars=pricing.total_ars,
            pricing_snapshot=pricing.as_json(),
        )
        cycle_savepoint = db.begin_nested()
        try:
            db.add(cycle)
            db.flush()
            cycle_savepoint.commit()
        except IntegrityError:
            # A concurrent run froze this cycle first.
            cycle_savepoint.rollback()
            return outcome
        outcome.cycle_created = True

        idempotency_key = idempotency_key_for(subscription.id, anchor)
        charge_savepoint = db.begin_nested()
        try:
            charge = Charge(
                tenant_id=subscription.tenant_id,
                tenant_charge_no=next_charge_number(db, subscription.tenant_id),
                subscription_id=subscription.id,
                cycle_id=cycle.id,
                period_start=cycle.period_start,
                period_end=cycle.period_end,
                due_date=anchor,
                status=ChargeStatus.ready,
                charge_kind="recurring",
                label=_charge_label(anchor),
                base_amount_usd=pricing.pre_discount_net_usd,
                adjustments_total_usd=pricing.adjustments_total_usd,
                total_usd=pricing.total_usd,
                fx_rate=pricing.fx_rate_ars_per_usd,
                amount_ars_due=pricing.total_ars,
                reconciliation_status=ReconciliationStatus.pending,
                idempotency_key=idempotency_key,
                selected_method_id=method.id if method else None,
                collection_channel=DIRECT_DEBIT_COLLECTION_CHANNEL if method else None,
                dunning_stage=0,
            )
            db.add(charge)
            db.flush()
            charge_savepoint.commit()
            outcome.charge_created = True
            emit_event(
                db,
                EventType.charge_created,
                {
                    "tenant_charge_no": charge.tenant_charge_no,
                    "total_usd": str(charge.total_usd),
                    "amount_ars_due": str(charge.amount_ars_due),
                    "due_date": anchor.isoformat(),
                },
                actor=actor,
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                charge_id=charge.id,
            )
        except IntegrityError:
            charge_savepoint.rollback()
            charge = (
                db.query(Charge)
                .filter(Charge.tenant_id == subscription.tenant_id)
                .filter(Charge.idempotency_key == idempotency_key)
                .one()
            )

        existing_numbers = {
            row[0]
            for row in db.query(Attempt.attempt_no).filter(Attempt.charge_id == charge.id).all()
        }
        for attempt_no, scheduled_date in enumerate(
            attempt_schedule(anchor, config, tz_name), start=1
        ):
            if attempt_no in existing_numbers:
                continue
            attempt_id = uuid.uuid4()
            db.add(
                Attempt(
                    id=attempt_id,
                    charge_id=charge.id,
                    payment_method_id=method.id if method else None,
                    attempt_no=attempt_no,
                    status=AttemptStatus.pending,
                    channel=OFFICE_BANKING_CHANNEL,
                    scheduled_for=dates.start_of_local_day(scheduled_date, tz_name),
                    external_reference=external_reference_for(attempt_id),
                    notes="Scheduled by anchor run",
                )
            )
            outcome.attempts_created += 1
        outcome.missing_payment_method = method is None

        subscription.next_anchor_date = following_anchor
        db.flush()

        emit_event(
            db,
            EventType.anchor_run_processed,
            {
                "anchor_date": anchor.isoformat(),
                "cycle_id": str(cycle.id),
                "charge_id": str(charge.id),
                "attempts_created": outcome.attempts_created,
                "fx_rate_date": fx.rate_date.isoformat(),
                "fx_rate_ars_per_usd": str(fx.ars_per_usd),
                "amount_ars_due": str(charge.amount_ars_due),
            },
            actor=actor,
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            charge_id=charge.id,
        )
        return outcome


anchor_runner = AnchorRunner()


def run_anchor(
    db: Session,
    anchor_date: date | None = None,
    override_fx: bool = False,
    actor_user_id: str | None = None,
    actor_tenant_id=None,
    tenant_ids: list | None = None,
) -> AnchorSummary:
    return AnchorRunner.run(
        db,
        AnchorRunRequest(
            anchor_date=anchor_date,
            override_fx=override_fx,
            actor_user_id=actor_user_id,
            actor_tenant_id=coerce_uuid(actor_tenant_id),
            tenant_ids=tenant_ids,
        ),
    )
