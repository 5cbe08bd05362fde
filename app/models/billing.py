import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class SubscriptionStatus(enum.Enum):
    active = "active"
    paused = "paused"
    canceled = "canceled"


class PaymentMethodType(enum.Enum):
    direct_debit_cbu = "direct_debit_cbu"
    transfer = "transfer"
    card = "card"
    other = "other"


class PaymentMethodStatus(enum.Enum):
    active = "active"
    pending = "pending"
    disabled = "disabled"


class MandateStatus(enum.Enum):
    pending = "pending"
    active = "active"
    revoked = "revoked"


class AdjustmentKind(enum.Enum):
    discount = "discount"
    surcharge = "surcharge"


class AdjustmentValueType(enum.Enum):
    percent = "percent"
    fixed_usd = "fixed_usd"


class BillingCycleStatus(enum.Enum):
    frozen = "frozen"
    paid = "paid"
    canceled = "canceled"


class ChargeStatus(enum.Enum):
    ready = "ready"
    pending = "pending"
    past_due = "past_due"
    paid = "paid"
    canceled = "canceled"


class ReconciliationStatus(enum.Enum):
    pending = "pending"
    matched = "matched"
    unmatched = "unmatched"
    error = "error"


class AttemptStatus(enum.Enum):
    pending = "pending"
    scheduled = "scheduled"
    processing = "processing"
    paid = "paid"
    rejected = "rejected"
    failed = "failed"
    canceled = "canceled"


OPEN_ATTEMPT_STATUSES = (
    AttemptStatus.pending,
    AttemptStatus.scheduled,
    AttemptStatus.processing,
)


class FiscalDocumentStatus(enum.Enum):
    pending = "pending"
    issued = "issued"
    failed = "failed"


class BillingSubscription(Base):
    __tablename__ = "billing_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active
    )
    plan_key: Mapped[str] = mapped_column(String(60), default="basic")
    plan_price_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    anchor_day: Mapped[int] = mapped_column(Integer, default=8)
    timezone: Mapped[str | None] = mapped_column(String(64))
    direct_debit_discount_pct: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    next_anchor_date: Mapped[date | None] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    payment_methods = relationship(
        "BillingPaymentMethod",
        back_populates="subscription",
        order_by="BillingPaymentMethod.created_at",
    )
    cycles = relationship("BillingCycle", back_populates="subscription")


class BillingPaymentMethod(Base):
    __tablename__ = "billing_payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    method_type: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType), default=PaymentMethodType.direct_debit_cbu
    )
    status: Mapped[PaymentMethodStatus] = mapped_column(
        Enum(PaymentMethodStatus), default=PaymentMethodStatus.pending
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    holder_name: Mapped[str | None] = mapped_column(String(160))
    holder_tax_id: Mapped[str | None] = mapped_column(String(20))
    mandate_status: Mapped[MandateStatus | None] = mapped_column(Enum(MandateStatus))
    mandate_account_last4: Mapped[str | None] = mapped_column(String(4))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    subscription = relationship("BillingSubscription", back_populates="payment_methods")

    @property
    def is_direct_debit(self) -> bool:
        return self.method_type == PaymentMethodType.direct_debit_cbu


class FxRate(Base):
    __tablename__ = "billing_fx_rates"
    __table_args__ = (
        UniqueConstraint("fx_type", "rate_date", name="uq_billing_fx_rates_type_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    fx_type: Mapped[str] = mapped_column(String(40), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    ars_per_usd: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class BillingAdjustment(Base):
    __tablename__ = "billing_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    kind: Mapped[AdjustmentKind] = mapped_column(Enum(AdjustmentKind), nullable=False)
    value_type: Mapped[AdjustmentValueType] = mapped_column(
        Enum(AdjustmentValueType), nullable=False
    )
    value: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    label: Mapped[str | None] = mapped_column(String(160))
    starts_on: Mapped[date | None] = mapped_column(Date)
    ends_on: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class BillingCycle(Base):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "anchor_date", name="uq_billing_cycles_subscription_anchor"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id"), nullable=False
    )
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BillingCycleStatus] = mapped_column(
        Enum(BillingCycleStatus), default=BillingCycleStatus.frozen
    )
    fx_type: Mapped[str] = mapped_column(String(40), nullable=False)
    fx_rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    fx_rate_ars_per_usd: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    base_amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    addons_total_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    discount_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    discount_amount_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    net_amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), default=Decimal("0.0000"))
    vat_amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total_ars: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    pricing_snapshot: Mapped[dict | None] = mapped_column(JSON)
    frozen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    subscription = relationship("BillingSubscription", back_populates="cycles")
    charges = relationship("Charge", back_populates="cycle")


class Charge(Base):
    __tablename__ = "billing_charges"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "idempotency_key", name="uq_billing_charges_tenant_idempotency"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    tenant_charge_no: Mapped[int | None] = mapped_column(Integer)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_subscriptions.id")
    )
    cycle_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_cycles.id")
    )
    period_start: Mapped[date | None] = mapped_column(Date)
    period_end: Mapped[date | None] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[ChargeStatus] = mapped_column(
        Enum(ChargeStatus), default=ChargeStatus.ready
    )
    charge_kind: Mapped[str] = mapped_column(String(40), default="recurring")
    label: Mapped[str | None] = mapped_column(String(160))
    base_amount_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    adjustments_total_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    total_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    amount_ars_due: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    amount_ars_paid: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_reference: Mapped[str | None] = mapped_column(String(120))
    paid_currency: Mapped[str | None] = mapped_column(String(3))
    paid_via_channel: Mapped[str | None] = mapped_column(String(40))
    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(ReconciliationStatus), default=ReconciliationStatus.pending
    )
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False)
    selected_method_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_payment_methods.id")
    )
    collection_channel: Mapped[str | None] = mapped_column(String(40))
    dunning_stage: Mapped[int] = mapped_column(Integer, default=0)
    overdue_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_dunning_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    cycle = relationship("BillingCycle", back_populates="charges")
    selected_method = relationship("BillingPaymentMethod")
    attempts = relationship(
        "Attempt", back_populates="charge", order_by="Attempt.attempt_no"
    )
    fiscal_documents = relationship("FiscalDocument", back_populates="charge")


class Attempt(Base):
    __tablename__ = "billing_attempts"
    __table_args__ = (
        UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempts_charge_no"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_payment_methods.id")
    )
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AttemptStatus] = mapped_column(
        Enum(AttemptStatus), default=AttemptStatus.pending
    )
    channel: Mapped[str] = mapped_column(String(40), nullable=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    external_reference: Mapped[str | None] = mapped_column(String(80), index=True)
    paid_reference: Mapped[str | None] = mapped_column(String(120))
    rejection_code: Mapped[str | None] = mapped_column(String(40))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    processor_result_code: Mapped[str | None] = mapped_column(String(40))
    processor_result_message: Mapped[str | None] = mapped_column(Text)
    processor_trace_id: Mapped[str | None] = mapped_column(String(120))
    processor_settlement_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    processor_raw_payload: Mapped[dict | None] = mapped_column(JSON)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    charge = relationship("Charge", back_populates="attempts")
    payment_method = relationship("BillingPaymentMethod")


class FiscalDocument(Base):
    __tablename__ = "billing_fiscal_documents"
    __table_args__ = (
        UniqueConstraint(
            "charge_id", "document_type", name="uq_billing_fiscal_documents_charge_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id"), nullable=False
    )
    document_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[FiscalDocumentStatus] = mapped_column(
        Enum(FiscalDocumentStatus), default=FiscalDocumentStatus.pending
    )
    external_reference: Mapped[str | None] = mapped_column(String(120))
    document_number: Mapped[str | None] = mapped_column(String(40))
    issuer_reference: Mapped[str | None] = mapped_column(String(40))
    issuer_reference_due: Mapped[date | None] = mapped_column(Date)
    payload: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    charge = relationship("Charge", back_populates="fiscal_documents")
