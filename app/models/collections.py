import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
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

OFFICE_BANKING_CHANNEL = "office_banking"
DIRECT_DEBIT_FILE_TYPE = "direct_debit"
DIRECT_DEBIT_COLLECTION_CHANNEL = "pd_galicia"


class FileBatchDirection(enum.Enum):
    outbound = "outbound"
    inbound = "inbound"


class FileBatchStatus(enum.Enum):
    created = "created"
    ready = "ready"
    exported = "exported"
    reconciled = "reconciled"
    failed = "failed"
    imported = "imported"


class FileBatchItemStatus(enum.Enum):
    pending = "pending"
    paid = "paid"
    rejected = "rejected"
    error = "error"


class FileImportRunStatus(enum.Enum):
    success = "success"
    duplicate = "duplicate"
    invalid = "invalid"
    failed = "failed"


class FileBatch(Base):
    __tablename__ = "billing_file_batches"
    __table_args__ = (
        UniqueConstraint(
            "parent_batch_id", "file_hash", name="uq_billing_file_batches_parent_hash"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sequence_no: Mapped[int | None] = mapped_column(Integer)
    parent_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id")
    )
    direction: Mapped[FileBatchDirection] = mapped_column(
        Enum(FileBatchDirection), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(40), default=OFFICE_BANKING_CHANNEL)
    file_type: Mapped[str] = mapped_column(String(40), default=DIRECT_DEBIT_FILE_TYPE)
    adapter: Mapped[str] = mapped_column(String(60), nullable=False)
    adapter_version: Mapped[str | None] = mapped_column(String(20))
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[FileBatchStatus] = mapped_column(
        Enum(FileBatchStatus), default=FileBatchStatus.created
    )
    storage_key: Mapped[str | None] = mapped_column(String(512))
    original_file_name: Mapped[str | None] = mapped_column(String(255))
    sha256: Mapped[str | None] = mapped_column(String(64))
    file_hash: Mapped[str | None] = mapped_column(String(64))
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    amount_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"))
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    total_paid_rows: Mapped[int] = mapped_column(Integer, default=0)
    total_rejected_rows: Mapped[int] = mapped_column(Integer, default=0)
    total_error_rows: Mapped[int] = mapped_column(Integer, default=0)
    exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(120))
    meta: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    parent_batch = relationship("FileBatch", remote_side=[id])
    items = relationship(
        "FileBatchItem", back_populates="batch", order_by="FileBatchItem.line_no"
    )


class FileBatchItem(Base):
    __tablename__ = "billing_file_batch_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id"), nullable=False
    )
    attempt_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_attempts.id")
    )
    charge_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_charges.id")
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(80), index=True)
    row_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    amount_ars: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    status: Mapped[FileBatchItemStatus] = mapped_column(
        Enum(FileBatchItemStatus), default=FileBatchItemStatus.pending
    )
    response_code: Mapped[str | None] = mapped_column(String(40))
    response_message: Mapped[str | None] = mapped_column(Text)
    paid_reference: Mapped[str | None] = mapped_column(String(120))
    row_payload: Mapped[dict | None] = mapped_column(JSON)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    batch = relationship("FileBatch", back_populates="items")
    attempt = relationship("Attempt")
    charge = relationship("Charge")


class FileImportRun(Base):
    __tablename__ = "billing_file_import_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    outbound_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id")
    )
    inbound_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_file_batches.id")
    )
    file_name: Mapped[str | None] = mapped_column(String(255))
    file_hash: Mapped[str | None] = mapped_column(String(64))
    adapter: Mapped[str | None] = mapped_column(String(60))
    source: Mapped[str] = mapped_column(String(40), default="api")
    uploaded_by: Mapped[str | None] = mapped_column(String(120))
    status: Mapped[FileImportRunStatus] = mapped_column(
        Enum(FileImportRunStatus), nullable=False
    )
    parsed_rows: Mapped[int] = mapped_column(Integer, default=0)
    detected_totals: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
