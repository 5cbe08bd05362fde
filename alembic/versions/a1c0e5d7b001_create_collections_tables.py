"""create collections tables

Revision ID: a1c0e5d7b001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "a1c0e5d7b001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if with_updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "domain_settings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "domain",
            sa.Enum("collections", "fiscal", "scheduler", name="settingdomain"),
            nullable=False,
        ),
        sa.Column("key", sa.String(120), nullable=False),
        sa.Column(
            "value_type",
            sa.Enum("string", "integer", "boolean", "json", name="settingvaluetype"),
        ),
        sa.Column("value_text", sa.Text, nullable=True),
        sa.Column("value_json", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("domain", "key", name="uq_domain_settings_domain_key"),
        sa.CheckConstraint(
            "(value_type = 'json' AND value_json IS NOT NULL AND value_text IS NULL) "
            "OR (value_type != 'json' AND value_text IS NOT NULL)",
            name="ck_domain_settings_value_alignment",
        ),
    )

    op.create_table(
        "tenant_counters",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("key", sa.String(80), nullable=False),
        sa.Column("next_value", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "key", name="uq_tenant_counters_tenant_key"),
    )

    op.create_table(
        "billing_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.Column("subscription_id", UUID(as_uuid=True), nullable=True),
        sa.Column("charge_id", UUID(as_uuid=True), nullable=True),
        sa.Column("batch_id", UUID(as_uuid=True), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
    op.create_index("ix_billing_events_tenant_id", "billing_events", ["tenant_id"])
    op.create_index("ix_billing_events_charge_id", "billing_events", ["charge_id"])

    op.create_table(
        "billing_subscriptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "canceled", name="subscriptionstatus"),
        ),
        sa.Column("plan_key", sa.String(60)),
        sa.Column("plan_price_usd", sa.Numeric(12, 2)),
        sa.Column("anchor_day", sa.Integer),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("direct_debit_discount_pct", sa.Numeric(5, 2), nullable=True),
        sa.Column("next_anchor_date", sa.Date, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_subscriptions_tenant_id", "billing_subscriptions", ["tenant_id"]
    )

    op.create_table(
        "billing_payment_methods",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=False,
        ),
        sa.Column(
            "method_type",
            sa.Enum("direct_debit_cbu", "transfer", "card", "other", name="paymentmethodtype"),
        ),
        sa.Column(
            "status",
            sa.Enum("active", "pending", "disabled", name="paymentmethodstatus"),
        ),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("holder_name", sa.String(160), nullable=True),
        sa.Column("holder_tax_id", sa.String(20), nullable=True),
        sa.Column(
            "mandate_status",
            sa.Enum("pending", "active", "revoked", name="mandatestatus"),
            nullable=True,
        ),
        sa.Column("mandate_account_last4", sa.String(4), nullable=True),
        *_timestamps(with_updated=False),
    )

    op.create_table(
        "billing_fx_rates",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("fx_type", sa.String(40), nullable=False),
        sa.Column("rate_date", sa.Date, nullable=False),
        sa.Column("ars_per_usd", sa.Numeric(14, 4), nullable=False),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint("fx_type", "rate_date", name="uq_billing_fx_rates_type_date"),
    )

    op.create_table(
        "billing_adjustments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "kind", sa.Enum("discount", "surcharge", name="adjustmentkind"), nullable=False
        ),
        sa.Column(
            "value_type",
            sa.Enum("percent", "fixed_usd", name="adjustmentvaluetype"),
            nullable=False,
        ),
        sa.Column("value", sa.Numeric(12, 4), nullable=False),
        sa.Column("label", sa.String(160), nullable=True),
        sa.Column("starts_on", sa.Date, nullable=True),
        sa.Column("ends_on", sa.Date, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_billing_adjustments_tenant_id", "billing_adjustments", ["tenant_id"])

    op.create_table(
        "billing_cycles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("anchor_date", sa.Date, nullable=False),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column(
            "status", sa.Enum("frozen", "paid", "canceled", name="billingcyclestatus")
        ),
        sa.Column("fx_type", sa.String(40), nullable=False),
        sa.Column("fx_rate_date", sa.Date, nullable=False),
        sa.Column("fx_rate_ars_per_usd", sa.Numeric(14, 4), nullable=False),
        sa.Column("base_amount_usd", sa.Numeric(12, 2)),
        sa.Column("addons_total_usd", sa.Numeric(12, 2)),
        sa.Column("discount_pct", sa.Numeric(5, 2)),
        sa.Column("discount_amount_usd", sa.Numeric(12, 2)),
        sa.Column("net_amount_usd", sa.Numeric(12, 2)),
        sa.Column("vat_rate", sa.Numeric(6, 4)),
        sa.Column("vat_amount_usd", sa.Numeric(12, 2)),
        sa.Column("total_usd", sa.Numeric(12, 2)),
        sa.Column("total_ars", sa.Numeric(14, 2)),
        sa.Column("pricing_snapshot", sa.JSON, nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True)),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint(
            "subscription_id", "anchor_date", name="uq_billing_cycles_subscription_anchor"
        ),
    )

    op.create_table(
        "billing_charges",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_charge_no", sa.Integer, nullable=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=True,
        ),
        sa.Column(
            "cycle_id", UUID(as_uuid=True), sa.ForeignKey("billing_cycles.id"), nullable=True
        ),
        sa.Column("period_start", sa.Date, nullable=True),
        sa.Column("period_end", sa.Date, nullable=True),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column(
            "status",
            sa.Enum("ready", "pending", "past_due", "paid", "canceled", name="chargestatus"),
        ),
        sa.Column("charge_kind", sa.String(40)),
        sa.Column("label", sa.String(160), nullable=True),
        sa.Column("base_amount_usd", sa.Numeric(12, 2)),
        sa.Column("adjustments_total_usd", sa.Numeric(12, 2)),
        sa.Column("total_usd", sa.Numeric(12, 2)),
        sa.Column("fx_rate", sa.Numeric(14, 4), nullable=True),
        sa.Column("amount_ars_due", sa.Numeric(14, 2)),
        sa.Column("amount_ars_paid", sa.Numeric(14, 2), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_reference", sa.String(120), nullable=True),
        sa.Column("paid_currency", sa.String(3), nullable=True),
        sa.Column("paid_via_channel", sa.String(40), nullable=True),
        sa.Column(
            "reconciliation_status",
            sa.Enum("pending", "matched", "unmatched", "error", name="reconciliationstatus"),
        ),
        sa.Column("idempotency_key", sa.String(120), nullable=False),
        sa.Column(
            "selected_method_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_payment_methods.id"),
            nullable=True,
        ),
        sa.Column("collection_channel", sa.String(40), nullable=True),
        sa.Column("dunning_stage", sa.Integer, nullable=False, server_default="0"),
        sa.Column("overdue_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_dunning_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "idempotency_key", name="uq_billing_charges_tenant_idempotency"
        ),
    )
    op.create_index("ix_billing_charges_tenant_id", "billing_charges", ["tenant_id"])

    op.create_table(
        "billing_attempts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "charge_id", UUID(as_uuid=True), sa.ForeignKey("billing_charges.id"), nullable=False
        ),
        sa.Column(
            "payment_method_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_payment_methods.id"),
            nullable=True,
        ),
        sa.Column("attempt_no", sa.Integer, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "scheduled",
                "processing",
                "paid",
                "rejected",
                "failed",
                "canceled",
                name="attemptstatus",
            ),
        ),
        sa.Column("channel", sa.String(40), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_reference", sa.String(80), nullable=True),
        sa.Column("paid_reference", sa.String(120), nullable=True),
        sa.Column("rejection_code", sa.String(40), nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        sa.Column("processor_result_code", sa.String(40), nullable=True),
        sa.Column("processor_result_message", sa.Text, nullable=True),
        sa.Column("processor_trace_id", sa.String(120), nullable=True),
        sa.Column("processor_settlement_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processor_raw_payload", sa.JSON, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempts_charge_no"),
    )
    op.create_index(
        "ix_billing_attempts_external_reference", "billing_attempts", ["external_reference"]
    )

    op.create_table(
        "billing_fiscal_documents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "charge_id", UUID(as_uuid=True), sa.ForeignKey("billing_charges.id"), nullable=False
        ),
        sa.Column("document_type", sa.String(40), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "issued", "failed", name="fiscaldocumentstatus"),
        ),
        sa.Column("external_reference", sa.String(120), nullable=True),
        sa.Column("document_number", sa.String(40), nullable=True),
        sa.Column("issuer_reference", sa.String(40), nullable=True),
        sa.Column("issuer_reference_due", sa.Date, nullable=True),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "charge_id", "document_type", name="uq_billing_fiscal_documents_charge_type"
        ),
    )

    op.create_table(
        "billing_file_batches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("sequence_no", sa.Integer, nullable=True),
        sa.Column(
            "parent_batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_file_batches.id"),
            nullable=True,
        ),
        sa.Column(
            "direction",
            sa.Enum("outbound", "inbound", name="filebatchdirection"),
            nullable=False,
        ),
        sa.Column("channel", sa.String(40)),
        sa.Column("file_type", sa.String(40)),
        sa.Column("adapter", sa.String(60), nullable=False),
        sa.Column("adapter_version", sa.String(20), nullable=True),
        sa.Column("business_date", sa.Date, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "created",
                "ready",
                "exported",
                "reconciled",
                "failed",
                "imported",
                name="filebatchstatus",
            ),
        ),
        sa.Column("storage_key", sa.String(512), nullable=True),
        sa.Column("original_file_name", sa.String(255), nullable=True),
        sa.Column("sha256", sa.String(64), nullable=True),
        sa.Column("file_hash", sa.String(64), nullable=True),
        sa.Column("record_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("amount_total", sa.Numeric(14, 2)),
        sa.Column("total_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_paid_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_rejected_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_error_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("exported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(120), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "parent_batch_id", "file_hash", name="uq_billing_file_batches_parent_hash"
        ),
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_billing_file_batches_date_adapter "
        "ON billing_file_batches(business_date, adapter, direction);"
    )

    op.create_table(
        "billing_file_batch_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_file_batches.id"),
            nullable=False,
        ),
        sa.Column(
            "attempt_id", UUID(as_uuid=True), sa.ForeignKey("billing_attempts.id"), nullable=True
        ),
        sa.Column(
            "charge_id", UUID(as_uuid=True), sa.ForeignKey("billing_charges.id"), nullable=True
        ),
        sa.Column("line_no", sa.Integer, nullable=False),
        sa.Column("external_reference", sa.String(80), nullable=True),
        sa.Column("row_hash", sa.String(64), nullable=True),
        sa.Column("amount_ars", sa.Numeric(14, 2), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "paid", "rejected", "error", name="filebatchitemstatus"),
        ),
        sa.Column("response_code", sa.String(40), nullable=True),
        sa.Column("response_message", sa.Text, nullable=True),
        sa.Column("paid_reference", sa.String(120), nullable=True),
        sa.Column("row_payload", sa.JSON, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index(
        "ix_billing_file_batch_items_external_reference",
        "billing_file_batch_items",
        ["external_reference"],
    )
    op.create_index(
        "ix_billing_file_batch_items_row_hash", "billing_file_batch_items", ["row_hash"]
    )

    op.create_table(
        "billing_file_import_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "outbound_batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_file_batches.id"),
            nullable=True,
        ),
        sa.Column(
            "inbound_batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_file_batches.id"),
            nullable=True,
        ),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_hash", sa.String(64), nullable=True),
        sa.Column("adapter", sa.String(60), nullable=True),
        sa.Column("source", sa.String(40)),
        sa.Column("uploaded_by", sa.String(120), nullable=True),
        sa.Column(
            "status",
            sa.Enum("success", "duplicate", "invalid", "failed", name="fileimportrunstatus"),
            nullable=False,
        ),
        sa.Column("parsed_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("detected_totals", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        *_timestamps(with_updated=False),
    )


def downgrade() -> None:
    op.drop_table("billing_file_import_runs")
    op.drop_index("ix_billing_file_batch_items_row_hash", table_name="billing_file_batch_items")
    op.drop_index(
        "ix_billing_file_batch_items_external_reference", table_name="billing_file_batch_items"
    )
    op.drop_table("billing_file_batch_items")
    op.execute("DROP INDEX IF EXISTS idx_billing_file_batches_date_adapter;")
    op.drop_table("billing_file_batches")
    op.drop_table("billing_fiscal_documents")
    op.drop_index("ix_billing_attempts_external_reference", table_name="billing_attempts")
    op.drop_table("billing_attempts")
    op.drop_index("ix_billing_charges_tenant_id", table_name="billing_charges")
    op.drop_table("billing_charges")
    op.drop_table("billing_cycles")
    op.drop_index("ix_billing_adjustments_tenant_id", table_name="billing_adjustments")
    op.drop_table("billing_adjustments")
    op.drop_table("billing_fx_rates")
    op.drop_table("billing_payment_methods")
    op.drop_index("ix_billing_subscriptions_tenant_id", table_name="billing_subscriptions")
    op.drop_table("billing_subscriptions")
    op.drop_index("ix_billing_events_charge_id", table_name="billing_events")
    op.drop_index("ix_billing_events_tenant_id", table_name="billing_events")
    op.drop_index("ix_billing_events_event_type", table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_table("tenant_counters")
    op.drop_table("domain_settings")
    bind = op.get_bind()
    for enum_name in (
        "fileimportrunstatus",
        "filebatchitemstatus",
        "filebatchstatus",
        "filebatchdirection",
        "fiscaldocumentstatus",
        "attemptstatus",
        "reconciliationstatus",
        "chargestatus",
        "billingcyclestatus",
        "adjustmentvaluetype",
        "adjustmentkind",
        "mandatestatus",
        "paymentmethodstatus",
        "paymentmethodtype",
        "subscriptionstatus",
        "settingvaluetype",
        "settingdomain",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
