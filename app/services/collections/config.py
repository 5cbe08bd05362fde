import json
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.domain_settings import SettingDomain
from app.services import settings_spec
from app.services.collections.business_calendar import parse_holidays
from app.services.common import to_decimal


def _resolve(db: Session, key: str):
    return settings_spec.resolve_value(db, SettingDomain.collections, key)


def retry_offsets(raw) -> tuple[int, ...]:
    """Sorted unique day offsets for attempts; offset 0 is always present."""
    values: list = []
    if isinstance(raw, (list, tuple)):
        values = list(raw)
    elif raw is not None:
        text = str(raw).strip()
        try:
            parsed = json.loads(text) if text.startswith("[") else None
        except ValueError:
            parsed = None
        values = parsed if isinstance(parsed, list) else text.split(",")
    offsets = {0}
    for value in values:
        try:
            offsets.add(max(0, int(str(value).strip())))
        except ValueError:
            continue
    return tuple(sorted(offsets))


def tenant_ids(raw) -> frozenset:
    """Tenant UUIDs from a JSON list or CSV string; invalid ids are dropped."""
    if raw is None:
        return frozenset()
    values = raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            parsed = json.loads(text) if text.startswith("[") else None
        except ValueError:
            parsed = None
        values = parsed if isinstance(parsed, list) else text.split(",")
    ids = set()
    for value in values:
        try:
            ids.add(uuid.UUID(str(value).strip()))
        except ValueError:
            continue
    return frozenset(ids)


@dataclass(frozen=True)
class CollectionsConfig:
    timezone: str
    anchor_day: int
    retry_offsets: tuple[int, ...]
    use_business_days: bool
    holidays: frozenset
    direct_debit_discount_pct: Decimal
    default_vat_rate: Decimal
    fx_type: str
    pd_adapter: str
    pd_require_active_mandate: bool
    pd_layout_version: str | None
    pd_entity: str | None
    pd_service: str | None
    pd_inbound_dedupe_by_totals: bool
    pd_cutoff_hour: int | None
    pd_disabled_tenants: frozenset
    fiscal_autorun: bool
    fiscal_mode: str
    fiscal_document_type: str
    jobs_enabled: bool
    batch_auto_export: bool

    @property
    def attempts_per_charge(self) -> int:
        return len(self.retry_offsets)

    def adapter_options(self) -> dict[str, str]:
        options = {
            "timezone": self.timezone,
            "layout_version": self.pd_layout_version,
            "entity": self.pd_entity,
            "service": self.pd_service,
        }
        return {key: value for key, value in options.items() if value}


def load_collections_config(db: Session) -> CollectionsConfig:
    """Snapshot of the collections domain settings for one operation."""
    return CollectionsConfig(
        timezone=_resolve(db, "timezone"),
        anchor_day=_resolve(db, "anchor_day"),
        retry_offsets=retry_offsets(_resolve(db, "dunning_retry_days")),
        use_business_days=bool(_resolve(db, "dunning_use_business_days")),
        holidays=parse_holidays(_resolve(db, "holidays")),
        direct_debit_discount_pct=to_decimal(
            _resolve(db, "direct_debit_discount_pct"), Decimal("0")
        ),
        default_vat_rate=to_decimal(_resolve(db, "default_vat_rate"), Decimal("0")),
        fx_type=_resolve(db, "fx_type"),
        pd_adapter=_resolve(db, "pd_adapter"),
        pd_require_active_mandate=bool(_resolve(db, "pd_require_active_mandate")),
        pd_layout_version=_resolve(db, "pd_layout_version"),
        pd_entity=_resolve(db, "pd_entity"),
        pd_service=_resolve(db, "pd_service"),
        pd_inbound_dedupe_by_totals=bool(_resolve(db, "pd_inbound_dedupe_by_totals")),
        pd_cutoff_hour=_resolve(db, "pd_cutoff_hour"),
        pd_disabled_tenants=tenant_ids(_resolve(db, "pd_disabled_tenants")),
        fiscal_autorun=bool(_resolve(db, "fiscal_autorun")),
        fiscal_mode=_resolve(db, "fiscal_mode"),
        fiscal_document_type=_resolve(db, "fiscal_document_type"),
        jobs_enabled=bool(_resolve(db, "jobs_enabled")),
        batch_auto_export=bool(_resolve(db, "batch_auto_export")),
    )
