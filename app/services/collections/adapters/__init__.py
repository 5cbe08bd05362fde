"""Bank file adapters keyed by adapter name."""

from app.services.collections.adapters.base import (
    BankFileAdapter,
    ControlTotals,
    InboundRow,
    OutboundContext,
    OutboundFile,
    OutboundRow,
    ParsedInboundFile,
    ResultStatus,
    external_reference_for,
    row_hash_for,
)
from app.services.collections.adapters.debug_csv import DebugCsvAdapter
from app.services.collections.adapters.galicia_pd_v1 import GaliciaPdV1Adapter
from app.services.collections.errors import ConfigurationError

ADAPTERS: dict[str, type[BankFileAdapter]] = {
    DebugCsvAdapter.name: DebugCsvAdapter,
    GaliciaPdV1Adapter.name: GaliciaPdV1Adapter,
}


def normalize_adapter_name(name: str | None) -> str:
    return (name or "").strip().lower()


def resolve_adapter(name: str | None, **options) -> BankFileAdapter:
    adapter_cls = ADAPTERS.get(normalize_adapter_name(name))
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unknown direct-debit adapter '{name}'",
            adapter=name,
            available=sorted(ADAPTERS),
        )
    return adapter_cls(**options)


__all__ = [
    "ADAPTERS",
    "BankFileAdapter",
    "ControlTotals",
    "DebugCsvAdapter",
    "GaliciaPdV1Adapter",
    "InboundRow",
    "OutboundContext",
    "OutboundFile",
    "OutboundRow",
    "ParsedInboundFile",
    "ResultStatus",
    "external_reference_for",
    "normalize_adapter_name",
    "resolve_adapter",
    "row_hash_for",
]
