"""Bank file adapter interface.

One adapter per bank file layout. The presentment builder renders outbound
files through :meth:`BankFileAdapter.build_outbound_file` and the response
importer parses inbound files through :meth:`BankFileAdapter.parse_inbound_file`.
"""

import abc
import enum
import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from app.services.collections.errors import AdapterMismatch, ControlTotalsMismatch, RowError
from app.services.common import round_money

ZERO = Decimal("0.00")


class ResultStatus(enum.Enum):
    paid = "paid"
    rejected = "rejected"
    error = "error"


def external_reference_for(attempt_id) -> str:
    return f"AT-{attempt_id}"


def row_hash_for(external_reference: str) -> str:
    """Stable hash used to match response rows when references are rewritten."""
    payload = f"external_reference={external_reference}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class ControlTotals:
    record_count: int
    amount_total: Decimal

    @classmethod
    def from_amounts(cls, amounts) -> "ControlTotals":
        values = [round_money(amount) for amount in amounts if amount is not None]
        return cls(record_count=len(values), amount_total=round_money(sum(values, ZERO)))


@dataclass(frozen=True)
class OutboundRow:
    attempt_id: uuid.UUID
    charge_id: uuid.UUID
    external_reference: str
    amount: Decimal
    due_date: date
    holder_name: str | None = None
    holder_tax_id: str | None = None
    account_last4: str | None = None

    @property
    def row_hash(self) -> str:
        return row_hash_for(self.external_reference)


@dataclass(frozen=True)
class OutboundContext:
    batch_id: uuid.UUID
    sequence_no: int
    business_date: date
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundFile:
    file_name: str
    content: bytes
    content_type: str
    totals: ControlTotals


@dataclass
class InboundRow:
    line_no: int
    external_reference: str | None
    status: ResultStatus
    result_code: str | None = None
    message: str | None = None
    amount: Decimal | None = None
    settled_at: datetime | None = None
    trace_id: str | None = None
    operation_id: str | None = None
    raw: dict = field(default_factory=dict)
    error: str | None = None

    @property
    def row_hash(self) -> str | None:
        if not self.external_reference:
            return None
        return row_hash_for(self.external_reference)

    @property
    def paid_reference(self) -> str | None:
        return self.operation_id or self.trace_id


@dataclass
class ParsedInboundFile:
    adapter: str
    version: str
    rows: list[InboundRow]
    declared: ControlTotals | None = None
    header: dict = field(default_factory=dict)

    @property
    def computed(self) -> ControlTotals:
        return ControlTotals.from_amounts(
            row.amount if row.amount is not None else ZERO for row in self.rows
        )


class BankFileAdapter(abc.ABC):
    name: str = ""
    version: str = ""
    content_type: str = "text/plain"
    file_extension: str = "txt"
    result_codes: dict[str, ResultStatus] = {}

    def signature(self) -> str:
        return f"{self.name}:{self.version}"

    def map_result_code(self, code: str | None) -> ResultStatus:
        key = (code or "").strip().upper()
        return self.result_codes.get(key, ResultStatus.error)

    def rejection_reason(self, code: str | None) -> str | None:
        return None

    @abc.abstractmethod
    def matches(self, file_name: str | None, data: bytes) -> bool:
        """Cheap layout check used to reject files meant for another adapter."""

    @abc.abstractmethod
    def parse_header(self, line: str) -> dict: ...

    @abc.abstractmethod
    def parse_data_row(self, line: str, line_no: int) -> InboundRow: ...

    @abc.abstractmethod
    def parse_footer(self, line: str) -> ControlTotals | None: ...

    @abc.abstractmethod
    def parse_inbound_file(self, data: bytes) -> ParsedInboundFile: ...

    @abc.abstractmethod
    def build_outbound_file(
        self, context: OutboundContext, rows: list[OutboundRow]
    ) -> OutboundFile: ...

    def file_name_for(self, context: OutboundContext) -> str:
        return (
            f"{self.name}-{context.business_date.strftime('%Y%m%d')}"
            f"-{context.sequence_no:04d}.{self.file_extension}"
        )

    def validate_outbound_control_totals(
        self, outbound: OutboundFile, rows: list[OutboundRow]
    ) -> None:
        expected = ControlTotals.from_amounts(row.amount for row in rows)
        if outbound.totals != expected:
            raise ControlTotalsMismatch(
                "Outbound control totals do not match the batch rows",
                adapter=self.name,
                expected_count=expected.record_count,
                expected_amount=str(expected.amount_total),
                file_count=outbound.totals.record_count,
                file_amount=str(outbound.totals.amount_total),
            )

    def validate_inbound_control_totals(self, parsed: ParsedInboundFile) -> None:
        if parsed.declared is None:
            return
        computed = parsed.computed
        # Unparseable rows carry no amount, so only the count can be checked.
        if any(row.error for row in parsed.rows):
            matches = parsed.declared.record_count == computed.record_count
        else:
            matches = parsed.declared == computed
        if not matches:
            raise ControlTotalsMismatch(
                "Inbound control totals do not match the data rows",
                adapter=self.name,
                declared_count=parsed.declared.record_count,
                declared_amount=str(parsed.declared.amount_total),
                computed_count=computed.record_count,
                computed_amount=str(computed.amount_total),
            )

    def error_row(
        self,
        line_no: int,
        message: str,
        external_reference: str | None = None,
        raw: dict | None = None,
    ) -> InboundRow:
        error = RowError(message, line_no=line_no)
        return InboundRow(
            line_no=line_no,
            external_reference=external_reference,
            status=ResultStatus.error,
            message=error.message,
            raw=raw or {},
            error=error.message,
        )

    def mismatch(self, message: str, **details) -> AdapterMismatch:
        return AdapterMismatch(message, adapter=self.name, **details)
