"""Banco Galicia direct-debit ("PD") pipe-delimited layout, version 1.0.

Outbound presentment::

    H|GALICIA_PD|v1.0|<seq>|PD|<YYYYMMDD>|<count>|<total>|
    D|<n>|<external_ref>|<amount>|<YYYYMMDD>|<holder>|<tax_id>|<last4>|
    T|<count>|<total>|

Inbound response::

    H|GALICIA_PD_RESP|v1.0|<seq>|PD|<YYYYMMDD>|<count>|<total>|
    D|<n>|<external_ref>|<code>|<message>|<amount>|<YYYYMMDDhhmmss>|<trace_id>|<operation_id>
    T|<count>|<total>|
"""

from datetime import UTC, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from app.services.collections.adapters.base import (
    BankFileAdapter,
    ControlTotals,
    InboundRow,
    OutboundContext,
    OutboundFile,
    OutboundRow,
    ParsedInboundFile,
    ResultStatus,
)
from app.services.collections.errors import ControlTotalsMismatch
from app.services.common import round_money, to_decimal

OUTBOUND_PROTOCOL = "GALICIA_PD"
INBOUND_PROTOCOL = "GALICIA_PD_RESP"
DEFAULT_TIMEZONE = "America/Argentina/Buenos_Aires"
UTF8_BOM = b"\xef\xbb\xbf"

PAID_CODES = {"00"}
REJECTED_CODES = {
    "51": "FONDOS_INSUFICIENTES",
    "05": "NO_HONRAR",
    "14": "CUENTA_INVALIDA",
    "54": "ADHESION_VENCIDA",
    "57": "OPERACION_NO_PERMITIDA",
    "61": "EXCEDE_LIMITE",
    "R1": "BAJA_DE_ADHESION",
    "R2": "CUENTA_CERRADA",
    "R3": "CUENTA_INEXISTENTE",
    "R4": "ORDEN_DE_NO_DEBITAR",
}


def _clean(value: str | None, limit: int | None = None) -> str:
    text = " ".join(str(value or "").replace("|", " ").split())
    return text[:limit] if limit else text


def _amount(value: Decimal) -> str:
    return f"{round_money(value):.2f}"


class GaliciaPdV1Adapter(BankFileAdapter):
    name = "galicia_pd_v1"
    version = "v1.0"
    content_type = "text/plain"
    file_extension = "txt"
    result_codes = {
        **{code: ResultStatus.paid for code in PAID_CODES},
        **{code: ResultStatus.rejected for code in REJECTED_CODES},
    }

    def __init__(self, layout_version: str | None = None, entity: str | None = None,
                 service: str | None = None, timezone: str | None = None) -> None:
        self.layout_version = layout_version or self.version
        self.entity = entity
        self.service = service or "PD"
        self.timezone = timezone or DEFAULT_TIMEZONE

    def rejection_reason(self, code: str | None) -> str | None:
        return REJECTED_CODES.get((code or "").strip().upper())

    def matches(self, file_name: str | None, data: bytes) -> bool:
        first_line = data.removeprefix(UTF8_BOM)[:512].decode("latin-1").split("\n", 1)[0]
        return first_line.startswith(f"H|{INBOUND_PROTOCOL}|") or first_line.startswith(
            f"H|{OUTBOUND_PROTOCOL}|"
        )

    def parse_header(self, line: str) -> dict:
        parts = line.split("|")
        if len(parts) < 8 or parts[0] != "H" or parts[1] not in {INBOUND_PROTOCOL, OUTBOUND_PROTOCOL}:
            raise self.mismatch("Invalid Galicia header record", line=line[:80])
        try:
            business_date = datetime.strptime(parts[5], "%Y%m%d").date()
            record_count = int(parts[6])
        except ValueError as exc:
            raise self.mismatch("Invalid Galicia header record", line=line[:80]) from exc
        amount_total = to_decimal(parts[7])
        if amount_total is None:
            raise self.mismatch("Invalid Galicia header total", line=line[:80])
        return {
            "protocol": parts[1],
            "layout_version": parts[2],
            "sequence": parts[3],
            "kind": parts[4],
            "business_date": business_date,
            "totals": ControlTotals(record_count, round_money(amount_total)),
        }

    def parse_footer(self, line: str) -> ControlTotals | None:
        parts = line.split("|")
        if len(parts) < 3 or parts[0] != "T":
            raise self.mismatch("Invalid Galicia trailer record", line=line[:80])
        amount_total = to_decimal(parts[2])
        try:
            record_count = int(parts[1])
        except ValueError as exc:
            raise self.mismatch("Invalid Galicia trailer record", line=line[:80]) from exc
        if amount_total is None:
            raise self.mismatch("Invalid Galicia trailer total", line=line[:80])
        return ControlTotals(record_count, round_money(amount_total))

    def _settled_at(self, value: str) -> datetime | None:
        text = value.strip()
        if not text:
            return None
        try:
            local = datetime.strptime(text, "%Y%m%d%H%M%S")
        except ValueError:
            return None
        return local.replace(tzinfo=ZoneInfo(self.timezone)).astimezone(UTC)

    def parse_data_row(self, line: str, line_no: int) -> InboundRow:
        parts = line.split("|")
        raw = {"line": line}
        if len(parts) < 9:
            return self.error_row(line_no, "Malformed Galicia data record", raw=raw)
        reference = parts[2].strip() or None
        if not reference:
            return self.error_row(line_no, "Missing external reference", raw=raw)
        amount = to_decimal(parts[5])
        if amount is None:
            return self.error_row(
                line_no, "Invalid amount", external_reference=reference, raw=raw
            )
        code = parts[3].strip().upper()
        return InboundRow(
            line_no=line_no,
            external_reference=reference,
            status=self.map_result_code(code),
            result_code=code or None,
            message=parts[4].strip() or self.rejection_reason(code),
            amount=round_money(amount),
            settled_at=self._settled_at(parts[6]),
            trace_id=parts[7].strip() or None,
            operation_id=parts[8].strip() or None,
            raw=raw,
        )

    def parse_inbound_file(self, data: bytes) -> ParsedInboundFile:
        text = data.removeprefix(UTF8_BOM).decode("latin-1")
        lines = [(idx, line.rstrip("\r")) for idx, line in enumerate(text.split("\n"), start=1)]
        lines = [(idx, line) for idx, line in lines if line.strip()]
        if len(lines) < 2:
            raise self.mismatch("Galicia response needs a header and a trailer")

        header = self.parse_header(lines[0][1])
        if header["protocol"] != INBOUND_PROTOCOL:
            raise self.mismatch("File is a Galicia presentment, not a response")
        declared = self.parse_footer(lines[-1][1])

        rows = []
        for line_no, line in lines[1:-1]:
            if not line.startswith("D|"):
                raise self.mismatch("Unexpected Galicia record type", line_no=line_no)
            rows.append(self.parse_data_row(line, line_no))
        return ParsedInboundFile(
            adapter=self.name,
            version=header["layout_version"],
            rows=rows,
            declared=declared,
            header=header,
        )

    def validate_inbound_control_totals(self, parsed: ParsedInboundFile) -> None:
        header_totals = parsed.header.get("totals")
        if header_totals is not None and header_totals != parsed.declared:
            raise ControlTotalsMismatch(
                "Galicia header and trailer totals disagree",
                adapter=self.name,
                header_count=header_totals.record_count,
                header_amount=str(header_totals.amount_total),
                trailer_count=parsed.declared.record_count,
                trailer_amount=str(parsed.declared.amount_total),
            )
        super().validate_inbound_control_totals(parsed)

    def file_name_for(self, context: OutboundContext) -> str:
        prefix = f"PD{_clean(self.entity)}" if self.entity else "PD"
        return f"{prefix}-{context.business_date.strftime('%Y%m%d')}-{context.sequence_no:04d}.txt"

    def build_outbound_file(self, context: OutboundContext, rows: list[OutboundRow]) -> OutboundFile:
        totals = ControlTotals.from_amounts(row.amount for row in rows)
        day = context.business_date.strftime("%Y%m%d")
        lines = [
            f"H|{OUTBOUND_PROTOCOL}|{self.layout_version}|{context.sequence_no:04d}|{self.service}"
            f"|{day}|{totals.record_count}|{_amount(totals.amount_total)}|"
        ]
        for idx, row in enumerate(rows, start=1):
            lines.append(
                "|".join(
                    [
                        "D",
                        str(idx),
                        row.external_reference,
                        _amount(row.amount),
                        row.due_date.strftime("%Y%m%d"),
                        _clean(row.holder_name, 60),
                        _clean(row.holder_tax_id, 20),
                        _clean(row.account_last4, 4),
                        "",
                    ]
                )
            )
        lines.append(f"T|{totals.record_count}|{_amount(totals.amount_total)}|")
        return OutboundFile(
            file_name=self.file_name_for(context),
            content=("\n".join(lines) + "\n").encode("latin-1", errors="replace"),
            content_type=self.content_type,
            totals=totals,
        )
