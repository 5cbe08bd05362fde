"""Plain CSV layout used for development and manual reconciliation."""

import csv
import io
from datetime import datetime

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
from app.services.common import round_money, to_decimal

RESPONSE_COLUMNS = [
    "external_reference",
    "result",
    "amount",
    "paid_reference",
    "bank_result_code",
    "message",
    "settled_at",
    "trace_id",
]
PRESENTMENT_COLUMNS = [
    "external_reference",
    "attempt_id",
    "charge_id",
    "amount",
    "due_date",
    "holder_name",
    "holder_tax_id",
    "account_last4",
]


def _parse_settled_at(value: str | None) -> datetime | None:
    text = (value or "").strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


class DebugCsvAdapter(BankFileAdapter):
    name = "debug_csv"
    version = "v1"
    content_type = "text/csv"
    file_extension = "csv"
    result_codes = {
        "PAID": ResultStatus.paid,
        "REJECTED": ResultStatus.rejected,
        "ERROR": ResultStatus.error,
    }

    def __init__(self, **options) -> None:
        self.options = options

    def matches(self, file_name: str | None, data: bytes) -> bool:
        if file_name and file_name.lower().endswith(".csv"):
            return True
        first_line = data[:1024].decode("utf-8-sig", errors="replace").split("\n", 1)[0]
        columns = {column.strip().lower() for column in first_line.split(",")}
        return {"external_reference", "result"} <= columns

    def parse_header(self, line: str) -> dict:
        columns = [column.strip().lower() for column in next(csv.reader([line]), [])]
        missing = {"external_reference", "result"} - set(columns)
        if missing:
            raise self.mismatch(
                "CSV header is missing required columns",
                missing=sorted(missing),
            )
        return {"columns": columns}

    def parse_data_row(self, line: str, line_no: int, columns: list[str] | None = None) -> InboundRow:
        values = next(csv.reader([line]), [])
        return self._row_from_values(values, columns or RESPONSE_COLUMNS, line_no)

    def parse_footer(self, line: str) -> ControlTotals | None:
        # CSV responses carry no trailer; totals are computed from the rows.
        return None

    def _row_from_values(self, values: list[str], columns: list[str], line_no: int) -> InboundRow:
        record = {
            column: (values[idx].strip() if idx < len(values) else "")
            for idx, column in enumerate(columns)
        }
        reference = record.get("external_reference") or None
        result = (record.get("result") or "").upper()
        if not reference:
            return self.error_row(line_no, "Missing external_reference", raw=record)
        if result not in self.result_codes:
            return self.error_row(
                line_no, f"Unknown result '{result}'", external_reference=reference, raw=record
            )
        amount = to_decimal(record.get("amount"))
        if record.get("amount") and amount is None:
            return self.error_row(
                line_no, "Invalid amount", external_reference=reference, raw=record
            )
        return InboundRow(
            line_no=line_no,
            external_reference=reference,
            status=self.result_codes[result],
            result_code=record.get("bank_result_code") or result,
            message=record.get("message") or None,
            amount=round_money(amount) if amount is not None else None,
            settled_at=_parse_settled_at(record.get("settled_at")),
            trace_id=record.get("trace_id") or None,
            operation_id=record.get("paid_reference") or None,
            raw=record,
        )

    def parse_inbound_file(self, data: bytes) -> ParsedInboundFile:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise self.mismatch("Response file is not valid UTF-8") from exc
        reader = csv.reader(io.StringIO(text))
        header_values = next(reader, None)
        if not header_values:
            raise self.mismatch("Response file is empty")
        header = self.parse_header(",".join(header_values))
        rows = []
        for values in reader:
            if not any(value.strip() for value in values):
                continue
            rows.append(self._row_from_values(values, header["columns"], reader.line_num))
        return ParsedInboundFile(
            adapter=self.name, version=self.version, rows=rows, declared=None, header=header
        )

    def build_outbound_file(self, context: OutboundContext, rows: list[OutboundRow]) -> OutboundFile:
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(PRESENTMENT_COLUMNS)
        for row in rows:
            writer.writerow(
                [
                    row.external_reference,
                    str(row.attempt_id),
                    str(row.charge_id),
                    f"{round_money(row.amount):.2f}",
                    row.due_date.isoformat(),
                    row.holder_name or "",
                    row.holder_tax_id or "",
                    row.account_last4 or "",
                ]
            )
        return OutboundFile(
            file_name=self.file_name_for(context),
            content=output.getvalue().encode("utf-8"),
            content_type=self.content_type,
            totals=ControlTotals.from_amounts(row.amount for row in rows),
        )
