import logging
import os
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

_FIELDS = ["asctime", "levelname", "name", "message", "request_id"]


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Install a JSON handler on the root logger once."""
    root = logging.getLogger()
    if any(getattr(handler, "_collections_json", False) for handler in root.handlers):
        return
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    handler = logging.StreamHandler()
    handler.setFormatter(
        JsonFormatter(
            " ".join(f"%({field})s" for field in _FIELDS),
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    )
    handler.addFilter(RequestIdFilter())
    handler._collections_json = True
    root.addHandler(handler)


def set_request_id(request_id: str) -> None:
    request_id_ctx.set(request_id)
