"""Service package exports."""

from __future__ import annotations

import importlib
from typing import Any

__all__ = ["collections"]


def __getattr__(name: str) -> Any:
    if name == "collections":
        return importlib.import_module("app.services.collections")
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
