from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .storage import get_runtime_value, set_runtime_value


logger = logging.getLogger(__name__)

DIAGNOSTICS_KEY = "diagnostics.errors"
MAX_RECORDED_ERRORS = 25


class DiagnosticsRecorder(Protocol):
    def record(self, message: str, context: str, diagnostics: dict[str, Any]) -> None:
        ...


class RuntimeDiagnosticsRecorder:
    """Keeps the most recent fatal errors in the runtime state database."""

    def __init__(self, runtime_db_file: Path, *, limit: int = MAX_RECORDED_ERRORS):
        self.runtime_db_file = runtime_db_file
        self.limit = max(1, int(limit))

    def record(self, message: str, context: str, diagnostics: dict[str, Any]) -> None:
        logger.error("%s failed: %s", context, message)
        entry = {
            "message": message,
            "context": context,
            "diagnostics": diagnostics,
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
        }
        existing = get_runtime_value(self.runtime_db_file, DIAGNOSTICS_KEY, default=[])
        entries = existing if isinstance(existing, list) else []
        entries.append(entry)
        set_runtime_value(self.runtime_db_file, DIAGNOSTICS_KEY, entries[-self.limit :])

    def recent(self) -> list[dict[str, Any]]:
        entries = get_runtime_value(self.runtime_db_file, DIAGNOSTICS_KEY, default=[])
        return [entry for entry in entries if isinstance(entry, dict)] if isinstance(entries, list) else []
