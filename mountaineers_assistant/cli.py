from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, Sequence

from .config import Settings
from .diagnostics import RuntimeDiagnosticsRecorder
from .messages import PROGRESS_BROADCAST_MESSAGE
from .models import RefreshSummary, format_refresh_summary, sanitize_fetch_limit
from .orchestrator import REFRESH_LOCK_NAME, RefreshOrchestrator
from .storage import get_runtime_lock_owner, get_runtime_value, load_cache, load_preferences


logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def _progress_printer(stream: Any = None) -> Callable[[dict[str, Any]], None]:
    last_line: list[str] = []

    def _print(raw: dict[str, Any]) -> None:
        if raw.get("type") != PROGRESS_BROADCAST_MESSAGE:
            return
        progress = raw.get("progress") or {}
        total = progress.get("total") or 0
        if total > 0:
            line = f"[{progress.get('stage')}] {progress.get('completed', 0)}/{total}"
            title = progress.get("activityTitle")
            if title:
                line = f"{line} {title}"
        else:
            line = f"[{progress.get('stage')}]"
        if last_line and last_line[0] == line:
            return
        last_line[:] = [line]
        print(line, file=stream or sys.stdout, flush=True)

    return _print


def status_snapshot(settings: Settings) -> dict[str, Any]:
    cache = load_cache(settings.cache_file)
    db = settings.runtime_db_file
    return {
        "inProgress": get_runtime_lock_owner(db, REFRESH_LOCK_NAME) is not None,
        "activityCount": len(cache.activities),
        "lastUpdated": cache.last_updated,
        "lastStatus": get_runtime_value(db, "refresh.last_status"),
        "lastStatusAtUtc": get_runtime_value(db, "refresh.last_status_at_utc"),
        "lastError": get_runtime_value(db, "refresh.last_error"),
        "recentErrors": RuntimeDiagnosticsRecorder(db).recent(),
    }


def resolve_fetch_limit(settings: Settings, requested: Any) -> int | None:
    limit = sanitize_fetch_limit(requested)
    if limit is not None:
        return limit
    return load_preferences(settings.preferences_file).fetch_limit


def summary_from_dict(payload: dict[str, Any]) -> RefreshSummary:
    return RefreshSummary(
        activity_count=int(payload.get("activityCount") or 0),
        last_updated=payload.get("lastUpdated"),
        new_activities=int(payload.get("newActivities") or 0),
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Refresh the local Mountaineers activity cache.")
    parser.add_argument("--limit", type=int, default=None, help="Only enrich the N most recent new activities.")
    parser.add_argument("--status", action="store_true", help="Print the last refresh status and exit.")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    _configure_logging(settings.log_level)

    if args.status:
        print(json.dumps(status_snapshot(settings), indent=2))
        return 0

    try:
        settings.validate()
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    settings.ensure_state_paths()

    orchestrator = RefreshOrchestrator(settings)
    unsubscribe = orchestrator.bus.subscribe(_progress_printer())
    try:
        outcome = orchestrator.start_refresh(resolve_fetch_limit(settings, args.limit))
    finally:
        unsubscribe()
        orchestrator.close()

    if not outcome.get("success"):
        print(f"Refresh failed: {outcome.get('error')}", file=sys.stderr)
        return 1
    print(format_refresh_summary(summary_from_dict(outcome["summary"])))
    return 0


if __name__ == "__main__":
    sys.exit(main())
