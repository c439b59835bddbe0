from __future__ import annotations

import threading
from datetime import datetime, timezone

from flask import Flask, request

from .cli import _configure_logging, resolve_fetch_limit, summary_from_dict
from .config import Settings
from .models import ExtensionPreferences, format_refresh_summary, sanitize_fetch_limit
from .orchestrator import RefreshOrchestrator
from .storage import get_runtime_value, load_cache, load_preferences, save_preferences


app = Flask(__name__)
settings = Settings.from_env()
settings.ensure_state_paths()

_orchestrator: RefreshOrchestrator | None = None
_ORCHESTRATOR_GUARD = threading.Lock()


def get_orchestrator() -> RefreshOrchestrator:
    global _orchestrator
    with _ORCHESTRATOR_GUARD:
        if _orchestrator is None:
            _orchestrator = RefreshOrchestrator(settings)
        return _orchestrator


@app.get("/health")
def health() -> tuple[dict, int]:
    return (
        {
            "status": "ok",
            "time_utc": datetime.now(timezone.utc).isoformat(),
            "cache_exists": settings.cache_file.exists(),
            "refresh_last_status": get_runtime_value(settings.runtime_db_file, "refresh.last_status"),
        },
        200,
    )


@app.get("/cache")
def cache_get() -> tuple[dict, int]:
    return load_cache(settings.cache_file).to_dict(), 200


@app.get("/refresh/status")
def refresh_status() -> tuple[dict, int]:
    payload = get_orchestrator().status()
    payload["lastStatus"] = get_runtime_value(settings.runtime_db_file, "refresh.last_status")
    payload["lastError"] = get_runtime_value(settings.runtime_db_file, "refresh.last_error")
    return payload, 200


@app.post("/refresh")
def refresh_post() -> tuple[dict, int]:
    body = request.get_json(silent=True) or {}
    raw_limit = body.get("limit") if isinstance(body, dict) else None
    if raw_limit is not None and sanitize_fetch_limit(raw_limit) is None:
        return {"status": "error", "error": "limit must be a positive integer."}, 400

    try:
        settings.validate()
    except ValueError as exc:
        return {"status": "error", "error": str(exc)}, 400

    outcome = get_orchestrator().start_refresh(resolve_fetch_limit(settings, raw_limit))
    if outcome.get("success"):
        summary = outcome["summary"]
        return {
            "status": "ok",
            "summary": summary,
            "message": format_refresh_summary(summary_from_dict(summary)),
        }, 200
    if outcome.get("inProgress"):
        return {"status": "busy", "error": outcome.get("error"), "progress": outcome.get("progress")}, 409
    return {"status": "error", "error": outcome.get("error")}, 502


@app.get("/preferences")
def preferences_get() -> tuple[dict, int]:
    return load_preferences(settings.preferences_file).to_dict(), 200


@app.put("/preferences")
def preferences_put() -> tuple[dict, int]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return {"status": "error", "error": "Request body must be a JSON object."}, 400
    current = load_preferences(settings.preferences_file).to_dict()
    current.update({key: body[key] for key in ("showAvatars", "fetchLimit") if key in body})
    preferences = ExtensionPreferences.from_dict(current)
    save_preferences(settings.preferences_file, preferences)
    return preferences.to_dict(), 200


def main() -> None:
    _configure_logging(settings.log_level)
    app.run(host=settings.api_host, port=settings.api_port, threaded=True)


if __name__ == "__main__":
    main()
