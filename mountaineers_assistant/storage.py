from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .models import ExtensionCache, ExtensionPreferences


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _parse_utc(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


_RUNTIME_PRAGMAS = ("journal_mode=WAL", "synchronous=NORMAL")
_RUNTIME_TABLES = {
    "runtime_kv": "key TEXT PRIMARY KEY, value_json TEXT NOT NULL, updated_at_utc TEXT NOT NULL",
    "runtime_locks": (
        "lock_name TEXT PRIMARY KEY, owner TEXT NOT NULL, "
        "acquired_at_utc TEXT NOT NULL, expires_at_utc TEXT NOT NULL"
    ),
}


def _connect_runtime_db(path: Path) -> sqlite3.Connection:
    """Open the runtime state database, creating its tables on first use."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    for pragma in _RUNTIME_PRAGMAS:
        conn.execute(f"PRAGMA {pragma}")
    for table, columns in _RUNTIME_TABLES.items():
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({columns})")
    return conn


def _to_json_string(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def _from_json_string(value_json: str) -> Any:
    return json.loads(value_json)


def set_runtime_values(path: Path, values: dict[str, Any]) -> None:
    if not values:
        return
    now_iso = _utc_now_iso()
    try:
        with _connect_runtime_db(path) as conn:
            conn.executemany(
                """
                INSERT INTO runtime_kv (key, value_json, updated_at_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at_utc = excluded.updated_at_utc
                """,
                [(key, _to_json_string(value), now_iso) for key, value in values.items()],
            )
    except sqlite3.Error:
        return


def set_runtime_value(path: Path, key: str, value: Any) -> None:
    set_runtime_values(path, {key: value})


def get_runtime_value(path: Path, key: str, default: Any = None) -> Any:
    try:
        with _connect_runtime_db(path) as conn:
            row = conn.execute(
                "SELECT value_json FROM runtime_kv WHERE key = ? LIMIT 1",
                (key,),
            ).fetchone()
    except sqlite3.Error:
        return default

    if row is None:
        return default
    try:
        return _from_json_string(str(row[0]))
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def delete_runtime_value(path: Path, key: str) -> None:
    try:
        with _connect_runtime_db(path) as conn:
            conn.execute("DELETE FROM runtime_kv WHERE key = ?", (key,))
    except sqlite3.Error:
        return


_LOCK_UPSERT = (
    "INSERT INTO runtime_locks (lock_name, owner, acquired_at_utc, expires_at_utc) VALUES (?, ?, ?, ?) "
    "ON CONFLICT(lock_name) DO UPDATE SET owner = excluded.owner, "
    "acquired_at_utc = excluded.acquired_at_utc, expires_at_utc = excluded.expires_at_utc"
)


def _live_lock_owner(conn: sqlite3.Connection, lock_name: str, now: datetime) -> str | None:
    row = conn.execute(
        "SELECT owner, expires_at_utc FROM runtime_locks WHERE lock_name = ?",
        (lock_name,),
    ).fetchone()
    if row is None:
        return None
    expires_at = _parse_utc(row["expires_at_utc"])
    if expires_at is None or expires_at <= now:
        return None
    return str(row["owner"]).strip() or None


def acquire_runtime_lock(
    path: Path,
    lock_name: str,
    owner: str,
    ttl_seconds: int,
    now_utc: datetime | None = None,
) -> bool:
    """Take or renew ``lock_name`` for ``owner``.

    Fails while a different owner holds an unexpired lease. Leases last at
    least 30 seconds.
    """
    now = _utc_now() if now_utc is None else now_utc.astimezone(timezone.utc)
    lease = timedelta(seconds=max(30, int(ttl_seconds)))
    try:
        with _connect_runtime_db(path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            holder = _live_lock_owner(conn, lock_name, now)
            if holder is not None and holder != owner:
                return False
            conn.execute(_LOCK_UPSERT, (lock_name, owner, now.isoformat(), (now + lease).isoformat()))
    except sqlite3.Error:
        return False
    return True


def release_runtime_lock(path: Path, lock_name: str, owner: str) -> None:
    """Drop ``lock_name`` if ``owner`` still holds it."""
    try:
        with _connect_runtime_db(path) as conn:
            conn.execute("DELETE FROM runtime_locks WHERE lock_name = ? AND owner = ?", (lock_name, owner))
    except sqlite3.Error:
        logger.warning("Failed to release runtime lock %s.", lock_name)


def get_runtime_lock_owner(path: Path, lock_name: str) -> str | None:
    try:
        with _connect_runtime_db(path) as conn:
            return _live_lock_owner(conn, lock_name, _utc_now())
    except sqlite3.Error:
        return None


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def load_cache(path: Path) -> ExtensionCache:
    return ExtensionCache.from_dict(read_json(path))


def save_cache(path: Path, cache: ExtensionCache) -> None:
    write_json(path, cache.to_dict())


def load_preferences(path: Path) -> ExtensionPreferences:
    return ExtensionPreferences.from_dict(read_json(path))


def save_preferences(path: Path, preferences: ExtensionPreferences) -> None:
    write_json(path, preferences.to_dict())
