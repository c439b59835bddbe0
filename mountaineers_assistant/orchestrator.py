from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .bus import MessageBus
from .collector import CollectorService
from .config import Settings
from .diagnostics import DiagnosticsRecorder, RuntimeDiagnosticsRecorder
from .errors import HarvestError, RefreshInProgressError, RefreshTimeoutError, UnknownMessageError
from .merge import merge_cache
from .messages import (
    ORIGIN_COLLECTOR,
    CollectRequest,
    ProgressBroadcast,
    ProgressMessage,
    RefreshRequest,
    ResultMessage,
    StatusChanged,
    StatusRequest,
    parse_message,
)
from .models import ExtensionCache, RefreshProgress, RefreshSummary, format_refresh_summary
from .site_client import SiteClient
from .storage import (
    acquire_runtime_lock,
    delete_runtime_value,
    get_runtime_lock_owner,
    load_cache,
    release_runtime_lock,
    save_cache,
    set_runtime_values,
)


logger = logging.getLogger(__name__)

IDLE = "idle"
REQUESTED = "requested"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"

REFRESH_LOCK_NAME = "refresh"
ALREADY_RUNNING_ERROR = "A refresh is already running. Please wait for it to finish."


def _sanitize_count(value: Any, fallback: int) -> int:
    numeric: float | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            numeric = None
    if numeric is not None and math.isfinite(numeric) and numeric >= 0:
        return int(math.floor(numeric))
    return max(0, int(fallback))


def normalize_progress(message: ProgressMessage, previous: RefreshProgress | None = None) -> RefreshProgress:
    """Turn a raw collector progress message into a clamped snapshot.

    Missing or invalid counts fall back to the previous snapshot.
    """
    base = previous or RefreshProgress()
    total = _sanitize_count(message.total, base.total)
    completed = _sanitize_count(message.completed, base.completed)
    if total > 0:
        completed = min(completed, total)
    title = message.activity_title
    return RefreshProgress(
        total=total,
        completed=completed,
        remaining=max(total - completed, 0) if total > 0 else None,
        stage=message.stage or base.stage,
        activity_uid=message.activity_uid,
        activity_title=title if isinstance(title, str) and title.strip() else None,
    )


@dataclass
class _ActiveContext:
    working_cache: ExtensionCache


@dataclass
class _PendingResult:
    event: threading.Event = field(default_factory=threading.Event)
    message: ResultMessage | None = None

    def resolve(self, message: ResultMessage) -> None:
        if self.event.is_set():
            return
        self.message = message
        self.event.set()


class RefreshOrchestrator:
    """Single-flight coordinator for cache refreshes.

    Owns the in-flight state, the working copy of the cache and the current
    progress snapshot. All guard checks happen under one lock before any
    waiting starts.
    """

    def __init__(
        self,
        settings: Settings,
        bus: MessageBus | None = None,
        *,
        collector: CollectorService | None = None,
        client_factory: Callable[[], SiteClient] | None = None,
        diagnostics: DiagnosticsRecorder | None = None,
        timeout_seconds: float | None = None,
    ):
        self.settings = settings
        self.bus = bus or MessageBus()
        self._collector = collector
        self._client_factory = client_factory or (lambda: SiteClient.from_settings(settings))
        self._diagnostics = diagnostics or RuntimeDiagnosticsRecorder(settings.runtime_db_file)
        self._timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.refresh_timeout_seconds
        )
        self._guard = threading.Lock()
        self._state = IDLE
        self._progress: RefreshProgress | None = None
        self._context: _ActiveContext | None = None

    @property
    def state(self) -> str:
        with self._guard:
            return self._state

    @property
    def in_progress(self) -> bool:
        with self._guard:
            return self._state in {REQUESTED, IN_PROGRESS}

    def close(self) -> None:
        if self._collector is not None:
            self._collector.stop()

    def status(self) -> dict[str, Any]:
        with self._guard:
            return {
                "success": True,
                "inProgress": self._state in {REQUESTED, IN_PROGRESS},
                "progress": self._progress.to_dict() if self._progress else None,
            }

    def handle_message(self, raw: Any) -> dict[str, Any]:
        try:
            message = parse_message(raw)
        except UnknownMessageError as exc:
            return {"success": False, "error": str(exc)}
        if isinstance(message, StatusRequest):
            return self.status()
        if isinstance(message, RefreshRequest):
            return self.start_refresh(message.fetch_limit)
        return {"success": False, "error": f"Unsupported message type: {raw.get('type')!r}"}

    def start_refresh(self, fetch_limit: int | None = None) -> dict[str, Any]:
        """Run one refresh to completion and report the outcome.

        Never raises for refresh failures: the caller receives either
        ``{"success": True, "summary": ...}`` or ``{"success": False, "error": ...}``.
        """
        try:
            lock_owner = self._claim()
        except RefreshInProgressError as exc:
            return {"success": False, "error": str(exc), "inProgress": True, "progress": exc.progress}

        try:
            summary = self._execute(fetch_limit)
            with self._guard:
                self._state = COMPLETED
            self._record_status("completed")
            logger.info(format_refresh_summary(summary))
            return {"success": True, "summary": summary.to_dict()}
        except HarvestError as exc:
            return self._fail(exc)
        except Exception as exc:
            logger.exception("Refresh failed unexpectedly.")
            return self._fail(exc)
        finally:
            release_runtime_lock(self.settings.runtime_db_file, REFRESH_LOCK_NAME, lock_owner)
            with self._guard:
                self._context = None
                self._state = IDLE
                self._progress = None
            self.bus.publish(StatusChanged(in_progress=False, progress=None))

    def _claim(self) -> str:
        """Take the single-flight slot, returning the runtime lock owner."""
        with self._guard:
            if self._state in {REQUESTED, IN_PROGRESS}:
                logger.info("Rejecting refresh request because a refresh is already running.")
                raise RefreshInProgressError(
                    ALREADY_RUNNING_ERROR,
                    progress=self._progress.to_dict() if self._progress else None,
                )
            if self._collector is not None and self._collector.running:
                logger.info("Rejecting refresh request because an abandoned collection is still running.")
                raise RefreshInProgressError(ALREADY_RUNNING_ERROR)
            self._state = REQUESTED
            self._progress = RefreshProgress()

        lock_owner = f"{uuid.uuid4()}:{int(time.time())}"
        if not acquire_runtime_lock(
            self.settings.runtime_db_file,
            lock_name=REFRESH_LOCK_NAME,
            owner=lock_owner,
            ttl_seconds=self.settings.refresh_lock_ttl_seconds,
        ):
            current_owner = get_runtime_lock_owner(self.settings.runtime_db_file, REFRESH_LOCK_NAME)
            logger.info("Skipping refresh because another process holds the refresh lock (owner=%s).", current_owner)
            with self._guard:
                self._state = IDLE
                self._progress = None
            raise RefreshInProgressError(ALREADY_RUNNING_ERROR)
        return lock_owner

    def _ensure_collection_context(self) -> None:
        if self._collector is None:
            self._collector = CollectorService(self.bus, self._client_factory)
        if not self._collector.started:
            self._collector.start()

    def _execute(self, fetch_limit: int | None) -> RefreshSummary:
        self._ensure_collection_context()
        existing = load_cache(self.settings.cache_file)
        with self._guard:
            self._context = _ActiveContext(working_cache=existing.clone())
            self._state = IN_PROGRESS
            progress = self._progress.to_dict() if self._progress else None
        self.bus.publish(StatusChanged(in_progress=True, progress=progress))

        request_id = uuid.uuid4().hex
        pending = _PendingResult()

        def _listener(raw: dict[str, Any]) -> None:
            try:
                message = parse_message(raw)
            except UnknownMessageError:
                return
            if not isinstance(message, (ProgressMessage, ResultMessage)) or message.request_id != request_id:
                return
            if isinstance(message, ResultMessage):
                pending.resolve(message)
            elif message.origin == ORIGIN_COLLECTOR:
                self._handle_progress(message)

        unsubscribe = self.bus.subscribe(_listener)
        try:
            known_uids = existing.activity_uids()
            logger.info("Starting refresh with %s known activities (limit=%s).", len(known_uids), fetch_limit)
            self.bus.publish(CollectRequest(existing_uids=known_uids, fetch_limit=fetch_limit, request_id=request_id))
            if not pending.event.wait(self._timeout_seconds):
                raise RefreshTimeoutError(
                    f"Timed out waiting for the collection to finish after {self._timeout_seconds:g}s."
                )
        finally:
            unsubscribe()

        result = pending.message
        if result is None or not result.success or result.data is None:
            error = result.error if result is not None else None
            raise HarvestError(error or "Collection did not return any data.")

        merged = merge_cache(existing, result.data)
        save_cache(self.settings.cache_file, merged.updated_cache)
        return RefreshSummary(
            activity_count=len(merged.updated_cache.activities),
            last_updated=merged.updated_cache.last_updated,
            new_activities=merged.new_activity_count,
        )

    def _handle_progress(self, message: ProgressMessage) -> None:
        snapshot: ExtensionCache | None = None
        with self._guard:
            if self._context is None:
                return
            previous = self._progress
            progress = normalize_progress(message, previous)
            self._progress = progress
            if message.delta is not None and not message.delta.is_empty():
                snapshot = merge_cache(self._context.working_cache, message.delta).updated_cache
                self._context.working_cache = snapshot

        if snapshot is not None:
            try:
                save_cache(self.settings.cache_file, snapshot)
            except OSError as exc:
                logger.warning("Failed to persist incremental cache update: %s", exc)

        if message.stage == "error" and message.error:
            logger.warning("Collector reported error: %s", message.error)
        self._log_progress(progress, previous)
        self.bus.publish(ProgressBroadcast(progress=progress.to_dict()))

    def _log_progress(self, progress: RefreshProgress, previous: RefreshProgress | None) -> None:
        if progress.total > 0:
            if previous and previous.completed == progress.completed and previous.total == progress.total:
                return
            logger.info(
                "Processed %d/%d new activities (%d remaining)",
                progress.completed,
                progress.total,
                progress.remaining if progress.remaining is not None else 0,
            )
            return
        if previous is None or previous.stage != progress.stage:
            logger.info("Refresh stage -> %s", progress.stage)

    def _fail(self, exc: BaseException) -> dict[str, Any]:
        error = str(exc) or exc.__class__.__name__
        with self._guard:
            self._state = FAILED
            progress = self._progress.to_dict() if self._progress else None
        self._record_status("failed", error=error)
        self._diagnostics.record(
            error,
            "refresh",
            {"errorType": exc.__class__.__name__, "progress": progress},
        )
        return {"success": False, "error": error, "inProgress": False}

    def _record_status(self, status: str, *, error: str | None = None) -> None:
        now_iso = datetime.now(timezone.utc).isoformat()
        values: dict[str, Any] = {
            "refresh.last_status": status,
            "refresh.last_status_at_utc": now_iso,
        }
        if error:
            values["refresh.last_error"] = error
            values["refresh.last_error_at_utc"] = now_iso
        else:
            values["refresh.last_success_at_utc"] = now_iso
        set_runtime_values(self.settings.runtime_db_file, values)
        if not error:
            delete_runtime_value(self.settings.runtime_db_file, "refresh.last_error")
