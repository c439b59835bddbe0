"""Message kinds exchanged between the orchestrator, the collector and listeners.

Every message crosses the bus as a plain JSON-compatible ``dict``. Receivers
turn it back into one of the dataclasses below through :func:`parse_message`,
which is the only place unknown shapes are rejected.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .errors import UnknownMessageError
from .models import CollectorDelta, CollectorPayload, now_ms, sanitize_fetch_limit

COLLECT_MESSAGE = "collect"
PROGRESS_MESSAGE = "progress"
RESULT_MESSAGE = "result"
STATUS_REQUEST_MESSAGE = "status-request"
REFRESH_REQUEST_MESSAGE = "start-refresh"
STATUS_CHANGED_MESSAGE = "status-changed"
PROGRESS_BROADCAST_MESSAGE = "refresh-progress"

ORIGIN_COLLECTOR = "collector"
ORIGIN_ORCHESTRATOR = "orchestrator"


@dataclass(frozen=True)
class CollectRequest:
    existing_uids: list[str] = field(default_factory=list)
    fetch_limit: int | None = None
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": COLLECT_MESSAGE,
            "existingUids": list(self.existing_uids),
            "fetchLimit": self.fetch_limit,
            "requestId": self.request_id,
        }


@dataclass(frozen=True)
class ProgressMessage:
    stage: str
    origin: str = ORIGIN_COLLECTOR
    total: Any = None
    completed: Any = None
    activity_uid: str | None = None
    activity_title: str | None = None
    error: str | None = None
    delta: CollectorDelta | None = None
    timestamp: int = field(default_factory=now_ms)
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": PROGRESS_MESSAGE,
            "origin": self.origin,
            "stage": self.stage,
            "timestamp": self.timestamp,
        }
        if self.total is not None:
            payload["total"] = self.total
        if self.completed is not None:
            payload["completed"] = self.completed
        if self.activity_uid is not None:
            payload["activityUid"] = self.activity_uid
        if self.activity_title is not None:
            payload["activityTitle"] = self.activity_title
        if self.error:
            payload["error"] = self.error
        if self.delta is not None:
            payload["delta"] = self.delta.to_dict()
        if self.request_id is not None:
            payload["requestId"] = self.request_id
        return payload


@dataclass(frozen=True)
class ResultMessage:
    success: bool
    data: CollectorPayload | None = None
    error: str | None = None
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": RESULT_MESSAGE, "success": self.success}
        if self.data is not None:
            payload["data"] = self.data.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        if self.request_id is not None:
            payload["requestId"] = self.request_id
        return payload


@dataclass(frozen=True)
class StatusRequest:
    def to_dict(self) -> dict[str, Any]:
        return {"type": STATUS_REQUEST_MESSAGE}


@dataclass(frozen=True)
class RefreshRequest:
    fetch_limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": REFRESH_REQUEST_MESSAGE, "limit": self.fetch_limit}


@dataclass(frozen=True)
class StatusChanged:
    in_progress: bool
    progress: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": STATUS_CHANGED_MESSAGE, "inProgress": self.in_progress, "progress": self.progress}


@dataclass(frozen=True)
class ProgressBroadcast:
    progress: dict[str, Any]
    origin: str = ORIGIN_ORCHESTRATOR

    def to_dict(self) -> dict[str, Any]:
        return {"type": PROGRESS_BROADCAST_MESSAGE, "origin": self.origin, "progress": self.progress}


Message = Union[
    CollectRequest,
    ProgressMessage,
    ResultMessage,
    StatusRequest,
    RefreshRequest,
    StatusChanged,
    ProgressBroadcast,
]


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _parse_collect(raw: dict[str, Any]) -> CollectRequest:
    uids = raw.get("existingUids")
    existing = [uid for uid in uids if isinstance(uid, str)] if isinstance(uids, list) else []
    return CollectRequest(
        existing_uids=existing,
        fetch_limit=sanitize_fetch_limit(raw.get("fetchLimit")),
        request_id=_optional_str(raw.get("requestId")),
    )


def _parse_progress(raw: dict[str, Any]) -> ProgressMessage:
    stage = raw.get("stage")
    timestamp = raw.get("timestamp")
    return ProgressMessage(
        stage=stage if isinstance(stage, str) else "unknown",
        origin=_optional_str(raw.get("origin")) or "",
        total=raw.get("total"),
        completed=raw.get("completed"),
        activity_uid=_optional_str(raw.get("activityUid")),
        activity_title=_optional_str(raw.get("activityTitle")),
        error=_optional_str(raw.get("error")),
        delta=CollectorDelta.from_dict(raw.get("delta")),
        timestamp=timestamp if isinstance(timestamp, int) else now_ms(),
        request_id=_optional_str(raw.get("requestId")),
    )


def _parse_result(raw: dict[str, Any]) -> ResultMessage:
    return ResultMessage(
        success=raw.get("success") is True,
        data=CollectorPayload.from_dict(raw.get("data")),
        error=_optional_str(raw.get("error")),
        request_id=_optional_str(raw.get("requestId")),
    )


def _parse_refresh(raw: dict[str, Any]) -> RefreshRequest:
    return RefreshRequest(fetch_limit=sanitize_fetch_limit(raw.get("limit")))


def _parse_status_changed(raw: dict[str, Any]) -> StatusChanged:
    progress = raw.get("progress")
    return StatusChanged(
        in_progress=bool(raw.get("inProgress")),
        progress=progress if isinstance(progress, dict) else None,
    )


def _parse_progress_broadcast(raw: dict[str, Any]) -> ProgressBroadcast:
    progress = raw.get("progress")
    return ProgressBroadcast(
        progress=progress if isinstance(progress, dict) else {},
        origin=_optional_str(raw.get("origin")) or ORIGIN_ORCHESTRATOR,
    )


_PARSERS = {
    COLLECT_MESSAGE: _parse_collect,
    PROGRESS_MESSAGE: _parse_progress,
    RESULT_MESSAGE: _parse_result,
    STATUS_REQUEST_MESSAGE: lambda _raw: StatusRequest(),
    REFRESH_REQUEST_MESSAGE: _parse_refresh,
    STATUS_CHANGED_MESSAGE: _parse_status_changed,
    PROGRESS_BROADCAST_MESSAGE: _parse_progress_broadcast,
}


def parse_message(raw: Any) -> Message:
    if not isinstance(raw, dict):
        raise UnknownMessageError(f"Message must be an object, got {type(raw).__name__}.")
    message_type = raw.get("type")
    parser = _PARSERS.get(message_type) if isinstance(message_type, str) else None
    if parser is None:
        raise UnknownMessageError(f"Unknown message type: {message_type!r}")
    return parser(raw)
