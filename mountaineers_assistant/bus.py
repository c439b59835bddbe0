from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable

from .messages import Message


logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


class MessageBus:
    """Fan-out of JSON messages between execution contexts.

    Messages are serialized on publish so no object is shared between the
    publishing context and its listeners. Delivery is at-most-once and a
    failing listener never affects the publisher or the other listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._guard = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._guard:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        with self._guard:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def listener_count(self) -> int:
        with self._guard:
            return len(self._listeners)

    def publish(self, message: Message | dict[str, Any]) -> None:
        raw = message if isinstance(message, dict) else message.to_dict()
        try:
            wire = json.dumps(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Dropping message that is not JSON serializable: %s", exc)
            return

        with self._guard:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(json.loads(wire))
            except Exception:
                logger.exception("Message listener failed for %s message.", raw.get("type"))
