"""Push-notification protocol types and the in-process event emitter.

Unity connects back to the client's push receiver and writes one JSON object
per line:

    {"type": "DOMAIN_RELOAD", "timestamp": "2025-01-01T00:00:00Z", "payload": {...}}

Those lines are parsed into ``PushNotification`` values, republished through
an ``EventEmitter`` and then discarded.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from uloop_sdk.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


# =============================================================================
# Endpoint
# =============================================================================

@dataclass(frozen=True)
class Endpoint:
    """One side of a channel. Recompute instead of mutating."""
    host: str
    port: int
    protocol: str = "tcp"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str, protocol: str = "tcp") -> "Endpoint":
        """Parse ``host:port``."""
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"Invalid endpoint: {value!r}")
        return cls(host=host, port=int(port), protocol=protocol)


# =============================================================================
# Notification Types
# =============================================================================

class PushNotificationType(str, Enum):
    """Notification types Unity sends on the push channel."""

    CONNECTION_ESTABLISHED = "CONNECTION_ESTABLISHED"
    DOMAIN_RELOAD = "DOMAIN_RELOAD"
    DOMAIN_RELOAD_RECOVERED = "DOMAIN_RELOAD_RECOVERED"
    USER_DISCONNECT = "USER_DISCONNECT"
    UNITY_SHUTDOWN = "UNITY_SHUTDOWN"
    TOOLS_CHANGED = "TOOLS_CHANGED"


# Type-specific event names published alongside the generic one.
NOTIFICATION_EVENTS: Dict[PushNotificationType, str] = {
    PushNotificationType.CONNECTION_ESTABLISHED: "connection_established",
    PushNotificationType.DOMAIN_RELOAD: "domain_reload_start",
    PushNotificationType.DOMAIN_RELOAD_RECOVERED: "domain_reload_recovered",
    PushNotificationType.TOOLS_CHANGED: "tools_changed",
}

# Notifications that mean Unity is going away on purpose.
DISCONNECT_NOTIFICATIONS = frozenset({
    PushNotificationType.USER_DISCONNECT,
    PushNotificationType.UNITY_SHUTDOWN,
})

PUSH_NOTIFICATION = "push_notification"
PEER_CONNECTED = "peer_connected"
PEER_DISCONNECTED = "peer_disconnected"

DEFAULT_DISCONNECT_REASON = "Unknown disconnect reason"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PushNotification:
    """A parsed push notification.

    ``type`` is a PushNotificationType for known types and the raw string
    otherwise, so unknown notifications can still be republished.
    """
    type: Any
    timestamp: str = field(default_factory=_now_iso)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def known(self) -> bool:
        return isinstance(self.type, PushNotificationType)

    @property
    def type_name(self) -> str:
        return self.type.value if self.known else str(self.type)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type_name, "timestamp": self.timestamp}
        if self.payload:
            d["payload"] = self.payload
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushNotification":
        """Build a notification from a decoded line.

        Raises:
            ValueError: If ``data`` is not an object with a string ``type``.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Notification must be an object, got {type(data).__name__}")
        raw_type = data.get("type")
        if not isinstance(raw_type, str) or not raw_type:
            raise ValueError("Notification has no 'type'")

        try:
            notification_type: Any = PushNotificationType(raw_type)
        except ValueError:
            notification_type = raw_type

        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        timestamp = data.get("timestamp")
        return cls(
            type=notification_type,
            timestamp=timestamp if isinstance(timestamp, str) else _now_iso(),
            payload=payload,
        )

    def disconnect_reason(self) -> str:
        """Why Unity is going away.

        Unity sends ``reason`` as ``{"type": ..., "message": ...}``; older
        bridges send a bare string.
        """
        reason = self.payload.get("reason")
        if isinstance(reason, Mapping):
            reason = reason.get("message") or reason.get("type")
        return reason if isinstance(reason, str) and reason else DEFAULT_DISCONNECT_REASON


# =============================================================================
# Emitted Event Payloads
# =============================================================================

@dataclass(frozen=True)
class PeerConnected:
    client_id: str
    address: str


@dataclass(frozen=True)
class PeerDisconnected:
    """``announced`` is True when Unity said it was leaving before closing."""
    client_id: str
    reason: Optional[str] = None
    announced: bool = False


@dataclass(frozen=True)
class ReceivedNotification:
    """A notification together with the peer that sent it."""
    client_id: str
    notification: PushNotification

    @property
    def payload(self) -> Dict[str, Any]:
        return self.notification.payload


# =============================================================================
# Emitter
# =============================================================================

Listener = Callable[[Any], Any]


class EventEmitter:
    """Minimal named-event publish/subscribe.

    Listeners are called in subscription order. A listener that returns an
    awaitable is scheduled on the emitter's BackgroundTasks so ``emit()``
    never blocks. A listener that raises is logged and does not stop the
    others.
    """

    def __init__(self, tasks: Optional[BackgroundTasks] = None):
        self._listeners: Dict[str, List[Listener]] = {}
        self._tasks = tasks or BackgroundTasks("events")

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to ``event``.

        Returns:
            A function that removes the subscription.
        """
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def once(self, event: str) -> "asyncio.Future[Any]":
        """Return a future resolved with the next payload of ``event``."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _resolve(payload: Any) -> None:
            self.off(event, _resolve)
            if not future.done():
                future.set_result(payload)

        self.on(event, _resolve)
        return future

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every listener of ``event``.

        Returns:
            Number of listeners invoked.
        """
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                result = listener(payload)
            except Exception as e:
                logger.warning(f"Error in '{event}' listener: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._tasks.spawn(result, name=event)
        return len(listeners)

    def clear(self) -> None:
        self._listeners.clear()


__all__ = [
    "Endpoint",
    "PushNotificationType",
    "NOTIFICATION_EVENTS",
    "DISCONNECT_NOTIFICATIONS",
    "PUSH_NOTIFICATION",
    "PEER_CONNECTED",
    "PEER_DISCONNECTED",
    "DEFAULT_DISCONNECT_REASON",
    "PushNotification",
    "PeerConnected",
    "PeerDisconnected",
    "ReceivedNotification",
    "EventEmitter",
    "Listener",
]
