"""Turns push notifications into client actions.

    connection_established   -> recover the connection, then refresh tools
    domain_reload_start      -> log
    domain_reload_recovered  -> recover the connection, then refresh tools
    tools_changed            -> refresh tools
    peer_disconnected        -> drop the request socket if Unity said it is
                                going away (USER_DISCONNECT / UNITY_SHUTDOWN)

Unity may also send ``notifications/tools/list_changed`` on the request
socket; that is routed like ``tools_changed``.

Actions run on a BackgroundTasks group so the receiver's read loop is never
blocked and every failure is logged.
"""

import logging
from typing import Any, Callable, List, Optional

from uloop_sdk.capabilities import CapabilityRefresher
from uloop_sdk.client.connection import NOTIFICATION_METHODS, UnityConnection
from uloop_sdk.client.recovery import ConnectionRecovery
from uloop_sdk.events import (
    DEFAULT_DISCONNECT_REASON,
    PEER_CONNECTED,
    PEER_DISCONNECTED,
    PeerConnected,
    PeerDisconnected,
    ReceivedNotification,
)
from uloop_sdk.push.server import PushNotificationReceiver
from uloop_sdk.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class PushNotificationRouter:
    """Subscribes to a receiver and reacts to what Unity announces."""

    def __init__(
        self,
        receiver: PushNotificationReceiver,
        connection: UnityConnection,
        refresher: CapabilityRefresher,
        recovery: Optional[ConnectionRecovery] = None,
        tasks: Optional[BackgroundTasks] = None,
    ):
        self._receiver = receiver
        self._connection = connection
        self._refresher = refresher
        self._recovery = recovery
        self._tasks = tasks or BackgroundTasks("push-router")
        self._unsubscribe: List[Callable[[], None]] = []

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribe)

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    def attach(self) -> None:
        if self.attached:
            return
        receiver_events = self._receiver.events
        self._unsubscribe = [
            receiver_events.on(PEER_CONNECTED, self._on_peer_connected),
            receiver_events.on(PEER_DISCONNECTED, self._on_peer_disconnected),
            receiver_events.on("connection_established", self._on_connection_established),
            receiver_events.on("domain_reload_start", self._on_domain_reload_start),
            receiver_events.on("domain_reload_recovered", self._on_domain_reload_recovered),
            receiver_events.on("tools_changed", self._on_tools_changed),
            self._connection.events.on("notification", self._on_bridge_notification),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    # =========================================================================
    # Handlers
    # =========================================================================

    def _on_peer_connected(self, event: PeerConnected) -> None:
        logger.info(f"Unity push channel connected: {event.client_id}")

    def _on_peer_disconnected(self, event: PeerDisconnected) -> None:
        logger.info(f"Unity push channel closed: {event.client_id} ({event.reason or 'closed'})")
        if not event.announced:
            return
        if self._connection.connected:
            logger.info(f"Unity is going away ({event.reason or DEFAULT_DISCONNECT_REASON}), disconnecting")
            self._tasks.spawn(self._connection.disconnect(), name="disconnect:unity_going_away")

    def _on_connection_established(self, event: ReceivedNotification) -> None:
        logger.info(f"Unity announced connection: {event.payload.get('endpoint', '?')}")
        self._tasks.spawn(self._recover_and_refresh(), name="recover:connection_established")

    def _on_domain_reload_start(self, event: ReceivedNotification) -> None:
        logger.info("Unity domain reload started")

    def _on_domain_reload_recovered(self, event: ReceivedNotification) -> None:
        logger.info("Unity domain reload finished")
        self._tasks.spawn(self._recover_and_refresh(), name="recover:domain_reload_recovered")

    def _on_tools_changed(self, event: Any) -> None:
        self._tasks.spawn(self._refresh(), name="refresh:tools_changed")

    def _on_bridge_notification(self, message: Any) -> None:
        method = message.get("method") if isinstance(message, dict) else None
        if method == NOTIFICATION_METHODS["TOOLS_LIST_CHANGED"]:
            self._on_tools_changed(message)

    # =========================================================================
    # Actions
    # =========================================================================

    async def _recover_and_refresh(self) -> None:
        if self._recovery is not None:
            outcome = await self._recovery.run()
            if not outcome.is_usable:
                logger.info(f"Skipping tool refresh, recovery returned {outcome.reason.value}")
                return
        await self._refresh()

    async def _refresh(self) -> None:
        outcome = await self._refresher.refresh()
        if outcome.is_success:
            logger.info(f"Tool catalog refreshed ({outcome.count} tools)")
        else:
            logger.info(f"Tool refresh {outcome.reason.value}: {outcome.error_message or ''}")


__all__ = ["PushNotificationRouter"]
