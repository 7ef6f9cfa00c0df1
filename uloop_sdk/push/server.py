"""Push-notification receiver.

Unity connects back to this TCP server to announce events that happen on
its side: the bridge came up, a domain reload started or finished, the tool
list changed, or the editor is going away. Each connection sends
newline-delimited JSON.

Usage:
    from uloop_sdk.push import PushNotificationReceiver

    receiver = PushNotificationReceiver()
    receiver.events.on("tools_changed", on_tools_changed)
    port = await receiver.start()
    await connection.set_push_endpoint(receiver.get_endpoint())

Events published on ``receiver.events``:
    peer_connected           PeerConnected(client_id, address)
    peer_disconnected        PeerDisconnected(client_id, reason, announced)
    push_notification        ReceivedNotification, for every notification
    connection_established   ReceivedNotification
    domain_reload_start      ReceivedNotification
    domain_reload_recovered  ReceivedNotification
    tools_changed            ReceivedNotification
"""

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from uloop_sdk.client.config import PushConfig
from uloop_sdk.errors import ReceiverNotRunningError
from uloop_sdk.events import (
    DISCONNECT_NOTIFICATIONS,
    NOTIFICATION_EVENTS,
    PEER_CONNECTED,
    PEER_DISCONNECTED,
    PUSH_NOTIFICATION,
    Endpoint,
    EventEmitter,
    PeerConnected,
    PeerDisconnected,
    PushNotification,
    ReceivedNotification,
)
from uloop_sdk.framing import LineDecoder

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_client_id() -> str:
    """``unity_<ms>_<9 random chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"unity_{int(time.time() * 1000)}_{suffix}"


@dataclass
class PushPeer:
    """A connected Unity instance."""
    client_id: str
    address: str
    writer: asyncio.StreamWriter
    connected_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    notifications: int = 0
    close_reason: Optional[str] = None
    announced: bool = False


class PushNotificationReceiver:
    """TCP server Unity pushes notifications to.

    Started once per process; start() is idempotent. Peers are tracked
    independently so several Unity connections (e.g. one closing while the
    reloaded one opens) never interfere.
    """

    def __init__(
        self,
        config: Optional[PushConfig] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.config = config or PushConfig()
        self.events = events or EventEmitter()

        self._server: Optional[asyncio.Server] = None
        self._port: Optional[int] = None
        self._peers: Dict[str, PushPeer] = {}
        self._start_lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def client_count(self) -> int:
        return len(self._peers)

    def get_clients(self) -> List[PushPeer]:
        return list(self._peers.values())

    def get_endpoint(self) -> Endpoint:
        """Endpoint Unity should connect to.

        Raises:
            ReceiverNotRunningError: If start() has not been called.
        """
        if self._server is None or self._port is None:
            raise ReceiverNotRunningError("Push notification receiver is not running")
        return Endpoint(self.config.host, self._port)

    async def start(self) -> int:
        """Listen on an ephemeral port and return it.

        Calling start() again while running returns the same port.
        """
        async with self._start_lock:
            if self._server is not None and self._port is not None:
                return self._port

            self._server = await asyncio.start_server(
                self._handle_peer, self.config.host, 0
            )
            self._port = self._server.sockets[0].getsockname()[1]

        logger.info(f"Push notification receiver listening on {self.config.host}:{self._port}")
        return self._port

    async def stop(self) -> None:
        """Close every peer and the listening socket."""
        server = self._server
        if server is None:
            return

        self._server = None
        self._port = None

        for peer in list(self._peers.values()):
            peer.close_reason = peer.close_reason or "receiver stopped"
            peer.writer.close()

        server.close()
        await server.wait_closed()
        logger.info("Push notification receiver stopped")

    async def __aenter__(self) -> "PushNotificationReceiver":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # Peers
    # =========================================================================

    async def _handle_peer(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Read notifications from one Unity connection until it closes."""
        client_id = generate_client_id()
        while client_id in self._peers:
            client_id = generate_client_id()

        peername = writer.get_extra_info("peername")
        address = f"{peername[0]}:{peername[1]}" if peername else "unknown"
        peer = PushPeer(client_id=client_id, address=address, writer=writer)
        self._peers[client_id] = peer

        logger.info(f"Unity push client connected: {client_id} from {address}")
        self.events.emit(PEER_CONNECTED, PeerConnected(client_id, address))

        decoder = LineDecoder()
        try:
            while peer.close_reason is None:
                try:
                    chunk = await asyncio.wait_for(
                        reader.read(READ_CHUNK_SIZE), timeout=self.config.idle_timeout
                    )
                except asyncio.TimeoutError:
                    peer.close_reason = "idle timeout"
                    logger.info(f"Push client {client_id} idle for {self.config.idle_timeout}s, closing")
                    break
                if not chunk:
                    break
                for message in decoder.feed(chunk):
                    self._handle_message(peer, message)
                    if peer.close_reason is not None:
                        # Nothing after a disconnect notification is dispatched.
                        break
        except OSError as e:
            logger.warning(f"Push client {client_id} socket error: {e}")
            peer.close_reason = peer.close_reason or str(e)
        finally:
            self._peers.pop(client_id, None)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Push client {client_id} close error: {e}")

            logger.info(f"Unity push client disconnected: {client_id}")
            self.events.emit(
                PEER_DISCONNECTED,
                PeerDisconnected(client_id, peer.close_reason, peer.announced),
            )

    def _handle_message(self, peer: PushPeer, message: object) -> None:
        try:
            notification = PushNotification.from_dict(message)
        except ValueError as e:
            logger.warning(f"Dropping invalid notification from {peer.client_id}: {e}")
            return

        peer.notifications += 1
        received = ReceivedNotification(peer.client_id, notification)
        logger.debug(f"Push notification from {peer.client_id}: {notification.type_name}")

        self.events.emit(PUSH_NOTIFICATION, received)

        if not notification.known:
            logger.warning(f"Unknown push notification type: {notification.type_name}")
            return

        if notification.type in DISCONNECT_NOTIFICATIONS:
            peer.close_reason = notification.disconnect_reason()
            peer.announced = True
            logger.info(f"Unity is disconnecting ({peer.client_id}): {peer.close_reason}")
            return

        self.events.emit(NOTIFICATION_EVENTS[notification.type], received)


__all__ = [
    "PushNotificationReceiver",
    "PushPeer",
    "generate_client_id",
]
