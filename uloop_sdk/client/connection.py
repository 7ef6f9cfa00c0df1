"""TCP connection handle for the Unity bridge.

One ``UnityConnection`` owns the single socket to Unity. Requests are
JSON-RPC 2.0 messages framed with a Content-Length header; responses are
matched back to their callers by request id, so several requests may be in
flight at once (no ordering guarantee between them).

Usage:
    from uloop_sdk.client import UnityConnection

    connection = UnityConnection(port=8700)
    connection.events.on("disconnected", lambda reason: print(reason))

    await connection.connect()
    result = await connection.send_request("get-logs", {"MaxCount": 10})
    await connection.disconnect()

Failure shapes (see uloop_sdk.errors):
    NotConnectedError    send_request() with no live socket, raised at once
    UnityConnectionError connect() could not reach Unity (ECONNREFUSED, ...)
    ConnectionLostError  "Connection lost: read ECONNRESET" while in flight
    NoResponseError      "UNITY_NO_RESPONSE", Unity closed without answering
    UnityOperationError  Unity answered with an error
    RequestTimeoutError  no answer within the request timeout
"""

import asyncio
import errno
import logging
import os
import random
import time
from enum import Enum
from typing import Any, Dict, Optional

from uloop_sdk.client.config import ConnectionConfig, DEFAULT_HOST
from uloop_sdk.errors import (
    CONNECTION_LOST_PREFIX,
    ConfigurationError,
    ConnectionLostError,
    NoResponseError,
    NotConnectedError,
    RequestTimeoutError,
    UnityConnectionError,
    UnityOperationError,
)
from uloop_sdk.events import Endpoint, EventEmitter
from uloop_sdk.framing import ContentLengthDecoder, encode_frame

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
READ_CHUNK_SIZE = 64 * 1024

CONNECTION_TEST_MESSAGE = "connection_test"

# Methods Unity may send without an id on the request socket.
NOTIFICATION_METHODS = {
    "TOOLS_LIST_CHANGED": "notifications/tools/list_changed",
    "SERVER_SHUTDOWN": "notifications/server/shutdown",
}


class ConnectionState(str, Enum):
    """State of the request/response socket."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _errno_name(error: OSError) -> str:
    """Short code for a socket error, e.g. ECONNRESET."""
    if isinstance(error, ConnectionResetError):
        return "ECONNRESET"
    if isinstance(error, BrokenPipeError):
        return "EPIPE"
    if isinstance(error, ConnectionRefusedError):
        return "ECONNREFUSED"
    if error.errno and error.errno in errno.errorcode:
        return errno.errorcode[error.errno]
    return type(error).__name__


class RequestIdGenerator:
    """Generates ``ts_<ms>_<pid>_<seed>_<counter>`` request ids.

    Ids stay unique across reconnects and across processes sharing one
    Unity instance.
    """

    def __init__(self):
        self._seed = random.randint(0, 999)
        self._counter = 0

    def next(self) -> str:
        self._counter = (self._counter + 1) % 10000
        timestamp = int(time.time() * 1000)
        return f"ts_{timestamp}_{os.getpid()}_{self._seed}_{self._counter:04d}"


class UnityConnection:
    """The one channel to Unity.

    Connection state is owned here. Other components read ``connected`` /
    ``state`` or subscribe to the ``connected`` and ``disconnected`` events
    on ``events``; they never change it directly.
    """

    def __init__(
        self,
        port: Optional[int] = None,
        host: Optional[str] = None,
        config: Optional[ConnectionConfig] = None,
        events: Optional[EventEmitter] = None,
    ):
        """Initialize the connection handle.

        Args:
            port: Unity bridge port. Falls back to ``config.port``; must be
                set (here or via update_port()) before connecting.
            host: Unity host. Falls back to ``config.host``.
            config: Timeouts and defaults.
            events: Emitter to publish on. A private one is created if omitted.
        """
        self.config = config or ConnectionConfig()
        self.host = host or self.config.host or DEFAULT_HOST
        self.port = port if port is not None else self.config.port
        self.events = events or EventEmitter()

        self._state = ConnectionState.DISCONNECTED
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._decoder = ContentLengthDecoder()
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = RequestIdGenerator()

        self._connect_lock = asyncio.Lock()
        self._connect_task: Optional[asyncio.Task] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        """True while a live socket to Unity is open."""
        return self._state is ConnectionState.CONNECTED

    @property
    def endpoint(self) -> Endpoint:
        if self.port is None:
            raise ConfigurationError("No Unity port configured")
        return Endpoint(self.host, self.port)

    @property
    def pending_count(self) -> int:
        """Requests waiting for a response."""
        return len(self._pending)

    def update_port(self, new_port: int) -> None:
        """Remember a new target port for the next connect()."""
        if new_port != self.port:
            logger.info(f"Unity port updated: {self.port} -> {new_port}")
        self.port = new_port

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self, identity_tag: str = "") -> None:
        """Open the socket to Unity.

        Args:
            identity_tag: Who asked for the connection; only used in logs.

        Raises:
            ConfigurationError: If no port is set.
            UnityConnectionError: If Unity cannot be reached.
        """
        async with self._connect_lock:
            if self.connected:
                return

            endpoint = self.endpoint
            tag = f" ({identity_tag})" if identity_tag else ""
            self._state = ConnectionState.CONNECTING
            logger.debug(f"Connecting to Unity at {endpoint}{tag}")

            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(endpoint.host, endpoint.port),
                    timeout=self.config.connect_timeout,
                )
            except asyncio.TimeoutError as e:
                self._state = ConnectionState.DISCONNECTED
                raise UnityConnectionError(f"connect ETIMEDOUT {endpoint}") from e
            except OSError as e:
                self._state = ConnectionState.DISCONNECTED
                raise UnityConnectionError(f"connect {_errno_name(e)} {endpoint}") from e
            except BaseException:
                self._state = ConnectionState.DISCONNECTED
                raise

            self._reader = reader
            self._writer = writer
            self._decoder = ContentLengthDecoder()
            self._state = ConnectionState.CONNECTED
            self._reader_task = asyncio.create_task(
                self._read_loop(reader), name=f"unity-reader:{endpoint}"
            )

        logger.info(f"Connected to Unity at {endpoint}{tag}")
        self.events.emit("connected", endpoint)

    async def ensure_connected(self) -> None:
        """Connect unless already connected.

        Concurrent callers share a single connection attempt and all see its
        outcome.
        """
        if self.connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self.connect("ensure_connected"))
            # Mark the exception retrieved even if every waiter was cancelled.
            self._connect_task.add_done_callback(
                lambda t: t.cancelled() or t.exception()
            )
        await asyncio.shield(self._connect_task)

    async def disconnect(self) -> None:
        """Close the socket and fail every pending request."""
        if self._state is ConnectionState.DISCONNECTED and self._writer is None:
            return

        reader_task = self._reader_task
        writer = self._writer
        was_connected = self._teardown(
            ConnectionLostError(f"{CONNECTION_LOST_PREFIX}: disconnected by client")
        )

        if reader_task is not None and reader_task is not asyncio.current_task():
            reader_task.cancel()
            try:
                await reader_task
            except asyncio.CancelledError:
                pass

        if writer is not None:
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"disconnect: error while closing socket: {e}")

        if was_connected:
            logger.info("Disconnected from Unity")
            self.events.emit("disconnected", "disconnected by client")

    def _teardown(self, error: BaseException) -> bool:
        """Drop the socket and fail pending requests with ``error``.

        Returns:
            True if the handle was connected before the call.
        """
        was_connected = self.connected
        self._state = ConnectionState.DISCONNECTED

        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None
        self._reader_task = None
        self._decoder.clear()

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        if pending:
            logger.debug(f"Failed {len(pending)} pending request(s): {error}")

        return was_connected

    def _connection_lost(
        self,
        error: BaseException,
        reason: str,
        reader: Optional[asyncio.StreamReader] = None,
    ) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        if reader is not None and reader is not self._reader:
            # A stale read loop from a previous socket.
            return
        self._teardown(error)
        logger.warning(f"Connection to Unity lost: {reason}")
        self.events.emit("disconnected", reason)

    async def __aenter__(self) -> "UnityConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # =========================================================================
    # Reading
    # =========================================================================

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        """Read frames until the socket closes, dispatching responses."""
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._decoder.feed(chunk)
                for message in self._decoder.messages():
                    self._dispatch(message)
        except OSError as e:
            error = ConnectionLostError(f"{CONNECTION_LOST_PREFIX}: read {_errno_name(e)}")
            self._connection_lost(error, str(error), reader)
            return

        self._connection_lost(NoResponseError(), "closed by Unity", reader)

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object message from Unity: {message!r}")
            return

        msg_id = message.get("id")
        if msg_id is None:
            method = message.get("method")
            if isinstance(method, str):
                logger.debug(f"Notification from Unity: {method}")
                self.events.emit("notification", message)
            else:
                logger.warning("Ignoring message without id or method")
            return

        future = self._pending.pop(str(msg_id), None)
        if future is None:
            logger.debug(f"Response for unknown request {msg_id} (timed out?)")
            return
        if future.done():
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                text = error.get("message") or "Unknown error"
                data = error.get("data")
            else:
                text, data = str(error), None
            future.set_exception(UnityOperationError(text, data))
        else:
            future.set_result(message.get("result"))

    # =========================================================================
    # Requests
    # =========================================================================

    async def send_request(
        self,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its response.

        Args:
            operation: JSON-RPC method name (a Unity tool or bridge command).
            params: Method parameters.
            timeout: Seconds to wait; defaults to ``config.request_timeout``.

        Returns:
            The ``result`` member of the response.

        Raises:
            NotConnectedError: If there is no live socket.
            UnityOperationError: If Unity answered with an error.
            ConnectionLostError / NoResponseError: If the socket went away.
            RequestTimeoutError: If no answer arrived in time.
        """
        if not self.connected or self._writer is None:
            raise NotConnectedError()

        request_id = self._ids.next()
        request = {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "method": operation,
            "params": params or {},
        }
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            self._writer.write(encode_frame(request))
            await self._writer.drain()
        except OSError as e:
            self._pending.pop(request_id, None)
            error = ConnectionLostError(f"{CONNECTION_LOST_PREFIX}: write {_errno_name(e)}")
            self._connection_lost(error, str(error))
            raise error from e

        wait = self.config.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=wait)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Request '{operation}' timed out after {wait}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

    async def test_connection(self, timeout: Optional[float] = None) -> bool:
        """Liveness probe. Never raises and never outlasts its timeout."""
        if not self.connected:
            return False
        wait = self.config.health_check_timeout if timeout is None else timeout
        try:
            await self.send_request("ping", {"Message": CONNECTION_TEST_MESSAGE}, timeout=wait)
            return True
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    # =========================================================================
    # Bridge Commands
    # =========================================================================

    async def ping(self, message: str = "ping") -> Any:
        return await self.send_request("ping", {"Message": message})

    async def register_identity(self, name: str) -> Any:
        """Tell Unity which client is connected (``set-client-name``)."""
        return await self.send_request("set-client-name", {"ClientName": name})

    async def set_push_endpoint(self, endpoint: Endpoint) -> Any:
        """Tell Unity where to send push notifications."""
        return await self.send_request(
            "set-push-notification-endpoint", {"Endpoint": str(endpoint)}
        )

    async def get_tool_details(self, include_development_only: bool = False) -> Any:
        return await self.send_request(
            "get-tool-details", {"IncludeDevelopmentOnly": include_development_only}
        )

    async def execute_operation(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Run a Unity tool and return its result object."""
        return await self.send_request(name, params, timeout=timeout)


__all__ = [
    "ConnectionState",
    "UnityConnection",
    "RequestIdGenerator",
    "NOTIFICATION_METHODS",
    "CONNECTION_TEST_MESSAGE",
]
