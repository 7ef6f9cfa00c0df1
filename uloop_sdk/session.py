"""One-shot session setup after connecting to Unity.

Steps, all logged under one ``init_...`` correlation id:

1. wait for the connection (bounded; the usual failure is "Unity not running")
2. register this client's name with Unity
3. advertise the push-notification endpoint
4. hand the client name to the capability refresher
5. fetch the tool catalog
6. return a session descriptor

Identity registration happens here and nowhere else.
"""

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from uloop_sdk import __version__
from uloop_sdk.capabilities import CapabilityRefresher
from uloop_sdk.client.config import ClientConfig, resolve_client_name
from uloop_sdk.client.connection import UnityConnection
from uloop_sdk.errors import InitializationTimeoutError, UnityConnectionError
from uloop_sdk.push.server import PushNotificationReceiver

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "uloopmcp-server"

NOT_RUNNING_HINT = "Unity MCP Server is likely stopped or not running"
CONNECT_RETRY_INTERVAL = 0.5

_ID_ALPHABET = string.ascii_lowercase + string.digits


def create_correlation_id() -> str:
    """``init_<ms>_<9 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"init_{int(time.time() * 1000)}_{suffix}"


@dataclass
class SessionDescriptor:
    """What the client tells its own caller about the Unity session."""
    protocol_version: str = PROTOCOL_VERSION
    capabilities: Dict[str, Any] = field(
        default_factory=lambda: {"tools": {"listChanged": True}}
    )
    server_info: Dict[str, str] = field(
        default_factory=lambda: {"name": SERVER_NAME, "version": __version__}
    )
    tools: List[Dict[str, Any]] = field(default_factory=list)
    correlation_id: Optional[str] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "serverInfo": self.server_info,
        }
        if not self.degraded:
            d["tools"] = self.tools
        return d


class SessionInitializer:
    """Runs the post-connect setup sequence."""

    def __init__(
        self,
        connection: UnityConnection,
        receiver: PushNotificationReceiver,
        refresher: CapabilityRefresher,
        config: Optional[ClientConfig] = None,
    ):
        self._connection = connection
        self._receiver = receiver
        self._refresher = refresher
        self._config = config or ClientConfig()

    async def initialize(self, client_name: Optional[str] = None) -> SessionDescriptor:
        """Run every step and return the session descriptor.

        Raises:
            InitializationTimeoutError: If Unity could not be reached within
                ``connection.init_connect_timeout``.
        """
        correlation_id = create_correlation_id()
        name = client_name or resolve_client_name(self._config)
        timeout = self._config.connection.init_connect_timeout

        logger.info(f"[{correlation_id}] Initializing session for client '{name}'")
        await self._wait_for_connection(correlation_id, timeout)

        try:
            logger.debug(f"[{correlation_id}] Registering client name")
            await self._connection.register_identity(name)

            if not self._receiver.is_running:
                await self._receiver.start()
            endpoint = self._receiver.get_endpoint()
            logger.debug(f"[{correlation_id}] Advertising push endpoint {endpoint}")
            await self._connection.set_push_endpoint(endpoint)

            self._refresher.set_client_name(name)

            logger.debug(f"[{correlation_id}] Fetching tool catalog")
            outcome = await self._refresher.refresh()
            if not outcome.is_success:
                logger.warning(
                    f"[{correlation_id}] Tool refresh returned {outcome.reason.value}: "
                    f"{outcome.error_message}"
                )
            tools = [tool.to_dict() for tool in self._refresher.list_tools()]
        except Exception as e:
            logger.error(
                f"[{correlation_id}] Session initialization failed, continuing without tools: {e}",
                exc_info=True,
            )
            return SessionDescriptor(correlation_id=correlation_id, degraded=True)

        logger.info(f"[{correlation_id}] Session initialized with {len(tools)} tools")
        return SessionDescriptor(tools=tools, correlation_id=correlation_id)

    async def _wait_for_connection(self, correlation_id: str, timeout: float) -> None:
        """Retry connecting until connected or ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_error: Optional[Exception] = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(self._connection.ensure_connected(), timeout=remaining)
                logger.debug(f"[{correlation_id}] Connected to Unity")
                return
            except asyncio.TimeoutError:
                break
            except UnityConnectionError as e:
                last_error = e
                await asyncio.sleep(min(CONNECT_RETRY_INTERVAL, max(deadline - loop.time(), 0)))

        detail = f" (last error: {last_error})" if last_error else ""
        logger.error(f"[{correlation_id}] Unity connection timeout after {timeout}s{detail}")
        raise InitializationTimeoutError(
            f"Unity connection timeout after {timeout}s. {NOT_RUNNING_HINT}{detail}"
        ) from last_error


__all__ = [
    "PROTOCOL_VERSION",
    "SERVER_NAME",
    "SessionDescriptor",
    "SessionInitializer",
    "create_correlation_id",
]
