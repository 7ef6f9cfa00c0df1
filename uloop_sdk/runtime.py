"""Wires every component around one Unity connection.

``UnitySession`` is the process-level owner: it constructs the connection
handle once and passes it to the receiver, refresher, coordinator, recovery
orchestrator and router. Nothing here is global.

Usage:
    config = load_client_config()
    async with UnitySession(config) as session:
        for tool in session.list_tools():
            print(tool.name)
        result = await session.call_tool("compile", {"ForceRecompile": True})
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from uloop_sdk.capabilities import CapabilityRefresher, DynamicTool, RefreshOutcome
from uloop_sdk.client.config import ClientConfig, resolve_unity_port
from uloop_sdk.client.connection import UnityConnection
from uloop_sdk.client.recovery import ConnectionRecovery, RecoveryOutcome
from uloop_sdk.compile import (
    FileResultStore,
    StateLosingOperationCoordinator,
    find_unity_project_root,
)
from uloop_sdk.errors import UnityOperationError, is_transport_disconnect
from uloop_sdk.events import EventEmitter
from uloop_sdk.push.router import PushNotificationRouter
from uloop_sdk.push.server import PushNotificationReceiver
from uloop_sdk.session import SessionDescriptor, SessionInitializer
from uloop_sdk.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class UnitySession:
    """One client session against one Unity editor."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        project_root: Optional[Union[str, Path]] = None,
        client_name: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """Build the components. Nothing touches the network until start().

        Args:
            config: Client configuration; defaults are used if omitted.
            project_root: Unity project holding the compile result store.
                Looked up from the working directory when omitted; without
                one, compile results are only taken from the direct response.
            client_name: Name registered with Unity.
            environ: Environment mapping, defaults to os.environ.
        """
        self.config = config or ClientConfig()
        self.client_name = client_name
        self._environ = environ

        self.tasks = BackgroundTasks("session")
        self.connection = UnityConnection(
            config=self.config.connection, events=EventEmitter(self.tasks)
        )
        self.receiver = PushNotificationReceiver(
            config=self.config.push, events=EventEmitter(self.tasks)
        )

        root = Path(project_root) if project_root else find_unity_project_root()
        self.coordinator: Optional[StateLosingOperationCoordinator] = None
        if root is not None:
            self.coordinator = StateLosingOperationCoordinator(
                self.connection, FileResultStore(root), self.config.compile
            )
        else:
            logger.debug("No Unity project root found, compile results come from responses only")

        self.refresher = CapabilityRefresher(
            self.connection,
            include_development_only=self.config.client.include_development_only,
            coordinator=self.coordinator,
        )
        self.recovery = ConnectionRecovery(
            self.connection,
            client_config=self.config,
            on_reconnected=self._on_reconnected,
            environ=environ,
        )
        self.router = PushNotificationRouter(
            self.receiver, self.connection, self.refresher, self.recovery, self.tasks
        )
        self.initializer = SessionInitializer(
            self.connection, self.receiver, self.refresher, self.config
        )

        self.descriptor: Optional[SessionDescriptor] = None
        self._discovery: Optional[asyncio.Task] = None
        self._unsubscribe_disconnected: Optional[Callable[[], None]] = None

    @property
    def started(self) -> bool:
        return self.descriptor is not None

    async def start(self) -> SessionDescriptor:
        """Resolve the port, start the push receiver and initialize.

        Raises:
            ConfigurationError: If the Unity port cannot be resolved.
            InitializationTimeoutError: If Unity is not reachable in time.
        """
        if self.descriptor is not None:
            return self.descriptor

        self.connection.update_port(resolve_unity_port(self.config, self._environ))
        await self.receiver.start()
        self.router.attach()
        self.descriptor = await self.initializer.initialize(self.client_name)
        self._unsubscribe_disconnected = self.connection.events.on(
            "disconnected", self._on_disconnected
        )
        return self.descriptor

    async def close(self) -> None:
        """Stop background work, then the receiver, then the connection."""
        if self._unsubscribe_disconnected is not None:
            self._unsubscribe_disconnected()
            self._unsubscribe_disconnected = None
        self.router.detach()
        await self.tasks.cancel_all()
        self._discovery = None
        await self.receiver.stop()
        await self.connection.disconnect()
        self.descriptor = None
        logger.debug("Unity session closed")

    async def __aenter__(self) -> "UnitySession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Tools
    # =========================================================================

    def list_tools(self) -> List[DynamicTool]:
        return self.refresher.list_tools()

    async def refresh_tools(self) -> RefreshOutcome:
        return await self.refresher.refresh()

    async def recover(self) -> RecoveryOutcome:
        return await self.recovery.run()

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke a tool from the current catalog.

        A transport disconnect triggers one recovery run so the next call
        finds a live channel; the original error is still raised.

        Raises:
            UnityOperationError: If the tool is unknown or Unity reports an error.
        """
        tool = self.refresher.get_tool(name)
        if tool is None:
            raise UnityOperationError(f"Unknown tool: {name}")

        if not self.connection.connected:
            await self.recovery.run()
            if not self.connection.connected:
                # Another recovery run may still be reconnecting.
                await self.connection.ensure_connected()

        try:
            return await tool.invoke(arguments)
        except Exception as e:
            if not is_transport_disconnect(e):
                raise
            logger.info(f"Connection lost while running '{name}', recovering")
            outcome = await self.recovery.run()
            logger.info(f"Recovery after '{name}': {outcome.reason.value}")
            raise

    async def ping(self, message: str = "ping") -> Any:
        await self.connection.ensure_connected()
        return await self.connection.ping(message)

    # =========================================================================
    # Reconnection
    # =========================================================================

    @property
    def discovering(self) -> bool:
        """True while the reconnect loop is running."""
        return self._discovery is not None and not self._discovery.done()

    def _on_disconnected(self, reason: str) -> None:
        if self.discovering:
            return
        logger.info(f"Unity connection dropped ({reason}), starting reconnect loop")
        self._discovery = self.tasks.spawn(self._discover(), name="discovery")

    async def _discover(self) -> None:
        """Run recovery every ``discovery_interval`` until Unity is back."""
        interval = self.config.recovery.discovery_interval
        attempts = 0
        while True:
            await asyncio.sleep(interval)
            if self.connection.connected:
                return
            attempts += 1
            outcome = await self.recovery.run()
            if outcome.is_usable:
                logger.info(f"Reconnected to Unity after {attempts} attempt(s)")
                await self.refresher.refresh()
                return
            logger.debug(f"Reconnect attempt {attempts}: {outcome.reason.value}")

    async def _on_reconnected(self, port: int) -> None:
        # A reloaded domain has forgotten where to push. The client name is
        # registered once per session by the initializer and not repeated.
        if not self.receiver.is_running:
            return
        endpoint = self.receiver.get_endpoint()
        logger.debug(f"Re-advertising push endpoint {endpoint} after reconnect to port {port}")
        await self.connection.set_push_endpoint(endpoint)


__all__ = ["UnitySession"]
