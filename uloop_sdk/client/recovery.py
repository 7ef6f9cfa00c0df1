"""Connection recovery for the Unity channel.

Unity drops every socket during a domain reload. Anything that notices a
failure (a push notification, a transport error, a CLI retry) calls
``ConnectionRecovery.run()``, which health-checks the current connection and,
if needed, reconnects the shared handle.

Usage:
    recovery = ConnectionRecovery(connection, on_reconnected=refresh_tools)

    outcome = await recovery.run()
    if outcome.reason is RecoveryReason.UNITY_NOT_FOUND:
        print("Unity is not running yet")

Outcomes:
    SUCCESS              reconnected; ``outcome.port`` is the new target
    ALREADY_HEALTHY      the connection answered the probe; nothing done
    ALREADY_IN_PROGRESS  another run is active
    UNITY_NOT_FOUND      nothing is listening on the configured port
    ERROR                configuration error or unexpected failure
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from uloop_sdk.client.config import ClientConfig, RecoveryConfig, resolve_unity_port
from uloop_sdk.client.connection import UnityConnection
from uloop_sdk.errors import ConfigurationError, UnityConnectionError

logger = logging.getLogger(__name__)


class RecoveryReason(str, Enum):
    SUCCESS = "success"
    ALREADY_HEALTHY = "already_healthy"
    ALREADY_IN_PROGRESS = "already_in_progress"
    UNITY_NOT_FOUND = "unity_not_found"
    ERROR = "error"


@dataclass(frozen=True)
class RecoveryOutcome:
    """Result of one recovery run.

    Attributes:
        reason: Which outcome this is.
        port: Port reconnected to (SUCCESS) or tried (UNITY_NOT_FOUND).
        error_message: Description for ERROR and UNITY_NOT_FOUND.
    """
    reason: RecoveryReason
    port: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.reason is RecoveryReason.SUCCESS

    @property
    def is_usable(self) -> bool:
        """True when the connection can be used right after this run."""
        return self.reason in (RecoveryReason.SUCCESS, RecoveryReason.ALREADY_HEALTHY)

    @classmethod
    def success(cls, port: int) -> "RecoveryOutcome":
        return cls(RecoveryReason.SUCCESS, port=port)

    @classmethod
    def already_healthy(cls) -> "RecoveryOutcome":
        return cls(RecoveryReason.ALREADY_HEALTHY)

    @classmethod
    def already_in_progress(cls) -> "RecoveryOutcome":
        return cls(RecoveryReason.ALREADY_IN_PROGRESS)

    @classmethod
    def unity_not_found(cls, port: int, message: str) -> "RecoveryOutcome":
        return cls(RecoveryReason.UNITY_NOT_FOUND, port=port, error_message=message)

    @classmethod
    def error(cls, message: str) -> "RecoveryOutcome":
        return cls(RecoveryReason.ERROR, error_message=message)


class RecoveryState(str, Enum):
    """Step the orchestrator is currently in."""
    IDLE = "idle"
    CHECKING = "checking"
    RESOLVING = "resolving"
    RECONNECTING = "reconnecting"


ReconnectedCallback = Callable[[int], Awaitable[Any]]
StatusCallback = Callable[[RecoveryState], None]


class ConnectionRecovery:
    """Health-check and reconnect the shared UnityConnection.

    One run at a time: a call made while another is active returns
    ALREADY_IN_PROGRESS instead of racing it. A run never opens a second
    socket; the handle is forced to DISCONNECTED before reconnecting.
    """

    def __init__(
        self,
        connection: UnityConnection,
        config: Optional[RecoveryConfig] = None,
        client_config: Optional[ClientConfig] = None,
        on_reconnected: Optional[ReconnectedCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            connection: The one handle to recover.
            config: Probe count and timeout.
            client_config: Used to resolve the port when UNITY_TCP_PORT is
                not set in the environment.
            on_reconnected: Awaited with the port after a reconnect. Its
                failure is logged and does not change the outcome.
            on_status_change: Called on every state transition.
            environ: Environment mapping, defaults to os.environ.
        """
        self._connection = connection
        self._config = config or (client_config.recovery if client_config else RecoveryConfig())
        self._client_config = client_config
        self._on_reconnected = on_reconnected
        self._on_status_change = on_status_change
        self._environ = environ

        self._state = RecoveryState.IDLE
        self._in_progress = False
        self._last_outcome: Optional[RecoveryOutcome] = None

    @property
    def state(self) -> RecoveryState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def last_outcome(self) -> Optional[RecoveryOutcome]:
        return self._last_outcome

    def set_on_reconnected(self, callback: Optional[ReconnectedCallback]) -> None:
        self._on_reconnected = callback

    def _transition_to(self, state: RecoveryState) -> None:
        if state == self._state:
            return
        logger.debug(f"Recovery state: {self._state.value} -> {state.value}")
        self._state = state
        if self._on_status_change:
            try:
                self._on_status_change(state)
            except Exception as e:
                logger.warning(f"Error in status callback: {e}")

    async def run(self) -> RecoveryOutcome:
        """Run one recovery attempt and report what happened."""
        if self._in_progress:
            logger.debug("Recovery already in progress")
            return RecoveryOutcome.already_in_progress()

        self._in_progress = True
        try:
            outcome = await self._run()
        except Exception as e:
            logger.error(f"Unexpected error during recovery: {e}", exc_info=True)
            outcome = RecoveryOutcome.error(str(e))
        finally:
            self._in_progress = False
            self._transition_to(RecoveryState.IDLE)

        self._last_outcome = outcome
        logger.info(f"Recovery finished: {outcome.reason.value}")
        return outcome

    async def _run(self) -> RecoveryOutcome:
        if self._connection.connected:
            self._transition_to(RecoveryState.CHECKING)
            if await self._is_healthy():
                return RecoveryOutcome.already_healthy()
            logger.info("Unity connection is unhealthy, reconnecting")

        self._transition_to(RecoveryState.RESOLVING)
        try:
            port = resolve_unity_port(self._client_config, self._environ)
        except ConfigurationError as e:
            logger.error(f"Cannot recover connection: {e}")
            return RecoveryOutcome.error(str(e))

        self._transition_to(RecoveryState.RECONNECTING)
        if self._connection.connected:
            await self._connection.disconnect()

        previous_port = self._connection.port
        self._connection.update_port(port)
        try:
            await self._connection.connect("ConnectionRecovery")
        except UnityConnectionError as e:
            logger.info(f"Unity not found on port {port}: {e}")
            if previous_port is not None and previous_port != port:
                self._connection.update_port(previous_port)
            return RecoveryOutcome.unity_not_found(port, str(e))

        await self._notify_reconnected(port)
        return RecoveryOutcome.success(port)

    async def _is_healthy(self) -> bool:
        """Probe the connection; timeouts and errors count as unhealthy."""
        for attempt in range(1, self._config.health_check_attempts + 1):
            try:
                healthy = await asyncio.wait_for(
                    self._connection.test_connection(self._config.health_check_timeout),
                    timeout=self._config.health_check_timeout,
                )
            except asyncio.TimeoutError:
                healthy = False
            except Exception as e:
                logger.debug(f"Health check raised: {e}")
                healthy = False
            if healthy:
                return True
            logger.debug(
                f"Health check {attempt}/{self._config.health_check_attempts} failed"
            )
        return False

    async def _notify_reconnected(self, port: int) -> None:
        if self._on_reconnected is None:
            return
        try:
            await self._on_reconnected(port)
        except Exception as e:
            logger.warning(f"Error in on_reconnected callback: {e}", exc_info=True)


__all__ = [
    "RecoveryReason",
    "RecoveryOutcome",
    "RecoveryState",
    "ConnectionRecovery",
]
