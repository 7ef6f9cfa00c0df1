"""uloop SDK - Connection lifecycle and request client for the Unity Editor.

Usage:
    from uloop_sdk import UnitySession

    async with UnitySession() as session:
        tools = session.list_tools()
        result = await session.call_tool("get-logs", {"MaxCount": 10})
"""

__version__ = "0.1.0"

from uloop_sdk.errors import (
    UloopError,
    ConfigurationError,
    UnityConnectionError,
    UnityOperationError,
    UnityTimeoutError,
    OperationOutcomeUnknownError,
    is_transport_disconnect,
    describe_error,
)
from uloop_sdk.events import (
    Endpoint,
    EventEmitter,
    PushNotification,
    PushNotificationType,
)
from uloop_sdk.client import (
    ClientConfig,
    load_client_config,
    UnityConnection,
    ConnectionState,
    ConnectionRecovery,
    RecoveryOutcome,
    RecoveryReason,
)
from uloop_sdk.push import PushNotificationReceiver, PushNotificationRouter
from uloop_sdk.capabilities import CapabilityRefresher, DynamicTool, RefreshOutcome
from uloop_sdk.compile import FileResultStore, StateLosingOperationCoordinator
from uloop_sdk.session import SessionDescriptor, SessionInitializer
from uloop_sdk.runtime import UnitySession

__all__ = [
    "__version__",
    # Errors
    "UloopError",
    "ConfigurationError",
    "UnityConnectionError",
    "UnityOperationError",
    "UnityTimeoutError",
    "OperationOutcomeUnknownError",
    "is_transport_disconnect",
    "describe_error",
    # Events
    "Endpoint",
    "EventEmitter",
    "PushNotification",
    "PushNotificationType",
    # Client
    "ClientConfig",
    "load_client_config",
    "UnityConnection",
    "ConnectionState",
    "ConnectionRecovery",
    "RecoveryOutcome",
    "RecoveryReason",
    # Push
    "PushNotificationReceiver",
    "PushNotificationRouter",
    # Tools
    "CapabilityRefresher",
    "DynamicTool",
    "RefreshOutcome",
    "FileResultStore",
    "StateLosingOperationCoordinator",
    # Session
    "SessionDescriptor",
    "SessionInitializer",
    "UnitySession",
]
