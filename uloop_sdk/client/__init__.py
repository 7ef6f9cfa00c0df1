"""Request socket, configuration and recovery for the Unity bridge."""

from uloop_sdk.client.config import ClientConfig, load_client_config, resolve_unity_port
from uloop_sdk.client.connection import UnityConnection, ConnectionState
from uloop_sdk.client.recovery import ConnectionRecovery, RecoveryOutcome, RecoveryReason

__all__ = [
    "ClientConfig",
    "load_client_config",
    "resolve_unity_port",
    "UnityConnection",
    "ConnectionState",
    "ConnectionRecovery",
    "RecoveryOutcome",
    "RecoveryReason",
]
