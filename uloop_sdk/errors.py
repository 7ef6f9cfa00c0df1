"""Error taxonomy and transport-failure classification.

Every failure the client can surface falls into one of four kinds:

    ConfigurationError           bad or missing port/settings, fatal at startup
    UnityConnectionError family  the channel is unreachable or went away
    UnityOperationError          Unity ran the operation and reported failure
    UnityTimeoutError family     Unity never answered within a bound

Only transport disconnects feed the recovery paths. Use
``is_transport_disconnect()`` to tell them apart from everything else:

    try:
        result = await connection.send_request("compile", params)
    except Exception as e:
        if is_transport_disconnect(e):
            ...  # poll the result store / run recovery
        raise
"""

from typing import Any, Optional


# Raised when the host closed the socket before answering.
NO_RESPONSE_SENTINEL = "UNITY_NO_RESPONSE"

CONNECTION_LOST_PREFIX = "Connection lost"

# Socket error codes that mean the peer tore the connection down mid-flight.
_DISCONNECT_CODES = ("ECONNRESET", "EPIPE")


class UloopError(Exception):
    """Base class for all client errors."""


class ConfigurationError(UloopError):
    """Configuration is missing or invalid (e.g. UNITY_TCP_PORT)."""


class UnityConnectionError(UloopError, ConnectionError):
    """The TCP channel to Unity could not be used."""


class NotConnectedError(UnityConnectionError):
    """A request was attempted on a handle with no live socket."""

    def __init__(self, message: str = "Unity is not connected"):
        super().__init__(message)


class ConnectionLostError(UnityConnectionError):
    """The socket broke while a request was in flight."""


class NoResponseError(UnityConnectionError):
    """Unity closed the socket without answering a pending request."""

    def __init__(self, message: str = NO_RESPONSE_SENTINEL):
        super().__init__(message)


class UnityOperationError(UloopError):
    """Unity executed an operation and reported a failure.

    ``str(error)`` is ``"Unity error: <host text>"``; the host's own text is
    kept verbatim in ``host_message``.
    """

    def __init__(self, host_message: str, data: Any = None):
        self.host_message = host_message
        self.data = data
        super().__init__(f"Unity error: {host_message}")


class UnityTimeoutError(UloopError, TimeoutError):
    """Unity did not respond within a bound."""


class RequestTimeoutError(UnityTimeoutError):
    """A single request received no response within its timeout."""


class InitializationTimeoutError(UnityTimeoutError):
    """Session initialization gave up waiting for the connection."""


class OperationOutcomeUnknownError(UnityTimeoutError):
    """A state-losing operation's result never arrived through any channel."""

    def __init__(self, operation: str, correlation_id: str, waited: float):
        self.operation = operation
        self.correlation_id = correlation_id
        self.waited = waited
        super().__init__(
            f"Outcome of '{operation}' (request {correlation_id}) is unknown "
            f"after waiting {waited:.1f}s for Unity to recover. "
            "Retry the operation or inspect the Unity logs."
        )


class ReceiverNotRunningError(UloopError):
    """The push-notification receiver has not been started."""


# =============================================================================
# Classification
# =============================================================================

def is_transport_disconnect(error: Any) -> bool:
    """Return True if ``error`` means the channel itself went away.

    ``ConnectionLostError`` and ``NoResponseError`` always are, whichever side
    closed the socket. Other errors are matched by message. Host-reported
    failures ("Unity error: ...") and connection refusals before dispatch
    ("connect ECONNREFUSED ...") are not disconnects. Anything that
    is not an exception instance is never a disconnect.
    """
    if not isinstance(error, BaseException):
        return False

    # The handle raises these only after the socket went away under a request.
    if isinstance(error, (ConnectionLostError, NoResponseError)):
        return True

    message = str(error)
    if message == NO_RESPONSE_SENTINEL:
        return True

    if message.startswith(CONNECTION_LOST_PREFIX):
        return any(code in message for code in _DISCONNECT_CODES)

    return False


def is_unreachable(error: Any) -> bool:
    """True for failures a user should read as "is Unity running?"."""
    return isinstance(error, (UnityConnectionError, UnityTimeoutError)) or \
        is_transport_disconnect(error)


def describe_error(error: BaseException, port: Optional[int] = None) -> str:
    """Render an error for humans.

    Connection and timeout failures become a hint that Unity is not reachable.
    Operation failures are shown with the host's text unchanged.
    """
    if isinstance(error, UnityOperationError):
        return error.host_message
    if isinstance(error, ConfigurationError):
        return f"Configuration error: {error}"
    if is_unreachable(error):
        where = f" on port {port}" if port else ""
        return f"Cannot reach Unity{where}. Is it running? ({error})"
    return str(error)


__all__ = [
    "NO_RESPONSE_SENTINEL",
    "CONNECTION_LOST_PREFIX",
    "UloopError",
    "ConfigurationError",
    "UnityConnectionError",
    "NotConnectedError",
    "ConnectionLostError",
    "NoResponseError",
    "UnityOperationError",
    "UnityTimeoutError",
    "RequestTimeoutError",
    "InitializationTimeoutError",
    "OperationOutcomeUnknownError",
    "ReceiverNotRunningError",
    "is_transport_disconnect",
    "is_unreachable",
    "describe_error",
]
