"""Result recovery for operations that may reload Unity's domain.

A forced recompile makes Unity reload every assembly, which severs the socket
the compile request travelled on. The response to that request is therefore
not a reliable delivery channel. Instead the request carries a correlation id
(``RequestId``) and Unity writes the final result to a durable store keyed by
that id; ``StateLosingOperationCoordinator`` polls the store until the result
shows up or a bounded wait expires.

Usage:
    store = FileResultStore(project_root)
    coordinator = StateLosingOperationCoordinator(connection, store)

    result = await coordinator.execute(
        "compile", {"ForceRecompile": True, "WaitForDomainReload": True}
    )

Ordinary operations pass straight through with no extra work.
"""

import abc
import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from uloop_sdk.client.config import CompileConfig
from uloop_sdk.client.connection import UnityConnection
from uloop_sdk.errors import OperationOutcomeUnknownError, is_transport_disconnect

logger = logging.getLogger(__name__)

COMPILE_OPERATION = "compile"
REQUEST_ID_KEY = "RequestId"

FORCE_RECOMPILE_KEYS = (
    "ForceRecompile",
    "forceRecompile",
    "force_recompile",
    "force-recompile",
)
WAIT_FOR_DOMAIN_RELOAD_KEYS = (
    "WaitForDomainReload",
    "waitForDomainReload",
    "wait_for_domain_reload",
    "wait-for-domain-reload",
)

# Fields Unity adds to stored results for its own bookkeeping.
INTERNAL_RESULT_FIELDS = ("ProjectRoot",)

RESULT_DIR = ("Temp", "uLoopMCP", "compile-results")
BUSY_LOCK_FILES = ("compiling.lock", "domainreload.lock", "serverstarting.lock")


# =============================================================================
# Argument Helpers
# =============================================================================

def to_bool(value: Any) -> bool:
    """``True`` and the string ``"true"`` (any case) are true."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def get_bool_arg(params: Dict[str, Any], keys: Iterable[str], default: bool = False) -> bool:
    """Read a boolean argument under any of its accepted spellings."""
    for key in keys:
        if key in params:
            return to_bool(params[key])
    return default


def is_force_recompile(operation: str, params: Dict[str, Any]) -> bool:
    """A compile that forces a recompile (and so a domain reload).

    Callers can opt out of waiting with ``WaitForDomainReload: false``.
    """
    if operation != COMPILE_OPERATION:
        return False
    if not get_bool_arg(params, FORCE_RECOMPILE_KEYS):
        return False
    return get_bool_arg(params, WAIT_FOR_DOMAIN_RELOAD_KEYS, default=True)


def create_request_id() -> str:
    """``compile_<ms>_<6 digits>``."""
    return f"compile_{int(time.time() * 1000)}_{random.randint(0, 999999):06d}"


def ensure_request_id(params: Dict[str, Any]) -> str:
    """Return the params' RequestId, generating and storing one if absent."""
    existing = params.get(REQUEST_ID_KEY)
    if isinstance(existing, str) and existing:
        return existing
    request_id = create_request_id()
    params[REQUEST_ID_KEY] = request_id
    return request_id


def strip_internal_fields(result: Any) -> Any:
    if not isinstance(result, dict):
        return result
    return {k: v for k, v in result.items() if k not in INTERNAL_RESULT_FIELDS}


# =============================================================================
# Result Stores
# =============================================================================

class ResultStore(abc.ABC):
    """Durable, id-keyed results written by Unity. Eventually consistent."""

    @abc.abstractmethod
    def read(self, correlation_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored result, or None if it is not there (yet)."""

    def is_busy(self) -> bool:
        """True while Unity reports it is compiling or reloading."""
        return False

    def describe(self) -> str:
        """Where results live, for logs."""
        return type(self).__name__


class FileResultStore(ResultStore):
    """Results under ``<project>/Temp/uLoopMCP/compile-results/<id>.json``."""

    def __init__(self, project_root: Union[str, Path]):
        self.project_root = Path(project_root)

    @property
    def results_dir(self) -> Path:
        return self.project_root.joinpath(*RESULT_DIR)

    def result_path(self, correlation_id: str) -> Path:
        return self.results_dir / f"{correlation_id}.json"

    def read(self, correlation_id: str) -> Optional[Dict[str, Any]]:
        path = self.result_path(correlation_id)
        try:
            # utf-8-sig strips the BOM Unity writes.
            content = path.read_text(encoding="utf-8-sig")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Cannot read {path} yet: {e}")
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            # Unity is still writing the file.
            logger.debug(f"Partial result in {path}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object result in {path}")
            return None
        return data

    def describe(self) -> str:
        return str(self.results_dir)

    def is_busy(self) -> bool:
        temp = self.project_root / "Temp"
        return any((temp / name).exists() for name in BUSY_LOCK_FILES)


def find_unity_project_root(start: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Walk up from ``start`` to the directory holding Assets/ and ProjectSettings/."""
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / "Assets").is_dir() and (candidate / "ProjectSettings").is_dir():
            return candidate
    return None


# =============================================================================
# Coordinator
# =============================================================================

@dataclass
class PendingOperation:
    """A dispatched state-losing operation awaiting its outcome."""
    correlation_id: str
    operation: str
    started_at: float = field(default_factory=time.monotonic)
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


StateLosingPredicate = Callable[[str, Dict[str, Any]], bool]

_NO_RESULT = object()


class StateLosingOperationCoordinator:
    """Runs operations, recovering the outcome of reload-triggering ones.

    Non-flagged operations take the fast path: the direct result is returned
    and errors propagate unchanged. Flagged operations get a correlation id
    and, when the socket dies under them, their result is read from the store.
    """

    def __init__(
        self,
        connection: UnityConnection,
        store: ResultStore,
        config: Optional[CompileConfig] = None,
        predicate: Optional[StateLosingPredicate] = None,
    ):
        self._connection = connection
        self._store = store
        self.config = config or CompileConfig()
        self._predicate = predicate or is_force_recompile
        self._pending: Optional[PendingOperation] = None

    @property
    def pending(self) -> Optional[PendingOperation]:
        """The state-losing operation in flight, if any."""
        return self._pending

    def is_state_losing(self, operation: str, params: Dict[str, Any]) -> bool:
        return self._predicate(operation, params)

    async def execute(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run ``operation`` and return its result.

        Raises:
            UnityOperationError: Unity reported the operation failed.
            OperationOutcomeUnknownError: A flagged operation's result never
                arrived, neither directly nor through the store.
            Any dispatch error of a non-flagged operation, unchanged.
        """
        params = dict(params or {})
        if not self.is_state_losing(operation, params):
            return await self._connection.execute_operation(operation, params)

        correlation_id = ensure_request_id(params)
        if operation == COMPILE_OPERATION:
            # Unity only persists a compile result when asked to wait for the reload.
            params[WAIT_FOR_DOMAIN_RELOAD_KEYS[0]] = True
        pending = PendingOperation(
            correlation_id=correlation_id,
            operation=operation,
            context={"store": self._store.describe()},
        )
        self._pending = pending
        logger.info(f"[{correlation_id}] Dispatching state-losing operation '{operation}'")

        try:
            return await self._execute_flagged(pending, params)
        finally:
            self._pending = None

    async def _execute_flagged(self, pending: PendingOperation, params: Dict[str, Any]) -> Any:
        correlation_id = pending.correlation_id
        direct: Any = _NO_RESULT
        error: Optional[Exception] = None
        try:
            direct = await self._connection.execute_operation(pending.operation, params)
        except Exception as e:
            error = e

        if error is not None and not is_transport_disconnect(error):
            raise error

        if direct is not _NO_RESULT and direct is not None:
            if not self._store.is_busy():
                stored = self._store.read(correlation_id)
                if stored is not None:
                    logger.info(f"[{correlation_id}] Using stored result over direct response")
                    return strip_internal_fields(stored)
                return direct

            logger.info(f"[{correlation_id}] Unity is busy after responding, waiting for stored result")
            stored = await self._poll_store(pending)
            return strip_internal_fields(stored) if stored is not None else direct

        if error is not None:
            logger.info(
                f"[{correlation_id}] Connection dropped during '{pending.operation}' "
                f"({error}), polling result store"
            )
        else:
            logger.info(f"[{correlation_id}] No direct result, polling result store")

        stored = await self._poll_store(pending)
        if stored is None:
            raise OperationOutcomeUnknownError(
                pending.operation, correlation_id, pending.elapsed
            ) from error
        return strip_internal_fields(stored)

    async def _poll_store(self, pending: PendingOperation) -> Optional[Dict[str, Any]]:
        """Poll until a settled result appears or a bound expires.

        A stored result is only accepted once Unity's lock files have been
        gone for ``lock_grace_period``; compilation can finish a moment before
        the assembly reload starts. The wait ends early once Unity has been
        connected and idle for ``settle_timeout`` without producing a result.
        One last read is made at the deadline.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.result_timeout
        responsive_since: Optional[float] = None
        idle_since: Optional[float] = None

        while True:
            stored = self._store.read(pending.correlation_id)
            busy = self._store.is_busy()
            now = loop.time()

            if stored is not None and not busy:
                if idle_since is None:
                    idle_since = now
                if now - idle_since >= self.config.lock_grace_period:
                    logger.info(
                        f"[{pending.correlation_id}] Recovered result after {pending.elapsed:.1f}s"
                    )
                    return stored
            else:
                idle_since = None

            if now >= deadline:
                stored = self._store.read(pending.correlation_id)
                if stored is not None:
                    logger.info(f"[{pending.correlation_id}] Took result found at the deadline")
                    return stored
                logger.warning(
                    f"[{pending.correlation_id}] No result after {self.config.result_timeout}s"
                )
                return None

            if stored is None and self._connection.connected and not busy:
                if responsive_since is None:
                    responsive_since = now
                elif now - responsive_since >= self.config.settle_timeout:
                    logger.warning(
                        f"[{pending.correlation_id}] Unity is back but wrote no result "
                        f"within {self.config.settle_timeout}s"
                    )
                    return None
            else:
                responsive_since = None

            await asyncio.sleep(min(self.config.poll_interval, max(deadline - now, 0)))


__all__ = [
    "COMPILE_OPERATION",
    "REQUEST_ID_KEY",
    "FORCE_RECOMPILE_KEYS",
    "WAIT_FOR_DOMAIN_RELOAD_KEYS",
    "INTERNAL_RESULT_FIELDS",
    "to_bool",
    "get_bool_arg",
    "is_force_recompile",
    "create_request_id",
    "ensure_request_id",
    "strip_internal_fields",
    "ResultStore",
    "FileResultStore",
    "find_unity_project_root",
    "PendingOperation",
    "StateLosingOperationCoordinator",
]
