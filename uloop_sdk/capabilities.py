"""Dynamic tool catalog fetched from Unity.

Unity describes its tools at runtime through ``get-tool-details``. Each
entry carries a name, a description, a parameter schema and a
development-only flag:

    {
        "name": "compile",
        "description": "Compile the project",
        "parameterSchema": {
            "Properties": {
                "ForceRecompile": {"Type": "boolean", "DefaultValue": false}
            },
            "Required": []
        },
        "displayDevelopmentOnly": false
    }

``CapabilityRefresher`` turns those entries into ``DynamicTool`` wrappers with
a JSON Schema for their input, and swaps the whole set in one step on every
refresh.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

from uloop_sdk.client.connection import UnityConnection
from uloop_sdk.errors import UnityConnectionError, UnityOperationError, UnityTimeoutError

if TYPE_CHECKING:
    from uloop_sdk.compile import StateLosingOperationCoordinator

logger = logging.getLogger(__name__)


# =============================================================================
# Host Schema Parsing
# =============================================================================

_NUMBER_TYPES = frozenset({"number", "int", "integer", "float", "double", "long", "decimal"})
_BOOLEAN_TYPES = frozenset({"boolean", "bool"})

EMPTY_INPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {},
    "additionalProperties": False,
}


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key; tolerates PascalCase and camelCase spellings."""
    for key in keys:
        if key in data:
            return data[key]
    return default


def convert_type(unity_type: Any) -> str:
    """Map a Unity parameter type name to a JSON Schema type.

    Unknown names become "string" so new Unity types never break the client.
    """
    if not isinstance(unity_type, str):
        return "string"
    name = unity_type.strip().lower()
    if name == "string":
        return "string"
    if name in _NUMBER_TYPES:
        return "number"
    if name in _BOOLEAN_TYPES:
        return "boolean"
    if name == "array":
        return "array"
    return "string"


@dataclass(frozen=True)
class ParameterSpec:
    type: str = "string"
    description: str = ""
    default: Any = None
    enum: Optional[List[Any]] = None
    is_array: bool = False

    def to_schema(self) -> Dict[str, Any]:
        prop: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.is_array:
            prop["items"] = {"type": "string"}
        if self.default is not None:
            prop["default"] = self.default
        if self.enum:
            prop["enum"] = list(self.enum)
        return prop


@dataclass(frozen=True)
class CapabilityDescriptor:
    """One tool as Unity describes it."""
    name: str
    description: str
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)
    development_only: bool = False

    @classmethod
    def from_host(cls, entry: Mapping[str, Any]) -> "CapabilityDescriptor":
        """Parse a ``get-tool-details`` entry.

        Raises:
            ValueError: If the entry has no usable name.
        """
        name = _pick(entry, "name", "Name")
        if not isinstance(name, str) or not name:
            raise ValueError("tool entry has no name")

        description = _pick(entry, "description", "Description")
        if not isinstance(description, str) or not description:
            description = f"Execute Unity tool: {name}"

        schema = _pick(entry, "parameterSchema", "ParameterSchema")
        parameters, required = _parse_parameter_schema(schema)

        dev_only = _pick(entry, "displayDevelopmentOnly", "DisplayDevelopmentOnly", default=False)
        return cls(
            name=name,
            description=description,
            parameters=parameters,
            required=required,
            development_only=bool(dev_only),
        )

    def input_schema(self) -> Dict[str, Any]:
        """JSON Schema for the tool's arguments."""
        if not self.parameters:
            return dict(EMPTY_INPUT_SCHEMA, properties={})
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {name: spec.to_schema() for name, spec in self.parameters.items()},
        }
        if self.required:
            schema["required"] = list(self.required)
        return schema


def _parse_parameter_schema(schema: Any):
    if not isinstance(schema, Mapping):
        return {}, []

    properties = _pick(schema, "Properties", "properties", default={})
    if not isinstance(properties, Mapping):
        properties = {}

    parameters: Dict[str, ParameterSpec] = {}
    for prop_name, info in properties.items():
        if not isinstance(info, Mapping):
            info = {}
        raw_type = _pick(info, "Type", "type")
        json_type = convert_type(raw_type)

        description = _pick(info, "Description", "description")
        if not isinstance(description, str) or not description:
            description = f"Parameter: {prop_name}"

        enum = _pick(info, "Enum", "enum")
        if not isinstance(enum, list) or not enum:
            enum = None

        parameters[prop_name] = ParameterSpec(
            type=json_type,
            description=description,
            default=_pick(info, "DefaultValue", "defaultValue", "default"),
            enum=enum,
            is_array=json_type == "array",
        )

    required = _pick(schema, "Required", "required", default=[])
    if not isinstance(required, list):
        required = []
    required = [r for r in required if isinstance(r, str) and r in parameters]

    return parameters, required


# =============================================================================
# Tool Wrappers
# =============================================================================

class DynamicTool:
    """Client-side wrapper that invokes one Unity tool."""

    def __init__(
        self,
        descriptor: CapabilityDescriptor,
        connection: UnityConnection,
        coordinator: Optional["StateLosingOperationCoordinator"] = None,
    ):
        self.descriptor = descriptor
        self.input_schema = descriptor.input_schema()
        self._connection = connection
        self._coordinator = coordinator

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def description(self) -> str:
        return self.descriptor.description

    async def invoke(self, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Run the tool. Compile-style operations go through the coordinator."""
        params = dict(arguments or {})
        if self._coordinator is not None:
            return await self._coordinator.execute(self.name, params)
        return await self._connection.execute_operation(self.name, params)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }

    def __repr__(self) -> str:
        return f"DynamicTool({self.name!r}, params={list(self.descriptor.parameters)})"


# =============================================================================
# Refresh
# =============================================================================

class RefreshReason(str, Enum):
    SUCCESS = "success"
    ALREADY_IN_PROGRESS = "already_in_progress"
    FETCH_FAILED = "fetch_failed"
    ERROR = "error"


@dataclass(frozen=True)
class RefreshOutcome:
    reason: RefreshReason
    count: int = 0
    error_message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.reason is RefreshReason.SUCCESS

    @classmethod
    def success(cls, count: int) -> "RefreshOutcome":
        return cls(RefreshReason.SUCCESS, count=count)

    @classmethod
    def already_in_progress(cls) -> "RefreshOutcome":
        return cls(RefreshReason.ALREADY_IN_PROGRESS)

    @classmethod
    def fetch_failed(cls, message: str) -> "RefreshOutcome":
        return cls(RefreshReason.FETCH_FAILED, error_message=message)

    @classmethod
    def error(cls, message: str) -> "RefreshOutcome":
        return cls(RefreshReason.ERROR, error_message=message)


CatalogChangedCallback = Callable[[], Any]


class CapabilityRefresher:
    """Owns the current set of DynamicTool wrappers.

    The mapping is replaced wholesale by refresh(); readers always see
    either the old or the new set, never a mix.
    """

    def __init__(
        self,
        connection: UnityConnection,
        include_development_only: bool = False,
        coordinator: Optional["StateLosingOperationCoordinator"] = None,
        on_catalog_changed: Optional[CatalogChangedCallback] = None,
    ):
        self._connection = connection
        self.include_development_only = include_development_only
        self._coordinator = coordinator
        self._on_catalog_changed = on_catalog_changed

        self._tools: Dict[str, DynamicTool] = {}
        self._refreshing = False
        self._client_name: Optional[str] = None
        self._version: Optional[str] = None

    @property
    def client_name(self) -> Optional[str]:
        return self._client_name

    def set_client_name(self, name: str) -> None:
        self._client_name = name

    @property
    def unity_version(self) -> Optional[str]:
        """Bridge version reported with the last catalog (``Ver``)."""
        return self._version

    def set_on_catalog_changed(self, callback: Optional[CatalogChangedCallback]) -> None:
        self._on_catalog_changed = callback

    def set_coordinator(self, coordinator: Optional["StateLosingOperationCoordinator"]) -> None:
        self._coordinator = coordinator

    # Read side

    def list_tools(self) -> List[DynamicTool]:
        return list(self._tools.values())

    def get_tool(self, name: str) -> Optional[DynamicTool]:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    @property
    def tool_count(self) -> int:
        return len(self._tools)

    # Write side

    async def refresh(self) -> RefreshOutcome:
        """Fetch the catalog and replace every wrapper."""
        if self._refreshing:
            logger.debug("Tool refresh already in progress")
            return RefreshOutcome.already_in_progress()

        self._refreshing = True
        try:
            return await self._refresh()
        except Exception as e:
            logger.error(f"Unexpected error refreshing tools: {e}", exc_info=True)
            return RefreshOutcome.error(str(e))
        finally:
            self._refreshing = False

    async def _refresh(self) -> RefreshOutcome:
        try:
            await self._connection.ensure_connected()
            response = await self._connection.get_tool_details(self.include_development_only)
        except (UnityConnectionError, UnityTimeoutError, UnityOperationError) as e:
            logger.warning(f"Failed to fetch tool details from Unity: {e}")
            return RefreshOutcome.fetch_failed(str(e))

        entries = self._extract_entries(response)
        if entries is None:
            logger.warning(f"Invalid tool details response: {type(response).__name__}")
            return RefreshOutcome.fetch_failed("invalid get-tool-details response")

        tools = self._build_tools(entries)
        self._tools = tools
        logger.info(f"Loaded {len(tools)} Unity tools")

        self._notify_changed()
        return RefreshOutcome.success(len(tools))

    def _extract_entries(self, response: Any) -> Optional[List[Any]]:
        if isinstance(response, Mapping):
            version = _pick(response, "Ver", "ver")
            if version is not None:
                self._version = str(version)
            response = _pick(response, "Tools", "tools")
        return response if isinstance(response, list) else None

    def _build_tools(self, entries: List[Any]) -> Dict[str, DynamicTool]:
        tools: Dict[str, DynamicTool] = {}
        for entry in entries:
            if not isinstance(entry, Mapping):
                logger.warning(f"Skipping non-object tool entry: {entry!r}")
                continue
            try:
                descriptor = CapabilityDescriptor.from_host(entry)
            except ValueError as e:
                logger.warning(f"Skipping tool entry: {e}")
                continue

            if descriptor.development_only and not self.include_development_only:
                continue

            tools[descriptor.name] = DynamicTool(descriptor, self._connection, self._coordinator)
        return tools

    def _notify_changed(self) -> None:
        if self._on_catalog_changed is None:
            return
        try:
            self._on_catalog_changed()
        except Exception as e:
            logger.warning(f"Error in catalog changed callback: {e}")


__all__ = [
    "EMPTY_INPUT_SCHEMA",
    "convert_type",
    "ParameterSpec",
    "CapabilityDescriptor",
    "DynamicTool",
    "RefreshReason",
    "RefreshOutcome",
    "CapabilityRefresher",
]
