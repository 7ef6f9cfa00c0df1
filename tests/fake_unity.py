"""A stand-in for the Unity bridge used by the tests.

Speaks Content-Length framed JSON-RPC on an ephemeral port. Handlers map a
method name to a callable taking the params dict; the return value becomes
the ``result``. Raise ``RpcError`` from a handler to answer with an error.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

from uloop_sdk.framing import ContentLengthDecoder, encode_frame, encode_line

SAMPLE_TOOLS = [
    {
        "name": "get-logs",
        "description": "Read the Unity console",
        "parameterSchema": {
            "Properties": {
                "MaxCount": {"Type": "integer", "Description": "How many", "DefaultValue": 100},
                "LogType": {"Type": "string", "Enum": ["All", "Error", "Warning", "Log"]},
            },
            "Required": [],
        },
    },
    {
        "name": "compile",
        "description": "Compile scripts",
        "parameterSchema": {
            "Properties": {
                "ForceRecompile": {"Type": "boolean"},
                "WaitForDomainReload": {"Type": "boolean"},
            },
        },
    },
    {
        "name": "debug-dump",
        "description": "Internal dump",
        "displayDevelopmentOnly": True,
    },
]


class RpcError(Exception):
    def __init__(self, message: str, code: int = -32603, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


Handler = Callable[[Dict[str, Any]], Any]


class FakeUnity:
    """Minimal Unity bridge server."""

    def __init__(self, tools: Optional[List[Dict[str, Any]]] = None):
        self.tools = list(SAMPLE_TOOLS if tools is None else tools)
        self.handlers: Dict[str, Handler] = {
            "ping": lambda params: {"Message": params.get("Message")},
            "set-client-name": lambda params: {"Success": True},
            "set-push-notification-endpoint": lambda params: {"Success": True},
            "get-tool-details": lambda params: {"Tools": self.tools, "Ver": "1.2.3"},
        }
        # Methods that get no answer at all.
        self.silent: Set[str] = set()
        # Methods on which the server drops the socket instead of answering.
        self.drop_on: Set[str] = set()

        self.requests: List[Dict[str, Any]] = []
        self.port: Optional[int] = None
        self._server: Optional[asyncio.Server] = None
        self._writers: List[asyncio.StreamWriter] = []

    @property
    def connection_count(self) -> int:
        return len(self._writers)

    def methods(self) -> List[str]:
        return [r.get("method") for r in self.requests]

    def params_for(self, method: str) -> List[Dict[str, Any]]:
        return [r.get("params") for r in self.requests if r.get("method") == method]

    async def start(self, port: int = 0) -> int:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]
        return self.port

    async def stop(self) -> None:
        await self.drop_clients()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def drop_clients(self) -> None:
        """Close every client socket, like a domain reload does."""
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()
        for writer in writers:
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification (no id) to every connected client."""
        frame = encode_frame({"jsonrpc": "2.0", "method": method, "params": params or {}})
        for writer in list(self._writers):
            writer.write(frame)
            await writer.drain()

    async def __aenter__(self) -> "FakeUnity":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        decoder = ContentLengthDecoder()
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                decoder.feed(chunk)
                for message in decoder.messages():
                    self.requests.append(message)
                    if message.get("method") in self.drop_on:
                        return
                    # Answer concurrently so responses can arrive out of order.
                    asyncio.ensure_future(self._answer(message, writer))
        except (ConnectionError, OSError):
            pass
        finally:
            if writer in self._writers:
                self._writers.remove(writer)
            writer.close()

    async def _answer(self, message: Dict[str, Any], writer: asyncio.StreamWriter) -> None:
        method = message.get("method")
        if method in self.silent:
            return

        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": message.get("id")}
        handler = self.handlers.get(method)
        if handler is None:
            response["error"] = {"code": -32601, "message": f"Method not found: {method}"}
        else:
            try:
                result = handler(message.get("params") or {})
                if inspect.isawaitable(result):
                    result = await result
                response["result"] = result
            except RpcError as e:
                response["error"] = {"code": e.code, "message": e.message, "data": e.data}

        if writer.is_closing():
            return
        writer.write(encode_frame(response))
        try:
            await writer.drain()
        except (ConnectionError, OSError):
            pass


async def send_push_lines(port: int, *lines: bytes, close: bool = True) -> asyncio.StreamWriter:
    """Connect to a push receiver the way Unity does and write raw bytes."""
    _, writer = await asyncio.open_connection("127.0.0.1", port)
    for line in lines:
        writer.write(line)
        await writer.drain()
    if close:
        writer.close()
        await writer.wait_closed()
    return writer


def push_line(notification_type: str, payload: Optional[Dict[str, Any]] = None) -> bytes:
    message: Dict[str, Any] = {"type": notification_type, "timestamp": "2025-01-01T00:00:00Z"}
    if payload is not None:
        message["payload"] = payload
    return encode_line(message)
