"""Command line client for the Unity bridge.

Usage:
    uloop tools
    uloop call get-logs --params '{"MaxCount": 10}'
    uloop ping --port 8700

Exit codes:
    0  Success
    1  Unity unreachable, bad configuration, or the tool reported failure
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from uloop_sdk import __version__
from uloop_sdk.client.config import (
    PORT_ENV_VAR,
    generate_example_config,
    get_config_paths,
    load_client_config,
    resolve_unity_port,
)
from uloop_sdk.client.connection import UnityConnection
from uloop_sdk.compile import find_unity_project_root
from uloop_sdk.errors import ConfigurationError, UloopError, describe_error
from uloop_sdk.runtime import UnitySession

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uloop",
        description="uloop - talk to a running Unity Editor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List the tools Unity exposes
  uloop tools

  # Run a tool with parameters
  uloop call get-logs --params '{"MaxCount": 10}'

  # Force a recompile and wait for the result across the domain reload
  uloop call compile --params '{"ForceRecompile": true}'

  # Check that Unity answers on a given port
  uloop ping --port 8700
        """,
    )
    parser.add_argument("--version", action="version", version=f"uloop {__version__}")

    # Configuration
    parser.add_argument(
        "--port",
        type=int,
        help=f"Unity bridge port (default: ${PORT_ENV_VAR})",
    )
    parser.add_argument(
        "--project-root",
        metavar="PATH",
        help="Unity project root (default: found from the current directory)",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    subparsers.add_parser("tools", help="List the tools Unity exposes")

    call = subparsers.add_parser("call", help="Run a Unity tool")
    call.add_argument("tool", help="Tool name, e.g. get-logs")
    call.add_argument(
        "--params",
        default="{}",
        metavar="JSON",
        help="Tool parameters as a JSON object",
    )

    ping = subparsers.add_parser("ping", help="Check that Unity answers")
    ping.add_argument("--message", default="ping", help="Message to echo")

    subparsers.add_parser("config", help="Show config file locations and an example")

    return parser


def configure_logging(verbose: bool, console: Console) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    if console.is_terminal:
        logging.basicConfig(
            level=level,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT, stream=console.file)


def parse_params(raw: str) -> Dict[str, Any]:
    """Parse ``--params``.

    Raises:
        ConfigurationError: If the value is not a JSON object.
    """
    try:
        params = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"--params is not valid JSON: {e}") from e
    if not isinstance(params, dict):
        raise ConfigurationError("--params must be a JSON object")
    return params


def is_failed_result(result: Any) -> bool:
    """Unity tools report failure in-band with ``Success: false``."""
    return isinstance(result, dict) and result.get("Success") is False


def print_tools(console: Console, session: UnitySession) -> None:
    tools = sorted(session.list_tools(), key=lambda t: t.name)
    table = Table(title=f"Unity tools ({len(tools)})")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description")
    table.add_column("Parameters", style="dim")
    for tool in tools:
        table.add_row(tool.name, tool.description, ", ".join(tool.descriptor.parameters))
    console.print(table)


def print_result(console: Console, result: Any) -> None:
    console.print_json(json.dumps(result, default=str))


async def run_command(
    args: argparse.Namespace,
    console: Console,
    environ: Mapping[str, str],
) -> int:
    """Run one subcommand and return the exit code."""
    project_root = Path(args.project_root) if args.project_root else find_unity_project_root()
    config = load_client_config(project_root, environ)

    if args.command == "config":
        for scope, path in get_config_paths(project_root).items():
            console.print(f"{scope}: {path}")
        console.print_json(generate_example_config())
        return 0

    if args.command == "ping":
        connection = UnityConnection(
            port=resolve_unity_port(config, environ), config=config.connection
        )
        async with connection:
            print_result(console, await connection.ping(args.message))
        return 0

    params = parse_params(args.params) if args.command == "call" else {}
    async with UnitySession(config, project_root=project_root, environ=environ) as session:
        if session.descriptor is not None and session.descriptor.degraded:
            console.print("[yellow]Unity connected but the tool list could not be loaded[/yellow]")

        if args.command == "tools":
            print_tools(console, session)
            return 0

        result = await session.call_tool(args.tool, params)
        print_result(console, result)
        return 1 if is_failed_result(result) else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    console = Console()
    err_console = Console(stderr=True)

    load_dotenv(args.env_file)
    configure_logging(args.verbose, err_console)

    environ = dict(os.environ)
    if args.port is not None:
        environ[PORT_ENV_VAR] = str(args.port)

    try:
        return asyncio.run(run_command(args, console, environ))
    except UloopError as e:
        logger.debug("Command failed", exc_info=True)
        message = describe_error(e, environ.get(PORT_ENV_VAR))
        err_console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
