"""MCP server exposing environment management as tools."""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server import stdio

from enva import __version__
from enva.catalog import CATALOG
from enva.environments.manager import Manager, get_manager
from enva.errors import EnvaError, ValidationError, log_error
from enva.execution.runner import CommandRunner
from enva.logging import configure_logging, get_logger
from enva.specs import find_spec_file, load_spec
from enva.types import CaptureMode, ExecutionRequest

logger = get_logger("server")

tools = [
    types.Tool(
        name="enva_create",
        description="Create a catalog environment or one described by a YAML spec file",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Environment name"},
                "yaml": {"type": "string", "description": "Path to an environment spec file"},
                "recreate": {"type": "boolean", "description": "Remove and recreate if it exists"},
                "dry_run": {"type": "boolean", "description": "Report what would happen"},
            },
        },
    ),
    types.Tool(
        name="enva_list",
        description="List known environments and their status",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="enva_validate",
        description="Check that an environment exists and its key executables are present",
        inputSchema={
            "type": "object",
            "properties": {"name": {"type": "string", "description": "Environment name"}},
            "required": ["name"],
        },
    ),
    types.Tool(
        name="enva_install",
        description="Install packages into an existing environment",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Environment name"},
                "packages": {"type": "array", "items": {"type": "string"}},
                "dry_run": {"type": "boolean"},
            },
            "required": ["name", "packages"],
        },
    ),
    types.Tool(
        name="enva_run",
        description="Run a shell command or script inside an environment",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Environment name"},
                "command": {"type": "string", "description": "Shell command"},
                "script": {"type": "string", "description": "Script path"},
                "args": {"type": "array", "items": {"type": "string"}},
                "env": {"type": "object", "additionalProperties": {"type": "string"}},
                "cwd": {"type": "string", "description": "Working directory"},
            },
            "required": ["name"],
        },
    ),
    types.Tool(
        name="enva_remove",
        description="Remove an environment",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Environment name"},
                "dry_run": {"type": "boolean"},
            },
            "required": ["name"],
        },
    ),
]


def _text(payload: Dict[str, Any]) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload, default=str))]


def _spec_for(manager: Manager, arguments: Dict[str, Any]):
    name = arguments.get("name")
    if arguments.get("yaml"):
        return load_spec(Path(arguments["yaml"]))
    if not name:
        raise ValidationError("enva_create needs a name or a yaml path")
    spec_file = find_spec_file(name, manager.settings.config_dirs)
    if spec_file is not None:
        return load_spec(spec_file)
    if name in CATALOG:
        return CATALOG[name]
    raise ValidationError(f"No spec found for {name}", details={"name": name})


async def handle_tool(manager: Manager, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Run one tool call and return its JSON-ready ``data``."""
    dry_run = bool(arguments.get("dry_run", False))
    await manager.register_catalog()
    await manager.discover(install=not dry_run)

    if name == "enva_create":
        spec = _spec_for(manager, arguments)
        result = await manager.create_environment(
            spec, recreate=bool(arguments.get("recreate", False)), dry_run=dry_run
        )
        return result.to_dict()

    if name == "enva_list":
        return {"environments": [env.to_dict() for env in await manager.list_environments()]}

    if name == "enva_validate":
        report = await manager.validate_environment(arguments["name"], dry_run=dry_run)
        return report.to_dict()

    if name == "enva_install":
        result = await manager.install_packages(
            arguments["name"], arguments.get("packages") or [], dry_run=dry_run
        )
        return result.to_dict()

    if name == "enva_run":
        request = ExecutionRequest(
            environment=arguments["name"],
            command=arguments.get("command"),
            script=Path(arguments["script"]) if arguments.get("script") else None,
            args=tuple(arguments.get("args") or ()),
            env_vars={str(k): str(v) for k, v in (arguments.get("env") or {}).items()},
            cwd=Path(arguments["cwd"]) if arguments.get("cwd") else None,
            capture=CaptureMode.CAPTURE,
        )
        result = await CommandRunner(manager).execute(request)
        return result.to_dict()

    if name == "enva_remove":
        result = await manager.remove_environment(arguments["name"], dry_run=dry_run)
        return result.to_dict()

    raise ValidationError(f"Unknown tool: {name}")


async def init_server(manager: Manager | None = None) -> Server:
    logger.info("registered_tools", tools=[t.name for t in tools])

    manager = manager or get_manager()
    server = Server("enva")

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        logger.debug("tools_requested")
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: Dict[str, Any]) -> list[types.TextContent]:
        logger.debug("tool_call", tool=name, arguments=arguments)
        try:
            data = await handle_tool(manager, name, arguments or {})
        except EnvaError as e:
            log_error(e, {"tool": name}, logger)
            return _text({"success": False, "error": e.to_error_data().model_dump()})
        except KeyError as e:
            return _text({"success": False, "error": f"Missing argument: {e.args[0]}"})
        return _text({"success": True, "data": data})

    return server


async def serve() -> None:
    configure_logging()
    logger.info("server_starting", version=__version__)
    server = await init_server()
    async with stdio.stdio_server() as (read_stream, write_stream):
        init_options = InitializationOptions(
            server_name="enva",
            server_version=__version__,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=False),
                logging=types.LoggingCapability(),
            ),
        )
        await server.run(read_stream, write_stream, init_options)


def main() -> None:
    """Run the MCP server."""
    asyncio.run(serve())
