"""MCP server for programming the Mimas V2 configuration flash over its USB serial bridge."""

import asyncio
import json
import logging
import os
import traceback

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import Config

logger = logging.getLogger(__name__)


TOOLS = [
    Tool(
        name="list_ports",
        description="List available serial ports with metadata (device path, description, manufacturer).",
        inputSchema={
            "type": "object",
            "properties": {},
        },
    ),
    Tool(
        name="probe",
        description="Check that a Mimas V2 board (Micron M25P16 flash) answers on the serial port. Holds PROGB low briefly, reads the flash ID, then releases PROGB.",
        inputSchema={
            "type": "object",
            "properties": {
                "port": {
                    "type": "string",
                    "description": "Serial port path. Uses the server's --port if omitted.",
                },
            },
        },
    ),
    Tool(
        name="program",
        description="Erase, program and optionally verify the Mimas V2 SPI flash with a .bin/.bit file, then reset the FPGA so it loads the new configuration.",
        inputSchema={
            "type": "object",
            "properties": {
                "file": {
                    "type": "string",
                    "description": "Path to the FPGA programming file (*.bin, *.bit)",
                },
                "port": {
                    "type": "string",
                    "description": "Serial port path. Uses the server's --port if omitted.",
                },
                "verify": {
                    "type": "boolean",
                    "description": "Read the flash back and compare after programming (default: false)",
                    "default": False,
                },
            },
            "required": ["file"],
        },
    ),
]


def _text(content: str) -> list[TextContent]:
    return [TextContent(type="text", text=content)]


def _json(data) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2))]


def _resolve_port(args: dict, config: Config) -> str:
    port = args.get("port") or config.port
    if not port:
        raise ValueError("Please select a serial port before programming.")
    return port


def create_server(config: Config | None = None) -> Server:
    server = Server("mimas-flash")
    _config = config or Config()

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        try:
            return await _dispatch(name, arguments, _config)
        except Exception as e:
            logger.exception("Tool %s failed", name)
            return _text(f"Error: {e}\n\n{traceback.format_exc()}")

    return server


def probe(port: str, config: Config) -> dict:
    from .downloader import Downloader, DownloadJob
    from .listener import LoggingListener
    from .transport import open_channel

    ser = open_channel(port, config.channel)
    try:
        downloader = Downloader(DownloadJob(ser, "", LoggingListener()))
        supported = downloader.board_is_supported()
    finally:
        ser.close()
    return {"port": port, "supported": supported}


def program(port: str, path: str, verify: bool, config: Config) -> dict:
    from .downloader import Downloader, DownloadJob
    from .listener import LoggingListener
    from .transport import open_channel

    if not path:
        return {"success": False, "message": "Please select a programming file first."}
    if not os.path.exists(path):
        return {"success": False, "message": f"File not found: {path}"}

    listener = LoggingListener()
    ser = open_channel(port, config.channel)
    downloader = Downloader(DownloadJob(ser, path, listener, verify))
    if not downloader.board_is_supported():
        ser.close()
        return {
            "success": False,
            "port": port,
            "message": "Cannot detect a Mimas V2 board connected to the port. "
                       "Please check that the board is in programming mode.",
        }

    state = downloader.run()
    result = {
        "success": downloader.error is None,
        "port": port,
        "file": os.path.basename(path),
        "state": state.value,
        "log": listener.lines,
        "errors": listener.errors,
    }
    if downloader.failed_state is not None:
        result["failed_state"] = downloader.failed_state.value
    if downloader.verified is not None:
        result["verified"] = downloader.verified
    return result


async def _dispatch(name: str, args: dict, config: Config) -> list[TextContent]:
    from .transport import list_serial_ports

    match name:
        case "list_ports":
            ports = await asyncio.to_thread(list_serial_ports)
            return _json({"ports": ports, "count": len(ports)})

        case "probe":
            port = _resolve_port(args, config)
            result = await asyncio.to_thread(probe, port, config)
            return _json(result)

        case "program":
            port = _resolve_port(args, config)
            path = (args.get("file") or "").strip()
            verify = bool(args.get("verify"))
            result = await asyncio.to_thread(program, port, path, verify, config)
            return _json(result)

        case _:
            return _text(f"Unknown tool: {name}")
