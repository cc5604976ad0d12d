import argparse
from dataclasses import dataclass, field

import serial


@dataclass(frozen=True)
class ChannelConfig:
    baud: int = 115200
    bytesize: int = serial.EIGHTBITS
    parity: str = serial.PARITY_NONE
    stopbits: float = serial.STOPBITS_ONE
    timeout: float = 2.0


@dataclass
class Config:
    port: str | None = None
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    log_level: str = "info"
    log_file: str | None = None


def parse_args(argv: list[str] | None = None) -> Config:
    parser = argparse.ArgumentParser(description="Mimas V2 Flash MCP Server")
    parser.add_argument("--port", default=None, help="Default serial port for probe/program")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument("--log-file", default=None, help="Log to file instead of stderr")
    args = parser.parse_args(argv)
    return Config(
        port=args.port,
        log_level=args.log_level,
        log_file=args.log_file,
    )
