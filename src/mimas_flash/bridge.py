"""Bridge commands: SPI and GPIO operations exposed by the Mimas V2 PIC.

Frame layout: [0x7E, opcode, spi_num, args...], padded to 70 bytes.
Only the subset needed to program the configuration flash is implemented.
"""

import enum
import logging
from types import MappingProxyType

from .errors import ProtocolError
from .transport import RESPONSE_HEADER_SIZE, RESPONSE_SIZE, SYNC_BYTE, FrameTransport

logger = logging.getLogger(__name__)

SPI_NUM = 0x01
SPI_FOSC_64 = 0x02
MODE_00 = 0x00
SMPMID = 0x00

MAX_PUT_CHUNK = 64
MAX_GET_CHUNK = RESPONSE_SIZE - RESPONSE_HEADER_SIZE

IO_DIRECTION_OUT = 0
IO_DIRECTION_IN = 1

# Response packet types (byte 1 of a response)
PACKET_STATUS = 0
PACKET_BUFFER = 1

BRIDGE_OPCODES = MappingProxyType({
    "spi_open": 0x00,
    "spi_close": 0x01,
    "get_string": 0x02,
    "put_string": 0x03,
    "put_char": 0x07,
    "set_io_dir": 0x08,
    "set_io_value": 0x09,
})


class Pin(enum.IntEnum):
    SI = 0
    SO = 1
    CS = 2
    CLK = 3
    PROGB = 4
    DONE = 5
    INITB = 6


class Bridge:
    """Blocking SPI/GPIO operations over a FrameTransport."""

    def __init__(self, transport: FrameTransport, opcodes=BRIDGE_OPCODES):
        self.transport = transport
        self._opcodes = opcodes

    def _send(self, name: str, *args: int, data: bytes = b"") -> None:
        payload = bytes([SYNC_BYTE, self._opcodes[name], SPI_NUM, *args]) + data
        self.transport.send_command(payload)

    def spi_open(self) -> None:
        """Set up the PIC's SPI peripheral (sync mode FOSC/64, bus mode 0,0)."""
        self._send("spi_open", SPI_FOSC_64, MODE_00, SMPMID)

    def spi_close(self) -> None:
        self._send("spi_close")

    def set_io_direction(self, io: int, direction: int) -> None:
        self._send("set_io_dir", io, direction)

    def set_io_value(self, io: int, value: int) -> None:
        self._send("set_io_value", io, value)

    def send_byte(self, value: int) -> None:
        self._send("put_char", value & 0xFF)

    def send_bytes(self, buffer: bytes) -> None:
        """Send up to MAX_PUT_CHUNK bytes in one put-string frame."""
        if len(buffer) > MAX_PUT_CHUNK:
            raise ProtocolError(
                f"SPI block too large: {len(buffer)} bytes, maximum is {MAX_PUT_CHUNK}"
            )
        self._send("put_string", len(buffer), 0x00, 0x00, data=bytes(buffer))

    def get_bytes(self, length: int) -> bytes:
        """Clock `length` bytes (at most 32) in from SPI.

        The bridge answers with a fixed 38-byte buffer packet; data starts
        after the 6-byte header.
        """
        if length > MAX_GET_CHUNK:
            raise ProtocolError(
                f"SPI read too large: {length} bytes, maximum is {MAX_GET_CHUNK}"
            )
        self._send("get_string", length)
        response = self.transport.read_exact(RESPONSE_SIZE)
        if len(response) != RESPONSE_SIZE:
            raise ProtocolError(
                f"Error on get bytes: expected byte count {RESPONSE_SIZE}, "
                f"received {len(response)}"
            )
        return response[RESPONSE_HEADER_SIZE:RESPONSE_HEADER_SIZE + length]

    def toggle_cs(self) -> None:
        """Pulse chip select (de-assert, assert) to start an SPI transaction."""
        self.set_io_direction(Pin.CS, IO_DIRECTION_OUT)
        self.set_io_value(Pin.CS, 1)
        self.set_io_value(Pin.CS, 0)

    def release_cs(self) -> None:
        self.set_io_value(Pin.CS, 1)
