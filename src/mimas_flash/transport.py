"""Serial framing for the Mimas V2 configuration bridge.

Every command is a fixed 70-byte frame (the PIC's CDC OUT endpoint size),
padded with ASCII spaces. The bridge accepts at most 30 bytes per USB
transaction, so frames are written in 30-byte slices.
"""

import logging
import time

import serial
import serial.tools.list_ports

try:
    import termios
except ImportError:  # Windows
    termios = None

from .config import ChannelConfig
from .errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

SYNC_BYTE = 0x7E
FRAME_SIZE = 70
RESPONSE_SIZE = 38
RESPONSE_HEADER_SIZE = 6
PAD_BYTE = 0x20
MAX_WRITE_CHUNK = 30
FLUSH_DELAY = 0.01

# pyserial reports a dropped USB device as termios.error from tcflush/tcdrain on posix
IO_ERRORS = (serial.SerialException, OSError) + ((termios.error,) if termios else ())


def list_serial_ports() -> list[dict]:
    """List available serial ports with metadata."""
    ports = []
    for p in serial.tools.list_ports.comports():
        ports.append({
            "port": p.device,
            "description": p.description,
            "hwid": p.hwid,
            "manufacturer": p.manufacturer,
        })
    return ports


def open_channel(port: str, config: ChannelConfig | None = None) -> serial.Serial:
    """Open the bridge's serial port with the fixed 8-N-1 link settings."""
    config = config or ChannelConfig()
    try:
        return serial.Serial(
            port=port,
            baudrate=config.baud,
            bytesize=config.bytesize,
            parity=config.parity,
            stopbits=config.stopbits,
            timeout=config.timeout,
        )
    except IO_ERRORS as exc:
        raise TransportError(
            f"Error opening port {port}: perhaps you don't have permission "
            f"to use it or it is already in use ({exc})"
        ) from exc


def build_command_frame(payload: bytes) -> bytes:
    """Pad a command payload to exactly FRAME_SIZE bytes with spaces."""
    if len(payload) > FRAME_SIZE:
        raise ProtocolError(
            f"Command too long: {len(payload)} bytes, frame size is {FRAME_SIZE}"
        )
    return bytes(payload) + bytes([PAD_BYTE]) * (FRAME_SIZE - len(payload))


class FrameTransport:
    """Fixed-size frame I/O on an open serial channel."""

    def __init__(self, ser: serial.Serial):
        self._ser = ser

    @property
    def channel(self) -> serial.Serial:
        return self._ser

    def send_raw(self, data: bytes) -> int:
        """Write data in MAX_WRITE_CHUNK slices. Returns bytes written."""
        written = 0
        for i in range(0, len(data), MAX_WRITE_CHUNK):
            chunk = data[i:i + MAX_WRITE_CHUNK]
            try:
                n = self._ser.write(chunk)
            except IO_ERRORS as exc:
                raise TransportError(f"Serial write failed: {exc}") from exc
            written += len(chunk) if n is None else n
        return written

    def send_command(self, payload: bytes) -> None:
        frame = build_command_frame(payload)
        logger.debug("-> %s", frame[:2].hex())
        sent = self.send_raw(frame)
        if sent != FRAME_SIZE:
            raise ProtocolError(
                f"short write: bytes sent {sent}, expected to send {FRAME_SIZE}"
            )

    def read_exact(self, n: int) -> bytes:
        """Read up to n bytes, giving up when the channel timeout elapses.

        A short result is returned as-is; callers check the length.
        """
        try:
            data = self._ser.read(n)
        except IO_ERRORS as exc:
            raise TransportError(f"Serial read failed: {exc}") from exc
        if len(data) < n:
            logger.debug("Short read: %d of %d bytes", len(data), n)
        return data

    def flush_input(self) -> None:
        """Let in-flight responses land, then drop everything queued."""
        time.sleep(FLUSH_DELAY)
        try:
            self._ser.reset_input_buffer()
        except IO_ERRORS as exc:
            raise TransportError(f"Serial flush failed: {exc}") from exc

    def close(self) -> None:
        try:
            self._ser.close()
        except IO_ERRORS as exc:
            logger.warning("Error closing serial port: %s", exc)
