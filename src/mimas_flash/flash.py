"""Micron M25P16 (16 Mbit SPI NOR) driver on top of the bridge commands.

Every flash instruction starts with a chip-select pulse. Erase and program
each need a fresh WRITE ENABLE; the latch clears itself on completion.
"""

import logging
import time
from types import MappingProxyType

from .bridge import MAX_GET_CHUNK, MAX_PUT_CHUNK, Bridge
from .errors import ProtocolError

logger = logging.getLogger(__name__)

DEV_ID_MICRON_M25P16 = 0x152020

SECTOR_SIZE = 0x10000
PAGE_SIZE = 0x100
FLASH_SIZE = 0x200000

STATUS_WIP = 0x01
POLL_INTERVAL = 0.01

M25P16_OPCODES = MappingProxyType({
    "read_id": 0x9F,
    "write_enable": 0x06,
    "read_status": 0x05,
    "sector_erase": 0xD8,
    "page_program": 0x02,
    "read": 0x03,
})


def erase_limit(end_address: int) -> int:
    """Last address of the sector containing end_address."""
    return end_address | (SECTOR_SIZE - 1)


class M25P16:
    def __init__(self, bridge: Bridge, opcodes=M25P16_OPCODES):
        self.bridge = bridge
        self._op = opcodes

    def _send_address(self, address: int) -> None:
        # MSB first, one put-char frame per byte
        for shift in (16, 8, 0):
            self.bridge.send_byte((address >> shift) & 0xFF)

    def read_device_id(self) -> int:
        """JEDEC ID (9Fh), combined as b0 | b1 << 8 | b2 << 16."""
        self.bridge.toggle_cs()
        self.bridge.send_byte(self._op["read_id"])
        self.bridge.transport.flush_input()
        data = self.bridge.get_bytes(3)
        return data[0] | (data[1] << 8) | (data[2] << 16)

    def write_enable(self) -> None:
        self.bridge.toggle_cs()
        self.bridge.send_byte(self._op["write_enable"])
        self.bridge.release_cs()

    def read_status(self) -> int:
        self.bridge.toggle_cs()
        self.bridge.send_byte(self._op["read_status"])
        self.bridge.transport.flush_input()
        data = self.bridge.get_bytes(1)
        return data[0]

    def wait_ready(self) -> int:
        """Poll the status register until the write-in-progress bit clears.

        Returns the number of busy polls observed.
        """
        busy = 0
        while self.read_status() & STATUS_WIP:
            busy += 1
            time.sleep(POLL_INTERVAL)
        return busy

    def sector_erase(self, end_address: int, progress_cb=None) -> int:
        """Erase every 64 KiB sector from address 0 through the one holding end_address.

        Args:
            end_address: Highest address that must end up erased.
            progress_cb: Optional callback(erased_up_to, limit).

        Returns the number of sectors erased.
        """
        limit = erase_limit(end_address)
        sectors = 0
        for address in range(0, limit, SECTOR_SIZE):
            self.write_enable()
            self.bridge.toggle_cs()
            self.bridge.send_byte(self._op["sector_erase"])
            self._send_address(address)
            self.bridge.release_cs()
            logger.debug("Sector erase 0x%06X", address)

            self.wait_ready()
            sectors += 1
            if progress_cb:
                progress_cb(min(address + SECTOR_SIZE, limit), limit)
        return sectors

    def page_program(self, buffer: bytes, address: int) -> None:
        """Program up to one page at address. Caller waits for completion."""
        if len(buffer) > PAGE_SIZE:
            raise ProtocolError(
                f"buffer too large while programming M25P16 flash: "
                f"expected at most {PAGE_SIZE} bytes, found {len(buffer)}"
            )
        self.write_enable()
        self.bridge.toggle_cs()
        self.bridge.send_byte(self._op["page_program"])
        self._send_address(address)
        for offset in range(0, len(buffer), MAX_PUT_CHUNK):
            self.bridge.send_bytes(buffer[offset:offset + MAX_PUT_CHUNK])
        self.bridge.release_cs()

    def verify_range(self, buffer: bytes, progress_cb=None) -> bool:
        """Read flash from address 0 and compare it against buffer.

        Stops at the first mismatching 32-byte chunk.
        """
        self.bridge.toggle_cs()
        self.bridge.send_byte(self._op["read"])
        self._send_address(0)
        self.bridge.transport.flush_input()

        total = len(buffer)
        for offset in range(0, total, MAX_GET_CHUNK):
            expected = bytes(buffer[offset:offset + MAX_GET_CHUNK])
            actual = self.bridge.get_bytes(len(expected))
            if actual != expected:
                logger.warning("Verify mismatch in chunk at 0x%06X", offset)
                return False
            if progress_cb:
                progress_cb(offset + len(expected), total)
        return True
