"""Shared fixtures: a simulated Mimas V2 bridge with an M25P16 behind it."""

import time

import pytest
import serial

from mimas_flash.bridge import PACKET_BUFFER, PACKET_STATUS, Pin
from mimas_flash.transport import FRAME_SIZE, RESPONSE_SIZE, SYNC_BYTE

OP_SPI_OPEN = 0x00
OP_GET_STRING = 0x02
OP_PUT_STRING = 0x03
OP_PUT_CHAR = 0x07
OP_SET_IO_DIR = 0x08
OP_SET_IO_VALUE = 0x09

FLASH_READ_ID = 0x9F
FLASH_WRITE_ENABLE = 0x06
FLASH_READ_STATUS = 0x05
FLASH_SECTOR_ERASE = 0xD8
FLASH_PAGE_PROGRAM = 0x02
FLASH_READ = 0x03


class FakeBridgeSerial:
    """Serial port stand-in that decodes 70-byte frames like the PIC bridge.

    SPI transactions are collected between CS low and CS high and executed
    against a 2 MiB flash image on CS de-assert, like the real part.
    """

    def __init__(self, device_id=0x152020, busy_polls=2, program_mask=0xFF,
                 fail_write_after=None, short_get=False):
        self.device_id = device_id
        self.busy_polls = busy_polls
        self.program_mask = program_mask
        self.fail_write_after = fail_write_after
        self.short_get = short_get

        self.memory = bytearray(b"\xff" * 0x200000)
        self.frames: list[bytes] = []
        self.write_sizes: list[int] = []
        self.erase_addresses: list[int] = []
        self.program_addresses: list[int] = []
        self.rejected: list[int] = []
        self.get_lengths: list[int] = []
        self.pin_values: dict[int, list[int]] = {}
        self.pin_dirs: dict[int, int] = {}
        self.spi_open = False
        self.close_count = 0
        self.timeout = 2.0

        self._rx = bytearray()
        self._out = bytearray()
        self._cs_low = False
        self._txn = bytearray()
        self._read_pos = 0
        self._wel = False
        self._busy = 0
        self._open = True

    # -- pyserial surface --------------------------------------------------

    @property
    def is_open(self):
        return self._open

    @property
    def in_waiting(self):
        return len(self._out)

    def write(self, data):
        if not self._open:
            raise serial.SerialException("Port is closed")
        if self.fail_write_after is not None and len(self.frames) >= self.fail_write_after:
            raise serial.SerialException("device reports readiness to read but returned no data")
        self.write_sizes.append(len(data))
        self._rx += data
        while len(self._rx) >= FRAME_SIZE:
            frame = bytes(self._rx[:FRAME_SIZE])
            del self._rx[:FRAME_SIZE]
            self.frames.append(frame)
            self._handle(frame)
        return len(data)

    def read(self, n):
        data = bytes(self._out[:n])
        del self._out[:n]
        return data

    def reset_input_buffer(self):
        self._out.clear()

    def close(self):
        self.close_count += 1
        self._open = False

    # -- inspection helpers ------------------------------------------------

    def opcodes(self):
        return [f[1] for f in self.frames]

    def spi_commands(self):
        """First byte of every put-char frame, i.e. flash opcodes and address bytes."""
        return [f[3] for f in self.frames if f[1] == OP_PUT_CHAR]

    # -- bridge emulation --------------------------------------------------

    def _status(self, opcode):
        self._out += bytes([SYNC_BYTE, PACKET_STATUS, 0x00, 0x00, opcode])

    def _handle(self, frame):
        assert frame[0] == SYNC_BYTE
        opcode = frame[1]
        if opcode == OP_SPI_OPEN:
            self.spi_open = True
        elif opcode == OP_SET_IO_DIR:
            self.pin_dirs[frame[3]] = frame[4]
        elif opcode == OP_SET_IO_VALUE:
            io, value = frame[3], frame[4]
            self.pin_values.setdefault(io, []).append(value)
            if io == Pin.CS:
                if value and self._cs_low:
                    self._execute()
                self._cs_low = not value
                if self._cs_low:
                    self._txn = bytearray()
                    self._read_pos = 0
        elif opcode == OP_PUT_CHAR:
            if self._cs_low:
                self._txn.append(frame[3])
        elif opcode == OP_PUT_STRING:
            if self._cs_low:
                self._txn += frame[6:6 + frame[3]]
        elif opcode == OP_GET_STRING:
            length = frame[3]
            self.get_lengths.append(length)
            data = self._spi_read(length)
            response = bytes([SYNC_BYTE, PACKET_BUFFER, 0x00, length, 0x00, 0x00])
            response += data + bytes(RESPONSE_SIZE - 6 - len(data))
            if self.short_get:
                response = response[:10]
            self._out += response
            return
        self._status(opcode)

    def _address(self):
        return (self._txn[1] << 16) | (self._txn[2] << 8) | self._txn[3]

    def _spi_read(self, length):
        cmd = self._txn[0] if self._txn else None
        if cmd == FLASH_READ_ID:
            ident = self.device_id.to_bytes(3, "little")
            data = ident[self._read_pos:self._read_pos + length]
            data += bytes(length - len(data))
        elif cmd == FLASH_READ_STATUS:
            if self._busy:
                self._busy -= 1
                data = bytes([0x03]) * length
            else:
                data = bytes([0x02 if self._wel else 0x00]) * length
        elif cmd == FLASH_READ:
            start = self._address() + self._read_pos
            data = bytes(self.memory[start:start + length])
        else:
            data = bytes(length)
        self._read_pos += length
        return data

    def _execute(self):
        if not self._txn:
            return
        cmd = self._txn[0]
        # the part ignores write-type instructions while a write is in progress
        if self._busy and cmd in (FLASH_WRITE_ENABLE, FLASH_SECTOR_ERASE, FLASH_PAGE_PROGRAM):
            self.rejected.append(cmd)
            return
        if cmd == FLASH_WRITE_ENABLE:
            self._wel = True
        elif cmd in (FLASH_SECTOR_ERASE, FLASH_PAGE_PROGRAM):
            if not self._wel:
                self.rejected.append(cmd)
                return
            address = self._address()
            if cmd == FLASH_SECTOR_ERASE:
                self.erase_addresses.append(address)
                base = address & ~0xFFFF
                self.memory[base:base + 0x10000] = b"\xff" * 0x10000
            else:
                self.program_addresses.append(address)
                for i, b in enumerate(self._txn[4:]):
                    self.memory[address + i] &= b & self.program_mask
            self._wel = False
            self._busy = self.busy_polls


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Skip settle/poll delays; record requested durations."""
    calls = []
    monkeypatch.setattr(time, "sleep", calls.append)
    return calls


@pytest.fixture
def bridge_serial():
    return FakeBridgeSerial()


@pytest.fixture
def make_bridge_serial():
    return FakeBridgeSerial


class RecordingListener:
    def __init__(self):
        self.events = []

    def init_progress(self, maximum):
        self.events.append(("init", maximum))

    def update_progress(self, value):
        self.events.append(("progress", value))

    def log_message(self, message):
        self.events.append(("log", message))

    def error_message(self, message):
        self.events.append(("error", message))

    def update_title(self, message):
        self.events.append(("title", message))

    def programming_finished(self):
        self.events.append(("finished", None))

    def of(self, kind):
        return [value for k, value in self.events if k == kind]


@pytest.fixture
def listener():
    return RecordingListener()
