"""Programming run for the Mimas V2: detect, erase, program, verify, reset.

Flow: PROGB low -> SPI open -> read ID -> erase -> page program -> [verify]
-> release CS -> PROGB high. A run owns its serial channel and closes it on
every exit path.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass

import serial

from .bridge import IO_DIRECTION_IN, IO_DIRECTION_OUT, Bridge, Pin
from .errors import DetectionFailure, MimasFlashError, VerificationMismatch
from .flash import DEV_ID_MICRON_M25P16, FLASH_SIZE, PAGE_SIZE, M25P16, erase_limit
from .listener import ProgressListener
from .transport import FrameTransport

logger = logging.getLogger(__name__)

RESET_SETTLE = 0.02


class State(enum.Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    ERASING = "erasing"
    PROGRAMMING = "programming"
    VERIFYING = "verifying"
    RESETTING = "resetting"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class DownloadJob:
    channel: serial.Serial
    file_path: str
    listener: ProgressListener
    verify: bool = False


class Downloader:
    """Sequential state machine for one programming run.

    `run()` blocks for the whole run; hand it to a worker thread (`start()`
    does this) so the caller stays responsive. Listener callbacks are made
    from that thread, in order.
    """

    def __init__(self, job: DownloadJob):
        self.job = job
        self.transport = FrameTransport(job.channel)
        self.bridge = Bridge(self.transport)
        self.flash = M25P16(self.bridge)
        self.state = State.IDLE
        self.history = [State.IDLE]
        self.failed_state: State | None = None
        self.error: Exception | None = None
        self.verified: bool | None = None
        self._closed = False

    def _enter(self, state: State) -> None:
        logger.info("%s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _detect(self) -> int:
        # Hold the FPGA in configuration mode while the flash is accessed
        self.bridge.set_io_direction(Pin.PROGB, IO_DIRECTION_OUT)
        self.bridge.set_io_value(Pin.PROGB, 0)
        self.bridge.spi_open()
        device_id = self.flash.read_device_id()
        logger.info("Flash ID: 0x%06X", device_id)
        return device_id

    def board_is_supported(self) -> bool:
        """Pre-flight check: is a Mimas V2 (M25P16 flash) on this channel?

        Releases PROGB afterwards. Never raises; the channel is left open.
        """
        try:
            device_id = self._detect()
            self.bridge.set_io_value(Pin.PROGB, 1)
        except MimasFlashError as exc:
            logger.warning("Board detection failed: %s", exc)
            return False
        return device_id == DEV_ID_MICRON_M25P16

    def _load_image(self) -> bytes:
        path = self.job.file_path
        self.job.listener.log_message(f"Loading file {path}...")
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise MimasFlashError(f"Error loading file {path}: {exc}") from exc
        if len(data) > FLASH_SIZE:
            raise MimasFlashError(
                f"File too large: {len(data)} bytes, flash holds {FLASH_SIZE}"
            )
        return data

    def _erase(self, size: int) -> None:
        listener = self.job.listener
        listener.update_title("Erasing flash sectors...")
        listener.init_progress(erase_limit(size))
        sectors = self.flash.sector_erase(
            size, progress_cb=lambda done, _total: listener.update_progress(done)
        )
        logger.info("Erased %d sectors", sectors)

    def _program(self, image: bytes) -> None:
        listener = self.job.listener
        listener.update_title("Programming FPGA Board ...")
        listener.init_progress(len(image))
        t0 = time.monotonic()
        for address in range(0, len(image), PAGE_SIZE):
            page = image[address:address + PAGE_SIZE]
            self.flash.page_program(page, address)
            self.flash.wait_ready()
            listener.update_progress(address + len(page))
        logger.info("Programmed %d bytes in %.1fs", len(image), time.monotonic() - t0)

    def _verify(self, image: bytes) -> None:
        listener = self.job.listener
        listener.update_title("Verifying flash contents...")
        listener.init_progress(len(image))
        ok = self.flash.verify_range(
            image, progress_cb=lambda done, _total: listener.update_progress(done)
        )
        if not ok:
            raise VerificationMismatch("Flash verification failed...")

    def _reset_board(self) -> None:
        self.job.listener.update_title("Programming done!")
        self.job.listener.log_message("Resetting FPGA Board ...")
        # Release the SPI bus, then let the FPGA load the new configuration
        self.bridge.set_io_direction(Pin.CS, IO_DIRECTION_IN)
        time.sleep(RESET_SETTLE)
        self.bridge.set_io_value(Pin.PROGB, 1)
        time.sleep(RESET_SETTLE)

    def run(self) -> State:
        """Execute the whole programming sequence. Returns the terminal state."""
        listener = self.job.listener
        try:
            self._enter(State.DETECTING)
            device_id = self._detect()
            if device_id != DEV_ID_MICRON_M25P16:
                raise DetectionFailure(device_id)
            listener.log_message("Micron M25P16 SPI Flash detected")
            image = self._load_image()

            self._enter(State.ERASING)
            self._erase(len(image))

            self._enter(State.PROGRAMMING)
            self._program(image)

            if self.job.verify:
                self._enter(State.VERIFYING)
                try:
                    self._verify(image)
                    self.verified = True
                    listener.log_message("Flash verification successful...")
                except VerificationMismatch as exc:
                    self.verified = False
                    listener.log_message(str(exc))

            self._enter(State.RESETTING)
            self._reset_board()
            self._enter(State.DONE)
            self._close_channel()
            listener.programming_finished()
        except MimasFlashError as exc:
            logger.warning("Programming failed in %s: %s", self.state.value, exc)
            self._fail(exc)
        except Exception as exc:
            logger.exception("Unexpected error in %s", self.state.value)
            self._fail(exc)
        finally:
            self._close_channel()
        return self.state

    def _fail(self, exc: Exception) -> None:
        self.failed_state = self.state
        self.error = exc
        self._enter(State.ERROR)
        self._close_channel()
        self.job.listener.programming_finished()
        self.job.listener.error_message(str(exc))

    def start(self) -> threading.Thread:
        """Run in a background thread. Join the returned thread to wait."""
        thread = threading.Thread(target=self.run, name="mimas-flash-run")
        thread.start()
        return thread

    def _close_channel(self) -> None:
        if not self._closed:
            self._closed = True
            self.transport.close()
