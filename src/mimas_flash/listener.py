"""Progress listener interface for programming runs."""

import logging
from typing import Protocol


class ProgressListener(Protocol):
    def init_progress(self, maximum: int) -> None: ...

    def update_progress(self, value: int) -> None: ...

    def log_message(self, message: str) -> None: ...

    def error_message(self, message: str) -> None: ...

    def update_title(self, message: str) -> None: ...

    def programming_finished(self) -> None: ...


class LoggingListener:
    """Listener that forwards events to logging and keeps a transcript.

    Progress is logged at most every 10% to keep the log readable.
    """

    def __init__(self, name: str = "mimas_flash.run"):
        self._log = logging.getLogger(name)
        self.maximum = 0
        self.progress = 0
        self.title = ""
        self.lines: list[str] = []
        self.errors: list[str] = []
        self.finished = False
        self._last_pct = -1

    def init_progress(self, maximum: int) -> None:
        self.maximum = maximum
        self.progress = 0
        self._last_pct = -1

    def update_progress(self, value: int) -> None:
        self.progress = value
        if self.maximum <= 0:
            return
        pct = 100 * value // self.maximum
        if pct // 10 != self._last_pct // 10 or value >= self.maximum:
            self._log.info("%s %d/%d (%d%%)", self.title, value, self.maximum, pct)
            self._last_pct = pct

    def log_message(self, message: str) -> None:
        self.lines.append(message)
        self._log.info("%s", message)

    def error_message(self, message: str) -> None:
        self.errors.append(message)
        self._log.error("%s", message)

    def update_title(self, message: str) -> None:
        self.title = message
        self.log_message(message)

    def programming_finished(self) -> None:
        self.finished = True
