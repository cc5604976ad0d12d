"""Errors raised by the Mimas V2 flash programmer."""


class MimasFlashError(Exception):
    """Base error for mimas-flash."""


class TransportError(MimasFlashError):
    """Serial channel open/write/read failed."""


class ProtocolError(MimasFlashError):
    """Malformed or short frame, wrong response length, oversized buffer."""


class DetectionFailure(MimasFlashError):
    """The flash part on the board is not a Micron M25P16."""

    def __init__(self, device_id: int):
        super().__init__(f"Unknown flash part: '{device_id:x}'")
        self.device_id = device_id


class VerificationMismatch(MimasFlashError):
    """Flash contents read back differ from the source image."""
