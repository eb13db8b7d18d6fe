"""Exceptions raised by the pywir inspection core."""


class WirError(Exception):
    """Base class for all pywir errors."""


class NotFound(WirError):
    """The target process vanished or never existed."""

    def __init__(self, pid: int | None = None, message: str | None = None) -> None:
        self.pid = pid
        if message is None:
            message = f"No such process: {pid}" if pid is not None else "Not found"
        super().__init__(message)


class PermissionDenied(WirError):
    """The caller lacks rights to read another user's process internals."""

    def __init__(self, pid: int | None = None, message: str | None = None) -> None:
        self.pid = pid
        if message is None:
            message = (
                f"Permission denied for process {pid}"
                if pid is not None
                else "Permission denied"
            )
        super().__init__(message)


class ParseError(WirError):
    """A kernel record did not match the expected schema."""


class UnsupportedPlatform(WirError):
    """No backend is implemented for this host."""


class DeadlineExceeded(WirError):
    """A scan ran past the caller's deadline."""
