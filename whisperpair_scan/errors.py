"""Errors reported to the operator.  None of them are fatal."""


class ScanError(Exception):
    """Base class for every recoverable scanner/dispatcher condition."""


class AdapterUnavailable(ScanError):
    """The platform adapter lacks the requested primitive."""


class EmptyRegistry(ScanError):
    """No devices are tracked yet."""

    def __init__(self, message: str = "no matching devices, start scan first"):
        super().__init__(message)


class OutOfRange(ScanError):
    """A device ordinal outside 1..count()."""

    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        super().__init__(f"invalid device index: {index} (have {count})")


class InvalidInput(ScanError):
    """Missing file path, unsupported file type, or no resolvable target."""


class ActionFailed(ScanError):
    """The platform primitive ran and reported failure."""
