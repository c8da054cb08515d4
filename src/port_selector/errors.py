"""Exception types raised by port-selector."""


class PortSelectorError(Exception):
    """Base class for all port-selector errors."""


class CorruptedStoreError(PortSelectorError):
    """The allocations file exists but cannot be parsed."""


class StoreIOError(PortSelectorError):
    """The allocations file or its lock could not be opened, locked or written."""


class ConfigError(PortSelectorError):
    """The configuration file is unreadable or invalid."""


class AllPortsBusyError(PortSelectorError):
    """No free, unfrozen, unreserved port is left in the configured range."""

    def __init__(self, port_start: int, port_end: int):
        self.port_start = port_start
        self.port_end = port_end
        super().__init__(f"all ports in range {port_start}-{port_end} are busy or frozen")


class AllocationNotFoundError(PortSelectorError):
    """A lock, unlock or forget request referred to an allocation that does not exist."""


class PortOutOfRangeError(PortSelectorError):
    """A requested port lies outside the configured range."""


class LockConflictError(PortSelectorError):
    """A lock request conflicts with another directory's allocation."""

    def __init__(self, message: str, port: int, directory: str):
        self.port = port
        self.directory = directory
        super().__init__(message)


class ForceRequiredError(LockConflictError):
    """The port belongs to another directory; retrying with --force reassigns it."""


class PortInUseError(LockConflictError):
    """The port is held by a live service of another directory; --force does not help."""
