"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class ModelDepotError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(ModelDepotError):
    """Raised for issues related to configuration loading or validation."""


class UnknownArtifactError(ModelDepotError, KeyError):
    """
    Raised when a key is looked up that the compiled-in catalog does not contain.

    This is a programming error, not a runtime condition, and is the only
    exception the lifecycle operations let escape.
    """

    def __str__(self) -> str:
        return Exception.__str__(self)


class PersistenceCorruptError(ModelDepotError):
    """Raised when a durable record cannot be parsed or fails schema validation."""


class TransferError(ModelDepotError):
    """
    Base class for failures of a single transfer.

    Attributes:
        resumable: True when a partial file survived and the transfer can continue
            from it instead of restarting from byte zero.
    """

    def __init__(self, message: str, resumable: bool = False):
        super().__init__(message)
        self.resumable = resumable


class TransferFailedError(TransferError):
    """Raised for network or server errors in the middle of a transfer."""


class StorageFullError(TransferError):
    """Raised when the device runs out of space while writing a transfer."""


class WriteFailedError(TransferError):
    """Raised for any other disk I/O error while writing a transfer."""


class TransferStopped(Exception):
    """
    Raised from a transfer handle that was paused or cancelled by its owner.

    Not an error: it tells whoever awaits the handle that the stop was requested.
    """

    def __init__(self, reason: str):
        super().__init__(f"Transfer {reason}.")
        self.reason = reason
