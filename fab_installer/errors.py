"""Error taxonomy for fab_installer.

Every error raised by this package derives from one of three categories:

- ConfigurationError: bad input or environment; fatal, retrying won't help
- TransientError: I/O or network failure; the caller may retry the whole build
- IntegrityError: produced or fetched data is wrong; fatal

Each error carries a ``code`` for structured error handling (JSON output).
"""

from __future__ import annotations


class FabInstallerError(Exception):
    """Base class for all fab_installer errors."""

    retryable = False

    def __init__(self, message: str, code: str = "error") -> None:
        """Initialize FabInstallerError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class ConfigurationError(FabInstallerError):
    """Raised for invalid configuration or environment."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message, code=code)


class TransientError(FabInstallerError):
    """Raised for I/O and network failures that may succeed on retry."""

    retryable = True

    def __init__(self, message: str, code: str = "transient_error") -> None:
        super().__init__(message, code=code)


class IntegrityError(FabInstallerError):
    """Raised when fetched or produced data fails verification."""

    def __init__(self, message: str, code: str = "integrity_error") -> None:
        super().__init__(message, code=code)


class MissingFieldError(ConfigurationError):
    """Raised when a required configuration field is unset."""

    def __init__(self, field: str, owner: str, code: str = "missing_field") -> None:
        """Initialize MissingFieldError.

        Args:
            field: Dotted name of the missing field.
            owner: Object the field belongs to (e.g. 'control/control-1').
            code: Error code for structured error handling.
        """
        super().__init__(f"{owner}: required field {field!r} is not set", code=code)
        self.field = field
        self.owner = owner


__all__ = [
    "ConfigurationError",
    "FabInstallerError",
    "IntegrityError",
    "MissingFieldError",
    "TransientError",
]
