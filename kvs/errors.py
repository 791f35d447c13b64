"""Exception types raised by the key/value store."""

from __future__ import annotations


class KvsError(Exception):
    """Base error of the key/value store; ``str()`` gives the message."""


class KeyNotFoundError(KvsError):
    """Raised when removing a key that does not exist."""

    def __init__(self, message: str = "Key not found") -> None:
        super().__init__(message)


class UnexpectedCommandTypeError(KvsError):
    """Raised when a log entry is not the command it should be.

    It points to a corrupted log or a program bug.
    """

    def __init__(self, message: str = "Unexpected command type") -> None:
        super().__init__(message)