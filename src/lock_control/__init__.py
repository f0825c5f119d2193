"""
Lock Control Package
=====================
User-facing operations on the safe: open, lock, unlock, clear, test,
status and password images.
"""

from .validation import (
    PASSWORD_ALPHABET,
    ValidationError,
    generate_password,
    validate_duration,
    validate_password,
)
from .controller import (
    OPEN_COMPLETED,
    PASSWORD_COMMANDS,
    CommandFailedError,
    LockController,
    PasswordImage,
)

__all__ = [
    "PASSWORD_ALPHABET",
    "ValidationError",
    "generate_password",
    "validate_duration",
    "validate_password",
    "OPEN_COMPLETED",
    "PASSWORD_COMMANDS",
    "CommandFailedError",
    "LockController",
    "PasswordImage",
]
