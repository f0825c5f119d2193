"""Checks applied to user input before anything is sent to the safe."""

from __future__ import annotations

import re
import secrets
import string


# In theory anything except ':' works on the wire; letters and digits only.
PASSWORD_ALPHABET = string.ascii_letters + string.digits
RANDOM_PASSWORD_LENGTH = 30

_VALID_PASSWORD = re.compile(r"[A-Za-z0-9]+")
_VALID_DURATION = re.compile(r"[0-9]+")


class ValidationError(ValueError):
    """Input rejected; the message is meant for the user."""


def validate_password(password: str) -> str:
    """
    Raises:
        ValidationError: Empty password or characters outside [A-Za-z0-9]
    """
    if not password:
        raise ValidationError("ERROR Missing password")
    if not _VALID_PASSWORD.fullmatch(password):
        raise ValidationError("ERROR Password contains invalid characters. Letters and numbers only")
    return password


def validate_duration(duration: str) -> str:
    if not _VALID_DURATION.fullmatch(duration):
        raise ValidationError(f"ERROR Invalid duration: {duration!r}")
    return duration


def generate_password(length: int = RANDOM_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
