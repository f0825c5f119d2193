"""
Password images: a lock password hidden in an image's comment segment.

The comment reads ``LOCKPSW:<password>`` in plain ASCII. This is
obfuscation only; anyone with a hex viewer can read it.
"""

from __future__ import annotations

from .segments import ImageRecord, decode, encode


PASSWORD_PREFIX = b"LOCKPSW:"


class NotPasswordImageError(ValueError):
    """Image decoded fine but its comment carries no password."""

    def __init__(self, message: str = "This is not a valid password image"):
        super().__init__(message)


def embed_password(template: ImageRecord, password: str) -> bytes:
    """Encode ``template`` with its comment replaced by the password tag."""
    return encode(template.with_comment(PASSWORD_PREFIX + password.encode("ascii")))


def password_from_record(record: ImageRecord) -> str:
    """
    Raises:
        NotPasswordImageError: Comment is missing the ``LOCKPSW:`` prefix
    """
    if not record.comment.startswith(PASSWORD_PREFIX):
        raise NotPasswordImageError()
    try:
        return record.comment[len(PASSWORD_PREFIX):].decode("ascii")
    except UnicodeDecodeError as e:
        raise NotPasswordImageError() from e


def extract_password(data: bytes) -> str:
    """
    Pull the password out of an uploaded image.

    The returned string is not validated; callers check its character set.

    Raises:
        FormatError: Data is not a parsable image
        NotPasswordImageError: Image carries no password
    """
    return password_from_record(decode(data))
