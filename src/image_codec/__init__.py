"""
Image Codec Package
====================
Minimal JPEG segment codec and the password-in-comment convention built on it.
"""

from .segments import (
    MAX_TABLE_SEGMENTS,
    START_MARKER,
    END_MARKER,
    FormatError,
    ImageRecord,
    decode,
    encode,
    encode_segment,
    load_image,
)
from .password_image import (
    PASSWORD_PREFIX,
    NotPasswordImageError,
    embed_password,
    extract_password,
    password_from_record,
)

__all__ = [
    "MAX_TABLE_SEGMENTS",
    "START_MARKER",
    "END_MARKER",
    "FormatError",
    "ImageRecord",
    "decode",
    "encode",
    "encode_segment",
    "load_image",
    "PASSWORD_PREFIX",
    "NotPasswordImageError",
    "embed_password",
    "extract_password",
    "password_from_record",
]
