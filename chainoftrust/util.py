"""
Utility functions for the chain of trust worker feature.

Provides encoding, masking and file helpers shared across modules.
"""

import base64
import errno
import os
import stat
import textwrap
from typing import BinaryIO, Optional, Union


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: Union[str, bytes]) -> bytes:
    """Base64 decode string to bytes (strict alphabet)."""
    if isinstance(s, str):
        s = s.encode('ascii')
    return base64.b64decode(s, validate=True)


def wrap_b64(b: bytes, width: int = 64) -> str:
    """Base64 encode bytes and wrap the result at a fixed column width."""
    return "\n".join(textwrap.wrap(b64e(b), width))


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]


def validate_hex_string(s: str, expected_length: int = None) -> bool:
    """Validate that a string is valid lowercase hexadecimal."""
    if not isinstance(s, str):
        return False
    if expected_length and len(s) != expected_length:
        return False
    return bool(s) and all(c in "0123456789abcdef" for c in s)


def open_no_follow(path: str, dir_fd: Optional[int] = None) -> BinaryIO:
    """
    Open a regular file for reading without following a final symlink.

    FIFOs and devices are refused without blocking.

    Raises:
        OSError: If the file is missing, a symlink, or not a regular file
    """
    fd = os.open(path, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK, dir_fd=dir_fd)
    try:
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(errno.EINVAL, "Not a regular file", path)
        os.set_blocking(fd, True)
    except OSError:
        os.close(fd)
        raise
    return os.fdopen(fd, "rb")
