"""
Palm code derivation.

A captured frame is JPEG-encoded, rendered as a data URL, and folded
through a 31-multiplier rolling hash wrapped to signed 32 bits.  The sign
is dropped and the result written in base 36.

This is NOT a cryptographic digest and NOT a biometric template.  The
rolling hash has no locality: two captures of the same hand usually hash
to unrelated strings, while short unrelated hashes can still agree on
80 % of their positions by chance.  Treat a palm code as an opaque token.
"""

from __future__ import annotations

import base64
import secrets
import time
from typing import Union

import cv2
import numpy as np

JPEG_QUALITY = 90
MATCH_THRESHOLD = 0.80
CODE_PREFIX = "PALM_"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_SUFFIX_LEN = 9


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def encode_frame(frame: np.ndarray, quality: int = JPEG_QUALITY) -> str:
    """Encode a BGR frame as a ``data:image/jpeg;base64,...`` string."""
    ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise ValueError("JPEG encoding failed for frame of shape %r" % (frame.shape,))
    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


def palm_hash(data: Union[str, bytes]) -> str:
    """
    Rolling hash of *data* (characters of a str, or raw bytes).

    ``h = h * 31 + c`` wrapped to signed 32 bits at every step; the
    absolute value of the final word is rendered in base 36.
    """
    h = 0
    if isinstance(data, str):
        for ch in data:
            h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    else:
        for byte in data:
            h = (h * 31 + byte) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return to_base36(abs(h))


def hash_similarity(h1: str, h2: str) -> float:
    """Fraction of equal characters at equal positions; 0 when lengths differ."""
    if len(h1) != len(h2):
        return 0.0
    if not h1:
        return 1.0
    matches = sum(1 for a, b in zip(h1, h2) if a == b)
    return matches / len(h1)


def mint_palm_code() -> str:
    """Fresh process-unique code: ``PALM_<epoch ms>_<9 base-36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(_SUFFIX_LEN))
    return f"{CODE_PREFIX}{int(time.time() * 1000)}_{suffix}"


def is_minted_code(code: str) -> bool:
    parts = code.split("_")
    return (
        len(parts) == 3
        and parts[0] + "_" == CODE_PREFIX
        and parts[1].isdigit()
        and len(parts[2]) == _SUFFIX_LEN
        and all(c in _BASE36 for c in parts[2])
    )


def derive_hash(frame: np.ndarray) -> tuple[str, str]:
    """Return ``(hash, encoded_frame)`` for a captured frame."""
    encoded = encode_frame(frame)
    return palm_hash(encoded), encoded
