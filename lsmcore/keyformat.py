"""Internal key layout: a user key followed by an 8-byte version suffix.

The suffix stores ``MAX_TS - ts`` in big-endian order, so that for one user
key newer versions sort before older ones when keys are compared bytewise.
"""

from __future__ import annotations

import struct

TS_SIZE = 8
MAX_TS = (1 << 64) - 1

_TS = struct.Struct(">Q")


def _as_bytes(key: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8")
    return bytes(key)


def _require_suffix(key: bytes) -> None:
    if len(key) < TS_SIZE:
        raise ValueError(
            f"key of length {len(key)} is too short to carry a {TS_SIZE}-byte timestamp"
        )


def key_with_ts(key: bytes | bytearray | memoryview | str, ts: int) -> bytes:
    """Append the encoded timestamp ``ts`` to ``key``."""
    if not 0 <= ts <= MAX_TS:
        raise ValueError(f"timestamp {ts} is outside the unsigned 64-bit range")
    return _as_bytes(key) + _TS.pack(MAX_TS - ts)


def get_ts(key: bytes) -> int:
    """Return the timestamp stored in the suffix of ``key``."""
    key = _as_bytes(key)
    _require_suffix(key)
    (encoded,) = _TS.unpack_from(key, len(key) - TS_SIZE)
    return MAX_TS - encoded


def user_key(key: bytes) -> bytes:
    """Return ``key`` without its timestamp suffix."""
    key = _as_bytes(key)
    _require_suffix(key)
    return key[:-TS_SIZE]


def compare_keys(left: bytes, right: bytes) -> int:
    """Order two internal keys: by user key, then newest version first.

    Returns a negative number, zero or a positive number.
    """
    left, right = _as_bytes(left), _as_bytes(right)
    left_user, right_user = user_key(left), user_key(right)
    if left_user != right_user:
        return -1 if left_user < right_user else 1
    left_suffix, right_suffix = left[-TS_SIZE:], right[-TS_SIZE:]
    if left_suffix == right_suffix:
        return 0
    return -1 if left_suffix < right_suffix else 1


def same_key(left: bytes, right: bytes) -> bool:
    """Return True if both internal keys share the same user key."""
    left, right = _as_bytes(left), _as_bytes(right)
    if len(left) != len(right):
        return False
    return user_key(left) == user_key(right)