"""Sortable identifiers for history entries and broadcast events.

Ids are ``<prefix>-<ULID>``: 48 bits of millisecond timestamp followed by 80
random bits, written as 26 Crockford Base32 characters. Lexical order of the
ULID part is creation order, which the history store relies on for
newest-first listings.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_RANDOM_BYTES: Final[int] = 10

VALIDATION_HISTORY_ID_PREFIX: Final[str] = "vh"
REVIEW_HISTORY_ID_PREFIX: Final[str] = "rh"
EVENT_ID_PREFIX: Final[str] = "evt"

HISTORY_ID_PREFIXES: Final[frozenset[str]] = frozenset(
    {VALIDATION_HISTORY_ID_PREFIX, REVIEW_HISTORY_ID_PREFIX}
)

_DIGITS: Final[dict[str, int]] = {char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)}

RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Return a new ULID; ``timestamp_ms`` and ``randbytes`` make it deterministic."""

    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(stamp, int) or not 0 <= stamp <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")
    noise = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if len(noise) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (stamp << 80) | int.from_bytes(noise, "big")
    chars = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        chars.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(chars))


def validate_ulid(value: str) -> None:
    _decode(value)


def parse_ulid_timestamp_ms(value: str) -> int:
    return _decode(value) >> 80


def generate_history_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    """New history entry id; ``prefix`` is ``vh`` (validation) or ``rh`` (review)."""

    if prefix not in HISTORY_ID_PREFIXES:
        raise ValueError(
            f"history id prefix must be one of: {', '.join(sorted(HISTORY_ID_PREFIXES))}; "
            f"got {prefix!r}"
        )
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_history_id(entry_id: str) -> None:
    if not isinstance(entry_id, str):
        raise ValueError(f"history id must be a string, got {type(entry_id).__name__}")
    prefix, _, ulid = entry_id.partition("-")
    if prefix not in HISTORY_ID_PREFIXES:
        raise ValueError(f"unknown history id prefix {prefix!r}")
    try:
        _decode(ulid)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part in history id {entry_id!r}: {exc}") from exc


def generate_event_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return f"{EVENT_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def _decode(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    decoded = 0
    for index, char in enumerate(value.upper()):
        digit = _DIGITS.get(char)
        if digit is None:
            raise ValueError(f"invalid ULID character {value[index]!r} at index {index}")
        decoded = decoded * 32 + digit
    # 26 base32 digits hold 130 bits; a ULID is 128.
    if decoded >> 128:
        raise ValueError("ulid overflow: value exceeds 128 bits")
    return decoded


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "HISTORY_ID_PREFIXES",
    "REVIEW_HISTORY_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "VALIDATION_HISTORY_ID_PREFIX",
    "generate_event_id",
    "generate_history_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "validate_history_id",
    "validate_ulid",
]
