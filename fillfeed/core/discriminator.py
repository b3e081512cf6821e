"""Event discriminators for Manifest program logs.

Each log record emitted by the program starts with an 8-byte tag derived from
the fully-qualified Rust type name.
"""

from __future__ import annotations

import hashlib
from enum import Enum

DISCRIMINATOR_SIZE = 8

FILL_LOG_NAME = "manifest::logs::FillLog"
PLACE_ORDER_LOG_NAME = "manifest::logs::PlaceOrderLog"


class EventKind(str, Enum):
    """Known log record kinds. Values are the wire ``type`` field."""

    FILL = "fill"
    PLACE_ORDER = "placeOrder"


def gen_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256(name)."""
    return hashlib.sha256(name.encode("utf-8")).digest()[:DISCRIMINATOR_SIZE]


FILL_DISCRIMINATOR = gen_discriminator(FILL_LOG_NAME)
PLACE_ORDER_DISCRIMINATOR = gen_discriminator(PLACE_ORDER_LOG_NAME)


def _tag_table(names: dict[EventKind, str]) -> dict[bytes, EventKind]:
    """Map each tag to its kind. Raises RuntimeError if two names share a tag."""
    table: dict[bytes, EventKind] = {}
    for kind, name in names.items():
        tag = gen_discriminator(name)
        if tag in table:
            raise RuntimeError(f"discriminator collision: {name} and {table[tag].value}")
        table[tag] = kind
    return table


DISCRIMINATORS = _tag_table(
    {EventKind.FILL: FILL_LOG_NAME, EventKind.PLACE_ORDER: PLACE_ORDER_LOG_NAME}
)


def classify(data: bytes) -> EventKind | None:
    """Match the leading tag of a decoded log record, or None if unknown."""
    if len(data) < DISCRIMINATOR_SIZE:
        return None
    return DISCRIMINATORS.get(bytes(data[:DISCRIMINATOR_SIZE]))
