"""Typed Manifest log events and their binary decoder.

Payloads are the bytes following the 8-byte discriminator, laid out as packed
little-endian structs. u64 quantities and sequence numbers are carried as
decimal strings so JSON consumers never overflow; the u128 fixed-point price
is converted to an exact Decimal.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Any

from solders.pubkey import Pubkey

from fillfeed.core.discriminator import DISCRIMINATORS, EventKind

# Prices are QuoteAtomsPerBaseAtom with 18 decimals of fixed-point precision
PRICE_DECIMALS = 18

# market, maker, taker, price (lo, hi), base_atoms, quote_atoms,
# maker_seq, taker_seq, taker_is_buy, is_maker_global, padding
_FILL_LOG = struct.Struct("<32s32s32sQQQQQQBB14s")
# market, trader, price (lo, hi), base_atoms, order_seq, order_index,
# last_valid_slot, order_type, is_bid, padding
_PLACE_ORDER_LOG = struct.Struct("<32s32sQQQQIIBB6s")

FILL_LOG_SIZE = _FILL_LOG.size
PLACE_ORDER_LOG_SIZE = _PLACE_ORDER_LOG.size


class OrderType(IntEnum):
    LIMIT = 0
    IMMEDIATE_OR_CANCEL = 1
    POST_ONLY = 2
    GLOBAL = 3
    REVERSE = 4


# ================================================================
# Error types
# ================================================================


class DecodeError(Exception):
    """A log record could not be decoded."""


class UnknownDiscriminator(DecodeError):
    """Tag does not belong to any known event kind."""


class MalformedPayload(DecodeError):
    """Payload does not match the layout for its tag."""


# ================================================================
# Data models
# ================================================================


@dataclass(frozen=True)
class FillEvent:
    """A maker order matched against a taker."""

    market: str
    maker: str
    taker: str
    base_atoms: str
    quote_atoms: str
    price: Decimal
    taker_is_buy: bool
    is_maker_global: bool
    maker_sequence_number: str
    taker_sequence_number: str
    signature: str
    slot: int

    kind = EventKind.FILL

    def to_dict(self) -> dict[str, Any]:
        return {
            "market": self.market,
            "maker": self.maker,
            "taker": self.taker,
            "baseAtoms": self.base_atoms,
            "quoteAtoms": self.quote_atoms,
            "priceAtoms": float(self.price),
            "takerIsBuy": self.taker_is_buy,
            "isMakerGlobal": self.is_maker_global,
            "makerSequenceNumber": self.maker_sequence_number,
            "takerSequenceNumber": self.taker_sequence_number,
            "signature": self.signature,
            "slot": self.slot,
        }


@dataclass(frozen=True)
class PlaceOrderEvent:
    """An order resting on the book."""

    market: str
    trader: str
    base_atoms: str
    price: Decimal
    order_sequence_number: str
    order_index: int
    last_valid_slot: int
    order_type: OrderType
    is_bid: bool
    padding: tuple[int, ...]
    signature: str
    slot: int

    kind = EventKind.PLACE_ORDER

    def to_dict(self) -> dict[str, Any]:
        return {
            "market": self.market,
            "trader": self.trader,
            "baseAtoms": self.base_atoms,
            "price": float(self.price),
            "orderSequenceNumber": self.order_sequence_number,
            "orderIndex": self.order_index,
            "lastValidSlot": self.last_valid_slot,
            "orderType": int(self.order_type),
            "isBid": self.is_bid,
            "padding": list(self.padding),
            "signature": self.signature,
            "slot": self.slot,
        }


DecodedEvent = FillEvent | PlaceOrderEvent


# ================================================================
# Decoding
# ================================================================


def convert_u128(lo: int, hi: int = 0) -> Decimal:
    """Convert a u128 fixed-point price (two little-endian u64 words) to Decimal.

    Built from a string so the result is exact regardless of context precision.
    """
    inner = (hi << 64) | lo
    return Decimal(f"{inner}E-{PRICE_DECIMALS}")


def _pubkey(raw: bytes) -> str:
    return str(Pubkey.from_bytes(raw))


def _pod_bool(value: int, field: str) -> bool:
    if value not in (0, 1):
        raise MalformedPayload(f"{field}: invalid bool byte {value}")
    return value == 1


def _check_size(payload: bytes, expected: int, name: str) -> None:
    if len(payload) != expected:
        raise MalformedPayload(f"{name}: expected {expected} bytes, got {len(payload)}")


def decode_fill(payload: bytes, signature: str = "", slot: int = 0) -> FillEvent:
    _check_size(payload, FILL_LOG_SIZE, "FillLog")
    (
        market,
        maker,
        taker,
        price_lo,
        price_hi,
        base_atoms,
        quote_atoms,
        maker_seq,
        taker_seq,
        taker_is_buy,
        is_maker_global,
        _padding,
    ) = _FILL_LOG.unpack(payload)

    return FillEvent(
        market=_pubkey(market),
        maker=_pubkey(maker),
        taker=_pubkey(taker),
        base_atoms=str(base_atoms),
        quote_atoms=str(quote_atoms),
        price=convert_u128(price_lo, price_hi),
        taker_is_buy=_pod_bool(taker_is_buy, "taker_is_buy"),
        is_maker_global=_pod_bool(is_maker_global, "is_maker_global"),
        maker_sequence_number=str(maker_seq),
        taker_sequence_number=str(taker_seq),
        signature=signature,
        slot=slot,
    )


def decode_place_order(payload: bytes, signature: str = "", slot: int = 0) -> PlaceOrderEvent:
    _check_size(payload, PLACE_ORDER_LOG_SIZE, "PlaceOrderLog")
    (
        market,
        trader,
        price_lo,
        price_hi,
        base_atoms,
        order_seq,
        order_index,
        last_valid_slot,
        order_type,
        is_bid,
        padding,
    ) = _PLACE_ORDER_LOG.unpack(payload)

    try:
        parsed_type = OrderType(order_type)
    except ValueError as e:
        raise MalformedPayload(f"PlaceOrderLog: unknown order type {order_type}") from e

    return PlaceOrderEvent(
        market=_pubkey(market),
        trader=_pubkey(trader),
        base_atoms=str(base_atoms),
        price=convert_u128(price_lo, price_hi),
        order_sequence_number=str(order_seq),
        order_index=order_index,
        last_valid_slot=last_valid_slot,
        order_type=parsed_type,
        is_bid=_pod_bool(is_bid, "is_bid"),
        padding=tuple(padding),
        signature=signature,
        slot=slot,
    )


_DECODERS = {
    EventKind.FILL: decode_fill,
    EventKind.PLACE_ORDER: decode_place_order,
}


def decode_event(tag: bytes, payload: bytes, signature: str = "", slot: int = 0) -> DecodedEvent:
    """Decode the payload following ``tag`` into a typed event.

    Args:
        tag: 8-byte discriminator.
        payload: Bytes after the discriminator.
        signature: Transaction signature, recorded as provenance.
        slot: Slot of the transaction.

    Raises:
        UnknownDiscriminator: ``tag`` is not a known event kind.
        MalformedPayload: payload length or contents do not fit the layout.
    """
    kind = DISCRIMINATORS.get(bytes(tag))
    if kind is None:
        raise UnknownDiscriminator(f"unknown discriminator {bytes(tag).hex()}")
    return _DECODERS[kind](bytes(payload), signature, slot)
