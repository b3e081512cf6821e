"""Shared test fixtures for the fill feed test suite."""

from __future__ import annotations

import base64
import os
import struct
from collections.abc import Callable
from typing import Any

import pytest

from fillfeed.connectors.solana_rpc import SignatureRecord, TransactionDetail

# Set test environment before any config is loaded
os.environ.setdefault("MODE", "test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

MARKET_KEY = bytes([7] * 32)
MAKER_KEY = bytes([11] * 32)
TAKER_KEY = bytes([13] * 32)
TRADER_KEY = bytes([17] * 32)

D18 = 10**18
_U64 = (1 << 64) - 1


# ---------------------------------------------------------------------------
# Payload factories (independent of the decoder's own struct layouts)
# ---------------------------------------------------------------------------


def encode_fill(
    market: bytes = MARKET_KEY,
    maker: bytes = MAKER_KEY,
    taker: bytes = TAKER_KEY,
    price_inner: int = 150 * D18,
    base_atoms: int = 1_000_000_000,
    quote_atoms: int = 150_000_000,
    maker_sequence_number: int = 41,
    taker_sequence_number: int = 42,
    taker_is_buy: bool = True,
    is_maker_global: bool = False,
) -> bytes:
    return (
        market
        + maker
        + taker
        + (price_inner & _U64).to_bytes(8, "little")
        + (price_inner >> 64).to_bytes(8, "little")
        + struct.pack(
            "<QQQQ", base_atoms, quote_atoms, maker_sequence_number, taker_sequence_number
        )
        + bytes([int(taker_is_buy), int(is_maker_global)])
        + bytes(14)
    )


def encode_place_order(
    market: bytes = MARKET_KEY,
    trader: bytes = TRADER_KEY,
    price_inner: int = 149 * D18,
    base_atoms: int = 500_000_000,
    order_sequence_number: int = 77,
    order_index: int = 3,
    last_valid_slot: int = 0,
    order_type: int = 0,
    is_bid: bool = True,
) -> bytes:
    return (
        market
        + trader
        + (price_inner & _U64).to_bytes(8, "little")
        + (price_inner >> 64).to_bytes(8, "little")
        + struct.pack("<QQII", base_atoms, order_sequence_number, order_index, last_valid_slot)
        + bytes([order_type, int(is_bid)])
        + bytes(6)
    )


def program_data_line(tag: bytes, payload: bytes) -> str:
    return "Program data: " + base64.b64encode(tag + payload).decode()


@pytest.fixture
def fill_payload() -> Callable[..., bytes]:
    """Factory for FillLog payloads (without discriminator)."""
    return encode_fill


@pytest.fixture
def place_order_payload() -> Callable[..., bytes]:
    """Factory for PlaceOrderLog payloads (without discriminator)."""
    return encode_place_order


@pytest.fixture
def data_line() -> Callable[[bytes, bytes], str]:
    """Factory for ``Program data:`` log lines."""
    return program_data_line


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLedger:
    """In-memory ledger honouring limit / until / before like the RPC node."""

    def __init__(self) -> None:
        self.history: list[SignatureRecord] = []  # oldest first
        self.transactions: dict[str, TransactionDetail | None] = {}
        self.scripted: list[list[SignatureRecord]] = []
        self.signature_calls: list[dict[str, Any]] = []
        self.fetched: list[str] = []
        self.closed = False

    def add(
        self,
        signature: str,
        slot: int,
        logs: list[str] | None = None,
        err: Any = None,
    ) -> SignatureRecord:
        record = SignatureRecord(signature=signature, slot=slot)
        self.history.append(record)
        self.transactions[signature] = TransactionDetail(signature, slot, logs, err)
        return record

    def script(self, *responses: list[SignatureRecord]) -> None:
        """Queue raw responses for the next ``until`` queries, newest first."""
        self.scripted.extend(responses)

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int | None = None,
        until: str | None = None,
        before: str | None = None,
        commitment: str = "finalized",
    ) -> list[SignatureRecord]:
        self.signature_calls.append(
            {"address": address, "limit": limit, "until": until, "before": before}
        )
        if until is not None and self.scripted:
            return list(self.scripted.pop(0))

        newest_first = list(reversed(self.history))
        if before is not None:
            names = [r.signature for r in newest_first]
            newest_first = newest_first[names.index(before) + 1 :]
        out: list[SignatureRecord] = []
        for record in newest_first:
            if record.signature == until:
                break
            out.append(record)
        if limit is not None:
            out = out[:limit]
        return out

    async def get_transaction(self, signature: str) -> TransactionDetail | None:
        self.fetched.append(signature)
        return self.transactions.get(signature)

    async def close(self) -> None:
        self.closed = True


class RecordingSink:
    """Metrics sink that remembers every increment."""

    def __init__(self) -> None:
        self.increments: list[dict[str, str]] = []

    def increment(self, labels: dict[str, str]) -> None:
        self.increments.append(dict(labels))


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()
