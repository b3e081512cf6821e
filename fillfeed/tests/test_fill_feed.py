"""Tests for the fill feed poll loop.

Uses the in-memory FakeLedger from conftest, no network.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from solders.pubkey import Pubkey

from fillfeed.connectors.solana_rpc import SignatureRecord
from fillfeed.core.discriminator import (
    FILL_DISCRIMINATOR,
    PLACE_ORDER_DISCRIMINATOR,
    gen_discriminator,
)
from fillfeed.core.fanout import EventFanout, ListenerRegistry
from fillfeed.core.fill_feed import (
    Cursor,
    FeedState,
    FillFeed,
    NoInitialSignature,
    ShutdownTimeout,
    extract_program_data,
)

PROGRAM = "MNFSTqtC93rEfYHB6hF82sKdZpUDFWkViLByLd1k1Ms"
MARKET = str(Pubkey.from_bytes(bytes([7] * 32)))


def _make_feed(ledger: Any, sink: Any = None, **kwargs: Any) -> tuple[FillFeed, ListenerRegistry]:
    registry = ListenerRegistry()
    kwargs.setdefault("poll_interval_s", 0.01)
    feed = FillFeed(ledger, EventFanout(registry, sink), program_id=PROGRAM, **kwargs)
    return feed, registry


async def _prime(feed: FillFeed) -> None:
    """Set the starting cursor the way parse_logs does."""
    feed._cursor = await feed._initial_cursor()


async def _drain(channel) -> list[str | None]:  # noqa: ANN001
    await asyncio.sleep(0)
    out = []
    while channel.pending():
        out.append(await channel.get())
    return out


# ================================================================
# Log extraction
# ================================================================


class TestExtractProgramData:
    def test_keeps_order_and_drops_other_lines(self) -> None:
        logs = [
            "Program MNFST invoke [1]",
            "Program data: AAAA",
            "Program log: Instruction: Swap",
            "Program data: BBBB",
        ]
        assert extract_program_data(logs) == ["AAAA", "BBBB"]

    def test_identical_lines_kept_once(self) -> None:
        logs = ["Program data: AAAA", "Program data: AAAA", "Program data: CCCC"]
        assert extract_program_data(logs) == ["AAAA", "CCCC"]

    def test_takes_first_token(self) -> None:
        assert extract_program_data(["Program data: AAAA BBBB"]) == ["AAAA"]

    def test_empty_marker_ignored(self) -> None:
        assert extract_program_data(["Program data: "]) == []


# ================================================================
# End-to-end poll cycles
# ================================================================


class TestPollCycle:
    async def test_fill_dispatched_once(
        self,
        ledger,
        recording_sink,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        feed, registry = _make_feed(ledger, recording_sink)
        channel = registry.register()
        await _prime(feed)

        ledger.add(
            "tx1",
            101,
            logs=["Program log: Instruction: Swap", data_line(FILL_DISCRIMINATOR, fill_payload())],
        )
        processed = await feed.poll_once()

        assert processed == 1
        assert recording_sink.increments == [
            {"market": MARKET, "isGlobal": "false", "takerIsBuy": "true"}
        ]
        messages = await _drain(channel)
        assert len(messages) == 1
        body = json.loads(messages[0])
        assert body["type"] == "fill"
        assert body["data"]["signature"] == "tx1"
        assert body["data"]["slot"] == 101
        assert feed.cursor == Cursor("tx1", 101)

    async def test_failed_transaction_skipped_cursor_advances(
        self,
        ledger,
        recording_sink,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger, recording_sink)
        await _prime(feed)

        ledger.add(
            "bad",
            105,
            logs=[data_line(FILL_DISCRIMINATOR, fill_payload())],
            err={"InstructionError": [0, {"Custom": 1}]},
        )
        await feed.poll_once()

        assert recording_sink.increments == []
        assert feed.stats["events_dispatched"] == 0
        assert feed.stats["transactions_skipped"] == 1
        assert feed.cursor == Cursor("bad", 105)

    async def test_overlapping_cycles_process_boundary_once(
        self,
        ledger,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        line = data_line(FILL_DISCRIMINATOR, fill_payload())
        s1 = ledger.add("s1", 101, logs=[line])
        s2 = ledger.add("s2", 102, logs=[line])
        s3 = ledger.add("s3", 103, logs=[line])
        ledger.history = ledger.history[:1]
        ledger.script([s2, s1], [s3, s2])

        feed, _ = _make_feed(ledger)
        await _prime(feed)
        await feed.poll_once()
        await feed.poll_once()

        assert ledger.fetched == ["s1", "s2", "s3"]
        assert feed.stats["events_dispatched"] == 3
        assert feed.cursor == Cursor("s3", 103)

    async def test_multiple_events_in_log_order(
        self,
        ledger,
        fill_payload: Callable[..., bytes],
        place_order_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        feed, registry = _make_feed(ledger)
        channel = registry.register()
        await _prime(feed)

        ledger.add(
            "tx1",
            101,
            logs=[
                data_line(PLACE_ORDER_DISCRIMINATOR, place_order_payload()),
                data_line(gen_discriminator("manifest::logs::CancelOrderLog"), bytes(40)),
                data_line(FILL_DISCRIMINATOR, fill_payload()),
            ],
        )
        await feed.poll_once()

        types = [json.loads(m)["type"] for m in await _drain(channel)]
        assert types == ["placeOrder", "fill"]
        assert feed.stats["decode_failures"] == 0

    async def test_empty_poll_keeps_cursor(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        assert await feed.poll_once() == 0
        assert feed.cursor == Cursor("genesis", 100)

    async def test_poll_before_start_rejected(self, ledger) -> None:
        feed, _ = _make_feed(ledger)
        with pytest.raises(RuntimeError, match="Cursor not initialized"):
            await feed.poll_once()


class TestSkipRules:
    async def test_missing_transaction(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        ledger.add("gone", 101)
        ledger.transactions["gone"] = None
        await feed.poll_once()

        assert feed.stats["transactions_skipped"] == 1
        assert feed.cursor == Cursor("gone", 101)

    async def test_no_program_data(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        ledger.add("tx1", 101, logs=["Program log: nothing here"])
        await feed.poll_once()

        assert feed.stats["transactions_skipped"] == 1
        assert feed.stats["events_dispatched"] == 0

    async def test_invalid_base64_skipped(
        self,
        ledger,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        ledger.add(
            "tx1",
            101,
            logs=["Program data: !!not-base64!!", data_line(FILL_DISCRIMINATOR, fill_payload())],
        )
        await feed.poll_once()

        assert feed.stats["events_dispatched"] == 1

    async def test_malformed_payload_skipped(
        self,
        ledger,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        ledger.add(
            "tx1",
            101,
            logs=[
                data_line(FILL_DISCRIMINATOR, fill_payload()[:100]),
                data_line(FILL_DISCRIMINATOR, fill_payload(base_atoms=5)),
            ],
        )
        await feed.poll_once()

        assert feed.stats["decode_failures"] == 1
        assert feed.stats["events_dispatched"] == 1

    async def test_target_market_filter(
        self,
        ledger,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger, target_market=MARKET)
        await _prime(feed)

        ledger.add(
            "tx1",
            101,
            logs=[
                data_line(FILL_DISCRIMINATOR, fill_payload(market=bytes([9] * 32))),
                data_line(FILL_DISCRIMINATOR, fill_payload()),
            ],
        )
        await feed.poll_once()

        assert feed.stats["events_dispatched"] == 1


# ================================================================
# Cursor and dedup
# ================================================================


class TestCursorAndDedup:
    async def test_signature_behind_cursor_skipped(self, ledger) -> None:
        ledger.add("genesis", 200)
        ledger.script([SignatureRecord("late", 150)])
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        assert await feed.poll_once() == 0
        assert ledger.fetched == []
        assert feed.cursor == Cursor("genesis", 200)

    async def test_duplicate_within_batch(
        self,
        ledger,
        fill_payload: Callable[..., bytes],
        data_line: Callable[[bytes, bytes], str],
    ) -> None:
        ledger.add("genesis", 100)
        s1 = ledger.add("s1", 101, logs=[data_line(FILL_DISCRIMINATOR, fill_payload())])
        ledger.history = ledger.history[:1]
        ledger.script([s1, s1])
        feed, _ = _make_feed(ledger)
        await _prime(feed)

        assert await feed.poll_once() == 1
        assert ledger.fetched == ["s1"]

    async def test_follows_full_pages(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger, page_limit=2)
        await _prime(feed)
        for i in range(1, 6):
            ledger.add(f"t{i}", 100 + i, logs=["Program log: hi"])

        assert await feed.poll_once() == 5
        assert ledger.fetched == ["t1", "t2", "t3", "t4", "t5"]
        assert [c["before"] for c in ledger.signature_calls[1:]] == [None, "t4", "t2"]
        assert all(c["until"] == "genesis" for c in ledger.signature_calls[1:])
        assert feed.cursor == Cursor("t5", 105)

    async def test_dedup_window_trimmed(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger, dedup_max_size=3)
        await _prime(feed)
        for i in range(1, 6):
            ledger.add(f"t{i}", 100 + i, logs=["Program log: hi"])

        await feed.poll_once()

        assert len(feed.dedup) == 3
        assert "t5" in feed.dedup
        assert "t1" not in feed.dedup


# ================================================================
# Lifecycle
# ================================================================


class _BlockingLedger:
    """Wraps a FakeLedger and parks get_transaction until released."""

    def __init__(self, inner: Any) -> None:
        self._inner = inner
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_signatures_for_address(self, address: str, **kwargs: Any) -> list[Any]:
        return await self._inner.get_signatures_for_address(address, **kwargs)

    async def get_transaction(self, signature: str) -> Any:
        self.entered.set()
        await self.release.wait()
        return await self._inner.get_transaction(signature)


class TestLifecycle:
    async def test_no_initial_signature(self, ledger) -> None:
        feed, _ = _make_feed(ledger)
        with pytest.raises(NoInitialSignature):
            await feed.parse_logs()
        assert feed.state is FeedState.STOPPED

    async def test_starts_in_init(self, ledger) -> None:
        feed, _ = _make_feed(ledger)
        assert feed.state is FeedState.INIT
        assert not feed.is_healthy

    async def test_stop_while_running(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, registry = _make_feed(ledger)
        channel = registry.register()

        task = asyncio.create_task(feed.parse_logs())
        await asyncio.sleep(0.05)
        assert feed.state is FeedState.RUNNING
        assert feed.is_healthy

        await feed.stop_parse_logs(timeout_s=1.0)
        await task

        assert feed.state is FeedState.STOPPED
        assert channel.closed
        assert registry.count == 0

    async def test_stop_mid_batch_times_out(self, ledger) -> None:
        ledger.add("genesis", 100)
        blocking = _BlockingLedger(ledger)
        feed, _ = _make_feed(blocking)

        task = asyncio.create_task(feed.parse_logs())
        await asyncio.sleep(0.02)
        ledger.add("tx1", 101, logs=["Program log: hi"])
        await asyncio.wait_for(blocking.entered.wait(), 1.0)

        with pytest.raises(ShutdownTimeout):
            await feed.stop_parse_logs(timeout_s=0.05)
        assert feed.state is FeedState.STOPPING

        blocking.release.set()
        await asyncio.wait_for(task, 1.0)
        assert feed.state is FeedState.STOPPED

    async def test_stop_after_crash_returns(self, ledger) -> None:
        feed, _ = _make_feed(ledger)
        with pytest.raises(NoInitialSignature):
            await feed.parse_logs()
        await feed.stop_parse_logs(timeout_s=0.1)
        assert feed.state is FeedState.STOPPED

    async def test_deadline_ends_loop(self, ledger) -> None:
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger)

        await asyncio.wait_for(feed.parse_logs(deadline_s=0.05), 1.0)

        assert feed.state is FeedState.STOPPED

    async def test_seconds_since_last_update(
        self,
        ledger,
    ) -> None:
        clock = [0.0]
        ledger.add("genesis", 100)
        feed, _ = _make_feed(ledger, time_fn=lambda: clock[0])
        await _prime(feed)

        clock[0] = 50.0
        await feed.poll_once()
        assert feed.seconds_since_last_update() == 50.0

        ledger.add("tx1", 101, logs=["Program log: hi"])
        await feed.poll_once()
        assert feed.seconds_since_last_update() == 0.0

        clock[0] = 80.0
        assert feed.seconds_since_last_update() == 30.0
