"""Fill feed: polls Manifest program signatures and fans out decoded logs.

Lifecycle: ``INIT`` → ``RUNNING`` → ``STOPPING`` → ``STOPPED``.

Each cycle lists every finalized signature newer than the cursor, walks them
oldest first, fetches the transaction, pulls the ``Program data:`` records out
of its logs and dispatches the fill / place-order events it recognises.

The cursor lives in memory only. After a restart the feed starts again from
the program's most recent signature.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from fillfeed.config.settings import MANIFEST_PROGRAM_ID
from fillfeed.connectors.solana_rpc import SignatureRecord, TransactionDetail
from fillfeed.core.dedup import DEFAULT_MAX_SIZE, DedupWindow
from fillfeed.core.discriminator import DISCRIMINATOR_SIZE, classify
from fillfeed.core.events import DecodedEvent, DecodeError, decode_event
from fillfeed.core.fanout import EventFanout
from fillfeed.utils.logger import get_logger

logger = get_logger("fill_feed")

PROGRAM_DATA_MARKER = "Program data: "
DEFAULT_POLL_INTERVAL_S = 10.0
DEFAULT_STOP_TIMEOUT_S = 30.0
DEFAULT_PAGE_LIMIT = 1000


class FeedState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Cursor:
    """Last processed position on the ledger."""

    last_signature: str
    last_slot: int


class LedgerSource(Protocol):
    """The RPC calls the feed depends on."""

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int | None = None,
        until: str | None = None,
        before: str | None = None,
        commitment: str = "finalized",
    ) -> list[SignatureRecord]: ...

    async def get_transaction(self, signature: str) -> TransactionDetail | None: ...


# ================================================================
# Error types
# ================================================================


class NoInitialSignature(Exception):
    """The program has no signature history to start from."""


class ShutdownTimeout(Exception):
    """The poll loop did not reach STOPPED within the allotted time."""


# ================================================================
# Log extraction
# ================================================================


def extract_program_data(log_messages: list[str]) -> list[str]:
    """Return the base64 payloads of ``Program data:`` lines in log order.

    Identical lines within one transaction are only kept once.
    """
    payloads: list[str] = []
    for line in dict.fromkeys(m for m in log_messages if PROGRAM_DATA_MARKER in m):
        token = line.split(PROGRAM_DATA_MARKER, 1)[1].strip().split(" ", 1)[0]
        if token:
            payloads.append(token)
    return payloads


# ================================================================
# Feed
# ================================================================


class FillFeed:
    """Poll loop and cursor tracker for Manifest log events.

    Args:
        rpc: Ledger client exposing signature listing and transaction fetch.
        fanout: Destination for decoded events.
        program_id: Program whose signatures are tracked.
        poll_interval_s: Wait before each poll cycle.
        signature_commitment: Finality level for signature listing.
        page_limit: Page size for signature listing; full pages are followed.
        dedup_max_size: High-water mark of the dedup window.
        target_market: Only dispatch events for this market (empty = all).
        time_fn: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        rpc: LedgerSource,
        fanout: EventFanout,
        program_id: str = MANIFEST_PROGRAM_ID,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        signature_commitment: str = "finalized",
        page_limit: int = DEFAULT_PAGE_LIMIT,
        dedup_max_size: int = DEFAULT_MAX_SIZE,
        target_market: str = "",
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rpc = rpc
        self._fanout = fanout
        self._program_id = program_id
        self._poll_interval_s = poll_interval_s
        self._commitment = signature_commitment
        self._page_limit = page_limit
        self._target_market = target_market
        self._time_fn = time_fn

        self._state = FeedState.INIT
        self._cursor: Cursor | None = None
        self._dedup = DedupWindow(dedup_max_size)
        self._stop_requested = asyncio.Event()
        self._stopped = asyncio.Event()
        self._last_update = time_fn()

        self._signatures_processed = 0
        self._events_dispatched = 0
        self._transactions_skipped = 0
        self._decode_failures = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def cursor(self) -> Cursor | None:
        return self._cursor

    @property
    def dedup(self) -> DedupWindow:
        return self._dedup

    def seconds_since_last_update(self) -> float:
        """Time since the last poll cycle that returned signatures."""
        return self._time_fn() - self._last_update

    async def parse_logs(self, deadline_s: float | None = None) -> None:
        """Run the poll loop until stopped.

        Args:
            deadline_s: End the loop after this many seconds (tests only).

        Raises:
            NoInitialSignature: The program has no signatures.
            FetchError: Any RPC failure; the caller is expected to restart.
        """
        try:
            self._cursor = await self._initial_cursor()
            if self._state is FeedState.INIT:
                self._state = FeedState.RUNNING
            logger.info(
                "feed_running",
                program_id=self._program_id,
                last_signature=self._cursor.last_signature,
                last_slot=self._cursor.last_slot,
                poll_interval_s=self._poll_interval_s,
            )

            end = None if deadline_s is None else self._time_fn() + deadline_s
            while not self._stop_requested.is_set():
                wait_s = self._poll_interval_s
                if end is not None:
                    remaining = end - self._time_fn()
                    if remaining <= 0:
                        break
                    wait_s = min(wait_s, remaining)
                if await self._wait_for_stop(wait_s):
                    break
                await self.poll_once()
        finally:
            self._finish()

    def request_stop(self) -> None:
        """Ask the loop to stop after its current batch."""
        if self._state is FeedState.STOPPED:
            return
        self._stop_requested.set()
        if self._state is not FeedState.STOPPING:
            self._state = FeedState.STOPPING
            logger.info("feed_stop_requested")

    async def stop_parse_logs(self, timeout_s: float = DEFAULT_STOP_TIMEOUT_S) -> None:
        """Request stop and wait for the loop to reach STOPPED.

        Raises:
            ShutdownTimeout: The loop is still running after ``timeout_s``.
        """
        self.request_stop()
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout_s)
        except TimeoutError as e:
            raise ShutdownTimeout(f"failed to stop parse_logs after {timeout_s} seconds") from e

    async def poll_once(self) -> int:
        """Run a single poll cycle. Returns the number of signatures processed."""
        if self._cursor is None:
            raise RuntimeError("Cursor not initialized")

        signatures = await self._fetch_new_signatures(self._cursor)
        if not signatures:
            logger.debug("poll_empty", last_signature=self._cursor.last_signature)
            return 0

        processed = 0
        for record in signatures:
            if record.slot < self._cursor.last_slot:
                logger.info(
                    "signature_behind_cursor",
                    signature=record.signature,
                    slot=record.slot,
                    last_slot=self._cursor.last_slot,
                )
                continue
            if not self._dedup.add(record.signature):
                logger.debug("signature_already_seen", signature=record.signature)
                continue

            await self._handle_signature(record)
            processed += 1
            self._signatures_processed += 1

        newest = signatures[-1]
        if newest.slot >= self._cursor.last_slot:
            self._cursor = Cursor(newest.signature, newest.slot)
        self._last_update = self._time_fn()
        evicted = self._dedup.trim()

        logger.info(
            "poll_batch_done",
            last_signature=self._cursor.last_signature,
            last_slot=self._cursor.last_slot,
            num_sigs=len(signatures),
            processed=processed,
            dedup_evicted=evicted,
        )
        return processed

    # ------------------------------------------------------------------
    # Poll loop internals
    # ------------------------------------------------------------------

    async def _initial_cursor(self) -> Cursor:
        records = await self._rpc.get_signatures_for_address(
            self._program_id, limit=1, commitment=self._commitment
        )
        if not records:
            raise NoInitialSignature(f"no signatures found for program {self._program_id}")
        return Cursor(records[0].signature, records[0].slot)

    async def _fetch_new_signatures(self, cursor: Cursor) -> list[SignatureRecord]:
        """All signatures newer than the cursor, oldest first.

        The node returns newest first and caps each page, so full pages are
        followed backwards with ``before`` until the ``until`` boundary.
        """
        records: list[SignatureRecord] = []
        before: str | None = None
        while True:
            page = await self._rpc.get_signatures_for_address(
                self._program_id,
                limit=self._page_limit,
                until=cursor.last_signature,
                before=before,
                commitment=self._commitment,
            )
            records.extend(page)
            if len(page) < self._page_limit:
                break
            before = page[-1].signature
        records.reverse()
        return records

    async def _wait_for_stop(self, timeout_s: float) -> bool:
        """Sleep up to ``timeout_s``; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout_s)
        except TimeoutError:
            return False
        return True

    def _finish(self) -> None:
        self._state = FeedState.STOPPING
        self._fanout.close()
        self._state = FeedState.STOPPED
        self._stopped.set()
        logger.info("feed_loop_ended", **self.stats)

    # ------------------------------------------------------------------
    # Per-signature processing
    # ------------------------------------------------------------------

    async def _handle_signature(self, record: SignatureRecord) -> None:
        """Fetch one transaction and dispatch every event in its logs."""
        logger.debug("handling_signature", signature=record.signature, slot=record.slot)
        tx = await self._rpc.get_transaction(record.signature)

        if tx is None or not tx.log_messages:
            self._transactions_skipped += 1
            logger.info("transaction_skipped", reason="no_log_messages", signature=record.signature)
            return
        if tx.err is not None:
            self._transactions_skipped += 1
            logger.info("transaction_skipped", reason="failed", signature=record.signature)
            return

        payloads = extract_program_data(tx.log_messages)
        if not payloads:
            self._transactions_skipped += 1
            logger.info("transaction_skipped", reason="no_program_data", signature=record.signature)
            return

        for payload in payloads:
            event = self._decode_program_data(payload, record)
            if event is None:
                continue
            if self._target_market and event.market != self._target_market:
                logger.debug("event_other_market", market=event.market)
                continue

            logger.info("event_received", type=event.kind.value, data=event.to_dict())
            self._fanout.dispatch(event)
            self._events_dispatched += 1

    def _decode_program_data(self, payload: str, record: SignatureRecord) -> DecodedEvent | None:
        """Decode one base64 record. Unknown tags and malformed data yield None."""
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("program_data_invalid", signature=record.signature, error=str(e))
            return None

        if classify(data) is None:
            return None

        try:
            return decode_event(
                data[:DISCRIMINATOR_SIZE],
                data[DISCRIMINATOR_SIZE:],
                signature=record.signature,
                slot=record.slot,
            )
        except DecodeError as e:
            self._decode_failures += 1
            logger.warning("decode_failed", signature=record.signature, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_healthy(self) -> bool:
        """True while the loop is running."""
        return self._state is FeedState.RUNNING

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "signatures_processed": self._signatures_processed,
            "events_dispatched": self._events_dispatched,
            "transactions_skipped": self._transactions_skipped,
            "decode_failures": self._decode_failures,
            "dedup_size": len(self._dedup),
        }
