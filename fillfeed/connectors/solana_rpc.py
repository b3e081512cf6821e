"""Solana JSON-RPC connector for signature listing and transaction fetch.

Thin aiohttp client over the two calls the fill feed needs:
  - getSignaturesForAddress(address, limit | until | before, commitment)
  - getTransaction(signature) → log messages + error status

There is no in-place retry: any transport or RPC failure raises FetchError and
the supervisor restarts the whole pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import aiohttp

from fillfeed.utils.logger import get_logger, mask_url

logger = get_logger("solana_rpc")

DEFAULT_TIMEOUT_S = 30.0


# ================================================================
# Data models
# ================================================================


@dataclass(frozen=True)
class SignatureRecord:
    """One entry of getSignaturesForAddress."""

    signature: str
    slot: int
    err: Any = None
    block_time: int | None = None


@dataclass(frozen=True)
class TransactionDetail:
    """The parts of getTransaction the feed reads."""

    signature: str
    slot: int
    log_messages: list[str] | None
    err: Any = None


# ================================================================
# Error types
# ================================================================


class FetchError(Exception):
    """Transport or JSON-RPC failure talking to the ledger."""


# ================================================================
# Client
# ================================================================


class SolanaRpcClient:
    """Async JSON-RPC client.

    Args:
        rpc_url: HTTP(S) endpoint of the RPC node.
        session: Optional shared aiohttp session.
        commitment: Default commitment for getTransaction.
        timeout_s: Total request timeout when the client owns its session.
    """

    def __init__(
        self,
        rpc_url: str,
        session: aiohttp.ClientSession | None = None,
        commitment: str = "confirmed",
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._rpc_url = rpc_url
        self._session = session
        self._owns_session = session is None
        self._commitment = commitment
        self._timeout_s = timeout_s
        self._request_id = 0
        self._calls = 0

        logger.info("solana_rpc_init", rpc_url=mask_url(rpc_url), commitment=commitment)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("solana_rpc_closed", **self.usage_stats)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list[Any]) -> Any:
        """POST a JSON-RPC request and return its ``result``.

        Raises:
            FetchError: On network failure, non-200 status or an RPC error object.
        """
        session = await self._get_session()
        self._request_id += 1
        self._calls += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            async with session.post(self._rpc_url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise FetchError(f"{method}: HTTP {resp.status}: {body[:200]}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise FetchError(f"{method}: network error: {e}") from e

        if not isinstance(data, dict):
            raise FetchError(f"{method}: unexpected response {str(data)[:200]}")
        if data.get("error") is not None:
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise FetchError(f"{method}: rpc error: {message}")
        return data.get("result")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int | None = None,
        until: str | None = None,
        before: str | None = None,
        commitment: str = "finalized",
    ) -> list[SignatureRecord]:
        """List signatures touching ``address``, newest first.

        ``until`` is exclusive: the node returns signatures back to, but not
        including, that boundary.
        """
        options: dict[str, Any] = {"commitment": commitment}
        if limit is not None:
            options["limit"] = limit
        if until is not None:
            options["until"] = until
        if before is not None:
            options["before"] = before

        result = await self._call("getSignaturesForAddress", [address, options])
        if not result:
            return []
        try:
            return [
                SignatureRecord(
                    signature=item["signature"],
                    slot=int(item["slot"]),
                    err=item.get("err"),
                    block_time=item.get("blockTime"),
                )
                for item in result
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"getSignaturesForAddress: malformed entry: {e}") from e

    async def get_transaction(self, signature: str) -> TransactionDetail | None:
        """Fetch a transaction's metadata. Returns None when the node has no record."""
        result = await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": self._commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None

        meta = result.get("meta") or {}
        return TransactionDetail(
            signature=signature,
            slot=int(result.get("slot", 0)),
            log_messages=meta.get("logMessages"),
            err=meta.get("err"),
        )

    @property
    def usage_stats(self) -> dict[str, int]:
        """Number of RPC calls made by this client."""
        return {"calls": self._calls}
