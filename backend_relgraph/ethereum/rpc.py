"""
Ethereum JSON-RPC client with retry and backoff.

Responsibilities:
- Post JSON-RPC 2.0 envelopes with an incrementing request id.
- Surface node-side errors immediately as RpcProtocolError (never retried).
- Retry network failures and non-2xx HTTP statuses with exponential backoff,
  then raise RpcTransportError.
- Treat HTTP 429 separately: back off (honouring Retry-After) against its own
  budget, max_rate_limit_retries, so throttling never eats the transport budget.

Higher-level helpers (block number, block, logs, block timestamp) are plain
translations over call() and add no retry logic of their own.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any

import httpx

from backend_relgraph.core.exceptions import NotFoundError, RpcProtocolError, RpcTransportError
from backend_relgraph.ethereum.models import EthBlock, EthLog
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_RATE_LIMIT_RETRIES = 5
DEFAULT_BACKOFF_BASE_SEC = 1.0
DEFAULT_MAX_BACKOFF_SEC = 30.0
HTTP_TOO_MANY_REQUESTS = 429


def to_hex(num: int) -> str:
    return hex(num)


def from_hex(value: str) -> int:
    return int(value, 16)


class EthereumRpc:
    """
    Async JSON-RPC gateway to one Ethereum node.

    max_retries counts retries after the first attempt for transport failures,
    so a call makes at most max_retries + 1 attempts before RpcTransportError.
    Rate-limited (429) responses use max_rate_limit_retries instead.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES,
        backoff_base_sec: float = DEFAULT_BACKOFF_BASE_SEC,
        max_backoff_sec: float = DEFAULT_MAX_BACKOFF_SEC,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not (url or "").strip():
            raise ValueError("RPC URL is required")
        if max_retries < 0 or max_rate_limit_retries < 0:
            raise ValueError("retry budgets must be non-negative")
        self._url = url.strip()
        self._max_retries = max_retries
        self._max_rate_limit_retries = max_rate_limit_retries
        self._backoff_base = max(0.0, backoff_base_sec)
        self._max_backoff = max(0.0, max_backoff_sec)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))
        self._ids = itertools.count(1)
        self._last_id = 0

    @classmethod
    def from_settings(cls, settings: Any, client: httpx.AsyncClient | None = None) -> "EthereumRpc":
        return cls(
            settings.eth_rpc_url,
            timeout_sec=settings.rpc_timeout_sec,
            max_retries=settings.rpc_max_retries,
            max_rate_limit_retries=settings.rpc_max_rate_limit_retries,
            backoff_base_sec=settings.rpc_backoff_base_sec,
            max_backoff_sec=settings.rpc_max_backoff_sec,
            client=client,
        )

    async def __aenter__(self) -> "EthereumRpc":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def last_request_id(self) -> int:
        return self._last_id

    def _next_id(self) -> int:
        self._last_id = next(self._ids)
        return self._last_id

    def backoff_delay(self, attempt: int, retry_after: str | None = None) -> float:
        """Delay before retry number attempt (0-based): base * 2**attempt, capped; Retry-After wins if numeric."""
        if retry_after:
            try:
                return min(max(0.0, float(retry_after)), self._max_backoff)
            except ValueError:
                pass
        return min(self._backoff_base * (2 ** attempt), self._max_backoff)

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Perform one JSON-RPC call; return its result."""
        body = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": list(params or []),
        }
        failures = 0
        rate_limited = 0
        while True:
            try:
                resp = await self._client.post(self._url, json=body)
            except httpx.HTTPError as e:
                failures += 1
                await self._retry_or_raise(method, failures, f"{type(e).__name__}: {e}", None, e)
                continue

            if resp.status_code == HTTP_TOO_MANY_REQUESTS:
                rate_limited += 1
                if rate_limited > self._max_rate_limit_retries:
                    logger.error(
                        "rpc_rate_limit_give_up",
                        method=method,
                        rate_limited=rate_limited,
                        max_rate_limit_retries=self._max_rate_limit_retries,
                    )
                    raise RpcTransportError(
                        f"RPC rate limited: {method} still throttled after {rate_limited} attempts",
                        status_code=HTTP_TOO_MANY_REQUESTS,
                        attempts=failures + rate_limited,
                    )
                delay = self.backoff_delay(rate_limited - 1, resp.headers.get("Retry-After"))
                logger.warning("rpc_rate_limited", method=method, attempt=rate_limited, delay_sec=delay)
                await asyncio.sleep(delay)
                continue

            if not resp.is_success:
                failures += 1
                await self._retry_or_raise(
                    method, failures, f"HTTP {resp.status_code} {resp.reason_phrase}", resp.status_code, None
                )
                continue

            try:
                data = resp.json()
            except ValueError as e:
                failures += 1
                await self._retry_or_raise(method, failures, f"invalid JSON body: {e}", resp.status_code, e)
                continue

            return self._unwrap(method, data)

    async def _retry_or_raise(
        self,
        method: str,
        failures: int,
        error: str,
        status_code: int | None,
        cause: Exception | None,
    ) -> None:
        if failures > self._max_retries:
            logger.error("rpc_give_up", method=method, attempts=failures, error=error)
            raise RpcTransportError(
                f"RPC transport failure on {method}: {error}",
                status_code=status_code,
                attempts=failures,
            ) from cause
        delay = self.backoff_delay(failures - 1)
        logger.warning(
            "rpc_retry",
            method=method,
            attempt=failures,
            max_retries=self._max_retries,
            delay_sec=delay,
            error=error,
        )
        await asyncio.sleep(delay)

    @staticmethod
    def _unwrap(method: str, data: Any) -> Any:
        if not isinstance(data, dict):
            raise RpcProtocolError(f"RPC {method} returned a non-object response")
        err = data.get("error")
        if err is not None:
            if isinstance(err, dict):
                raise RpcProtocolError(
                    f"RPC error: {err.get('message', err)} (code: {err.get('code')})",
                    rpc_code=err.get("code"),
                    method=method,
                )
            raise RpcProtocolError(f"RPC error: {err}", method=method)
        if "result" not in data:
            raise RpcProtocolError(f"RPC {method} returned no result", method=method)
        return data["result"]

    async def get_block_number(self) -> int:
        return from_hex(await self.call("eth_blockNumber", []))

    async def get_block(self, block_number: int, include_transactions: bool = False) -> EthBlock | None:
        raw = await self.call("eth_getBlockByNumber", [to_hex(block_number), include_transactions])
        return EthBlock.from_rpc(raw) if raw else None

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        *,
        address: str | list[str] | None = None,
        topics: list[Any] | None = None,
    ) -> list[EthLog]:
        flt: dict[str, Any] = {"fromBlock": to_hex(from_block), "toBlock": to_hex(to_block)}
        if address:
            flt["address"] = address
        if topics:
            flt["topics"] = topics
        raw = await self.call("eth_getLogs", [flt])
        return [EthLog.from_rpc(item) for item in raw or []]

    async def get_block_timestamp(self, block_number: int) -> datetime:
        block = await self.get_block(block_number)
        if block is None:
            raise NotFoundError(f"Block {block_number} not found")
        return datetime.fromtimestamp(block.timestamp, tz=timezone.utc)
