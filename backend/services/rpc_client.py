"""
Ethereum JSON-RPC gateway for the holders pipeline.

Wraps raw HTTP JSON-RPC (httpx) with:
  - endpoint failover across the configured RPC URLs
  - token-bucket throttling per request category
  - retry with exponential backoff for transient / rate-limit failures
  - Multicall3 ``aggregate3`` batching where one reverted call never fails
    the batch
  - bounded concurrency for chunked batch reads
  - the Alchemy owners API as an optional fast ownership source
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import to_checksum_address

from config import settings
from services.abi import AGGREGATE3, ContractFunction, decode_revert_reason, hex_to_int
from utils.logger import get_logger
from utils.rate_limiter import RateLimiter, category_for_method
from utils.retry import RetryConfig, retry_async

logger = get_logger("rpc")


def http_timeout(read_seconds: Optional[float] = None) -> httpx.Timeout:
    """Per-request limits; ``read`` covers slow eth_getLogs and multicall replies."""
    return httpx.Timeout(connect=5.0, read=read_seconds or settings.RPC_TIMEOUT_SECONDS, write=10.0, pool=10.0)


# JSON-RPC codes providers use for throttling
_RATE_LIMIT_CODES = {429, -32005, -32029, -32090}
_RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "exceeded its compute units",
    "capacity",
    "throughput",
)
_TRANSIENT_CODES = {-32603, -32000}
_REVERT_MARKERS = ("execution reverted", "revert")


class RpcError(Exception):
    """A JSON-RPC or owners-API failure, classified for the retry policy."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        rate_limited: bool = False,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.code = code
        self.rate_limited = rate_limited
        self.retryable = rate_limited if retryable is None else retryable


def classify_rpc_error(error: Any) -> RpcError:
    """Turn a JSON-RPC ``error`` object into an RpcError."""
    if not isinstance(error, dict):
        return RpcError(str(error), retryable=True)
    code = error.get("code")
    message = str(error.get("message") or error)
    lowered = message.lower()
    if code in _RATE_LIMIT_CODES or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RpcError(message, code=code, rate_limited=True)
    if code == 3 or any(marker in lowered for marker in _REVERT_MARKERS):
        return RpcError(message, code=code, retryable=False)
    return RpcError(message, code=code, retryable=code in _TRANSIENT_CODES)


def _exception_text(exc: BaseException) -> str:
    """Return a non-empty exception string for structured logging."""
    text = str(exc).strip()
    return text if text else repr(exc)


def _build_rpc_candidates(primary_url: str, fallback_urls: Sequence[str] = ()) -> list[str]:
    """Build de-duplicated RPC endpoints in failover order."""
    urls: list[str] = []
    for raw_url in (primary_url, *fallback_urls):
        url = (raw_url or "").strip().rstrip("/")
        if url and url not in urls:
            urls.append(url)
    return urls


def _chunked(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    size = max(1, int(size))
    return [items[i : i + size] for i in range(0, len(items), size)]


# ==================== CALL TYPES ====================


@dataclass(frozen=True)
class ContractCall:
    address: str
    function: ContractFunction
    args: tuple = ()
    key: Any = None  # caller's correlation key (token id, wallet, ...)


@dataclass
class CallResult:
    success: bool
    value: Any = None
    error: Optional[str] = None
    batch_failure: bool = False  # the whole multicall failed, not this call
    rate_limited: bool = False

    @property
    def status(self) -> str:
        return "success" if self.success else "failure"

    @classmethod
    def failed(cls, error: str, *, batch_failure: bool = False, rate_limited: bool = False) -> "CallResult":
        return cls(success=False, error=error, batch_failure=batch_failure, rate_limited=rate_limited)


ChunkCallback = Callable[[int], Awaitable[None]]


# ==================== GATEWAY ====================


class RpcGateway:
    """Async JSON-RPC client bound to one chain."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        fallback_urls: Optional[Sequence[str]] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        multicall_address: Optional[str] = None,
        alchemy_api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_seconds: Optional[float] = None,
    ):
        primary = rpc_url or settings.ETH_RPC_URL
        fallbacks = settings.ETH_RPC_FALLBACK_URLS if fallback_urls is None else fallback_urls
        self._rpc_urls = _build_rpc_candidates(primary, fallbacks)
        self._active_url = self._rpc_urls[0]
        self.batch_size = batch_size or settings.RPC_BATCH_SIZE
        self._semaphore = asyncio.Semaphore(concurrency or settings.RPC_CONCURRENCY)
        self._retry = retry_config or RetryConfig.from_settings()
        self._rate_limiter = rate_limiter or RateLimiter()
        self._multicall_address = multicall_address or settings.MULTICALL3_ADDRESS
        self._alchemy_api_key = settings.ALCHEMY_API_KEY if alchemy_api_key is None else alchemy_api_key
        self._transport = transport
        self._timeout = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=http_timeout(self._timeout), transport=self._transport)
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @property
    def active_url(self) -> str:
        return self._active_url

    @property
    def has_owners_api(self) -> bool:
        return bool(self._alchemy_api_key)

    # ==================== RAW JSON-RPC ====================

    async def _post(self, payload: dict, *, method: str) -> dict:
        """POST one JSON-RPC payload, failing over across endpoints."""
        client = await self._get_client()
        candidates = [self._active_url] + [u for u in self._rpc_urls if u != self._active_url]
        last_error: Optional[Exception] = None

        for endpoint in candidates:
            try:
                response = await client.post(endpoint, json=payload)
                if response.status_code == 429:
                    raise RpcError(f"HTTP 429 from {endpoint}", code=429, rate_limited=True)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, RpcError, ValueError) as e:
                last_error = e
                logger.warning(
                    "RPC request failed",
                    method=method,
                    endpoint=endpoint,
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                )
                continue

            if endpoint != self._active_url:
                logger.warning("RPC failover", previous_endpoint=self._active_url, active_endpoint=endpoint)
                self._active_url = endpoint

            if not isinstance(body, dict):
                raise RpcError(f"Unexpected RPC response type {type(body).__name__}", retryable=True)
            return body

        raise last_error

    async def request(self, method: str, params: list) -> Any:
        """Send a JSON-RPC call with throttling and retry; return ``result``."""

        async def _attempt():
            await self._rate_limiter.acquire(category_for_method(method))
            payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
            body = await self._post(payload, method=method)
            if body.get("error") is not None:
                raise classify_rpc_error(body["error"])
            return body.get("result")

        return await retry_async(_attempt, self._retry, description=method)

    async def get_block_number(self) -> int:
        return hex_to_int(await self.request("eth_blockNumber", []))

    async def get_logs(
        self,
        address: str,
        topics: list[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> list[dict]:
        result = await self.request(
            "eth_getLogs",
            [
                {
                    "address": address,
                    "topics": topics,
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        return result or []

    async def eth_call(self, to: str, data: bytes, block: str = "latest") -> bytes:
        result = await self.request("eth_call", [{"to": to, "data": "0x" + data.hex()}, block])
        return bytes.fromhex((result or "0x").removeprefix("0x"))

    async def read_contract(self, address: str, function: ContractFunction, args: Sequence[Any] = ()) -> Any:
        """Single eth_call; raises RpcError on revert or empty return data."""
        data = await self.eth_call(address, function.encode(args))
        if not data:
            raise RpcError(f"{function.name} returned no data", retryable=False)
        try:
            return function.decode(data)
        except DecodingError as e:
            raise RpcError(f"{function.name} returned undecodable data: {e}", retryable=False) from e

    # ==================== MULTICALL ====================

    async def multicall(self, calls: Sequence[ContractCall]) -> list[CallResult]:
        """Execute calls through Multicall3 aggregate3 (allowFailure=true).

        Individual reverts or undecodable returns become failure results.
        Raises only when the batch itself could not be executed.
        """
        if not calls:
            return []

        results: list[Optional[CallResult]] = [None] * len(calls)
        packed: list[tuple[str, bool, bytes]] = []
        packed_index: list[int] = []
        for i, call in enumerate(calls):
            try:
                calldata = call.function.encode(call.args)
            except (EncodingError, ValueError, TypeError) as e:
                results[i] = CallResult.failed(f"encode {call.function.name}: {e}")
                continue
            packed.append((to_checksum_address(call.address), True, calldata))
            packed_index.append(i)

        if packed:
            raw = await self.eth_call(self._multicall_address, AGGREGATE3.encode([packed]))
            if not raw:
                raise RpcError("aggregate3 returned no data", retryable=True)
            returned = AGGREGATE3.decode(raw)
            for i, (ok, return_data) in zip(packed_index, returned):
                call = calls[i]
                if not ok:
                    results[i] = CallResult.failed(decode_revert_reason(return_data))
                    continue
                try:
                    results[i] = CallResult(success=True, value=call.function.decode(return_data))
                except DecodingError as e:
                    results[i] = CallResult.failed(f"decode {call.function.name}: {_exception_text(e)}")

        return results

    async def batch_read(
        self,
        calls: Sequence[ContractCall],
        *,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> list[CallResult]:
        """Chunk calls into multicalls run with bounded concurrency.

        Never raises: a chunk that fails after retries yields failure results
        flagged ``batch_failure`` for each of its calls. Results keep the
        order of ``calls``.
        """
        chunks = _chunked(list(calls), self.batch_size)

        async def _run_chunk(chunk: Sequence[ContractCall]) -> list[CallResult]:
            async with self._semaphore:
                try:
                    results = await self.multicall(chunk)
                except (RpcError, httpx.HTTPError, asyncio.TimeoutError, DecodingError) as e:
                    rate_limited = bool(getattr(e, "rate_limited", False))
                    logger.error(
                        "Multicall chunk failed",
                        calls=len(chunk),
                        function=chunk[0].function.name,
                        rate_limited=rate_limited,
                        error=_exception_text(e),
                    )
                    results = [
                        CallResult.failed(_exception_text(e), batch_failure=True, rate_limited=rate_limited)
                        for _ in chunk
                    ]
            if on_chunk is not None:
                await on_chunk(len(chunk))
            return results

        chunk_results = await asyncio.gather(*[_run_chunk(chunk) for chunk in chunks])
        return [result for chunk in chunk_results for result in chunk]

    # ==================== OWNERS API ====================

    async def get_contract_owners(self, contract_address: str) -> list[tuple[int, str]]:
        """(token id, owner) pairs via Alchemy getOwnersForContract (paged by pageKey).

        A token reported under two owners appears twice.
        """
        if not self._alchemy_api_key:
            raise RpcError("Owners API requires ALCHEMY_API_KEY", retryable=False)

        client = await self._get_client()
        url = f"{settings.ALCHEMY_NFT_API_URL}/{self._alchemy_api_key}/getOwnersForContract"
        owners: list[tuple[int, str]] = []
        page_key: Optional[str] = None

        while True:
            params = {"contractAddress": contract_address, "withTokenBalances": "true"}
            if page_key:
                params["pageKey"] = page_key

            async def _fetch_page():
                await self._rate_limiter.acquire(category_for_method("getOwnersForContract"))
                response = await client.get(url, params=params)
                if response.status_code == 429:
                    raise RpcError("Owners API rate limited", code=429, rate_limited=True)
                response.raise_for_status()
                return response.json()

            body = await retry_async(_fetch_page, self._retry, description="getOwnersForContract")
            for entry in body.get("owners", []):
                wallet = str(entry.get("ownerAddress", "")).lower()
                for balance in entry.get("tokenBalances", []):
                    token_id = hex_to_int(str(balance.get("tokenId")))
                    owners.append((token_id, wallet))

            page_key = body.get("pageKey")
            if not page_key:
                break

        logger.info("Owners API scan complete", contract=contract_address, tokens=len(owners))
        return owners
