import json
import sys
from pathlib import Path

import httpx
import pytest
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import NFT_ADDRESS, WALLET_A, WALLET_B  # noqa: E402
from services.abi import OWNER_OF  # noqa: E402
from services import rpc_client  # noqa: E402
from services.rpc_client import ContractCall, RpcError, RpcGateway, classify_rpc_error  # noqa: E402
from utils.rate_limiter import RateLimiter, default_limits  # noqa: E402
from utils.retry import RetryConfig  # noqa: E402

NO_WAIT = RetryConfig(max_attempts=2, base_delay=0, jitter=False)


def _gateway(handler, **kwargs) -> RpcGateway:
    kwargs.setdefault("fallback_urls", [])
    kwargs.setdefault("retry_config", NO_WAIT)
    kwargs.setdefault("alchemy_api_key", "")
    return RpcGateway(
        kwargs.pop("rpc_url", "http://rpc.test"),
        rate_limiter=RateLimiter(default_limits(1000)),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _rpc_result(request: httpx.Request, result) -> httpx.Response:
    payload = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


def _owner_of_multicall(owners: dict[int, str]):
    """Handler answering aggregate3(ownerOf...) from ``owners``; missing ids revert."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["method"] == "eth_call"
        calldata = bytes.fromhex(payload["params"][0]["data"][2:])
        (packed,) = abi_decode(["(address,bool,bytes)[]"], calldata[4:])
        returned = []
        for _target, _allow_failure, inner in packed:
            assert inner[:4] == OWNER_OF.selector
            (token_id,) = abi_decode(["uint256"], inner[4:])
            if token_id in owners:
                returned.append((True, abi_encode(["address"], [owners[token_id]])))
            else:
                returned.append((False, b""))
        encoded = abi_encode(["(bool,bytes)[]"], [returned])
        return _rpc_result(request, "0x" + encoded.hex())

    return handler


@pytest.mark.asyncio
async def test_get_block_number_decodes_hex():
    gateway = _gateway(lambda request: _rpc_result(request, "0x1f"))

    assert await gateway.get_block_number() == 31
    await gateway.close()


@pytest.mark.asyncio
async def test_failover_to_backup_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "primary.test":
            return httpx.Response(500, text="upstream down")
        return _rpc_result(request, "0x10")

    gateway = _gateway(
        handler,
        rpc_url="http://primary.test",
        fallback_urls=["http://backup.test"],
        retry_config=RetryConfig(max_attempts=1),
    )

    assert await gateway.get_block_number() == 16
    assert gateway.active_url == "http://backup.test"
    assert seen == ["primary.test", "backup.test"]

    # The healthy endpoint is tried first afterwards.
    await gateway.get_block_number()
    assert seen[-1] == "backup.test"
    await gateway.close()


@pytest.mark.asyncio
async def test_rate_limit_error_is_retried_then_raised():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        payload = json.loads(request.content)
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32005, "message": "limit exceeded"}},
        )

    gateway = _gateway(handler)

    with pytest.raises(RpcError) as exc_info:
        await gateway.get_block_number()

    assert exc_info.value.rate_limited is True
    assert len(attempts) == 2
    await gateway.close()


@pytest.mark.asyncio
async def test_revert_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        payload = json.loads(request.content)
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": 3, "message": "execution reverted"}},
        )

    gateway = _gateway(handler)

    with pytest.raises(RpcError) as exc_info:
        await gateway.read_contract(NFT_ADDRESS, OWNER_OF, [1])

    assert exc_info.value.retryable is False
    assert len(attempts) == 1
    await gateway.close()


@pytest.mark.asyncio
async def test_multicall_isolates_reverted_calls():
    gateway = _gateway(_owner_of_multicall({1: WALLET_A, 3: WALLET_B}))
    calls = [ContractCall(NFT_ADDRESS, OWNER_OF, (token_id,), key=token_id) for token_id in (1, 2, 3)]

    results = await gateway.multicall(calls)

    assert [r.success for r in results] == [True, False, True]
    assert results[0].value.lower() == WALLET_A
    assert results[2].value.lower() == WALLET_B
    assert results[1].error.startswith("execution reverted")
    assert results[1].batch_failure is False
    await gateway.close()


@pytest.mark.asyncio
async def test_batch_read_keeps_order_across_chunks():
    gateway = _gateway(_owner_of_multicall({1: WALLET_A, 2: WALLET_B, 3: WALLET_A}), batch_size=2)
    calls = [ContractCall(NFT_ADDRESS, OWNER_OF, (token_id,)) for token_id in (3, 2, 1)]
    chunks = []

    async def on_chunk(size):
        chunks.append(size)

    results = await gateway.batch_read(calls, on_chunk=on_chunk)

    assert [r.value.lower() for r in results] == [WALLET_A, WALLET_B, WALLET_A]
    assert sorted(chunks) == [1, 2]
    await gateway.close()


@pytest.mark.asyncio
async def test_batch_read_marks_failed_chunks():
    gateway = _gateway(lambda request: httpx.Response(429, text="slow down"), batch_size=2)
    calls = [ContractCall(NFT_ADDRESS, OWNER_OF, (token_id,)) for token_id in (1, 2, 3)]
    chunks = []

    async def on_chunk(size):
        chunks.append(size)

    results = await gateway.batch_read(calls, on_chunk=on_chunk)

    assert len(results) == 3
    assert all(not r.success and r.batch_failure and r.rate_limited for r in results)
    assert sum(chunks) == 3
    await gateway.close()


@pytest.mark.asyncio
async def test_owners_api_follows_page_keys():
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/key-123/getOwnersForContract")
        page_key = request.url.params.get("pageKey")
        pages.append(page_key)
        if page_key is None:
            return httpx.Response(
                200,
                json={
                    "owners": [
                        {"ownerAddress": "0x" + "AA" * 20, "tokenBalances": [{"tokenId": "0x1"}, {"tokenId": "2"}]}
                    ],
                    "pageKey": "next",
                },
            )
        return httpx.Response(
            200,
            json={"owners": [{"ownerAddress": WALLET_B, "tokenBalances": [{"tokenId": "0x03"}]}]},
        )

    gateway = _gateway(handler, alchemy_api_key="key-123")

    owners = await gateway.get_contract_owners(NFT_ADDRESS)

    assert owners == [(1, WALLET_A), (2, WALLET_A), (3, WALLET_B)]
    assert pages == [None, "next"]
    assert gateway.has_owners_api
    await gateway.close()


@pytest.mark.asyncio
async def test_owners_api_requires_key():
    gateway = _gateway(lambda request: httpx.Response(500))

    assert not gateway.has_owners_api
    with pytest.raises(RpcError):
        await gateway.get_contract_owners(NFT_ADDRESS)


def test_classify_rpc_error():
    limited = classify_rpc_error({"code": -32005, "message": "request limit reached"})
    assert limited.rate_limited and limited.retryable

    compute = classify_rpc_error({"code": -32000, "message": "Your app has exceeded its compute units per second"})
    assert compute.rate_limited

    reverted = classify_rpc_error({"code": 3, "message": "execution reverted: bad token"})
    assert not reverted.rate_limited and not reverted.retryable

    transient = classify_rpc_error({"code": -32603, "message": "internal error"})
    assert transient.retryable and not transient.rate_limited

    invalid = classify_rpc_error({"code": -32602, "message": "invalid params"})
    assert not invalid.retryable


@pytest.mark.asyncio
async def test_read_timeout_follows_settings(monkeypatch):
    monkeypatch.setattr(rpc_client.settings, "RPC_TIMEOUT_SECONDS", 7.5)
    gateway = _gateway(lambda request: _rpc_result(request, "0x1"))

    client = await gateway._get_client()

    assert client.timeout.read == 7.5
    assert client.timeout.connect == 5.0
    await gateway.close()

    explicit = _gateway(lambda request: _rpc_result(request, "0x1"), timeout_seconds=2.0)
    assert (await explicit._get_client()).timeout.read == 2.0
    await explicit.close()
