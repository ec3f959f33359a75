"""Shared fixtures for the holders pipeline tests."""

import os
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Keep module-level singletons off the on-disk cache during tests.
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_JSON", "false")

import asyncio
from typing import Optional

import pytest

from models import contracts as contracts_module
from models.contracts import ZERO_ADDRESS, ContractConfig, RewardShape, TierSpec
from services.abi import TRANSFER_TOPIC
from services.cache_state import CacheStateTracker
from services.cache_store import MemoryCacheStore
from services.population import PopulationOrchestrator
from services.rpc_client import CallResult, RpcError

WALLET_A = "0x" + "aa" * 20
WALLET_B = "0x" + "bb" * 20
WALLET_C = "0x" + "cc" * 20

NFT_ADDRESS = "0x" + "11" * 20
VAULT_ADDRESS = "0x" + "22" * 20

ONE_TOKEN = 10**18


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


class FakeChain:
    """In-memory stand-in for RpcGateway backed by a tiny simulated collection.

    ``owners`` is the live ownership, ``tiers`` the per-token tier (or the
    getNFTAttribute tuple), ``token_rewards`` raw reward per token. Calls
    listed in ``fail`` as (function name, key) return a failure result.
    """

    def __init__(self, owners: dict[int, str], tiers: dict[int, object], *, block: int = 100):
        self.owners = {token_id: wallet.lower() for token_id, wallet in owners.items()}
        self.tiers = dict(tiers)
        self.token_rewards: dict[int, int] = {}
        self.records: dict[int, tuple[int, int]] = {}
        self.total_shares = 0
        self.to_distribute: dict[int, int] = {}
        self.total_burned = 0
        self.mint_counter = max(self.owners, default=0)
        self.block = block
        self.logs: list[dict] = []
        self.fail: set[tuple[str, object]] = set()
        self.fail_batches: dict[str, bool] = {}  # function name -> rate_limited
        self.fail_supply = False
        self.fail_burned = False
        self.fail_logs = False
        self.block_delay = 0.0
        self.owners_api: Optional[list[tuple[int, str]]] = None
        self.batch_size = 2
        self.calls: dict[str, int] = {}

    # ---- chain mutation helpers ----

    def _log(self, from_address: str, to_address: str, token_id: int) -> None:
        self.block += 1
        self.logs.append(
            {
                "address": NFT_ADDRESS,
                "topics": [TRANSFER_TOPIC, _topic(from_address), _topic(to_address), hex(token_id)],
                "blockNumber": hex(self.block),
                "logIndex": "0x0",
                "transactionHash": "0x" + "ab" * 32,
            }
        )

    def transfer(self, token_id: int, to_address: str) -> None:
        from_address = self.owners[token_id]
        if to_address == ZERO_ADDRESS:
            del self.owners[token_id]
            self.total_burned += 1
        else:
            self.owners[token_id] = to_address.lower()
        self._log(from_address, to_address, token_id)

    def mint(self, token_id: int, to_address: str, tier: int = 1) -> None:
        self.owners[token_id] = to_address.lower()
        self.tiers[token_id] = tier
        self.mint_counter = max(self.mint_counter, token_id)
        self._log(ZERO_ADDRESS, to_address, token_id)

    # ---- RpcGateway surface ----

    @property
    def has_owners_api(self) -> bool:
        return self.owners_api is not None

    async def get_contract_owners(self, contract_address: str) -> list[tuple[int, str]]:
        return list(self.owners_api or [])

    async def get_block_number(self) -> int:
        if self.block_delay:
            await asyncio.sleep(self.block_delay)
        return self.block

    async def get_logs(self, address, topics, from_block, to_block) -> list[dict]:
        if self.fail_logs:
            raise RpcError("query returned more than 10000 results", code=-32005, rate_limited=True)
        return [log for log in self.logs if from_block <= int(log["blockNumber"], 16) <= to_block]

    async def read_contract(self, address, function, args=()):
        self.calls[function.name] = self.calls.get(function.name, 0) + 1
        if function.name == "totalSupply":
            if self.fail_supply:
                raise RpcError("upstream unavailable", retryable=True)
            return len(self.owners)
        if function.name == "totalBurned":
            if self.fail_burned:
                raise RpcError("upstream unavailable", retryable=True)
            return self.total_burned
        if function.name == "tokenId":
            return self.mint_counter
        raise RpcError(f"unsupported read {function.name}")

    def _execute(self, call) -> CallResult:
        name = call.function.name
        if (name, call.key) in self.fail:
            return CallResult.failed("execution reverted")
        if name == "ownerOf":
            token_id = call.args[0]
            if token_id not in self.owners:
                return CallResult.failed("execution reverted: ERC721: invalid token ID")
            return CallResult(success=True, value=self.owners[token_id])
        if name in ("getNftTier", "getNFTAttribute"):
            return CallResult(success=True, value=self.tiers.get(call.args[0], 1))
        if name == "userRecords":
            shares, locked = self.records.get(call.args[0], (0, 0))
            return CallResult(success=True, value=(shares, locked, 0, 0, 0))
        if name == "getRewards":
            token_ids = call.args[0]
            total = sum(self.token_rewards.get(t, 0) for t in token_ids)
            if len(call.function.inputs) == 3:
                return CallResult(success=True, value=([True] * len(token_ids), [False] * len(token_ids), 0, 0, total))
            return CallResult(success=True, value=([True] * len(token_ids), total))
        if name == "batchClaimableAmount":
            return CallResult(success=True, value=sum(self.token_rewards.get(t, 0) for t in call.args[0]))
        if name == "totalShares":
            return CallResult(success=True, value=self.total_shares)
        if name == "toDistribute":
            return CallResult(success=True, value=self.to_distribute.get(call.args[0], 0))
        return CallResult.failed(f"unsupported call {name}")

    async def batch_read(self, calls, *, on_chunk=None) -> list[CallResult]:
        results = []
        for start in range(0, len(calls), self.batch_size):
            chunk = calls[start : start + self.batch_size]
            for call in chunk:
                name = call.function.name
                self.calls[name] = self.calls.get(name, 0) + 1
                if name in self.fail_batches:
                    results.append(
                        CallResult.failed(
                            "Too Many Requests",
                            batch_failure=True,
                            rate_limited=self.fail_batches[name],
                        )
                    )
                else:
                    results.append(self._execute(call))
            if on_chunk is not None:
                await on_chunk(len(chunk))
        return results

    async def close(self) -> None:
        return None


def make_config(**overrides) -> ContractConfig:
    values = dict(
        key="testnft",
        name="Test NFT",
        symbol="TNFT",
        address=NFT_ADDRESS,
        vault_address=VAULT_ADDRESS,
        tiers=[TierSpec(tier=1, name="Common", multiplier=10), TierSpec(tier=2, name="Rare", multiplier=100)],
        burned_function="totalBurned",
        reward_shape=RewardShape.VAULT_TOKEN_ARRAY,
        use_owners_api=False,
        page_size=2,
    )
    values.update(overrides)
    return ContractConfig(**values)


@pytest.fixture
def contract_config(monkeypatch):
    config = make_config()
    monkeypatch.setitem(contracts_module.CONTRACTS, config.key, config)
    return config


@pytest.fixture
def chain():
    """A holds tokens 1 and 2 (tier 1), B holds token 3 (tier 2)."""
    fake = FakeChain({1: WALLET_A, 2: WALLET_A, 3: WALLET_B}, {1: 1, 2: 1, 3: 2})
    fake.token_rewards = {1: ONE_TOKEN, 2: ONE_TOKEN, 3: 5 * ONE_TOKEN}
    return fake


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def tracker(store):
    return CacheStateTracker(store)


@pytest.fixture
def orchestrator(store, chain, tracker):
    return PopulationOrchestrator(store, chain, tracker, timeout_seconds=5)
