"""
Claimable reward reads per wallet.

The call shape comes from ``ContractConfig.reward_shape``:
  - vault_token_array: vault.getRewards(tokenIds, wallet) -> (availability, total)
  - vault_multi_pool: vault.getRewards(tokenIds, wallet, false) -> 3 pools
  - nft_batch_claimable: nft.batchClaimableAmount(tokenIds)

Amounts stay raw ``int`` base units here; conversion to decimals happens in
the aggregator via ``from_base_units``.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping

from eth_utils import to_checksum_address

from config import settings
from models.contracts import ContractConfig, RewardShape
from models.holders import PopulationStep, WalletRewards
from services.abi import (
    BATCH_CLAIMABLE_AMOUNT,
    GET_REWARDS,
    GET_REWARDS_MULTI_POOL,
    TO_DISTRIBUTE,
    TOTAL_SHARES,
)
from services.cache_state import ProgressReporter
from services.rpc_client import ContractCall, RpcGateway
from utils.logger import get_logger

logger = get_logger("population")

TOKEN_DECIMALS = 18
MULTI_POOL_NAMES = ("inferno", "flux", "e280")
# toDistribute(uint8) pool index -> period label
STAKE_POOLS = {0: "day8", 1: "day28", 2: "day90"}


def from_base_units(raw, decimals: int = TOKEN_DECIMALS) -> float:
    """Fixed-point integer -> float; NaN/inf and garbage become 0."""
    try:
        value = float(Decimal(int(raw)) / (Decimal(10) ** decimals))
    except (TypeError, ValueError, InvalidOperation):
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


def _chunks(token_ids: list[int], size: int) -> list[list[int]]:
    size = max(1, size)
    return [token_ids[i : i + size] for i in range(0, len(token_ids), size)]


def _reward_call(config: ContractConfig, wallet: str, token_ids: list[int]) -> ContractCall:
    if config.reward_shape == RewardShape.VAULT_TOKEN_ARRAY:
        return ContractCall(config.vault_address, GET_REWARDS, (token_ids, to_checksum_address(wallet)), key=wallet)
    if config.reward_shape == RewardShape.VAULT_MULTI_POOL:
        return ContractCall(
            config.vault_address,
            GET_REWARDS_MULTI_POOL,
            (token_ids, to_checksum_address(wallet), False),
            key=wallet,
        )
    return ContractCall(config.address, BATCH_CLAIMABLE_AMOUNT, (token_ids,), key=wallet)


def _accumulate(config: ContractConfig, rewards: WalletRewards, value) -> None:
    if config.reward_shape == RewardShape.VAULT_TOKEN_ARRAY:
        # (availability, totalReward)
        rewards.claimable_raw += int(value[1])
    elif config.reward_shape == RewardShape.VAULT_MULTI_POOL:
        # (availability, burned, infernoPool, fluxPool, e280Pool)
        for name, amount in zip(MULTI_POOL_NAMES, value[2:5]):
            rewards.pools_raw[name] = rewards.pools_raw.get(name, 0) + int(amount)
        rewards.claimable_raw += int(value[4])
    else:
        rewards.claimable_raw += int(value)


async def fetch_rewards(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: ProgressReporter,
    wallet_tokens: Mapping[str, Iterable[int]],
) -> dict[str, WalletRewards]:
    """Raw claimable amounts per wallet.

    Each wallet's tokens are split into calls of at most
    REWARD_TOKENS_PER_CALL ids. A failed call contributes 0 and an ErrorEntry.
    """
    rewards = {wallet: WalletRewards() for wallet in wallet_tokens}
    if config.reward_shape == RewardShape.NONE:
        await reporter.advance(PopulationStep.FETCHING_REWARDS, total=0)
        return rewards

    calls = [
        _reward_call(config, wallet, chunk)
        for wallet, token_ids in wallet_tokens.items()
        for chunk in _chunks(sorted(token_ids), settings.REWARD_TOKENS_PER_CALL)
    ]
    await reporter.advance(PopulationStep.FETCHING_REWARDS, total=len(calls))
    if not calls:
        return rewards

    results = await gateway.batch_read(calls, on_chunk=reporter.chunk_done)
    failed = 0
    for call, result in zip(calls, results):
        wallet = call.key
        if not result.success:
            failed += 1
            reporter.record_error("fetch_rewards", result.error or "reward call failed", wallet=wallet)
            continue
        try:
            _accumulate(config, rewards[wallet], result.value)
        except (TypeError, ValueError, IndexError) as e:
            failed += 1
            reporter.record_error("fetch_rewards", f"unreadable reward result: {e}", wallet=wallet)

    logger.info(
        "Rewards fetched",
        contract=config.key,
        wallets=len(rewards),
        calls=len(calls),
        failed=failed,
    )
    return rewards


@dataclass
class StakePools:
    total_shares_raw: int = 0
    to_distribute_raw: dict[str, int] = field(default_factory=dict)


async def fetch_stake_pools(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: ProgressReporter,
) -> StakePools:
    """totalShares plus toDistribute per period for share-weighted collections."""
    calls = [ContractCall(config.address, TOTAL_SHARES, (), key="total_shares")] + [
        ContractCall(config.address, TO_DISTRIBUTE, (index,), key=name) for index, name in STAKE_POOLS.items()
    ]
    results = await gateway.batch_read(calls)
    pools = StakePools()
    for call, result in zip(calls, results):
        if not result.success:
            reporter.record_error("fetch_rewards", f"{call.function.name}: {result.error}")
            continue
        if call.key == "total_shares":
            pools.total_shares_raw = int(result.value)
        else:
            pools.to_distribute_raw[call.key] = int(result.value)
    return pools
