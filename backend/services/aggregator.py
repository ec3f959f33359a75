"""
Fold per-token ownership/attributes and per-wallet rewards into ranked holders.

This is the only place percentages and ranks are computed. It always works
on the whole population, so an incremental refresh that touched a single
wallet still re-ranks everybody.
"""

from collections import defaultdict
from typing import Mapping, Optional

from models.contracts import ContractConfig, RankingKey
from models.holders import Holder, HoldersSummary, StakeMetrics, TokenRecord, WalletRewards
from services.rewards import STAKE_POOLS, StakePools, from_base_units


def _sort_key(config: ContractConfig, holder: Holder, shares_raw: int) -> tuple:
    primary = shares_raw if config.ranking_key == RankingKey.SHARES else holder.multiplier_sum
    return (-primary, -holder.total, holder.wallet)


def build_holders(
    config: ContractConfig,
    tokens: Mapping[int, TokenRecord],
    rewards: Mapping[str, WalletRewards],
    stake_pools: Optional[StakePools] = None,
) -> list[Holder]:
    """Group tokens by owner, weight tiers, then sort and rank.

    ``tiers[0]`` counts tokens whose tier could not be resolved; they carry
    no multiplier but still count toward ``total``.
    """
    multipliers = config.multipliers
    width = config.max_tier + 1

    by_wallet: dict[str, list[int]] = defaultdict(list)
    for token_id, record in tokens.items():
        by_wallet[record.owner].append(token_id)

    track_stake = config.records_function is not None
    holders: list[Holder] = []
    shares_by_wallet: dict[str, int] = {}
    for wallet, token_ids in by_wallet.items():
        token_ids.sort()
        tiers = [0] * width
        shares_raw = 0
        locked_raw = 0
        for token_id in token_ids:
            record = tokens[token_id]
            tier = record.tier if 0 <= record.tier < width else 0
            tiers[tier] += 1
            shares_raw += record.shares_raw
            locked_raw += record.locked_raw

        multiplier_sum = sum(count * multipliers.get(tier, 0) for tier, count in enumerate(tiers))
        wallet_rewards = rewards.get(wallet) or WalletRewards()
        holder = Holder(
            wallet=wallet,
            token_ids=token_ids,
            tiers=tiers,
            total=len(token_ids),
            multiplier_sum=multiplier_sum,
            display_multiplier_sum=multiplier_sum / (config.display_multiplier_divisor or 1),
            claimable_rewards=from_base_units(wallet_rewards.claimable_raw),
        )
        if wallet_rewards.pools_raw:
            holder.rewards_by_pool = {name: from_base_units(raw) for name, raw in wallet_rewards.pools_raw.items()}
        if track_stake:
            holder.shares = from_base_units(shares_raw)
            holder.locked_amount = from_base_units(locked_raw)
            holder.pending_by_period = pending_by_period(shares_raw, stake_pools)
        shares_by_wallet[wallet] = shares_raw
        holders.append(holder)

    total_multiplier = sum(h.multiplier_sum for h in holders)
    for holder in holders:
        holder.percentage = holder.multiplier_sum / total_multiplier * 100 if total_multiplier > 0 else 0.0

    holders.sort(key=lambda h: _sort_key(config, h, shares_by_wallet[h.wallet]))
    for index, holder in enumerate(holders):
        holder.rank = index + 1
    return holders


def pending_by_period(shares_raw: int, stake_pools: Optional[StakePools]) -> dict[str, float]:
    """Share of each toDistribute pool owed to ``shares_raw``."""
    pending = {name: 0.0 for name in STAKE_POOLS.values()}
    if stake_pools is None or stake_pools.total_shares_raw <= 0:
        return pending
    for name in pending:
        pool = stake_pools.to_distribute_raw.get(name, 0)
        pending[name] = from_base_units(shares_raw * pool // stake_pools.total_shares_raw)
    return pending


def build_summary(
    config: ContractConfig,
    holders: list[Holder],
    tokens: Mapping[int, TokenRecord],
    *,
    total_burned: int,
    total_minted: int,
    warnings: Optional[list[str]] = None,
    stake_pools: Optional[StakePools] = None,
) -> HoldersSummary:
    tier_distribution = [0] * (config.max_tier + 1)
    for holder in holders:
        for tier, count in enumerate(holder.tiers):
            tier_distribution[tier] += count

    summary = HoldersSummary(
        total_live=len(tokens),
        total_burned=total_burned,
        total_minted=total_minted,
        tier_distribution=tier_distribution,
        multiplier_pool=sum(h.multiplier_sum for h in holders),
        total_rewards=sum(h.claimable_rewards for h in holders),
        warnings=list(warnings or []),
    )

    if config.records_function is not None:
        rarities = [r.rarity for r in tokens.values() if r.rarity is not None and r.rarity >= 0]
        rarity_distribution = [0] * (max(rarities, default=-1) + 1)
        for rarity in rarities:
            rarity_distribution[rarity] += 1
        pools = stake_pools or StakePools()
        summary.stake = StakeMetrics(
            total_shares=from_base_units(pools.total_shares_raw),
            total_locked=from_base_units(sum(r.locked_raw for r in tokens.values())),
            to_distribute={name: from_base_units(pools.to_distribute_raw.get(name, 0)) for name in STAKE_POOLS.values()},
            pending_rewards=sum(sum((h.pending_by_period or {}).values()) for h in holders),
            rarity_distribution=rarity_distribution,
        )
    return summary
