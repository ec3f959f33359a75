"""Holder aggregates, cached snapshots and population progress state.

All models serialize with camelCase keys (``to_wire``) because that is the
shape both the cache payloads and the HTTP API expose.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class PopulationStep(str, Enum):
    IDLE = "idle"
    FETCHING_SUPPLY = "fetching_supply"
    FETCHING_OWNERSHIP = "fetching_ownership"
    INITIALIZING_HOLDERS = "initializing_holders"
    FETCHING_TIERS = "fetching_tiers"
    FETCHING_REWARDS = "fetching_rewards"
    CALCULATING_METRICS = "calculating_metrics"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorEntry(CamelModel):
    timestamp: str
    phase: str
    token_id: Optional[int] = None
    wallet: Optional[str] = None
    error: str


class ProgressState(CamelModel):
    step: PopulationStep = PopulationStep.IDLE
    processed_nfts: int = 0
    total_nfts: int = 0
    error: Optional[str] = None
    error_log: list[ErrorEntry] = Field(default_factory=list)
    dropped_errors: int = 0  # entries rotated out of error_log this run


class StakeMetrics(CamelModel):
    """Collection-wide staking figures for share-weighted collections."""

    total_shares: float = 0.0
    total_locked: float = 0.0
    to_distribute: dict[str, float] = Field(default_factory=dict)  # pool -> amount
    pending_rewards: float = 0.0
    rarity_distribution: list[int] = Field(default_factory=list)


class HoldersSummary(CamelModel):
    total_live: int = 0
    total_burned: int = 0
    total_minted: int = 0
    tier_distribution: list[int] = Field(default_factory=list)
    multiplier_pool: float = 0.0
    total_rewards: float = 0.0
    warnings: list[str] = Field(default_factory=list)
    stake: Optional[StakeMetrics] = None


class CacheState(CamelModel):
    contract_key: str
    is_populating: bool = False
    last_processed_block: Optional[int] = None
    total_owners: int = 0
    progress_state: ProgressState = Field(default_factory=ProgressState)
    global_metrics: Optional[HoldersSummary] = None
    last_updated: Optional[str] = None


class TokenRecord(CamelModel):
    """Per-token attributes kept in the snapshot for incremental refreshes."""

    owner: str
    tier: int = 0  # 0 = unresolved
    rarity: Optional[int] = None
    shares_raw: int = 0
    locked_raw: int = 0
    resolved: bool = True  # False when a tier or records read failed


class WalletRewards(CamelModel):
    claimable_raw: int = 0
    pools_raw: dict[str, int] = Field(default_factory=dict)


class Holder(CamelModel):
    wallet: str
    token_ids: list[int] = Field(default_factory=list)
    tiers: list[int] = Field(default_factory=list)
    total: int = 0
    multiplier_sum: float = 0.0
    display_multiplier_sum: float = 0.0
    claimable_rewards: float = 0.0
    percentage: float = 0.0
    rank: int = 0
    shares: Optional[float] = None
    locked_amount: Optional[float] = None
    pending_by_period: Optional[dict[str, float]] = None
    rewards_by_pool: Optional[dict[str, float]] = None


class HoldersSnapshot(CamelModel):
    contract_key: str
    holders: list[Holder] = Field(default_factory=list)
    tokens: dict[int, TokenRecord] = Field(default_factory=dict)
    rewards: dict[str, WalletRewards] = Field(default_factory=dict)
    total_burned: int = 0
    total_minted: int = 0
    summary: HoldersSummary = Field(default_factory=HoldersSummary)
    last_processed_block: Optional[int] = None
    timestamp: str

    def find_holder(self, wallet: str) -> Optional[Holder]:
        wallet = wallet.lower()
        for holder in self.holders:
            if holder.wallet == wallet:
                return holder
        return None


class PopulationResult(CamelModel):
    contract_key: str
    status: str  # updated | up_to_date | in_progress | error
    message: str = ""
    error: Optional[str] = None
    rate_limited: bool = False
