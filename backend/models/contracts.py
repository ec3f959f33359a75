"""Registry of the NFT collections the holders service can aggregate.

Each collection is described by one ``ContractConfig``: where it lives, which
read functions expose its supply/tiers/rewards, how tiers map to multipliers,
and how holders are ranked. The population pipeline is driven entirely by
these records, so adding a collection means adding an entry here.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"
BURN_ADDRESSES = frozenset({ZERO_ADDRESS, DEAD_ADDRESS})


class ContractConfigError(ValueError):
    """Unknown, disabled or incomplete collection configuration."""


class RewardShape(str, Enum):
    VAULT_TOKEN_ARRAY = "vault_token_array"  # vault.getRewards(uint256[], address)
    VAULT_MULTI_POOL = "vault_multi_pool"  # vault.getRewards(uint256[], address, bool) -> 3 pools
    NFT_BATCH_CLAIMABLE = "nft_batch_claimable"  # nft.batchClaimableAmount(uint256[])
    NONE = "none"


class RankingKey(str, Enum):
    MULTIPLIER_SUM = "multiplier_sum"
    SHARES = "shares"


class TierSpec(BaseModel):
    tier: int
    name: str
    multiplier: float


class ContractConfig(BaseModel):
    key: str
    name: str
    symbol: str = ""
    chain: str = "ETH"
    address: Optional[str] = None
    vault_address: Optional[str] = None
    deployment_block: Optional[int] = None
    tiers: list[TierSpec] = Field(default_factory=list)

    # Token id numbering: contiguous from token_id_start
    token_id_start: int = 1
    supply_function: str = "totalSupply"
    burned_function: Optional[str] = None
    max_token_id_function: Optional[str] = None  # mint counter, when exposed
    tier_function: str = "getNftTier"
    records_function: Optional[str] = None  # per-token stake records (shares/locked)

    reward_shape: RewardShape = RewardShape.NONE
    reward_token: str = ""
    ranking_key: RankingKey = RankingKey.MULTIPLIER_SUM
    display_multiplier_divisor: float = 1.0
    page_size: int = 1000

    use_owners_api: bool = True  # Alchemy getOwnersForContract when a key is configured
    expected_burned: Optional[int] = None
    disabled: bool = False
    disabled_reason: str = ""

    @property
    def max_tier(self) -> int:
        return max((t.tier for t in self.tiers), default=0)

    @property
    def multipliers(self) -> dict[int, float]:
        return {t.tier: t.multiplier for t in self.tiers}

    def tier_name(self, tier: int) -> str:
        for spec in self.tiers:
            if spec.tier == tier:
                return spec.name
        return f"Tier {tier}"

    def is_valid_tier(self, tier: int) -> bool:
        return tier >= 1 and tier in self.multipliers


def _tiers(*entries: tuple[str, float]) -> list[TierSpec]:
    return [TierSpec(tier=i, name=name, multiplier=mult) for i, (name, mult) in enumerate(entries, start=1)]


CONTRACTS: dict[str, ContractConfig] = {
    "element280": ContractConfig(
        key="element280",
        name="Element 280",
        symbol="ELMNT",
        address="0x7F090d101936008a26Bf1F0a22a5f92fC0Cf46c9",
        vault_address="0x44c4ADAc7d88f85d3D33A7f856Ebc54E60C31E97",
        deployment_block=20945304,
        tiers=_tiers(
            ("Common", 10),
            ("Common Amped", 12),
            ("Rare", 100),
            ("Rare Amped", 120),
            ("Legendary", 1000),
            ("Legendary Amped", 1200),
        ),
        burned_function="totalBurned",
        reward_shape=RewardShape.VAULT_TOKEN_ARRAY,
        reward_token="ELMNT",
        display_multiplier_divisor=10,
        page_size=100,
        expected_burned=8776,
    ),
    "element369": ContractConfig(
        key="element369",
        name="Element 369",
        symbol="E369",
        address="0x024D64E2F65747d8bB02dFb852702D588A062575",
        vault_address="0x4e3DBD6333e649AF13C823DAAcDd14f8507ECBc5",
        deployment_block=21224418,
        tiers=_tiers(("Common", 1), ("Rare", 10), ("Legendary", 100)),
        burned_function="totalBurned",
        reward_shape=RewardShape.VAULT_MULTI_POOL,
        reward_token="E280",
    ),
    "stax": ContractConfig(
        key="stax",
        name="Stax",
        symbol="STAX",
        address="0x74270Ca3a274B4dbf26be319A55188690CACE6E1",
        vault_address="0x5D27813C32dD705404d1A78c9444dAb523331717",
        deployment_block=21452667,
        tiers=_tiers(
            ("Common", 1),
            ("Common Amped", 1.2),
            ("Common Super", 1.4),
            ("Common LFG", 2),
            ("Rare", 10),
            ("Rare Amped", 12),
            ("Rare Super", 14),
            ("Rare LFG", 20),
            ("Legendary", 100),
            ("Legendary Amped", 120),
            ("Legendary Super", 140),
            ("Legendary LFG", 200),
        ),
        burned_function="totalBurned",
        reward_shape=RewardShape.VAULT_TOKEN_ARRAY,
        reward_token="X28",
    ),
    "ascendant": ContractConfig(
        key="ascendant",
        name="Ascendant",
        symbol="ASCNFT",
        address="0x9da95c32c5869c84ba2c020b5e87329ec0adc97f",
        deployment_block=21112535,
        tiers=_tiers(
            ("Tier 1", 1.01),
            ("Tier 2", 1.02),
            ("Tier 3", 1.03),
            ("Tier 4", 1.04),
            ("Tier 5", 1.05),
            ("Tier 6", 1.06),
            ("Tier 7", 1.07),
            ("Tier 8", 1.08),
        ),
        max_token_id_function="tokenId",
        tier_function="getNFTAttribute",
        records_function="userRecords",
        reward_shape=RewardShape.NFT_BATCH_CLAIMABLE,
        reward_token="DRAGONX",
        ranking_key=RankingKey.SHARES,
    ),
    "e280": ContractConfig(
        key="e280",
        name="E280",
        symbol="E280",
        chain="BASE",
        disabled=True,
        disabled_reason="E280 contract is not yet deployed on BASE",
    ),
}


def get_contract_config(contract_key: str) -> ContractConfig:
    """Resolve and validate a collection by key (case-insensitive).

    Raises ContractConfigError for unknown, disabled or incomplete entries so
    the request path can answer 400 instead of running with defaults.
    """
    key = (contract_key or "").strip().lower()
    config = CONTRACTS.get(key)
    if config is None:
        raise ContractConfigError(f"Unknown contract: {contract_key}")
    if config.disabled:
        raise ContractConfigError(config.disabled_reason or f"Contract {key} is disabled")
    if not config.address:
        raise ContractConfigError(f"Contract {key} has no address configured")
    if not config.tiers:
        raise ContractConfigError(f"Contract {key} has no tier table configured")
    if config.reward_shape in (RewardShape.VAULT_TOKEN_ARRAY, RewardShape.VAULT_MULTI_POOL) and not config.vault_address:
        raise ContractConfigError(f"Contract {key} has no vault address configured")
    return config


def enabled_contracts() -> list[ContractConfig]:
    return [c for c in CONTRACTS.values() if not c.disabled]
