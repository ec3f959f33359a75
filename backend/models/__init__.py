from .contracts import (
    ContractConfig,
    ContractConfigError,
    RankingKey,
    RewardShape,
    TierSpec,
    get_contract_config,
)
from .holders import (
    CacheState,
    ErrorEntry,
    Holder,
    HoldersSnapshot,
    HoldersSummary,
    PopulationResult,
    PopulationStep,
    ProgressState,
    TokenRecord,
    WalletRewards,
)

__all__ = [
    "ContractConfig",
    "ContractConfigError",
    "RankingKey",
    "RewardShape",
    "TierSpec",
    "get_contract_config",
    "CacheState",
    "ErrorEntry",
    "Holder",
    "HoldersSnapshot",
    "HoldersSummary",
    "PopulationResult",
    "PopulationStep",
    "ProgressState",
    "TokenRecord",
    "WalletRewards",
]
