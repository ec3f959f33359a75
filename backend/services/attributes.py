"""Per-token attribute reads: tier (plus rarity) and, for staking NFTs, shares."""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from models.contracts import ContractConfig
from models.holders import PopulationStep
from services.abi import get_function
from services.cache_state import ProgressReporter
from services.rpc_client import ContractCall, RpcGateway
from utils.logger import get_logger

logger = get_logger("population")


@dataclass
class TokenAttributes:
    tier: int = 0  # 0 = unresolved; counted in tiers[0] with no multiplier
    rarity: Optional[int] = None
    shares_raw: int = 0
    locked_raw: int = 0
    resolved: bool = True


def parse_tier(config: ContractConfig, value: Any) -> tuple[int, Optional[int]]:
    """(tier, rarity) from a tier-function return value.

    ``getNFTAttribute`` returns (rarityNumber, tier, rarity); ``getNftTier``
    returns the tier alone.
    """
    if isinstance(value, (tuple, list)):
        if len(value) < 2:
            raise ValueError(f"unexpected {config.tier_function} result: {value!r}")
        rarity = int(value[2]) if len(value) > 2 else None
        return int(value[1]), rarity
    return int(value), None


async def fetch_token_attributes(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: ProgressReporter,
    token_ids: Iterable[int],
) -> dict[int, TokenAttributes]:
    """Tier (and stake records where configured) for every token id.

    A failed or invalid read leaves that token at tier 0 with an ErrorEntry;
    it never aborts the phase. Progress advances per multicall chunk.
    """
    token_ids = sorted(token_ids)
    attributes = {token_id: TokenAttributes() for token_id in token_ids}
    records_function = get_function(config.records_function) if config.records_function else None

    total_calls = len(token_ids) * (2 if records_function else 1)
    await reporter.advance(PopulationStep.FETCHING_TIERS, total=total_calls)
    if not token_ids:
        return attributes

    tier_function = get_function(config.tier_function)
    calls = [ContractCall(config.address, tier_function, (token_id,), key=token_id) for token_id in token_ids]
    results = await gateway.batch_read(calls, on_chunk=reporter.chunk_done)

    invalid = 0
    for call, result in zip(calls, results):
        token_id = call.key
        if not result.success:
            reporter.record_error("fetch_tier", result.error or "tier call failed", token_id=token_id)
            attributes[token_id].resolved = False
            invalid += 1
            continue
        try:
            tier, rarity = parse_tier(config, result.value)
        except (TypeError, ValueError) as e:
            reporter.record_error("fetch_tier", str(e), token_id=token_id)
            attributes[token_id].resolved = False
            invalid += 1
            continue
        if not config.is_valid_tier(tier):
            reporter.record_error(
                "fetch_tier",
                f"Invalid tier {tier}, expected 1..{config.max_tier}",
                token_id=token_id,
            )
            attributes[token_id].resolved = False
            invalid += 1
            continue
        attributes[token_id].tier = tier
        attributes[token_id].rarity = rarity

    if records_function is not None:
        record_calls = [
            ContractCall(config.address, records_function, (token_id,), key=token_id) for token_id in token_ids
        ]
        record_results = await gateway.batch_read(record_calls, on_chunk=reporter.chunk_done)
        for call, result in zip(record_calls, record_results):
            if not result.success:
                reporter.record_error("fetch_records", result.error or "records call failed", token_id=call.key)
                attributes[call.key].resolved = False
                continue
            # (shares, lockedAscendant, rewardDebt, startTime, endTime)
            record = result.value
            attributes[call.key].shares_raw = int(record[0])
            attributes[call.key].locked_raw = int(record[1])

    logger.info(
        "Token attributes fetched",
        contract=config.key,
        tokens=len(token_ids),
        unresolved=invalid,
        with_records=records_function is not None,
    )
    return attributes
