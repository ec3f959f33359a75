"""
Ownership resolution: which wallet holds each live token.

Full scan enumerates the minted id range and batches ``ownerOf`` (or pulls
the Alchemy owners API when configured). Incremental mode replays ERC721
Transfer logs since the last processed block onto the previous snapshot's
ownership. Both produce an ``OwnershipLedger`` that keeps the token->owner
map and its wallet->tokens inverse in lockstep, so a token can never be
counted under two wallets.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

import httpx

from config import settings
from models.contracts import BURN_ADDRESSES, ZERO_ADDRESS, ContractConfig
from models.holders import PopulationStep
from services.abi import OWNER_OF, TRANSFER_TOPIC, get_function, hex_to_int, topic_to_address
from services.cache_state import ProgressReporter
from services.errors import PopulationError
from services.rpc_client import ContractCall, RpcError, RpcGateway
from utils.logger import get_logger

logger = get_logger("population")


@dataclass(frozen=True)
class TransferEvent:
    block_number: int
    log_index: int
    from_address: str
    to_address: str
    token_id: int
    tx_hash: str = ""

    @classmethod
    def from_log(cls, log: dict) -> Optional["TransferEvent"]:
        """Parse an ERC721 Transfer log; ERC20-shaped logs (3 topics) are ignored."""
        topics = log.get("topics") or []
        if len(topics) < 4 or str(topics[0]).lower() != TRANSFER_TOPIC:
            return None
        return cls(
            block_number=hex_to_int(log.get("blockNumber")),
            log_index=hex_to_int(log.get("logIndex")),
            from_address=topic_to_address(topics[1]),
            to_address=topic_to_address(topics[2]),
            token_id=hex_to_int(topics[3]),
            tx_hash=str(log.get("transactionHash") or ""),
        )


class OwnershipLedger:
    """token -> owner plus the wallet -> tokens index, mutated together."""

    def __init__(self, token_owners: Optional[dict[int, str]] = None):
        self.token_owners: dict[int, str] = {}
        self.wallet_tokens: dict[str, set[int]] = {}
        for token_id, owner in (token_owners or {}).items():
            self.assign(token_id, owner)

    def __len__(self) -> int:
        return len(self.token_owners)

    def owner_of(self, token_id: int) -> Optional[str]:
        return self.token_owners.get(token_id)

    def assign(self, token_id: int, wallet: str) -> Optional[str]:
        """Move ``token_id`` to ``wallet``; returns the previous owner."""
        wallet = wallet.lower()
        previous = self.token_owners.get(token_id)
        if previous == wallet:
            return previous
        if previous is not None:
            self._detach(token_id, previous)
        self.token_owners[token_id] = wallet
        self.wallet_tokens.setdefault(wallet, set()).add(token_id)
        return previous

    def remove(self, token_id: int) -> Optional[str]:
        previous = self.token_owners.pop(token_id, None)
        if previous is not None:
            self._detach(token_id, previous)
        return previous

    def _detach(self, token_id: int, wallet: str) -> None:
        tokens = self.wallet_tokens.get(wallet)
        if tokens is None:
            return
        tokens.discard(token_id)
        if not tokens:
            del self.wallet_tokens[wallet]

    def apply_transfer(self, event: TransferEvent) -> str:
        """Apply one Transfer; returns burn | mint | move | noop.

        Re-applying an event that is already reflected is a no-op, which is
        what makes overlapping incremental windows safe.
        """
        to_address = event.to_address.lower()
        if to_address in BURN_ADDRESSES:
            return "burn" if self.remove(event.token_id) is not None else "noop"
        previous = self.assign(event.token_id, to_address)
        if previous == to_address:
            return "noop"
        if previous is None:
            return "mint"
        return "move"


@dataclass
class SupplyInfo:
    total_supply: int
    total_burned: Optional[int] = None  # None when the contract has no burn counter
    max_token_id: int = 0


@dataclass
class OwnershipResult:
    ledger: OwnershipLedger
    total_supply: int
    total_burned: int
    total_minted: int
    last_block: int
    source: str
    touched_wallets: set[str] = field(default_factory=set)
    new_tokens: set[int] = field(default_factory=set)
    events_applied: int = 0
    warnings: list[str] = field(default_factory=list)


# ==================== SUPPLY ====================


async def fetch_supply(gateway: RpcGateway, config: ContractConfig, reporter: ProgressReporter) -> SupplyInfo:
    """Read supply counters. Every configured counter is structural."""
    try:
        total_supply = int(await gateway.read_contract(config.address, get_function(config.supply_function)))
    except (RpcError, httpx.HTTPError) as e:
        reporter.record_error("fetch_supply", str(e))
        raise PopulationError(
            f"Unable to read {config.supply_function}: {e}",
            phase="fetch_supply",
            rate_limited=bool(getattr(e, "rate_limited", False)),
        ) from e

    total_burned: Optional[int] = None
    if config.burned_function:
        try:
            total_burned = int(await gateway.read_contract(config.address, get_function(config.burned_function)))
        except (RpcError, httpx.HTTPError) as e:
            # The burn counter sizes the ownerOf range; guessing it drops the newest tokens.
            reporter.record_error("fetch_supply", f"{config.burned_function}: {e}")
            raise PopulationError(
                f"Unable to read {config.burned_function}: {e}",
                phase="fetch_supply",
                rate_limited=bool(getattr(e, "rate_limited", False)),
            ) from e

    if config.max_token_id_function:
        try:
            max_token_id = int(
                await gateway.read_contract(config.address, get_function(config.max_token_id_function))
            )
        except (RpcError, httpx.HTTPError) as e:
            reporter.record_error("fetch_supply", f"{config.max_token_id_function}: {e}")
            raise PopulationError(
                f"Unable to read {config.max_token_id_function}: {e}",
                phase="fetch_supply",
                rate_limited=bool(getattr(e, "rate_limited", False)),
            ) from e
    else:
        max_token_id = total_supply + (total_burned or 0)

    logger.info(
        "Supply fetched",
        contract=config.key,
        total_supply=total_supply,
        total_burned=total_burned,
        max_token_id=max_token_id,
    )
    return SupplyInfo(total_supply=total_supply, total_burned=total_burned, max_token_id=max_token_id)


async def fetch_block_number(gateway: RpcGateway, reporter: ProgressReporter) -> int:
    try:
        return await gateway.get_block_number()
    except (RpcError, httpx.HTTPError) as e:
        reporter.record_error("fetch_block_number", str(e))
        raise PopulationError(
            f"Unable to read block number: {e}",
            phase="fetch_block_number",
            rate_limited=bool(getattr(e, "rate_limited", False)),
        ) from e


# ==================== FULL SCAN ====================


async def _scan_owner_of(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: ProgressReporter,
    token_ids: list[int],
) -> tuple[OwnershipLedger, int]:
    """Batch ownerOf over ``token_ids``; returns the ledger and burned count seen."""
    calls = [ContractCall(config.address, OWNER_OF, (token_id,), key=token_id) for token_id in token_ids]
    results = await gateway.batch_read(calls, on_chunk=reporter.chunk_done)

    ledger = OwnershipLedger()
    burned_seen = 0
    for call, result in zip(calls, results):
        token_id = call.key
        if result.batch_failure:
            # A missing chunk would silently drop holders; abort instead.
            raise PopulationError(
                f"ownerOf batch failed: {result.error}",
                phase="fetch_ownership",
                rate_limited=result.rate_limited,
            )
        if not result.success:
            # Reverts mean burned or never minted under this numbering.
            reporter.record_error("fetch_ownership", result.error or "ownerOf failed", token_id=token_id)
            continue
        owner = str(result.value).lower()
        if owner in BURN_ADDRESSES:
            burned_seen += 1
            continue
        ledger.assign(token_id, owner)
    return ledger, burned_seen


def _ledger_from_owners(owners: Iterable[tuple[int, str]], reporter: ProgressReporter) -> OwnershipLedger:
    ledger = OwnershipLedger()
    for token_id, owner in owners:
        owner = owner.lower()
        if owner in BURN_ADDRESSES:
            continue
        existing = ledger.owner_of(token_id)
        if existing is not None and existing != owner:
            reporter.record_error(
                "process_token",
                f"Duplicate token id: owned by {existing} and {owner}; keeping {owner}",
                token_id=token_id,
                wallet=owner,
            )
        ledger.assign(token_id, owner)
    return ledger


async def full_scan(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: ProgressReporter,
) -> OwnershipResult:
    """Resolve ownership of every minted token from scratch."""
    supply = await fetch_supply(gateway, config, reporter)
    last_block = await fetch_block_number(gateway, reporter)

    token_ids = list(range(config.token_id_start, config.token_id_start + supply.max_token_id))
    await reporter.advance(PopulationStep.FETCHING_OWNERSHIP, total=len(token_ids))

    ledger: Optional[OwnershipLedger] = None
    source = "owner_of"
    if config.use_owners_api and gateway.has_owners_api:
        try:
            owners = await gateway.get_contract_owners(config.address)
            ledger = _ledger_from_owners(owners, reporter)
            source = "owners_api"
            await reporter.chunk_done(len(token_ids))
        except (RpcError, httpx.HTTPError, ValueError) as e:
            reporter.record_error("fetch_ownership", f"Owners API failed, falling back to ownerOf: {e}")

    burned_seen = 0
    if ledger is None:
        ledger, burned_seen = await _scan_owner_of(gateway, config, reporter, token_ids)

    live = len(ledger)
    if supply.total_burned is not None:
        total_burned = supply.total_burned
    elif config.max_token_id_function:
        total_burned = max(0, supply.max_token_id - live)
    else:
        total_burned = burned_seen
    total_minted = max(supply.max_token_id, live + total_burned)

    result = OwnershipResult(
        ledger=ledger,
        total_supply=supply.total_supply,
        total_burned=total_burned,
        total_minted=total_minted,
        last_block=last_block,
        source=source,
        touched_wallets=set(ledger.wallet_tokens),
        new_tokens=set(ledger.token_owners),
    )
    await reporter.advance(PopulationStep.INITIALIZING_HOLDERS)
    validate_ownership(config, result, reporter)
    logger.info(
        "Ownership resolved",
        contract=config.key,
        source=source,
        live=live,
        owners=len(ledger.wallet_tokens),
        burned=total_burned,
        block=last_block,
    )
    return result


# ==================== INCREMENTAL ====================


def block_ranges(from_block: int, to_block: int, max_range: int) -> list[tuple[int, int]]:
    """Inclusive [start, end] windows of at most ``max_range`` blocks."""
    max_range = max(1, int(max_range))
    ranges = []
    start = from_block
    while start <= to_block:
        end = min(start + max_range - 1, to_block)
        ranges.append((start, end))
        start = end + 1
    return ranges


async def fetch_transfer_events(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: Optional[ProgressReporter],
    from_block: int,
    to_block: int,
    topics: Optional[list] = None,
) -> list[TransferEvent]:
    """Transfer logs in [from_block, to_block], sorted by (block, logIndex).

    Ranges are fetched concurrently (LOG_FETCH_CONCURRENCY). Every range
    must succeed: skipping one would leave ownership silently wrong.
    """
    ranges = block_ranges(from_block, to_block, settings.LOG_BLOCK_RANGE)
    semaphore = asyncio.Semaphore(settings.LOG_FETCH_CONCURRENCY)

    async def _fetch(start: int, end: int) -> list[dict]:
        async with semaphore:
            try:
                logs = await gateway.get_logs(config.address, topics or [TRANSFER_TOPIC], start, end)
            except (RpcError, httpx.HTTPError) as e:
                if reporter is not None:
                    reporter.record_error("fetch_events", f"blocks {start}-{end}: {e}")
                raise PopulationError(
                    f"Transfer log fetch failed for blocks {start}-{end}: {e}",
                    phase="fetch_events",
                    rate_limited=bool(getattr(e, "rate_limited", False)),
                ) from e
        if reporter is not None:
            await reporter.chunk_done(1)
        return logs

    chunks = await asyncio.gather(*[_fetch(start, end) for start, end in ranges])
    events = [event for logs in chunks for event in map(TransferEvent.from_log, logs) if event is not None]
    events.sort(key=lambda e: (e.block_number, e.log_index))
    return events


async def incremental_update(
    gateway: RpcGateway,
    config: ContractConfig,
    reporter: ProgressReporter,
    token_owners: dict[int, str],
    total_burned: int,
    last_processed_block: int,
) -> OwnershipResult:
    """Replay Transfers after ``last_processed_block`` onto known ownership."""
    supply = await fetch_supply(gateway, config, reporter)
    current_block = await fetch_block_number(gateway, reporter)
    from_block = last_processed_block + 1

    ranges = block_ranges(from_block, current_block, settings.LOG_BLOCK_RANGE)
    await reporter.advance(PopulationStep.FETCHING_OWNERSHIP, total=len(ranges))

    ledger = OwnershipLedger(token_owners)
    events: list[TransferEvent] = []
    if ranges:
        events = await fetch_transfer_events(gateway, config, reporter, from_block, current_block)

    touched: set[str] = set()
    new_tokens: set[int] = set()
    applied = 0
    for event in events:
        known = ledger.owner_of(event.token_id) is not None
        outcome = ledger.apply_transfer(event)
        if outcome == "noop":
            continue
        applied += 1
        if outcome == "burn":
            total_burned += 1
        elif not known:
            new_tokens.add(event.token_id)
        for wallet in (event.from_address, event.to_address):
            wallet = wallet.lower()
            if wallet not in BURN_ADDRESSES:
                touched.add(wallet)
        if outcome == "move" and event.from_address.lower() == ZERO_ADDRESS:
            reporter.record_error(
                "process_token",
                "Mint of a token that already had an owner",
                token_id=event.token_id,
                wallet=event.to_address.lower(),
            )

    live = len(ledger)
    result = OwnershipResult(
        ledger=ledger,
        total_supply=supply.total_supply,
        total_burned=total_burned,
        total_minted=max(supply.max_token_id, live + total_burned),
        last_block=current_block,
        source="transfer_logs",
        touched_wallets=touched,
        new_tokens=new_tokens,
        events_applied=applied,
    )
    await reporter.advance(PopulationStep.INITIALIZING_HOLDERS)
    validate_ownership(config, result, reporter)
    logger.info(
        "Incremental ownership applied",
        contract=config.key,
        from_block=from_block,
        to_block=current_block,
        events=len(events),
        applied=applied,
        live=live,
        touched_wallets=len(touched),
    )
    return result


# ==================== VALIDATION ====================


def validate_ownership(config: ContractConfig, result: OwnershipResult, reporter: ProgressReporter) -> None:
    """Fatal checks abort the run; deviations become summary warnings."""
    live = len(result.ledger)
    if live > result.total_supply:
        message = f"Live token count {live} exceeds totalSupply {result.total_supply}"
        reporter.record_error("validate", message)
        raise PopulationError(message, phase="validate")
    if live == 0 and result.total_supply > 0:
        message = f"No owners resolved while totalSupply is {result.total_supply}"
        reporter.record_error("validate", message)
        raise PopulationError(message, phase="validate")
    if live < result.total_supply:
        result.warnings.append(f"Resolved {live} live tokens but totalSupply is {result.total_supply}")
    if config.expected_burned is not None and result.total_burned != config.expected_burned:
        result.warnings.append(
            f"Burned count {result.total_burned} differs from expected {config.expected_burned}"
        )
    for warning in result.warnings:
        logger.warning("Ownership consistency warning", contract=config.key, warning=warning)


# ==================== BURN AUDIT ====================


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


@dataclass
class BurnAudit:
    from_block: int
    to_block: int
    burn_events: int
    burned_token_ids: list[int]
    repeated_burns: list[int]
    on_chain_burned: Optional[int]
    expected_burned: Optional[int]
    discrepancies: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.discrepancies


async def audit_burns(gateway: RpcGateway, config: ContractConfig) -> BurnAudit:
    """Count burns from Transfer logs since deployment and compare the counters.

    Scans every Transfer to a burn sentinel from ``deployment_block`` to the
    current block, then checks the distinct burned ids against the
    contract's burn counter and the configured ``expected_burned``.
    """
    from_block = config.deployment_block or 0
    try:
        to_block = await gateway.get_block_number()
    except (RpcError, httpx.HTTPError) as e:
        raise PopulationError(
            f"Unable to read block number: {e}",
            phase="fetch_block_number",
            rate_limited=bool(getattr(e, "rate_limited", False)),
        ) from e

    burn_topics = [TRANSFER_TOPIC, None, [_address_topic(address) for address in sorted(BURN_ADDRESSES)]]
    events = await fetch_transfer_events(gateway, config, None, from_block, to_block, topics=burn_topics)

    burned: set[int] = set()
    repeated: list[int] = []
    burn_events = 0
    for event in events:
        if event.to_address.lower() not in BURN_ADDRESSES:
            continue
        burn_events += 1
        if event.token_id in burned:
            repeated.append(event.token_id)
        burned.add(event.token_id)

    on_chain: Optional[int] = None
    if config.burned_function:
        try:
            on_chain = int(await gateway.read_contract(config.address, get_function(config.burned_function)))
        except (RpcError, httpx.HTTPError) as e:
            raise PopulationError(
                f"Unable to read {config.burned_function}: {e}",
                phase="fetch_supply",
                rate_limited=bool(getattr(e, "rate_limited", False)),
            ) from e

    audit = BurnAudit(
        from_block=from_block,
        to_block=to_block,
        burn_events=burn_events,
        burned_token_ids=sorted(burned),
        repeated_burns=sorted(set(repeated)),
        on_chain_burned=on_chain,
        expected_burned=config.expected_burned,
    )
    if on_chain is not None and on_chain != len(burned):
        audit.discrepancies.append(f"{config.burned_function} is {on_chain} but logs show {len(burned)} burns")
    if config.expected_burned is not None and config.expected_burned != len(burned):
        audit.discrepancies.append(f"Expected {config.expected_burned} burns but logs show {len(burned)}")
    if audit.repeated_burns:
        audit.discrepancies.append(f"{len(audit.repeated_burns)} token ids were burned more than once")

    logger.info(
        "Burn audit complete",
        contract=config.key,
        from_block=from_block,
        to_block=to_block,
        burned=len(burned),
        on_chain_burned=on_chain,
        discrepancies=len(audit.discrepancies),
    )
    return audit
