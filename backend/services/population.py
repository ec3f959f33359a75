"""
Population orchestrator: ownership -> attributes -> rewards -> aggregation.

One run per contract at a time. The claim (``CacheStateTracker.try_begin``)
happens synchronously before the first await, so concurrent triggers cannot
both start a run. Every exit path clears ``is_populating`` and wakes the
readers waiting on the contract's completion event. A failed run never
touches the previously cached snapshot.
"""

import asyncio
import time
from typing import Optional

from config import settings
from models.contracts import ContractConfig, get_contract_config
from models.holders import HoldersSnapshot, PopulationResult, PopulationStep, TokenRecord
from services.aggregator import build_holders, build_summary
from services.attributes import fetch_token_attributes
from services.cache_state import CacheStateTracker, ProgressReporter
from services.cache_store import HOLDERS_KEY, CacheStore, create_cache_store
from services.errors import PopulationError
from services.ownership import OwnershipResult, full_scan, incremental_update
from services.rewards import StakePools, fetch_rewards, fetch_stake_pools
from services.rpc_client import RpcGateway
from utils.logger import get_logger
from utils.utcnow import utcnow_iso

logger = get_logger("population")


class PopulationOrchestrator:
    """Runs and coordinates holder population for every configured contract."""

    def __init__(
        self,
        store: CacheStore,
        gateway: RpcGateway,
        tracker: Optional[CacheStateTracker] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.tracker = tracker or CacheStateTracker(store)
        self.timeout_seconds = timeout_seconds or settings.POPULATION_TIMEOUT_SECONDS
        self._events: dict[str, asyncio.Event] = {}
        self._last_results: dict[str, PopulationResult] = {}
        # contract -> (snapshot, monotonic expiry or None)
        self._snapshots: dict[str, tuple[HoldersSnapshot, Optional[float]]] = {}
        self._tasks: set[asyncio.Task] = set()

    # ==================== ENTRY POINTS ====================

    async def populate(self, contract_key: str, force_update: bool = False) -> PopulationResult:
        """Run a population inline; returns ``in_progress`` if one is running."""
        config = get_contract_config(contract_key)
        if not self._claim(config.key):
            return PopulationResult(
                contract_key=config.key,
                status="in_progress",
                message="Population already in progress",
            )
        return await self._run_claimed(config, force_update)

    def trigger(self, contract_key: str, force_update: bool = False) -> str:
        """Start a background run; returns ``started`` or ``in_progress``."""
        config = get_contract_config(contract_key)
        if not self._claim(config.key):
            return "in_progress"
        task = asyncio.create_task(self._run_claimed(config, force_update), name=f"populate-{config.key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Population triggered", contract=config.key, force_update=force_update)
        return "started"

    async def wait_for_population(self, contract_key: str, timeout: float) -> bool:
        """Block until the contract's current run ends; False on timeout."""
        event = self._events.get(contract_key)
        if event is None or not self.tracker.is_populating(contract_key):
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def last_result(self, contract_key: str) -> Optional[PopulationResult]:
        return self._last_results.get(contract_key)

    def is_populating(self, contract_key: str) -> bool:
        return self.tracker.is_populating(contract_key)

    async def load_snapshot(self, contract_key: str) -> Optional[HoldersSnapshot]:
        """Last good snapshot, from process memory or the cache store."""
        cached = self._snapshots.get(contract_key)
        if cached is not None:
            snapshot, expires_at = cached
            if expires_at is None or time.monotonic() < expires_at:
                return snapshot
            self._snapshots.pop(contract_key, None)

        raw = await self.store.get(HOLDERS_KEY, namespace=contract_key)
        if not raw:
            return None
        try:
            snapshot = HoldersSnapshot.model_validate(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable holders snapshot", contract=contract_key, error=str(e))
            return None
        self._remember(snapshot)
        return snapshot

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        # Tasks cancelled before their first step never reach their own finally.
        for key, event in self._events.items():
            await self.tracker.finish(key)
            event.set()

    # ==================== RUN ====================

    def _claim(self, contract_key: str) -> bool:
        if not self.tracker.try_begin(contract_key):
            return False
        self._events[contract_key] = asyncio.Event()
        return True

    async def _run_claimed(self, config: ContractConfig, force_update: bool) -> PopulationResult:
        key = config.key
        event = self._events[key]
        started = time.monotonic()
        result: Optional[PopulationResult] = None
        try:
            result = await asyncio.wait_for(self._execute(config, force_update), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            message = f"Population timed out after {self.timeout_seconds:g}s"
            logger.error("Population timed out", contract=key, timeout=self.timeout_seconds)
            await self.tracker.fail(key, message)
            result = PopulationResult(contract_key=key, status="error", message=message, error=message)
        except PopulationError as e:
            logger.error("Population failed", contract=key, phase=e.phase, rate_limited=e.rate_limited, error=str(e))
            await self.tracker.fail(key, str(e))
            result = PopulationResult(
                contract_key=key,
                status="error",
                message=f"Population failed during {e.phase}",
                error=str(e),
                rate_limited=e.rate_limited,
            )
        except Exception as e:
            logger.exception("Population crashed", contract=key, error=str(e))
            await self.tracker.fail(key, str(e))
            result = PopulationResult(
                contract_key=key,
                status="error",
                message="Population failed",
                error=str(e),
                rate_limited=bool(getattr(e, "rate_limited", False)),
            )
        finally:
            await self.tracker.finish(key)
            if result is not None:
                self._last_results[key] = result
            event.set()

        logger.info(
            "Population finished",
            contract=key,
            status=result.status,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return result

    async def _execute(self, config: ContractConfig, force_update: bool) -> PopulationResult:
        key = config.key
        reporter = self.tracker.reporter(key)
        previous = await self.load_snapshot(key)

        if previous is not None and previous.last_processed_block is not None and not force_update:
            ownership = await incremental_update(
                self.gateway,
                config,
                reporter,
                {token_id: record.owner for token_id, record in previous.tokens.items()},
                previous.total_burned,
                previous.last_processed_block,
            )
        else:
            previous = None
            ownership = await full_scan(self.gateway, config, reporter)

        tokens = await self._resolve_tokens(config, reporter, ownership, previous)
        wallet_tokens = {wallet: sorted(ids) for wallet, ids in ownership.ledger.wallet_tokens.items()}
        rewards = await fetch_rewards(self.gateway, config, reporter, wallet_tokens)
        stake_pools: Optional[StakePools] = None
        if config.records_function:
            stake_pools = await fetch_stake_pools(self.gateway, config, reporter)

        await reporter.advance(PopulationStep.CALCULATING_METRICS, total=len(tokens))
        holders = build_holders(config, tokens, rewards, stake_pools)
        summary = build_summary(
            config,
            holders,
            tokens,
            total_burned=ownership.total_burned,
            total_minted=ownership.total_minted,
            warnings=ownership.warnings,
            stake_pools=stake_pools,
        )
        await reporter.chunk_done(len(tokens))

        snapshot = HoldersSnapshot(
            contract_key=key,
            holders=holders,
            tokens=tokens,
            rewards=rewards,
            total_burned=ownership.total_burned,
            total_minted=ownership.total_minted,
            summary=summary,
            last_processed_block=ownership.last_block,
            timestamp=utcnow_iso(),
        )
        await self._save_snapshot(snapshot)
        await self.tracker.complete(
            key,
            last_processed_block=ownership.last_block,
            total_owners=len(holders),
            global_metrics=summary,
        )
        # Rewards accrue without transfers, so "up to date" is judged on the
        # rebuilt table rather than on the absence of events.
        unchanged = (
            previous is not None
            and ownership.events_applied == 0
            and holders == previous.holders
            and summary == previous.summary
        )
        if unchanged:
            return PopulationResult(
                contract_key=key,
                status="up_to_date",
                message=f"No changes since block {previous.last_processed_block}",
            )
        return PopulationResult(
            contract_key=key,
            status="updated",
            message=f"Cached {len(holders)} holders ({ownership.source})",
        )

    async def _resolve_tokens(
        self,
        config: ContractConfig,
        reporter: ProgressReporter,
        ownership: OwnershipResult,
        previous: Optional[HoldersSnapshot],
    ) -> dict[int, TokenRecord]:
        """Current owners joined with attributes.

        Tokens new since the previous snapshot, or whose attribute reads
        failed last time, are read again; the rest reuse cached attributes.
        """
        known = previous.tokens if previous is not None else {}
        to_fetch = [
            token_id
            for token_id in ownership.ledger.token_owners
            if token_id not in known or not known[token_id].resolved
        ]
        attributes = await fetch_token_attributes(self.gateway, config, reporter, to_fetch)

        tokens: dict[int, TokenRecord] = {}
        for token_id, owner in ownership.ledger.token_owners.items():
            if token_id in attributes:
                attrs = attributes[token_id]
                tokens[token_id] = TokenRecord(
                    owner=owner,
                    tier=attrs.tier,
                    rarity=attrs.rarity,
                    shares_raw=attrs.shares_raw,
                    locked_raw=attrs.locked_raw,
                    resolved=attrs.resolved,
                )
            else:
                tokens[token_id] = known[token_id].model_copy(update={"owner": owner})
        return tokens

    async def _save_snapshot(self, snapshot: HoldersSnapshot) -> None:
        await self.store.set(
            HOLDERS_KEY,
            snapshot.to_wire(),
            settings.HOLDERS_CACHE_TTL_SECONDS,
            namespace=snapshot.contract_key,
        )
        self._remember(snapshot)

    def _remember(self, snapshot: HoldersSnapshot) -> None:
        ttl = settings.HOLDERS_CACHE_TTL_SECONDS
        expires_at = time.monotonic() + ttl if ttl and ttl > 0 else None
        self._snapshots[snapshot.contract_key] = (snapshot, expires_at)


population_orchestrator = PopulationOrchestrator(create_cache_store(), RpcGateway())
