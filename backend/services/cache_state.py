"""
Per-contract population state machine.

    idle -> fetching_supply -> fetching_ownership -> initializing_holders
         -> fetching_tiers -> fetching_rewards -> calculating_metrics -> completed

``error`` is reachable from any step. Steps only move forward (skipping is
allowed); ``completed`` and ``error`` end a run, and ``try_begin`` claims the
next one with fresh progress. The in-memory state is authoritative inside
this process and is persisted to the cache store at every phase boundary so
pollers (and a restarted process) can read it.
"""

from typing import Optional

from models.holders import CacheState, ErrorEntry, HoldersSummary, PopulationStep, ProgressState
from services.cache_store import STATE_KEY, CacheStore
from utils.logger import get_logger
from utils.utcnow import utcnow_iso

logger = get_logger("population")

STEP_ORDER: tuple[PopulationStep, ...] = (
    PopulationStep.IDLE,
    PopulationStep.FETCHING_SUPPLY,
    PopulationStep.FETCHING_OWNERSHIP,
    PopulationStep.INITIALIZING_HOLDERS,
    PopulationStep.FETCHING_TIERS,
    PopulationStep.FETCHING_REWARDS,
    PopulationStep.CALCULATING_METRICS,
    PopulationStep.COMPLETED,
)
TERMINAL_STEPS = frozenset({PopulationStep.COMPLETED, PopulationStep.ERROR})
INACTIVE_STEPS = frozenset({PopulationStep.IDLE, PopulationStep.COMPLETED, PopulationStep.ERROR})

PHASE_LABELS: dict[PopulationStep, str] = {
    PopulationStep.IDLE: "Idle",
    PopulationStep.FETCHING_SUPPLY: "Fetching Supply",
    PopulationStep.FETCHING_OWNERSHIP: "Fetching Ownership",
    PopulationStep.INITIALIZING_HOLDERS: "Initializing Holders",
    PopulationStep.FETCHING_TIERS: "Fetching Tiers",
    PopulationStep.FETCHING_REWARDS: "Fetching Rewards",
    PopulationStep.CALCULATING_METRICS: "Calculating Metrics",
    PopulationStep.COMPLETED: "Completed",
    PopulationStep.ERROR: "Error",
}

MAX_ERROR_LOG = 500


class InvalidTransitionError(RuntimeError):
    pass


def is_active_step(step: PopulationStep) -> bool:
    return step not in INACTIVE_STEPS


def check_transition(current: PopulationStep, target: PopulationStep) -> None:
    """Raise unless ``current -> target`` is a legal move within one run."""
    if target == PopulationStep.ERROR:
        if current == PopulationStep.ERROR:
            raise InvalidTransitionError("run already failed")
        return
    if current in TERMINAL_STEPS:
        raise InvalidTransitionError(f"cannot move from terminal step {current.value} to {target.value}")
    if STEP_ORDER.index(target) <= STEP_ORDER.index(current):
        raise InvalidTransitionError(f"cannot move backwards from {current.value} to {target.value}")


def progress_percentage(progress: ProgressState) -> str:
    """processed/total as a one-decimal string; may briefly exceed 100."""
    if progress.step == PopulationStep.COMPLETED:
        return "100.0"
    if progress.total_nfts <= 0:
        return "0.0"
    return f"{progress.processed_nfts / progress.total_nfts * 100:.1f}"


def phase_label(step: PopulationStep) -> str:
    return PHASE_LABELS.get(step, step.value)


class CacheStateTracker:
    """Holds one CacheState per contract and persists it on every change."""

    def __init__(self, store: CacheStore):
        self._store = store
        self._states: dict[str, CacheState] = {}

    # ==================== READ ====================

    def get(self, contract_key: str) -> Optional[CacheState]:
        return self._states.get(contract_key)

    def is_populating(self, contract_key: str) -> bool:
        state = self._states.get(contract_key)
        return bool(state and state.is_populating)

    async def load(self, contract_key: str) -> CacheState:
        """In-process state, else the persisted one, else a fresh idle state.

        A persisted state still flagged as populating belongs to a run that
        died with its process; it is closed out as an error.
        """
        state = self._states.get(contract_key)
        if state is not None:
            return state

        state = CacheState(contract_key=contract_key)
        raw = await self._store.get(STATE_KEY, namespace=contract_key)
        if raw:
            try:
                state = CacheState.model_validate(raw)
            except ValueError as e:
                logger.warning("Discarding unreadable cache state", contract=contract_key, error=str(e))

        # try_begin may have claimed the slot while the store read was pending.
        if contract_key in self._states:
            return self._states[contract_key]

        if state.is_populating:
            state.is_populating = False
            state.progress_state.step = PopulationStep.ERROR
            state.progress_state.error = "Population interrupted before completion"
            logger.warning("Recovered interrupted population state", contract=contract_key)
            self._states[contract_key] = state
            await self._persist(contract_key)
        else:
            self._states[contract_key] = state
        return state

    # ==================== RUN LIFECYCLE ====================

    def try_begin(self, contract_key: str) -> bool:
        """Claim the contract for a new run, entering ``fetching_supply``.

        Synchronous: there is no await between the check and the claim, so
        concurrent callers cannot both win.
        """
        state = self._states.get(contract_key)
        if state is not None and state.is_populating:
            return False

        previous = state or CacheState(contract_key=contract_key)
        self._states[contract_key] = CacheState(
            contract_key=contract_key,
            is_populating=True,
            last_processed_block=previous.last_processed_block,
            total_owners=previous.total_owners,
            global_metrics=previous.global_metrics,
            last_updated=previous.last_updated,
            progress_state=ProgressState(step=PopulationStep.FETCHING_SUPPLY),
        )
        return True

    async def advance(
        self,
        contract_key: str,
        step: PopulationStep,
        *,
        total_nfts: Optional[int] = None,
    ) -> None:
        state = self._require(contract_key)
        progress = state.progress_state
        check_transition(progress.step, step)
        progress.step = step
        if total_nfts is not None:
            progress.total_nfts = max(0, int(total_nfts))
            progress.processed_nfts = 0
        state.last_updated = utcnow_iso()
        logger.info("Population phase", contract=contract_key, step=step.value, total=progress.total_nfts)
        await self._persist(contract_key)

    async def add_progress(self, contract_key: str, count: int) -> None:
        state = self._require(contract_key)
        state.progress_state.processed_nfts += int(count)
        state.last_updated = utcnow_iso()
        await self._persist(contract_key)

    def record_error(
        self,
        contract_key: str,
        phase: str,
        error: str,
        *,
        token_id: Optional[int] = None,
        wallet: Optional[str] = None,
    ) -> ErrorEntry:
        state = self._require(contract_key)
        entry = ErrorEntry(timestamp=utcnow_iso(), phase=phase, token_id=token_id, wallet=wallet, error=error)
        log = state.progress_state.error_log
        log.append(entry)
        if len(log) > MAX_ERROR_LOG:
            overflow = len(log) - MAX_ERROR_LOG
            del log[:overflow]
            if state.progress_state.dropped_errors == 0:
                logger.warning(
                    "Error log truncated, oldest entries are being dropped",
                    contract=contract_key,
                    limit=MAX_ERROR_LOG,
                )
            state.progress_state.dropped_errors += overflow
        logger.warning(
            "Population item error",
            contract=contract_key,
            phase=phase,
            token_id=token_id,
            wallet=wallet,
            error=error,
        )
        return entry

    async def complete(
        self,
        contract_key: str,
        *,
        last_processed_block: Optional[int],
        total_owners: int,
        global_metrics: Optional[HoldersSummary],
    ) -> None:
        state = self._require(contract_key)
        check_transition(state.progress_state.step, PopulationStep.COMPLETED)
        state.progress_state.step = PopulationStep.COMPLETED
        state.is_populating = False
        state.last_processed_block = last_processed_block
        state.total_owners = total_owners
        state.global_metrics = global_metrics
        state.last_updated = utcnow_iso()
        await self._persist(contract_key)

    async def fail(self, contract_key: str, message: str) -> None:
        state = self._require(contract_key)
        if state.progress_state.step != PopulationStep.ERROR:
            state.progress_state.step = PopulationStep.ERROR
        state.progress_state.error = message
        state.is_populating = False
        state.last_updated = utcnow_iso()
        await self._persist(contract_key)

    async def finish(self, contract_key: str) -> None:
        """Exit guard for every run: never leave ``is_populating`` set."""
        state = self._states.get(contract_key)
        if state is None or not state.is_populating:
            return
        logger.error("Population ended without a terminal state", contract=contract_key)
        await self.fail(contract_key, "Population ended unexpectedly")

    # ==================== INTERNALS ====================

    def _require(self, contract_key: str) -> CacheState:
        state = self._states.get(contract_key)
        if state is None:
            raise InvalidTransitionError(f"no population state for {contract_key}")
        return state

    async def _persist(self, contract_key: str) -> None:
        state = self._states[contract_key]
        try:
            await self._store.set(STATE_KEY, state.to_wire(), None, namespace=contract_key)
        except Exception as e:
            # In-memory state stays authoritative.
            logger.error("Failed to persist cache state", contract=contract_key, error=str(e))

    def reporter(self, contract_key: str) -> "ProgressReporter":
        return ProgressReporter(self, contract_key)


class ProgressReporter:
    """Handle the pipeline phases use to report progress for one contract."""

    def __init__(self, tracker: CacheStateTracker, contract_key: str):
        self.tracker = tracker
        self.contract_key = contract_key

    async def advance(self, step: PopulationStep, total: Optional[int] = None) -> None:
        await self.tracker.advance(self.contract_key, step, total_nfts=total)

    async def chunk_done(self, count: int) -> None:
        await self.tracker.add_progress(self.contract_key, count)

    def record_error(
        self,
        phase: str,
        error: str,
        *,
        token_id: Optional[int] = None,
        wallet: Optional[str] = None,
    ) -> ErrorEntry:
        return self.tracker.record_error(self.contract_key, phase, error, token_id=token_id, wallet=wallet)

    @property
    def error_count(self) -> int:
        state = self.tracker.get(self.contract_key)
        if state is None:
            return 0
        return len(state.progress_state.error_log) + state.progress_state.dropped_errors
