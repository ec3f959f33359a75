import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.holders import CacheState, PopulationStep, ProgressState
from services import cache_state
from services.cache_state import (
    CacheStateTracker,
    InvalidTransitionError,
    check_transition,
    is_active_step,
    phase_label,
    progress_percentage,
)
from services.cache_store import STATE_KEY, MemoryCacheStore


def test_transitions_move_forward_only():
    check_transition(PopulationStep.FETCHING_SUPPLY, PopulationStep.FETCHING_OWNERSHIP)
    check_transition(PopulationStep.INITIALIZING_HOLDERS, PopulationStep.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        check_transition(PopulationStep.FETCHING_TIERS, PopulationStep.FETCHING_OWNERSHIP)
    with pytest.raises(InvalidTransitionError):
        check_transition(PopulationStep.FETCHING_TIERS, PopulationStep.FETCHING_TIERS)


def test_error_is_reachable_from_any_running_step_and_terminal():
    for step in (PopulationStep.IDLE, PopulationStep.FETCHING_REWARDS, PopulationStep.COMPLETED):
        check_transition(step, PopulationStep.ERROR)

    with pytest.raises(InvalidTransitionError):
        check_transition(PopulationStep.ERROR, PopulationStep.ERROR)
    with pytest.raises(InvalidTransitionError):
        check_transition(PopulationStep.ERROR, PopulationStep.FETCHING_SUPPLY)
    with pytest.raises(InvalidTransitionError):
        check_transition(PopulationStep.COMPLETED, PopulationStep.CALCULATING_METRICS)


def test_active_steps():
    assert not is_active_step(PopulationStep.IDLE)
    assert not is_active_step(PopulationStep.COMPLETED)
    assert not is_active_step(PopulationStep.ERROR)
    assert is_active_step(PopulationStep.FETCHING_TIERS)


def test_progress_percentage_formatting():
    assert progress_percentage(ProgressState()) == "0.0"
    assert progress_percentage(ProgressState(step=PopulationStep.FETCHING_TIERS, processed_nfts=1, total_nfts=3)) == "33.3"
    assert progress_percentage(ProgressState(step=PopulationStep.FETCHING_TIERS, processed_nfts=5, total_nfts=4)) == "125.0"
    assert progress_percentage(ProgressState(step=PopulationStep.COMPLETED, total_nfts=0)) == "100.0"
    assert phase_label(PopulationStep.FETCHING_OWNERSHIP) == "Fetching Ownership"


@pytest.mark.asyncio
async def test_try_begin_claims_once_and_keeps_previous_metrics(tracker):
    assert tracker.try_begin("testnft")
    assert not tracker.try_begin("testnft")

    await tracker.advance("testnft", PopulationStep.FETCHING_OWNERSHIP, total_nfts=3)
    await tracker.complete("testnft", last_processed_block=55, total_owners=2, global_metrics=None)
    assert not tracker.is_populating("testnft")

    assert tracker.try_begin("testnft")
    state = tracker.get("testnft")
    assert state.is_populating
    assert state.progress_state.step == PopulationStep.FETCHING_SUPPLY
    assert state.last_processed_block == 55
    assert state.total_owners == 2
    assert state.progress_state.error_log == []


@pytest.mark.asyncio
async def test_state_is_persisted_at_phase_boundaries(store, tracker):
    tracker.try_begin("testnft")
    await tracker.advance("testnft", PopulationStep.FETCHING_OWNERSHIP, total_nfts=10)
    await tracker.add_progress("testnft", 4)

    raw = await store.get(STATE_KEY, namespace="testnft")
    persisted = CacheState.model_validate(raw)
    assert raw["isPopulating"] is True
    assert persisted.progress_state.step == PopulationStep.FETCHING_OWNERSHIP
    assert persisted.progress_state.processed_nfts == 4


@pytest.mark.asyncio
async def test_advance_rejects_backwards_move(tracker):
    tracker.try_begin("testnft")
    await tracker.advance("testnft", PopulationStep.FETCHING_TIERS)

    with pytest.raises(InvalidTransitionError):
        await tracker.advance("testnft", PopulationStep.FETCHING_OWNERSHIP)


@pytest.mark.asyncio
async def test_error_log_is_capped_with_drop_counter(tracker, monkeypatch):
    monkeypatch.setattr(cache_state, "MAX_ERROR_LOG", 3)
    tracker.try_begin("testnft")

    for token_id in range(5):
        tracker.record_error("testnft", "fetch_tier", "boom", token_id=token_id)

    progress = tracker.get("testnft").progress_state
    assert [e.token_id for e in progress.error_log] == [2, 3, 4]
    assert progress.dropped_errors == 2
    assert tracker.reporter("testnft").error_count == 5


@pytest.mark.asyncio
async def test_finish_clears_a_stuck_flag(tracker):
    tracker.try_begin("testnft")

    await tracker.finish("testnft")

    state = tracker.get("testnft")
    assert not state.is_populating
    assert state.progress_state.step == PopulationStep.ERROR


@pytest.mark.asyncio
async def test_load_recovers_interrupted_run():
    store = MemoryCacheStore()
    crashed = CacheState(
        contract_key="testnft",
        is_populating=True,
        progress_state=ProgressState(step=PopulationStep.FETCHING_TIERS),
    )
    await store.set(STATE_KEY, crashed.to_wire(), namespace="testnft")

    state = await CacheStateTracker(store).load("testnft")

    assert not state.is_populating
    assert state.progress_state.step == PopulationStep.ERROR
    assert "interrupted" in state.progress_state.error
    persisted = await store.get(STATE_KEY, namespace="testnft")
    assert persisted["isPopulating"] is False


@pytest.mark.asyncio
async def test_persist_failure_keeps_memory_state():
    class BrokenStore(MemoryCacheStore):
        async def set(self, key, value, ttl_seconds=None, namespace="default"):
            raise ConnectionError("cache down")

    tracker = CacheStateTracker(BrokenStore())
    tracker.try_begin("testnft")

    await tracker.advance("testnft", PopulationStep.FETCHING_OWNERSHIP)

    assert tracker.get("testnft").progress_state.step == PopulationStep.FETCHING_OWNERSHIP


@pytest.mark.asyncio
async def test_error_log_truncation_is_announced_once(tracker, monkeypatch):
    monkeypatch.setattr(cache_state, "MAX_ERROR_LOG", 2)
    warnings = []
    monkeypatch.setattr(cache_state.logger, "warning", lambda msg, **kwargs: warnings.append(msg))
    tracker.try_begin("testnft")

    for token_id in range(5):
        tracker.record_error("testnft", "fetch_tier", "boom", token_id=token_id)

    assert warnings.count("Error log truncated, oldest entries are being dropped") == 1
    assert warnings.count("Population item error") == 5
