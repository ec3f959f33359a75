import asyncio
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from workers import holders_worker  # noqa: E402


@pytest.mark.asyncio
async def test_refresh_all_populates_then_reports_up_to_date(monkeypatch, contract_config, orchestrator):
    monkeypatch.setattr(holders_worker, "enabled_contracts", lambda: [contract_config])

    assert await holders_worker.refresh_all(orchestrator) == {"testnft": "updated"}
    assert await holders_worker.refresh_all(orchestrator) == {"testnft": "up_to_date"}


@pytest.mark.asyncio
async def test_refresh_loop_survives_a_failed_cycle_and_stops(monkeypatch, orchestrator):
    cycles = []
    stop = asyncio.Event()

    async def fake_refresh_all(_orchestrator):
        cycles.append(1)
        if len(cycles) == 1:
            raise RuntimeError("cache down")
        stop.set()
        return {}

    monkeypatch.setattr(holders_worker, "refresh_all", fake_refresh_all)
    monkeypatch.setattr(holders_worker, "_MIN_INTERVAL_SECONDS", 0)

    await asyncio.wait_for(
        holders_worker.run_refresh_loop(orchestrator, interval_seconds=0.01, stop_event=stop),
        timeout=2,
    )

    assert len(cycles) == 2
