"""Holder list / lookup / progress routes for the configured NFT collections."""

from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from config import settings
from models.contracts import CONTRACTS, ContractConfig, ContractConfigError, get_contract_config
from models.holders import HoldersSnapshot, PopulationResult
from services.cache_state import phase_label, progress_percentage
from services.errors import PopulationError
from services.ownership import audit_burns
from services.population import population_orchestrator
from utils.logger import get_logger
from utils.validation import MAX_PAGE_SIZE, normalize_wallet, validate_page_size

logger = get_logger("api")

router = APIRouter(prefix="/holders", tags=["Holders"])


def _resolve_contract(contract_key: str) -> ContractConfig:
    try:
        return get_contract_config(contract_key)
    except ContractConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _in_progress_response(config: ContractConfig) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "message": f"Cache is populating for {config.name}, retry shortly",
            "status": "in_progress",
        },
    )


def _raise_for_failed_run(config: ContractConfig, result: Optional[PopulationResult]) -> None:
    if result is not None and result.rate_limited:
        raise HTTPException(status_code=429, detail="Upstream RPC rate limit reached, retry later")
    logger.error(
        "Holders unavailable after population",
        contract=config.key,
        error=result.error if result else None,
    )
    raise HTTPException(status_code=500, detail=f"Failed to populate holders for {config.name}")


def _paginate(snapshot: HoldersSnapshot, page: int, page_size: int) -> dict:
    holders = snapshot.holders
    total_pages = math.ceil(len(holders) / page_size) if holders else 0
    start = page * page_size
    return {
        "holders": [h.to_wire() for h in holders[start : start + page_size]],
        "totalPages": total_pages,
        "totalTokens": snapshot.summary.total_live,
        "totalHolders": len(holders),
        "summary": snapshot.summary.to_wire(),
        "page": page,
        "pageSize": page_size,
        "lastProcessedBlock": snapshot.last_processed_block,
        "timestamp": snapshot.timestamp,
    }


@router.get("")
async def list_contracts():
    """Configured collections and whether they can be queried."""
    return {
        "contracts": [
            {
                "key": config.key,
                "name": config.name,
                "symbol": config.symbol,
                "chain": config.chain,
                "enabled": not config.disabled,
                "disabledReason": config.disabled_reason or None,
                "isPopulating": population_orchestrator.is_populating(config.key),
            }
            for config in CONTRACTS.values()
        ]
    }


@router.get("/{contract_key}")
async def get_holders(
    contract_key: str,
    page: int = Query(0, ge=0),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=MAX_PAGE_SIZE),
    wallet: Optional[str] = Query(None),
    refresh: bool = Query(False),
):
    """Paginated holders, or a single holder when ``wallet`` is given.

    Serves the last good snapshot while a background run is in flight. On a
    cache miss (or ``refresh``) it joins/starts a run and waits up to
    READ_WAIT_TIMEOUT_SECONDS before answering 202.
    """
    config = _resolve_contract(contract_key)

    wallet_key = None
    if wallet:
        try:
            wallet_key = normalize_wallet(wallet)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    snapshot = None if refresh else await population_orchestrator.load_snapshot(config.key)
    if snapshot is None:
        population_orchestrator.trigger(config.key, force_update=refresh)
        finished = await population_orchestrator.wait_for_population(
            config.key, settings.READ_WAIT_TIMEOUT_SECONDS
        )
        if not finished:
            return _in_progress_response(config)
        result = population_orchestrator.last_result(config.key)
        if result is None or result.status == "error":
            _raise_for_failed_run(config, result)
        snapshot = await population_orchestrator.load_snapshot(config.key)
        if snapshot is None:
            _raise_for_failed_run(config, result)

    if wallet_key:
        holder = snapshot.find_holder(wallet_key)
        if holder is None:
            raise HTTPException(status_code=404, detail=f"Wallet {wallet_key} holds no {config.name} NFTs")
        return {
            "holder": holder.to_wire(),
            "summary": snapshot.summary.to_wire(),
            "timestamp": snapshot.timestamp,
        }

    size = validate_page_size(page_size, config.page_size)
    return _paginate(snapshot, page, size)


@router.get("/{contract_key}/progress")
async def get_progress(contract_key: str):
    config = _resolve_contract(contract_key)
    state = await population_orchestrator.tracker.load(config.key)
    progress = state.progress_state
    return {
        "isPopulating": state.is_populating,
        "totalOwners": state.total_owners,
        "phase": phase_label(progress.step),
        "progressPercentage": progress_percentage(progress),
        "lastProcessedBlock": state.last_processed_block,
        "lastUpdated": state.last_updated,
        "globalMetrics": state.global_metrics.to_wire() if state.global_metrics else None,
        **progress.to_wire(),
        "errorCount": len(progress.error_log) + progress.dropped_errors,
        "errorsTruncated": progress.dropped_errors > 0,
    }


@router.get("/{contract_key}/burned")
async def audit_burned(contract_key: str):
    """Cross-check burns in Transfer logs against the burn counters."""
    config = _resolve_contract(contract_key)
    try:
        audit = await audit_burns(population_orchestrator.gateway, config)
    except PopulationError as e:
        if e.rate_limited:
            raise HTTPException(status_code=429, detail="Upstream RPC rate limit reached, retry later")
        logger.error("Burn audit failed", contract=config.key, phase=e.phase, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to audit burns for {config.name}")

    snapshot = await population_orchestrator.load_snapshot(config.key)
    cached_burned = snapshot.total_burned if snapshot else None
    burned = len(audit.burned_token_ids)
    discrepancies = list(audit.discrepancies)
    if cached_burned is not None and cached_burned != burned:
        discrepancies.append(f"Cached snapshot has {cached_burned} burns but logs show {burned}")
    return {
        "fromBlock": audit.from_block,
        "toBlock": audit.to_block,
        "burnEvents": audit.burn_events,
        "burnedTokens": burned,
        "burnedTokenIds": audit.burned_token_ids,
        "repeatedBurns": audit.repeated_burns,
        "onChainBurned": audit.on_chain_burned,
        "expectedBurned": audit.expected_burned,
        "cachedBurned": cached_burned,
        "matches": not discrepancies,
        "discrepancies": discrepancies,
    }


@router.post("/{contract_key}", status_code=202)
async def trigger_population(
    contract_key: str,
    force_update: bool = Query(False, alias="forceUpdate"),
):
    """Start a background population; never waits for the result."""
    config = _resolve_contract(contract_key)
    status = population_orchestrator.trigger(config.key, force_update=force_update)
    message = (
        f"Population started for {config.name}"
        if status == "started"
        else f"Population already in progress for {config.name}"
    )
    return {"message": message, "status": status}
