import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import ONE_TOKEN, WALLET_A, WALLET_B, FakeChain, make_config
from models.contracts import RewardShape
from models.holders import PopulationStep
from services import rewards as rewards_module
from services.attributes import fetch_token_attributes, parse_tier
from services.rewards import fetch_rewards, fetch_stake_pools


def _reporter(tracker, key="testnft"):
    assert tracker.try_begin(key)
    return tracker.reporter(key)


# ==================== ATTRIBUTES ====================


@pytest.mark.asyncio
async def test_failed_tier_call_defaults_to_unresolved(chain, tracker):
    chain.fail.add(("getNftTier", 2))
    reporter = _reporter(tracker)

    attributes = await fetch_token_attributes(chain, make_config(), reporter, [3, 1, 2])

    assert {t: a.tier for t, a in attributes.items()} == {1: 1, 2: 0, 3: 2}
    state = tracker.get("testnft")
    assert state.progress_state.step == PopulationStep.FETCHING_TIERS
    assert state.progress_state.processed_nfts == 3
    assert state.progress_state.total_nfts == 3
    assert [(e.phase, e.token_id) for e in state.progress_state.error_log] == [("fetch_tier", 2)]


@pytest.mark.asyncio
async def test_out_of_range_tier_is_excluded_and_logged(chain, tracker):
    chain.tiers[1] = 9
    chain.tiers[2] = 0
    reporter = _reporter(tracker)

    attributes = await fetch_token_attributes(chain, make_config(), reporter, [1, 2, 3])

    assert attributes[1].tier == 0
    assert attributes[2].tier == 0
    assert attributes[3].tier == 2
    errors = tracker.get("testnft").progress_state.error_log
    assert [e.token_id for e in errors] == [1, 2]
    assert "Invalid tier 9" in errors[0].error


@pytest.mark.asyncio
async def test_attribute_tuple_and_stake_records(tracker):
    fake = FakeChain({1: WALLET_A, 2: WALLET_B}, {1: (77, 2, 1), 2: (12, 1, 0)})
    fake.records = {1: (5 * ONE_TOKEN, 2 * ONE_TOKEN)}
    fake.fail.add(("userRecords", 2))
    config = make_config(tier_function="getNFTAttribute", records_function="userRecords")
    reporter = _reporter(tracker)

    attributes = await fetch_token_attributes(fake, config, reporter, [1, 2])

    assert (attributes[1].tier, attributes[1].rarity) == (2, 1)
    assert (attributes[1].shares_raw, attributes[1].locked_raw) == (5 * ONE_TOKEN, 2 * ONE_TOKEN)
    assert attributes[2].tier == 1
    assert attributes[2].shares_raw == 0
    progress = tracker.get("testnft").progress_state
    assert progress.total_nfts == 4
    assert progress.processed_nfts == 4
    assert [(e.phase, e.token_id) for e in progress.error_log] == [("fetch_records", 2)]


@pytest.mark.asyncio
async def test_no_tokens_still_enters_tier_phase(chain, tracker):
    reporter = _reporter(tracker)

    attributes = await fetch_token_attributes(chain, make_config(), reporter, [])

    assert attributes == {}
    assert tracker.get("testnft").progress_state.step == PopulationStep.FETCHING_TIERS


def test_parse_tier_shapes():
    config = make_config()
    assert parse_tier(config, 3) == (3, None)
    assert parse_tier(config, (100, 4, 2)) == (4, 2)
    with pytest.raises(ValueError):
        parse_tier(config, (1,))


# ==================== REWARDS ====================


@pytest.mark.asyncio
async def test_reward_failure_yields_zero_and_error_entry(chain, tracker):
    chain.fail.add(("getRewards", WALLET_A))
    reporter = _reporter(tracker)

    rewards = await fetch_rewards(chain, make_config(), reporter, {WALLET_A: [1, 2], WALLET_B: [3]})

    assert rewards[WALLET_A].claimable_raw == 0
    assert rewards[WALLET_B].claimable_raw == 5 * ONE_TOKEN
    errors = tracker.get("testnft").progress_state.error_log
    assert [(e.phase, e.wallet) for e in errors] == [("fetch_rewards", WALLET_A)]


@pytest.mark.asyncio
async def test_rewards_are_chunked_per_wallet_and_summed(chain, tracker, monkeypatch):
    monkeypatch.setattr(rewards_module.settings, "REWARD_TOKENS_PER_CALL", 1)
    reporter = _reporter(tracker)

    rewards = await fetch_rewards(chain, make_config(), reporter, {WALLET_A: [1, 2], WALLET_B: [3]})

    assert chain.calls["getRewards"] == 3
    assert rewards[WALLET_A].claimable_raw == 2 * ONE_TOKEN
    assert tracker.get("testnft").progress_state.total_nfts == 3


@pytest.mark.asyncio
async def test_multi_pool_rewards_keep_pool_breakdown(chain, tracker):
    config = make_config(reward_shape=RewardShape.VAULT_MULTI_POOL)
    reporter = _reporter(tracker)

    rewards = await fetch_rewards(chain, config, reporter, {WALLET_A: [1, 2]})

    assert rewards[WALLET_A].claimable_raw == 2 * ONE_TOKEN
    assert rewards[WALLET_A].pools_raw == {"inferno": 0, "flux": 0, "e280": 2 * ONE_TOKEN}


@pytest.mark.asyncio
async def test_batch_claimable_rewards_and_stake_pools(chain, tracker):
    chain.total_shares = 10 * ONE_TOKEN
    chain.to_distribute = {0: ONE_TOKEN, 2: 3 * ONE_TOKEN}
    config = make_config(reward_shape=RewardShape.NFT_BATCH_CLAIMABLE, records_function="userRecords")
    reporter = _reporter(tracker)

    rewards = await fetch_rewards(chain, config, reporter, {WALLET_B: [3]})
    pools = await fetch_stake_pools(chain, config, reporter)

    assert rewards[WALLET_B].claimable_raw == 5 * ONE_TOKEN
    assert pools.total_shares_raw == 10 * ONE_TOKEN
    assert pools.to_distribute_raw == {"day8": ONE_TOKEN, "day28": 0, "day90": 3 * ONE_TOKEN}


@pytest.mark.asyncio
async def test_collection_without_rewards_makes_no_calls(chain, tracker):
    config = make_config(reward_shape=RewardShape.NONE)
    reporter = _reporter(tracker)

    rewards = await fetch_rewards(chain, config, reporter, {WALLET_A: [1]})

    assert rewards[WALLET_A].claimable_raw == 0
    assert "getRewards" not in chain.calls
