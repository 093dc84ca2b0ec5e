"""
AutomationLoop Unit Tests
=========================
Round gating, one-deploy-per-round, top-up and reward cycles.

Reader and submitter are mocks; instructions come from the real factory.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.pubkey import Pubkey


def _pool(motherlode_orb=1200.0, miner_factor=0, stake_factor=0):
    from orbminer.shared.models.accounts import PoolState

    return PoolState(
        balance=0, motherlode=int(motherlode_orb * 1e9),
        miner_rewards_factor=miner_factor, stake_rewards_factor=stake_factor,
        total_staked=0, total_unclaimed=0, total_refined=0,
    )


def _participant(round_id=500, checkpoint_id=500, deployed_total=0, rewards_sol=0, rewards_orb=0):
    from orbminer.shared.models.accounts import ParticipantState

    deployed = (deployed_total,) + (0,) * 24
    return ParticipantState(
        authority=Pubkey.default(), deployed=deployed, cumulative=(0,) * 25,
        checkpoint_fee=0, checkpoint_id=checkpoint_id, last_claim_orb_at=0, last_claim_sol_at=0,
        rewards_factor=0, rewards_sol=rewards_sol, rewards_orb=rewards_orb, refined_orb=0,
        round_id=round_id, lifetime_rewards_sol=0, lifetime_rewards_orb=0,
    )


def _cursor(round_id=501, end_slot=2000):
    from orbminer.shared.models.accounts import RoundCursor

    return RoundCursor(round_id=round_id, start_slot=1000, end_slot=end_slot)


def _reader(participant=None, pool=None, slot=1500, sol=1.3, orb=0.0, stake=None, automation=None, cursor=None):
    reader = AsyncMock()
    reader.fetch_round_cursor.return_value = cursor or _cursor()
    reader.fetch_pool.return_value = pool or _pool()
    reader.fetch_participant.return_value = participant
    reader.fetch_slot.return_value = slot
    reader.fetch_sol_balance.return_value = sol
    reader.fetch_orb_balance.return_value = orb
    reader.fetch_stake.return_value = stake
    reader.fetch_automation.return_value = automation
    reader.fetch_round.return_value = None
    return reader


def _automation(balance=1_000_000_000, amount_per_slot=1_000_000, mask=25):
    from orbminer.shared.models.accounts import AutomationState

    return AutomationState(
        amount_per_slot=amount_per_slot, authority=Pubkey.default(), balance=balance,
        executor=Pubkey.default(), fee=0, strategy=0, mask=mask,
    )


def _submitter():
    submitter = AsyncMock()
    submitter.execute.return_value = MagicMock(dry_run=False, signature="sig", actual_fee=0.000005, attempts=1)
    return submitter


def _loop(reader, factory, submitter, settings, swapper=None, sink=None, oracle=None):
    from orbminer.engine.automation_loop import AutomationLoop

    provider = MagicMock()
    provider.snapshot.return_value = settings
    return AutomationLoop(provider, reader, factory, submitter, swapper=swapper, oracle=oracle, sink=sink)


def _contexts(submitter):
    return [c.args[1] for c in submitter.execute.await_args_list]


class TestDeployGates:
    """Conditions that skip a round without sending anything."""

    @pytest.mark.asyncio
    async def test_already_deployed(self, factory, settings):
        reader = _reader(participant=_participant(round_id=501, checkpoint_id=500, deployed_total=1_000))
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.tick(settings)

        submitter.execute.assert_not_awaited()
        assert loop._round.done

    @pytest.mark.asyncio
    async def test_round_ended(self, factory, settings):
        reader = _reader(slot=2000)
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.deploy_for_round(_cursor(end_slot=2000), settings)

        submitter.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pool_below_floor(self, factory, settings):
        reader = _reader(pool=_pool(motherlode_orb=99.9))
        submitter = _submitter()
        sink = MagicMock()
        loop = _loop(reader, factory, submitter, settings, sink=sink)

        await loop.deploy_for_round(_cursor(), settings)

        submitter.execute.assert_not_awaited()
        event = sink.emit.call_args.args[0]
        assert event.kind.value == "skipped"
        assert event.error == "pool below floor"

    @pytest.mark.asyncio
    async def test_low_balance_without_swap_skips_quietly(self, factory, settings):
        """Below the SOL floor and nothing to sell: skip, no error, no attempt counted."""
        reader = _reader(sol=0.2, orb=0.0)
        submitter = _submitter()
        swapper = AsyncMock()
        loop = _loop(reader, factory, submitter, settings, swapper=swapper)

        result = await loop.deploy_for_round(_cursor(), settings)

        assert result is None
        submitter.execute.assert_not_awaited()
        swapper.swap_orb_for_sol.assert_not_awaited()
        assert loop._round.attempts == 0
        assert not loop._round.done

    @pytest.mark.asyncio
    async def test_low_balance_tops_up_then_deploys(self, factory, settings):
        from orbminer.execution.submitter import TxContext
        from orbminer.execution.swapper import SwapResult

        reader = _reader(orb=20.0)
        reader.fetch_sol_balance.side_effect = [0.2, 1.3]
        swapper = AsyncMock()
        swapper.swap_orb_for_sol.return_value = SwapResult(True, 10.0, 1.1, signature="swap")
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings, swapper=swapper)

        await loop.deploy_for_round(_cursor(), settings)

        swapper.swap_orb_for_sol.assert_awaited_once_with(10.0, dry_run=False)
        assert _contexts(submitter) == [TxContext.DEPLOY]


class TestDeploy:

    @pytest.mark.asyncio
    async def test_deploys_once_per_round(self, factory, settings):
        """Repeated ticks in the same round deploy exactly once."""
        from orbminer.execution.submitter import TxContext

        reader = _reader(participant=_participant(round_id=500, checkpoint_id=500))
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        for _ in range(3):
            await loop.tick(settings)

        assert _contexts(submitter) == [TxContext.DEPLOY]
        assert loop.deployments == 1

    @pytest.mark.asyncio
    async def test_deploy_amount_from_plan(self, factory, settings):
        """Budget (1.3 - 0.3) × 90% over 60 rounds, split across 25 slots."""
        import struct

        from orbminer.strategy.deployment import usable_budget

        reader = _reader()
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.deploy_for_round(_cursor(), settings)

        instructions = submitter.execute.await_args.args[0]
        amount = struct.unpack_from("<Q", instructions[-1].data, 8)[0]
        assert amount == int(usable_budget(1.3, 0.3, 90) / 60 / 25 * 1e9)

    @pytest.mark.asyncio
    async def test_checkpoint_before_deploy(self, factory, deriver, settings):
        from orbminer.execution.submitter import TxContext

        reader = _reader(participant=_participant(round_id=500, checkpoint_id=499))
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.deploy_for_round(_cursor(501), settings)

        assert _contexts(submitter) == [TxContext.CHECKPOINT, TxContext.DEPLOY]
        checkpoint_ix = submitter.execute.await_args_list[0].args[0][0]
        assert checkpoint_ix.accounts[3].pubkey == deriver.round(500)[0]

    @pytest.mark.asyncio
    async def test_failed_deploy_retried_up_to_cap(self, factory, settings):
        from orbminer.shared.system.errors import SimulationError

        reader = _reader()
        submitter = _submitter()
        submitter.execute.side_effect = SimulationError("Deploy", "Custom(6)")
        loop = _loop(reader, factory, submitter, settings.with_overrides(MAX_ATTEMPTS_PER_ROUND=2))

        for _ in range(4):
            await loop.tick(settings.with_overrides(MAX_ATTEMPTS_PER_ROUND=2))

        assert submitter.execute.await_count == 2
        assert loop.deployments == 0

    @pytest.mark.asyncio
    async def test_new_round_resets_progress(self, factory, settings):
        reader = _reader()
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.tick(settings)
        reader.fetch_round_cursor.return_value = _cursor(502)
        await loop.tick(settings)

        assert loop.deployments == 2

    @pytest.mark.asyncio
    async def test_read_errors_do_not_escape_tick(self, factory, settings):
        from orbminer.shared.system.errors import AccountNotFound

        reader = _reader()
        reader.fetch_round_cursor.side_effect = AccountNotFound("board", "x")
        loop = _loop(reader, factory, _submitter(), settings)

        await loop.tick(settings)
        assert loop.ticks == 1


class TestRewardsAndBalance:

    @pytest.mark.asyncio
    async def test_auto_claim_past_thresholds(self, factory, settings):
        from orbminer.execution.submitter import TxContext

        participant = _participant(rewards_sol=150_000_000, rewards_orb=500_000_000)
        loop = _loop(_reader(participant=participant), factory, _submitter(), settings)

        await loop.reward_check(settings)

        assert _contexts(loop.submitter) == [TxContext.CLAIM_SOL]

    @pytest.mark.asyncio
    async def test_manual_claim_does_nothing(self, factory, settings):
        participant = _participant(rewards_sol=10_000_000_000)
        reader = _reader(participant=participant)
        loop = _loop(reader, factory, _submitter(), settings)

        await loop.reward_check(settings.with_overrides(CLAIM_STRATEGY="manual"))

        loop.submitter.execute.assert_not_awaited()
        reader.fetch_participant.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_staking_yield_claim(self, factory, settings):
        import struct

        from orbminer.execution.submitter import TxContext
        from orbminer.shared.models.accounts import StakeState

        stake = StakeState(
            authority=Pubkey.default(), balance=1_000_000_000, last_claim_at=0, last_deposit_at=0,
            last_withdraw_at=0, rewards_factor=0, rewards=0, lifetime_rewards=0,
        )
        reader = _reader(stake=stake, pool=_pool(stake_factor=1 << 48))
        loop = _loop(reader, factory, _submitter(), settings)

        await loop.reward_check(settings)

        assert _contexts(loop.submitter) == [TxContext.CLAIM_YIELD]
        ix = loop.submitter.execute.await_args.args[0][0]
        assert struct.unpack_from("<Q", ix.data, 1)[0] == 1_000_000_000

    @pytest.mark.asyncio
    async def test_balance_check_stakes_spare_orb(self, factory, settings):
        from orbminer.execution.submitter import TxContext

        sink = MagicMock()
        loop = _loop(_reader(orb=60.0), factory, _submitter(), settings, sink=sink)

        await loop.balance_check(settings.with_overrides(AUTO_STAKE_ENABLED=True))

        assert _contexts(loop.submitter) == [TxContext.STAKE]
        assert sink.emit.call_args_list[0].args[0].kind.value == "snapshot"

    @pytest.mark.asyncio
    async def test_side_cycles_run_on_their_intervals(self, factory, settings):
        now = [0.0]
        reader = _reader(participant=_participant(round_id=501, deployed_total=1))
        loop = _loop(reader, factory, _submitter(), settings)
        loop._clock = lambda: now[0]

        await loop.tick(settings)
        now[0] = 100.0
        await loop.tick(settings)
        now[0] = 300.0
        await loop.tick(settings)

        assert reader.fetch_stake.await_count == 2
        assert reader.fetch_orb_balance.await_count == 1


class TestAutomationMode:
    """DEPLOY_MODE=automation: setup, execute, close and rescale."""

    @pytest.mark.asyncio
    async def test_creates_automation_then_executes(self, factory, settings):
        import struct

        from orbminer.execution.submitter import TxContext
        from orbminer.protocol.constants import SLOT_COUNT
        from orbminer.strategy.deployment import usable_budget

        reader = _reader()
        reader.fetch_automation.side_effect = [None, _automation()]
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.deploy_for_round(_cursor(), settings.with_overrides(DEPLOY_MODE="automation"))

        assert _contexts(submitter) == [TxContext.AUTOMATION_SETUP, TxContext.DEPLOY]
        setup_ix = submitter.execute.await_args_list[0].args[0][0]
        _, amount, deposit, fee, selector, _ = struct.unpack("<BQQQQB", setup_ix.data)
        budget = usable_budget(1.3, 0.3, 90)
        assert deposit == int(budget * 1e9)
        assert amount == int(budget / 60 / SLOT_COUNT * 1e9)
        assert (fee, selector) == (0, SLOT_COUNT)
        assert loop._automation_pool == 1200.0
        assert loop.deployments == 1

    @pytest.mark.asyncio
    async def test_execute_carries_fee_transfer(self, factory, settings):
        import struct

        from solders.system_program import ID as SYSTEM_PROGRAM_ID

        from orbminer.execution.submitter import TxContext

        reader = _reader(automation=_automation(amount_per_slot=1_000_000, mask=25))
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.deploy_for_round(_cursor(), settings.with_overrides(DEPLOY_MODE="automation"))

        assert _contexts(submitter) == [TxContext.DEPLOY]
        fee_ix, execute_ix = submitter.execute.await_args.args[0]
        assert fee_ix.program_id == SYSTEM_PROGRAM_ID
        assert struct.unpack_from("<Q", fee_ix.data, 4)[0] == 25_000_000 * 50 // 10_000
        assert struct.unpack("<BIII", execute_ix.data)[1:] == (1_000_000, 0, 25)

    @pytest.mark.asyncio
    async def test_depleted_automation_is_closed(self, factory, settings):
        import struct

        from orbminer.execution.submitter import TxContext

        reader = _reader(automation=_automation(balance=10_000_000, amount_per_slot=1_000_000, mask=25))
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        result = await loop.deploy_for_round(_cursor(), settings.with_overrides(DEPLOY_MODE="automation"))

        assert result is None
        assert _contexts(submitter) == [TxContext.AUTOMATION_SETUP]
        close_ix = submitter.execute.await_args.args[0][0]
        assert struct.unpack("<BQQQQB", close_ix.data)[1:] == (0, 0, 0, 0, 0)
        assert close_ix.accounts[2].pubkey == Pubkey.default()
        assert loop.deployments == 0
        assert loop._round.done

    @pytest.mark.asyncio
    async def test_pool_swing_recreates_automation(self, factory, settings):
        """Funded at 500 ORB, motherlode now 1200: close, re-fund from the new balance, execute."""
        import struct

        from orbminer.execution.submitter import TxContext
        from orbminer.strategy.deployment import usable_budget

        reader = _reader(pool=_pool(1200.0))
        reader.fetch_automation.side_effect = [_automation(), _automation(amount_per_slot=2_000_000)]
        reader.fetch_sol_balance.side_effect = [1.3, 2.3]
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)
        loop._automation_pool = 500.0

        await loop.deploy_for_round(_cursor(), settings.with_overrides(DEPLOY_MODE="automation"))

        assert _contexts(submitter) == [TxContext.AUTOMATION_SETUP, TxContext.AUTOMATION_SETUP, TxContext.DEPLOY]
        calls = submitter.execute.await_args_list
        assert calls[0].args[0][0].accounts[2].pubkey == Pubkey.default()
        deposit = struct.unpack("<BQQQQB", calls[1].args[0][0].data)[2]
        assert deposit == int(usable_budget(2.3, 0.3, 90) * 1e9)
        assert struct.unpack("<BIII", calls[2].args[0][-1].data)[1] == 2_000_000
        assert loop._automation_pool == 1200.0

    @pytest.mark.asyncio
    async def test_unknown_setup_pool_never_rescales(self, factory, settings):
        from orbminer.execution.submitter import TxContext

        reader = _reader(pool=_pool(5000.0), automation=_automation())
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)

        await loop.deploy_for_round(_cursor(), settings.with_overrides(DEPLOY_MODE="automation"))

        assert _contexts(submitter) == [TxContext.DEPLOY]

    @pytest.mark.asyncio
    async def test_rescale_can_be_disabled(self, factory, settings):
        from orbminer.execution.submitter import TxContext

        reader = _reader(pool=_pool(1200.0), automation=_automation())
        submitter = _submitter()
        loop = _loop(reader, factory, submitter, settings)
        loop._automation_pool = 500.0

        await loop.deploy_for_round(
            _cursor(), settings.with_overrides(DEPLOY_MODE="automation", AUTO_RESCALE_AUTOMATION=False),
        )

        assert _contexts(submitter) == [TxContext.DEPLOY]


class TestAutoSell:
    """Proactive ORB sales from the wallet."""

    @staticmethod
    def _swapper():
        from orbminer.execution.swapper import SwapResult

        swapper = AsyncMock()
        swapper.swap_orb_for_sol.return_value = SwapResult(True, 15.0, 0.4, signature="swap")
        return swapper

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, factory, settings):
        reader = _reader(orb=100.0)
        swapper = self._swapper()
        loop = _loop(reader, factory, _submitter(), settings, swapper=swapper)

        await loop.sell_check(settings)

        swapper.swap_orb_for_sol.assert_not_awaited()
        reader.fetch_orb_balance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sells_everything_above_floor(self, factory, settings):
        swapper = self._swapper()
        loop = _loop(_reader(orb=20.0), factory, _submitter(), settings, swapper=swapper)

        await loop.sell_check(settings.with_overrides(AUTO_SELL_ENABLED=True))

        swapper.swap_orb_for_sol.assert_awaited_once_with(15.0, dry_run=False)

    @pytest.mark.asyncio
    async def test_below_wallet_threshold_keeps_orb(self, factory, settings):
        swapper = self._swapper()
        loop = _loop(_reader(orb=20.0), factory, _submitter(), settings, swapper=swapper)

        await loop.sell_check(settings.with_overrides(AUTO_SELL_ENABLED=True, WALLET_ORB_SWAP_THRESHOLD=25.0))

        swapper.swap_orb_for_sol.assert_not_awaited()

    @pytest.mark.parametrize("price,stale,sells", [
        (0.002, False, True),
        (0.0005, False, False),
        (0.002, True, False),
        (0.0, True, False),
    ])
    @pytest.mark.asyncio
    async def test_price_floor(self, factory, settings, price, stale, sells):
        from orbminer.feeds.price_oracle import PriceQuote

        oracle = AsyncMock()
        oracle.get_price.return_value = PriceQuote(price_in_sol=price, fetched_at=0.0, stale=stale)
        swapper = self._swapper()
        loop = _loop(_reader(orb=20.0), factory, _submitter(), settings, swapper=swapper, oracle=oracle)

        await loop.sell_check(settings.with_overrides(AUTO_SELL_ENABLED=True, MIN_ORB_PRICE_SOL=0.001))

        assert swapper.swap_orb_for_sol.await_count == (1 if sells else 0)

    @pytest.mark.asyncio
    async def test_runs_on_reward_interval(self, factory, settings):
        now = [0.0]
        swapper = self._swapper()
        reader = _reader(participant=_participant(round_id=501, deployed_total=1), orb=20.0)
        enabled = settings.with_overrides(AUTO_SELL_ENABLED=True)
        loop = _loop(reader, factory, _submitter(), enabled, swapper=swapper)
        loop._clock = lambda: now[0]

        await loop.tick(enabled)
        now[0] = 100.0
        await loop.tick(enabled)
        now[0] = 300.0
        await loop.tick(enabled)

        assert swapper.swap_orb_for_sol.await_count == 2


class TestRun:

    @pytest.mark.asyncio
    async def test_invalid_startup_config_raises(self, factory, settings):
        from orbminer.engine.automation_loop import CancellationToken
        from orbminer.shared.system.errors import ConfigValidationError

        reader = _reader()
        loop = _loop(reader, factory, _submitter(), settings.with_overrides(DEPLOY_MODE="yolo"))

        with pytest.raises(ConfigValidationError):
            await loop.run(CancellationToken())
        reader.fetch_round_cursor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stops_after_max_iterations(self, factory, settings):
        from orbminer.engine.automation_loop import CancellationToken, LoopState

        loop = _loop(_reader(), factory, _submitter(), settings)

        await loop.run(CancellationToken(), max_iterations=1)

        assert loop.deployments == 1
        assert loop.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_immediately(self, factory, settings):
        from orbminer.engine.automation_loop import CancellationToken

        token = CancellationToken()
        token.cancel()
        loop = _loop(_reader(), factory, _submitter(), settings)

        await loop.run(token)
        assert loop.ticks == 0

    @pytest.mark.asyncio
    async def test_token_wait(self):
        from orbminer.engine.automation_loop import CancellationToken

        token = CancellationToken()
        assert await token.wait(0.01) is False
        token.cancel()
        assert await token.wait(10) is True
