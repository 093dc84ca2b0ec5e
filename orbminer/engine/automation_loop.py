"""
Automation Loop
===============
Top-level state machine: one deployment per round, plus independent
reward-claim, balance and ORB auto-sell side-cycles.

    IDLE → WAITING_FOR_ROUND → DEPLOYING → WAITING_FOR_ROUND ...

Chain-mutating actions are awaited strictly one at a time. Read-only
fetches inside one decision are gathered concurrently. Every decision
starts from freshly read state, so an attempt whose confirmation timed
out is only resent after the chain shows it did not land.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from solders.instruction import Instruction

from config.settings import Settings
from orbminer.execution.instruction_factory import AutomationParams, InstructionFactory
from orbminer.execution.priority_fee import RiskTier
from orbminer.execution.submitter import ExecuteOptions, ExecutionOutcome, TransactionSubmitter, TxContext
from orbminer.infrastructure.chain_client import ChainReader
from orbminer.protocol.constants import SLOT_COUNT
from orbminer.protocol.state_codec import claimable_stake_yield, pending_refined_orb
from orbminer.shared.models.accounts import RoundCursor, to_base_units, to_ui
from orbminer.shared.system.errors import ConfigValidationError, OrbMinerError
from orbminer.shared.system.logging import Logger
from orbminer.shared.system.persistence import BotEvent, EventKind, EventSink, NullEventSink, safe_emit
from orbminer.strategy.deployment import (
    ClaimPolicy,
    ClaimThresholds,
    DeploymentPlan,
    auto_sell_amount,
    calculate_deployment_amount,
    claim_targets,
    evaluate_profitability,
    parse_deployment_policy,
    price_allows_sale,
    should_claim_staking,
    should_rescale_automation,
    stake_amount,
    top_up_swap_amount,
    usable_budget,
)


class LoopState(Enum):
    IDLE = "idle"
    WAITING_FOR_ROUND = "waiting_for_round"
    DEPLOYING = "deploying"


class CancellationToken:
    """Cooperative shutdown flag with an interruptible wait."""

    def __init__(self):
        self._event = asyncio.Event()
        self.interrupts = 0

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout`; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.is_cancelled


def install_signal_handlers(token: CancellationToken) -> None:
    """First SIGINT/SIGTERM requests shutdown; a second one forces exit."""

    def _handle():
        token.interrupts += 1
        if token.interrupts == 1:
            Logger.warning("[LOOP] Shutdown requested: finishing in-flight action (interrupt again to force)")
            token.cancel()
        else:
            Logger.critical("[LOOP] Forced exit")
            os._exit(130)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_: _handle())


@dataclass
class RoundProgress:
    round_id: int
    attempts: int = 0
    done: bool = False


class AutomationLoop:
    """Ties state reads, strategy, building and execution together."""

    def __init__(
        self,
        settings_provider,
        reader: ChainReader,
        factory: InstructionFactory,
        submitter: TransactionSubmitter,
        swapper=None,
        oracle=None,
        sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings_provider = settings_provider
        self.reader = reader
        self.factory = factory
        self.submitter = submitter
        self.swapper = swapper
        self.oracle = oracle
        self.sink = sink or NullEventSink()
        self._clock = clock

        self.state = LoopState.IDLE
        self._settings: Optional[Settings] = None
        self._round: Optional[RoundProgress] = None
        self._last_reward_check: Optional[float] = None
        self._last_balance_check: Optional[float] = None
        self._last_sell_check: Optional[float] = None
        # Motherlode when the current automation was funded; 0 = unknown
        self._automation_pool = 0.0

        self.deployments = 0
        self.ticks = 0

    # ═══════════════════════════════════════════════════════════════════
    # RUN
    # ═══════════════════════════════════════════════════════════════════

    async def run(self, token: CancellationToken, max_iterations: Optional[int] = None) -> None:
        """
        Loop until cancelled or `max_iterations` deployments have been made.

        Raises ConfigValidationError before any network call when the
        initial configuration is invalid.
        """
        settings = self.settings_provider.snapshot()
        settings.validate()
        self._settings = settings

        cap = max_iterations if max_iterations is not None else settings.MAX_ITERATIONS
        Logger.section(f"ORB automation ({'DRY RUN' if settings.DRY_RUN else 'LIVE'}, mode={settings.DEPLOY_MODE})")
        Logger.info(
            f"[LOOP] strategy={settings.DEPLOYMENT_STRATEGY} claim={settings.CLAIM_STRATEGY} "
            f"min pool={settings.MIN_POOL_SIZE} ORB, floor={settings.MIN_SOL_BALANCE} SOL, "
            f"cap={'∞' if not cap else cap}"
        )

        self.state = LoopState.WAITING_FOR_ROUND
        while not token.is_cancelled:
            settings = self._next_settings()
            await self.tick(settings, token)

            if cap and self.deployments >= cap:
                Logger.info(f"[LOOP] Reached {cap} deployment(s), stopping")
                break
            if await token.wait(settings.CHECK_ROUND_INTERVAL):
                break

        self.state = LoopState.IDLE
        Logger.section(f"Stopped after {self.ticks} tick(s), {self.deployments} deployment(s)")

    def _next_settings(self) -> Settings:
        """Fresh snapshot; an invalid change keeps the previous one."""
        candidate = self.settings_provider.snapshot()
        try:
            candidate.validate()
        except ConfigValidationError as e:
            Logger.error(f"[LOOP] Ignoring invalid configuration change: {e}")
            return self._settings
        self._settings = candidate
        return candidate

    async def tick(self, settings: Settings, token: Optional[CancellationToken] = None) -> None:
        """One polling step. Errors are logged; the loop carries on."""
        self.ticks += 1

        try:
            cursor = await self.reader.fetch_round_cursor()
            if self._should_attempt(cursor, settings):
                self.state = LoopState.DEPLOYING
                try:
                    await self.deploy_for_round(cursor, settings, token)
                finally:
                    self.state = LoopState.WAITING_FOR_ROUND
        except OrbMinerError as e:
            Logger.error(f"[LOOP] Round step failed: {e}")
        except Exception as e:
            Logger.error(f"[LOOP] Round step failed: {type(e).__name__}: {e}")

        if token is not None and token.is_cancelled:
            return

        now = self._clock()
        if self._due(self._last_reward_check, settings.CHECK_REWARDS_INTERVAL, now):
            self._last_reward_check = now
            await self._guarded("Reward check", self.reward_check(settings, token))

        if self._due(self._last_balance_check, settings.CHECK_BALANCE_INTERVAL, now):
            self._last_balance_check = now
            await self._guarded("Balance check", self.balance_check(settings, token))

        if self._due(self._last_sell_check, settings.CHECK_REWARDS_INTERVAL, now):
            self._last_sell_check = now
            await self._guarded("Sell check", self.sell_check(settings, token))

    @staticmethod
    def _due(last: Optional[float], interval: float, now: float) -> bool:
        return last is None or now - last >= interval

    async def _guarded(self, label: str, coro) -> None:
        try:
            await coro
        except OrbMinerError as e:
            Logger.error(f"[LOOP] {label} failed: {e}")
        except Exception as e:
            Logger.error(f"[LOOP] {label} failed: {type(e).__name__}: {e}")

    def _should_attempt(self, cursor: RoundCursor, settings: Settings) -> bool:
        if self._round is None or cursor.round_id > self._round.round_id:
            if self._round is not None:
                Logger.info(f"[LOOP] New round {cursor.round_id} (previous {self._round.round_id})")
            self._round = RoundProgress(cursor.round_id)
            return True
        if cursor.round_id == self._round.round_id:
            return not self._round.done and self._round.attempts < settings.MAX_ATTEMPTS_PER_ROUND
        return False

    # ═══════════════════════════════════════════════════════════════════
    # DEPLOY
    # ═══════════════════════════════════════════════════════════════════

    async def deploy_for_round(
        self,
        cursor: RoundCursor,
        settings: Settings,
        token: Optional[CancellationToken] = None,
    ) -> Optional[ExecutionOutcome]:
        """At most one deployment into `cursor.round_id`."""
        progress = self._round
        if progress is None or progress.round_id != cursor.round_id:
            progress = self._round = RoundProgress(cursor.round_id)
        round_id = cursor.round_id

        # Step 1: Fresh state
        pool, participant, slot, sol_balance = await asyncio.gather(
            self.reader.fetch_pool(),
            self.reader.fetch_participant(),
            self.reader.fetch_slot(),
            self.reader.fetch_sol_balance(),
        )

        # Step 2: Gates
        if participant is not None and participant.has_deployed_in(round_id):
            Logger.info(f"[DEPLOY] Already deployed in round {round_id}")
            progress.done = True
            return None

        if not cursor.is_live(slot):
            Logger.info(f"[DEPLOY] Round {round_id} already ended (slot {slot} ≥ {cursor.end_slot}), skipping")
            self._skip(progress, "round ended")
            return None

        if pool.motherlode_orb < settings.MIN_POOL_SIZE:
            Logger.info(
                f"[DEPLOY] Motherlode {pool.motherlode_orb:.2f} ORB below {settings.MIN_POOL_SIZE} ORB, skipping round {round_id}"
            )
            self._skip(progress, "pool below floor")
            return None

        if sol_balance < settings.MIN_SOL_BALANCE:
            Logger.warning(f"[DEPLOY] Balance {sol_balance:.4f} SOL below floor {settings.MIN_SOL_BALANCE} SOL")
            if await self.top_up(settings):
                sol_balance = await self.reader.fetch_sol_balance()
            if sol_balance < settings.MIN_SOL_BALANCE:
                Logger.warning("[DEPLOY] Still below floor, skipping this tick")
                return None

        progress.attempts += 1

        # Step 3: Settle the previous round first
        if participant is not None and participant.needs_checkpoint and participant.round_id < round_id:
            await self._execute(
                [self.factory.build_checkpoint(participant, cursor)],
                TxContext.CHECKPOINT, "checkpoint", settings, token,
                round_id=participant.round_id,
            )

        # Step 4: Size
        budget, plan = self._size(settings, sol_balance, pool.motherlode_orb)
        amount_per_slot = to_base_units(plan.amount_per_slot)
        if amount_per_slot <= 0:
            Logger.warning(f"[DEPLOY] Budget {budget:.6f} SOL too small to deploy")
            self._skip(progress, "budget too small")
            return None
        Logger.info(
            f"[STRATEGY] {plan.explanation}: {plan.amount_per_round:.6f} SOL/round "
            f"({plan.amount_per_slot:.9f}/slot), ~{plan.estimated_rounds} rounds"
        )

        if settings.ENABLE_EV_CHECK and not await self._profitable(plan.amount_per_round, pool.motherlode_orb, round_id, settings):
            self._skip(progress, "negative expected value")
            return None

        # Step 5: Build
        if settings.DEPLOY_MODE == "automation":
            instructions = await self._automation_instructions(plan, budget, pool.motherlode_orb, round_id, settings, token)
            if instructions is None:
                progress.done = True
                return None
        else:
            instructions = self.factory.build_deploy_with_fee(amount_per_slot, round_id)

        # Step 6: Execute
        outcome = await self._execute(
            instructions, TxContext.DEPLOY, "deploy", settings, token,
            round_id=round_id, amount=plan.amount_per_round,
        )
        progress.done = True
        self.deployments += 1
        return outcome

    def _skip(self, progress: RoundProgress, reason: str) -> None:
        progress.done = True
        safe_emit(self.sink, BotEvent(EventKind.SKIPPED, "deploy", round_id=progress.round_id, error=reason))

    async def _profitable(self, amount_per_round: float, pool_size: float, round_id: int, settings: Settings) -> bool:
        if self.oracle is None:
            Logger.warning("[DEPLOY] EV check enabled without a price oracle, deploying anyway")
            return True
        price, round_state = await asyncio.gather(self.oracle.get_price(), self.reader.fetch_round(round_id))
        round_total = round_state.total_deployed_sol if round_state is not None else 0.0
        report = evaluate_profitability(
            amount_per_round, pool_size, price.price_in_sol,
            round_total_deployed=round_total, min_expected_value=settings.MIN_EXPECTED_VALUE,
        )
        log = Logger.info if report.profitable else Logger.warning
        log(
            f"[STRATEGY] EV {report.expected_value:+.6f} SOL (share {report.share:.2%}, "
            f"ORB {price.price_in_sol:.6f} SOL{' stale' if price.stale else ''})"
        )
        return report.profitable

    @staticmethod
    def _size(settings: Settings, sol_balance: float, pool_size: float) -> Tuple[float, DeploymentPlan]:
        """(usable budget, plan) for the configured policy."""
        policy = parse_deployment_policy(settings.DEPLOYMENT_STRATEGY, settings)
        budget = usable_budget(sol_balance, settings.MIN_SOL_BALANCE, settings.BUDGET_PERCENT)
        return budget, calculate_deployment_amount(policy, budget, pool_size)

    async def _automation_instructions(
        self,
        plan: DeploymentPlan,
        budget: float,
        pool_size: float,
        round_id: int,
        settings: Settings,
        token: Optional[CancellationToken],
    ) -> Optional[List[Instruction]]:
        """
        Execute-automation instructions, setting up the account first if needed.

        A funded automation is closed and recreated at the current size
        when the motherlode has swung far from its size at setup.
        """
        automation = await self.reader.fetch_automation()

        if (
            automation is not None
            and settings.AUTO_RESCALE_AUTOMATION
            and should_rescale_automation(self._automation_pool, pool_size)
        ):
            Logger.info(
                f"[DEPLOY] Motherlode {self._automation_pool:.0f} → {pool_size:.0f} ORB since setup, recreating automation"
            )
            outcome = await self._execute(
                [self.factory.build_close_automation()], TxContext.AUTOMATION_SETUP,
                "automation_close", settings, token,
            )
            if outcome.dry_run:
                return None
            self._automation_pool = 0.0
            # The closed balance is back in the wallet; size from there
            budget, plan = self._size(settings, await self.reader.fetch_sol_balance(), pool_size)
            if to_base_units(plan.amount_per_slot) <= 0:
                Logger.warning(f"[DEPLOY] Budget {budget:.6f} SOL too small to recreate automation")
                return None
            automation = None

        if automation is None:
            params = AutomationParams(
                amount_per_slot=to_base_units(plan.amount_per_slot),
                deposit=to_base_units(budget),
                fee=0,
                slot_selector=SLOT_COUNT,
            )
            Logger.info(f"[DEPLOY] Creating automation: deposit {budget:.6f} SOL, {plan.amount_per_slot:.9f} SOL/slot")
            outcome = await self._execute(
                [self.factory.build_automate(params)], TxContext.AUTOMATION_SETUP,
                "automation_setup", settings, token, amount=budget,
            )
            if outcome.dry_run:
                return None
            self._automation_pool = pool_size
            automation = await self.reader.fetch_automation()
            if automation is None:
                Logger.warning("[DEPLOY] Automation account not visible yet, retrying next tick")
                return None

        if automation.balance < automation.cost_per_round:
            Logger.warning(
                f"[DEPLOY] Automation depleted ({to_ui(automation.balance):.6f} SOL left), closing it"
            )
            await self._execute(
                [self.factory.build_close_automation()], TxContext.AUTOMATION_SETUP,
                "automation_close", settings, token,
            )
            self._automation_pool = 0.0
            return None

        return self.factory.build_execute_automation(automation, round_id)

    # ═══════════════════════════════════════════════════════════════════
    # SIDE CYCLES
    # ═══════════════════════════════════════════════════════════════════

    async def top_up(self, settings: Settings) -> bool:
        """One ORB → SOL swap from spare ORB. True if SOL actually arrived."""
        if not settings.AUTO_SWAP_ENABLED or self.swapper is None:
            Logger.info("[SWAP] Auto-swap disabled")
            return False

        orb_balance = await self.reader.fetch_orb_balance()
        amount = top_up_swap_amount(orb_balance, settings.MIN_ORB_TO_KEEP, settings.SWAP_ORB_AMOUNT)
        if amount <= 0:
            Logger.warning(f"[SWAP] No spare ORB ({orb_balance:.4f} held, keeping {settings.MIN_ORB_TO_KEEP})")
            return False

        return await self._swap(amount, settings, "Top-up")

    async def sell_check(self, settings: Settings, token: Optional[CancellationToken] = None) -> None:
        """Sell ORB above the wallet threshold, gated by the minimum price."""
        if not settings.AUTO_SELL_ENABLED:
            return
        if self.swapper is None:
            Logger.debug("[SWAP] Auto-sell enabled without a swapper")
            return

        orb_balance = await self.reader.fetch_orb_balance()
        amount = auto_sell_amount(
            orb_balance, settings.MIN_ORB_TO_KEEP, settings.WALLET_ORB_SWAP_THRESHOLD, settings.MIN_ORB_SWAP_AMOUNT,
        )
        if amount <= 0:
            return

        if settings.MIN_ORB_PRICE_SOL > 0:
            price = await self.oracle.get_price() if self.oracle is not None else None
            # A stale or missing quote is no price at all for a sale
            price_in_sol = price.price_in_sol if price is not None and not price.stale else 0.0
            if not price_allows_sale(price_in_sol, settings.MIN_ORB_PRICE_SOL):
                Logger.warning(
                    f"[SWAP] ORB price {price_in_sol:.6f} SOL below floor {settings.MIN_ORB_PRICE_SOL} SOL, not selling"
                )
                return

        Logger.info(f"[SWAP] Wallet holds {orb_balance:.4f} ORB, selling {amount:.4f}")
        await self._swap(amount, settings, "Auto-sell")

    async def _swap(self, amount: float, settings: Settings, label: str) -> bool:
        safe_emit(self.sink, BotEvent(EventKind.ATTEMPTED, "swap", amount=amount))
        result = await self.swapper.swap_orb_for_sol(amount, dry_run=settings.DRY_RUN)
        if result.success:
            safe_emit(self.sink, BotEvent(
                EventKind.SUCCEEDED, "swap", amount=amount, signature=result.signature,
                details={"sol_received": result.output_amount, "dry_run": result.dry_run, "reason": label.lower()},
            ))
            return not result.dry_run

        Logger.warning(f"[SWAP] {label} failed: {result.error}")
        safe_emit(self.sink, BotEvent(EventKind.FAILED, "swap", amount=amount, error=result.error))
        return False

    async def reward_check(self, settings: Settings, token: Optional[CancellationToken] = None) -> None:
        """Claim SOL / ORB / staking yield past their thresholds."""
        policy = ClaimPolicy.from_name(settings.CLAIM_STRATEGY)
        if policy == ClaimPolicy.MANUAL:
            return
        thresholds = ClaimThresholds(
            sol=settings.AUTO_CLAIM_SOL_THRESHOLD,
            orb=settings.AUTO_CLAIM_ORB_THRESHOLD,
            staking=settings.AUTO_CLAIM_STAKING_THRESHOLD,
        )

        participant, stake, pool = await asyncio.gather(
            self.reader.fetch_participant(),
            self.reader.fetch_stake(),
            self.reader.fetch_pool(),
        )

        if participant is not None:
            claimable_sol = participant.claimable_sol
            claimable_orb = participant.claimable_orb + to_ui(pending_refined_orb(participant, pool))
            Logger.debug(f"[CLAIM] Claimable: {claimable_sol:.6f} SOL, {claimable_orb:.6f} ORB")

            claim_sol, claim_orb = claim_targets(policy, claimable_sol, claimable_orb, thresholds)
            if claim_sol:
                await self._execute(
                    [self.factory.build_claim_sol()], TxContext.CLAIM_SOL, "claim_sol",
                    settings, token, amount=claimable_sol,
                )
            if claim_orb:
                await self._execute(
                    [self.factory.build_claim_orb()], TxContext.CLAIM_ORB, "claim_orb",
                    settings, token, amount=claimable_orb,
                )

        if stake is not None:
            claimable = claimable_stake_yield(stake, pool)
            if should_claim_staking(policy, to_ui(claimable), thresholds):
                await self._execute(
                    [self.factory.build_claim_yield(claimable)], TxContext.CLAIM_YIELD, "claim_yield",
                    settings, token, amount=to_ui(claimable),
                )

    async def balance_check(self, settings: Settings, token: Optional[CancellationToken] = None) -> None:
        """Record balances and stake spare ORB when enabled."""
        sol_balance, orb_balance = await asyncio.gather(
            self.reader.fetch_sol_balance(),
            self.reader.fetch_orb_balance(),
        )
        Logger.info(f"[LOOP] Wallet: {sol_balance:.4f} SOL, {orb_balance:.4f} ORB")
        safe_emit(self.sink, BotEvent(
            EventKind.SNAPSHOT, "balance", details={"sol": sol_balance, "orb": orb_balance},
        ))

        if not settings.AUTO_STAKE_ENABLED:
            return
        amount = stake_amount(orb_balance, settings.MIN_ORB_TO_KEEP, settings.STAKE_ORB_THRESHOLD)
        if amount > 0:
            await self._execute(
                [self.factory.build_stake(to_base_units(amount))], TxContext.STAKE, "stake",
                settings, token, amount=amount,
            )

    # ═══════════════════════════════════════════════════════════════════
    # EXECUTION
    # ═══════════════════════════════════════════════════════════════════

    async def _execute(
        self,
        instructions: List[Instruction],
        context: TxContext,
        action: str,
        settings: Settings,
        token: Optional[CancellationToken],
        round_id: Optional[int] = None,
        amount: Optional[float] = None,
    ) -> ExecutionOutcome:
        """Execute one action and report attempted / succeeded / failed."""
        safe_emit(self.sink, BotEvent(EventKind.ATTEMPTED, action, round_id=round_id, amount=amount))
        options = ExecuteOptions(
            tier=RiskTier.from_name(settings.PRIORITY_FEE_LEVEL),
            dry_run=settings.DRY_RUN,
            description=f"{context.label}" + (f" (round {round_id})" if round_id is not None else ""),
        )
        try:
            outcome = await self.submitter.execute(instructions, context, options, token)
        except OrbMinerError as e:
            amount_text = f" amount={amount:.9f}" if amount is not None else ""
            Logger.error(f"[TX] {context.label} failed{amount_text}: {e}")
            safe_emit(self.sink, BotEvent(
                EventKind.FAILED, action, round_id=round_id, amount=amount, error=str(e),
            ))
            raise

        safe_emit(self.sink, BotEvent(
            EventKind.SUCCEEDED, action, round_id=round_id, amount=amount,
            signature=outcome.signature, fee_sol=outcome.actual_fee,
            details={"dry_run": outcome.dry_run, "attempts": outcome.attempts},
        ))
        return outcome
