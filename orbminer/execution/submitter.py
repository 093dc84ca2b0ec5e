"""
Transaction Submitter
=====================
Simulate → send → confirm orchestration with bounded retry.

The "Pilot" of the execution pipeline. Handles the messy real-world
interaction with Solana.

Responsibilities:
- Resolve compute budget per action context and price it
- Assemble and sign versioned transactions
- Simulate before every send (a failed simulation is never sent)
- Retry send failures with exponential backoff
- Confirm and read back the fee actually paid
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from orbminer.execution.instruction_factory import InstructionFactory, writable_accounts
from orbminer.execution.priority_fee import FeeEstimate, PriorityFeeEstimator, RiskTier
from orbminer.shared.system.errors import (
    ConfirmationTimeout,
    SimulationError,
    SubmissionError,
)
from orbminer.shared.system.logging import Logger


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

class TxContext(Enum):
    """Action kind, with its default compute unit limit."""
    DEPLOY = ("Deploy", 300_000)
    CLAIM_SOL = ("Claim SOL", 50_000)
    CLAIM_ORB = ("Claim ORB", 150_000)
    CLAIM_YIELD = ("Claim yield", 150_000)
    STAKE = ("Stake", 100_000)
    SWAP = ("Swap", 400_000)
    CHECKPOINT = ("Checkpoint", 200_000)
    AUTOMATION_SETUP = ("Automation setup", 200_000)
    GENERIC = ("Transaction", 200_000)

    def __init__(self, label: str, compute_limit: int):
        self.label = label
        self.compute_limit = compute_limit


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: delay(n) = min(initial × multiplier^(n-1), max)."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delay_for(self, retry_number: int) -> float:
        return min(self.initial_delay * self.multiplier ** (retry_number - 1), self.max_delay)


RetryPredicate = Callable[[Exception, TxContext], bool]


def default_should_retry(error: Exception, context: TxContext) -> bool:
    """
    Checkpoint is not idempotent under blind resubmission: an
    "already processed" error on it is final.
    """
    message = str(error).lower().replace(" ", "")
    if context == TxContext.CHECKPOINT and ("alreadyprocessed" in message or "alreadybeenprocessed" in message):
        return False
    return True


@dataclass(frozen=True)
class ExecuteOptions:
    compute_unit_limit: Optional[int] = None
    tier: Optional[RiskTier] = None
    dry_run: bool = False
    should_retry: Optional[RetryPredicate] = None
    description: str = ""


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one executed (or dry-run) action."""

    signature: Optional[str]
    actual_fee: Optional[float]  # SOL, None if unknown
    fee_estimate: FeeEstimate
    attempts: int
    dry_run: bool = False
    units_consumed: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.dry_run or self.signature is not None


# ═══════════════════════════════════════════════════════════════════════════════
# SUBMITTER
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionSubmitter:
    """
    Executes instruction lists against the cluster.

    Each step is an await point; nothing is sent before simulation has
    succeeded, and one execute() call never overlaps another step of
    itself.
    """

    def __init__(
        self,
        client: AsyncClient,
        wallet,
        factory: InstructionFactory,
        fee_estimator: PriorityFeeEstimator,
        retry_policy: Optional[RetryPolicy] = None,
        default_tier: RiskTier = RiskTier.MEDIUM,
        confirm_timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.wallet = wallet
        self.factory = factory
        self.fee_estimator = fee_estimator
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_tier = default_tier
        self.confirm_timeout = confirm_timeout
        self._sleep = sleep

        # Statistics
        self.total_attempts = 0
        self.total_sends = 0
        self.total_confirmed = 0

    async def execute(
        self,
        instructions: Sequence[Instruction],
        context: TxContext = TxContext.GENERIC,
        options: Optional[ExecuteOptions] = None,
        cancel_token=None,
    ) -> ExecutionOutcome:
        """
        Execute `instructions` with simulate-first semantics.

        Args:
            instructions: Program instructions (no compute budget ixs)
            context: Action kind, selects default CU limit and retry rules
            options: Overrides (limit, tier, dry run, retry predicate)
            cancel_token: Stops further retries once set

        Raises:
            SimulationError: simulation predicted failure; nothing was sent
            SubmissionError: send failed and retries are exhausted or vetoed
            ConfirmationTimeout: sent but landing is unknown
        """
        options = options or ExecuteOptions()
        should_retry = options.should_retry or default_should_retry
        label = options.description or context.label

        valid, errors = self.factory.validate_instructions(list(instructions))
        if not valid:
            raise SubmissionError(label, "; ".join(errors))

        attempt = 0
        while True:
            attempt += 1
            self.total_attempts += 1
            try:
                return await self._attempt(list(instructions), context, options, label, attempt)
            except SubmissionError as e:
                retries_used = attempt - 1
                if retries_used >= self.retry_policy.max_retries:
                    Logger.error(f"[TX] {label}: failed after {attempt} attempt(s): {e}")
                    raise
                if not should_retry(e, context):
                    Logger.warning(f"[TX] {label}: not retrying: {e}")
                    raise
                if cancel_token is not None and cancel_token.is_cancelled:
                    Logger.warning(f"[TX] {label}: shutdown requested, abandoning retries")
                    raise

                delay = self.retry_policy.delay_for(attempt)
                Logger.warning(
                    f"[TX] {label}: attempt {attempt} failed ({e}); "
                    f"retry {attempt}/{self.retry_policy.max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def _attempt(
        self,
        instructions: List[Instruction],
        context: TxContext,
        options: ExecuteOptions,
        label: str,
        attempt: int,
    ) -> ExecutionOutcome:
        # Step 1: Compute budget
        limit = options.compute_unit_limit or context.compute_limit
        tier = options.tier or self.default_tier
        fee = await self.fee_estimator.estimate(writable_accounts(instructions), tier, limit)
        budget_ixs = self.factory.build_compute_budget_instructions(limit, fee.compute_unit_price)
        Logger.debug(
            f"[FEE] {label}: {fee.compute_unit_price} µlamports/CU × {limit} CU "
            f"= {fee.total_fee} lamports ({fee.source.value})"
        )

        # Step 2: Assemble and sign
        tx = await self._build_signed(budget_ixs + instructions)

        # Step 3: Simulate
        units = await self._simulate(tx, label)

        if options.dry_run:
            Logger.info(
                f"[TX] DRY RUN {label}: {len(instructions)} instruction(s), "
                f"fee≈{fee.total_fee_sol:.9f} SOL, units={units}. Not sent."
            )
            return ExecutionOutcome(
                signature=None, actual_fee=None, fee_estimate=fee,
                attempts=attempt, dry_run=True, units_consumed=units,
            )

        # Step 4: Send
        try:
            resp = await self.client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed, max_retries=0),
            )
        except Exception as e:
            raise SubmissionError(label, str(e)) from e
        self.total_sends += 1
        signature = resp.value
        Logger.info(f"[TX] {label} sent: {signature}")

        # Step 5: Confirm
        await self._confirm(signature, label)
        self.total_confirmed += 1

        actual_fee = await self._read_fee(signature)
        Logger.success(f"[TX] {label} confirmed: {signature}")
        return ExecutionOutcome(
            signature=str(signature),
            actual_fee=actual_fee,
            fee_estimate=fee,
            attempts=attempt,
            units_consumed=units,
        )

    async def _build_signed(self, instructions: List[Instruction]) -> VersionedTransaction:
        try:
            blockhash_resp = await self.client.get_latest_blockhash(commitment=Confirmed)
        except Exception as e:
            raise SubmissionError("Blockhash", str(e)) from e
        payer: Pubkey = self.wallet.pubkey
        message = MessageV0.try_compile(
            payer,
            instructions,
            [],
            blockhash_resp.value.blockhash,
        )
        signature = self.wallet.sign_message(to_bytes_versioned(message))
        return VersionedTransaction.populate(message, [signature])

    async def _simulate(self, tx: VersionedTransaction, label: str) -> Optional[int]:
        try:
            resp = await self.client.simulate_transaction(tx, sig_verify=False, commitment=Confirmed)
        except Exception as e:
            raise SubmissionError(label, f"simulate RPC failed: {e}") from e

        result = resp.value
        if result.err is not None:
            logs = list(result.logs or [])
            Logger.error(f"[TX] {label} simulation failed: {result.err}")
            for line in logs:
                Logger.error(f"[TX]    {line}")
            raise SimulationError(label, result.err, logs)
        return result.units_consumed

    async def _confirm(self, signature, label: str) -> None:
        try:
            resp = await asyncio.wait_for(
                self.client.confirm_transaction(signature, commitment=Confirmed),
                timeout=self.confirm_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConfirmationTimeout(label, str(signature), self.confirm_timeout) from e
        except Exception as e:
            Logger.warning(f"[TX] {label}: confirmation unknown for {signature}: {e}")
            raise ConfirmationTimeout(label, str(signature), self.confirm_timeout) from e

        statuses = resp.value or []
        status = statuses[0] if statuses else None
        if status is not None and status.err is not None:
            raise SubmissionError(label, f"landed with error {status.err} ({signature})")

    async def _read_fee(self, signature) -> Optional[float]:
        """Best effort: the fee actually charged, in SOL."""
        try:
            resp = await self.client.get_transaction(
                signature, commitment=Confirmed, max_supported_transaction_version=0
            )
            if resp.value is None or resp.value.transaction.meta is None:
                return None
            return resp.value.transaction.meta.fee / 1e9
        except Exception as e:
            Logger.debug(f"[TX] Fee read-back failed for {signature}: {e}")
            return None
