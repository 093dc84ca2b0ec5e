"""
Deployment Strategy Engine
==========================
Pure functions that size deployments and decide claims. No I/O.

Policies are a closed set of frozen variants. Every one resolves to
(amount_per_slot, amount_per_round, estimated_rounds) with
amount_per_slot = amount_per_round / 25.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple, Union

from orbminer.protocol.constants import SLOT_COUNT
from orbminer.shared.system.errors import ConfigValidationError
from orbminer.shared.system.logging import Logger


# ═══════════════════════════════════════════════════════════════════════════════
# TIER TABLES
# ═══════════════════════════════════════════════════════════════════════════════

# (pool size threshold in ORB, target rounds), sorted descending
TierTable = Tuple[Tuple[float, int], ...]

RISK_PROFILES: Dict[str, TierTable] = {
    "conservative": (
        (1200, 60), (1100, 90), (1000, 120), (900, 160), (800, 200), (700, 240),
        (600, 280), (500, 320), (400, 360), (300, 400), (200, 440), (0, 880),
    ),
    "ultra_conservative": (
        (1200, 120), (1000, 180), (800, 260), (600, 360), (400, 500), (200, 700), (0, 1000),
    ),
    "balanced": (
        (1500, 40), (1200, 80), (1000, 120), (800, 180), (600, 260), (400, 360), (200, 500), (0, 880),
    ),
    "aggressive": (
        (1500, 25), (1200, 50), (1000, 75), (800, 110), (600, 160), (400, 240), (200, 360), (0, 500),
    ),
    "kelly_optimized": (
        (1500, 35), (1200, 65), (1000, 95), (800, 140), (600, 200), (400, 290), (200, 400), (0, 700),
    ),
}


def lookup_target_rounds(pool_size: float, table: TierTable) -> int:
    """
    Highest tier whose threshold is <= pool_size (inclusive lower bound).

    Falls back to the lowest tier's value when nothing matches.
    """
    ordered = sorted(table, key=lambda tier: tier[0], reverse=True)
    for threshold, rounds in ordered:
        if pool_size >= threshold:
            return rounds
    return ordered[-1][1]


# ═══════════════════════════════════════════════════════════════════════════════
# POLICIES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TieredPolicy:
    """Target round count from a risk profile's pool-size step table."""
    profile: str = "conservative"

    @property
    def name(self) -> str:
        return self.profile


@dataclass(frozen=True)
class FixedAmountPolicy:
    amount_per_round: float
    name: str = "manual"


@dataclass(frozen=True)
class FixedRoundsPolicy:
    target_rounds: int
    name: str = "fixed_rounds"


@dataclass(frozen=True)
class PercentagePolicy:
    """Spend `percentage` % of the budget each round."""
    percentage: float
    name: str = "percentage"


@dataclass(frozen=True)
class AutoDoublingPolicy:
    """start_amount × 2^floor(pool_size / pool_interval) per round."""
    start_amount: float
    pool_interval: float
    name: str = "auto_doubling"


DeploymentPolicy = Union[TieredPolicy, FixedAmountPolicy, FixedRoundsPolicy, PercentagePolicy, AutoDoublingPolicy]


@dataclass(frozen=True)
class DeploymentPlan:
    amount_per_slot: float
    amount_per_round: float
    estimated_rounds: int
    policy: str
    explanation: str


def _plan(amount_per_round: float, rounds: int, policy: DeploymentPolicy, explanation: str) -> DeploymentPlan:
    return DeploymentPlan(
        amount_per_slot=amount_per_round / SLOT_COUNT,
        amount_per_round=amount_per_round,
        estimated_rounds=max(1, rounds),
        policy=policy.name,
        explanation=explanation,
    )


def calculate_deployment_amount(
    policy: DeploymentPolicy,
    usable_budget: float,
    pool_size: float,
) -> DeploymentPlan:
    """
    Size one round's deployment.

    Args:
        policy: Validated deployment policy
        usable_budget: SOL available for deployments
        pool_size: Current motherlode in ORB

    Returns:
        DeploymentPlan (amount_per_round never exceeds usable_budget)
    """
    if usable_budget <= 0:
        return DeploymentPlan(0.0, 0.0, 1, policy.name, "no usable budget")

    if isinstance(policy, TieredPolicy):
        rounds = lookup_target_rounds(pool_size, RISK_PROFILES[policy.profile])
        per_round = usable_budget / rounds
        return _plan(per_round, rounds, policy, f"{policy.profile}: pool {pool_size:.1f} ORB → {rounds} rounds")

    if isinstance(policy, FixedAmountPolicy):
        per_round = min(policy.amount_per_round, usable_budget)
        rounds = math.floor(usable_budget / per_round)
        return _plan(per_round, rounds, policy, f"fixed {per_round:.6f} SOL/round")

    if isinstance(policy, FixedRoundsPolicy):
        per_round = usable_budget / policy.target_rounds
        return _plan(per_round, policy.target_rounds, policy, f"budget spread over {policy.target_rounds} rounds")

    if isinstance(policy, PercentagePolicy):
        per_round = usable_budget * policy.percentage / 100
        rounds = math.floor(100 / policy.percentage)
        return _plan(per_round, rounds, policy, f"{policy.percentage}% of budget per round")

    if isinstance(policy, AutoDoublingPolicy):
        steps = max(pool_size, 0) / policy.pool_interval
        # Doublings needed before start_amount reaches the whole budget
        cap = math.log2(usable_budget) - math.log2(policy.start_amount)
        if steps >= cap + 1 or math.floor(steps) >= cap:
            per_round = usable_budget
            explanation = f"doubling capped at budget (pool {pool_size:.1f} ORB)"
        else:
            doublings = math.floor(steps)
            per_round = min(math.ldexp(policy.start_amount, doublings), usable_budget)
            explanation = f"{doublings} doubling(s) at pool {pool_size:.1f} ORB"
        rounds = math.floor(usable_budget / per_round)
        return _plan(per_round, rounds, policy, explanation)

    raise TypeError(f"unsupported deployment policy: {policy!r}")


def validate_policy(policy: DeploymentPolicy) -> None:
    """Reject ill-formed parameters before any use."""
    if isinstance(policy, TieredPolicy):
        if policy.profile not in RISK_PROFILES:
            raise ConfigValidationError(
                f"unknown risk profile {policy.profile!r} (expected one of {', '.join(RISK_PROFILES)})"
            )
    elif isinstance(policy, FixedAmountPolicy):
        if not policy.amount_per_round > 0:
            raise ConfigValidationError(f"amount per round must be > 0, got {policy.amount_per_round}")
    elif isinstance(policy, FixedRoundsPolicy):
        if policy.target_rounds < 1:
            raise ConfigValidationError(f"target rounds must be >= 1, got {policy.target_rounds}")
    elif isinstance(policy, PercentagePolicy):
        if not 0 < policy.percentage <= 100:
            raise ConfigValidationError(f"percentage must be in (0, 100], got {policy.percentage}")
    elif isinstance(policy, AutoDoublingPolicy):
        if not policy.start_amount > 0:
            raise ConfigValidationError(f"start amount must be > 0, got {policy.start_amount}")
        if not policy.pool_interval > 0:
            raise ConfigValidationError(f"pool interval must be > 0, got {policy.pool_interval}")
    else:
        raise ConfigValidationError(f"unsupported deployment policy: {policy!r}")


DEFAULT_POLICY = TieredPolicy("conservative")


def parse_deployment_policy(name: str, settings) -> DeploymentPolicy:
    """
    Map a configured strategy name to its policy variant.

    Unknown names (e.g. written by a newer release) fall back to the
    conservative profile with a warning.
    """
    key = name.strip().lower()
    if key in RISK_PROFILES:
        return TieredPolicy(key)
    if key in ("manual", "fixed_amount"):
        return FixedAmountPolicy(settings.MANUAL_AMOUNT_PER_ROUND)
    if key == "fixed_rounds":
        return FixedRoundsPolicy(settings.TARGET_ROUNDS)
    if key == "percentage":
        return PercentagePolicy(settings.BUDGET_PERCENTAGE_PER_ROUND)
    if key == "auto_doubling":
        return AutoDoublingPolicy(settings.AUTO_DOUBLING_START_AMOUNT, settings.AUTO_DOUBLING_POOL_INTERVAL)

    Logger.warning(f"[STRATEGY] Unknown deployment strategy {name!r}, using {DEFAULT_POLICY.profile}")
    return DEFAULT_POLICY


# ═══════════════════════════════════════════════════════════════════════════════
# CLAIMS / STAKING / SWAPS / RESCALING
# ═══════════════════════════════════════════════════════════════════════════════

class ClaimPolicy(Enum):
    MANUAL = "manual"
    AUTOMATIC = "auto"

    @classmethod
    def from_name(cls, name: str) -> "ClaimPolicy":
        key = name.strip().lower()
        if key in ("auto", "automatic"):
            return cls.AUTOMATIC
        if key == "manual":
            return cls.MANUAL
        raise ValueError(f"unknown claim strategy {name!r}")


@dataclass(frozen=True)
class ClaimThresholds:
    sol: float = 0.1
    orb: float = 1.0
    staking: float = 0.5


def _reaches(amount: float, threshold: float) -> bool:
    return amount > 0 and amount >= threshold


def should_claim(policy: ClaimPolicy, claimable_principal: float, claimable_reward: float, thresholds: ClaimThresholds) -> bool:
    """Manual never claims; automatic claims when either side reaches its threshold."""
    if policy == ClaimPolicy.MANUAL:
        return False
    return _reaches(claimable_principal, thresholds.sol) or _reaches(claimable_reward, thresholds.orb)


def claim_targets(policy: ClaimPolicy, claimable_principal: float, claimable_reward: float, thresholds: ClaimThresholds) -> Tuple[bool, bool]:
    """(claim SOL?, claim ORB?) for an automatic claim."""
    if not should_claim(policy, claimable_principal, claimable_reward, thresholds):
        return False, False
    return _reaches(claimable_principal, thresholds.sol), _reaches(claimable_reward, thresholds.orb)


def should_claim_staking(policy: ClaimPolicy, claimable_yield: float, thresholds: ClaimThresholds) -> bool:
    return policy == ClaimPolicy.AUTOMATIC and _reaches(claimable_yield, thresholds.staking)


def stake_amount(orb_balance: float, min_orb_to_keep: float, threshold: float) -> float:
    """ORB to stake, or 0 when the spare balance is below threshold."""
    spare = orb_balance - min_orb_to_keep
    return spare if spare >= threshold and spare > 0 else 0.0


def top_up_swap_amount(orb_balance: float, min_orb_to_keep: float, swap_amount: float) -> float:
    """ORB to sell for SOL, capped to what is spare above the floor."""
    spare = orb_balance - min_orb_to_keep
    if spare <= 0:
        return 0.0
    return min(swap_amount, spare)


def auto_sell_amount(orb_balance: float, min_orb_to_keep: float, wallet_threshold: float, min_swap_amount: float) -> float:
    """
    ORB to sell proactively once the wallet holds at least `wallet_threshold`.

    Everything above the ORB floor is sold; 0 when that is below
    `min_swap_amount`.
    """
    if orb_balance < wallet_threshold:
        return 0.0
    spare = max(0.0, orb_balance - min_orb_to_keep)
    return spare if spare > 0 and spare >= min_swap_amount else 0.0


def price_allows_sale(price_in_sol: float, min_price_in_sol: float) -> bool:
    """No floor configured: always. Otherwise a known price at or above it."""
    if min_price_in_sol <= 0:
        return True
    return price_in_sol > 0 and price_in_sol >= min_price_in_sol


# Pool swing that makes a funded automation worth recreating
RESCALE_GROWTH_PERCENT = 50.0
RESCALE_SHRINK_PERCENT = 40.0
RESCALE_MIN_CHANGE_ORB = 100.0


def should_rescale_automation(setup_pool_size: float, current_pool_size: float) -> bool:
    """
    True when the motherlode moved far enough since the automation was
    funded: +50% or -40%, and at least 100 ORB either way.

    An unknown setup size (0, e.g. automation created by an earlier run)
    never triggers.
    """
    if setup_pool_size <= 0:
        return False
    change = current_pool_size - setup_pool_size
    if abs(change) < RESCALE_MIN_CHANGE_ORB:
        return False
    percent = change * 100 / setup_pool_size
    return percent >= RESCALE_GROWTH_PERCENT or percent <= -RESCALE_SHRINK_PERCENT


def usable_budget(sol_balance: float, safety_floor: float, budget_percent: float) -> float:
    """Share of SOL above the safety floor available for deployments."""
    spare = sol_balance - safety_floor
    return max(0.0, spare * budget_percent / 100)


# ═══════════════════════════════════════════════════════════════════════════════
# EXPECTED VALUE GATE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProfitabilityReport:
    cost_sol: float
    expected_sol_back: float
    expected_orb: float
    expected_value: float
    share: float
    profitable: bool


ORB_PER_ROUND = 4.0
MOTHERLODE_ODDS = 1 / 625
REFINING_FEE = 0.10
SOL_RETURN_RATIO = 0.95
DEFAULT_COMPETITION_MULTIPLIER = 10.0


def evaluate_profitability(
    cost_per_round: float,
    pool_size: float,
    orb_price_sol: float,
    round_total_deployed: float = 0.0,
    min_expected_value: float = 0.0,
    competition_multiplier: float = DEFAULT_COMPETITION_MULTIPLIER,
) -> ProfitabilityReport:
    """
    EV = expected ORB × ORB price + expected SOL back − cost.

    The share of the round comes from its live total when the round has
    meaningful deposits, otherwise from an assumed competition multiplier.
    Without a price the round is treated as unprofitable.
    """
    if round_total_deployed >= 0.01:
        share = cost_per_round / (round_total_deployed + cost_per_round)
    else:
        share = 1 / (competition_multiplier + 1)

    expected_orb = (share * ORB_PER_ROUND + MOTHERLODE_ODDS * share * pool_size) * (1 - REFINING_FEE)
    sol_back = cost_per_round * SOL_RETURN_RATIO
    ev = expected_orb * orb_price_sol + sol_back - cost_per_round

    return ProfitabilityReport(
        cost_sol=cost_per_round,
        expected_sol_back=sol_back,
        expected_orb=expected_orb,
        expected_value=ev,
        share=share,
        profitable=orb_price_sol > 0 and ev >= min_expected_value,
    )
