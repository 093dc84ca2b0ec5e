"""
Account Records
===============
Typed, immutable snapshots of program-owned accounts.

All amounts are integer base units (1e9 per whole SOL / ORB). Fixed-point
factors are kept as raw signed I80F48 integers (scale 2**48).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from solders.pubkey import Pubkey

from orbminer.protocol.constants import BASE_UNITS


def to_ui(amount: int) -> float:
    """Base units -> human units."""
    return amount / BASE_UNITS


def to_base_units(amount: float) -> int:
    """Human units -> base units (floored)."""
    return int(amount * BASE_UNITS)


@dataclass(frozen=True)
class PoolState:
    """Treasury singleton."""

    balance: int
    motherlode: int
    miner_rewards_factor: int
    stake_rewards_factor: int
    total_staked: int
    total_unclaimed: int
    total_refined: int

    @property
    def motherlode_orb(self) -> float:
        return to_ui(self.motherlode)

    @property
    def balance_sol(self) -> float:
        return to_ui(self.balance)


@dataclass(frozen=True)
class RoundCursor:
    """Board singleton: the live round and its slot bounds."""

    round_id: int
    start_slot: int
    end_slot: int

    def is_live(self, current_slot: int) -> bool:
        return current_slot < self.end_slot


@dataclass(frozen=True)
class RoundState:
    id: int
    deployed: Tuple[int, ...]
    slot_hash: bytes
    count: Tuple[int, ...]
    expires_at: int
    motherlode: int
    rent_payer: Pubkey
    top_miner: Pubkey
    top_miner_reward: int
    total_deployed: int
    total_vaulted: int
    total_winnings: int

    @property
    def total_deployed_sol(self) -> float:
        return to_ui(self.total_deployed)


@dataclass(frozen=True)
class ParticipantState:
    """Miner account of one owner."""

    authority: Pubkey
    deployed: Tuple[int, ...]
    cumulative: Tuple[int, ...]
    checkpoint_fee: int
    checkpoint_id: int
    last_claim_orb_at: int
    last_claim_sol_at: int
    rewards_factor: int
    rewards_sol: int
    rewards_orb: int
    refined_orb: int
    round_id: int
    lifetime_rewards_sol: int
    lifetime_rewards_orb: int

    @property
    def claimable_sol(self) -> float:
        return to_ui(self.rewards_sol)

    @property
    def claimable_orb(self) -> float:
        return to_ui(self.rewards_orb + self.refined_orb)

    @property
    def needs_checkpoint(self) -> bool:
        """True while the last round this miner played is not yet settled."""
        return self.checkpoint_id < self.round_id

    def has_deployed_in(self, round_id: int) -> bool:
        return self.round_id == round_id and sum(self.deployed) > 0


@dataclass(frozen=True)
class StakeState:
    authority: Pubkey
    balance: int
    last_claim_at: int
    last_deposit_at: int
    last_withdraw_at: int
    rewards_factor: int
    rewards: int
    lifetime_rewards: int

    @property
    def balance_orb(self) -> float:
        return to_ui(self.balance)


@dataclass(frozen=True)
class AutomationState:
    amount_per_slot: int
    authority: Pubkey
    balance: int
    executor: Pubkey
    fee: int
    strategy: int
    mask: int

    @property
    def cost_per_round(self) -> int:
        return self.amount_per_slot * self.mask

    @property
    def rounds_remaining(self) -> int:
        return self.balance // self.cost_per_round if self.cost_per_round else 0


@dataclass(frozen=True)
class ProgramConfig:
    var_address: Pubkey
