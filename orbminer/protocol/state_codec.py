"""
State Codec
===========
Fixed-offset little-endian decoding of ORB program accounts.

`decode(buffer, kind)` returns:
- None when the account does not exist (uninitialized, not an error)
- a frozen record when the buffer is long enough
- raises DecodeError for truncated/malformed buffers

Offsets are the program's on-chain layout and include the 8-byte
account discriminator.
"""

from __future__ import annotations

import struct
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from solders.pubkey import Pubkey

from orbminer.protocol.constants import FIXED_POINT_FRACTION_BITS, SLOT_COUNT
from orbminer.shared.models.accounts import (
    AutomationState,
    ParticipantState,
    PoolState,
    ProgramConfig,
    RoundCursor,
    RoundState,
    StakeState,
)
from orbminer.shared.system.errors import DecodeError

Record = Union[PoolState, RoundCursor, RoundState, ParticipantState, StakeState, AutomationState, ProgramConfig]


class AccountKind(Enum):
    POOL = "pool"
    ROUND_CURSOR = "round_cursor"
    ROUND = "round"
    PARTICIPANT = "participant"
    STAKE = "stake"
    AUTOMATION = "automation"
    CONFIG = "config"


# ═══════════════════════════════════════════════════════════════════════════════
# PRIMITIVE READERS
# ═══════════════════════════════════════════════════════════════════════════════

def _u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _i64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<q", data, offset)[0]


def _pubkey(data: bytes, offset: int) -> Pubkey:
    return Pubkey.from_bytes(bytes(data[offset:offset + 32]))


def _u64_array(data: bytes, offset: int, count: int = SLOT_COUNT) -> Tuple[int, ...]:
    return struct.unpack_from(f"<{count}Q", data, offset)


def _i80f48(data: bytes, offset: int) -> int:
    """Raw signed 128-bit fixed-point value (scale 2**48)."""
    return int.from_bytes(bytes(data[offset:offset + 16]), "little", signed=True)


# ═══════════════════════════════════════════════════════════════════════════════
# LAYOUTS
# ═══════════════════════════════════════════════════════════════════════════════

def _decode_pool(data: bytes) -> PoolState:
    return PoolState(
        balance=_u64(data, 8),
        motherlode=_u64(data, 16),
        miner_rewards_factor=_i80f48(data, 24),
        stake_rewards_factor=_i80f48(data, 40),
        total_staked=_u64(data, 72),
        total_unclaimed=_u64(data, 80),
        total_refined=_u64(data, 88),
    )


def _decode_round_cursor(data: bytes) -> RoundCursor:
    return RoundCursor(
        round_id=_u64(data, 8),
        start_slot=_u64(data, 16),
        end_slot=_u64(data, 24),
    )


def _decode_round(data: bytes) -> RoundState:
    return RoundState(
        id=_u64(data, 8),
        deployed=_u64_array(data, 16),
        slot_hash=bytes(data[216:248]),
        count=_u64_array(data, 248),
        expires_at=_u64(data, 448),
        motherlode=_u64(data, 456),
        rent_payer=_pubkey(data, 464),
        top_miner=_pubkey(data, 496),
        top_miner_reward=_u64(data, 528),
        total_deployed=_u64(data, 536),
        total_vaulted=_u64(data, 544),
        total_winnings=_u64(data, 552),
    )


def _decode_participant(data: bytes) -> ParticipantState:
    return ParticipantState(
        authority=_pubkey(data, 8),
        deployed=_u64_array(data, 40),
        cumulative=_u64_array(data, 240),
        checkpoint_fee=_u64(data, 440),
        checkpoint_id=_u64(data, 448),
        last_claim_orb_at=_i64(data, 456),
        last_claim_sol_at=_i64(data, 464),
        rewards_factor=_i80f48(data, 472),
        rewards_sol=_u64(data, 488),
        rewards_orb=_u64(data, 496),
        refined_orb=_u64(data, 504),
        round_id=_u64(data, 512),
        lifetime_rewards_sol=_u64(data, 520),
        lifetime_rewards_orb=_u64(data, 528),
    )


def _decode_stake(data: bytes) -> StakeState:
    return StakeState(
        authority=_pubkey(data, 8),
        balance=_u64(data, 40),
        last_claim_at=_i64(data, 48),
        last_deposit_at=_i64(data, 56),
        last_withdraw_at=_i64(data, 64),
        rewards_factor=_i80f48(data, 72),
        rewards=_u64(data, 88),
        lifetime_rewards=_u64(data, 96),
    )


def _decode_automation(data: bytes) -> AutomationState:
    return AutomationState(
        amount_per_slot=_u64(data, 8),
        authority=_pubkey(data, 16),
        balance=_u64(data, 48),
        executor=_pubkey(data, 56),
        fee=_u64(data, 88),
        strategy=_u64(data, 96),
        mask=_u64(data, 104),
    )


def _decode_config(data: bytes) -> ProgramConfig:
    return ProgramConfig(var_address=_pubkey(data, 136))


# kind -> (minimum length, decoder)
LAYOUTS: Dict[AccountKind, Tuple[int, Callable[[bytes], Record]]] = {
    AccountKind.POOL: (96, _decode_pool),
    AccountKind.ROUND_CURSOR: (32, _decode_round_cursor),
    AccountKind.ROUND: (560, _decode_round),
    AccountKind.PARTICIPANT: (536, _decode_participant),
    AccountKind.STAKE: (104, _decode_stake),
    AccountKind.AUTOMATION: (112, _decode_automation),
    AccountKind.CONFIG: (168, _decode_config),
}


def decode(buffer: Optional[bytes], kind: AccountKind) -> Optional[Record]:
    """
    Decode an account blob into its record.

    Args:
        buffer: Raw account data, or None if the account does not exist
        kind: Which layout to apply

    Returns:
        The decoded record, or None for an absent account

    Raises:
        DecodeError: buffer shorter than the layout or otherwise unreadable
    """
    if buffer is None:
        return None

    min_len, decoder = LAYOUTS[kind]
    if len(buffer) < min_len:
        raise DecodeError(kind.value, f"expected at least {min_len} bytes, got {len(buffer)}")

    try:
        record = decoder(bytes(buffer))
    except (struct.error, ValueError) as e:
        raise DecodeError(kind.value, str(e)) from e

    if isinstance(record, RoundCursor) and record.end_slot <= record.start_slot:
        raise DecodeError(kind.value, f"end slot {record.end_slot} not after start slot {record.start_slot}")
    return record


# ═══════════════════════════════════════════════════════════════════════════════
# FIXED-POINT YIELD
# ═══════════════════════════════════════════════════════════════════════════════

def accrued_yield(current_global_factor: int, stored_factor: int, balance: int) -> int:
    """
    Unclaimed yield accrued since the stored factor snapshot.

    (current - stored) * balance, scaled down by 2**48. Integer math with a
    single floor at the end, so the result is exact to one base unit.
    """
    delta = current_global_factor - stored_factor
    if delta <= 0 or balance <= 0:
        return 0
    return (delta * balance) >> FIXED_POINT_FRACTION_BITS


def claimable_stake_yield(stake: StakeState, pool: PoolState) -> int:
    """Already-settled stake rewards plus yield accrued since the last update."""
    return stake.rewards + accrued_yield(pool.stake_rewards_factor, stake.rewards_factor, stake.balance)


def pending_refined_orb(participant: ParticipantState, pool: PoolState) -> int:
    """Refining yield on unclaimed ORB not yet folded into refined_orb."""
    return accrued_yield(pool.miner_rewards_factor, participant.rewards_factor, participant.rewards_orb)
