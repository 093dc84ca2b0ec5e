"""
Instruction Factory
===================
Pure, deterministic ORB instruction building.

100% testable without RPC or wallet connections: every builder takes the
state it needs (round id, participant record, automation record) as
arguments instead of fetching it.

Responsibilities:
- Encode every ORB program instruction byte-for-byte
- Attach the protocol fee transfer to automated deploy paths
- Set ComputeBudget limits / prices
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from orbminer.protocol.constants import (
    AUTOMATE_OPCODE,
    CHECKPOINT_OPCODE,
    CLAIM_ORB_OPCODE,
    CLAIM_SOL_OPCODE,
    CLAIM_YIELD_OPCODE,
    DEPLOY_DISCRIMINATOR,
    DEPLOY_SLOT_SELECTOR,
    EXECUTE_AUTOMATION_OPCODE,
    FEE_BPS,
    FEE_COLLECTOR,
    SLOT_COUNT,
    STAKE_DISCRIMINATOR,
)
from orbminer.protocol.pda import AddressDeriver
from orbminer.shared.models.accounts import AutomationState, ParticipantState, RoundCursor
from orbminer.shared.system.logging import Logger


# ═══════════════════════════════════════════════════════════════════════════════
# SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class AutomationStrategy(IntEnum):
    """Slot-selection mode stored in the automation account."""
    RANDOM = 0
    PREFERRED = 1


@dataclass(frozen=True)
class AutomationParams:
    """Parameters of an automate instruction (all base units)."""

    amount_per_slot: int
    deposit: int
    fee: int
    slot_selector: int = SLOT_COUNT
    strategy: AutomationStrategy = AutomationStrategy.RANDOM

    def __post_init__(self):
        for name in ("amount_per_slot", "deposit", "fee", "slot_selector"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")


def _signer(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=True, is_writable=True)


def _writable(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=False, is_writable=True)


def _readonly(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=False, is_writable=False)


def protocol_fee(amount_lamports: int) -> int:
    """Flat basis-point fee on an automated deployment."""
    return (amount_lamports * FEE_BPS) // 10_000


# ═══════════════════════════════════════════════════════════════════════════════
# INSTRUCTION FACTORY
# ═══════════════════════════════════════════════════════════════════════════════

class InstructionFactory:
    """
    Stateless builder for ORB program instructions.

    This class contains NO side effects - it only constructs
    Instruction objects from provided parameters.

    Example:
        factory = InstructionFactory(wallet.pubkey, deriver)
        ixs = factory.build_deploy_with_fee(amount_lamports=40_000, round_id=501)
    """

    def __init__(self, payer: Pubkey, deriver: AddressDeriver, fee_collector: Pubkey = FEE_COLLECTOR):
        """
        Args:
            payer: Wallet that signs and pays for every instruction
            deriver: PDA derivation for the target program
            fee_collector: Recipient of the automated-deploy fee
        """
        self.payer = payer
        self.deriver = deriver
        self.program_id = deriver.program_id
        self.fee_collector = fee_collector

    # ─────────────────────────────────────────────────────────────────────
    # Compute budget / fee transfer
    # ─────────────────────────────────────────────────────────────────────

    def build_compute_budget_instructions(self, units: int, price_micro_lamports: int) -> List[Instruction]:
        """
        Build ComputeBudget instructions.

        Args:
            units: Compute unit limit
            price_micro_lamports: Priority fee per CU (microLamports)

        Returns:
            [set_compute_unit_limit, set_compute_unit_price]
        """
        return [
            set_compute_unit_limit(units),
            set_compute_unit_price(price_micro_lamports),
        ]

    def build_fee_transfer(self, amount_lamports: int) -> Optional[Instruction]:
        """
        Fee transfer for an automated deployment of `amount_lamports`.

        Returns None when the payer is the collector or the fee rounds to 0.
        """
        if self.payer == self.fee_collector:
            Logger.debug("[DEPLOY] Skipping protocol fee (payer is collector)")
            return None

        fee = protocol_fee(amount_lamports)
        if fee <= 0:
            return None

        return transfer(
            TransferParams(
                from_pubkey=self.payer,
                to_pubkey=self.fee_collector,
                lamports=fee,
            )
        )

    # ─────────────────────────────────────────────────────────────────────
    # Deploy
    # ─────────────────────────────────────────────────────────────────────

    def build_deploy(self, amount_lamports: int, round_id: int) -> Instruction:
        """
        Deploy `amount_lamports` into round `round_id`.

        Layout (34 bytes):
            [0..8)   opcode
            [8..16)  amount u64
            [16..20) slot selector u32 (sentinel 0)
            [20..24) reserved u32
            [24..28) slot count u32 (25)
            [28..34) reserved
        """
        data = (
            DEPLOY_DISCRIMINATOR
            + struct.pack("<QIII", amount_lamports, DEPLOY_SLOT_SELECTOR, 0, SLOT_COUNT)
            + bytes(6)
        )

        accounts = [
            _signer(self.payer),
            _writable(self.payer),  # authority
            _writable(self.deriver.automation(self.payer)[0]),
            _writable(self.deriver.board()[0]),
            _writable(self.deriver.miner(self.payer)[0]),
            _writable(self.deriver.round(round_id)[0]),
            _writable(self.deriver.treasury()[0]),
            _readonly(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(self.program_id, data, accounts)

    def build_deploy_with_fee(self, amount_lamports: int, round_id: int) -> List[Instruction]:
        """Deploy plus the protocol fee on the full round amount (amount × 25)."""
        instructions = []
        fee_ix = self.build_fee_transfer(amount_lamports * SLOT_COUNT)
        if fee_ix is not None:
            instructions.append(fee_ix)
        instructions.append(self.build_deploy(amount_lamports, round_id))
        return instructions

    # ─────────────────────────────────────────────────────────────────────
    # Checkpoint / claims
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def resolve_checkpoint_round(participant: Optional[ParticipantState], cursor: RoundCursor) -> int:
        """
        The round a checkpoint must target.

        The participant's own recorded round when a record exists,
        otherwise the round before the live one.
        """
        if participant is not None:
            return participant.round_id
        return max(cursor.round_id - 1, 0)

    def build_checkpoint(
        self,
        participant: Optional[ParticipantState],
        cursor: RoundCursor,
        round_id: Optional[int] = None,
    ) -> Instruction:
        target = round_id if round_id is not None else self.resolve_checkpoint_round(participant, cursor)

        accounts = [
            _signer(self.payer),
            _writable(self.deriver.board()[0]),
            _writable(self.deriver.miner(self.payer)[0]),
            _writable(self.deriver.round(target)[0]),
            _writable(self.deriver.treasury()[0]),
            _readonly(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(self.program_id, bytes([CHECKPOINT_OPCODE]), accounts)

    def build_claim_sol(self) -> Instruction:
        accounts = [
            _signer(self.payer),
            _writable(self.deriver.miner(self.payer)[0]),
            _readonly(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(self.program_id, bytes([CLAIM_SOL_OPCODE]), accounts)

    def build_claim_orb(self) -> Instruction:
        accounts = [
            _signer(self.payer),
            _writable(self.deriver.miner(self.payer)[0]),
            _readonly(self.deriver.mint),
            _writable(self.deriver.token_account(self.payer)),
            _writable(self.deriver.treasury()[0]),
            _writable(self.deriver.treasury_token_account()),
            _readonly(SYSTEM_PROGRAM_ID),
            _readonly(TOKEN_PROGRAM_ID),
            _readonly(ASSOCIATED_TOKEN_PROGRAM_ID),
        ]
        return Instruction(self.program_id, bytes([CLAIM_ORB_OPCODE]), accounts)

    def build_claim_yield(self, amount: int) -> Instruction:
        """Claim `amount` ORB base units of staking yield."""
        data = bytes([CLAIM_YIELD_OPCODE]) + struct.pack("<Q", amount)
        accounts = [
            _signer(self.payer),
            _readonly(self.deriver.mint),
            _writable(self.deriver.token_account(self.payer)),
            _writable(self.deriver.stake(self.payer)[0]),
            _writable(self.deriver.treasury()[0]),
            _writable(self.deriver.treasury_token_account()),
            _readonly(SYSTEM_PROGRAM_ID),
            _readonly(TOKEN_PROGRAM_ID),
            _readonly(ASSOCIATED_TOKEN_PROGRAM_ID),
        ]
        return Instruction(self.program_id, data, accounts)

    # ─────────────────────────────────────────────────────────────────────
    # Stake
    # ─────────────────────────────────────────────────────────────────────

    def build_stake(self, amount: int) -> Instruction:
        data = STAKE_DISCRIMINATOR + struct.pack("<Q", amount)
        accounts = [
            _signer(self.payer),
            _writable(self.deriver.stake(self.payer)[0]),
            _writable(self.deriver.mint),
            _readonly(TOKEN_PROGRAM_ID),
            _readonly(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(self.program_id, data, accounts)

    # ─────────────────────────────────────────────────────────────────────
    # Automation
    # ─────────────────────────────────────────────────────────────────────

    def build_automate(self, params: AutomationParams, executor: Optional[Pubkey] = None) -> Instruction:
        """
        Create / update the automation account.

        Layout (34 bytes): opcode u8, amount u64, deposit u64, fee u64,
        slot selector u64, strategy u8.
        """
        executor = executor if executor is not None else self.payer
        data = struct.pack(
            "<BQQQQB",
            AUTOMATE_OPCODE,
            params.amount_per_slot,
            params.deposit,
            params.fee,
            params.slot_selector,
            int(params.strategy),
        )
        accounts = [
            _signer(self.payer),
            _writable(self.deriver.automation(self.payer)[0]),
            _writable(executor),
            _writable(self.deriver.miner(self.payer)[0]),
            _readonly(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(self.program_id, data, accounts)

    def build_close_automation(self) -> Instruction:
        """Zeroed automate with the default executor closes the account."""
        return self.build_automate(
            AutomationParams(amount_per_slot=0, deposit=0, fee=0, slot_selector=0),
            executor=Pubkey.default(),
        )

    def build_execute_automation(self, automation: AutomationState, round_id: int) -> List[Instruction]:
        """
        Execute the configured automation for round `round_id`.

        Returns [fee transfer?, execute]. Data (13 bytes): opcode u8,
        amount u32, reserved u32, mask u32.
        """
        data = struct.pack(
            "<BIII",
            EXECUTE_AUTOMATION_OPCODE,
            automation.amount_per_slot & 0xFFFFFFFF,
            0,
            automation.mask & 0xFFFFFFFF,
        )
        accounts = [
            _signer(self.payer),
            _writable(self.payer),  # authority
            _writable(self.deriver.automation(self.payer)[0]),
            _writable(self.deriver.board()[0]),
            _writable(self.deriver.miner(self.payer)[0]),
            _writable(self.deriver.round(round_id)[0]),
            _readonly(SYSTEM_PROGRAM_ID),
        ]

        instructions = []
        fee_ix = self.build_fee_transfer(automation.cost_per_round)
        if fee_ix is not None:
            instructions.append(fee_ix)
        instructions.append(Instruction(self.program_id, data, accounts))
        return instructions

    # ─────────────────────────────────────────────────────────────────────
    # Validation
    # ─────────────────────────────────────────────────────────────────────

    def validate_instructions(self, instructions: List[Instruction]) -> Tuple[bool, List[str]]:
        """
        Validate instruction list before submission.

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []

        if not instructions:
            errors.append("Empty instruction list")

        for i, ix in enumerate(instructions):
            if not ix.program_id:
                errors.append(f"Instruction {i}: missing program_id")
            if ix.program_id == self.program_id:
                if not ix.data:
                    errors.append(f"Instruction {i}: empty data")
                if not ix.accounts or ix.accounts[0].pubkey != self.payer or not ix.accounts[0].is_signer:
                    errors.append(f"Instruction {i}: first account must be the signing payer")

        return len(errors) == 0, errors


def writable_accounts(instructions: List[Instruction]) -> List[Pubkey]:
    """Unique writable accounts, in first-seen order (fee estimation input)."""
    seen = []
    for ix in instructions:
        for meta in ix.accounts:
            if meta.is_writable and meta.pubkey not in seen:
                seen.append(meta.pubkey)
    return seen
