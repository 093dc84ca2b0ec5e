"""
Address Derivation
==================
Program-derived addresses for the ORB program.

Pure and deterministic. Seed order and encoding must match the program
exactly: a wrong seed yields a valid but unrelated address.
"""

from __future__ import annotations

from typing import Sequence, Tuple

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from orbminer.protocol.constants import (
    AUTOMATION_SEED,
    BOARD_SEED,
    CONFIG_SEED,
    MINER_SEED,
    ROUND_SEED,
    STAKE_SEED,
    TREASURY_SEED,
)


def derive_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Return (address, bump) for the given seeds."""
    return Pubkey.find_program_address(list(seeds), program_id)


class AddressDeriver:
    """Seed schemes for every account the client touches."""

    def __init__(self, program_id: Pubkey, mint: Pubkey):
        self.program_id = program_id
        self.mint = mint

    def treasury(self) -> Tuple[Pubkey, int]:
        return derive_address([TREASURY_SEED], self.program_id)

    def board(self) -> Tuple[Pubkey, int]:
        return derive_address([BOARD_SEED], self.program_id)

    def config(self) -> Tuple[Pubkey, int]:
        return derive_address([CONFIG_SEED], self.program_id)

    def round(self, round_id: int) -> Tuple[Pubkey, int]:
        return derive_address([ROUND_SEED, round_id.to_bytes(8, "little")], self.program_id)

    def miner(self, owner: Pubkey) -> Tuple[Pubkey, int]:
        return derive_address([MINER_SEED, bytes(owner)], self.program_id)

    def stake(self, owner: Pubkey) -> Tuple[Pubkey, int]:
        return derive_address([STAKE_SEED, bytes(owner)], self.program_id)

    def automation(self, owner: Pubkey) -> Tuple[Pubkey, int]:
        return derive_address([AUTOMATION_SEED, bytes(owner)], self.program_id)

    def token_account(self, owner: Pubkey) -> Pubkey:
        """Associated token account of `owner` for the reward mint."""
        return get_associated_token_address(owner, self.mint)

    def treasury_token_account(self) -> Pubkey:
        # Treasury is a PDA (off-curve owner)
        return get_associated_token_address(self.treasury()[0], self.mint)
