"""
InstructionFactory Unit Tests
=============================
Byte layouts, account order and fee attachment.

100% testable without RPC or wallet connections.
"""

import struct

import pytest
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID


def _participant(round_id=500, checkpoint_id=499):
    from orbminer.shared.models.accounts import ParticipantState

    return ParticipantState(
        authority=Pubkey.default(),
        deployed=(0,) * 25,
        cumulative=(0,) * 25,
        checkpoint_fee=0,
        checkpoint_id=checkpoint_id,
        last_claim_orb_at=0,
        last_claim_sol_at=0,
        rewards_factor=0,
        rewards_sol=0,
        rewards_orb=0,
        refined_orb=0,
        round_id=round_id,
        lifetime_rewards_sol=0,
        lifetime_rewards_orb=0,
    )


def _cursor(round_id=501):
    from orbminer.shared.models.accounts import RoundCursor

    return RoundCursor(round_id=round_id, start_slot=1000, end_slot=1150)


class TestDeploy:
    """Deploy instruction encoding."""

    def test_data_layout(self, factory):
        """8-byte opcode, amount, sentinel selector, reserved, slot count, padding."""
        from orbminer.protocol.constants import DEPLOY_DISCRIMINATOR

        ix = factory.build_deploy(40_000, 501)

        assert len(ix.data) == 34
        assert ix.data[:8] == DEPLOY_DISCRIMINATOR
        amount, selector, reserved, slots = struct.unpack_from("<QIII", ix.data, 8)
        assert (amount, selector, reserved, slots) == (40_000, 0, 0, 25)
        assert ix.data[28:] == bytes(6)

    def test_account_order(self, factory, deriver, keypair):
        owner = keypair.pubkey()
        ix = factory.build_deploy(40_000, 501)
        keys = [meta.pubkey for meta in ix.accounts]

        assert ix.program_id == deriver.program_id
        assert keys == [
            owner,
            owner,
            deriver.automation(owner)[0],
            deriver.board()[0],
            deriver.miner(owner)[0],
            deriver.round(501)[0],
            deriver.treasury()[0],
            SYSTEM_PROGRAM_ID,
        ]
        assert ix.accounts[0].is_signer and ix.accounts[0].is_writable
        assert not ix.accounts[-1].is_writable

    def test_with_fee_charges_full_round(self, factory):
        """Fee transfer precedes the deploy and is 50 bps of amount × 25."""
        ixs = factory.build_deploy_with_fee(40_000, 501)

        assert len(ixs) == 2
        assert ixs[0].program_id == SYSTEM_PROGRAM_ID
        lamports = struct.unpack_from("<Q", ixs[0].data, 4)[0]
        assert lamports == 40_000 * 25 * 50 // 10_000
        assert ixs[1].data[:8] == factory.build_deploy(40_000, 501).data[:8]

    def test_fee_skipped_when_payer_is_collector(self, keypair, deriver):
        from orbminer.execution.instruction_factory import InstructionFactory

        factory = InstructionFactory(keypair.pubkey(), deriver, fee_collector=keypair.pubkey())
        ixs = factory.build_deploy_with_fee(40_000, 501)

        assert len(ixs) == 1
        assert ixs[0].program_id == deriver.program_id

    def test_fee_skipped_when_rounding_to_zero(self, factory):
        assert factory.build_fee_transfer(199) is None
        assert factory.build_fee_transfer(200) is not None


class TestCheckpoint:
    """Checkpoint targets the participant's round, not the live one."""

    def test_targets_participant_round(self, factory, deriver):
        ix = factory.build_checkpoint(_participant(round_id=500), _cursor(501))

        assert ix.data == bytes([0x02])
        assert ix.accounts[3].pubkey == deriver.round(500)[0]
        assert ix.accounts[3].pubkey != deriver.round(501)[0]

    def test_falls_back_to_previous_round(self, factory, deriver):
        ix = factory.build_checkpoint(None, _cursor(501))
        assert ix.accounts[3].pubkey == deriver.round(500)[0]

    def test_explicit_round_wins(self, factory, deriver):
        ix = factory.build_checkpoint(_participant(round_id=500), _cursor(501), round_id=42)
        assert ix.accounts[3].pubkey == deriver.round(42)[0]

    def test_resolve_never_negative(self):
        from orbminer.execution.instruction_factory import InstructionFactory

        assert InstructionFactory.resolve_checkpoint_round(None, _cursor(0)) == 0


class TestClaimsAndStake:

    def test_claim_sol(self, factory, deriver, keypair):
        ix = factory.build_claim_sol()
        assert ix.data == bytes([0x03])
        assert [m.pubkey for m in ix.accounts] == [
            keypair.pubkey(), deriver.miner(keypair.pubkey())[0], SYSTEM_PROGRAM_ID,
        ]

    def test_claim_orb(self, factory, deriver, keypair):
        ix = factory.build_claim_orb()
        assert ix.data == bytes([0x04])
        assert len(ix.accounts) == 9
        assert ix.accounts[2].pubkey == deriver.mint
        assert ix.accounts[3].pubkey == deriver.token_account(keypair.pubkey())
        assert ix.accounts[5].pubkey == deriver.treasury_token_account()

    def test_claim_yield(self, factory, deriver, keypair):
        ix = factory.build_claim_yield(123_456)
        assert ix.data == bytes([0x0C]) + struct.pack("<Q", 123_456)
        assert ix.accounts[3].pubkey == deriver.stake(keypair.pubkey())[0]

    def test_stake(self, factory, deriver, keypair):
        from orbminer.protocol.constants import STAKE_DISCRIMINATOR

        ix = factory.build_stake(50_000_000_000)
        assert ix.data == STAKE_DISCRIMINATOR + struct.pack("<Q", 50_000_000_000)
        assert ix.accounts[1].pubkey == deriver.stake(keypair.pubkey())[0]


class TestAutomation:

    def test_automate_layout(self, factory, deriver, keypair):
        from orbminer.execution.instruction_factory import AutomationParams

        ix = factory.build_automate(AutomationParams(amount_per_slot=1_000, deposit=500_000, fee=0))

        assert len(ix.data) == 34
        assert struct.unpack("<BQQQQB", ix.data) == (0x00, 1_000, 500_000, 0, 25, 0)
        assert ix.accounts[1].pubkey == deriver.automation(keypair.pubkey())[0]
        assert ix.accounts[2].pubkey == keypair.pubkey()

    def test_close_uses_zeros_and_default_executor(self, factory):
        ix = factory.build_close_automation()

        assert struct.unpack("<BQQQQB", ix.data) == (0x00, 0, 0, 0, 0, 0)
        assert ix.accounts[2].pubkey == Pubkey.default()

    def test_negative_params_rejected(self):
        from orbminer.execution.instruction_factory import AutomationParams

        with pytest.raises(ValueError, match="deposit"):
            AutomationParams(amount_per_slot=1, deposit=-1, fee=0)

    def test_execute_automation(self, factory, deriver, keypair):
        from orbminer.shared.models.accounts import AutomationState

        automation = AutomationState(
            amount_per_slot=1_000, authority=keypair.pubkey(), balance=100_000,
            executor=keypair.pubkey(), fee=0, strategy=0, mask=25,
        )
        fee_ix, ix = factory.build_execute_automation(automation, 501)

        assert struct.unpack_from("<Q", fee_ix.data, 4)[0] == 25_000 * 50 // 10_000
        assert struct.unpack("<BIII", ix.data) == (0x06, 1_000, 0, 25)
        assert ix.accounts[5].pubkey == deriver.round(501)[0]


class TestValidation:

    def test_valid_list(self, factory):
        valid, errors = factory.validate_instructions(factory.build_deploy_with_fee(40_000, 1))
        assert valid
        assert errors == []

    def test_empty_list(self, factory):
        valid, errors = factory.validate_instructions([])
        assert not valid
        assert "Empty instruction list" in errors

    def test_foreign_payer_rejected(self, deriver, factory):
        from orbminer.execution.instruction_factory import InstructionFactory

        other = InstructionFactory(Pubkey.new_unique(), deriver)
        valid, errors = factory.validate_instructions([other.build_claim_sol()])
        assert not valid
        assert "signing payer" in errors[0]

    def test_writable_accounts_unique(self, factory, keypair):
        from orbminer.execution.instruction_factory import writable_accounts

        keys = writable_accounts(factory.build_deploy_with_fee(40_000, 1))
        assert len(keys) == len(set(keys))
        assert keys[0] == keypair.pubkey()
        assert SYSTEM_PROGRAM_ID not in keys
