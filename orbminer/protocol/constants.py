"""
Protocol Constants
==================
Seeds, opcodes and fixed values of the ORB program ABI.
"""

from solders.pubkey import Pubkey

LAMPORTS_PER_SOL = 1_000_000_000
ORB_DECIMALS = 9
BASE_UNITS = 10 ** ORB_DECIMALS

# Slots per round (protocol-fixed)
SLOT_COUNT = 25

# I80F48 fixed-point scale
FIXED_POINT_FRACTION_BITS = 48

# ═══════════════════════════════════════════════════════════════════════════════
# PDA SEEDS
# ═══════════════════════════════════════════════════════════════════════════════

TREASURY_SEED = b"treasury"
BOARD_SEED = b"board"
ROUND_SEED = b"round"
MINER_SEED = b"miner"
STAKE_SEED = b"stake"
AUTOMATION_SEED = b"automation"
CONFIG_SEED = b"config"

# ═══════════════════════════════════════════════════════════════════════════════
# OPCODES
# ═══════════════════════════════════════════════════════════════════════════════

DEPLOY_DISCRIMINATOR = bytes([0x00, 0x40, 0x42, 0x0F, 0x00, 0x00, 0x00, 0x00])
STAKE_DISCRIMINATOR = bytes([0xCE, 0xB0, 0xCA, 0x12, 0xC8, 0xD1, 0xB3, 0x6C])
AUTOMATE_OPCODE = 0x00
CHECKPOINT_OPCODE = 0x02
CLAIM_SOL_OPCODE = 0x03
CLAIM_ORB_OPCODE = 0x04
EXECUTE_AUTOMATION_OPCODE = 0x06
CLAIM_YIELD_OPCODE = 0x0C

# Deploy slot-selector field: observed to require 0 rather than a bitmask
DEPLOY_SLOT_SELECTOR = 0

# ═══════════════════════════════════════════════════════════════════════════════
# FEES
# ═══════════════════════════════════════════════════════════════════════════════

FEE_COLLECTOR = Pubkey.from_string("9DTThTbggnp2P2ZGLFRfN1A3j5JUsXez1dRJak3TixB2")
FEE_BPS = 50
