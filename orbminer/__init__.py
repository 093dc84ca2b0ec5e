"""
orbminer
========
Unattended mining-game client for the ORB Solana program.
"""

__version__ = "0.1.0"
