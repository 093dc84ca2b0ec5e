"""
Wallet Provider
===============
Keypair management and message signing.

Key custody is external: the secret arrives as a base58 string (env var
or CLI) and never leaves this object.
"""

import os
import threading
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from orbminer.shared.system.errors import ConfigValidationError
from orbminer.shared.system.logging import Logger


class KeypairWallet:
    """
    Signs with a single in-memory keypair.

    One signature operation at a time.
    """

    def __init__(self, keypair: Keypair):
        self._keypair = keypair
        self._lock = threading.Lock()

    @classmethod
    def from_base58(cls, private_key_base58: str) -> "KeypairWallet":
        """
        Initialize wallet from base58 private key.

        Accepts a 64-byte secret key (secret + public) or a 32-byte seed.
        """
        try:
            secret_bytes = base58.b58decode(private_key_base58.strip())
        except ValueError as e:
            raise ConfigValidationError(f"Invalid base58 private key: {e}") from e

        if len(secret_bytes) == 64:
            keypair = Keypair.from_bytes(secret_bytes)
        elif len(secret_bytes) == 32:
            keypair = Keypair.from_seed(secret_bytes)
        else:
            raise ConfigValidationError(f"Private key must be 32 or 64 bytes, got {len(secret_bytes)}")
        return cls(keypair)

    @classmethod
    def from_env(cls, var: str = "WALLET_PRIVATE_KEY") -> "KeypairWallet":
        pk = os.getenv(var)
        if not pk:
            raise ConfigValidationError(f"{var} is not set")
        wallet = cls.from_base58(pk)
        Logger.info(f"[SYSTEM] Wallet loaded: {wallet.pubkey}")
        return wallet

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        with self._lock:
            return self._keypair.sign_message(message)


def load_wallet(private_key: Optional[str] = None) -> KeypairWallet:
    """CLI-supplied key wins over the environment."""
    if private_key:
        return KeypairWallet.from_base58(private_key)
    return KeypairWallet.from_env()
