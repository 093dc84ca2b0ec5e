"""
Protocol Layer
==============
Program constants, address derivation and account decoding.
"""

from .pda import AddressDeriver, derive_address
from .state_codec import AccountKind, decode

__all__ = ["AddressDeriver", "derive_address", "AccountKind", "decode"]
