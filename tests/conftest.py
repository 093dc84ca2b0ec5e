"""
orbminer Test Configuration
===========================
Shared fixtures and pytest markers for the test suite.
"""

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )


# ============================================================================
# SHARED FIXTURES
# ============================================================================

PROGRAM_ID = "boreXQWsKpsJz5RR9BMtN8Vk4ndAk23sutj8spWYhwk"
ORB_MINT = "orebyr4mDiPDVgnfqvF5xiu5gKnh94Szuz8dqgNqdJn"


@pytest.fixture
def keypair():
    """Deterministic signer."""
    return Keypair.from_seed(bytes(range(32)))


@pytest.fixture
def deriver():
    from orbminer.protocol.pda import AddressDeriver

    return AddressDeriver(Pubkey.from_string(PROGRAM_ID), Pubkey.from_string(ORB_MINT))


@pytest.fixture
def factory(keypair, deriver):
    from orbminer.execution.instruction_factory import InstructionFactory

    return InstructionFactory(keypair.pubkey(), deriver)


@pytest.fixture
def settings():
    """Defaults only; no environment or .env influence."""
    from config.settings import Settings

    return Settings()
