"""
Unit Test Configuration
=======================
Fixtures for pure logic tests - NO REAL NETWORK.

HTTP is only allowed through httpx.MockTransport; RPC clients are mocks.
"""

import pytest


# ============================================================================
# AUTOUSE: ENFORCE I/O ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolate_unit_tests(monkeypatch, tmp_path_factory):
    """
    Block the real httpx transport (also used by solana-py).
    MockTransport is a separate class and keeps working.
    """
    async def block_network(*args, **kwargs):
        raise RuntimeError(
            "Network I/O detected in unit test! "
            "Use httpx.MockTransport or a mocked RPC client."
        )

    monkeypatch.setattr("httpx.AsyncHTTPTransport.handle_async_request", block_network)
    monkeypatch.setenv("LOG_DIR", str(tmp_path_factory.getbasetemp() / "logs"))
    from orbminer.shared.system.logging import Logger

    Logger.set_silent(True)
    yield
