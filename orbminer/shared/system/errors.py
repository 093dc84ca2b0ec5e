"""
Error Taxonomy
==============
Exceptions raised by the on-chain interaction layer.

The automation loop catches everything below `OrbMinerError` at the tick
boundary, logs it and moves on. `ConfigValidationError` is the exception:
it is raised at startup before any network call and stops the process.
"""

from typing import List, Optional


class OrbMinerError(Exception):
    """Base class for all client errors."""


class DecodeError(OrbMinerError):
    """Account bytes are truncated or malformed. Unreadable, not absent."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind


class AccountNotFound(OrbMinerError):
    """A required singleton account (board, treasury) does not exist."""

    def __init__(self, kind: str, address: str):
        super().__init__(f"{kind} account not found at {address}")
        self.kind = kind
        self.address = address


class SimulationError(OrbMinerError):
    """Simulation predicted an on-chain failure. Never retried, never sent."""

    def __init__(self, context: str, err: object, logs: Optional[List[str]] = None):
        self.context = context
        self.err = err
        self.logs = list(logs or [])
        super().__init__(f"{context} simulation failed: {err}")


class SubmissionError(OrbMinerError):
    """Network or send failure. Retryable unless the retry predicate vetoes."""

    def __init__(self, context: str, message: str):
        self.context = context
        super().__init__(f"{context} submission failed: {message}")


class ConfirmationTimeout(OrbMinerError):
    """
    A sent transaction was not confirmed in time.

    Landing is ambiguous: state must be re-read before anything is resent.
    """

    def __init__(self, context: str, signature: str, timeout: float):
        self.context = context
        self.signature = signature
        self.timeout = timeout
        super().__init__(f"{context} tx {signature} not confirmed within {timeout:.0f}s")


class ConfigValidationError(OrbMinerError):
    """Invalid configuration or strategy parameters."""
