"""
Priority Fee Estimator
======================
Adaptive compute-unit pricing with RPC capability probing.

Probe order per endpoint:
    1. Vendor-extended `getPriorityFeeEstimate` (Helius)
    2. Standard `getRecentPrioritizationFees` percentile sampling
    3. Static configured [min, max] bounds

The detected capability is cached per endpoint on the estimator
instance. Every probe has its own timeout; a failed probe degrades to
the next path and never raises to the caller.

Usage:
    estimator = PriorityFeeEstimator(rpc_url, min_fee=100, max_fee=50_000)
    fee = await estimator.estimate(accounts, RiskTier.MEDIUM, 300_000)
    # fee.compute_unit_price -> microLamports per CU
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from solders.pubkey import Pubkey

from orbminer.shared.system.logging import Logger


class RiskTier(Enum):
    """How aggressively to price a transaction."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "veryHigh"

    @classmethod
    def from_name(cls, name: str) -> "RiskTier":
        key = name.replace("_", "").lower()
        for tier in cls:
            if tier.value.lower() == key:
                return tier
        raise ValueError(f"unknown priority fee level {name!r}")

    @property
    def percentile(self) -> int:
        return _PERCENTILES[self]

    @property
    def helius_level(self) -> str:
        return _HELIUS_LEVELS[self]


_PERCENTILES = {
    RiskTier.LOW: 25,
    RiskTier.MEDIUM: 50,
    RiskTier.HIGH: 75,
    RiskTier.VERY_HIGH: 95,
}

_HELIUS_LEVELS = {
    RiskTier.LOW: "Low",
    RiskTier.MEDIUM: "Medium",
    RiskTier.HIGH: "High",
    RiskTier.VERY_HIGH: "VeryHigh",
}


class FeeCapability(Enum):
    UNKNOWN = "unknown"
    ADVANCED = "advanced"
    STANDARD = "standard"
    NONE = "none"


@dataclass(frozen=True)
class FeeEstimate:
    """Priced compute budget for one attempt."""

    compute_unit_price: int  # microLamports per CU
    compute_unit_limit: int
    total_fee: int  # lamports
    source: FeeCapability

    @property
    def total_fee_sol(self) -> float:
        return self.total_fee / 1e9


def total_priority_fee(price_micro_lamports: int, compute_limit: int) -> int:
    """price × limit / 1e6, rounded up to whole lamports."""
    return -(-price_micro_lamports * compute_limit // 1_000_000)


class CapabilityCache:
    """
    Per-endpoint capability with a bounded TTL.

    Last write wins. A stale entry only costs estimation quality.
    """

    def __init__(self, ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[FeeCapability, float]] = {}

    def get(self, endpoint: str) -> FeeCapability:
        entry = self._entries.get(endpoint)
        if entry is None:
            return FeeCapability.UNKNOWN
        capability, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[endpoint]
            return FeeCapability.UNKNOWN
        return capability

    def set(self, endpoint: str, capability: FeeCapability) -> None:
        self._entries[endpoint] = (capability, self._clock())

    def invalidate(self, endpoint: Optional[str] = None) -> None:
        if endpoint is None:
            self._entries.clear()
        else:
            self._entries.pop(endpoint, None)


class PriorityFeeEstimator:
    """Prices transactions per risk tier, degrading gracefully."""

    def __init__(
        self,
        rpc_url: str,
        min_fee: int,
        max_fee: int,
        probe_timeout: float = 5.0,
        cache: Optional[CapabilityCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if max_fee < min_fee:
            raise ValueError(f"max_fee ({max_fee}) < min_fee ({min_fee})")
        self.rpc_url = rpc_url
        self.min_fee = min_fee
        self.max_fee = max_fee
        self.probe_timeout = probe_timeout
        self.cache = cache or CapabilityCache()
        self._http = http_client
        self._request_id = 0

    # ═══════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════

    async def estimate(
        self,
        accounts: Sequence[Pubkey],
        tier: RiskTier = RiskTier.MEDIUM,
        compute_limit: int = 200_000,
    ) -> FeeEstimate:
        """
        Price a transaction touching `accounts`.

        Args:
            accounts: Writable accounts of the transaction
            tier: Risk tier
            compute_limit: Compute unit limit the price applies to

        Returns:
            FeeEstimate with a price clamped to [min_fee, max_fee]
        """
        keys = [str(a) for a in accounts]
        capability = await self.detect_capability()

        price: Optional[int] = None
        source = FeeCapability.NONE
        failed = False
        if capability == FeeCapability.ADVANCED:
            price, failed = await self._probe(self._advanced_fee(keys, tier))
            source = FeeCapability.ADVANCED
        if price is None and capability in (FeeCapability.ADVANCED, FeeCapability.STANDARD):
            price, standard_failed = await self._probe(self._standard_fee(keys, tier))
            failed = failed or standard_failed
            source = FeeCapability.STANDARD

        if failed:
            # Re-probe next time instead of trusting a capability that just failed
            self.cache.invalidate(self.rpc_url)
        if price is None:
            Logger.debug(f"[FEE] Estimation degraded to static bounds ({tier.value})")
            price = self.static_fee(tier)
            source = FeeCapability.NONE

        price = self.clamp(price)
        return FeeEstimate(
            compute_unit_price=price,
            compute_unit_limit=compute_limit,
            total_fee=total_priority_fee(price, compute_limit),
            source=source,
        )

    async def detect_capability(self) -> FeeCapability:
        """Probe the endpoint once per TTL and cache the result."""
        cached = self.cache.get(self.rpc_url)
        if cached != FeeCapability.UNKNOWN:
            return cached

        advanced, _ = await self._probe(self._advanced_fee([], RiskTier.MEDIUM))
        if advanced is not None:
            capability = FeeCapability.ADVANCED
        else:
            samples, _ = await self._probe(self._recent_fees([]))
            capability = FeeCapability.STANDARD if samples else FeeCapability.NONE

        Logger.debug(f"[FEE] {self.rpc_url} capability: {capability.value}")
        self.cache.set(self.rpc_url, capability)
        return capability

    def static_fee(self, tier: RiskTier) -> int:
        """Fixed ratios of the configured bounds."""
        if tier == RiskTier.LOW:
            return self.min_fee
        if tier == RiskTier.MEDIUM:
            return (self.min_fee + self.max_fee) // 2
        if tier == RiskTier.HIGH:
            return math.floor(self.max_fee * 0.75)
        return self.max_fee

    def clamp(self, price: int) -> int:
        return max(self.min_fee, min(self.max_fee, int(price)))

    # ═══════════════════════════════════════════════════════════════════
    # PROBES
    # ═══════════════════════════════════════════════════════════════════

    async def _probe(self, coro) -> Tuple[Any, bool]:
        """Run one probe under its own timeout. Returns (value, failed)."""
        try:
            return await asyncio.wait_for(coro, timeout=self.probe_timeout), False
        except Exception as e:
            Logger.debug(f"[FEE] Probe unavailable: {type(e).__name__}: {e}")
            return None, True

    async def _advanced_fee(self, keys: List[str], tier: RiskTier) -> Optional[int]:
        result = await self._rpc(
            "getPriorityFeeEstimate",
            [{"accountKeys": keys, "options": {"priorityLevel": tier.helius_level}}],
        )
        estimate = result.get("priorityFeeEstimate") if isinstance(result, dict) else None
        if estimate is None:
            return None
        return int(estimate)

    async def _recent_fees(self, keys: List[str]) -> List[int]:
        result = await self._rpc("getRecentPrioritizationFees", [keys] if keys else [])
        return [int(entry.get("prioritizationFee", 0)) for entry in result or []]

    async def _standard_fee(self, keys: List[str], tier: RiskTier) -> Optional[int]:
        """Tier percentile of the non-zero recent fees; None when every sample is zero."""
        fees = sorted(fee for fee in await self._recent_fees(keys) if fee > 0)
        return percentile(fees, tier.percentile)

    async def _rpc(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        if self._http is not None:
            response = await self._http.post(self.rpc_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.probe_timeout) as client:
                response = await client.post(self.rpc_url, json=payload)

        response.raise_for_status()
        body = response.json()
        if "error" in body:
            raise RuntimeError(f"{method}: {body['error'].get('message', body['error'])}")
        return body.get("result")


def percentile(sorted_values: Sequence[int], pct: int) -> Optional[int]:
    """Nearest-rank percentile over an ascending sequence."""
    if not sorted_values:
        return None
    index = min(len(sorted_values) * pct // 100, len(sorted_values) - 1)
    return sorted_values[index]
