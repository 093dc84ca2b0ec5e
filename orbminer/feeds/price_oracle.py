"""
ORB Price Oracle
================
Best-effort ORB/SOL rate from a 1-ORB Jupiter quote.

Never blocks a decision: on failure it returns the last known quote,
or a zero rate when nothing was ever fetched.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from orbminer.execution.swapper import SOL_MINT, JupiterEndpoints, fetch_quote
from orbminer.protocol.constants import BASE_UNITS
from orbminer.shared.system.logging import Logger


@dataclass(frozen=True)
class PriceQuote:
    price_in_sol: float
    fetched_at: float
    stale: bool = False


class JupiterPriceOracle:
    """ORB price in SOL, cached for `ttl` seconds on the instance."""

    def __init__(
        self,
        orb_mint: str,
        endpoints: JupiterEndpoints,
        ttl: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orb_mint = orb_mint
        self.endpoints = endpoints
        self.ttl = ttl
        self._http = http_client or httpx.AsyncClient(timeout=10.0)
        self._clock = clock
        self._last: Optional[PriceQuote] = None

    async def get_price(self) -> PriceQuote:
        now = self._clock()
        if self._last is not None and now - self._last.fetched_at < self.ttl:
            return self._last

        quote = await fetch_quote(self._http, self.endpoints, self.orb_mint, SOL_MINT, BASE_UNITS, 50)
        if quote:
            self._last = PriceQuote(price_in_sol=int(quote["outAmount"]) / 1e9, fetched_at=now)
            Logger.debug(f"[PRICE] ORB = {self._last.price_in_sol:.6f} SOL")
            return self._last

        if self._last is not None:
            Logger.warning(f"[PRICE] Quote unavailable, using last known {self._last.price_in_sol:.6f} SOL")
            return PriceQuote(self._last.price_in_sol, self._last.fetched_at, stale=True)

        Logger.warning("[PRICE] Quote unavailable and no previous price, using 0")
        return PriceQuote(price_in_sol=0.0, fetched_at=now, stale=True)

    def invalidate(self) -> None:
        self._last = None

    async def close(self) -> None:
        await self._http.aclose()
