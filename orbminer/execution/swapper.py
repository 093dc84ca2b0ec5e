"""
Jupiter Swapper
===============
ORB → SOL swaps used to top up the operating balance.

Quotes walk a list of Jupiter endpoints and remember the last one that
answered; a failure on the remembered endpoint clears it.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

from orbminer.protocol.constants import BASE_UNITS
from orbminer.shared.system.logging import Logger

SOL_MINT = "So11111111111111111111111111111111111111112"

FALLBACK_ENDPOINTS = [
    "https://lite-api.jup.ag/swap/v1",
    "https://quote-api.jup.ag/v6",
    "https://api.jup.ag/v6",
]


class JupiterEndpoints:
    """Ordered endpoint list plus the last one known to work."""

    def __init__(self, primary: str, fallbacks: Optional[List[str]] = None):
        ordered = [primary.rstrip("/")] + [e for e in (fallbacks or FALLBACK_ENDPOINTS) if e != primary.rstrip("/")]
        self.endpoints = ordered
        self.working: Optional[str] = None

    def candidates(self) -> List[str]:
        if self.working is None:
            return list(self.endpoints)
        return [self.working] + [e for e in self.endpoints if e != self.working]

    def mark_working(self, endpoint: str) -> None:
        if self.working != endpoint:
            Logger.info(f"[SWAP] Using Jupiter endpoint {endpoint}")
        self.working = endpoint

    def invalidate(self) -> None:
        self.working = None


async def fetch_quote(
    http: httpx.AsyncClient,
    endpoints: JupiterEndpoints,
    input_mint: str,
    output_mint: str,
    amount: int,
    slippage_bps: int,
) -> Optional[Dict]:
    """First quote any endpoint returns, or None."""
    params = {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "amount": str(amount),
        "slippageBps": str(slippage_bps),
        "onlyDirectRoutes": "false",
    }
    for endpoint in endpoints.candidates():
        try:
            resp = await http.get(f"{endpoint}/quote", params=params)
            if resp.status_code == 200:
                quote = resp.json()
                if quote.get("outAmount"):
                    endpoints.mark_working(endpoint)
                    return quote
            Logger.debug(f"[SWAP] {endpoint} quote failed: HTTP {resp.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            Logger.debug(f"[SWAP] {endpoint} quote failed: {e}")
        if endpoint == endpoints.working:
            endpoints.invalidate()
    return None


@dataclass
class SwapResult:
    """Result of a swap execution."""

    success: bool
    input_amount: float
    output_amount: float
    signature: Optional[str] = None
    error: Optional[str] = None
    dry_run: bool = False


class JupiterSwapper:
    """Sells ORB for SOL through Jupiter."""

    def __init__(
        self,
        client: AsyncClient,
        wallet,
        orb_mint: str,
        endpoints: JupiterEndpoints,
        slippage_bps: int = 50,
        confirm_timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client = client
        self.wallet = wallet
        self.orb_mint = orb_mint
        self.endpoints = endpoints
        self.slippage_bps = slippage_bps
        self.confirm_timeout = confirm_timeout
        self._http = http_client or httpx.AsyncClient(timeout=30.0)

    async def swap_orb_for_sol(self, orb_amount: float, dry_run: bool = False) -> SwapResult:
        """
        Swap `orb_amount` ORB to SOL.

        Never raises: failures come back as SwapResult(success=False).
        """
        amount_units = int(orb_amount * BASE_UNITS)
        Logger.info(f"[SWAP] Swapping {orb_amount:.4f} ORB → SOL...")

        # Step 1: Quote
        quote = await fetch_quote(self._http, self.endpoints, self.orb_mint, SOL_MINT, amount_units, self.slippage_bps)
        if not quote:
            return SwapResult(False, orb_amount, 0.0, error="No Jupiter endpoint returned a quote")

        expected_sol = int(quote["outAmount"]) / 1e9
        Logger.info(f"[SWAP] Quote: {orb_amount:.4f} ORB → {expected_sol:.6f} SOL (impact: {quote.get('priceImpactPct', '0')}%)")

        if dry_run:
            Logger.info("[SWAP] DRY RUN: swap not sent")
            return SwapResult(True, orb_amount, expected_sol, dry_run=True)

        try:
            # Step 2: Swap transaction
            endpoint = self.endpoints.working or self.endpoints.endpoints[0]
            resp = await self._http.post(
                f"{endpoint}/swap",
                json={
                    "quoteResponse": quote,
                    "userPublicKey": str(self.wallet.pubkey),
                    "wrapAndUnwrapSol": True,
                    "dynamicComputeUnitLimit": True,
                    "prioritizationFeeLamports": "auto",
                },
            )
            if resp.status_code != 200:
                return SwapResult(False, orb_amount, 0.0, error=f"Swap API error: {resp.status_code}")

            swap_transaction = resp.json().get("swapTransaction")
            if not swap_transaction:
                return SwapResult(False, orb_amount, 0.0, error="No swap transaction returned")

            # Step 3: Sign
            unsigned = VersionedTransaction.from_bytes(base64.b64decode(swap_transaction))
            signature = self.wallet.sign_message(to_bytes_versioned(unsigned.message))
            tx = VersionedTransaction.populate(unsigned.message, [signature])

            # Step 4: Send and confirm
            sent = await self.client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3)
            )
            sig = sent.value
            confirmation = await asyncio.wait_for(
                self.client.confirm_transaction(sig, commitment=Confirmed),
                timeout=self.confirm_timeout,
            )
            statuses = confirmation.value or []
            if statuses and statuses[0] is not None and statuses[0].err is not None:
                return SwapResult(False, orb_amount, 0.0, signature=str(sig), error=f"Swap failed on-chain: {statuses[0].err}")

        except Exception as e:
            Logger.error(f"[SWAP] Swap failed: {type(e).__name__}: {e}")
            return SwapResult(False, orb_amount, 0.0, error=str(e))

        Logger.success(f"[SWAP] Swapped {orb_amount:.4f} ORB for ~{expected_sol:.6f} SOL: {sig}")
        return SwapResult(True, orb_amount, expected_sol, signature=str(sig))

    async def close(self) -> None:
        await self._http.aclose()
