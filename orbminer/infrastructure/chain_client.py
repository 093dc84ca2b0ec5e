"""
Chain Reader
============
Fresh reads of ORB program state and wallet balances.

Every decision re-reads through here; nothing is cached. Independent
reads can be gathered concurrently by the caller.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey

from orbminer.protocol.constants import BASE_UNITS
from orbminer.protocol.pda import AddressDeriver
from orbminer.protocol.state_codec import AccountKind, decode
from orbminer.shared.models.accounts import (
    AutomationState,
    ParticipantState,
    PoolState,
    ProgramConfig,
    RoundCursor,
    RoundState,
    StakeState,
)
from orbminer.shared.system.errors import AccountNotFound, SubmissionError


class ChainReader:
    """Typed account fetches on top of AsyncClient, each under a timeout."""

    def __init__(self, client: AsyncClient, deriver: AddressDeriver, owner: Pubkey, timeout: float = 10.0):
        self.client = client
        self.deriver = deriver
        self.owner = owner
        self.timeout = timeout

    async def _call(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SubmissionError(what, f"RPC timed out after {self.timeout:.0f}s") from e
        except (SolanaRpcException, RPCException) as e:
            raise SubmissionError(what, str(e)) from e

    async def _account_data(self, address: Pubkey, what: str) -> Optional[bytes]:
        resp = await self._call(self.client.get_account_info(address, commitment=Confirmed), what)
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    # ═══════════════════════════════════════════════════════════════════
    # PROGRAM ACCOUNTS
    # ═══════════════════════════════════════════════════════════════════

    async def fetch_round_cursor(self) -> RoundCursor:
        address = self.deriver.board()[0]
        cursor = decode(await self._account_data(address, "board"), AccountKind.ROUND_CURSOR)
        if cursor is None:
            raise AccountNotFound("board", str(address))
        return cursor

    async def fetch_pool(self) -> PoolState:
        address = self.deriver.treasury()[0]
        pool = decode(await self._account_data(address, "treasury"), AccountKind.POOL)
        if pool is None:
            raise AccountNotFound("treasury", str(address))
        return pool

    async def fetch_round(self, round_id: int) -> Optional[RoundState]:
        address = self.deriver.round(round_id)[0]
        return decode(await self._account_data(address, "round"), AccountKind.ROUND)

    async def fetch_participant(self) -> Optional[ParticipantState]:
        address = self.deriver.miner(self.owner)[0]
        return decode(await self._account_data(address, "miner"), AccountKind.PARTICIPANT)

    async def fetch_stake(self) -> Optional[StakeState]:
        address = self.deriver.stake(self.owner)[0]
        return decode(await self._account_data(address, "stake"), AccountKind.STAKE)

    async def fetch_automation(self) -> Optional[AutomationState]:
        address = self.deriver.automation(self.owner)[0]
        return decode(await self._account_data(address, "automation"), AccountKind.AUTOMATION)

    async def fetch_config(self) -> ProgramConfig:
        """Program config singleton (holds the entropy var address)."""
        address = self.deriver.config()[0]
        config = decode(await self._account_data(address, "config"), AccountKind.CONFIG)
        if config is None:
            raise AccountNotFound("config", str(address))
        return config

    # ═══════════════════════════════════════════════════════════════════
    # CLUSTER / WALLET
    # ═══════════════════════════════════════════════════════════════════

    async def fetch_slot(self) -> int:
        resp = await self._call(self.client.get_slot(commitment=Confirmed), "slot")
        return int(resp.value)

    async def fetch_sol_balance(self) -> float:
        resp = await self._call(self.client.get_balance(self.owner, commitment=Confirmed), "balance")
        return resp.value / 1e9

    async def fetch_orb_balance(self) -> float:
        """Wallet ORB balance; 0 when the token account does not exist yet."""
        ata = self.deriver.token_account(self.owner)
        info = await self._call(self.client.get_account_info(ata, commitment=Confirmed), "token account")
        if info.value is None:
            return 0.0
        resp = await self._call(self.client.get_token_account_balance(ata, commitment=Confirmed), "token balance")
        return int(resp.value.amount) / BASE_UNITS
