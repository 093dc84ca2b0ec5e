"""
orbminer CLI
============
Typer + Rich entry point.

Commands:
    python main.py run --max-iterations 10 --dry-run
    python main.py status
    python main.py claim
    python main.py stake 25
    python main.py setup-automation
    python main.py close-automation
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey

from config.settings import EnvSettingsProvider, Settings
from orbminer.engine.automation_loop import AutomationLoop, CancellationToken, install_signal_handlers
from orbminer.execution.instruction_factory import AutomationParams, InstructionFactory
from orbminer.execution.priority_fee import PriorityFeeEstimator, RiskTier
from orbminer.execution.submitter import ExecuteOptions, RetryPolicy, TransactionSubmitter, TxContext
from orbminer.execution.swapper import JupiterEndpoints, JupiterSwapper
from orbminer.execution.wallet import KeypairWallet, load_wallet
from orbminer.feeds.price_oracle import JupiterPriceOracle
from orbminer.infrastructure.chain_client import ChainReader
from orbminer.protocol.constants import SLOT_COUNT
from orbminer.protocol.pda import AddressDeriver
from orbminer.protocol.state_codec import claimable_stake_yield
from orbminer.shared.models.accounts import to_base_units, to_ui
from orbminer.shared.system.errors import ConfigValidationError, OrbMinerError
from orbminer.shared.system.logging import Logger
from orbminer.shared.system.persistence import EventSink, JsonlEventSink, LoggingEventSink
from orbminer.strategy.deployment import calculate_deployment_amount, parse_deployment_policy, usable_budget

app = typer.Typer(
    name="orbminer",
    help="Unattended ORB mining client: deploy, claim, stake, top up.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


# ═══════════════════════════════════════════════════════════════════════════════
# WIRING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Runtime:
    settings: Settings
    client: AsyncClient
    wallet: KeypairWallet
    deriver: AddressDeriver
    reader: ChainReader
    factory: InstructionFactory
    submitter: TransactionSubmitter
    swapper: JupiterSwapper
    oracle: JupiterPriceOracle

    async def close(self) -> None:
        await self.swapper.close()
        await self.oracle.close()
        await self.client.close()


def build_runtime(settings: Settings, private_key: Optional[str] = None) -> Runtime:
    """Construct every component from one settings snapshot."""
    wallet = load_wallet(private_key)
    client = AsyncClient(settings.RPC_ENDPOINT, commitment=Confirmed, timeout=settings.RPC_TIMEOUT)
    deriver = AddressDeriver(
        Pubkey.from_string(settings.ORB_PROGRAM_ID),
        Pubkey.from_string(settings.ORB_TOKEN_MINT),
    )
    factory = InstructionFactory(wallet.pubkey, deriver)
    estimator = PriorityFeeEstimator(
        settings.RPC_ENDPOINT,
        min_fee=settings.MIN_PRIORITY_FEE,
        max_fee=settings.MAX_PRIORITY_FEE,
        probe_timeout=settings.FEE_PROBE_TIMEOUT,
    )
    submitter = TransactionSubmitter(
        client,
        wallet,
        factory,
        estimator,
        retry_policy=RetryPolicy(
            max_retries=settings.TX_MAX_RETRIES,
            initial_delay=settings.RETRY_INITIAL_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        ),
        default_tier=RiskTier.from_name(settings.PRIORITY_FEE_LEVEL),
        confirm_timeout=settings.CONFIRM_TIMEOUT,
    )
    endpoints = JupiterEndpoints(settings.JUPITER_API_URL)
    swapper = JupiterSwapper(
        client, wallet, settings.ORB_TOKEN_MINT, endpoints,
        slippage_bps=settings.SLIPPAGE_BPS, confirm_timeout=settings.CONFIRM_TIMEOUT,
    )
    oracle = JupiterPriceOracle(settings.ORB_TOKEN_MINT, endpoints)
    reader = ChainReader(client, deriver, wallet.pubkey, timeout=settings.RPC_TIMEOUT)
    return Runtime(settings, client, wallet, deriver, reader, factory, submitter, swapper, oracle)


def _load_settings(dry_run: bool) -> Settings:
    settings = Settings.from_env()
    if dry_run:
        settings = settings.with_overrides(DRY_RUN=True)
    try:
        settings.validate()
    except ConfigValidationError as e:
        console.print(f"[bold red]❌ Invalid configuration: {e}[/bold red]")
        raise typer.Exit(2)
    Logger.set_silent(settings.SILENT_MODE)
    return settings


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except ConfigValidationError as e:
        console.print(f"[bold red]❌ Invalid configuration: {e}[/bold red]")
        raise typer.Exit(2)
    except OrbMinerError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: RUN
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def run(
    max_iterations: int = typer.Option(0, "--max-iterations", "-n", help="Stop after N deployments (0 = unlimited)", min=0),
    dry_run: bool = typer.Option(False, "--dry-run", help="Build, price and simulate, but never send"),
    events: Optional[str] = typer.Option(None, "--events", help="Append events as JSON lines to this file"),
    private_key: Optional[str] = typer.Option(None, "--private-key", envvar="WALLET_PRIVATE_KEY", help="Base58 secret key"),
):
    """
    Run the automation loop until interrupted.

    Ctrl+C once finishes the in-flight action and exits; twice exits immediately.
    """
    settings = _load_settings(dry_run)
    console.print(Panel.fit(
        "[bold cyan]⛏️  ORB automation[/bold cyan]\n"
        f"RPC: {settings.RPC_ENDPOINT}\n"
        f"Mode: {settings.DEPLOY_MODE} | Strategy: {settings.DEPLOYMENT_STRATEGY} | "
        f"{'[green]DRY RUN[/green]' if settings.DRY_RUN else '[bold red]LIVE[/bold red]'}",
        border_style="cyan",
    ))

    sink: EventSink = JsonlEventSink(events) if events else LoggingEventSink()
    overrides = {"DRY_RUN": True} if dry_run else {}

    async def _main():
        runtime = build_runtime(settings, private_key)
        token = CancellationToken()
        install_signal_handlers(token)
        loop = AutomationLoop(
            EnvSettingsProvider(**overrides),
            runtime.reader,
            runtime.factory,
            runtime.submitter,
            swapper=runtime.swapper,
            oracle=runtime.oracle,
            sink=sink,
        )
        try:
            await loop.run(token, max_iterations=max_iterations or None)
        finally:
            await runtime.close()

    _run(_main())


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: STATUS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def status(
    private_key: Optional[str] = typer.Option(None, "--private-key", envvar="WALLET_PRIVATE_KEY", help="Base58 secret key"),
):
    """Show round, pool, program config, miner, stake and wallet state."""
    settings = _load_settings(False)

    async def _main():
        runtime = build_runtime(settings, private_key)
        reader = runtime.reader
        try:
            cursor, pool, config, participant, stake, automation, slot, sol, orb = await asyncio.gather(
                reader.fetch_round_cursor(),
                reader.fetch_pool(),
                reader.fetch_config(),
                reader.fetch_participant(),
                reader.fetch_stake(),
                reader.fetch_automation(),
                reader.fetch_slot(),
                reader.fetch_sol_balance(),
                reader.fetch_orb_balance(),
            )
        finally:
            await runtime.close()

        table = Table(title=f"Wallet {runtime.wallet.pubkey}")
        table.add_column("Item", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Round", f"{cursor.round_id} (slots {cursor.start_slot}-{cursor.end_slot}, now {slot})")
        table.add_row("Motherlode", f"{pool.motherlode_orb:.4f} ORB")
        table.add_row("Entropy var", str(config.var_address))
        table.add_row("Wallet", f"{sol:.6f} SOL / {orb:.4f} ORB")
        if participant is not None:
            table.add_row("Miner round", f"{participant.round_id} (checkpoint {participant.checkpoint_id})")
            table.add_row("Claimable", f"{participant.claimable_sol:.6f} SOL / {participant.claimable_orb:.4f} ORB")
        else:
            table.add_row("Miner", "[dim]not initialized[/dim]")
        if stake is not None:
            table.add_row("Staked", f"{stake.balance_orb:.4f} ORB")
            table.add_row("Staking yield", f"{to_ui(claimable_stake_yield(stake, pool)):.6f} ORB")
        if automation is not None:
            table.add_row("Automation", f"{to_ui(automation.balance):.6f} SOL, {automation.rounds_remaining} round(s) left")

        policy = parse_deployment_policy(settings.DEPLOYMENT_STRATEGY, settings)
        plan = calculate_deployment_amount(
            policy, usable_budget(sol, settings.MIN_SOL_BALANCE, settings.BUDGET_PERCENT), pool.motherlode_orb
        )
        table.add_row("Next deploy", f"{plan.amount_per_round:.6f} SOL/round (~{plan.estimated_rounds} rounds)")
        console.print(table)

    _run(_main())


# ═══════════════════════════════════════════════════════════════════════════════
# ONE-SHOT COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

async def _execute_once(settings: Settings, private_key: Optional[str], build, context: TxContext) -> None:
    runtime = build_runtime(settings, private_key)
    try:
        instructions = await build(runtime)
        if not instructions:
            console.print("[yellow]Nothing to do.[/yellow]")
            return
        outcome = await runtime.submitter.execute(
            instructions, context, ExecuteOptions(dry_run=settings.DRY_RUN)
        )
        if outcome.dry_run:
            console.print(f"[green]Simulation OK[/green] (fee ≈ {outcome.fee_estimate.total_fee_sol:.9f} SOL)")
        else:
            console.print(f"[green]✅ {context.label}: {outcome.signature}[/green]")
    finally:
        await runtime.close()


@app.command()
def claim(
    dry_run: bool = typer.Option(False, "--dry-run"),
    private_key: Optional[str] = typer.Option(None, "--private-key", envvar="WALLET_PRIVATE_KEY"),
):
    """Claim all claimable SOL and ORB now."""
    settings = _load_settings(dry_run)

    async def _build(runtime: Runtime):
        participant = await runtime.reader.fetch_participant()
        if participant is None:
            return []
        instructions = []
        if participant.rewards_sol > 0:
            instructions.append(runtime.factory.build_claim_sol())
        if participant.rewards_orb + participant.refined_orb > 0:
            instructions.append(runtime.factory.build_claim_orb())
        return instructions

    _run(_execute_once(settings, private_key, _build, TxContext.CLAIM_ORB))


@app.command()
def stake(
    amount: float = typer.Argument(..., help="ORB to stake", min=0),
    dry_run: bool = typer.Option(False, "--dry-run"),
    private_key: Optional[str] = typer.Option(None, "--private-key", envvar="WALLET_PRIVATE_KEY"),
):
    """Stake AMOUNT ORB."""
    settings = _load_settings(dry_run)

    async def _build(runtime: Runtime):
        return [runtime.factory.build_stake(to_base_units(amount))] if amount > 0 else []

    _run(_execute_once(settings, private_key, _build, TxContext.STAKE))


@app.command("setup-automation")
def setup_automation(
    dry_run: bool = typer.Option(False, "--dry-run"),
    private_key: Optional[str] = typer.Option(None, "--private-key", envvar="WALLET_PRIVATE_KEY"),
):
    """Create the automation account funded with the configured budget share."""
    settings = _load_settings(dry_run)

    async def _build(runtime: Runtime):
        reader = runtime.reader
        existing, pool, sol = await asyncio.gather(
            reader.fetch_automation(), reader.fetch_pool(), reader.fetch_sol_balance()
        )
        if existing is not None:
            console.print(f"[yellow]Automation already exists ({to_ui(existing.balance):.6f} SOL)[/yellow]")
            return []
        budget = usable_budget(sol, settings.MIN_SOL_BALANCE, settings.BUDGET_PERCENT)
        plan = calculate_deployment_amount(
            parse_deployment_policy(settings.DEPLOYMENT_STRATEGY, settings), budget, pool.motherlode_orb
        )
        if to_base_units(plan.amount_per_slot) <= 0:
            console.print(f"[yellow]Budget {budget:.6f} SOL too small[/yellow]")
            return []
        console.print(f"Deposit {budget:.6f} SOL, {plan.amount_per_slot:.9f} SOL/slot (~{plan.estimated_rounds} rounds)")
        params = AutomationParams(
            amount_per_slot=to_base_units(plan.amount_per_slot),
            deposit=to_base_units(budget),
            fee=0,
            slot_selector=SLOT_COUNT,
        )
        return [runtime.factory.build_automate(params)]

    _run(_execute_once(settings, private_key, _build, TxContext.AUTOMATION_SETUP))


@app.command("close-automation")
def close_automation(
    dry_run: bool = typer.Option(False, "--dry-run"),
    private_key: Optional[str] = typer.Option(None, "--private-key", envvar="WALLET_PRIVATE_KEY"),
):
    """Close the automation account and reclaim its balance."""
    settings = _load_settings(dry_run)

    async def _build(runtime: Runtime):
        if await runtime.reader.fetch_automation() is None:
            return []
        return [runtime.factory.build_close_automation()]

    _run(_execute_once(settings, private_key, _build, TxContext.AUTOMATION_SETUP))


if __name__ == "__main__":
    app()
