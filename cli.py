"""
MintForge CLI
=============
Typer + Rich front-end for the asset creation pipeline.

Commands:
    python cli.py create logo.png --name "Chimp Coin" --symbol CHIMP --supply 1000000000 --simulate
    python cli.py health
    python cli.py runs --limit 10
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import List, Optional

import httpx
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.settings import Settings
from mintforge.pipeline.orchestrator import PipelineOptions, PipelineOrchestrator
from mintforge.pipeline.metadata_builder import image_type_for
from mintforge.shared.infrastructure.endpoint_pool import EndpointPool, HealthState
from mintforge.shared.models.pipeline import PipelineResult, ProgressEvent, RunStatus
from mintforge.shared.schemas.manifest import AssetManifest, CapabilityFlags, CapabilityKind, FeeConfig
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.context import SessionContext
from mintforge.shared.system.logging import Logger
from mintforge.shared.system.persistence import SqliteRunStore

app = typer.Typer(
    name="mintforge",
    help="MintForge - Solana token creation pipeline",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


def _parse_capabilities(raw: str) -> List[CapabilityKind]:
    kinds = []
    for item in (part.strip().lower() for part in raw.split(",") if part.strip()):
        try:
            kinds.append(CapabilityKind(item))
        except ValueError:
            raise typer.BadParameter(f"unknown capability '{item}' (expected mint, freeze, update)")
    return kinds


def _print_progress(event: ProgressEvent) -> None:
    console.print(f"[cyan]{event.percent:3d}%[/cyan] [bold]{event.stage.value}[/bold] {event.message}")


def _install_interrupt_handler(loop: asyncio.AbstractEventLoop, token: CancellationToken) -> bool:
    """
    Route Ctrl-C to the run's cancellation token so the pipeline stops at
    its next suspension point and still reports a CANCELLED result.

    Returns False where the loop cannot take signal handlers (Windows);
    Ctrl-C then falls through as KeyboardInterrupt.
    """

    def on_interrupt() -> None:
        console.print("\n[yellow]Interrupt received, cancelling run...[/yellow]")
        token.cancel("Interrupted by user (Ctrl-C)")

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _report(result: PipelineResult, as_json: bool = False) -> int:
    """Print the run outcome and return the process exit code."""
    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
    elif result.succeeded:
        console.print(f"\n[bold green]✅ Created {result.asset_id}[/bold green]")
        if result.listing is not None:
            console.print(f"Listing: {result.listing.status.value}")
        for warning in result.run.warnings:
            console.print(f"[yellow]⚠ {warning.get('stage')}: {warning.get('cause')}[/yellow]")
    else:
        error = result.error or {}
        console.print(f"\n[bold red]❌ {result.status.value.upper()} at {error.get('stage')}[/bold red]: {error.get('cause')}")
        console.print(f"Safe to retry: {'yes' if error.get('retry_safe') else '[bold red]no[/bold red]'}")

    if result.succeeded:
        return 0
    return 130 if result.status == RunStatus.CANCELLED else 1


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: CREATE
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def create(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Logo image file"),
    name: str = typer.Option(..., "--name", help="Token name (max 32 chars)"),
    symbol: str = typer.Option(..., "--symbol", help="Ticker symbol (max 10 chars)"),
    supply: int = typer.Option(..., "--supply", help="Initial supply in whole tokens", min=1),
    decimals: int = typer.Option(9, "--decimals", help="Decimal places", min=0, max=9),
    description: str = typer.Option("", "--description", help="Token description"),
    website: Optional[str] = typer.Option(None, "--website"),
    twitter: Optional[str] = typer.Option(None, "--twitter"),
    telegram: Optional[str] = typer.Option(None, "--telegram"),
    revoke: str = typer.Option("", "--revoke", help="Capabilities to revoke, e.g. mint,freeze"),
    fee_bps: Optional[int] = typer.Option(None, "--fee-bps", help="Transfer fee (Token-2022 extended variant)", min=0, max=10_000),
    no_listing: bool = typer.Option(False, "--no-listing", help="Skip listing submission and monitoring"),
    listing_timeout: Optional[float] = typer.Option(None, "--listing-timeout", help="Listing monitor window in seconds"),
    simulate: bool = typer.Option(False, "--simulate", help="Offline run: simulated signer, storage and listing"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """
    Create a token end-to-end: upload image and metadata, create the mint,
    attach metadata, mint the supply, optionally revoke authorities and
    watch for a DexScreener listing.

    \b
    Examples:
        python cli.py create logo.png --name "Chimp Coin" --symbol CHIMP --supply 1000000000 --simulate
        python cli.py create logo.png --name Chimp --symbol CHIMP --supply 1000 --revoke mint,freeze --simulate
    """
    revoke_kinds = _parse_capabilities(revoke)
    try:
        manifest = AssetManifest(
            name=name,
            symbol=symbol,
            decimals=decimals,
            initial_supply=supply,
            description=description,
            website=website,
            twitter=twitter,
            telegram=telegram,
            capabilities=CapabilityFlags(**{kind.value: "revoked" for kind in revoke_kinds}),
            fee_config=FeeConfig(basis_points=fee_bps) if fee_bps else None,
        )
    except ValidationError as e:
        console.print(f"[bold red]Invalid manifest:[/bold red]\n{e}")
        raise typer.Exit(2)

    if not simulate:
        console.print(Panel.fit(
            "[bold red]No signing collaborator configured.[/bold red]\n"
            "Live runs are driven from code with a SigningCollaborator; use --simulate here.",
            border_style="red",
        ))
        raise typer.Exit(1)

    console.print(Panel.fit(
        f"[bold cyan]{manifest.name} ({manifest.symbol})[/bold cyan]\n"
        f"Supply: {manifest.initial_supply:,} | Decimals: {manifest.decimals} | "
        f"Variant: {manifest.variant.value} | Mode: [yellow]SIMULATED[/yellow]",
        border_style="cyan",
    ))

    options = PipelineOptions(
        revoke=revoke_kinds,
        listing_enabled=not no_listing,
        listing_timeout_s=listing_timeout,
        image_filename=image.name,
        image_content_type=image_type_for(image.name),
        token=CancellationToken(),
    )

    async def run():
        loop = asyncio.get_running_loop()
        handled = _install_interrupt_handler(loop, options.token)
        context = SessionContext.simulated(
            persistence=SqliteRunStore(Settings.DB_PATH),
            progress_callback=None if as_json else _print_progress,
        )
        try:
            return await PipelineOrchestrator(context).create_asset(manifest, image.read_bytes(), options)
        finally:
            if handled:
                loop.remove_signal_handler(signal.SIGINT)
            await context.aclose()

    if as_json:
        Logger.set_silent(True)
    try:
        result = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(130)

    raise typer.Exit(_report(result, as_json))


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: HEALTH
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def health(
    timeout: float = typer.Option(Settings.ENDPOINT_PROBE_TIMEOUT_S, "--timeout", help="Probe timeout (seconds)"),
):
    """Probe every configured RPC endpoint in parallel."""

    async def probe():
        async with httpx.AsyncClient() as http:
            pool = EndpointPool(Settings.RPC_ENDPOINTS, http=http, probe_timeout_s=timeout)
            return await pool.probe_all()

    endpoints = asyncio.run(probe())

    table = Table(title="RPC Endpoints")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Health")
    table.add_column("Latency", justify="right")
    table.add_column("Error", style="dim")
    for ep in endpoints:
        style = "green" if ep.health == HealthState.HEALTHY else "red"
        state = "removed" if ep.removed else ep.health.value
        table.add_row(ep.name, f"[{style}]{state}[/{style}]", f"{ep.latency_ms:.0f}ms", ep.last_error or "")
    console.print(table)

    if not any(ep.health == HealthState.HEALTHY for ep in endpoints):
        raise typer.Exit(1)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: RUNS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def runs(
    limit: int = typer.Option(20, "--limit", help="Number of runs to show", min=1, max=500),
):
    """List completed runs from the local run store."""
    store = SqliteRunStore(Settings.DB_PATH)
    records = store.list_runs(limit=limit)
    store.close()

    if not records:
        console.print("[dim]No runs recorded yet.[/dim]")
        return

    table = Table(title="Completed Runs")
    table.add_column("Run", style="dim")
    table.add_column("Symbol", style="cyan")
    table.add_column("Asset")
    table.add_column("Listing")
    for record in records:
        table.add_row(record.run_id, record.symbol, record.asset_id, record.listing_status or "-")
    console.print(table)


if __name__ == "__main__":
    app()
