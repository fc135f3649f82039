"""
CLI entry point for the Hyperion deposit bridge.
"""

import signal
from pathlib import Path
from typing import Optional

import structlog
import typer
from pydantic import ValidationError

from .chain import ChainClient, ChainConnectionError
from .config import Settings
from .db import LedgerDatabase
from .ledger import LedgerTransactor
from .units import format_units
from .watcher import DepositWatcher

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

logger = structlog.get_logger()

app = typer.Typer(
    name="hyperion-bridge",
    help="Hyperion tMETIS deposit listener and marketplace ledger",
    add_completion=False,
)


def _load_settings(config_path: Optional[Path]) -> Settings:
    """Load settings or exit with the validation errors."""
    try:
        return Settings(_env_file=config_path) if config_path else Settings()
    except ValidationError as e:
        typer.echo("Missing or invalid configuration:", err=True)
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            typer.echo(f"  {field}: {error['msg']}", err=True)
        raise typer.Exit(1)


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


@app.command()
def watch(config_path: Optional[Path] = ConfigOption) -> None:
    """
    Watch Hyperion blocks and credit tMETIS deposits to the treasury.
    """
    settings = _load_settings(config_path)

    typer.echo(f"RPC URL: {settings.rpc_url}")
    typer.echo(f"Treasury wallet (filter target): {settings.treasury_address}")

    db = LedgerDatabase(settings.database_url)
    transactor = LedgerTransactor(db, settings.create_unknown_depositors)
    watcher = DepositWatcher(
        ChainClient(settings.rpc_url),
        transactor,
        settings.treasury_address,
        poll_interval=settings.poll_interval_seconds,
        max_catchup_blocks=settings.max_catchup_blocks,
        chain_id=settings.chain_id,
    )

    try:
        handle = watcher.start()
    except ChainConnectionError as e:
        typer.echo(f"Failed to start listener: {e}", err=True)
        db.close()
        raise typer.Exit(1)

    def _shutdown(signum: int, frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        watcher.stop()
        db.close()
        logger.info("listener_stopped")
        raise typer.Exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    typer.echo(f"Send tMETIS to {settings.treasury_address} to test. Press Ctrl+C to stop.")
    while handle.is_active:
        handle.wait(1.0)


@app.command("scan-block")
def scan_block(
    block_number: int = typer.Argument(..., help="Block number to scan"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Scan a single block and credit its deposits.

    Deposits already credited by the listener are skipped.
    """
    settings = _load_settings(config_path)
    db = LedgerDatabase(settings.database_url)
    try:
        watcher = DepositWatcher(
            ChainClient(settings.rpc_url),
            LedgerTransactor(db, settings.create_unknown_depositors),
            settings.treasury_address,
        )
        events = watcher.handle_block(block_number)
        stats = watcher.stats
    finally:
        db.close()

    if stats.blocks_failed:
        typer.echo(f"Failed to fetch block {block_number}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Block {block_number}: {len(events)} deposits")
    typer.echo(
        f"  credited={stats.deposits_credited} duplicate={stats.deposits_duplicate} "
        f"unmatched={stats.deposits_unmatched} failed={stats.credits_failed}"
    )


@app.command()
def balance(
    address: str = typer.Argument(..., help="Wallet address"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Show the ledger balance of a wallet.
    """
    settings = _load_settings(config_path)
    db = LedgerDatabase(settings.database_url)
    try:
        user = LedgerTransactor(db).get_user(address)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)
    finally:
        db.close()

    if user is None:
        typer.echo(f"No account for {address}")
        raise typer.Exit(1)

    typer.echo(f"User ID: {user.id}")
    typer.echo(f"Wallet: {user.wallet_address}")
    typer.echo(f"Balance: {format_units(user.account.balance)} tMETIS")
    typer.echo(f"Last funded: {user.last_funded_at or 'never'}")


@app.command()
def serve() -> None:
    """
    Run the marketplace ledger API.
    """
    from .main import run

    run()


@app.command()
def version() -> None:
    """Show the bridge version."""
    from hyperion_bridge import __version__
    typer.echo(f"hyperion-bridge v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
