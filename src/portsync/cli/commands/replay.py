"""Transaction log replay command."""

import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal, Optional, cast

import click
import yaml
from rich.console import Console

from portsync.cli.ui.formatters import create_holdings_table, create_summary_table
from portsync.services.portfolio.models import AssetType
from portsync.services.portfolio.state_manager import PortfolioStateManager
from portsync.system import LoggerFactory
from portsync.system.config import reload_system_config

console = Console()


def load_document(path: Path) -> Any:
    """Load a JSON (``.json``) or YAML (anything else) document."""
    with open(path) as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def split_log(document: Any) -> tuple[list[Any], dict[str, Any], Any]:
    """
    Split a log document into (transactions, prices, exchange_rate).

    Accepted shapes: a bare list of transactions, or a mapping with
    ``transactions`` and optional ``prices`` and ``exchange_rate`` keys.
    """
    if document is None:
        return [], {}, None
    if isinstance(document, list):
        return document, {}, None
    if isinstance(document, dict):
        transactions = document.get("transactions") or []
        prices = document.get("prices") or {}
        rate = document.get("exchange_rate", document.get("exchangeRate"))
        if not isinstance(transactions, list) or not isinstance(prices, dict):
            raise click.ClickException("'transactions' must be a list and 'prices' a mapping")
        return transactions, prices, rate
    raise click.ClickException(f"Unsupported log document: {type(document).__name__}")


@click.command("replay")
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--prices",
    "-p",
    "prices_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Price map file (JSON/YAML: symbol -> price or {price, currency})",
)
@click.option("--fx", "fx_rate", type=float, help="Exchange rate in IDR per USD")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="System configuration file (YAML)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set logging level",
)
def replay_command(
    log_file: Path,
    prices_file: Optional[Path],
    fx_rate: Optional[float],
    config_file: Optional[Path],
    log_level: Optional[str],
):
    """
    Replay a transaction log and print the resulting holdings.

    \b
    Examples:
        # Holdings valued at transaction prices
        portsync replay transactions.json

        # With live prices and an exchange rate
        portsync replay transactions.yaml --prices prices.json --fx 16250

        # Debug mode (every rebuild and skipped record)
        portsync replay transactions.json -l debug
    """
    try:
        system_config = reload_system_config(config_file)
        if log_level:
            system_config.logging.level = cast(Literal["DEBUG", "INFO", "WARNING", "ERROR"], log_level.upper())
        LoggerFactory.configure(system_config.logging)

        transactions, prices, rate = split_log(load_document(log_file))
        if prices_file is not None:
            extra = load_document(prices_file) or {}
            if not isinstance(extra, dict):
                raise click.ClickException(f"{prices_file} must contain a mapping")
            prices = {**prices, **extra}
        if fx_rate is not None:
            rate = Decimal(str(fx_rate))

        console.rule("[bold blue]PortSync Replay[/bold blue]")
        console.print(f"  Log: [yellow]{log_file}[/yellow] ({len(transactions)} records)")
        console.print()

        manager = PortfolioStateManager(config=system_config.portfolio)
        manager.update_exchange_rate(rate)
        manager.update_prices(prices)
        manager.initialize(seed_transactions=transactions)

        state = manager.get_state()
        for asset_type in AssetType:
            positions = state.get_positions(asset_type)
            if positions:
                console.print(create_holdings_table(asset_type, positions))
                console.print()

        if state.position_count == 0:
            console.print("[dim]No holdings.[/dim]")
            console.print()

        console.print(create_summary_table(manager.get_summary(), state.exchange_rate))
        console.print()

    except click.ClickException:
        raise
    except Exception as e:
        console.print(f"[bold red]✗ Replay failed:[/bold red] {e}")
        sys.exit(1)
