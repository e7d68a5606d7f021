"""Rich table formatters and number formatting for CLI output."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from rich.table import Table

from portsync.services.portfolio.models import AssetType, PortfolioSummary, Position


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _group(number: Any, decimals: int, thousands: str, decimal_sep: str) -> Optional[str]:
    value = _to_decimal(number)
    if value is None:
        return None
    quantum = Decimal(1).scaleb(-decimals)
    text = f"{value.quantize(quantum, rounding=ROUND_HALF_UP):f}"
    sign = ""
    if text.startswith("-"):
        sign, text = "-", text[1:]
    integer, _, fraction = text.partition(".")
    groups = []
    while len(integer) > 3:
        groups.insert(0, integer[-3:])
        integer = integer[:-3]
    groups.insert(0, integer)
    formatted = sign + thousands.join(groups)
    if fraction and decimals > 0:
        formatted = f"{formatted}{decimal_sep}{fraction}"
    return formatted


def format_number(number: Any, decimals: int = 0) -> str:
    """
    Indonesian number format: dots group thousands, comma separates decimals.

    Examples:
        >>> format_number(1234567.891, 2)
        '1.234.567,89'
    """
    return _group(number, decimals, ".", ",") or "0"


def format_number_usd(number: Any, decimals: int = 2) -> str:
    """US number format: commas group thousands, dot separates decimals."""
    return _group(number, decimals, ",", ".") or ("0." + "0" * decimals if decimals > 0 else "0")


def format_idr(amount: Any, decimals: int = 0) -> str:
    """Format an IDR amount, e.g. ``Rp1.234.567``."""
    return f"Rp{format_number(amount, decimals)}"


def format_usd(amount: Any, decimals: int = 2) -> str:
    """Format a USD amount, e.g. ``$1,234.56``."""
    return f"${format_number_usd(amount, decimals)}"


def format_percentage(value: Any, decimals: int = 2) -> str:
    """Signed percentage, e.g. ``+12.50%``."""
    number = _to_decimal(value) or Decimal("0")
    sign = "+" if number > 0 else ""
    return f"{sign}{format_number_usd(number, decimals)}%"


def _gain_style(value: Decimal) -> str:
    if value > 0:
        return "green"
    if value < 0:
        return "red"
    return "white"


def create_holdings_table(asset_type: AssetType, positions: Iterable[Position]) -> Table:
    """
    Create a Rich table listing the positions of one asset class.

    Args:
        asset_type: Asset class shown in the title
        positions: Positions of that class

    Returns:
        Configured Rich Table
    """
    table = Table(title=f"{asset_type.value.title()} holdings")
    table.add_column("Symbol", style="cyan", no_wrap=True)
    table.add_column("Broker/Exchange", style="dim")
    table.add_column("Amount", style="white", justify="right")
    table.add_column("Avg Price", style="white", justify="right")
    table.add_column("Price", style="yellow", justify="right")
    table.add_column("Value (IDR)", style="magenta", justify="right")
    table.add_column("Value (USD)", style="magenta", justify="right")
    table.add_column("Gain (IDR)", justify="right")
    table.add_column("Gain %", justify="right")

    for position in positions:
        native = format_usd if position.currency == "USD" else format_idr
        amount = format_number(position.amount, 8 if asset_type == AssetType.CRYPTO else 4).rstrip("0").rstrip(",")
        if asset_type == AssetType.STOCK and position.market == "IDX":
            amount = f"{amount} ({format_number(position.lots)} lot)"
        style = _gain_style(position.gain)
        table.add_row(
            position.symbol,
            position.qualifier or "-",
            amount,
            native(position.avg_price),
            f"{native(position.current_price)} [dim]{position.price_source.value}[/dim]",
            format_idr(position.value_idr),
            format_usd(position.value_usd),
            f"[{style}]{format_idr(position.gain_idr)}[/{style}]",
            f"[{style}]{format_percentage(position.gain_percentage)}[/{style}]",
        )
    return table


def create_summary_table(summary: PortfolioSummary, exchange_rate: Optional[Decimal] = None) -> Table:
    """
    Create a Rich table with portfolio totals.

    Args:
        summary: Portfolio totals
        exchange_rate: IDR per USD used for the totals (None when unknown)

    Returns:
        Configured Rich Table
    """
    table = Table(title="Portfolio Summary")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("IDR", style="white", justify="right")
    table.add_column("USD", style="white", justify="right")

    style = _gain_style(summary.total_gain_idr)
    table.add_row("Total Value", format_idr(summary.total_value_idr), format_usd(summary.total_value_usd))
    table.add_row("Invested", format_idr(summary.total_cost_idr), format_usd(summary.total_cost_usd))
    table.add_row(
        "Gain",
        f"[{style}]{format_idr(summary.total_gain_idr)}[/{style}]",
        f"[{style}]{format_usd(summary.total_gain_usd)}[/{style}]",
    )
    table.add_row("Gain %", format_percentage(summary.total_gain_percentage), "")
    table.add_row("Cash", format_idr(summary.cash_value_idr), format_usd(summary.cash_value_usd))
    table.add_row("Positions", str(summary.asset_count), "")
    table.add_row(
        "USD/IDR",
        format_idr(exchange_rate, 2) if exchange_rate is not None else "[dim]unknown[/dim]",
        "",
    )
    return table
