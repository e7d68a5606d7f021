"""Position builder: fold one partition's transactions into a Position.

Pure and deterministic. Identical inputs give identical output; the only
observable side effect is logging.

Fold rules:
- buy: cost += price * amount; held += amount; avg = cost / held
- sell: cost -= avg * amount; held -= amount; avg unchanged
- update: held and avg overwritten by the transaction (cost = avg * held)
- delete: partition excluded (or zeroed, under the "reset" delete policy)
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from portsync.services.portfolio.models import (
    AssetType,
    PortfolioConfig,
    Position,
    PriceSource,
    Transaction,
    TransactionType,
)
from portsync.services.portfolio.partition import PartitionKeyResolver
from portsync.services.portfolio.valuation import ValueEngine
from portsync.system import LoggerFactory

logger = LoggerFactory.get_logger()

ZERO = Decimal("0")


@dataclass(frozen=True)
class FoldResult:
    """Outcome of folding a partition's transactions."""

    amount: Decimal
    avg_price: Decimal
    total_cost: Decimal
    deleted: bool
    oversold: bool
    latest: Transaction | None  # Most recent non-delete transaction


def sort_transactions(transactions: Sequence[Transaction]) -> list[Transaction]:
    """Chronological order; equal timestamps keep log order (sorted() is stable)."""
    return sorted(transactions, key=lambda tx: tx.timestamp)


def fold_transactions(
    ordered: Sequence[Transaction],
    config: PortfolioConfig | None = None,
) -> FoldResult:
    """
    Fold chronologically ordered transactions.

    Args:
        ordered: Transactions of one partition, already sorted
        config: Delete and oversell policies

    Returns:
        FoldResult with held amount, average price and cost basis
    """
    config = config or PortfolioConfig()

    held = ZERO
    avg = ZERO
    cost = ZERO
    deleted = False
    oversold = False
    latest: Transaction | None = None

    for tx in ordered:
        if tx.type == TransactionType.DELETE:
            deleted = True
            held = avg = cost = ZERO
            if config.delete_policy == "permanent":
                break
            latest = None
            continue

        latest = tx

        if tx.type == TransactionType.BUY:
            cost += tx.price * tx.amount
            held += tx.amount
            if held != 0:
                avg = cost / held

        elif tx.type == TransactionType.SELL:
            if tx.amount > held and config.oversell_policy == "clamp":
                oversold = True
                held = cost = ZERO
                continue
            cost -= avg * tx.amount
            held -= tx.amount
            if held < 0:
                oversold = True

        elif tx.type == TransactionType.UPDATE:
            # An update without an amount is a price-only correction
            if tx.amount > 0:
                held = tx.amount
            avg = tx.price
            cost = avg * held

    if deleted and config.delete_policy == "permanent":
        return FoldResult(ZERO, ZERO, ZERO, deleted=True, oversold=oversold, latest=None)

    return FoldResult(held, avg, cost, deleted=deleted, oversold=oversold, latest=latest)


def resolve_price(
    fold: FoldResult,
    current_price: Decimal | None,
) -> tuple[Decimal, PriceSource]:
    """
    Valuation price for a folded partition.

    Priority: manual override on the latest non-delete transaction, the
    supplied live price, the latest transaction's own price, then 0.
    """
    latest = fold.latest
    if latest is not None and latest.manual_override is not None:
        return latest.manual_override, PriceSource.MANUAL
    if current_price is not None and current_price > 0:
        return current_price, PriceSource.LIVE
    if latest is not None and latest.price > 0:
        return latest.price, PriceSource.TRANSACTION
    return ZERO, PriceSource.NONE


def _whole_lots(amount: Decimal, lot_size: int) -> Decimal:
    return (amount / lot_size).to_integral_value(rounding=ROUND_FLOOR)


def build_position(
    transactions: Sequence[Transaction],
    current_price: Decimal | None,
    fx_rate: Decimal | None,
    config: PortfolioConfig | None = None,
    as_of: datetime | None = None,
) -> Position | None:
    """
    Build the Position of one partition.

    Args:
        transactions: All transactions of one partition, any order
        current_price: Live quote for the partition (None or 0 when unknown)
        fx_rate: Home currency per foreign unit (None when unknown)
        config: Portfolio configuration
        as_of: Timestamp recorded as ``last_update``
            (defaults to the latest transaction's timestamp)

    Returns:
        Position, or None when nothing is held (amount <= 0), the partition
        was deleted, or a gold holding has no resolvable price

    Example:
        >>> position = build_position([buy_1, buy_2], Decimal("7000"), Decimal("16000"))
        >>> position.avg_price
        Decimal('6000')
    """
    if not transactions:
        return None

    config = config or PortfolioConfig()
    resolver = PartitionKeyResolver(config)
    engine = ValueEngine(config, resolver)

    ordered = sort_transactions(transactions)
    fold = fold_transactions(ordered, config)
    first = ordered[0]

    if fold.oversold:
        logger.warning(
            "portfolio.partition_oversold",
            partition=resolver.partition_key(first),
            policy=config.oversell_policy,
        )

    if fold.deleted and fold.latest is None:
        return None
    if fold.amount <= 0:
        return None

    asset_type = first.asset_type
    market = resolver.resolve_market(ordered)
    currency = engine.native_currency(asset_type, market)
    latest = fold.latest
    assert latest is not None  # amount > 0 implies a non-delete transaction

    amount = fold.amount
    avg_price = fold.avg_price
    total_cost = fold.total_cost
    lots = amount

    if asset_type == AssetType.CASH:
        price, source = Decimal("1"), PriceSource.NONE
        avg_price = Decimal("1")
        total_cost = amount
    else:
        price, source = resolve_price(fold, current_price)
        if asset_type == AssetType.GOLD and price <= 0 and config.skip_unpriced_gold:
            logger.warning("portfolio.gold_unpriced", symbol=first.symbol, broker=first.broker)
            return None
        if asset_type == AssetType.STOCK and market == "IDX":
            lots = _whole_lots(amount, config.idx_lot_size)
            remainder = amount % config.idx_lot_size
            if remainder:
                logger.debug("portfolio.partial_lot", symbol=first.symbol, shares=str(amount), remainder=str(remainder))

    fields = engine.valuation_fields(amount, total_cost, price, currency, fx_rate)
    if asset_type == AssetType.CASH:
        fields.update(ValueEngine.cash_overrides(fields))

    # Qualifiers and gold attributes from the most recent transaction carrying them
    broker = next((tx.broker for tx in reversed(ordered) if tx.broker), None)
    exchange = next((tx.exchange for tx in reversed(ordered) if tx.exchange), None)
    subtype = next((tx.subtype for tx in reversed(ordered) if tx.subtype), None)
    brand = next((tx.brand for tx in reversed(ordered) if tx.brand), None)

    return Position(
        partition_key=resolver.partition_key(first),
        asset_type=asset_type,
        symbol=first.symbol,
        broker=broker,
        exchange=exchange,
        market=market,
        subtype=subtype,
        brand=brand,
        currency=currency,
        amount=amount,
        lots=lots,
        avg_price=avg_price,
        total_cost=total_cost,
        price_source=source,
        use_manual_price=latest.use_manual_price,
        manual_price=latest.manual_price,
        last_update=as_of or ordered[-1].timestamp,
        **fields,
    )
