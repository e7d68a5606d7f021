"""Data models for the portfolio service.

Defines all core entities for position reconciliation:
- Transaction: Immutable record from the external transaction log
- PriceQuote: Live price for one symbol
- Position: Derived holding for one partition
- PortfolioSummary: Portfolio-level totals
- PortfolioState: Immutable snapshot handed to subscribers
- PortfolioConfig: Service configuration
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransactionType(str, Enum):
    """Kind of transaction recorded in the log."""

    BUY = "buy"
    SELL = "sell"
    UPDATE = "update"
    DELETE = "delete"


class AssetType(str, Enum):
    """Asset class of a transaction or position."""

    STOCK = "stock"
    CRYPTO = "crypto"
    GOLD = "gold"
    CASH = "cash"

    @classmethod
    def coerce(cls, value: "AssetType | str") -> "AssetType":
        """Accept enum members, values and the plural bucket names ("stocks")."""
        if isinstance(value, AssetType):
            return value
        text = str(value).strip().lower()
        aliases = {"stocks": "stock", "cryptos": "crypto", "golds": "gold"}
        return cls(aliases.get(text, text))


class PriceSource(str, Enum):
    """Where the valuation price of a position came from."""

    MANUAL = "manual"
    LIVE = "live"
    TRANSACTION = "transaction"
    NONE = "none"


class Transaction(BaseModel):
    """
    Single record of the append-only transaction log.

    Never mutated once written; a correction is itself a new ``update``
    transaction.

    Attributes:
        id: Unique identifier (deduplication key)
        type: buy, sell, update or delete
        asset_type: stock, crypto, gold or cash
        symbol: Ticker, crypto symbol or bank name (uppercased)
        amount: Quantity (unsigned; direction implied by type)
        price: Unit price at transaction time, in native currency
        currency: ISO currency code of ``price``
        timestamp: When the transaction happened (UTC)
        broker: Stock/gold broker (partition qualifier)
        exchange: Crypto exchange (partition qualifier)
        market: "IDX" or "US" (stocks only)
        subtype: "digital" or "physical" (gold only)
        brand: Gold brand, e.g. "antam" (gold only)
        use_manual_price: Valuation override flag
        manual_price: Valuation override price

    Example:
        >>> tx = Transaction(
        ...     id="tx_001",
        ...     type=TransactionType.BUY,
        ...     asset_type=AssetType.STOCK,
        ...     symbol="BBCA",
        ...     amount=Decimal("100"),
        ...     price=Decimal("9000"),
        ...     currency="IDR",
        ...     timestamp=datetime(2024, 1, 2, tzinfo=timezone.utc),
        ...     broker="Ajaib",
        ... )
    """

    id: str
    type: TransactionType
    asset_type: AssetType
    symbol: str
    amount: Decimal = Decimal("0")
    price: Decimal = Decimal("0")
    currency: str | None = None
    timestamp: datetime

    # Partition qualifiers
    broker: str | None = None
    exchange: str | None = None

    # Class-specific attributes
    market: str | None = None
    subtype: str | None = None
    brand: str | None = None

    # Valuation override
    use_manual_price: bool = False
    manual_price: Decimal | None = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Symbols are stored trimmed and uppercased."""
        v = v.strip().upper()
        if not v:
            raise ValueError("Transaction symbol cannot be empty")
        return v

    @field_validator("amount", "price")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        """Amounts and prices are unsigned."""
        if v < 0:
            raise ValueError(f"Value must be non-negative, got {v}")
        return v

    @field_validator("broker", "exchange", "market", "subtype", "brand", "currency")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        """Treat blank qualifiers as absent."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def qualifier(self) -> str | None:
        """Broker or exchange, whichever this transaction carries."""
        return self.broker or self.exchange

    @property
    def manual_override(self) -> Decimal | None:
        """Manual valuation price if set and positive."""
        if self.use_manual_price and self.manual_price is not None and self.manual_price > 0:
            return self.manual_price
        return None

    model_config = ConfigDict(frozen=True)  # Immutable after creation


class PriceQuote(BaseModel):
    """Live price for one symbol, as delivered by the price feed."""

    price: Decimal = Decimal("0")
    currency: str | None = None

    model_config = ConfigDict(frozen=True)


class Position(BaseModel):
    """
    Derived holding for one partition.

    Never persisted independently; rebuilt from transactions on every log
    change and revalued in place on price or FX change.

    Monetary figures exist in three flavours: native (``current_value``,
    ``total_cost``, ``gain`` in ``currency``) and converted to both the
    home (IDR) and foreign (USD) currency. The side that matches the native
    currency equals the native figure; the other side is 0 when no FX rate
    is known.
    """

    # Identity
    partition_key: str
    asset_type: AssetType
    symbol: str
    broker: str | None = None
    exchange: str | None = None
    market: str | None = None
    subtype: str | None = None
    brand: str | None = None
    currency: str

    # Fold results
    amount: Decimal
    lots: Decimal = Decimal("0")  # Whole IDX lots; equals amount elsewhere
    avg_price: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")

    # Valuation
    current_price: Decimal = Decimal("0")
    price_source: PriceSource = PriceSource.NONE
    use_manual_price: bool = False
    manual_price: Decimal | None = None
    current_value: Decimal = Decimal("0")
    gain: Decimal = Decimal("0")
    gain_percentage: Decimal = Decimal("0")

    # Converted
    value_idr: Decimal = Decimal("0")
    value_usd: Decimal = Decimal("0")
    cost_idr: Decimal = Decimal("0")
    cost_usd: Decimal = Decimal("0")
    gain_idr: Decimal = Decimal("0")
    gain_usd: Decimal = Decimal("0")

    last_update: datetime | None = None

    @property
    def qualifier(self) -> str | None:
        """Broker or exchange of this holding."""
        return self.broker or self.exchange

    model_config = ConfigDict(frozen=True)


class PortfolioSummary(BaseModel):
    """
    Portfolio-level totals.

    Cash counts toward total value but carries no cost basis and no gain,
    so it is left out of ``total_cost_*`` and ``total_gain_*``.
    """

    total_value_idr: Decimal = Decimal("0")
    total_value_usd: Decimal = Decimal("0")
    total_cost_idr: Decimal = Decimal("0")
    total_cost_usd: Decimal = Decimal("0")
    total_gain_idr: Decimal = Decimal("0")
    total_gain_usd: Decimal = Decimal("0")
    total_gain_percentage: Decimal = Decimal("0")
    cash_value_idr: Decimal = Decimal("0")
    cash_value_usd: Decimal = Decimal("0")
    asset_count: int = 0
    last_update: datetime | None = None

    @property
    def total_value(self) -> Decimal:
        return self.total_value_idr

    @property
    def total_cost(self) -> Decimal:
        return self.total_cost_idr

    @property
    def total_gain(self) -> Decimal:
        return self.total_gain_idr

    model_config = ConfigDict(frozen=True)


def _empty_assets() -> dict[AssetType, tuple[Position, ...]]:
    return {asset_type: () for asset_type in AssetType}


class PortfolioState(BaseModel):
    """
    Immutable snapshot of the portfolio.

    Handed to subscribers and returned by ``get_state()``. Positions and
    transactions are stored as tuples of frozen models; the dict containers
    are copied per snapshot so a subscriber cannot reach canonical state.

    Attributes:
        assets_by_class: Positions grouped by asset class
        transactions: Deduplicated transaction log the positions derive from
        prices: Price cache (symbol → quote)
        exchange_rate: IDR per USD, or None when unknown
        last_update: When state last changed
        is_initialized: Whether the manager has been seeded
        version: Monotonic change counter
    """

    assets_by_class: dict[AssetType, tuple[Position, ...]] = Field(default_factory=_empty_assets)
    transactions: tuple[Transaction, ...] = ()
    prices: dict[str, PriceQuote] = Field(default_factory=dict)
    exchange_rate: Decimal | None = None
    last_update: datetime | None = None
    is_initialized: bool = False
    version: int = 0

    def get_positions(self, asset_type: AssetType | str) -> tuple[Position, ...]:
        """Positions of one asset class."""
        return self.assets_by_class.get(AssetType.coerce(asset_type), ())

    def iter_positions(self) -> Iterator[Position]:
        """All positions, class by class in AssetType order."""
        for asset_type in AssetType:
            yield from self.assets_by_class.get(asset_type, ())

    @property
    def position_count(self) -> int:
        return sum(len(positions) for positions in self.assets_by_class.values())

    model_config = ConfigDict(frozen=True)


class PortfolioConfig(BaseModel):
    """
    Configuration for the portfolio service.

    Attributes:
        home_currency: Currency of IDX stocks, gold and cash (IDR)
        foreign_currency: Currency of US stocks and crypto (USD)
        idx_lot_size: Shares per IDX lot
        idx_price_suffix: Suffix of IDX tickers in the price feed (BBCA → BBCA.JK)
        default_stock_market: Market assumed for stocks without one (unless priced in USD)
        delete_policy: "permanent" excludes a partition forever once it has a delete;
            "reset" zeroes the fold and lets later transactions open a fresh position
        oversell_policy: "clamp" floors the held amount at zero on oversell;
            "allow" keeps the negative fold (the partition is then excluded)
        skip_unpriced_gold: Drop gold holdings with no resolvable price
        event_history: Max snapshot events kept on the event bus (0 = unlimited)

    Example:
        >>> config = PortfolioConfig(delete_policy="reset", oversell_policy="allow")
    """

    home_currency: str = "IDR"
    foreign_currency: str = "USD"
    idx_lot_size: int = 100
    idx_price_suffix: str = ".JK"
    default_stock_market: Literal["IDX", "US"] = "IDX"
    delete_policy: Literal["permanent", "reset"] = "permanent"
    oversell_policy: Literal["clamp", "allow"] = "clamp"
    skip_unpriced_gold: bool = True
    event_history: int = 1000

    @field_validator("home_currency", "foreign_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency codes are three uppercase letters."""
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Currency must be a 3-letter code, got {v!r}")
        return v

    @field_validator("idx_lot_size")
    @classmethod
    def validate_lot_size(cls, v: int) -> int:
        """Lot size must be positive."""
        if v <= 0:
            raise ValueError(f"Lot size must be positive, got {v}")
        return v

    @field_validator("event_history")
    @classmethod
    def validate_event_history(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"event_history cannot be negative, got {v}")
        return v

    model_config = ConfigDict(frozen=True)
