"""Valuation: price resolution, currency conversion, gain and portfolio totals.

Everything is valued in the asset's native currency first and then
cross-converted with the exchange rate (home currency units per one unit of
foreign currency). A missing or non-positive rate zeroes the converted side
instead of raising.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal

from portsync.services.portfolio.models import (
    AssetType,
    PortfolioConfig,
    PortfolioSummary,
    Position,
    PriceQuote,
    PriceSource,
)
from portsync.services.portfolio.partition import PartitionKeyResolver

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class ValueEngine:
    """
    Price/FX conversion and aggregation.

    Stateless apart from configuration; every method returns new values.

    Example:
        >>> engine = ValueEngine()
        >>> fields = engine.valuation_fields(
        ...     amount=Decimal("2"), total_cost=Decimal("100"), price=Decimal("60"),
        ...     currency="USD", fx_rate=Decimal("16000"),
        ... )
        >>> fields["gain"], fields["gain_idr"]
        (Decimal('20'), Decimal('320000'))
    """

    def __init__(self, config: PortfolioConfig | None = None, resolver: PartitionKeyResolver | None = None) -> None:
        self._config = config or PortfolioConfig()
        self._resolver = resolver or PartitionKeyResolver(self._config)

    @property
    def config(self) -> PortfolioConfig:
        return self._config

    def native_currency(self, asset_type: AssetType, market: str | None = None) -> str:
        """Currency an asset is priced in."""
        if asset_type == AssetType.CRYPTO:
            return self._config.foreign_currency
        if asset_type == AssetType.STOCK and (market or "").upper() == "US":
            return self._config.foreign_currency
        return self._config.home_currency

    def convert(self, amount: Decimal, currency: str, fx_rate: Decimal | None) -> tuple[Decimal, Decimal]:
        """
        Express an amount in (home, foreign) currency.

        Args:
            amount: Amount in ``currency``
            currency: Native currency of the amount
            fx_rate: Home currency per unit of foreign currency

        Returns:
            (home_amount, foreign_amount); the converted side is 0 without a usable rate
        """
        has_rate = fx_rate is not None and fx_rate > 0
        if currency == self._config.foreign_currency:
            return (amount * fx_rate if has_rate else ZERO), amount
        return amount, (amount / fx_rate if has_rate else ZERO)

    def valuation_fields(
        self,
        amount: Decimal,
        total_cost: Decimal,
        price: Decimal,
        currency: str,
        fx_rate: Decimal | None,
    ) -> dict[str, Decimal]:
        """
        Valuation figures for a holding.

        gain = current value - cost basis
        gain_percentage = gain / cost basis * 100 (0 without cost basis)
        """
        current_value = price * amount
        gain = current_value - total_cost
        gain_percentage = gain / total_cost * HUNDRED if total_cost > 0 else ZERO

        value_idr, value_usd = self.convert(current_value, currency, fx_rate)
        cost_idr, cost_usd = self.convert(total_cost, currency, fx_rate)
        gain_idr, gain_usd = self.convert(gain, currency, fx_rate)

        return {
            "current_price": price,
            "current_value": current_value,
            "gain": gain,
            "gain_percentage": gain_percentage,
            "value_idr": value_idr,
            "value_usd": value_usd,
            "cost_idr": cost_idr,
            "cost_usd": cost_usd,
            "gain_idr": gain_idr,
            "gain_usd": gain_usd,
        }

    def live_price(self, keys: Iterable[str], prices: Mapping[str, PriceQuote]) -> Decimal:
        """First positive quote among ``keys``, or 0."""
        for key in keys:
            quote = prices.get(key)
            if quote is not None and quote.price > 0:
                return quote.price
        return ZERO

    def live_price_for(self, position: Position, prices: Mapping[str, PriceQuote]) -> Decimal:
        """Live quote for an existing position."""
        keys = self._resolver.price_lookup_keys(
            position.asset_type,
            position.symbol,
            market=position.market,
            subtype=position.subtype,
            brand=position.brand,
        )
        return self.live_price(keys, prices)

    def revalue(
        self,
        position: Position,
        prices: Mapping[str, PriceQuote],
        fx_rate: Decimal | None,
        as_of: datetime | None = None,
    ) -> Position:
        """
        Revalue a position against new prices or a new exchange rate.

        Fold results (amount, average price, cost) are kept. Price priority:
        manual override carried on the position, live quote, the price the
        position was last valued at, then 0.
        """
        if position.asset_type == AssetType.CASH:
            price, source = Decimal("1"), PriceSource.NONE
        elif position.use_manual_price and position.manual_price is not None and position.manual_price > 0:
            price, source = position.manual_price, PriceSource.MANUAL
        else:
            live = self.live_price_for(position, prices)
            if live > 0:
                price, source = live, PriceSource.LIVE
            elif position.current_price > 0:
                price, source = position.current_price, position.price_source
            else:
                price, source = ZERO, PriceSource.NONE

        fields = self.valuation_fields(position.amount, position.total_cost, price, position.currency, fx_rate)
        if position.asset_type == AssetType.CASH:
            fields.update(self.cash_overrides(fields))

        update: dict[str, object] = dict(fields)
        update["price_source"] = source
        update["last_update"] = as_of or position.last_update
        return position.model_copy(update=update)

    def revalue_all(
        self,
        assets_by_class: Mapping[AssetType, Iterable[Position]],
        prices: Mapping[str, PriceQuote],
        fx_rate: Decimal | None,
        as_of: datetime | None = None,
    ) -> dict[AssetType, tuple[Position, ...]]:
        """Revalue every position; class buckets and ordering are preserved."""
        return {
            asset_type: tuple(self.revalue(p, prices, fx_rate, as_of) for p in positions)
            for asset_type, positions in assets_by_class.items()
        }

    @staticmethod
    def cash_overrides(fields: Mapping[str, Decimal]) -> dict[str, Decimal]:
        """Cash never gains: cost equals value and gain is zero."""
        return {
            "gain": ZERO,
            "gain_percentage": ZERO,
            "gain_idr": ZERO,
            "gain_usd": ZERO,
            "cost_idr": fields["value_idr"],
            "cost_usd": fields["value_usd"],
        }

    def summarize(
        self,
        positions: Iterable[Position],
        last_update: datetime | None = None,
    ) -> PortfolioSummary:
        """
        Aggregate portfolio totals in home and foreign currency.

        Cash is included in total value but excluded from invested cost and
        gain.
        """
        total_value_idr = total_value_usd = ZERO
        total_cost_idr = total_cost_usd = ZERO
        total_gain_idr = total_gain_usd = ZERO
        cash_value_idr = cash_value_usd = ZERO
        count = 0

        for position in positions:
            count += 1
            total_value_idr += position.value_idr
            total_value_usd += position.value_usd
            if position.asset_type == AssetType.CASH:
                cash_value_idr += position.value_idr
                cash_value_usd += position.value_usd
                continue
            total_cost_idr += position.cost_idr
            total_cost_usd += position.cost_usd
            total_gain_idr += position.gain_idr
            total_gain_usd += position.gain_usd

        gain_percentage = total_gain_idr / total_cost_idr * HUNDRED if total_cost_idr > 0 else ZERO

        return PortfolioSummary(
            total_value_idr=total_value_idr,
            total_value_usd=total_value_usd,
            total_cost_idr=total_cost_idr,
            total_cost_usd=total_cost_usd,
            total_gain_idr=total_gain_idr,
            total_gain_usd=total_gain_usd,
            total_gain_percentage=gain_percentage,
            cash_value_idr=cash_value_idr,
            cash_value_usd=cash_value_usd,
            asset_count=count,
            last_update=last_update,
        )
