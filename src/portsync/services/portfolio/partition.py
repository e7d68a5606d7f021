"""Partition key resolution.

Groups transactions into independent holdings. A holding is identified by
asset class, symbol and broker/exchange. The same ticker held at two
brokers is two partitions and never aggregates.
"""

from collections.abc import Iterable, Sequence

from portsync.services.portfolio.models import AssetType, PortfolioConfig, Transaction


def _norm(value: str | None) -> str:
    return value.strip().upper() if value else ""


class PartitionKeyResolver:
    """
    Stable grouping of transactions into partitions.

    Key format: ``<class>:<SYMBOL>[|<BROKER or EXCHANGE>]``. Gold symbols
    carry brand and subtype themselves (GOLD-DIGITAL, GOLD-ANTAM), so two
    brands at one dealer stay apart. Cash is keyed by bank name alone.

    Example:
        >>> resolver = PartitionKeyResolver()
        >>> resolver.partition_key(tx)  # buy BBCA at broker "Ajaib"
        'stock:BBCA|AJAIB'
    """

    def __init__(self, config: PortfolioConfig | None = None) -> None:
        self._config = config or PortfolioConfig()

    def partition_key(self, tx: Transaction) -> str:
        """Partition key of one transaction."""
        key = f"{tx.asset_type.value}:{_norm(tx.symbol)}"

        if tx.asset_type == AssetType.CASH:
            return key

        qualifier = _norm(tx.qualifier)
        if qualifier:
            key = f"{key}|{qualifier}"

        return key

    def group(self, transactions: Iterable[Transaction]) -> dict[str, list[Transaction]]:
        """
        Group transactions by partition key.

        Partitions appear in order of their first transaction; within a
        partition, transactions keep their log order.
        """
        groups: dict[str, list[Transaction]] = {}
        for tx in transactions:
            groups.setdefault(self.partition_key(tx), []).append(tx)
        return groups

    def resolve_market(self, transactions: Sequence[Transaction]) -> str | None:
        """
        Market of a stock partition.

        Explicit market on any transaction wins; otherwise a USD price means
        "US", and anything else falls back to the configured default.
        """
        if not transactions or transactions[0].asset_type != AssetType.STOCK:
            return None
        sample = next((tx for tx in transactions if tx.market), transactions[0])
        if sample.market:
            return sample.market.upper()
        if _norm(sample.currency) == self._config.foreign_currency:
            return "US"
        return self._config.default_stock_market

    def price_lookup_keys(
        self,
        asset_type: AssetType,
        symbol: str,
        market: str | None = None,
        subtype: str | None = None,
        brand: str | None = None,
    ) -> tuple[str, ...]:
        """
        Keys to try, in order, when looking up a live quote.

        Cash has no market price and yields no keys.
        """
        symbol = _norm(symbol)
        if asset_type == AssetType.STOCK:
            if _norm(market) == "US":
                return (symbol,)
            return (f"{symbol}{self._config.idx_price_suffix.upper()}", symbol)
        if asset_type == AssetType.CRYPTO:
            return (symbol,)
        if asset_type == AssetType.GOLD:
            keys: list[str] = []
            if brand and _norm(subtype) != "DIGITAL":
                keys.append(f"GOLD-{_norm(brand)}")
            keys.append(symbol)
            keys.append("GOLD-DIGITAL")
            return tuple(dict.fromkeys(keys))
        return ()

    def lookup_keys_for(self, transactions: Sequence[Transaction]) -> tuple[str, ...]:
        """Price lookup keys for a partition's transactions."""
        if not transactions:
            return ()
        first = transactions[0]
        subtype = next((tx.subtype for tx in transactions if tx.subtype), None)
        brand = next((tx.brand for tx in transactions if tx.brand), None)
        return self.price_lookup_keys(
            first.asset_type,
            first.symbol,
            market=self.resolve_market(transactions),
            subtype=subtype,
            brand=brand,
        )
