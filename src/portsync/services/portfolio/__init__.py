"""Portfolio service: position reconciliation from a transaction log.

Key components:
- Models: Transaction, Position, PortfolioState, PortfolioSummary, PortfolioConfig
- PartitionKeyResolver: groups transactions into independent holdings
- build_position: folds one holding's transactions into a Position
- ValueEngine: price/FX conversion and portfolio totals
- PortfolioStateManager (``portsync.services.portfolio.state_manager``):
  owns canonical state and publishes snapshots

Example:
    >>> from portsync.services.portfolio.state_manager import PortfolioStateManager
    >>> manager = PortfolioStateManager()
    >>> manager.initialize(seed_transactions=[{
    ...     "id": "t1", "type": "buy", "assetType": "stock", "ticker": "BBCA",
    ...     "amount": 100, "price": 9000, "broker": "Ajaib",
    ...     "timestamp": "2024-01-02T00:00:00Z",
    ... }])
    >>> manager.get_summary().total_value_idr
    Decimal('900000')
"""

from portsync.services.portfolio.interface import IPortfolioStateManager
from portsync.services.portfolio.models import (
    AssetType,
    PortfolioConfig,
    PortfolioState,
    PortfolioSummary,
    Position,
    PriceQuote,
    PriceSource,
    Transaction,
    TransactionType,
)
from portsync.services.portfolio.partition import PartitionKeyResolver
from portsync.services.portfolio.position_builder import build_position, fold_transactions
from portsync.services.portfolio.valuation import ValueEngine

__all__ = [
    # Interface
    "IPortfolioStateManager",
    # Components
    "PartitionKeyResolver",
    "ValueEngine",
    "build_position",
    "fold_transactions",
    # Models
    "AssetType",
    "TransactionType",
    "PriceSource",
    "Transaction",
    "PriceQuote",
    "Position",
    "PortfolioSummary",
    "PortfolioState",
    "PortfolioConfig",
]
