"""Portfolio state manager interface (Protocol).

Defines the contract every portfolio state manager must satisfy, so hosts
(API handlers, the CLI, UI bindings) depend on the contract rather than on
one implementation.
"""

from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from portsync.services.portfolio.models import (
    AssetType,
    PortfolioState,
    PortfolioSummary,
    Position,
    Transaction,
)

StateCallback = Callable[[PortfolioState], None]
TransactionInput = Transaction | Mapping[str, Any]


class IPortfolioStateManager(Protocol):
    """
    Owner of the canonical portfolio state.

    Core responsibilities:
    - Rebuild positions from the transaction log
    - Revalue positions on price or exchange-rate changes
    - Serialize concurrent mutations (single-flight, FIFO)
    - Publish immutable snapshots to subscribers

    No mutating call raises on malformed input; bad records are skipped
    and logged.

    Example:
        >>> manager: IPortfolioStateManager = PortfolioStateManager()
        >>> manager.initialize(seed_transactions=log)
        >>> manager.update_prices({"BBCA.JK": {"price": 9500, "currency": "IDR"}})
        >>> manager.get_summary().total_value_idr
    """

    # ==================== Mutations ====================

    def initialize(
        self,
        seed_assets: Mapping[AssetType | str, Iterable[Position | Mapping[str, Any]]] | None = None,
        seed_transactions: Iterable[TransactionInput] | None = None,
    ) -> None:
        """
        Seed state and mark the manager initialized.

        When transactions are given, positions are rebuilt from them and the
        seeded assets are ignored. On the first call, omitting them reuses a log
        stored earlier through update_transactions(). A later call fully
        replaces positions and transactions; without seed transactions the
        log is emptied and only seed_assets remain.
        """
        ...

    def update_transactions(self, transactions: Iterable[TransactionInput]) -> None:
        """Replace the transaction log and rebuild (skipped when unchanged)."""
        ...

    def update_prices(self, prices: Mapping[str, Any]) -> None:
        """
        Merge quotes into the price cache and revalue (no-op when nothing changed).

        A quote for a logged partition that has no position yet, such as
        unpriced gold, triggers a full rebuild instead.
        """
        ...

    def update_exchange_rate(self, rate: Any) -> None:
        """Set the IDR-per-USD rate and revalue; non-numeric input means unknown."""
        ...

    def rebuild_portfolio(self) -> None:
        """Force a full rebuild from the stored transaction log (no-op before initialize)."""
        ...

    def add_transaction(self, transaction: TransactionInput) -> bool:
        """
        Append one transaction and rebuild.

        Returns:
            False when the transaction was skipped (malformed, id pending or
            already in the log)
        """
        ...

    def delete_asset(self, asset_type: AssetType | str, symbol: str, qualifier: str | None = None) -> bool:
        """Append a delete transaction for one holding."""
        ...

    def reset(self) -> None:
        """Clear state to empty; the manager stays initialized."""
        ...

    # ==================== Subscriptions ====================

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """
        Deliver the current snapshot now and every later change.

        Versions reach a subscriber in increasing order, each at most once;
        only notify() repeats the current version.

        Returns:
            Callable that removes the subscription
        """
        ...

    def notify(self) -> None:
        """Publish the current snapshot to every subscriber."""
        ...

    # ==================== Queries ====================

    def get_state(self) -> PortfolioState:
        """Immutable snapshot of the current state."""
        ...

    def get_summary(self) -> PortfolioSummary:
        """Portfolio totals in IDR and USD."""
        ...

    def get_asset(self, asset_type: AssetType | str, symbol: str, qualifier: str | None = None) -> Position | None:
        """First position matching symbol (and qualifier, when given)."""
        ...

    @property
    def is_busy(self) -> bool:
        """Whether a mutation is being processed."""
        ...

    @property
    def pending_count(self) -> int:
        """Mutations waiting behind the one being processed."""
        ...
