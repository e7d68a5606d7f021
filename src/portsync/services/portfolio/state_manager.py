"""Portfolio state manager.

Owns the canonical PortfolioState and is the only component that replaces
it. Every mutating call is wrapped in a mutation and pushed onto a FIFO
queue; the first caller drains the queue, so at most one rebuild or
revaluation runs at a time and mutations apply in submission order. Calls
that arrive during a drain (from another thread, or re-entrantly from a
subscriber) only enqueue and return.

Two update paths:
- Full rebuild: transaction log changed. Partition, fold, value.
- Revaluation: prices or exchange rate changed. Existing positions are
  revalued without touching the fold.
"""

import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from portsync.events.event_bus import EventBus, SubscriptionToken
from portsync.events.events import PortfolioStateEvent
from portsync.services.portfolio.interface import StateCallback, TransactionInput
from portsync.services.portfolio.models import (
    AssetType,
    PortfolioConfig,
    PortfolioState,
    PortfolioSummary,
    Position,
    Transaction,
    TransactionType,
)
from portsync.services.portfolio.parsing import (
    dedupe_transactions,
    parse_exchange_rate,
    parse_price_map,
    parse_transaction,
    parse_transactions,
)
from portsync.services.portfolio.partition import PartitionKeyResolver
from portsync.services.portfolio.position_builder import build_position
from portsync.services.portfolio.valuation import ValueEngine
from portsync.system import LoggerFactory

logger = LoggerFactory.get_logger()

Signature = tuple[int, str, str, datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def transaction_signature(transactions: Sequence[Transaction]) -> Signature | None:
    """Cheap structural fingerprint: (count, first id, last id, last timestamp)."""
    if not transactions:
        return None
    return (len(transactions), transactions[0].id, transactions[-1].id, transactions[-1].timestamp)


@dataclass(frozen=True)
class _Mutation:
    """Queued state change; ``apply`` returns the publish reason, or None when nothing changed."""

    kind: str
    apply: Callable[[], str | None]


class PortfolioStateManager:
    """
    Portfolio state manager.

    Thread Safety: every public method may be called from any thread or
    from inside a subscriber. Mutations submitted while another one is
    being processed are queued and applied by the draining caller.

    Example:
        >>> manager = PortfolioStateManager()
        >>> unsubscribe = manager.subscribe(render)
        >>> manager.initialize(seed_transactions=records)
        >>> manager.update_exchange_rate(16000)
        >>> unsubscribe()
    """

    def __init__(
        self,
        config: PortfolioConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        portfolio_id: str | None = None,
    ) -> None:
        """
        Initialize manager.

        Args:
            config: Portfolio configuration (defaults apply when None)
            event_bus: Bus snapshots are published on; a private one is
                created when None
            clock: Source of "now" (UTC); injectable for tests
            portfolio_id: Identifier stamped on published events
        """
        self._config = config or PortfolioConfig()
        self._event_bus = event_bus or EventBus(max_history=self._config.event_history)
        self._clock = clock or _utc_now
        self._portfolio_id = portfolio_id or str(uuid4())

        self._resolver = PartitionKeyResolver(self._config)
        self._engine = ValueEngine(self._config, self._resolver)

        self._state = PortfolioState()
        self._signature: Signature | None = None

        self._lock = threading.Lock()
        self._queue: deque[_Mutation] = deque()
        self._draining = False
        self._pending_ids: set[str] = set()

        logger.debug("portfolio.manager_initialized", portfolio_id=self._portfolio_id)

    # ==================== Properties ====================

    @property
    def config(self) -> PortfolioConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def portfolio_id(self) -> str:
        return self._portfolio_id

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._draining

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    # ==================== Queue ====================

    def _submit(self, kind: str, apply: Callable[[], str | None]) -> None:
        with self._lock:
            self._queue.append(_Mutation(kind, apply))
            if self._draining:
                logger.debug("portfolio.mutation_queued", kind=kind, pending=len(self._queue))
                return
            self._draining = True
        self._drain()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._draining = False
                    return
                mutation = self._queue.popleft()

            try:
                reason = mutation.apply()
                if reason is not None:
                    self._publish(reason)
            except Exception as e:
                with self._lock:
                    dropped = len(self._queue)
                    self._queue.clear()
                    self._pending_ids.clear()
                    self._draining = False
                logger.error(
                    "portfolio.mutation_failed",
                    kind=mutation.kind,
                    error=str(e),
                    dropped=dropped,
                    exc_info=True,
                )
                return

    # ==================== State helpers ====================

    def _commit(self, **update: Any) -> None:
        """Replace canonical state; bumps the version and the update time."""
        update.setdefault("last_update", self._clock())
        update["version"] = self._state.version + 1
        self._state = self._state.model_copy(update=update)

    def _snapshot(self) -> PortfolioState:
        state = self._state
        return state.model_copy(
            update={
                "assets_by_class": dict(state.assets_by_class),
                "prices": dict(state.prices),
            }
        )

    def _build_assets(
        self,
        transactions: Sequence[Transaction],
        prices: Mapping[str, Any],
        fx_rate: Any,
    ) -> dict[AssetType, tuple[Position, ...]]:
        start = time.perf_counter()
        as_of = self._clock()
        groups = self._resolver.group(transactions)

        buckets: dict[AssetType, list[Position]] = {asset_type: [] for asset_type in AssetType}
        for group in groups.values():
            live = self._engine.live_price(self._resolver.lookup_keys_for(group), prices)
            position = build_position(group, live, fx_rate, self._config, as_of=as_of)
            if position is not None:
                buckets[position.asset_type].append(position)

        assets = {asset_type: tuple(positions) for asset_type, positions in buckets.items()}
        logger.info(
            "portfolio.rebuilt",
            transactions=len(transactions),
            partitions=len(groups),
            positions=sum(len(p) for p in assets.values()),
            duration=time.perf_counter() - start,
        )
        return assets

    def _quotes_unbuilt_partition(self, keys: Iterable[str]) -> bool:
        """Whether any of ``keys`` prices a logged partition that currently has no position."""
        if not self._state.is_initialized or not self._state.transactions:
            return False
        quoted = set(keys)
        built = {position.partition_key for position in self._state.iter_positions()}
        for partition_key, group in self._resolver.group(self._state.transactions).items():
            if partition_key in built:
                continue
            if quoted.intersection(self._resolver.lookup_keys_for(group)):
                return True
        return False

    def _coerce_seed_assets(
        self,
        seed_assets: Mapping[AssetType | str, Iterable[Position | Mapping[str, Any]]],
    ) -> dict[AssetType, tuple[Position, ...]]:
        assets: dict[AssetType, tuple[Position, ...]] = {asset_type: () for asset_type in AssetType}
        for key, positions in seed_assets.items():
            try:
                asset_type = AssetType.coerce(key)
            except ValueError:
                logger.warning("portfolio.seed_class_skipped", asset_class=str(key))
                continue
            assets[asset_type] = tuple(
                p if isinstance(p, Position) else Position.model_validate(p) for p in positions
            )
        return assets

    # ==================== Mutations ====================

    def initialize(
        self,
        seed_assets: Mapping[AssetType | str, Iterable[Position | Mapping[str, Any]]] | None = None,
        seed_transactions: Iterable[TransactionInput] | None = None,
    ) -> None:
        seeded = None if seed_transactions is None else dedupe_transactions(parse_transactions(seed_transactions))

        def apply() -> str:
            if seeded is not None:
                transactions = seeded
            elif not self._state.is_initialized:
                # Log stored through update_transactions() ahead of the first initialize
                transactions = list(self._state.transactions)
            else:
                transactions = []
            if transactions:
                assets = self._build_assets(transactions, self._state.prices, self._state.exchange_rate)
            else:
                assets = self._engine.revalue_all(
                    self._coerce_seed_assets(seed_assets or {}),
                    self._state.prices,
                    self._state.exchange_rate,
                )
            self._signature = transaction_signature(transactions)
            self._commit(assets_by_class=assets, transactions=tuple(transactions), is_initialized=True)
            logger.info(
                "portfolio.initialized",
                portfolio_id=self._portfolio_id,
                transactions=len(transactions),
                positions=self._state.position_count,
            )
            return "initialize"

        self._submit("initialize", apply)

    def update_transactions(self, transactions: Iterable[TransactionInput]) -> None:
        parsed = parse_transactions(transactions)

        def apply() -> str | None:
            unique = dedupe_transactions(parsed)
            signature = transaction_signature(unique)
            if self._state.is_initialized and signature is not None and signature == self._signature:
                logger.debug("portfolio.rebuild_skipped", reason="unchanged", transactions=len(unique))
                return None

            if not self._state.is_initialized:
                # Kept for the rebuild that initialize() will run
                self._state = self._state.model_copy(update={"transactions": tuple(unique)})
                self._signature = signature
                logger.debug("portfolio.transactions_stored", transactions=len(unique))
                return None

            assets = self._build_assets(unique, self._state.prices, self._state.exchange_rate)
            self._signature = signature
            self._commit(assets_by_class=assets, transactions=tuple(unique))
            return "transactions"

        self._submit("transactions", apply)

    def rebuild_portfolio(self) -> None:
        def apply() -> str | None:
            if not self._state.is_initialized:
                logger.debug("portfolio.rebuild_skipped", reason="not_initialized")
                return None
            transactions = self._state.transactions
            assets = self._build_assets(transactions, self._state.prices, self._state.exchange_rate)
            self._signature = transaction_signature(transactions)
            self._commit(assets_by_class=assets)
            return "rebuild"

        self._submit("rebuild", apply)

    def update_prices(self, prices: Mapping[str, Any]) -> None:
        parsed = parse_price_map(prices or {})

        def apply() -> str | None:
            current = self._state.prices
            changed = {key: quote for key, quote in parsed.items() if current.get(key) != quote}
            if not changed:
                logger.debug("portfolio.prices_unchanged", quotes=len(parsed))
                return None

            merged = {**current, **changed}
            if self._quotes_unbuilt_partition(changed.keys()):
                # A holding skipped for lack of a price can only come back through a rebuild
                assets = self._build_assets(self._state.transactions, merged, self._state.exchange_rate)
            else:
                assets = self._engine.revalue_all(
                    self._state.assets_by_class, merged, self._state.exchange_rate, as_of=self._clock()
                )
            self._commit(prices=merged, assets_by_class=assets)
            logger.debug("portfolio.prices_updated", changed=len(changed), total=len(merged))
            return "prices"

        self._submit("prices", apply)

    def update_exchange_rate(self, rate: Any) -> None:
        parsed = parse_exchange_rate(rate)
        if parsed is None and rate is not None:
            logger.warning("portfolio.exchange_rate_invalid", rate=repr(rate))

        def apply() -> str | None:
            if parsed == self._state.exchange_rate:
                return None
            assets = self._engine.revalue_all(
                self._state.assets_by_class, self._state.prices, parsed, as_of=self._clock()
            )
            self._commit(exchange_rate=parsed, assets_by_class=assets)
            logger.debug("portfolio.exchange_rate_updated", rate=str(parsed) if parsed is not None else None)
            return "exchange_rate"

        self._submit("exchange_rate", apply)

    def add_transaction(self, transaction: TransactionInput) -> bool:
        tx = parse_transaction(transaction)
        if tx is None:
            return False

        with self._lock:
            if tx.id in self._pending_ids or any(t.id == tx.id for t in self._state.transactions):
                logger.debug("portfolio.transaction_duplicate", transaction_id=tx.id)
                return False
            self._pending_ids.add(tx.id)

        def apply() -> str | None:
            with self._lock:
                self._pending_ids.discard(tx.id)
            if any(t.id == tx.id for t in self._state.transactions):
                return None

            transactions = self._state.transactions + (tx,)
            if not self._state.is_initialized:
                self._state = self._state.model_copy(update={"transactions": transactions})
                return None

            assets = self._build_assets(transactions, self._state.prices, self._state.exchange_rate)
            self._signature = transaction_signature(transactions)
            self._commit(assets_by_class=assets, transactions=transactions)
            logger.info(
                "portfolio.transaction_added",
                transaction_id=tx.id,
                type=tx.type.value,
                asset_type=tx.asset_type.value,
                symbol=tx.symbol,
            )
            return "transactions"

        self._submit("add_transaction", apply)
        return True

    def delete_asset(self, asset_type: AssetType | str, symbol: str, qualifier: str | None = None) -> bool:
        """
        Remove a holding by appending a delete transaction.

        The qualifier is the broker for stocks and gold and the exchange for
        crypto; cash is keyed by name only, so it is ignored there.
        """
        asset_type = AssetType.coerce(asset_type)
        broker = exchange = None
        if asset_type == AssetType.CRYPTO:
            exchange = qualifier
        elif asset_type != AssetType.CASH:
            broker = qualifier

        try:
            tx = Transaction(
                id=f"delete_{uuid4().hex}",
                type=TransactionType.DELETE,
                asset_type=asset_type,
                symbol=symbol,
                timestamp=self._clock(),
                broker=broker,
                exchange=exchange,
            )
        except ValidationError as e:
            logger.warning("portfolio.delete_skipped", asset_type=asset_type.value, symbol=symbol, errors=e.error_count())
            return False
        return self.add_transaction(tx)

    def reset(self) -> None:
        def apply() -> str:
            self._signature = None
            self._state = PortfolioState(
                is_initialized=True,
                version=self._state.version + 1,
                last_update=self._clock(),
            )
            logger.info("portfolio.reset", portfolio_id=self._portfolio_id)
            return "reset"

        self._submit("reset", apply)

    # ==================== Subscriptions ====================

    def subscribe(self, callback: StateCallback) -> SubscriptionToken:
        """
        Deliver the current snapshot synchronously, then every later change.

        The bus handler is registered before the snapshot is taken, so a
        mutation that commits in between is never lost. Each subscription
        remembers the last version it delivered and drops anything not newer,
        except the explicit re-publish from notify().

        Returns:
            SubscriptionToken; calling it unsubscribes
        """
        portfolio_id = self._portfolio_id
        name = getattr(callback, "__name__", str(callback))
        guard = threading.Lock()
        delivered = [-1]

        def deliver(version: int, state: PortfolioState, repeat: bool = False) -> None:
            with guard:
                if version < delivered[0] or (version == delivered[0] and not repeat):
                    return
                delivered[0] = version
            callback(state)

        def handler(event: PortfolioStateEvent) -> None:
            if event.portfolio_id == portfolio_id:
                deliver(event.version, event.state, repeat=event.reason == "notify")

        handler.__name__ = getattr(callback, "__name__", "subscriber")
        token = self._event_bus.subscribe(PortfolioStateEvent, handler)

        try:
            snapshot = self._snapshot()
            deliver(snapshot.version, snapshot)
        except Exception as e:
            logger.error("portfolio.subscriber_error", subscriber=name, error=str(e))
        return token

    def notify(self) -> None:
        self._publish("notify")

    def _publish(self, reason: str) -> None:
        state = self._snapshot()
        self._event_bus.publish(
            PortfolioStateEvent(
                portfolio_id=self._portfolio_id,
                version=state.version,
                reason=reason,
                state=state,
            )
        )

    # ==================== Queries ====================

    def get_state(self) -> PortfolioState:
        return self._snapshot()

    def get_summary(self) -> PortfolioSummary:
        state = self._state
        return self._engine.summarize(state.iter_positions(), state.last_update)

    def get_asset(self, asset_type: AssetType | str, symbol: str, qualifier: str | None = None) -> Position | None:
        symbol = symbol.strip().upper()
        wanted = qualifier.strip().upper() if qualifier else None
        for position in self._state.get_positions(asset_type):
            if position.symbol.upper() != symbol:
                continue
            if wanted is not None and (position.qualifier or "").upper() != wanted:
                continue
            return position
        return None
