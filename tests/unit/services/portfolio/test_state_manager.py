"""Unit tests for PortfolioStateManager: rebuilds, revaluation, queueing and fan-out."""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from portsync.events.event_bus import EventBus
from portsync.events.events import PortfolioStateEvent
from portsync.services.portfolio.interface import IPortfolioStateManager
from portsync.services.portfolio.models import AssetType, PortfolioState, Position, PriceSource
from portsync.services.portfolio.state_manager import PortfolioStateManager, transaction_signature

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def manager() -> PortfolioStateManager:
    return PortfolioStateManager(clock=lambda: NOW, portfolio_id="main")


@pytest.fixture
def seed(make_tx) -> list:
    """Two BBCA buys at Ajaib, one BTC buy and a cash balance."""
    return [
        make_tx(symbol="BBCA", amount=100, price=5000, broker="Ajaib"),
        make_tx(symbol="BBCA", amount=100, price=7000, broker="Ajaib"),
        make_tx(asset_type="crypto", symbol="BTC", amount="0.5", price=60000, exchange="Indodax"),
        make_tx(asset_type="cash", symbol="BCA", amount=1_000_000, price=0),
    ]


class TestInitialize:
    """Seeding the manager."""

    def test_initialize_from_transactions(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)

        state = manager.get_state()
        assert state.is_initialized is True
        assert state.version == 1
        assert state.last_update == NOW
        assert len(state.transactions) == 4
        assert [p.symbol for p in state.get_positions(AssetType.STOCK)] == ["BBCA"]
        assert [p.symbol for p in state.get_positions(AssetType.CRYPTO)] == ["BTC"]
        assert [p.symbol for p in state.get_positions(AssetType.CASH)] == ["BCA"]

        bbca = manager.get_asset("stock", "bbca", "ajaib")
        assert bbca is not None
        assert bbca.amount == Decimal("200")
        assert bbca.avg_price == Decimal("6000")
        assert bbca.last_update == NOW

    def test_initialize_from_raw_records(self, manager) -> None:
        manager.initialize(
            seed_transactions=[
                {
                    "id": "r1",
                    "type": "buy",
                    "assetType": "stock",
                    "ticker": "TLKM",
                    "amount": "300",
                    "price": "3500",
                    "timestamp": "2024-01-02T00:00:00Z",
                },
                {"type": "buy", "assetType": "stock"},
            ]
        )

        state = manager.get_state()
        assert len(state.transactions) == 1
        assert state.get_positions("stocks")[0].lots == Decimal("3")

    def test_initialize_from_seed_assets(self, manager) -> None:
        manager.initialize(
            seed_assets={
                "stocks": [
                    {
                        "partition_key": "stock:BBRI",
                        "asset_type": "stock",
                        "symbol": "BBRI",
                        "currency": "IDR",
                        "amount": "500",
                        "avg_price": "4000",
                        "total_cost": "2000000",
                        "current_price": "4500",
                    }
                ],
                "bonds": [],
            }
        )

        state = manager.get_state()
        assert state.is_initialized is True
        position = state.get_positions(AssetType.STOCK)[0]
        assert isinstance(position, Position)
        assert position.current_value == Decimal("2250000")
        assert position.gain == Decimal("250000")

    def test_second_initialize_replaces_state(self, manager, seed, make_tx) -> None:
        manager.initialize(seed_transactions=seed)
        manager.initialize(seed_transactions=[make_tx(symbol="TLKM", amount=100, price=3000)])

        state = manager.get_state()
        assert state.version == 2
        assert [p.symbol for p in state.iter_positions()] == ["TLKM"]

    def test_second_initialize_with_seed_assets_drops_old_log(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.initialize(
            seed_assets={
                "stocks": [
                    {
                        "partition_key": "stock:TLKM",
                        "asset_type": "stock",
                        "symbol": "TLKM",
                        "currency": "IDR",
                        "amount": "100",
                        "avg_price": "3000",
                        "total_cost": "300000",
                    }
                ]
            }
        )

        state = manager.get_state()
        assert [p.symbol for p in state.iter_positions()] == ["TLKM"]
        assert state.transactions == ()

        # Signature was cleared, so the same log rebuilds again
        manager.update_transactions(seed)
        assert manager.get_state().position_count == 3

    def test_second_initialize_without_arguments_clears_state(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.initialize()

        state = manager.get_state()
        assert state.is_initialized is True
        assert state.position_count == 0
        assert state.transactions == ()

        manager.update_transactions(seed)
        assert manager.get_state().position_count == 3

    def test_transactions_before_initialize_are_stored_not_built(self, manager, seed) -> None:
        callback = Mock()
        manager.subscribe(callback)

        manager.update_transactions(seed)

        state = manager.get_state()
        assert state.is_initialized is False
        assert len(state.transactions) == 4
        assert state.position_count == 0
        assert callback.call_count == 1  # Initial delivery only

        manager.initialize()

        assert manager.get_state().position_count == 3
        assert callback.call_count == 2


class TestUpdateTransactions:
    """Full rebuild path."""

    def test_rebuild_on_log_change(self, manager, seed, make_tx) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_transactions(seed + [make_tx(type="sell", symbol="BBCA", amount=50, broker="Ajaib")])

        bbca = manager.get_asset(AssetType.STOCK, "BBCA")
        assert bbca is not None
        assert bbca.amount == Decimal("150")
        assert bbca.avg_price == Decimal("6000")
        assert manager.get_state().version == 2

    def test_unchanged_log_skips_rebuild(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        callback = Mock()
        manager.subscribe(callback)

        manager.update_transactions(list(seed))

        assert manager.get_state().version == 1
        assert callback.call_count == 1

    def test_duplicate_ids_first_wins(self, manager, make_tx) -> None:
        manager.initialize()
        original = make_tx(id="dup", amount=100, price=5000)
        duplicate = make_tx(id="dup", amount=999, price=1)

        manager.update_transactions([original, duplicate])

        state = manager.get_state()
        assert state.transactions == (original,)
        assert state.get_positions(AssetType.STOCK)[0].amount == Decimal("100")

    def test_empty_log_rebuilds_to_empty(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_transactions([])

        state = manager.get_state()
        assert state.position_count == 0
        assert state.transactions == ()
        assert state.version == 2

    def test_rebuild_portfolio_forces_full_path(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.rebuild_portfolio()

        state = manager.get_state()
        assert state.version == 2
        assert state.position_count == 3

    def test_rebuild_before_initialize_is_a_no_op(self, manager, seed) -> None:
        callback = Mock()
        manager.subscribe(callback)
        manager.update_transactions(seed)

        manager.rebuild_portfolio()

        state = manager.get_state()
        assert state.is_initialized is False
        assert state.version == 0
        assert state.position_count == 0
        assert callback.call_count == 1

    def test_signature(self, make_tx) -> None:
        first, last = make_tx(id="a"), make_tx(id="b")
        assert transaction_signature([]) is None
        assert transaction_signature([first, last]) == (2, "a", "b", last.timestamp)


class TestRevaluation:
    """Price and exchange-rate path."""

    def test_prices_revalue_without_rebuild(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)

        with patch("portsync.services.portfolio.state_manager.build_position") as builder:
            manager.update_prices({"bbca.jk": {"price": 9000, "currency": "IDR"}})

        builder.assert_not_called()
        bbca = manager.get_asset(AssetType.STOCK, "BBCA")
        assert bbca is not None
        assert bbca.current_price == Decimal("9000")
        assert bbca.price_source == PriceSource.LIVE
        assert bbca.current_value == Decimal("1800000")
        assert manager.get_state().prices["BBCA.JK"].price == Decimal("9000")

    def test_unchanged_prices_are_a_no_op(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_prices({"BBCA.JK": 9000})
        callback = Mock()
        manager.subscribe(callback)

        manager.update_prices({"BBCA.JK": 9000})

        assert manager.get_state().version == 2
        assert callback.call_count == 1

    def test_prices_merge_into_cache(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_prices({"BBCA.JK": 9000})
        manager.update_prices({"BTC": 65000})

        assert set(manager.get_state().prices) == {"BBCA.JK", "BTC"}

    def test_prices_known_before_rebuild_are_used(self, manager, seed) -> None:
        manager.update_prices({"BTC": {"price": 70000, "currency": "USD"}})
        manager.initialize(seed_transactions=seed)

        btc = manager.get_asset(AssetType.CRYPTO, "BTC", "indodax")
        assert btc is not None
        assert btc.current_value == Decimal("35000")

    def test_quote_for_unpriced_gold_rebuilds_it(self, manager, make_tx) -> None:
        manager.initialize(
            seed_transactions=[make_tx(asset_type="gold", symbol="GOLD-ANTAM", brand="antam", amount=5, price=0)]
        )
        assert manager.get_state().get_positions(AssetType.GOLD) == ()

        manager.update_prices({"GOLD-ANTAM": 1_500_000})

        positions = manager.get_state().get_positions(AssetType.GOLD)
        assert len(positions) == 1
        assert positions[0].current_price == Decimal("1500000")
        assert positions[0].price_source == PriceSource.LIVE

    def test_exchange_rate_converts_positions(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        btc = manager.get_asset(AssetType.CRYPTO, "BTC")
        assert btc is not None and btc.value_idr == Decimal("0")

        manager.update_exchange_rate(16000)

        btc = manager.get_asset(AssetType.CRYPTO, "BTC")
        assert btc is not None
        assert btc.value_idr == Decimal("480000000")
        assert manager.get_state().exchange_rate == Decimal("16000")

    def test_same_exchange_rate_is_a_no_op(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_exchange_rate(16000)
        manager.update_exchange_rate(Decimal("16000"))

        assert manager.get_state().version == 2

    def test_non_numeric_rate_means_unknown(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_exchange_rate(16000)

        manager.update_exchange_rate("16000")

        state = manager.get_state()
        assert state.exchange_rate is None
        assert manager.get_asset(AssetType.CRYPTO, "BTC").value_idr == Decimal("0")


class TestAddAndDelete:
    """Transaction wrappers."""

    def test_add_transaction(self, manager, seed, make_tx) -> None:
        manager.initialize(seed_transactions=seed)

        assert manager.add_transaction(make_tx(symbol="BBCA", amount=100, price=9000, broker="Ajaib")) is True

        bbca = manager.get_asset(AssetType.STOCK, "BBCA")
        assert bbca is not None
        assert bbca.amount == Decimal("300")
        assert bbca.avg_price == Decimal("7000")

    def test_add_existing_id_skipped(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)

        assert manager.add_transaction(seed[0]) is False
        assert manager.get_state().version == 1

    def test_add_malformed_record_skipped(self, manager) -> None:
        manager.initialize()
        assert manager.add_transaction({"type": "buy", "assetType": "stock"}) is False

    def test_add_before_initialize_only_stores(self, manager, make_tx) -> None:
        manager.add_transaction(make_tx())

        state = manager.get_state()
        assert len(state.transactions) == 1
        assert state.position_count == 0

    def test_delete_asset_only_removes_that_broker(self, manager, make_tx) -> None:
        manager.initialize(
            seed_transactions=[
                make_tx(symbol="BBCA", amount=100, broker="Ajaib"),
                make_tx(symbol="BBCA", amount=200, broker="Stockbit"),
            ]
        )

        assert manager.delete_asset("stock", "BBCA", "Ajaib") is True

        remaining = manager.get_state().get_positions(AssetType.STOCK)
        assert [(p.symbol, p.broker) for p in remaining] == [("BBCA", "Stockbit")]
        delete_tx = manager.get_state().transactions[-1]
        assert delete_tx.id.startswith("delete_")
        assert delete_tx.timestamp == NOW

    def test_delete_crypto_by_exchange_and_cash_by_name(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)

        manager.delete_asset(AssetType.CRYPTO, "BTC", "Indodax")
        manager.delete_asset("cash", "BCA", "ignored")

        state = manager.get_state()
        assert state.get_positions(AssetType.CRYPTO) == ()
        assert state.get_positions(AssetType.CASH) == ()
        assert state.get_positions(AssetType.STOCK) != ()

    def test_delete_gold_by_symbol(self, manager, make_tx) -> None:
        manager.initialize(
            seed_transactions=[
                make_tx(asset_type="gold", symbol="GOLD-ANTAM", brand="antam", amount=5, price=1_000_000),
                make_tx(asset_type="gold", symbol="GOLD-DIGITAL", subtype="digital", amount=2, price=1_100_000),
            ]
        )
        position = manager.get_state().get_positions(AssetType.GOLD)[0]

        manager.delete_asset(position.asset_type, position.symbol, position.qualifier)

        assert [p.symbol for p in manager.get_state().get_positions(AssetType.GOLD)] == ["GOLD-DIGITAL"]

    def test_delete_with_blank_symbol_rejected(self, manager) -> None:
        manager.initialize()
        assert manager.delete_asset("stock", "  ") is False


class TestReset:
    """Reset keeps the manager initialized."""

    def test_reset(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_prices({"BBCA.JK": 9000})

        manager.reset()

        state = manager.get_state()
        assert state.is_initialized is True
        assert state.position_count == 0
        assert state.transactions == ()
        assert state.prices == {}
        assert state.version == 3

    def test_same_log_rebuilds_after_reset(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.reset()
        manager.update_transactions(seed)

        assert manager.get_state().position_count == 3


class TestSubscriptions:
    """Snapshot fan-out."""

    def test_subscribe_delivers_current_snapshot_immediately(self, manager) -> None:
        callback = Mock()
        manager.subscribe(callback)

        callback.assert_called_once()
        assert isinstance(callback.call_args.args[0], PortfolioState)
        assert callback.call_args.args[0].version == 0

    def test_every_change_is_delivered(self, manager, seed) -> None:
        versions = []
        manager.subscribe(lambda state: versions.append(state.version))

        manager.initialize(seed_transactions=seed)
        manager.update_prices({"BBCA.JK": 9000})
        manager.update_exchange_rate(16000)

        assert versions == [0, 1, 2, 3]

    def test_unsubscribe(self, manager, seed) -> None:
        callback = Mock()
        unsubscribe = manager.subscribe(callback)

        unsubscribe()
        manager.initialize(seed_transactions=seed)

        assert callback.call_count == 1

    def test_notify_republishes_current_state(self, manager) -> None:
        callback = Mock()
        manager.subscribe(callback)

        manager.notify()

        assert callback.call_count == 2
        assert callback.call_args.args[0].version == 0

    def test_change_during_initial_delivery_is_not_lost(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        versions = []

        def callback(state: PortfolioState) -> None:
            versions.append(state.version)
            if len(versions) == 1:
                worker = threading.Thread(target=manager.update_prices, args=({"BBCA.JK": 9000},))
                worker.start()
                worker.join()

        manager.subscribe(callback)

        assert versions == [1, 2]
        assert versions[-1] == manager.get_state().version

    def test_stale_versions_are_dropped(self, manager, seed) -> None:
        bus = manager.event_bus
        versions = []
        manager.subscribe(lambda state: versions.append(state.version))
        manager.initialize(seed_transactions=seed)
        current = manager.get_state()

        bus.publish(PortfolioStateEvent(portfolio_id="main", version=0, reason="reset", state=current))
        bus.publish(PortfolioStateEvent(portfolio_id="main", version=1, reason="prices", state=current))

        assert versions == [0, 1]

    def test_failing_subscriber_is_isolated(self, manager, seed) -> None:
        def broken(state):
            raise RuntimeError("subscriber failed")

        good = Mock()
        manager.subscribe(broken)
        manager.subscribe(good)

        manager.initialize(seed_transactions=seed)

        assert good.call_count == 2
        assert manager.get_state().version == 1
        assert not manager.is_busy

    def test_snapshots_cannot_reach_canonical_state(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)

        snapshot = manager.get_state()
        snapshot.prices["FAKE"] = None  # type: ignore[assignment]
        snapshot.assets_by_class[AssetType.STOCK] = ()

        state = manager.get_state()
        assert "FAKE" not in state.prices
        assert len(state.get_positions(AssetType.STOCK)) == 1

    def test_events_published_on_injected_bus(self, seed) -> None:
        bus = EventBus()
        manager = PortfolioStateManager(event_bus=bus, clock=lambda: NOW, portfolio_id="main")

        manager.initialize(seed_transactions=seed)
        manager.update_exchange_rate(16000)

        history = bus.get_history(event_type="portfolio_state")
        assert [e.reason for e in history] == ["initialize", "exchange_rate"]
        assert all(isinstance(e, PortfolioStateEvent) for e in history)
        assert history[-1].portfolio_id == "main"
        assert history[-1].version == 2

    def test_managers_sharing_a_bus_stay_separate(self, seed) -> None:
        bus = EventBus()
        first = PortfolioStateManager(event_bus=bus, portfolio_id="first")
        second = PortfolioStateManager(event_bus=bus, portfolio_id="second")
        callback = Mock()
        first.subscribe(callback)

        second.initialize(seed_transactions=seed)

        assert callback.call_count == 1


class TestSingleFlight:
    """Serialized mutation processing."""

    def test_reentrant_updates_are_queued_in_order(self, manager, seed) -> None:
        seen = []
        observed = {}

        def callback(state: PortfolioState) -> None:
            seen.append(state.version)
            if state.version == 1:
                manager.update_prices({"BBCA.JK": 9000})
                manager.update_prices({"BBCA.JK": 9500})
                observed["busy"] = manager.is_busy
                observed["pending"] = manager.pending_count
                observed["price_during_callback"] = manager.get_state().prices.get("BBCA.JK")

        manager.subscribe(callback)
        manager.initialize(seed_transactions=seed)

        assert observed == {"busy": True, "pending": 2, "price_during_callback": None}
        assert seen == [0, 1, 2, 3]
        assert manager.get_state().prices["BBCA.JK"].price == Decimal("9500")
        assert not manager.is_busy
        assert manager.pending_count == 0

    def test_failed_mutation_clears_queue_and_recovers(self, manager, make_tx) -> None:
        def callback(state: PortfolioState) -> None:
            if state.version == 1:
                manager.update_transactions([make_tx()])
                manager.update_exchange_rate(16000)

        with patch(
            "portsync.services.portfolio.state_manager.build_position",
            side_effect=RuntimeError("boom"),
        ):
            manager.subscribe(callback)
            manager.initialize()

        state = manager.get_state()
        assert state.version == 1
        assert state.exchange_rate is None
        assert not manager.is_busy
        assert manager.pending_count == 0

        manager.update_exchange_rate(16000)
        assert manager.get_state().exchange_rate == Decimal("16000")

    def test_concurrent_callers_lose_nothing(self, manager, make_tx) -> None:
        manager.initialize()
        versions = []
        manager.subscribe(lambda state: versions.append(state.version))

        batches = [
            [make_tx(id=f"w{w}-{i}", symbol="BBCA", amount=1, price=1000) for i in range(25)] for w in range(8)
        ]

        def worker(batch) -> None:
            for tx in batch:
                manager.add_transaction(tx)

        threads = [threading.Thread(target=worker, args=(batch,)) for batch in batches]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        state = manager.get_state()
        assert len(state.transactions) == 200
        assert state.get_positions(AssetType.STOCK)[0].amount == Decimal("200")
        assert versions == sorted(set(versions))
        assert not manager.is_busy


class TestQueries:
    """Read-only accessors."""

    def test_summary(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        manager.update_prices({"BBCA.JK": 9000, "BTC": 70000})
        manager.update_exchange_rate(16000)

        summary = manager.get_summary()

        assert summary.total_value_idr == Decimal("1800000") + Decimal("560000000") + Decimal("1000000")
        assert summary.total_cost_idr == Decimal("1200000") + Decimal("480000000")
        assert summary.cash_value_idr == Decimal("1000000")
        assert summary.asset_count == 3
        assert summary.last_update == NOW

    def test_get_asset_misses(self, manager, seed) -> None:
        manager.initialize(seed_transactions=seed)
        assert manager.get_asset("stock", "TLKM") is None
        assert manager.get_asset("stock", "BBCA", "Stockbit") is None


class TestInterface:
    """The manager satisfies the state manager protocol."""

    def test_implements_every_protocol_member(self) -> None:
        members = [name for name in vars(IPortfolioStateManager) if not name.startswith("_")]

        assert "initialize" in members
        for name in members:
            assert hasattr(PortfolioStateManager, name), name
