"""
Binance sync engine tests: page loop, cursors, isolation and cancellation,
driven by an in-memory fake exchange.
"""

import asyncio

import pytest

from oracly.exceptions import DecryptionError, ExchangeApiError, ExchangeResponseError
from oracly.models import Deposit, Trade, TradeType, Withdrawal
from oracly.services.portfolio.binance_sync_service import (
    DAY_MS,
    BinanceSyncService,
    ConvertTradeSynchronizer,
    DepositSynchronizer,
    SpotTradeSynchronizer,
    WithdrawalSynchronizer,
    parse_timestamp_ms,
)
from oracly.services.portfolio.sync_cursor_store import (
    DATASET_CONVERT_TRADES,
    DATASET_DEPOSITS,
    DATASET_SPOT_TRADES,
    DEFAULT_SCOPE,
    SyncCursorStore,
)

HISTORY_START = 1577836800000  # 2020-01-01T00:00:00Z
FIXED_NOW = HISTORY_START + 45 * DAY_MS

CATALOG = [
    {"symbol": "BTCUSDT", "status": "TRADING", "baseAsset": "BTC", "quoteAsset": "USDT"},
    {"symbol": "ETHUSDT", "status": "TRADING", "baseAsset": "ETH", "quoteAsset": "USDT"},
]


def make_trade(trade_id, time_ms=None, **overrides):
    trade = {
        "symbol": "BTCUSDT",
        "id": trade_id,
        "orderId": trade_id * 10,
        "price": "100.0",
        "qty": "0.1",
        "quoteQty": "10.0",
        "commission": "0.0001",
        "commissionAsset": "BNB",
        "time": time_ms if time_ms is not None else HISTORY_START + trade_id,
        "isBuyer": True,
        "isMaker": False,
    }
    trade.update(overrides)
    return trade


class FakeBinanceClient:
    """Stands in for BinanceClient; each endpoint is a swappable callable."""

    def __init__(self, balances=None, catalog=None):
        self.catalog = catalog if catalog is not None else CATALOG
        self.balances = balances if balances is not None else [{"asset": "BTC", "free": "1", "locked": "0"}]
        self.trade_pages = {}
        self.trade_calls = []
        self.deposit_calls = []
        self.withdrawal_calls = []
        self.convert_calls = []
        self.deposits = lambda start_time: []
        self.withdrawals = lambda start_time: []
        self.converts = lambda start, end: {"list": [], "moreData": False}
        self.catalog_error = None

    async def get_exchange_symbols(self):
        if self.catalog_error:
            raise self.catalog_error
        return self.catalog

    async def get_account_balances(self, api_key, api_secret):
        return self.balances

    async def get_trades(self, api_key, api_secret, symbol, from_id=None, start_time=None, limit=None):
        self.trade_calls.append({"symbol": symbol, "from_id": from_id, "start_time": start_time, "limit": limit})
        handler = self.trade_pages.get(symbol)
        if handler is None:
            return []
        return handler(from_id, start_time, limit)

    async def get_deposits(self, api_key, api_secret, start_time=None, limit=None):
        self.deposit_calls.append(start_time)
        return self.deposits(start_time)

    async def get_withdrawals(self, api_key, api_secret, start_time=None, limit=None):
        self.withdrawal_calls.append(start_time)
        return self.withdrawals(start_time)

    async def get_convert_trades(self, api_key, api_secret, start_time, end_time, limit=None):
        self.convert_calls.append((start_time, end_time))
        return self.converts(start_time, end_time)

    async def close(self):
        pass


def paged_trades(total):
    """Serves trades 1..total, honouring fromId and the page limit."""

    def handler(from_id, start_time, limit):
        first = from_id or 1
        return [make_trade(i) for i in range(first, min(first + limit, total + 1))]

    return handler


@pytest.fixture
def fake_client():
    return FakeBinanceClient()


@pytest.fixture
def service(fake_client, vault):
    return BinanceSyncService(client=fake_client, vault=vault, clock=lambda: FIXED_NOW)


def _synchronizer(cls, db_session, integration, client, **kwargs):
    return cls(
        session=db_session,
        client=client,
        integration_id=integration.id,
        api_key="test-key",
        api_secret="test-secret",
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


class TestSpotTrades:
    @pytest.mark.asyncio
    async def test_full_page_then_empty_page(self, db_session, integration, service, fake_client):
        fake_client.trade_pages["BTCUSDT"] = paged_trades(1000)

        result = await service.sync_integration(db_session, integration)

        calls = [c for c in fake_client.trade_calls if c["symbol"] == "BTCUSDT"]
        assert len(calls) == 2
        assert calls[0]["from_id"] is None and calls[0]["start_time"] is None
        assert calls[1]["from_id"] == 1001
        assert result["status"] == "success"
        assert result["datasets"][DATASET_SPOT_TRADES]["inserted"] == 1000
        assert db_session.query(Trade).count() == 1000
        cursor = SyncCursorStore(db_session).load(integration.id, DATASET_SPOT_TRADES, "BTCUSDT")
        assert cursor["lastTradeId"] == 1000
        assert cursor["lastTradeTime"] == HISTORY_START + 1000

    @pytest.mark.asyncio
    async def test_second_sync_resumes_after_cursor(self, db_session, integration, service, fake_client):
        fake_client.trade_pages["BTCUSDT"] = paged_trades(5)
        await service.sync_integration(db_session, integration)
        fake_client.trade_calls.clear()

        result = await service.sync_integration(db_session, integration)

        assert fake_client.trade_calls[0]["from_id"] == 6
        assert result["datasets"][DATASET_SPOT_TRADES]["inserted"] == 0
        assert db_session.query(Trade).count() == 5

    @pytest.mark.asyncio
    async def test_replayed_records_are_not_duplicated(self, db_session, integration, service, fake_client):
        # An exchange that ignores fromId and always replays the same page
        fake_client.trade_pages["BTCUSDT"] = lambda from_id, start_time, limit: [make_trade(1), make_trade(2)]

        await service.sync_integration(db_session, integration)
        await service.sync_integration(db_session, integration)

        assert db_session.query(Trade).count() == 2

    @pytest.mark.asyncio
    async def test_rows_carry_catalog_assets(self, db_session, integration, service, fake_client):
        fake_client.trade_pages["BTCUSDT"] = lambda f, s, l: [make_trade(1, isBuyer=False)]
        await service.sync_integration(db_session, integration)

        trade = db_session.query(Trade).one()
        assert trade.base_asset == "BTC"
        assert trade.quote_asset == "USDT"
        assert trade.side == "SELL"
        assert trade.trade_type == TradeType.SPOT
        assert trade.quote_quantity == pytest.approx(10.0)
        assert trade.provider_trade_id == "1"

    @pytest.mark.asyncio
    async def test_reset_restarts_from_the_beginning(self, db_session, integration, service, fake_client):
        fake_client.trade_pages["BTCUSDT"] = paged_trades(3)
        await service.sync_integration(db_session, integration)
        SyncCursorStore(db_session).reset(integration.id)
        db_session.commit()
        fake_client.trade_calls.clear()

        await service.sync_integration(db_session, integration)

        first = fake_client.trade_calls[0]
        assert first["symbol"] == "BTCUSDT"
        assert first["from_id"] is None and first["start_time"] is None
        assert db_session.query(Trade).count() == 3

    @pytest.mark.asyncio
    async def test_empty_history_records_present_as_start(self, db_session, integration, fake_client):
        sync = _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client)
        result = await sync.run(scope="ETHUSDT")

        assert result.inserted == 0
        assert result.cursor == {"lastTradeId": None, "lastTradeTime": FIXED_NOW}
        fake_client.trade_calls.clear()
        await _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client).run(scope="ETHUSDT")
        assert fake_client.trade_calls[0]["start_time"] == FIXED_NOW

    @pytest.mark.asyncio
    async def test_earlier_start_time_rescans_without_moving_cursor_back(
        self, db_session, integration, fake_client
    ):
        store = SyncCursorStore(db_session)
        store.save(integration.id, DATASET_SPOT_TRADES, "BTCUSDT", {"lastTradeId": 500, "lastTradeTime": 9_000})
        db_session.commit()
        fake_client.trade_pages["BTCUSDT"] = lambda f, s, l: [make_trade(10, 1_000), make_trade(11, 1_100)]

        sync = _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client)
        result = await sync.run(scope="BTCUSDT", start_time=500)

        assert fake_client.trade_calls[0]["start_time"] == 500
        assert fake_client.trade_calls[0]["from_id"] is None
        assert result.inserted == 2
        assert store.load(integration.id, DATASET_SPOT_TRADES, "BTCUSDT") == {
            "lastTradeId": 500,
            "lastTradeTime": 9_000,
            "initialized": True,
        }

    @pytest.mark.asyncio
    async def test_later_start_time_is_ignored(self, db_session, integration, fake_client):
        store = SyncCursorStore(db_session)
        store.save(integration.id, DATASET_SPOT_TRADES, "BTCUSDT", {"lastTradeId": 500, "lastTradeTime": 9_000})
        db_session.commit()

        sync = _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client)
        await sync.run(scope="BTCUSDT", start_time=50_000)

        assert fake_client.trade_calls[0]["from_id"] == 501

    @pytest.mark.asyncio
    async def test_first_write_wins(self, db_session, integration, fake_client):
        db_session.add(
            Trade(
                integration_id=integration.id,
                provider_trade_id="7",
                symbol="BTCUSDT",
                side="BUY",
                quantity=1.0,
                price=1.0,
                executed_at=HISTORY_START,
            )
        )
        db_session.commit()
        fake_client.trade_pages["BTCUSDT"] = lambda f, s, l: [make_trade(7, price="2.0"), make_trade(8)]

        sync = _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client)
        result = await sync.run(scope="BTCUSDT")

        assert result.inserted == 1
        stored = db_session.query(Trade).filter_by(provider_trade_id="7").one()
        assert stored.price == 1.0

    @pytest.mark.asyncio
    async def test_duplicate_ids_within_a_page(self, db_session, integration, fake_client):
        fake_client.trade_pages["BTCUSDT"] = lambda f, s, l: [make_trade(1), make_trade(1)]
        sync = _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client)
        result = await sync.run(scope="BTCUSDT")
        assert result.inserted == 1
        assert db_session.query(Trade).count() == 1

    @pytest.mark.asyncio
    async def test_malformed_page_rolls_back_and_keeps_cursor(self, db_session, integration, fake_client):
        fake_client.trade_pages["BTCUSDT"] = lambda f, s, l: [make_trade(1), {"id": 2, "time": 5}]
        sync = _synchronizer(SpotTradeSynchronizer, db_session, integration, fake_client)

        with pytest.raises(ExchangeResponseError):
            await sync.run(scope="BTCUSDT")

        assert db_session.query(Trade).count() == 0
        assert SyncCursorStore(db_session).load(integration.id, DATASET_SPOT_TRADES, "BTCUSDT") is None

    @pytest.mark.asyncio
    async def test_page_cap_stops_and_saves_progress(self, db_session, integration, fake_client):
        fake_client.trade_pages["BTCUSDT"] = paged_trades(100)
        sync = _synchronizer(
            SpotTradeSynchronizer, db_session, integration, fake_client, page_size=2, max_iterations=3
        )
        result = await sync.run(scope="BTCUSDT")

        assert len(fake_client.trade_calls) == 3
        assert result.inserted == 6
        cursor = SyncCursorStore(db_session).load(integration.id, DATASET_SPOT_TRADES, "BTCUSDT")
        assert cursor["lastTradeId"] == 6


class TestTransfers:
    @pytest.mark.asyncio
    async def test_deposits_use_exclusive_start_time(self, db_session, integration, fake_client):
        fake_client.deposits = lambda start: [
            {"id": "d1", "coin": "USDT", "amount": "100", "insertTime": 1_000, "status": 1, "txId": "0xabc"},
            {"id": "d2", "coin": "BTC", "amount": "0.5", "insertTime": 2_000, "status": 1},
        ] if start is None else []

        first = await _synchronizer(DepositSynchronizer, db_session, integration, fake_client).run()
        second = await _synchronizer(DepositSynchronizer, db_session, integration, fake_client).run()

        assert first.inserted == 2 and second.inserted == 0
        assert fake_client.deposit_calls == [None, 2_001]
        deposit = db_session.query(Deposit).filter_by(deposit_id="d1").one()
        assert deposit.coin == "USDT" and deposit.amount == 100.0 and deposit.status == "1"
        cursor = SyncCursorStore(db_session).load(integration.id, DATASET_DEPOSITS)
        assert cursor["lastInsertTime"] == 2_000
        assert cursor["lastCheckedAt"] == FIXED_NOW

    @pytest.mark.asyncio
    async def test_deposit_without_id_falls_back_to_tx_id(self, db_session, integration, fake_client):
        fake_client.deposits = lambda start: [{"txId": "0xdef", "coin": "ETH", "amount": "1", "insertTime": 10}]
        await _synchronizer(DepositSynchronizer, db_session, integration, fake_client).run()
        assert db_session.query(Deposit).one().deposit_id == "0xdef"

    @pytest.mark.asyncio
    async def test_withdrawal_apply_time_string(self, db_session, integration, fake_client):
        fake_client.withdrawals = lambda start: [
            {
                "id": "w1",
                "coin": "BTC",
                "amount": "0.2",
                "transactionFee": "0.0005",
                "applyTime": "2021-01-01 00:00:00",
                "status": 6,
            }
        ]
        await _synchronizer(WithdrawalSynchronizer, db_session, integration, fake_client).run()

        withdrawal = db_session.query(Withdrawal).one()
        assert withdrawal.apply_time == 1609459200000
        assert withdrawal.fee == pytest.approx(0.0005)


class TestConvertTrades:
    @pytest.mark.asyncio
    async def test_walks_windows_up_to_now(self, db_session, integration, fake_client):
        window = 30 * DAY_MS
        fake_client.converts = lambda start, end: {
            "list": [
                {
                    "orderId": 1,
                    "orderStatus": "SUCCESS",
                    "fromAsset": "USDT",
                    "fromAmount": "100",
                    "toAsset": "BTC",
                    "toAmount": "0.002",
                    "ratio": "0.00002",
                    "createTime": start + 10,
                },
                {
                    "orderId": 2,
                    "orderStatus": "PROCESS",
                    "fromAsset": "USDT",
                    "fromAmount": "5",
                    "toAsset": "ETH",
                    "toAmount": "0.01",
                    "createTime": start + 20,
                },
            ]
            if start == HISTORY_START
            else [],
            "moreData": False,
        }
        sync = _synchronizer(
            ConvertTradeSynchronizer,
            db_session,
            integration,
            fake_client,
            window_days=30,
            history_start_ms=HISTORY_START,
        )
        await sync.run()

        assert fake_client.convert_calls == [
            (HISTORY_START, HISTORY_START + window - 1),
            (HISTORY_START + window, FIXED_NOW),
        ]
        trade = db_session.query(Trade).one()
        assert trade.provider_trade_id == "convert:1"
        assert trade.trade_type == TradeType.CONVERT
        assert (trade.from_asset, trade.to_asset) == ("USDT", "BTC")
        assert trade.symbol == "USDTBTC"
        cursor = SyncCursorStore(db_session).load(integration.id, DATASET_CONVERT_TRADES)
        assert cursor["lastCreateTime"] == HISTORY_START + 10
        assert cursor["windowStart"] == FIXED_NOW + 1

    @pytest.mark.asyncio
    async def test_more_data_pages_within_a_window(self, db_session, integration, fake_client):
        def converts(start, end):
            if start == HISTORY_START:
                return {
                    "list": [
                        {
                            "orderId": 1,
                            "orderStatus": "SUCCESS",
                            "fromAsset": "BTC",
                            "fromAmount": "1",
                            "toAsset": "USDT",
                            "toAmount": "30000",
                            "createTime": HISTORY_START + 500,
                        }
                    ],
                    "moreData": True,
                }
            return {"list": [], "moreData": False}

        fake_client.converts = converts
        sync = _synchronizer(
            ConvertTradeSynchronizer,
            db_session,
            integration,
            fake_client,
            window_days=30,
            history_start_ms=HISTORY_START,
        )
        await sync.run()
        assert fake_client.convert_calls[1][0] == HISTORY_START + 501


class TestOrchestration:
    @pytest.mark.asyncio
    async def test_failing_dataset_does_not_block_others(self, db_session, integration, service, fake_client):
        fake_client.trade_pages["BTCUSDT"] = paged_trades(3)

        def broken(start):
            raise ExchangeApiError(500, "Internal error")

        fake_client.deposits = broken
        fake_client.withdrawals = lambda start: [
            {"id": "w1", "coin": "BTC", "amount": "0.1", "applyTime": 1_000}
        ]

        result = await service.sync_integration(db_session, integration)

        assert result["status"] == "partial"
        assert [(e["dataset"], e["status"]) for e in result["errors"]] == [("deposits", 500)]
        assert db_session.query(Trade).count() == 3
        assert db_session.query(Withdrawal).count() == 1
        assert len(fake_client.convert_calls) > 0

    @pytest.mark.asyncio
    async def test_malformed_stored_duplicate_is_isolated(self, db_session, integration, service, fake_client):
        db_session.add(Deposit(integration_id=integration.id, deposit_id="d1", coin="USDT", amount=1, insert_time=1_000))
        db_session.commit()
        fake_client.trade_pages["BTCUSDT"] = paged_trades(2)
        # Already stored, so it skips row building and fails on the cursor field
        fake_client.deposits = lambda start: [{"id": "d1", "coin": "USDT", "amount": "1"}]
        fake_client.withdrawals = lambda start: [
            {"id": "w1", "coin": "BTC", "amount": "0.1", "applyTime": 2_000}
        ]

        result = await service.sync_integration(db_session, integration)

        assert result["status"] == "partial"
        assert [(e["dataset"], e["error"]) for e in result["errors"]] == [("deposits", "ExchangeResponseError")]
        assert db_session.query(Trade).count() == 2
        assert db_session.query(Withdrawal).count() == 1
        assert SyncCursorStore(db_session).load(integration.id, DATASET_DEPOSITS, DEFAULT_SCOPE) is None
        assert len(fake_client.convert_calls) > 0

    @pytest.mark.asyncio
    async def test_one_symbol_failing_keeps_other_symbols(self, db_session, integration, service, fake_client):
        fake_client.balances = [
            {"asset": "BTC", "free": "1", "locked": "0"},
            {"asset": "ETH", "free": "1", "locked": "0"},
        ]

        def broken(from_id, start_time, limit):
            raise ExchangeApiError(400, "Invalid symbol")

        fake_client.trade_pages["BTCUSDT"] = broken
        fake_client.trade_pages["ETHUSDT"] = lambda f, s, l: [make_trade(1, symbol="ETHUSDT")]

        result = await service.sync_integration(db_session, integration)

        assert result["status"] == "partial"
        assert result["errors"][0]["scope"] == "BTCUSDT"
        assert result["datasets"][DATASET_SPOT_TRADES]["scopes"]["ETHUSDT"]["inserted"] == 1

    @pytest.mark.asyncio
    async def test_everything_failing_is_an_error(self, db_session, integration, service, fake_client):
        def broken(*args):
            raise ExchangeApiError(None, "timeout")

        fake_client.trade_pages["BTCUSDT"] = broken
        fake_client.deposits = broken
        fake_client.withdrawals = broken
        fake_client.converts = broken

        result = await service.sync_integration(db_session, integration)
        assert result["status"] == "error"
        assert len(result["errors"]) == 4

    @pytest.mark.asyncio
    async def test_discovery_failure_falls_back_to_requested_symbols(
        self, db_session, integration, service, fake_client
    ):
        fake_client.catalog_error = ExchangeApiError(503, "maintenance")
        fake_client.trade_pages["ETHUSDT"] = lambda f, s, l: [make_trade(1, symbol="ETHUSDT")]

        result = await service.sync_integration(db_session, integration, symbols=["ethusdt"])

        assert result["symbols"] == ["ETHUSDT"]
        assert result["status"] == "partial"
        assert result["errors"][0]["dataset"] == "symbol_discovery"
        # Unknown catalog: base/quote left for the ledger's suffix heuristic
        assert db_session.query(Trade).one().base_asset is None

    @pytest.mark.asyncio
    async def test_discovered_symbols_are_recorded(self, db_session, integration, service):
        await service.sync_integration(db_session, integration)
        cursor = SyncCursorStore(db_session).load(integration.id, DATASET_SPOT_TRADES, DEFAULT_SCOPE)
        assert cursor["symbols"] == ["BTCUSDT"]
        assert cursor["lastDiscoveredAt"] == FIXED_NOW

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_page(self, db_session, integration, service, fake_client):
        cancel_event = asyncio.Event()
        served = paged_trades(5000)

        def trades(from_id, start_time, limit):
            page = served(from_id, start_time, limit)
            cancel_event.set()
            return page

        fake_client.trade_pages["BTCUSDT"] = trades

        result = await service.sync_integration(db_session, integration, cancel_event=cancel_event)

        assert result["status"] == "cancelled"
        assert len(fake_client.trade_calls) == 1
        # The page fetched before cancellation stays committed
        assert db_session.query(Trade).count() == 1000
        assert fake_client.deposit_calls == []

    @pytest.mark.asyncio
    async def test_undecryptable_credentials_abort_before_fetching(
        self, db_session, make_integration, fake_client
    ):
        from oracly.services.security.credential_vault import CredentialVault

        integration = make_integration()
        other_vault = CredentialVault(key_override="a-different-key")
        service = BinanceSyncService(client=fake_client, vault=other_vault, clock=lambda: FIXED_NOW)

        with pytest.raises(DecryptionError):
            await service.sync_integration(db_session, integration)
        assert fake_client.trade_calls == []


@pytest.mark.parametrize(
    "value,expected",
    [
        (1609459200000, 1609459200000),
        ("1609459200000", 1609459200000),
        ("2021-01-01 00:00:00", 1609459200000),
        ("2021-01-01T00:00:00Z", 1609459200000),
    ],
)
def test_parse_timestamp_ms(value, expected):
    assert parse_timestamp_ms(value) == expected


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp_ms("yesterday")
