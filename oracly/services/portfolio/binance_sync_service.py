"""
Binance Sync Service
====================

Incremental, resumable import of Binance history into the local store.

Each dataset synchronizer runs the same page loop:

    load cursor -> fetch page -> read-check-insert each record -> advance
    cursor -> commit page + cursor together -> repeat until caught up

A failure aborts only the in-flight page (rolled back); pages committed
earlier in the run stay committed. The orchestrator isolates synchronizers
from each other so one failing symbol or dataset never blocks the rest.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oracly.config import settings
from oracly.exceptions import (
    CredentialError,
    ExchangeResponseError,
    OraclyError,
    SyncCancelledError,
)
from oracly.models import Deposit, Integration, Trade, TradeType, Withdrawal
from oracly.services.clients.binance_client import BinanceClient
from oracly.services.portfolio.symbol_discovery import build_symbol_index, discover_symbols
from oracly.services.portfolio.sync_cursor_store import (
    DATASET_CONVERT_TRADES,
    DATASET_DEPOSITS,
    DATASET_SPOT_TRADES,
    DATASET_WITHDRAWALS,
    DEFAULT_SCOPE,
    SyncCursorStore,
)
from oracly.services.security.credential_vault import CredentialVault, get_credential_vault

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp_ms(value: Any) -> int:
    """
    Epoch milliseconds from the shapes Binance uses: numbers, numeric strings,
    and "YYYY-MM-DD HH:MM:SS" (UTC) for withdrawal apply times.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    try:
        parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class Page:
    records: List[Dict[str, Any]]
    more: bool  # False once the exchange signalled it is caught up
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DatasetResult:
    dataset: str
    scope: str
    fetched: int = 0
    inserted: int = 0
    pages: int = 0
    cursor: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetched": self.fetched,
            "inserted": self.inserted,
            "pages": self.pages,
            "cursor": self.cursor,
        }


class DatasetSynchronizer:
    """
    Shared page loop. Subclasses supply the dataset-specific pieces:
    where to start, how to fetch a page, how to turn a record into a row, and
    how a page moves the position and the cursor forward.
    """

    dataset: str = ""
    model = None
    id_column: str = ""
    scope_column: Optional[str] = None  # set when provider ids are only unique per scope

    def __init__(
        self,
        session: Session,
        client: BinanceClient,
        integration_id: int,
        api_key: str,
        api_secret: str,
        cursor_store: Optional[SyncCursorStore] = None,
        page_size: Optional[int] = None,
        max_iterations: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.session = session
        self.client = client
        self.integration_id = integration_id
        self.api_key = api_key
        self.api_secret = api_secret
        self.cursors = cursor_store or SyncCursorStore(session)
        self.page_size = page_size or settings.BINANCE_MAX_PAGE_SIZE
        self.max_iterations = max_iterations or settings.SYNC_MAX_PAGE_ITERATIONS
        self.cancel_event = cancel_event
        self.clock = clock
        self.result: Optional[DatasetResult] = None

    # ---- dataset hooks ------------------------------------------------

    def initial_state(self, cursor: Optional[Dict[str, Any]], start_time: Optional[int]) -> Dict[str, Any]:
        raise NotImplementedError

    async def fetch_page(self, scope: str, state: Dict[str, Any]) -> Page:
        raise NotImplementedError

    def record_id(self, raw: Dict[str, Any]) -> str:
        raise NotImplementedError

    def build_row(self, raw: Dict[str, Any], scope: str):
        raise NotImplementedError

    def advance(self, state: Dict[str, Any], page: Page) -> Dict[str, Any]:
        raise NotImplementedError

    def cursor_from_state(self, state: Dict[str, Any], final: bool = False) -> Dict[str, Any]:
        raise NotImplementedError

    def accept(self, raw: Dict[str, Any]) -> bool:
        """Whether a fetched record should be stored at all."""
        return True

    # ---- loop ---------------------------------------------------------

    def _exists(self, provider_id: str, scope: str) -> bool:
        column = getattr(self.model, self.id_column)
        query = self.session.query(self.model.id).filter(
            self.model.integration_id == self.integration_id, column == provider_id
        )
        if self.scope_column:
            query = query.filter(getattr(self.model, self.scope_column) == scope)
        return query.first() is not None

    def _ingest(self, records: List[Dict[str, Any]], scope: str) -> int:
        inserted = 0
        seen_in_page = set()
        for raw in records:
            if not self.accept(raw):
                continue
            try:
                provider_id = self.record_id(raw)
                if provider_id in seen_in_page or self._exists(provider_id, scope):
                    continue
                row = self.build_row(raw, scope)
            except (KeyError, TypeError, ValueError) as e:
                raise ExchangeResponseError(f"Malformed {self.dataset} record: {raw!r}") from e
            seen_in_page.add(provider_id)
            self.session.add(row)
            inserted += 1
        self.session.flush()
        return inserted

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelledError(f"Sync cancelled during {self.dataset}")

    async def run(self, scope: str = DEFAULT_SCOPE, start_time: Optional[int] = None) -> DatasetResult:
        self.result = result = DatasetResult(self.dataset, scope)
        cursor = self.cursors.load(self.integration_id, self.dataset, scope)
        state = self.initial_state(cursor, start_time)

        for _ in range(self.max_iterations):
            self._check_cancelled()
            try:
                page = await self.fetch_page(scope, state)
                inserted = self._ingest(page.records, scope)
                state = self.advance(state, page)
                self.cursors.save(
                    self.integration_id, self.dataset, scope, self.cursor_from_state(state)
                )
                self.session.commit()
            except (KeyError, TypeError, ValueError) as e:
                # Malformed record outside row building (cursor fields, window paging)
                self.session.rollback()
                raise ExchangeResponseError(f"Malformed {self.dataset} page for {scope}: {e}") from e
            except Exception:
                self.session.rollback()
                raise
            result.pages += 1
            result.fetched += len(page.records)
            result.inserted += inserted
            if not page.more:
                break
        else:
            logger.warning(
                f"⚠️  {self.dataset}/{scope} hit the {self.max_iterations}-page cap; "
                "resuming from the saved cursor next run"
            )

        final = self.cursor_from_state(state, final=True)
        try:
            self.cursors.save(self.integration_id, self.dataset, scope, final)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        result.cursor = final
        return result


class SpotTradeSynchronizer(DatasetSynchronizer):
    """Fills per symbol. Pages by trade id once one is known, by start time before that."""

    dataset = DATASET_SPOT_TRADES
    model = Trade
    id_column = "provider_trade_id"
    scope_column = "symbol"  # Binance trade ids restart per symbol

    def __init__(self, *args, symbol_index: Optional[Dict[str, tuple]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.symbol_index = symbol_index or {}

    def initial_state(self, cursor, start_time):
        cursor = cursor or {}
        last_id = cursor.get("lastTradeId")
        last_time = cursor.get("lastTradeTime")
        state = {"last_id": last_id, "last_time": last_time, "from_id": None, "start_time": None}
        no_cursor = last_id is None and last_time is None
        if start_time is not None and (no_cursor or (last_time is not None and start_time < int(last_time))):
            # Override reaches further back than the cursor: rescan from it
            state["start_time"] = start_time
        elif last_id is not None:
            state["from_id"] = int(last_id) + 1
        elif last_time is not None:
            state["start_time"] = int(last_time)
        return state

    async def fetch_page(self, scope, state):
        records = await self.client.get_trades(
            self.api_key,
            self.api_secret,
            scope,
            from_id=state["from_id"],
            start_time=None if state["from_id"] is not None else state["start_time"],
            limit=self.page_size,
        )
        return Page(records=records, more=len(records) >= self.page_size)

    def record_id(self, raw):
        return str(raw["id"])

    def build_row(self, raw, scope):
        base, quote = self.symbol_index.get(scope, (None, None))
        return Trade(
            integration_id=self.integration_id,
            provider_trade_id=self.record_id(raw),
            symbol=scope,
            base_asset=base,
            quote_asset=quote,
            side="BUY" if raw.get("isBuyer") else "SELL",
            quantity=float(raw["qty"]),
            price=float(raw["price"]),
            quote_quantity=_float(raw.get("quoteQty"), None),
            fee=_float(raw.get("commission")),
            fee_asset=raw.get("commissionAsset"),
            is_maker=bool(raw.get("isMaker")),
            executed_at=parse_timestamp_ms(raw["time"]),
            trade_type=TradeType.SPOT,
            raw=raw,
        )

    def advance(self, state, page):
        if not page.records:
            return state
        page_max_id = max(int(r["id"]) for r in page.records)
        page_max_time = max(parse_timestamp_ms(r["time"]) for r in page.records)
        return {
            "last_id": page_max_id if state["last_id"] is None else max(int(state["last_id"]), page_max_id),
            "last_time": (
                page_max_time if state["last_time"] is None else max(int(state["last_time"]), page_max_time)
            ),
            "from_id": page_max_id + 1,
            "start_time": None,
        }

    def cursor_from_state(self, state, final=False):
        last_time = state["last_time"]
        if final and last_time is None and state["last_id"] is None:
            # Nothing ever seen: start from the present next time
            last_time = self.clock()
        return {"lastTradeId": state["last_id"], "lastTradeTime": last_time}


class _TransferSynchronizer(DatasetSynchronizer):
    """Deposits and withdrawals: exclusive start-time paging over one time field."""

    time_field: str = ""
    cursor_key: str = ""

    def initial_state(self, cursor, start_time):
        last_time = (cursor or {}).get(self.cursor_key)
        lower = int(last_time) + 1 if last_time is not None else None
        if start_time is not None and (lower is None or start_time < lower):
            lower = start_time
        return {"last_time": last_time, "start_time": lower}

    async def _fetch(self, start_time: Optional[int]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def fetch_page(self, scope, state):
        records = await self._fetch(state["start_time"])
        return Page(records=records, more=len(records) >= self.page_size)

    def advance(self, state, page):
        if not page.records:
            return state
        page_max = max(parse_timestamp_ms(r[self.time_field]) for r in page.records)
        last = page_max if state["last_time"] is None else max(int(state["last_time"]), page_max)
        return {"last_time": last, "start_time": page_max + 1}

    def cursor_from_state(self, state, final=False):
        return {self.cursor_key: state["last_time"], "lastCheckedAt": self.clock()}


class DepositSynchronizer(_TransferSynchronizer):
    dataset = DATASET_DEPOSITS
    model = Deposit
    id_column = "deposit_id"
    time_field = "insertTime"
    cursor_key = "lastInsertTime"

    async def _fetch(self, start_time):
        return await self.client.get_deposits(
            self.api_key, self.api_secret, start_time=start_time, limit=self.page_size
        )

    def record_id(self, raw):
        # Older deposit records carry no id; txId is unique per deposit there
        return str(raw.get("id") or raw["txId"])

    def build_row(self, raw, scope):
        return Deposit(
            integration_id=self.integration_id,
            deposit_id=self.record_id(raw),
            tx_id=raw.get("txId"),
            coin=raw["coin"],
            amount=float(raw["amount"]),
            network=raw.get("network"),
            address=raw.get("address"),
            address_tag=raw.get("addressTag"),
            status=str(raw.get("status")) if raw.get("status") is not None else None,
            insert_time=parse_timestamp_ms(raw["insertTime"]),
            raw=raw,
        )


class WithdrawalSynchronizer(_TransferSynchronizer):
    dataset = DATASET_WITHDRAWALS
    model = Withdrawal
    id_column = "withdraw_id"
    time_field = "applyTime"
    cursor_key = "lastApplyTime"

    async def _fetch(self, start_time):
        return await self.client.get_withdrawals(
            self.api_key, self.api_secret, start_time=start_time, limit=self.page_size
        )

    def record_id(self, raw):
        return str(raw["id"])

    def build_row(self, raw, scope):
        update_time = raw.get("updateTime")
        return Withdrawal(
            integration_id=self.integration_id,
            withdraw_id=self.record_id(raw),
            tx_id=raw.get("txId"),
            coin=raw["coin"],
            amount=float(raw["amount"]),
            network=raw.get("network"),
            address=raw.get("address"),
            address_tag=raw.get("addressTag"),
            fee=_float(raw.get("transactionFee", raw.get("fee"))),
            status=str(raw.get("status")) if raw.get("status") is not None else None,
            apply_time=parse_timestamp_ms(raw["applyTime"]),
            update_time=parse_timestamp_ms(update_time) if update_time else None,
            raw=raw,
        )


class ConvertTradeSynchronizer(DatasetSynchronizer):
    """
    Convert history. Binance serves it in windows of at most 30 days, so the
    position is a window start that walks from the configured history start
    to now; ``moreData`` pages within one window.
    """

    dataset = DATASET_CONVERT_TRADES
    model = Trade
    id_column = "provider_trade_id"

    def __init__(self, *args, window_days: Optional[int] = None, history_start_ms: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.window_ms = (window_days or settings.CONVERT_WINDOW_DAYS) * DAY_MS
        self.history_start_ms = (
            settings.CONVERT_HISTORY_START_MS if history_start_ms is None else history_start_ms
        )

    def initial_state(self, cursor, start_time):
        cursor = cursor or {}
        last_time = cursor.get("lastCreateTime")
        window_start = cursor.get("windowStart")
        if window_start is None and last_time is not None:
            window_start = int(last_time) + 1
        if window_start is None:
            window_start = self.history_start_ms if start_time is None else start_time
        elif start_time is not None and start_time < window_start:
            window_start = start_time
        return {"last_time": last_time, "window_start": int(window_start)}

    async def fetch_page(self, scope, state):
        now = self.clock()
        window_start = state["window_start"]
        if window_start > now:
            # Already caught up to the present
            return Page(records=[], more=False, meta={"next_start": window_start})
        window_end = min(window_start + self.window_ms - 1, now)
        payload = await self.client.get_convert_trades(
            self.api_key, self.api_secret, start_time=window_start, end_time=window_end, limit=self.page_size
        )
        records = payload["list"]
        if payload["moreData"] and records:
            next_start = max(parse_timestamp_ms(r["createTime"]) for r in records) + 1
        else:
            next_start = window_end + 1
        return Page(records=records, more=next_start <= now, meta={"next_start": next_start})

    def accept(self, raw):
        return raw.get("orderStatus") == "SUCCESS"

    def record_id(self, raw):
        return f"convert:{raw['orderId']}"

    def build_row(self, raw, scope):
        from_amount = float(raw["fromAmount"])
        to_amount = float(raw["toAmount"])
        return Trade(
            integration_id=self.integration_id,
            provider_trade_id=self.record_id(raw),
            symbol=f"{raw['fromAsset']}{raw['toAsset']}",
            base_asset=raw["fromAsset"],
            quote_asset=raw["toAsset"],
            side="SELL",
            quantity=from_amount,
            price=_float(raw.get("ratio"), to_amount / from_amount if from_amount else 0.0),
            quote_quantity=to_amount,
            fee=0.0,
            is_maker=False,
            executed_at=parse_timestamp_ms(raw["createTime"]),
            trade_type=TradeType.CONVERT,
            from_asset=raw["fromAsset"],
            from_amount=from_amount,
            to_asset=raw["toAsset"],
            to_amount=to_amount,
            raw=raw,
        )

    def advance(self, state, page):
        last = state["last_time"]
        accepted = [r for r in page.records if self.accept(r)]
        if accepted:
            page_max = max(parse_timestamp_ms(r["createTime"]) for r in accepted)
            last = page_max if last is None else max(int(last), page_max)
        return {"last_time": last, "window_start": max(state["window_start"], page.meta["next_start"])}

    def cursor_from_state(self, state, final=False):
        return {"lastCreateTime": state["last_time"], "windowStart": state["window_start"]}


class BinanceSyncService:
    """
    Orchestrates a full Binance sync for one integration:
    decrypt credentials -> discover symbols -> spot trades per symbol ->
    deposits -> withdrawals -> convert trades.
    """

    def __init__(
        self,
        client: Optional[BinanceClient] = None,
        vault: Optional[CredentialVault] = None,
        clock: Callable[[], int] = now_ms,
    ):
        # Injected clients are owned by the caller and left open
        self._client = client
        self._vault = vault
        self._clock = clock

    def _decrypt_credentials(self, integration: Integration) -> tuple:
        vault = self._vault or get_credential_vault()
        api_key = vault.decrypt(integration.encrypted_api_key)
        api_secret = vault.decrypt(integration.encrypted_api_secret)
        if not api_key or not api_secret:
            raise CredentialError("Stored Binance credentials are empty; reconnect the integration")
        return api_key, api_secret

    async def _discover(
        self,
        client: BinanceClient,
        cursors: SyncCursorStore,
        integration_id: int,
        api_key: str,
        api_secret: str,
        symbols: Optional[List[str]],
        errors: List[Dict[str, Any]],
    ) -> tuple:
        tracked = cursors.tracked_symbols(integration_id)
        try:
            catalog = await client.get_exchange_symbols()
            balances = await client.get_account_balances(api_key, api_secret)
            discovered = discover_symbols(balances, symbols, catalog, tracked)
            symbol_index = build_symbol_index(catalog)
        except (OraclyError, KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ Symbol discovery failed for integration {integration_id}: {e}")
            errors.append(_error_entry("symbol_discovery", DEFAULT_SCOPE, e))
            fallback = {s.upper() for s in (symbols or []) if s} | set(tracked)
            return sorted(fallback), {}
        logger.info(f"🔎 Integration {integration_id}: {len(discovered)} symbols to sync")
        return discovered, symbol_index

    async def _run_isolated(
        self,
        synchronizer: DatasetSynchronizer,
        scope: str,
        start_time: Optional[int],
        summary: Dict[str, Any],
        errors: List[Dict[str, Any]],
    ) -> bool:
        try:
            result = await synchronizer.run(scope=scope, start_time=start_time)
        except SyncCancelledError:
            _merge_partial(synchronizer, summary)
            raise
        except (OraclyError, SQLAlchemyError) as e:
            logger.error(f"❌ {synchronizer.dataset}/{scope} failed: {e}")
            _merge_partial(synchronizer, summary)
            errors.append(_error_entry(synchronizer.dataset, scope, e))
            return False
        summary["fetched"] += result.fetched
        summary["inserted"] += result.inserted
        summary["scopes"][scope] = result.to_dict()
        return True

    async def sync_integration(
        self,
        session: Session,
        integration: Integration,
        symbols: Optional[List[str]] = None,
        start_time: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Run every synchronizer for the integration and report per-dataset counts.

        Credential problems raise before anything is fetched. Exchange and
        storage errors are collected per synchronizer; the status is
        ``success`` (no errors), ``partial`` (some succeeded), ``error``
        (none succeeded) or ``cancelled``.
        """
        api_key, api_secret = self._decrypt_credentials(integration)
        integration_id = integration.id
        client = self._client or BinanceClient()
        cursors = SyncCursorStore(session)
        errors: List[Dict[str, Any]] = []
        datasets = {
            name: {"fetched": 0, "inserted": 0, "scopes": {}}
            for name in (DATASET_SPOT_TRADES, DATASET_DEPOSITS, DATASET_WITHDRAWALS, DATASET_CONVERT_TRADES)
        }
        discovered: List[str] = []
        succeeded = 0
        cancelled = False

        common = dict(
            session=session,
            client=client,
            integration_id=integration_id,
            api_key=api_key,
            api_secret=api_secret,
            cursor_store=cursors,
            cancel_event=cancel_event,
            clock=self._clock,
        )
        logger.info(f"🚀 Starting Binance sync for integration {integration_id}")
        try:
            discovered, symbol_index = await self._discover(
                client, cursors, integration_id, api_key, api_secret, symbols, errors
            )
            cursors.save(
                integration_id,
                DATASET_SPOT_TRADES,
                DEFAULT_SCOPE,
                {"symbols": discovered, "lastDiscoveredAt": self._clock()},
            )
            session.commit()

            for symbol in discovered:
                sync = SpotTradeSynchronizer(symbol_index=symbol_index, **common)
                succeeded += await self._run_isolated(
                    sync, symbol, start_time, datasets[DATASET_SPOT_TRADES], errors
                )
            for sync_cls in (DepositSynchronizer, WithdrawalSynchronizer, ConvertTradeSynchronizer):
                sync = sync_cls(**common)
                succeeded += await self._run_isolated(
                    sync, DEFAULT_SCOPE, start_time, datasets[sync.dataset], errors
                )
        except SyncCancelledError:
            logger.warning(f"🛑 Sync cancelled for integration {integration_id}")
            cancelled = True
        finally:
            if self._client is None:
                await client.close()

        if cancelled:
            status = "cancelled"
        elif not errors:
            status = "success"
        elif succeeded:
            status = "partial"
        else:
            status = "error"

        inserted = sum(d["inserted"] for d in datasets.values())
        logger.info(
            f"✅ Binance sync for integration {integration_id} finished: {status}, "
            f"{inserted} new records, {len(errors)} errors"
        )
        return {
            "status": status,
            "integration_id": integration_id,
            "datasets": datasets,
            "symbols": discovered,
            "errors": errors,
        }


def _merge_partial(synchronizer: DatasetSynchronizer, summary: Dict[str, Any]) -> None:
    """Count pages a failed synchronizer committed before it stopped."""
    partial = synchronizer.result
    if partial is None:
        return
    summary["fetched"] += partial.fetched
    summary["inserted"] += partial.inserted
    summary["scopes"][partial.scope] = {**partial.to_dict(), "failed": True}


def _error_entry(dataset: str, scope: str, error: Exception) -> Dict[str, Any]:
    entry = {"dataset": dataset, "scope": scope, "error": type(error).__name__, "message": str(error)}
    status = getattr(error, "status", None)
    if status is not None:
        entry["status"] = status
    return entry


# Global instance
binance_sync_service = BinanceSyncService()
