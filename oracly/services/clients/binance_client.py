"""
Binance REST Client
===================

Signed, read-only access to the Binance spot and SAPI endpoints the sync
engine needs: exchange catalog, balances, trade/deposit/withdrawal history and
convert history.

Every authenticated call merges the caller's params with ``recvWindow`` and
``timestamp``, signs the exact query string with HMAC-SHA256 and sends the API
key in the ``X-MBX-APIKEY`` header. Transient failures (429/418/5xx and
transport errors) are retried with exponential backoff; other 4xx fail fast.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from oracly.config import settings
from oracly.exceptions import CredentialError, ExchangeApiError, ExchangeResponseError

logger = logging.getLogger(__name__)

EXCHANGE_INFO_PATH = "/api/v3/exchangeInfo"
ACCOUNT_PATH = "/api/v3/account"
MY_TRADES_PATH = "/api/v3/myTrades"
DEPOSIT_HISTORY_PATH = "/sapi/v1/capital/deposit/hisrec"
WITHDRAW_HISTORY_PATH = "/sapi/v1/capital/withdraw/history"
CONVERT_TRADE_FLOW_PATH = "/sapi/v1/convert/tradeFlow"


def sign_query(query: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the query string."""
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


def _now_ms() -> int:
    return int(time.time() * 1000)


class BinanceClient:
    """
    Async Binance client.

    ``transport`` and ``sleep`` are injectable so tests can replay canned
    exchange responses without network access or real backoff delays.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        recv_window_ms: Optional[int] = None,
        max_page_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], int] = _now_ms,
    ):
        self.base_url = (base_url or settings.BINANCE_API_URL).rstrip("/")
        self.recv_window_ms = recv_window_ms or settings.BINANCE_RECV_WINDOW_MS
        self.max_page_size = max_page_size or settings.BINANCE_MAX_PAGE_SIZE
        self.timeout_seconds = timeout_seconds or settings.BINANCE_REQUEST_TIMEOUT
        self.max_retries = settings.BINANCE_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.BINANCE_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BinanceClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.close()
        return False

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retry_delay(self, attempt: int, response: Optional[httpx.Response]) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return max(float(retry_after), 0.0)
                except ValueError:
                    pass
        return self.retry_base_delay * (2 ** attempt)

    async def _request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ) -> Any:
        signed = api_key is not None or api_secret is not None
        if signed and (not api_key or not api_secret):
            raise CredentialError("Binance API key and secret are required")

        attempt = 0
        while True:
            # Re-signed on every attempt so the timestamp stays inside recvWindow
            query_params = [(k, v) for k, v in (params or {}).items() if v is not None]
            headers = {}
            if signed:
                query_params.append(("recvWindow", self.recv_window_ms))
                query_params.append(("timestamp", self._clock()))
            query = urlencode(query_params)
            if signed:
                query = f"{query}&signature={sign_query(query, api_secret)}"
                headers["X-MBX-APIKEY"] = api_key
            url = f"{self.base_url}{path}" + (f"?{query}" if query else "")

            response: Optional[httpx.Response] = None
            try:
                response = await self._http().get(url, headers=headers)
            except httpx.TransportError as e:
                error = ExchangeApiError(None, str(e), message=f"Transport error calling {path}: {e}")
            else:
                if response.status_code < 400:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ExchangeResponseError(
                            f"Unparseable response from {path}: {response.text[:200]}"
                        ) from e
                error = ExchangeApiError(response.status_code, response.text)

            if not error.retryable or attempt >= self.max_retries:
                logger.error(f"❌ Binance {path} failed: {error.message}")
                raise error
            wait = self._retry_delay(attempt, response)
            attempt += 1
            logger.warning(
                f"⏳ Binance {path} returned {error.status} – retrying in {wait:.1f}s "
                f"(attempt {attempt}/{self.max_retries})"
            )
            await self._sleep(wait)

    @staticmethod
    def _expect_list(payload: Any, path: str) -> List[Dict[str, Any]]:
        if not isinstance(payload, list):
            raise ExchangeResponseError(f"Expected a list from {path}, got {type(payload).__name__}")
        return payload

    def _limit(self, limit: Optional[int]) -> int:
        return min(limit or self.max_page_size, self.max_page_size)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_exchange_symbols(self) -> List[Dict[str, Any]]:
        """Public catalog of tradable pairs: [{symbol, status, baseAsset, quoteAsset}]."""
        payload = await self._request(EXCHANGE_INFO_PATH)
        if not isinstance(payload, dict) or not isinstance(payload.get("symbols"), list):
            raise ExchangeResponseError("exchangeInfo response has no symbols list")
        return [
            {
                "symbol": s.get("symbol"),
                "status": s.get("status"),
                "baseAsset": s.get("baseAsset"),
                "quoteAsset": s.get("quoteAsset"),
            }
            for s in payload["symbols"]
            if s.get("symbol")
        ]

    async def get_account_balances(self, api_key: str, api_secret: str) -> List[Dict[str, Any]]:
        payload = await self._request(ACCOUNT_PATH, {}, api_key, api_secret)
        if not isinstance(payload, dict) or not isinstance(payload.get("balances"), list):
            raise ExchangeResponseError("account response has no balances list")
        return payload["balances"]

    async def get_trades(
        self,
        api_key: str,
        api_secret: str,
        symbol: str,
        from_id: Optional[int] = None,
        start_time: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """One page of fills for a symbol, paged by trade id or by start time."""
        params: Dict[str, Any] = {"symbol": symbol, "limit": self._limit(limit)}
        if from_id is not None:
            params["fromId"] = from_id
        elif start_time is not None:
            params["startTime"] = start_time
        payload = await self._request(MY_TRADES_PATH, params, api_key, api_secret)
        return self._expect_list(payload, MY_TRADES_PATH)

    async def get_deposits(
        self,
        api_key: str,
        api_secret: str,
        start_time: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"limit": self._limit(limit), "startTime": start_time}
        payload = await self._request(DEPOSIT_HISTORY_PATH, params, api_key, api_secret)
        return self._expect_list(payload, DEPOSIT_HISTORY_PATH)

    async def get_withdrawals(
        self,
        api_key: str,
        api_secret: str,
        start_time: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"limit": self._limit(limit), "startTime": start_time}
        payload = await self._request(WITHDRAW_HISTORY_PATH, params, api_key, api_secret)
        return self._expect_list(payload, WITHDRAW_HISTORY_PATH)

    async def get_convert_trades(
        self,
        api_key: str,
        api_secret: str,
        start_time: int,
        end_time: int,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Convert history for one window (Binance caps a window at 30 days)."""
        params = {"startTime": start_time, "endTime": end_time, "limit": self._limit(limit)}
        payload = await self._request(CONVERT_TRADE_FLOW_PATH, params, api_key, api_secret)
        if not isinstance(payload, dict) or not isinstance(payload.get("list", []), list):
            raise ExchangeResponseError("convert tradeFlow response has no list")
        return {"list": payload.get("list") or [], "moreData": bool(payload.get("moreData"))}
