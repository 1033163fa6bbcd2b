"""
BybitClient - Bybit v5 Exchange Integration

REST client for the operations the settlement engine needs:
- Ticker lookup
- Reduce-only market close order
- Conditional (SL/TP) order cancellation
- Signed closed-PnL history query with window slicing and cursor paging

Authentication (Bybit v5):
    sign = HMAC_SHA256(secret, timestamp + api_key + recv_window + payload)

where payload is the query string for GET and the JSON body for POST.
The payload is built exactly once per request and the very same bytes are
put on the wire; if the query is re-encoded or its parameters reordered
after signing, Bybit answers retCode 10004 (signature error).
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from app.config.settings import Settings
from app.integrations.exchanges.base import (
    BaseExchangeClient,
    CancelOrderResult,
    CloseOrderResult,
    ExchangeTrade,
    HoldSide,
)
from app.shared.exceptions import (
    ExchangeAuthFailedError,
    ExchangeRejectedError,
    ExchangeUnavailableError,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)

# Bybit retCodes meaning the key/signature was refused
AUTH_ERROR_CODES = {10003, 10004, 10005, 33004}

# Bybit rejects closed-pnl queries spanning more than 7 days
MAX_CLOSED_PNL_WINDOW_MS = 7 * 24 * 60 * 60 * 1000


def build_query_string(params: Sequence[Tuple[str, Any]]) -> str:
    """
    Build the canonical query string, preserving parameter order.

    Spaces become %20 (never "+"), and already percent-encoded values such
    as Bybit pagination cursors are passed through untouched.
    """
    return "&".join(f"{key}={quote(str(value), safe='%')}" for key, value in params)


def sign_payload(secret: str, timestamp: str, api_key: str, recv_window: str, payload: str) -> str:
    """Bybit v5 HMAC-SHA256 signature, lowercase hex."""
    message = f"{timestamp}{api_key}{recv_window}{payload}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class BybitClient(BaseExchangeClient):
    """
    Bybit v5 REST client.

    Usage:
        async with BybitClient(api_key="key", api_secret="secret") as client:
            price = await client.get_ticker("BTCUSDT")
            trades = await client.fetch_closed_pnl(start_ms, end_ms)
    """

    name = "bybit"

    BASE_URL_PROD = "https://api.bybit.com"
    BASE_URL_TESTNET = "https://api-testnet.bybit.com"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = BASE_URL_PROD,
        recv_window: int = 5000,
        category: str = "linear",
        timeout: float = 10.0,
        page_limit: int = 100,
        max_pages: int = 20,
        hedge_mode: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Bybit client.

        Args:
            api_key: Bybit API key
            api_secret: Bybit API secret
            base_url: REST base URL (production or testnet)
            recv_window: Request validity window in milliseconds
            category: Product category ("linear" for USDT perpetuals)
            timeout: Per-request timeout in seconds
            page_limit: Records per closed-pnl page (max 100)
            max_pages: Cursor pages followed per 7-day slice
            hedge_mode: Use positionIdx 1/2 (hedge mode) instead of 0 (one-way)
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        if not api_key or not api_secret:
            raise ExchangeAuthFailedError("Bybit API key and secret are required")

        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = str(recv_window)
        self.category = category
        self.timeout = timeout
        self.page_limit = page_limit
        self.max_pages = max_pages
        self.hedge_mode = hedge_mode

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(f"Initialized BybitClient: base_url={self.base_url}, category={category}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BybitClient":
        """Build a client from application settings."""
        return cls(
            api_key=settings.BYBIT_API_KEY,
            api_secret=settings.BYBIT_API_SECRET,
            base_url=settings.BYBIT_BASE_URL,
            recv_window=settings.BYBIT_RECV_WINDOW,
            category=settings.EXCHANGE_CATEGORY,
            timeout=settings.EXCHANGE_TIMEOUT_SECONDS,
            page_limit=settings.CLOSED_PNL_PAGE_LIMIT,
            max_pages=settings.CLOSED_PNL_MAX_PAGES,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close HTTP client"""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _timestamp_ms(self) -> str:
        return str(int(time.time() * 1000))

    def _auth_headers(self, payload: str) -> Dict[str, str]:
        """Signed headers for one request. Timestamp is fresh on every call."""
        timestamp = self._timestamp_ms()
        signature = sign_payload(self.api_secret, timestamp, self.api_key, self.recv_window, payload)
        return {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-SIGN": signature,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": self.recv_window,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Sequence[Tuple[str, Any]]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make a signed API request to Bybit.

        Args:
            method: HTTP method (GET or POST)
            endpoint: API endpoint
            params: Ordered query parameters (GET)
            body: JSON body (POST)

        Returns:
            The "result" object of the Bybit envelope

        Raises:
            ExchangeUnavailableError: Transport failure, timeout, 5xx or non-JSON answer
            ExchangeAuthFailedError: Credentials or signature refused
            ExchangeRejectedError: Any other non-zero retCode or 4xx
        """
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"
        content: Optional[bytes] = None

        if method == "GET":
            payload = build_query_string(params or [])
            if payload:
                url = f"{url}?{payload}"
        elif method == "POST":
            payload = json.dumps(body or {}, separators=(",", ":"))
            content = payload.encode()
        else:
            raise ValueError(f"Unsupported HTTP method: {method}")

        headers = self._auth_headers(payload)

        logger.debug(f"Bybit request: {method} {endpoint} payload={payload}")

        try:
            response = await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            logger.error(f"Bybit request timed out: {method} {endpoint}")
            raise ExchangeUnavailableError(f"Bybit request timed out: {endpoint}") from e
        except httpx.HTTPError as e:
            logger.error(f"Bybit API request failed: {str(e)}")
            raise ExchangeUnavailableError(f"Failed to connect to Bybit: {str(e)}") from e

        return self._handle_response(response, endpoint)

    def _handle_response(self, response: httpx.Response, endpoint: str) -> Dict[str, Any]:
        """
        Map the HTTP response and Bybit envelope to a result or an exception.
        """
        if response.status_code in (401, 403):
            raise ExchangeAuthFailedError(
                f"Bybit authentication failed ({response.status_code}): {response.text}"
            )
        if response.status_code >= 500:
            raise ExchangeUnavailableError(
                f"Bybit HTTP error {response.status_code} on {endpoint}"
            )
        if response.status_code >= 400:
            raise ExchangeRejectedError(
                f"Bybit HTTP error {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExchangeUnavailableError(f"Bybit returned a non-JSON response on {endpoint}") from e

        if not isinstance(data, dict):
            raise ExchangeUnavailableError(f"Bybit returned an unexpected payload on {endpoint}")

        ret_code = data.get("retCode")
        ret_msg = data.get("retMsg") or "Unknown error"

        if ret_code != 0:
            logger.error(f"Bybit API error on {endpoint}: {ret_code} - {ret_msg}")
            if ret_code in AUTH_ERROR_CODES:
                raise ExchangeAuthFailedError(
                    f"Bybit authentication failed ({ret_code}): {ret_msg}",
                    ret_code=ret_code,
                )
            raise ExchangeRejectedError(
                f"Bybit API error ({ret_code}): {ret_msg}",
                ret_code=ret_code,
            )

        return data.get("result") or {}

    # ==================== MARKET DATA ====================

    async def get_ticker(self, symbol: str) -> Decimal:
        """Get last traded price"""
        result = await self._request(
            "GET",
            "/v5/market/tickers",
            params=[("category", self.category), ("symbol", symbol)],
        )

        tickers = result.get("list") or []
        if not tickers:
            raise ExchangeRejectedError(f"No ticker returned for {symbol}")

        try:
            return Decimal(str(tickers[0]["lastPrice"]))
        except (KeyError, InvalidOperation) as e:
            raise ExchangeRejectedError(f"Malformed ticker for {symbol}: {tickers[0]}") from e

    # ==================== ORDER OPERATIONS ====================

    def _close_order_side(self, side: str) -> Tuple[str, int]:
        """
        Map a position side to the closing order side and positionIdx.

        BUY/long positions close with a Sell on positionIdx 1,
        SELL/short positions close with a Buy on positionIdx 2.
        """
        is_long = side.upper() in ("BUY", "LONG")
        order_side = "Sell" if is_long else "Buy"
        if not self.hedge_mode:
            return order_side, 0
        return order_side, 1 if is_long else 2

    async def close_position(self, symbol: str, size: Decimal, side: str) -> CloseOrderResult:
        """Submit a reduce-only IOC market order for the full size"""
        order_side, position_idx = self._close_order_side(side)

        result = await self._request(
            "POST",
            "/v5/order/create",
            body={
                "category": self.category,
                "symbol": symbol,
                "side": order_side,
                "orderType": "Market",
                "qty": format(Decimal(str(size)).normalize(), "f"),
                "positionIdx": position_idx,
                "reduceOnly": True,
                "timeInForce": "IOC",
            },
        )

        order_id = result.get("orderId")
        logger.info(f"close_position {symbol}: side={order_side}, size={size}, order_id={order_id}")

        return CloseOrderResult(success=bool(order_id), order_id=order_id or None, raw=result)

    async def cancel_conditional_order(self, symbol: str, order_id: str) -> CancelOrderResult:
        """Cancel a conditional (SL/TP) order"""
        result = await self._request(
            "POST",
            "/v5/order/cancel",
            body={
                "category": self.category,
                "symbol": symbol,
                "orderId": order_id,
            },
        )

        return CancelOrderResult(
            success=bool(result.get("orderId")),
            order_id=result.get("orderId") or order_id,
            raw=result,
        )

    # ==================== CLOSED PNL HISTORY ====================

    async def fetch_closed_pnl(self, start_time: int, end_time: int) -> List[ExchangeTrade]:
        """
        Fetch closed positions between start_time and end_time (epoch ms).

        The window is cut into consecutive slices of at most 7 days; each
        slice follows nextPageCursor until exhausted or max_pages is hit.
        """
        trades: List[ExchangeTrade] = []

        slice_start = start_time
        while slice_start < end_time:
            slice_end = min(slice_start + MAX_CLOSED_PNL_WINDOW_MS, end_time)
            trades.extend(await self._fetch_closed_pnl_slice(slice_start, slice_end))
            slice_start = slice_end

        logger.info(f"Fetched {len(trades)} closed positions from Bybit")
        return trades

    async def _fetch_closed_pnl_slice(self, start_time: int, end_time: int) -> List[ExchangeTrade]:
        trades: List[ExchangeTrade] = []
        cursor: Optional[str] = None

        for page in range(self.max_pages):
            params: List[Tuple[str, Any]] = [
                ("category", self.category),
                ("startTime", start_time),
                ("endTime", end_time),
                ("limit", self.page_limit),
            ]
            if cursor:
                params.append(("cursor", cursor))

            result = await self._request("GET", "/v5/position/closed-pnl", params=params)

            for item in result.get("list") or []:
                trade = self._parse_trade(item)
                if trade is not None:
                    trades.append(trade)

            cursor = result.get("nextPageCursor")
            if not cursor:
                break
        else:
            logger.warning(
                f"Closed-pnl paging stopped after {self.max_pages} pages "
                f"for window {start_time}-{end_time}; older records were not fetched"
            )

        return trades

    def _parse_trade(self, item: Dict[str, Any]) -> Optional[ExchangeTrade]:
        """
        Convert one closed-pnl record. Records with unusable prices are
        logged and skipped; timestamps are left raw for the importer.
        """
        position_idx = item.get("positionIdx")
        if position_idx in (1, "1"):
            hold_side = HoldSide.LONG
        elif position_idx in (2, "2"):
            hold_side = HoldSide.SHORT
        else:
            hold_side = HoldSide.LONG if item.get("side") == "Buy" else HoldSide.SHORT

        try:
            return ExchangeTrade(
                trade_id=str(item.get("orderId", "")),
                symbol=item["symbol"],
                hold_side=hold_side,
                entry_price=Decimal(str(item["avgEntryPrice"])),
                close_price=Decimal(str(item["avgExitPrice"])),
                quantity=Decimal(str(item.get("closedSize") or item.get("qty") or "0")),
                closed_pnl=Decimal(str(item.get("closedPnl") or "0")),
                created_time=item.get("createdTime"),
                updated_time=item.get("updatedTime"),
                margin_mode=item.get("marginMode"),
                cum_entry_value=item.get("cumEntryValue"),
                cum_exit_value=item.get("cumExitValue"),
                raw=item,
            )
        except (KeyError, InvalidOperation) as e:
            logger.warning(f"Skipping malformed closed-pnl record {item.get('orderId')}: {e}")
            return None
