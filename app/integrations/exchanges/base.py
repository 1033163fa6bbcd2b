"""
BaseExchangeClient - Abstract Exchange Interface

Defines the capability set the settlement engine needs from an exchange:
ticker lookup, reduce-only close order, conditional order cancellation,
and the signed closed-PnL history query.

Architecture Pattern: Strategy Pattern

Every operation may raise ExchangeUnavailableError (transport, timeout)
or ExchangeRejectedError / ExchangeAuthFailedError (exchange refused).
Callers must not assume a closing order always succeeds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ==================== ENUMS ====================

class HoldSide(str, Enum):
    """Position direction in exchange vocabulary"""
    LONG = "long"
    SHORT = "short"


# ==================== RESULT TYPES ====================

@dataclass
class CloseOrderResult:
    """Outcome of a reduce-only close order"""
    success: bool
    order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CancelOrderResult:
    """Outcome of a conditional order cancellation"""
    success: bool
    order_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExchangeTrade:
    """
    One closed position as reported by the exchange closed-PnL endpoint.

    Timestamps are kept as the raw millisecond strings the exchange sent;
    they are parsed (and defaulted when malformed) by the importer so a
    single bad record never fails the whole fetch.
    """
    trade_id: str
    symbol: str
    hold_side: HoldSide
    entry_price: Decimal
    close_price: Decimal
    quantity: Decimal
    closed_pnl: Decimal
    created_time: Optional[str] = None
    updated_time: Optional[str] = None
    margin_mode: Optional[str] = None
    cum_entry_value: Optional[str] = None
    cum_exit_value: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# ==================== BASE CLIENT ====================

class BaseExchangeClient(ABC):
    """
    Abstract base class for exchange clients.

    Usage:
        async with BybitClient(api_key, api_secret) as client:
            price = await client.get_ticker("BTCUSDT")
            result = await client.close_position("BTCUSDT", Decimal("0.01"), "BUY")
    """

    name: str = "exchange"

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Decimal:
        """
        Get last traded price for a symbol.

        Args:
            symbol: Exchange symbol (e.g., "BTCUSDT")

        Returns:
            Decimal: Last price

        Raises:
            ExchangeUnavailableError: Transport failure or timeout
            ExchangeRejectedError: Exchange refused the request
        """
        pass

    @abstractmethod
    async def close_position(self, symbol: str, size: Decimal, side: str) -> CloseOrderResult:
        """
        Submit a reduce-only market order closing a position.

        Args:
            symbol: Exchange symbol
            size: Quantity to close (full position size)
            side: Side of the position being closed ("BUY" for long, "SELL" for short).
                The order itself goes the opposite way.

        Returns:
            CloseOrderResult with success=True only if the exchange returned an order id
        """
        pass

    @abstractmethod
    async def cancel_conditional_order(self, symbol: str, order_id: str) -> CancelOrderResult:
        """
        Cancel a stop-loss / take-profit conditional order.

        Args:
            symbol: Exchange symbol
            order_id: Exchange order id
        """
        pass

    @abstractmethod
    async def fetch_closed_pnl(self, start_time: int, end_time: int) -> List[ExchangeTrade]:
        """
        Fetch closed positions in [start_time, end_time] (epoch milliseconds).

        Raises:
            ExchangeAuthFailedError: Signature or credentials refused
            ExchangeRejectedError: Non-zero exchange status code
            ExchangeUnavailableError: Transport failure or timeout
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None

    async def __aenter__(self):
        """Async context manager entry"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.aclose()

    def __repr__(self) -> str:
        """String representation"""
        return f"<{self.__class__.__name__} name={self.name}>"
