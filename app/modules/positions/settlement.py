"""
Settlement Calculator

Pure functions for realized PnL and money-management classification.
No I/O, no rounding; all arithmetic is Decimal.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from app.modules.positions.models import PositionSide

Number = Union[Decimal, int, float, str]


class SymbolCategory(str, Enum):
    """Symbol liquidity tier"""
    BTC_ETH = "BTC_ETH"
    MAJOR = "MAJOR"
    ALTCOIN = "ALTCOIN"


class MarginBucket(str, Enum):
    """Margin size bucket (USDT)"""
    UNDER_1 = "<1"
    FROM_1_TO_2 = "1-2"
    FROM_2_TO_5 = "2-5"
    OVER_5 = ">5"


MAJOR_COINS = ("SOL", "BNB", "XRP", "ADA", "DOGE", "MATIC", "DOT", "AVAX", "LINK")


@dataclass(frozen=True)
class Classification:
    """Result of classify()"""
    calculated_margin: Decimal
    symbol_category: SymbolCategory
    margin_bucket: MarginBucket


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_realized_pnl(
    side: Union[PositionSide, str],
    entry_price: Number,
    close_price: Number,
    quantity: Number,
    leverage: Number,
) -> Decimal:
    """
    Calculate realized PnL of a closed position.

    Args:
        side: BUY (long) or SELL (short)
        entry_price: Average entry price
        close_price: Close price
        quantity: Position size
        leverage: Position leverage

    Returns:
        Decimal: (close - entry) * quantity * leverage for BUY,
        (entry - close) * quantity * leverage for SELL

    Example:
        >>> calculate_realized_pnl("BUY", 100, 110, 2, 5)
        Decimal('100')
    """
    entry = _to_decimal(entry_price)
    close = _to_decimal(close_price)

    if PositionSide(side) == PositionSide.BUY:
        price_diff = close - entry
    else:
        price_diff = entry - close

    return price_diff * _to_decimal(quantity) * _to_decimal(leverage)


def symbol_category(symbol: str) -> SymbolCategory:
    """BTC_ETH, MAJOR or ALTCOIN by substring match on the symbol."""
    upper = symbol.upper()
    if "BTC" in upper or "ETH" in upper:
        return SymbolCategory.BTC_ETH
    if any(coin in upper for coin in MAJOR_COINS):
        return SymbolCategory.MAJOR
    return SymbolCategory.ALTCOIN


def margin_bucket(margin: Decimal) -> MarginBucket:
    if margin < 1:
        return MarginBucket.UNDER_1
    if margin < 2:
        return MarginBucket.FROM_1_TO_2
    if margin < 5:
        return MarginBucket.FROM_2_TO_5
    return MarginBucket.OVER_5


def classify(
    symbol: str,
    entry_price: Number,
    quantity: Number,
    leverage: Optional[Number],
) -> Classification:
    """
    Reconstruct margin and classify a position.

    margin = entry_price * quantity / leverage. Zero or missing leverage
    counts as 1.
    """
    lev = _to_decimal(leverage) if leverage is not None else Decimal("1")
    if lev <= 0:
        lev = Decimal("1")

    margin = _to_decimal(entry_price) * _to_decimal(quantity) / lev

    return Classification(
        calculated_margin=margin,
        symbol_category=symbol_category(symbol),
        margin_bucket=margin_bucket(margin),
    )
