"""
Performance Metrics Models
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PerformanceMetrics(BaseModel):
    """
    Daily rollup for one symbol.

    total_trades always equals winning_trades + losing_trades.
    """

    date: str = Field(..., description="UTC date, YYYY-MM-DD")
    symbol: str
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "PerformanceMetrics":
        data = {key: value for key, value in document.items() if key != "_id"}
        return cls.model_validate(data)


class SettlementEntry(BaseModel):
    """One settled trade to be rolled into the metrics."""

    symbol: str
    realized_pnl: Decimal
    settled_at: datetime
