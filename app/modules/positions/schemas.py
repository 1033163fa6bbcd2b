"""
Position Schemas

Pydantic schemas for the settlement and import API requests and responses.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_serializer


# ==================== REQUEST SCHEMAS ====================

class ClosePositionRequest(BaseModel):
    """Close position request"""
    position_id: str = Field(..., min_length=1, description="Position id")
    reason: Optional[str] = Field(default=None, description="Close reason (defaults to 'manual')")


class ImportHistoryRequest(BaseModel):
    """Import closed trade history request"""
    days: int = Field(default=30, ge=1, le=365, description="How many days back to import")


# ==================== RESPONSE SCHEMAS ====================

class ClosePositionResponse(BaseModel):
    """Close position response"""
    success: bool = True
    realized_pnl: Decimal
    close_price: Decimal
    close_reason: str

    @field_serializer("realized_pnl", "close_price")
    def serialize_decimal(self, value: Decimal) -> float:
        return float(value)


class ImportHistoryResponse(BaseModel):
    """Import history response"""
    success: bool = True
    imported: int
    skipped: int
    total: int
