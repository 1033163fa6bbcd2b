"""
Position Models

Document models for positions and their provenance metadata.

Prices and quantities are Decimal in memory and stored as float in MongoDB.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, model_validator


# ==================== ENUMS ====================

class PositionStatus(str, Enum):
    """Position status lifecycle"""
    OPEN = "open"            # Position active
    CLOSING = "closing"      # Claimed by a closer, exit order in flight
    CLOSED = "closed"        # Position closed


class PositionSide(str, Enum):
    """Position side (BUY = long, SELL = short)"""
    BUY = "BUY"
    SELL = "SELL"


class PriceSource(str, Enum):
    """Where the settlement close price came from"""
    TICKER = "ticker"
    ENTRY_PRICE_FALLBACK = "entry_price_fallback"


# Dependent conditional orders, in cancellation order
DEPENDENT_ORDER_FIELDS = ("sl_order_id", "tp1_order_id", "tp2_order_id", "tp3_order_id")


# ==================== METADATA ====================

class CancellationOutcome(BaseModel):
    """Result of cancelling one dependent order"""
    order_ref: str
    order_id: str
    success: bool
    error: Optional[str] = None


class CloseProvenance(BaseModel):
    """Written when a position is closed through the settlement flow"""
    kind: Literal["manual_close"] = "manual_close"
    price_source: PriceSource
    exchange_order_id: Optional[str] = None
    cancellations: List[CancellationOutcome] = Field(default_factory=list)
    closed_by: Optional[str] = None


class ImportProvenance(BaseModel):
    """Written when a position is reconstructed from exchange history"""
    kind: Literal["imported_from_exchange"] = "imported_from_exchange"
    exchange: str
    import_date: datetime
    source_trade_id: Optional[str] = None
    margin_mode: Optional[str] = None
    closed_pnl: Optional[Decimal] = None
    cum_entry_value: Optional[str] = None
    cum_exit_value: Optional[str] = None
    leverage_is_placeholder: bool = True
    timestamp_defaulted: bool = False


class MarginClassification(BaseModel):
    """Reconstructed money-management data"""
    kind: Literal["backfilled"] = "backfilled"
    calculated_margin: Decimal
    symbol_category: str
    margin_bucket: str
    leverage: Decimal
    position_sizing_type: str = "legacy_unknown"
    reconstructed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PendingExit(BaseModel):
    """Exit order acknowledged by the exchange while the position is closing"""
    order_id: Optional[str] = None
    close_price: Decimal
    price_source: PriceSource
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PositionMetadata(BaseModel):
    """
    Typed position metadata.

    One optional slot per known provenance variant; unknown keys written by
    other producers are preserved as extra fields.
    """
    close: Optional[CloseProvenance] = None
    imported: Optional[ImportProvenance] = None
    mm_data: Optional[MarginClassification] = None

    model_config = ConfigDict(extra="allow")


# ==================== MAIN POSITION MODEL ====================

class Position(BaseModel):
    """
    Position Model

    Usage:
        position = Position.from_document(await repo.find_by_id(position_id))
        if position.is_open():
            ...
        await repo.insert_one(position.to_document())
    """

    id: Optional[str] = None

    # Position Basics
    symbol: str
    side: PositionSide
    status: PositionStatus = PositionStatus.OPEN

    # Entry
    entry_price: Decimal
    quantity: Decimal
    leverage: Decimal = Decimal("1")

    # Exit (null unless closed)
    close_price: Optional[Decimal] = None
    close_reason: Optional[str] = None
    realized_pnl: Optional[Decimal] = None

    # Dependent conditional orders
    sl_order_id: Optional[str] = None
    tp1_order_id: Optional[str] = None
    tp2_order_id: Optional[str] = None
    tp3_order_id: Optional[str] = None

    # Closing claim (set only while status is closing)
    closing_started_at: Optional[datetime] = None
    closing_claim_id: Optional[str] = None
    pending_exit: Optional[PendingExit] = None

    metadata: PositionMetadata = Field(default_factory=PositionMetadata)

    # Timing
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_close_fields(self) -> "Position":
        """realized_pnl, close_price and closed_at are set iff status is closed."""
        close_fields = (self.realized_pnl, self.close_price, self.closed_at)
        if self.status == PositionStatus.CLOSED:
            if any(value is None for value in close_fields):
                raise ValueError("closed position requires realized_pnl, close_price and closed_at")
        elif any(value is not None for value in close_fields):
            raise ValueError(f"{self.status.value} position must not carry close fields")
        return self

    def is_open(self) -> bool:
        """Check if position is open"""
        return self.status == PositionStatus.OPEN

    def has_stale_claim(self, stale_before: datetime) -> bool:
        """True for a closing claim taken before stale_before."""
        if self.status != PositionStatus.CLOSING or self.closing_started_at is None:
            return False
        started = self.closing_started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return started < stale_before

    def dependent_orders(self) -> List[Tuple[str, str]]:
        """(field name, order id) for every dependent order that is set."""
        orders = []
        for field_name in DEPENDENT_ORDER_FIELDS:
            order_id = getattr(self, field_name)
            if order_id:
                orders.append((field_name, order_id))
        return orders

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Position":
        """Build a Position from a raw MongoDB document."""
        data = dict(document)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        if data.get("metadata") is None:
            data["metadata"] = {}
        return cls.model_validate(data)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for MongoDB (no id, Decimals as float)."""
        data = self.model_dump(exclude={"id"})
        # claim fields are only present while a closer holds the position
        for claim_field in ("closing_started_at", "closing_claim_id", "pending_exit"):
            if data[claim_field] is None:
                del data[claim_field]
        data["metadata"] = self.metadata.model_dump(exclude_none=True)
        document = to_bson(data)
        if self.id and ObjectId.is_valid(self.id):
            document["_id"] = ObjectId(self.id)
        return document


def to_bson(value: Any) -> Any:
    """Recursively convert Decimals and enums into BSON-friendly values."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return to_bson(value.model_dump(exclude_none=True))
    if isinstance(value, dict):
        return {key: to_bson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(item) for item in value]
    return value
