"""
Position Repository

Data access for positions. Every status transition is a conditional
update keyed by id and expected status, so two writers can never both
move the same position out of the same state.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config.database import POSITIONS_COLLECTION
from app.modules.positions.deduplication import DedupKey, dedup_key
from app.modules.positions.models import (
    CloseProvenance,
    PendingExit,
    Position,
    PositionStatus,
    to_bson,
)
from app.repositories.base import BaseRepository
from app.utils.logger import get_logger

logger = get_logger(__name__)

# True while an imported position's PnL has not reached the daily metrics;
# replaced by a claim token while an import is rolling it up
METRICS_PENDING_FIELD = "metrics_pending"


def _closing_filter(position_id: str, claim_id: Optional[str]) -> Dict[str, Any]:
    """Match the position while it is closing, under claim_id when given."""
    filter: Dict[str, Any] = {"_id": ObjectId(position_id), "status": PositionStatus.CLOSING.value}
    if claim_id is not None:
        filter["closing_claim_id"] = claim_id
    return filter


class PositionRepository(BaseRepository):
    """Repository for positions."""

    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, POSITIONS_COLLECTION)

    async def get(self, position_id: str) -> Optional[Position]:
        """Load a position, None if absent or the id is malformed."""
        document = await self.find_by_id(position_id)
        return Position.from_document(document) if document else None

    # ==================== CLOSING CLAIM ====================

    async def claim_for_closing(
        self,
        position_id: str,
        stale_before: Optional[datetime] = None,
    ) -> Optional[Position]:
        """
        Move open -> closing.

        Args:
            position_id: Position id
            stale_before: When given, a closing claim taken before this
                moment is taken over as well

        Returns:
            The claimed position, or None if it was no longer claimable
        """
        filter: Dict[str, Any] = {"_id": ObjectId(position_id), "status": PositionStatus.OPEN.value}
        if stale_before is not None:
            filter = {
                "_id": ObjectId(position_id),
                "$or": [
                    {"status": PositionStatus.OPEN.value},
                    {
                        "status": PositionStatus.CLOSING.value,
                        "closing_started_at": {"$lt": stale_before},
                    },
                ],
            }

        now = datetime.now(timezone.utc)
        document = await self.find_one_and_update(
            filter,
            {
                "$set": {
                    "status": PositionStatus.CLOSING.value,
                    "closing_started_at": now,
                    "closing_claim_id": uuid4().hex,
                    "updated_at": now,
                }
            },
        )
        return Position.from_document(document) if document else None

    async def record_exit_order(
        self,
        position_id: str,
        pending_exit: PendingExit,
        claim_id: Optional[str] = None,
    ) -> bool:
        """Attach the acknowledged exit order to the closing claim."""
        document = await self.find_one_and_update(
            _closing_filter(position_id, claim_id),
            {"$set": {"pending_exit": to_bson(pending_exit)}},
        )
        return document is not None

    async def release_claim(self, position_id: str, claim_id: Optional[str] = None) -> bool:
        """Move closing -> open when no exit order was executed."""
        document = await self.find_one_and_update(
            _closing_filter(position_id, claim_id),
            {
                "$set": {
                    "status": PositionStatus.OPEN.value,
                    "updated_at": datetime.now(timezone.utc),
                },
                "$unset": {"closing_started_at": "", "closing_claim_id": "", "pending_exit": ""},
            },
        )
        if document is None:
            logger.warning(f"Position {position_id} was not in closing state when releasing claim")
        return document is not None

    async def mark_closed(
        self,
        position_id: str,
        close_price: Decimal,
        close_reason: str,
        realized_pnl: Decimal,
        closed_at: datetime,
        close_metadata: CloseProvenance,
        claim_id: Optional[str] = None,
    ) -> Optional[Position]:
        """
        Move closing -> closed and write the close fields.

        Returns:
            The closed position, or None if it was no longer closing
        """
        document = await self.find_one_and_update(
            _closing_filter(position_id, claim_id),
            {
                "$set": {
                    "status": PositionStatus.CLOSED.value,
                    "close_price": float(close_price),
                    "close_reason": close_reason,
                    "realized_pnl": float(realized_pnl),
                    "closed_at": closed_at,
                    "updated_at": closed_at,
                    "metadata.close": to_bson(close_metadata),
                },
                "$unset": {"closing_started_at": "", "closing_claim_id": "", "pending_exit": ""},
            },
        )
        return Position.from_document(document) if document else None

    # ==================== IMPORT ====================

    async def find_closed_fingerprints(self) -> List[DedupKey]:
        """Dedup keys of every stored closed position."""
        documents = await self.find(
            {"status": PositionStatus.CLOSED.value},
            projection={"entry_price": 1, "close_price": 1, "closed_at": 1},
        )

        keys = []
        for document in documents:
            if document.get("close_price") is None or document.get("closed_at") is None:
                continue
            keys.append(dedup_key(document["entry_price"], document["close_price"], document["closed_at"]))
        return keys

    async def insert_positions(self, positions: List[Position], metrics_pending: bool = False) -> List[str]:
        """
        Bulk insert positions, returning their new ids.

        With metrics_pending the documents are flagged until their PnL is
        rolled into the daily metrics.
        """
        documents: List[Dict[str, Any]] = [position.to_document() for position in positions]
        if metrics_pending:
            for document in documents:
                document[METRICS_PENDING_FIELD] = True
        inserted_ids = await self.insert_many(documents)
        return [str(inserted_id) for inserted_id in inserted_ids]

    async def claim_pending_metrics(self) -> List[Position]:
        """
        Take every position still waiting for its metrics rollup.

        The flag is swapped for a token in one update, so concurrent
        imports never roll the same position twice.
        """
        token = uuid4().hex
        await self.update_many({METRICS_PENDING_FIELD: True}, {"$set": {METRICS_PENDING_FIELD: token}})
        documents = await self.find({METRICS_PENDING_FIELD: token})
        return [Position.from_document(document) for document in documents]

    async def clear_pending_metrics(self, position_ids: List[str]) -> int:
        """Drop the marker once the metrics include these positions."""
        if not position_ids:
            return 0
        return await self.update_many(
            {"_id": {"$in": [ObjectId(position_id) for position_id in position_ids]}},
            {"$unset": {METRICS_PENDING_FIELD: ""}},
        )

    async def restore_pending_metrics(self, position_ids: List[str]) -> int:
        """Hand positions back to the next import after a failed rollup."""
        if not position_ids:
            return 0
        return await self.update_many(
            {"_id": {"$in": [ObjectId(position_id) for position_id in position_ids]}},
            {"$set": {METRICS_PENDING_FIELD: True}},
        )


def get_position_repository(db: AsyncIOMotorDatabase) -> PositionRepository:
    """
    Factory function to get position repository.

    Args:
        db: MongoDB database instance

    Returns:
        PositionRepository instance
    """
    return PositionRepository(db)
