"""
Performance Repository

Daily per-symbol performance rollups. Increments are a single atomic
upsert; the unique (date, symbol) index guarantees one document per key.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from app.config.database import PERFORMANCE_METRICS_COLLECTION
from app.repositories.base import BaseRepository
from app.utils.logger import get_logger

logger = get_logger(__name__)


class PerformanceRepository(BaseRepository):
    """Repository for performance_metrics."""

    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, PERFORMANCE_METRICS_COLLECTION)

    async def increment(
        self,
        date: str,
        symbol: str,
        trades: int,
        wins: int,
        losses: int,
        pnl: float,
    ) -> Dict[str, Any]:
        """
        Atomically add to the (date, symbol) rollup, creating it if missing.

        Two first-time upserts on the same key can race; the loser hits the
        unique index and is retried once, at which point the document exists
        and the retry is a plain increment.

        Returns:
            The rollup document after the increment
        """
        now = datetime.now(timezone.utc)
        update = {
            "$inc": {
                "total_trades": trades,
                "winning_trades": wins,
                "losing_trades": losses,
                "total_pnl": pnl,
            },
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        }
        key = {"date": date, "symbol": symbol}

        try:
            return await self.find_one_and_update(key, update, upsert=True)
        except DuplicateKeyError:
            logger.info(f"Concurrent metrics insert for {symbol} on {date}, retrying increment")
            return await self.find_one_and_update(key, update, upsert=True)

    async def get(self, date: str, symbol: str) -> Optional[Dict[str, Any]]:
        """Read one rollup."""
        return await self.find_one({"date": date, "symbol": symbol}, projection={"_id": 0})


def get_performance_repository(db: AsyncIOMotorDatabase) -> PerformanceRepository:
    """Factory function to get performance repository."""
    return PerformanceRepository(db)
