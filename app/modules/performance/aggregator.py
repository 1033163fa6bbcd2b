"""
Metrics Aggregator

Maintains daily per-symbol performance rollups. A trade with positive
realized PnL is a win; every other trade, zero included, is a loss.
"""

from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.modules.performance.models import PerformanceMetrics, SettlementEntry
from app.repositories.performance_repository import PerformanceRepository
from app.utils.logger import get_logger

logger = get_logger(__name__)


def metrics_date(moment: datetime) -> str:
    """UTC calendar date (YYYY-MM-DD) used as the rollup key."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


class MetricsAggregator:
    """
    Daily performance rollups keyed by (date, symbol).

    Usage:
        aggregator = MetricsAggregator(PerformanceRepository(db))
        await aggregator.record_settlement("BTCUSDT", Decimal("12.5"))
    """

    def __init__(self, repository: PerformanceRepository):
        self.repository = repository

    async def record_settlement(
        self,
        symbol: str,
        realized_pnl: Decimal,
        settled_at: Optional[datetime] = None,
    ) -> PerformanceMetrics:
        """
        Add one settled trade to the rollup for its UTC date.

        Args:
            symbol: Exchange symbol
            realized_pnl: Realized PnL of the trade
            settled_at: Settlement time (defaults to now)

        Returns:
            PerformanceMetrics: The rollup after the increment
        """
        date = metrics_date(settled_at or datetime.now(timezone.utc))
        is_win = realized_pnl > 0

        document = await self.repository.increment(
            date=date,
            symbol=symbol,
            trades=1,
            wins=1 if is_win else 0,
            losses=0 if is_win else 1,
            pnl=float(realized_pnl),
        )

        logger.info(
            f"Metrics updated: {symbol} {date} pnl={realized_pnl} "
            f"({'win' if is_win else 'loss'})"
        )
        return PerformanceMetrics.from_document(document)

    async def record_many(self, entries: Iterable[SettlementEntry]) -> List[PerformanceMetrics]:
        """
        Roll a batch of trades into the metrics, one increment per (date, symbol).
        """
        groups: Dict[Tuple[str, str], Dict[str, Any]] = defaultdict(
            lambda: {"trades": 0, "wins": 0, "pnl": Decimal("0")}
        )

        for entry in entries:
            group = groups[(metrics_date(entry.settled_at), entry.symbol)]
            group["trades"] += 1
            group["pnl"] += entry.realized_pnl
            if entry.realized_pnl > 0:
                group["wins"] += 1

        results = []
        for (date, symbol), group in sorted(groups.items()):
            trades = group["trades"]
            wins = group["wins"]
            document = await self.repository.increment(
                date=date,
                symbol=symbol,
                trades=trades,
                wins=wins,
                losses=trades - wins,
                pnl=float(group["pnl"]),
            )
            results.append(PerformanceMetrics.from_document(document))

        if results:
            logger.info(f"Metrics updated for {len(results)} (date, symbol) keys")
        return results

    async def get_daily(self, date: str, symbol: str) -> Optional[PerformanceMetrics]:
        """Read the rollup for one (date, symbol), None if nothing was recorded."""
        document = await self.repository.get(date, symbol)
        return PerformanceMetrics.from_document(document) if document else None
