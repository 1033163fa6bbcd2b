"""
History Importer Service

Reconstructs closed positions from the exchange closed-PnL history and
inserts the ones not already stored.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.config.settings import Settings, get_settings
from app.integrations.exchanges.base import BaseExchangeClient, ExchangeTrade, HoldSide
from app.modules.performance.aggregator import MetricsAggregator, metrics_date
from app.modules.performance.models import SettlementEntry
from app.modules.positions.deduplication import filter_new_trades
from app.modules.positions.models import (
    ImportProvenance,
    MarginClassification,
    Position,
    PositionMetadata,
    PositionSide,
    PositionStatus,
)
from app.modules.positions.settlement import classify
from app.repositories.performance_repository import PerformanceRepository
from app.repositories.position_repository import PositionRepository
from app.shared.exceptions import DatabaseError, MetricsRollupError, ValidationError
from app.utils.logger import get_logger

logger = get_logger(__name__)

IMPORT_CLOSE_REASON = "imported_from_exchange"
MAX_IMPORT_DAYS = 365


@dataclass
class ImportResult:
    """Outcome of an import run (imported + skipped == total_fetched)"""
    imported_count: int
    skipped_count: int
    total_fetched: int


def parse_exchange_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """
    Parse an epoch-milliseconds string into an aware UTC datetime.

    Returns:
        datetime, or None if the value is missing or unusable
    """
    if raw is None or raw == "":
        return None
    try:
        millis = int(str(raw))
        if millis <= 0:
            return None
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class HistoryImporter:
    """
    History Importer

    Usage:
        importer = HistoryImporter(positions, exchange, metrics)
        result = await importer.import_history(days=30)
    """

    def __init__(
        self,
        positions: PositionRepository,
        exchange: BaseExchangeClient,
        metrics: Optional[MetricsAggregator] = None,
        placeholder_leverage: int = 10,
        default_days: int = 30,
    ):
        """
        Initialize importer.

        Args:
            positions: Position repository
            exchange: Exchange client
            metrics: Metrics aggregator; imported trades are not rolled into
                metrics when None
            placeholder_leverage: Leverage written on imported positions,
                the closed-PnL endpoint does not report it
            default_days: Window used when import_history() gets no days
        """
        self.positions = positions
        self.exchange = exchange
        self.metrics = metrics
        self.placeholder_leverage = Decimal(placeholder_leverage)
        self.default_days = default_days

    async def import_history(self, days: Optional[int] = None) -> ImportResult:
        """
        Import closed trades of the last `days` days.

        A failed fetch fails the whole import before anything is written.

        Raises:
            ValidationError: days outside 1..365
            ExchangeAuthFailedError, ExchangeRejectedError, ExchangeUnavailableError
            MetricsRollupError: Positions were stored but the metrics increment
                failed; the next import retries the rollup
        """
        days = self.default_days if days is None else days
        if days < 1 or days > MAX_IMPORT_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_IMPORT_DAYS}")

        now = datetime.now(timezone.utc)
        end_time = int(now.timestamp() * 1000)
        start_time = int((now - timedelta(days=days)).timestamp() * 1000)

        logger.info(f"Importing {days} days of closed trades from {self.exchange.name}")

        trades = await self.exchange.fetch_closed_pnl(start_time, end_time)
        candidates = [self._to_position(trade, now) for trade in trades]

        existing_keys = await self.positions.find_closed_fingerprints()
        new_positions, skipped = filter_new_trades(candidates, existing_keys)

        if new_positions:
            await self.positions.insert_positions(new_positions, metrics_pending=self.metrics is not None)

        if self.metrics is not None:
            await self._roll_pending_metrics(imported_count=len(new_positions))

        result = ImportResult(
            imported_count=len(new_positions),
            skipped_count=len(skipped),
            total_fetched=len(trades),
        )
        logger.info(
            f"Import finished: fetched={result.total_fetched}, "
            f"imported={result.imported_count}, skipped={result.skipped_count}"
        )
        return result

    async def _roll_pending_metrics(self, imported_count: int) -> None:
        """
        Add every flagged imported position to the daily metrics.

        Positions are rolled one (date, symbol) group at a time and unflagged
        as soon as their group is counted. When an increment fails, the
        groups not yet counted are flagged again for the next import.
        """
        pending = await self.positions.claim_pending_metrics()
        if not pending:
            return

        groups: Dict[Tuple[str, str], List[Position]] = defaultdict(list)
        for position in pending:
            groups[(metrics_date(position.closed_at), position.symbol)].append(position)

        remaining = sorted(groups)
        while remaining:
            group = groups[remaining[0]]
            try:
                await self.metrics.record_many(
                    SettlementEntry(
                        symbol=position.symbol,
                        realized_pnl=position.realized_pnl,
                        settled_at=position.closed_at,
                    )
                    for position in group
                )
            except (DatabaseError, PyMongoError) as e:
                unrolled = [position.id for key in remaining for position in groups[key]]
                await self.positions.restore_pending_metrics(unrolled)
                logger.error(
                    f"Metrics rollup failed, {len(unrolled)} imported positions "
                    f"left pending for the next import: {str(e)}"
                )
                raise MetricsRollupError(
                    f"Imported {imported_count} positions but their metrics were not updated; "
                    f"{len(unrolled)} positions will be rolled up by the next import",
                    imported_count=imported_count,
                    pending_count=len(unrolled),
                ) from e

            await self.positions.clear_pending_metrics([position.id for position in group])
            remaining.pop(0)

        if len(pending) > imported_count:
            logger.info(f"Rolled up metrics for {len(pending) - imported_count} positions left by an earlier import")

    def _resolve_timestamps(self, trade: ExchangeTrade, now: datetime) -> Tuple[datetime, datetime, bool]:
        """(opened_at, closed_at, defaulted) with unusable values replaced by now."""
        opened_at = parse_exchange_timestamp(trade.created_time)
        closed_at = parse_exchange_timestamp(trade.updated_time)
        defaulted = False

        if closed_at is None:
            logger.warning(
                f"Trade {trade.trade_id} ({trade.symbol}) has invalid close time "
                f"{trade.updated_time!r}, defaulting to now"
            )
            closed_at = now
            defaulted = True

        if opened_at is None:
            logger.warning(
                f"Trade {trade.trade_id} ({trade.symbol}) has invalid open time "
                f"{trade.created_time!r}, defaulting to now"
            )
            opened_at = now
            defaulted = True

        return opened_at, closed_at, defaulted

    def _to_position(self, trade: ExchangeTrade, now: datetime) -> Position:
        """Map one exchange trade to a closed Position."""
        opened_at, closed_at, defaulted = self._resolve_timestamps(trade, now)
        side = PositionSide.BUY if trade.hold_side == HoldSide.LONG else PositionSide.SELL
        classification = classify(trade.symbol, trade.entry_price, trade.quantity, self.placeholder_leverage)

        return Position(
            symbol=trade.symbol,
            side=side,
            status=PositionStatus.CLOSED,
            entry_price=trade.entry_price,
            quantity=trade.quantity,
            leverage=self.placeholder_leverage,
            close_price=trade.close_price,
            close_reason=IMPORT_CLOSE_REASON,
            realized_pnl=trade.closed_pnl,
            opened_at=opened_at,
            closed_at=closed_at,
            metadata=PositionMetadata(
                imported=ImportProvenance(
                    exchange=self.exchange.name,
                    import_date=now,
                    source_trade_id=trade.trade_id or None,
                    margin_mode=trade.margin_mode,
                    closed_pnl=trade.closed_pnl,
                    cum_entry_value=trade.cum_entry_value,
                    cum_exit_value=trade.cum_exit_value,
                    leverage_is_placeholder=True,
                    timestamp_defaulted=defaulted,
                ),
                mm_data=MarginClassification(
                    calculated_margin=classification.calculated_margin,
                    symbol_category=classification.symbol_category.value,
                    margin_bucket=classification.margin_bucket.value,
                    leverage=self.placeholder_leverage,
                    reconstructed_at=now,
                ),
            ),
        )


def get_history_importer(
    db: AsyncIOMotorDatabase,
    exchange: BaseExchangeClient,
    settings: Optional[Settings] = None,
) -> HistoryImporter:
    """
    Build a HistoryImporter from settings.

    Args:
        db: Database instance
        exchange: Exchange client
        settings: Application settings (defaults to the global settings)
    """
    settings = settings or get_settings()
    metrics = MetricsAggregator(PerformanceRepository(db)) if settings.IMPORT_UPDATE_METRICS else None

    return HistoryImporter(
        positions=PositionRepository(db),
        exchange=exchange,
        metrics=metrics,
        placeholder_leverage=settings.IMPORT_PLACEHOLDER_LEVERAGE,
        default_days=settings.IMPORT_DEFAULT_DAYS,
    )
