"""
Position Closer Service

Closes one open position end-to-end: claim, exit order, dependent order
cleanup, PnL, persistence and metrics.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config.settings import Settings, get_settings
from app.integrations.exchanges.base import BaseExchangeClient
from app.modules.performance.aggregator import MetricsAggregator
from app.modules.positions.models import (
    CancellationOutcome,
    CloseProvenance,
    PendingExit,
    Position,
    PositionStatus,
    PriceSource,
)
from app.modules.positions.settlement import calculate_realized_pnl
from app.repositories.performance_repository import PerformanceRepository
from app.repositories.position_repository import PositionRepository
from app.shared.exceptions import (
    AlreadyClosingError,
    CancellationFailedError,
    DatabaseError,
    ExchangeError,
    InvalidPositionStateError,
    PositionNotFoundError,
    SettlementFailedError,
    SettlementIncompleteError,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CLOSE_REASON = "manual"
DEFAULT_CLAIM_TIMEOUT = timedelta(minutes=5)


@dataclass
class SettlementResult:
    """Outcome of a successful close"""
    position_id: str
    symbol: str
    realized_pnl: Decimal
    close_price: Decimal
    close_reason: str
    price_source: PriceSource
    exchange_order_id: Optional[str] = None
    cancellations: List[CancellationOutcome] = field(default_factory=list)


class PositionCloser:
    """
    Position Closer

    Steps, in order:
    1. Load the position; it must be open, or closing with a stale claim
    2. Claim it (-> closing) with a conditional write
    3. Fetch the close price (falls back to entry price)
    4. Submit a reduce-only exit order and attach it to the claim
    5. Cancel dependent SL/TP orders, best effort
    6. Compute realized PnL
    7. Finish (closing -> closed) with a conditional write
    8. Increment daily metrics

    Any failure before the exchange acknowledges the exit order releases
    the claim. After that the claim is kept with the exit order attached,
    and taking over the stale claim resumes at step 5.

    Usage:
        closer = PositionCloser(positions, exchange, metrics)
        result = await closer.close(position_id, reason="manual")
    """

    def __init__(
        self,
        positions: PositionRepository,
        exchange: BaseExchangeClient,
        metrics: MetricsAggregator,
        claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
    ):
        self.positions = positions
        self.exchange = exchange
        self.metrics = metrics
        self.claim_timeout = claim_timeout

    async def close(self, position_id: str, reason: Optional[str] = None) -> SettlementResult:
        """
        Close a position.

        Args:
            position_id: Position id
            reason: Close reason (defaults to "manual")

        Returns:
            SettlementResult

        Raises:
            PositionNotFoundError: Unknown or malformed id
            InvalidPositionStateError: Position is closed, or held by a live closing claim
            AlreadyClosingError: A concurrent closer claimed the position first
            SettlementFailedError: Exchange did not execute the exit order
            SettlementIncompleteError: Exit order executed but the close was not recorded
        """
        close_reason = reason or DEFAULT_CLOSE_REASON

        position = await self.positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(f"Position {position_id} not found")

        stale_before = datetime.now(timezone.utc) - self.claim_timeout
        if not position.is_open() and not position.has_stale_claim(stale_before):
            raise InvalidPositionStateError(
                f"Position {position_id} is {position.status.value}, not open",
                status=position.status.value,
            )

        claimed = await self.positions.claim_for_closing(position_id, stale_before)
        if claimed is None:
            logger.warning(f"Position {position_id} was claimed by another closer")
            raise AlreadyClosingError(f"Position {position_id} is already being closed")

        if position.status == PositionStatus.CLOSING:
            logger.warning(
                f"Took over stale closing claim on position {position_id} "
                f"(claimed at {position.closing_started_at})"
            )

        logger.info(
            f"Closing position {position_id}: {claimed.symbol} {claimed.side.value} "
            f"qty={claimed.quantity} reason={close_reason}"
        )

        pending_exit = claimed.pending_exit
        if pending_exit is None:
            pending_exit = await self._execute_exit(claimed)
        else:
            logger.warning(
                f"Position {position_id} already has executed exit order "
                f"{pending_exit.order_id}, finishing settlement"
            )

        return await self._finish(claimed, close_reason, pending_exit)

    async def _execute_exit(self, position: Position) -> PendingExit:
        """Price the close, submit the exit order and attach it to the claim."""
        try:
            close_price, price_source = await self._resolve_close_price(position)
        except Exception:
            await self.positions.release_claim(position.id, position.closing_claim_id)
            raise

        order_id = await self._submit_exit_order(position)
        pending_exit = PendingExit(order_id=order_id, close_price=close_price, price_source=price_source)

        try:
            recorded = await self.positions.record_exit_order(
                position.id, pending_exit, claim_id=position.closing_claim_id
            )
        except DatabaseError as e:
            logger.error(f"Exit order {order_id} for position {position.id} executed but was not recorded: {e.message}")
            raise SettlementIncompleteError(
                f"Position {position.id} was closed on the exchange (order {order_id}) "
                f"but the close was not recorded",
                exit_order_id=order_id,
            ) from e
        if not recorded:
            logger.warning(f"Position {position.id} lost its closing claim before exit order {order_id} was recorded")

        return pending_exit

    async def _finish(self, position: Position, close_reason: str, pending_exit: PendingExit) -> SettlementResult:
        """Cancel dependent orders, compute PnL and write the close."""
        order_id = pending_exit.order_id

        try:
            cancellations = await self._cancel_dependent_orders(position)

            realized_pnl = calculate_realized_pnl(
                side=position.side,
                entry_price=position.entry_price,
                close_price=pending_exit.close_price,
                quantity=position.quantity,
                leverage=position.leverage,
            )

            closed_at = datetime.now(timezone.utc)
            closed = await self.positions.mark_closed(
                position.id,
                close_price=pending_exit.close_price,
                close_reason=close_reason,
                realized_pnl=realized_pnl,
                closed_at=closed_at,
                close_metadata=CloseProvenance(
                    price_source=pending_exit.price_source,
                    exchange_order_id=order_id,
                    cancellations=cancellations,
                ),
                claim_id=position.closing_claim_id,
            )
        except Exception as e:
            logger.error(
                f"Exit order {order_id} for position {position.id} executed but "
                f"settlement was not recorded: {str(e)}"
            )
            raise SettlementIncompleteError(
                f"Position {position.id} was closed on the exchange (order {order_id}) "
                f"but the settlement was not recorded",
                exit_order_id=order_id,
            ) from e

        if closed is None:
            logger.error(
                f"Position {position.id} left closing state while its exit order "
                f"{order_id} was executing"
            )
            raise AlreadyClosingError(f"Position {position.id} is no longer in closing state")

        await self.metrics.record_settlement(position.symbol, realized_pnl, closed_at)

        logger.info(
            f"Position {position.id} closed: price={pending_exit.close_price} "
            f"({pending_exit.price_source.value}), pnl={realized_pnl}"
        )

        return SettlementResult(
            position_id=position.id,
            symbol=position.symbol,
            realized_pnl=realized_pnl,
            close_price=pending_exit.close_price,
            close_reason=close_reason,
            price_source=pending_exit.price_source,
            exchange_order_id=order_id,
            cancellations=cancellations,
        )

    async def _resolve_close_price(self, position: Position) -> Tuple[Decimal, PriceSource]:
        """Last ticker price, or the entry price if the ticker is unavailable."""
        try:
            price = await self.exchange.get_ticker(position.symbol)
            return price, PriceSource.TICKER
        except ExchangeError as e:
            logger.warning(
                f"Ticker unavailable for {position.symbol} ({e.message}), "
                f"using entry price {position.entry_price}"
            )
            return position.entry_price, PriceSource.ENTRY_PRICE_FALLBACK

    async def _submit_exit_order(self, position: Position) -> Optional[str]:
        """
        Submit the reduce-only exit order.

        Any failure puts the position back to open before raising.
        """
        try:
            result = await self.exchange.close_position(
                position.symbol, position.quantity, position.side.value
            )
        except ExchangeError as e:
            logger.error(f"Exit order failed for position {position.id}: {e.message}")
            await self.positions.release_claim(position.id, position.closing_claim_id)
            raise SettlementFailedError(f"Failed to close position on exchange: {e.message}") from e
        except Exception:
            await self.positions.release_claim(position.id, position.closing_claim_id)
            raise

        if not result.success:
            logger.error(f"Exit order for position {position.id} returned no order id")
            await self.positions.release_claim(position.id, position.closing_claim_id)
            raise SettlementFailedError("Failed to close position on exchange: no order id returned")

        return result.order_id

    async def _cancel_dependent_orders(self, position: Position) -> List[CancellationOutcome]:
        """Cancel SL/TP orders one by one; failures are recorded, never raised."""
        outcomes = []
        for order_ref, order_id in position.dependent_orders():
            try:
                await self._cancel_one(position.symbol, order_id)
                outcomes.append(CancellationOutcome(order_ref=order_ref, order_id=order_id, success=True))
            except (ExchangeError, CancellationFailedError) as e:
                logger.warning(f"Failed to cancel {order_ref} {order_id} for {position.symbol}: {e.message}")
                outcomes.append(
                    CancellationOutcome(order_ref=order_ref, order_id=order_id, success=False, error=e.message)
                )
        return outcomes

    async def _cancel_one(self, symbol: str, order_id: str) -> None:
        result = await self.exchange.cancel_conditional_order(symbol, order_id)
        if not result.success:
            raise CancellationFailedError(f"Exchange did not confirm cancellation of {order_id}", order_id=order_id)


def get_position_closer(
    db: AsyncIOMotorDatabase,
    exchange: BaseExchangeClient,
    settings: Optional[Settings] = None,
) -> PositionCloser:
    """
    Build a PositionCloser over the given database and exchange client.

    Args:
        db: Database instance
        exchange: Exchange client
        settings: Application settings (defaults to the global settings)

    Returns:
        PositionCloser
    """
    settings = settings or get_settings()
    return PositionCloser(
        positions=PositionRepository(db),
        exchange=exchange,
        metrics=MetricsAggregator(PerformanceRepository(db)),
        claim_timeout=timedelta(seconds=settings.CLOSING_CLAIM_TIMEOUT_SECONDS),
    )
