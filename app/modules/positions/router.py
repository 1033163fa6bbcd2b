"""
Position Settlement Router

REST API routes for closing positions and importing closed trade history.

Failures return the error payload with the status carried by the raised
error: 404 unknown position, 409 position not open or already being
closed, 422 invalid input, 502/503 exchange failures, 500 anything else.
"""

from typing import Callable, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config import get_database
from app.core.responses import ErrorResponse, error_response, success_response
from app.integrations.exchanges import BaseExchangeClient, create_exchange_client
from app.modules.positions.schemas import (
    ClosePositionRequest,
    ClosePositionResponse,
    ImportHistoryRequest,
    ImportHistoryResponse,
)
from app.services.history_importer import get_history_importer
from app.services.position_closer import get_position_closer
from app.shared.exceptions import (
    AppException,
    ExchangeError,
    MetricsRollupError,
    SettlementIncompleteError,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/positions", tags=["positions"])

ExchangeFactory = Callable[[], BaseExchangeClient]

CLOSE_ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Position not found"},
    409: {"model": ErrorResponse, "description": "Position is not open or is already being closed"},
    422: {"model": ErrorResponse, "description": "Invalid request"},
    500: {"model": ErrorResponse, "description": "Exit order executed but the close was not recorded"},
    502: {"model": ErrorResponse, "description": "Exchange rejected the exit order"},
    503: {"model": ErrorResponse, "description": "Exchange unavailable"},
}

IMPORT_ERROR_RESPONSES = {
    422: {"model": ErrorResponse, "description": "days outside 1..365"},
    500: {"model": ErrorResponse, "description": "Positions stored but metrics not updated"},
    502: {"model": ErrorResponse, "description": "Exchange rejected the request or the credentials"},
    503: {"model": ErrorResponse, "description": "Exchange unavailable"},
}


def get_exchange_factory() -> ExchangeFactory:
    """Dependency returning the exchange client factory (overridden in tests)."""
    return create_exchange_client


def error_json_response(status_code: int, error_code: str, error_message: str, details=None) -> JSONResponse:
    """Helper to create JSON error response with proper status code."""
    return JSONResponse(
        status_code=status_code,
        content=error_response(error_code=error_code, error_message=error_message, details=details),
    )


@router.post(
    "/close",
    status_code=status.HTTP_200_OK,
    response_model=ClosePositionResponse,
    response_description="Position closed successfully",
    responses=CLOSE_ERROR_RESPONSES,
)
async def close_position(
    request: ClosePositionRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
    exchange_factory: ExchangeFactory = Depends(get_exchange_factory),
):
    """
    Close an open position at market.

    Cancels its stop-loss / take-profit orders, records realized PnL and
    updates the daily performance metrics.

    Client errors use their own status rather than a 5xx: 404 when the
    position does not exist, 409 when it is not open or another close
    holds it. Exchange failures are 502/503. A 500 with code
    SETTLEMENT_INCOMPLETE means the exit order executed; the close is
    finished by retrying once the closing claim has expired.
    """
    try:
        async with exchange_factory() as exchange:
            closer = get_position_closer(db, exchange)
            result = await closer.close(request.position_id, request.reason)

        return ClosePositionResponse(
            realized_pnl=result.realized_pnl,
            close_price=result.close_price,
            close_reason=result.close_reason,
        )
    except SettlementIncompleteError as e:
        logger.error(f"Close position {request.position_id} incomplete: {e.message}")
        return error_json_response(
            status_code=e.status_code,
            error_code=e.code,
            error_message=e.message,
            details={"exit_order_id": e.exit_order_id},
        )
    except AppException as e:
        logger.warning(f"Close position {request.position_id} failed: {e.code} - {e.message}")
        return error_json_response(
            status_code=e.status_code,
            error_code=e.code,
            error_message=e.message,
        )
    except Exception as e:
        logger.error(f"Unexpected error closing position {request.position_id}: {str(e)}")
        return error_json_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_SERVER_ERROR",
            error_message="An unexpected error occurred",
        )


@router.post(
    "/import-history",
    status_code=status.HTTP_200_OK,
    response_model=ImportHistoryResponse,
    response_description="History imported successfully",
    responses=IMPORT_ERROR_RESPONSES,
)
async def import_history(
    request: Optional[ImportHistoryRequest] = None,
    db: AsyncIOMotorDatabase = Depends(get_database),
    exchange_factory: ExchangeFactory = Depends(get_exchange_factory),
):
    """
    Import closed positions from the exchange history.

    Already stored trades are detected by entry price, close price and a
    5-minute close-time bucket and skipped.

    Out-of-range days is a 422 and exchange failures are 502/503, with the
    exchange retCode in details when there is one. A 500 with code
    METRICS_ROLLUP_FAILED means positions were stored; the next import
    completes their metrics.
    """
    days = request.days if request else None

    try:
        async with exchange_factory() as exchange:
            importer = get_history_importer(db, exchange)
            result = await importer.import_history(days)

        return success_response(
            imported=result.imported_count,
            skipped=result.skipped_count,
            total=result.total_fetched,
        )
    except ExchangeError as e:
        logger.error(f"History import failed: {e.code} - {e.message}")
        return error_json_response(
            status_code=e.status_code,
            error_code=e.code,
            error_message=e.message,
            details={"ret_code": e.ret_code} if e.ret_code is not None else None,
        )
    except MetricsRollupError as e:
        logger.error(f"History import stored positions without metrics: {e.message}")
        return error_json_response(
            status_code=e.status_code,
            error_code=e.code,
            error_message=e.message,
            details={"imported": e.imported_count, "metrics_pending": e.pending_count},
        )
    except AppException as e:
        logger.warning(f"History import failed: {e.code} - {e.message}")
        return error_json_response(
            status_code=e.status_code,
            error_code=e.code,
            error_message=e.message,
        )
    except Exception as e:
        logger.error(f"Unexpected error importing history: {str(e)}")
        return error_json_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_SERVER_ERROR",
            error_message="An unexpected error occurred",
            details=str(e),
        )
