"""
Repository Tests

Checks the exact MongoDB operations issued by the repositories.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError

from app.modules.positions.models import CloseProvenance, PendingExit, PriceSource
from app.repositories.performance_repository import PerformanceRepository
from app.repositories.position_repository import PositionRepository
from app.shared.exceptions import DatabaseError


@pytest.fixture
def mock_collection():
    collection = MagicMock()
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.find_one = AsyncMock(return_value=None)
    return collection


@pytest.fixture
def mock_db(mock_collection):
    db = MagicMock()
    db.__getitem__.return_value = mock_collection
    return db


# ==================== POSITIONS ====================

@pytest.mark.asyncio
async def test_claim_is_conditional_on_open_status(mock_db, mock_collection):
    repository = PositionRepository(mock_db)
    position_id = str(ObjectId())

    claimed = await repository.claim_for_closing(position_id)

    assert claimed is None
    filter, update = mock_collection.find_one_and_update.call_args.args
    assert filter == {"_id": ObjectId(position_id), "status": "open"}
    assert update["$set"]["status"] == "closing"
    assert mock_collection.find_one_and_update.call_args.kwargs["return_document"] == ReturnDocument.AFTER


@pytest.mark.asyncio
async def test_mark_closed_is_conditional_on_closing_status(mock_db, mock_collection):
    repository = PositionRepository(mock_db)
    position_id = str(ObjectId())
    closed_at = datetime(2024, 1, 1, tzinfo=timezone.utc)

    await repository.mark_closed(
        position_id,
        close_price=Decimal("110"),
        close_reason="manual",
        realized_pnl=Decimal("100"),
        closed_at=closed_at,
        close_metadata=CloseProvenance(price_source=PriceSource.TICKER, exchange_order_id="x"),
    )

    filter, update = mock_collection.find_one_and_update.call_args.args
    assert filter == {"_id": ObjectId(position_id), "status": "closing"}
    assert update["$set"]["status"] == "closed"
    assert update["$set"]["realized_pnl"] == 100.0
    assert update["$set"]["closed_at"] == closed_at
    assert update["$set"]["metadata.close"] == {
        "kind": "manual_close",
        "price_source": "ticker",
        "exchange_order_id": "x",
        "cancellations": [],
    }
    assert update["$unset"] == {"closing_started_at": "", "closing_claim_id": "", "pending_exit": ""}


@pytest.mark.asyncio
async def test_release_claim_restores_open(mock_db, mock_collection):
    repository = PositionRepository(mock_db)
    position_id = str(ObjectId())
    mock_collection.find_one_and_update.return_value = {"_id": ObjectId(position_id)}

    assert await repository.release_claim(position_id) is True

    filter, update = mock_collection.find_one_and_update.call_args.args
    assert filter["status"] == "closing"
    assert update["$set"]["status"] == "open"


@pytest.mark.asyncio
async def test_claim_with_staleness_also_matches_old_closing_claims(mock_db, mock_collection):
    repository = PositionRepository(mock_db)
    position_id = str(ObjectId())
    stale_before = datetime(2024, 1, 1, tzinfo=timezone.utc)

    await repository.claim_for_closing(position_id, stale_before)

    filter, update = mock_collection.find_one_and_update.call_args.args
    assert filter == {
        "_id": ObjectId(position_id),
        "$or": [
            {"status": "open"},
            {"status": "closing", "closing_started_at": {"$lt": stale_before}},
        ],
    }
    assert update["$set"]["closing_claim_id"]


@pytest.mark.asyncio
async def test_taken_over_claim_fences_out_previous_closer(position_repository, insert_position):
    position_id = await insert_position(
        status="closing",
        closing_started_at=datetime.now(timezone.utc) - timedelta(hours=1),
        closing_claim_id="previous",
    )

    claimed = await position_repository.claim_for_closing(
        position_id, datetime.now(timezone.utc) - timedelta(minutes=5)
    )

    assert claimed is not None
    assert claimed.closing_claim_id != "previous"
    pending = PendingExit(order_id="x", close_price=Decimal("110"), price_source=PriceSource.TICKER)
    assert await position_repository.record_exit_order(position_id, pending, claim_id="previous") is False
    assert await position_repository.release_claim(position_id, claim_id="previous") is False
    assert await position_repository.record_exit_order(
        position_id, pending, claim_id=claimed.closing_claim_id
    ) is True


@pytest.mark.asyncio
async def test_recent_claim_is_not_taken_over(position_repository, insert_position):
    position_id = await insert_position(
        status="closing",
        closing_started_at=datetime.now(timezone.utc),
        closing_claim_id="running",
    )

    claimed = await position_repository.claim_for_closing(
        position_id, datetime.now(timezone.utc) - timedelta(minutes=5)
    )

    assert claimed is None


@pytest.mark.asyncio
async def test_driver_errors_surface_as_database_error(mock_db, mock_collection):
    repository = PositionRepository(mock_db)
    mock_collection.find_one.side_effect = AutoReconnect("connection reset")

    with pytest.raises(DatabaseError) as exc_info:
        await repository.get(str(ObjectId()))

    assert exc_info.value.code == "DATABASE_ERROR"
    assert isinstance(exc_info.value.__cause__, AutoReconnect)


@pytest.mark.asyncio
async def test_get_with_malformed_id_skips_query(mock_db, mock_collection):
    repository = PositionRepository(mock_db)

    assert await repository.get("xyz") is None
    mock_collection.find_one.assert_not_called()


@pytest.mark.asyncio
async def test_fingerprints_ignore_incomplete_documents(position_repository, fake_db):
    closed_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await fake_db["positions"].insert_many([
        {"status": "closed", "entry_price": 1.0, "close_price": 2.0, "closed_at": closed_at},
        {"status": "closed", "entry_price": 1.0, "close_price": None, "closed_at": closed_at},
        {"status": "open", "entry_price": 3.0, "close_price": None, "closed_at": None},
    ])

    keys = await position_repository.find_closed_fingerprints()

    assert len(keys) == 1


@pytest.mark.asyncio
async def test_insert_positions_empty_batch(position_repository, fake_db):
    assert await position_repository.insert_positions([]) == []
    assert fake_db["positions"].documents == []


@pytest.mark.asyncio
async def test_pending_metrics_are_claimed_once(position_repository, fake_db):
    await fake_db["positions"].insert_many([
        {"status": "closed", "symbol": "BTCUSDT", "side": "BUY", "entry_price": 1.0, "quantity": 1.0,
         "close_price": 2.0, "realized_pnl": 1.0, "closed_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
         "metrics_pending": True},
    ])

    first = await position_repository.claim_pending_metrics()
    second = await position_repository.claim_pending_metrics()

    assert len(first) == 1
    assert second == []

    await position_repository.restore_pending_metrics([first[0].id])
    assert len(await position_repository.claim_pending_metrics()) == 1


# ==================== PERFORMANCE ====================

@pytest.mark.asyncio
async def test_increment_is_single_atomic_upsert(mock_db, mock_collection):
    repository = PerformanceRepository(mock_db)
    mock_collection.find_one_and_update.return_value = {"date": "2024-01-01", "symbol": "BTCUSDT"}

    await repository.increment("2024-01-01", "BTCUSDT", trades=1, wins=0, losses=1, pnl=-2.5)

    mock_collection.find_one_and_update.assert_awaited_once()
    filter, update = mock_collection.find_one_and_update.call_args.args
    assert filter == {"date": "2024-01-01", "symbol": "BTCUSDT"}
    assert update["$inc"] == {"total_trades": 1, "winning_trades": 0, "losing_trades": 1, "total_pnl": -2.5}
    assert "created_at" in update["$setOnInsert"]
    assert mock_collection.find_one_and_update.call_args.kwargs["upsert"] is True


@pytest.mark.asyncio
async def test_increment_retries_once_on_duplicate_key(mock_db, mock_collection):
    repository = PerformanceRepository(mock_db)
    document = {"date": "2024-01-01", "symbol": "BTCUSDT", "total_trades": 2}
    mock_collection.find_one_and_update.side_effect = [DuplicateKeyError("E11000"), document]

    result = await repository.increment("2024-01-01", "BTCUSDT", trades=1, wins=1, losses=0, pnl=1.0)

    assert result == document
    assert mock_collection.find_one_and_update.await_count == 2


@pytest.mark.asyncio
async def test_increment_second_duplicate_key_propagates(mock_db, mock_collection):
    repository = PerformanceRepository(mock_db)
    mock_collection.find_one_and_update.side_effect = [DuplicateKeyError("E11000"), DuplicateKeyError("E11000")]

    with pytest.raises(DuplicateKeyError):
        await repository.increment("2024-01-01", "BTCUSDT", trades=1, wins=1, losses=0, pnl=1.0)
