"""
Pytest configuration and shared fixtures.

Provides an in-memory MongoDB stand-in, a scriptable exchange client and
test data factories. The in-memory collection applies every
find_one_and_update atomically (match and write happen without yielding),
the same guarantee MongoDB gives, while still yielding to the event loop
before each operation so concurrent coroutines interleave.
"""

import asyncio
import copy
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId

from app.integrations.exchanges.base import (
    BaseExchangeClient,
    CancelOrderResult,
    CloseOrderResult,
    ExchangeTrade,
    HoldSide,
)
from app.modules.performance.aggregator import MetricsAggregator
from app.repositories.performance_repository import PerformanceRepository
from app.repositories.position_repository import PositionRepository


# ==================== IN-MEMORY MONGODB ====================

def _get_path(document: Dict[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset_path(document: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.get(part, {})
    target.pop(parts[-1], None)


def _matches_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict) and expected and all(key.startswith("$") for key in expected):
        for operator, operand in expected.items():
            if operator == "$lt":
                matched = actual is not None and actual < operand
            elif operator == "$in":
                matched = actual in operand
            elif operator == "$ne":
                matched = actual != operand
            else:
                raise NotImplementedError(f"operator {operator} not supported")
            if not matched:
                return False
        return True
    return actual == expected


def _matches(document: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    for key, value in filter.items():
        if key == "$or":
            if not any(_matches(document, clause) for clause in value):
                return False
        elif not _matches_value(_get_path(document, key), value):
            return False
    return True


def _apply_update(document: Dict[str, Any], update: Dict[str, Any]) -> None:
    for key, value in update.get("$set", {}).items():
        _set_path(document, key, copy.deepcopy(value))
    for key in update.get("$unset", {}):
        _unset_path(document, key)
    for key, amount in update.get("$inc", {}).items():
        _set_path(document, key, (_get_path(document, key) or 0) + amount)


def _project(document: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    result = copy.deepcopy(document)
    if not projection:
        return result

    included = [key for key, flag in projection.items() if flag and key != "_id"]
    if included:
        result = {key: result[key] for key in included if key in result}
        if projection.get("_id", 1):
            result["_id"] = document["_id"]
    elif projection.get("_id", 1) == 0:
        result.pop("_id", None)
    return result


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    def sort(self, keys):
        for key, direction in reversed(keys):
            self._documents.sort(key=lambda doc: _get_path(doc, key), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    """Subset of AsyncIOMotorCollection used by the repositories."""

    def __init__(self):
        self.documents: List[Dict[str, Any]] = []

    async def create_index(self, *args, **kwargs):
        return "index"

    async def find_one(self, filter, projection=None):
        await asyncio.sleep(0)
        for document in self.documents:
            if _matches(document, filter):
                return _project(document, projection)
        return None

    def find(self, filter, projection=None):
        return FakeCursor([_project(doc, projection) for doc in self.documents if _matches(doc, filter)])

    async def insert_many(self, documents):
        await asyncio.sleep(0)
        inserted_ids = []
        for document in documents:
            document.setdefault("_id", ObjectId())
            self.documents.append(copy.deepcopy(document))
            inserted_ids.append(document["_id"])
        return SimpleNamespace(inserted_ids=inserted_ids)

    async def insert_one(self, document):
        result = await self.insert_many([document])
        return SimpleNamespace(inserted_id=result.inserted_ids[0])

    async def find_one_and_update(self, filter, update, upsert=False, return_document=None):
        await asyncio.sleep(0)

        target = next((doc for doc in self.documents if _matches(doc, filter)), None)
        if target is None:
            if not upsert:
                return None
            target = {"_id": ObjectId()}
            for key, value in filter.items():
                if not key.startswith("$"):
                    _set_path(target, key, value)
            for key, value in update.get("$setOnInsert", {}).items():
                _set_path(target, key, value)
            self.documents.append(target)

        _apply_update(target, update)
        return copy.deepcopy(target)

    async def update_many(self, filter, update):
        await asyncio.sleep(0)
        matched = [doc for doc in self.documents if _matches(doc, filter)]
        for document in matched:
            _apply_update(document, update)
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


# ==================== EXCHANGE DOUBLE ====================

class FakeExchange(BaseExchangeClient):
    """
    Scriptable exchange client that records every call.

    cancel_failures maps an order id to the exception to raise, or to None
    for an unconfirmed (success=False) cancellation.
    """

    name = "fake"

    def __init__(self):
        self.ticker_price: Decimal = Decimal("110")
        self.ticker_error: Optional[Exception] = None
        self.close_result = CloseOrderResult(success=True, order_id="exit-order-1")
        self.close_error: Optional[Exception] = None
        self.cancel_failures: Dict[str, Optional[Exception]] = {}
        self.trades: List[ExchangeTrade] = []
        self.fetch_error: Optional[Exception] = None

        self.ticker_calls: List[str] = []
        self.close_calls: List[tuple] = []
        self.cancel_calls: List[tuple] = []
        self.fetch_calls: List[tuple] = []
        self.closed = False

    async def get_ticker(self, symbol):
        await asyncio.sleep(0)
        self.ticker_calls.append(symbol)
        if self.ticker_error:
            raise self.ticker_error
        return self.ticker_price

    async def close_position(self, symbol, size, side):
        await asyncio.sleep(0)
        self.close_calls.append((symbol, size, side))
        if self.close_error:
            raise self.close_error
        return self.close_result

    async def cancel_conditional_order(self, symbol, order_id):
        await asyncio.sleep(0)
        self.cancel_calls.append((symbol, order_id))
        if order_id in self.cancel_failures:
            error = self.cancel_failures[order_id]
            if error is not None:
                raise error
            return CancelOrderResult(success=False, order_id=order_id)
        return CancelOrderResult(success=True, order_id=order_id)

    async def fetch_closed_pnl(self, start_time, end_time):
        await asyncio.sleep(0)
        self.fetch_calls.append((start_time, end_time))
        if self.fetch_error:
            raise self.fetch_error
        return list(self.trades)

    async def aclose(self):
        self.closed = True


# ==================== FIXTURES ====================

@pytest.fixture
def fake_db() -> FakeDatabase:
    """Fresh in-memory database per test"""
    return FakeDatabase()


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def position_repository(fake_db) -> PositionRepository:
    return PositionRepository(fake_db)


@pytest.fixture
def performance_repository(fake_db) -> PerformanceRepository:
    return PerformanceRepository(fake_db)


@pytest.fixture
def metrics_aggregator(performance_repository) -> MetricsAggregator:
    return MetricsAggregator(performance_repository)


@pytest.fixture
def open_position_document():
    """Factory for raw open position documents"""
    def _make(**overrides) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        document = {
            "_id": ObjectId(),
            "symbol": "BTCUSDT",
            "side": "BUY",
            "status": "open",
            "entry_price": 100.0,
            "quantity": 2.0,
            "leverage": 5.0,
            "close_price": None,
            "close_reason": None,
            "realized_pnl": None,
            "sl_order_id": None,
            "tp1_order_id": None,
            "tp2_order_id": None,
            "tp3_order_id": None,
            "metadata": {},
            "opened_at": now,
            "closed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        document.update(overrides)
        return document
    return _make


@pytest.fixture
def insert_position(fake_db, open_position_document):
    """Insert an open position into the in-memory store, returning its id"""
    async def _insert(**overrides) -> str:
        document = open_position_document(**overrides)
        await fake_db["positions"].insert_many([document])
        return str(document["_id"])
    return _insert


@pytest.fixture
def trade_factory():
    """Factory for ExchangeTrade records"""
    def _make(
        trade_id: str = "order-1",
        symbol: str = "BTCUSDT",
        hold_side: HoldSide = HoldSide.LONG,
        entry_price: str = "100",
        close_price: str = "110",
        quantity: str = "2",
        closed_pnl: str = "20",
        created_time: Optional[str] = "1700000000000",
        updated_time: Optional[str] = "1700000600000",
    ) -> ExchangeTrade:
        return ExchangeTrade(
            trade_id=trade_id,
            symbol=symbol,
            hold_side=hold_side,
            entry_price=Decimal(entry_price),
            close_price=Decimal(close_price),
            quantity=Decimal(quantity),
            closed_pnl=Decimal(closed_pnl),
            created_time=created_time,
            updated_time=updated_time,
            margin_mode="isolated",
            cum_entry_value="200",
            cum_exit_value="220",
        )
    return _make
