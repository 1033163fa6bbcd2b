"""
Base Repository

Common data access helpers over a single motor collection.

Driver failures surface as DatabaseError. DuplicateKeyError is passed
through unchanged because callers upserting against a unique index retry
on it.
"""

from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.shared.exceptions import DatabaseError
from app.utils.logger import get_logger

logger = get_logger(__name__)


class BaseRepository:
    """
    Base repository bound to one collection.

    Subclasses add the domain operations; conditional writes and atomic
    increments are expressed through find_one_and_update so each one is a
    single server-side operation.
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str):
        """
        Initialize repository.

        Args:
            db: MongoDB database instance
            collection_name: Name of the collection
        """
        self.db = db
        self.collection_name = collection_name
        self.collection = db[collection_name]

    def _database_error(self, operation: str, error: PyMongoError) -> DatabaseError:
        logger.error(f"{operation} on {self.collection_name} failed: {str(error)}")
        return DatabaseError(f"{operation} on {self.collection_name} failed: {str(error)}")

    async def find_one(
        self,
        filter: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Find a single document."""
        try:
            return await self.collection.find_one(filter, projection)
        except PyMongoError as e:
            raise self._database_error("find_one", e) from e

    async def find(
        self,
        filter: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None
    ) -> List[Dict[str, Any]]:
        """
        Find all matching documents.

        Args:
            filter: MongoDB filter dictionary
            projection: Optional projection dictionary
            sort: List of (field, direction) tuples for sorting

        Returns:
            List of document dicts
        """
        try:
            cursor = self.collection.find(filter, projection)
            if sort:
                cursor = cursor.sort(sort)
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise self._database_error("find", e) from e

    async def insert_many(self, documents: List[Dict[str, Any]]) -> List[ObjectId]:
        """
        Insert multiple documents.

        Returns:
            List of inserted document IDs (empty when nothing to insert)
        """
        if not documents:
            return []
        try:
            result = await self.collection.insert_many(documents)
        except PyMongoError as e:
            raise self._database_error("insert_many", e) from e
        return list(result.inserted_ids)

    async def update_many(self, filter: Dict[str, Any], update: Dict[str, Any]) -> int:
        """
        Update every matching document.

        Returns:
            Number of modified documents
        """
        try:
            result = await self.collection.update_many(filter, update)
        except PyMongoError as e:
            raise self._database_error("update_many", e) from e
        return result.modified_count

    async def find_one_and_update(
        self,
        filter: Dict[str, Any],
        update: Dict[str, Any],
        upsert: bool = False
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically update one document and return it after the update.

        Returns:
            Updated document, or None if the filter matched nothing
        """
        try:
            return await self.collection.find_one_and_update(
                filter,
                update,
                upsert=upsert,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            raise self._database_error("find_one_and_update", e) from e

    async def find_by_id(self, document_id: str) -> Optional[Dict[str, Any]]:
        """
        Find document by ID.

        Returns:
            Document dict, or None if not found or the id is not an ObjectId
        """
        if not ObjectId.is_valid(document_id):
            return None
        return await self.find_one({"_id": ObjectId(document_id)})
