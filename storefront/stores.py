"""
Storage backends for carts and orders.

Local cache: synchronous string key/value store on the device
(``get``/``set``/``remove``). ``SqliteCache`` keeps it in one sqlite file,
one namespace per session; ``MemoryCache`` keeps it in a dict.

Remote stores live in Mongo: one cart document per subject in ``carts``,
completed orders in the flat ``orders`` collection and in the per-subject
``users.{subject}.orders`` collection.
"""
import logging
import os
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront.models import OrderSource

logger = logging.getLogger(__name__)


# --- Local Cache ---
class MemoryCache:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class SqliteCache:
    def __init__(self, path: str, namespace: str = "default"):
        self.path = path
        self.namespace = namespace
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS cache("
                "namespace TEXT NOT NULL, key TEXT NOT NULL, value TEXT NOT NULL, "
                "updated_at TEXT NOT NULL, PRIMARY KEY(namespace, key))"
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM cache WHERE namespace = ? AND key = ?", (self.namespace, key)
            ).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO cache(namespace, key, value, updated_at) VALUES(?,?,?,?)",
                (self.namespace, key, value, datetime.utcnow().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM cache WHERE namespace = ? AND key = ?", (self.namespace, key))
            conn.commit()
        finally:
            conn.close()

    def prune(self, before: datetime) -> int:
        """Drop every namespace's entries last written before ``before``."""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM cache WHERE updated_at < ?", (before.isoformat(),))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


# --- Remote Cart Store ---
class MongoCartStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.carts

    async def get_cart(self, subject_id: str) -> Optional[Dict[str, Any]]:
        cart = await self.collection.find_one({"user_id": subject_id})
        if not cart:
            return None
        items = cart.get("items") or {}
        # Older documents hold a list of lines
        if isinstance(items, list):
            items = {
                str(item.get("productId") or item.get("product_id")): item
                for item in items
                if isinstance(item, dict) and (item.get("productId") or item.get("product_id"))
            }
        return items

    async def save_cart(self, subject_id: str, items: Dict[str, Any]) -> None:
        await self.collection.update_one(
            {"user_id": subject_id},
            {"$set": {"items": items, "updated_at": datetime.utcnow()}},
            upsert=True,
        )


# --- Remote Order Collections ---
def _with_id(doc: dict) -> dict:
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


class MongoOrderCollection:
    """Flat ``orders`` collection filtered by subject."""

    tag = OrderSource.REMOTE_TOP_LEVEL

    def __init__(self, db: AsyncIOMotorDatabase, subject_field: str = "user_id"):
        self.collection = db.orders
        self.subject_field = subject_field

    async def fetch(self, subject_id: str) -> List[dict]:
        cursor = self.collection.find({self.subject_field: subject_id}).sort("created_at", -1)
        return [_with_id(doc) async for doc in cursor]


class MongoUserOrders:
    """Per-subject order subcollection."""

    tag = OrderSource.REMOTE_USER_SCOPED

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def fetch(self, subject_id: str) -> List[dict]:
        cursor = self.db[f"users.{subject_id}.orders"].find({}).sort("order_date", -1)
        return [_with_id(doc) async for doc in cursor]
