import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from datetime import datetime, timezone
from loguru import logger
from typing import Any, Dict, List, Optional

from ecobites.config import (
    MONGO_URI,
    MONGO_DB,
    SHARED_PRODUCTS_COLLECTION,
    PENDING_PRODUCTS_COLLECTION,
    SCANS_COLLECTION,
    SEARCH_HISTORY_COLLECTION,
    USER_STATS_COLLECTION,
    MATCH_CANDIDATE_LIMIT,
)

_client: Optional[AsyncIOMotorClient] = None


def get_db():
    """Lazily create the shared Mongo client (no I/O until first query)."""
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(MONGO_URI)
    return _client[MONGO_DB]


async def ping_db(db=None, timeout: float = 1.5) -> bool:
    """Quick health check for Mongo connectivity."""
    db = db if db is not None else get_db()
    try:
        await asyncio.wait_for(db.command("ping", maxTimeMS=int(timeout * 1000)), timeout=timeout)
        return True
    except Exception as e:
        logger.debug(f"Mongo ping failed: {type(e).__name__}: {e}")
        return False


async def close_db():
    """Close Mongo client (useful for shutdown hooks)."""
    global _client
    if _client is not None:
        _client.close()
        _client = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def public_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Mongo document -> plain dict with a string ``id``."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    if "_id" in doc:
        out["id"] = str(doc["_id"])
    return out


class SharedProductStore:
    """Crowd-sourced product collections: verified shared entries and the
    pending-review queue."""

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self.shared = db[SHARED_PRODUCTS_COLLECTION]
        self.pending = db[PENDING_PRODUCTS_COLLECTION]

    async def query_verified_by_name_prefix(self, prefix: str, limit: int = MATCH_CANDIDATE_LIMIT) -> List[Dict[str, Any]]:
        # Range query on the lower-cased name emulates "starts with".
        cursor = self.shared.find(
            {"verified": True, "product_name_lower": {"$gte": prefix, "$lte": prefix + "\uf8ff"}}
        ).limit(limit)
        return [public_doc(d) for d in await cursor.to_list(length=limit)]

    async def insert_pending(self, record: Dict[str, Any]) -> Dict[str, Any]:
        doc = {**record, "verified": False, "status": "pending"}
        doc.setdefault("created_at", _utcnow())
        res = await self.pending.insert_one(doc)
        doc["_id"] = res.inserted_id
        return public_doc(doc)

    async def insert_approved(self, record: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in record.items() if k != "id"}
        doc.update({"verified": True, "approved": True, "status": "approved", "approved_at": _utcnow()})
        if doc.get("product_name") and not doc.get("product_name_lower"):
            doc["product_name_lower"] = doc["product_name"].strip().lower()
        res = await self.shared.insert_one(doc)
        doc["_id"] = res.inserted_id
        return public_doc(doc)

    async def get_pending(self, pending_id: str) -> Optional[Dict[str, Any]]:
        oid = _object_id(pending_id)
        if oid is None:
            return None
        return public_doc(await self.pending.find_one({"_id": oid}))

    async def delete_pending(self, pending_id: str) -> bool:
        oid = _object_id(pending_id)
        if oid is None:
            return False
        res = await self.pending.delete_one({"_id": oid})
        return res.deleted_count > 0

    async def list_pending(self, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.pending.find({}).sort("created_at", -1).limit(limit)
        return [public_doc(d) for d in await cursor.to_list(length=limit)]

    async def count_contributions(self, user_id: str) -> int:
        return await self.shared.count_documents({"user_id": user_id})

    async def recent_contributions(self, user_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        cursor = self.shared.find({"user_id": user_id}).sort("created_at", -1).limit(limit)
        return [public_doc(d) for d in await cursor.to_list(length=limit)]


class ActivityStore:
    """Search history, scans and contributor stats. Writes are best-effort."""

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self.history = db[SEARCH_HISTORY_COLLECTION]
        self.scans = db[SCANS_COLLECTION]
        self.user_stats = db[USER_STATS_COLLECTION]

    async def record_search(self, query: str, product_id: Optional[str] = None, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        doc = {"query": query, "product_id": product_id, "user_id": user_id, "created_at": _utcnow()}
        try:
            res = await self.history.insert_one(doc)
        except Exception as e:
            logger.debug(f"Failed to store search history: {e}")
            return None
        doc["_id"] = res.inserted_id
        return public_doc(doc)

    async def recent_searches(self, limit: int = 10, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        flt = {"user_id": user_id} if user_id else {}
        cursor = self.history.find(flt).sort("created_at", -1).limit(limit)
        return [public_doc(d) for d in await cursor.to_list(length=limit)]

    async def record_scan(self, user_id: str, product: Dict[str, Any], provenance: str) -> None:
        try:
            await self.scans.insert_one({
                "user_id": user_id,
                "product_name": product.get("name"),
                "brand": product.get("brand"),
                "nutrition": product.get("nutrition"),
                "nutri_score": product.get("nutriScore"),
                "eco_score": product.get("ecoScore"),
                "provenance": provenance,
                "created_at": _utcnow(),
            })
        except Exception as e:
            logger.debug(f"Failed to store scan: {e}")

    async def count_scans(self, user_id: str) -> int:
        return await self.scans.count_documents({"user_id": user_id})

    async def award_points(self, user_id: str, points: int) -> Optional[Dict[str, Any]]:
        """Atomically add contribution points and return the post-update totals."""
        try:
            doc = await self.user_stats.find_one_and_update(
                {"user_id": user_id},
                {
                    "$inc": {"points": points, "total_contributions": 1},
                    "$set": {"last_contribution_at": _utcnow()},
                    "$setOnInsert": {"created_at": _utcnow()},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
            return {
                "user_id": user_id,
                "points": int(doc.get("points", 0)),
                "total_contributions": int(doc.get("total_contributions", 0)),
            }
        except Exception as e:
            logger.debug(f"Failed to award points user={user_id}: {e}")
            return None


__all__ = [
    "get_db",
    "ping_db",
    "close_db",
    "public_doc",
    "SharedProductStore",
    "ActivityStore",
]
