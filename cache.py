"""
Best-effort key/value cache with per-key TTL, kept in the `cache` collection.

Every helper swallows storage errors after logging them and returns None (an
empty list for `cache_top`), so callers treat an unavailable cache as a miss
and carry on.
"""
import logging
import re
from datetime import timedelta
from typing import Any, List, Optional, Tuple

from fastapi import HTTPException, Request
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

import config
from database import db, utcnow

logger = logging.getLogger(__name__)

COLLECTION = "cache"


def cache_get(key: str) -> Optional[Any]:
    try:
        # The TTL monitor only sweeps once a minute, so filter on expiry too
        doc = db[COLLECTION].find_one({"_id": key, "expires_at": {"$gt": utcnow()}})
    except PyMongoError:
        logger.exception("Cache get failed for %s", key)
        return None
    return doc["value"] if doc else None


def cache_set(key: str, value: Any, ttl: int = 3600) -> Optional[bool]:
    try:
        db[COLLECTION].update_one(
            {"_id": key},
            {"$set": {"value": value, "expires_at": utcnow() + timedelta(seconds=ttl)}},
            upsert=True,
        )
    except PyMongoError:
        logger.exception("Cache set failed for %s", key)
        return None
    return True


def cache_delete(key: str) -> Optional[bool]:
    try:
        db[COLLECTION].delete_one({"_id": key})
    except PyMongoError:
        logger.exception("Cache delete failed for %s", key)
        return None
    return True


def cache_incr(key: str, amount: int = 1, ttl: int = 3600) -> Optional[int]:
    """Add to a numeric entry, creating it if needed; every hit extends the TTL."""
    try:
        doc = db[COLLECTION].find_one_and_update(
            {"_id": key},
            {"$inc": {"value": amount}, "$set": {"expires_at": utcnow() + timedelta(seconds=ttl)}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError:
        logger.exception("Cache incr failed for %s", key)
        return None
    return doc["value"]


def cache_top(prefix: str, limit: int = 10) -> List[Tuple[str, Any]]:
    """Live numeric entries under `prefix`, highest value first, as (suffix, value)."""
    try:
        cursor = db[COLLECTION].find(
            {"_id": {"$regex": f"^{re.escape(prefix)}"}, "expires_at": {"$gt": utcnow()}}
        ).sort([("value", DESCENDING)]).limit(limit)
        return [(doc["_id"][len(prefix):], doc["value"]) for doc in cursor]
    except PyMongoError:
        logger.exception("Cache scan failed for %s", prefix)
        return []


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and config.TRUST_PROXY_HEADERS:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _attempts_key(request: Request) -> str:
    return f"auth_attempts:{_client_ip(request)}"


def auth_rate_limit(request: Request):
    """Dependency: at most AUTH_RATE_LIMIT_ATTEMPTS auth calls per window per client IP."""
    key = _attempts_key(request)
    window = config.AUTH_RATE_LIMIT_WINDOW_SECONDS
    now = utcnow()
    attempts = cache_get(key) or []
    recent = [t for t in attempts if (now - t).total_seconds() < window]
    if len(recent) >= config.AUTH_RATE_LIMIT_ATTEMPTS:
        logger.warning("Auth rate limit hit for %s", key)
        raise HTTPException(status_code=429, detail="Too many authentication attempts. Please try again later.")
    recent.append(now)
    cache_set(key, recent, ttl=window)


def clear_auth_attempts(request: Request):
    cache_delete(_attempts_key(request))
