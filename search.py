"""
Server-side product search.

Result pages are cached for a few minutes under a key built from the query
parameters. Every non-empty query bumps a `search_count:<term>` counter in the
cache, which is what /popular ranks; signed-in callers also get a short
history list.
"""
import json
import logging
import math
import re
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query

import config
from auth import get_current_user, get_optional_user
from cache import cache_get, cache_incr, cache_set, cache_top
from database import db, serialize, utcnow
from products import build_product_query
from schemas import Gender

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search")

POPULAR_PREFIX = "search_count:"

SEARCH_SORTS = {
    "relevance": [("is_featured", -1), ("view_count", -1), ("created_at", -1)],
    "price_low": [("price", 1)],
    "price_high": [("price", -1)],
    "newest": [("created_at", -1)],
    "popular": [("view_count", -1)],
}


def _track_search(term: str, user: Optional[dict], result_count: int):
    term = term.strip().lower()
    cache_incr(f"{POPULAR_PREFIX}{term}", ttl=config.POPULAR_SEARCH_TTL_SECONDS)
    if user is not None:
        key = f"search_history:{user['_id']}"
        history = [h for h in (cache_get(key) or []) if h["query"] != term]
        history.insert(0, {"query": term, "result_count": result_count, "timestamp": utcnow()})
        cache_set(key, history[:config.SEARCH_HISTORY_LENGTH], ttl=config.POPULAR_SEARCH_TTL_SECONDS)
    logger.info('Search tracked: "%s" - %d results', term, result_count)


@router.get("/products")
def search_products(
    q: Optional[str] = Query(None, min_length=1),
    category: Optional[str] = None,
    brand: Optional[str] = None,
    gender: Optional[Gender] = None,
    price_min: Optional[float] = Query(None, ge=0),
    price_max: Optional[float] = Query(None, ge=0),
    sort: Literal["relevance", "price_low", "price_high", "newest", "popular"] = "relevance",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: Optional[dict] = Depends(get_optional_user),
):
    params = {"q": q, "category": category, "brand": brand, "gender": gender, "price_min": price_min,
              "price_max": price_max, "sort": sort, "page": page, "limit": limit}
    cache_key = f"search:{json.dumps(params, sort_keys=True)}"
    result = cache_get(cache_key)
    if result is None:
        query = build_product_query(q, category, gender, brand, price_min, price_max)
        query["stock_quantity"] = {"$gt": 0}
        cursor = db["product"].find(query).sort(SEARCH_SORTS[sort]).skip((page - 1) * limit).limit(limit)
        result = {"products": [serialize(p) for p in cursor], "total": db["product"].count_documents(query)}
        cache_set(cache_key, result, ttl=config.SEARCH_CACHE_TTL_SECONDS)

    if q:
        _track_search(q, current_user, result["total"])

    total = result["total"]
    return {
        "success": True,
        "data": {
            "products": result["products"],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
            "has_next": page * limit < total,
            "has_prev": page > 1,
        },
    }


@router.get("/suggestions")
def search_suggestions(q: str = Query(..., min_length=1), limit: int = Query(5, ge=1, le=10)):
    term = q.strip().lower()
    pattern = {"$regex": re.escape(term), "$options": "i"}
    suggestions: Dict[str, Any] = {}  # insertion-ordered set

    for product in db["product"].find({"is_active": True, "name": pattern}, {"name": 1}).limit(limit):
        for word in product["name"].lower().split():
            if word.startswith(term) and len(word) > 2:
                suggestions.setdefault(word.capitalize(), None)
    for category in sorted(db["product"].distinct("category", {"is_active": True, "category": pattern})):
        suggestions.setdefault(category, None)
    for brand in sorted(db["product"].distinct("brand", {"is_active": True, "brand": pattern})):
        suggestions.setdefault(brand, None)

    return {"success": True, "data": {"suggestions": list(suggestions)[:limit], "query": q}}


@router.get("/popular")
def popular_searches(limit: int = Query(10, ge=1, le=50)):
    searches = [{"term": term, "count": count} for term, count in cache_top(POPULAR_PREFIX, limit)]
    return {"success": True, "data": {"searches": searches}}


@router.get("/history")
def search_history(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": {"history": cache_get(f"search_history:{current_user['_id']}") or []}}
