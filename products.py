import logging
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import require_admin
from database import db, oid, serialize, utcnow
from schemas import Category, Gender, Product, Variant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products")

SORTS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "newest": [("created_at", -1)],
    "rating": [("rating.average", -1), ("rating.count", -1)],
    "popular": [("view_count", -1)],
}


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    category: Optional[Category] = None
    gender: Optional[Gender] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    images: Optional[List[str]] = None
    primary_image: Optional[str] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    variants: Optional[List[Variant]] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_on_sale: Optional[bool] = None


def build_product_query(
    q: Optional[str] = None,
    category: Optional[str] = None,
    gender: Optional[str] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> Dict[str, Any]:
    """Filter for active products; `q` is matched literally, case-insensitive."""
    query: Dict[str, Any] = {"is_active": True}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if gender:
        query["gender"] = gender
    if brand:
        query["brand"] = {"$regex": f"^{re.escape(brand)}$", "$options": "i"}
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    return query


def _product_lookup(id_or_slug: str) -> Dict[str, Any]:
    if ObjectId.is_valid(id_or_slug):
        return {"_id": ObjectId(id_or_slug)}
    return {"slug": id_or_slug.lower()}


@router.get("")
def list_products(
    q: Optional[str] = None,
    category: Optional[Category] = None,
    gender: Optional[Gender] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    featured: Optional[bool] = None,
    on_sale: Optional[bool] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
):
    query = build_product_query(q, category, gender, brand, min_price, max_price)
    if featured is not None:
        query["is_featured"] = featured
    if on_sale is not None:
        query["is_on_sale"] = on_sale

    skip = (page - 1) * limit
    cursor = db["product"].find(query)
    total = db["product"].count_documents(query)
    if sort in SORTS:
        cursor = cursor.sort(SORTS[sort])
    items = [serialize(p) for p in cursor.skip(skip).limit(limit)]
    return {"success": True, "data": {"items": items, "page": page, "limit": limit, "total": total}}


@router.get("/featured")
def featured_products(limit: int = Query(8, ge=1, le=24)):
    cursor = db["product"].find({"is_active": True, "is_featured": True}).sort([("created_at", -1)]).limit(limit)
    return {"success": True, "data": [serialize(p) for p in cursor]}


@router.get("/categories")
def product_categories():
    return {"success": True, "data": sorted(db["product"].distinct("category", {"is_active": True}))}


@router.get("/brands")
def product_brands():
    return {"success": True, "data": sorted(db["product"].distinct("brand", {"is_active": True}))}


@router.get("/{id_or_slug}")
def get_product(id_or_slug: str):
    query = {**_product_lookup(id_or_slug), "is_active": True}
    p = db["product"].find_one_and_update(query, {"$inc": {"view_count": 1}}, return_document=ReturnDocument.AFTER)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": serialize(p)}


@router.post("", status_code=201)
def create_product(body: Product, current_user: dict = Depends(require_admin)):
    doc = body.model_dump()
    doc["slug"] = doc["slug"].lower()
    now = utcnow()
    doc.update({"created_at": now, "updated_at": now})
    try:
        res = db["product"].insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="A product with this slug or SKU already exists")
    logger.info("Product created: %s by admin %s", res.inserted_id, current_user["_id"])
    return {"success": True, "message": "Product created successfully", "data": serialize(doc)}


@router.put("/{product_id}")
def update_product(product_id: str, body: ProductUpdate, current_user: dict = Depends(require_admin)):
    update = body.model_dump(exclude_none=True)
    if "slug" in update:
        update["slug"] = update["slug"].lower()
    update["updated_at"] = utcnow()
    try:
        prod = db["product"].find_one_and_update(
            {"_id": oid(product_id)}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="A product with this slug or SKU already exists")
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "message": "Product updated successfully", "data": serialize(prod)}


@router.delete("/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin)):
    # Orders keep pointing at the product, so deactivate instead of removing
    res = db["product"].update_one(
        {"_id": oid(product_id)}, {"$set": {"is_active": False, "updated_at": utcnow()}}
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product deactivated: %s by admin %s", product_id, current_user["_id"])
    return {"success": True, "message": "Product deleted successfully"}
