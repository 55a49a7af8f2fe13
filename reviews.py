import logging
from typing import Any, Dict, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import get_current_user, require_admin
from cache import cache_delete, cache_get, cache_set
from database import create_document, db, get_documents, oid, serialize, utcnow
from schemas import Review

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews")

HELPFUL_TTL = 86400 * 365

REVIEW_SORTS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "rating_high": [("rating", -1), ("created_at", -1)],
    "rating_low": [("rating", 1), ("created_at", -1)],
    "helpful": [("helpful_count", -1), ("created_at", -1)],
}


class ReviewCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    product: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=3, max_length=100)
    content: str = Field(..., min_length=10, max_length=1000)

    @field_validator("product")
    @classmethod
    def product_must_be_object_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid product ID")
        return str(ObjectId(v))


class ModerationRequest(BaseModel):
    status: Literal["approved", "rejected"]
    reason: Optional[str] = None


class ReviewUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    content: Optional[str] = Field(None, min_length=10, max_length=1000)


def update_product_rating(product_id: str) -> Dict[str, Any]:
    pipeline = [
        {"$match": {"product_id": product_id, "status": "approved"}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    agg = list(db["review"].aggregate(pipeline))
    rating = {"average": round(agg[0]["avg"], 2), "count": agg[0]["count"]} if agg else {"average": 0, "count": 0}
    db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"rating": rating}})
    return rating


@router.get("/product/{product_id}")
def product_reviews(
    product_id: str,
    sort: Literal["newest", "oldest", "rating_high", "rating_low", "helpful"] = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
):
    if not db["product"].find_one({"_id": oid(product_id)}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Product not found")

    query = {"product_id": product_id, "status": "approved"}
    reviews = get_documents("review", query, sort=REVIEW_SORTS[sort], skip=(page - 1) * limit, limit=limit)
    total = db["review"].count_documents(query)

    distribution = {str(star): 0 for star in range(1, 6)}
    for row in db["review"].aggregate([{"$match": query}, {"$group": {"_id": "$rating", "count": {"$sum": 1}}}]):
        distribution[str(row["_id"])] = row["count"]
    rated = sum(distribution.values())
    average = round(sum(int(k) * v for k, v in distribution.items()) / rated, 2) if rated else 0

    return {
        "success": True,
        "data": {
            "reviews": reviews,
            "average_rating": average,
            "rating_distribution": distribution,
            "pagination": {"page": page, "limit": limit, "total": total},
        },
    }


@router.post("", status_code=201)
def create_review(body: ReviewCreate, current_user: dict = Depends(get_current_user)):
    if not db["product"].find_one({"_id": ObjectId(body.product), "is_active": True}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Product not found")
    user_id = str(current_user["_id"])
    verified = db["order"].count_documents({
        "user_id": user_id,
        "order_status": "delivered",
        "items.product_id": body.product,
    }) > 0
    review = Review(
        product_id=body.product,
        user_id=user_id,
        user_name=current_user["name"],
        rating=body.rating,
        title=body.title,
        content=body.content,
        verified_purchase=verified,
    )
    try:
        review_id = create_document("review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    return {
        "success": True,
        "message": "Review submitted and awaiting moderation",
        "data": {"id": review_id, **review.model_dump()},
    }


@router.post("/{review_id}/helpful")
def toggle_helpful(review_id: str, current_user: dict = Depends(get_current_user)):
    review = db["review"].find_one({"_id": oid(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")

    key = f"helpful:{review_id}:{current_user['_id']}"
    if cache_get(key):
        cache_delete(key)
        # Clamp at zero
        updated = db["review"].find_one_and_update(
            {"_id": review["_id"], "helpful_count": {"$gt": 0}},
            {"$inc": {"helpful_count": -1}},
            return_document=ReturnDocument.AFTER,
        ) or review
        message = "Helpful mark removed"
    else:
        cache_set(key, 1, ttl=HELPFUL_TTL)
        updated = db["review"].find_one_and_update(
            {"_id": review["_id"]}, {"$inc": {"helpful_count": 1}}, return_document=ReturnDocument.AFTER
        )
        message = "Review marked as helpful"
    return {"success": True, "message": message, "data": {"helpful_count": updated["helpful_count"]}}


@router.patch("/{review_id}/moderate")
def moderate_review(review_id: str, body: ModerationRequest, current_user: dict = Depends(require_admin)):
    review = db["review"].find_one_and_update(
        {"_id": oid(review_id)},
        {"$set": {"status": body.status, "moderation_reason": body.reason,
                  "moderated_by": str(current_user["_id"]), "moderated_at": utcnow(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    rating = update_product_rating(review["product_id"])
    logger.info("Review %s %s by admin %s", review_id, body.status, current_user["_id"])
    return {"success": True, "message": f"Review {body.status}", "data": {"review": serialize(review), "product_rating": rating}}


@router.get("/user/me")
def my_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
):
    query = {"user_id": str(current_user["_id"])}
    reviews = get_documents("review", query, sort=[("created_at", -1)], skip=(page - 1) * limit, limit=limit)
    ids = [ObjectId(r["product_id"]) for r in reviews]
    products = {
        str(p["_id"]): {"id": str(p["_id"]), "name": p["name"], "images": p.get("images", []), "price": p["price"]}
        for p in db["product"].find({"_id": {"$in": ids}})
    }
    for r in reviews:
        r["product"] = products.get(r["product_id"])
    total = db["review"].count_documents(query)
    return {
        "success": True,
        "data": {"reviews": reviews, "pagination": {"page": page, "limit": limit, "total": total}},
    }


@router.put("/{review_id}")
def update_review(review_id: str, body: ReviewUpdate, current_user: dict = Depends(get_current_user)):
    review = db["review"].find_one({"_id": oid(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if review["user_id"] != str(current_user["_id"]):
        raise HTTPException(status_code=403, detail="You can only edit your own reviews")

    # Edited reviews go back through moderation
    changes = {**body.model_dump(exclude_none=True), "status": "pending", "updated_at": utcnow()}
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    rating = update_product_rating(review["product_id"])
    return {
        "success": True,
        "message": "Review updated successfully and pending moderation",
        "data": {"review": serialize(updated), "product_rating": rating},
    }


@router.delete("/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user)):
    review = db["review"].find_one({"_id": oid(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if review["user_id"] != str(current_user["_id"]) and current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="You can only delete your own reviews")

    db["review"].delete_one({"_id": review["_id"]})
    rating = update_product_rating(review["product_id"])
    logger.info("Review %s deleted by user %s", review_id, current_user["_id"])
    return {"success": True, "message": "Review deleted successfully", "data": {"product_rating": rating}}
