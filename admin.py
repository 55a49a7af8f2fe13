import logging
import math
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from auth import require_admin
from database import db, get_documents, oid, serialize, utcnow
from orders import populate_order, populate_orders
from schemas import OrderStatus, ReviewStatus, Role, UserStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])

LOW_STOCK_THRESHOLD = 10


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RefundRequest(BaseModel):
    amount: float = Field(..., gt=0)
    reason: str = Field(..., min_length=1)


class UserStatusUpdate(BaseModel):
    status: UserStatus
    reason: Optional[str] = Field(None, max_length=500)


@router.get("/orders")
def admin_orders(
    status: Optional[OrderStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query: Dict[str, Any] = {}
    if status:
        query["order_status"] = status
    if date_from or date_to:
        query["created_at"] = {}
        if date_from:
            query["created_at"]["$gte"] = _naive_utc(date_from)
        if date_to:
            query["created_at"]["$lte"] = _naive_utc(date_to)

    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {
            "orders": populate_orders(list(cursor)),
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        },
    }


@router.get("/orders/stats")
def order_stats():
    pipeline = [
        {"$match": {"order_status": {"$ne": "cancelled"}}},
        {"$group": {"_id": None, "total_orders": {"$sum": 1}, "total_revenue": {"$sum": "$total"},
                    "average_order_value": {"$avg": "$total"}}},
    ]
    agg = list(db["order"].aggregate(pipeline))
    totals = agg[0] if agg else {"total_orders": 0, "total_revenue": 0, "average_order_value": 0}
    by_status = {
        row["_id"]: row["count"]
        for row in db["order"].aggregate([{"$group": {"_id": "$order_status", "count": {"$sum": 1}}}])
    }
    return {
        "success": True,
        "data": {
            "total_orders": totals["total_orders"],
            "total_revenue": round(totals["total_revenue"] or 0, 2),
            "average_order_value": round(totals["average_order_value"] or 0, 2),
            "by_status": by_status,
        },
    }


@router.post("/orders/{order_id}/refund")
def refund_order(order_id: str, body: RefundRequest, current_user: dict = Depends(require_admin)):
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["payment_status"] != "paid":
        raise HTTPException(status_code=400, detail="Only paid orders can be refunded")
    if body.amount > order["total"]:
        raise HTTPException(status_code=400, detail="Refund amount cannot exceed the order total")

    now = utcnow()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": "paid"},
        {
            "$set": {"payment_status": "refunded", "refund_amount": body.amount, "refund_reason": body.reason,
                     "refunded_at": now, "updated_at": now},
            "$push": {"notes": {"note": f"Refund processed: ₹{body.amount:.2f} - {body.reason}", "timestamp": now}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=400, detail="Only paid orders can be refunded")
    logger.info("Order %s refunded %.2f by admin %s", updated["order_number"], body.amount, current_user["_id"])
    return {"success": True, "message": "Refund processed successfully", "data": populate_order(updated)}


@router.get("/dashboard")
def dashboard():
    since = utcnow() - timedelta(days=30)
    revenue = list(db["order"].aggregate([
        {"$match": {"order_status": "delivered"}},
        {"$group": {"_id": None, "total": {"$sum": "$total"}}},
    ]))

    # Daily delivered sales for the last 30 days
    sales: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"sales": 0.0, "orders": 0})
    for order in db["order"].find({"order_status": "delivered", "created_at": {"$gte": since}},
                                  {"created_at": 1, "total": 1}):
        day = sales[order["created_at"].strftime("%Y-%m-%d")]
        day["sales"] = round(day["sales"] + order["total"], 2)
        day["orders"] += 1

    recent = list(db["order"].find().sort([("created_at", -1)]).limit(10))
    top = db["product"].find({"is_active": True}, {"name": 1, "price": 1, "images": 1, "view_count": 1}) \
        .sort([("view_count", -1)]).limit(5)
    return {
        "success": True,
        "data": {
            "metrics": {
                "total_products": db["product"].count_documents({}),
                "total_orders": db["order"].count_documents({}),
                "total_users": db["user"].count_documents({}),
                "total_revenue": round(revenue[0]["total"], 2) if revenue else 0,
                "pending_reviews": db["review"].count_documents({"status": "pending"}),
                "low_stock_products": db["product"].count_documents(
                    {"is_active": True, "stock_quantity": {"$lt": LOW_STOCK_THRESHOLD}}),
            },
            "recent_orders": populate_orders(recent),
            "sales_data": [{"date": d, **v} for d, v in sorted(sales.items())],
            "top_products": [serialize(p) for p in top],
        },
    }


@router.get("/users")
def admin_users(
    search: Optional[str] = None,
    role: Optional[Role] = None,
    status: Optional[UserStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}]
    if role:
        query["role"] = role
    if status:
        # Accounts created before statuses existed count as active
        query["status"] = {"$nin": ["inactive", "suspended"]} if status == "active" else status

    total = db["user"].count_documents(query)
    cursor = db["user"].find(query, {"password_hash": 0}).sort([("created_at", -1)]) \
        .skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": {
            "users": [serialize(u) for u in cursor],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        },
    }


@router.patch("/users/{user_id}/status")
def update_user_status(user_id: str, body: UserStatusUpdate, current_user: dict = Depends(require_admin)):
    if user_id == str(current_user["_id"]):
        raise HTTPException(status_code=400, detail="You cannot change your own account status")
    user = db["user"].find_one_and_update(
        {"_id": oid(user_id)},
        {"$set": {"status": body.status, "status_reason": body.reason, "updated_at": utcnow()}},
        projection={"password_hash": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s status set to %s by admin %s", user_id, body.status, current_user["_id"])
    return {"success": True, "message": "User status updated successfully", "data": serialize(user)}


@router.get("/reviews")
def admin_reviews(
    status: ReviewStatus = "pending",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query = {"status": status}
    reviews = get_documents("review", query, sort=[("created_at", -1)], skip=(page - 1) * limit, limit=limit)
    ids = [ObjectId(r["product_id"]) for r in reviews]
    names = {str(p["_id"]): p["name"] for p in db["product"].find({"_id": {"$in": ids}}, {"name": 1})}
    for r in reviews:
        r["product_name"] = names.get(r["product_id"])
    total = db["review"].count_documents(query)
    return {
        "success": True,
        "data": {
            "reviews": reviews,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        },
    }
