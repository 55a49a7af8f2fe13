"""
Order placement, cancellation and status tracking.

There is no multi-document transaction here. Stock is reserved one product at
a time with a conditional decrement, and any failure after the first
reservation releases what was already taken before the error propagates.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from auth import get_current_user, require_admin
from database import db, oid, serialize, utcnow
from schemas import Address, Order, OrderItem, OrderStatus, PaymentMethod

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders")

ORDER_NUMBER_ATTEMPTS = 3
NON_CANCELLABLE = ("cancelled", "shipped", "delivered")


class OrderItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product: str
    quantity: int = Field(..., ge=1)
    selected_size: Optional[str] = Field(None, alias="selectedSize")
    selected_color: Optional[str] = Field(None, alias="selectedColor")

    @field_validator("product")
    @classmethod
    def product_must_be_object_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid product ID")
        return str(ObjectId(v))


class OrderCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: Address = Field(..., alias="shippingAddress")
    billing_address: Address = Field(..., alias="billingAddress")
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: OrderStatus
    tracking_number: Optional[str] = Field(None, alias="trackingNumber")
    note: Optional[str] = None


def calculate_totals(subtotal: float) -> Dict[str, float]:
    """Tax and shipping for a subtotal; the result is locked into the order."""
    subtotal = round(subtotal, 2)
    tax = round(subtotal * config.TAX_RATE, 2)
    shipping = 0 if subtotal > config.FREE_SHIPPING_THRESHOLD else config.SHIPPING_FEE
    return {
        "subtotal": subtotal,
        "tax": tax,
        "shipping": shipping,
        "total": round(subtotal + tax + shipping, 2),
    }


def next_order_number(now: Optional[datetime] = None) -> str:
    """Allocate KOLZO-YYYYMMDD-NNNN from a per-day counter document."""
    day = (now or datetime.now()).strftime("%Y%m%d")
    counter = db["counter"].find_one_and_update(
        {"_id": f"order-{day}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"KOLZO-{day}-{counter['seq']:04d}"


def reserve_stock(product_id: str, quantity: int) -> bool:
    res = db["product"].update_one(
        {"_id": ObjectId(product_id), "is_active": True, "stock_quantity": {"$gte": quantity}},
        {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": utcnow()}},
    )
    return res.matched_count == 1


def release_stock(product_id: str, quantity: int) -> bool:
    res = db["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$inc": {"stock_quantity": quantity}, "$set": {"updated_at": utcnow()}},
    )
    return res.matched_count == 1


def _release_all(reserved: Iterable[Tuple[str, int]]):
    for product_id, quantity in reserved:
        logger.warning("Releasing %s units of product %s after failed order", quantity, product_id)
        release_stock(product_id, quantity)


def populate_orders(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Attach current product documents to each line item (one query for the batch)."""
    ids = {ObjectId(item["product_id"]) for o in orders for item in o.get("items", [])}
    products = {str(p["_id"]): serialize(p) for p in db["product"].find({"_id": {"$in": list(ids)}})}
    result = []
    for o in orders:
        out = serialize(o)
        out["items"] = [{**item, "product": products.get(item["product_id"])} for item in o.get("items", [])]
        out["item_count"] = sum(item["quantity"] for item in o.get("items", []))
        result.append(out)
    return result


def populate_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return populate_orders([order])[0]


def status_timeline(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    timeline = [{"status": "pending", "timestamp": order.get("created_at"), "description": "Order placed"}]
    current = order.get("order_status")
    if current == "processing":
        timeline.append({"status": "processing", "timestamp": order.get("updated_at"),
                         "description": "Order being processed"})
    elif current == "shipped":
        timeline.append({"status": "shipped", "timestamp": order.get("updated_at"),
                         "description": "Order shipped", "tracking_number": order.get("tracking_number")})
    elif current == "delivered":
        timeline.append({"status": "delivered", "timestamp": order.get("updated_at"),
                         "description": "Order delivered"})
    elif current == "cancelled":
        timeline.append({"status": "cancelled", "timestamp": order.get("cancelled_at"),
                         "description": "Order cancelled", "reason": order.get("cancellation_reason")})
    return timeline


def get_owned_order(order_id: str, user: dict) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Access denied")
    return order


def _insert_order(user_id: str, items: List[Dict[str, Any]], payload: OrderCreate,
                  totals: Dict[str, float]) -> Dict[str, Any]:
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        now = utcnow()
        doc = Order(
            user_id=user_id,
            order_number=next_order_number(),
            items=items,
            shipping_address=payload.shipping_address,
            billing_address=payload.billing_address,
            payment_method=payload.payment_method,
            **totals,
        ).model_dump()
        doc.update({"created_at": now, "updated_at": now})
        try:
            db["order"].insert_one(doc)
            return doc
        except DuplicateKeyError:
            logger.warning("Order number %s already taken (attempt %d)", doc["order_number"], attempt)
    raise RuntimeError("Could not allocate a unique order number")


@router.get("")
def list_orders(current_user: dict = Depends(get_current_user)):
    orders = list(db["order"].find({"user_id": str(current_user["_id"])}).sort([("created_at", -1)]))
    return {"success": True, "data": populate_orders(orders)}


@router.get("/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = get_owned_order(order_id, current_user)
    return {"success": True, "data": populate_order(order)}


@router.post("", status_code=201)
def create_order(payload: OrderCreate, current_user: dict = Depends(get_current_user)):
    # Quantities per product, summed across lines, in first-seen order
    requested: Dict[str, int] = {}
    for item in payload.items:
        requested[item.product] = requested.get(item.product, 0) + item.quantity

    products = {
        str(p["_id"]): p
        for p in db["product"].find({"_id": {"$in": [ObjectId(pid) for pid in requested]}})
    }
    if len(products) != len(requested):
        raise HTTPException(status_code=404, detail="Some products are not available")

    subtotal = 0.0
    order_items = []
    for item in payload.items:
        product = products[item.product]
        if not product.get("is_active", True):
            raise HTTPException(status_code=400, detail=f"Product {product['name']} is not available")
        if product.get("stock_quantity", 0) < requested[item.product]:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")
        line_total = round(product["price"] * item.quantity, 2)
        subtotal += line_total
        order_items.append(OrderItem(
            product_id=item.product,
            name=product["name"],
            quantity=item.quantity,
            price=product["price"],
            total=line_total,
            selected_size=item.selected_size,
            selected_color=item.selected_color,
        ))
    totals = calculate_totals(subtotal)

    reserved: List[Tuple[str, int]] = []
    try:
        for product_id, quantity in requested.items():
            if not reserve_stock(product_id, quantity):
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {products[product_id]['name']}")
            reserved.append((product_id, quantity))
        order = _insert_order(str(current_user["_id"]), order_items, payload, totals)
    except Exception:
        _release_all(reserved)
        raise

    logger.info("Order %s created for user %s (total %.2f)", order["order_number"], current_user["_id"], order["total"])
    return {"success": True, "message": "Order created successfully", "data": populate_order(order)}


@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[CancelRequest] = None,
                 current_user: dict = Depends(get_current_user)):
    order = get_owned_order(order_id, current_user)
    if order["order_status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Order is already cancelled")
    if order["order_status"] in ("shipped", "delivered"):
        raise HTTPException(status_code=400, detail="Order cannot be cancelled at this stage")

    now = utcnow()
    reason = (body.reason if body else None) or "Cancelled by customer"
    # Guarded on status so a concurrent cancel or ship cannot double-restore stock
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "order_status": {"$nin": list(NON_CANCELLABLE)}},
        {"$set": {"order_status": "cancelled", "cancellation_reason": reason,
                  "cancelled_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=400, detail="Order cannot be cancelled at this stage")

    for item in updated["items"]:
        if not release_stock(item["product_id"], item["quantity"]):
            logger.info("Product %s no longer exists, stock not restored", item["product_id"])

    logger.info("Order %s cancelled by user %s", updated["order_number"], current_user["_id"])
    return {"success": True, "message": "Order cancelled successfully", "data": populate_order(updated)}


@router.put("/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate, current_user: dict = Depends(require_admin)):
    now = utcnow()
    update: Dict[str, Any] = {"$set": {"order_status": body.status, "updated_at": now}}
    if body.tracking_number:
        update["$set"]["tracking_number"] = body.tracking_number
    if body.status == "shipped":
        update["$set"]["estimated_delivery"] = now + timedelta(days=config.DELIVERY_ESTIMATE_DAYS)
    if body.status == "cancelled":
        update["$set"]["cancelled_at"] = now
    if body.note:
        update["$push"] = {"notes": {"note": body.note, "timestamp": now}}

    order = db["order"].find_one_and_update({"_id": oid(order_id)}, update, return_document=ReturnDocument.AFTER)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("Order %s status set to %s by admin %s", order["order_number"], body.status, current_user["_id"])
    return {"success": True, "message": "Order status updated successfully", "data": populate_order(order)}


@router.get("/{order_id}/tracking")
def get_order_tracking(order_id: str, current_user: dict = Depends(get_current_user)):
    order = get_owned_order(order_id, current_user)
    return {
        "success": True,
        "data": {
            "order_number": order["order_number"],
            "order_status": order["order_status"],
            "tracking_number": order.get("tracking_number"),
            "estimated_delivery": order.get("estimated_delivery"),
            "created_at": order.get("created_at"),
            "notes": order.get("notes", []),
            "item_count": sum(item["quantity"] for item in order["items"]),
            "timeline": status_timeline(order),
        },
    }
