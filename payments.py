import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import requests
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ReturnDocument
from starlette.concurrency import run_in_threadpool

import config
from auth import get_current_user
from database import db, utcnow
from orders import get_owned_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments")


class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    currency: str = Field(config.DEFAULT_CURRENCY, pattern="^(inr|usd)$")


def stripe_request(method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not config.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Payments are not configured")
    resp = requests.request(
        method,
        f"{config.STRIPE_API_BASE}{path}",
        auth=(config.STRIPE_SECRET_KEY, ""),
        data=data,
        timeout=10,
    )
    if resp.status_code >= 300:
        try:
            message = resp.json().get("error", {}).get("message", resp.text)
        except ValueError:
            message = resp.text or resp.reason
        logger.error("Stripe %s %s failed (%s): %s", method, path, resp.status_code, message)
        raise HTTPException(status_code=502, detail=f"Payment provider error: {message}")
    return resp.json()


def verify_stripe_signature(payload: bytes, header: str, secret: str,
                            tolerance: int = config.STRIPE_WEBHOOK_TOLERANCE_SECONDS) -> None:
    """Check a Stripe-Signature header (t=<ts>,v1=<hex hmac>) against the raw body."""
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise ValueError("Unable to extract timestamp and signatures from header")
    signed_payload = timestamp.encode() + b"." + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise ValueError("No signatures found matching the expected signature for payload")
    if tolerance and abs(time.time() - int(timestamp)) > tolerance:
        raise ValueError("Timestamp outside the tolerance zone")


def _intent_summary(intent: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "amount": intent.get("amount"),
        "currency": intent.get("currency"),
        "status": intent.get("status"),
    }


@router.post("/create-intent")
def create_payment_intent(payload: PaymentIntentRequest, current_user: dict = Depends(get_current_user)):
    order = get_owned_order(payload.order_id, current_user)
    if order["order_status"] == "cancelled" or order["payment_status"] not in ("pending", "failed"):
        raise HTTPException(status_code=400, detail="Order is not awaiting payment")

    amount = int(round(order["total"] * 100))
    if config.STRIPE_SECRET_KEY:
        intent = stripe_request("POST", "/payment_intents", {
            "amount": amount,
            "currency": payload.currency,
            "metadata[user_id]": str(current_user["_id"]),
            "metadata[order_id]": str(order["_id"]),
            "metadata[order_number]": order["order_number"],
            "automatic_payment_methods[enabled]": "true",
        })
    else:
        # Local fallback without Stripe keys; still returns a usable structure
        stamp = int(datetime.now().timestamp())
        intent = {"id": f"pi_dummy_{stamp}", "client_secret": f"dummy_secret_{stamp}",
                  "amount": amount, "currency": payload.currency, "status": "requires_payment_method"}

    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_intent_id": intent["id"], "updated_at": utcnow()}},
    )
    logger.info("Payment intent %s created for order %s", intent["id"], order["order_number"])
    return {"success": True, "data": _intent_summary(intent)}


@router.get("/intent/{intent_id}")
def get_payment_intent(intent_id: str, current_user: dict = Depends(get_current_user)):
    intent = stripe_request("GET", f"/payment_intents/{intent_id}")
    if intent.get("metadata", {}).get("user_id") != str(current_user["_id"]):
        raise HTTPException(status_code=403, detail="Access denied")
    return {
        "success": True,
        "data": {**_intent_summary(intent), "created": intent.get("created"), "metadata": intent.get("metadata")},
    }


def _find_order_for_intent(intent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if intent.get("id"):
        order = db["order"].find_one({"payment_intent_id": intent["id"]})
        if order:
            return order
    order_id = intent.get("metadata", {}).get("order_id")
    if order_id and ObjectId.is_valid(order_id):
        return db["order"].find_one({"_id": ObjectId(order_id)})
    return None


def handle_payment_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply a Stripe event to the matching order; returns the updated order, if any."""
    event_type = event.get("type")
    intent = event.get("data", {}).get("object", {})
    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        logger.info("Unhandled Stripe event type: %s", event_type)
        return None

    order = _find_order_for_intent(intent)
    if not order:
        logger.warning("No order found for payment intent %s", intent.get("id"))
        return None

    now = utcnow()
    if event_type == "payment_intent.succeeded":
        payment_status, note = "paid", f"Payment received ({intent.get('id')})"
    else:
        payment_status, note = "failed", f"Payment failed ({intent.get('id')})"

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$in": ["pending", "failed"]}},
        {"$set": {"payment_status": payment_status, "payment_intent_id": intent.get("id"), "updated_at": now},
         "$push": {"notes": {"note": note, "timestamp": now}}},
        return_document=ReturnDocument.AFTER,
    )
    if updated and payment_status == "paid" and updated["order_status"] == "pending":
        updated = db["order"].find_one_and_update(
            {"_id": order["_id"], "order_status": "pending"},
            {"$set": {"order_status": "processing"}},
            return_document=ReturnDocument.AFTER,
        ) or updated
    if updated:
        logger.info("Order %s payment status -> %s", order["order_number"], payment_status)
    else:
        logger.info("Order %s already settled, ignoring %s", order["order_number"], event_type)
    return updated


@router.post("/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    if not config.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=400, detail="Webhook Error: signing secret not configured")
    try:
        verify_stripe_signature(payload, request.headers.get("stripe-signature", ""), config.STRIPE_WEBHOOK_SECRET)
        event = json.loads(payload)
    except ValueError as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    await run_in_threadpool(handle_payment_event, event)
    return {"received": True}
