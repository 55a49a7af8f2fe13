import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from database import create_document, db, oid, serialize, utcnow
from schemas import Wishlist

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wishlist")


class WishlistAdd(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    notes: str = Field("", max_length=500)

    @field_validator("product_id")
    @classmethod
    def product_must_be_object_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid product ID")
        return str(ObjectId(v))


class WishlistNotes(BaseModel):
    notes: str = Field(..., max_length=500)


class MoveToCart(BaseModel):
    quantity: int = Field(1, ge=1)


class ShareRequest(BaseModel):
    email: EmailStr
    message: Optional[str] = Field(None, max_length=500)


def _entry_query(user: dict, product_id: str) -> Dict[str, Any]:
    return {"user_id": str(user["_id"]), "product_id": str(oid(product_id))}


def populate_entries(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [ObjectId(e["product_id"]) for e in entries]
    products = {str(p["_id"]): serialize(p) for p in db["product"].find({"_id": {"$in": ids}})}
    return [{**serialize(e), "product": products.get(e["product_id"])} for e in entries]


def _user_entries(user: dict) -> List[Dict[str, Any]]:
    return list(db["wishlist"].find({"user_id": str(user["_id"])}).sort([("added_at", -1)]))


@router.get("")
def get_wishlist(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": populate_entries(_user_entries(current_user))}


@router.post("", status_code=201)
def add_to_wishlist(body: WishlistAdd, current_user: dict = Depends(get_current_user)):
    if not db["product"].find_one({"_id": ObjectId(body.product_id)}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Product not found")
    entry = Wishlist(
        user_id=str(current_user["_id"]),
        product_id=body.product_id,
        notes=body.notes,
        added_at=utcnow(),
    )
    try:
        entry_id = create_document("wishlist", entry)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Product already in wishlist")
    doc = db["wishlist"].find_one({"_id": ObjectId(entry_id)})
    return {"success": True, "message": "Product added to wishlist", "data": populate_entries([doc])[0]}


@router.delete("")
def clear_wishlist(current_user: dict = Depends(get_current_user)):
    res = db["wishlist"].delete_many({"user_id": str(current_user["_id"])})
    logger.info("Wishlist cleared for user %s (%d items)", current_user["_id"], res.deleted_count)
    return {"success": True, "message": "Wishlist cleared"}


@router.get("/count")
def wishlist_count(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": {"count": db["wishlist"].count_documents({"user_id": str(current_user["_id"])})}}


@router.get("/check/{product_id}")
def check_wishlist(product_id: str, current_user: dict = Depends(get_current_user)):
    entry = db["wishlist"].find_one(_entry_query(current_user, product_id))
    return {"success": True, "data": {"in_wishlist": entry is not None, "item": serialize(entry)}}


@router.put("/{product_id}")
def update_wishlist_notes(product_id: str, body: WishlistNotes, current_user: dict = Depends(get_current_user)):
    entry = db["wishlist"].find_one_and_update(
        _entry_query(current_user, product_id),
        {"$set": {"notes": body.notes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not entry:
        raise HTTPException(status_code=404, detail="Item not found in wishlist")
    return {"success": True, "message": "Wishlist item updated", "data": populate_entries([entry])[0]}


@router.delete("/{product_id}")
def remove_from_wishlist(product_id: str, current_user: dict = Depends(get_current_user)):
    if not db["wishlist"].find_one_and_delete(_entry_query(current_user, product_id)):
        raise HTTPException(status_code=404, detail="Item not found in wishlist")
    return {"success": True, "message": "Product removed from wishlist"}


@router.post("/{product_id}/move-to-cart")
def move_to_cart(product_id: str, body: Optional[MoveToCart] = None,
                 current_user: dict = Depends(get_current_user)):
    """The cart lives on the client: hand back the product and drop the wishlist entry."""
    quantity = body.quantity if body else 1
    product = db["product"].find_one({"_id": oid(product_id), "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.get("stock_quantity", 0) < quantity:
        raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")
    if not db["wishlist"].find_one_and_delete(_entry_query(current_user, product_id)):
        raise HTTPException(status_code=404, detail="Item not found in wishlist")
    return {
        "success": True,
        "message": "Product moved to cart and removed from wishlist",
        "data": {"product": serialize(product), "quantity": quantity},
    }


@router.post("/share")
def share_wishlist(body: ShareRequest, current_user: dict = Depends(get_current_user)):
    entries = populate_entries(_user_entries(current_user))
    if not entries:
        raise HTTPException(status_code=400, detail="Wishlist is empty")
    items = [
        {"name": e["product"]["name"], "price": e["product"]["price"], "notes": e.get("notes", "")}
        for e in entries if e["product"]
    ]
    logger.info("User %s shared %d wishlist items with %s", current_user["_id"], len(items), body.email)
    return {
        "success": True,
        "message": "Wishlist shared successfully",
        "data": {"shared_with": body.email, "item_count": len(items), "items": items},
    }
