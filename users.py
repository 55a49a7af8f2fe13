"""
Address book, preferences and account removal for the signed-in user.

Addresses live inside the user document. Exactly one of them is the default
whenever the book is non-empty: the first address added becomes the default,
and deleting the default promotes the next one.
"""
import logging
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from auth import get_current_user, verify_password
from database import db, utcnow
from schemas import Address, AddressType, Preferences, SavedAddress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users")


class AddressIn(Address):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    type: AddressType = "home"
    is_default: bool = Field(False, alias="isDefault")


class AddressPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    type: Optional[AddressType] = None
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    address: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    pincode: Optional[str] = Field(None, min_length=1)
    is_default: Optional[bool] = Field(None, alias="isDefault")


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email_notifications: Optional[bool] = Field(None, alias="emailNotifications")
    sms_notifications: Optional[bool] = Field(None, alias="smsNotifications")
    marketing_emails: Optional[bool] = Field(None, alias="marketingEmails")
    currency: Optional[Literal["INR", "USD", "EUR"]] = None
    language: Optional[Literal["en", "hi"]] = None


class AccountDelete(BaseModel):
    password: str = Field(..., min_length=1)


def _save_addresses(user: dict, addresses: List[Dict[str, Any]]):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})


def _find_address(addresses: List[Dict[str, Any]], address_id: str) -> int:
    for i, addr in enumerate(addresses):
        if addr["id"] == address_id:
            return i
    raise HTTPException(status_code=404, detail="Address not found")


def _make_default(addresses: List[Dict[str, Any]], index: int):
    for i, addr in enumerate(addresses):
        addr["is_default"] = i == index


@router.get("/addresses")
def list_addresses(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": current_user.get("addresses", [])}


@router.post("/addresses", status_code=201)
def add_address(body: AddressIn, current_user: dict = Depends(get_current_user)):
    addresses = current_user.get("addresses", [])
    entry = SavedAddress(id=str(ObjectId()), **body.model_dump()).model_dump()
    addresses.append(entry)
    if body.is_default or len(addresses) == 1:
        _make_default(addresses, len(addresses) - 1)
    _save_addresses(current_user, addresses)
    return {"success": True, "message": "Address added successfully", "data": entry}


@router.put("/addresses/{address_id}")
def update_address(address_id: str, body: AddressPatch, current_user: dict = Depends(get_current_user)):
    addresses = current_user.get("addresses", [])
    index = _find_address(addresses, address_id)
    changes = body.model_dump(exclude_none=True)
    make_default = changes.pop("is_default", None)
    addresses[index].update(changes)
    if make_default:
        _make_default(addresses, index)
    _save_addresses(current_user, addresses)
    return {"success": True, "message": "Address updated successfully", "data": addresses[index]}


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, current_user: dict = Depends(get_current_user)):
    addresses = current_user.get("addresses", [])
    removed = addresses.pop(_find_address(addresses, address_id))
    if removed.get("is_default") and addresses:
        _make_default(addresses, 0)
    _save_addresses(current_user, addresses)
    return {"success": True, "message": "Address deleted successfully"}


@router.put("/addresses/{address_id}/default")
def set_default_address(address_id: str, current_user: dict = Depends(get_current_user)):
    addresses = current_user.get("addresses", [])
    index = _find_address(addresses, address_id)
    _make_default(addresses, index)
    _save_addresses(current_user, addresses)
    return {"success": True, "message": "Default address updated successfully", "data": addresses[index]}


@router.get("/preferences")
def get_preferences(current_user: dict = Depends(get_current_user)):
    prefs = Preferences(**current_user.get("preferences", {}))
    return {"success": True, "data": prefs.model_dump()}


@router.put("/preferences")
def update_preferences(body: PreferencesUpdate, current_user: dict = Depends(get_current_user)):
    prefs = Preferences(**{**current_user.get("preferences", {}), **body.model_dump(exclude_none=True)}).model_dump()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"preferences": prefs, "updated_at": utcnow()}})
    return {"success": True, "message": "Preferences updated successfully", "data": prefs}


@router.delete("/account")
def delete_account(body: AccountDelete, current_user: dict = Depends(get_current_user)):
    user = db["user"].find_one({"_id": current_user["_id"]})
    if not verify_password(body.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid password")
    db["user"].delete_one({"_id": user["_id"]})
    db["wishlist"].delete_many({"user_id": str(user["_id"])})
    logger.info("Account deleted: %s", user["_id"])
    return {"success": True, "message": "Account deleted successfully"}
