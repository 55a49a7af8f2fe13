import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field

import config
from cache import auth_rate_limit, clear_auth_attempts
from database import create_document, db, utcnow
from schemas import User

logger = logging.getLogger(__name__)

router = APIRouter()

# Bearer tokens are compact HS256 JWTs signed with JWT_SECRET; `exp` is a unix timestamp
def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    sig_b64 = _b64url_encode(signature)
    return f"{header_b64}.{payload_b64}.{sig_b64}"

def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
        if 'exp' in payload:
            exp = datetime.fromtimestamp(payload['exp'], tz=timezone.utc)
            if datetime.now(timezone.utc) > exp:
                raise ValueError("Token expired")
        return payload
    except Exception as e:
        raise ValueError(str(e))

# PBKDF2 with a per-user salt, stored as "salt$hash"
PWD_ITERATIONS = 120_000

def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PWD_ITERATIONS).hex()
    return f"{salt}${digest}"

def verify_password(password: str, hashed: str) -> bool:
    salt, _, _digest = hashed.partition("$")
    if not salt:
        return False
    return hmac.compare_digest(hash_password(password, salt), hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt_encode(to_encode, config.JWT_SECRET)


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
oauth2_optional = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def public_user(user: dict) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "user"),
        "status": user.get("status", "active"),
    }


# Dependencies
def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    try:
        payload = jwt_decode(token, config.JWT_SECRET)
        user_id: str = payload.get("sub")
        if not user_id:
            raise ValueError("No sub")
        user = db["user"].find_one({"_id": ObjectId(user_id)}, {"password_hash": 0})
    except (ValueError, InvalidId):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token. User not found.")
    if user.get("status", "active") != "active":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is not active")
    return user


def get_optional_user(token: Optional[str] = Depends(oauth2_optional)) -> Optional[dict]:
    if not token:
        return None
    try:
        return get_current_user(token)
    except HTTPException:
        return None


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied. Insufficient permissions.")
    return current_user


# Request bodies
class UserCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    password: Optional[str] = Field(None, min_length=6)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


@router.post("/api/auth/register", status_code=201, dependencies=[Depends(auth_rate_limit)])
def register(payload: UserCreate):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already in use")
    user_id = create_document("user", User(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
    ))
    logger.info("User registered: %s", user_id)
    token = create_access_token({"sub": user_id})
    return {
        "success": True,
        "message": "User registered successfully",
        "data": {"user": {"id": user_id, "name": payload.name, "email": email, "role": "user"}, "token": token},
    }


@router.post("/api/auth/login", dependencies=[Depends(auth_rate_limit)])
def login(payload: LoginRequest, request: Request):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    if user.get("status", "active") != "active":
        raise HTTPException(status_code=403, detail="Account is not active")
    clear_auth_attempts(request)
    token = create_access_token({"sub": str(user["_id"])})
    return {
        "success": True,
        "message": "Login successful",
        "data": {"user": public_user(user), "token": token, "token_type": "bearer"},
    }


@router.get("/api/users/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public_user(current_user)}


@router.put("/api/users/me")
def update_me(body: UserUpdate, current_user: dict = Depends(get_current_user)):
    update: Dict[str, Any] = {}
    if body.name is not None:
        update["name"] = body.name
    if body.password is not None:
        update["password_hash"] = hash_password(body.password)
    if update:
        update["updated_at"] = utcnow()
        db["user"].update_one({"_id": current_user["_id"]}, {"$set": update})
    user = db["user"].find_one({"_id": current_user["_id"]})
    return {"success": True, "message": "Profile updated", "data": public_user(user)}
