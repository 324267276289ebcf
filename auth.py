"""
Caller identity and admin capability.

Bearer tokens are HS256 JWTs issued by the identity provider with the shared
JWT_SECRET; ``sub`` is the user id and ``email`` the primary address. Admin
rights come from the ADMIN_EMAILS allow-list.
"""
import os
import json
import hmac
import base64
import hashlib
from datetime import datetime, timezone
from typing import Iterable

import pydantic
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import PyMongoError

import errors
from database import get_db
from schemas import User

logger = structlog.get_logger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ADMIN_EMAILS = [e.strip() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()]

security = HTTPBearer()


def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
        if 'exp' in payload:
            exp = datetime.fromisoformat(payload['exp']) if isinstance(payload['exp'], str) else datetime.fromtimestamp(payload['exp'], tz=timezone.utc)
            if datetime.now(timezone.utc) > exp:
                raise ValueError("Token expired")
        return payload
    except Exception as e:
        raise ValueError(str(e))


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), db=Depends(get_db)) -> dict:
    try:
        payload = jwt_decode(credentials.credentials, JWT_SECRET)
        user_id = payload.get("sub")
        if not user_id:
            raise ValueError("No sub")
        claims = User(email=payload.get("email"), name=payload.get("name"))
    except (ValueError, pydantic.ValidationError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    # keep a local copy of the provider's profile for admin lookups
    update = {k: v for k, v in claims.model_dump().items() if v is not None}
    update["updated_at"] = datetime.now(timezone.utc)
    db["user"].update_one(
        {"_id": user_id},
        {"$set": update, "$setOnInsert": {"created_at": update["updated_at"]}},
        upsert=True,
    )
    return db["user"].find_one({"_id": user_id})


class EmailAllowListAdminCheck:
    """``is_admin(user_id)`` backed by the stored email and an allow-list."""

    def __init__(self, db, allowed_emails: Iterable[str]):
        self.db = db
        self.allowed = {e.lower() for e in allowed_emails}

    def __call__(self, user_id: str) -> bool:
        try:
            user = self.db["user"].find_one({"_id": user_id}, {"email": 1})
        except PyMongoError:
            logger.error("admin_check_failed", user_id=user_id, exc_info=True)
            return False
        email = (user or {}).get("email")
        return bool(email) and email.lower() in self.allowed


def get_admin_check(db=Depends(get_db)) -> EmailAllowListAdminCheck:
    return EmailAllowListAdminCheck(db, ADMIN_EMAILS)


def require_admin(user: dict, is_admin) -> None:
    if not is_admin(user["_id"]):
        raise errors.ForbiddenError("Admin access required")
