import logging
import re
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from database import Database, now_utc, pagination, to_object_id
from errors import (
    AuthenticationFailed,
    DomainConflict,
    NotFound,
    PermissionDenied,
    ServiceUnavailable,
)
from mailer import Mailer
from schemas import (
    PasswordChange,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
)
from security import (
    create_access_token,
    create_reset_token,
    hash_password,
    jwt_decode,
    verify_password,
)
from settings import Settings

log = logging.getLogger(__name__)


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def user_id_of(user: dict) -> str:
    return str(user["_id"])


def check_owner(owner_id: Optional[str], user: dict) -> None:
    """Owners and admins pass; everyone else gets a 403."""
    if owner_id != user_id_of(user) and not is_admin(user):
        raise PermissionDenied()


def public_user(user: dict) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "fullName": user.get("full_name"),
        "phone": user.get("phone"),
        "address": user.get("address"),
        "role": user.get("role", "user"),
        "status": user.get("status", "active"),
        "createdAt": user.get("created_at"),
    }


def _auth_response(user: dict, settings: Settings) -> Dict[str, Any]:
    token = create_access_token(user, settings.jwt_secret, settings.access_token_expire_minutes)
    return {
        "token": token,
        "tokenType": "bearer",
        "user": {"id": str(user["_id"]), "email": user["email"], "fullName": user.get("full_name"), "role": user.get("role", "user")},
    }


def register(db: Database, mailer: Mailer, settings: Settings, payload: RegisterRequest) -> Dict[str, Any]:
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise DomainConflict("Email already registered")
    doc = {
        "email": email,
        "password_hash": hash_password(payload.password),
        "full_name": payload.full_name,
        "phone": payload.phone,
        "address": payload.address,
        "role": "user",
        "provider": "local",
        "status": "active",
    }
    try:
        user_id = db.create_document("user", doc)
    except DuplicateKeyError:
        raise DomainConflict("Email already registered")
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    log.info("Registered user %s", user_id)

    # A failed welcome mail never fails the registration
    try:
        mailer.send(
            email,
            "Welcome to MultiMart",
            f"<h1>Welcome to MultiMart</h1><p>Dear {payload.full_name},</p>"
            "<p>Thank you for registering with MultiMart. We're excited to have you on board!</p>",
        )
    except ServiceUnavailable:
        log.warning("Welcome mail to %s was not delivered", email)
    return _auth_response(user, settings)


def login(db: Database, settings: Settings, email: str, password: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": email.lower()})
    if not user:
        raise AuthenticationFailed("Invalid credentials")
    if user.get("status", "active") != "active":
        raise AuthenticationFailed("Account is not active")
    if not verify_password(password, user.get("password_hash", "")):
        raise AuthenticationFailed("Invalid credentials")
    return _auth_response(user, settings)


def forgot_password(db: Database, mailer: Mailer, settings: Settings, email: str) -> None:
    user = db["user"].find_one({"email": email.lower()})
    if not user:
        raise NotFound("User not found")
    token = create_reset_token(str(user["_id"]), settings.jwt_secret, settings.reset_token_expire_minutes)
    link = f"{settings.frontend_url}/reset-password?token={token}"
    mailer.send(
        user["email"],
        "Password Reset Request",
        "<h1>Password Reset Request</h1><p>Click the link below to reset your password:</p>"
        f'<a href="{link}">Reset Password</a><p>This link will expire in 1 hour.</p>',
    )


def reset_password(db: Database, settings: Settings, payload: ResetPasswordRequest) -> None:
    try:
        claims = jwt_decode(payload.token, settings.jwt_secret)
    except ValueError:
        raise AuthenticationFailed("Invalid or expired token")
    if claims.get("purpose") != "password_reset":
        raise AuthenticationFailed("Invalid or expired token")
    result = db["user"].update_one(
        {"_id": to_object_id(claims.get("sub"))},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now_utc()}},
    )
    if result.matched_count == 0:
        raise NotFound("User not found")


def get_user(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFound("User not found")
    return user


def update_profile(db: Database, user: dict, payload: ProfileUpdate) -> None:
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"full_name": payload.full_name, "phone": payload.phone, "address": payload.address, "updated_at": now_utc()}},
    )


def change_password(db: Database, user: dict, payload: PasswordChange) -> None:
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise AuthenticationFailed("Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now_utc()}},
    )


def list_users(db: Database, search: Optional[str] = None, role: Optional[str] = None,
               status: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"email": {"$regex": pattern, "$options": "i"}},
            {"full_name": {"$regex": pattern, "$options": "i"}},
        ]
    if role:
        query["role"] = role
    if status:
        query["status"] = status
    total = db["user"].count_documents(query)
    cursor = db["user"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"users": [public_user(u) for u in cursor], "pagination": pagination(total, page, limit)}


def set_user_field(db: Database, user_id: str, field: str, value: str) -> None:
    result = db["user"].update_one({"_id": to_object_id(user_id)}, {"$set": {field: value, "updated_at": now_utc()}})
    if result.matched_count == 0:
        raise NotFound("User not found")


def delete_user(db: Database, user_id: str) -> None:
    user = get_user(db, user_id)
    if is_admin(user):
        raise PermissionDenied("Cannot delete admin users")
    db["user"].delete_one({"_id": user["_id"]})
    db["cart_item"].delete_many({"user_id": user_id})
    db["wishlist_item"].delete_many({"user_id": user_id})


def seed_admin(db: Database, settings: Settings) -> None:
    """Create the configured admin account once; no-op when unset or present."""
    if not settings.admin_email or not settings.admin_password:
        return
    email = settings.admin_email.lower()
    if db["user"].find_one({"email": email}):
        return
    db.create_document("user", {
        "email": email,
        "password_hash": hash_password(settings.admin_password),
        "full_name": "Admin",
        "phone": None,
        "address": None,
        "role": "admin",
        "provider": "local",
        "status": "active",
    })
    log.info("Seeded admin account %s", email)
