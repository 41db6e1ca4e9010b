"""Bearer-token authentication and role checks shared by every protected route.

A request is authenticated only when its token verifies (signature and
expiry), its subject still exists in the ``users`` collection, and that user
is active. The stored user document is the source of truth for the role; the
role claim inside the token is informational only.
"""

from typing import Dict, Optional, Tuple, Union

import bcrypt
from bson.errors import InvalidId
from flask import current_app, jsonify
from flask_jwt_extended import (
    create_access_token,
    get_jwt_identity,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from pharmashop.helpers import format_timestamp, normalize_email, parse_object_id

ADMIN_ROLES = {"admin", "administrator"}
ALLOWED_USER_ROLES = {"user", "admin"}


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in ADMIN_ROLES:
        return "admin"
    return normalized if normalized in ALLOWED_USER_ROLES else "user"


def is_admin(user_document) -> bool:
    if not user_document:
        return False
    role = str(user_document.get("role") or "").strip().lower()
    return role in ADMIN_ROLES


def is_active_user(user_document) -> bool:
    return bool(user_document and user_document.get("isActive"))


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, stored_hash: Union[str, bytes, None]) -> bool:
    if not password or not stored_hash:
        return False
    if isinstance(stored_hash, str):
        stored_hash = stored_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
    except ValueError:
        # Not a bcrypt hash.
        return False


def issue_access_token(user_document) -> str:
    return create_access_token(
        identity=str(user_document["_id"]),
        additional_claims={
            "email": normalize_email(user_document.get("email")),
            "role": normalize_role(user_document.get("role")),
        },
    )


def serialize_user(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    return {
        "id": str(user_document.get("_id")),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "phone": user_document.get("phone", "") or "",
        "address": user_document.get("address", "") or "",
        "role": normalize_role(user_document.get("role")),
        "isActive": is_active_user(user_document),
        "emailVerified": bool(user_document.get("emailVerified")),
        "createdAt": format_timestamp(user_document.get("createdAt")),
        "updatedAt": format_timestamp(user_document.get("updatedAt")),
        "lastLogin": format_timestamp(user_document.get("lastLogin")),
        "deletedAt": format_timestamp(user_document.get("deletedAt")),
    }


def authenticate_request(db) -> Dict[str, object]:
    """Resolve the caller of the current request.

    Returns ``{"authenticated": True, "user": <user document>}`` on success and
    ``{"authenticated": False, "error": <reason>}`` otherwise. Never raises for
    token problems.
    """
    if not current_app.config.get("JWT_SECRET_KEY"):
        current_app.logger.error("JWT_SECRET_KEY is not configured; rejecting request.")
        return {"authenticated": False, "error": "Server configuration error"}

    try:
        verify_jwt_in_request()
        identity = get_jwt_identity()
    except ExpiredSignatureError:
        return {"authenticated": False, "error": "Token expired"}
    except (JWTExtendedException, InvalidTokenError) as exc:
        current_app.logger.debug("Token rejected: %s", exc)
        return {"authenticated": False, "error": "Invalid or missing token"}

    try:
        user_id = parse_object_id(identity)
    except (InvalidId, TypeError):
        return {"authenticated": False, "error": "Invalid token subject"}

    user_document = db.users.find_one({"_id": user_id})
    if not user_document:
        return {"authenticated": False, "error": "User not found"}

    if not is_active_user(user_document):
        return {"authenticated": False, "error": "Account is deactivated"}

    return {"authenticated": True, "user": user_document}


def require_user(db) -> Tuple[Optional[Dict], Optional[Tuple]]:
    result = authenticate_request(db)
    if not result["authenticated"]:
        return (
            None,
            (
                jsonify(
                    {
                        "success": False,
                        "error": result.get("error") or "Authentication required",
                    }
                ),
                401,
            ),
        )
    return result["user"], None


def require_admin_user(db) -> Tuple[Optional[Dict], Optional[Tuple]]:
    current_user, auth_error = require_user(db)
    if auth_error:
        return None, auth_error

    if not is_admin(current_user):
        return (
            None,
            (jsonify({"success": False, "error": "Admin privileges required"}), 403),
        )

    return current_user, None
