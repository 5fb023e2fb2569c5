import hashlib
import hmac
import os
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import get_document
from errors import Forbidden
from schemas import Role

PBKDF2_ITERATIONS = 200_000

# Every authorization checkpoint lists every role explicitly.
LISTING_MANAGERS: Dict[Role, bool] = {
    Role.ADMIN: True,
    Role.BREEDER: True,
    Role.CUSTOMER: False,
}

ADMINISTRATORS: Dict[Role, bool] = {
    Role.ADMIN: True,
    Role.BREEDER: False,
    Role.CUSTOMER: False,
}

SELF_REGISTERABLE: Dict[Role, bool] = {
    Role.ADMIN: False,
    Role.BREEDER: True,
    Role.CUSTOMER: True,
}


def user_role(user: Dict[str, Any]) -> Role:
    try:
        return Role(user.get("role", Role.CUSTOMER.value))
    except ValueError:
        raise Forbidden("Unknown role")


def has_permission(table: Dict[Role, bool], user: Dict[str, Any]) -> bool:
    return table[user_role(user)]


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or os.urandom(16).hex()
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, _ = stored.split("$", 1)
    return hmac.compare_digest(hash_password(password, salt), stored)


def public_user(u: Dict[str, Any]) -> Dict[str, Any]:
    profile = u.get("breeder_profile") or {}
    return {
        "id": str(u.get("_id")),
        "username": u.get("username"),
        "email": u.get("email"),
        "role": u.get("role"),
        "is_verified": u.get("is_verified", False),
        "kennel_name": profile.get("kennel_name"),
    }


def resolve_user(db: Database, identifier: str) -> Optional[dict]:
    """Look a user up by id, falling back to username or email."""
    user = get_document(db, "user", identifier)
    if user:
        return user
    ident = identifier.lower()
    return db["user"].find_one({"$or": [{"username": ident}, {"email": ident}]})
