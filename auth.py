import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import bcrypt
import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import collection, create_document, serialize, to_object_id
from errors import AuthorizationError, DuplicateError, ValidationError
from schemas import RegisterRequest, Role, User

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))

security = HTTPBearer()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


def create_access_token(sub: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "exp": now + timedelta(minutes=TOKEN_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    token = credentials.credentials
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        user_doc = collection("user").find_one({"_id": to_object_id(user_id)})
    except ValidationError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user_doc:
        raise HTTPException(status_code=401, detail="User not found")
    user_doc["_id"] = str(user_doc["_id"])
    return user_doc


def role_of(user: Dict[str, Any]) -> Role:
    try:
        return Role(user.get("role"))
    except ValueError:
        raise AuthorizationError("Unknown role")


def ensure_role(user: Dict[str, Any], role: Role, message: str) -> None:
    if role_of(user) is not role:
        raise AuthorizationError(message)


def require_role(*roles: Role):
    """Dependency factory: the authenticated user must hold one of `roles`."""
    allowed = frozenset(roles)

    def dependency(current_user=Depends(get_current_user)):
        if role_of(current_user) not in allowed:
            raise AuthorizationError("Not authorized for this role")
        return current_user

    return dependency


# -------------------- Accounts --------------------

def public_user(user_doc: Dict[str, Any]) -> Dict[str, Any]:
    return serialize(user_doc)


def register_user(payload: RegisterRequest) -> Dict[str, Any]:
    role = Role(payload.role)
    if role is Role.ADMIN:
        raise ValidationError("Role must be customer or restaurant")
    if role is Role.RESTAURANT and not (payload.business_name or "").strip():
        raise ValidationError("Business name is required for restaurants")

    email = payload.email.lower()
    if collection("user").find_one({"email": email}):
        raise DuplicateError("User already exists with this email")

    user = User(
        role=role,
        email=email,
        password_hash=hash_password(payload.password),
        name=payload.name,
        phone=payload.phone,
        business_name=payload.business_name if role is Role.RESTAURANT else None,
        address=payload.address if role is Role.RESTAURANT else None,
    )
    user_id = create_document("user", user)
    logger.info("Registered %s account %s", role.value, user_id)
    user_doc = collection("user").find_one({"_id": to_object_id(user_id)})
    return {
        "access_token": create_access_token(user_id, role.value),
        "token_type": "bearer",
        "user": public_user(user_doc),
    }


def login_user(email: str, password: str) -> Dict[str, Any]:
    user_doc = collection("user").find_one({"email": email.lower()})
    if not user_doc or not verify_password(password, user_doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    user_id = str(user_doc["_id"])
    return {
        "access_token": create_access_token(user_id, user_doc["role"]),
        "token_type": "bearer",
        "user": public_user(user_doc),
    }
