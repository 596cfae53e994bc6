import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

import firebase_admin
import jwt
from fastapi import APIRouter, Depends, Header, HTTPException
from firebase_admin import auth as firebase_auth
from pydantic import BaseModel, Field

from . import config, storage
from .models import UserRole, UserStatus, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(days=7)
REFRESH_TOKEN_TTL = timedelta(days=30)
API_KEY_PREFIX = "lhs_"
API_KEY_HEADER = "X-API-Key"
WRITE_PERMISSION = "write"


class AuthError(ValueError):
    """Raised for tokens that cannot be trusted."""


def _firebase_app() -> firebase_admin.App:
    if not firebase_admin._apps:
        return firebase_admin.initialize_app()
    return firebase_admin.get_app()


def generate_token(uid: str, email: Optional[str], role: str) -> str:
    now = utcnow()
    claims = {
        "sub": uid,
        "uid": uid,
        "email": email,
        "role": role,
        "jti": uuid4().hex,
        "iat": now,
        "exp": now + ACCESS_TOKEN_TTL,
        "iss": config.JWT_ISSUER,
        "aud": config.JWT_AUDIENCE,
    }
    return jwt.encode(claims, config.jwt_secret(), algorithm=ALGORITHM)


def generate_refresh_token(uid: str) -> str:
    now = utcnow()
    claims = {
        "sub": uid,
        "uid": uid,
        "type": "refresh",
        "jti": uuid4().hex,
        "iat": now,
        "exp": now + REFRESH_TOKEN_TTL,
        "iss": config.JWT_ISSUER,
        "aud": config.JWT_AUDIENCE,
    }
    return jwt.encode(claims, config.jwt_secret(), algorithm=ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            config.jwt_secret(),
            algorithms=[ALGORITHM],
            audience=config.JWT_AUDIENCE,
            issuer=config.JWT_ISSUER,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Invalid token") from exc
    if claims.get("jti") and storage.get_document("revoked_tokens", claims["jti"]):
        raise AuthError("Token revoked")
    return claims


def extract_token_from_header(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(32)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def log_security_event(event: str, uid: Optional[str], details: Optional[Dict[str, Any]] = None) -> None:
    try:
        storage.add_document(
            "security_logs",
            {"event": event, "userId": uid, "details": details or {}, "timestamp": utcnow()},
        )
    except Exception as exc:
        logger.warning("Security log write failed for %s: %s", event, exc)


def _identity_from_api_key(api_key: str) -> Dict[str, Any]:
    matches = storage.query_documents("api_keys", [("keyHash", "==", hash_api_key(api_key))], limit=1)
    if not matches:
        raise HTTPException(status_code=401, detail="Invalid API key")
    record = matches[0]
    if record.get("status") != "active":
        raise HTTPException(status_code=401, detail="API key is not active")
    expires_at = record.get("expiresAt")
    if expires_at and expires_at < utcnow():
        raise HTTPException(status_code=401, detail="API key expired")
    storage.update_document("api_keys", record["id"], {"lastUsedAt": utcnow()})
    storage.increment_fields("api_keys", record["id"], {"usageCount": 1})
    return {
        "uid": record["userId"],
        "role": record.get("userRole", UserRole.CONTRACTOR.value),
        "email": None,
        "authMethod": "api_key",
        "apiKeyId": record["id"],
        "permissions": record.get("permissions") or ["read"],
    }


def optional_user(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> Optional[Dict[str, Any]]:
    token = extract_token_from_header(authorization)
    if token:
        try:
            claims = verify_token(token)
        except AuthError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        if claims.get("type") == "refresh":
            raise HTTPException(status_code=401, detail="Refresh tokens cannot be used for API access")
        return {
            "uid": claims["uid"],
            "role": claims.get("role", UserRole.CUSTOMER.value),
            "email": claims.get("email"),
            "authMethod": "jwt",
            "jti": claims.get("jti"),
            "exp": claims.get("exp"),
            "permissions": ["read", WRITE_PERMISSION],
        }
    if x_api_key:
        return _identity_from_api_key(x_api_key)
    return None


def current_user(user: Optional[Dict[str, Any]] = Depends(optional_user)) -> Dict[str, Any]:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_roles(*roles: UserRole):
    allowed = {role.value for role in roles}

    def dependency(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        if user.get("role") not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") in (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)


def has_permission(user: Dict[str, Any], permission: str) -> bool:
    granted = user.get("permissions") or []
    return WRITE_PERMISSION in granted or permission in granted


def require_permission(permission: str = WRITE_PERMISSION, *roles: UserRole):
    """Like :func:`require_roles`, and the caller's API key (if any) must carry ``permission``."""
    base = require_roles(*roles) if roles else current_user

    def dependency(user: Dict[str, Any] = Depends(base)) -> Dict[str, Any]:
        if not has_permission(user, permission):
            raise HTTPException(status_code=403, detail=f"API key lacks the '{permission}' permission")
        return user

    return dependency


def require_session(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if user.get("authMethod") == "api_key":
        raise HTTPException(status_code=403, detail="Sign in to manage API keys")
    return user


class SessionRequest(BaseModel):
    idToken: str = Field(..., min_length=10)


class RefreshRequest(BaseModel):
    refreshToken: str = Field(..., min_length=10)


def _load_or_create_user(decoded: Dict[str, Any]) -> Dict[str, Any]:
    uid = decoded["uid"]
    user = storage.get_document("users", uid)
    if user:
        return user
    user = {
        "email": decoded.get("email"),
        "displayName": decoded.get("name") or "",
        "role": UserRole.CUSTOMER.value,
        "status": UserStatus.ACTIVE.value,
        "createdAt": utcnow(),
        "analytics": {"totalBookings": 0, "totalSpent": 0},
    }
    storage.set_document("users", uid, user)
    user["id"] = uid
    return user


@router.post(f"{config.API_PREFIX}/auth/session")
def create_session(request: SessionRequest):
    try:
        decoded = firebase_auth.verify_id_token(request.idToken, app=_firebase_app())
    except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError) as exc:
        logger.info("Rejected Firebase ID token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid Firebase ID token") from exc
    user = _load_or_create_user(decoded)
    if user.get("status") == UserStatus.SUSPENDED.value:
        log_security_event("login_blocked_suspended", user["id"])
        raise HTTPException(status_code=403, detail="Account suspended")
    storage.set_document("users", user["id"], {"lastLoginAt": utcnow()}, merge=True)
    log_security_event("login", user["id"])
    return {
        "accessToken": generate_token(user["id"], user.get("email"), user["role"]),
        "refreshToken": generate_refresh_token(user["id"]),
        "expiresIn": int(ACCESS_TOKEN_TTL.total_seconds()),
        "user": {"id": user["id"], "email": user.get("email"), "role": user["role"]},
    }


@router.post(f"{config.API_PREFIX}/auth/refresh")
def refresh_session(request: RefreshRequest):
    try:
        claims = verify_token(request.refreshToken)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if claims.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token")
    user = storage.get_document("users", claims["uid"])
    if not user or user.get("status") == UserStatus.SUSPENDED.value:
        raise HTTPException(status_code=401, detail="User is not allowed to sign in")
    return {
        "accessToken": generate_token(user["id"], user.get("email"), user["role"]),
        "expiresIn": int(ACCESS_TOKEN_TTL.total_seconds()),
    }


@router.post(f"{config.API_PREFIX}/auth/logout")
def logout(user: Dict[str, Any] = Depends(current_user)):
    if user.get("authMethod") == "jwt" and user.get("jti"):
        storage.set_document(
            "revoked_tokens",
            user["jti"],
            {"userId": user["uid"], "revokedAt": utcnow(), "expiresAt": user.get("exp")},
        )
    log_security_event("logout", user["uid"])
    return {"success": True}
