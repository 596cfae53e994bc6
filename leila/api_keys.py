import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from . import activity_log, auth, storage
from .config import API_PREFIX
from .models import UserRole, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

COLLECTION = "api_keys"
ALLOWED_PERMISSIONS = {"read", "write", "bookings", "webhooks"}
KEY_CREATORS = {UserRole.CONTRACTOR.value, UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value}


class CreateKeyRequest(BaseModel):
    name: str = ""
    permissions: Optional[List[str]] = None
    expiresIn: Optional[int] = Field(None, ge=1, le=3650)  # days

    @field_validator("permissions")
    @classmethod
    def known_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        unknown = set(value) - ALLOWED_PERMISSIONS
        if unknown:
            raise ValueError(f"Unknown permissions: {', '.join(sorted(unknown))}")
        return value


class RotateKeyRequest(BaseModel):
    keyId: str = ""


def max_keys_for(role: str) -> int:
    return 3 if role == UserRole.CONTRACTOR.value else 10


def active_keys(uid: str) -> List[Dict[str, Any]]:
    return storage.query_documents(COLLECTION, [("userId", "==", uid), ("status", "==", "active")])


def _new_key_record(uid: str, role: str, name: str, permissions: List[str], expires_at) -> Dict[str, Any]:
    api_key = auth.generate_api_key()
    record = {
        "userId": uid,
        "userRole": role,
        "name": name,
        "keyHash": auth.hash_api_key(api_key),
        "keyPrefix": api_key[:8],
        "permissions": permissions,
        "status": "active",
        "createdAt": utcnow(),
        "expiresAt": expires_at,
        "lastUsedAt": None,
        "usageCount": 0,
    }
    return {"apiKey": api_key, "record": record}


def _public(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if key != "keyHash"}


@router.post(f"{API_PREFIX}/keys")
def create_key(request: CreateKeyRequest, user=Depends(auth.require_session)):
    if user["role"] not in KEY_CREATORS:
        raise HTTPException(status_code=403, detail="Only contractors and admins can create API keys")
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="API key name is required")

    limit = max_keys_for(user["role"])
    if len(active_keys(user["uid"])) >= limit:
        raise HTTPException(status_code=400, detail=f"Maximum {limit} API keys allowed")

    expires_at = utcnow() + timedelta(days=request.expiresIn) if request.expiresIn else None
    generated = _new_key_record(user["uid"], user["role"], name, request.permissions or ["read"], expires_at)
    key_id = storage.add_document(COLLECTION, generated["record"])

    auth.log_security_event("api_key_created", user["uid"], {"keyId": key_id})
    activity_log.log_human_action(
        user, activity_log.ActionCategory.API_KEY_CREATED, f"Created API key {name}",
        {"type": "api_key", "id": key_id},
    )
    return {
        "apiKey": generated["apiKey"],
        "keyId": key_id,
        "name": name,
        "expiresAt": expires_at,
        "message": "Save this API key securely. It will not be shown again.",
    }


@router.post(f"{API_PREFIX}/keys/rotate")
def rotate_key(request: RotateKeyRequest, user=Depends(auth.require_session)):
    if not request.keyId:
        raise HTTPException(status_code=400, detail="API key ID is required")
    existing = storage.get_document(COLLECTION, request.keyId)
    if not existing:
        raise HTTPException(status_code=404, detail="API key not found")
    if existing["userId"] != user["uid"]:
        raise HTTPException(status_code=403, detail="You do not own this API key")
    if existing.get("status") != "active":
        raise HTTPException(status_code=400, detail="Can only rotate active keys")

    generated = _new_key_record(
        existing["userId"],
        existing.get("userRole", user["role"]),
        f"{existing['name']} (Rotated)",
        existing.get("permissions") or ["read"],
        existing.get("expiresAt"),
    )
    new_record = {**generated["record"], "rotatedFrom": request.keyId}
    new_id = storage.new_document_id(COLLECTION)
    storage.batch_write(
        [
            (
                "update",
                COLLECTION,
                request.keyId,
                {"status": "rotated", "rotatedAt": utcnow(), "replacedBy": new_record["keyPrefix"]},
            ),
            ("set", COLLECTION, new_id, new_record),
        ]
    )
    auth.log_security_event("api_key_rotated", user["uid"], {"oldKeyId": request.keyId, "newKeyId": new_id})
    return {
        "newApiKey": generated["apiKey"],
        "keyId": new_id,
        "oldKeyId": request.keyId,
        "message": "API key rotated successfully. Save the new key securely.",
    }


@router.get(f"{API_PREFIX}/keys")
def list_keys(user=Depends(auth.current_user)):
    keys = storage.query_documents(COLLECTION, [("userId", "==", user["uid"])])
    return {"keys": [_public(k) for k in keys]}


@router.delete(f"{API_PREFIX}/keys/{{key_id}}")
def revoke_key(key_id: str, user=Depends(auth.require_permission())):
    existing = storage.get_document(COLLECTION, key_id)
    if not existing:
        raise HTTPException(status_code=404, detail="API key not found")
    if existing["userId"] != user["uid"] and not auth.is_admin(user):
        raise HTTPException(status_code=403, detail="You do not own this API key")
    storage.update_document(COLLECTION, key_id, {"status": "revoked", "revokedAt": utcnow()})
    auth.log_security_event("api_key_revoked", user["uid"], {"keyId": key_id})
    activity_log.log_human_action(
        user, activity_log.ActionCategory.API_KEY_REVOKED, "Revoked API key",
        {"type": "api_key", "id": key_id},
    )
    return {"success": True, "keyId": key_id}
