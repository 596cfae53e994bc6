"""Activity log of everything humans, AI agents and the platform do.

Writes are best effort: a failed write is logged and swallowed so that the
business operation that produced the event still succeeds.
"""
import logging
import time
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from . import auth, storage
from .config import API_PREFIX, ENVIRONMENT
from .models import UserRole, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

COLLECTION = "activity_logs"


class ActorType(str, Enum):
    HUMAN = "HUMAN"
    AI_AGENT = "AI_AGENT"
    SYSTEM = "SYSTEM"
    WEBHOOK = "WEBHOOK"
    SCHEDULED_TASK = "SCHEDULED_TASK"


class ActionCategory(str, Enum):
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_UPDATED = "BOOKING_UPDATED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_ASSIGNED = "BOOKING_ASSIGNED"
    BOOKING_STARTED = "BOOKING_STARTED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    BOOKING_DISPUTED = "BOOKING_DISPUTED"
    CONTRACTOR_ACCEPTED_JOB = "CONTRACTOR_ACCEPTED_JOB"
    CONTRACTOR_DECLINED_JOB = "CONTRACTOR_DECLINED_JOB"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND_ISSUED = "REFUND_ISSUED"
    PAYOUT_SENT = "PAYOUT_SENT"
    AI_DECISION_MADE = "AI_DECISION_MADE"
    AI_RECOMMENDATION = "AI_RECOMMENDATION"
    AI_AUTOMATION_TRIGGERED = "AI_AUTOMATION_TRIGGERED"
    AI_CHAT_RESPONSE = "AI_CHAT_RESPONSE"
    AI_IMAGE_ANALYSIS = "AI_IMAGE_ANALYSIS"
    API_KEY_CREATED = "API_KEY_CREATED"
    API_KEY_REVOKED = "API_KEY_REVOKED"
    PROMOTION_APPLIED = "PROMOTION_APPLIED"


class ActionStatus(str, Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


def log_activity(
    actor: Dict[str, Any],
    category: ActionCategory,
    description: str,
    resource: Dict[str, Any],
    *,
    status: ActionStatus = ActionStatus.COMPLETED,
    secondary: Optional[List[Dict[str, Any]]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ai: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    level: LogLevel = LogLevel.INFO,
    tags: Optional[List[str]] = None,
    source: str = "api",
    correlation_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> Optional[str]:
    entry: Dict[str, Any] = {
        "timestamp": utcnow(),
        "actor": {key: _value(val) for key, val in actor.items()},
        "action": {
            "category": _value(category),
            "status": _value(status),
            "description": description,
            "duration": duration_ms,
            "metadata": metadata or {},
        },
        "resources": {"primary": resource, "secondary": secondary or []},
        "context": {
            "environment": ENVIRONMENT,
            "source": source,
            "correlationId": correlation_id,
        },
        "audit": {
            "level": _value(level),
            "tags": tags or [],
            "isCompliant": True,
            "requiresReview": _value(level) in (LogLevel.ERROR.value, LogLevel.CRITICAL.value),
        },
    }
    if ai:
        entry["ai"] = ai
    if error:
        entry["error"] = error
    try:
        return storage.add_document(COLLECTION, entry)
    except Exception as exc:
        logger.warning("Activity log write failed for %s: %s", _value(category), exc)
        return None


def log_human_action(user: Dict[str, Any], category: ActionCategory, description: str,
                     resource: Dict[str, Any], **kwargs) -> Optional[str]:
    actor = {
        "type": ActorType.HUMAN,
        "id": user.get("uid", "anonymous"),
        "name": user.get("name") or user.get("email") or "",
        "role": user.get("role"),
    }
    return log_activity(actor, category, description, resource, **kwargs)


def log_ai_action(agent_id: str, category: ActionCategory, description: str,
                  resource: Dict[str, Any], model: str, confidence: Optional[float] = None,
                  reasoning: Optional[str] = None, **kwargs) -> Optional[str]:
    actor = {"type": ActorType.AI_AGENT, "id": agent_id, "name": agent_id}
    ai = {"model": model, "confidence": confidence, "reasoning": reasoning}
    return log_activity(actor, category, description, resource, ai=ai, **kwargs)


def log_system_action(source_id: str, category: ActionCategory, description: str,
                      resource: Dict[str, Any], actor_type: ActorType = ActorType.SYSTEM,
                      **kwargs) -> Optional[str]:
    actor = {"type": actor_type, "id": source_id, "name": source_id}
    return log_activity(actor, category, description, resource, **kwargs)


def start_activity(actor: Dict[str, Any], category: ActionCategory, description: str,
                   resource: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """Record an IN_PROGRESS entry and return a handle for :func:`complete_activity`."""
    log_id = log_activity(actor, category, description, resource,
                          status=ActionStatus.IN_PROGRESS, **kwargs)
    return {"id": log_id, "startedAt": time.monotonic()}


def complete_activity(handle: Dict[str, Any], status: ActionStatus = ActionStatus.COMPLETED,
                      error: Optional[Dict[str, Any]] = None) -> None:
    if not handle.get("id"):
        return
    duration_ms = int((time.monotonic() - handle["startedAt"]) * 1000)
    update: Dict[str, Any] = {"action.status": _value(status), "action.duration": duration_ms}
    if error:
        update["error"] = error
    try:
        storage.update_document(COLLECTION, handle["id"], update)
    except Exception as exc:
        logger.warning("Activity log completion failed for %s: %s", handle["id"], exc)


def query_logs(
    actor_type: Optional[ActorType] = None,
    actor_id: Optional[str] = None,
    category: Optional[ActionCategory] = None,
    status: Optional[ActionStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    filters = []
    if actor_type:
        filters.append(("actor.type", "==", _value(actor_type)))
    if actor_id:
        filters.append(("actor.id", "==", actor_id))
    if category:
        filters.append(("action.category", "==", _value(category)))
    if status:
        filters.append(("action.status", "==", _value(status)))
    if start:
        filters.append(("timestamp", ">=", start))
    if end:
        filters.append(("timestamp", "<=", end))
    return storage.query_documents(COLLECTION, filters, order_by="timestamp", descending=True, limit=limit)


def generate_summary(start: datetime, end: datetime) -> Dict[str, Any]:
    logs = query_logs(start=start, end=end, limit=10000)
    by_category = Counter(log["action"]["category"] for log in logs)
    by_actor = Counter(log["actor"]["type"] for log in logs)
    by_status = Counter(log["action"]["status"] for log in logs)
    total = len(logs)
    failed = by_status.get(ActionStatus.FAILED.value, 0)
    durations = [log["action"]["duration"] for log in logs if log["action"].get("duration")]
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "total": total,
        "byCategory": dict(by_category),
        "byActor": dict(by_actor),
        "byStatus": dict(by_status),
        "errorRate": failed / total if total else 0.0,
        "averageDurationMs": sum(durations) / len(durations) if durations else None,
        "aiDecisions": by_actor.get(ActorType.AI_AGENT.value, 0),
    }


ADMINS = auth.require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN)


@router.get(f"{API_PREFIX}/activity")
def list_activity(
    actorType: Optional[ActorType] = None,
    actorId: Optional[str] = None,
    category: Optional[ActionCategory] = None,
    status: Optional[ActionStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    user=Depends(ADMINS),
):
    logs = query_logs(actorType, actorId, category, status, limit=limit)
    return {"logs": logs, "count": len(logs)}


@router.get(f"{API_PREFIX}/activity/summary")
def activity_summary(start: datetime, end: datetime, user=Depends(ADMINS)):
    return generate_summary(start, end)
