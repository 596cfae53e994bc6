"""Push notifications through Firebase Cloud Messaging.

Browsers and apps register the FCM registration token they get from the
Firebase Messaging SDK; the token is the subscription identity.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import firebase_admin
from fastapi import APIRouter, Depends, HTTPException, Request
from firebase_admin import messaging
from pydantic import BaseModel, Field, field_validator

from . import activity_log, auth, storage
from .config import API_PREFIX
from .models import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

SUBSCRIPTIONS = "push_subscriptions"
NOTIFICATION_LOGS = "notification_logs"
SCHEDULED = "scheduled_notifications"
MAX_RECIPIENTS = 10
FCM_MULTICAST_LIMIT = 500
DEFAULT_ICON = "/favicon-new.ico"


def _firebase_app() -> firebase_admin.App:
    if not firebase_admin._apps:
        return firebase_admin.initialize_app()
    return firebase_admin.get_app()


def user_platform(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if "android" in ua:
        return "android"
    if "iphone" in ua or "ipad" in ua:
        return "ios"
    if "windows" in ua:
        return "windows"
    if "macintosh" in ua:
        return "macos"
    if "linux" in ua:
        return "linux"
    return "unknown"


def user_browser(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    # Edge and Opera also advertise Chrome, so they go first
    if "edg" in ua:
        return "edge"
    if "opr" in ua or "opera" in ua:
        return "opera"
    if "firefox" in ua:
        return "firefox"
    if "chrome" in ua:
        return "chrome"
    if "safari" in ua:
        return "safari"
    return "unknown"


class SubscribeRequest(BaseModel):
    token: str = Field(..., min_length=10)
    userAgent: Optional[str] = None


class UnsubscribeRequest(BaseModel):
    token: str = Field(..., min_length=10)


class NotificationAction(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None


class NotificationContent(BaseModel):
    title: str = ""
    body: str = ""
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    tag: Optional[str] = None
    url: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    actions: List[NotificationAction] = Field(default_factory=list)
    requireInteraction: bool = False
    silent: bool = False


class SendRequest(BaseModel):
    notification: NotificationContent
    recipients: List[str] = Field(default_factory=list)
    targetAll: bool = False
    bookingId: Optional[str] = None
    schedule: Optional[datetime] = None

    @field_validator("schedule")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def build_payload(content: NotificationContent) -> Dict[str, Any]:
    now = utcnow()
    return {
        "title": content.title,
        "body": content.body,
        "icon": content.icon or DEFAULT_ICON,
        "badge": content.badge or DEFAULT_ICON,
        "image": content.image,
        "tag": content.tag or f"notification-{int(now.timestamp() * 1000)}",
        "data": {**content.data, "timestamp": now.isoformat(), "url": content.url or "/"},
        "actions": [a.model_dump(exclude_none=True) for a in content.actions],
        "requireInteraction": content.requireInteraction,
        "silent": content.silent,
    }


def _fcm_message(tokens: Sequence[str], payload: Dict[str, Any]) -> messaging.MulticastMessage:
    return messaging.MulticastMessage(
        tokens=list(tokens),
        notification=messaging.Notification(
            title=payload["title"], body=payload["body"], image=payload.get("image")
        ),
        # FCM data values must be strings
        data={key: str(value) for key, value in payload["data"].items()},
        webpush=messaging.WebpushConfig(
            notification=messaging.WebpushNotification(
                icon=payload["icon"],
                badge=payload["badge"],
                tag=payload["tag"],
                require_interaction=payload["requireInteraction"],
                silent=payload["silent"],
                actions=[
                    messaging.WebpushNotificationAction(a["action"], a["title"], icon=a.get("icon"))
                    for a in payload["actions"]
                ],
            ),
            fcm_options=messaging.WebpushFCMOptions(link=payload["data"]["url"]),
        ),
    )


def deliver(subscriptions: Sequence[Dict[str, Any]], payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Send to every subscription; unregistered tokens are deactivated."""
    results: List[Dict[str, Any]] = []
    for start in range(0, len(subscriptions), FCM_MULTICAST_LIMIT):
        chunk = subscriptions[start:start + FCM_MULTICAST_LIMIT]
        response = messaging.send_each_for_multicast(
            _fcm_message([s["token"] for s in chunk], payload), app=_firebase_app()
        )
        for subscription, outcome in zip(chunk, response.responses):
            if outcome.success:
                storage.update_document(SUBSCRIPTIONS, subscription["id"], {"lastUsed": utcnow()})
                results.append({"subscriptionId": subscription["id"], "success": True})
                continue
            error = outcome.exception
            if isinstance(error, messaging.UnregisteredError):
                storage.update_document(SUBSCRIPTIONS, subscription["id"], {"isActive": False})
            logger.warning("Push to %s failed: %s", subscription["id"], error)
            results.append({"subscriptionId": subscription["id"], "success": False, "error": str(error)})
    return results


def active_subscriptions(user_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    filters: List[Any] = [("isActive", "==", True)]
    if user_ids is not None:
        filters.append(("userId", "in", list(user_ids)))
    return storage.query_documents(SUBSCRIPTIONS, filters)


def _log_batch(sent_by: str, payload: Dict[str, Any], results: List[Dict[str, Any]]) -> None:
    storage.add_document(
        NOTIFICATION_LOGS,
        {
            "type": "batch_notification",
            "sentBy": sent_by,
            "targetCount": len(results),
            "successCount": sum(1 for r in results if r["success"]),
            "failureCount": sum(1 for r in results if not r["success"]),
            "notification": payload,
            "timestamp": utcnow(),
            "results": results,
        },
    )


def notify_users(user_ids: Sequence[str], title: str, body: str,
                 data: Optional[Dict[str, Any]] = None, sent_by: str = "system") -> Dict[str, int]:
    subscriptions = active_subscriptions(user_ids)
    if not subscriptions:
        return {"sent": 0, "failed": 0}
    payload = build_payload(NotificationContent(title=title, body=body, data=data or {}))
    results = deliver(subscriptions, payload)
    _log_batch(sent_by, payload, results)
    sent = sum(1 for r in results if r["success"])
    return {"sent": sent, "failed": len(results) - sent}


@router.post(f"{API_PREFIX}/push/subscribe")
def subscribe(request: SubscribeRequest, http_request: Request,
              user: Optional[Dict[str, Any]] = Depends(auth.optional_user)):
    # anonymous devices only get broadcasts; a token is tied to a user only by that user
    user_id = user["uid"] if user else None
    data = {
        "token": request.token,
        "userAgent": request.userAgent or "unknown",
        "ip": http_request.client.host if http_request.client else "unknown",
        "lastUsed": utcnow(),
        "isActive": True,
        "platform": user_platform(request.userAgent),
        "browser": user_browser(request.userAgent),
    }
    if user_id:
        data["userId"] = user_id
    try:
        existing = storage.query_documents(SUBSCRIPTIONS, [("token", "==", request.token)], limit=1)
        if existing:
            storage.update_document(SUBSCRIPTIONS, existing[0]["id"], {**data, "updatedAt": utcnow()})
            return {"message": "Subscription updated successfully", "subscriptionId": existing[0]["id"]}
        subscription_id = storage.add_document(SUBSCRIPTIONS, {**data, "userId": user_id, "createdAt": utcnow()})
        storage.add_document(
            NOTIFICATION_LOGS,
            {
                "type": "subscription_created",
                "subscriptionId": subscription_id,
                "userId": user_id,
                "timestamp": utcnow(),
                "metadata": {"userAgent": request.userAgent, "ip": data["ip"]},
            },
        )
        return {"message": "Subscription created successfully", "subscriptionId": subscription_id}
    except Exception as exc:
        logger.error("Push subscription failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to save subscription") from exc


@router.post(f"{API_PREFIX}/push/unsubscribe")
def unsubscribe(request: UnsubscribeRequest):
    existing = storage.query_documents(SUBSCRIPTIONS, [("token", "==", request.token)], limit=1)
    if not existing:
        raise HTTPException(status_code=404, detail="Subscription not found")
    storage.update_document(SUBSCRIPTIONS, existing[0]["id"], {"isActive": False, "updatedAt": utcnow()})
    return {"message": "Unsubscribed successfully", "subscriptionId": existing[0]["id"]}


def _check_booking_parties(user: Dict[str, Any], request: SendRequest) -> None:
    """Non-admins may only message the other people on one of their bookings."""
    if not request.bookingId:
        raise HTTPException(status_code=403, detail="Only admins can send notifications without a booking")
    booking = storage.get_document("bookings", request.bookingId) or {}
    parties = {booking.get("customerId"), booking.get("contractorId")} - {None}
    if user["uid"] not in parties:
        raise HTTPException(status_code=403, detail="Not a party to this booking")
    if not set(request.recipients) <= parties:
        raise HTTPException(status_code=403, detail="Recipients must be on the booking")


@router.post(f"{API_PREFIX}/push/send")
def send(request: SendRequest, user=Depends(auth.require_permission())):
    content = request.notification
    if not content.title or not content.body:
        raise HTTPException(status_code=400, detail="Notification title and body are required")
    if request.targetAll and not auth.is_admin(user):
        raise HTTPException(status_code=403, detail="Only admins can notify all users")
    if not request.targetAll:
        if not request.recipients:
            raise HTTPException(status_code=400, detail="Recipients are required when not targeting all users")
        if len(request.recipients) > MAX_RECIPIENTS:
            raise HTTPException(status_code=400, detail=f"Maximum {MAX_RECIPIENTS} recipients per request")
    if not auth.is_admin(user):
        _check_booking_parties(user, request)

    payload = build_payload(content)
    if request.schedule and request.schedule > utcnow():
        scheduled_id = storage.add_document(
            SCHEDULED,
            {
                "recipients": "all" if request.targetAll else request.recipients,
                "notification": payload,
                "scheduledFor": request.schedule,
                "createdBy": user["uid"],
                "createdAt": utcnow(),
                "status": "scheduled",
            },
        )
        return {
            "message": "Notification scheduled successfully",
            "scheduledId": scheduled_id,
            "scheduledFor": request.schedule,
        }

    subscriptions = active_subscriptions(None if request.targetAll else request.recipients)
    if not subscriptions:
        raise HTTPException(status_code=404, detail="No active subscriptions found")
    try:
        results = deliver(subscriptions, payload)
    except Exception as exc:
        logger.error("Push delivery failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to send notifications") from exc
    _log_batch(user["uid"], payload, results)
    sent = sum(1 for r in results if r["success"])
    activity_log.log_human_action(
        user, activity_log.ActionCategory.NOTIFICATION_SENT, f"Sent push notification: {content.title}",
        {"type": "notification", "id": payload["tag"]}, metadata={"sent": sent, "total": len(results)},
    )
    return {
        "message": "Notifications processed",
        "sent": sent,
        "failed": len(results) - sent,
        "total": len(results),
        "results": results,
    }
