"""Booking lifecycle: creation, pricing, status transitions and ratings."""
import logging
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import activity_log, auth, catalog, geocode, pricing, push, referrals, storage
from .config import API_PREFIX
from .models import (
    URGENCY_RANK,
    BookingRating,
    BookingRequest,
    BookingStatus,
    PaymentStatus,
    ServiceCategory,
    Urgency,
    UserRole,
    utcnow,
)

logger = logging.getLogger(__name__)

router = APIRouter()

COLLECTION = "bookings"
DEFAULT_CONTRACTOR_SCORE = 4.0
MAX_DEMAND_LEVEL = 4

ALLOWED_TRANSITIONS = {
    BookingStatus.DRAFT: {BookingStatus.PENDING, BookingStatus.CANCELLED},
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.ASSIGNED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.DISPUTED},
    BookingStatus.COMPLETED: {BookingStatus.DISPUTED},
    BookingStatus.DISPUTED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
}

SLOT_HOLDING_STATUSES = {BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS, BookingStatus.DISPUTED}

STATUS_ACTIVITY = {
    BookingStatus.ASSIGNED: activity_log.ActionCategory.BOOKING_ASSIGNED,
    BookingStatus.IN_PROGRESS: activity_log.ActionCategory.BOOKING_STARTED,
    BookingStatus.COMPLETED: activity_log.ActionCategory.BOOKING_COMPLETED,
    BookingStatus.CANCELLED: activity_log.ActionCategory.BOOKING_CANCELLED,
    BookingStatus.DISPUTED: activity_log.ActionCategory.BOOKING_DISPUTED,
}


class InvalidTransition(ValueError):
    """Raised when a booking cannot move to the requested status."""


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _may_set_status(user: Dict[str, Any], booking: Dict[str, Any], target: BookingStatus) -> bool:
    if auth.is_admin(user):
        return True
    is_customer = booking.get("customerId") == user["uid"]
    is_contractor = booking.get("contractorId") == user["uid"]
    if target == BookingStatus.CANCELLED:
        current = BookingStatus(booking["status"])
        # disputes are closed by support
        return (is_customer or is_contractor) and current != BookingStatus.DISPUTED
    if target in (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
        return is_contractor and booking["status"] != BookingStatus.DISPUTED.value
    if target == BookingStatus.DISPUTED:
        return is_customer
    if target == BookingStatus.PENDING:
        return is_customer
    return False


def demand_level(category: ServiceCategory, requested_date: str) -> float:
    """Surge level from open requests in the same category on the same day."""
    open_requests = storage.query_documents(
        COLLECTION,
        [
            ("details.category", "==", category.value),
            ("schedule.requestedDate", "==", requested_date),
            ("status", "in", [BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]),
        ],
    )
    return min(MAX_DEMAND_LEVEL, len(open_requests) / 5)


def quote_booking(request: BookingRequest) -> Dict[str, Any]:
    slot = datetime.combine(request.requestedDate, time.fromisoformat(request.requestedTimeSlot))
    return pricing.calculate_dynamic_price(
        service_type=catalog.pricing_key(request.category),
        estimated_duration=request.estimatedDuration,
        distance=0,
        urgency=pricing.urgency_for_pricing(request.urgency),
        contractor_score=DEFAULT_CONTRACTOR_SCORE,
        demand_level=demand_level(request.category, request.requestedDate.isoformat()),
        time_slot=slot,
    )


def create_booking(request: BookingRequest, user: Dict[str, Any]) -> Dict[str, Any]:
    location = request.location.model_dump()
    if not location.get("coordinates"):
        resolved = geocode.geocode_address(request.location.one_line())
        if resolved:
            location["coordinates"] = {"lat": resolved["lat"], "lng": resolved["lng"]}

    quote = quote_booking(request)
    now = utcnow()
    booking = {
        "customerId": request.customerId,
        "contractorId": None,
        "status": BookingStatus.PENDING.value,
        "details": {
            "category": request.category.value,
            "serviceId": request.serviceId,
            "description": request.description,
            "images": request.images,
            "urgency": request.urgency.value,
        },
        "schedule": {
            "requestedDate": request.requestedDate.isoformat(),
            "requestedTimeSlot": request.requestedTimeSlot,
            "estimatedDuration": request.estimatedDuration,
            "confirmedDate": None,
            "startedAt": None,
            "completedAt": None,
        },
        "location": location,
        "pricing": {
            "estimatedAmount": quote["finalPrice"],
            "basePrice": quote["basePrice"],
            "breakdown": quote["breakdown"],
            "finalAmount": None,
            "currency": "usd",
        },
        "payment": {
            "method": request.paymentMethod.value,
            "status": PaymentStatus.PENDING.value,
            "stripePaymentIntentId": None,
        },
        "rating": None,
        "notes": request.notes,
        "statusHistory": [{"status": BookingStatus.PENDING.value, "at": now, "by": user["uid"]}],
        "createdAt": now,
        "updatedAt": now,
    }
    booking_id = storage.add_document(COLLECTION, booking)
    storage.increment_fields(
        "users", request.customerId, {"analytics.totalBookings": 1}
    )
    activity_log.log_human_action(
        user, activity_log.ActionCategory.BOOKING_CREATED,
        f"Booked {request.category.value} for {booking['schedule']['requestedDate']}",
        {"type": "booking", "id": booking_id},
        metadata={"estimatedAmount": quote["finalPrice"], "urgency": request.urgency.value},
    )
    booking["id"] = booking_id
    try:
        referrals.record_first_booking(request.customerId)
    except Exception as exc:
        logger.warning("Referral tracking for %s failed: %s", request.customerId, exc)
    return booking


def get_booking(booking_id: str) -> Dict[str, Any]:
    booking = storage.get_document(COLLECTION, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def _contractor_profile_delta(contractor_id: str, deltas: Dict[str, float]) -> None:
    storage.increment_fields("users", contractor_id, {f"contractorProfile.{k}": v for k, v in deltas.items()})


def _track_referral_jobs(contractor_id: str) -> None:
    try:
        contractor = storage.get_document("users", contractor_id) or {}
        completed = int((contractor.get("contractorProfile") or {}).get("completedJobs", 0))
        referrals.record_jobs_completed(contractor_id, completed)
    except Exception as exc:
        logger.warning("Referral tracking for %s failed: %s", contractor_id, exc)


def change_status(
    booking: Dict[str, Any],
    target: BookingStatus,
    actor_id: str,
    reason: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    current = BookingStatus(booking["status"])
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move booking from {current.value} to {target.value}")

    schedule = booking.get("schedule") or {}
    first_completion = target == BookingStatus.COMPLETED and not schedule.get("completedAt")
    # a contractor slot stays taken from assignment until the job first completes or is cancelled
    holds_slot = current in SLOT_HOLDING_STATUSES and not schedule.get("completedAt")

    now = utcnow()
    update: Dict[str, Any] = {
        "status": target.value,
        "updatedAt": now,
        "statusHistory": list(booking.get("statusHistory") or [])
        + [{"status": target.value, "at": now, "by": actor_id, "reason": reason}],
    }
    if target == BookingStatus.IN_PROGRESS:
        update["schedule.startedAt"] = now
    elif first_completion:
        update["schedule.completedAt"] = now
        started = schedule.get("startedAt")
        if started:
            update["schedule.actualDuration"] = round((now - started).total_seconds() / 60)
        update["pricing.finalAmount"] = booking["pricing"]["estimatedAmount"]
    elif target == BookingStatus.CANCELLED:
        update["cancellation"] = {"by": actor_id, "reason": reason, "at": now}
    if extra:
        update.update(extra)
    storage.update_document(COLLECTION, booking["id"], update)

    contractor_id = (extra or {}).get("contractorId") or booking.get("contractorId")
    if contractor_id:
        if target == BookingStatus.ASSIGNED:
            _contractor_profile_delta(contractor_id, {"currentJobs": 1})
        elif target in (BookingStatus.COMPLETED, BookingStatus.CANCELLED):
            deltas: Dict[str, float] = {}
            if holds_slot:
                deltas["currentJobs"] = -1
            if first_completion:
                deltas["completedJobs"] = 1
            if deltas:
                _contractor_profile_delta(contractor_id, deltas)
            if first_completion:
                _track_referral_jobs(contractor_id)

    return get_booking(booking["id"])


def _notify_customer(booking: Dict[str, Any], title: str, body: str) -> None:
    try:
        push.notify_users([booking["customerId"]], title, body, {"bookingId": booking["id"]})
    except Exception as exc:
        logger.warning("Customer notification for booking %s failed: %s", booking["id"], exc)


def assign_contractor(booking_id: str, contractor_id: str, actor_id: str) -> Dict[str, Any]:
    booking = get_booking(booking_id)
    contractor = storage.get_document("users", contractor_id)
    if not contractor or contractor.get("role") != UserRole.CONTRACTOR.value:
        raise HTTPException(status_code=404, detail="Contractor not found")
    try:
        updated = change_status(
            booking,
            BookingStatus.ASSIGNED,
            actor_id,
            extra={"contractorId": contractor_id, "schedule.confirmedDate": utcnow()},
        )
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    _notify_customer(updated, "Your pro is booked", f"{contractor.get('displayName') or 'A contractor'} accepted your job")
    return updated


def rate_booking(booking_id: str, rating: BookingRating, user: Dict[str, Any]) -> Dict[str, Any]:
    booking = get_booking(booking_id)
    if booking.get("customerId") != user["uid"]:
        raise HTTPException(status_code=403, detail="Only the customer can rate this booking")
    if booking["status"] != BookingStatus.COMPLETED.value:
        raise HTTPException(status_code=409, detail="Only completed bookings can be rated")
    if booking.get("rating"):
        raise HTTPException(status_code=409, detail="Booking already rated")

    contractor_id = booking.get("contractorId")
    update: Dict[str, Any] = {"rating": {**rating.model_dump(), "createdAt": utcnow()}, "updatedAt": utcnow()}
    if contractor_id:
        contractor = storage.get_document("users", contractor_id) or {}
        profile = contractor.get("contractorProfile") or {}
        count = int(profile.get("ratingCount", 0))
        average = (float(profile.get("rating", 0)) * count + rating.overall) / (count + 1)
        storage.set_document(
            "users", contractor_id,
            {"contractorProfile": {"rating": round(average, 2), "ratingCount": count + 1}}, merge=True,
        )
        update["payout"] = pricing.calculate_contractor_payout(
            total_price=booking["pricing"].get("finalAmount") or booking["pricing"]["estimatedAmount"],
            contractor_tier=profile.get("tier", "growing"),
            performance_score=rating.overall / 5,
            completion_time=booking["schedule"].get("actualDuration")
            or booking["schedule"].get("estimatedDuration", pricing.EXPECTED_COMPLETION_MINUTES),
            customer_rating=rating.overall,
        )
    storage.update_document(COLLECTION, booking_id, update)
    return get_booking(booking_id)


def open_jobs(category: Optional[ServiceCategory] = None, limit: int = 50) -> List[Dict[str, Any]]:
    filters = [("status", "==", BookingStatus.PENDING.value)]
    if category:
        filters.append(("details.category", "==", category.value))
    jobs = storage.query_documents(COLLECTION, filters, limit=limit)
    jobs.sort(
        key=lambda b: (
            URGENCY_RANK.get(Urgency(b["details"].get("urgency", Urgency.NORMAL.value)), 2),
            b["schedule"]["requestedDate"],
            b["schedule"]["requestedTimeSlot"],
        )
    )
    return jobs


class StatusChangeRequest(BaseModel):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=1000)


class AssignRequest(BaseModel):
    contractorId: str = Field(..., min_length=1)


def _visible_to(user: Dict[str, Any], booking: Dict[str, Any]) -> bool:
    return auth.is_admin(user) or user["uid"] in (booking.get("customerId"), booking.get("contractorId"))


@router.post(f"{API_PREFIX}/bookings", status_code=201)
def create_booking_route(request: BookingRequest, user=Depends(auth.require_permission("bookings"))):
    if request.customerId != user["uid"] and not auth.is_admin(user):
        raise HTTPException(status_code=403, detail="Cannot book on behalf of another customer")
    try:
        return create_booking(request, user)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("Booking creation failed: %s", exc, exc_info=True)
        return JSONResponse({"error": "Failed to create booking"}, status_code=500)


@router.get(f"{API_PREFIX}/bookings")
def list_bookings(
    status: Optional[BookingStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    user=Depends(auth.current_user),
):
    field = "contractorId" if user["role"] == UserRole.CONTRACTOR.value else "customerId"
    filters: List[Any] = [] if auth.is_admin(user) else [(field, "==", user["uid"])]
    if status:
        filters.append(("status", "==", status.value))
    items = storage.query_documents(COLLECTION, filters, order_by="createdAt", descending=True, limit=limit)
    return {"bookings": items, "count": len(items)}


@router.get(f"{API_PREFIX}/bookings/open")
def list_open_jobs(
    category: Optional[ServiceCategory] = None,
    user=Depends(auth.require_roles(UserRole.CONTRACTOR, UserRole.ADMIN, UserRole.SUPER_ADMIN)),
):
    jobs = open_jobs(category)
    return {"bookings": jobs, "count": len(jobs)}


@router.get(f"{API_PREFIX}/bookings/{{booking_id}}")
def get_booking_route(booking_id: str, user=Depends(auth.current_user)):
    booking = get_booking(booking_id)
    if not _visible_to(user, booking):
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.post(f"{API_PREFIX}/bookings/{{booking_id}}/status")
def change_status_route(booking_id: str, request: StatusChangeRequest,
                        user=Depends(auth.require_permission("bookings"))):
    booking = get_booking(booking_id)
    if not _visible_to(user, booking):
        raise HTTPException(status_code=404, detail="Booking not found")
    if not _may_set_status(user, booking, request.status):
        raise HTTPException(status_code=403, detail="Not allowed to change this booking")
    try:
        updated = change_status(booking, request.status, user["uid"], request.reason)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    activity_log.log_human_action(
        user, STATUS_ACTIVITY.get(request.status, activity_log.ActionCategory.BOOKING_UPDATED),
        f"Booking moved to {request.status.value}", {"type": "booking", "id": booking_id},
        metadata={"from": booking["status"], "reason": request.reason},
    )
    if request.status in (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
        _notify_customer(updated, "Booking update", f"Your booking is now {request.status.value.replace('_', ' ')}")
    return updated


@router.post(f"{API_PREFIX}/bookings/{{booking_id}}/accept")
def accept_job(booking_id: str, user=Depends(auth.require_permission("bookings", UserRole.CONTRACTOR))):
    booking = assign_contractor(booking_id, user["uid"], user["uid"])
    activity_log.log_human_action(
        user, activity_log.ActionCategory.CONTRACTOR_ACCEPTED_JOB, "Contractor accepted job",
        {"type": "booking", "id": booking_id},
    )
    return booking


@router.post(f"{API_PREFIX}/bookings/{{booking_id}}/assign")
def assign_route(
    booking_id: str,
    request: AssignRequest,
    user=Depends(auth.require_permission("bookings", UserRole.ADMIN, UserRole.SUPER_ADMIN)),
):
    booking = assign_contractor(booking_id, request.contractorId, user["uid"])
    activity_log.log_human_action(
        user, activity_log.ActionCategory.BOOKING_ASSIGNED, "Assigned contractor",
        {"type": "booking", "id": booking_id}, secondary=[{"type": "user", "id": request.contractorId}],
    )
    return booking


@router.post(f"{API_PREFIX}/bookings/{{booking_id}}/rating")
def rate_booking_route(booking_id: str, rating: BookingRating, user=Depends(auth.require_permission("bookings"))):
    return rate_booking(booking_id, rating, user)
