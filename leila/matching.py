"""Contractor matching.

Two rankers live here. ``match_contractors_to_job`` serves the marketplace
job board (weekly availability, miles, price range). ``rank_for_dispatch``
serves instant dispatch, where a job is offered to contractors one by one
until somebody accepts (dated slots, capacity, km).
"""
import logging
import math
from datetime import date as date_type, datetime, time as time_type
from typing import Any, Callable, Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import activity_log, auth, bookings, push, storage
from .config import API_PREFIX
from .models import BookingStatus, ContractorProfile, Coordinates, UserRole, Urgency

logger = logging.getLogger(__name__)

router = APIRouter()

EARTH_RADIUS_MILES = 3959
EARTH_RADIUS_KM = 6378.137

JOB_WEIGHTS_URGENT = {
    "distance": 0.25,
    "availability": 0.15,
    "rating": 0.15,
    "experience": 0.10,
    "price": 0.10,
    "responseTime": 0.25,
}
JOB_WEIGHTS_NORMAL = {
    "distance": 0.20,
    "availability": 0.20,
    "rating": 0.25,
    "experience": 0.15,
    "price": 0.15,
    "responseTime": 0.05,
}

DISPATCH_WEIGHTS = {
    "distance": 0.3,
    "rating": 0.25,
    "experience": 0.15,
    "availability": 0.15,
    "responseTime": 0.1,
    "certifications": 0.05,
}
PREMIUM_DISPATCH_WEIGHTS = {
    "distance": 0.35,
    "rating": 0.2,
    "experience": 0.1,
    "availability": 0.05,
    "responseTime": 0.25,
    "certifications": 0.05,
}
PREMIUM_MIN_ACCEPTANCE = 0.85


class PriceRange(BaseModel):
    min: float = Field(0, ge=0)
    max: float = Field(1000, ge=0)


class JobRequest(BaseModel):
    id: Optional[str] = None
    service: str = Field(..., min_length=1)
    location: Coordinates
    date: date_type
    time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    urgent: bool = False
    estimatedDuration: float = Field(1, gt=0)  # hours
    priceRange: PriceRange = Field(default_factory=PriceRange)


class DispatchRequest(BaseModel):
    serviceId: str
    customerLocation: Coordinates
    requestedTime: datetime
    isUrgent: bool = False
    isPremium: bool = False


def _haversine(a: Coordinates, b: Coordinates, radius: float) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return radius * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def haversine_miles(a: Coordinates, b: Coordinates) -> float:
    return _haversine(a, b, EARTH_RADIUS_MILES)


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    return _haversine(a, b, EARTH_RADIUS_KM)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def is_available(contractor: ContractorProfile, on: date_type, at: str) -> bool:
    window = contractor.availability.get(on.strftime("%A").lower())
    if not window or not window.available:
        return False
    return _minutes(window.start) <= _minutes(at) <= _minutes(window.end)


def contractors_in_radius(
    center: Coordinates, contractors: Sequence[ContractorProfile], radius_miles: float
) -> List[ContractorProfile]:
    return [c for c in contractors if haversine_miles(center, c.location) <= radius_miles]


def match_contractors_to_job(
    request: JobRequest, contractors: Sequence[ContractorProfile], max_results: int = 10
) -> List[Dict[str, Any]]:
    scores: List[Dict[str, Any]] = []
    weights = JOB_WEIGHTS_URGENT if request.urgent else JOB_WEIGHTS_NORMAL
    max_distance = 50 if request.urgent else 25

    for contractor in contractors:
        if request.service not in contractor.services:
            continue
        available = is_available(contractor, request.date, request.time)
        # urgent jobs skip the calendar check
        if not request.urgent and not available and not contractor.emergencyAvailable:
            continue

        distance = haversine_miles(request.location, contractor.location)
        if distance > max_distance:
            continue

        in_range = request.priceRange.min <= contractor.hourlyRate <= request.priceRange.max
        factors = {
            "distance": math.exp(-distance / 10),
            "availability": 1.0 if available else (0.7 if contractor.emergencyAvailable else 0.0),
            "rating": contractor.rating / 5,
            "experience": min(math.log(contractor.completedJobs + 1) / math.log(100), 1.0),
            "price": 1.0 if in_range else 0.5,
            "responseTime": math.exp(-contractor.responseTime / 30),
        }
        score = sum(value * weights[key] for key, value in factors.items())
        surcharge = 1.5 if request.urgent and not available else 1.0
        scores.append(
            {
                "contractorId": contractor.id,
                "score": score,
                "factors": factors,
                "distance": distance,
                # 30 mph average city speed
                "estimatedArrival": round(distance / 30 * 60),
                "price": contractor.hourlyRate * request.estimatedDuration * surcharge,
            }
        )

    scores.sort(key=lambda item: item["score"], reverse=True)
    return scores[:max_results]


def find_best_matches(
    request: JobRequest, contractors: Sequence[ContractorProfile]
) -> List[ContractorProfile]:
    by_id = {c.id: c for c in contractors}
    return [by_id[m["contractorId"]] for m in match_contractors_to_job(request, contractors, 20)]


def _has_open_slot(contractor: ContractorProfile, requested: datetime) -> bool:
    hour = requested.hour
    for slot in contractor.schedule.get(requested.date().isoformat(), []):
        if not slot.booked and int(slot.start.split(":")[0]) <= hour < int(slot.end.split(":")[0]):
            return True
    return False


def can_dispatch(contractor: ContractorProfile, request: DispatchRequest) -> bool:
    if contractor.currentJobs >= contractor.maxConcurrentJobs:
        return False
    if request.isPremium and contractor.acceptanceRate < PREMIUM_MIN_ACCEPTANCE:
        return False
    return _has_open_slot(contractor, request.requestedTime)


def _dispatch_score(contractor: ContractorProfile, request: DispatchRequest) -> Dict[str, Any]:
    distance = haversine_km(request.customerLocation, contractor.location)
    factors = {
        "distance": math.exp(-distance / 10),
        "rating": max(0.0, (contractor.rating - 3) / 2),
        "experience": min(1.0, math.log10(contractor.completedJobs + 1) / 3),
        "availability": 1 - contractor.currentJobs / contractor.maxConcurrentJobs,
        "responseTime": math.exp(-contractor.responseTime / 30),
        "certifications": min(1.0, len(contractor.certifications) / 5),
    }
    if request.isPremium:
        if contractor.rating >= 4.8:
            factors["rating"] *= 1.2
        if contractor.responseTime < 10:
            factors["responseTime"] *= 1.3
    weights = PREMIUM_DISPATCH_WEIGHTS if request.isPremium else DISPATCH_WEIGHTS
    return {
        "contractor": contractor,
        "score": sum(factors[key] * weight for key, weight in weights.items()),
        "distance": distance,
        # 2 min/km plus 15 min prep
        "eta": round(distance * 2 + 15),
        "factors": factors,
    }


def rank_for_dispatch(
    request: DispatchRequest, candidates: Sequence[ContractorProfile], limit: int = 5
) -> List[Dict[str, Any]]:
    scored = [_dispatch_score(c, request) for c in candidates if can_dispatch(c, request)]
    scored.sort(key=lambda item: item["score"], reverse=True)
    return scored[:limit]


def dispatch_to_contractors(
    matches: Sequence[Dict[str, Any]],
    send_request: Callable[[ContractorProfile], bool],
) -> Dict[str, Any]:
    """Offer the job to each match in order until one accepts."""
    attempted = 0
    for match in matches:
        attempted += 1
        if send_request(match["contractor"]):
            return {"accepted": True, "contractor": match["contractor"], "attemptedCount": attempted}
    return {"accepted": False, "contractor": None, "attemptedCount": attempted}


def load_active_contractors(service: Optional[str] = None) -> List[ContractorProfile]:
    filters = [("role", "==", UserRole.CONTRACTOR.value), ("status", "==", "active")]
    if service:
        filters.append(("contractorProfile.services", "array_contains", service))
    contractors: List[ContractorProfile] = []
    for doc in storage.query_documents("users", filters):
        try:
            contractors.append(ContractorProfile.from_document(doc))
        except ValueError as exc:
            logger.warning("Skipping contractor %s with incomplete profile: %s", doc.get("id"), exc)
    return contractors


def _serialize_match(match: Dict[str, Any]) -> Dict[str, Any]:
    contractor: ContractorProfile = match["contractor"]
    return {
        "contractorId": contractor.id,
        "name": contractor.name,
        "score": match["score"],
        "distance": match["distance"],
        "eta": match["eta"],
        "factors": match["factors"],
    }


def _offer_job(booking: Dict[str, Any]) -> Callable[[ContractorProfile], bool]:
    def send(contractor: ContractorProfile) -> bool:
        try:
            push.notify_users(
                [contractor.id],
                title="New job request",
                body=f"{booking['details']['category'].replace('_', ' ').title()} job near you",
                data={"bookingId": booking["id"], "type": "job_offer"},
            )
        except Exception as exc:
            logger.warning("Job offer notification to %s failed: %s", contractor.id, exc)
        # only instant-accept contractors can take a job without a round trip
        return contractor.autoAccept

    return send


class DispatchBookingRequest(BaseModel):
    bookingId: str
    isPremium: bool = False
    limit: int = Field(5, ge=1, le=20)


@router.post(f"{API_PREFIX}/matching/jobs")
def match_job(request: JobRequest, maxResults: int = 10, user=Depends(auth.current_user)):
    try:
        contractors = load_active_contractors(request.service)
        matches = match_contractors_to_job(request, contractors, maxResults)
        return {"matches": matches, "count": len(matches)}
    except Exception as exc:
        logger.error("Job matching failed: %s", exc, exc_info=True)
        return JSONResponse({"error": "Failed to match contractors"}, status_code=500)


@router.post(f"{API_PREFIX}/matching/contractors")
def best_contractors(request: JobRequest, user=Depends(auth.current_user)):
    try:
        profiles = find_best_matches(request, load_active_contractors(request.service))
    except Exception as exc:
        logger.error("Contractor lookup failed: %s", exc, exc_info=True)
        return JSONResponse({"error": "Failed to find contractors"}, status_code=500)
    contractors = [
        p.model_dump(mode="json", include={"id", "name", "services", "rating", "completedJobs", "hourlyRate",
                                           "responseTime", "emergencyAvailable", "certifications", "tier"})
        for p in profiles
    ]
    return {"contractors": contractors, "count": len(contractors)}


@router.post(f"{API_PREFIX}/matching/dispatch")
def dispatch_booking(
    request: DispatchBookingRequest,
    user=Depends(auth.require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN)),
):
    booking = bookings.get_booking(request.bookingId)
    if booking["status"] not in (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value):
        raise HTTPException(status_code=409, detail="Booking is not awaiting a contractor")
    coordinates = (booking.get("location") or {}).get("coordinates")
    if not coordinates:
        raise HTTPException(status_code=400, detail="Booking location has no coordinates")

    schedule = booking["schedule"]
    dispatch_request = DispatchRequest(
        serviceId=booking["details"]["category"],
        customerLocation=Coordinates(**coordinates),
        requestedTime=datetime.combine(
            date_type.fromisoformat(schedule["requestedDate"]),
            time_type.fromisoformat(schedule["requestedTimeSlot"]),
        ),
        isUrgent=booking["details"]["urgency"] in (Urgency.HIGH.value, Urgency.EMERGENCY.value),
        isPremium=request.isPremium,
    )
    candidates = load_active_contractors(dispatch_request.serviceId)
    matches = rank_for_dispatch(dispatch_request, candidates, request.limit)
    result = dispatch_to_contractors(matches, _offer_job(booking))

    payload: Dict[str, Any] = {
        "accepted": result["accepted"],
        "attemptedCount": result["attemptedCount"],
        "matches": [_serialize_match(m) for m in matches],
        "contractorId": None,
    }
    if result["accepted"]:
        contractor = result["contractor"]
        bookings.assign_contractor(request.bookingId, contractor.id, actor_id=user["uid"])
        payload["contractorId"] = contractor.id
    activity_log.log_system_action(
        "dispatcher",
        activity_log.ActionCategory.BOOKING_ASSIGNED,
        "Dispatched booking to contractors",
        {"type": "booking", "id": request.bookingId},
        status=activity_log.ActionStatus.COMPLETED if result["accepted"] else activity_log.ActionStatus.FAILED,
        metadata={"attemptedCount": result["attemptedCount"], "requestedBy": user["uid"]},
    )
    return payload
