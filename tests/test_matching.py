"""
Tests for contractor matching: job board ranking and instant dispatch.
"""
from datetime import date, datetime
from unittest.mock import Mock

import pytest

from leila.matching import (
    DispatchRequest,
    JobRequest,
    can_dispatch,
    contractors_in_radius,
    dispatch_to_contractors,
    find_best_matches,
    haversine_km,
    haversine_miles,
    is_available,
    load_active_contractors,
    match_contractors_to_job,
    rank_for_dispatch,
)
from leila.models import ContractorProfile, Coordinates

AUSTIN = Coordinates(lat=30.2672, lng=-97.7431)
DALLAS = Coordinates(lat=32.7767, lng=-96.7970)
WEDNESDAY = date(2025, 1, 8)

WEEKDAYS = {day: {"available": True, "start": "08:00", "end": "18:00"}
            for day in ("monday", "tuesday", "wednesday", "thursday", "friday")}


def _contractor(cid, lat=30.28, lng=-97.75, **fields):
    data = {
        "id": cid,
        "name": cid.title(),
        "services": ["plumbing"],
        "location": {"lat": lat, "lng": lng},
        "rating": 4.5,
        "completedJobs": 50,
        "hourlyRate": 80,
        "responseTime": 15,
        "availability": WEEKDAYS,
    }
    data.update(fields)
    return ContractorProfile.model_validate(data)


def _job(**fields):
    data = {
        "service": "plumbing",
        "location": AUSTIN.model_dump(),
        "date": WEDNESDAY.isoformat(),
        "time": "10:00",
        "estimatedDuration": 2,
        "priceRange": {"min": 50, "max": 100},
    }
    data.update(fields)
    return JobRequest.model_validate(data)


# ─────────────────────────────────────
#  geometry
# ─────────────────────────────────────

class TestHaversine:

    def test_austin_to_dallas(self):
        assert haversine_miles(AUSTIN, DALLAS) == pytest.approx(182, rel=0.02)

    def test_km_is_longer_than_miles(self):
        assert haversine_km(AUSTIN, DALLAS) == pytest.approx(haversine_miles(AUSTIN, DALLAS) * 1.611, rel=0.01)

    def test_same_point_is_zero(self):
        assert haversine_miles(AUSTIN, AUSTIN) == 0

    def test_contractors_in_radius(self):
        near = _contractor("near")
        far = _contractor("far", lat=DALLAS.lat, lng=DALLAS.lng)
        assert contractors_in_radius(AUSTIN, [near, far], 50) == [near]


class TestAvailability:

    def test_inside_window(self):
        assert is_available(_contractor("a"), WEDNESDAY, "10:00")

    def test_window_edges_are_inclusive(self):
        assert is_available(_contractor("a"), WEDNESDAY, "08:00")
        assert is_available(_contractor("a"), WEDNESDAY, "18:00")

    def test_outside_window(self):
        assert not is_available(_contractor("a"), WEDNESDAY, "19:30")

    def test_day_off(self):
        assert not is_available(_contractor("a"), date(2025, 1, 11), "10:00")


# ─────────────────────────────────────
#  job board matching
# ─────────────────────────────────────

class TestMatchContractorsToJob:

    def test_filters_service_distance_and_calendar(self):
        contractors = [
            _contractor("good"),
            _contractor("electrician", services=["electrical"]),
            _contractor("far", lat=DALLAS.lat, lng=DALLAS.lng),
            _contractor("busy", availability={}),
        ]
        matches = match_contractors_to_job(_job(), contractors)
        assert [m["contractorId"] for m in matches] == ["good"]

    def test_emergency_contractor_kept_when_unavailable(self):
        matches = match_contractors_to_job(_job(), [_contractor("oncall", availability={}, emergencyAvailable=True)])
        assert len(matches) == 1
        assert matches[0]["factors"]["availability"] == 0.7

    def test_urgent_job_skips_calendar_and_adds_surcharge(self):
        matches = match_contractors_to_job(_job(urgent=True), [_contractor("busy", availability={})])
        assert len(matches) == 1
        assert matches[0]["factors"]["availability"] == 0.0
        assert matches[0]["price"] == 80 * 2 * 1.5

    def test_urgent_job_widens_radius(self):
        # roughly 35 miles out
        mid = _contractor("mid", lat=30.77, lng=-97.74)
        assert match_contractors_to_job(_job(), [mid]) == []
        assert len(match_contractors_to_job(_job(urgent=True), [mid])) == 1

    def test_price_factor(self):
        cheap = match_contractors_to_job(_job(), [_contractor("cheap", hourlyRate=60)])[0]
        pricey = match_contractors_to_job(_job(), [_contractor("pricey", hourlyRate=150)])[0]
        assert cheap["factors"]["price"] == 1.0
        assert pricey["factors"]["price"] == 0.5

    def test_sorted_by_score_and_limited(self):
        contractors = [
            _contractor("veteran", rating=5.0, completedJobs=300),
            _contractor("rookie", rating=3.0, completedJobs=0),
            _contractor("middle", rating=4.0, completedJobs=20),
        ]
        matches = match_contractors_to_job(_job(), contractors, max_results=2)
        assert [m["contractorId"] for m in matches] == ["veteran", "middle"]

    def test_estimated_arrival_uses_city_speed(self):
        match = match_contractors_to_job(_job(), [_contractor("a")])[0]
        assert match["estimatedArrival"] == round(match["distance"] / 30 * 60)

    def test_find_best_matches_returns_profiles(self):
        contractors = [
            _contractor("rookie", rating=3.0, completedJobs=0),
            _contractor("electrician", services=["electrical"]),
            _contractor("veteran", rating=5.0, completedJobs=300),
        ]
        best = find_best_matches(_job(), contractors)
        assert [c.id for c in best] == ["veteran", "rookie"]
        assert best[0] is contractors[2]


# ─────────────────────────────────────
#  dispatch
# ─────────────────────────────────────

def _dispatch_request(**fields):
    data = {
        "serviceId": "plumbing",
        "customerLocation": AUSTIN.model_dump(),
        "requestedTime": datetime(2025, 1, 8, 10, 0).isoformat(),
    }
    data.update(fields)
    return DispatchRequest.model_validate(data)


def _on_call(cid, **fields):
    schedule = {"2025-01-08": [{"start": "09:00", "end": "12:00", "booked": False}]}
    return _contractor(cid, schedule=schedule, **fields)


class TestDispatch:

    def test_requires_open_slot(self):
        assert can_dispatch(_on_call("a"), _dispatch_request())
        assert not can_dispatch(_contractor("no-slots"), _dispatch_request())

    def test_booked_slot_does_not_count(self):
        booked = _contractor("b", schedule={"2025-01-08": [{"start": "09:00", "end": "12:00", "booked": True}]})
        assert not can_dispatch(booked, _dispatch_request())

    def test_full_capacity_excluded(self):
        assert not can_dispatch(_on_call("full", currentJobs=3, maxConcurrentJobs=3), _dispatch_request())

    def test_premium_needs_high_acceptance(self):
        picky = _on_call("picky", acceptanceRate=0.6)
        assert can_dispatch(picky, _dispatch_request())
        assert not can_dispatch(picky, _dispatch_request(isPremium=True))

    def test_rank_orders_and_limits(self):
        candidates = [
            _on_call("close", lat=30.27, lng=-97.74, rating=4.9),
            _on_call("distant", lat=30.6, lng=-97.9, rating=4.0),
            _on_call("busy", currentJobs=3),
        ]
        ranked = rank_for_dispatch(_dispatch_request(), candidates, limit=5)
        assert [m["contractor"].id for m in ranked] == ["close", "distant"]
        assert ranked[0]["eta"] == round(ranked[0]["distance"] * 2 + 15)

    def test_stops_at_first_acceptance(self):
        matches = [{"contractor": _on_call(cid)} for cid in ("a", "b", "c")]
        send = Mock(side_effect=[False, True, True])
        result = dispatch_to_contractors(matches, send)
        assert result["accepted"] is True
        assert result["contractor"].id == "b"
        assert result["attemptedCount"] == 2
        assert send.call_count == 2

    def test_nobody_accepts(self):
        matches = [{"contractor": _on_call(cid)} for cid in ("a", "b")]
        result = dispatch_to_contractors(matches, lambda contractor: False)
        assert result == {"accepted": False, "contractor": None, "attemptedCount": 2}


# ─────────────────────────────────────
#  Firestore loading and routes
# ─────────────────────────────────────

class TestLoadActiveContractors:

    def test_filters_by_service_and_skips_incomplete_profiles(self, fake_db, contractor_doc):
        fake_db.set_document("users", "pro-1", contractor_doc("pro-1", services=("plumbing",)))
        fake_db.set_document("users", "pro-2", contractor_doc("pro-2", services=("cleaning",)))
        broken = contractor_doc("pro-3")
        del broken["contractorProfile"]["location"]
        fake_db.set_document("users", "pro-3", broken)
        fake_db.set_document("users", "cust-1", {"role": "customer", "status": "active"})

        contractors = load_active_contractors("plumbing")
        assert [c.id for c in contractors] == ["pro-1"]


class TestMatchingRoutes:

    def test_match_jobs_requires_auth(self, client):
        response = client.post("/api/v1/matching/jobs", json=_job().model_dump(mode="json"))
        assert response.status_code == 401

    def test_match_jobs(self, client, fake_db, contractor_doc, customer_headers):
        fake_db.set_document("users", "pro-1", contractor_doc("pro-1", availability=WEEKDAYS))
        response = client.post(
            "/api/v1/matching/jobs", json=_job().model_dump(mode="json"), headers=customer_headers,
        )
        assert response.status_code == 200
        assert response.json()["matches"][0]["contractorId"] == "pro-1"

    def test_best_contractors(self, client, fake_db, contractor_doc, customer_headers):
        fake_db.set_document("users", "pro-1", contractor_doc("pro-1", availability=WEEKDAYS))
        fake_db.set_document("users", "pro-2", contractor_doc("pro-2", services=("hvac",), availability=WEEKDAYS))
        response = client.post(
            "/api/v1/matching/contractors", json=_job().model_dump(mode="json"), headers=customer_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["contractors"][0]["id"] == "pro-1"
        assert "schedule" not in body["contractors"][0]

    def test_dispatch_assigns_auto_accepting_pro(
        self, client, fake_db, contractor_doc, booking_payload, customer_headers, admin_headers,
    ):
        requested = booking_payload["requestedDate"]
        fake_db.set_document("users", "pro-1", contractor_doc(
            "pro-1", autoAccept=True, schedule={requested: [{"start": "09:00", "end": "12:00", "booked": False}]},
        ))
        booking = client.post("/api/v1/bookings", json=booking_payload, headers=customer_headers).json()

        response = client.post(
            "/api/v1/matching/dispatch", json={"bookingId": booking["id"]}, headers=admin_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["accepted"] is True
        assert body["contractorId"] == "pro-1"
        stored = fake_db.get_document("bookings", booking["id"])
        assert stored["status"] == "assigned"
        assert stored["contractorId"] == "pro-1"

    def test_dispatch_is_admin_only(self, client, customer_headers):
        response = client.post("/api/v1/matching/dispatch", json={"bookingId": "x"}, headers=customer_headers)
        assert response.status_code == 403
