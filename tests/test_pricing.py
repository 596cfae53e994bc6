"""
Tests for dynamic pricing and contractor payouts.
"""
from datetime import datetime

import pytest

from leila.models import Urgency
from leila.pricing import (
    calculate_contractor_payout,
    calculate_dynamic_price,
    predict_optimal_price,
    time_of_day_modifier,
    urgency_for_pricing,
)

WEDNESDAY_10AM = datetime(2025, 1, 8, 10, 0)


def _price(**overrides):
    params = {
        "service_type": "plumbing",
        "estimated_duration": 60,
        "distance": 0,
        "urgency": "standard",
        "contractor_score": 3,
        "demand_level": 0,
        "time_slot": WEDNESDAY_10AM,
    }
    params.update(overrides)
    return calculate_dynamic_price(**params)


# ─────────────────────────────────────
#  time of day
# ─────────────────────────────────────

class TestTimeOfDayModifier:

    @pytest.mark.parametrize("hour,expected", [
        (10, 1.0),
        (8, 1.2),
        (17, 1.2),
        (20, 1.1),
        (23, 1.3),
        (3, 1.3),
    ])
    def test_weekday_hours(self, hour, expected):
        assert time_of_day_modifier(datetime(2025, 1, 8, hour, 0)) == expected

    def test_weekend_overrides_hour(self):
        assert time_of_day_modifier(datetime(2025, 1, 11, 23, 0)) == 1.15


class TestUrgencyForPricing:

    def test_mapping(self):
        assert urgency_for_pricing(Urgency.LOW) == "standard"
        assert urgency_for_pricing(Urgency.NORMAL) == "standard"
        assert urgency_for_pricing(Urgency.HIGH) == "urgent"
        assert urgency_for_pricing(Urgency.EMERGENCY) == "emergency"


# ─────────────────────────────────────
#  calculate_dynamic_price
# ─────────────────────────────────────

class TestDynamicPrice:

    def test_baseline_plumbing_hour(self):
        result = _price()
        assert result["basePrice"] == 114.75
        # 114.75 * skill factor 1.2 = 137.7, rounded to the nearest 5
        assert result["finalPrice"] == 140

    def test_final_price_is_multiple_of_five(self):
        for minutes in (30, 45, 90, 200):
            assert _price(estimated_duration=minutes)["finalPrice"] % 5 == 0

    def test_emergency_costs_more_than_urgent(self):
        standard = _price()["finalPrice"]
        urgent = _price(urgency="urgent")["finalPrice"]
        emergency = _price(urgency="emergency")["finalPrice"]
        assert standard < urgent < emergency
        assert emergency == 305

    def test_unknown_service_uses_default_complexity(self):
        result = _price(service_type="chimney")
        assert result["breakdown"]["base"] == 75
        assert result["basePrice"] == pytest.approx(101.25)

    def test_distance_adds_penalty(self):
        result = _price(distance=10)
        assert result["breakdown"]["distance"] == pytest.approx(0.8)
        assert result["basePrice"] == pytest.approx(115.55)

    def test_better_contractor_costs_more(self):
        assert _price(contractor_score=5)["finalPrice"] > _price(contractor_score=3)["finalPrice"]

    def test_demand_surge(self):
        result = _price(demand_level=2)
        assert result["breakdown"]["demand"] == pytest.approx(0.5 * result["basePrice"])
        assert result["finalPrice"] > _price()["finalPrice"]

    def test_night_slot(self):
        assert _price(time_slot=datetime(2025, 1, 8, 23, 0))["basePrice"] == pytest.approx(149.175, abs=0.01)


# ─────────────────────────────────────
#  payouts
# ─────────────────────────────────────

class TestContractorPayout:

    def test_all_bonuses_and_fee_discount(self):
        result = calculate_contractor_payout(200, "professional", 0.96, 60, 4.9)
        assert result["platformFee"] == 27.0
        assert result["bonuses"] == {
            "excellence": pytest.approx(10.0),
            "speed": pytest.approx(6.0),
            "satisfaction": pytest.approx(8.0),
        }
        assert result["payoutAmount"] == 197.0

    def test_unknown_tier_uses_default_fee(self):
        result = calculate_contractor_payout(200, "mystery", 0.5, 120, 4.0)
        assert result["platformFee"] == 50.0
        assert result["bonuses"] == {}
        assert result["payoutAmount"] == 150.0

    def test_fee_discount_without_excellence_bonus(self):
        result = calculate_contractor_payout(100, "starter", 0.92, 120, 4.0)
        assert result["platformFee"] == 27.0
        assert "excellence" not in result["bonuses"]


class TestPredictOptimalPrice:

    def test_picks_best_scoring_price(self):
        history = [
            {"price": 100, "conversionRate": 0.5, "profitMargin": 0.2},
            {"price": 150, "conversionRate": 0.3, "profitMargin": 0.5},
        ]
        assert predict_optimal_price(history) == pytest.approx(153.9)

    def test_empty_history(self):
        assert predict_optimal_price([]) == 0


# ─────────────────────────────────────
#  routes
# ─────────────────────────────────────

class TestPricingRoutes:

    def test_estimate(self, client):
        response = client.post("/api/v1/pricing/estimate", json={
            "serviceType": "Plumbing",
            "estimatedDuration": 60,
            "contractorScore": 3,
            "timeSlot": "2025-01-08T10:00:00",
        })
        assert response.status_code == 200
        assert response.json()["finalPrice"] == 140

    def test_estimate_rejects_bad_urgency(self, client):
        response = client.post("/api/v1/pricing/estimate", json={"serviceType": "hvac", "urgency": "whenever"})
        assert response.status_code == 422

    def test_payout(self, client):
        response = client.post("/api/v1/pricing/payout", json={"totalPrice": 200, "contractorTier": "enterprise"})
        assert response.status_code == 200
        assert response.json()["platformFee"] == 20.0

    def test_optimal(self, client):
        response = client.post("/api/v1/pricing/optimal", json={
            "history": [{"price": 100, "conversionRate": 1, "profitMargin": 1}],
        })
        assert response.json() == {"optimalPrice": 102.6}
