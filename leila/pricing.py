"""Dynamic job pricing and contractor payouts."""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from .config import API_PREFIX
from .models import Urgency, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

BASE_RATE_MULTIPLIER = 1.35
DEMAND_SURGE_FACTOR = 0.25
QUALITY_SCORE_WEIGHT = 0.15
DISTANCE_PENALTY_RATE = 0.08

TIME_OF_DAY_MODIFIERS = {
    "peak": 1.2,
    "standard": 1.0,
    "evening": 1.1,
    "night": 1.3,
    "weekend": 1.15,
}

SERVICE_COMPLEXITY = {
    "plumbing": {"base": 85, "skillFactor": 1.2},
    "electrical": {"base": 95, "skillFactor": 1.3},
    "hvac": {"base": 120, "skillFactor": 1.4},
    "cleaning": {"base": 45, "skillFactor": 0.9},
    "handyman": {"base": 65, "skillFactor": 1.0},
    "painting": {"base": 70, "skillFactor": 1.1},
    "landscaping": {"base": 60, "skillFactor": 0.95},
    "moving": {"base": 80, "skillFactor": 1.15},
}
DEFAULT_COMPLEXITY = {"base": 75, "skillFactor": 1.0}

URGENCY_MULTIPLIERS = {"standard": 1.0, "urgent": 1.5, "emergency": 2.2}

TIER_FEES = {
    "starter": 0.30,
    "growing": 0.25,
    "established": 0.20,
    "professional": 0.15,
    "enterprise": 0.10,
}
DEFAULT_TIER_FEE = 0.25
EXPECTED_COMPLETION_MINUTES = 120

PricingUrgency = Literal["standard", "urgent", "emergency"]


def _round_half_up(value: float, step: float = 1.0) -> float:
    return math.floor(value / step + 0.5) * step


def _round_cents(value: float) -> float:
    return _round_half_up(value * 100) / 100


def time_of_day_modifier(slot: datetime) -> float:
    hour = slot.hour
    if slot.weekday() >= 5:
        return TIME_OF_DAY_MODIFIERS["weekend"]
    if hour >= 22 or hour < 7:
        return TIME_OF_DAY_MODIFIERS["night"]
    if 7 <= hour < 9 or 17 <= hour < 19:
        return TIME_OF_DAY_MODIFIERS["peak"]
    if 19 <= hour < 22:
        return TIME_OF_DAY_MODIFIERS["evening"]
    return TIME_OF_DAY_MODIFIERS["standard"]


def urgency_for_pricing(urgency: Urgency) -> PricingUrgency:
    if urgency == Urgency.EMERGENCY:
        return "emergency"
    if urgency == Urgency.HIGH:
        return "urgent"
    return "standard"


def calculate_dynamic_price(
    service_type: str,
    estimated_duration: float,
    distance: float,
    urgency: PricingUrgency,
    contractor_score: float,
    demand_level: float,
    time_slot: datetime,
) -> Dict[str, Any]:
    """Price a job.

    ``estimated_duration`` is in minutes, ``distance`` in miles,
    ``contractor_score`` on the 1-5 rating scale and ``demand_level`` a
    non-negative surge level (0 means no surge).
    """
    complexity = SERVICE_COMPLEXITY.get(service_type, DEFAULT_COMPLEXITY)

    base_price = complexity["base"] * BASE_RATE_MULTIPLIER
    duration_hours = estimated_duration / 60
    base_price *= duration_hours ** 0.85

    distance_penalty = distance * DISTANCE_PENALTY_RATE
    base_price += distance_penalty

    quality_multiplier = 1 + (contractor_score - 3) * QUALITY_SCORE_WEIGHT
    base_price *= quality_multiplier

    time_modifier = time_of_day_modifier(time_slot)
    base_price *= time_modifier

    urgency_multiplier = URGENCY_MULTIPLIERS[urgency]
    base_price *= urgency_multiplier

    demand_multiplier = 1 + demand_level * DEMAND_SURGE_FACTOR
    final_price = base_price * demand_multiplier
    skill_adjusted = final_price * complexity["skillFactor"]

    return {
        "basePrice": _round_cents(base_price),
        "finalPrice": int(_round_half_up(skill_adjusted, 5)),
        "breakdown": {
            "base": complexity["base"],
            "duration": duration_hours * complexity["base"] * 0.6,
            "distance": distance_penalty,
            "quality": (quality_multiplier - 1) * base_price,
            "timeOfDay": (time_modifier - 1) * base_price,
            "urgency": (urgency_multiplier - 1) * base_price,
            "demand": (demand_multiplier - 1) * base_price,
            "skill": (complexity["skillFactor"] - 1) * final_price,
        },
    }


def calculate_contractor_payout(
    total_price: float,
    contractor_tier: str,
    performance_score: float,
    completion_time: float,
    customer_rating: float,
) -> Dict[str, Any]:
    fee_rate = TIER_FEES.get(contractor_tier, DEFAULT_TIER_FEE)
    platform_fee = total_price * fee_rate

    bonuses: Dict[str, float] = {}
    if performance_score > 0.95:
        bonuses["excellence"] = total_price * 0.05
    if completion_time < EXPECTED_COMPLETION_MINUTES * 0.8:
        bonuses["speed"] = total_price * 0.03
    if customer_rating >= 4.8:
        bonuses["satisfaction"] = total_price * 0.04

    if performance_score > 0.9:
        platform_fee *= 0.9

    payout = total_price - platform_fee + sum(bonuses.values())
    return {
        "payoutAmount": _round_cents(payout),
        "platformFee": _round_cents(platform_fee),
        "bonuses": bonuses,
    }


def predict_optimal_price(history: Iterable[Dict[str, float]]) -> float:
    optimal_price = 0.0
    max_score = 0.0
    for entry in history:
        score = entry.get("conversionRate", 0) * 0.4 + entry.get("profitMargin", 0) * 0.6
        if score > max_score:
            max_score = score
            optimal_price = entry.get("price", 0)
    # market adjustment, then competition factor
    return optimal_price * 1.08 * 0.95


class PriceEstimateRequest(BaseModel):
    serviceType: str = Field(..., min_length=1)
    estimatedDuration: float = Field(60, gt=0, le=24 * 60)
    distance: float = Field(0, ge=0)
    urgency: PricingUrgency = "standard"
    contractorScore: float = Field(4.0, ge=1, le=5)
    demandLevel: float = Field(0, ge=0, le=4)
    timeSlot: Optional[datetime] = None


class PayoutRequest(BaseModel):
    totalPrice: float = Field(..., ge=0)
    contractorTier: str = "growing"
    performanceScore: float = Field(0, ge=0, le=1)
    completionTime: float = Field(EXPECTED_COMPLETION_MINUTES, ge=0)
    customerRating: float = Field(0, ge=0, le=5)


class PriceHistoryRequest(BaseModel):
    history: List[Dict[str, float]] = Field(default_factory=list)


@router.post(f"{API_PREFIX}/pricing/estimate")
def estimate_price(request: PriceEstimateRequest):
    return calculate_dynamic_price(
        service_type=request.serviceType.lower(),
        estimated_duration=request.estimatedDuration,
        distance=request.distance,
        urgency=request.urgency,
        contractor_score=request.contractorScore,
        demand_level=request.demandLevel,
        time_slot=request.timeSlot or utcnow(),
    )


@router.post(f"{API_PREFIX}/pricing/payout")
def estimate_payout(request: PayoutRequest):
    return calculate_contractor_payout(
        total_price=request.totalPrice,
        contractor_tier=request.contractorTier,
        performance_score=request.performanceScore,
        completion_time=request.completionTime,
        customer_rating=request.customerRating,
    )


@router.post(f"{API_PREFIX}/pricing/optimal")
def optimal_price(request: PriceHistoryRequest):
    return {"optimalPrice": round(predict_optimal_price(request.history), 2)}
