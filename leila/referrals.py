"""Referral program: codes, tiers, rewards and conversion tracking."""
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from . import activity_log, auth, storage
from .config import API_PREFIX, PUBLIC_BASE_URL
from .models import UserRole, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

CODES = "referral_codes"
REFERRALS = "referrals"

OwnerType = Literal["user", "contractor"]
ReferralType = Literal["user", "contractor", "cross"]

DEFAULT_PROGRAM: Dict[str, Any] = {
    "userReferral": {
        "referrerReward": 20,
        "refereeDiscount": 20,
        "validityDays": 90,
        "minimumBookingAmount": 100,
    },
    "contractorReferral": {
        "referrerBonus": 500,
        "refereeBonus": 100,
        "milestoneBonuses": [
            {"jobs": 10, "bonus": 100},
            {"jobs": 25, "bonus": 250},
            {"jobs": 50, "bonus": 500},
            {"jobs": 100, "bonus": 1000},
        ],
    },
    "crossReferral": {
        "userToContractor": {"userReward": 50, "contractorBonus": 100},
        "contractorToUser": {"contractorReward": 10, "userDiscount": 15},
    },
}

REFERRAL_TIERS: Dict[str, Dict[str, Any]] = {
    "bronze": {
        "referralsNeeded": 3,
        "perks": ["5% bonus on all referral rewards"],
        "color": "#CD7F32",
    },
    "silver": {
        "referralsNeeded": 10,
        "perks": ["10% bonus on all referral rewards", "Priority support"],
        "color": "#C0C0C0",
    },
    "gold": {
        "referralsNeeded": 25,
        "perks": ["20% bonus on all referral rewards", "VIP support", "Early access to features"],
        "color": "#FFD700",
    },
    "platinum": {
        "referralsNeeded": 50,
        "perks": ["30% bonus on all referral rewards", "Personal account manager", "Custom referral codes"],
        "color": "#E5E4E2",
    },
}
TIER_BONUSES = {"bronze": 0.05, "silver": 0.10, "gold": 0.20, "platinum": 0.30}

CODE_ALPHABET = string.ascii_uppercase + string.digits
CONTRACTOR_QUALIFYING_JOBS = 10
CROSS_CONTRACTOR_QUALIFYING_JOBS = 5


def generate_referral_code(owner_type: OwnerType) -> str:
    prefix = "U" if owner_type == "user" else "C"
    return prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(6))


def calculate_referral_tier(referral_count: int) -> str:
    if referral_count >= 50:
        return "platinum"
    if referral_count >= 25:
        return "gold"
    if referral_count >= 10:
        return "silver"
    if referral_count >= 3:
        return "bronze"
    return "none"


def calculate_tier_bonus(base_amount: float, tier: str) -> float:
    return base_amount * (1 + TIER_BONUSES.get(tier, 0))


def validate_referral_code(code: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    expires_at = code.get("expiresAt")
    if expires_at and now > expires_at:
        return {"valid": False, "reason": "Code has expired"}
    max_uses = code.get("maxUses")
    if max_uses and code.get("uses", 0) >= max_uses:
        return {"valid": False, "reason": "Code has reached maximum uses"}
    return {"valid": True}


def calculate_referral_reward(tracking: Dict[str, Any], program: Dict[str, Any] = DEFAULT_PROGRAM) -> float:
    kind = tracking.get("type")
    if kind == "user":
        return program["userReferral"]["referrerReward"]
    if kind == "contractor":
        completed = sum(1 for m in tracking.get("milestones", []) if m.get("completed"))
        bonuses = program["contractorReferral"]["milestoneBonuses"]
        if 1 <= completed <= len(bonuses):
            return bonuses[completed - 1]["bonus"]
        return program["contractorReferral"]["referrerBonus"]
    if kind == "cross":
        return program["crossReferral"]["userToContractor"]["userReward"]
    return 0


def share_messages(code: str, owner_type: OwnerType) -> Dict[str, str]:
    link = f"{PUBLIC_BASE_URL}/r/{code}"
    if owner_type == "user":
        return {
            "sms": f"Get $20 off your first home service with HeyLeila! Use my code {code} or sign up here: {link}",
            "email": (
                "I've been using HeyLeila for home services and thought you'd love it too! "
                f"Get $20 off your first booking with my referral code: {code}. Sign up at {link}"
            ),
            "social": (
                "Need a plumber, electrician, or cleaner? Get $20 off your first service with "
                f"@HeyLeila using my code {code}! Same-day service available {link}"
            ),
        }
    return {
        "sms": f"Join HeyLeila as a contractor and earn $100 after your first job! Use my referral code {code}: {link}",
        "email": (
            "I'm earning great money as a HeyLeila contractor. You can too! Get a $100 bonus after "
            f"completing your first job. Apply with my code {code} at {link}"
        ),
        "social": (
            "Contractors! Join me on @HeyLeila and earn $100 bonus after your first job. Flexible hours, "
            f"instant payouts, great customers. Use code {code} {link}"
        ),
    }


def _owner_type(role: Optional[str]) -> OwnerType:
    return "contractor" if role == UserRole.CONTRACTOR.value else "user"


def _referral_type(referrer_type: OwnerType, referee_type: OwnerType) -> ReferralType:
    if referrer_type == referee_type:
        return referrer_type
    return "cross"


def _milestones(kind: ReferralType, referrer_type: OwnerType) -> List[Dict[str, Any]]:
    if kind == "contractor":
        return [
            {"requirement": f"{m['jobs']}_jobs", "jobs": m["jobs"], "completed": False}
            for m in DEFAULT_PROGRAM["contractorReferral"]["milestoneBonuses"]
        ]
    if kind == "cross" and referrer_type == "user":
        return [{"requirement": f"{CROSS_CONTRACTOR_QUALIFYING_JOBS}_jobs",
                 "jobs": CROSS_CONTRACTOR_QUALIFYING_JOBS, "completed": False}]
    return [{"requirement": "first_booking", "completed": False}]


def get_or_create_code(owner_id: str, role: Optional[str]) -> Dict[str, Any]:
    existing = storage.query_documents(CODES, [("ownerId", "==", owner_id)], limit=1)
    if existing:
        return existing[0]
    owner_type = _owner_type(role)
    code = generate_referral_code(owner_type)
    while storage.get_document(CODES, code):
        code = generate_referral_code(owner_type)
    record = {"code": code, "ownerId": owner_id, "ownerType": owner_type, "created": utcnow(), "uses": 0}
    storage.set_document(CODES, code, record)
    return {**record, "id": code}


def _tier_for(referrer_id: str) -> str:
    qualified = storage.query_documents(
        REFERRALS, [("referrerId", "==", referrer_id), ("status", "in", ["qualified", "paid"])]
    )
    return calculate_referral_tier(len(qualified))


def _qualify(referral: Dict[str, Any], milestones: List[Dict[str, Any]]) -> Dict[str, Any]:
    tracking = {**referral, "milestones": milestones}
    amount = round(calculate_tier_bonus(calculate_referral_reward(tracking), _tier_for(referral["referrerId"])), 2)
    update = {"milestones": milestones, "status": "qualified", "qualifiedAt": utcnow(), "amount": amount}
    storage.update_document(REFERRALS, referral["id"], update)
    activity_log.log_system_action(
        "referrals", activity_log.ActionCategory.PROMOTION_APPLIED, "Referral qualified",
        {"type": "referral", "id": referral["id"]}, metadata={"amount": amount, "type": referral["type"]},
    )
    return {**referral, **update}


def record_signup(code: str, referee_id: str, referee_role: Optional[str]) -> Dict[str, Any]:
    record = storage.get_document(CODES, code.upper())
    if not record:
        raise HTTPException(status_code=404, detail="Referral code not found")
    verdict = validate_referral_code(record)
    if not verdict["valid"]:
        raise HTTPException(status_code=400, detail=verdict["reason"])
    if record["ownerId"] == referee_id:
        raise HTTPException(status_code=400, detail="You cannot use your own referral code")
    if storage.query_documents(REFERRALS, [("refereeId", "==", referee_id)], limit=1):
        raise HTTPException(status_code=409, detail="Referral already recorded for this account")

    kind = _referral_type(record["ownerType"], _owner_type(referee_role))
    referral = {
        "code": record["code"],
        "referrerId": record["ownerId"],
        "refereeId": referee_id,
        "type": kind,
        "status": "pending",
        "createdAt": utcnow(),
        "amount": 0,
        "milestones": _milestones(kind, record["ownerType"]),
        "expiresAt": utcnow() + timedelta(days=DEFAULT_PROGRAM["userReferral"]["validityDays"]),
    }
    referral_id = storage.add_document(REFERRALS, referral)
    storage.increment_fields(CODES, record["code"], {"uses": 1})
    return {**referral, "id": referral_id}


def _pending_for(referee_id: str) -> List[Dict[str, Any]]:
    return storage.query_documents(REFERRALS, [("refereeId", "==", referee_id), ("status", "==", "pending")])


def _tracked_for(referee_id: str) -> List[Dict[str, Any]]:
    return storage.query_documents(
        REFERRALS, [("refereeId", "==", referee_id), ("status", "in", ["pending", "qualified", "paid"])]
    )


def _award_milestones(referral: Dict[str, Any], reached: List[Dict[str, Any]],
                      milestones: List[Dict[str, Any]]) -> Dict[str, Any]:
    bonuses = {m["jobs"]: m["bonus"] for m in DEFAULT_PROGRAM["contractorReferral"]["milestoneBonuses"]}
    tier = _tier_for(referral["referrerId"])
    bonus = round(sum(calculate_tier_bonus(bonuses.get(m["jobs"], 0), tier) for m in reached), 2)
    amount = round(referral.get("amount", 0) + bonus, 2)
    storage.update_document(REFERRALS, referral["id"], {"milestones": milestones, "amount": amount})
    activity_log.log_system_action(
        "referrals", activity_log.ActionCategory.PROMOTION_APPLIED, "Referral milestone reached",
        {"type": "referral", "id": referral["id"]},
        metadata={"bonus": bonus, "jobs": [m["jobs"] for m in reached]},
    )
    return {**referral, "milestones": milestones, "amount": amount}


def record_first_booking(referee_id: str) -> List[Dict[str, Any]]:
    qualified = []
    for referral in _pending_for(referee_id):
        milestones = referral.get("milestones", [])
        if not any(m["requirement"] == "first_booking" for m in milestones):
            continue
        if referral.get("expiresAt") and referral["expiresAt"] < utcnow():
            storage.update_document(REFERRALS, referral["id"], {"status": "expired"})
            continue
        done = [{**m, "completed": True, "completedAt": utcnow()} for m in milestones]
        qualified.append(_qualify(referral, done))
    return qualified


def record_jobs_completed(referee_id: str, completed_jobs: int) -> List[Dict[str, Any]]:
    updated = []
    for referral in _tracked_for(referee_id):
        milestones, reached = [], []
        for m in referral.get("milestones", []):
            if "jobs" in m and not m["completed"] and completed_jobs >= m["jobs"]:
                m = {**m, "completed": True, "completedAt": utcnow()}
                reached.append(m)
            milestones.append(m)
        if not reached:
            continue
        if referral["status"] != "pending":
            # the 25, 50 and 100 job bonuses land after the referral has already qualified
            updated.append(_award_milestones(referral, reached, milestones))
            continue
        threshold = CONTRACTOR_QUALIFYING_JOBS if referral["type"] == "contractor" else CROSS_CONTRACTOR_QUALIFYING_JOBS
        if completed_jobs >= threshold:
            updated.append(_qualify(referral, milestones))
        else:
            storage.update_document(REFERRALS, referral["id"], {"milestones": milestones})
            updated.append({**referral, "milestones": milestones})
    return updated


def summary_for(owner_id: str, role: Optional[str]) -> Dict[str, Any]:
    code = get_or_create_code(owner_id, role)
    referrals = storage.query_documents(REFERRALS, [("referrerId", "==", owner_id)])
    qualified = [r for r in referrals if r["status"] in ("qualified", "paid")]
    tier = calculate_referral_tier(len(qualified))
    return {
        "code": code["code"],
        "link": f"{PUBLIC_BASE_URL}/r/{code['code']}",
        "uses": code.get("uses", 0),
        "totalReferrals": len(referrals),
        "qualifiedReferrals": len(qualified),
        "pendingReferrals": sum(1 for r in referrals if r["status"] == "pending"),
        "earned": round(sum(r.get("amount", 0) for r in qualified), 2),
        "tier": tier,
        "tierDetails": REFERRAL_TIERS.get(tier),
        "shareMessages": share_messages(code["code"], code["ownerType"]),
    }


class TrackConversionRequest(BaseModel):
    code: Optional[str] = None
    refereeId: str = Field(..., min_length=1)
    conversionType: Literal["signup", "first_booking", "job_completed"]
    completedJobs: int = Field(0, ge=0)


@router.post(f"{API_PREFIX}/referrals/code")
def my_code(user=Depends(auth.require_permission())):
    code = get_or_create_code(user["uid"], user.get("role"))
    return {"code": code["code"], "shareMessages": share_messages(code["code"], code["ownerType"])}


@router.get(f"{API_PREFIX}/referrals/validate/{{code}}")
def validate_code(code: str):
    record = storage.get_document(CODES, code.upper())
    if not record:
        return {"valid": False, "reason": "Code not found"}
    return validate_referral_code(record)


@router.get(f"{API_PREFIX}/referrals/summary")
def my_summary(user=Depends(auth.current_user)):
    return summary_for(user["uid"], user.get("role"))


@router.get(f"{API_PREFIX}/referrals/tiers")
def tiers():
    return {"tiers": REFERRAL_TIERS, "program": DEFAULT_PROGRAM}


@router.post(f"{API_PREFIX}/referrals/track")
def track_conversion(request: TrackConversionRequest, user=Depends(auth.require_permission())):
    if request.conversionType == "signup":
        if not request.code:
            raise HTTPException(status_code=400, detail="Referral code is required for signups")
        if request.refereeId != user["uid"] and not auth.is_admin(user):
            raise HTTPException(status_code=403, detail="Cannot record a signup for another account")
        referee = storage.get_document("users", request.refereeId) or {}
        return {"referral": record_signup(request.code, request.refereeId, referee.get("role", user.get("role")))}
    if not auth.is_admin(user):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    if request.conversionType == "first_booking":
        return {"referrals": record_first_booking(request.refereeId)}
    return {"referrals": record_jobs_completed(request.refereeId, request.completedJobs)}
