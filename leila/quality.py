import base64
import binascii
import logging
import re
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import activity_log, ai_json, auth, config, genai_client, storage
from .models import UserRole, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

PASSING_SCORE = 80
CATEGORIES = ("excellent", "good", "needs_improvement", "unacceptable")
DECISIONS = ("approve", "partial_approve", "require_rework", "escalate")

FALLBACK_QUALITY = {
    "score": 70,
    "passed": False,
    "issues": ["Unable to fully analyze photos"],
    "recommendations": ["Please ensure all photos are clear and properly uploaded"],
    "requiresRework": False,
    "category": "needs_improvement",
}

FALLBACK_DISPUTE = {
    "decision": "escalate",
    "reasoning": "Unable to automatically resolve this dispute. Human review required.",
    "paymentAdjustment": 100,
    "recommendations": {
        "forContractor": ["Please provide additional documentation"],
        "forCustomer": ["Please provide specific details about your concerns"],
    },
}

RETAKE_SUGGESTIONS = [
    "Ensure good lighting",
    "Include the entire work area",
    "Keep the camera steady",
    "Clean the lens if needed",
]

STAGE_CHECKS = {
    "before": "Clear documentation of initial conditions",
    "during": "Visible progress on the work",
    "after": "Completed work clearly visible and clean area",
}


class QualityVerificationError(RuntimeError):
    """The model could not be reached or refused to answer."""


class WorkPhoto(BaseModel):
    url: str = ""
    type: Literal["before", "during", "after"] = "after"
    data: Optional[str] = Field(None, description="Base64 encoded JPEG")
    mimeType: str = "image/jpeg"


def _decode_image(data: str) -> bytes:
    if "," in data and data.startswith("data:"):
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Image data must be base64 encoded")


def _ask_model(prompt: str, images=(), json_output: bool = True, model: Optional[str] = None) -> str:
    try:
        return genai_client.generate_text(
            prompt,
            model=model or config.VISION_MODEL,
            images=images,
            temperature=0.2,
            max_output_tokens=2048,
            json_output=json_output,
        )
    except Exception as exc:
        logger.error("Quality model call failed: %s", exc, exc_info=True)
        raise QualityVerificationError("Failed to analyze work quality") from exc


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def category_for_score(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= PASSING_SCORE:
        return "good"
    if score >= 60:
        return "needs_improvement"
    return "unacceptable"


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def normalize_quality_result(raw: Dict[str, Any]) -> Dict[str, Any]:
    score = int(round(_clamp(raw.get("score"), 0, 100, FALLBACK_QUALITY["score"])))
    category = raw.get("category")
    if category not in CATEGORIES:
        category = category_for_score(score)
    return {
        "score": score,
        "passed": score >= PASSING_SCORE,
        "issues": _string_list(raw.get("issues")),
        "recommendations": _string_list(raw.get("recommendations")),
        "requiresRework": bool(raw.get("requiresRework", category == "unacceptable")),
        "category": category,
    }


def analyze_work_photos(photos: List[WorkPhoto], service_type: str, job_description: str) -> Dict[str, Any]:
    """Grade a finished job from its before/during/after photos."""
    counts = {stage: sum(1 for p in photos if p.type == stage) for stage in STAGE_CHECKS}
    prompt = f"""You are an expert home service quality inspector. Analyze these work photos and provide a quality assessment.

Service Type: {service_type}
Job Description: {job_description}

Photos provided:
- Before: {counts['before']} photos
- During: {counts['during']} photos
- After: {counts['after']} photos

Evaluate the following:
1. Work Completion: Is the described work visibly completed?
2. Quality Standards: Does the work meet professional standards?
3. Cleanliness: Is the work area clean and debris-free?
4. Safety: Are there any visible safety concerns?
5. Photo Documentation: Are the photos clear and comprehensive?

Return a JSON response with:
{{
  "score": (0-100),
  "passed": (true if score >= 80),
  "issues": ["list of specific issues found"],
  "recommendations": ["list of specific improvements needed"],
  "requiresRework": (true if major issues found),
  "category": "excellent|good|needs_improvement|unacceptable"
}}"""
    images = [(_decode_image(p.data), p.mimeType) for p in photos if p.data]
    text = _ask_model(prompt, images=images)
    return normalize_quality_result(ai_json.parse_model_json(text, FALLBACK_QUALITY))


def normalize_dispute(raw: Dict[str, Any]) -> Dict[str, Any]:
    decision = raw.get("decision")
    if decision not in DECISIONS:
        decision = "escalate"
    recommendations = raw.get("recommendations") if isinstance(raw.get("recommendations"), dict) else {}
    return {
        "decision": decision,
        "reasoning": str(raw.get("reasoning") or FALLBACK_DISPUTE["reasoning"]),
        "paymentAdjustment": _clamp(raw.get("paymentAdjustment"), 0, 100, 100),
        "recommendations": {
            "forContractor": _string_list(recommendations.get("forContractor")),
            "forCustomer": _string_list(recommendations.get("forCustomer")),
        },
    }


def resolve_dispute(
    contractor_claim: str,
    customer_complaint: str,
    photo_count: int,
    service_type: str,
    agreed_price: float,
    scope_of_work: str,
    previous_interactions: Optional[List[str]] = None,
) -> Dict[str, Any]:
    history = ""
    if previous_interactions:
        history = f"\n- Previous interactions: {', '.join(previous_interactions)}"
    prompt = f"""You are an impartial AI mediator resolving a dispute between a contractor and customer.

Contract Details:
- Service: {service_type}
- Agreed Price: ${agreed_price}
- Scope of Work: {scope_of_work}

Contractor's Position: {contractor_claim}
Customer's Complaint: {customer_complaint}

Evidence:
- {photo_count} photos provided{history}

Based on the evidence and both parties' statements, provide a fair resolution.
Consider industry standards, reasonableness, and fairness to both parties.

Return a JSON response with:
{{
  "decision": "approve|partial_approve|require_rework|escalate",
  "reasoning": "detailed explanation of the decision",
  "paymentAdjustment": (percentage 0-100 of original payment),
  "recommendations": {{
    "forContractor": ["specific actions for contractor"],
    "forCustomer": ["specific actions for customer"]
  }}
}}"""
    text = _ask_model(prompt, model=config.ANALYSIS_MODEL)
    return normalize_dispute(ai_json.parse_model_json(text, FALLBACK_DISPUTE))


def generate_improvement_plan(contractor_id: str, recent_jobs: List[Dict[str, Any]], service_type: str) -> Dict[str, Any]:
    if not recent_jobs:
        raise ValueError("At least one recent job is required")
    avg_score = sum(float(job.get("score", 0)) for job in recent_jobs) / len(recent_jobs)
    all_issues = [issue for job in recent_jobs for issue in job.get("issues", [])]
    fallback = {
        "overallRating": avg_score,
        "strengths": ["Consistent work completion"],
        "areasForImprovement": ["Photo documentation quality", "Work area cleanup"],
        "trainingRecommendations": ["Professional photography for contractors course"],
        "certificationSuggestions": [f"{service_type} Master Certification"],
    }
    prompt = f"""Analyze this contractor's performance and provide improvement recommendations.

Contractor: {contractor_id}
Service Type: {service_type}
Average Quality Score: {avg_score:.1f}
Recent Issues: {', '.join(all_issues) or 'none reported'}

Provide personalized recommendations for improvement including:
1. Identified strengths to build on
2. Specific areas needing improvement
3. Training courses or resources
4. Relevant certifications to pursue

Return JSON with keys overallRating (number), strengths, areasForImprovement,
trainingRecommendations and certificationSuggestions (arrays of strings)."""
    plan = ai_json.parse_model_json(_ask_model(prompt, model=config.ANALYSIS_MODEL), fallback)
    merged = dict(fallback)
    for key in fallback:
        if key == "overallRating":
            merged[key] = _clamp(plan.get(key), 0, 100, avg_score)
        elif _string_list(plan.get(key)):
            merged[key] = _string_list(plan.get(key))
    return merged


def analyze_photo_realtime(image_bytes: bytes, expected_content: str, stage: str,
                           mime_type: str = "image/jpeg") -> Dict[str, Any]:
    """Quick framing check while a job is underway.

    Model errors never block the contractor: the photo is accepted as is.
    """
    prompt = (
        f"Analyze this {stage} photo for a {expected_content} job.\n\n"
        "Check for:\n"
        "1. Photo clarity and lighting\n"
        "2. Proper framing showing relevant work area\n"
        f"3. {STAGE_CHECKS.get(stage, '')}\n\n"
        "If the photo should be taken again, say 'retake' and explain why. "
        "Provide immediate feedback to help the contractor take better photos if needed."
    )
    try:
        text = _ask_model(prompt, images=[(image_bytes, mime_type)], json_output=False)
    except QualityVerificationError:
        return {"isAcceptable": True, "feedback": "Photo uploaded successfully", "retakeRequired": False, "suggestions": []}
    lowered = text.lower()
    acceptable = "retake" not in lowered and "unclear" not in lowered
    return {
        "isAcceptable": acceptable,
        "feedback": "Photo looks good!" if acceptable else "Photo needs improvement",
        "retakeRequired": not acceptable,
        "suggestions": [] if acceptable else list(RETAKE_SUGGESTIONS),
    }


_SCORE = re.compile(r"score[:\s]+(\d+)", re.IGNORECASE)
_ISSUE = re.compile(r"issue|problem|concern|violation|incorrect", re.IGNORECASE)
_RECOMMEND = re.compile(r"recommend|suggest|should|improve", re.IGNORECASE)


def parse_verification_text(text: str) -> Dict[str, Any]:
    """Pull a score, issues and recommendations out of a prose answer."""
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    match = _SCORE.search(text or "")
    score = int(match.group(1)) if match else 75
    issues = [line for line in lines if _ISSUE.search(line)][:3]
    recommendations = [line for line in lines if _RECOMMEND.search(line)][:3]
    return {
        "score": max(0, min(100, score)),
        "summary": " ".join(lines[:2])[:200] or "Analysis complete",
        "issues": issues or ["No issues found"],
        "recommendations": recommendations or ["Work appears satisfactory"],
    }


class AnalyzeRequest(BaseModel):
    photos: List[WorkPhoto] = Field(..., min_length=1)
    serviceType: str
    jobDescription: str = ""
    bookingId: Optional[str] = None


class ContractDetails(BaseModel):
    serviceType: str
    agreedPrice: float = Field(..., ge=0)
    scopeOfWork: str = ""


class DisputeRequest(BaseModel):
    bookingId: Optional[str] = None
    contractorClaim: str
    customerComplaint: str
    workPhotos: List[WorkPhoto] = Field(default_factory=list)
    contractDetails: ContractDetails
    previousInteractions: Optional[List[str]] = None


class JobScore(BaseModel):
    score: float = Field(..., ge=0, le=100)
    issues: List[str] = Field(default_factory=list)


class ImprovementRequest(BaseModel):
    contractorId: str
    recentJobs: List[JobScore] = Field(default_factory=list)
    serviceType: str


class PhotoCheckRequest(BaseModel):
    imageData: str
    expectedContent: str
    stage: Literal["before", "during", "after"] = "during"


class VerifyPhotoRequest(BaseModel):
    imageData: str = ""
    prompt: str = ""


def _require_ai():
    if not config.gemini_configured():
        logger.error("Gemini is not configured")
        raise HTTPException(status_code=503, detail="AI verification service not configured")


def _model_failure():
    return JSONResponse({"error": "Failed to verify work quality", "success": False}, status_code=502)


@router.post(f"{config.API_PREFIX}/quality/analyze")
def analyze(request: AnalyzeRequest, user=Depends(auth.require_permission())):
    if request.bookingId:
        booking = storage.get_document("bookings", request.bookingId)
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        if booking.get("contractorId") != user["uid"] and not auth.is_admin(user):
            raise HTTPException(status_code=403, detail="Only the assigned contractor can submit a quality check")
    _require_ai()
    try:
        result = analyze_work_photos(request.photos, request.serviceType, request.jobDescription)
    except QualityVerificationError:
        return _model_failure()

    resource = {"type": "booking", "id": request.bookingId or "unknown"}
    if request.bookingId:
        storage.update_document("bookings", request.bookingId, {
            "qualityCheck": {**result, "checkedAt": utcnow()},
            "updatedAt": utcnow(),
        })
    activity_log.log_ai_action(
        "quality-inspector", activity_log.ActionCategory.AI_IMAGE_ANALYSIS,
        f"Quality check scored {result['score']}", resource, model=config.VISION_MODEL,
        confidence=result["score"] / 100, metadata={"category": result["category"], "requestedBy": user["uid"]},
    )
    return result


@router.post(f"{config.API_PREFIX}/quality/dispute")
def dispute(request: DisputeRequest, user=Depends(auth.require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN))):
    _require_ai()
    details = request.contractDetails
    try:
        resolution = resolve_dispute(
            request.contractorClaim, request.customerComplaint, len(request.workPhotos),
            details.serviceType, details.agreedPrice, details.scopeOfWork, request.previousInteractions,
        )
    except QualityVerificationError:
        return _model_failure()
    activity_log.log_ai_action(
        "dispute-mediator", activity_log.ActionCategory.AI_DECISION_MADE,
        f"Dispute resolution: {resolution['decision']}",
        {"type": "booking", "id": request.bookingId or "unknown"}, model=config.ANALYSIS_MODEL,
        reasoning=resolution["reasoning"],
        status=activity_log.ActionStatus.PENDING_APPROVAL,
    )
    return resolution


@router.post(f"{config.API_PREFIX}/quality/improvement-plan")
def improvement_plan(request: ImprovementRequest, user=Depends(auth.current_user)):
    if not request.recentJobs:
        raise HTTPException(status_code=400, detail="recentJobs must not be empty")
    _require_ai()
    try:
        return generate_improvement_plan(
            request.contractorId, [job.model_dump() for job in request.recentJobs], request.serviceType,
        )
    except QualityVerificationError:
        return _model_failure()


@router.post(f"{config.API_PREFIX}/quality/photo-check")
def photo_check(request: PhotoCheckRequest, user=Depends(auth.current_user)):
    _require_ai()
    return analyze_photo_realtime(_decode_image(request.imageData), request.expectedContent, request.stage)


@router.post(f"{config.API_PREFIX}/quality/verify-photo")
def verify_photo(request: VerifyPhotoRequest):
    if not request.imageData or not request.prompt:
        raise HTTPException(status_code=400, detail="Image data and prompt are required")
    _require_ai()
    image = _decode_image(request.imageData)
    try:
        text = _ask_model(request.prompt, images=[(image, "image/jpeg")], json_output=False)
    except QualityVerificationError:
        return JSONResponse({"error": "Failed to verify photo", "success": False}, status_code=502)
    return {"success": True, "analysis": parse_verification_text(text), "rawResponse": text}
