import logging
import time

import stripe
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from google.api_core import exceptions as google_exceptions

from . import __version__, auth, config, storage
from .models import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

HEALTH_COLLECTION = "_health_check"


def _now() -> str:
    return utcnow().isoformat()


@router.get(f"{config.API_PREFIX}/health")
def health():
    return {"status": "ok", "version": __version__, "environment": config.ENVIRONMENT, "timestamp": _now()}


@router.get(f"{config.API_PREFIX}/health/firestore")
def firestore_health():
    started = time.monotonic()
    try:
        storage.set_document(HEALTH_COLLECTION, "test", {"timestamp": utcnow(), "test": True})
        doc = storage.get_document(HEALTH_COLLECTION, "test")
        storage.delete_document(HEALTH_COLLECTION, "test")
    except google_exceptions.PermissionDenied as exc:
        logger.error("Firestore health check denied: %s", exc)
        return JSONResponse({
            "status": "error",
            "error": "Permission denied",
            "message": "Firestore security rules or IAM are blocking access",
            "details": {"hint": "Check the service account roles for Firestore"},
        }, status_code=403)
    except Exception as exc:
        logger.error("Firestore health check failed: %s", exc, exc_info=True)
        return JSONResponse({
            "status": "error",
            "error": type(exc).__name__,
            "message": "Failed to connect to Firestore",
        }, status_code=500)

    if not doc:
        return JSONResponse({
            "status": "error",
            "error": "Could not verify document creation",
            "message": "Failed to connect to Firestore",
        }, status_code=500)
    return {
        "status": "healthy",
        "message": "Firestore connection successful",
        "timestamp": _now(),
        "latency": int((time.monotonic() - started) * 1000),
        "details": {"canRead": True, "canWrite": True, "canDelete": True},
    }


@router.get(f"{config.API_PREFIX}/health/stripe")
def stripe_health():
    if not config.stripe_configured():
        return {
            "status": "warning",
            "message": "Stripe configuration incomplete",
            "configured": False,
            "timestamp": _now(),
            "details": {
                "hasSecretKey": bool(config.STRIPE_SECRET_KEY),
                "hasWebhookSecret": bool(config.STRIPE_WEBHOOK_SECRET),
                "hint": "Add STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET to your environment",
            },
        }
    stripe.api_key = config.STRIPE_SECRET_KEY
    try:
        account = stripe.Account.retrieve()
    except stripe.AuthenticationError:
        logger.error("Stripe health check: invalid API key")
        return JSONResponse({
            "status": "error",
            "error": "Authentication failed",
            "message": "Invalid Stripe API key",
            "configured": False,
        }, status_code=401)
    except stripe.StripeError as exc:
        logger.error("Stripe health check failed: %s", exc)
        return JSONResponse({
            "status": "error",
            "error": type(exc).__name__,
            "message": "Stripe health check failed",
            "configured": True,
            "details": {"code": exc.code, "statusCode": exc.http_status},
        }, status_code=500)
    return {
        "status": "healthy",
        "message": "Stripe connection successful",
        "configured": True,
        "timestamp": _now(),
        "details": {
            "accountId": account.id,
            "chargesEnabled": account.charges_enabled,
            "payoutsEnabled": account.payouts_enabled,
            "country": account.country,
            "defaultCurrency": account.default_currency,
            "hasWebhookSecret": bool(config.STRIPE_WEBHOOK_SECRET),
        },
    }


@router.get(f"{config.API_PREFIX}/health/auth")
def auth_health():
    checks = {"jwt": False, "firebaseAdmin": False}
    errors = {}
    try:
        claims = auth.verify_token(auth.generate_token("health-check", None, "customer"))
        checks["jwt"] = claims.get("uid") == "health-check"
    except Exception as exc:
        errors["jwt"] = str(exc)
    try:
        auth._firebase_app()
        checks["firebaseAdmin"] = True
    except Exception as exc:
        errors["firebaseAdmin"] = type(exc).__name__
    healthy = all(checks.values())
    body = {
        "status": "healthy" if healthy else "error",
        "timestamp": _now(),
        "checks": checks,
        "errors": errors,
    }
    return body if healthy else JSONResponse(body, status_code=500)


@router.get(f"{config.API_PREFIX}/health/ai")
def ai_health():
    configured = config.gemini_configured()
    return {
        "status": "healthy" if configured else "warning",
        "configured": configured,
        "backend": "gemini-api" if config.GEMINI_API_KEY else "vertex-ai",
        "models": {
            "chat": config.MODEL_NAME,
            "vision": config.VISION_MODEL,
            "analysis": config.ANALYSIS_MODEL,
            "image": config.IMAGE_MODEL,
        },
        "timestamp": _now(),
    }
