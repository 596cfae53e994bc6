import logging
import random
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import activity_log, catalog, config, genai_client

logger = logging.getLogger(__name__)

router = APIRouter()

SYSTEM_PROMPT = """You are Leila, the friendly and helpful AI assistant for Leila Home Services. You help customers with:
1. Booking home services (plumbing, electrical, HVAC, cleaning, handyman, painting, landscaping, moving)
2. Pricing information and estimates
3. Tracking existing bookings
4. Answering questions about services
5. Handling urgent requests
6. Providing contractor information
7. Resolving issues and complaints

Your personality:
- Warm, friendly, and professional
- Empathetic and understanding
- Solution-oriented
- Efficient but not rushed
- Occasionally playful but always appropriate

Key information:
- Services available 24/7 for emergencies
- Standard hours: 7 AM - 9 PM
- Pricing varies by service type, duration, and urgency
- All contractors are vetted and insured
- Satisfaction guarantee on all services
- Emergency services have 2x pricing
- Urgent requests (within 4 hours) have 1.5x pricing

Important guidelines:
- Always prioritize customer safety for emergencies
- For urgent issues, offer immediate booking options
- Provide price estimates when possible
- If unsure, offer to connect with human support
- Be transparent about pricing and timing
- Collect necessary information for bookings (service type, address, preferred time)

Contact information:
- Phone: 1-800-HEYLEILA (1-800-439-5345)
- Email: support@heyleila.com
- Emergency line: Available 24/7"""

CHAT_CONTEXTS: Dict[str, Dict[str, Any]] = {
    "booking": {
        "prompt": "Help the customer book a service. Collect: service type, address, preferred date/time, and urgency level.",
        "followUp": [
            "What type of service do you need?",
            "What's your address?",
            "When would you like the service?",
            "Is this urgent or can it wait?",
        ],
    },
    "pricing": {
        "prompt": (
            "Provide pricing information. Base rates: Cleaning $45-80/hr, Handyman $65-100/hr, "
            "Plumbing $85-150/hr, Electrical $95-180/hr, HVAC $120-250/hr. "
            "Mention that final price depends on job complexity."
        ),
        "followUp": [
            "What service are you interested in?",
            "How big is the job?",
            "Do you need it done urgently?",
        ],
    },
    "tracking": {
        "prompt": "Help track their booking. Ask for booking ID or phone number.",
        "followUp": [
            "What's your booking ID?",
            "What phone number did you use to book?",
            "When was your service scheduled?",
        ],
    },
    "urgent": {
        "prompt": "Handle with urgency and care. Assess the situation, offer immediate help, provide emergency contact if needed.",
        "followUp": [
            "What's the emergency?",
            "Is anyone in immediate danger?",
            "What's your address?",
            "Should I dispatch emergency services?",
        ],
    },
    "complaint": {
        "prompt": "Listen empathetically, apologize for the inconvenience, gather details, and offer solutions.",
        "followUp": [
            "I'm sorry to hear that. Can you tell me what happened?",
            "What's your booking ID?",
            "How can we make this right?",
        ],
    },
}

CONTEXTUAL_RESPONSES: Dict[str, List[str]] = {
    "greeting": [
        "Hi there! I'm Leila, your home service assistant. How can I help you today?",
        "Hello! Welcome to Leila Home Services. What can I do for you?",
        "Hey! I'm here to help with all your home service needs. What brings you here today?",
    ],
    "booking_start": [
        "I'd be happy to help you book a service! What type of help do you need?",
        "Let's get you booked! What service are you looking for?",
        "Great! I can help schedule that for you. What kind of service do you need?",
    ],
    "pricing_info": [
        "Our pricing varies by service type and job complexity. What service are you interested in?",
        "I can give you an estimate! Which service would you like pricing for?",
        "Happy to help with pricing! What type of work needs to be done?",
    ],
    "emergency": [
        "I understand this is urgent. Let me help you right away. What's the emergency?",
        "Don't worry, we're here to help. Can you describe the emergency?",
        "I'll prioritize this immediately. What's happening?",
    ],
    "contractor_info": [
        "All our contractors are fully vetted, insured, and background-checked. Would you like to know more?",
        "We only work with the best! Our contractors average 4.8+ stars. Any specific questions?",
        "Our contractors are true professionals. What would you like to know about them?",
    ],
    "thank_you": [
        "You're welcome! Is there anything else I can help you with?",
        "My pleasure! Don't hesitate to ask if you need anything else.",
        "Happy to help! Anything else on your mind?",
    ],
}

# patterns match at a word start so stems like "plumb" or "landscap" still hit
SERVICE_KEYWORDS = {
    "plumbing": [r"\bplumb", r"\bpipe", r"\bleak", r"\bdrain", r"\bfaucet", r"\btoilet"],
    "electrical": [r"\belectric", r"\bwir", r"\boutlet", r"\bbreaker", r"\blight", r"\bpower"],
    "hvac": [r"\bhvac", r"\bac\b", r"\ba/c\b", r"\bair condition", r"\bheating", r"\bfurnace", r"\bthermostat"],
    "cleaning": [r"\bclean", r"\bmaid", r"\bvacuum", r"\bdust", r"\bsanitiz"],
    "handyman": [r"\bhandyman", r"\brepair", r"\bfix", r"\binstall", r"\bmount"],
    "painting": [r"\bpaint", r"\bwall", r"\bceiling", r"\binterior", r"\bexterior"],
    "landscaping": [r"\blandscap", r"\blawn", r"\bgarden", r"\byard", r"\bgrass", r"\btree"],
    "moving": [r"\bmov(e|ing|ers?)\b", r"\brelocat", r"\bpack", r"\btransport", r"\bhaul"],
}
EMERGENCY_PATTERN = re.compile(r"emergency|asap|immediately|right now|urgent")
URGENT_PATTERN = re.compile(r"today|soon|quick|fast")
TIMEFRAME_PATTERN = re.compile(
    r"tomorrow|today|this week|next week|monday|tuesday|wednesday|thursday|friday|saturday|sunday"
)

DEFAULT_REPLY = (
    "I'm here to help you with:\n"
    "• Information about our services\n"
    "• Booking appointments\n"
    "• Pricing details\n"
    "• Availability\n"
    "• Emergency services\n\n"
    "What would you like to know about?"
)


def get_contextual_response(intent: str) -> str:
    return random.choice(CONTEXTUAL_RESPONSES.get(intent) or CONTEXTUAL_RESPONSES["greeting"])


def extract_booking_intent(message: str) -> Dict[str, Optional[str]]:
    text = message.lower()
    service = None
    for name, patterns in SERVICE_KEYWORDS.items():
        if any(re.search(p, text) for p in patterns):
            service = name
            break
    if EMERGENCY_PATTERN.search(text):
        urgency = "emergency"
    elif URGENT_PATTERN.search(text):
        urgency = "urgent"
    else:
        urgency = "standard"
    timeframe = TIMEFRAME_PATTERN.search(text)
    return {"service": service, "urgency": urgency, "timeframe": timeframe.group(0) if timeframe else None}


def _contains(text: str, *words: str) -> bool:
    return any(word in text for word in words)


def keyword_reply(message: str) -> str:
    """Rule based answers used when no model is involved."""
    text = message.lower()
    if _contains(text, "service", "offer"):
        lines = "\n".join(f"• {s['name']}: {s['description']} ({s['priceRange']})" for s in catalog.SERVICES)
        return f"We offer the following home services:\n\n{lines}\n\nWhich service are you interested in?"
    if _contains(text, "book", "schedule", "appointment"):
        return (
            "I can help you book a service! Pick any service to start the booking process. "
            "You'll need to provide your contact information and preferred appointment time."
        )
    if _contains(text, "price", "cost", "how much"):
        lines = "\n".join(f"• {s['name']}: {s['priceRange']}" for s in catalog.SERVICES)
        return (
            f"Here are our typical price ranges:\n\n{lines}\n\n"
            "Final prices depend on the specific work required. We'll provide a detailed quote after assessing your needs."
        )
    if _contains(text, "available", "when", "time"):
        return (
            "We typically have availability within 24-48 hours for most services. Emergency services may be "
            "available sooner. When you book you can select your preferred date and time, and we'll confirm availability."
        )
    if _contains(text, "contact", "phone", "email"):
        return (
            "You can reach us through this chat, at 1-800-HEYLEILA (1-800-439-5345) or support@heyleila.com. "
            "Once you submit a booking request our team will contact you within 2 hours during business hours."
        )
    if _contains(text, "emergency", "urgent"):
        return (
            "For emergency services, select the service you need and mark the request as an emergency. "
            "We prioritize emergency requests and will dispatch a technician as soon as possible."
        )
    if _contains(text, "status", "booking"):
        return (
            "To check your appointment status, please provide your booking reference number or the email "
            "address you used for booking."
        )
    return DEFAULT_REPLY


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""


class ChatRequest(BaseModel):
    message: str = ""
    context: Optional[str] = None
    history: List[ChatMessage] = Field(default_factory=list)


def _context_prompt(context: Optional[str]) -> Optional[str]:
    if not context:
        return None
    preset = CHAT_CONTEXTS.get(context)
    return preset["prompt"] if preset else context


@router.post(f"{config.API_PREFIX}/chat")
def chat(request: ChatRequest):
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    return {"response": keyword_reply(request.message)}


@router.post(f"{config.API_PREFIX}/ai/chat")
def ai_chat(request: ChatRequest):
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if not config.gemini_configured():
        logger.error("Gemini is not configured")
        return JSONResponse({"error": "AI service not configured", "success": False}, status_code=503)

    context = _context_prompt(request.context)
    prompt = f"Context: {context}\n\nUser: {message}" if context else message
    try:
        text = genai_client.generate_text(
            prompt,
            system_instruction=SYSTEM_PROMPT,
            history=[m.model_dump() for m in request.history],
            temperature=0.7,
            max_output_tokens=1000,
        )
    except Exception as exc:
        logger.error("AI chat failed: %s", exc, exc_info=True)
        return JSONResponse({"error": "Failed to process AI request", "success": False}, status_code=502)

    intent = extract_booking_intent(message)
    activity_log.log_ai_action(
        "leila-chat", activity_log.ActionCategory.AI_CHAT_RESPONSE, "Answered chat message",
        {"type": "chat", "id": request.context or "general"}, model=config.MODEL_NAME,
        metadata={"intent": intent},
    )
    follow_up = CHAT_CONTEXTS.get(request.context or "", {}).get("followUp", [])
    return {"response": text, "intent": intent, "followUp": follow_up, "success": True}


@router.get(f"{config.API_PREFIX}/ai/chat")
def ai_chat_status():
    return {"status": "ok", "configured": config.gemini_configured()}
