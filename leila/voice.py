import base64
import binascii
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from dateutil import parser as date_parser
from fastapi import APIRouter, Body, Depends, HTTPException, Path
from fastapi.responses import JSONResponse
from google.cloud import speech, texttospeech
from pydantic import BaseModel, Field, ValidationError

from . import auth, bookings, catalog, chat, geocode
from .config import API_PREFIX
from .models import Address, BookingRequest, ServiceCategory, Urgency, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_TIMEOUT = timedelta(minutes=20)
MAX_TTS_CHARS = 5000
GREETING = "Hi, I'm Leila, your home services assistant. Let's get your booking started."
DEFAULT_VOICE = "leila-friendly"

VOICES: List[Dict[str, Any]] = [
    {
        "id": "leila-flirty",
        "name": "Leila (Flirty)",
        "description": "Cute, playful, and charming voice",
        "tts": {"name": "en-US-Neural2-F", "rate": 1.05, "pitch": 2.0},
    },
    {
        "id": "leila-professional",
        "name": "Leila (Professional)",
        "description": "Clear and professional tone",
        "tts": {"name": "en-US-Neural2-C", "rate": 1.0, "pitch": 0.0},
    },
    {
        "id": "leila-friendly",
        "name": "Leila (Friendly)",
        "description": "Warm and welcoming voice",
        "tts": {"name": "en-US-Neural2-F", "rate": 1.02, "pitch": 1.0},
    },
    {
        "id": "leila-excited",
        "name": "Leila (Excited)",
        "description": "Energetic and enthusiastic",
        "tts": {"name": "en-US-Neural2-H", "rate": 1.15, "pitch": 3.0},
    },
]
VOICES_BY_ID = {voice["id"]: voice for voice in VOICES}

# keyword stems that chat intent detection does not cover
EXTRA_SERVICE_KEYWORDS = {
    ServiceCategory.PEST_CONTROL: ("pest", "termite", "roach", "rodent", "mice", "bug"),
    ServiceCategory.APPLIANCE_REPAIR: ("appliance", "washer", "dryer", "fridge", "dishwasher", "oven"),
    ServiceCategory.ROOFING: ("roof", "shingle", "gutter"),
    ServiceCategory.FLOORING: ("floor", "tile", "carpet", "hardwood"),
    ServiceCategory.CARPENTRY: ("carpent", "cabinet", "deck", "woodwork"),
    ServiceCategory.SOLAR: ("solar", "panel"),
}
INTENT_CATEGORIES = {
    "plumbing": ServiceCategory.PLUMBING,
    "electrical": ServiceCategory.ELECTRICAL,
    "hvac": ServiceCategory.HVAC,
    "cleaning": ServiceCategory.CLEANING,
    "handyman": ServiceCategory.HANDYMAN,
    "painting": ServiceCategory.PAINTING,
    "landscaping": ServiceCategory.GARDENING,
}
TIME_WORDS = {"morning": "09:00", "noon": "12:00", "afternoon": "13:00", "evening": "17:00"}
_ADDRESS = re.compile(
    r"^\s*(?P<street>[^,]+),\s*(?P<city>[^,]+),\s*(?P<state>[A-Za-z]{2}|[A-Za-z ]{3,})\s+(?P<zip>\d{5}(?:-\d{4})?)"
)


class VoiceAssistantError(RuntimeError):
    """Base error for voice assistant failures."""


class TTSUnavailableError(VoiceAssistantError):
    """Raised when Text-to-Speech is unavailable."""


_sessions: Dict[str, Dict[str, Any]] = {}
_tts_client: Optional[texttospeech.TextToSpeechClient] = None
_stt_client: Optional[speech.SpeechClient] = None


def _tts() -> texttospeech.TextToSpeechClient:
    global _tts_client
    if _tts_client is None:
        _tts_client = texttospeech.TextToSpeechClient()
    return _tts_client


def _stt() -> speech.SpeechClient:
    global _stt_client
    if _stt_client is None:
        _stt_client = speech.SpeechClient()
    return _stt_client


def _cleanup_sessions() -> None:
    now = utcnow()
    expired = [sid for sid, data in _sessions.items() if now - data["created_at"] > SESSION_TIMEOUT]
    for sid in expired:
        _sessions.pop(sid, None)


def synthesize(text: str, voice_id: str = DEFAULT_VOICE) -> str:
    persona = VOICES_BY_ID.get(voice_id, VOICES_BY_ID[DEFAULT_VOICE])["tts"]
    try:
        response = _tts().synthesize_speech(
            input=texttospeech.SynthesisInput(text=text),
            voice=texttospeech.VoiceSelectionParams(
                language_code="en-US",
                name=persona["name"],
                ssml_gender=texttospeech.SsmlVoiceGender.FEMALE,
            ),
            audio_config=texttospeech.AudioConfig(
                audio_encoding=texttospeech.AudioEncoding.MP3,
                speaking_rate=persona["rate"],
                pitch=persona["pitch"],
            ),
        )
    except Exception as exc:
        logger.error("Text-to-Speech synthesis failed: %s", exc, exc_info=True)
        raise TTSUnavailableError("Text-to-Speech is unavailable.") from exc
    return base64.b64encode(response.audio_content).decode("utf-8")


def transcribe(audio_base64: str) -> str:
    if not audio_base64:
        raise HTTPException(status_code=400, detail="No audio payload received.")
    try:
        audio_content = base64.b64decode(audio_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Audio must be base64 encoded.")
    recognition = speech.RecognitionConfig(
        encoding=speech.RecognitionConfig.AudioEncoding.WEBM_OPUS,
        language_code="en-US",
        enable_automatic_punctuation=True,
    )
    response = _stt().recognize(config=recognition, audio=speech.RecognitionAudio(content=audio_content))
    for result in response.results:
        if result.alternatives:
            return result.alternatives[0].transcript.strip()
    return ""


def parse_service(utterance: str) -> Optional[ServiceCategory]:
    intent = chat.extract_booking_intent(utterance)["service"]
    if intent in INTENT_CATEGORIES:
        return INTENT_CATEGORIES[intent]
    lower = utterance.lower()
    for category, stems in EXTRA_SERVICE_KEYWORDS.items():
        if any(stem in lower for stem in stems):
            return category
    return None


def _address_from_text(text: str) -> Optional[Dict[str, str]]:
    match = _ADDRESS.match(text)
    if not match:
        return None
    return {
        "street": match.group("street").strip(),
        "city": match.group("city").strip(),
        "state": match.group("state").strip(),
        "zipCode": match.group("zip"),
    }


def parse_address(utterance: str) -> Optional[Dict[str, Any]]:
    parsed = _address_from_text(utterance)
    resolved = geocode.geocode_address(utterance)
    if parsed is None and resolved:
        parsed = _address_from_text(resolved["formattedAddress"])
    if parsed is None:
        return None
    if resolved:
        parsed["coordinates"] = {"lat": resolved["lat"], "lng": resolved["lng"]}
    return parsed


def parse_date(utterance: str, today: Optional[date] = None) -> Optional[str]:
    today = today or utcnow().date()
    lower = utterance.lower()
    if "today" in lower:
        return today.isoformat()
    if "tomorrow" in lower:
        return (today + timedelta(days=1)).isoformat()
    try:
        value = date_parser.parse(
            utterance, fuzzy=True, default=datetime(today.year, today.month, today.day)
        ).date()
    except (ValueError, OverflowError):
        return None
    if value < today:
        return None
    return value.isoformat()


def parse_time(utterance: str) -> Optional[str]:
    lower = utterance.lower()
    for word, slot in TIME_WORDS.items():
        if word in lower:
            return slot
    if not re.search(r"\d", lower):
        return None
    try:
        value = date_parser.parse(utterance, fuzzy=True).time()
    except (ValueError, OverflowError):
        return None
    return value.strftime("%H:%M")


def parse_urgency(utterance: str) -> Urgency:
    lower = utterance.lower()
    if re.search(r"emergency|asap|immediately|right now", lower):
        return Urgency.EMERGENCY
    if re.search(r"urgent|today|soon|quick", lower):
        return Urgency.HIGH
    if re.search(r"whenever|no rush|flexible|not urgent|low", lower):
        return Urgency.LOW
    return Urgency.NORMAL


FLOW: List[Dict[str, Any]] = [
    {
        "slot": "service",
        "question": "What do you need help with today? For example plumbing, electrical, cleaning or HVAC.",
        "retry": "Sorry, I didn't catch the kind of service. Could you describe the problem again?",
        "parse": parse_service,
        "ack": lambda value: f"Got it, {value.value.replace('_', ' ')}.",
    },
    {
        "slot": "address",
        "question": "What's the address for the job, including city, state and zip code?",
        "retry": "I couldn't place that address. Please say the street, city, state and zip code.",
        "parse": parse_address,
        "ack": lambda value: f"Thanks, {value['street']} in {value['city']}.",
    },
    {
        "slot": "date",
        "question": "What day works best for you?",
        "retry": "I missed that date. Could you share it again, like tomorrow or June 3rd?",
        "parse": parse_date,
        "ack": lambda value: f"Great, {value} it is.",
    },
    {
        "slot": "time",
        "question": "And what time would you like the pro to arrive?",
        "retry": "What time works? You can say something like 2 PM or morning.",
        "parse": parse_time,
        "ack": lambda value: f"Perfect, around {value}.",
    },
    {
        "slot": "urgency",
        "question": "Last question. Is this an emergency, urgent, or can it wait?",
        "retry": "Is this an emergency, urgent, or flexible?",
        "parse": parse_urgency,
        "ack": lambda value: "Understood." if value != Urgency.EMERGENCY else "I'll treat this as an emergency.",
    },
]


def _next_step(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    index = session.get("current_index", 0)
    return FLOW[index] if index < len(FLOW) else None


def _with_audio(reply: str, voice_id: str, warning: str, **extra) -> Dict[str, Any]:
    warnings: List[str] = []
    audio: Optional[str] = None
    try:
        audio = synthesize(reply, voice_id)
    except TTSUnavailableError:
        warnings.append(warning)
    return {"reply": reply, "audio": audio, "warnings": warnings or None, **extra}


def build_booking_request(session: Dict[str, Any]) -> BookingRequest:
    slots = session["slots"]
    category: ServiceCategory = slots["service"]
    services = catalog.services_for_category(category)
    description = session.get("description") or f"{category.value.replace('_', ' ').title()} request"
    return BookingRequest(
        customerId=session["user"]["uid"],
        category=category,
        serviceId=services[0]["id"] if services else None,
        description=description,
        urgency=slots["urgency"],
        requestedDate=slots["date"],
        requestedTimeSlot=slots["time"],
        location=Address(**slots["address"]),
        notes="Booked by voice assistant",
    )


def _finalize(session: Dict[str, Any]) -> Dict[str, Any]:
    try:
        request = build_booking_request(session)
    except ValidationError as exc:
        logger.warning("Voice booking %s failed validation: %s", session["id"], exc)
        raise HTTPException(status_code=422, detail="Some booking details were invalid. Please start again.")
    booking = bookings.create_booking(request, session["user"])
    session["complete"] = True
    session["booking"] = {"id": booking["id"], "status": booking["status"], "pricing": booking["pricing"]}
    return session["booking"]


def _ensure_session(session_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    session = _sessions.get(session_id)
    if not session or session["user"]["uid"] != user["uid"]:
        raise HTTPException(status_code=404, detail="Session not found or expired.")
    return session


@router.get(f"{API_PREFIX}/voice/voices")
def list_voices():
    return {
        "voices": [
            {
                "id": voice["id"],
                "name": voice["name"],
                "language": "en-US",
                "gender": "female",
                "provider": "google",
                "description": voice["description"],
            }
            for voice in VOICES
        ]
    }


class SynthesizeRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_TTS_CHARS)
    voiceId: str = DEFAULT_VOICE


@router.post(f"{API_PREFIX}/voice/synthesize")
def synthesize_route(request: SynthesizeRequest):
    if request.voiceId not in VOICES_BY_ID:
        raise HTTPException(status_code=400, detail="Unknown voice")
    try:
        audio = synthesize(request.text, request.voiceId)
    except TTSUnavailableError as exc:
        return JSONResponse({"error": str(exc)}, status_code=503)
    return {"audio": audio, "mimeType": "audio/mpeg", "voiceId": request.voiceId}


@router.post(f"{API_PREFIX}/voice/session/start")
def start_voice_session(payload: Dict[str, Any] = Body(default_factory=dict), user=Depends(auth.current_user)):
    _cleanup_sessions()
    voice_id = payload.get("voiceId") or DEFAULT_VOICE
    session = {
        "id": uuid4().hex,
        "created_at": utcnow(),
        "user": user,
        "voice": voice_id if voice_id in VOICES_BY_ID else DEFAULT_VOICE,
        "current_index": 0,
        "slots": {},
        "complete": False,
    }
    _sessions[session["id"]] = session
    reply = f"{GREETING} {FLOW[0]['question']}"
    return _with_audio(
        reply, session["voice"], "Voice playback is unavailable right now, continuing in text.",
        sessionId=session["id"], complete=False,
    )


@router.post(f"{API_PREFIX}/voice/session/{{session_id}}/transcribe")
def transcribe_audio(session_id: str = Path(...), payload: Dict[str, Any] = Body(...),
                     user=Depends(auth.current_user)):
    _ensure_session(session_id, user)
    return {"transcript": transcribe(payload.get("audio") or "")}


@router.post(f"{API_PREFIX}/voice/session/{{session_id}}/message")
def voice_session_message(session_id: str = Path(...), payload: Dict[str, Any] = Body(...),
                          user=Depends(auth.require_permission("bookings"))):
    session = _ensure_session(session_id, user)
    if session.get("complete"):
        return JSONResponse({
            "reply": "Your booking is already in. You'll get a notification when a pro accepts it.",
            "audio": None,
            "complete": True,
            "booking": session.get("booking"),
        })

    message = (payload.get("message") or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message cannot be empty.")

    step = _next_step(session)
    if step:
        value = step["parse"](message)
        if value is None:
            return _with_audio(step["retry"], session["voice"], "Voice playback is unavailable right now.", complete=False)

        session["slots"][step["slot"]] = value
        if step["slot"] == "service":
            session["description"] = message
        session["current_index"] += 1
        ack = step["ack"](value)

        following = _next_step(session)
        if following:
            return _with_audio(
                f"{ack} {following['question']}", session["voice"],
                "Voice playback is unavailable right now, continuing in text.", complete=False,
            )
    else:
        # every slot is filled but the booking did not go through last time
        ack = "Thanks for waiting."

    try:
        booking = _finalize(session)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("Voice booking failed: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=500, detail="Something went wrong while creating the booking. Send any message to try again."
        )
    reply = (
        f"{ack} You're all set. Your request is booked for {session['slots']['date']} "
        f"at {session['slots']['time']}, with an estimate of ${booking['pricing']['estimatedAmount']}."
    )
    return _with_audio(
        reply, session["voice"], "Voice playback is unavailable right now, but your booking is confirmed.",
        complete=True, booking=booking,
    )
