import os

from dotenv import load_dotenv

load_dotenv()

API_PREFIX = "/api/v1"

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

PROJECT_ID = os.getenv("GCP_PROJECT_ID", "")
LOCATION = os.getenv("GCP_LOCATION", "us-central1")
GCP_GLOBAL_LOCATION = os.getenv("GCP_GLOBAL_LOCATION", "global")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()

os.environ.setdefault("GOOGLE_CLOUD_PROJECT", PROJECT_ID)
os.environ.setdefault("GOOGLE_CLOUD_LOCATION", GCP_GLOBAL_LOCATION or LOCATION)
# an API key means the public Gemini endpoint, otherwise go through Vertex AI
os.environ.setdefault("GOOGLE_GENAI_USE_VERTEXAI", "False" if GEMINI_API_KEY else "True")

MODEL_NAME = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
VISION_MODEL = os.getenv("GEMINI_VISION_MODEL", MODEL_NAME)
ANALYSIS_MODEL = os.getenv("GEMINI_ANALYSIS_MODEL", "gemini-2.5-pro")
RETRIEVAL_MODEL = os.getenv("GEMINI_RETRIEVAL_MODEL", MODEL_NAME)
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image")

STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "")
MEMORY_BUCKET = os.getenv("MEMORY_BUCKET", "leila-ai-memory")
MEMORY_TOPIC = os.getenv("MEMORY_TOPIC", "memory-updates")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()

JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ISSUER = "leila-home-services"
JWT_AUDIENCE = "leila-api"

GOOGLE_MAPS_API_KEY = (os.getenv("GOOGLE_MAPS_API_KEY") or os.getenv("MAPS_API_KEY") or "").strip()
GOOGLE_SOLAR_API_KEY = (os.getenv("GOOGLE_SOLAR_API_KEY") or GOOGLE_MAPS_API_KEY).strip()

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://heyleila.com")
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]


def gemini_configured() -> bool:
    return bool(GEMINI_API_KEY or PROJECT_ID)


def stripe_configured() -> bool:
    return STRIPE_SECRET_KEY.startswith("sk_")


def jwt_secret() -> str:
    if not JWT_SECRET:
        if ENVIRONMENT == "production":
            raise RuntimeError("JWT_SECRET must be set in production.")
        return "leila-development-secret"
    return JWT_SECRET
