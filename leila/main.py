import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import (
    __version__,
    activity_log,
    api_keys,
    auth,
    bookings,
    catalog,
    chat,
    config,
    geocode,
    health,
    images,
    matching,
    memory,
    payments,
    pricing,
    push,
    quality,
    referrals,
    solar,
    voice,
)

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Leila Home Services API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (
    health,
    auth,
    api_keys,
    catalog,
    pricing,
    bookings,
    matching,
    referrals,
    payments,
    chat,
    quality,
    images,
    voice,
    geocode,
    solar,
    push,
    memory,
    activity_log,
):
    app.include_router(module.router)

logger.info("Leila API ready (%s, %d routes)", config.ENVIRONMENT, len(app.routes))
