import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.errors import (
    BookingError,
    CapacityError,
    ConflictError,
    LookupDegraded,
    NotFoundError,
    ValidationError,
)
from .core.responses import error_response
from .events import build_event_channel
from .routes import router as booking_router
from .seed import seed_demo_data

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Agenda Booking Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.events = build_event_channel(
    settings.notification_webhook_url,
    timeout=settings.notification_timeout_seconds,
)

app.include_router(booking_router)


def status_code_for(exc: BookingError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ConflictError, CapacityError)):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, LookupDegraded):
        return 503
    return 500


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"Booking error on {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=error_response(exc.code, exc.message, exc.details),
    )


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.seed_demo_data:
        async with AsyncSessionLocal() as session:
            await seed_demo_data(session)
            logger.info("Demo data seeded")


@app.get("/health")
async def health():
    return {"ok": True}
