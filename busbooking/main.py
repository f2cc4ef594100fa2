from contextlib import asynccontextmanager
from datetime import timedelta
import logging
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text
import sentry_sdk
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from busbooking.config import settings
from busbooking.db.session import async_session, engine
from busbooking.errors import BookingError
from busbooking.logging_setup import setup_logging, TRACE_ID_CTX
from busbooking.modules.admin.router import router as admin_router
from busbooking.modules.bookings.router import router as bookings_router
from busbooking.modules.payments.router import router as payments_router
from busbooking.redis_client import redis_client
from busbooking.services.lifecycle import BookingLifecycle
from busbooking.services.payment_gateway import build_payment_coordinator

logger = logging.getLogger(__name__)


def build_lifecycle() -> BookingLifecycle:
    return BookingLifecycle(
        async_session,
        build_payment_coordinator(),
        hold_ttl=timedelta(seconds=settings.HOLD_TTL_SECONDS),
        cash_hold_ttl=timedelta(seconds=settings.CASH_HOLD_TTL_SECONDS),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.lifecycle = build_lifecycle()
    logger.info("Payments via %s", app.state.lifecycle.payments.provider_name)
    yield
    await app.state.lifecycle.payments.aclose()
    await engine.dispose()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# initialize logging and Sentry
setup_logging()
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)
    app.add_middleware(SentryAsgiMiddleware)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(bookings_router, prefix="/bookings")
app.include_router(payments_router, prefix="/payments")
app.include_router(admin_router, prefix="/admin")


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check: database unavailable")
        return Response(status_code=503, content="database unavailable")
    try:
        await redis_client.ping()
    except Exception:
        logger.exception("Readiness check: redis unavailable")
        return Response(status_code=503, content="redis unavailable")
    return {"status": "ready"}
