import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# .env from the project root wherever uvicorn is started
_PROJ_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJ_ROOT / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from crush.admin import admin_router
from crush.api.checkout import router as checkout_router
from crush.api.premium import router as premium_router
from crush.api.promo import router as promo_router
from crush.api.webhooks import router as webhook_router
from crush.core.config import is_stripe_configured, settings
from crush.core.database import engine, init_db
from crush.core.errors import CrushError
from crush.core.rate_limit import get_client_ip, limiter
from crush.logging import setup_logging
from crush.models import ErrorLog, SecurityLog

setup_logging(level=logging.INFO)
log = logging.getLogger("crush")


def _cors_origins_list() -> list[str]:
    if not settings.cors_origins or settings.cors_origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in settings.cors_origins.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    log.info(
        "Stripe configured: %s (environment=%s)",
        "yes" if is_stripe_configured() else "NO (set STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET)",
        settings.environment,
    )
    yield


app = FastAPI(
    title="Crush Entitlements API",
    description="Promo code redemption and subscription entitlement reconciliation",
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    rid = getattr(request.state, "request_id", None)
    body = {"error": detail, "status_code": status_code}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    try:
        with Session(engine) as db:
            db.add(
                SecurityLog(
                    event="rate_limit",
                    ip=get_client_ip(request) or None,
                    endpoint=request.url.path,
                    detail="Rate limit exceeded",
                )
            )
            db.commit()
    except SQLAlchemyError as e:
        log.warning("SecurityLog rate_limit write failed: %s", e)
    return _error_response(request, 429, "Too many requests. Please wait a minute.")


def _validation_error_message(exc: RequestValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return "Invalid request"
    first = errs[0]
    loc = [str(part) for part in first.get("loc") or [] if part != "body"]
    field = loc[-1] if loc else None
    if first.get("type") == "missing" and field:
        return f"Missing field: {field}"
    if field:
        return f"Invalid value for {field}: {first.get('msg') or 'invalid'}"
    return first.get("msg") or "Invalid request"


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errs = exc.errors()
    log.warning(
        "Request validation error (422): path=%s method=%s detail=%s",
        request.url.path,
        request.method,
        errs,
    )
    rid = getattr(request.state, "request_id", None)
    body = {
        "error": _validation_error_message(exc),
        "status_code": 422,
        "detail": [{"loc": list(e.get("loc") or []), "msg": e.get("msg"), "type": e.get("type")} for e in errs],
    }
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=422, content=body)


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail if isinstance(exc.detail, str) else str(exc.detail))


@app.exception_handler(CrushError)
def crush_error_handler(request: Request, exc: CrushError) -> JSONResponse:
    """Logged in full, answered with the message that is safe to show."""
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    log.log(level, "%s: path=%s %s", type(exc).__name__, request.url.path, exc)
    return _error_response(request, exc.status_code, exc.user_message)


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s %s", request.url.path, exc, exc_info=exc)
    try:
        with Session(engine) as db:
            db.add(
                ErrorLog(
                    user_id=None,
                    endpoint=request.url.path,
                    method=request.method,
                    error_message=str(exc)[:2000],
                    stack_trace="".join(traceback.format_exception(exc))[:10000],
                )
            )
            db.commit()
    except SQLAlchemyError as e:
        log.warning("ErrorLog write failed: %s", e)
    return _error_response(request, 500, "Unexpected server error")


@app.middleware("http")
async def request_id_and_latency(request: Request, call_next):
    request.state.request_id = str(uuid.uuid4())
    start = time.perf_counter()
    response = await call_next(request)
    latency_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request.state.request_id
    log.info(
        "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(promo_router)
app.include_router(checkout_router)
app.include_router(webhook_router)
app.include_router(premium_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    database = "ok"
    try:
        with Session(engine) as db:
            db.exec(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.warning("Health check database error: %s", e)
        database = "error"
    return {"status": "ok", "database": database, "stripe_configured": is_stripe_configured()}
