"""
ProcureDesk — Procurement RFQ Workspace
App setup: lifespan, middleware, exception handlers, router mounts.
All endpoints live in app/routers/.
"""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from .config import APP_VERSION, settings
from .connectors import GoogleSearchConnector, SerpApiConnector, YandexSearchConnector
from .exceptions import ProcureDeskError
from .http_client import build_client, close_clients
from .logging_config import setup_logging
from .rate_limit import limiter
from .routers import audit, auth, chats, requests, suppliers, whatsapp
from .routers import settings as settings_router
from .schemas.errors import ErrorResponse
from .startup import load_credentials, run_startup_migrations
from .utils.llm_client import LLMClient
from .utils.whapi_client import WhapiClient


def build_search_providers(http) -> list:
    """Every provider is built; unconfigured ones return no results."""
    timeout = settings.search_timeout_seconds
    return [
        GoogleSearchConnector(http, settings.google_api_key, settings.google_cse_id, timeout=timeout),
        YandexSearchConnector(http, settings.yandex_api_key, settings.yandex_folder_id, timeout=timeout),
        SerpApiConnector(http, settings.serpapi_key, timeout=timeout),
    ]


# ── App Lifecycle ────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    run_startup_migrations()
    creds = load_credentials()

    http = build_client()
    scraper_http = build_client(follow_redirects=True, timeout=settings.scrape_timeout_seconds)
    app.state.http = http
    app.state.scraper_http = scraper_http
    app.state.whatsapp = WhapiClient(http, creds["whapi_token"], settings.whapi_base_url)
    app.state.llm = LLMClient(
        http, creds["openai_api_key"],
        model=settings.openai_model, base_url=settings.openai_base_url,
    )
    app.state.search_providers = build_search_providers(http)
    configured = [p.name for p in app.state.search_providers if p.configured]
    logger.info(
        "ProcureDesk {} started (whatsapp={}, llm={}, search={})",
        APP_VERSION, app.state.whatsapp.configured, app.state.llm.enabled, configured or "none",
    )
    yield
    await close_clients(http, scraper_http)
    logger.info("ProcureDesk stopped")


# ── FastAPI App ──────────────────────────────────────────────────────

app = FastAPI(
    title="ProcureDesk",
    version=APP_VERSION,
    lifespan=lifespan,
    responses={code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 500)},
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    max_age=settings.session_max_age_days * 86400,
    https_only=settings.app_url.startswith("https"),
    same_site="lax",
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Request ID, /api/v1 rewrite, security headers and access log."""
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id

    path = request.scope["path"]
    if path.startswith("/api/v1/"):
        request.scope["path"] = "/api/" + path[len("/api/v1/"):]

    start = time.perf_counter()
    with logger.contextualize(request_id=request_id):
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        if request.scope["path"] != "/health":
            logger.info(
                "{} {} -> {} ({:.0f}ms)",
                request.method, request.scope["path"], response.status_code, elapsed_ms,
            )

    response.headers["X-Request-ID"] = request_id
    response.headers["X-API-Version"] = "v1"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ── Exception Handlers ───────────────────────────────────────────────


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@app.exception_handler(ProcureDeskError)
async def procuredesk_error_handler(request: Request, exc: ProcureDeskError):
    if exc.status_code >= 500:
        logger.error("{} {}: {}", request.method, request.url.path, exc.message)
    body = exc.to_dict()
    body["request_id"] = _request_id(request)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail), "request_id": _request_id(request)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "Некорректные данные запроса",
            "request_id": _request_id(request),
            "detail": errors,
        },
    )


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("Integrity error on {} {}: {}", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"success": False, "error": "Конфликт данных", "request_id": _request_id(request)},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Внутренняя ошибка сервера", "request_id": _request_id(request)},
    )


# ── Routes ───────────────────────────────────────────────────────────


@app.get("/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}


app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(chats.router)
app.include_router(suppliers.router)
app.include_router(audit.router)
app.include_router(settings_router.router)
app.include_router(whatsapp.router)
