import asyncio
import datetime
import functools
import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth_service import AuthService
from config import Settings, get_settings
from credits import CreditLedger
from database import Database
from dependencies import (
    get_auth_service,
    get_current_user,
    get_settings_dep,
    get_summary_service,
    get_user_service,
    ip_rate_limit,
    rate_limit,
)
from errors import AppError, InsufficientCreditsError, RateLimitExceededError, RequestTimeoutError, retry_after_for
from identity import SupabaseIdentityProvider
from logging_config import setup_logging
from models import SummaryStatus, User
from rate_limit import RateLimiter, default_rules
from schemas import (
    AddCreditsRequest,
    CreditBalance,
    ForgotPasswordRequest,
    GenerateSummaryRequest,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    SaveSummaryRequest,
    SummaryQuery,
    UpdateProfileRequest,
    UpdateSummaryRequest,
    UpgradePlanRequest,
)
from summaries import SummaryService
from summarizer import GeminiSummarizer
from users import UserService

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
MAX_RETRIES = 3


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


# --- Error envelope -------------------------------------------------------------


def error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    retryable: bool = False,
    errors: Optional[List[Dict[str, Any]]] = None,
    exc: Optional[BaseException] = None,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    settings: Settings = request.app.state.settings
    content: Dict[str, Any] = {
        "success": False,
        "error": message,
        "code": code,
        "retryable": retryable,
        "timestamp": datetime.datetime.utcnow().isoformat() + "Z",
        "requestId": getattr(request.state, "request_id", None),
    }
    correlation_id = request.headers.get("x-correlation-id")
    if correlation_id:
        content["correlationId"] = correlation_id
    if errors:
        content["data"] = {"errors": errors}
    if retryable:
        content["retryAfter"] = retry_after_for(status_code)
        content["maxRetries"] = MAX_RETRIES
    if extra:
        content.update(extra)
    if exc is not None and settings.is_development:
        content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _log_error(request: Request, exc: BaseException, status_code: int, code: str) -> None:
    context = {
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "code": code,
        "request_id": getattr(request.state, "request_id", None),
        "user_id": getattr(request.state, "user_id", None),
    }
    if status_code < 500:
        logger.warning(str(exc) or code, extra=context)
    else:
        logger.error(str(exc) or code, extra=context, exc_info=exc)


def _field_errors(errors) -> List[Dict[str, str]]:
    field_errors = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field_errors.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    return field_errors


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        settings: Settings = request.app.state.settings
        _log_error(request, exc, exc.status_code, exc.code)
        message = exc.message
        if not exc.is_operational and not settings.is_development:
            message = "Something went wrong"

        extra: Dict[str, Any] = {}
        headers = None
        if isinstance(exc, InsufficientCreditsError):
            extra = {"upgradeUrl": f"{settings.api_base_url}/upgrade", "creditsNeeded": exc.credits_needed}
        if isinstance(exc, RateLimitExceededError):
            # The limiter knows exactly when the window frees up
            extra = {"retryAfter": exc.retry_after}
            headers = exc.headers

        return error_response(
            request,
            exc.status_code,
            message,
            exc.code,
            retryable=exc.retryable,
            errors=exc.errors,
            exc=exc,
            extra=extra,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        _log_error(request, exc, 400, "VALIDATION_ERROR")
        return error_response(
            request, 400, "Validation failed", "VALIDATION_ERROR", errors=_field_errors(exc.errors())
        )

    @app.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError):
        _log_error(request, exc, 400, "VALIDATION_ERROR")
        return error_response(
            request, 400, "Validation failed", "VALIDATION_ERROR", errors=_field_errors(exc.errors())
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return error_response(
                request, 404, f"Route {request.method} {request.url.path} not found", "ROUTE_NOT_FOUND"
            )
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            return error_response(request, 405, "Method not allowed", "METHOD_NOT_ALLOWED")
        return error_response(request, exc.status_code, str(exc.detail), "HTTP_ERROR")

    @app.exception_handler(OperationalError)
    async def database_unavailable_handler(request: Request, exc: OperationalError):
        _log_error(request, exc, 503, "DATABASE_CONNECTION_FAILED")
        return error_response(
            request, 503, "Database connection failed", "DATABASE_CONNECTION_FAILED", retryable=True, exc=exc
        )

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        _log_error(request, exc, 409, "DUPLICATE_ENTRY")
        return error_response(request, 409, "Resource already exists", "DUPLICATE_ENTRY")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        settings: Settings = request.app.state.settings
        _log_error(request, exc, 500, "INTERNAL_ERROR")
        message = str(exc) if settings.is_development else "Something went wrong"
        return error_response(request, 500, message, "INTERNAL_ERROR", exc=exc)


# --- Routes -------------------------------------------------------------------

auth_router = APIRouter(prefix="/auth", tags=["auth"])
summary_router = APIRouter(prefix="/summary", tags=["summary"])
user_router = APIRouter(prefix="/user", tags=["user"])


@auth_router.post("/register", status_code=status.HTTP_201_CREATED, dependencies=[Depends(ip_rate_limit("auth"))])
def register(body: RegisterRequest, auth_service: AuthService = Depends(get_auth_service)):
    return ok(auth_service.register(body), "User registered successfully")


@auth_router.post("/login", dependencies=[Depends(ip_rate_limit("auth"))])
def login(body: LoginRequest, auth_service: AuthService = Depends(get_auth_service)):
    return ok(auth_service.login(body), "Login successful")


@auth_router.post("/refresh", dependencies=[Depends(ip_rate_limit("auth"))])
def refresh(body: RefreshTokenRequest, auth_service: AuthService = Depends(get_auth_service)):
    return ok(auth_service.refresh(body.refresh_token), "Token refreshed successfully")


@auth_router.post("/forgot-password", dependencies=[Depends(ip_rate_limit("password_reset"))])
def forgot_password(body: ForgotPasswordRequest, auth_service: AuthService = Depends(get_auth_service)):
    auth_service.forgot_password(body.email)
    return ok(message="If an account with this email exists, a password reset link has been sent.")


@auth_router.post("/logout")
def logout(
    body: RefreshTokenRequest,
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    auth_service.logout(current_user.id, body.refresh_token)
    return ok(message="Logout successful")


@auth_router.get("/me")
def me(current_user: User = Depends(get_current_user), auth_service: AuthService = Depends(get_auth_service)):
    return ok(auth_service.get_current_user(current_user.id))


@auth_router.post("/revoke-all-tokens")
def revoke_all_tokens(
    current_user: User = Depends(get_current_user), auth_service: AuthService = Depends(get_auth_service)
):
    auth_service.revoke_all_tokens(current_user.id)
    return ok(message="All tokens revoked successfully")


@summary_router.post("/generate", dependencies=[Depends(rate_limit("summary"))])
async def generate_summary(
    body: GenerateSummaryRequest,
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
    settings: Settings = Depends(get_settings_dep),
):
    # Runs in a worker thread; on timeout the thread keeps going and settles
    # the summary (completed or refunded) on its own.
    loop = asyncio.get_running_loop()
    work = loop.run_in_executor(None, functools.partial(service.generate, current_user.id, body))
    try:
        summary = await asyncio.wait_for(work, timeout=settings.request_timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Summary generation exceeded request deadline",
            extra={"user_id": current_user.id, "video_id": body.video_metadata.video_id},
        )
        raise RequestTimeoutError(
            "Summary generation is taking longer than expected. Check your summaries again shortly."
        )
    return ok(summary, "Summary generated successfully")


@summary_router.post("/save", dependencies=[Depends(rate_limit("general"))])
def save_summary(
    body: SaveSummaryRequest,
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
):
    return ok(service.save(current_user.id, body), "Summary saved successfully")


def summary_query(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    status_filter: Optional[SummaryStatus] = Query(None, alias="status"),
    video_id: Optional[str] = Query(None, alias="videoId"),
    start_date: Optional[datetime.datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime.datetime] = Query(None, alias="endDate"),
    sort_by: Literal["createdAt", "title", "videoTitle"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
) -> SummaryQuery:
    return SummaryQuery(
        page=page,
        limit=limit,
        search=search,
        status=status_filter,
        video_id=video_id,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@summary_router.get("", dependencies=[Depends(rate_limit("general"))])
def list_summaries(
    query: SummaryQuery = Depends(summary_query),
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
):
    return ok(service.list(current_user.id, query))


@summary_router.get("/stats", dependencies=[Depends(rate_limit("general"))])
def summary_stats(
    current_user: User = Depends(get_current_user), service: SummaryService = Depends(get_summary_service)
):
    return ok(service.stats(current_user.id))


@summary_router.get("/video/{video_id}", dependencies=[Depends(rate_limit("general"))])
def summary_by_video(
    video_id: str,
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
):
    summary = service.get_by_video(current_user.id, video_id)
    return {"success": True, "data": summary}


@summary_router.get("/{summary_id}", dependencies=[Depends(rate_limit("general"))])
def get_summary(
    summary_id: str,
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
):
    return ok(service.get(current_user.id, summary_id))


@summary_router.put("/{summary_id}", dependencies=[Depends(rate_limit("general"))])
def update_summary(
    summary_id: str,
    body: UpdateSummaryRequest,
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
):
    return ok(service.update(current_user.id, summary_id, body), "Summary updated successfully")


@summary_router.delete("/{summary_id}", dependencies=[Depends(rate_limit("general"))])
def delete_summary(
    summary_id: str,
    current_user: User = Depends(get_current_user),
    service: SummaryService = Depends(get_summary_service),
):
    service.delete(current_user.id, summary_id)
    return ok(message="Summary deleted successfully")


@user_router.get("/profile", dependencies=[Depends(rate_limit("general"))])
def get_profile(current_user: User = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return ok(service.get_profile(current_user.id))


@user_router.put("/profile", dependencies=[Depends(rate_limit("general"))])
def update_profile(
    body: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    return ok(service.update_profile(current_user.id, body), "Profile updated successfully")


@user_router.get("/stats", dependencies=[Depends(rate_limit("general"))])
def user_stats(current_user: User = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return ok(service.get_stats(current_user.id))


@user_router.post("/credits/add", dependencies=[Depends(rate_limit("strict"))])
def add_credits(
    body: AddCreditsRequest,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    new_balance = service.add_credits(current_user.id, body.credits)
    return ok(CreditBalance(new_balance=new_balance), f"{body.credits} credits added successfully")


@user_router.post("/plan/upgrade", dependencies=[Depends(rate_limit("strict"))])
def upgrade_plan(
    body: UpgradePlanRequest,
    current_user: User = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    return ok(service.upgrade_plan(current_user.id, body.plan), f"Plan upgraded to {body.plan.value} successfully")


@user_router.post("/verify-email", dependencies=[Depends(rate_limit("general"))])
def verify_email(current_user: User = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return ok(service.verify_email(current_user.id), "Email verified successfully")


@user_router.delete("/account", dependencies=[Depends(rate_limit("strict"))])
def delete_account(current_user: User = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    service.delete_user(current_user.id)
    return ok(message="Account deleted successfully")


# --- Application ----------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    summarizer=None,
    identity_provider: Optional[SupabaseIdentityProvider] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(settings.database_url, settings.database_echo)
        session_factory = database.connect()
        ledger = CreditLedger(session_factory)

        app.state.database = database
        app.state.summarizer = summarizer or GeminiSummarizer(settings)
        app.state.summary_service = SummaryService(session_factory, ledger, app.state.summarizer, settings)
        app.state.user_service = UserService(session_factory, ledger, settings)
        app.state.auth_service = AuthService(
            session_factory, settings, identity_provider or SupabaseIdentityProvider(settings)
        )
        logger.info(
            "API started",
            extra={"environment": settings.environment, "api_base_url": settings.api_base_url},
        )
        yield
        database.disconnect()
        logger.info("API stopped")

    app = FastAPI(title="YouTube Summarizer API", version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(default_rules(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins if settings.cors_origins != ["*"] else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        if not (settings.environment == "production" and request.url.path.endswith("/health")):
            logger.info(
                f"{request.method} {request.url.path}",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        return response

    register_exception_handlers(app)

    api = APIRouter(prefix=settings.api_prefix)

    @api.get("/")
    def api_info():
        return ok(
            {
                "name": "YouTube Summarizer API",
                "version": API_VERSION,
                "description": "AI-powered YouTube video summarization API",
                "environment": settings.environment,
                "endpoints": {
                    "auth": f"{settings.api_prefix}/auth",
                    "summary": f"{settings.api_prefix}/summary",
                    "user": f"{settings.api_prefix}/user",
                    "health": f"{settings.api_prefix}/health",
                },
            }
        )

    @api.get("/health")
    def health(request: Request):
        services = {"ai": "configured" if request.app.state.summarizer.is_configured else "not_configured"}
        try:
            request.app.state.database.ping()
        except OperationalError as e:
            logger.error("Health check failed", extra={"error": str(e)})
            services["database"] = "disconnected"
            return JSONResponse(
                status_code=503,
                content={
                    "success": False,
                    "error": "Health check failed",
                    "data": {"status": "unhealthy", "services": services},
                },
            )
        services["database"] = "connected"
        return ok(
            {
                "status": "healthy",
                "timestamp": datetime.datetime.utcnow().isoformat() + "Z",
                "services": services,
                "version": API_VERSION,
            }
        )

    api.include_router(auth_router)
    api.include_router(summary_router)
    api.include_router(user_router)
    app.include_router(api)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
