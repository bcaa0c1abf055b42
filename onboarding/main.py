import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from onboarding.api.routes import availability, bookings, trainers
from onboarding.core.config import _ENV_FILE, settings
from onboarding.core.db import async_session_maker, init_db
from onboarding.core.errors import (
    BookingError,
    CalendarMutationError,
    NoAuthorizedTrainerError,
    NoAvailabilityError,
    ValidationError,
)
from onboarding.services.assignment_service import TrainerAssignmentEngine
from onboarding.services.availability_service import CalendarAvailabilityProvider
from onboarding.services.booking_service import BookingOrchestrator
from onboarding.services.crm_service import SalesforceClient
from onboarding.services.lark_client import LarkClient
from onboarding.services.lark_oauth_service import LarkOAuthService
from onboarding.services.notification_service import LarkNotifier
from onboarding.services.slot_aggregator import SlotAvailabilityAggregator
from onboarding.services.trainer_directory import TrainerDirectory

if os.getenv("ENV") != "production":
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)

BOOKING_ERROR_STATUS: dict[type[BookingError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NoAvailabilityError: status.HTTP_409_CONFLICT,
    NoAuthorizedTrainerError: status.HTTP_503_SERVICE_UNAVAILABLE,
    CalendarMutationError: status.HTTP_502_BAD_GATEWAY,
}


def _log_configuration() -> None:
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    logger.info("Trainers config: %s", settings.trainers_config_path)
    if settings.lark_enabled:
        logger.info("Lark: configured (LARK_APP_ID set)")
    else:
        logger.warning("Lark: NOT configured. Set LARK_APP_ID and LARK_APP_SECRET in %s", _ENV_FILE)
    if settings.salesforce_enabled:
        logger.info("Salesforce: configured (%s)", settings.salesforce_instance_url)
    else:
        logger.warning("Salesforce: NOT configured. Bookings will be confirmed with sync pending")


@asynccontextmanager
async def lifespan(app: FastAPI):
    _log_configuration()
    if settings.env == "development":
        await init_db()

    lark = LarkClient(
        app_id=settings.lark_app_id,
        app_secret=settings.lark_app_secret,
        base_url=settings.lark_base_url,
        timezone=settings.lark_calendar_timezone,
    )
    oauth = LarkOAuthService(lark, async_session_maker, redirect_uri=settings.lark_redirect_uri)
    lark.token_provider = oauth

    directory = TrainerDirectory(settings.trainers_config_path)
    provider = CalendarAvailabilityProvider(
        lark,
        timezone=settings.business_timezone,
        slot_windows=settings.slot_windows,
        default_calendar_id=directory.default_calendar_id,
    )
    aggregator = SlotAvailabilityAggregator(directory, provider, authorizer=oauth)
    crm = None
    if settings.salesforce_enabled:
        crm = SalesforceClient(
            instance_url=settings.salesforce_instance_url,
            client_id=settings.salesforce_client_id,
            client_secret=settings.salesforce_client_secret,
            username=settings.salesforce_username,
            password=settings.salesforce_password,
            api_version=settings.salesforce_api_version,
        )

    app.state.directory = directory
    app.state.aggregator = aggregator
    app.state.oauth_service = oauth
    app.state.orchestrator = BookingOrchestrator(
        directory=directory,
        aggregator=aggregator,
        assignment_engine=TrainerAssignmentEngine(),
        calendar=lark,
        authorizer=oauth,
        crm=crm,
        notifier=LarkNotifier(lark, enabled=settings.notifications_enabled),
    )
    yield
    await lark.aclose()
    if crm is not None:
        await crm.aclose()


app = FastAPI(
    title="Merchant Onboarding API",
    description="Trainer availability, assignment and booking for merchant onboarding",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(availability.router, prefix="/api/v1")
app.include_router(bookings.router, prefix="/api/v1")
app.include_router(trainers.router, prefix="/api/v1")


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status_code = next(
        (code for cls, code in BOOKING_ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.detail, "error": type(exc).__name__, "state": exc.state},
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    headers = _cors_headers(request.headers.get("origin"))
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"{type(exc).__name__}: {exc}"},
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
