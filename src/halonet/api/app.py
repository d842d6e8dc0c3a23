"""FastAPI application factory."""

import logging
import secrets
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from halonet import __version__
from halonet.api.routes import (
    approvals_router,
    batches_router,
    dashboard_router,
    entries_router,
    health_router,
    risk_router,
    settings_router,
    webhooks_router,
)
from halonet.config import Settings, get_settings
from halonet.database import init_db
from halonet.engine_config import EngineConfig
from halonet.events import EventEmitter, LoggingNotificationSink, attach_notification_sink
from halonet.exceptions import (
    AuthorizationError,
    ConcurrencyError,
    ExpiredError,
    HalonetError,
    ImmutabilityError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ProviderError,
    TwoFactorError,
    ValidationError,
)
from halonet.logging_config import configure_logging
from halonet.models import utcnow
from halonet.providers import AchStubProvider, BatchPaymentProvider
from halonet.services import OneTimeCodeVerifier, TwoFactorVerifier

logger = logging.getLogger(__name__)

# Most specific class wins; lookup walks the exception's MRO
ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    TwoFactorError: status.HTTP_401_UNAUTHORIZED,
    ExpiredError: status.HTTP_410_GONE,
    PreconditionError: status.HTTP_412_PRECONDITION_FAILED,
    ProviderError: status.HTTP_502_BAD_GATEWAY,
    ConcurrencyError: status.HTTP_409_CONFLICT,
    ImmutabilityError: status.HTTP_409_CONFLICT,
}


def status_for(exc: HalonetError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_400_BAD_REQUEST


def create_app(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    providers: Mapping[str, BatchPaymentProvider] | None = None,
    engine_config: EngineConfig | None = None,
    emitter: EventEmitter | None = None,
    verifier: TwoFactorVerifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to production wiring: the configured database,
    the stub ACH rail, an in-process one-time code verifier, and an
    emitter that logs risk and approval events.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        if app.state.session_factory is None:
            _, app.state.session_factory = init_db(app.state.settings.database_url)
        logger.info("HALOnet API started (engine %s)", app.state.settings.engine_version)
        yield

    app_settings = settings or get_settings()
    configure_logging(app_settings.log_level)

    app = FastAPI(
        title="HALOnet API",
        description="Payroll payment batch orchestration and risk controls",
        version=__version__,
        lifespan=lifespan,
    )

    if emitter is None:
        emitter = EventEmitter()
        attach_notification_sink(emitter, LoggingNotificationSink())
    if providers is None:
        providers = {"ach_stub": AchStubProvider()}
    if verifier is None:
        verifier = OneTimeCodeVerifier(
            app_settings.two_factor_secret or secrets.token_hex(32), clock=clock
        )

    app.state.settings = app_settings
    app.state.session_factory = session_factory
    app.state.providers = dict(providers)
    app.state.default_provider_id = next(iter(providers), None)
    app.state.engine_config = engine_config or EngineConfig()
    app.state.emitter = emitter
    app.state.verifier = verifier
    app.state.clock = clock

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(HalonetError)
    async def halonet_exception_handler(request: Request, exc: HalonetError) -> JSONResponse:
        """Map engine errors to HTTP statuses."""
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    for router in (
        batches_router,
        approvals_router,
        risk_router,
        entries_router,
        webhooks_router,
        dashboard_router,
        settings_router,
    ):
        app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
