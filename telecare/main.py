import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from arq import create_pool
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

# Import models so every table is registered on Base before create_all
from . import models  # noqa: F401
from .config import DATABASE_URL
from .database import Base, create_db_engine, create_session_factory
from .domain.analytics.router import router as analytics_router
from .domain.appointments.router import router as appointments_router
from .domain.directory.router import router as directory_router
from .domain.payments.razorpay_client import RazorpayClient
from .domain.payments.router import router as payments_router
from .domain.referrals.router import admin_router as referral_admin_router
from .domain.referrals.router import router as referrals_router
from .errors import DomainError
from .rate_limiter import create_redis_client
from .services.notification_service import ArqNotificationDispatcher
from .worker import get_redis_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")


def create_app(engine: Optional[Engine] = None, enable_background_services: bool = True) -> FastAPI:
    """
    Build the API. Pass an engine to share one with the caller (tests);
    otherwise the lifespan creates one from DATABASE_URL and disposes it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        owns_engine = engine is None
        db_engine = engine or create_db_engine(DATABASE_URL)
        app.state.engine = db_engine
        app.state.session_factory = create_session_factory(db_engine)

        try:
            Base.metadata.create_all(bind=db_engine, checkfirst=True)
            logger.info("Database tables created successfully")
        except Exception as e:
            # Ignore "already exists" errors from race conditions between workers
            error_msg = str(e)
            if "already exists" in error_msg or "duplicate key" in error_msg:
                logger.info("Database tables already exist (created by another worker)")
            else:
                logger.error(f"Failed to create database tables: {e}")
                raise

        app.state.redis = None
        app.state.arq_pool = None
        app.state.dispatcher = None
        if enable_background_services:
            try:
                app.state.redis = create_redis_client()
                logger.info("Redis connection established")
            except Exception as e:
                logger.warning(f"Redis connection failed - rate-limited endpoints will return 503: {e}")

            try:
                app.state.arq_pool = await asyncio.wait_for(create_pool(get_redis_settings()), timeout=20.0)
                app.state.dispatcher = ArqNotificationDispatcher(app.state.arq_pool)
                logger.info("ARQ pool ready - notifications will be queued")
            except Exception as e:
                logger.warning(f"ARQ pool unavailable - notifications will be dropped: {e}")

        app.state.razorpay_client = RazorpayClient()

        yield

        logger.info("Application shutting down...")
        if app.state.arq_pool is not None:
            await app.state.arq_pool.close()
        if app.state.redis is not None:
            app.state.redis.close()
        if owns_engine:
            db_engine.dispose()

    app = FastAPI(title="Telecare Booking API", version="1.0.0", lifespan=lifespan)

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error(f"❌ {exc.code} on {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Convert 422 validation errors from HTTPBearer to 401 authentication errors
        when the issue is with the Authorization header
        """
        for error in exc.errors():
            if error.get("loc") and "authorization" in str(error.get("loc")).lower():
                logger.warning(
                    f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
                )
                return JSONResponse(
                    status_code=401,
                    content={
                        "detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                    },
                )

        logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(referrals_router)
    app.include_router(referral_admin_router)
    app.include_router(directory_router)
    app.include_router(analytics_router)
    app.include_router(appointments_router)
    app.include_router(payments_router)

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()
