import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from leadsignal.api.routes import health, verify
from leadsignal.config import settings
from leadsignal.services.verification.cache import CacheSweeper

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    verifier = verify.get_signal_verifier()
    sweeper = CacheSweeper(verifier.cache, interval_seconds=settings.cache_sweep_interval_seconds)
    sweeper.start()
    app.state.cache_sweeper = sweeper

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    await sweeper.stop()
    await verify.close_signal_verifier()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Verifies news-derived company signals against independent evidence",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"Response status: {response.status_code}")
    return response


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(verify.router, prefix="/api", tags=["verification"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.environment,
    }
