"""
main.py — simportal FastAPI application entry point.

Start with: uvicorn simportal.main:app --reload --port 8000
(run from the repository root)
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from simportal.clock import Clock, utcnow
from simportal.config import Settings, settings
from simportal.database import create_engine_and_sessionmaker, get_db
from simportal.errors import register_exception_handlers

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------
def init_services(
    app: FastAPI,
    engine: AsyncEngine,
    sessionmaker: async_sessionmaker[AsyncSession],
    config: Settings = settings,
    clock: Clock = utcnow,
) -> None:
    """
    Build one of each component and hang it on app.state.
    The lifespan calls this at startup; tests call it with their own
    database, settings and clock.
    """
    from simportal.auth.demo_users import DemoDirectory
    from simportal.auth.identity import IdentityResolver
    from simportal.auth.lti import LtiValidator
    from simportal.auth.session_store import SessionStore
    from simportal.auth.token_codec import TokenCodec
    from simportal.store import KeyedStore
    from simportal.training.engine import TrainingEngine

    store = KeyedStore(sessionmaker, timeout_seconds=config.store_timeout_seconds)
    codec = TokenCodec(config.secret_key, config.token_algorithm, clock=clock)

    app.state.settings = config
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.clock = clock
    app.state.store = store
    app.state.token_codec = codec
    app.state.identity_resolver = IdentityResolver(codec, config.session_cookie_name)
    app.state.session_store = SessionStore(
        store,
        codec,
        duration_seconds=config.session_duration_seconds,
        refresh_threshold_seconds=config.refresh_threshold_seconds,
        clock=clock,
    )
    app.state.training_engine = TrainingEngine(store, clock=clock)
    app.state.lti_validator = LtiValidator(
        config.lti_consumer_secrets,
        timestamp_tolerance_seconds=config.lti_timestamp_tolerance_seconds,
        nonce_ttl_seconds=config.lti_nonce_ttl_seconds,
        clock=clock,
    )
    app.state.demo_directory = DemoDirectory.load()


def upgrade_schema() -> None:
    """alembic upgrade head, in a subprocess so Alembic's own event loop stays out of ours."""
    completed = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        cwd=PACKAGE_DIR,
        capture_output=True,
        text=True,
    )
    if completed.returncode != 0:
        logger.error("Schema upgrade failed:\n%s", completed.stderr)
        raise RuntimeError(f"alembic upgrade head failed: {completed.stderr.strip()}")
    logger.info("Schema: %s", completed.stdout.strip() or "already at head")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema upgrade, engine, Redis nonce store, services.
    Shutdown in reverse; the engine goes last.
    """
    if settings.run_migrations_on_startup:
        upgrade_schema()

    engine, sessionmaker = create_engine_and_sessionmaker(settings.database_url)

    from simportal.cache import create_redis_pool
    app.state.redis = await create_redis_pool()

    init_services(app, engine, sessionmaker)
    logger.info(
        "simportal v%s ready (demo login %s)",
        settings.app_version, "on" if settings.demo_login_enabled else "off",
    )
    try:
        yield
    finally:
        await app.state.redis.aclose()
        await engine.dispose()
        logger.info("simportal stopped: Redis closed, engine disposed")


app = FastAPI(
    title="Simulation Training Portal API",
    version=settings.app_version,
    description=(
        "Session issuance for platform-launched and stand-alone users, and "
        "per-learner training progress for the remote 3D simulator."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Credentials are allowed, so origins must be listed explicitly.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

register_exception_handlers(app, debug=settings.debug)


# ---------------------------------------------------------------------------
# Health (no auth)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check(db: AsyncSession = Depends(get_db)) -> dict:
    """
    Database reachability is reported, never enforced: session validation
    keeps working token-only while the store is down.
    """
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable (%s)", type(exc).__name__)
        await db.rollback()
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "version": settings.app_version,
        "timestamp": app.state.clock().isoformat(),
    }


from simportal.auth.routes import router as auth_router  # noqa: E402
from simportal.training.routes import router as training_router  # noqa: E402

app.include_router(auth_router)
app.include_router(training_router)
