from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text

from processflow.api.errors import register_exception_handlers
from processflow.api.v1.router import api_router
from processflow.config import APP_VERSION, _DEFAULT_SECRET_KEYS, settings
from processflow.core.logging_config import configure_logging
from processflow.core.metrics import app_info, bg_task_last_success, bg_task_runs_total
from processflow.core.rate_limit import limiter
from processflow.database import engine
from processflow.middleware.prometheus import PrometheusMiddleware
from processflow.middleware.request_context import REQUEST_ID_HEADER, RequestContextMiddleware
from processflow.models import Base

logger = logging.getLogger(__name__)


def _alembic(action: str, revision: str = "head") -> None:
    # Runs in a worker thread; env.py drives its own event loop.
    from alembic import command
    from alembic.config import Config

    getattr(command, action)(Config("alembic.ini"), revision)


async def _current_revision() -> str | None:
    def _read(sync_conn) -> str | None:
        if not sa_inspect(sync_conn).has_table("alembic_version"):
            return None
        return sync_conn.execute(text("SELECT version_num FROM alembic_version")).scalar()

    async with engine.connect() as conn:
        return await conn.run_sync(_read)


async def sync_schema() -> None:
    """Bring the database to the current schema.

    With RESET_DB, or on a database alembic has never stamped, the tables are
    built straight from the models and stamped at head.  Anything else goes
    through the migrations.
    """
    if settings.RESET_DB or await _current_revision() is None:
        async with engine.begin() as conn:
            if settings.RESET_DB:
                logger.warning("RESET_DB is set, dropping every table")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        await asyncio.to_thread(_alembic, "stamp")
        return
    await asyncio.to_thread(_alembic, "upgrade")


def _check_secret_key() -> None:
    if settings.SECRET_KEY not in _DEFAULT_SECRET_KEYS:
        return
    if settings.ENVIRONMENT != "development":
        raise RuntimeError(
            "SECRET_KEY is unset or still the placeholder; it signs access tokens and "
            "document links, so set a long random value before starting outside development."
        )
    logger.warning("Running with the placeholder SECRET_KEY (development only)")


async def purge_trash_once() -> int:
    """Permanently delete expired trash items; returns how many were removed."""
    from processflow.api.deps import get_storage
    from processflow.database import async_session
    from processflow.services.trash_service import purge_expired

    async with async_session() as db:
        purged = await purge_expired(db, get_storage())
        await db.commit()
    return purged


async def _purge_trash_loop() -> None:
    """Background loop that sweeps the trash once per interval."""
    while True:
        try:
            await asyncio.sleep(settings.TRASH_PURGE_INTERVAL_SECONDS)
            purged = await purge_trash_once()
            bg_task_runs_total.labels(task_name="trash_purge", status="success").inc()
            bg_task_last_success.labels(task_name="trash_purge").set(time.time())
            if purged:
                logger.info("Auto-purged %d expired trash items", purged)
        except asyncio.CancelledError:
            raise
        except Exception:
            bg_task_runs_total.labels(task_name="trash_purge", status="error").inc()
            logger.exception("Error in trash purge loop")


async def _ensure_admin() -> None:
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return

    from sqlalchemy import select

    from processflow.core.security import hash_password
    from processflow.database import async_session
    from processflow.models.user import User

    async with async_session() as db:
        exists = await db.execute(select(User.id).where(User.role == "admin").limit(1))
        if exists.scalar_one_or_none() is not None:
            return
        db.add(
            User(
                name="Administrator",
                email=settings.ADMIN_EMAIL.lower(),
                password_hash=hash_password(settings.ADMIN_PASSWORD),
                role="admin",
                is_active=True,
            )
        )
        await db.commit()
        logger.info("Created initial administrator %s", settings.ADMIN_EMAIL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.ENVIRONMENT, settings.LOG_LEVEL)
    _check_secret_key()
    await sync_schema()
    await _ensure_admin()

    purge_task = asyncio.create_task(_purge_trash_loop())

    yield

    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass


app_info.info({"version": APP_VERSION, "environment": settings.ENVIRONMENT})

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url=None,
    openapi_url="/api/openapi.json" if settings.ENVIRONMENT == "development" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER],
    expose_headers=[REQUEST_ID_HEADER],
)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
