"""Shared test fixtures for the ProcessFlow backend.

Provides:
- Per-test async database (in-memory SQLite by default, TEST_DATABASE_URL to override)
- FastAPI test app with overridden DB, user-cache and storage dependencies
- Factory helpers for departments, users, companies, templates and processes
"""

from __future__ import annotations

import os
import tempfile
import uuid

# Set test environment BEFORE any app imports so Settings() picks them up.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="processflow-storage-"))

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from processflow.core.security import create_access_token, hash_password
from processflow.database import build_engine
from processflow.models import Base

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


def _test_db_url() -> str:
    return os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def engine():
    """A fresh engine with every table created; dropped at teardown."""
    eng = build_engine(_test_db_url())
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await eng.dispose()


@pytest.fixture
async def db(engine):
    session = AsyncSession(bind=engine, expire_on_commit=False)
    yield session
    await session.close()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture
def storage(tmp_path):
    from processflow.services.storage import LocalStorage

    return LocalStorage(str(tmp_path / "storage"))


# ---------------------------------------------------------------------------
# FastAPI test app + HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
async def app(db, storage):
    """Test app with ``get_db`` bound to the test session and caching disabled."""
    from fastapi import FastAPI
    from slowapi import _rate_limit_exceeded_handler
    from slowapi.errors import RateLimitExceeded

    from processflow.api.deps import get_storage, get_user_cache
    from processflow.api.errors import register_exception_handlers
    from processflow.api.v1.router import api_router
    from processflow.config import settings
    from processflow.core.rate_limit import limiter
    from processflow.database import get_db
    from processflow.services.user_cache import NullUserCache

    test_app = FastAPI()
    test_app.state.limiter = limiter
    test_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_exception_handlers(test_app)
    test_app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    async def _override_get_db():
        yield db

    test_app.dependency_overrides[get_db] = _override_get_db
    test_app.dependency_overrides[get_user_cache] = NullUserCache
    test_app.dependency_overrides[get_storage] = lambda: storage
    yield test_app
    test_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    """HTTP test client for the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """Disable slowapi rate limiting during tests to avoid 429 responses."""
    from processflow.core.rate_limit import limiter

    limiter.enabled = False
    yield
    limiter.enabled = False


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


async def create_department(db, *, name="Fiscal", active=True, **kwargs):
    """Insert a department into the test database."""
    from processflow.models.department import Department

    dept = Department(
        name=name,
        description=kwargs.get("description"),
        responsible=kwargs.get("responsible"),
        display_order=kwargs.get("display_order", 0),
        active=active,
    )
    db.add(dept)
    await db.flush()
    return dept


async def create_user(
    db,
    *,
    email=None,
    role="user",
    department_id=None,
    password="Senha123",
    name="Test User",
    is_active=True,
):
    """Insert a user into the test database."""
    from processflow.models.user import User

    user = User(
        name=name,
        email=email or f"user-{uuid.uuid4().hex[:8]}@contabil.com.br",
        password_hash=hash_password(password),
        role=role,
        department_id=department_id,
        is_active=is_active,
    )
    db.add(user)
    await db.flush()
    return user


async def create_company(db, *, name="Padaria Central Ltda", cnpj=None, code=None, **kwargs):
    from processflow.models.company import Company

    company = Company(
        name=name,
        cnpj=cnpj,
        code=code,
        email=kwargs.get("email"),
        phone=kwargs.get("phone"),
    )
    db.add(company)
    await db.flush()
    return company


async def create_template(db, *, department_flow, name="Abertura de empresa", questionnaires=None):
    from processflow.models.template import Template

    template = Template(
        name=name,
        department_flow=list(department_flow),
        questionnaires_by_department=questionnaires or {},
    )
    db.add(template)
    await db.flush()
    return template


async def create_process(db, *, actor, flow, company_name="Padaria Central Ltda", **kwargs):
    """Create a process through the flow service, as the API would."""
    from processflow.schemas.process import ProcessCreate
    from processflow.services.flow_service import create_process as _create

    data = ProcessCreate(company_name=company_name, department_flow=list(flow), **kwargs)
    process, _effects = await _create(db, actor, data)
    await db.commit()
    return process


async def create_raw_process(db, *, flow, index=0, owner_id=None, status="in_progress", **kwargs):
    """Insert a process row directly, bypassing validation (malformed flows etc.)."""
    from processflow.models.process import Process

    current = None
    if isinstance(flow, list) and 0 <= index < len(flow) and isinstance(flow[index], int):
        current = flow[index]
    process = Process(
        company_name=kwargs.get("company_name", "Mercado Boa Vista"),
        department_flow=flow,
        current_department_index=index,
        current_department_id=kwargs.get("current_department_id", current),
        status=status,
        progress=kwargs.get("progress", 0),
        owner_id=owner_id,
    )
    db.add(process)
    await db.flush()
    return process


def auth_headers(user) -> dict[str, str]:
    """Generate Bearer token headers for a test user."""
    token = create_access_token(user.id, user.role)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Convenience fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def departments(db):
    """Three active departments: Comercial -> Fiscal -> Contabil."""
    out = [
        await create_department(db, name="Comercial", display_order=1),
        await create_department(db, name="Fiscal", display_order=2),
        await create_department(db, name="Contabil", display_order=3),
    ]
    await db.commit()
    return out


@pytest.fixture
async def admin_user(db):
    user = await create_user(db, email="admin@contabil.com.br", role="admin", name="Admin")
    await db.commit()
    return user
