import os

# Settings are read at import time; pin them before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CAPTCHA_ENCRYPTION_KEY", "MTIzNDU2Nzg5MDEyMzQ1Njc4OTAxMjM0NTY3ODkwMTI=")
os.environ.setdefault("APP_URL", "https://app.submitin.test")

import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.database import get_session
from db.setup_db import setup_tables
from main import app
from utils.auth import get_current_user
from utils.errors import AuthenticationRequired
from utils.limiter import RateLimitStore, get_rate_limit_store, limiter

OWNER = {"Authorization": "Bearer owner-1"}
OTHER = {"Authorization": "Bearer owner-2"}


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def disable_route_limits():
    """slowapi limits on owner routes would make tests order-dependent."""
    limiter.enabled = False
    yield
    limiter.enabled = True


async def _fake_current_user(request: Request):
    # Tests authenticate with "Bearer <uid>"
    authz = request.headers.get("authorization") or ""
    if not authz.lower().startswith("bearer "):
        raise AuthenticationRequired()
    uid = authz.split(" ", 1)[1].strip()
    return {"uid": uid, "email": f"{uid}@example.com", "name": uid}


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite file per test with the production schema."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'submitin.db'}")
    await setup_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def rate_store():
    return RateLimitStore("memory://")


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture notification emails instead of talking SMTP."""
    sent = []

    def _fake_send(to_email, subject, html_body, from_addr=None):
        sent.append({"to": to_email, "subject": subject, "html": html_body})

    monkeypatch.setattr("services.notifications_service.send_email_html", _fake_send)
    return sent


@pytest.fixture
async def client(engine, rate_store, sent_emails):
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = _override_get_session
    app.dependency_overrides[get_current_user] = _fake_current_user
    app.dependency_overrides[get_rate_limit_store] = lambda: rate_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def db_fetch(engine):
    """Run a SELECT against the test database and return rows as dicts."""

    async def _fetch(sql, **params):
        async with engine.connect() as conn:
            result = await conn.execute(text(sql), params)
            return [dict(row) for row in result.mappings().all()]

    return _fetch


@pytest.fixture
def db_exec(engine):
    async def _exec(sql, **params):
        async with engine.begin() as conn:
            await conn.execute(text(sql), params)

    return _exec


@pytest.fixture
def set_plan(client, db_exec):
    """Switch a user's plan (the users row is created by their first request)."""

    async def _set(uid, plan):
        await client.get("/api/forms", headers={"Authorization": f"Bearer {uid}"})
        await db_exec("UPDATE users SET plan = :plan WHERE uid = :uid", plan=plan, uid=uid)

    return _set


@pytest.fixture
def make_form(client):
    """Create a form with the given fields, optionally published."""

    async def _make(fields=(), published=True, headers=OWNER, name="Contato"):
        resp = await client.post("/api/forms", json={"name": name, "description": "Fale conosco"}, headers=headers)
        assert resp.status_code == 201, resp.text
        form = resp.json()
        created = []
        for field in fields:
            r = await client.post(f"/api/forms/{form['id']}/fields", json=field, headers=headers)
            assert r.status_code == 201, r.text
            created.append(r.json())
        if published:
            r = await client.patch(f"/api/forms/{form['id']}", json={"published": True}, headers=headers)
            assert r.status_code == 200, r.text
            form = r.json()
        return form, created

    return _make
