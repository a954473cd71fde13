import os
import sys
import tempfile
from pathlib import Path

# Point the app at a throwaway SQLite file and in-process backends before any
# project module reads settings.
_DB_DIR = tempfile.mkdtemp(prefix="transit-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["REDIS_URL"] = ""
os.environ["CHANGE_FEED_BACKEND"] = "memory"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test"
os.environ["RATE_LIMIT_CALLS"] = "10000"
os.environ.pop("EMAIL_API_URL", None)
os.environ.pop("PAYMENT_API_BASE", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


# Ensure project root is on sys.path so `api.*`, `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.auth import create_access_token, hash_password
from core.db import Base, async_session_maker, engine
from main import app, lifespan
from models.db_models import User


@pytest_asyncio.fixture()
async def client():
    """Async test client over the ASGI app, with a fresh schema and a running lifespan."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with lifespan(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            yield ac


@pytest.fixture()
def hub(client):
    return app.state.realtime.hub


@pytest.fixture()
def feed(client):
    return app.state.realtime.feed


@pytest_asyncio.fixture()
async def db_session(client):
    async with async_session_maker() as session:
        yield session


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def make_user(client):
    """Factory: insert a user straight into the DB and return (user_id, auth headers)."""
    counter = {"n": 0}

    async def _make(role: str = "client", email: str | None = None, password: str = "correct-horse-1",
                    status: str = "active", profile: dict | None = None):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@transit.io"
        async with async_session_maker() as session:
            user = User(role=role, username=f"{role}-{counter['n']}", email=email,
                        password_hash=hash_password(password), status=status, profile=profile or {})
            session.add(user)
            await session.commit()
            return user.id, auth_headers(create_access_token(user.id, role))

    return _make


@pytest.fixture()
def make_fleet(client, make_user):
    """
    Factory: two terminals, a route between them, a bus on that route with a
    driver and a conductor. Returns a dict of ids and auth headers.
    """
    async def _make(total_seats: int = 2, fare_cents: int = 2500):
        admin_id, admin_headers = await make_user("admin")
        driver_id, driver_headers = await make_user("driver")
        conductor_id, conductor_headers = await make_user("conductor")

        a = await client.post("/api/admin/terminals", headers=admin_headers,
                              json={"name": "Central", "address": "1 Main St", "lat": 14.5995, "lon": 120.9842})
        b = await client.post("/api/admin/terminals", headers=admin_headers,
                              json={"name": "North", "address": "99 North Ave", "lat": 14.6760, "lon": 121.0437})
        start_id, end_id = a.json()["data"]["id"], b.json()["data"]["id"]
        route = await client.post("/api/admin/routes", headers=admin_headers, json={
            "name": "Central-North", "startTerminalId": start_id, "endTerminalId": end_id,
            "fareCents": fare_cents, "stops": [start_id, end_id],
        })
        route_id = route.json()["data"]["id"]
        bus = await client.post("/api/admin/buses", headers=admin_headers,
                                json={"busNumber": "BUS-101", "totalSeats": total_seats, "routeId": route_id})
        bus_id = bus.json()["data"]["id"]
        await client.put(f"/api/admin/bus/{bus_id}/reassign", headers=admin_headers,
                         json={"driverId": driver_id, "conductorId": conductor_id})
        return {
            "admin_id": admin_id, "admin_headers": admin_headers,
            "driver_id": driver_id, "driver_headers": driver_headers,
            "conductor_id": conductor_id, "conductor_headers": conductor_headers,
            "start_terminal_id": start_id, "end_terminal_id": end_id,
            "route_id": route_id, "bus_id": bus_id,
        }

    return _make
