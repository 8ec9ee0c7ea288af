import pytest
import httpx

import server
from in_memory_db import InMemoryDB
from mock_data import generate_seed_featured, generate_seed_listings, generate_seed_users


@pytest.fixture
def db(monkeypatch):
    """Fresh seeded store per test, swapped in for the module-level one."""
    users = generate_seed_users()
    listings = generate_seed_listings(users)
    fresh = InMemoryDB(listings, users, generate_seed_featured(listings))
    monkeypatch.setattr(server, "db", fresh)
    monkeypatch.setattr(server, "AUTO_APPROVE_LISTINGS", True)
    monkeypatch.setattr(server, "MPESA_ENABLED", False)
    monkeypatch.setattr(server, "ENABLE_DEV_AUTH", True)
    return fresh


@pytest.fixture
async def client(db):
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def login(client: httpx.AsyncClient, email: str, name: str = "Test User") -> dict:
    r = await client.post("/api/auth/dev-login", json={"email": email, "name": name})
    assert r.status_code == 200, r.text
    # tests authenticate with the bearer header only
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['session_token']}"}


@pytest.fixture
async def admin_headers(client):
    return await login(client, "admin@key2rent.co.ke", "Site Admin")


@pytest.fixture
async def landlord_headers(client):
    return await login(client, "mutua@key2rent.co.ke", "Peter Mutua")


@pytest.fixture
async def tenant_headers(client):
    return await login(client, "tenant@example.com", "Jane Tenant")
