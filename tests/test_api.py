import pytest

import server
from conftest import login

NEW_LISTING = {
    "name": "Baraka Flats",
    "type": "Bedsitter",
    "location": "Syokimau",
    "price": 8500,
    "contact": "0712 345 678",
    "status": "Vacant",
    "total_units": 2,
    "available_units": 2,
}


async def _create(client, headers, **overrides):
    r = await client.post("/api/listings", json={**NEW_LISTING, **overrides}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


@pytest.mark.asyncio
async def test_auth_me_requires_session(client):
    r = await client.get("/api/auth/me")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_dev_login_creates_tenant(client, tenant_headers):
    r = await client.get("/api/auth/me", headers=tenant_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["user"]["role"] == "tenant"
    assert body["is_admin"] is False


@pytest.mark.asyncio
async def test_public_browse_hides_unpaid_vacancies_and_sorts(client, db):
    r = await client.get("/api/listings", params={"limit": 100})
    assert r.status_code == 200
    listings = r.json()
    assert listings
    assert all(lst["visibility_status"] == "visible" for lst in listings)
    assert all(lst["approval_status"] == "published" for lst in listings)

    flags = [(not lst["is_featured"], not lst["is_boosted"]) for lst in listings]
    assert flags == sorted(flags)


@pytest.mark.asyncio
async def test_max_price_ignores_for_sale_listings(client):
    r = await client.get("/api/listings", params={"max_price": 1, "limit": 100})
    statuses = {lst["status"] for lst in r.json()}
    assert statuses == {"For Sale"}


@pytest.mark.asyncio
async def test_vacant_listing_starts_hidden_with_amount_due(client, landlord_headers, db):
    listing = await _create(client, landlord_headers)
    assert listing["payment_status"] == "pending"
    assert listing["visibility_status"] == "hidden"
    assert listing["amount_due"] == 850
    assert listing["contact"] == "+254712345678"
    assert listing["approval_status"] == "published"

    owner = await db.users.find_one({"id": listing["user_id"]})
    assert listing["id"] in owner["listings"]

    r = await client.get(f"/api/listings/{listing['id']}")
    assert r.status_code == 404
    r = await client.get(f"/api/listings/{listing['id']}", headers=landlord_headers)
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_occupied_listing_is_visible_immediately(client, landlord_headers):
    listing = await _create(client, landlord_headers, status="Occupied")
    assert listing["visibility_status"] == "visible"
    assert listing["amount_due"] is None


@pytest.mark.asyncio
async def test_listing_validation(client, landlord_headers):
    r = await client.post("/api/listings", json={**NEW_LISTING, "available_units": 5}, headers=landlord_headers)
    assert r.status_code == 422
    r = await client.post("/api/listings", json={**NEW_LISTING, "contact": "12345"}, headers=landlord_headers)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_pending_listing_when_auto_approve_off(client, landlord_headers, monkeypatch):
    monkeypatch.setattr(server, "AUTO_APPROVE_LISTINGS", False)
    listing = await _create(client, landlord_headers, status="Occupied")
    assert listing["approval_status"] == "pending_approval"


@pytest.mark.asyncio
async def test_vacancy_payment_flow(client, landlord_headers, admin_headers):
    listing = await _create(client, landlord_headers)

    r = await client.get(f"/api/payments/vacancy/{listing['id']}", headers=landlord_headers)
    assert r.status_code == 200
    assert r.json()["formatted_amount"] == "KES 850"

    r = await client.post(f"/api/listings/{listing['id']}/vacancy-payment", json={}, headers=landlord_headers)
    assert r.status_code == 400

    r = await client.post(
        f"/api/listings/{listing['id']}/vacancy-payment",
        json={"confirmation_text": "QWE123 Confirmed. Ksh850 paid"},
        headers=landlord_headers,
    )
    assert r.status_code == 200

    r = await client.get("/api/admin/vacant-payments", headers=admin_headers)
    assert r.status_code == 200
    assert listing["id"] in [p["id"] for p in r.json()]

    r = await client.post(f"/api/admin/vacant-payments/{listing['id']}", json={"action": "approve"}, headers=admin_headers)
    assert r.status_code == 200
    assert (r.json()["payment_status"], r.json()["visibility_status"]) == ("paid", "visible")

    r = await client.get(f"/api/listings/{listing['id']}")
    assert r.status_code == 200

    r = await client.post(f"/api/admin/vacant-payments/{listing['id']}", json={"action": "approve"}, headers=admin_headers)
    assert r.status_code == 409

    r = await client.post(f"/api/admin/vacant-payments/{listing['id']}", json={"action": "refund"}, headers=admin_headers)
    assert (r.json()["payment_status"], r.json()["visibility_status"]) == ("pending", "hidden")


@pytest.mark.asyncio
async def test_vacant_payments_resolve_unknown_landlord(client, db, admin_headers):
    await db.listings.update_many({"user_id": "landlord-wanjiku"}, {"$set": {"landlord_name": "Unknown"}})
    r = await client.get("/api/admin/vacant-payments", headers=admin_headers)
    names = {p["landlord_name"] for p in r.json() if p["user_id"] == "landlord-wanjiku"}
    assert names == {"Grace Wanjiku"}


@pytest.mark.asyncio
async def test_admin_endpoints_reject_non_admins(client, tenant_headers):
    r = await client.get("/api/admin/listings", headers=tenant_headers)
    assert r.status_code == 403
    r = await client.get("/api/admin/listings")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_admin_reject_then_approve(client, landlord_headers, admin_headers, monkeypatch):
    monkeypatch.setattr(server, "AUTO_APPROVE_LISTINGS", False)
    listing = await _create(client, landlord_headers, status="Occupied")

    r = await client.post(f"/api/admin/listings/{listing['id']}/reject", json={"reason": "  "}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["rejection_reason"] == "No reason provided"

    r = await client.post(f"/api/admin/listings/{listing['id']}/reject", json={}, headers=admin_headers)
    assert r.status_code == 409

    r = await client.post(f"/api/admin/listings/{listing['id']}/approve", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["approval_status"] == "published"
    assert body["approved_by"] == "admin@key2rent.co.ke"
    assert body["rejection_reason"] is None

    r = await client.post(
        f"/api/admin/listings/{listing['id']}/status",
        json={"approval_status": "pending_approval"},
        headers=admin_headers,
    )
    assert r.json()["approval_status"] == "pending_approval"


@pytest.mark.asyncio
async def test_admin_listing_search(client, admin_headers):
    r = await client.get("/api/admin/listings", params={"search": "syokimau"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()
    assert all(lst["location"] == "Syokimau" for lst in r.json())


@pytest.mark.asyncio
async def test_owner_toggle_and_units(client, landlord_headers, tenant_headers):
    listing = await _create(client, landlord_headers, status="Occupied")

    r = await client.post(f"/api/listings/{listing['id']}/toggle-status", headers=tenant_headers)
    assert r.status_code == 403

    r = await client.post(f"/api/listings/{listing['id']}/toggle-status", headers=landlord_headers)
    assert (r.json()["approval_status"], r.json()["available_units"]) == ("rented", 0)

    r = await client.post(f"/api/listings/{listing['id']}/units", json={"adjustment": 1}, headers=landlord_headers)
    assert (r.json()["approval_status"], r.json()["available_units"]) == ("published", 1)

    r = await client.post(f"/api/listings/{listing['id']}/units", json={"adjustment": 9}, headers=landlord_headers)
    assert r.json()["available_units"] == 2


@pytest.mark.asyncio
async def test_delete_listing_removes_it_from_owner(client, db, landlord_headers):
    listing = await _create(client, landlord_headers, status="Occupied")
    r = await client.delete(f"/api/listings/{listing['id']}", headers=landlord_headers)
    assert r.status_code == 200
    assert await db.listings.find_one({"id": listing["id"]}) is None
    owner = await db.users.find_one({"id": listing["user_id"]})
    assert listing["id"] not in owner["listings"]


@pytest.mark.asyncio
async def test_landlord_application_review(client, admin_headers):
    headers = await login(client, "newlandlord@example.com", "Amina Njeri")

    r = await client.post("/api/landlord-applications", json={"payment_transaction_id": "  "}, headers=headers)
    assert r.status_code == 400

    r = await client.post("/api/landlord-applications", json={"payment_transaction_id": "QK12ABC"}, headers=headers)
    assert r.status_code == 200
    application = r.json()
    assert application["status"] == "pending_approval"

    r = await client.post("/api/landlord-applications", json={"payment_transaction_id": "QK12ABD"}, headers=headers)
    assert r.status_code == 400

    r = await client.post(
        f"/api/admin/landlord-applications/{application['id']}/reject", json={}, headers=admin_headers
    )
    assert r.json()["admin_feedback"] == "No reason provided"

    r = await client.get("/api/me/landlord-application", headers=headers)
    assert r.json()["status"] == "rejected"


@pytest.mark.asyncio
async def test_featured_admin_flow(client, admin_headers):
    r = await client.get("/api/listings", params={"status": "Occupied", "limit": 1})
    listing = r.json()[0]

    r = await client.get(f"/api/admin/featured/preview/{listing['id']}", headers=admin_headers)
    assert r.json()["monthly_charge"] == int(listing["price"] * 0.25 + 0.5)

    payload = {"listing_id": listing["id"], "display_mode": "double", "agreement_verified": False}
    r = await client.post("/api/admin/featured", json=payload, headers=admin_headers)
    assert r.status_code == 400

    r = await client.post("/api/admin/featured", json={**payload, "listing_id": "missing"}, headers=admin_headers)
    assert r.status_code == 404

    r = await client.post("/api/admin/featured", json={**payload, "agreement_verified": True}, headers=admin_headers)
    assert r.status_code == 200
    record = r.json()
    assert record["status"] == "active"

    r = await client.put("/api/admin/featured/display-mode", json={"display_mode": "double"}, headers=admin_headers)
    assert r.json()["updated"] == 5

    rotation = (await client.get("/api/featured")).json()
    assert rotation["display_mode"] == "double"
    assert [len(s) for s in rotation["slides"]] == [2, 2, 1]

    r = await client.post(f"/api/admin/featured/{record['id']}/expire", headers=admin_headers)
    assert r.status_code == 200
    rows = (await client.get("/api/admin/featured", headers=admin_headers)).json()
    assert next(row for row in rows if row["record"]["id"] == record["id"])["expired"] is True

    r = await client.delete(f"/api/admin/featured/{record['id']}", headers=admin_headers)
    assert r.status_code == 200
    r = await client.delete(f"/api/admin/featured/{record['id']}", headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_expire_featured_task(client, db):
    await db.featured_properties.update_many({}, {"$set": {"end_date": "2020-01-01T00:00:00+00:00"}})
    r = await client.post("/api/tasks/expire-featured")
    assert r.json()["expired"] == 4
    assert (await client.get("/api/featured")).json()["slides"] == []


@pytest.mark.asyncio
async def test_listing_summary_includes_whatsapp_link(client):
    listing = (await client.get("/api/listings", params={"limit": 1})).json()[0]
    r = await client.get(f"/api/listings/{listing['id']}/summary")
    body = r.json()
    assert "Key-2-Rent" in body["title"]
    assert body["whatsapp_url"].startswith("https://wa.me/254")

    r = await client.get("/api/listings/missing/summary")
    assert r.json()["whatsapp_url"] is None


@pytest.mark.asyncio
async def test_mpesa_disabled_returns_503(client):
    r = await client.post("/api/mpesa/stk-push", json={})
    assert r.status_code == 503
    r = await client.post("/api/mpesa/callback", json={})
    assert r.status_code == 503
    assert r.json() == {"message": "M-Pesa integration temporarily disabled"}


@pytest.mark.asyncio
async def test_mpesa_callback_when_enabled(client, db, monkeypatch):
    monkeypatch.setattr(server, "MPESA_ENABLED", True)
    monkeypatch.setattr(server, "callback_limiter", server.mpesa.FixedWindowRateLimiter())
    monkeypatch.setattr(server, "CALLBACK_RATE_LIMIT", 2)

    r = await client.post("/api/mpesa/callback", json={"Body": {}})
    assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    r = await client.post("/api/mpesa/callback", content=b"not json", headers={"content-type": "application/json"})
    assert r.status_code == 200
    r = await client.post("/api/mpesa/callback", json={"Body": {}})
    assert r.status_code == 429
    assert await db.mpesa_callbacks.count_documents({}) == 1


@pytest.mark.asyncio
async def test_profile_update(client, tenant_headers):
    r = await client.put("/api/me/profile", json={"name": " "}, headers=tenant_headers)
    assert r.status_code == 400

    r = await client.put(
        "/api/me/profile",
        json={"phone_number": "0712345678", "preferred_county": "Machakos"},
        headers=tenant_headers,
    )
    assert r.status_code == 200
    user = r.json()["user"]
    assert user["preferred_county"] == "Machakos"
    assert user["name"] == "Jane Tenant"


@pytest.mark.asyncio
async def test_editing_listing_to_vacant_requires_activation_fee(client, landlord_headers, admin_headers):
    listing = await _create(client, landlord_headers, status="Occupied")
    assert listing["payment_status"] == "paid"

    r = await client.put(f"/api/listings/{listing['id']}", json={"status": "Vacant"}, headers=landlord_headers)
    assert r.status_code == 200
    body = r.json()
    assert (body["payment_status"], body["visibility_status"]) == ("pending", "hidden")
    assert body["amount_due"] == 850

    r = await client.get(f"/api/listings/{listing['id']}")
    assert r.status_code == 404
    r = await client.get("/api/admin/vacant-payments", headers=admin_headers)
    assert listing["id"] in [p["id"] for p in r.json()]


@pytest.mark.asyncio
async def test_paid_vacant_listing_stays_live_after_edit(client, landlord_headers, admin_headers):
    listing = await _create(client, landlord_headers)
    r = await client.post(f"/api/admin/vacant-payments/{listing['id']}", json={"action": "approve"}, headers=admin_headers)
    assert r.status_code == 200

    r = await client.put(f"/api/listings/{listing['id']}", json={"description": "Newly painted"}, headers=landlord_headers)
    assert (r.json()["payment_status"], r.json()["visibility_status"]) == ("paid", "visible")


@pytest.mark.asyncio
async def test_shutdown_hook_on_in_memory_store(db):
    assert server.client is None
    await server.shutdown_db_client()
