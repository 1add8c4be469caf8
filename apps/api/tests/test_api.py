# apps/api/tests/test_api.py
import json

import pytest

from learnhub.core.enums import GatewayStatus, NotificationKind

COURSE_PLAN = {
    "name": "Python from scratch",
    "kind": "course",
    "course_id": "course-1",
    "price": 1000,
    "discount_percent": 10,
}


@pytest.fixture
def audit_calls(monkeypatch):
    calls = []
    monkeypatch.setattr("learnhub.routers.admin.audit_log", lambda **kwargs: calls.append(kwargs))
    return calls


async def create_plan(client, admin_headers, **overrides):
    response = await client.post("/plans", json={**COURSE_PLAN, **overrides}, headers=admin_headers)
    assert response.status_code == 201, response.text
    return response.json()


async def checkout(client, admin_headers, user_headers):
    plan = await create_plan(client, admin_headers)
    response = await client.post("/subscriptions", json={"plan_id": plan["id"]}, headers=user_headers)
    assert response.status_code == 201, response.text
    subscription = response.json()

    response = await client.post("/payments", json={"subscription_id": subscription["id"]}, headers=user_headers)
    assert response.status_code == 201, response.text
    return plan, subscription, response.json()


def signed(gateway, payload):
    body = json.dumps(payload).encode()
    return body, {"X-Sign": gateway.sign(body), "Content-Type": "application/json"}


# ────────────────────────────────────────────────
# Health & auth
# ────────────────────────────────────────────────
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers


async def test_protected_routes_require_token(client):
    assert (await client.get("/subscriptions/me")).status_code == 401
    assert (await client.get("/subscriptions/me", headers={"Authorization": "Bearer nope"})).status_code == 401


async def test_plan_admin_requires_admin_role(client, user_headers):
    response = await client.post("/plans", json=COURSE_PLAN, headers=user_headers)

    assert response.status_code == 403


# ────────────────────────────────────────────────
# Plans
# ────────────────────────────────────────────────
async def test_plan_catalogue(client, admin_headers):
    plan = await create_plan(client, admin_headers)

    assert plan["slug"] == "python-from-scratch"
    assert plan["discounted_price"] == 900

    listing = (await client.get("/plans", params={"kind": "course"})).json()
    assert listing["total"] == 1
    assert (await client.get(f"/plans/slug/{plan['slug']}")).json()["id"] == plan["id"]

    patched = await client.patch(f"/plans/{plan['id']}", json={"price": 1200}, headers=admin_headers)
    assert patched.json()["discounted_price"] == 1080

    duplicate = await client.post("/plans", json={**COURSE_PLAN, "name": "Another"}, headers=admin_headers)
    assert duplicate.status_code == 409
    assert "course-1" in duplicate.json()["detail"]

    deleted = await client.delete(f"/plans/{plan['id']}", headers=admin_headers)
    assert deleted.json() == {"id": plan["id"], "deleted": True, "deactivated": False}
    assert (await client.get(f"/plans/{plan['id']}")).status_code == 404


async def test_plan_patch_rejects_nulls(client, admin_headers):
    plan = await create_plan(client, admin_headers)

    for field in ("price", "kind", "name", "discount_percent"):
        response = await client.patch(f"/plans/{plan['id']}", json={field: None}, headers=admin_headers)
        assert response.status_code == 422, field

    cleared = await client.patch(f"/plans/{plan['id']}", json={"available_until": None}, headers=admin_headers)
    assert cleared.status_code == 200
    assert cleared.json()["discounted_price"] == 900


# ────────────────────────────────────────────────
# Checkout → webhook
# ────────────────────────────────────────────────
async def test_checkout_and_webhook_activation(client, gateway, dispatcher, admin_headers, user_headers):
    plan, subscription, link = await checkout(client, admin_headers, user_headers)

    assert subscription["status"] == "pending"
    assert subscription["price"] == 900
    assert link["status"] == "pending"
    assert link["payment_url"].startswith("https://pay.example.test/")
    assert 0 < link["link_expires_in_minutes"] <= 15

    access = (await client.get("/subscriptions/access/course-1", headers=user_headers)).json()
    assert access["has_access"] is False

    invoice_id = next(iter(gateway.invoices))
    body, headers = signed(gateway, {"invoiceId": invoice_id, "status": "success", "amount": 900})
    response = await client.post("/webhooks/monobank", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "received"}

    current = (await client.get(f"/subscriptions/{subscription['id']}", headers=user_headers)).json()
    assert current["status"] == "active"
    assert current["is_paid"] is True

    access = (await client.get("/subscriptions/access/course-1", headers=user_headers)).json()
    assert access["has_access"] is True
    assert access["subscription_id"] == subscription["id"]
    assert NotificationKind.PAYMENT_SUCCESS in dispatcher.kinds()

    again = await client.post("/payments", json={"subscription_id": subscription["id"]}, headers=user_headers)
    assert again.status_code == 409


async def test_webhook_with_bad_signature_is_acknowledged(client, gateway, admin_headers, user_headers):
    _, subscription, link = await checkout(client, admin_headers, user_headers)
    invoice_id = next(iter(gateway.invoices))

    response = await client.post(
        "/webhooks/monobank",
        content=json.dumps({"invoiceId": invoice_id, "status": "success"}),
        headers={"X-Sign": "forged", "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    payment = (await client.get(f"/payments/{link['id']}", headers=user_headers)).json()
    assert payment["status"] == "pending"
    current = (await client.get(f"/subscriptions/{subscription['id']}", headers=user_headers)).json()
    assert current["status"] == "pending"


async def test_sync_endpoint_polls_gateway(client, gateway, admin_headers, user_headers):
    _, subscription, link = await checkout(client, admin_headers, user_headers)
    invoice_id = next(iter(gateway.invoices))
    gateway.invoices[invoice_id]["status"] = GatewayStatus.FAILURE

    response = await client.post(f"/payments/{link['id']}/sync", headers=user_headers)

    assert response.status_code == 200
    assert response.json()["outcome"] == "applied"
    assert response.json()["payment"]["status"] == "failed"


# ────────────────────────────────────────────────
# Ownership & conflicts
# ────────────────────────────────────────────────
async def test_duplicate_course_subscription_is_409(client, admin_headers, user_headers):
    plan = await create_plan(client, admin_headers)
    first = await client.post("/subscriptions", json={"plan_id": plan["id"]}, headers=user_headers)
    second = await client.post("/subscriptions", json={"plan_id": plan["id"]}, headers=user_headers)

    assert first.status_code == 201
    assert second.status_code == 409


async def test_other_users_resources_are_hidden(client, auth_headers, admin_headers, user_headers):
    _, subscription, link = await checkout(client, admin_headers, user_headers)
    stranger = auth_headers("user-9", "stranger@example.com")

    assert (await client.get(f"/subscriptions/{subscription['id']}", headers=stranger)).status_code == 404
    assert (await client.get(f"/payments/{link['id']}", headers=stranger)).status_code == 404
    paying = await client.post("/payments", json={"subscription_id": subscription["id"]}, headers=stranger)
    assert paying.status_code == 404

    # admins see everything
    assert (await client.get(f"/subscriptions/{subscription['id']}", headers=admin_headers)).status_code == 200


async def test_cancel_pending_subscription(client, dispatcher, admin_headers, user_headers):
    plan = await create_plan(client, admin_headers)
    subscription = (await client.post("/subscriptions", json={"plan_id": plan["id"]}, headers=user_headers)).json()

    response = await client.post(
        f"/subscriptions/{subscription['id']}/cancel", json={"reason": "wrong course"}, headers=user_headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert NotificationKind.SUBSCRIPTION_CANCELLED in dispatcher.kinds()

    again = await client.post(f"/subscriptions/{subscription['id']}/cancel", json={}, headers=user_headers)
    assert again.status_code == 409


# ────────────────────────────────────────────────
# Admin
# ────────────────────────────────────────────────
async def test_admin_refund(client, gateway, admin_headers, user_headers):
    _, subscription, link = await checkout(client, admin_headers, user_headers)
    invoice_id = next(iter(gateway.invoices))
    body, headers = signed(gateway, {"invoiceId": invoice_id, "status": "success"})
    await client.post("/webhooks/monobank", content=body, headers=headers)

    too_much = await client.post(
        f"/admin/payments/{link['id']}/refund", json={"amount": 5000, "reason": "oops"}, headers=admin_headers
    )
    assert too_much.status_code == 400

    forbidden = await client.post(
        f"/admin/payments/{link['id']}/refund", json={"reason": "not allowed"}, headers=user_headers
    )
    assert forbidden.status_code == 403

    refunded = await client.post(
        f"/admin/payments/{link['id']}/refund", json={"reason": "course cancelled"}, headers=admin_headers
    )
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "refunded"
    assert refunded.json()["refunded_amount"] == 900

    current = (await client.get(f"/subscriptions/{subscription['id']}", headers=user_headers)).json()
    assert current["status"] == "cancelled"

    stats = (await client.get("/admin/payments/statistics", headers=admin_headers)).json()
    assert stats["net_revenue"] == 0


async def test_admin_sweep_and_recompute(client, admin_headers, audit_calls):
    sweep = await client.post("/admin/subscriptions/sweep", headers=admin_headers)
    recompute = await client.post("/admin/statistics/recompute", headers=admin_headers)

    assert sweep.status_code == 200
    assert sweep.json() == {"expired": 0, "cancelled": 0, "skipped": 0}
    assert recompute.status_code == 200
    assert recompute.json()["failed"] == []
    assert [call["action"] for call in audit_calls] == ["expiration_sweep_triggered", "statistics_recomputed"]


async def test_seed_plans_endpoint(client, admin_headers):
    first = await client.post("/admin/plans/seed", headers=admin_headers)
    second = await client.post("/admin/plans/seed", headers=admin_headers)

    assert first.status_code == 200
    assert [p["id"] for p in first.json()] == [p["id"] for p in second.json()]


async def test_admin_statistics_endpoints(client, gateway, admin_headers, user_headers):
    await checkout(client, admin_headers, user_headers)
    invoice_id = next(iter(gateway.invoices))
    body, headers = signed(gateway, {"invoiceId": invoice_id, "status": "success"})
    await client.post("/webhooks/monobank", content=body, headers=headers)

    payments = await client.get("/admin/payments/statistics", headers=admin_headers)
    assert payments.status_code == 200
    assert payments.json()["successful_payments"] == 1
    assert payments.json()["net_revenue"] == 900

    overview = await client.get("/admin/subscriptions/statistics", headers=admin_headers)
    assert overview.status_code == 200
    assert overview.json()["active"] == 1
    assert overview.json()["revenue"]["total"] == 900
    assert overview.json()["conversion_rate"] == 100.0

    assert (await client.get("/admin/subscriptions/statistics", headers=user_headers)).status_code == 403
