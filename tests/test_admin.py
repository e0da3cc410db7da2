from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.extensions import db
from carousel_billing.models import BillingEvent, ManualGrant


def test_admin_routes_require_auth(client):
    assert client.get("/admin/plans").status_code == 401

def test_admin_routes_forbid_regular_users(client, make_user, auth_headers):
    uid = make_user()
    resp = client.get("/admin/plans", headers=auth_headers(uid))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "forbidden"

def test_list_plans(client, plans, make_user, auth_headers):
    admin = make_user(email="admin@example.com", admin=True)
    data = client.get("/admin/plans", headers=auth_headers(admin)).get_json()
    assert [p["tier"] for p in data] == ["free", "starter", "creator", "agency"]
    assert data[2]["external_price_ids"]["usd"] == "price_creator_usd"

def test_grant_lifecycle(app, client, plans, make_user, auth_headers):
    admin = make_user(email="admin@example.com", admin=True)
    uid = make_user(email="friend@example.com")
    headers = auth_headers(admin)

    resp = client.post("/admin/grants", json={
        "email": "Friend@Example.com", "tier": "agency", "custom_daily_limit": 40,
        "days": 7, "reason": "partner trial",
    }, headers=headers)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["tier"] == "agency" and body["granted_by"] == "admin@example.com"
    assert body["expires_at"] is not None

    ent = client.get(f"/admin/users/{uid}/entitlement", headers=headers).get_json()
    assert ent["source"] == "manual_grant" and ent["daily_limit"] == 40 and ent["is_manual"]

    # re-granting replaces instead of stacking
    assert client.post("/admin/grants", json={"user_id": uid, "tier": "starter"}, headers=headers).status_code == 201
    with app.app_context():
        grants = db.session.query(ManualGrant).filter_by(user_id=uid).all()
        assert len(grants) == 1 and grants[0].tier == "starter" and grants[0].expires_at is None

    assert client.delete(f"/admin/grants/{uid}", headers=headers).status_code == 200
    ent = client.get(f"/admin/users/{uid}/entitlement", headers=headers).get_json()
    assert ent["tier"] == "free"
    assert client.delete(f"/admin/grants/{uid}", headers=headers).status_code == 404

def test_grant_validation(client, plans, make_user, auth_headers):
    admin = make_user(email="admin@example.com", admin=True)
    uid = make_user(email="friend@example.com")
    headers = auth_headers(admin)
    resp = client.post("/admin/grants", json={"user_id": uid, "tier": "platinum"}, headers=headers)
    assert resp.status_code == 400 and resp.get_json()["error"] == "invalid_grant"
    resp = client.post("/admin/grants", json={"user_id": uid, "tier": "creator", "expires_at": "soon"}, headers=headers)
    assert resp.status_code == 400
    resp = client.post("/admin/grants", json={"email": "nobody@example.com", "tier": "creator"}, headers=headers)
    assert resp.status_code == 404

def test_entitlement_for_unknown_user(client, make_user, auth_headers):
    admin = make_user(email="admin@example.com", admin=True)
    assert client.get("/admin/users/4242/entitlement", headers=auth_headers(admin)).status_code == 404

def test_billing_events_listing(app, client, make_user, auth_headers):
    admin = make_user(email="admin@example.com", admin=True)
    with app.app_context():
        db.session.add(BillingEvent(external_event_id="evt_a", event_type="invoice.paid", payload={}, processed=True))
        db.session.add(BillingEvent(external_event_id="evt_b", event_type="invoice.payment_failed", payload={},
                                    processed=False, retries=2, notes="handler_error:ProviderUnavailable"))
        db.session.commit()
    headers = auth_headers(admin)
    data = client.get("/admin/billing-events", headers=headers).get_json()
    assert [e["event_id"] for e in data] == ["evt_b", "evt_a"]
    pending = client.get("/admin/billing-events?unprocessed=1", headers=headers).get_json()
    assert [e["event_id"] for e in pending] == ["evt_b"]
    assert pending[0]["retries"] == 2

def test_grant_rejects_non_numeric_limit(app, client, plans, make_user, auth_headers):
    admin = make_user(email="admin@example.com", admin=True)
    uid = make_user(email="friend@example.com")
    headers = auth_headers(admin)
    resp = client.post("/admin/grants", json={"user_id": uid, "tier": "agency", "custom_daily_limit": "lots"}, headers=headers)
    assert resp.status_code == 400
    assert "custom_daily_limit" in resp.get_json()["message"]
    resp = client.post("/admin/grants", json={"user_id": uid, "tier": "agency", "days": "a week"}, headers=headers)
    assert resp.status_code == 400
    with app.app_context():
        assert db.session.query(ManualGrant).count() == 0

def test_grant_when_plan_catalog_unavailable(app, client, make_user, auth_headers, monkeypatch):
    admin = make_user(email="admin@example.com", admin=True)
    uid = make_user(email="friend@example.com")

    def _down():
        raise EntitlementUnavailable("plan catalog unavailable")

    monkeypatch.setattr("carousel_billing.services.grants.known_tiers", _down)
    resp = client.post("/admin/grants", json={"user_id": uid, "tier": "agency"}, headers=auth_headers(admin))
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "5"
