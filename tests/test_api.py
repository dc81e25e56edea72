from fastapi.testclient import TestClient
from conftest import auth_headers, future, issue_token

from tenderflow.main import create_app


def _create_tender(api_client, buyer, **overrides):
    payload = {
        "title": "Warehouse racking",
        "description": "Supply and install pallet racking",
        "budget_min": "1000",
        "budget_max": "5000",
        "deadline": future().isoformat(),
        "status": "open",
    }
    payload.update(overrides)
    resp = api_client.post("/api/v1/tenders", json=payload, headers=auth_headers(buyer))
    assert resp.status_code == 201
    return resp.json()["data"]


def _submit(api_client, vendor, tender_id, amount):
    resp = api_client.post(
        "/api/v1/bids",
        json={"tender_id": tender_id, "amount": amount, "proposal": "racking offer"},
        headers=auth_headers(vendor),
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def test_health_is_public_and_reports_database(api_client):
    resp = api_client.get("/api/v1/health", headers={"x-trace-id": "trace_health_1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["connected"] is True
    assert body["data"]["state"] == "connected"
    assert body["data"]["backend"] == "sqlite"
    assert body["meta"]["trace_id"] == "trace_health_1"
    assert resp.headers["x-trace-id"] == "trace_health_1"


def test_health_reports_503_when_database_closed(api_client, engine):
    engine.manager.close()
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 503
    assert resp.json()["data"]["connected"] is False


def test_requests_without_token_are_unauthorized(api_client):
    resp = api_client.post("/api/v1/tenders", json={"title": "No auth"})
    assert resp.status_code == 401
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["error"]["class"] == "security_sensitive"
    assert body["error"]["retryable"] is False
    assert body["meta"]["trace_id"]


def test_bad_tokens_are_rejected(api_client, buyer):
    forged = issue_token(user_id=buyer.user_id, role="buyer", secret="wrong_secret")
    resp = api_client.get("/api/v1/bids", headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "invalid token signature"

    expired = issue_token(user_id=buyer.user_id, role="buyer", ttl_minutes=-5)
    resp = api_client.get("/api/v1/bids", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401

    stranger = issue_token(user_id=buyer.user_id, role="auditor")
    resp = api_client.get("/api/v1/bids", headers={"Authorization": f"Bearer {stranger}"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


def test_award_flow_over_http(api_client, buyer, vendor_a, vendor_b):
    tender = _create_tender(api_client, buyer)
    assert tender["status"] == "open"
    assert tender["budget_max"] == "5000"

    bid_a = _submit(api_client, vendor_a, tender["id"], "2400")
    bid_b = _submit(api_client, vendor_b, tender["id"], "3100")

    resp = api_client.post(f"/api/v1/bids/{bid_a['id']}/award", headers=auth_headers(buyer))
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "TENDER_NOT_CLOSED"
    assert resp.json()["error"]["class"] == "business_rule"

    resp = api_client.post(f"/api/v1/tenders/{tender['id']}/close", headers=auth_headers(buyer))
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "closed"

    resp = api_client.post(
        f"/api/v1/bids/{bid_a['id']}/award",
        json={"notes": "best value"},
        headers=auth_headers(buyer),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "accepted"
    assert resp.json()["message"] == "bid awarded"

    resp = api_client.get(f"/api/v1/tenders/{tender['id']}/bids", headers=auth_headers(buyer))
    view = resp.json()["data"]
    assert view["tender"]["status"] == "awarded"
    assert {b["id"]: b["status"] for b in view["bids"]} == {bid_a["id"]: "accepted", bid_b["id"]: "rejected"}
    assert view["stats"]["accepted"] == 1

    resp = api_client.get(f"/api/v1/bids/{bid_b['id']}/history", headers=auth_headers(vendor_b))
    assert [e["action"] for e in resp.json()["data"]] == ["submitted", "rejected"]

    resp = api_client.post(f"/api/v1/bids/{bid_b['id']}/accept", headers=auth_headers(buyer))
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "BID_ALREADY_PROCESSED"


def test_vendor_actions_over_http(api_client, buyer, vendor_a, vendor_b):
    tender = _create_tender(api_client, buyer)

    resp = api_client.get(f"/api/v1/tenders/{tender['id']}/eligibility", headers=auth_headers(vendor_a))
    assert resp.json()["data"]["can_bid"] is True

    bid = _submit(api_client, vendor_a, tender["id"], "1500")
    resp = api_client.post(
        "/api/v1/bids",
        json={"tender_id": tender["id"], "amount": "1600"},
        headers=auth_headers(vendor_a),
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "DUPLICATE_BID"

    resp = api_client.patch(f"/api/v1/bids/{bid['id']}", json={"amount": "1450"}, headers=auth_headers(vendor_a))
    assert resp.status_code == 200
    assert resp.json()["data"]["amount"] == "1450"

    resp = api_client.get(f"/api/v1/bids/{bid['id']}", headers=auth_headers(vendor_b))
    assert resp.status_code == 403

    resp = api_client.post(
        f"/api/v1/bids/{bid['id']}/withdraw",
        json={"reason": "pricing error"},
        headers=auth_headers(vendor_a),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "withdrawn"

    resp = api_client.get("/api/v1/bids/stats", headers=auth_headers(vendor_a))
    assert resp.json()["data"]["total_bids"] == 1


def test_evaluate_and_validation_errors(api_client, buyer, vendor_a):
    tender = _create_tender(api_client, buyer)
    bid = _submit(api_client, vendor_a, tender["id"], "2000")

    resp = api_client.post(
        f"/api/v1/bids/{bid['id']}/evaluate",
        json={"status": "withdrawn"},
        headers=auth_headers(buyer),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    resp = api_client.post(
        f"/api/v1/bids/{bid['id']}/evaluate",
        json={"status": "rejected", "evaluation_notes": "late delivery"},
        headers=auth_headers(buyer),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "rejected"

    resp = api_client.post(
        "/api/v1/bids",
        json={"tender_id": tender["id"], "amount": "0"},
        headers=auth_headers(vendor_a),
    )
    assert resp.status_code == 400

    resp = api_client.post(
        "/api/v1/bids",
        json={"tender_id": tender["id"], "amount": "99999"},
        headers=auth_headers(vendor_a),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "BID_AMOUNT_OUT_OF_BUDGET"


def test_not_found_shapes(api_client, vendor_a):
    resp = api_client.get("/api/v1/bids/999", headers=auth_headers(vendor_a))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "BID_NOT_FOUND"

    resp = api_client.get("/api/v1/no-such-route", headers=auth_headers(vendor_a))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_tender_listing_is_public_and_counts_views(api_client, buyer):
    tender = _create_tender(api_client, buyer, title="Solar panels")
    _create_tender(api_client, buyer, title="Draft idea", status="draft")

    resp = api_client.get("/api/v1/tenders", params={"status": "open", "search": "solar"})
    page = resp.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["id"] == tender["id"]

    api_client.get(f"/api/v1/tenders/{tender['id']}")
    resp = api_client.get(f"/api/v1/tenders/{tender['id']}")
    assert resp.json()["data"]["view_count"] == 2


def test_header_identity_when_jwt_disabled(engine, buyer, monkeypatch):
    for name in ("JWT_SHARED_SECRET", "JWT_ISSUER", "JWT_AUDIENCE"):
        monkeypatch.delenv(name, raising=False)
    client = TestClient(create_app(engine))

    resp = client.post(
        "/api/v1/tenders",
        json={"title": "Header identity"},
        headers={"x-user-id": str(buyer.user_id), "x-user-role": "buyer"},
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["created_by"] == buyer.user_id

    resp = client.post("/api/v1/tenders", json={"title": "Anonymous"})
    assert resp.status_code == 401


def test_archived_tenders_only_listed_on_request(api_client, buyer):
    tender = _create_tender(api_client, buyer, title="Retired fleet")
    resp = api_client.post(f"/api/v1/tenders/{tender['id']}/archive", headers=auth_headers(buyer))
    assert resp.status_code == 200

    assert api_client.get("/api/v1/tenders").json()["data"]["total"] == 0
    resp = api_client.get("/api/v1/tenders", params={"include_archived": "true"})
    assert [t["id"] for t in resp.json()["data"]["items"]] == [tender["id"]]
