"""
test_middleware.py — Request context middleware and error envelope

Request id header, /api/v1 rewrite, security headers and the
{"success": false, "error"} body rendered by the exception handlers.

Called by: pytest
Depends on: app/main.py, tests/conftest.py (client fixtures)
"""


def test_request_id_header_present(client):
    resp = client.get("/health")
    assert len(resp.headers["X-Request-ID"]) == 8


def test_request_id_unique_per_request(client):
    assert client.get("/health").headers["X-Request-ID"] != client.get("/health").headers["X-Request-ID"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_security_headers(client):
    resp = client.get("/health")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_v1_prefix_is_rewritten(client, procurement_request):
    resp = client.get(f"/api/v1/requests/{procurement_request.id}")
    assert resp.status_code == 200
    assert resp.json()["data"]["request_number"] == "REQ-100"


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/nonexistent-route-xyz")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["request_id"] == resp.headers["X-Request-ID"]


def test_domain_not_found_uses_error_envelope(client):
    resp = client.get("/api/requests/999999")
    assert resp.status_code == 404
    assert resp.json() == {
        "success": False,
        "error": "Заявка не найдена",
        "request_id": resp.headers["X-Request-ID"],
    }


def test_anonymous_request_is_401(anon_client):
    resp = anon_client.get("/api/requests")
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_viewer_cannot_run_procurement_actions(viewer_client, procurement_request):
    resp = viewer_client.post(f"/api/requests/{procurement_request.id}/archive")
    assert resp.status_code == 403
