"""
Tests: application factory, middleware and error envelope.
"""

import pytest

from cmms.config import ProductionConfig
from cmms.services.jwt_service import decode_access_token, generate_access_token


@pytest.mark.integration
def test_health_endpoints(client):
    live = client.get("/api/v1/health")
    assert live.status_code == 200
    assert live.get_json()["escalation_mode"] == "lazy"

    ready = client.get("/api/v1/health/ready")
    assert ready.get_json() == {"status": "ok", "database": "ok"}


@pytest.mark.integration
def test_request_id_header_is_set(client):
    res = client.get("/api/v1/health")
    assert res.headers.get("X-Request-ID")


@pytest.mark.integration
def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nowhere")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nowhere"


@pytest.mark.integration
def test_non_json_body_is_rejected(client, users, auth_headers):
    headers = {**auth_headers(users["officer"]), "Content-Type": "text/plain"}
    res = client.post("/api/v1/permits", data="type=hot-work", headers=headers)
    assert res.status_code == 415


@pytest.mark.integration
def test_array_body_is_rejected(client, users, auth_headers):
    res = client.post("/api/v1/permits", json=["hot-work"], headers=auth_headers(users["officer"]))
    assert res.status_code == 400


@pytest.mark.integration
def test_invalid_token_gives_no_identity(client):
    res = client.get("/api/v1/permits", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 400
    assert res.get_json()["error"] == "Tenant ID required"


@pytest.mark.unit
def test_token_round_trip():
    token = generate_access_token(7, 3, ["safety_officer"])
    payload = decode_access_token(token)
    assert payload["sub"] == "7"
    assert payload["tenant_id"] == 3
    assert payload["roles"] == ["safety_officer"]


@pytest.mark.unit
def test_production_config_requires_database(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        ProductionConfig()
