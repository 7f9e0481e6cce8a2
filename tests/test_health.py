"""
Tests for health, status, debug and metrics endpoints.
"""

import pytest

from despachante.storage import Base, engine


class TestHealth:

    def test_health_reports_feature_flags(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["response_enabled"] is False
        assert data["llm_enabled"] is False
        assert data["storage_backend"] == "sqlite"
        assert data["drive_configured"] is False

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready_with_schema(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client):
        Base.metadata.drop_all(bind=engine)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestStatus:

    def test_counters(self, client):
        client.post("/webhook", json={"phone": "5521999990000", "text": {"message": "quero transferir"}})
        client.post("/api/orcamento", json={"servico": "transferencia"})

        data = client.get("/status").json()

        assert data["status"] == "online"
        assert data["messages"] == 1
        assert data["messages_per_category"] == {"transferencia": 1}
        assert data["quotes"] == 1
        assert data["quoted_total"] == pytest.approx(659.78)
        assert data["trained"] == 0
        assert data["documents"] == 0

    def test_debug_has_no_credentials(self, client):
        data = client.get("/debug").json()

        assert data["config"]["suggestion_strategies"] == ["template", "generic"]
        assert data["config"]["gateway_configured"] is False
        assert "token" not in str(data["config"]).lower()


class TestMetrics:

    def test_metrics_exposed(self, client):
        client.post("/webhook", json={"foo": "bar"})
        client.post("/api/aprovar/999")

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert "http_requests_total" in body
        assert 'webhook_requests_total{result="unparsed"}' in body
        assert 'path="/api/aprovar/{message_id}"' in body

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert response.headers["x-request-id"]
