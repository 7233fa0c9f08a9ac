"""
Tests for Main Application endpoints and startup helpers.
"""

from fastapi.testclient import TestClient

from token_ledger.db.migration_runner import sync_database_url


class TestRootEndpoints:
    """Service metadata and metrics."""

    def test_root(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert "service" in data
        assert "version" in data

    def test_metrics_exposes_prometheus_text(self, client: TestClient) -> None:
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "ledger_http_requests_total" in response.text

    def test_validation_errors_are_sanitized(self, client: TestClient) -> None:
        response = client.post("/v1/billing/usage", json={"secret": "hunter2"})

        assert response.status_code == 422
        assert "hunter2" not in response.text
        assert all("input" not in error for error in response.json()["detail"])


class TestMigrationRunner:
    """Alembic URL handling."""

    def test_asyncpg_url_converted(self) -> None:
        assert (
            sync_database_url("postgresql+asyncpg://u:p@db:5432/ledger")
            == "postgresql+psycopg2://u:p@db:5432/ledger"
        )

    def test_sync_url_unchanged(self) -> None:
        url = "postgresql+psycopg2://u:p@db:5432/ledger"
        assert sync_database_url(url) == url
