"""
Unit tests for the cache service HTTP surface.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

from service_cache.app.main import CacheService, create_app
from shared.config import ServiceConfig
from shared.test_helpers import TestEnvironment


class TestCacheService:
    """Test cases for CacheService."""

    @pytest.fixture
    def config(self, tmp_path):
        """Isolated configuration with the page cache under tmp_path."""
        return ServiceConfig("cache", 8020, **TestEnvironment.get_mock_config(str(tmp_path / "public")))

    @pytest.fixture
    def cache_service(self, config):
        """Create CacheService instance."""
        return CacheService(config)

    @pytest.fixture
    def client(self, cache_service):
        """Create test client."""
        return TestClient(cache_service.app)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "cache"
        assert data["backend"] == "memory"
        assert data["namespace"] == "views"

    def test_create_app(self, config):
        app = create_app(config)
        assert app.state.cache_service.config.cache_namespace == "views"

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"fragment_store": "ok", "page_cache": "ok"}

    def test_health_degraded_when_store_down(self, cache_service, client):
        with patch.object(cache_service.backend, "ping", new_callable=AsyncMock) as mock_ping:
            mock_ping.side_effect = ConnectionError("down")
            response = client.get("/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["dependencies"]["fragment_store"] == "unavailable"

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "cache_hits_total" in response.text

    def test_invalidate_fragments_by_prefix(self, cache_service, client):
        asyncio.run(cache_service.fragments.put("views:company/1-1:ctx=none", b"A"))
        asyncio.run(cache_service.fragments.put("other:company/1-1:ctx=none", b"B"))

        response = client.post("/admin/cache/invalidate", json={"prefix": "views:"})

        assert response.status_code == 200
        assert response.json() == {"prefix": "views:", "deleted": 1}

    def test_invalidate_fragments_store_unavailable(self, cache_service, client):
        with patch.object(cache_service.backend, "delete_prefix", new_callable=AsyncMock) as mock_delete:
            mock_delete.side_effect = ConnectionError("down")
            response = client.post("/admin/cache/invalidate", json={"prefix": "views:"})

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"

    def test_invalidate_fragments_rejects_empty_prefix(self, client):
        response = client.post("/admin/cache/invalidate", json={"prefix": ""})
        assert response.status_code == 422

    def test_page_artifact_served_before_handler(self, cache_service, client):
        cache_service.pages.materialize("/companies/1", b"<h1>Acme</h1>")

        response = client.get("/companies/1")

        assert response.status_code == 200
        assert response.content == b"<h1>Acme</h1>"
        assert response.headers["X-Page-Cache"] == "hit"
        assert response.headers["Content-Encoding"] == "gzip"

    def test_page_artifact_without_gzip(self, cache_service, client):
        cache_service.pages.materialize("/companies/1", b"<h1>Acme</h1>")

        response = client.get("/companies/1", headers={"Accept-Encoding": "identity"})

        assert response.content == b"<h1>Acme</h1>"
        assert "Content-Encoding" not in response.headers
        assert cache_service.metrics.sample_value("cache_hits_total", cache_type="page") == 1

    def test_admin_paths_bypass_page_cache(self, cache_service, client):
        cache_service.pages.materialize("/admin/cache/stats", b"shadow")

        response = client.get("/admin/cache/stats")

        assert response.headers.get("X-Page-Cache") is None
        assert "fragments" in response.json()

    def test_invalidate_page_by_path(self, cache_service, client):
        cache_service.pages.materialize("/companies/1", b"<h1>Acme</h1>")

        response = client.post("/admin/pages/invalidate", json={"path": "/companies/1"})

        assert response.json() == {"path": "/companies/1", "removed": 1}
        assert client.get("/companies/1").status_code == 404

    def test_invalidate_pages_by_prefix(self, cache_service, client):
        cache_service.pages.materialize("/companies/1", b"one")
        cache_service.pages.materialize("/companies/2", b"two")

        response = client.post("/admin/pages/invalidate", json={"prefix": "/companies"})

        assert response.json() == {"prefix": "/companies", "removed": 2}

    def test_invalidate_pages_requires_exactly_one_target(self, client):
        response = client.post("/admin/pages/invalidate", json={})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

        response = client.post("/admin/pages/invalidate", json={"path": "/a", "prefix": "/b"})
        assert response.status_code == 400

    def test_invalidate_pages_rejects_traversal(self, client):
        response = client.post("/admin/pages/invalidate", json={"path": "/../etc"})
        assert response.status_code == 400

    def test_declare_dependency_and_touch(self, client):
        response = client.post(
            "/admin/resources/dependencies",
            json={"dependent": "company/1", "dependency": "employee/7"},
        )
        assert response.json() == {"dependency": "employee/7", "dependents": ["company/1"]}

        response = client.post("/admin/resources/touch", json={"identity": "employee/7"})

        assert response.status_code == 200
        data = response.json()
        assert data["root"] == "employee/7"
        assert [item["identity"] for item in data["touched"]] == ["employee/7", "company/1"]
        assert data["cycles"] == []

    def test_touch_removes_bound_pages(self, cache_service, client):
        cache_service.pages.materialize("/companies/1", b"one", sources=["company/1"])

        client.post("/admin/resources/touch", json={"identity": "company/1"})

        assert cache_service.pages.lookup("/companies/1") is None

    def test_touch_delete_forgets_edges(self, cache_service, client):
        cache_service.graph.declare_dependency("company/1", "employee/7")

        response = client.post("/admin/resources/touch", json={"identity": "employee/7", "delete": True})

        assert response.status_code == 200
        assert cache_service.graph.dependents_of("employee/7") == set()

    def test_touch_reports_incomplete_propagation(self, cache_service, client):
        def failing(event):
            raise OSError("read-only filesystem")

        cache_service.propagator.subscribe(failing)

        response = client.post("/admin/resources/touch", json={"identity": "company/1"})

        assert response.status_code == 500
        data = response.json()
        assert data["code"] == "PROPAGATION_INCOMPLETE"
        assert data["details"]["failed"] == ["company/1"]

    def test_warm_dry_run(self, client):
        response = client.post("/admin/cache/warm", json={"paths": ["/companies"], "dry_run": True})

        assert response.status_code == 200
        assert response.json()["planned"] == ["/companies"]
        assert response.json()["warmed"] == []

    def test_warm_through_app(self, cache_service, client):
        response = client.post("/admin/cache/warm", json={"paths": ["/"]})

        assert response.status_code == 200
        assert response.json()["warmed"] == ["/"]

    def test_stats(self, client):
        response = client.get("/admin/cache/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["fragments"]["backend"] == "memory"
        assert data["pages"]["artifacts"] == 0
