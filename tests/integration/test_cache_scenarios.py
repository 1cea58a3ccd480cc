"""
Integration tests for the cached request flow through the HTTP app.

A small directory application (companies and their employees) is mounted on
the cache service the same way a consuming service would wire its views.
"""

import asyncio
from typing import Dict

import pytest
from fastapi import HTTPException, Request
from fastapi.testclient import TestClient
from unittest.mock import patch

from service_cache.app.caching.keys import Resource
from service_cache.app.main import CacheService
from shared.config import ServiceConfig
from shared.test_helpers import TestDataFactory, TestEnvironment


INITIAL_VERSION = 1_700_000_000_000_000


class DirectoryApp:
    """In-memory data store plus views rendered through the cache manager."""

    def __init__(self, service: CacheService):
        self.service = service
        self.companies = {record.id: record for record in TestDataFactory.create_test_companies()}
        self.employees = {record.id: record for record in TestDataFactory.create_test_employees()}
        self.resources: Dict[str, Resource] = {}
        self.render_count = 0

        for record in list(self.companies.values()) + list(self.employees.values()):
            self.resources[record.identity] = Resource(record.kind, record.id, version=INITIAL_VERSION)
        for employee in self.employees.values():
            service.cache_manager.declare_dependency(
                self.resources[employee.parent],
                self.resources[employee.identity],
            )

        self._setup_routes()

    def _setup_routes(self):
        app = self.service.app

        @app.get("/companies/{company_id}")
        async def show_company(company_id: int, request: Request):
            company = self.companies.get(company_id)
            if company is None:
                raise HTTPException(status_code=404, detail="company not found")

            async def render() -> bytes:
                self.render_count += 1
                members = [e for e in self.employees.values() if e.parent == company.identity]
                return TestDataFactory.render_company(company, members)

            cached = await self.service.cache_manager.respond(
                self.resources[company.identity],
                request.headers,
                render,
                path=request.url.path,
                page_cache=True,
            )
            return self.service.to_response(cached)

        @app.put("/employees/{employee_id}")
        async def rename_employee(employee_id: int, payload: Dict[str, str]):
            employee = self.employees[employee_id]
            employee.attributes["name"] = payload["name"]
            result = self.service.cache_manager.touch(self.resources[employee.identity])
            return {"touched": result.identities}

        @app.delete("/companies/{company_id}")
        async def delete_company(company_id: int):
            company = self.companies.pop(company_id)
            self.service.cache_manager.delete(self.resources.pop(company.identity))
            return {"deleted": company.identity}


class TestCacheScenarios:
    """End-to-end behavior of the cache tiers behind HTTP."""

    @pytest.fixture
    def service(self, tmp_path):
        """Cache service with an isolated page cache root."""
        config = ServiceConfig("cache", 8020, **TestEnvironment.get_mock_config(str(tmp_path / "public")))
        return CacheService(config)

    @pytest.fixture
    def directory(self, service):
        return DirectoryApp(service)

    @pytest.fixture
    def client(self, service, directory):
        """Create test client after the application routes are mounted."""
        return TestClient(service.app)

    def test_conditional_get_returns_not_modified(self, service, client):
        """Resubmitting the ETag of unchanged content yields 304."""
        first = client.get("/companies/1")
        assert first.status_code == 200
        etag = first.headers["ETag"]
        # Drop the artifact so the second request reaches the conditional check
        service.pages.invalidate("/companies/1")

        second = client.get("/companies/1", headers={"If-None-Match": etag})

        assert second.status_code == 304
        assert second.content == b""
        assert second.headers["ETag"] == etag
        assert second.headers["Cache-Control"] == first.headers["Cache-Control"]
        assert second.headers["Last-Modified"] == first.headers["Last-Modified"]

    def test_employee_update_changes_company_etag(self, service, directory, client):
        """Touching a child changes the parent's validators and page."""
        first = client.get("/companies/1")
        etag = first.headers["ETag"]
        assert b"Ada" in first.content

        response = client.put("/employees/7", json={"name": "Ada Lovelace"})
        assert response.json()["touched"] == ["employee/7", "company/1"]

        second = client.get("/companies/1", headers={"If-None-Match": etag})

        assert second.status_code == 200
        assert second.headers["ETag"] != etag
        assert b"Ada Lovelace" in second.content
        assert second.headers.get("X-Page-Cache") == "stored"
        assert directory.render_count == 2

    def test_unrelated_update_keeps_page(self, service, client):
        client.get("/companies/1")

        client.put("/employees/9", json={"name": "Linus T."})

        assert service.pages.lookup("/companies/1") is not None
        assert client.get("/companies/1").headers["X-Page-Cache"] == "hit"

    def test_deleted_company_page_falls_through(self, service, client):
        """Deleting a resource removes its artifact; the next request renders dynamically."""
        stored = client.get("/companies/1")
        assert stored.headers["X-Page-Cache"] == "stored"
        assert client.get("/companies/1").headers["X-Page-Cache"] == "hit"

        client.delete("/companies/1")

        assert service.pages.lookup("/companies/1") is None
        response = client.get("/companies/1")
        assert response.status_code == 404
        assert response.headers.get("X-Page-Cache") is None

    def test_store_timeout_still_serves_fresh_content(self, service, directory, client):
        """A hung backend read degrades to a miss, not an error."""

        async def hung_get(key):
            await asyncio.sleep(5)

        with patch.object(service.backend, "get", new=hung_get):
            response = client.get("/companies/2")

        assert response.status_code == 200
        assert b"Nordic Offsets" in response.content
        assert directory.render_count == 1
        assert service.metrics.sample_value("cache_store_errors_total", operation="get") == 1

    def test_fragment_reused_across_requests(self, service, directory, client):
        client.get("/companies/1")
        service.pages.invalidate("/companies/1")

        response = client.get("/companies/1")

        assert response.status_code == 200
        assert directory.render_count == 1
        assert service.metrics.sample_value("cache_hits_total", cache_type="fragment") == 1
