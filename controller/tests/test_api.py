"""
Tests for the HTTP API.

Runs the FastAPI app in-process through httpx's ASGI transport with the
controller dependency overridden by the test controller.
"""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from converge.main import app
from converge.services.controller import get_controller

from conftest import web_spec

MANIFESTS = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 2
  template:
    spec:
      containers:
        - name: web
          image: nginx:1.25
---
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: db
spec:
  template:
    spec:
      containers:
        - name: db
          image: postgres:16
"""


@pytest.fixture
async def api(controller):
    app.dependency_overrides[get_controller] = lambda: controller
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def settle(controller):
    await asyncio.wait_for(controller.wait_idle(), timeout=5)


class TestResourcesAPI:

    @pytest.mark.asyncio
    async def test_submit_and_read_back(self, api, controller):
        response = await api.post("/api/resources", json=web_spec())

        assert response.status_code == 202
        body = response.json()
        assert body["spec"]["generation"] == 1
        assert body["spec"]["kind"] == "Deployment"

        await settle(controller)
        response = await api.get("/api/resources/default/deployment/web")

        assert response.status_code == 200
        body = response.json()
        assert body["status"]["phase"] == "Converged"
        assert body["status"]["health"] == "Healthy"
        assert body["status"]["last_reconciled_generation"] == 1
        assert body["reconcile"]["reconcile_count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_spec_is_422(self, api):
        response = await api.post("/api/resources", json=web_spec(replicas=-1, name="Bad_Name"))

        assert response.status_code == 422
        fields = {error["field"] for error in response.json()["detail"]["errors"]}
        assert fields == {"name", "replicas"}

    @pytest.mark.asyncio
    async def test_unknown_resource_is_404(self, api):
        response = await api.get("/api/resources/default/Deployment/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unsupported_kind_is_404(self, api):
        response = await api.get("/api/resources/default/CronJob/web")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list(self, api, controller):
        await api.post("/api/resources", json=web_spec())
        await api.post("/api/resources", json=web_spec(name="api"))
        await settle(controller)

        response = await api.get("/api/resources")

        assert response.status_code == 200
        assert sorted(item["name"] for item in response.json()) == ["api", "web"]

    @pytest.mark.asyncio
    async def test_delete(self, api, controller, managed_system):
        await api.post("/api/resources", json=web_spec())
        await settle(controller)

        response = await api.delete("/api/resources/default/Deployment/web")

        assert response.status_code == 200
        assert response.json()["resource"] == "default/Deployment/web"
        assert (await api.get("/api/resources/default/Deployment/web")).status_code == 404
        assert (await api.delete("/api/resources/default/Deployment/web")).status_code == 404

    @pytest.mark.asyncio
    async def test_submit_manifests(self, api, controller):
        response = await api.post(
            "/api/resources/manifests",
            content=MANIFESTS,
            headers={"Content-Type": "application/yaml"},
        )

        assert response.status_code == 202
        accepted = response.json()["accepted"]
        assert [(spec["kind"], spec["name"]) for spec in accepted] == [
            ("Deployment", "web"),
            ("StatefulSet", "db"),
        ]

        await settle(controller)
        response = await api.get("/api/resources/default/statefulset/db")
        assert response.json()["status"]["phase"] == "Converged"

    @pytest.mark.asyncio
    async def test_invalid_manifests_are_422(self, api):
        response = await api.post("/api/resources/manifests", content="kind: [broken")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_malformed_container_is_422(self, api):
        text = "kind: Deployment\nmetadata: {name: web}\nspec: {template: {spec: {containers: [nginx]}}}"

        response = await api.post("/api/resources/manifests", content=text)

        assert response.status_code == 422


class TestMetricsAndHealth:

    @pytest.mark.asyncio
    async def test_metrics(self, api, controller):
        await api.post("/api/resources", json=web_spec())
        await settle(controller)

        response = await api.get("/api/metrics")

        assert response.status_code == 200
        body = response.json()
        assert body["queue_depth"] == 0
        assert body["resource_phase"] == {"default/Deployment/web": "Converged"}
        assert "set_replicas" in body["action_latency"]

    @pytest.mark.asyncio
    async def test_health(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["backend"] == "memory"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
