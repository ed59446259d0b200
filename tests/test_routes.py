import base64

import pytest
from fastapi.testclient import TestClient

from conftest import CONFIG, OWNER, FakeSpin, make_clients
from spinstudio.main import app
from spinstudio.pipeline import routes
from spinstudio.pipeline.config import ApiKeys
from spinstudio.pipeline.orchestrator import ServiceRegistry

FRONT = {
    "filename": "front.jpg",
    "content_type": "image/jpeg",
    "data_base64": base64.b64encode(b"front-bytes").decode(),
}


class FakeKeys:
    def __init__(self, stored=None):
        self.stored = stored
        self.saved = []

    async def load(self, owner_id):
        return self.stored

    async def save(self, owner_id, keys):
        self.saved.append((owner_id, keys))
        return keys


class FakeProducts:
    def __init__(self, rows):
        self.rows = rows

    async def list_products(self, owner_id):
        return [r for r in self.rows if r["user_id"] == owner_id]

    async def get_product(self, owner_id, product_id):
        return next(
            (r for r in self.rows if r["id"] == product_id and r["user_id"] == owner_id),
            None,
        )


@pytest.fixture
def keys():
    return FakeKeys()


@pytest.fixture
def registry():
    return ServiceRegistry(
        defaults_factory=lambda: CONFIG,
        clients_factory=lambda config: make_clients(spin=FakeSpin()),
    )


@pytest.fixture
def client(monkeypatch, keys, registry):
    monkeypatch.delenv("SERVICE_SHARED_SECRET", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)

    products = FakeProducts([
        {"id": "p-1", "user_id": OWNER, "name": "Chair", "videoUrl": "https://x/v.mp4"},
        {"id": "p-2", "user_id": OWNER, "name": "Lamp", "videoUrl": None},
        {"id": "p-3", "user_id": "someone-else", "name": "Desk", "videoUrl": "https://x/d.mp4"},
    ])

    app.dependency_overrides[routes.get_registry] = lambda: registry
    app.dependency_overrides[routes.get_api_key_repository] = lambda: keys
    app.dependency_overrides[routes.get_product_store] = lambda: products
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestPipelineRoutes:
    def test_start_returns_initial_snapshot(self, client):
        resp = client.post("/pipeline/start", json={
            "user_id": OWNER, "name": "Chair", "front_image": FRONT,
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] in {"UPLOADING", "ENHANCING", "GENERATING_SPIN", "SAVING", "COMPLETE"}
        assert body["job"]["name"] == "Chair"
        assert "front_image" not in body["job"]

    def test_second_start_conflicts_until_reset(self, client):
        payload = {"user_id": OWNER, "name": "Chair", "front_image": FRONT}
        assert client.post("/pipeline/start", json=payload).status_code == 200
        assert client.post("/pipeline/start", json=payload).status_code == 409

        reset = client.post("/pipeline/reset", params={"user_id": OWNER})
        assert reset.status_code == 200
        assert reset.json()["state"] == "IDLE"
        assert client.post("/pipeline/start", json=payload).status_code == 200

    def test_start_without_user(self, client):
        resp = client.post("/pipeline/start", json={"name": "Chair", "front_image": FRONT})
        assert resp.status_code == 401

    def test_start_without_front_image_data(self, client):
        resp = client.post("/pipeline/start", json={
            "user_id": OWNER, "name": "Chair", "front_image": {"filename": "front.jpg"},
        })
        assert resp.status_code == 422

    def test_status_defaults_to_idle(self, client):
        resp = client.get("/pipeline/status", params={"user_id": "new-user"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "IDLE"
        assert [s["status"] for s in body["steps"]] == ["pending"] * 4

    def test_status_and_reset_do_not_register_unknown_owners(self, client, registry):
        for i in range(50):
            assert client.get("/pipeline/status", params={"user_id": f"anyone-{i}"}).status_code == 200
            assert client.post("/pipeline/reset", params={"user_id": f"anyone-{i}"}).status_code == 200
        assert len(registry) == 0

    def test_reset_forgets_the_owner(self, client, registry):
        payload = {"user_id": OWNER, "name": "Chair", "front_image": FRONT}
        assert client.post("/pipeline/start", json=payload).status_code == 200
        assert registry.peek(OWNER) is not None

        client.post("/pipeline/reset", params={"user_id": OWNER})

        assert registry.peek(OWNER) is None
        assert client.get("/pipeline/status", params={"user_id": OWNER}).json()["state"] == "IDLE"


class TestProductRoutes:
    def test_list_products(self, client):
        resp = client.get("/products", params={"user_id": OWNER})
        assert resp.status_code == 200
        assert [p["id"] for p in resp.json()] == ["p-1", "p-2"]

    def test_snippets(self, client):
        resp = client.get("/products/p-1/snippets", params={"user_id": OWNER})
        assert resp.status_code == 200
        body = resp.json()
        assert set(body["snippets"]) == {"shopify", "tienda_nube", "generic"}
        assert "spin-video-p-1" in body["snippets"]["shopify"]

    def test_snippets_for_other_owner(self, client):
        resp = client.get("/products/p-3/snippets", params={"user_id": OWNER})
        assert resp.status_code == 404

    def test_snippets_without_video(self, client):
        resp = client.get("/products/p-2/snippets", params={"user_id": OWNER})
        assert resp.status_code == 409


class TestSettingsRoutes:
    def test_save_and_mask_keys(self, client, keys):
        resp = client.put(
            "/settings/keys",
            params={"user_id": OWNER},
            json={"google_api_key": "AIzaSyABC", "fal_key": "key_123"},
        )
        assert resp.status_code == 200
        assert resp.json()["google_api_key"] == "AIza..."
        assert keys.saved[0] == (OWNER, ApiKeys(google_api_key="AIzaSyABC", fal_key="key_123"))

    def test_get_keys_when_none_stored(self, client):
        resp = client.get("/settings/keys", params={"user_id": OWNER})
        assert resp.status_code == 200
        assert resp.json()["fal_key"] == ""


class TestServiceAuth:
    def test_secret_required_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("SERVICE_SHARED_SECRET", "s3cret")

        assert client.get("/pipeline/status", params={"user_id": OWNER}).status_code == 401
        resp = client.get(
            "/pipeline/status",
            params={"user_id": OWNER},
            headers={"X-Service-Secret": "s3cret"},
        )
        assert resp.status_code == 200
        assert client.get("/health").status_code == 200
