"""
HTTP surface tests with FastAPI's TestClient. The database is in-memory
SQLite, providers are scripted, GCS is replaced by a recording stand-in.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from lensroom.settings import Settings
from server import create_app

from conftest import OTHER_USER, USER, RecordingAssets, ScriptedProvider

ADMIN_TOKEN = "admin-secret"


def _connection():
    connection = MagicMock()
    connection.DATABASE_URL = "sqlite://"
    connection.DB_HOST = ""
    connection.BUCKET_NAME = "test-bucket"
    return connection


@pytest.fixture
def make_client(session_factory):
    def _make(settings=None, db_ping=None, llm_client=None):
        settings = settings or Settings(kie_api_key="test-key", admin_api_token=ADMIN_TOKEN)
        app = create_app(
            settings,
            connection=_connection(),
            session_factory=session_factory,
            assets=RecordingAssets(),
            provider_factory=lambda model, _settings: ScriptedProvider(model),
            db_ping=db_ping or (lambda: None),
            llm_client_factory=lambda _settings: llm_client or MagicMock(),
        )
        return TestClient(app), app

    return _make


def _login(app, user_id=USER, token="session-token"):
    app.state.identity.create_session(user_id, token, datetime.now(timezone.utc) + timedelta(hours=1))
    return {"Authorization": f"Bearer {token}"}


class TestInferEndpoint:

    def test_success(self, make_client):
        client, app = make_client()
        headers = _login(app)
        app.state.ledger.top_up(USER, 10)

        resp = client.post(
            "/api/infer",
            json={"modelId": "seedream_image", "inputs": {"prompt": "a fox"}},
            headers=headers,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["newBalance"] == 2
        assert len(data["urls"]) == 1

    def test_session_cookie(self, make_client):
        client, app = make_client()
        app.state.identity.create_session(USER, "cookie-token")
        app.state.ledger.top_up(USER, 10)
        client.cookies.set("lr_session", "cookie-token")

        resp = client.post("/api/infer", json={"modelId": "seedream_image", "inputs": {"prompt": "a fox"}})

        assert resp.status_code == 200

    def test_unauthenticated(self, make_client):
        client, _ = make_client()
        resp = client.post("/api/infer", json={"modelId": "seedream_image", "inputs": {"prompt": "a fox"}})
        assert resp.status_code == 401
        assert resp.json()["success"] is False

    def test_insufficient_credits(self, make_client):
        client, app = make_client()
        headers = _login(app)
        resp = client.post(
            "/api/infer", json={"modelId": "seedream_image", "inputs": {"prompt": "a fox"}}, headers=headers
        )
        assert resp.status_code == 402
        assert "Insufficient" in resp.json()["error"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"inputs": {"prompt": "a fox"}},
            {"modelId": "seedream_image"},
            {"modelId": "seedream_image", "inputs": {"prompt": "a fox"}, "outputsCount": 0},
            {"modelId": "seedream_image", "inputs": {"prompt": "a fox"}, "outputsCount": "many"},
        ],
    )
    def test_malformed_body_is_400(self, make_client, payload):
        client, app = make_client()
        resp = client.post("/api/infer", json=payload, headers=_login(app))
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert resp.json()["error"]

    def test_non_json_body_is_400(self, make_client):
        client, app = make_client()
        resp = client.post(
            "/api/infer",
            content=b"not json",
            headers={**_login(app), "Content-Type": "application/json"},
        )
        assert resp.status_code == 400


class TestModelsEndpoint:

    def test_lists_enabled_models(self, make_client):
        client, _ = make_client()
        resp = client.get("/api/models")
        assert resp.status_code == 200
        ids = {m["id"] for m in resp.json()}
        assert {"llm_text", "seedream_image", "nano_banana_edit", "veo3_video"} <= ids
        assert "midjourney_image" not in ids
        assert "public" in resp.headers["cache-control"]


class TestGenerationsEndpoint:

    def _generation(self, client, app, headers):
        app.state.ledger.top_up(USER, 10)
        resp = client.post(
            "/api/infer", json={"modelId": "seedream_image", "inputs": {"prompt": "a fox"}}, headers=headers
        )
        return resp.json()["meta"]["generationId"]

    def test_owner_can_read(self, make_client):
        client, app = make_client()
        headers = _login(app)
        generation_id = self._generation(client, app, headers)

        resp = client.get(f"/api/generations/{generation_id}", headers=headers)

        assert resp.status_code == 200
        assert resp.json()["generation"]["status"] == "success"

    def test_other_user_gets_404(self, make_client):
        client, app = make_client()
        generation_id = self._generation(client, app, _login(app))
        other = _login(app, OTHER_USER, "other-token")

        assert client.get(f"/api/generations/{generation_id}", headers=other).status_code == 404

    def test_anonymous_gets_401(self, make_client):
        client, _ = make_client()
        assert client.get("/api/generations/whatever").status_code == 401


class TestUploadEndpoint:

    def test_upload_returns_url_and_path(self, make_client):
        client, app = make_client()
        headers = _login(app)

        resp = client.post("/api/upload", headers=headers, files={"file": ("cat photo.png", b"png-bytes", "image/png")})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["path"].startswith(f"{USER}/uploads/")
        assert body["path"].endswith("_cat_photo.png")
        assert body["url"].endswith(body["path"])
        assert app.state.assets.calls == [(USER, body["path"], 9, "image/png")]

    def test_anonymous_upload_is_401(self, make_client):
        client, app = make_client()
        resp = client.post("/api/upload", files={"file": ("a.png", b"x", "image/png")})
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Unauthorized"}
        assert app.state.assets.calls == []

    def test_wrong_type_is_400(self, make_client):
        client, app = make_client()
        resp = client.post("/api/upload", headers=_login(app), files={"file": ("a.gif", b"GIF89a", "image/gif")})
        assert resp.status_code == 400
        assert "Invalid file type" in resp.json()["error"]

    def test_missing_file_is_400(self, make_client):
        client, app = make_client()
        resp = client.post("/api/upload", headers=_login(app), data={"other": "field"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "No file provided"


class TestPromptVariantsEndpoint:

    def test_returns_variants(self, make_client):
        llm = MagicMock()
        llm.model_name = "gemini-2.0-flash"
        llm.invoke.return_value = ('["fox at dawn", "fox in fog"]', {})
        client, _ = make_client(llm_client=llm)

        resp = client.post("/api/generate-prompt-variants", json={"basePrompt": "a fox", "count": 2})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "variants": ["fox at dawn", "fox in fog"], "fallback": False}

    def test_single_variant_skips_the_model(self, make_client):
        llm = MagicMock()
        client, _ = make_client(llm_client=llm)
        resp = client.post("/api/generate-prompt-variants", json={"basePrompt": "a fox", "count": 1})
        assert resp.json()["variants"] == ["a fox"]
        llm.invoke.assert_not_called()

    @pytest.mark.parametrize("payload", [
        {"basePrompt": "a fox", "count": 0},
        {"basePrompt": "a fox", "count": 101},
        {"count": 3},
        {"basePrompt": "   ", "count": 3},
    ])
    def test_invalid_request_is_400(self, make_client, payload):
        client, _ = make_client()
        resp = client.post("/api/generate-prompt-variants", json=payload)
        assert resp.status_code == 400
        assert resp.json()["success"] is False


class TestHealthEndpoint:

    def test_ok(self, make_client):
        client, _ = make_client()
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["database"]["reachable"] is True

    def test_database_down_in_strict_mode(self, make_client):
        def ping():
            raise ConnectionError("db down")

        client, _ = make_client(db_ping=ping)
        resp = client.get("/api/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"
        assert "db down" in resp.json()["database"]["error"]

    def test_database_down_in_degraded_mode(self, make_client):
        def ping():
            raise ConnectionError("db down")

        client, _ = make_client(
            settings=Settings(kie_api_key="k", degraded_mode=True), db_ping=ping
        )
        assert client.get("/api/health").status_code == 200

    def test_missing_provider_key(self, make_client):
        client, _ = make_client(settings=Settings())
        resp = client.get("/api/health")
        assert resp.status_code == 503
        assert "KIE_API_KEY" in resp.json()["error"]


class TestAdminEndpoints:

    def test_topup(self, make_client):
        client, app = make_client()
        resp = client.post(
            "/api/credits/topup", json={"userId": USER, "amount": 25}, headers={"X-Admin-Token": ADMIN_TOKEN}
        )
        assert resp.status_code == 200
        assert resp.json()["newBalance"] == 25
        assert app.state.ledger.get_balance(USER) == 25

    def test_wrong_token(self, make_client):
        client, _ = make_client()
        resp = client.post("/api/credits/topup", json={"userId": USER, "amount": 25}, headers={"X-Admin-Token": "nope"})
        assert resp.status_code == 401

    def test_disabled_without_configured_token(self, make_client):
        client, _ = make_client(settings=Settings(kie_api_key="k"))
        resp = client.post("/api/credits/topup", json={"userId": USER, "amount": 25}, headers={"X-Admin-Token": "x"})
        assert resp.status_code == 404

    def test_refund_once(self, make_client):
        client, app = make_client()
        headers = _login(app)
        app.state.ledger.top_up(USER, 10)
        generation_id = client.post(
            "/api/infer", json={"modelId": "seedream_image", "inputs": {"prompt": "a fox"}}, headers=headers
        ).json()["meta"]["generationId"]

        admin = {"X-Admin-Token": ADMIN_TOKEN}
        first = client.post("/api/credits/refund", json={"generationId": generation_id}, headers=admin)
        second = client.post("/api/credits/refund", json={"generationId": generation_id}, headers=admin)

        assert first.status_code == 200
        assert first.json()["newBalance"] == 10
        assert second.status_code == 409
