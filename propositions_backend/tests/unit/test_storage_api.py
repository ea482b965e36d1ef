"""Contract tests for the remote storage routes over a temporary SQLite database."""

import base64

import pytest
from fastapi.testclient import TestClient

from propositions_backend import storage_api
from propositions_backend.tests.factories import make_state


@pytest.fixture
def client(storage_app):
    with TestClient(storage_app) as test_client:
        yield test_client


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestAppStateRoutes:
    def test_get_empty_state(self, client):
        response = client.get("/api/storage/app-state")
        assert response.status_code == 200
        assert response.json() == {"state": None}

    def test_put_then_get_roundtrip(self, client):
        document = make_state().to_dict()

        response = client.put("/api/storage/app-state", json={"state": document})
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        assert client.get("/api/storage/app-state").json() == {"state": document}

    def test_put_without_state_is_rejected(self, client):
        response = client.put("/api/storage/app-state", json={"other": 1})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request: missing state to save"}

    def test_put_with_invalid_json_is_rejected(self, client):
        response = client.put(
            "/api/storage/app-state", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert "error" in response.json()

    def test_backend_failure_returns_500(self, client, monkeypatch):
        async def broken_get_item(session, key):
            raise RuntimeError("database is gone")

        monkeypatch.setattr(storage_api.storage_repository, "get_item", broken_get_item)

        response = client.get("/api/storage/app-state")
        assert response.status_code == 500
        assert response.json() == {"error": "Could not load the application state"}


class TestSettingsRoutes:
    def test_settings_roundtrip(self, client):
        assert client.get("/api/storage/settings").json() == {"settings": None}

        response = client.put("/api/storage/settings", json={"settings": {"groqModel": "mixtral"}})
        assert response.status_code == 200

        assert client.get("/api/storage/settings").json() == {"settings": {"groqModel": "mixtral"}}

    def test_put_without_settings_is_rejected(self, client):
        response = client.put("/api/storage/settings", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request: missing settings to save"


class TestAudioRoutes:
    def test_upload_then_list_in_order(self, client, monkeypatch):
        monkeypatch.setattr(storage_api, "now_ms", lambda: 1234)

        for prop_index, audio_index, data in [(1, 0, b"c"), (0, 1, b"b"), (0, 0, b"a")]:
            response = client.post(
                "/api/storage/audios",
                json={
                    "subtopicId": "s-1",
                    "propIndex": prop_index,
                    "audioIndex": str(audio_index),
                    "blobBase64": _b64(data),
                },
            )
            assert response.status_code == 204
        client.post("/api/storage/audios", json={"subtopicId": "s-2", "blobBase64": _b64(b"z"), "timestamp": 99})

        audios = client.get("/api/storage/audios", params={"subtopicId": "s-1"}).json()["audios"]

        assert [(a["propIndex"], a["audioIndex"]) for a in audios] == [(0, 0), (0, 1), (1, 0)]
        assert base64.b64decode(audios[0]["blobBase64"]) == b"a"
        assert audios[0]["id"] == "s-1-0-0"
        assert audios[0]["mimeType"] == "audio/webm"
        assert audios[0]["timestamp"] == 1234

        everything = client.get("/api/storage/audios").json()["audios"]
        assert len(everything) == 4
        assert everything[-1]["timestamp"] == 99

    def test_upload_replaces_same_key(self, client):
        body = {"subtopicId": "s-1", "propIndex": 0, "audioIndex": 0, "blobBase64": _b64(b"old")}
        client.post("/api/storage/audios", json=body)
        client.post("/api/storage/audios", json={**body, "blobBase64": _b64(b"new"), "mimeType": "audio/ogg"})

        audios = client.get("/api/storage/audios", params={"subtopicId": "s-1"}).json()["audios"]
        assert len(audios) == 1
        assert base64.b64decode(audios[0]["blobBase64"]) == b"new"
        assert audios[0]["mimeType"] == "audio/ogg"

    @pytest.mark.parametrize(
        "body, message",
        [
            ({"blobBase64": "YQ=="}, "subtopicId is required"),
            ({"subtopicId": "s-1"}, "blobBase64 is required"),
            ({"subtopicId": "s-1", "blobBase64": "@@not base64@@"}, "blobBase64 is not valid base64"),
        ],
    )
    def test_upload_validation(self, client, body, message):
        response = client.post("/api/storage/audios", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": message}


class TestMiscRoutes:
    def test_unknown_resource_is_404(self, client):
        for method in ("get", "post", "put", "delete"):
            response = getattr(client, method)("/api/storage/bookmarks")
            assert response.status_code == 404
            assert response.json() == {"error": "Unknown resource"}

    def test_legacy_themes_default_to_empty_list(self, client):
        assert client.get("/api/storage/themes").json() == {"data": []}

    def test_clear_removes_everything(self, client):
        client.put("/api/storage/app-state", json={"state": make_state().to_dict()})
        client.post("/api/storage/audios", json={"subtopicId": "s-1", "blobBase64": _b64(b"a")})

        response = client.delete("/api/storage")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        assert client.get("/api/storage/app-state").json() == {"state": None}
        assert client.get("/api/storage/audios").json() == {"audios": []}

    def test_legacy_clear_route(self, client):
        client.put("/api/storage/settings", json={"settings": {"groqModel": "x"}})
        assert client.post("/api/storage/clear").json() == {"ok": True}
        assert client.get("/api/storage/settings").json() == {"settings": None}
