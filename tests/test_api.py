from __future__ import annotations

import asyncio
import threading
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from conftest import image_bytes
from imagesmith_service import api
from imagesmith_service.errors import JobTimeoutError
from imagesmith_service.storage import InMemoryBlobStore

SOURCE_KEY = "uploads/1700000000-beach.jpg"


class StubRemover:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls: List[bytes] = []
        self.error = error

    def remove_background(self, image_bytes_: bytes, auth_token=None, cancel_event=None) -> bytes:
        self.calls.append(image_bytes_)
        if self.error is not None:
            raise self.error
        return image_bytes(size=(400, 300), mode="RGBA", color=(10, 120, 200, 255))


@pytest.fixture
def api_store() -> InMemoryBlobStore:
    store = InMemoryBlobStore()
    store.put(SOURCE_KEY, image_bytes(size=(400, 300), color=(0, 128, 255), fmt="JPEG"), "image/jpeg")
    return store


@pytest.fixture
def remover() -> StubRemover:
    return StubRemover()


@pytest.fixture
def client(api_store: InMemoryBlobStore, remover: StubRemover):
    api.app.dependency_overrides[api.get_store] = lambda: api_store
    api.app.dependency_overrides[api.get_remover] = lambda: remover
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_process_returns_signed_url_and_dimensions(client: TestClient, api_store: InMemoryBlobStore) -> None:
    response = client.post("/process", json={"key": SOURCE_KEY, "w": 200, "h": 100, "fit": "cover"})

    assert response.status_code == 200
    body = response.json()
    assert body["key"] == "thumbs/200x100/cover/1700000000-beach.jpg"
    assert (body["width"], body["height"], body["fit"], body["format"]) == (200, 100, "cover", "jpeg")
    assert body["key"] in body["url"]
    assert body["key"] in api_store.objects


def test_process_accepts_legacy_flags(client: TestClient, remover: StubRemover) -> None:
    response = client.post(
        "/process",
        json={"key": SOURCE_KEY, "w": 800, "h": 800, "fit": "inside", "removeBg": True, "withoutEnlargement": False},
    )

    assert response.status_code == 200
    body = response.json()
    assert len(remover.calls) == 1
    assert body["format"] == "png"
    assert (body["width"], body["height"]) == (800, 600)


def test_process_defaults_to_no_upscale(client: TestClient) -> None:
    response = client.post("/process", json={"key": SOURCE_KEY, "w": 800, "h": 800, "fit": "inside"})
    assert response.status_code == 200
    assert (response.json()["width"], response.json()["height"]) == (400, 300)


def test_process_unknown_fit_is_bad_request(client: TestClient) -> None:
    response = client.post("/process", json={"key": SOURCE_KEY, "w": 10, "h": 10, "fit": "stretch"})
    assert response.status_code == 400
    assert "Unsupported fit" in response.json()["error"]


def test_process_missing_key_is_bad_request(client: TestClient) -> None:
    response = client.post("/process", json={"w": 10, "h": 10})
    assert response.status_code == 400
    assert "error" in response.json()


def test_process_non_numeric_dimension_is_bad_request(client: TestClient) -> None:
    response = client.post("/process", json={"key": SOURCE_KEY, "w": "abc", "h": 10})
    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid request")


def test_process_timeout_maps_to_gateway_timeout(client: TestClient, remover: StubRemover) -> None:
    remover.error = JobTimeoutError("Background removal timed out after 60s")
    response = client.post("/process", json={"key": SOURCE_KEY, "w": 10, "h": 10, "removeBackground": True})
    assert response.status_code == 504
    assert response.json() == {"error": "Background removal timed out after 60s"}


def test_process_missing_object_is_server_error(client: TestClient) -> None:
    response = client.post("/process", json={"key": "uploads/missing.jpg", "w": 10, "h": 10})
    assert response.status_code == 500
    assert response.json()["error"].startswith("Processing failed")


def test_palette_returns_colors_and_keys(client: TestClient, api_store: InMemoryBlobStore) -> None:
    response = client.post("/palette", json={"key": SOURCE_KEY, "k": 3})

    assert response.status_code == 200
    body = response.json()
    assert len(body["colors"]) == 1
    assert body["jsonKey"] == "palettes/1700000000-beach.json"
    assert body["pngKey"] == "palettes/1700000000-beach-palette.png"
    assert body["pngKey"] in body["previewUrl"]
    assert body["pngKey"] in api_store.objects


def test_palette_empty_key_is_bad_request(client: TestClient) -> None:
    response = client.post("/palette", json={"key": ""})
    assert response.status_code == 400


def test_palette_missing_object_is_server_error(client: TestClient) -> None:
    response = client.post("/palette", json={"key": "uploads/missing.png"})
    assert response.status_code == 500
    assert response.json()["error"].startswith("Palette extraction failed")


class ScriptedConnection:
    """Stands in for a Request: reports a disconnect after `connected_checks` checks."""

    def __init__(self, connected_checks: int) -> None:
        self.remaining = connected_checks
        self.checks = 0
        self.url = type("URL", (), {"path": "/process"})()

    async def is_disconnected(self) -> bool:
        self.checks += 1
        if self.remaining > 0:
            self.remaining -= 1
            return False
        return True


def test_disconnect_sets_the_cancel_event() -> None:
    connection = ScriptedConnection(connected_checks=2)
    cancel = threading.Event()

    asyncio.run(api.watch_disconnect(connection, cancel, interval=0))

    assert cancel.is_set()
    assert connection.checks == 3


def test_watcher_stops_once_the_work_is_done() -> None:
    connection = ScriptedConnection(connected_checks=100)
    cancel = threading.Event()
    cancel.set()

    asyncio.run(api.watch_disconnect(connection, cancel, interval=0))

    assert connection.checks == 0


def test_process_passes_a_cancel_event_to_the_remover(client: TestClient, remover: StubRemover) -> None:
    seen = []
    original = remover.remove_background

    def spy(image_bytes_, auth_token=None, cancel_event=None):
        seen.append(cancel_event)
        return original(image_bytes_, auth_token=auth_token, cancel_event=cancel_event)

    remover.remove_background = spy
    response = client.post("/process", json={"key": SOURCE_KEY, "w": 10, "h": 10, "removeBackground": True})

    assert response.status_code == 200
    assert isinstance(seen[0], threading.Event)


def test_unconfigured_endpoint_only_fails_background_removal(api_store: InMemoryBlobStore) -> None:
    api.app.dependency_overrides[api.get_store] = lambda: api_store
    api.app.dependency_overrides[api.get_remover] = lambda: None
    try:
        client = TestClient(api.app)
        plain = client.post("/process", json={"key": SOURCE_KEY, "w": 10, "h": 10})
        removal = client.post("/process", json={"key": SOURCE_KEY, "w": 10, "h": 10, "removeBackground": True})
    finally:
        api.app.dependency_overrides.clear()

    assert plain.status_code == 200
    assert removal.status_code == 500
    assert removal.json() == {"error": "Background removal is not configured"}
