from __future__ import annotations

import io
import json
from typing import Callable, Dict, List, Optional, Tuple

import pytest
import requests
from PIL import Image

from imagesmith_service.config import Settings
from imagesmith_service.storage import InMemoryBlobStore


def image_bytes(
    size: Tuple[int, int] = (40, 20),
    color=(200, 30, 30),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_response(
    status: int,
    json_body=None,
    content: bytes = b"",
    content_type: Optional[str] = None,
    url: str = "",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = url
    if json_body is not None:
        response._content = json.dumps(json_body).encode("utf-8")
        response.headers["Content-Type"] = content_type or "application/json"
    else:
        response._content = content
        if content_type:
            response.headers["Content-Type"] = content_type
    response.encoding = "utf-8"
    return response


class FakeSession:
    """Scripted stand-in for requests.Session.

    GET responses are queued per URL; the last queued response repeats once
    the queue is down to one entry.
    """

    def __init__(self) -> None:
        self.post_responses: List[requests.Response] = []
        self.get_responses: Dict[str, List[requests.Response]] = {}
        self.calls: List[dict] = []

    def queue_post(self, response: requests.Response) -> None:
        self.post_responses.append(response)

    def queue_get(self, url: str, *responses: requests.Response) -> None:
        self.get_responses.setdefault(url, []).extend(responses)

    def post(self, url, headers=None, files=None, timeout=None, **kwargs):
        self.calls.append({"method": "POST", "url": url, "headers": dict(headers or {}), "files": files, "timeout": timeout})
        return self.post_responses.pop(0)

    def get(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": "GET", "url": url, "headers": dict(headers or {}), "timeout": timeout})
        queue = self.get_responses[url]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def calls_to(self, url: str) -> List[dict]:
        return [call for call in self.calls if call["url"] == url]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        bucket_name="test-bucket",
        hf_token="hf_test_token",
        fal_task_url="https://provider.test/queue/remove",
        output_prefix="thumbs/",
        palette_prefix="palettes/",
    )


@pytest.fixture
def store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    return image_bytes
