"""Shared test fixtures for obrew-client tests."""

import asyncio
import json
from typing import Any, Callable, Optional, Union

import pytest


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_ORIGIN = "http://localhost:8008"

MOCK_GENERATE_PATH = "/v1/text/inference/generate"
MOCK_PROGRESS_PATH = "/v1/text/models/download/progress"
MOCK_CHAT_THREAD_PATH = "/v1/storage/chat"

MOCK_CONNECT_RESPONSE = {
    "success": True,
    "message": "Connected to api server on port 8008.",
    "data": {"docs": f"{MOCK_ORIGIN}/docs", "version": "0.9.2"},
}

MOCK_SERVICES_RESPONSE = {
    "success": True,
    "message": "These are the currently available service api's",
    "data": [
        {
            "name": "textInference",
            "port": 8008,
            "endpoints": [
                {"name": "generate", "urlPath": MOCK_GENERATE_PATH, "method": "POST"},
                {"name": "downloadProgress", "urlPath": MOCK_PROGRESS_PATH, "method": "GET"},
            ],
            "configs": {"temperature": 0.8},
        },
        {
            "name": "storage",
            "port": 8008,
            "endpoints": [
                {"name": "getChatThread", "urlPath": MOCK_CHAT_THREAD_PATH, "method": "GET"},
            ],
            "configs": {},
        },
    ],
}


def sse_stream(*texts: str) -> str:
    """Build an Obrew SSE body: one text frame per item, then [DONE]."""
    body = "".join(f'data: {{"text":"{text}"}}\n\n' for text in texts)
    return body + "data: [DONE]\n\n"


def progress_frame(status: str, percent: Optional[float] = None, **extra: Any) -> str:
    """Build one download-progress data frame."""
    primary = {"downloaded_bytes": 0, "total_bytes": 1000, "speed_mbps": 1.5, "status": status}
    if percent is not None:
        primary["percent"] = percent
        primary["downloaded_bytes"] = int(percent * 10)
    payload = {"task_id": "task-1", "status": status, "primary_progress": primary, **extra}
    return f"data: {json.dumps(payload)}\n\n"


# ─────────────────────────────────────────────────────────────────────
# FAKE STREAMS - in-memory StreamHandle / Transport
# ─────────────────────────────────────────────────────────────────────

class FakeStream:
    """
    In-memory response body.

    Yields `chunks` in order; then raises `fail_with` if given, or blocks
    forever when `hold` is set (a connection that stays open).
    """

    def __init__(
        self,
        chunks: Union[list, tuple] = (),
        content_type: str = "text/event-stream",
        json_body: Any = None,
        hold: bool = False,
        fail_with: Optional[BaseException] = None,
    ):
        self.chunks = list(chunks)
        self.content_type = content_type
        self.status_code = 200
        self.json_body = json_body
        self.hold = hold
        self.fail_with = fail_with
        self.close_count = 0
        self.delivered = 0

    @property
    def is_event_stream(self) -> bool:
        return "event-stream" in self.content_type

    async def aiter_bytes(self):
        for chunk in self.chunks:
            self.delivered += 1
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        if self.hold:
            await asyncio.Event().wait()

    async def json(self) -> Any:
        await self.aclose()
        return self.json_body

    async def aclose(self) -> None:
        self.close_count += 1


class FakeTransport:
    """Transport that answers from a url -> FakeStream (or exception) table."""

    def __init__(self):
        self.routes: dict[str, Union[FakeStream, BaseException, Callable[[], FakeStream]]] = {}
        self.calls: list[dict] = []
        self.opened = asyncio.Event()
        self.closed = False

    def add(self, url: str, response) -> None:
        self.routes[url] = response

    async def open(self, url, method="GET", headers=None, body=None, params=None, token=None):
        self.calls.append(
            {"url": url, "method": method, "headers": headers, "body": body, "params": params}
        )
        if token is not None:
            token.raise_if_cancelled()
        response = self.routes[url]
        if isinstance(response, BaseException):
            raise response
        stream = response() if callable(response) else response
        self.opened.set()
        return stream

    async def aclose(self) -> None:
        self.closed = True


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_transport():
    """Return an empty FakeTransport."""
    return FakeTransport()


@pytest.fixture
def service_catalog():
    """Return the catalogue described by MOCK_SERVICES_RESPONSE."""
    from obrew_client.connection import ServiceCatalog
    return ServiceCatalog.from_response(MOCK_SERVICES_RESPONSE["data"])


@pytest.fixture
def sample_messages():
    """Return sample conversation messages."""
    from obrew_client.config import Message
    return [
        Message(role="system", content="You are a helpful assistant."),
        Message(role="user", content="What is the capital of France?"),
    ]


@pytest.fixture
def connected_client(fake_transport, service_catalog):
    """ObrewClient over a FakeTransport, already holding a catalogue."""
    from obrew_client.client import ObrewClient
    from obrew_client.config import ConnectionConfig

    client = ObrewClient(ConnectionConfig(), transport=fake_transport)
    client.state.enable(service_catalog)
    return client
