"""
Shared fixtures and fake backends for the FMChat test suite.

The real backend needs macOS 26+ on Apple Silicon, so tests plug a scripted
fake into the backend registry via ``set_backend()``. Each queued script is
one streamed response: plain values are yielded as snapshots, exception
instances are raised, and async callables run mid-stream (used to simulate
the model calling a tool) and yield whatever they return.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from fmchat.models import Conversation, Message
from fmchat.protocols import get_backend, set_backend
from fmchat.store import ChatStore

# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------


class FakeModel:
    def __init__(self, available: bool = True, reason: str | None = None) -> None:
        self.available = available
        self.reason = reason

    def is_available(self) -> tuple[bool, str | None]:
        return (self.available, self.reason)


class FakeSession:
    def __init__(self, backend: FakeBackend, instructions: str, tools: Any) -> None:
        self.backend = backend
        self.instructions = instructions
        self.tools = list(tools)
        self.prompts: list[tuple[str, Any]] = []
        self.tool_results: list[Any] = []
        self.prewarm_calls = 0

    def prewarm(self) -> None:
        self.prewarm_calls += 1

    async def stream_response(self, prompt: str, generating: Any = None):
        self.prompts.append((prompt, generating))
        items = self.backend.scripts.pop(0) if self.backend.scripts else []
        for item in items:
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                item = await item(self)
            yield item


class FakeBackend:
    """Backend whose sessions replay queued scripts, one per request."""

    def __init__(self, available: bool = True, reason: str | None = None) -> None:
        self.model = FakeModel(available, reason)
        self.sessions: list[FakeSession] = []
        self.scripts: list[list[Any]] = []
        self.session_error: Exception | None = None

    def script(self, *items: Any) -> FakeBackend:
        self.scripts.append(list(items))
        return self

    def create_model(self) -> FakeModel:
        return self.model

    def __call__(self, model: Any, instructions: str, tools: Any = ()) -> FakeSession:
        if self.session_error is not None:
            raise self.session_error
        session = FakeSession(self, instructions, tools)
        self.sessions.append(session)
        return session

    @property
    def session(self) -> FakeSession:
        return self.sessions[-1]


def tool_call(name: str, arguments: dict[str, Any], build: Any):
    """Script step: call tool *name* with *arguments*, yield ``build(result)``."""

    async def step(session: FakeSession) -> Any:
        tool = next(tool for tool in session.tools if tool.name == name)
        result = await tool.call(arguments)
        session.tool_results.append(result)
        return build(result)

    return step


def make_mock_store(save_side_effect: Any = None) -> MagicMock:
    """A store double recording ``save()`` calls."""
    store = MagicMock()
    store.save.side_effect = save_side_effect
    return store


EXAMPLE_DOMAIN_HTML = """<!doctype html>
<html>
<head>
    <title>Example Domain</title>
    <meta charset="utf-8" />
</head>
<body><h1>Example Domain</h1></body>
</html>
"""

ARTICLE_HTML = """<!doctype html>
<html>
<head>
    <title> Swift 6 released </title>
    <meta property="og:image" content="https://news.example.org/swift.png" />
    <meta name="description" content="What is new in Swift 6." />
</head>
<body><p>...</p></body>
</html>
"""


def html_client(
    pages: dict[str, tuple[int, str]] | None = None, *, error: Exception | None = None
) -> httpx.AsyncClient:
    """``httpx.AsyncClient`` answering from *pages* (path -> (status, body)).

    Unknown paths answer 404. When *error* is given every request raises it.
    """
    pages = {"/": (200, EXAMPLE_DOMAIN_HTML)} if pages is None else pages

    def handler(request: httpx.Request) -> httpx.Response:
        if error is not None:
            raise error
        not_found = (404, "<html><title>404</title></html>")
        status, body = pages.get(request.url.path or "/", not_found)
        return httpx.Response(status, text=body, headers={"Content-Type": "text/html"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_conversation(*contents: tuple[str, str], summary: str | None = None) -> Conversation:
    """Conversation with finalized messages one second apart."""
    start = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    messages = [
        Message(content, role, start + timedelta(seconds=index), finalized=True)
        for index, (role, content) in enumerate(contents)
    ]
    return Conversation(messages=messages, summary=summary)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_backend():
    """Install an available FakeBackend for the duration of a test."""
    original = get_backend()
    backend = FakeBackend()
    set_backend(backend)
    try:
        yield backend
    finally:
        set_backend(original)


@pytest.fixture
def unavailable_backend():
    original = get_backend()
    backend = FakeBackend(available=False, reason="Model not downloaded")
    set_backend(backend)
    try:
        yield backend
    finally:
        set_backend(original)


@pytest.fixture
def store(tmp_path):
    chat_store = ChatStore(tmp_path / "chat.sqlite3")
    try:
        yield chat_store
    finally:
        chat_store.close()


@pytest.fixture
def conversation(store):
    return store.create_conversation()
