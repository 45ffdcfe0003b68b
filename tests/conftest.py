"""Shared pytest fixtures.

Provides:
- Settings pointing at a temporary SQLite file
- A connected database and conversation store per test
- FakeCompletions, a scripted /chat/completions endpoint behind
  httpx.MockTransport, plus a provider factory wired to it
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from chatkeep.config import Settings
from chatkeep.llm.factory import create_provider
from chatkeep.sqlite_db import SQLiteDatabase
from chatkeep.store import ConversationStore

TEST_ENCRYPTION_KEY = "test-encryption-key"


# ============================================================================
# Helpers
# ============================================================================


def sse_frames(*deltas: str, done: bool = True) -> List[str]:
    """Event-stream lines carrying the given content deltas."""
    frames = [
        "data: " + json.dumps({"choices": [{"delta": {"content": d}}]}) + "\n\n"
        for d in deltas
    ]
    if done:
        frames.append("data: [DONE]\n\n")
    return frames


def completion_body(content: Any) -> Dict[str, Any]:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2},
    }


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakeCompletions:
    """Scripted OpenAI-compatible endpoint.

    Attributes:
        reply: Text returned by non-streaming completions.
        deltas: Chunks sent by streaming completions.
        metadata: JSON object returned for schema-constrained requests.
        fail_status: When set, every request answers with this HTTP status.
        gate: When set, streaming pauses after the first chunk until it is set.
        requests: Decoded JSON bodies of every request received.
    """

    def __init__(self):
        self.reply = "Hi there"
        self.deltas = ["Hi", " there"]
        self.metadata: Optional[Dict[str, Any]] = {
            "chat_title": "Greeting",
            "summary": "A friendly hello",
            "keywords": ["greeting", "hello"],
        }
        self.fail_status: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None
        self.requests: List[Dict[str, Any]] = []
        self.headers: List[httpx.Headers] = []

    @property
    def chat_requests(self) -> List[Dict[str, Any]]:
        return [r for r in self.requests if "response_format" not in r]

    async def _stream_body(self):
        for i, frame in enumerate(sse_frames(*self.deltas)):
            if i == 1 and self.gate is not None:
                await self.gate.wait()
            yield frame.encode()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)

        if self.fail_status:
            return httpx.Response(self.fail_status, json={"error": "boom"})
        if "response_format" in body:
            return httpx.Response(200, json=completion_body(json.dumps(self.metadata)))
        if body.get("stream"):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=self._stream_body(),
            )
        return httpx.Response(200, json=completion_body(self.reply))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        db_path=str(tmp_path / "chatkeep.db"),
        encryption_key=TEST_ENCRYPTION_KEY,
        local_user_id="u1",
    )


@pytest.fixture
async def db(settings):
    database = SQLiteDatabase(str(settings.sqlite_path))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def store(db) -> ConversationStore:
    return ConversationStore(db, TEST_ENCRYPTION_KEY)


@pytest.fixture
def fake_api() -> FakeCompletions:
    return FakeCompletions()


@pytest.fixture
def provider_factory(fake_api):
    """create_provider with every provider routed to fake_api."""
    def factory(name, **kwargs):
        return create_provider(name, transport=fake_api.transport, **kwargs)
    return factory
