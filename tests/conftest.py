import asyncio
import json

import httpx
import pytest

from whisperchat.models import ModelInfo, Settings
from whisperchat.storage import ChatStore, SessionPointer


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered as the given reads, optionally failing or pausing at the end."""

    def __init__(self, chunks, error=None, gate: asyncio.Event | None = None):
        self.chunks = chunks
        self.error = error
        self.gate = gate

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


def sse_line(text: str) -> bytes:
    payload = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def sse(*deltas: str, done: bool = True) -> list[bytes]:
    chunks = [sse_line(d) for d in deltas]
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


@pytest.fixture
def requests_seen():
    return []


@pytest.fixture
def streaming_client(requests_seen):
    """Factory for an AsyncClient whose every POST streams the given chunks."""

    def make(chunks=(), status=200, error=None, gate=None, body=b""):
        def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request)
            if status != 200:
                return httpx.Response(status, content=body)
            return httpx.Response(200, stream=ChunkStream(list(chunks), error, gate))

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return make


@pytest.fixture
def store(tmp_path):
    s = ChatStore(tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture
def pointer(tmp_path):
    return SessionPointer(tmp_path / "sessions", key="test")


@pytest.fixture
def settings():
    return Settings(
        api_key="sk-or-test",
        models=[
            ModelInfo(id="anthropic/claude-3-haiku", name="Claude 3 Haiku", max_tokens=200000),
            ModelInfo(id="openai/gpt-4o", name="GPT-4o", max_tokens=128000),
        ],
    )
