import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from amadeus.ai.errors import ProviderError
from amadeus.ai.transport import TransportResponse
from amadeus.core.event_bus import EventBus


@pytest.fixture
def event_bus():
    bus = EventBus()
    bus.running = True
    return bus


def sse(*events) -> bytes:
    """Encode payloads as Server-Sent-Events lines."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event, ensure_ascii=False)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


def chat_delta(text: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


class FakeStream:
    def __init__(self, status: int, chunks: List[bytes], error: Optional[Exception] = None):
        self.status = status
        self.chunks = chunks
        self.error = error

    @property
    def ok(self):
        return 200 <= self.status < 300

    async def aiter_bytes(self):
        for chunk in self.chunks:
            yield chunk
        if self.error:
            raise self.error

    async def aread(self):
        return b"".join(self.chunks).decode("utf-8")


class FakeTransport:
    """Scripted transport: each call pops the next queued reply."""

    def __init__(self):
        self.batch_replies = []
        self.stream_replies = []
        self.requests = []
        self.closed = False

    def add_batch(self, status: int, body: str):
        self.batch_replies.append(TransportResponse(status=status, body=body))

    def add_stream(self, status: int, chunks: List[bytes], error: Optional[Exception] = None):
        self.stream_replies.append(FakeStream(status, chunks, error))

    async def send(self, request):
        self.requests.append(request)
        reply = self.batch_replies.pop(0)
        if isinstance(reply, ProviderError):
            raise reply
        return reply

    @asynccontextmanager
    async def open_stream(self, request):
        self.requests.append(request)
        yield self.stream_replies.pop(0)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_transport():
    return FakeTransport()
