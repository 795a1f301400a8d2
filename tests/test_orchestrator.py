import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from amadeus.ai.conversation import ChatOrchestrator
from amadeus.ai.credentials import StaticCredentialProvider
from amadeus.ai.errors import ERROR_MESSAGES, ErrorKind, ProviderError
from amadeus.ai.failover import RegionFailoverPolicy
from amadeus.ai.provider_base import Role
from amadeus.core.config import AIConfig, MemoryConfig, PresentationConfig
from amadeus.models.character import create_character
from amadeus.models.memory import MemoryManager
from amadeus.presentation.backlog import BackLog
from amadeus.presentation.state_machine import ConversationTurnState, PresentationStateMachine

from conftest import chat_delta, sse

State = ConversationTurnState

OPENAI = 0
GROQ = 3
VERTEX = 4


def openai_body(text):
    return json.dumps({"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]})


def gemini_frame(text):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


@pytest.fixture
def presentation(event_bus):
    return PresentationStateMachine(PresentationConfig(), event_bus=event_bus)


def make_orchestrator(event_bus, presentation, transport, memory=None, **config):
    config.setdefault("api_keys", {"openai": "sk-test", "groq": "gsk-test"})
    return ChatOrchestrator(
        config=AIConfig(**config),
        character=create_character(),
        event_bus=event_bus,
        presentation=presentation,
        transport=transport,
        memory=memory,
    )


async def settle(orchestrator, presentation):
    await orchestrator.wait_idle()
    presentation.tick(60.0)


@pytest.mark.asyncio
async def test_streamed_reply_end_to_end(event_bus, presentation, fake_transport):
    replies = []
    event_bus.subscribe("assistant_replied", lambda text, emotion: replies.append((text, emotion)))
    fake_transport.add_stream(200, [
        sse(chat_delta("[SMILE] ")),
        sse(chat_delta("Hi the")),
        sse(chat_delta("re!"), "[DONE]"),
    ])
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport, provider_index=GROQ)

    assert orchestrator.submit("Hello")
    assert presentation.state == State.WAITING_RESPONSE
    await settle(orchestrator, presentation)

    assert presentation.emotion == "SMILE"
    assert presentation.revealed_text == "Hi there!"
    assert presentation.state == State.AWAITING_ADVANCE
    assert [m.role for m in orchestrator.history.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
    assert orchestrator.history.messages[-1].content == "Hi there!"
    assert replies == [("Hi there!", "SMILE")]
    assert fake_transport.requests[0].body["stream"] is True


@pytest.mark.asyncio
async def test_batch_reply(event_bus, presentation, fake_transport):
    fake_transport.add_batch(200, openai_body("[THINKING] Let me see. Interesting."))
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport, provider_index=OPENAI)

    orchestrator.submit("Question")
    await orchestrator.wait_idle()
    assert presentation.state == State.REVEALING
    assert presentation.emotion == "THINKING"

    presentation.tick(60.0)
    assert presentation.revealed_text == "Let me see. Interesting."
    assert orchestrator.character.current_emotion == "THINKING"
    assert orchestrator.response_times


@pytest.mark.asyncio
async def test_submit_rejected_until_turn_is_dismissed(event_bus, presentation, fake_transport):
    fake_transport.add_batch(200, openai_body("[SMILE] First."))
    fake_transport.add_batch(200, openai_body("[SMILE] Second."))
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport)

    assert not orchestrator.submit("   ")
    assert orchestrator.submit("one")
    assert not orchestrator.submit("two")  # still waiting

    await orchestrator.wait_idle()
    assert presentation.state == State.REVEALING
    assert not orchestrator.submit("two")

    presentation.advance()
    assert presentation.state == State.AWAITING_ADVANCE
    assert not orchestrator.submit("two")

    presentation.advance()
    assert orchestrator.submit("two")
    await orchestrator.wait_idle()
    assert orchestrator.turn_count == 2
    assert len(fake_transport.requests) == 2


@pytest.mark.asyncio
async def test_rejected_key_is_revealed_as_error(event_bus, presentation, fake_transport):
    failures = []
    event_bus.subscribe("turn_failed", failures.append)
    fake_transport.add_batch(401, '{"error":{"message":"bad key"}}')
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert presentation.emotion == "ANGRY"
    assert presentation.revealed_text == ERROR_MESSAGES[ErrorKind.INVALID_CREDENTIAL]
    assert presentation.state == State.AWAITING_ADVANCE
    assert len(orchestrator.history) == 1
    assert orchestrator.turn_count == 0
    assert orchestrator.error_count == 1
    assert failures[0].status == 401

    presentation.advance()
    assert presentation.state == State.INPUT_READY
    assert presentation.emotion == "NORMAL"


@pytest.mark.asyncio
async def test_missing_key_never_reaches_network(event_bus, presentation, fake_transport):
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport,
                                     api_keys={}, provider_index=2)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert fake_transport.requests == []
    assert presentation.revealed_text == ERROR_MESSAGES[ErrorKind.MISSING_CREDENTIAL]


@pytest.mark.asyncio
async def test_undecodable_batch_shows_parse_error(event_bus, presentation, fake_transport):
    fake_transport.add_batch(200, '{"choices":[]}')
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert "[Parse Error]" in presentation.revealed_text
    assert presentation.state == State.AWAITING_ADVANCE


@pytest.mark.asyncio
async def test_network_error_is_revealed(event_bus, presentation, fake_transport):
    fake_transport.batch_replies.append(ProviderError("down", kind=ErrorKind.NETWORK_UNREACHABLE))
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert presentation.revealed_text == ERROR_MESSAGES[ErrorKind.NETWORK_UNREACHABLE]


@pytest.mark.asyncio
async def test_stream_without_visible_text_is_decode_failure(event_bus, presentation, fake_transport):
    fake_transport.add_stream(200, [sse(chat_delta("<think>only reasoning</think>"), "[DONE]")])
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport, provider_index=GROQ)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert presentation.state == State.AWAITING_ADVANCE
    assert "[Parse Error]" in presentation.revealed_text
    assert len(orchestrator.history) == 1


@pytest.mark.asyncio
async def test_stream_interrupted_after_text(event_bus, presentation, fake_transport):
    fake_transport.add_stream(
        200,
        [sse(chat_delta("[SMILE] Hello"))],
        error=ProviderError("connection reset", kind=ErrorKind.NETWORK_UNREACHABLE),
    )
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport, provider_index=GROQ)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    # The partial reply stays on its own page, then the error follows
    assert presentation.revealed_text == "Hello\n"
    assert presentation.awaiting_page
    assert presentation.emotion == "ANGRY"

    while presentation.awaiting_page:
        presentation.advance()
        presentation.tick(60.0)
    assert presentation.state == State.AWAITING_ADVANCE
    assert presentation.transcript.startswith("Hello\n...The connection dropped")
    assert ERROR_MESSAGES[ErrorKind.STREAM_INTERRUPTED].endswith(presentation.revealed_text)
    assert len(orchestrator.history) == 1


@pytest.mark.asyncio
async def test_vertex_fails_over_to_next_region(event_bus, presentation, fake_transport):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    regions = ["us-central1", "us-west1", "us-east4"]
    fake_transport.add_stream(429, [b'{"error":{"code":429,"status":"RESOURCE_EXHAUSTED"}}'])
    fake_transport.add_stream(200, [sse(gemini_frame("[WINK] Got"), gemini_frame(" it."))])

    orchestrator = ChatOrchestrator(
        config=AIConfig(provider_index=VERTEX, vertex_project="proj", vertex_regions=regions),
        character=create_character(),
        event_bus=event_bus,
        presentation=presentation,
        transport=fake_transport,
        credential_provider=StaticCredentialProvider("ya29.token"),
        failover_policy=RegionFailoverPolicy(regions, sleep=fake_sleep),
    )

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    urls = [r.url for r in fake_transport.requests]
    assert "locations/us-central1/" in urls[0]
    assert "locations/us-west1/" in urls[1]
    assert fake_transport.requests[0].headers["Authorization"] == "Bearer ya29.token"
    assert len(sleeps) == 1
    assert presentation.emotion == "WINK"
    assert presentation.revealed_text == "Got it."


@pytest.mark.asyncio
async def test_vertex_without_project(event_bus, presentation, fake_transport):
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport, provider_index=VERTEX)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)
    assert presentation.revealed_text == ERROR_MESSAGES[ErrorKind.MISSING_CREDENTIAL]


class BlockingTransport:
    def __init__(self):
        self.started = asyncio.Event()
        self.closed = False

    async def send(self, request):
        self.started.set()
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_cancel_rolls_back_the_turn(event_bus, presentation):
    transport = BlockingTransport()
    orchestrator = make_orchestrator(event_bus, presentation, transport)

    orchestrator.submit("Are you there?")
    await transport.started.wait()
    assert orchestrator.busy

    await orchestrator.cancel()
    assert not orchestrator.busy
    assert presentation.state == State.INPUT_READY
    assert len(orchestrator.history) == 1
    assert orchestrator.turn_count == 0

    await orchestrator.shutdown()
    assert transport.closed


@pytest.mark.asyncio
async def test_reset_keeps_system_prompt(event_bus, presentation, fake_transport):
    fake_transport.add_batch(200, openai_body("[SMILE] Sure."))
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport)

    orchestrator.submit("Hi")
    await orchestrator.wait_idle()
    assert orchestrator.reset_conversation()

    assert len(orchestrator.history) == 1
    assert orchestrator.history.messages[0].role == Role.SYSTEM
    assert orchestrator.turn_count == 0


@pytest.mark.asyncio
async def test_window_and_context_with_memory(event_bus, presentation, fake_transport, tmp_path):
    memory = MemoryManager(MemoryConfig(enabled=False, max_conversation_turns=4, trim_slack=0),
                           data_dir=tmp_path)
    backlog = BackLog()
    backlog.attach(event_bus)
    orchestrator = make_orchestrator(event_bus, presentation, fake_transport, memory=memory,
                                     web_search=True)

    for i in range(5):
        fake_transport.add_batch(200, openai_body(f"[SMILE] Reply {i}."))
        assert orchestrator.submit(f"Message {i}")
        await orchestrator.wait_idle()
        presentation.advance()
        presentation.advance()

    system_prompt = orchestrator.history.system_prompt
    assert "Conversation turn: 5" in system_prompt
    assert "[Web search (enabled)]" in system_prompt
    assert len(orchestrator.history.non_system()) <= 5
    assert orchestrator.history.non_system()[0].role == Role.USER
    assert memory.memory.conversation_summaries
    assert memory.memory.total_interactions == 5
    assert ("You", "Message 4") in [(e.speaker, e.text) for e in backlog.entries]
    assert ("Kurisu", "Reply 4.") in [(e.speaker, e.text) for e in backlog.entries]


class HangingStream:
    """Delivers its chunks, then waits forever for more."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.status = 200
        self.ok = True
        self.drained = asyncio.Event()

    async def aiter_bytes(self):
        for chunk in self.chunks:
            yield chunk
        self.drained.set()
        await asyncio.Event().wait()


class HangingStreamTransport:
    def __init__(self, stream):
        self.stream = stream
        self.stream_closed = False

    @asynccontextmanager
    async def open_stream(self, request):
        try:
            yield self.stream
        finally:
            self.stream_closed = True

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_cancel_mid_stream_closes_the_stream(event_bus, presentation):
    stream = HangingStream([sse(chat_delta("[SMILE] Hi"))])
    transport = HangingStreamTransport(stream)
    orchestrator = make_orchestrator(event_bus, presentation, transport, provider_index=GROQ)

    orchestrator.submit("Still there?")
    await stream.drained.wait()
    assert presentation.state == State.STREAM_REVEALING

    await orchestrator.cancel()
    assert transport.stream_closed
    assert len(orchestrator.history) == 1
    assert orchestrator.turn_count == 0
    assert presentation.state == State.INPUT_READY


def vertex_orchestrator(event_bus, presentation, transport, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    regions = ["us-central1", "us-west1"]
    return ChatOrchestrator(
        config=AIConfig(provider_index=VERTEX, vertex_project="proj", vertex_regions=regions),
        character=create_character(),
        event_bus=event_bus,
        presentation=presentation,
        transport=transport,
        credential_provider=StaticCredentialProvider("ya29.token"),
        failover_policy=RegionFailoverPolicy(regions, sleep=fake_sleep),
    )


UNAVAILABLE_FRAME = {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}


@pytest.mark.asyncio
async def test_vertex_error_frame_after_text_is_not_retried(event_bus, presentation, fake_transport):
    sleeps = []
    fake_transport.add_stream(200, [sse(gemini_frame("[SMILE] Hello")), sse(UNAVAILABLE_FRAME)])
    orchestrator = vertex_orchestrator(event_bus, presentation, fake_transport, sleeps)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert len(fake_transport.requests) == 1
    assert sleeps == []
    assert presentation.transcript.startswith("Hello")
    assert presentation.emotion == "ANGRY"
    assert len(orchestrator.history) == 1


@pytest.mark.asyncio
async def test_vertex_error_frame_before_any_text_fails_over(event_bus, presentation, fake_transport):
    sleeps = []
    # The text frame and the error frame arrive in one chunk, so nothing is shown
    fake_transport.add_stream(200, [sse(gemini_frame("[SMILE] Hello"), UNAVAILABLE_FRAME)])
    fake_transport.add_stream(200, [sse(gemini_frame("[WINK] Got it."))])
    orchestrator = vertex_orchestrator(event_bus, presentation, fake_transport, sleeps)

    orchestrator.submit("Hi")
    await settle(orchestrator, presentation)

    assert len(fake_transport.requests) == 2
    assert "locations/us-west1/" in fake_transport.requests[1].url
    assert len(sleeps) == 1
    assert presentation.emotion == "WINK"
    assert presentation.revealed_text == "Got it."
    assert orchestrator.history.messages[-1].content == "Got it."


@pytest.mark.asyncio
async def test_custom_emotion_tags_are_parsed(event_bus, presentation, fake_transport):
    fake_transport.add_batch(200, openai_body("[SMUG] Obviously."))
    orchestrator = ChatOrchestrator(
        config=AIConfig(provider_index=OPENAI, api_keys={"openai": "sk-test"}),
        character=create_character(emotions=["smug", "normal"]),
        event_bus=event_bus,
        presentation=presentation,
        transport=fake_transport,
    )

    orchestrator.submit("Can you do it?")
    await settle(orchestrator, presentation)

    assert presentation.emotion == "SMUG"
    assert presentation.revealed_text == "Obviously."
    assert orchestrator.character.current_emotion == "SMUG"
    assert "[SMUG]" in orchestrator.history.system_prompt
