"""
Chat Orchestrator - Runs conversation turns against the selected AI provider.
Owns the conversation history, sends one request per turn (whole or streamed)
and feeds the decoded reply to the presentation state machine.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..core.config import AIConfig
from ..core.event_bus import EventBus
from ..models.character import Character
from ..models.memory import MemoryManager
from ..presentation.state_machine import ConversationTurnState, PresentationStateMachine
from .credentials import CredentialProvider
from .errors import ERROR_EMOTION, ErrorKind, ProviderError, user_message_for
from .failover import RegionFailoverPolicy
from .provider_base import Message, ProviderClient, ProviderKind, ProviderSelection, Role
from .providers import PROVIDER_REGISTRY, ClientFactory, create_provider_client
from .tag_parser import NEUTRAL_EMOTION, StreamTagParser, parse_reply
from .transport import HttpTransport

logger = logging.getLogger(__name__)

USER_LABEL = "You"


class ConversationHistory:
    """Message list whose first entry is always the system prompt."""

    def __init__(self, system_prompt: str = ""):
        self.messages: List[Message] = [Message(Role.SYSTEM, system_prompt)]

    @property
    def system_prompt(self) -> str:
        return self.messages[0].content

    def rebuild_system(self, prompt: str):
        """Replace the system prompt in place."""
        self.messages[0] = Message(Role.SYSTEM, prompt)

    def append(self, role: Role, content: str) -> Message:
        message = Message(role, content)
        self.messages.append(message)
        return message

    def remove(self, message: Message) -> bool:
        """Remove a specific message object (identity, not equality)."""
        for i in range(len(self.messages) - 1, 0, -1):
            if self.messages[i] is message:
                del self.messages[i]
                return True
        return False

    def non_system(self) -> List[Message]:
        return self.messages[1:]

    def clear(self):
        """Drop every turn but keep the system prompt."""
        del self.messages[1:]

    def snapshot(self) -> List[Message]:
        return list(self.messages)

    def __len__(self):
        return len(self.messages)


@dataclass
class StreamSession:
    """State of one streamed attempt."""
    parser: StreamTagParser
    buffer: bytes = b""
    output: str = ""
    delivered: bool = False
    started: float = field(default_factory=time.monotonic)


class ChatOrchestrator:
    """Runs at most one turn at a time from submit to settled reply."""

    def __init__(self,
                 config: AIConfig,
                 character: Character,
                 event_bus: EventBus,
                 presentation: PresentationStateMachine,
                 transport: Optional[HttpTransport] = None,
                 memory: Optional[MemoryManager] = None,
                 credential_provider: Optional[CredentialProvider] = None,
                 failover_policy: Optional[RegionFailoverPolicy] = None,
                 registry: Optional[Dict[ProviderKind, ClientFactory]] = None):
        self.config = config
        self.character = character
        self.event_bus = event_bus
        self.presentation = presentation
        self.transport = transport or HttpTransport(timeout=config.request_timeout)
        self.memory = memory
        self.credential_provider = credential_provider
        self.failover_policy = failover_policy
        self.registry = PROVIDER_REGISTRY if registry is None else registry

        self.history = ConversationHistory()
        self.turn_count = 0
        self.tag_lookahead = presentation.config.tag_lookahead

        self._task: Optional[asyncio.Task] = None
        self._session: Optional[StreamSession] = None

        # Performance tracking
        self.response_times: List[float] = []
        self.error_count = 0

        self.refresh_system_prompt()
        logger.info(f"Chat orchestrator initialized for character: {character.name}")

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    # Turn lifecycle

    def submit(self, text: str) -> bool:
        """Start a turn. Returns False when input is not accepted right now."""
        text = (text or "").strip()
        if not text:
            return False

        if self.busy or self.presentation.state != ConversationTurnState.INPUT_READY:
            logger.info(f"Input rejected while {self.presentation.state.value}")
            return False

        user_message = self.history.append(Role.USER, text)
        self.turn_count += 1

        if self.memory:
            self.memory.trim_conversation_history(self.history.messages)
            self.memory.record_interaction()
        self.refresh_system_prompt()

        self.event_bus.publish("backlog_page", USER_LABEL, text)
        self.presentation.begin_turn()

        self._task = asyncio.get_running_loop().create_task(self._run_turn(user_message))
        return True

    async def wait_idle(self):
        """Wait until the current request has settled."""
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def cancel(self):
        """Abort the running turn; history keeps no trace of it."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task})
        self._session = None
        self.presentation.cancel()

    def reset_conversation(self) -> bool:
        """Clear the conversation but keep the system prompt."""
        if self.busy:
            return False
        self.history.clear()
        self.turn_count = 0
        self.refresh_system_prompt()
        logger.info("Conversation history cleared")
        return True

    async def shutdown(self):
        await self.cancel()
        await self.transport.aclose()
        if self.credential_provider:
            await self.credential_provider.aclose()
        if self.memory:
            self.memory.save()
        logger.info("Chat orchestrator shutdown")

    # Request handling

    async def _run_turn(self, user_message: Message):
        started = time.monotonic()
        try:
            selection = self._resolve_selection()
            client = create_provider_client(selection.provider, self.config, self.registry)
            selection = await self._with_credential(selection)

            if selection.provider.value in self.config.streaming_providers:
                emotion, text = await self._run_streamed(client, selection)
                self._commit(emotion, text)
                self.presentation.end_stream()
            else:
                emotion, text = await self._run_batch(client, selection)
                self._commit(emotion, text)
                self.presentation.begin_reveal(text, emotion)

        except asyncio.CancelledError:
            self._rollback(user_message)
            logger.info("Turn cancelled")
            raise
        except ProviderError as e:
            self._fail(user_message, e)
            return
        except Exception as e:
            logger.error(f"Unexpected error during turn: {e}", exc_info=True)
            self._fail(user_message, ProviderError(str(e), kind=ErrorKind.UNKNOWN))
            return
        finally:
            self._session = None

        elapsed = time.monotonic() - started
        self.response_times.append(elapsed)
        logger.info(f"{client.display_name} replied in {elapsed:.2f}s ({emotion})")

    def _resolve_selection(self) -> ProviderSelection:
        config = self.config
        kind = ProviderKind.from_index(config.provider_index)
        if kind not in self.registry:
            raise ProviderError(f"Provider not available: {kind.value}", kind=ErrorKind.UNKNOWN_PROVIDER)

        credential = config.key_for(kind.value)
        vertex = kind == ProviderKind.VERTEX
        if not credential and not vertex:
            raise ProviderError(f"No API key configured for {kind.value}",
                                kind=ErrorKind.MISSING_CREDENTIAL)
        if vertex and not config.vertex_project:
            raise ProviderError("No Vertex AI project configured", kind=ErrorKind.MISSING_CREDENTIAL)

        return ProviderSelection(
            provider=kind,
            credential=credential,
            model=config.model_for(kind.value),
            endpoint_region=config.vertex_location if vertex else None,
            project_id=config.vertex_project if vertex else None,
            web_search=config.web_search,
        )

    async def _with_credential(self, selection: ProviderSelection) -> ProviderSelection:
        """Swap in a bearer token for token-based providers."""
        if selection.provider != ProviderKind.VERTEX:
            return selection
        if self.credential_provider is None:
            if not selection.credential:
                raise ProviderError("No Vertex AI access token", kind=ErrorKind.MISSING_CREDENTIAL)
            return selection

        token = await self.credential_provider.get_valid_access_token()
        return dataclasses.replace(selection, credential=token)

    async def _dispatch(self, client: ProviderClient, selection: ProviderSelection, attempt):
        if not client.multi_region:
            return await attempt(None)

        policy = self.failover_policy or RegionFailoverPolicy(
            client.regions,
            jitter=(self.config.failover_jitter_min, self.config.failover_jitter_max),
        )
        return await policy.run(selection.endpoint_region, attempt)

    async def _run_batch(self, client: ProviderClient, selection: ProviderSelection):
        async def attempt(region: Optional[str]) -> str:
            request = client.build_request(self.history.snapshot(), selection, stream=False, region=region)
            response = await self.transport.send(request)
            if not response.ok:
                raise ProviderError.from_response(client.display_name, response.status,
                                                  response.body, region)
            return client.decode_batch(response.body)

        raw = await self._dispatch(client, selection, attempt)
        emotion, text = parse_reply(raw, allowed=self.character.emotions, lookahead=self.tag_lookahead)
        if not text:
            raise ProviderError(f"{client.display_name} reply had no displayable text",
                                raw_body=raw, kind=ErrorKind.DECODE_FAILURE)
        return emotion, text

    async def _run_streamed(self, client: ProviderClient, selection: ProviderSelection):
        async def attempt(region: Optional[str]) -> StreamSession:
            session = StreamSession(parser=StreamTagParser(self.character.emotions, self.tag_lookahead))
            self._session = session
            request = client.build_request(self.history.snapshot(), selection, stream=True, region=region)

            try:
                async with self.transport.open_stream(request) as response:
                    if not response.ok:
                        body = await response.aread()
                        raise ProviderError.from_response(client.display_name, response.status,
                                                          body, region)

                    async for chunk in response.aiter_bytes():
                        delta, session.buffer = client.decode_stream_chunk(session.buffer, chunk)
                        self._deliver(session, session.parser.feed(delta))

                    tail = client.flush_stream(session.buffer)
                    session.buffer = b""
                    self._deliver(session, session.parser.feed(tail))
                    self._deliver(session, session.parser.finish())

            except ProviderError as e:
                if session.delivered:
                    # Text is already on screen; another region cannot replace it
                    raise ProviderError(f"Stream interrupted: {e}", status=e.status,
                                        raw_body=e.raw_body, kind=ErrorKind.STREAM_INTERRUPTED,
                                        region=region) from e
                raise

            if not session.delivered:
                raise ProviderError(f"{client.display_name} stream ended without text",
                                    kind=ErrorKind.DECODE_FAILURE, region=region)
            return session

        session = await self._dispatch(client, selection, attempt)
        return session.parser.emotion or NEUTRAL_EMOTION, session.output.strip()

    def _deliver(self, session: StreamSession, text: str):
        if not text:
            return

        if not session.delivered:
            session.delivered = True
            latency = (time.monotonic() - session.started) * 1000
            logger.info(f"First token after {latency:.0f}ms")
            self.presentation.begin_stream(session.parser.emotion or NEUTRAL_EMOTION)

        session.output += text
        self.presentation.push_stream_text(text)

    # Settling

    def _commit(self, emotion: str, text: str):
        self.history.append(Role.ASSISTANT, text)
        self.character.set_emotion(emotion)
        if self.memory and self.memory.record_emotion(emotion):
            logger.info(f"Emotion {emotion} used three times in a row")
        self.event_bus.publish("assistant_replied", text, emotion)

    def _rollback(self, user_message: Message):
        if self.history.remove(user_message):
            self.turn_count = max(0, self.turn_count - 1)

    def _fail(self, user_message: Message, error: ProviderError):
        self._rollback(user_message)
        self.error_count += 1

        logger.error(f"Turn failed ({error.kind.value}): {error}")
        if error.raw_body:
            logger.debug(f"Provider response body: {error.raw_body[:1000]}")

        message = user_message_for(error)
        state = self.presentation.state
        if state == ConversationTurnState.STREAM_REVEALING:
            self.presentation.fail_stream(message, ERROR_EMOTION)
        elif state == ConversationTurnState.WAITING_RESPONSE:
            self.presentation.begin_reveal(message, ERROR_EMOTION)
        else:
            logger.warning(f"Error message not shown while {state.value}")

        self.event_bus.publish("turn_failed", error)

    def refresh_system_prompt(self):
        """Rebuild the system prompt from the character and memory."""
        memory_context = ""
        dynamic_context = ""
        if self.memory:
            memory_context = self.memory.get_memory_context()
            dynamic_context = self.memory.get_dynamic_context(self.turn_count)

        self.history.rebuild_system(self.character.build_system_prompt(
            memory_context=memory_context,
            dynamic_context=dynamic_context,
            web_search=self.config.web_search,
        ))
