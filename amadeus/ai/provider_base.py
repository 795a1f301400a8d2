"""
Provider client base - Shared types and the interface every chat provider implements.

A provider client knows how to turn the conversation history into an HTTP
request for one vendor and how to turn that vendor's reply (a whole body or a
Server-Sent-Events stream) back into plain text. It does no I/O itself.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ErrorKind, ProviderError
from .json_fields import extract_field, extract_string

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """One entry of the conversation history."""
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ProviderKind(str, Enum):
    """Supported providers, in settings-index order."""
    OPENAI = "openai"
    GEMINI = "gemini"
    CLAUDE = "claude"
    GROQ = "groq"
    VERTEX = "vertex"

    @classmethod
    def from_index(cls, index: int) -> "ProviderKind":
        members = list(cls)
        if 0 <= index < len(members):
            return members[index]
        return members[0]

    @property
    def index(self) -> int:
        return list(type(self)).index(self)


@dataclass(frozen=True)
class ProviderSelection:
    """Everything resolved from settings for a single request."""
    provider: ProviderKind
    credential: str
    model: str
    endpoint_region: Optional[str] = None
    project_id: Optional[str] = None
    web_search: bool = False


@dataclass
class ProviderRequest:
    """A ready-to-send HTTP request."""
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    stream: bool = False
    method: str = "POST"

    def encoded_body(self) -> bytes:
        return json.dumps(self.body, ensure_ascii=False).encode("utf-8")


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class ProviderClient(ABC):
    """Request builder and response decoder for one provider."""

    kind: ProviderKind
    display_name: str = "provider"
    default_model: str = ""
    # None means a single global endpoint
    regions: Optional[Sequence[str]] = None

    def __init__(self, max_tokens: int = 2048, temperature: Optional[float] = None):
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def multi_region(self) -> bool:
        return bool(self.regions)

    def resolve_model(self, model: Optional[str]) -> str:
        """Return the model to use, falling back to the provider default."""
        return model or self.default_model

    @abstractmethod
    def build_request(self, history: Sequence[Message], selection: ProviderSelection,
                      stream: bool = False, region: Optional[str] = None) -> ProviderRequest:
        """Build the HTTP request for a conversation."""

    @abstractmethod
    def extract_batch_text(self, body: str) -> Optional[str]:
        """Pull the assistant text out of a complete response body."""

    @abstractmethod
    def extract_stream_delta(self, payload: str) -> Optional[str]:
        """Pull the text delta out of one stream event payload."""

    def decode_batch(self, body: str) -> str:
        """Decode a complete response body, raising DECODE_FAILURE when no text is found."""
        self._raise_for_error_payload(body)
        text = self.extract_batch_text(body)
        if text is None:
            logger.debug(f"{self.display_name} response without content: {body[:500]}")
            raise ProviderError(f"Could not find reply text in {self.display_name} response",
                                raw_body=body, kind=ErrorKind.DECODE_FAILURE)
        return text

    def decode_stream_chunk(self, buffer: bytes, data: bytes) -> Tuple[str, bytes]:
        """Decode newly received stream bytes.

        Complete lines are decoded; the trailing partial line is returned as
        the new buffer so it can be completed by the next chunk. Keeping the
        buffer as bytes means a multi-byte character split across chunks is
        only decoded once both halves are present.
        """
        buffer += data
        *lines, rest = buffer.split(b"\n")
        deltas = [self._decode_event_line(line) for line in lines]
        return "".join(d for d in deltas if d), rest

    def flush_stream(self, buffer: bytes) -> str:
        """Decode whatever is left in the buffer when the stream ends."""
        if not buffer.strip():
            return ""
        return self._decode_event_line(buffer) or ""

    def _decode_event_line(self, raw_line: bytes) -> str:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line.startswith(DATA_PREFIX):
            # event:, id:, comments and keep-alives
            return ""

        payload = line[len(DATA_PREFIX):].strip()
        if not payload or payload == DONE_SENTINEL:
            return ""

        self._raise_for_error_payload(payload)
        return self.extract_stream_delta(payload) or ""

    def _raise_for_error_payload(self, payload: str):
        """Some providers report failures inside a 200 response or stream."""
        if not payload.lstrip().startswith("{"):
            return
        if extract_string(payload, "type") == "error" or _has_error_object(payload):
            message = extract_string(payload, "message", anchor="error") or "provider error"
            code = extract_field(payload, "code", anchor="error")
            status = code if isinstance(code, int) and not isinstance(code, bool) else None
            if status is None and extract_string(payload, "type", anchor="error") == "overloaded_error":
                status = 529
            raise ProviderError(f"{self.display_name} error: {message}", status=status,
                                raw_body=payload)


def _has_error_object(payload: str) -> bool:
    head = payload.lstrip()[1:].lstrip()
    return head.startswith('"error"')


def split_system(history: Sequence[Message]) -> Tuple[str, List[Message]]:
    """Separate the system prompt from the turn messages."""
    system_parts = [m.content for m in history if m.role == Role.SYSTEM]
    turns = [m for m in history if m.role != Role.SYSTEM]
    return "\n\n".join(system_parts), turns
