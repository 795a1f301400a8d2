"""
Claude client - Anthropic Messages API.
"""

from typing import Any, Dict, Optional, Sequence

from .json_fields import extract_string
from .provider_base import (
    Message, ProviderClient, ProviderKind, ProviderRequest, ProviderSelection, split_system
)

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeClient(ProviderClient):
    """System prompt goes in its own field; only user/assistant turns in ``messages``."""

    kind = ProviderKind.CLAUDE
    display_name = "Claude"
    default_model = "claude-sonnet-4-20250514"
    url = "https://api.anthropic.com/v1/messages"

    def resolve_model(self, model: Optional[str]) -> str:
        if not model or model.startswith(("gpt", "gemini")):
            return self.default_model
        return model

    def build_request(self, history: Sequence[Message], selection: ProviderSelection,
                      stream: bool = False, region: Optional[str] = None) -> ProviderRequest:
        system_text, turns = split_system(history)

        body: Dict[str, Any] = {
            "model": self.resolve_model(selection.model),
            "max_tokens": self.max_tokens,
        }
        if system_text:
            body["system"] = system_text
        body["messages"] = [m.to_dict() for m in turns]
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if stream:
            body["stream"] = True

        headers = {
            "Content-Type": "application/json",
            "x-api-key": selection.credential,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        return ProviderRequest(url=self.url, headers=headers, body=body, stream=stream)

    def extract_batch_text(self, body: str) -> Optional[str]:
        return extract_string(body, "text", anchor="content")

    def extract_stream_delta(self, payload: str) -> Optional[str]:
        # message_start / content_block_start / ping carry no delta text
        if extract_string(payload, "type") != "content_block_delta":
            return None
        return extract_string(payload, "text", anchor="delta")
