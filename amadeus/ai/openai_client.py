"""
Chat-completions clients - OpenAI and Groq share the same wire format.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from .json_fields import extract_string
from .provider_base import (
    Message, ProviderClient, ProviderKind, ProviderRequest, ProviderSelection
)

logger = logging.getLogger(__name__)


class ChatCompletionsClient(ProviderClient):
    """Flat role/content message array with a bearer key."""

    url = ""

    def build_request(self, history: Sequence[Message], selection: ProviderSelection,
                      stream: bool = False, region: Optional[str] = None) -> ProviderRequest:
        model = self.resolve_model(selection.model)
        body: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in history],
            "max_tokens": self.max_tokens,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if stream:
            body["stream"] = True
        body.update(self.extra_body(model, selection))

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {selection.credential}",
        }
        return ProviderRequest(url=self.url, headers=headers, body=body, stream=stream)

    def extra_body(self, model: str, selection: ProviderSelection) -> Dict[str, Any]:
        return {}

    def extract_batch_text(self, body: str) -> Optional[str]:
        return extract_string(body, "content", anchor="message")

    def extract_stream_delta(self, payload: str) -> Optional[str]:
        # Role-only and finish frames carry no content field
        return extract_string(payload, "content", anchor="delta")


class OpenAIClient(ChatCompletionsClient):
    kind = ProviderKind.OPENAI
    display_name = "OpenAI"
    default_model = "gpt-4o"
    url = "https://api.openai.com/v1/chat/completions"

    def resolve_model(self, model: Optional[str]) -> str:
        if not model or model.startswith(("gemini", "claude")):
            return self.default_model
        return model


class GroqClient(ChatCompletionsClient):
    """Groq's OpenAI-compatible endpoint.

    With web search on, requests go to the ``groq/compound`` model, which
    searches on its own. Qwen models are asked to hide their reasoning.
    """

    kind = ProviderKind.GROQ
    display_name = "Groq"
    default_model = "qwen/qwen3-32b"
    compound_model = "groq/compound"
    url = "https://api.groq.com/openai/v1/chat/completions"

    known_families = ("llama", "mixtral", "gemma", "qwen", "deepseek", "compound", "gpt-oss", "kimi")

    def __init__(self, max_tokens: int = 2048, temperature: Optional[float] = 0.85,
                 top_p: float = 0.9):
        super().__init__(max_tokens=max_tokens, temperature=temperature)
        self.top_p = top_p

    def resolve_model(self, model: Optional[str]) -> str:
        if not model or not any(family in model for family in self.known_families):
            return self.default_model
        return model

    def build_request(self, history: Sequence[Message], selection: ProviderSelection,
                      stream: bool = False, region: Optional[str] = None) -> ProviderRequest:
        if selection.web_search:
            logger.debug("Web search enabled, using Groq compound model")
            selection = ProviderSelection(
                provider=selection.provider,
                credential=selection.credential,
                model=self.compound_model,
                web_search=True,
            )
        return super().build_request(history, selection, stream=stream, region=region)

    def extra_body(self, model: str, selection: ProviderSelection) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if model != self.compound_model:
            extra["top_p"] = self.top_p
        if "qwen" in model:
            extra["reasoning_format"] = "hidden"
        return extra
