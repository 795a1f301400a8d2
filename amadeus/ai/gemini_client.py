"""
Google Gemini clients - Gemini API (API key) and Vertex AI (OAuth bearer token).
Both speak the structured-content format: ``contents`` with user/model roles
and a separate ``system_instruction``.
"""

from typing import Any, Dict, List, Optional, Sequence

from ..utils.logger import get_logger
from .json_fields import extract_all
from .provider_base import (
    Message, ProviderClient, ProviderKind, ProviderRequest, ProviderSelection, Role, split_system
)

logger = get_logger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

DEFAULT_VERTEX_REGIONS = (
    "us-central1",
    "us-west1",
    "us-east4",
    "asia-northeast1",
    "northamerica-northeast1",
)
GLOBAL_REGION = "global"


class GeminiClient(ProviderClient):
    """Gemini API via generativelanguage.googleapis.com."""

    kind = ProviderKind.GEMINI
    display_name = "Gemini"
    default_model = "gemini-2.0-flash"

    def __init__(self, max_tokens: int = 2048, temperature: Optional[float] = None,
                 top_p: Optional[float] = None, top_k: Optional[int] = None):
        super().__init__(max_tokens=max_tokens, temperature=temperature)
        self.top_p = top_p
        self.top_k = top_k

    def resolve_model(self, model: Optional[str]) -> str:
        if not model or model.startswith(("gpt", "claude")):
            return self.default_model
        return model

    def build_body(self, history: Sequence[Message], web_search: bool) -> Dict[str, Any]:
        """Map the unified history onto contents/parts."""
        system_text, turns = split_system(history)

        contents: List[Dict[str, Any]] = []
        for message in turns:
            role = "model" if message.role == Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        generation_config: Dict[str, Any] = {"maxOutputTokens": self.max_tokens}
        if self.temperature is not None:
            generation_config["temperature"] = self.temperature
        if self.top_p is not None:
            generation_config["topP"] = self.top_p
        if self.top_k is not None:
            generation_config["topK"] = self.top_k

        body: Dict[str, Any] = {}
        if system_text:
            body["system_instruction"] = {"parts": [{"text": system_text}]}
        body["contents"] = contents
        body["generationConfig"] = generation_config
        if web_search:
            body["tools"] = [{"googleSearch": {}}]
        return body

    def endpoint(self, model: str, method: str, selection: ProviderSelection,
                 region: Optional[str]) -> str:
        return f"{GEMINI_API_BASE}/{model}:{method}"

    def auth_headers(self, selection: ProviderSelection) -> Dict[str, str]:
        return {"x-goog-api-key": selection.credential}

    def build_request(self, history: Sequence[Message], selection: ProviderSelection,
                      stream: bool = False, region: Optional[str] = None) -> ProviderRequest:
        model = self.resolve_model(selection.model)
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        logger.debug(f"{self.display_name} request: model={model} region={region} stream={stream}")

        headers = {"Content-Type": "application/json"}
        headers.update(self.auth_headers(selection))

        return ProviderRequest(
            url=self.endpoint(model, method, selection, region),
            headers=headers,
            body=self.build_body(history, selection.web_search),
            stream=stream,
        )

    def extract_batch_text(self, body: str) -> Optional[str]:
        return _candidate_text(body)

    def extract_stream_delta(self, payload: str) -> Optional[str]:
        return _candidate_text(payload)


class VertexClient(GeminiClient):
    """Gemini models on Vertex AI, addressed per project and region."""

    kind = ProviderKind.VERTEX
    display_name = "Vertex AI"

    def __init__(self, max_tokens: int = 2048, temperature: Optional[float] = None,
                 regions: Optional[Sequence[str]] = None, project_id: Optional[str] = None):
        super().__init__(max_tokens=max_tokens, temperature=temperature)
        self.regions = tuple(regions or DEFAULT_VERTEX_REGIONS)
        self.project_id = project_id

    def resolve_model(self, model: Optional[str]) -> str:
        if not model or not model.startswith("gemini"):
            return self.default_model
        return model

    def endpoint(self, model: str, method: str, selection: ProviderSelection,
                 region: Optional[str]) -> str:
        project = selection.project_id or self.project_id
        location = region or selection.endpoint_region or self.regions[0]
        path = f"v1/projects/{project}/locations/{location}/publishers/google/models/{model}:{method}"

        if location == GLOBAL_REGION:
            return f"https://aiplatform.googleapis.com/{path}"
        return f"https://{location}-aiplatform.googleapis.com/{path}"

    def auth_headers(self, selection: ProviderSelection) -> Dict[str, str]:
        return {"Authorization": f"Bearer {selection.credential}"}


def _candidate_text(payload: str) -> Optional[str]:
    """Join the text parts of the first candidate.

    Grounded replies can be split over several parts. Grounding metadata
    repeats text segments, so scanning stops where it begins.
    """
    cut = payload.find('"groundingMetadata"')
    if cut != -1:
        payload = payload[:cut]
    parts = extract_all(payload, "text", anchor="candidates")
    if not parts:
        return None
    return "".join(parts)
