"""
Provider registry - Maps each provider kind to its client.
"""

import logging
from typing import Callable, Dict, Optional

from ..core.config import AIConfig
from .claude_client import ClaudeClient
from .errors import ErrorKind, ProviderError
from .gemini_client import GeminiClient, VertexClient
from .openai_client import GroqClient, OpenAIClient
from .provider_base import ProviderClient, ProviderKind

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AIConfig], ProviderClient]


def _vertex_factory(config: AIConfig) -> ProviderClient:
    return VertexClient(
        max_tokens=config.max_tokens,
        regions=config.vertex_regions,
        project_id=config.vertex_project,
    )


PROVIDER_REGISTRY: Dict[ProviderKind, ClientFactory] = {
    ProviderKind.OPENAI: lambda config: OpenAIClient(max_tokens=config.max_tokens),
    ProviderKind.GEMINI: lambda config: GeminiClient(max_tokens=config.max_tokens),
    ProviderKind.CLAUDE: lambda config: ClaudeClient(max_tokens=config.max_tokens),
    ProviderKind.GROQ: lambda config: GroqClient(
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        top_p=config.top_p,
    ),
    ProviderKind.VERTEX: _vertex_factory,
}


def create_provider_client(kind: ProviderKind, config: AIConfig,
                           registry: Optional[Dict[ProviderKind, ClientFactory]] = None) -> ProviderClient:
    """Build the client for a provider, or raise UNKNOWN_PROVIDER."""
    registry = PROVIDER_REGISTRY if registry is None else registry
    factory = registry.get(kind)
    if factory is None:
        raise ProviderError(f"No client registered for provider: {kind}",
                            kind=ErrorKind.UNKNOWN_PROVIDER)

    client = factory(config)
    logger.debug(f"Created {client.display_name} client")
    return client
