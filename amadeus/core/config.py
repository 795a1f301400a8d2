"""
Configuration management for Amadeus Companion.
Handles loading and validation of application settings.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional, List
from pydantic import BaseModel, ConfigDict, Field, field_validator
from dotenv import load_dotenv
import yaml

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

PROVIDER_NAMES = ["openai", "gemini", "claude", "groq", "vertex"]

class AIConfig(BaseModel):
    """AI provider configuration."""
    model_config = ConfigDict(protected_namespaces=())

    provider_index: int = 0  # 0 openai, 1 gemini, 2 claude, 3 groq, 4 vertex

    # Per-provider keys and models, keyed by provider name; the single
    # api_key / model_name pair is used when a provider has no entry
    api_key: Optional[str] = None
    api_keys: Dict[str, str] = Field(default_factory=dict)
    model_name: Optional[str] = None
    model_names: Dict[str, str] = Field(default_factory=dict)

    web_search: bool = False
    streaming_providers: List[str] = Field(default_factory=lambda: ["groq", "vertex"])
    max_tokens: int = 2048
    temperature: float = 0.85
    top_p: float = 0.9
    request_timeout: float = 60.0

    # Vertex AI
    vertex_project: Optional[str] = None
    vertex_location: str = "us-central1"
    vertex_regions: List[str] = Field(default_factory=lambda: [
        "us-central1", "us-west1", "us-east4", "asia-northeast1", "northamerica-northeast1"
    ])
    vertex_auth: str = "gcloud"  # gcloud, refresh_token, service_account, static
    vertex_access_token: Optional[str] = None
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    oauth_refresh_token: Optional[str] = None
    google_credentials_path: Optional[str] = None

    # Delay between region attempts, seconds
    failover_jitter_min: float = 0.1
    failover_jitter_max: float = 0.4

    @field_validator("provider_index")
    @classmethod
    def clamp_provider_index(cls, value: int) -> int:
        if not 0 <= value < len(PROVIDER_NAMES):
            logger.warning(f"Unknown provider index {value}, using {PROVIDER_NAMES[0]}")
            return 0
        return value

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAMES[self.provider_index]

    def key_for(self, provider: str) -> str:
        return self.api_keys.get(provider) or self.api_key or ""

    def model_for(self, provider: str) -> str:
        return self.model_names.get(provider) or self.model_name or ""

class PresentationConfig(BaseModel):
    """Text reveal and paging configuration."""
    text_speed: float = 1.0
    char_delay: float = 0.1
    auto_mode: bool = False
    auto_advance_interval: float = 3.0
    tag_lookahead: int = 16
    tick_rate: int = 60
    backlog_size: int = 200

    @field_validator("text_speed", "auto_advance_interval")
    @classmethod
    def clamp_minimum(cls, value: float) -> float:
        return max(value, 0.1)

class MemoryConfig(BaseModel):
    """Conversation window and long-term memory configuration."""
    enabled: bool = True
    max_conversation_turns: int = Field(default=30, ge=1)
    trim_slack: int = Field(default=4, ge=0)
    max_long_term_facts: int = 50
    max_summaries: int = 10
    summaries_in_prompt: int = 3
    memory_file: str = "memory.json"

class PersonalityConfig(BaseModel):
    """Character persona configuration."""
    name: str = "Kurisu"
    persona_prompt: Optional[str] = None

    # Custom personality file
    personality_file: Optional[str] = None

class Config(BaseModel):
    """Main application configuration."""
    app_name: str = "Amadeus Companion"
    version: str = "1.0.0"
    debug: bool = False
    data_dir: Path = Path("data")
    log_level: str = "INFO"

    # Component configurations
    ai: AIConfig = Field(default_factory=AIConfig)
    presentation: PresentationConfig = Field(default_factory=PresentationConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    personality: PersonalityConfig = Field(default_factory=PersonalityConfig)

def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            base[key] = deep_merge(base[key], value)
        else:
            base[key] = value
    return base

def load_config(config_file: Optional[str] = None) -> Config:
    """Load configuration from file or environment variables."""

    # Default config file path
    if config_file is None:
        config_file = "configs/config.yaml"

    config_path = Path(config_file)

    # Load from YAML if exists
    config_data: Dict[str, Any] = {}
    if config_path.exists() and config_path.suffix in ['.yaml', '.yml']:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

    # Override with environment variables
    env_overrides: Dict[str, Any] = {}

    # Provider keys
    key_vars = {
        'openai': 'OPENAI_API_KEY',
        'gemini': 'GEMINI_API_KEY',
        'claude': 'ANTHROPIC_API_KEY',
        'groq': 'GROQ_API_KEY',
    }
    for provider, var in key_vars.items():
        if os.getenv(var):
            env_overrides.setdefault('ai', {}).setdefault('api_keys', {})[provider] = os.getenv(var)

    provider = os.getenv('AMADEUS_PROVIDER')
    if provider:
        if provider.isdigit():
            env_overrides.setdefault('ai', {})['provider_index'] = int(provider)
        elif provider.lower() in PROVIDER_NAMES:
            env_overrides.setdefault('ai', {})['provider_index'] = PROVIDER_NAMES.index(provider.lower())
        else:
            logger.warning(f"Ignoring unknown AMADEUS_PROVIDER: {provider}")

    # Vertex AI / Google Cloud
    if os.getenv('VERTEX_PROJECT'):
        env_overrides.setdefault('ai', {})['vertex_project'] = os.getenv('VERTEX_PROJECT')
    if os.getenv('VERTEX_LOCATION'):
        env_overrides.setdefault('ai', {})['vertex_location'] = os.getenv('VERTEX_LOCATION')
    if os.getenv('GOOGLE_APPLICATION_CREDENTIALS'):
        env_overrides.setdefault('ai', {})['google_credentials_path'] = os.getenv('GOOGLE_APPLICATION_CREDENTIALS')
    if os.getenv('GOOGLE_OAUTH_CLIENT_ID'):
        env_overrides.setdefault('ai', {})['oauth_client_id'] = os.getenv('GOOGLE_OAUTH_CLIENT_ID')
    if os.getenv('GOOGLE_OAUTH_CLIENT_SECRET'):
        env_overrides.setdefault('ai', {})['oauth_client_secret'] = os.getenv('GOOGLE_OAUTH_CLIENT_SECRET')

    final_config = deep_merge(config_data, env_overrides)

    # Create and return Config object
    return Config(**final_config)

def save_config(config: Config, config_file: str = "configs/config.yaml"):
    """Save configuration to YAML file."""
    config_path = Path(config_file)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    # Convert to dict and save
    config_dict = config.model_dump(mode="json")

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config_dict, f, default_flow_style=False, indent=2)
