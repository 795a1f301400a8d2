import pytest
import yaml

from amadeus.core.config import (
    AIConfig, Config, PresentationConfig, deep_merge, load_config, save_config,
)

ENV_VARS = (
    "OPENAI_API_KEY", "GEMINI_API_KEY", "ANTHROPIC_API_KEY", "GROQ_API_KEY",
    "AMADEUS_PROVIDER", "VERTEX_PROJECT", "VERTEX_LOCATION", "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_OAUTH_CLIENT_ID", "GOOGLE_OAUTH_CLIENT_SECRET",
)


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    # Ensure env vars don't interfere across tests
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


def test_defaults():
    config = Config()
    assert config.ai.provider_name == "openai"
    assert config.ai.streaming_providers == ["groq", "vertex"]
    assert config.presentation.auto_advance_interval == 3.0
    assert config.memory.max_conversation_turns == 30


def test_unknown_provider_index_clamps_to_first(caplog):
    assert AIConfig(provider_index=12).provider_index == 0
    assert AIConfig(provider_index=-1).provider_index == 0
    assert "Unknown provider index" in caplog.text


def test_speed_and_interval_have_a_floor():
    config = PresentationConfig(text_speed=0, auto_advance_interval=0.01)
    assert config.text_speed == 0.1
    assert config.auto_advance_interval == 0.1


def test_per_provider_keys_fall_back_to_legacy_key():
    config = AIConfig(api_key="legacy", api_keys={"groq": "gsk"}, model_name="m",
                      model_names={"claude": "claude-x"})
    assert config.key_for("groq") == "gsk"
    assert config.key_for("openai") == "legacy"
    assert config.model_for("claude") == "claude-x"
    assert config.model_for("gemini") == "m"


def test_deep_merge():
    merged = deep_merge({"ai": {"a": 1, "b": {"c": 2}}}, {"ai": {"b": {"d": 3}}})
    assert merged == {"ai": {"a": 1, "b": {"c": 2, "d": 3}}}


def test_load_yaml_with_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "ai": {"provider_index": 1, "api_keys": {"gemini": "from-file"}},
        "presentation": {"text_speed": 2.0},
    }), encoding="utf-8")

    monkeypatch.setenv("GROQ_API_KEY", "gsk-env")
    monkeypatch.setenv("AMADEUS_PROVIDER", "groq")
    monkeypatch.setenv("VERTEX_PROJECT", "proj-1")

    config = load_config(str(path))
    assert config.ai.provider_name == "groq"
    assert config.ai.api_keys == {"gemini": "from-file", "groq": "gsk-env"}
    assert config.ai.vertex_project == "proj-1"
    assert config.presentation.text_speed == 2.0


def test_numeric_provider_env(tmp_path, monkeypatch):
    monkeypatch.setenv("AMADEUS_PROVIDER", "4")
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.ai.provider_name == "vertex"


def test_save_and_reload(tmp_path):
    path = tmp_path / "out" / "config.yaml"
    config = Config()
    config.ai.web_search = True
    save_config(config, str(path))

    reloaded = load_config(str(path))
    assert reloaded.ai.web_search is True
    assert reloaded.data_dir == config.data_dir
