from __future__ import annotations

from pathlib import Path

import pytest

from llmbridge.config import GatewayConfig, ProviderConfig
from llmbridge.llm import ConfigurationError, ModelSpec, UnsupportedProviderType
from llmbridge.providers import DESCRIPTORS, ProviderDialect, describe, supported_types


def test_compress_threshold_below_minimum_is_rejected():
    with pytest.raises(ConfigurationError, match="at least 1000"):
        GatewayConfig.from_mapping({"compress_threshold": 500})


def test_unknown_client_type_is_rejected_at_load():
    with pytest.raises(UnsupportedProviderType):
        GatewayConfig.from_mapping({"clients": [{"type": "frobnicator"}]})


@pytest.mark.parametrize("client_type", ["ollama", "azure-openai", "openai-compatible"])
def test_dialects_requiring_models_reject_empty_lists(client_type):
    with pytest.raises(ConfigurationError, match="requires an explicit 'models' list"):
        GatewayConfig.from_mapping({"clients": [{"type": client_type, "name": "x"}]})


def test_duplicate_client_identifiers_are_rejected():
    with pytest.raises(ConfigurationError, match="declared twice"):
        GatewayConfig.from_mapping({"clients": [{"type": "claude"}, {"type": "claude"}]})


def test_non_positive_max_input_tokens_is_rejected():
    with pytest.raises(ConfigurationError):
        ModelSpec(name="m", max_input_tokens=0)


def test_resolve_model_forms(openai_config):
    config = GatewayConfig.from_mapping(openai_config)

    client, model = config.resolve_model("openai:gpt-test")
    assert client.identifier == "openai"
    assert model.max_input_tokens == 8000

    client, model = config.resolve_model("ollama")
    assert (client.identifier, model.name) == ("ollama", "llama3")

    client, model = config.resolve_model("llama3")
    assert client.identifier == "ollama"

    # Undeclared models are allowed where the dialect does not require a list.
    client, model = config.resolve_model("openai:gpt-unlisted")
    assert model.name == "gpt-unlisted"
    assert model.max_input_tokens is None


def test_undeclared_model_on_requires_models_dialect_fails(openai_config):
    config = GatewayConfig.from_mapping(openai_config)
    with pytest.raises(ConfigurationError, match="not declared"):
        config.resolve_model("ollama:mistral")


def test_default_model_must_resolve(openai_config):
    openai_config["model"] = "ollama:unknown"
    with pytest.raises(ConfigurationError):
        GatewayConfig.from_mapping(openai_config)


def test_model_names_with_colons_split_on_first_separator():
    config = GatewayConfig.from_mapping(
        {"clients": [{"type": "ollama", "models": [{"name": "llama3:8b"}]}]}
    )
    client, model = config.resolve_model("ollama:llama3:8b")
    assert model.name == "llama3:8b"


def test_provider_options_and_extra_are_separated():
    provider = ProviderConfig.from_mapping(
        {
            "type": "vertexai",
            "project_id": "proj",
            "location": "europe-west1",
            "extra": {"proxy": "socks5://127.0.0.1:1080", "connect_timeout": 5},
        }
    )
    assert provider.value("project_id") == "proj"
    assert provider.value("proxy") == "socks5://127.0.0.1:1080"
    assert provider.value("connect_timeout") == "5"
    assert provider.value("adc_file") is None


def test_load_reads_yaml_and_applies_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "model: claude\n"
        "compress_threshold: 2000\n"
        "temperature: 0.2\n"
        "clients:\n"
        "  - type: claude\n"
        "    api_key: sk-ant-test\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("LLMBRIDGE_COMPRESS_THRESHOLD", "3000")

    config = GatewayConfig.load(config_path=config_file)

    assert config.compress_threshold == 3000
    assert config.temperature == 0.2
    assert config.clients[0].api_key == "sk-ant-test"
    assert config.default_model_id() == "claude"


def test_every_dialect_has_a_descriptor():
    assert set(DESCRIPTORS) == set(ProviderDialect)
    for name in supported_types():
        assert describe(name).name == name
