"""Configuration models and helpers for the gateway."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
import json
import yaml

from .llm import ConfigurationError, ModelSpec
from .providers import ProviderDescriptor, describe, parse_dialect

PROJECT_ROOT = Path(__file__).resolve().parent.parent

MIN_COMPRESS_THRESHOLD = 1000

DEFAULT_SUMMARIZE_PROMPT = (
    "Summarize the discussion briefly in 200 words or less to use as a prompt for future context."
)
DEFAULT_SUMMARY_PROMPT = "This is a summary of the chat history as a recap: "

_DOTENV_LOADED = False


def _load_dotenv_once() -> None:
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return

    env_file = os.getenv("ENV_FILE", ".env")
    env_path = Path(env_file)
    if not env_path.is_absolute():
        env_path = PROJECT_ROOT / env_file
    if env_path.exists():
        load_dotenv(env_path, override=False)
    _DOTENV_LOADED = True


def _env(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


_STRUCTURAL_KEYS = {"type", "name", "api_base", "api_key", "secret_key", "chat_endpoint", "models", "extra"}


@dataclass
class ProviderConfig:
    """One ``clients`` entry: a dialect plus its credentials and models."""

    type: str
    name: Optional[str] = None
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    secret_key: Optional[str] = None
    chat_endpoint: Optional[str] = None
    models: List[ModelSpec] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def identifier(self) -> str:
        return self.name or self.type

    @property
    def descriptor(self) -> ProviderDescriptor:
        return describe(self.type)

    def value(self, field_name: str) -> Optional[str]:
        """Return the literal config value for a credential field, if any."""

        if field_name in {"api_base", "api_key", "secret_key"}:
            raw = getattr(self, field_name)
        elif field_name in {"proxy", "connect_timeout"}:
            raw = self.extra.get(field_name)
        else:
            raw = self.options.get(field_name)
        if raw is None:
            return None
        text = str(raw).strip()
        return text or None

    def available_models(self) -> List[ModelSpec]:
        if self.models:
            return list(self.models)
        return list(self.descriptor.default_models)

    def find_model(self, model_name: str) -> Optional[ModelSpec]:
        for model in self.available_models():
            if model.name == model_name:
                return model
        return None

    @classmethod
    def from_mapping(cls, payload: Dict[str, Any]) -> "ProviderConfig":
        if not isinstance(payload, dict):
            raise ConfigurationError(f"Client entries must be mappings, got {payload!r}.")
        dialect = parse_dialect(str(payload.get("type", "")))
        models = [ModelSpec.from_mapping(item) for item in payload.get("models") or []]
        options = {key: value for key, value in payload.items() if key not in _STRUCTURAL_KEYS}
        return cls(
            type=dialect.value,
            name=payload.get("name"),
            api_base=payload.get("api_base"),
            api_key=payload.get("api_key"),
            secret_key=payload.get("secret_key"),
            chat_endpoint=payload.get("chat_endpoint"),
            models=models,
            extra=dict(payload.get("extra") or {}),
            options=options,
        )


@dataclass
class GatewayConfig:
    """Aggregate configuration handed to :class:`llmbridge.client.Gateway`."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    compress_threshold: int = 4000
    summarize_prompt: str = DEFAULT_SUMMARIZE_PROMPT
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT
    keep_last_exchange: bool = True
    request_timeout: Optional[float] = 300.0
    connect_timeout: float = 10.0
    token_encoding: Optional[str] = None
    clients: List[ProviderConfig] = field(default_factory=list)

    @classmethod
    def load(cls, *, config_path: Optional[Path] = None) -> "GatewayConfig":
        """Create a :class:`GatewayConfig` from YAML/JSON and environment overrides."""

        _load_dotenv_once()
        instance = cls()

        file_path = config_path or _env("LLMBRIDGE_CONFIG_FILE")
        if file_path is None:
            yaml_path = PROJECT_ROOT / "config.yaml"
            json_path = PROJECT_ROOT / "config.json"
            file_path = yaml_path if yaml_path.exists() or not json_path.exists() else json_path
        file_path = Path(file_path)
        if not file_path.is_absolute():
            file_path = PROJECT_ROOT / file_path
        if file_path.exists():
            with file_path.open("r", encoding="utf-8") as handle:
                if file_path.suffix.lower() in {".yaml", ".yml"}:
                    payload = yaml.safe_load(handle) or {}
                else:
                    payload = json.load(handle)
            instance.apply_mapping(payload)

        instance.apply_environment()
        instance.validate()
        return instance

    @classmethod
    def from_mapping(cls, payload: Dict[str, Any]) -> "GatewayConfig":
        instance = cls()
        instance.apply_mapping(payload)
        instance.validate()
        return instance

    # ------------------------------------------------------------------
    # Override helpers
    # ------------------------------------------------------------------
    def apply_mapping(self, payload: Dict[str, Any]) -> None:
        if not payload:
            return

        if "model" in payload:
            self.model = payload["model"]
        if "temperature" in payload:
            self.temperature = _optional_float(payload["temperature"])
        if "top_p" in payload:
            self.top_p = _optional_float(payload["top_p"])
        if payload.get("compress_threshold") is not None:
            self.compress_threshold = int(payload["compress_threshold"])
        if payload.get("summarize_prompt"):
            self.summarize_prompt = str(payload["summarize_prompt"])
        if payload.get("summary_prompt"):
            self.summary_prompt = str(payload["summary_prompt"])
        if "keep_last_exchange" in payload:
            self.keep_last_exchange = bool(payload["keep_last_exchange"])
        if "request_timeout" in payload:
            self.request_timeout = _optional_float(payload["request_timeout"])
        if payload.get("connect_timeout") is not None:
            self.connect_timeout = float(payload["connect_timeout"])
        if "token_encoding" in payload:
            self.token_encoding = payload["token_encoding"] or None
        if "clients" in payload:
            self.clients = [ProviderConfig.from_mapping(item) for item in payload["clients"] or []]

    def apply_environment(self) -> None:
        model = _env("LLMBRIDGE_MODEL")
        if model:
            self.model = model

        threshold = _env("LLMBRIDGE_COMPRESS_THRESHOLD")
        if threshold:
            self.compress_threshold = int(threshold)

        request_timeout = _env("LLMBRIDGE_REQUEST_TIMEOUT")
        if request_timeout:
            self.request_timeout = float(request_timeout)

        connect_timeout = _env("LLMBRIDGE_CONNECT_TIMEOUT")
        if connect_timeout:
            self.connect_timeout = float(connect_timeout)

        encoding = _env("LLMBRIDGE_TOKEN_ENCODING")
        if encoding:
            self.token_encoding = encoding

    # ------------------------------------------------------------------
    # Validation and lookup
    # ------------------------------------------------------------------
    def validate(self) -> None:
        if self.compress_threshold < MIN_COMPRESS_THRESHOLD:
            raise ConfigurationError(
                f"compress_threshold must be at least {MIN_COMPRESS_THRESHOLD}, got {self.compress_threshold}."
            )
        seen = set()
        for client in self.clients:
            if client.identifier in seen:
                raise ConfigurationError(
                    f"Client '{client.identifier}' is declared twice; set a distinct 'name'."
                )
            seen.add(client.identifier)
            if client.descriptor.requires_models and not client.models:
                raise ConfigurationError(
                    f"Client '{client.identifier}' ({client.type}) requires an explicit 'models' list."
                )
        if self.model:
            self.resolve_model(self.model)

    def find_client(self, name: str) -> Optional[ProviderConfig]:
        for client in self.clients:
            if client.identifier == name:
                return client
        return None

    def resolve_model(self, model_id: str) -> Tuple[ProviderConfig, ModelSpec]:
        """Map ``client:model`` (or a bare client or model name) to its config entries."""

        if not self.clients:
            raise ConfigurationError("No clients are configured.")

        client_name, _, model_name = model_id.partition(":")
        client = self.find_client(client_name)
        if client is None:
            # A bare model name: search every client for it.
            for candidate in self.clients:
                spec = candidate.find_model(model_id)
                if spec is not None:
                    return candidate, spec
            raise ConfigurationError(f"Unknown client or model '{model_id}'.")

        if not model_name:
            models = client.available_models()
            if not models:
                raise ConfigurationError(f"Client '{client.identifier}' has no models to choose from.")
            return client, models[0]

        spec = client.find_model(model_name)
        if spec is not None:
            return client, spec
        if client.descriptor.requires_models:
            raise ConfigurationError(
                f"Model '{model_name}' is not declared for client '{client.identifier}'. "
                f"Declared models: {', '.join(m.name for m in client.models) or '<none>'}."
            )
        return client, ModelSpec(name=model_name)

    def default_model_id(self) -> str:
        if self.model:
            return self.model
        if not self.clients:
            raise ConfigurationError("No clients are configured.")
        client = self.clients[0]
        models = client.available_models()
        if not models:
            raise ConfigurationError(f"Client '{client.identifier}' has no models to choose from.")
        return f"{client.identifier}:{models[0].name}"
