"""Resolve credentials and connection settings for a configured client.

Lookups happen on every call so rotated secrets are picked up without a
restart. The environment is passed in as a plain mapping; tests hand in a
dictionary instead of the process environment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from requests.utils import should_bypass_proxies

from .config import ProviderConfig
from .llm import ConfigurationError, MissingCredential
from .logging import get_logger
from .providers import OPENAI_COMPATIBLE_PLATFORMS, ProviderDescriptor, ProviderDialect

LOGGER = get_logger(__name__)

EnvironmentProvider = Mapping[str, str]

GENERIC_PROXY_VARIABLES = ("HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy")

_NON_IDENTIFIER = re.compile(r"[^A-Za-z0-9]+")


def env_name(identifier: str, field_name: str) -> str:
    """``localai`` + ``api_base`` -> ``LOCALAI_API_BASE``."""

    return _NON_IDENTIFIER.sub("_", f"{identifier}_{field_name}").upper()


@dataclass(frozen=True)
class ResolvedConnection:
    """Credential resolution result for one exchange. Never cached."""

    client: str
    values: Dict[str, str] = field(default_factory=dict)
    proxy: Optional[str] = None
    connect_timeout: Optional[float] = None

    @property
    def api_base(self) -> str:
        return self.values.get("api_base", "")

    def get(self, field_name: str) -> Optional[str]:
        return self.values.get(field_name)

    def __repr__(self) -> str:
        masked = {key: mask_secret(value) if _is_secret(key) else value for key, value in self.values.items()}
        return f"ResolvedConnection(client={self.client!r}, values={masked!r}, proxy={self.proxy!r})"


def _is_secret(field_name: str) -> bool:
    return field_name in {"api_key", "secret_key", "secret_access_key", "api_auth", "session_token"}


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


class CredentialResolver:
    def __init__(self, environment: Optional[EnvironmentProvider] = None) -> None:
        self._environment = environment

    @property
    def environment(self) -> EnvironmentProvider:
        return os.environ if self._environment is None else self._environment

    def _from_env(self, key: str) -> Optional[str]:
        value = self.environment.get(key)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def resolve_optional(self, provider: ProviderConfig, field_name: str) -> Optional[str]:
        value = self._from_env(env_name(provider.identifier, field_name))
        if value is not None:
            return value
        value = provider.value(field_name)
        if value is not None:
            return value
        return self._default(provider, field_name)

    def resolve(self, provider: ProviderConfig, field_name: str) -> str:
        value = self.resolve_optional(provider, field_name)
        if value is None:
            raise MissingCredential(provider.identifier, field_name)
        return value

    def _default(self, provider: ProviderConfig, field_name: str) -> Optional[str]:
        descriptor = provider.descriptor
        if (
            field_name == "api_base"
            and descriptor.dialect is ProviderDialect.OPENAI_COMPATIBLE
            and provider.name
        ):
            platform = OPENAI_COMPATIBLE_PLATFORMS.get(provider.name.lower())
            if platform:
                return platform
        return descriptor.default_for(field_name)

    def resolve_proxy(self, provider: ProviderConfig) -> Optional[str]:
        proxy = self.resolve_optional(provider, "proxy")
        if proxy:
            return proxy
        for key in GENERIC_PROXY_VARIABLES:
            value = self._from_env(key)
            if value:
                return None if self._bypasses_proxy(provider) else value
        return None

    def _bypasses_proxy(self, provider: ProviderConfig) -> bool:
        no_proxy = self._from_env("NO_PROXY") or self._from_env("no_proxy")
        api_base = self.resolve_optional(provider, "api_base")
        if not no_proxy or not api_base:
            return False
        return bool(should_bypass_proxies(api_base, no_proxy=no_proxy))

    def resolve_connect_timeout(self, provider: ProviderConfig) -> Optional[float]:
        raw = self.resolve_optional(provider, "connect_timeout")
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Invalid connect_timeout {raw!r} for client '{provider.identifier}'; expected seconds."
            ) from exc

    def resolve_connection(
        self, provider: ProviderConfig, descriptor: Optional[ProviderDescriptor] = None
    ) -> ResolvedConnection:
        descriptor = descriptor or provider.descriptor
        values: Dict[str, str] = {}
        for field_name in descriptor.required_fields:
            values[field_name] = self.resolve(provider, field_name)
        for field_name in descriptor.optional_fields:
            value = self.resolve_optional(provider, field_name)
            if value is not None:
                values[field_name] = value
        connection = ResolvedConnection(
            client=provider.identifier,
            values=values,
            proxy=self.resolve_proxy(provider),
            connect_timeout=self.resolve_connect_timeout(provider),
        )
        LOGGER.debug("Resolved connection for %s: %r", provider.identifier, connection)
        return connection
