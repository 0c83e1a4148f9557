"""Shared request/response models and the error taxonomy for chat providers."""

from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------
class GatewayError(RuntimeError):
    """Base exception raised for gateway and provider errors."""


class ConfigurationError(GatewayError):
    """Raised when the configuration cannot describe a valid exchange."""


class MissingCredential(ConfigurationError):
    """Raised when a required credential field cannot be resolved."""

    def __init__(self, provider: str, field_name: str) -> None:
        self.provider = provider
        self.field = field_name
        env_name = f"{provider}_{field_name}".upper().replace("-", "_")
        super().__init__(
            f"Missing '{field_name}' for client '{provider}'. "
            f"Set it in the config file or export {env_name}."
        )


class UnsupportedProviderType(ConfigurationError):
    """Raised when a client ``type`` does not name a known dialect."""

    def __init__(self, provider_type: str) -> None:
        self.provider_type = provider_type
        super().__init__(f"Unsupported client type '{provider_type}'.")


class UnsupportedCapability(ConfigurationError):
    """Raised when a request needs a capability the model does not offer."""


class InputTooLong(ConfigurationError):
    """Raised when the estimated prompt exceeds the model's input limit."""


class SessionBusy(GatewayError):
    """Raised when a session already has an exchange in flight."""


class ParseFailure(GatewayError):
    """Raised by framers when a wire frame cannot be decoded."""


class RequestTimeout(GatewayError):
    """Raised when the transport or the overall exchange runs out of time."""


class TransportFailure(GatewayError):
    """Raised when the provider cannot be reached."""


class ProviderError(GatewayError):
    """Raised when the provider answers with a well-formed error payload."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


# ----------------------------------------------------------------------
# Request model
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Attachment:
    """An image attached to a message, referenced by URL or ``data:`` URL."""

    url: str

    @property
    def is_inline(self) -> bool:
        return self.url.startswith("data:")

    @property
    def mime_type(self) -> str:
        if self.is_inline:
            header = self.url[5:].split(",", 1)[0]
            return header.split(";", 1)[0] or "application/octet-stream"
        guessed, _ = mimetypes.guess_type(self.url)
        return guessed or "image/png"

    @property
    def data(self) -> str:
        """Base64 payload of an inline attachment."""

        if not self.is_inline:
            raise ValueError("Remote attachments do not carry inline data.")
        return self.url.split(",", 1)[1] if "," in self.url else ""

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Attachment":
        file_path = Path(path).expanduser()
        mime, _ = mimetypes.guess_type(file_path.name)
        encoded = base64.b64encode(file_path.read_bytes()).decode("ascii")
        return cls(url=f"data:{mime or 'image/png'};base64,{encoded}")


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    attachments: Tuple[Attachment, ...] = ()

    def to_json(self) -> dict:
        payload = {"role": self.role, "content": self.content}
        if self.attachments:
            payload["attachments"] = [item.url for item in self.attachments]
        return payload

    @classmethod
    def from_json(cls, payload: dict) -> "Message":
        attachments = tuple(Attachment(url=str(url)) for url in payload.get("attachments") or [])
        return cls(
            role=str(payload.get("role", "user")),
            content=str(payload.get("content", "")),
            attachments=attachments,
        )


@dataclass(frozen=True)
class ChatRequest:
    """Provider-agnostic chat request. Immutable once dispatched."""

    messages: Tuple[Message, ...]
    model: str
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stream: bool = True
    max_output_tokens: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))

    @property
    def has_attachments(self) -> bool:
        return any(message.attachments for message in self.messages)

    def with_messages(self, messages: Sequence[Message]) -> "ChatRequest":
        return ChatRequest(
            messages=tuple(messages),
            model=self.model,
            temperature=self.temperature,
            top_p=self.top_p,
            stream=self.stream,
            max_output_tokens=self.max_output_tokens,
        )


# ----------------------------------------------------------------------
# Response events
# ----------------------------------------------------------------------
class ErrorKind(str, Enum):
    PARSE_FAILURE = "parse_failure"
    TIMEOUT = "timeout"
    TRANSPORT_FAILURE = "transport_failure"
    PROVIDER_ERROR = "provider_error"


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict = field(default_factory=dict)
    id: Optional[str] = None


@dataclass(frozen=True)
class Usage:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    message: str
    status: Optional[int] = None


@dataclass(frozen=True)
class Done:
    cancelled: bool = False
    finish_reason: Optional[str] = None


ResponseEvent = Union[ContentDelta, ToolCall, Usage, ErrorEvent, Done]


@dataclass
class Completion:
    """A fully collected response stream."""

    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    error: Optional[ErrorEvent] = None
    cancelled: bool = False
    finish_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @classmethod
    def collect(cls, events) -> "Completion":  # type: ignore[no-untyped-def]
        completion = cls()
        parts: List[str] = []
        for event in events:
            if isinstance(event, ContentDelta):
                parts.append(event.text)
            elif isinstance(event, ToolCall):
                completion.tool_calls.append(event)
            elif isinstance(event, Usage):
                completion.usage = event
            elif isinstance(event, ErrorEvent):
                completion.error = event
            elif isinstance(event, Done):
                completion.cancelled = event.cancelled
                completion.finish_reason = event.finish_reason
        completion.text = "".join(parts)
        return completion


@dataclass
class ModelInfo:
    """Basic metadata describing an available model."""

    name: str
    client: str = ""

    @property
    def id(self) -> str:
        return f"{self.client}:{self.name}" if self.client else self.name


@dataclass(frozen=True)
class ModelSpec:
    """Static limits and capabilities of one model exposed by a client."""

    name: str
    max_input_tokens: Optional[int] = None
    max_output_tokens: Optional[int] = None
    supports_vision: bool = False
    extra_fields: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_input_tokens is not None and self.max_input_tokens <= 0:
            raise ConfigurationError(
                f"Model '{self.name}' declares max_input_tokens={self.max_input_tokens}; it must be positive."
            )

    @classmethod
    def from_mapping(cls, payload: dict) -> "ModelSpec":
        if "name" not in payload:
            raise ConfigurationError(f"Model entry is missing 'name': {payload!r}")
        return cls(
            name=str(payload["name"]),
            max_input_tokens=_optional_int(payload.get("max_input_tokens")),
            max_output_tokens=_optional_int(payload.get("max_output_tokens")),
            supports_vision=bool(payload.get("supports_vision", False)),
            extra_fields=dict(payload.get("extra_fields") or {}),
        )


def _optional_int(value) -> Optional[int]:  # type: ignore[no-untyped-def]
    if value is None:
        return None
    return int(value)
