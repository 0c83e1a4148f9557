"""Translate a :class:`ChatRequest` into the wire request of one dialect."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from .credentials import ResolvedConnection
from .llm import Attachment, ChatRequest, Message, ModelSpec, UnsupportedCapability
from .providers import AuthScheme, ImageEncoding, ProviderDescriptor, ProviderDialect, StreamFormat

CLAUDE_API_VERSION = "2023-06-01"
CLAUDE_DEFAULT_MAX_TOKENS = 4096

GEMINI_HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass
class WireRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    stream_format: StreamFormat = StreamFormat.JSON

    def content(self) -> bytes:
        return json.dumps(self.body, ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class _Context:
    request: ChatRequest
    model: ModelSpec
    descriptor: ProviderDescriptor
    connection: ResolvedConnection

    @property
    def stream(self) -> bool:
        return self.request.stream and self.descriptor.streaming


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def fill_template(template: str, values: Dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders present in *values*, leave others."""

    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def split_system(messages: Sequence[Message]) -> Tuple[str, List[Message]]:
    system_parts = [message.content for message in messages if message.role == "system" and message.content]
    rest = [message for message in messages if message.role != "system"]
    return "\n\n".join(system_parts), rest


def _sampling(request: ChatRequest, names: Tuple[str, str, str], max_tokens: Optional[int]) -> Dict[str, Any]:
    temperature_key, top_p_key, max_tokens_key = names
    params: Dict[str, Any] = {}
    if request.temperature is not None:
        params[temperature_key] = request.temperature
    if request.top_p is not None:
        params[top_p_key] = request.top_p
    if max_tokens is not None:
        params[max_tokens_key] = max_tokens
    return params


def check_capabilities(request: ChatRequest, descriptor: ProviderDescriptor, model: ModelSpec) -> None:
    if not request.has_attachments:
        return
    if not model.supports_vision:
        raise UnsupportedCapability(f"Model '{model.name}' does not support image attachments.")
    if descriptor.image_encoding is ImageEncoding.NONE:
        raise UnsupportedCapability(f"Client type '{descriptor.name}' cannot send image attachments.")
    if descriptor.image_encoding.inline_only:
        for message in request.messages:
            for attachment in message.attachments:
                if not attachment.is_inline:
                    raise UnsupportedCapability(
                        f"Client type '{descriptor.name}' only accepts inline (data URL) images, got {attachment.url[:60]!r}."
                    )


# ----------------------------------------------------------------------
# Body builders, one per dialect
# ----------------------------------------------------------------------
def _openai_content(message: Message) -> Any:
    if not message.attachments:
        return message.content
    parts: List[Dict[str, Any]] = [{"type": "text", "text": message.content}]
    for attachment in message.attachments:
        parts.append({"type": "image_url", "image_url": {"url": attachment.url}})
    return parts


def _build_openai(ctx: _Context) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": ctx.model.name,
        "messages": [{"role": m.role, "content": _openai_content(m)} for m in ctx.request.messages],
        "stream": ctx.stream,
    }
    body.update(_sampling(ctx.request, ("temperature", "top_p", "max_tokens"), ctx.request.max_output_tokens))
    if ctx.stream and ctx.descriptor.dialect is ProviderDialect.OPENAI:
        body["stream_options"] = {"include_usage": True}
    return body


def _claude_content(message: Message) -> Any:
    if not message.attachments:
        return message.content
    parts: List[Dict[str, Any]] = []
    for attachment in message.attachments:
        parts.append(
            {
                "type": "image",
                "source": {"type": "base64", "media_type": attachment.mime_type, "data": attachment.data},
            }
        )
    parts.append({"type": "text", "text": message.content})
    return parts


def _build_claude(ctx: _Context) -> Dict[str, Any]:
    system, rest = split_system(ctx.request.messages)
    max_tokens = ctx.request.max_output_tokens or ctx.model.max_output_tokens or CLAUDE_DEFAULT_MAX_TOKENS
    body: Dict[str, Any] = {
        "model": ctx.model.name,
        "messages": [{"role": m.role, "content": _claude_content(m)} for m in rest],
        "max_tokens": max_tokens,
        "stream": ctx.stream,
    }
    if system:
        body["system"] = system
    body.update(_sampling(ctx.request, ("temperature", "top_p", "max_tokens"), max_tokens))
    return body


def _gemini_parts(message: Message) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    if message.content:
        parts.append({"text": message.content})
    for attachment in message.attachments:
        parts.append({"inlineData": {"mimeType": attachment.mime_type, "data": attachment.data}})
    return parts


def _build_gemini(ctx: _Context) -> Dict[str, Any]:
    system, rest = split_system(ctx.request.messages)
    body: Dict[str, Any] = {
        "contents": [
            {"role": "model" if m.role == "assistant" else "user", "parts": _gemini_parts(m)} for m in rest
        ],
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    generation = _sampling(ctx.request, ("temperature", "topP", "maxOutputTokens"), ctx.request.max_output_tokens)
    if generation:
        body["generationConfig"] = generation
    threshold = ctx.connection.get("block_threshold")
    if threshold:
        body["safetySettings"] = [
            {"category": category, "threshold": threshold} for category in GEMINI_HARM_CATEGORIES
        ]
    return body


def _build_cohere(ctx: _Context) -> Dict[str, Any]:
    system, rest = split_system(ctx.request.messages)
    message = ""
    if rest and rest[-1].role == "user":
        message = rest[-1].content
        rest = rest[:-1]
    body: Dict[str, Any] = {"model": ctx.model.name, "message": message, "stream": ctx.stream}
    if rest:
        body["chat_history"] = [
            {"role": "CHATBOT" if m.role == "assistant" else "USER", "message": m.content} for m in rest
        ]
    if system:
        body["preamble"] = system
    body.update(_sampling(ctx.request, ("temperature", "p", "max_tokens"), ctx.request.max_output_tokens))
    return body


def _build_ollama(ctx: _Context) -> Dict[str, Any]:
    messages: List[Dict[str, Any]] = []
    for m in ctx.request.messages:
        entry: Dict[str, Any] = {"role": m.role, "content": m.content}
        if m.attachments:
            entry["images"] = [attachment.data for attachment in m.attachments]
        messages.append(entry)
    body: Dict[str, Any] = {"model": ctx.model.name, "messages": messages, "stream": ctx.stream}
    options = _sampling(ctx.request, ("temperature", "top_p", "num_predict"), ctx.request.max_output_tokens)
    if options:
        body["options"] = options
    return body


def _build_cloudflare(ctx: _Context) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "messages": [{"role": m.role, "content": m.content} for m in ctx.request.messages],
        "stream": ctx.stream,
    }
    body.update(_sampling(ctx.request, ("temperature", "top_p", "max_tokens"), ctx.request.max_output_tokens))
    return body


def render_transcript(messages: Sequence[Message]) -> str:
    lines = []
    for message in messages:
        speaker = "Assistant" if message.role == "assistant" else "User"
        lines.append(f"{speaker}: {message.content}")
    lines.append("Assistant:")
    return "\n\n".join(lines)


def _build_replicate(ctx: _Context) -> Dict[str, Any]:
    system, rest = split_system(ctx.request.messages)
    inputs: Dict[str, Any] = {"prompt": render_transcript(rest)}
    if system:
        inputs["system_prompt"] = system
    inputs.update(_sampling(ctx.request, ("temperature", "top_p", "max_new_tokens"), ctx.request.max_output_tokens))
    return {"input": inputs, "stream": False}


def _build_ernie(ctx: _Context) -> Dict[str, Any]:
    system, rest = split_system(ctx.request.messages)
    body: Dict[str, Any] = {
        "messages": [{"role": m.role, "content": m.content} for m in rest],
        "stream": ctx.stream,
    }
    if system:
        body["system"] = system
    body.update(
        _sampling(ctx.request, ("temperature", "top_p", "max_output_tokens"), ctx.request.max_output_tokens)
    )
    return body


def _qianwen_content(message: Message) -> Any:
    if not message.attachments:
        return message.content
    parts: List[Dict[str, Any]] = [{"image": attachment.url} for attachment in message.attachments]
    parts.append({"text": message.content})
    return parts


def _build_qianwen(ctx: _Context) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {"result_format": "message"}
    parameters.update(_sampling(ctx.request, ("temperature", "top_p", "max_tokens"), ctx.request.max_output_tokens))
    if ctx.stream:
        parameters["incremental_output"] = True
    return {
        "model": ctx.model.name,
        "input": {"messages": [{"role": m.role, "content": _qianwen_content(m)} for m in ctx.request.messages]},
        "parameters": parameters,
    }


def _build_bedrock(ctx: _Context) -> Dict[str, Any]:
    system, rest = split_system(ctx.request.messages)
    body: Dict[str, Any] = {
        "messages": [
            {"role": "assistant" if m.role == "assistant" else "user", "content": [{"text": m.content}]}
            for m in rest
        ],
    }
    if system:
        body["system"] = [{"text": system}]
    inference = _sampling(ctx.request, ("temperature", "topP", "maxTokens"), ctx.request.max_output_tokens)
    if inference:
        body["inferenceConfig"] = inference
    return body


BodyBuilder = Callable[[_Context], Dict[str, Any]]

BODY_BUILDERS: Dict[ProviderDialect, BodyBuilder] = {
    ProviderDialect.OPENAI: _build_openai,
    ProviderDialect.OPENAI_COMPATIBLE: _build_openai,
    ProviderDialect.AZURE_OPENAI: _build_openai,
    ProviderDialect.GEMINI: _build_gemini,
    ProviderDialect.VERTEXAI: _build_gemini,
    ProviderDialect.CLAUDE: _build_claude,
    ProviderDialect.COHERE: _build_cohere,
    ProviderDialect.OLLAMA: _build_ollama,
    ProviderDialect.CLOUDFLARE: _build_cloudflare,
    ProviderDialect.REPLICATE: _build_replicate,
    ProviderDialect.ERNIE: _build_ernie,
    ProviderDialect.QIANWEN: _build_qianwen,
    ProviderDialect.BEDROCK: _build_bedrock,
}


# ----------------------------------------------------------------------
# URL and header composition
# ----------------------------------------------------------------------
def _url_values(ctx: _Context) -> Dict[str, str]:
    values = dict(ctx.connection.values)
    dialect = ctx.descriptor.dialect
    values["model"] = quote(ctx.model.name, safe="") if dialect is ProviderDialect.BEDROCK else ctx.model.name
    values["action"] = ctx.descriptor.stream_action if ctx.stream else ctx.descriptor.complete_action
    values["generation"] = "multimodal-generation" if ctx.request.has_attachments else "text-generation"
    return values


def build_url(ctx: _Context, chat_endpoint: Optional[str]) -> str:
    values = _url_values(ctx)
    base = fill_template(ctx.connection.api_base, values).rstrip("/")
    path = chat_endpoint or ctx.descriptor.chat_path
    if not path.startswith("/"):
        path = "/" + path
    return base + fill_template(path, values)


def append_query(url: str, key: str, value: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{key}={quote(value, safe='')}"


def _static_auth(ctx: _Context, url: str, headers: Dict[str, str]) -> str:
    scheme = ctx.descriptor.auth
    api_key = ctx.connection.get("api_key")
    if scheme is AuthScheme.BEARER and api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    elif scheme is AuthScheme.API_KEY_HEADER and api_key:
        headers["api-key"] = api_key
    elif scheme is AuthScheme.X_API_KEY and api_key:
        headers["x-api-key"] = api_key
        headers["anthropic-version"] = CLAUDE_API_VERSION
    elif scheme is AuthScheme.QUERY_KEY and api_key:
        url = append_query(url, "key", api_key)
    elif scheme is AuthScheme.RAW_AUTHORIZATION:
        api_auth = ctx.connection.get("api_auth")
        if api_auth:
            headers["Authorization"] = api_auth
    organization = ctx.connection.get("organization_id")
    if organization:
        headers["OpenAI-Organization"] = organization
    return url


def translate(
    request: ChatRequest,
    descriptor: ProviderDescriptor,
    model: ModelSpec,
    connection: ResolvedConnection,
    *,
    chat_endpoint: Optional[str] = None,
) -> WireRequest:
    """Build the wire request. Performs no I/O.

    Request-signing schemes that need a network round trip (Vertex AI,
    Ernie) or the final body bytes (Bedrock) are applied afterwards by
    :mod:`llmbridge.auth`.
    """

    check_capabilities(request, descriptor, model)
    ctx = _Context(request=request, model=model, descriptor=descriptor, connection=connection)

    generated = BODY_BUILDERS[descriptor.dialect](ctx)
    body = dict(model.extra_fields)
    body.update(generated)

    headers = {"Content-Type": "application/json"}
    if descriptor.dialect is ProviderDialect.QIANWEN and ctx.stream:
        headers["X-DashScope-SSE"] = "enable"
    if descriptor.dialect is ProviderDialect.REPLICATE:
        headers["Prefer"] = "wait"

    url = _static_auth(ctx, build_url(ctx, chat_endpoint), headers)
    return WireRequest(
        method="POST",
        url=url,
        headers=headers,
        body=body,
        stream_format=descriptor.wire_format(request.stream),
    )


def attachment_from(value: str) -> Attachment:
    """Accept a URL, a ``data:`` URL or a local file path."""

    if value.startswith(("http://", "https://", "data:")):
        return Attachment(url=value)
    return Attachment.from_path(value)
