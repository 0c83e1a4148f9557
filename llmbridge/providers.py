"""Static catalogue describing how to talk to each provider dialect."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .llm import ModelSpec, UnsupportedProviderType


class ProviderDialect(str, Enum):
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai-compatible"
    GEMINI = "gemini"
    CLAUDE = "claude"
    COHERE = "cohere"
    OLLAMA = "ollama"
    AZURE_OPENAI = "azure-openai"
    VERTEXAI = "vertexai"
    BEDROCK = "bedrock"
    CLOUDFLARE = "cloudflare"
    REPLICATE = "replicate"
    ERNIE = "ernie"
    QIANWEN = "qianwen"


class AuthScheme(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    API_KEY_HEADER = "api-key-header"
    X_API_KEY = "x-api-key"
    QUERY_KEY = "query-key"
    RAW_AUTHORIZATION = "raw-authorization"
    AWS_SIGV4 = "aws-sigv4"
    GOOGLE_OAUTH = "google-oauth"
    BAIDU_ACCESS_TOKEN = "baidu-access-token"


class StreamFormat(str, Enum):
    SSE = "sse"
    NDJSON = "ndjson"
    JSON = "json"
    AWS_EVENT_STREAM = "aws-event-stream"


class ImageEncoding(str, Enum):
    NONE = "none"
    IMAGE_URL_PART = "image-url-part"
    CLAUDE_SOURCE = "claude-source"
    GEMINI_INLINE = "gemini-inline"
    OLLAMA_IMAGES = "ollama-images"
    DASHSCOPE_PARTS = "dashscope-parts"

    @property
    def inline_only(self) -> bool:
        return self in (ImageEncoding.CLAUDE_SOURCE, ImageEncoding.GEMINI_INLINE, ImageEncoding.OLLAMA_IMAGES)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable metadata for one dialect.

    ``chat_path`` may contain ``{model}``, ``{action}`` and credential
    placeholders (``{api_version}``, ``{account_id}``, ...); they are filled
    by the request translator once credentials are resolved.
    """

    dialect: ProviderDialect
    chat_path: str
    auth: AuthScheme
    stream_format: StreamFormat
    image_encoding: ImageEncoding = ImageEncoding.NONE
    required_fields: Tuple[str, ...] = ()
    optional_fields: Tuple[str, ...] = ()
    defaults: Mapping[str, str] = field(default_factory=dict)
    stream_action: str = ""
    complete_action: str = ""
    requires_models: bool = False
    streaming: bool = True
    default_models: Tuple[ModelSpec, ...] = ()

    @property
    def name(self) -> str:
        return self.dialect.value

    @property
    def credential_fields(self) -> Tuple[str, ...]:
        return self.required_fields + self.optional_fields

    def default_for(self, field_name: str) -> Optional[str]:
        return self.defaults.get(field_name)

    def wire_format(self, stream: bool) -> StreamFormat:
        if stream and self.streaming:
            return self.stream_format
        return StreamFormat.JSON


OPENAI_COMPATIBLE_PLATFORMS: Mapping[str, str] = MappingProxyType(
    {
        "anyscale": "https://api.endpoints.anyscale.com/v1",
        "deepinfra": "https://api.deepinfra.com/v1/openai",
        "fireworks": "https://api.fireworks.ai/inference/v1",
        "groq": "https://api.groq.com/openai/v1",
        "mistral": "https://api.mistral.ai/v1",
        "moonshot": "https://api.moonshot.cn/v1",
        "openrouter": "https://openrouter.ai/api/v1",
        "octoai": "https://text.octoai.run/v1",
        "perplexity": "https://api.perplexity.ai",
        "together": "https://api.together.xyz/v1",
    }
)


def _models(*entries: Tuple[str, Optional[int], Optional[int], bool]) -> Tuple[ModelSpec, ...]:
    return tuple(
        ModelSpec(name=name, max_input_tokens=max_in, max_output_tokens=max_out, supports_vision=vision)
        for name, max_in, max_out, vision in entries
    )


_DESCRIPTORS: Dict[ProviderDialect, ProviderDescriptor] = {
    ProviderDialect.OPENAI: ProviderDescriptor(
        dialect=ProviderDialect.OPENAI,
        chat_path="/chat/completions",
        auth=AuthScheme.BEARER,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.IMAGE_URL_PART,
        required_fields=("api_key", "api_base"),
        optional_fields=("organization_id",),
        defaults={"api_base": "https://api.openai.com/v1"},
        default_models=_models(
            ("gpt-4o", 128000, 4096, True),
            ("gpt-4o-mini", 128000, 16384, True),
            ("gpt-4-turbo", 128000, 4096, True),
            ("gpt-3.5-turbo", 16385, 4096, False),
        ),
    ),
    ProviderDialect.OPENAI_COMPATIBLE: ProviderDescriptor(
        dialect=ProviderDialect.OPENAI_COMPATIBLE,
        chat_path="/chat/completions",
        auth=AuthScheme.BEARER,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.IMAGE_URL_PART,
        required_fields=("api_base",),
        optional_fields=("api_key",),
        requires_models=True,
    ),
    ProviderDialect.GEMINI: ProviderDescriptor(
        dialect=ProviderDialect.GEMINI,
        chat_path="/models/{model}:{action}",
        auth=AuthScheme.QUERY_KEY,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.GEMINI_INLINE,
        required_fields=("api_key", "api_base"),
        optional_fields=("block_threshold",),
        defaults={"api_base": "https://generativelanguage.googleapis.com/v1beta"},
        stream_action="streamGenerateContent?alt=sse",
        complete_action="generateContent",
        default_models=_models(
            ("gemini-1.5-pro-latest", 1048576, 8192, True),
            ("gemini-1.5-flash-latest", 1048576, 8192, True),
            ("gemini-1.0-pro-latest", 30720, 2048, False),
        ),
    ),
    ProviderDialect.CLAUDE: ProviderDescriptor(
        dialect=ProviderDialect.CLAUDE,
        chat_path="/messages",
        auth=AuthScheme.X_API_KEY,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.CLAUDE_SOURCE,
        required_fields=("api_key", "api_base"),
        defaults={"api_base": "https://api.anthropic.com/v1"},
        default_models=_models(
            ("claude-3-5-sonnet-20240620", 200000, 4096, True),
            ("claude-3-opus-20240229", 200000, 4096, True),
            ("claude-3-haiku-20240307", 200000, 4096, True),
        ),
    ),
    ProviderDialect.COHERE: ProviderDescriptor(
        dialect=ProviderDialect.COHERE,
        chat_path="/chat",
        auth=AuthScheme.BEARER,
        stream_format=StreamFormat.NDJSON,
        required_fields=("api_key", "api_base"),
        defaults={"api_base": "https://api.cohere.ai/v1"},
        default_models=_models(
            ("command-r", 128000, 4000, False),
            ("command-r-plus", 128000, 4000, False),
        ),
    ),
    ProviderDialect.OLLAMA: ProviderDescriptor(
        dialect=ProviderDialect.OLLAMA,
        chat_path="/api/chat",
        auth=AuthScheme.RAW_AUTHORIZATION,
        stream_format=StreamFormat.NDJSON,
        image_encoding=ImageEncoding.OLLAMA_IMAGES,
        required_fields=("api_base",),
        optional_fields=("api_auth",),
        defaults={"api_base": "http://localhost:11434"},
        requires_models=True,
    ),
    ProviderDialect.AZURE_OPENAI: ProviderDescriptor(
        dialect=ProviderDialect.AZURE_OPENAI,
        chat_path="/openai/deployments/{model}/chat/completions?api-version={api_version}",
        auth=AuthScheme.API_KEY_HEADER,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.IMAGE_URL_PART,
        required_fields=("api_base", "api_key"),
        optional_fields=("api_version",),
        defaults={"api_version": "2024-02-01"},
        requires_models=True,
    ),
    ProviderDialect.VERTEXAI: ProviderDescriptor(
        dialect=ProviderDialect.VERTEXAI,
        chat_path="/v1/projects/{project_id}/locations/{location}/publishers/google/models/{model}:{action}",
        auth=AuthScheme.GOOGLE_OAUTH,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.GEMINI_INLINE,
        required_fields=("project_id", "location", "api_base"),
        optional_fields=("adc_file", "block_threshold"),
        defaults={"api_base": "https://{location}-aiplatform.googleapis.com"},
        stream_action="streamGenerateContent?alt=sse",
        complete_action="generateContent",
        default_models=_models(
            ("gemini-1.5-pro-001", 1000000, 8192, True),
            ("gemini-1.5-flash-001", 1000000, 8192, True),
        ),
    ),
    ProviderDialect.BEDROCK: ProviderDescriptor(
        dialect=ProviderDialect.BEDROCK,
        chat_path="/model/{model}/{action}",
        auth=AuthScheme.AWS_SIGV4,
        stream_format=StreamFormat.AWS_EVENT_STREAM,
        required_fields=("access_key_id", "secret_access_key", "region", "api_base"),
        optional_fields=("session_token",),
        defaults={"api_base": "https://bedrock-runtime.{region}.amazonaws.com"},
        stream_action="converse-stream",
        complete_action="converse",
        default_models=_models(
            ("anthropic.claude-3-sonnet-20240229-v1:0", 200000, 4096, False),
            ("anthropic.claude-3-haiku-20240307-v1:0", 200000, 4096, False),
            ("meta.llama3-70b-instruct-v1:0", 8192, 2048, False),
            ("mistral.mistral-large-2402-v1:0", 32000, 8192, False),
        ),
    ),
    ProviderDialect.CLOUDFLARE: ProviderDescriptor(
        dialect=ProviderDialect.CLOUDFLARE,
        chat_path="/accounts/{account_id}/ai/run/{model}",
        auth=AuthScheme.BEARER,
        stream_format=StreamFormat.SSE,
        required_fields=("account_id", "api_key", "api_base"),
        defaults={"api_base": "https://api.cloudflare.com/client/v4"},
        default_models=_models(
            ("@cf/meta/llama-3-8b-instruct", 6144, 2048, False),
            ("@cf/mistral/mistral-7b-instruct-v0.2-lora", 6144, 2048, False),
        ),
    ),
    ProviderDialect.REPLICATE: ProviderDescriptor(
        dialect=ProviderDialect.REPLICATE,
        chat_path="/v1/models/{model}/predictions",
        auth=AuthScheme.BEARER,
        stream_format=StreamFormat.JSON,
        required_fields=("api_key", "api_base"),
        defaults={"api_base": "https://api.replicate.com"},
        streaming=False,
        default_models=_models(
            ("meta/meta-llama-3-70b-instruct", 8192, 4096, False),
            ("meta/meta-llama-3-8b-instruct", 8192, 4096, False),
            ("mistralai/mixtral-8x7b-instruct-v0.1", 32000, 1024, False),
        ),
    ),
    ProviderDialect.ERNIE: ProviderDescriptor(
        dialect=ProviderDialect.ERNIE,
        chat_path="/rpc/2.0/ai_custom/v1/wenxinworkshop/chat/{model}",
        auth=AuthScheme.BAIDU_ACCESS_TOKEN,
        stream_format=StreamFormat.SSE,
        required_fields=("api_key", "secret_key", "api_base"),
        defaults={"api_base": "https://aip.baidubce.com"},
        default_models=_models(
            ("completions_pro", 5120, 2048, False),
            ("completions", 5120, 2048, False),
            ("ernie-speed-128k", 124000, 4096, False),
        ),
    ),
    ProviderDialect.QIANWEN: ProviderDescriptor(
        dialect=ProviderDialect.QIANWEN,
        chat_path="/api/v1/services/aigc/{generation}/generation",
        auth=AuthScheme.BEARER,
        stream_format=StreamFormat.SSE,
        image_encoding=ImageEncoding.DASHSCOPE_PARTS,
        required_fields=("api_key", "api_base"),
        defaults={"api_base": "https://dashscope.aliyuncs.com"},
        default_models=_models(
            ("qwen-turbo", 6000, 1500, False),
            ("qwen-plus", 30000, 2000, False),
            ("qwen-max", 6000, 2000, False),
            ("qwen-vl-plus", 6000, 1500, True),
        ),
    ),
}

DESCRIPTORS: Mapping[ProviderDialect, ProviderDescriptor] = MappingProxyType(_DESCRIPTORS)


def parse_dialect(provider_type: str) -> ProviderDialect:
    try:
        return ProviderDialect((provider_type or "").strip().lower())
    except ValueError:
        raise UnsupportedProviderType(provider_type) from None


def describe(provider_type) -> ProviderDescriptor:  # type: ignore[no-untyped-def]
    """Return the descriptor for *provider_type* (a dialect or its string name)."""

    dialect = provider_type if isinstance(provider_type, ProviderDialect) else parse_dialect(provider_type)
    return DESCRIPTORS[dialect]


def supported_types() -> Tuple[str, ...]:
    return tuple(dialect.value for dialect in ProviderDialect)
