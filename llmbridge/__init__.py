"""High-level public API for the provider-agnostic LLM gateway."""

from .auth import RequestSigner, TokenCache, sign_aws_v4
from .client import EventStream, Gateway
from .config import GatewayConfig, ProviderConfig
from .credentials import CredentialResolver, ResolvedConnection, env_name
from .decoding import FrameInterpreter, StreamDecoder, create_decoder, extract_error_message
from .llm import (
    Attachment,
    ChatRequest,
    Completion,
    ConfigurationError,
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    GatewayError,
    InputTooLong,
    Message,
    MissingCredential,
    ModelInfo,
    ModelSpec,
    ParseFailure,
    ProviderError,
    RequestTimeout,
    ResponseEvent,
    SessionBusy,
    ToolCall,
    TransportFailure,
    UnsupportedCapability,
    UnsupportedProviderType,
    Usage,
)
from .providers import (
    AuthScheme,
    ImageEncoding,
    ProviderDescriptor,
    ProviderDialect,
    StreamFormat,
    describe,
    supported_types,
)
from .serve import ChatCompletionServer
from .session import ContextManager, Session, SessionState, SessionStore
from .tokenization import TokenCounter
from .transport import CancelToken, HttpTransport
from .translate import WireRequest, translate

__all__ = [
    "RequestSigner",
    "TokenCache",
    "sign_aws_v4",
    "EventStream",
    "Gateway",
    "GatewayConfig",
    "ProviderConfig",
    "CredentialResolver",
    "ResolvedConnection",
    "env_name",
    "FrameInterpreter",
    "StreamDecoder",
    "create_decoder",
    "extract_error_message",
    "Attachment",
    "ChatRequest",
    "Completion",
    "ConfigurationError",
    "ContentDelta",
    "Done",
    "ErrorEvent",
    "ErrorKind",
    "GatewayError",
    "InputTooLong",
    "Message",
    "MissingCredential",
    "ModelInfo",
    "ModelSpec",
    "ParseFailure",
    "ProviderError",
    "RequestTimeout",
    "ResponseEvent",
    "SessionBusy",
    "ToolCall",
    "TransportFailure",
    "UnsupportedCapability",
    "UnsupportedProviderType",
    "Usage",
    "AuthScheme",
    "ImageEncoding",
    "ProviderDescriptor",
    "ProviderDialect",
    "StreamFormat",
    "describe",
    "supported_types",
    "ChatCompletionServer",
    "ContextManager",
    "Session",
    "SessionState",
    "SessionStore",
    "TokenCounter",
    "CancelToken",
    "HttpTransport",
    "WireRequest",
    "translate",
]
