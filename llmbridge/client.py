"""Gateway facade: one entry point for every configured provider."""

from __future__ import annotations

import dataclasses
import threading
import time
import weakref
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import requests
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI, OpenAIError

from .auth import RequestSigner
from .config import GatewayConfig, ProviderConfig
from .credentials import CredentialResolver, EnvironmentProvider, ResolvedConnection
from .decoding import create_decoder
from .llm import (
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
    ModelInfo,
    ModelSpec,
    ParseFailure,
    ProviderError,
    RequestTimeout,
    ResponseEvent,
    TransportFailure,
    UnsupportedCapability,
    Usage,
)
from .logging import get_logger
from .providers import ProviderDescriptor, ProviderDialect
from .session import ContextManager, Session
from .tokenization import TokenCounter
from .transport import CancelToken, HttpTransport, ResponseStream, Transport
from .translate import WireRequest, translate

LOGGER = get_logger(__name__)

DEFAULT_MODEL_ALIAS = "default"

TransportFactory = Callable[..., Transport]


def error_event_for(exc: GatewayError) -> ErrorEvent:
    if isinstance(exc, RequestTimeout):
        return ErrorEvent(kind=ErrorKind.TIMEOUT, message=str(exc))
    if isinstance(exc, TransportFailure):
        return ErrorEvent(kind=ErrorKind.TRANSPORT_FAILURE, message=str(exc))
    if isinstance(exc, ParseFailure):
        return ErrorEvent(kind=ErrorKind.PARSE_FAILURE, message=str(exc))
    status = exc.status if isinstance(exc, ProviderError) else None
    return ErrorEvent(kind=ErrorKind.PROVIDER_ERROR, message=str(exc), status=status)


def raise_for_error(event: ErrorEvent) -> None:
    """Turn an :class:`ErrorEvent` back into the matching exception."""

    if event.kind is ErrorKind.TIMEOUT:
        raise RequestTimeout(event.message)
    if event.kind is ErrorKind.TRANSPORT_FAILURE:
        raise TransportFailure(event.message)
    if event.kind is ErrorKind.PARSE_FAILURE:
        raise ParseFailure(event.message)
    raise ProviderError(event.message, status=event.status)


class _SessionGuard:
    def __init__(self, session: Optional[Session]) -> None:
        self.session = session
        self._released = session is None
        self._lock = threading.Lock()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        assert self.session is not None
        self.session.release()


class EventStream:
    """Lazy iterator over the events of one exchange.

    Iterate it to completion, or call :meth:`close` (or use it as a context
    manager) to abandon it; either way the session is freed.
    """

    def __init__(self, events: Iterator[ResponseEvent], cancel: CancelToken, guard: _SessionGuard) -> None:
        self._events = events
        self._cancel = cancel
        # Frees the session even if the stream is dropped without being iterated.
        self._release = weakref.finalize(self, guard.release)

    def __iter__(self) -> "EventStream":
        return self

    def __next__(self) -> ResponseEvent:
        return next(self._events)

    def cancel(self) -> None:
        self._cancel.cancel()

    def close(self) -> None:
        try:
            close = getattr(self._events, "close", None)
            if close is not None:
                close()
        finally:
            self._release()

    def __enter__(self) -> "EventStream":
        return self

    def __exit__(self, *exc_info) -> None:  # type: ignore[no-untyped-def]
        self.close()


class Gateway:
    """Send chat requests to any configured client and stream normalised events."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        environment: Optional[EnvironmentProvider] = None,
        transport_factory: Optional[TransportFactory] = None,
        signer: Optional[RequestSigner] = None,
        counter: Optional[TokenCounter] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.resolver = CredentialResolver(environment)
        self.counter = counter or TokenCounter(encoding_name=config.token_encoding)
        self.context = ContextManager.from_config(config, counter=self.counter)
        self.signer = signer or RequestSigner()
        self._transport_factory = transport_factory or HttpTransport
        self._transports: Dict[Tuple[str, Optional[str], Optional[float]], Transport] = {}
        self._transports_lock = threading.Lock()
        self._clock = clock

    # ------------------------------------------------------------------
    # Model resolution
    # ------------------------------------------------------------------
    def resolve_model(self, model_id: Optional[str] = None) -> Tuple[ProviderConfig, ModelSpec]:
        if not model_id or model_id == DEFAULT_MODEL_ALIAS:
            model_id = self.config.default_model_id()
        return self.config.resolve_model(model_id)

    def list_models(self) -> List[ModelInfo]:
        models: List[ModelInfo] = []
        for client in self.config.clients:
            models.extend(ModelInfo(name=spec.name, client=client.identifier) for spec in client.available_models())
        return models

    def fetch_remote_models(self, client_name: str) -> List[ModelInfo]:
        """Ask the provider which models it currently serves."""

        provider = self.config.find_client(client_name)
        if provider is None:
            raise ConfigurationError(f"Unknown client '{client_name}'.")
        connection = self.resolver.resolve_connection(provider)
        dialect = provider.descriptor.dialect
        if dialect is ProviderDialect.OLLAMA:
            return self._fetch_ollama_models(provider, connection)
        if dialect in (ProviderDialect.OPENAI, ProviderDialect.OPENAI_COMPATIBLE):
            return self._fetch_openai_models(provider, connection)
        raise UnsupportedCapability(f"Listing remote models is not supported for '{provider.type}' clients.")

    def _fetch_openai_models(self, provider: ProviderConfig, connection: ResolvedConnection) -> List[ModelInfo]:
        client = OpenAI(
            api_key=connection.get("api_key") or "not-needed",
            base_url=connection.api_base,
            organization=connection.get("organization_id"),
            timeout=self.config.connect_timeout + 20.0,
        )
        try:
            response = client.models.list()
        except APITimeoutError as exc:
            raise RequestTimeout(f"Timed out listing models for {provider.identifier}.") from exc
        except APIConnectionError as exc:
            raise TransportFailure(f"Unable to reach {connection.api_base}: {exc}") from exc
        except APIStatusError as exc:
            raise ProviderError(
                f"Failed to list models for {provider.identifier}: {exc}",
                status=exc.status_code,
                body=exc.response.text,
            ) from exc
        except OpenAIError as exc:
            raise ProviderError(f"Failed to list models for {provider.identifier}: {exc}") from exc

        data = getattr(response, "data", [])
        return [ModelInfo(name=item.id, client=provider.identifier) for item in data if getattr(item, "id", None)]

    def _fetch_ollama_models(self, provider: ProviderConfig, connection: ResolvedConnection) -> List[ModelInfo]:
        transport = self._transport_for(connection)
        http = transport.session or requests.Session()
        url = f"{connection.api_base.rstrip('/')}/api/tags"
        headers = {"Authorization": connection.values["api_auth"]} if connection.get("api_auth") else {}
        try:
            response = http.get(url, headers=headers, timeout=connection.connect_timeout or self.config.connect_timeout)
        except requests.Timeout as exc:
            raise RequestTimeout(f"Timed out listing models at {url}") from exc
        except requests.RequestException as exc:
            raise TransportFailure(f"Unable to reach Ollama at {connection.api_base}") from exc
        if response.status_code >= 400:
            raise ProviderError(
                f"Unexpected Ollama response ({response.status_code}): {response.text}",
                status=response.status_code,
                body=response.text,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseFailure(f"Ollama returned non-JSON content from {url}") from exc
        return [
            ModelInfo(name=model["name"], client=provider.identifier)
            for model in payload.get("models", [])
            if model.get("name")
        ]

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------
    def _transport_for(self, connection: ResolvedConnection) -> Transport:
        connect_timeout = connection.connect_timeout or self.config.connect_timeout
        key = (connection.client, connection.proxy, connect_timeout)
        with self._transports_lock:
            transport = self._transports.get(key)
            if transport is None:
                transport = self._transport_factory(
                    proxy=connection.proxy,
                    connect_timeout=connect_timeout,
                    read_timeout=self.config.request_timeout,
                )
                self._transports[key] = transport
            return transport

    def _with_defaults(self, request: ChatRequest) -> ChatRequest:
        changes = {}
        if request.temperature is None and self.config.temperature is not None:
            changes["temperature"] = self.config.temperature
        if request.top_p is None and self.config.top_p is not None:
            changes["top_p"] = self.config.top_p
        return dataclasses.replace(request, **changes) if changes else request

    def _summarizer(self, model_id: str) -> Callable[[List[Message]], str]:
        def summarize(messages: List[Message]) -> str:
            completion = self.complete(ChatRequest(messages=tuple(messages), model=model_id, stream=False))
            if completion.error is not None:
                raise_for_error(completion.error)
            return completion.text

        return summarize

    def check_input_size(self, messages: Sequence[Message], model: ModelSpec) -> int:
        estimate = self.counter.count_messages(messages)
        if model.max_input_tokens is not None and estimate > model.max_input_tokens:
            raise InputTooLong(
                f"Estimated input of {estimate} tokens exceeds the {model.max_input_tokens} token limit "
                f"of model '{model.name}'."
            )
        return estimate

    def send(
        self,
        request: ChatRequest,
        session: Optional[Session] = None,
        cancel: Optional[CancelToken] = None,
    ) -> EventStream:
        """Start one exchange and return its event stream.

        Configuration problems (unknown model, missing credential,
        unsupported attachment, oversized input) and :class:`SessionBusy`
        are raised here, before any network traffic. Everything that goes
        wrong afterwards is reported in-stream as an ``ErrorEvent``.
        """

        provider, model = self.resolve_model(request.model)
        descriptor = provider.descriptor
        model_id = f"{provider.identifier}:{model.name}"
        request = self._with_defaults(request)

        if session is not None:
            session.acquire()
        guard = _SessionGuard(session)
        try:
            if session is not None:
                self.context.maybe_compress(session, model, self._summarizer(model_id))
                outgoing = request.with_messages(list(session.messages) + list(request.messages))
            else:
                outgoing = request
            estimate = self.check_input_size(outgoing.messages, model)
            connection = self.resolver.resolve_connection(provider, descriptor)
            wire = translate(outgoing, descriptor, model, connection, chat_endpoint=provider.chat_endpoint)
        except BaseException:
            guard.release()
            raise

        LOGGER.info(
            "Sending %s message(s) to %s (~%s tokens, stream=%s).",
            len(outgoing.messages),
            model_id,
            estimate,
            outgoing.stream,
        )
        cancel = cancel or CancelToken()
        events = self._exchange(wire, descriptor, connection, outgoing, request.messages, session, guard, cancel)
        return EventStream(events, cancel, guard)

    def _exchange(
        self,
        wire: WireRequest,
        descriptor: ProviderDescriptor,
        connection: ResolvedConnection,
        outgoing: ChatRequest,
        sent: Sequence[Message],
        session: Optional[Session],
        guard: _SessionGuard,
        cancel: CancelToken,
    ) -> Iterator[ResponseEvent]:
        deadline = None
        if self.config.request_timeout:
            deadline = self._clock() + self.config.request_timeout
        response: Optional[ResponseStream] = None
        try:
            if cancel.cancelled:
                guard.release()
                yield Done(cancelled=True, finish_reason="cancelled")
                return
            transport = self._transport_for(connection)
            try:
                self.signer.sign(wire, descriptor, connection, transport.session)
                response = transport.open(wire)
            except GatewayError as exc:
                LOGGER.warning("Request to %s failed: %s", connection.client, exc)
                guard.release()
                yield error_event_for(exc)
                yield Done(finish_reason="error")
                return
            cancel.on_cancel(response.close)

            decoder = create_decoder(
                descriptor,
                stream=outgoing.stream,
                cancelled=lambda: cancel.cancelled,
                deadline=deadline,
                clock=self._clock,
            )
            parts: List[str] = []
            usage: Optional[Usage] = None
            failed = False
            for event in decoder.decode(response.chunks(), content_type=response.content_type):
                if isinstance(event, ContentDelta):
                    parts.append(event.text)
                elif isinstance(event, Usage):
                    usage = event
                elif isinstance(event, ErrorEvent):
                    failed = True
                elif isinstance(event, Done):
                    if session is not None and not failed and not event.cancelled:
                        self.context.record_exchange(session, sent, "".join(parts), usage)
                    guard.release()
                yield event
        finally:
            if response is not None:
                response.close()
            guard.release()

    def complete(
        self,
        request: ChatRequest,
        session: Optional[Session] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Completion:
        with self.send(request, session=session, cancel=cancel) as events:
            return Completion.collect(events)

    def close(self) -> None:
        with self._transports_lock:
            transports = list(self._transports.values())
            self._transports.clear()
        for transport in transports:
            close = getattr(transport, "close", None)
            if close is not None:
                close()
