from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import pytest

from llmbridge.client import Gateway
from llmbridge.config import GatewayConfig
from llmbridge.llm import TransportFailure
from llmbridge.translate import WireRequest


def sse(*payloads: Any, done: bool = True) -> bytes:
    """Encode payloads as ``data:`` frames, optionally closed by ``[DONE]``."""

    frames = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        frames.append(f"data: {data}\n\n")
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def ndjson(*payloads: Dict[str, Any]) -> bytes:
    return "".join(json.dumps(payload) + "\n" for payload in payloads).encode("utf-8")


def openai_chunks(*texts: str, usage: Optional[Dict[str, int]] = None) -> bytes:
    payloads: List[Dict[str, Any]] = [{"choices": [{"index": 0, "delta": {"content": text}}]} for text in texts]
    payloads.append({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})
    if usage is not None:
        payloads.append({"choices": [], "usage": usage})
    return sse(*payloads)


def openai_completion(text: str) -> bytes:
    return json.dumps(
        {
            "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 5},
        }
    ).encode("utf-8")


class FakeResponse:
    def __init__(self, chunks: Iterable[bytes], content_type: str = "text/event-stream") -> None:
        self._chunks = list(chunks)
        self.content_type = content_type
        self.closed = False
        self.on_chunk = None

    def chunks(self) -> Iterator[bytes]:
        for index, chunk in enumerate(self._chunks):
            if self.closed:
                raise TransportFailure("connection closed")
            if self.on_chunk is not None:
                self.on_chunk(index)
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Replays queued responses and records every wire request."""

    def __init__(self) -> None:
        self.session = None
        self.requests: List[WireRequest] = []
        self._queue: List[Union[FakeResponse, Exception]] = []
        self.factory_calls: List[Dict[str, Any]] = []

    def queue(self, body: Union[bytes, List[bytes]], content_type: str = "text/event-stream") -> FakeResponse:
        chunks = body if isinstance(body, list) else [body]
        response = FakeResponse(chunks, content_type=content_type)
        self._queue.append(response)
        return response

    def queue_error(self, exc: Exception) -> None:
        self._queue.append(exc)

    def open(self, wire: WireRequest) -> FakeResponse:
        self.requests.append(wire)
        if not self._queue:
            raise AssertionError(f"Unexpected request to {wire.url}")
        item = self._queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        return None


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "LLMBRIDGE_MODEL",
        "LLMBRIDGE_COMPRESS_THRESHOLD",
        "LLMBRIDGE_CONFIG_FILE",
        "HTTP_PROXY",
        "HTTPS_PROXY",
        "ALL_PROXY",
        "NO_PROXY",
    ):
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(key.lower(), raising=False)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def openai_config() -> Dict[str, Any]:
    return {
        "model": "openai:gpt-test",
        "compress_threshold": 1000,
        "clients": [
            {
                "type": "openai",
                "models": [{"name": "gpt-test", "max_input_tokens": 8000}],
            },
            {
                "type": "ollama",
                "models": [{"name": "llama3", "max_input_tokens": 8192}],
            },
        ],
    }


@pytest.fixture
def make_gateway(transport: FakeTransport):
    def _make(payload: Dict[str, Any], environment: Optional[Dict[str, str]] = None, **kwargs: Any) -> Gateway:
        config = GatewayConfig.from_mapping(payload)

        def factory(**options: Any) -> FakeTransport:
            transport.factory_calls.append(options)
            return transport

        env = {"OPENAI_API_KEY": "sk-test-key"} if environment is None else environment
        return Gateway(config, environment=env, transport_factory=factory, **kwargs)

    return _make
