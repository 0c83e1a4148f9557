from __future__ import annotations

import gc

import pytest

from llmbridge.llm import (
    ChatRequest,
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    InputTooLong,
    Message,
    MissingCredential,
    ProviderError,
    SessionBusy,
    TransportFailure,
    Usage,
)
from llmbridge.session import Session
from llmbridge.transport import CancelToken

from conftest import openai_chunks, openai_completion


def _ask(text: str, **kwargs) -> ChatRequest:
    return ChatRequest(messages=(Message(role="user", content=text),), model=kwargs.pop("model", "default"), **kwargs)


def test_streamed_completion(make_gateway, openai_config, transport):
    transport.queue(openai_chunks("Hello", " world", usage={"prompt_tokens": 9, "completion_tokens": 2}))
    gateway = make_gateway(openai_config)

    events = list(gateway.send(_ask("hi")))

    assert events[:2] == [ContentDelta(text="Hello"), ContentDelta(text=" world")]
    assert events[-2:] == [Usage(input_tokens=9, output_tokens=2), Done(finish_reason="stop")]
    wire = transport.requests[0]
    assert wire.url == "https://api.openai.com/v1/chat/completions"
    assert wire.headers["Authorization"] == "Bearer sk-test-key"
    assert wire.body["model"] == "gpt-test"
    assert transport.factory_calls == [{"proxy": None, "connect_timeout": 10.0, "read_timeout": 300.0}]


def test_complete_collects_non_streamed_reply(make_gateway, openai_config, transport):
    transport.queue(openai_completion("Paris"), content_type="application/json")
    completion = make_gateway(openai_config).complete(_ask("Capital of France?", stream=False))
    assert completion.ok
    assert completion.text == "Paris"
    assert completion.usage == Usage(input_tokens=10, output_tokens=5)
    assert transport.requests[0].body["stream"] is False


def test_config_sampling_defaults_apply_when_request_leaves_them_unset(make_gateway, openai_config, transport):
    openai_config["temperature"] = 0.4
    transport.queue(openai_chunks("ok"))
    gateway = make_gateway(openai_config)

    list(gateway.send(_ask("hi", top_p=0.5)))

    body = transport.requests[0].body
    assert body["temperature"] == 0.4
    assert body["top_p"] == 0.5


def test_session_history_is_sent_and_extended(make_gateway, openai_config, transport):
    transport.queue(openai_chunks("first answer"))
    transport.queue(openai_chunks("second answer"))
    gateway = make_gateway(openai_config)
    session = Session()

    list(gateway.send(_ask("first"), session=session))
    list(gateway.send(_ask("second"), session=session))

    sent = [message["content"] for message in transport.requests[1].body["messages"]]
    assert sent == ["first", "first answer", "second"]
    assert [message.content for message in session.messages] == ["first", "first answer", "second", "second answer"]
    assert session.turns == 2
    assert not session.busy


def test_failed_exchange_does_not_touch_session(make_gateway, openai_config, transport):
    transport.queue(b'data: {"choices":[{"delta":{"content":"par"}}]}\n\ndata: {oops}\n\n')
    gateway = make_gateway(openai_config)
    session = Session()

    events = list(gateway.send(_ask("hi"), session=session))

    assert isinstance(events[-2], ErrorEvent)
    assert events[-2].kind is ErrorKind.PARSE_FAILURE
    assert events[-1] == Done(finish_reason="error")
    assert session.messages == []
    assert not session.busy


@pytest.mark.parametrize(
    "exc, kind, status",
    [
        (TransportFailure("connection refused"), ErrorKind.TRANSPORT_FAILURE, None),
        (ProviderError("Incorrect API key provided", status=401), ErrorKind.PROVIDER_ERROR, 401),
    ],
)
def test_transport_errors_become_error_events(make_gateway, openai_config, transport, exc, kind, status):
    transport.queue_error(exc)
    events = list(make_gateway(openai_config).send(_ask("hi")))
    assert events == [ErrorEvent(kind=kind, message=str(exc), status=status), Done(finish_reason="error")]


def test_cancel_mid_stream(make_gateway, openai_config, transport):
    response = transport.queue(
        [
            b'data: {"choices":[{"delta":{"content":"one"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"two"}}]}\n\n',
            b"data: [DONE]\n\n",
        ]
    )
    gateway = make_gateway(openai_config)
    session = Session()
    stream = gateway.send(_ask("hi"), session=session)

    def cancel_on_second(index):
        if index == 1:
            stream.cancel()

    response.on_chunk = cancel_on_second
    events = list(stream)

    assert events == [ContentDelta(text="one"), Done(cancelled=True, finish_reason="cancelled")]
    assert response.closed
    assert session.messages == []
    assert not session.busy


def test_cancel_before_sending(make_gateway, openai_config, transport):
    token = CancelToken()
    token.cancel()
    events = list(make_gateway(openai_config).send(_ask("hi"), cancel=token))
    assert events == [Done(cancelled=True, finish_reason="cancelled")]
    assert transport.requests == []


def test_overall_deadline_reports_timeout(make_gateway, openai_config, transport):
    now = [0.0]
    response = transport.queue(
        [
            b'data: {"choices":[{"delta":{"content":"slow"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"er"}}]}\n\n',
            b"data: [DONE]\n\n",
        ]
    )

    def advance(index):
        if index == 1:
            now[0] = 301.0

    response.on_chunk = advance
    gateway = make_gateway(openai_config, clock=lambda: now[0])

    events = list(gateway.send(_ask("hi")))

    assert events[0] == ContentDelta(text="slow")
    assert events[-2].kind is ErrorKind.TIMEOUT
    assert events[-1] == Done(finish_reason="error")


def test_oversized_input_is_rejected_before_any_request(make_gateway, openai_config, transport):
    session = Session()
    gateway = make_gateway(openai_config)
    with pytest.raises(InputTooLong):
        gateway.send(_ask("x" * 40000), session=session)
    assert transport.requests == []
    assert not session.busy


def test_missing_credential_is_raised_eagerly(make_gateway, openai_config, transport):
    gateway = make_gateway(openai_config, environment={})
    with pytest.raises(MissingCredential, match="OPENAI_API_KEY"):
        gateway.send(_ask("hi"))
    assert transport.requests == []


def test_busy_session_rejects_second_exchange(make_gateway, openai_config, transport):
    transport.queue(openai_chunks("slow"))
    gateway = make_gateway(openai_config)
    session = Session()

    stream = gateway.send(_ask("one"), session=session)
    with pytest.raises(SessionBusy):
        gateway.send(_ask("two"), session=session)
    stream.close()

    assert not session.busy


def test_history_is_compressed_before_sending(make_gateway, openai_config, transport):
    history = [
        Message(role="user", content="m1"),
        Message(role="assistant", content="m2"),
        Message(role="user", content="m3"),
        Message(role="assistant", content="m4"),
        Message(role="user", content="m5"),
        Message(role="assistant", content="m6"),
    ]
    session = Session(messages=list(history), tokens=1200)
    transport.queue(openai_completion("They talked about m1 to m4."), content_type="application/json")
    transport.queue(openai_chunks("sure"))
    gateway = make_gateway(openai_config)

    events = list(gateway.send(_ask("next"), session=session))

    assert events[-1] == Done(finish_reason="stop")
    summary_request, chat_request = transport.requests
    assert summary_request.body["stream"] is False
    assert [m["content"] for m in summary_request.body["messages"][:4]] == ["m1", "m2", "m3", "m4"]
    assert summary_request.body["messages"][-1]["role"] == "user"

    sent = chat_request.body["messages"]
    assert sent[0]["role"] == "system"
    assert sent[0]["content"].endswith("They talked about m1 to m4.")
    assert [m["content"] for m in sent[1:]] == ["m5", "m6", "next"]
    assert session.summary == "They talked about m1 to m4."
    assert [m.content for m in session.messages[-2:]] == ["next", "sure"]
    assert not session.compressed_this_turn


def test_failed_summary_sends_full_history(make_gateway, openai_config, transport):
    history = [Message(role="user", content="old"), Message(role="assistant", content="reply")]
    session = Session(messages=list(history), tokens=1500)
    transport.queue_error(ProviderError("summary failed", status=500))
    transport.queue(openai_chunks("fine"))
    gateway = make_gateway(openai_config)

    events = list(gateway.send(_ask("new"), session=session))

    assert events[-1] == Done(finish_reason="stop")
    assert len(transport.requests) == 2
    assert transport.requests[0].body["stream"] is False
    sent = [m["content"] for m in transport.requests[1].body["messages"]]
    assert sent == ["old", "reply", "new"]
    assert session.summary is None
    assert [m.content for m in session.messages] == ["old", "reply", "new", "fine"]


def test_single_exchange_history_is_replaced_by_summary(make_gateway, openai_config, transport):
    history = [Message(role="user", content="old"), Message(role="assistant", content="reply")]
    session = Session(messages=list(history), tokens=1500)
    transport.queue(openai_completion("Earlier they said hello."), content_type="application/json")
    transport.queue(openai_chunks("ok"))
    gateway = make_gateway(openai_config)

    list(gateway.send(_ask("new"), session=session))

    summary_request, chat_request = transport.requests
    assert [m["content"] for m in summary_request.body["messages"][:2]] == ["old", "reply"]
    sent = chat_request.body["messages"]
    assert [m["role"] for m in sent] == ["system", "user"]
    assert sent[0]["content"].endswith("Earlier they said hello.")
    assert sent[1]["content"] == "new"


def test_dropped_stream_frees_the_session(make_gateway, openai_config, transport):
    transport.queue(openai_chunks("second"))
    gateway = make_gateway(openai_config)
    session = Session()

    stream = gateway.send(_ask("one"), session=session)
    assert session.busy
    del stream
    gc.collect()

    assert not session.busy
    events = list(gateway.send(_ask("two"), session=session))
    assert events[-1] == Done(finish_reason="stop")


def test_list_models_covers_every_client(make_gateway, openai_config):
    gateway = make_gateway(openai_config)
    assert [model.id for model in gateway.list_models()] == ["openai:gpt-test", "ollama:llama3"]


def test_remote_ollama_models(make_gateway, openai_config, transport):
    class FakeHttp:
        def __init__(self):
            self.urls = []

        def get(self, url, headers=None, timeout=None):
            self.urls.append(url)
            return FakeHttpResponse()

    class FakeHttpResponse:
        status_code = 200
        text = ""

        def json(self):
            return {"models": [{"name": "llama3:latest"}, {"name": "qwen2:7b"}]}

    transport.session = FakeHttp()
    gateway = make_gateway(openai_config)

    models = gateway.fetch_remote_models("ollama")

    assert [model.id for model in models] == ["ollama:llama3:latest", "ollama:qwen2:7b"]
    assert transport.session.urls == ["http://localhost:11434/api/tags"]


def test_gateway_uses_default_alias(make_gateway, openai_config):
    gateway = make_gateway(openai_config)
    client, model = gateway.resolve_model("default")
    assert (client.identifier, model.name) == ("openai", "gpt-test")
