from __future__ import annotations

import json
import threading

import pytest
import requests

from llmbridge.llm import ChatRequest, Usage
from llmbridge.serve import BadRequest, ChatCompletionServer, chunk_frame, completion_body, parse_chat_request

from conftest import openai_chunks, openai_completion


@pytest.fixture
def server_url(make_gateway, openai_config):
    gateway = make_gateway(openai_config)
    server = ChatCompletionServer(gateway, host="127.0.0.1", port=0).create_server()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def _sse_payloads(text: str):
    return [line[len("data: ") :] for line in text.splitlines() if line.startswith("data: ")]


def test_parse_chat_request_maps_openai_body():
    request = parse_chat_request(
        {
            "model": "openai:gpt-test",
            "stream": True,
            "temperature": 0.2,
            "max_tokens": 50,
            "messages": [
                {"role": "system", "content": "be nice"},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "what is this?"},
                        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                    ],
                },
            ],
        }
    )
    assert isinstance(request, ChatRequest)
    assert request.stream is True
    assert request.temperature == 0.2
    assert request.max_output_tokens == 50
    assert request.messages[1].content == "what is this?"
    assert request.messages[1].attachments[0].url == "data:image/png;base64,AAAA"


@pytest.mark.parametrize(
    "body",
    [
        {"messages": [{"role": "user", "content": "hi"}]},
        {"model": "x", "messages": []},
        {"model": "x", "messages": [{"role": "user", "content": [{"type": "audio"}]}]},
        {"model": "x", "messages": [{"role": "user", "content": "hi"}], "temperature": "warm"},
    ],
)
def test_parse_chat_request_rejects_bad_bodies(body):
    with pytest.raises(BadRequest):
        parse_chat_request(body)


def test_chunk_frames():
    first = json.loads(chunk_frame("id", "m", 1, "", first=True).decode()[len("data: ") :])
    assert first["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    closing = chunk_frame("id", "m", 1, None).decode()
    assert closing.endswith("data: [DONE]\n\n")
    assert '"finish_reason": "stop"' in closing


def test_completion_body_totals_usage():
    body = completion_body("id", "m", 1, "hi", Usage(input_tokens=3, output_tokens=4), [])
    assert body["object"] == "chat.completion"
    assert body["usage"] == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}
    assert body["choices"][0]["finish_reason"] == "stop"


def test_streamed_chat_completion(server_url, transport):
    transport.queue(openai_chunks("Hel", "lo"))
    response = requests.post(
        f"{server_url}/v1/chat/completions",
        json={"model": "default", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        timeout=10,
    )
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "text/event-stream"
    assert response.headers["Access-Control-Allow-Origin"] == "*"

    payloads = _sse_payloads(response.text)
    assert payloads[-1] == "[DONE]"
    chunks = [json.loads(item) for item in payloads[:-1]]
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert "".join(chunk["choices"][0]["delta"].get("content", "") for chunk in chunks) == "Hello"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert {chunk["model"] for chunk in chunks} == {"openai:gpt-test"}
    assert len({chunk["id"] for chunk in chunks}) == 1


def test_non_streamed_chat_completion(server_url, transport):
    transport.queue(openai_completion("Bonjour"), content_type="application/json")
    response = requests.post(
        f"{server_url}/v1/chat/completions",
        json={"model": "openai:gpt-test", "messages": [{"role": "user", "content": "hi"}]},
        timeout=10,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Bonjour"}
    assert body["usage"]["total_tokens"] == 15


def test_provider_error_before_output_is_a_400(server_url, transport):
    transport.queue(
        b'data: {"error": {"message": "model overloaded"}}\n\n',
    )
    response = requests.post(
        f"{server_url}/v1/chat/completions",
        json={"model": "default", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        timeout=10,
    )
    assert response.status_code == 400
    assert response.json() == {"error": {"message": "model overloaded", "type": "invalid_request_error"}}


def test_invalid_json_body_is_a_400(server_url):
    response = requests.post(
        f"{server_url}/v1/chat/completions",
        data=b"{not json",
        headers={"Content-Type": "application/json"},
        timeout=10,
    )
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"


def test_unknown_model_is_a_400(server_url, transport):
    response = requests.post(
        f"{server_url}/v1/chat/completions",
        json={"model": "ollama:mistral", "messages": [{"role": "user", "content": "hi"}]},
        timeout=10,
    )
    assert response.status_code == 400
    assert transport.requests == []


def test_options_and_unknown_paths(server_url):
    preflight = requests.options(f"{server_url}/v1/chat/completions", timeout=10)
    assert preflight.status_code == 204
    assert preflight.headers["Access-Control-Allow-Headers"] == "Content-Type,Authorization"
    assert requests.get(f"{server_url}/v1/unknown", timeout=10).status_code == 404
    assert requests.post(f"{server_url}/v1/embeddings", json={}, timeout=10).status_code == 404


def test_models_listing(server_url):
    response = requests.get(f"{server_url}/v1/models", timeout=10)
    assert response.status_code == 200
    assert [item["id"] for item in response.json()["data"]] == ["openai:gpt-test", "ollama:llama3"]
