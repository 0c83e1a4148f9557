"""Expose the gateway as an OpenAI-compatible ``/v1/chat/completions`` endpoint."""

from __future__ import annotations

import json
import time
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Tuple

from .client import DEFAULT_MODEL_ALIAS, EventStream, Gateway
from .llm import (
    Attachment,
    ChatRequest,
    ContentDelta,
    Done,
    ErrorEvent,
    GatewayError,
    Message,
    ResponseEvent,
    ToolCall,
    Usage,
)
from .logging import get_logger

LOGGER = get_logger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
MODELS_PATH = "/v1/models"

CORS_HEADERS = (
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "GET,POST,PUT,PATCH,DELETE"),
    ("Access-Control-Allow-Headers", "Content-Type,Authorization"),
)


class BadRequest(ValueError):
    pass


def _parse_content(content: Any) -> Tuple[str, Tuple[Attachment, ...]]:
    if content is None:
        return "", ()
    if isinstance(content, str):
        return content, ()
    if not isinstance(content, list):
        raise BadRequest(f"Unsupported message content: {content!r}")
    texts: List[str] = []
    attachments: List[Attachment] = []
    for part in content:
        kind = part.get("type") if isinstance(part, dict) else None
        if kind == "text":
            texts.append(str(part.get("text", "")))
        elif kind == "image_url":
            image = part.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            if not url:
                raise BadRequest("image_url parts need a 'url'.")
            attachments.append(Attachment(url=str(url)))
        else:
            raise BadRequest(f"Unsupported content part: {part!r}")
    return "\n".join(texts), tuple(attachments)


def parse_chat_request(body: Dict[str, Any]) -> ChatRequest:
    """Map an OpenAI chat-completions body onto a :class:`ChatRequest`."""

    model = body.get("model")
    if not isinstance(model, str) or not model:
        raise BadRequest("Invalid request body, missing field `model`")
    raw_messages = body.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise BadRequest("Invalid request body, missing field `messages`")
    messages = []
    for item in raw_messages:
        if not isinstance(item, dict) or "role" not in item:
            raise BadRequest(f"Invalid message: {item!r}")
        text, attachments = _parse_content(item.get("content"))
        messages.append(Message(role=str(item["role"]), content=text, attachments=attachments))
    try:
        max_tokens = body.get("max_tokens")
        return ChatRequest(
            messages=tuple(messages),
            model=model,
            temperature=None if body.get("temperature") is None else float(body["temperature"]),
            top_p=None if body.get("top_p") is None else float(body["top_p"]),
            stream=bool(body.get("stream", False)),
            max_output_tokens=None if max_tokens is None else int(max_tokens),
        )
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"Invalid request body, {exc}") from exc


def completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def chunk_frame(id_: str, model: str, created: int, content: Optional[str], *, first: bool = False) -> bytes:
    """One ``chat.completion.chunk`` SSE frame; ``content=None`` is the closing frame."""

    if content is None:
        delta: Dict[str, Any] = {}
        finish_reason: Optional[str] = "stop"
    else:
        delta = {"role": "assistant", "content": content} if first else {"content": content}
        finish_reason = None
    value = {
        "id": id_,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    frame = f"data: {json.dumps(value, ensure_ascii=False)}\n\n"
    if content is None:
        frame += "data: [DONE]\n\n"
    return frame.encode("utf-8")


def completion_body(
    id_: str,
    model: str,
    created: int,
    text: str,
    usage: Optional[Usage],
    tool_calls: List[ToolCall],
    finish_reason: Optional[str] = None,
) -> Dict[str, Any]:
    input_tokens = (usage.input_tokens if usage else None) or 0
    output_tokens = (usage.output_tokens if usage else None) or 0
    message: Dict[str, Any] = {"role": "assistant", "content": text}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id or f"call_{index}",
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
            }
            for index, call in enumerate(tool_calls)
        ]
    return {
        "id": id_,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "logprobs": None,
                "finish_reason": "tool_calls" if tool_calls else (finish_reason or "stop"),
            }
        ],
        "usage": {
            "prompt_tokens": input_tokens,
            "completion_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        },
    }


def error_body(message: str) -> Dict[str, Any]:
    return {"error": {"message": message, "type": "invalid_request_error"}}


class ChatCompletionServer:
    def __init__(self, gateway: Gateway, host: str = "127.0.0.1", port: int = 8000) -> None:
        self.gateway = gateway
        self.host = host
        self.port = port

    def create_server(self) -> ThreadingHTTPServer:
        gateway = self.gateway

        class Handler(BaseHTTPRequestHandler):
            server_version = "llmbridge/0.1"

            def _read_json(self) -> Optional[Dict[str, Any]]:
                try:
                    size = int(self.headers.get("Content-Length", "0"))
                    raw = self.rfile.read(size)
                    parsed = json.loads(raw.decode("utf-8"))
                except (ValueError, UnicodeDecodeError):
                    return None
                return parsed if isinstance(parsed, dict) else None

            def _send_cors(self) -> None:
                for name, value in CORS_HEADERS:
                    self.send_header(name, value)

            def _send_json(self, code: int, body: Dict[str, Any]) -> None:
                payload = json.dumps(body, ensure_ascii=False).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(payload)))
                self._send_cors()
                self.end_headers()
                self.wfile.write(payload)
                LOGGER.info("%s %s %s", self.command, self.path, code)

            def do_OPTIONS(self) -> None:
                if self.path != CHAT_COMPLETIONS_PATH:
                    self._send_json(404, error_body(f"Not found: {self.path}"))
                    return
                self.send_response(204)
                self._send_cors()
                self.end_headers()

            def do_GET(self) -> None:
                if self.path == MODELS_PATH:
                    data = [
                        {"id": info.id, "object": "model", "owned_by": info.client}
                        for info in gateway.list_models()
                    ]
                    self._send_json(200, {"object": "list", "data": data})
                    return
                self._send_json(404, error_body(f"Not found: {self.path}"))

            def do_POST(self) -> None:
                if self.path != CHAT_COMPLETIONS_PATH:
                    self._send_json(404, error_body(f"Not found: {self.path}"))
                    return
                body = self._read_json()
                if body is None:
                    self._send_json(400, error_body("Invalid request body, expected a JSON object"))
                    return
                try:
                    request = parse_chat_request(body)
                    model_name = request.model
                    if model_name == DEFAULT_MODEL_ALIAS:
                        model_name = gateway.config.default_model_id()
                    events = gateway.send(request)
                except (BadRequest, GatewayError) as exc:
                    LOGGER.error("%s %s 400 %s", self.command, self.path, exc)
                    self._send_json(400, error_body(str(exc)))
                    return

                id_ = completion_id()
                created = int(time.time())
                if request.stream:
                    self._stream(events, id_, model_name, created)
                else:
                    self._complete(events, id_, model_name, created)

            def _complete(self, events: EventStream, id_: str, model: str, created: int) -> None:
                parts: List[str] = []
                tool_calls: List[ToolCall] = []
                usage: Optional[Usage] = None
                finish_reason: Optional[str] = None
                with events:
                    for event in events:
                        if isinstance(event, ContentDelta):
                            parts.append(event.text)
                        elif isinstance(event, ToolCall):
                            tool_calls.append(event)
                        elif isinstance(event, Usage):
                            usage = event
                        elif isinstance(event, ErrorEvent):
                            self._send_json(400, error_body(event.message))
                            return
                        elif isinstance(event, Done):
                            finish_reason = event.finish_reason
                self._send_json(
                    200, completion_body(id_, model, created, "".join(parts), usage, tool_calls, finish_reason)
                )

            def _stream(self, events: EventStream, id_: str, model: str, created: int) -> None:
                with events:
                    first: Optional[ResponseEvent] = None
                    for event in events:
                        if isinstance(event, ErrorEvent):
                            # Nothing sent yet, so the failure can still be a 400.
                            self._send_json(400, error_body(event.message))
                            return
                        if isinstance(event, (ContentDelta, Done)):
                            first = event
                            break
                    self.send_response(200)
                    self.send_header("Content-Type", "text/event-stream")
                    self.send_header("Cache-Control", "no-cache")
                    self._send_cors()
                    self.end_headers()
                    LOGGER.info("%s %s 200 (stream)", self.command, self.path)
                    try:
                        self.wfile.write(chunk_frame(id_, model, created, "", first=True))
                        if isinstance(first, ContentDelta):
                            self.wfile.write(chunk_frame(id_, model, created, first.text))
                        if not isinstance(first, Done):
                            for event in events:
                                if isinstance(event, ContentDelta):
                                    self.wfile.write(chunk_frame(id_, model, created, event.text))
                                    self.wfile.flush()
                                elif isinstance(event, ErrorEvent):
                                    LOGGER.warning("Stream %s ended with an error: %s", id_, event.message)
                        self.wfile.write(chunk_frame(id_, model, created, None))
                        self.wfile.flush()
                    except (BrokenPipeError, ConnectionResetError):
                        LOGGER.info("Client disconnected from stream %s.", id_)
                        events.cancel()

            def log_message(self, format: str, *args: Any) -> None:
                return

        return ThreadingHTTPServer((self.host, self.port), Handler)

    def serve_forever(self) -> None:
        server = self.create_server()
        host, port = server.server_address[:2]
        LOGGER.info("Chat completions API listening on http://%s:%s%s", host, port, CHAT_COMPLETIONS_PATH)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            LOGGER.info("Shutting down.")
        finally:
            server.server_close()
