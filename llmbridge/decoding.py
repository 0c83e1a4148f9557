"""Decode provider responses into a normalised sequence of response events.

Three framers cover the wire formats in use: server-sent events,
newline-delimited JSON and AWS event-stream binary frames. A single JSON
document (non-streamed responses) is handled directly. On top of the
framers, one :class:`FrameInterpreter` per dialect maps frames to
:class:`~llmbridge.llm.ResponseEvent` values.

Every decode ends with exactly one :class:`~llmbridge.llm.Done`. Failures
while decoding are reported as a single :class:`~llmbridge.llm.ErrorEvent`
immediately before it; they are never raised to the consumer.
"""

from __future__ import annotations

import codecs
import json
import struct
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Type

from .llm import (
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    ParseFailure,
    ProviderError,
    RequestTimeout,
    ResponseEvent,
    ToolCall,
    TransportFailure,
    Usage,
)
from .logging import get_logger
from .providers import ProviderDescriptor, ProviderDialect, StreamFormat

LOGGER = get_logger(__name__)

SSE_DONE_SENTINEL = "[DONE]"
MAX_EVENT_STREAM_MESSAGE = 16 * 1024 * 1024


def extract_error_message(payload: Any) -> str:
    """Pull the human-readable message out of a provider error body."""

    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            parsed = json.loads(payload)
        except ValueError:
            return payload.strip()
        if not isinstance(parsed, (dict, list)):
            return payload.strip()
        payload = parsed
    if isinstance(payload, list) and payload:
        return extract_error_message(payload[0])
    if not isinstance(payload, dict):
        return str(payload)
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    for key in ("error_msg", "message", "detail"):
        if payload.get(key):
            return str(payload[key])
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        return str(first.get("message", first)) if isinstance(first, dict) else str(first)
    return json.dumps(payload, ensure_ascii=False)


def _load_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseFailure(f"Response is not valid UTF-8: {exc}") from exc
    try:
        return json.loads(raw)
    except ValueError as exc:
        snippet = raw if len(raw) <= 200 else raw[:200] + "..."
        raise ParseFailure(f"Malformed JSON frame: {snippet!r}") from exc


def _arguments(raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if raw in (None, ""):
        return {}
    parsed = _load_json(raw)
    if not isinstance(parsed, dict):
        raise ParseFailure(f"Tool call arguments must be a JSON object, got {raw!r}")
    return parsed


# ----------------------------------------------------------------------
# Framers
# ----------------------------------------------------------------------
@dataclass
class SseFrame:
    data: str
    event: Optional[str] = None


def _decoded_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Yield text lines split on any newline convention; the tail is yielded at EOF."""

    decoder = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    try:
        for chunk in chunks:
            buffer += decoder.decode(chunk)
            # A trailing CR may be the first half of CRLF.
            hold_cr = buffer.endswith("\r")
            if hold_cr:
                buffer = buffer[:-1]
            lines = buffer.replace("\r\n", "\n").replace("\r", "\n").split("\n")
            buffer = lines.pop()
            if hold_cr:
                lines.append(buffer)
                buffer = ""
            yield from lines
        buffer += decoder.decode(b"", final=True)
    except UnicodeDecodeError as exc:
        raise ParseFailure(f"Response is not valid UTF-8: {exc}") from exc
    if buffer:
        yield buffer


def iter_sse(chunks: Iterable[bytes]) -> Iterator[SseFrame]:
    event: Optional[str] = None
    data_lines: List[str] = []
    for line in _decoded_lines(chunks):
        if not line:
            if data_lines:
                yield SseFrame(data="\n".join(data_lines), event=event)
            event, data_lines = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event = value
    # A final frame missing its blank line is still dispatched; a cut-off
    # payload then fails JSON parsing downstream.
    if data_lines:
        yield SseFrame(data="\n".join(data_lines), event=event)


def iter_ndjson(chunks: Iterable[bytes]) -> Iterator[str]:
    for line in _decoded_lines(chunks):
        if line.strip():
            yield line


@dataclass
class EventStreamMessage:
    headers: Dict[str, Any] = field(default_factory=dict)
    payload: bytes = b""

    @property
    def message_type(self) -> str:
        return str(self.headers.get(":message-type", "event"))

    @property
    def event_type(self) -> Optional[str]:
        value = self.headers.get(":event-type")
        return str(value) if value is not None else None


_FIXED_HEADER_SIZES = {2: 1, 3: 2, 4: 4, 5: 8, 8: 8, 9: 16}


def _parse_event_headers(raw: bytes) -> Dict[str, Any]:
    headers: Dict[str, Any] = {}
    offset = 0
    while offset < len(raw):
        name_len = raw[offset]
        offset += 1
        name = raw[offset : offset + name_len].decode("utf-8")
        offset += name_len
        value_type = raw[offset]
        offset += 1
        if value_type in (0, 1):
            value: Any = value_type == 0
        elif value_type in (6, 7):
            (length,) = struct.unpack(">H", raw[offset : offset + 2])
            offset += 2
            chunk = raw[offset : offset + length]
            offset += length
            value = chunk.decode("utf-8") if value_type == 7 else chunk
        elif value_type in _FIXED_HEADER_SIZES:
            size = _FIXED_HEADER_SIZES[value_type]
            value = raw[offset : offset + size]
            offset += size
        else:
            raise ParseFailure(f"Unknown event-stream header type {value_type}")
        headers[name] = value
    return headers


def iter_event_stream(chunks: Iterable[bytes]) -> Iterator[EventStreamMessage]:
    """Parse ``application/vnd.amazon.eventstream`` frames."""

    buffer = b""
    for chunk in chunks:
        buffer += chunk
        while len(buffer) >= 12:
            total_len, headers_len, prelude_crc = struct.unpack(">III", buffer[:12])
            if zlib.crc32(buffer[:8]) & 0xFFFFFFFF != prelude_crc:
                raise ParseFailure("Event-stream prelude checksum mismatch")
            if total_len < 16 or total_len > MAX_EVENT_STREAM_MESSAGE or headers_len > total_len - 16:
                raise ParseFailure(f"Invalid event-stream frame length {total_len}")
            if len(buffer) < total_len:
                break
            message, buffer = buffer[:total_len], buffer[total_len:]
            (message_crc,) = struct.unpack(">I", message[-4:])
            if zlib.crc32(message[:-4]) & 0xFFFFFFFF != message_crc:
                raise ParseFailure("Event-stream message checksum mismatch")
            try:
                headers = _parse_event_headers(message[12 : 12 + headers_len])
            except (IndexError, struct.error, UnicodeDecodeError) as exc:
                raise ParseFailure(f"Malformed event-stream headers: {exc}") from exc
            yield EventStreamMessage(headers=headers, payload=message[12 + headers_len : -4])
    if buffer:
        raise ParseFailure(f"Event stream ended inside a frame ({len(buffer)} dangling bytes)")


def encode_event_stream_message(headers: Dict[str, str], payload: bytes) -> bytes:
    """Build one event-stream frame with string headers."""

    raw_headers = b""
    for name, value in headers.items():
        encoded_name = name.encode("utf-8")
        encoded_value = value.encode("utf-8")
        raw_headers += struct.pack(">B", len(encoded_name)) + encoded_name
        raw_headers += struct.pack(">BH", 7, len(encoded_value)) + encoded_value
    total_len = 16 + len(raw_headers) + len(payload)
    prelude = struct.pack(">II", total_len, len(raw_headers))
    prelude += struct.pack(">I", zlib.crc32(prelude) & 0xFFFFFFFF)
    body = prelude + raw_headers + payload
    return body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)


# ----------------------------------------------------------------------
# Interpreters
# ----------------------------------------------------------------------
class FrameInterpreter(ABC):
    """Map decoded frames of one dialect to response events."""

    # When true, a stream that closes before a terminator or finish reason
    # was seen is reported as truncated.
    terminator_required: bool = True

    def __init__(self) -> None:
        self.finished = False
        self.finish_reason: Optional[str] = None
        self.input_tokens: Optional[int] = None
        self.output_tokens: Optional[int] = None

    @abstractmethod
    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        """Interpret one streamed frame."""

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        """Interpret a whole non-streamed response."""

        events = list(self.feed(data))
        self.finished = True
        return events

    def is_sentinel(self, raw: str) -> bool:
        return raw.strip() == SSE_DONE_SENTINEL

    def flush(self) -> Iterable[ResponseEvent]:
        return []

    def usage(self) -> Optional[Usage]:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return Usage(input_tokens=self.input_tokens, output_tokens=self.output_tokens)

    @staticmethod
    def raise_if_error(data: Any) -> None:
        if isinstance(data, dict) and data.get("error"):
            raise ProviderError(extract_error_message(data))


class OpenAIInterpreter(FrameInterpreter):
    def __init__(self) -> None:
        super().__init__()
        self._calls: Dict[int, Dict[str, Any]] = {}

    def _record_usage(self, data: dict) -> None:
        usage = data.get("usage")
        if isinstance(usage, dict):
            self.input_tokens = usage.get("prompt_tokens", self.input_tokens)
            self.output_tokens = usage.get("completion_tokens", self.output_tokens)

    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        self.raise_if_error(data)
        self._record_usage(data)
        events: List[ResponseEvent] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content:
                events.append(ContentDelta(text=content))
            for call in delta.get("tool_calls") or []:
                entry = self._calls.setdefault(call.get("index", 0), {"id": None, "name": "", "arguments": ""})
                if call.get("id"):
                    entry["id"] = call["id"]
                function = call.get("function") or {}
                if function.get("name"):
                    entry["name"] += function["name"]
                entry["arguments"] += function.get("arguments") or ""
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return events

    def flush(self) -> Iterable[ResponseEvent]:
        return [
            ToolCall(name=entry["name"], arguments=_arguments(entry["arguments"]), id=entry["id"])
            for _, entry in sorted(self._calls.items())
        ]

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        self.raise_if_error(data)
        self._record_usage(data)
        self.finished = True
        events: List[ResponseEvent] = []
        choices = data.get("choices") or []
        if not choices:
            return events
        choice = choices[0]
        message = choice.get("message") or {}
        if message.get("content"):
            events.append(ContentDelta(text=message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            events.append(
                ToolCall(name=function.get("name", ""), arguments=_arguments(function.get("arguments")), id=call.get("id"))
            )
        self.finish_reason = choice.get("finish_reason")
        return events


class CloudflareInterpreter(FrameInterpreter):
    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        self.raise_if_error(data)
        usage = data.get("usage")
        if isinstance(usage, dict):
            self.input_tokens = usage.get("prompt_tokens")
            self.output_tokens = usage.get("completion_tokens")
        text = data.get("response")
        return [ContentDelta(text=text)] if text else []

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        if not data.get("success", True):
            raise ProviderError(extract_error_message(data))
        self.finished = True
        result = data.get("result") or {}
        text = result.get("response")
        return [ContentDelta(text=text)] if text else []


class ClaudeInterpreter(FrameInterpreter):
    def __init__(self) -> None:
        super().__init__()
        self._tools: Dict[int, Dict[str, Any]] = {}

    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        kind = data.get("type") or event
        if kind == "error":
            raise ProviderError(extract_error_message(data))
        index = data.get("index", 0)
        if kind == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self.input_tokens = usage.get("input_tokens")
            self.output_tokens = usage.get("output_tokens")
        elif kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tools[index] = {"id": block.get("id"), "name": block.get("name", ""), "json": ""}
            elif block.get("text"):
                return [ContentDelta(text=block["text"])]
        elif kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [ContentDelta(text=delta["text"])]
            if delta.get("type") == "input_json_delta" and index in self._tools:
                self._tools[index]["json"] += delta.get("partial_json") or ""
        elif kind == "content_block_stop":
            tool = self._tools.pop(index, None)
            if tool is not None:
                return [ToolCall(name=tool["name"], arguments=_arguments(tool["json"]), id=tool["id"])]
        elif kind == "message_delta":
            self.finish_reason = (data.get("delta") or {}).get("stop_reason") or self.finish_reason
            usage = data.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self.output_tokens = usage["output_tokens"]
        elif kind == "message_stop":
            self.finished = True
        return []

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        if data.get("type") == "error":
            raise ProviderError(extract_error_message(data))
        self.finished = True
        events: List[ResponseEvent] = []
        for block in data.get("content") or []:
            if block.get("type") == "text" and block.get("text"):
                events.append(ContentDelta(text=block["text"]))
            elif block.get("type") == "tool_use":
                events.append(ToolCall(name=block.get("name", ""), arguments=_arguments(block.get("input")), id=block.get("id")))
        usage = data.get("usage") or {}
        self.input_tokens = usage.get("input_tokens")
        self.output_tokens = usage.get("output_tokens")
        self.finish_reason = data.get("stop_reason")
        return events


class GeminiInterpreter(FrameInterpreter):
    terminator_required = False

    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        if isinstance(data, list):
            events: List[ResponseEvent] = []
            for item in data:
                events.extend(self.feed(item, event))
            return events
        self.raise_if_error(data)
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason") and not data.get("candidates"):
            raise ProviderError(f"Prompt was blocked: {feedback['blockReason']}")
        events = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text"):
                    events.append(ContentDelta(text=part["text"]))
                call = part.get("functionCall")
                if call:
                    events.append(ToolCall(name=call.get("name", ""), arguments=_arguments(call.get("args"))))
            if candidate.get("finishReason"):
                self.finish_reason = candidate["finishReason"]
        usage = data.get("usageMetadata") or {}
        if usage:
            self.input_tokens = usage.get("promptTokenCount", self.input_tokens)
            self.output_tokens = usage.get("candidatesTokenCount", self.output_tokens)
        return events


class CohereInterpreter(FrameInterpreter):
    def _meta(self, payload: dict) -> None:
        units = (payload.get("meta") or {}).get("billed_units") or {}
        if units:
            self.input_tokens = units.get("input_tokens")
            self.output_tokens = units.get("output_tokens")

    @staticmethod
    def _tool_calls(calls: Any) -> List[ResponseEvent]:
        return [ToolCall(name=call.get("name", ""), arguments=_arguments(call.get("parameters"))) for call in calls or []]

    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        kind = data.get("event_type")
        if kind == "text-generation":
            return [ContentDelta(text=data["text"])] if data.get("text") else []
        if kind == "tool-calls-generation":
            return self._tool_calls(data.get("tool_calls"))
        if kind == "stream-end":
            self.finished = True
            self.finish_reason = data.get("finish_reason")
            response = data.get("response") or {}
            if self.finish_reason == "ERROR":
                raise ProviderError(response.get("text") or "Cohere reported a generation error.")
            self._meta(response)
        elif kind is None and data.get("message"):
            raise ProviderError(str(data["message"]))
        return []

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        if "text" not in data and data.get("message"):
            raise ProviderError(str(data["message"]))
        self.finished = True
        self.finish_reason = data.get("finish_reason")
        self._meta(data)
        events: List[ResponseEvent] = [ContentDelta(text=data["text"])] if data.get("text") else []
        events.extend(self._tool_calls(data.get("tool_calls")))
        return events


class OllamaInterpreter(FrameInterpreter):
    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        self.raise_if_error(data)
        events: List[ResponseEvent] = []
        message = data.get("message") or {}
        if message.get("content"):
            events.append(ContentDelta(text=message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            events.append(ToolCall(name=function.get("name", ""), arguments=_arguments(function.get("arguments"))))
        if data.get("done"):
            self.finished = True
            self.finish_reason = data.get("done_reason") or "stop"
            self.input_tokens = data.get("prompt_eval_count")
            self.output_tokens = data.get("eval_count")
        return events


class ErnieInterpreter(FrameInterpreter):
    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        if data.get("error_code"):
            raise ProviderError(f"{data['error_code']}: {data.get('error_msg', '')}".strip())
        events: List[ResponseEvent] = []
        if data.get("result"):
            events.append(ContentDelta(text=data["result"]))
        call = data.get("function_call")
        if call:
            events.append(ToolCall(name=call.get("name", ""), arguments=_arguments(call.get("arguments"))))
        usage = data.get("usage") or {}
        if usage:
            self.input_tokens = usage.get("prompt_tokens")
            self.output_tokens = usage.get("completion_tokens")
        if data.get("is_end", False) or data.get("finish_reason") not in (None, "", "null"):
            self.finish_reason = data.get("finish_reason") or "stop"
            if data.get("is_end", True):
                self.finished = True
        return events


class QianwenInterpreter(FrameInterpreter):
    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        if data.get("code") and not data.get("output"):
            raise ProviderError(f"{data['code']}: {data.get('message', '')}".strip())
        output = data.get("output") or {}
        events: List[ResponseEvent] = []
        if output.get("text"):
            events.append(ContentDelta(text=output["text"]))
        finish = output.get("finish_reason")
        for choice in output.get("choices") or []:
            content = (choice.get("message") or {}).get("content")
            if isinstance(content, list):
                content = "".join(str(part.get("text", "")) for part in content if isinstance(part, dict))
            if content:
                events.append(ContentDelta(text=content))
            finish = choice.get("finish_reason") or finish
        if finish and finish != "null":
            self.finish_reason = finish
        usage = data.get("usage") or {}
        if usage:
            self.input_tokens = usage.get("input_tokens")
            self.output_tokens = usage.get("output_tokens")
        return events


class BedrockInterpreter(FrameInterpreter):
    def __init__(self) -> None:
        super().__init__()
        self._tools: Dict[int, Dict[str, Any]] = {}

    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        index = data.get("contentBlockIndex", 0)
        if event == "contentBlockStart":
            tool = (data.get("start") or {}).get("toolUse")
            if tool:
                self._tools[index] = {"id": tool.get("toolUseId"), "name": tool.get("name", ""), "json": ""}
        elif event == "contentBlockDelta":
            delta = data.get("delta") or {}
            if delta.get("text"):
                return [ContentDelta(text=delta["text"])]
            tool_delta = delta.get("toolUse")
            if tool_delta and index in self._tools:
                self._tools[index]["json"] += tool_delta.get("input") or ""
        elif event == "contentBlockStop":
            tool = self._tools.pop(index, None)
            if tool is not None:
                return [ToolCall(name=tool["name"], arguments=_arguments(tool["json"]), id=tool["id"])]
        elif event == "messageStop":
            self.finish_reason = data.get("stopReason") or "end_turn"
        elif event == "metadata":
            usage = data.get("usage") or {}
            self.input_tokens = usage.get("inputTokens")
            self.output_tokens = usage.get("outputTokens")
        return []

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        if "output" not in data and data.get("message"):
            raise ProviderError(str(data["message"]))
        self.finished = True
        events: List[ResponseEvent] = []
        message = (data.get("output") or {}).get("message") or {}
        for block in message.get("content") or []:
            if block.get("text"):
                events.append(ContentDelta(text=block["text"]))
            tool = block.get("toolUse")
            if tool:
                events.append(ToolCall(name=tool.get("name", ""), arguments=_arguments(tool.get("input")), id=tool.get("toolUseId")))
        usage = data.get("usage") or {}
        self.input_tokens = usage.get("inputTokens")
        self.output_tokens = usage.get("outputTokens")
        self.finish_reason = data.get("stopReason")
        return events


class ReplicateInterpreter(FrameInterpreter):
    def feed(self, data: Any, event: Optional[str] = None) -> Iterable[ResponseEvent]:
        return self.complete(data)

    def complete(self, data: Any) -> Iterable[ResponseEvent]:
        status = data.get("status")
        if status in ("failed", "canceled"):
            raise ProviderError(str(data.get("error") or f"Prediction {status}."))
        if status != "succeeded":
            raise ProviderError(f"Prediction did not finish in time (status: {status}).")
        self.finished = True
        self.finish_reason = "stop"
        metrics = data.get("metrics") or {}
        self.input_tokens = metrics.get("input_token_count")
        self.output_tokens = metrics.get("output_token_count")
        output = data.get("output")
        text = "".join(str(part) for part in output) if isinstance(output, list) else str(output or "")
        return [ContentDelta(text=text)] if text else []


INTERPRETERS: Dict[ProviderDialect, Type[FrameInterpreter]] = {
    ProviderDialect.OPENAI: OpenAIInterpreter,
    ProviderDialect.OPENAI_COMPATIBLE: OpenAIInterpreter,
    ProviderDialect.AZURE_OPENAI: OpenAIInterpreter,
    ProviderDialect.CLOUDFLARE: CloudflareInterpreter,
    ProviderDialect.CLAUDE: ClaudeInterpreter,
    ProviderDialect.GEMINI: GeminiInterpreter,
    ProviderDialect.VERTEXAI: GeminiInterpreter,
    ProviderDialect.COHERE: CohereInterpreter,
    ProviderDialect.OLLAMA: OllamaInterpreter,
    ProviderDialect.ERNIE: ErnieInterpreter,
    ProviderDialect.QIANWEN: QianwenInterpreter,
    ProviderDialect.BEDROCK: BedrockInterpreter,
    ProviderDialect.REPLICATE: ReplicateInterpreter,
}


# ----------------------------------------------------------------------
# Decoder
# ----------------------------------------------------------------------
class _Cancelled(Exception):
    pass


_INTERPRETER_FAULTS = (KeyError, TypeError, ValueError, AttributeError, IndexError)
_STREAM_FAULTS = (ParseFailure, ProviderError, RequestTimeout, TransportFailure) + _INTERPRETER_FAULTS


def _error_event(exc: BaseException) -> ErrorEvent:
    if isinstance(exc, ParseFailure):
        return ErrorEvent(kind=ErrorKind.PARSE_FAILURE, message=str(exc))
    if isinstance(exc, ProviderError):
        return ErrorEvent(kind=ErrorKind.PROVIDER_ERROR, message=str(exc), status=exc.status)
    if isinstance(exc, RequestTimeout):
        return ErrorEvent(kind=ErrorKind.TIMEOUT, message=str(exc))
    if isinstance(exc, TransportFailure):
        return ErrorEvent(kind=ErrorKind.TRANSPORT_FAILURE, message=str(exc))
    return ErrorEvent(kind=ErrorKind.PARSE_FAILURE, message=f"Unexpected frame shape: {exc!r}")


class StreamDecoder:
    """Single-use decoder for one response body."""

    def __init__(
        self,
        stream_format: StreamFormat,
        interpreter: FrameInterpreter,
        *,
        cancelled: Optional[Callable[[], bool]] = None,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stream_format = stream_format
        self.interpreter = interpreter
        self._cancelled = cancelled or (lambda: False)
        self._deadline = deadline
        self._clock = clock
        self._used = False

    def decode(self, chunks: Iterable[bytes], *, content_type: str = "") -> Iterator[ResponseEvent]:
        if self._used:
            raise RuntimeError("StreamDecoder instances are single-use; create a new one per response.")
        self._used = True

        error: Optional[ErrorEvent] = None
        try:
            for event in self._events(self._guarded(chunks), content_type):
                yield event
        except _Cancelled:
            yield Done(cancelled=True, finish_reason="cancelled")
            return
        except _STREAM_FAULTS as exc:
            # Aborting the socket surfaces as whatever the reader hit first.
            if self._cancelled():
                yield Done(cancelled=True, finish_reason="cancelled")
                return
            error = _error_event(exc)

        if error is not None:
            LOGGER.warning("Response stream failed (%s): %s", error.kind.value, error.message)
            yield error
            yield Done(finish_reason="error")
            return

        usage = self.interpreter.usage()
        if usage is not None:
            yield usage
        yield Done(finish_reason=self.interpreter.finish_reason)

    def _guarded(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        self._check()
        for chunk in chunks:
            self._check()
            yield chunk
        self._check()

    def _check(self) -> None:
        if self._cancelled():
            raise _Cancelled()
        if self._deadline is not None and self._clock() > self._deadline:
            raise RequestTimeout("The exchange exceeded its overall time limit.")

    def _events(self, chunks: Iterator[bytes], content_type: str) -> Iterator[ResponseEvent]:
        interpreter = self.interpreter
        stream_format = self.stream_format
        if stream_format is StreamFormat.SSE and "application/json" in content_type.lower():
            stream_format = StreamFormat.JSON

        if stream_format is StreamFormat.JSON:
            yield from interpreter.complete(_load_json(b"".join(chunks)))
        elif stream_format is StreamFormat.SSE:
            for frame in iter_sse(chunks):
                if interpreter.is_sentinel(frame.data):
                    interpreter.finished = True
                    break
                if not frame.data.strip():
                    continue
                yield from interpreter.feed(_load_json(frame.data), frame.event)
                if interpreter.finished:
                    break
        elif stream_format is StreamFormat.NDJSON:
            for line in iter_ndjson(chunks):
                yield from interpreter.feed(_load_json(line))
                if interpreter.finished:
                    break
        elif stream_format is StreamFormat.AWS_EVENT_STREAM:
            for message in iter_event_stream(chunks):
                if message.message_type != "event":
                    raise ProviderError(
                        f"{message.headers.get(':exception-type', message.message_type)}: "
                        f"{extract_error_message(message.payload)}"
                    )
                yield from interpreter.feed(_load_json(message.payload), message.event_type)
        else:  # pragma: no cover - exhaustive over StreamFormat
            raise ParseFailure(f"Unsupported stream format {stream_format}")

        if not interpreter.finished and interpreter.terminator_required and interpreter.finish_reason is None:
            raise ParseFailure("Stream ended before the provider signalled completion.")
        yield from interpreter.flush()


def create_decoder(
    descriptor: ProviderDescriptor,
    *,
    stream: bool,
    cancelled: Optional[Callable[[], bool]] = None,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> StreamDecoder:
    interpreter = INTERPRETERS[descriptor.dialect]()
    return StreamDecoder(
        descriptor.wire_format(stream), interpreter, cancelled=cancelled, deadline=deadline, clock=clock
    )


def decode(chunks: Iterable[bytes], descriptor: ProviderDescriptor, *, stream: bool = True) -> Iterator[ResponseEvent]:
    """Decode a complete or streamed response body for *descriptor*."""

    return create_decoder(descriptor, stream=stream).decode(chunks)
