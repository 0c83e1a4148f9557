"""Conversation sessions and summarisation-based context compression."""

from __future__ import annotations

import json
import os
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .config import DEFAULT_SUMMARIZE_PROMPT, DEFAULT_SUMMARY_PROMPT, PROJECT_ROOT, GatewayConfig
from .llm import ConfigurationError, GatewayError, Message, ModelSpec, SessionBusy, Usage
from .logging import get_logger
from .tokenization import TokenCounter

LOGGER = get_logger(__name__)

DEFAULT_SESSIONS_DIR = PROJECT_ROOT / "sessions"

# Receives the messages to summarise (ending with the summarise instruction)
# and returns the summary text, raising GatewayError on failure.
Summarizer = Callable[[List[Message]], str]


class SessionState(str, Enum):
    ACTIVE = "active"
    COMPRESSING = "compressing"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Ordered chat history plus the bookkeeping needed to compress it."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    messages: List[Message] = field(default_factory=list)
    tokens: int = 0
    summary: Optional[str] = None
    turns: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    state: SessionState = SessionState.ACTIVE
    compressed_this_turn: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # ------------------------------------------------------------------
    # In-flight guard
    # ------------------------------------------------------------------
    def acquire(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise SessionBusy(f"Session {self.session_id} already has an exchange in flight.")

    def release(self) -> None:
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "turns": self.turns,
            "tokens": self.tokens,
            "summary": self.summary,
            "messages": [message.to_json() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Session":
        created = payload.get("created_at")
        created_at = datetime.fromisoformat(created) if isinstance(created, str) else _utcnow()
        return cls(
            session_id=str(payload.get("session_id") or uuid.uuid4().hex),
            messages=[Message.from_json(item) for item in payload.get("messages") or []],
            tokens=int(payload.get("tokens", 0)),
            summary=payload.get("summary"),
            turns=int(payload.get("turns", 0)),
            created_at=created_at,
        )


class ContextManager:
    """Keeps a session under its compression threshold.

    State moves ``ACTIVE -> COMPRESSING -> ACTIVE``. Compression runs at most
    once per turn; the flag is cleared when the next exchange is recorded.
    """

    def __init__(
        self,
        *,
        compress_threshold: int,
        summarize_prompt: str = DEFAULT_SUMMARIZE_PROMPT,
        summary_prompt: str = DEFAULT_SUMMARY_PROMPT,
        keep_last_exchange: bool = True,
        counter: Optional[TokenCounter] = None,
    ) -> None:
        self.compress_threshold = compress_threshold
        self.summarize_prompt = summarize_prompt
        self.summary_prompt = summary_prompt
        self.keep_last_exchange = keep_last_exchange
        self.counter = counter or TokenCounter()

    @classmethod
    def from_config(cls, config: GatewayConfig, counter: Optional[TokenCounter] = None) -> "ContextManager":
        return cls(
            compress_threshold=config.compress_threshold,
            summarize_prompt=config.summarize_prompt,
            summary_prompt=config.summary_prompt,
            keep_last_exchange=config.keep_last_exchange,
            counter=counter or TokenCounter(encoding_name=config.token_encoding),
        )

    def needs_compression(self, session: Session, model: ModelSpec) -> bool:
        # Models without an input limit are never compressed.
        if model.max_input_tokens is None:
            return False
        return bool(session.messages) and session.tokens >= self.compress_threshold

    def maybe_compress(self, session: Session, model: ModelSpec, summarize: Summarizer) -> bool:
        if not self.needs_compression(session, model):
            return False
        return self.compress(session, summarize)

    def _split(self, messages: Sequence[Message]) -> int:
        """Index where the verbatim tail starts."""

        if not self.keep_last_exchange:
            return len(messages)
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                return index
        return len(messages)

    def compress(self, session: Session, summarize: Summarizer) -> bool:
        """Replace older history with one summary message. Returns True if compressed."""

        if session.compressed_this_turn:
            return False
        split = self._split(session.messages)
        if split == 0:
            # Only one exchange is stored; the triggering message is still in flight, so summarise it all.
            split = len(session.messages)
        older, kept = list(session.messages[:split]), list(session.messages[split:])
        if not older:
            return False

        LOGGER.info(
            "Compressing session %s: %s messages, ~%s tokens.",
            session.session_id,
            len(session.messages),
            session.tokens,
        )
        session.state = SessionState.COMPRESSING
        try:
            summary = summarize(older + [Message(role="user", content=self.summarize_prompt)])
        except GatewayError as exc:
            LOGGER.warning("Summarisation failed for session %s; keeping full history: %s", session.session_id, exc)
            return False
        finally:
            session.state = SessionState.ACTIVE

        summary = (summary or "").strip()
        if not summary:
            LOGGER.warning("Summarisation returned no text for session %s; keeping full history.", session.session_id)
            return False

        session.messages = [Message(role="system", content=f"{self.summary_prompt}{summary}")] + kept
        session.summary = summary
        session.compressed_this_turn = True
        session.tokens = self.counter.count_messages(session.messages)
        LOGGER.info("Session %s compressed to ~%s tokens.", session.session_id, session.tokens)
        return True

    def record_exchange(
        self,
        session: Session,
        sent: Sequence[Message],
        reply: str,
        usage: Optional[Usage] = None,
    ) -> None:
        session.messages.extend(sent)
        session.messages.append(Message(role="assistant", content=reply))
        session.turns += 1
        session.compressed_this_turn = False
        if usage is not None and usage.input_tokens is not None:
            output = usage.output_tokens if usage.output_tokens is not None else self.counter.count(reply)
            session.tokens = usage.input_tokens + output
        else:
            session.tokens = self.counter.count_messages(session.messages)


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class SessionStore:
    """Saves sessions as JSON files, one per name."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory or DEFAULT_SESSIONS_DIR).expanduser()

    def path_for(self, name: str) -> Path:
        safe = _UNSAFE_NAME.sub("_", name).strip("._")
        if not safe:
            raise ConfigurationError(f"Invalid session name {name!r}.")
        return self.directory / f"{safe}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def save(self, session: Session, name: Optional[str] = None) -> Path:
        path = self.path_for(name or session.session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(session.to_dict(), handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
        LOGGER.debug("Saved session %s to %s", session.session_id, path)
        return path

    def load(self, name: str) -> Session:
        path = self.path_for(name)
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"No saved session named '{name}' in {self.directory}.") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Session file {path} is not valid JSON: {exc}") from exc
        return Session.from_dict(payload)

    def load_or_create(self, name: str) -> Session:
        if self.exists(name):
            return self.load(name)
        return Session(session_id=name)

    def list(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json"))

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        return True
