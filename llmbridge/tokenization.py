"""Token estimation used for compression decisions and input-limit checks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import tiktoken

from .llm import Message
from .logging import get_logger

LOGGER = get_logger(__name__)

# Role markers and separators the chat formats wrap around each message.
PER_MESSAGE_OVERHEAD = 3
# Rough cost of an image attachment; providers bill images very differently.
PER_ATTACHMENT_TOKENS = 85


@dataclass
class TokenCounter:
    """Approximate token counts: ``len(text) / 4`` unless a tiktoken encoding is named."""

    encoding_name: Optional[str] = None
    fallback_chars_per_token: float = 4.0

    def __post_init__(self) -> None:
        self._encoding = None
        if self.encoding_name:
            self._encoding = self._resolve_encoding(self.encoding_name)

    @staticmethod
    def _resolve_encoding(name: str):  # type: ignore[no-untyped-def]
        try:
            return tiktoken.encoding_for_model(name)
        except KeyError:
            try:
                return tiktoken.get_encoding(name)
            except ValueError:
                LOGGER.warning("Unknown token encoding '%s'; using cl100k_base.", name)
                return tiktoken.get_encoding("cl100k_base")

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is not None:
            return len(self._encoding.encode(text, disallowed_special=()))
        if self.fallback_chars_per_token <= 0:
            return len(text)
        return max(1, int(len(text) / self.fallback_chars_per_token))

    def count_message(self, message: Message) -> int:
        return (
            PER_MESSAGE_OVERHEAD
            + self.count(message.content)
            + PER_ATTACHMENT_TOKENS * len(message.attachments)
        )

    def count_messages(self, messages: Iterable[Message]) -> int:
        total = 0
        for message in messages:
            total += self.count_message(message)
        return total
