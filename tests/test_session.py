from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from llmbridge.llm import Attachment, ConfigurationError, Message, ModelSpec, ProviderError, SessionBusy, Usage
from llmbridge.session import ContextManager, Session, SessionState, SessionStore
from llmbridge.tokenization import PER_ATTACHMENT_TOKENS, PER_MESSAGE_OVERHEAD, TokenCounter

LIMITED = ModelSpec(name="m", max_input_tokens=8000)


def _history() -> List[Message]:
    return [
        Message(role="user", content="m1"),
        Message(role="assistant", content="m2"),
        Message(role="user", content="m3"),
        Message(role="assistant", content="m4"),
        Message(role="user", content="m5"),
        Message(role="assistant", content="m6"),
    ]


class RecordingSummarizer:
    def __init__(self, reply: str = "the gist") -> None:
        self.reply = reply
        self.calls: List[List[Message]] = []

    def __call__(self, messages: List[Message]) -> str:
        self.calls.append(list(messages))
        return self.reply


def _manager(**kwargs) -> ContextManager:
    kwargs.setdefault("compress_threshold", 1000)
    return ContextManager(summarize_prompt="Summarize.", summary_prompt="Summary so far: ", **kwargs)


def test_token_counter_estimates_by_characters():
    counter = TokenCounter()
    assert counter.count("") == 0
    assert counter.count("abc") == 1
    assert counter.count("x" * 400) == 100
    message = Message(role="user", content="x" * 40, attachments=(Attachment(url="https://e/x.png"),))
    assert counter.count_message(message) == PER_MESSAGE_OVERHEAD + 10 + PER_ATTACHMENT_TOKENS


def test_no_compression_below_threshold():
    session = Session(messages=_history(), tokens=999)
    summarizer = RecordingSummarizer()
    assert _manager().maybe_compress(session, LIMITED, summarizer) is False
    assert summarizer.calls == []


def test_no_compression_without_input_limit():
    session = Session(messages=_history(), tokens=5000)
    summarizer = RecordingSummarizer()
    assert _manager().maybe_compress(session, ModelSpec(name="open"), summarizer) is False
    assert session.messages == _history()


def test_compression_keeps_last_exchange():
    session = Session(messages=_history(), tokens=1200)
    summarizer = RecordingSummarizer()

    assert _manager().maybe_compress(session, LIMITED, summarizer) is True

    sent = summarizer.calls[0]
    assert sent[:-1] == _history()[:4]
    assert sent[-1] == Message(role="user", content="Summarize.")
    assert session.messages == [
        Message(role="system", content="Summary so far: the gist"),
        Message(role="user", content="m5"),
        Message(role="assistant", content="m6"),
    ]
    assert session.summary == "the gist"
    assert session.state is SessionState.ACTIVE
    assert session.tokens == TokenCounter().count_messages(session.messages)
    assert session.tokens < 1000


def test_compression_can_summarise_everything():
    session = Session(messages=_history(), tokens=1200)
    summarizer = RecordingSummarizer()

    assert _manager(keep_last_exchange=False).compress(session, summarizer) is True

    assert summarizer.calls[0][:-1] == _history()
    assert session.messages == [Message(role="system", content="Summary so far: the gist")]


def test_single_stored_exchange_is_summarised_whole():
    history = [Message(role="user", content="old"), Message(role="assistant", content="reply")]
    session = Session(messages=list(history), tokens=1500)
    summarizer = RecordingSummarizer()

    assert _manager().maybe_compress(session, LIMITED, summarizer) is True

    assert summarizer.calls[0][:-1] == history
    assert session.messages == [Message(role="system", content="Summary so far: the gist")]


def test_compression_runs_at_most_once_per_turn():
    session = Session(messages=_history(), tokens=1200)
    summarizer = RecordingSummarizer()
    manager = _manager()
    session.tokens = 5000
    assert manager.maybe_compress(session, LIMITED, summarizer) is True
    session.tokens = 5000
    assert manager.maybe_compress(session, LIMITED, summarizer) is False
    assert len(summarizer.calls) == 1


def test_failed_summary_leaves_history_untouched():
    session = Session(messages=_history(), tokens=1200)

    def failing(messages):
        raise ProviderError("upstream exploded", status=500)

    assert _manager().compress(session, failing) is False
    assert session.messages == _history()
    assert session.tokens == 1200
    assert session.state is SessionState.ACTIVE
    assert not session.compressed_this_turn


def test_empty_summary_is_treated_as_failure():
    session = Session(messages=_history(), tokens=1200)
    assert _manager().compress(session, RecordingSummarizer(reply="  ")) is False
    assert session.messages == _history()


def test_record_exchange_prefers_reported_usage():
    session = Session()
    manager = _manager()
    session.compressed_this_turn = True

    manager.record_exchange(session, [Message(role="user", content="hi")], "hello", Usage(input_tokens=40, output_tokens=7))

    assert [message.role for message in session.messages] == ["user", "assistant"]
    assert session.tokens == 47
    assert session.turns == 1
    assert session.compressed_this_turn is False


def test_record_exchange_estimates_without_usage():
    session = Session()
    manager = _manager()
    manager.record_exchange(session, [Message(role="user", content="x" * 40)], "y" * 20)
    assert session.tokens == 2 * PER_MESSAGE_OVERHEAD + 10 + 5


def test_session_rejects_concurrent_exchanges():
    session = Session()
    session.acquire()
    assert session.busy
    with pytest.raises(SessionBusy):
        session.acquire()
    session.release()
    session.acquire()
    session.release()


def test_store_round_trips_sessions(tmp_path: Path):
    store = SessionStore(tmp_path)
    session = Session(session_id="work", messages=_history(), tokens=321, summary="s", turns=3)

    path = store.save(session)

    assert path == tmp_path / "work.json"
    loaded = store.load("work")
    assert loaded.messages == session.messages
    assert (loaded.tokens, loaded.summary, loaded.turns) == (321, "s", 3)
    assert loaded.created_at == session.created_at
    assert store.list() == ["work"]
    assert store.delete("work") is True
    assert store.list() == []


def test_store_sanitises_names_and_reports_missing(tmp_path: Path):
    store = SessionStore(tmp_path)
    assert store.path_for("../etc/passwd").parent == tmp_path
    with pytest.raises(ConfigurationError, match="No saved session"):
        store.load("missing")
    created = store.load_or_create("fresh")
    assert created.session_id == "fresh"
    assert created.messages == []


def test_store_rejects_corrupt_files(tmp_path: Path):
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid JSON"):
        SessionStore(tmp_path).load("broken")
