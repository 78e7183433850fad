import io
import logging
import threading

import pytest

from ask_core.api import service
from ask_core.api.service import (
    ChatSession,
    get_conversation_messages,
    list_conversations,
    resolve_system_prompt,
    run_chat,
    stream_chat,
)
from ask_core.domain.exceptions import (
    ApiError,
    BusinessError,
    ConversationNotFoundError,
    RequestCancelled,
    StoreError,
    ValidationError,
)
from ask_core.domain.models import ChatRequest, Message
from ask_core.infrastructure.storage.sql_store import SqlConversationStore
from ask_core.streaming.channel import CancelToken
from ask_core.streaming.writer import StreamWriter


class FakeProvider:
    name = "fake"

    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [["Hello", ", ", "world"]])
        self.error = error
        self.requests = []

    def models(self):
        return ["fake-1"]

    def chat(self, req, stream, cancel=None):
        self.requests.append(req)
        try:
            for token in self.replies.pop(0):
                stream.send(token, cancel)
            if self.error is not None:
                raise self.error
        finally:
            stream.close()


@pytest.fixture
def store(tmp_path):
    s = SqlConversationStore(tmp_path / "history.db")
    yield s
    s.close()


def _req():
    return ChatRequest(model="fake-1", messages=[Message("user", "hi")])


def test_stream_chat_pipe_output():
    out = io.StringIO()
    text = stream_chat(FakeProvider(), _req(), StreamWriter(out, is_tty=False))
    assert text == "Hello, world"
    assert out.getvalue() == "Hello, world\n"


def test_stream_chat_tty_output():
    out = io.StringIO()
    stream_chat(FakeProvider(), _req(), StreamWriter(out, is_tty=True), buffer_size=1)
    assert out.getvalue() == "Hello, world"


def test_stream_chat_provider_error_after_partial_output():
    err = ApiError(code="API_ERROR", message="boom", http_status=400)
    out = io.StringIO()
    with pytest.raises(ApiError):
        stream_chat(FakeProvider(replies=[["partial"]], error=err), _req(), StreamWriter(out, is_tty=False))
    assert out.getvalue() == "partial\n"


def test_stream_chat_provider_failing_before_close_does_not_hang():
    class EarlyFailure:
        name = "early"

        def chat(self, req, stream, cancel=None):
            raise RuntimeError("failed before streaming")

    out = io.StringIO()
    with pytest.raises(RuntimeError):
        stream_chat(EarlyFailure(), _req(), StreamWriter(out, is_tty=True))
    assert out.getvalue() == ""


def test_stream_chat_output_failure_cancels_provider():
    observed = []

    class Endless:
        name = "endless"

        def chat(self, req, stream, cancel=None):
            try:
                while True:
                    stream.send("x", cancel)
            except RequestCancelled as e:
                observed.append(e)
                raise
            finally:
                stream.close()

    class BrokenOut(io.StringIO):
        def write(self, s):
            raise OSError("broken pipe")

    with pytest.raises(BusinessError) as exc:
        stream_chat(Endless(), _req(), StreamWriter(BrokenOut(), is_tty=True), buffer_size=2)
    assert exc.value.code == "OUTPUT_ERROR"
    assert len(observed) == 1


def test_stream_chat_cancel_token():
    cancel = CancelToken()
    cancel.cancel()

    class Cancellable:
        name = "c"

        def chat(self, req, stream, cancel=None):
            try:
                cancel.raise_if_cancelled()
            finally:
                stream.close()

    with pytest.raises(RequestCancelled):
        stream_chat(Cancellable(), _req(), StreamWriter(io.StringIO(), is_tty=True), cancel)


def test_chat_session_multi_turn_persists_without_duplicates(store):
    provider = FakeProvider(replies=[["A1"], ["A2"], ["A3"]])
    session = ChatSession(provider, StreamWriter(io.StringIO(), True), store=store, model="fake-1", system_prompt="be nice")

    first = session.send("Q1")
    second = session.send("Q2")
    third = session.send("Q3")
    assert first.conversation_id == second.conversation_id == third.conversation_id
    assert third.response == "A3"
    assert third.history_error is None

    # 第三轮请求包含完整上下文
    assert [(m.role, m.content) for m in provider.requests[2].messages] == [
        ("system", "be nice"),
        ("user", "Q1"),
        ("assistant", "A1"),
        ("user", "Q2"),
        ("assistant", "A2"),
        ("user", "Q3"),
    ]

    conv = store.get_conversation(first.conversation_id)
    assert conv.title == "Q1"
    assert conv.provider == "fake"
    assert conv.model == "fake-1"
    assert [m.content for m in conv.messages] == ["be nice", "Q1", "A1", "Q2", "A2", "Q3", "A3"]


def test_chat_session_provider_failure_drops_prompt(store):
    provider = FakeProvider(replies=[[], ["ok"]], error=None)
    session = ChatSession(provider, StreamWriter(io.StringIO(), True), store=store, model="fake-1")
    provider.error = ApiError(code="API_ERROR", message="bad", http_status=400)
    with pytest.raises(ApiError):
        session.send("first try")
    assert session.conversation.messages == []
    assert session.conversation.id is None

    provider.error = None
    outcome = session.send("second try")
    assert [m.content for m in store.get_conversation(outcome.conversation_id).messages] == ["second try", "ok"]


def test_chat_session_history_failure_is_warning(caplog):
    class BrokenStore:
        def save_conversation(self, conversation):
            raise StoreError(code="STORE_WRITE_ERROR", message="disk full")

    out = io.StringIO()
    session = ChatSession(FakeProvider(), StreamWriter(out, False), store=BrokenStore(), model="fake-1")
    with caplog.at_level(logging.WARNING, logger="ask_core"):
        outcome = session.send("hi")
    assert outcome.response == "Hello, world"
    assert out.getvalue() == "Hello, world\n"
    assert outcome.history_error is not None
    assert outcome.history_error.code == "STORE_WRITE_ERROR"
    assert any("failed to save to history" in r.getMessage() for r in caplog.records)


def test_chat_session_reset(store):
    session = ChatSession(FakeProvider(replies=[["a"], ["b"]]), StreamWriter(io.StringIO(), True), store=store, model="fake-1")
    first = session.send("one")
    session.reset()
    second = session.send("two")
    assert first.conversation_id != second.conversation_id


def test_resolve_system_prompt(tmp_path):
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("You are a pirate.", encoding="utf-8")
    assert resolve_system_prompt(None) == ""
    assert resolve_system_prompt("plain") == "plain"
    assert resolve_system_prompt(f"@{prompt_file}") == "You are a pirate."
    with pytest.raises(ValidationError) as exc:
        resolve_system_prompt(f"@{tmp_path / 'missing.txt'}")
    assert exc.value.code == "SYSTEM_PROMPT_ERROR"


def test_history_queries(store):
    session = ChatSession(FakeProvider(replies=[["4"], ["blue"]]), StreamWriter(io.StringIO(), True), store=store, model="fake-1")
    first = session.send("what is 2+2")
    session.reset()
    second = session.send("sky colour")

    listed = list_conversations(store=store)
    assert [c["id"] for c in listed] == [second.conversation_id, first.conversation_id]
    assert listed[0]["title"] == "sky colour"
    assert [c["id"] for c in list_conversations(search="2+2", store=store)] == [first.conversation_id]

    detail = get_conversation_messages(first.conversation_id, store=store)
    assert [(m["role"], m["content"]) for m in detail["messages"]] == [("user", "what is 2+2"), ("assistant", "4")]
    assert detail["created_at"] is not None

    with pytest.raises(ConversationNotFoundError):
        get_conversation_messages(999, store=store)


def test_run_chat_saves_and_continues(monkeypatch, store):
    provider = FakeProvider(replies=[["first"], ["second"]])
    monkeypatch.setattr(service, "create_provider", lambda name=None: provider)
    monkeypatch.setattr(service, "get_default_store", lambda: store)

    out = io.StringIO()
    outcome = run_chat("hello", is_tty=True, model="fake-1", out=out)
    assert out.getvalue() == "first"
    assert outcome.conversation_id is not None

    again = run_chat("and again", is_tty=True, model="fake-1", conversation_id=outcome.conversation_id, out=io.StringIO())
    assert again.conversation_id == outcome.conversation_id
    assert [(m.role, m.content) for m in provider.requests[1].messages] == [
        ("user", "hello"),
        ("assistant", "first"),
        ("user", "and again"),
    ]
    contents = [m.content for m in store.get_conversation(outcome.conversation_id).messages]
    assert contents == ["hello", "first", "and again", "second"]


def test_run_chat_without_history(monkeypatch):
    monkeypatch.setattr(service, "create_provider", lambda name=None: FakeProvider())
    monkeypatch.setattr(service, "get_default_store", _refuse_store)
    outcome = run_chat("hi", is_tty=True, model="fake-1", save_history=False, out=io.StringIO())
    assert outcome.response == "Hello, world"
    assert outcome.conversation_id is None


def test_run_chat_unknown_conversation(monkeypatch, store):
    monkeypatch.setattr(service, "create_provider", lambda name=None: FakeProvider())
    monkeypatch.setattr(service, "get_default_store", lambda: store)
    with pytest.raises(ConversationNotFoundError):
        run_chat("hi", is_tty=True, model="fake-1", conversation_id=42, out=io.StringIO())


def _refuse_store():
    raise AssertionError("store must not be opened")


def test_run_chat_piped_output_is_not_saved(monkeypatch):
    monkeypatch.setattr(service, "create_provider", lambda name=None: FakeProvider())
    monkeypatch.setattr(service, "get_default_store", _refuse_store)
    out = io.StringIO()
    outcome = run_chat("hi", is_tty=False, model="fake-1", out=out)
    assert out.getvalue() == "Hello, world\n"
    assert outcome.conversation_id is None


def test_run_chat_blank_prompt_is_not_saved(monkeypatch):
    monkeypatch.setattr(service, "create_provider", lambda name=None: FakeProvider())
    monkeypatch.setattr(service, "get_default_store", _refuse_store)
    outcome = run_chat("   ", is_tty=True, model="fake-1", out=io.StringIO())
    assert outcome.conversation_id is None


def test_run_chat_piped_output_saved_when_requested(monkeypatch, store):
    monkeypatch.setattr(service, "create_provider", lambda name=None: FakeProvider())
    monkeypatch.setattr(service, "get_default_store", lambda: store)
    outcome = run_chat("hi", is_tty=False, model="fake-1", save_history=True, out=io.StringIO())
    assert outcome.conversation_id is not None
    assert [m.content for m in store.get_conversation(outcome.conversation_id).messages] == ["hi", "Hello, world"]


def test_stream_chat_interrupt_cancels_provider():
    observed = []

    class Endless:
        name = "endless"

        def chat(self, req, stream, cancel=None):
            try:
                for _ in range(10000):
                    stream.send("x", cancel)
            except RequestCancelled as e:
                observed.append(e)
                raise
            finally:
                stream.close()

    class InterruptingOut(io.StringIO):
        def write(self, s):
            raise KeyboardInterrupt

    raised = []

    def run():
        try:
            stream_chat(Endless(), _req(), StreamWriter(InterruptingOut(), is_tty=True), buffer_size=2)
        except KeyboardInterrupt as e:
            raised.append(e)

    th = threading.Thread(target=run, daemon=True)
    th.start()
    th.join(timeout=5)
    assert not th.is_alive()
    assert len(raised) == 1
    assert len(observed) == 1
