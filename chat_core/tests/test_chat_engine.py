"""测试 ChatEngine 的完整发送轮次。"""

import tempfile
from pathlib import Path

from chat_core.agents.chat_engine import ChatEngine, EngineConfig
from chat_core.domain.exceptions import ApiError, PersistenceError
from chat_core.domain.models import ChatMessage, InlineData, Part, StreamChunk
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.store.conversation_store import ConversationStore


IMAGE = Part(inline_data=InlineData(data="AAAA", mime_type="image/png"))


def _grounded(text, *uris):
    return StreamChunk.from_payload({
        "text": text,
        "candidates": [{"groundingMetadata": {"groundingChunks": [{"web": {"uri": u, "title": u.upper()}} for u in uris]}}],
    })


class FakeClient:
    """模拟的生成服务客户端。"""
    name = "fake"
    default_model = "fake-model"

    def __init__(self, chunks=(), error=None, image_parts=None):
        self.chunks = list(chunks)
        self.error = error
        self.image_parts = image_parts or [IMAGE]
        self.stream_payloads = []
        self.image_requests = []

    def generate_stream(self, payload):
        self.stream_payloads.append(payload)
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    def generate_text(self, prompt, model=None):
        return prompt

    def generate_image(self, parts):
        self.image_requests.append(list(parts))
        return list(self.image_parts)


class RecordingPersistence:
    def __init__(self, fail_on_save=False):
        self.calls = []
        self.fail_on_save = fail_on_save

    def save_conversation(self, conversation_id, title, model=None):
        self.calls.append(("save_conversation", conversation_id, title, model))

    def save(self, conversation_id, message):
        if self.fail_on_save:
            raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")
        self.calls.append(("save", conversation_id, message.role, message.text))

    def truncate_messages(self, conversation_id, keep):
        self.calls.append(("truncate_messages", conversation_id, keep))

    def load(self, conversation_id):
        return []

    def load_all(self):
        return []

    def delete_conversation(self, conversation_id):
        self.calls.append(("delete_conversation", conversation_id))


def _engine(client, persistence=None):
    return ChatEngine(
        store=ConversationStore(),
        client=client,
        persistence=persistence,
        config=EngineConfig(model="gemma-3-27b-it"),
    )


def test_streaming_turn_updates_store_per_chunk():
    client = FakeClient([StreamChunk.from_text("Hel"), _grounded("lo", "a"), _grounded("!", "b", "a")])
    persistence = RecordingPersistence()
    engine = _engine(client, persistence)
    seen = []
    engine.store.subscribe(lambda cid, conv: conv.messages and seen.append(conv.messages[-1]))

    events = list(engine.send_message_stream("Tell me a joke"))

    assert [e.kind for e in events] == ["delta", "delta", "delta", "final"]
    assert [e.message.text for e in events] == ["Hel", "Hello", "Hello!", "Hello!"]
    assert [e.delta_text for e in events[:3]] == ["Hel", "lo", "!"]
    final = events[-1].message
    assert [s.uri for s in final.sources] == ["a", "b"]

    conv = engine.active_conversation
    assert conv.title == "Tell me a joke"
    assert [m.role for m in conv.messages] == ["user", "model"]
    assert conv.messages[-1] == final
    assert not engine.store.is_streaming(conv.id)
    assert not engine.is_loading
    # placeholder + one update per chunk + final
    assert [m.text for m in seen] == ["", "Hel", "Hello", "Hello!", "Hello!"]

    assert client.stream_payloads == [{"model": "gemma-3-27b-it", "prompt": "Tell me a joke"}]

    engine.wait_for_persistence()
    assert persistence.calls == [
        ("save_conversation", conv.id, "Tell me a joke", "gemma-3-27b-it"),
        ("save", conv.id, "user", "Tell me a joke"),
        ("save", conv.id, "model", "Hello!"),
    ]


def test_second_turn_sends_history_without_current_message():
    client = FakeClient([StreamChunk.from_text("answer")])
    engine = _engine(client)
    engine.send_message("first question")
    engine.send_message("second question")

    second = client.stream_payloads[1]
    assert second["prompt"] == "second question"
    assert second["history"] == [
        {"role": "user", "parts": [{"text": "first question"}]},
        {"role": "model", "parts": [{"text": "answer"}]},
    ]
    assert len(engine.active_conversation.messages) == 4


def test_image_intent_routes_to_image_endpoint():
    client = FakeClient()
    engine = _engine(client)

    final = engine.send_message("Generate an image of a cat")

    assert client.stream_payloads == []
    assert client.image_requests == [[Part(text="Generate an image of a cat")]]
    assert final.role == "model"
    assert final.parts == (IMAGE,)
    assert engine.active_conversation.messages[-1] is final


def test_attached_image_streams_with_parts():
    client = FakeClient([StreamChunk.from_text("a cat")])
    engine = _engine(client)

    engine.send_message("make this brighter", [IMAGE])

    assert client.image_requests == []
    payload = client.stream_payloads[0]
    assert "prompt" not in payload
    assert payload["parts"] == [
        {"text": "make this brighter"},
        {"inlineData": {"data": "AAAA", "mimeType": "image/png"}},
    ]


def test_server_error_becomes_error_message():
    client = FakeClient([StreamChunk.from_text("ok")])
    engine = _engine(client)
    engine.send_message("first")
    before = engine.active_conversation.messages

    client.chunks = []
    client.error = ApiError(code="HTTP_ERROR", message="Server responded 500: boom", http_status=500)
    events = list(engine.send_message_stream("second"))

    assert [e.kind for e in events] == ["error"]
    messages = engine.active_conversation.messages
    assert messages[:2] == before
    assert messages[2].text == "second"
    assert messages[-1].role == "error"
    assert "500" in messages[-1].text and "boom" in messages[-1].text
    assert not engine.store.is_streaming(engine.active_conversation_id)
    assert not engine.is_loading


def test_error_after_partial_stream_replaces_partial_text():
    client = FakeClient([StreamChunk.from_text("half")], error=ApiError(code="X", message="connection reset"))
    engine = _engine(client)

    final = engine.send_message("hello")

    assert final.role == "error"
    assert [m.role for m in engine.active_conversation.messages] == ["user", "error"]


def test_send_is_gated_while_loading():
    client = FakeClient([StreamChunk.from_text("a"), StreamChunk.from_text("b")])
    engine = _engine(client)
    first = engine.send_message_stream("first")
    next(first)
    assert engine.is_loading

    assert engine.send_message("second") is None
    assert len(engine.active_conversation.messages) == 2
    assert len(client.stream_payloads) == 1

    list(first)
    assert not engine.is_loading
    assert engine.send_message("third").text == "ab"


def test_cancel_keeps_partial_text():
    client = FakeClient([StreamChunk.from_text("a"), StreamChunk.from_text("b"), StreamChunk.from_text("c")])
    engine = _engine(client)
    stream = engine.send_message_stream("go")
    assert next(stream).message.text == "a"

    engine.cancel()
    rest = list(stream)

    assert [e.kind for e in rest] == ["final"]
    assert rest[0].message.text == "a"
    assert not engine.store.is_streaming(engine.active_conversation_id)


def test_abandoned_stream_closes_turn():
    client = FakeClient([StreamChunk.from_text("a"), StreamChunk.from_text("b")])
    engine = _engine(client)
    stream = engine.send_message_stream("go")
    next(stream)
    stream.close()

    cid = engine.active_conversation_id
    assert not engine.store.is_streaming(cid)
    assert engine.store.get(cid).messages[-1].text == "a"
    assert not engine.is_loading


def test_edit_message_truncates_and_resends():
    client = FakeClient([StreamChunk.from_text("reply")])
    engine = _engine(client)
    engine.send_message("q1")
    engine.send_message("q2")
    assert len(engine.active_conversation.messages) == 4

    final = engine.edit_message(0, "q1 edited")

    messages = engine.active_conversation.messages
    assert [m.text for m in messages] == ["q1 edited", "reply"]
    assert final is messages[-1]
    # 重发时历史中已不包含被截断的消息
    assert "history" not in client.stream_payloads[-1]


def test_edit_message_truncates_storage_before_new_turn():
    persistence = RecordingPersistence()
    engine = _engine(FakeClient([StreamChunk.from_text("reply")]), persistence)
    engine.send_message("q1")
    engine.send_message("q2")
    cid = engine.active_conversation_id

    engine.edit_message(2, "q2 edited")
    engine.wait_for_persistence()

    assert persistence.calls[-3:] == [
        ("truncate_messages", cid, 2),
        ("save", cid, "user", "q2 edited"),
        ("save", cid, "model", "reply"),
    ]


def test_reload_after_edit_matches_memory():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        engine = _engine(FakeClient([StreamChunk.from_text("reply")]), JsonPersistenceAdapter(root=root))
        engine.send_message("q1")
        engine.send_message("q2")
        engine.edit_message(0, "q1 edited")
        engine.wait_for_persistence()
        cid = engine.active_conversation_id
        in_memory = [(m.role, m.text) for m in engine.active_conversation.messages]
        engine.close()

        restored = _engine(FakeClient(), JsonPersistenceAdapter(root=root))
        restored.load_saved_conversations()

        assert in_memory == [("user", "q1 edited"), ("model", "reply")]
        assert [(m.role, m.text) for m in restored.store.get(cid).messages] == in_memory
        restored.close()


def test_edit_message_without_active_conversation():
    engine = _engine(FakeClient())
    assert engine.edit_message(0, "x") is None


def test_persistence_failure_does_not_affect_memory():
    client = FakeClient([StreamChunk.from_text("fine")])
    engine = _engine(client, RecordingPersistence(fail_on_save=True))

    final = engine.send_message("hello")
    engine.wait_for_persistence()

    assert final.text == "fine"
    assert [m.text for m in engine.active_conversation.messages] == ["hello", "fine"]


def test_new_chat_and_select_conversation():
    client = FakeClient([StreamChunk.from_text("x")])
    engine = _engine(client)
    engine.send_message("one")
    first_id = engine.active_conversation_id
    engine.start_new_chat()
    engine.send_message("two")
    second_id = engine.active_conversation_id

    assert first_id != second_id
    assert set(engine.store.conversations) == {first_id, second_id}
    engine.select_conversation(first_id)
    assert engine.active_conversation.title == "one"


def test_load_saved_conversations_from_json_store():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        client = FakeClient([StreamChunk.from_text("stored answer")])
        engine = _engine(client, JsonPersistenceAdapter(root=root))
        engine.send_message("remember me")
        engine.wait_for_persistence()
        cid = engine.active_conversation_id
        engine.close()

        restored = _engine(FakeClient(), JsonPersistenceAdapter(root=root))
        assert restored.load_saved_conversations() == 1
        conv = restored.store.get(cid)
        assert conv.title == "remember me"
        assert [(m.role, m.text) for m in conv.messages] == [("user", "remember me"), ("model", "stored answer")]
        assert conv.chat_session is not None
        restored.close()


def test_load_saved_conversations_failure_is_logged():
    class Broken(RecordingPersistence):
        def load_all(self):
            raise PersistenceError(code="STORE_READ_ERROR", message="unreadable")

    engine = _engine(FakeClient(), Broken())
    assert engine.load_saved_conversations() == 0
    assert engine.store.conversations == {}


def test_delete_conversation():
    persistence = RecordingPersistence()
    engine = _engine(FakeClient([StreamChunk.from_text("x")]), persistence)
    engine.send_message("bye")
    cid = engine.active_conversation_id

    engine.delete_conversation(cid)
    engine.wait_for_persistence()

    assert engine.store.get(cid) is None
    assert engine.active_conversation_id is None
    assert persistence.calls[-1] == ("delete_conversation", cid)


def test_error_message_is_not_sent_as_history():
    client = FakeClient(error=ApiError(code="X", message="boom"))
    engine = _engine(client)
    engine.send_message("first")
    client.error = None
    client.chunks = [StreamChunk.from_text("ok")]
    engine.send_message("second")

    assert client.stream_payloads[-1]["history"] == [{"role": "user", "parts": [{"text": "first"}]}]
    assert engine.active_conversation.messages[1] == ChatMessage.error("boom")
