import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from chat_core.domain.exceptions import BusinessError, InvalidStateError
from chat_core.domain.message import MessageContext, SelectedText
from chat_core.engine.identity import StaticIdentityProvider
from chat_core.engine.orchestrator import ConversationOrchestrator
from chat_core.infrastructure.storage.json_store import JsonTranscriptStore


def test_json_store_save_and_load():
    with tempfile.TemporaryDirectory() as d:
        store = JsonTranscriptStore(root=Path(d) / ".storage")
        now = datetime.now(timezone.utc)
        store.save(
            "proj/one",
            [{"id": "m1", "role": "user", "display_text": "hi", "context": {"notes": ["a.md"]}, "created_at": now}],
        )
        items = store.load("proj/one")
        assert len(items) == 1
        assert items[0]["id"] == "m1"
        assert items[0]["created_at"] == now
        assert store.list_identities() == ["proj/one"]
        assert store.load("other") == []


def test_json_store_identities_do_not_collide():
    with tempfile.TemporaryDirectory() as d:
        store = JsonTranscriptStore(root=d)
        now = datetime.now(timezone.utc)
        store.save("a/b", [{"id": "x", "role": "user", "display_text": "1", "context": {}, "created_at": now}])
        store.save("a_b", [{"id": "y", "role": "user", "display_text": "2", "context": {}, "created_at": now}])
        assert store.load("a/b")[0]["id"] == "x"
        assert store.load("a_b")[0]["id"] == "y"


def test_json_store_delete_and_corrupt_file():
    with tempfile.TemporaryDirectory() as d:
        store = JsonTranscriptStore(root=d)
        store.save("p", [])
        store.delete("p")
        store.delete("p")
        assert store.list_identities() == []
        store._path("bad").write_text("{not json", encoding="utf-8")
        with pytest.raises(BusinessError) as ei:
            store.load("bad")
        assert ei.value.code == "STORE_READ_ERROR"


@pytest.mark.asyncio
async def test_orchestrator_save_and_restore_round_trip(resolver, invoker, tmp_path):
    transcripts = JsonTranscriptStore(root=tmp_path)
    identities = StaticIdentityProvider("proj")
    first = ConversationOrchestrator(resolver, invoker, identities, transcripts=transcripts, autosave=True)
    first.resolve_active_conversation()
    ctx = MessageContext(notes=("a.md",), selected_texts=(SelectedText(source="a.md", content="alp", start_line=1),))
    await first.send("question", ctx)
    await first.send("follow up")
    expected = first.get_display_messages()
    expected_llm = first.get_llm_messages()

    second = ConversationOrchestrator(resolver, invoker, identities, transcripts=transcripts)
    second.resolve_active_conversation()
    assert await second.restore() == 4
    restored = second.get_display_messages()
    assert [(m.id, m.role, m.display_text, m.context, m.created_at) for m in restored] == [
        (m.id, m.role, m.display_text, m.context, m.created_at) for m in expected
    ]
    assert all(m.status == "complete" for m in restored)
    assert second.get_llm_messages() == expected_llm
    with pytest.raises(InvalidStateError):
        await second.restore()


@pytest.mark.asyncio
async def test_autosave_skips_failed_replies_and_clear_deletes(resolver, invoker, tmp_path):
    from chat_core.domain.exceptions import ApiError

    transcripts = JsonTranscriptStore(root=tmp_path)
    orch = ConversationOrchestrator(resolver, invoker, StaticIdentityProvider(), transcripts=transcripts, autosave=True)
    invoker.error = ApiError(code="API_ERROR", message="down")
    await orch.send("hello")
    saved = transcripts.load("default")
    assert [e["role"] for e in saved] == ["user"]
    orch.clear()
    assert transcripts.load("default") == []


@pytest.mark.asyncio
async def test_autosave_writes_off_the_event_loop_thread(resolver, invoker, tmp_path):
    writer_threads = []

    class RecordingStore(JsonTranscriptStore):
        def save(self, identity, snapshot):
            writer_threads.append(threading.current_thread())
            super().save(identity, snapshot)

    transcripts = RecordingStore(root=tmp_path)
    orch = ConversationOrchestrator(resolver, invoker, StaticIdentityProvider(), transcripts=transcripts, autosave=True)
    await orch.send("hello")
    assert writer_threads and threading.main_thread() not in writer_threads
    assert [e["role"] for e in transcripts.load("default")] == ["user", "assistant"]
