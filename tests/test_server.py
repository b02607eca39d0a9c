import pytest

from whisperchat import server
from whisperchat.models import Message, ModelInfo
from whisperchat.storage import ChatStore


@pytest.fixture
def db(tmp_path, monkeypatch):
    path = tmp_path / "whisperchat.db"
    store = ChatStore(path)
    monkeypatch.setattr(server, "SQLITE_PATH", path)
    monkeypatch.setattr(server, "_store", store)
    yield store
    store.close()


def test_tools_report_missing_data(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "SQLITE_PATH", tmp_path / "absent.db")
    assert server.get_stats().startswith("No chats found")


def test_list_search_and_read(db):
    chat = db.create_chat("openai/gpt-4o")
    db.update_chat_title(chat.id, "Explain quicksort")
    db.add_message(chat.id, Message(role="user", content="Explain quicksort"))
    db.add_message(chat.id, Message(role="assistant", content="Quicksort picks a pivot."))

    listing = server.list_conversations()
    assert "Explain quicksort" in listing
    assert "2 msgs" in listing

    found = server.search_conversations("pivot")
    assert chat.id in found

    transcript = server.get_conversation(chat.id)
    assert transcript.startswith("# Explain quicksort")
    assert "**Assistant**" in transcript
    assert "Quicksort picks a pivot." in transcript

    assert server.get_conversation("missing") == "Conversation not found: missing"


def test_long_transcript_is_truncated(db, monkeypatch):
    monkeypatch.setattr(server, "MAX_TRANSCRIPT_CHARS", 10)
    chat = db.create_chat("openai/gpt-4o")
    db.add_message(chat.id, Message(role="user", content="x" * 50))

    assert "Truncated" in server.get_conversation(chat.id)


def test_models_and_stats(db):
    db.replace_models(
        [
            ModelInfo(id="openai/gpt-4o", name="GPT-4o", max_tokens=128000),
            ModelInfo(id="meta/llama-3", name="Llama 3", max_tokens=8192),
        ],
        enabled_ids=["openai/gpt-4o"],
    )
    assert "meta/llama-3" not in server.list_models()
    assert "meta/llama-3" in server.list_models(include_disabled=True)

    db.create_chat("openai/gpt-4o")
    stats = server.get_stats()
    assert "**Conversations**: 1" in stats
    assert "openai/gpt-4o: 1 conversations" in stats
