import asyncio
import json

import httpx
import pytest

from conftest import sse
from whisperchat.config import ATTACHMENT_SEPARATOR, DEFAULT_MODEL, DEFAULT_TITLE, ERROR_REPLY
from whisperchat.models import Attachment, Settings
from whisperchat.session import (
    ChatSession,
    GenerationInProgressError,
    MessagePersistError,
    MissingAPIKeyError,
    ReplyState,
    derive_title,
    ensure_visible_model,
    load_or_create_conversation,
    new_conversation,
    visible_models,
)
from whisperchat.storage import StorageError


class Notices(list):
    def __call__(self, level, message):
        self.append((level, message))

    def __bool__(self):
        # Always truthy so `notify or default` keeps this recorder even when empty.
        return True


def make_session(store, settings, client, **kwargs):
    conversation = store.create_chat("anthropic/claude-3-haiku")
    notices = Notices()
    session = ChatSession(conversation, store, settings, client=client, notify=notices, **kwargs)
    return session, notices


def test_derive_title_boundaries():
    assert derive_title("Explain quicksort") == "Explain quicksort"
    assert derive_title("a" * 30) == "a" * 30
    assert derive_title("a" * 31) == "a" * 30 + "..."


@pytest.mark.asyncio
async def test_first_turn_streams_commits_and_titles(store, settings, streaming_client):
    snapshots = []

    def on_update(session):
        if session.is_generating:
            snapshots.append(session.display_text)

    client = streaming_client(sse("Quicksort ", "is a divide..."))
    session, notices = make_session(store, settings, client, on_update=on_update)

    reply = await session.send("Explain quicksort")

    assert reply.role == "assistant"
    assert reply.content == "Quicksort is a divide..."
    assert session.conversation.title == "Explain quicksort"
    assert session.state is ReplyState.IDLE
    assert session.display_text == ""
    assert "Quicksort " in snapshots
    assert "Quicksort is a divide..." in snapshots
    assert notices == []

    saved = store.get_chat(session.conversation.id)
    assert saved.title == "Explain quicksort"
    assert [(m.role, m.content) for m in saved.messages] == [
        ("user", "Explain quicksort"),
        ("assistant", "Quicksort is a divide..."),
    ]


@pytest.mark.asyncio
async def test_history_is_sent_with_each_turn(store, settings, streaming_client, requests_seen):
    session, _ = make_session(store, settings, streaming_client(sse("First answer")))
    await session.send("First question")

    session.client = streaming_client(sse("Second answer"))
    await session.send("Second question")

    body = json.loads(requests_seen[-1].content)
    assert [m["content"] for m in body["messages"]] == [
        "First question",
        "First answer",
        "Second question",
    ]
    # The title comes from the first turn only
    assert session.conversation.title == "First question"


@pytest.mark.asyncio
async def test_failure_after_one_chunk_on_later_turn(store, settings, streaming_client):
    session, notices = make_session(store, settings, streaming_client(sse("Sure.")))
    await session.send("Hello there")
    title = session.conversation.title

    session.client = streaming_client(
        sse("Partial", done=False), error=httpx.ReadError("connection reset")
    )
    reply = await session.send("And now?")

    assert reply.content == ERROR_REPLY
    assert session.conversation.title == title
    assert session.state is ReplyState.IDLE
    assert notices == [("error", "Failed to generate response")]

    saved = store.get_chat(session.conversation.id)
    assert saved.messages[-1].content == ERROR_REPLY
    assert len(saved.messages) == 4


@pytest.mark.asyncio
async def test_error_status_becomes_error_reply(store, settings, streaming_client):
    session, notices = make_session(store, settings, streaming_client(status=401, body=b"nope"))

    reply = await session.send("Hi")

    assert reply.content == ERROR_REPLY
    assert session.conversation.title == DEFAULT_TITLE
    assert notices == [("error", "Failed to generate response")]


@pytest.mark.asyncio
async def test_second_send_rejected_while_streaming(store, settings, streaming_client):
    gate = asyncio.Event()
    session, _ = make_session(store, settings, streaming_client(sse("one", done=False), gate=gate))

    task = asyncio.create_task(session.send("first"))
    for _ in range(200):
        if session.state is ReplyState.STREAMING:
            break
        await asyncio.sleep(0)
    assert session.state is ReplyState.STREAMING
    assert session.display_text == "one"

    with pytest.raises(GenerationInProgressError):
        await session.send("second")

    gate.set()
    reply = await task
    assert reply.content == "one"
    assert [m.content for m in session.conversation.messages] == ["first", "one"]


@pytest.mark.asyncio
async def test_missing_api_key(store, streaming_client, requests_seen):
    session, notices = make_session(store, Settings(), streaming_client(sse("x")))

    with pytest.raises(MissingAPIKeyError):
        await session.send("Hi")

    assert notices == [("error", "Please set your OpenRouter API key first")]
    assert requests_seen == []
    assert store.get_messages(session.conversation.id) == []


@pytest.mark.asyncio
async def test_user_message_save_failure_stops_send(
    store, settings, streaming_client, requests_seen, monkeypatch
):
    session, notices = make_session(store, settings, streaming_client(sse("x")))

    def broken(*args, **kwargs):
        raise StorageError("disk I/O error")

    monkeypatch.setattr(store, "add_message", broken)

    with pytest.raises(MessagePersistError):
        await session.send("Hi")

    assert requests_seen == []
    assert [m.content for m in session.conversation.messages] == ["Hi"]
    assert session.state is ReplyState.IDLE
    assert notices == [("error", "Failed to save your message")]


@pytest.mark.asyncio
async def test_attachments_are_sent_and_stored(store, settings, streaming_client, requests_seen):
    session, _ = make_session(store, settings, streaming_client(sse("Looks good")))
    notes = Attachment(name="notes.txt", type="text/plain", size=11, content="hello world")

    await session.send("Review this", [notes])

    body = json.loads(requests_seen[0].content)
    assert body["messages"][0]["content"] == (
        "Review this" + ATTACHMENT_SEPARATOR + "[File: notes.txt]\nhello world"
    )
    saved = store.get_chat(session.conversation.id)
    assert saved.messages[0].attachments == [notes]


def test_new_conversation_uses_first_enabled_model(store, pointer, settings):
    conv = new_conversation(store, pointer, settings, "local")
    assert conv.model == "anthropic/claude-3-haiku"
    assert pointer.get() == conv.id

    conv = new_conversation(store, pointer, Settings(api_key="k"), "local")
    assert conv.model == DEFAULT_MODEL


def test_load_or_create_conversation(store, pointer, settings):
    created = load_or_create_conversation(store, pointer, settings, "local")
    assert store.chat_exists(created.id)

    # Pointer wins
    other = store.create_chat("openai/gpt-4o", user_id="local")
    pointer.set(created.id)
    assert load_or_create_conversation(store, pointer, settings, "local").id == created.id

    # Stale pointer falls back to the latest chat
    pointer.set("missing")
    store.touch_chat(other.id)
    assert load_or_create_conversation(store, pointer, settings, "local").id == other.id
    assert pointer.get() == other.id


def test_visible_models_follow_group_authorization(store, settings):
    assert visible_models(store, settings, "ana") == settings.models

    company = store.save_company("Acme")
    group = store.create_group(company.id, "Engineering")
    store.add_group_member(group.id, "ana")

    store.update_group(group.id, authorized_models=["openai/gpt-4o"])
    assert [m.id for m in visible_models(store, settings, "ana")] == ["openai/gpt-4o"]

    # Nothing authorized is enabled: fall back to everything enabled
    store.update_group(group.id, authorized_models=["meta/llama-3"])
    assert visible_models(store, settings, "ana") == settings.models


def test_ensure_visible_model_switches_hidden_model(store, settings):
    conv = store.create_chat("retired/model")
    assert ensure_visible_model(store, conv, settings.models) == "anthropic/claude-3-haiku"
    assert store.get_chat(conv.id).model == "anthropic/claude-3-haiku"


@pytest.mark.asyncio
async def test_reply_save_failure_keeps_commit(store, settings, streaming_client, monkeypatch):
    session, notices = make_session(store, settings, streaming_client(sse("Quicksort ", "is a divide...")))

    def broken(*args, **kwargs):
        raise StorageError("database is locked")

    monkeypatch.setattr(store, "update_message_content", broken)

    reply = await session.send("Explain quicksort")

    assert reply.content == "Quicksort is a divide..."
    assert session.conversation.messages[-1].content == "Quicksort is a divide..."
    assert session.conversation.title == "Explain quicksort"
    assert notices == [("error", "Failed to save response to database")]
    assert session.state is ReplyState.IDLE


@pytest.mark.asyncio
async def test_error_reply_save_failure_is_only_logged(
    store, settings, streaming_client, monkeypatch, caplog
):
    session, notices = make_session(
        store, settings, streaming_client(sse("Par", done=False), error=httpx.ReadError("reset"))
    )

    def broken(*args, **kwargs):
        raise StorageError("database is locked")

    monkeypatch.setattr(store, "update_message_content", broken)

    reply = await session.send("Hi")

    assert reply.content == ERROR_REPLY
    assert notices == [("error", "Failed to generate response")]
    assert "Error saving error reply" in caplog.text
    assert session.state is ReplyState.IDLE
