"""Conversation state: submit a message, stream the reply, commit it.

A ChatSession owns one Conversation and at most one reply in flight:

    IDLE -> AWAITING_FIRST_CHUNK -> STREAMING -> COMMITTED | FAILED -> IDLE

While a reply streams, `display_text` always holds everything received so
far. When the stream finishes the text becomes the assistant message;
when it fails the message is replaced with ERROR_REPLY.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Iterable

import httpx

from . import api
from .config import DEFAULT_MODEL, ERROR_REPLY, TITLE_ELLIPSIS, TITLE_MAX_CHARS
from .models import Attachment, Conversation, Message, ModelInfo, Settings
from .storage import ChatStore, SessionPointer, StorageError

logger = logging.getLogger(__name__)

# notify(level, message); level is "info" or "error"
Notify = Callable[[str, str], None]


class ReplyState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    STREAMING = "streaming"
    COMMITTED = "committed"
    FAILED = "failed"


class GenerationInProgressError(Exception):
    """A reply is still streaming for this conversation."""


class MissingAPIKeyError(Exception):
    """No API key has been configured."""


class MessagePersistError(Exception):
    """The user's message could not be saved, so nothing was sent."""


def derive_title(text: str) -> str:
    """Chat title from the first user input: 30 characters, then an ellipsis."""
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return text


def _log_notice(level: str, message: str):
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


class ChatSession:
    """Drives one conversation through send → stream → commit."""

    def __init__(
        self,
        conversation: Conversation,
        store: ChatStore,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        notify: Notify | None = None,
        on_update: Callable[[ChatSession], None] | None = None,
    ):
        self.conversation = conversation
        self.store = store
        self.settings = settings
        self.client = client
        self.notify = notify or _log_notice
        self.on_update = on_update

        self.state = ReplyState.IDLE
        self.display_text = ""
        self._placeholder_saved = False

    @property
    def is_generating(self) -> bool:
        return self.state in (ReplyState.AWAITING_FIRST_CHUNK, ReplyState.STREAMING)

    def _changed(self):
        if self.on_update is not None:
            self.on_update(self)

    def _set_state(self, state: ReplyState):
        self.state = state
        self._changed()

    async def send(self, content: str, attachments: Iterable[Attachment] = ()) -> Message:
        """Submit user input and stream the assistant's reply.

        Returns the assistant message: the full reply, or ERROR_REPLY if the
        completion failed. Raises GenerationInProgressError while another
        reply streams, MissingAPIKeyError without an API key and
        MessagePersistError when the user message cannot be saved.
        """
        if self.is_generating:
            raise GenerationInProgressError(
                f"A reply is already being generated for chat {self.conversation.id}"
            )
        if not self.settings.api_key:
            self.notify("error", "Please set your OpenRouter API key first")
            raise MissingAPIKeyError("No OpenRouter API key configured")

        conversation = self.conversation
        history = list(conversation.messages)
        first_turn = not history
        user_message = Message(role="user", content=content, attachments=list(attachments))

        self._set_state(ReplyState.AWAITING_FIRST_CHUNK)

        try:
            self.store.add_message(conversation.id, user_message)
        except StorageError as exc:
            logger.error("Error saving user message: %s", exc)
            conversation.messages.append(user_message)
            self._set_state(ReplyState.IDLE)
            self.notify("error", "Failed to save your message")
            raise MessagePersistError(str(exc)) from exc

        if user_message.attachments:
            try:
                self.store.add_attachments(user_message.id, user_message.attachments)
            except StorageError as exc:
                # The message row stays; attachment rows are not retried
                logger.error("Error saving attachments for %s: %s", user_message.id, exc)

        placeholder = Message(role="assistant", content="")
        try:
            self.store.add_message(conversation.id, placeholder)
            self._placeholder_saved = True
        except StorageError as exc:
            logger.warning("Error saving reply placeholder: %s", exc)
            self._placeholder_saved = False

        conversation.messages.extend([user_message, placeholder])
        conversation.updated_at = max(time.time(), conversation.created_at)
        self.display_text = ""
        self._changed()

        def on_chunk(chunk: str):
            self.display_text += chunk
            if self.state is ReplyState.AWAITING_FIRST_CHUNK:
                self.state = ReplyState.STREAMING
            self._changed()

        def on_finish():
            self._commit(placeholder, content, first_turn)

        def on_error(exc: Exception):
            self._fail(placeholder, exc)

        try:
            await api.stream_completion(
                [*history, user_message],
                conversation.model,
                self.settings.api_key,
                on_chunk,
                on_error,
                on_finish,
                client=self.client,
            )
        except Exception as exc:
            if self.state is not ReplyState.FAILED:
                raise
            logger.debug("Reply for chat %s failed: %s", conversation.id, exc)
        finally:
            self.display_text = ""
            self._set_state(ReplyState.IDLE)

        return placeholder

    def _save_reply(self, message: Message):
        if self._placeholder_saved:
            self.store.update_message_content(message.id, message.content)
        else:
            self.store.add_message(self.conversation.id, message)
            self._placeholder_saved = True

    def _commit(self, placeholder: Message, user_input: str, first_turn: bool):
        logger.debug("Stream complete, final response length: %d", len(self.display_text))
        placeholder.content = self.display_text
        self.state = ReplyState.COMMITTED

        try:
            self._save_reply(placeholder)
        except StorageError as exc:
            logger.error("Error saving assistant message: %s", exc)
            self.notify("error", "Failed to save response to database")
        else:
            self._touch()

        if first_turn:
            self.conversation.title = derive_title(user_input)
            try:
                self.store.update_chat_title(self.conversation.id, self.conversation.title)
            except StorageError as exc:
                logger.error("Error updating chat title: %s", exc)

        self._changed()

    def _fail(self, placeholder: Message, exc: Exception):
        logger.error("Error streaming completion: %s", exc)
        placeholder.content = ERROR_REPLY
        self.state = ReplyState.FAILED
        self.notify("error", "Failed to generate response")

        try:
            self._save_reply(placeholder)
        except StorageError as save_exc:
            logger.error("Error saving error reply: %s", save_exc)

        self._changed()

    def _touch(self):
        now = time.time()
        self.conversation.updated_at = max(now, self.conversation.created_at)
        try:
            self.store.touch_chat(self.conversation.id, now)
        except StorageError as exc:
            logger.error("Error updating chat timestamp: %s", exc)


# -- conversation lifecycle --------------------------------------------------


def new_conversation(
    store: ChatStore,
    pointer: SessionPointer,
    settings: Settings,
    user_id: str | None = None,
) -> Conversation:
    """Start an empty chat on the first enabled model."""
    model = settings.models[0].id if settings.models else DEFAULT_MODEL
    try:
        chat = store.create_chat(model, user_id=user_id)
    except StorageError as exc:
        logger.error("Error creating chat: %s", exc)
        chat = Conversation(model=model)

    pointer.set(chat.id)
    return chat


def select_conversation(
    store: ChatStore, pointer: SessionPointer, chat_id: str
) -> Conversation | None:
    chat = store.get_chat(chat_id)
    if chat is not None:
        pointer.set(chat.id)
    return chat


def load_or_create_conversation(
    store: ChatStore,
    pointer: SessionPointer,
    settings: Settings,
    user_id: str | None = None,
) -> Conversation:
    """Resume this terminal's chat, else the latest one, else a new one."""
    stored_id = pointer.get()
    if stored_id:
        try:
            chat = select_conversation(store, pointer, stored_id)
        except StorageError as exc:
            logger.error("Error checking stored chat: %s", exc)
            chat = None
        if chat is not None:
            return chat

    try:
        chat = store.latest_chat(user_id)
    except StorageError as exc:
        logger.error("Error loading chat: %s", exc)
        chat = None

    if chat is None:
        return new_conversation(store, pointer, settings, user_id)

    pointer.set(chat.id)
    return chat


def change_model(store: ChatStore, conversation: Conversation, model_id: str):
    store.update_chat_model(conversation.id, model_id)
    conversation.model = model_id


def visible_models(store: ChatStore, settings: Settings, user_id: str) -> list[ModelInfo]:
    """Enabled models narrowed to those the user's groups authorize.

    Falls back to every enabled model when the user has no groups, the
    groups authorize nothing, or none of the authorized models is enabled.
    """
    try:
        groups = store.groups_for_user(user_id)
    except StorageError as exc:
        logger.error("Error fetching authorized models: %s", exc)
        return list(settings.models)

    authorized = {model_id for g in groups for model_id in g.authorized_models}
    if not authorized:
        return list(settings.models)

    allowed = [m for m in settings.models if m.id in authorized]
    return allowed or list(settings.models)


def ensure_visible_model(
    store: ChatStore, conversation: Conversation, models: list[ModelInfo]
) -> str:
    """Switch the chat to the first visible model if its own is not visible."""
    if models and not any(m.id == conversation.model for m in models):
        change_model(store, conversation, models[0].id)
    return conversation.model
