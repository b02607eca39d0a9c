"""CLI interface for whisperchat."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import click

from . import __version__
from .config import DATA_DIR, ERROR_REPLY, SESSIONS_DIR, SQLITE_PATH, USER_ID
from .models import GROUP_PERMISSIONS

PERIODS = ["Today", "Yesterday", "Previous 7 days", "Previous 30 days", "Older"]


@contextmanager
def _open_store():
    from .storage import ChatStore, StorageError

    try:
        store = ChatStore(SQLITE_PATH)
    except StorageError as exc:
        raise click.ClickException(str(exc))
    try:
        yield store
    except StorageError as exc:
        raise click.ClickException(f"Database error: {exc}")
    finally:
        store.close()


def _format_ts(ts: float | None) -> str:
    if ts is None:
        return "Unknown date"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _mask(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}…{api_key[-4:]}"


def group_by_period(chats: list[dict], now: datetime | None = None) -> dict[str, list[dict]]:
    """Bucket chats by creation time, the way the history sidebar shows them."""
    now = now or datetime.now()
    today = datetime(now.year, now.month, now.day).timestamp()
    yesterday = today - 86400
    last_week = today - 7 * 86400
    last_month = today - 30 * 86400

    groups: dict[str, list[dict]] = {p: [] for p in PERIODS}
    for chat in chats:
        created = chat["created_at"]
        if created >= today:
            groups["Today"].append(chat)
        elif created >= yesterday:
            groups["Yesterday"].append(chat)
        elif created >= last_week:
            groups["Previous 7 days"].append(chat)
        elif created >= last_month:
            groups["Previous 30 days"].append(chat)
        else:
            groups["Older"].append(chat)
    return groups


def default_prompt(attachment_count: int) -> str:
    """Message sent when the user attaches files without typing anything."""
    plural = "s" if attachment_count > 1 else ""
    return f"I'm sending {attachment_count} file(s). Please analyze the content{plural}."


def _notify(level: str, message: str):
    click.secho(message, fg="red" if level == "error" else None, err=True)


class _StreamPrinter:
    """Echo each new piece of a streaming reply as it arrives."""

    def __init__(self):
        self.printed = 0

    def __call__(self, session):
        if not session.is_generating:
            return
        text = session.display_text
        if len(text) > self.printed:
            click.echo(text[self.printed:], nl=False)
            self.printed = len(text)

    def reset(self):
        self.printed = 0


def _send(session, printer: _StreamPrinter, text: str, attachments: list):
    from .session import GenerationInProgressError, MessagePersistError, MissingAPIKeyError

    if not text.strip() and attachments:
        text = default_prompt(len(attachments))

    printer.reset()
    click.secho("assistant> ", bold=True, nl=False)
    try:
        reply = asyncio.run(session.send(text, attachments))
    except (GenerationInProgressError, MissingAPIKeyError, MessagePersistError) as exc:
        click.echo()
        raise click.ClickException(str(exc))

    if reply.content == ERROR_REPLY:
        click.secho(reply.content, fg="red")
    else:
        click.echo()


def _interactive(session, printer, store, pointer, settings, models):
    from .files import attachment_from_path
    from .session import change_model, new_conversation

    click.echo(
        f"Chat: {session.conversation.title} ({session.conversation.model}). "
        "Commands: /new, /model ID, /models, /attach PATH, /quit"
    )
    staged = []

    while True:
        try:
            line = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
        except (EOFError, click.Abort):
            click.echo()
            return

        command, _, arg = line.strip().partition(" ")
        if command in ("/quit", "/exit"):
            return
        if command == "/new":
            session.conversation = new_conversation(store, pointer, settings, USER_ID)
            click.echo(f"Started a new chat ({session.conversation.model}).")
            continue
        if command == "/models":
            for m in models:
                marker = "*" if m.id == session.conversation.model else " "
                click.echo(f" {marker} {m.id}  ({m.name}, {m.max_tokens:,} tokens)")
            continue
        if command == "/model":
            if not arg:
                click.echo(f"Current model: {session.conversation.model}")
            else:
                change_model(store, session.conversation, arg.strip())
                click.echo(f"Model set to {arg.strip()}.")
            continue
        if command == "/attach":
            path = Path(arg.strip())
            if not arg.strip() or not path.is_file():
                click.secho(f"Not a file: {arg.strip() or '(none)'}", fg="red", err=True)
                continue
            try:
                staged.append(attachment_from_path(path))
            except OSError as exc:
                click.secho(f"Cannot attach {arg}: {exc}", fg="red", err=True)
            else:
                click.echo(f"Attached {staged[-1].name} ({len(staged)} pending).")
            continue

        if not line.strip() and not staged:
            continue

        try:
            _send(session, printer, line, staged)
        except click.ClickException as exc:
            exc.show()
        staged = []


@click.group()
@click.version_option(version=__version__, prog_name="whisperchat")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def cli(verbose: bool):
    """whisperchat — Chat with OpenRouter models from your terminal.

    Set your API key, fetch and enable some models, then start chatting.
    Conversations are kept locally and can be browsed, searched and served
    to other tools over MCP.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.argument("message", required=False)
@click.option("--new", "start_new", is_flag=True, help="Start a new chat instead of resuming")
@click.option("--model", "model_id", help="Model to use for this chat")
@click.option(
    "--attach",
    "attach_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Attach a file (repeatable)",
)
def chat(message: str | None, start_new: bool, model_id: str | None, attach_paths: tuple[str, ...]):
    """Send MESSAGE, or start an interactive chat when MESSAGE is omitted.

    Resumes the chat last used in this terminal unless --new is given.

    Example:
        whisperchat chat "Explain quicksort"
    """
    from .files import attachment_from_path
    from .session import (
        ChatSession,
        change_model,
        ensure_visible_model,
        load_or_create_conversation,
        new_conversation,
        visible_models,
    )
    from .storage import SessionPointer

    with _open_store() as store:
        settings = store.load_settings(USER_ID)
        if not settings.api_key:
            raise click.ClickException(
                "Please set your OpenRouter API key first:\n  whisperchat key set <API_KEY>"
            )

        pointer = SessionPointer(SESSIONS_DIR)
        if start_new:
            conversation = new_conversation(store, pointer, settings, USER_ID)
        else:
            conversation = load_or_create_conversation(store, pointer, settings, USER_ID)

        models = visible_models(store, settings, USER_ID)
        if model_id:
            change_model(store, conversation, model_id)
        else:
            ensure_visible_model(store, conversation, models)

        printer = _StreamPrinter()
        session = ChatSession(conversation, store, settings, notify=_notify, on_update=printer)
        attachments = [attachment_from_path(p) for p in attach_paths]

        if message is not None:
            _send(session, printer, message, attachments)
        else:
            _interactive(session, printer, store, pointer, settings, models)


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Maximum chats to list")
@click.option("--keyword", help="Only chats whose title matches")
def history(limit: int, keyword: str | None):
    """List your chats, newest first."""
    with _open_store() as store:
        chats = store.list_chats(limit=limit, keyword=keyword)

    if not chats:
        click.echo("No chats found.")
        return

    for period, items in group_by_period(chats).items():
        if not items:
            continue
        click.echo(click.style(period, bold=True))
        for c in items:
            click.echo(f"  {c['title']}  ({c['message_count']} msgs, {c['model']})")
            click.echo(f"    ID: {c['id']}  Updated: {_format_ts(c['updated_at'])}")
        click.echo()


@cli.command()
@click.argument("query")
@click.option("--limit", default=10, show_default=True)
def search(query: str, limit: int):
    """Full-text search across chat titles and messages."""
    with _open_store() as store:
        results = store.search_chats(query, limit=limit)

    if not results:
        click.echo(f"No chats found matching '{query}'.")
        return

    for i, r in enumerate(results, 1):
        click.echo(f"{i}. {click.style(r['title'], bold=True)}  ({_format_ts(r['updated_at'])})")
        click.echo(f"   ID: {r['id']}")
        click.echo(f"   {r['snippet'].replace(chr(10), ' ')[:150]}")


@cli.command()
@click.argument("chat_id")
def show(chat_id: str):
    """Print the full transcript of a chat."""
    from .session import select_conversation
    from .storage import SessionPointer

    with _open_store() as store:
        conv = select_conversation(store, SessionPointer(SESSIONS_DIR), chat_id)

    if conv is None:
        raise click.ClickException(f"Chat not found: {chat_id}")

    click.echo(click.style(conv.title, bold=True))
    click.echo(f"Model: {conv.model} | Created: {_format_ts(conv.created_at)}")
    click.echo()
    for msg in conv.messages:
        click.echo(click.style(f"{msg.role} ({_format_ts(msg.timestamp)}):", bold=True))
        click.echo(msg.content)
        for a in msg.attachments:
            click.echo(f"  [attached: {a.name}, {a.type}]")
        click.echo()


@cli.command()
@click.argument("chat_id")
def delete(chat_id: str):
    """Delete a chat and all of its messages."""
    from .storage import SessionPointer

    with _open_store() as store:
        deleted = store.delete_chat(chat_id)

    if not deleted:
        raise click.ClickException(f"Chat not found: {chat_id}")
    SessionPointer(SESSIONS_DIR).clear_if(chat_id)
    click.echo("Chat deleted.")


# -- settings ----------------------------------------------------------------


@cli.group()
def key():
    """Manage your OpenRouter API key."""


@key.command("set")
@click.argument("api_key")
def key_set(api_key: str):
    """Save API_KEY for the current user."""
    if not api_key.strip():
        raise click.ClickException("API key is required")
    with _open_store() as store:
        store.save_api_key(USER_ID, api_key.strip())
    click.echo("API key saved.")


@key.command("show")
def key_show():
    """Show the saved API key (masked)."""
    with _open_store() as store:
        api_key = store.get_api_key(USER_ID)
    click.echo(_mask(api_key) if api_key else "No API key set.")


@cli.group()
def models():
    """Manage the model catalog."""


@models.command("fetch")
@click.option("--enable", "enable_ids", multiple=True, help="Enable this model (repeatable)")
def models_fetch(enable_ids: tuple[str, ...]):
    """Fetch the provider's model list and replace the catalog.

    Models that were enabled before stay enabled if they still exist.
    """
    import httpx

    from .api import ModelFetchError, fetch_models

    with _open_store() as store:
        api_key = store.get_api_key(USER_ID)
        if not api_key:
            raise click.ClickException("API key is required")

        try:
            fetched = asyncio.run(fetch_models(api_key))
        except ModelFetchError as exc:
            raise click.ClickException(f"Invalid API key or connection error ({exc.status_code})")
        except httpx.HTTPError as exc:
            raise click.ClickException(f"Invalid API key or connection error ({exc})")

        keep = {m.id for m in store.get_models(enabled_only=True)} | set(enable_ids)
        store.replace_models(fetched, enabled_ids=keep)

    enabled = sum(1 for m in fetched if m.id in keep)
    click.echo(f"Fetched {len(fetched)} models ({enabled} enabled).")


@models.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include disabled models")
@click.option("--search", "query", help="Filter by id or name")
def models_list(show_all: bool, query: str | None):
    """List catalog models."""
    with _open_store() as store:
        catalog = store.get_models(enabled_only=not show_all)

    if query:
        q = query.lower()
        catalog = [m for m in catalog if q in m.id.lower() or q in m.name.lower()]

    if not catalog:
        click.echo("No models. Run: whisperchat models fetch")
        return
    for m in catalog:
        marker = "+" if m.enabled else " "
        click.echo(f" {marker} {m.id}  ({m.name}, {m.max_tokens:,} tokens)")


@models.command("enable")
@click.argument("model_ids", nargs=-1, required=True)
def models_enable(model_ids: tuple[str, ...]):
    """Enable one or more models."""
    _toggle_models(model_ids, True)


@models.command("disable")
@click.argument("model_ids", nargs=-1, required=True)
def models_disable(model_ids: tuple[str, ...]):
    """Disable one or more models."""
    _toggle_models(model_ids, False)


def _toggle_models(model_ids: tuple[str, ...], enabled: bool):
    with _open_store() as store:
        missing = [m for m in model_ids if not store.set_model_enabled(m, enabled)]
    if missing:
        raise click.ClickException(f"Not in catalog: {', '.join(missing)}")
    click.echo(f"{'Enabled' if enabled else 'Disabled'} {len(model_ids)} model(s).")


# -- organisation ------------------------------------------------------------


@cli.group()
def company():
    """Show or edit the company record."""


@company.command("show")
def company_show():
    with _open_store() as store:
        c = store.get_company()
    if c is None:
        click.echo("No company set.")
        return
    click.echo(click.style(c.name, bold=True))
    click.echo(f"  ID:   {c.id}")
    click.echo(f"  CNPJ: {c.cnpj or '-'}")
    click.echo(f"  Logo: {c.logo or '-'}")


@company.command("set")
@click.option("--name", required=True)
@click.option("--logo")
@click.option("--cnpj")
def company_set(name: str, logo: str | None, cnpj: str | None):
    """Create or update the company."""
    with _open_store() as store:
        try:
            c = store.save_company(name, logo=logo, cnpj=cnpj)
        except ValueError as exc:
            raise click.ClickException(str(exc))
    click.echo(f"Company saved: {c.name} ({c.id})")


@cli.group()
def groups():
    """Manage user groups and the models they may use."""


@groups.command("list")
def groups_list():
    with _open_store() as store:
        items = store.list_groups()
    if not items:
        click.echo("No groups.")
        return
    for g in items:
        allowed = ", ".join(g.authorized_models) or "all enabled models"
        click.echo(f"{click.style(g.name, bold=True)}  ID: {g.id}")
        click.echo(f"  Models: {allowed}")
        granted = ", ".join(p for p, on in g.permissions.items() if on) or "none"
        click.echo(f"  Permissions: {granted}")


@groups.command("create")
@click.argument("name")
def groups_create(name: str):
    with _open_store() as store:
        c = store.get_company()
        if c is None:
            raise click.ClickException("Create the company first: whisperchat company set --name ...")
        try:
            g = store.create_group(c.id, name)
        except ValueError as exc:
            raise click.ClickException(str(exc))
    click.echo(f"Group created: {g.name} ({g.id})")


@groups.command("delete")
@click.argument("group_id")
@click.confirmation_option(prompt="Delete this group?")
def groups_delete(group_id: str):
    with _open_store() as store:
        if not store.delete_group(group_id):
            raise click.ClickException(f"Group not found: {group_id}")
    click.echo("Group deleted.")


@groups.command("authorize")
@click.argument("group_id")
@click.argument("model_ids", nargs=-1)
def groups_authorize(group_id: str, model_ids: tuple[str, ...]):
    """Set the models GROUP_ID may use (none = all enabled models)."""
    with _open_store() as store:
        g = store.update_group(group_id, authorized_models=list(model_ids))
    if g is None:
        raise click.ClickException(f"Group not found: {group_id}")
    click.echo(f"{g.name}: {len(g.authorized_models)} authorized model(s).")


@groups.command("rename")
@click.argument("group_id")
@click.argument("name")
def groups_rename(group_id: str, name: str):
    with _open_store() as store:
        try:
            g = store.update_group(group_id, name=name)
        except ValueError as exc:
            raise click.ClickException(str(exc))
    if g is None:
        raise click.ClickException(f"Group not found: {group_id}")
    click.echo(f"Group renamed to {g.name}.")


@groups.command("permit")
@click.argument("group_id")
@click.argument("permission", type=click.Choice(GROUP_PERMISSIONS))
@click.option("--off", is_flag=True, help="Revoke the permission instead")
def groups_permit(group_id: str, permission: str, off: bool):
    """Grant (or with --off, revoke) PERMISSION for GROUP_ID."""
    with _open_store() as store:
        g = store.set_group_permission(group_id, permission, not off)
    if g is None:
        raise click.ClickException(f"Group not found: {group_id}")
    click.echo(f"{g.name}: {permission} {'revoked' if off else 'granted'}.")


@groups.command("add-user")
@click.argument("group_id")
@click.argument("user_id")
def groups_add_user(group_id: str, user_id: str):
    with _open_store() as store:
        if store.get_group(group_id) is None:
            raise click.ClickException(f"Group not found: {group_id}")
        store.add_group_member(group_id, user_id)
    click.echo(f"Added {user_id}.")


@groups.command("remove-user")
@click.argument("group_id")
@click.argument("user_id")
def groups_remove_user(group_id: str, user_id: str):
    with _open_store() as store:
        removed = store.remove_group_member(group_id, user_id)
    if not removed:
        raise click.ClickException(f"{user_id} is not in group {group_id}")
    click.echo(f"Removed {user_id}.")


@groups.command("members")
@click.argument("group_id")
def groups_members(group_id: str):
    with _open_store() as store:
        members = store.list_group_members(group_id)
    if not members:
        click.echo("No members.")
    for m in members:
        click.echo(f"  {m.user_id}")


# -- maintenance -------------------------------------------------------------


@cli.command()
def serve():
    """Start the MCP server (stdio transport) over your chat history."""
    if not SQLITE_PATH.exists():
        click.echo("Warning: No chats yet. Start one with: whisperchat chat", err=True)

    from .server import mcp

    mcp.run(transport="stdio")


@cli.command()
def stats():
    """Show statistics about your chats."""
    if not SQLITE_PATH.exists():
        click.echo("No data found. Start a chat first: whisperchat chat")
        return

    with _open_store() as store:
        s = store.get_stats()

    click.echo()
    click.echo(click.style("Chat Statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,}")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Avg msgs/conv:  {s['avg_messages_per_conversation']}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")
    if s["top_models"]:
        click.echo("  Models used:")
        for m in s["top_models"]:
            click.echo(f"    {m['model']}: {m['count']:,}")

    db_size = SQLITE_PATH.stat().st_size if SQLITE_PATH.exists() else 0
    click.echo(f"  Storage:        {db_size / (1024 * 1024):.1f} MB")
    click.echo(f"  Location:       {DATA_DIR}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete all chats and settings. Are you sure?")
def reset():
    """Delete all local data and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
