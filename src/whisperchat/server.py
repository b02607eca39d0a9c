"""FastMCP server exposing the local chat history."""

from __future__ import annotations

import logging
import sys
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from .config import DATA_DIR, SQLITE_PATH
from .storage import ChatStore

# Logging to stderr only; stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

mcp = FastMCP(
    "whisperchat",
    instructions=(
        "Search and read the user's whisperchat conversations. "
        "Use search_conversations to find past chats by topic. "
        "Use get_conversation to read a full transcript. "
        "Use list_conversations to browse chats by date or title keyword. "
        "Use list_models and get_stats for an overview."
    ),
)

MAX_TRANSCRIPT_CHARS = 50_000

_store: ChatStore | None = None


def _get_store() -> ChatStore:
    global _store
    if _store is None:
        _store = ChatStore(SQLITE_PATH)
    return _store


def _format_ts(ts: float | None) -> str:
    if ts is None:
        return "Unknown date"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _check_data_exists() -> str | None:
    """Return an error message if there is no database yet."""
    if not SQLITE_PATH.exists():
        return "No chats found. Start one first:\n  whisperchat chat"
    return None


@mcp.tool()
def search_conversations(query: str, limit: int = 10) -> str:
    """Full-text search across chat titles and messages.

    Args:
        query: Words to search for (FTS5 syntax is accepted)
        limit: Maximum number of results (default 10)
    """
    err = _check_data_exists()
    if err:
        return err

    results = _get_store().search_chats(query, limit=limit)
    if not results:
        return f"No conversations found matching '{query}'."

    lines = [f"Found {len(results)} conversations matching '{query}':\n"]
    for i, r in enumerate(results, 1):
        lines.append(f"{i}. **{r['title']}**")
        lines.append(f"   ID: `{r['id']}`")
        lines.append(f"   Updated: {_format_ts(r['updated_at'])}")
        if r.get("snippet"):
            lines.append(f"   Preview: {r['snippet'].replace(chr(10), ' ')[:150]}")
        lines.append("")

    lines.append("Use get_conversation(conversation_id) to read the full transcript.")
    return "\n".join(lines)


@mcp.tool()
def get_conversation(conversation_id: str) -> str:
    """Retrieve a full chat transcript.

    Args:
        conversation_id: The chat id (from search or list results)
    """
    err = _check_data_exists()
    if err:
        return err

    conv = _get_store().get_chat(conversation_id)
    if conv is None:
        return f"Conversation not found: {conversation_id}"

    lines = [
        f"# {conv.title}",
        f"Date: {_format_ts(conv.created_at)}",
        f"Model: {conv.model}",
        f"Messages: {len(conv.messages)}",
        "",
        "---",
        "",
    ]
    truncated = (
        f"\n... [Truncated — conversation exceeds {MAX_TRANSCRIPT_CHARS:,} chars. "
        f"Total: {len(conv.messages)} messages]"
    )

    char_count = 0
    for msg in conv.messages:
        remaining = MAX_TRANSCRIPT_CHARS - char_count
        if remaining <= 0:
            lines.append(truncated)
            break

        lines.append(f"**{msg.role.capitalize()}** ({_format_ts(msg.timestamp)}):")
        for a in msg.attachments:
            lines.append(f"[attached: {a.name}]")

        if len(msg.content) > remaining:
            lines.append(msg.content[:remaining])
            lines.append(truncated)
            break

        char_count += len(msg.content)
        lines.append(msg.content)
        lines.append("")

    return "\n".join(lines)


@mcp.tool()
def list_conversations(limit: int = 20, offset: int = 0, keyword: str | None = None) -> str:
    """Browse chats, newest first.

    Args:
        limit: Maximum results (default 20)
        offset: Skip this many results (for pagination)
        keyword: Optional keyword matched against chat titles
    """
    err = _check_data_exists()
    if err:
        return err

    chats = _get_store().list_chats(limit=limit, offset=offset, keyword=keyword)
    if not chats:
        if keyword:
            return f"No conversations found matching '{keyword}'."
        return "No conversations found."

    if keyword:
        lines = [f"Conversations matching '{keyword}':\n"]
    else:
        lines = [f"Conversations (showing {offset + 1}–{offset + len(chats)}):\n"]

    for i, c in enumerate(chats, offset + 1):
        lines.append(f"{i}. **{c['title']}** ({_format_ts(c['updated_at'])})")
        lines.append(f"   ID: `{c['id']}` | {c['message_count']} msgs | Model: {c['model']}")

    if len(chats) == limit:
        lines.append(f"\nMore available — use offset={offset + limit} to see the next page.")
    return "\n".join(lines)


@mcp.tool()
def list_models(include_disabled: bool = False) -> str:
    """List the models in the local catalog.

    Args:
        include_disabled: Also list models that are not enabled
    """
    err = _check_data_exists()
    if err:
        return err

    catalog = _get_store().get_models(enabled_only=not include_disabled)
    if not catalog:
        return "No models in the catalog. Run: whisperchat models fetch"

    lines = ["# Models", ""]
    for m in catalog:
        status = "enabled" if m.enabled else "disabled"
        lines.append(f"- `{m.id}` {m.name} ({m.max_tokens:,} tokens, {status})")
    return "\n".join(lines)


@mcp.tool()
def get_stats() -> str:
    """Get statistics about the local chat history.

    Shows total conversations, messages, date range, and most used models.
    """
    err = _check_data_exists()
    if err:
        return err

    stats = _get_store().get_stats()
    db_size = SQLITE_PATH.stat().st_size if SQLITE_PATH.exists() else 0

    lines = [
        "# Chat Statistics",
        "",
        f"- **Conversations**: {stats['total_conversations']:,}",
        f"- **Messages**: {stats['total_messages']:,}",
        f"- **Avg messages/conversation**: {stats['avg_messages_per_conversation']}",
        f"- **Storage used**: {db_size / (1024 * 1024):.1f} MB",
        "",
    ]

    if stats["date_range_start"]:
        lines.append(f"- **Date range**: {stats['date_range_start']} → {stats['date_range_end']}")
        lines.append("")

    if stats["top_models"]:
        lines.append("## Models used:")
        for m in stats["top_models"]:
            lines.append(f"- {m['model']}: {m['count']:,} conversations")

    lines.append(f"\n*Data stored in: {DATA_DIR}*")
    return "\n".join(lines)
