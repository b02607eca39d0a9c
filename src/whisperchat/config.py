"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with WHISPERCHAT_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("WHISPERCHAT_DATA_DIR", str(Path.home() / ".whisperchat"))
)

# Storage paths
SQLITE_PATH = DATA_DIR / "whisperchat.db"
SESSIONS_DIR = DATA_DIR / "sessions"

# Completions provider
BASE_URL = os.environ.get("WHISPERCHAT_BASE_URL", "https://openrouter.ai/api/v1")
APP_TITLE = "Whisper Open Chat"
APP_REFERER = os.environ.get("WHISPERCHAT_REFERER", "https://github.com/whisperchat/whisperchat")
HTTP_TIMEOUT = 30.0  # Connect/write timeout; stream reads are unbounded

# Local user id (stands in for the authenticated user)
USER_ID = os.environ.get("WHISPERCHAT_USER", "local")

# Conversation defaults
DEFAULT_MODEL = "anthropic/claude-3-opus"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 30
TITLE_ELLIPSIS = "..."

ERROR_REPLY = "I'm sorry, I encountered an error while generating a response."

# Marks where attached file contents start in a serialized message
ATTACHMENT_SEPARATOR = "\n\n--- Attached files ---\n"
