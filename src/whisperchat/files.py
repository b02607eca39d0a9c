"""Turn local files into message attachments."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path

from .models import Attachment

logger = logging.getLogger(__name__)

TEXT_TYPES = ("text/", "application/json", "application/csv")
WORD_TYPES = (
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)
SUPPORTED_TYPES = (*TEXT_TYPES, "application/pdf", *WORD_TYPES, "image/")


def format_file_size(size_in_bytes: int) -> str:
    """Human-readable size, e.g. '2.50 MB'."""
    if size_in_bytes < 1024:
        return f"{size_in_bytes} B"
    if size_in_bytes < 1024 ** 2:
        return f"{size_in_bytes / 1024:.2f} KB"
    if size_in_bytes < 1024 ** 3:
        return f"{size_in_bytes / 1024 ** 2:.2f} MB"
    return f"{size_in_bytes / 1024 ** 3:.2f} GB"


def guess_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or "application/octet-stream"


def is_supported_type(mime_type: str) -> bool:
    mime_type = mime_type.lower()
    return any(t in mime_type for t in SUPPORTED_TYPES)


def _describe(kind: str, name: str, mime_type: str, size: int, request: str) -> str:
    return (
        f"[{kind}: {name}]\n"
        f"File Type: {mime_type}\n"
        f"File Size: {format_file_size(size)}\n"
        f"Note to AI: {request}"
    )


def extract_text(path: Path, mime_type: str | None = None) -> str:
    """Extract the text the model should see for a file.

    Text-like files are read as UTF-8. For binary formats (PDF, Word,
    images, anything else) the model gets a short note describing the file.
    Never raises: unreadable files produce an error note instead.
    """
    mime_type = (mime_type or guess_type(path)).lower()
    name = path.name

    try:
        size = path.stat().st_size

        if any(t in mime_type for t in TEXT_TYPES):
            return path.read_text(encoding="utf-8", errors="replace")

        if "application/pdf" in mime_type:
            return _describe(
                "PDF File", name, mime_type, size,
                "This is a PDF file. Please analyze or summarize the document "
                f'"{name}" as far as its name and the conversation allow.',
            )

        if any(t in mime_type for t in WORD_TYPES):
            return _describe(
                "Document File", name, mime_type, size,
                "This is a Microsoft Word document. Please analyze or summarize "
                f'the document "{name}" as far as its name and the conversation allow.',
            )

        if mime_type.startswith("image/"):
            return _describe(
                "Image File", name, mime_type, size,
                "This is an image file. Please help with it as far as its name "
                "and the conversation allow.",
            )

        return _describe(
            "File", name, mime_type, size,
            "Please help with the content of this file as far as its name "
            "and the conversation allow.",
        )
    except OSError:
        logger.warning("Error extracting text from %s", path, exc_info=True)
        return f"[Error processing {name}]: Unable to extract content due to a technical issue."


def attachment_from_path(path: str | Path) -> Attachment:
    """Build an Attachment for a local file, extracting its text once."""
    path = Path(path)
    mime_type = guess_type(path)

    if not is_supported_type(mime_type):
        logger.info("Unsupported file type %s for %s, attaching a description", mime_type, path.name)

    return Attachment(
        name=path.name,
        type=mime_type,
        size=path.stat().st_size,
        content=extract_text(path, mime_type),
        url=path.resolve().as_uri(),
    )
