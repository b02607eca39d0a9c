"""OpenRouter client: model catalog and streamed chat completions."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any

import httpx

from .config import (
    APP_REFERER,
    APP_TITLE,
    ATTACHMENT_SEPARATOR,
    BASE_URL,
    DEFAULT_MAX_TOKENS,
    HTTP_TIMEOUT,
)
from .models import Message, ModelInfo

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class CompletionAPIError(Exception):
    """The completions endpoint answered with a non-success status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"API error: {status_code} {body}")
        self.status_code = status_code
        self.body = body


class ModelFetchError(Exception):
    """The models endpoint answered with a non-success status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Failed to fetch models: {status_code} {body}")
        self.status_code = status_code
        self.body = body


def _headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "HTTP-Referer": APP_REFERER,
        "X-Title": APP_TITLE,
    }


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    """Use the caller's client, or open (and close) a private one."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=httpx.Timeout(HTTP_TIMEOUT, read=None)) as own:
        yield own


def serialize_message(message: Message) -> dict[str, str]:
    """Convert a Message to the {role, content} shape the API expects.

    Attachments with extracted text are appended after ATTACHMENT_SEPARATOR;
    attachments without text are left out.
    """
    content = message.content
    texts = [
        f"[File: {a.name}]\n{a.content}"
        for a in message.attachments
        if a.content
    ]
    if texts:
        content = content + ATTACHMENT_SEPARATOR + "\n\n".join(texts)
    return {"role": message.role, "content": content}


def serialize_messages(messages: Iterable[Message]) -> list[dict[str, str]]:
    return [serialize_message(m) for m in messages]


def _line_payload(line: str) -> str | None:
    line = line.rstrip("\r")
    if not line.strip() or not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):]


async def iter_sse_payloads(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the payload of every `data: ` line of an event stream.

    Lines come from `Response.aiter_lines()`, which already joins reads
    split mid-line or mid-character and flushes the final partial line.
    """
    async for line in lines:
        payload = _line_payload(line)
        if payload is not None:
            yield payload


def extract_delta(payload: str) -> str | None:
    """Return the text delta carried by one event payload, if any."""
    if payload == DONE_SENTINEL:
        return None

    try:
        parsed: Any = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream line: %s", payload[:200])
        return None

    try:
        content = parsed["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None

    if isinstance(content, str) and content:
        return content
    return None


async def stream_completion(
    messages: Iterable[Message],
    model_id: str,
    api_key: str,
    on_chunk: Callable[[str], None],
    on_error: Callable[[Exception], None],
    on_finish: Callable[[], None],
    *,
    client: httpx.AsyncClient | None = None,
    base_url: str = BASE_URL,
) -> None:
    """Stream a chat completion, reporting progress through three callbacks.

    on_chunk receives each text delta in stream order. When the stream ends,
    on_finish fires once. Any failure (non-success status, network error)
    is passed to on_error once and then re-raised. on_finish and on_error
    never both fire for one call.
    """
    body = {
        "model": model_id,
        "messages": serialize_messages(messages),
        "stream": True,
    }
    finished = False

    try:
        async with _client_scope(client) as http:
            async with http.stream(
                "POST",
                f"{base_url}/chat/completions",
                headers=_headers(api_key),
                json=body,
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise CompletionAPIError(response.status_code, error_text)

                async for payload in iter_sse_payloads(response.aiter_lines()):
                    delta = extract_delta(payload)
                    if delta:
                        on_chunk(delta)

        finished = True
        on_finish()
    except Exception as exc:
        if not finished:
            logger.error("Completion stream failed: %s", exc)
            on_error(exc)
        raise


async def fetch_models(
    api_key: str,
    *,
    client: httpx.AsyncClient | None = None,
    base_url: str = BASE_URL,
) -> list[ModelInfo]:
    """List the models the provider offers for this API key."""
    async with _client_scope(client) as http:
        response = await http.get(f"{base_url}/models", headers=_headers(api_key))

    if not response.is_success:
        logger.error("Error fetching models: %s", response.status_code)
        raise ModelFetchError(response.status_code, response.text)

    try:
        records = response.json().get("data", [])
        return [
            ModelInfo(
                id=r["id"],
                name=r.get("name") or r["id"],
                max_tokens=r.get("context_length") or DEFAULT_MAX_TOKENS,
            )
            for r in records
        ]
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.error("Unexpected models response: %s", exc)
        raise ModelFetchError(response.status_code, response.text[:200]) from exc
