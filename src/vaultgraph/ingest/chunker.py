"""Sliding-window semantic chunking driven by an LLM.

The text is walked in windows of `window_size` characters. Each window is
sent to the model, which returns verbatim chunks, a `remainder` it could not
cleanly finish, and a short `summary`. The remainder is prepended to the next
window and the summary is handed over as context, so thoughts that straddle a
window boundary are chunked as one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

from ..errors import ExtractionParseError
from ..llm.client import ChatMessage, OllamaChatClient
from ..llm.json_repair import loads_lenient
from .markdown import HeadingTracker


logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 8000  # ~2000 tokens
MAX_PARSE_RETRIES = 2

FALLBACK_CHUNK_TYPE = "fallback"
REMAINDER_CHUNK_TYPE = "remainder"


CHUNK_SYSTEM_PROMPT = """You help segment text into semantic chunks for a navigator that renders documents as a map with zoom in/out along semantic connections.

A good chunk is a complete thought - an argument, example, or dialog turn. Aim for 500-1500 tokens. Headings naturally start new chunks.

Keywords are how chunks connect to each other across documents. Good keywords are:
- Specific terms defined or introduced in the text (e.g., "gradient descent", "cache invalidation")
- Named references: people, frameworks, theories (e.g., "Shannon entropy", "Kahneman")
- Domain-specific phrases that would connect to other documents

Avoid generic/meta keywords like "synthesis", "outline", "introduction".

If you're unsure where a thought ends, put the uncertain portion in "remainder" for the next pass."""

CHUNK_USER_PROMPT = """Please segment this text into chunks. Return a JSON object:

{"chunks":[{"text":"verbatim chunk text","type":"problem statement","keywords":["specific phrase"]}],"remainder":"text at end if incomplete","summary":"brief context for next pass"}

IMPORTANT: The "text" field must be copied VERBATIM from the input - never summarize or paraphrase. If you can't fit all chunks, put the remaining text in "remainder" (also verbatim). For type, use natural phrases like "problem statement" or "worked example".

TEXT:
"""

RETRY_PROMPT = """JSON parse error: {error}

This usually means there's an unescaped quote (") or newline in one of the text fields. In JSON strings, quotes must be \\" and newlines must be \\n.

Please try again, making sure to properly escape special characters in the text fields."""


@dataclass(frozen=True)
class Chunk:
    content: str
    position: int
    heading_context: list[str]
    chunk_type: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedChunk:
    text: str
    type: str | None
    keywords: list[str]


@dataclass(frozen=True)
class ExtractionResult:
    chunks: list[ExtractedChunk]
    remainder: str
    summary: str


def parse_extraction(text: str) -> ExtractionResult:
    """Parse and validate one extraction reply. Raises ExtractionParseError."""
    try:
        data = loads_lenient(text)
    except json.JSONDecodeError as e:
        raise ExtractionParseError(str(e)) from e

    if not isinstance(data, dict):
        raise ExtractionParseError(f"expected a JSON object, got {type(data).__name__}")

    # A missing or null "chunks" is malformed, not an empty window.
    raw_chunks = data.get("chunks")
    if not isinstance(raw_chunks, list):
        raise ExtractionParseError('"chunks" must be a list')

    chunks: list[ExtractedChunk] = []
    for i, c in enumerate(raw_chunks):
        if not isinstance(c, dict) or not isinstance(c.get("text"), str):
            raise ExtractionParseError(f'chunks[{i}] must be an object with a string "text"')
        keywords = c.get("keywords") or []
        if not isinstance(keywords, list):
            raise ExtractionParseError(f'chunks[{i}].keywords must be a list')
        ctype = c.get("type")
        chunks.append(
            ExtractedChunk(
                text=c["text"],
                type=ctype if isinstance(ctype, str) and ctype.strip() else None,
                keywords=_clean_keywords(keywords),
            )
        )

    return ExtractionResult(
        chunks=chunks,
        remainder=_as_str(data.get("remainder")),
        summary=_as_str(data.get("summary")),
    )


def extract_chunks(
    llm: OllamaChatClient,
    window: str,
    *,
    window_index: int,
    prior_context: str | None = None,
    max_retries: int = MAX_PARSE_RETRIES,
) -> ExtractionResult:
    """One extraction call with up to `max_retries` informed retries."""
    logger.info(
        "Window %d: %d chars (~%d tokens)%s",
        window_index,
        len(window),
        _estimate_tokens(window),
        " (with context)" if prior_context else "",
    )

    context_prefix = ""
    if prior_context:
        context_prefix = (
            f"CONTEXT FROM PREVIOUS TEXT:\n{prior_context}\n\n---\n\n"
            "Now continue chunking the following text:\n\n"
        )

    messages = [
        ChatMessage(role="system", content=CHUNK_SYSTEM_PROMPT),
        ChatMessage(role="user", content=CHUNK_USER_PROMPT + context_prefix + window),
    ]

    for attempt in range(max_retries + 1):
        reply = llm.chat(messages)
        try:
            return parse_extraction(reply)
        except ExtractionParseError as e:
            if attempt >= max_retries:
                raise ExtractionParseError(
                    f"Window {window_index}: no valid JSON after {attempt + 1} attempts ({e})"
                ) from e
            logger.warning("Window %d retry %d: %s", window_index, attempt + 1, e)
            # Feed the failure back so the next attempt can correct it.
            messages = messages + [
                ChatMessage(role="assistant", content=reply),
                ChatMessage(role="user", content=RETRY_PROMPT.format(error=e)),
            ]

    raise AssertionError("unreachable")


def chunk_text(
    text: str,
    *,
    llm: OllamaChatClient,
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> Iterator[Chunk]:
    """Yield chunks of `text` in order.

    Each call re-walks the input from the start. Closing the generator early
    stops further extraction calls.
    """
    if window_size <= 0:
        raise ValueError("window_size must be positive")

    headings = HeadingTracker()
    cursor = 0
    position = 0
    window_index = 0

    # State carried between windows
    remainder = ""
    prior_context: str | None = None

    while cursor < len(text) or remainder:
        fresh_end = min(cursor + max(window_size - len(remainder), 0), len(text))
        window = remainder + text[cursor:fresh_end]
        is_last_window = fresh_end >= len(text)

        if not is_last_window and fresh_end == cursor:
            # The remainder alone fills the window; flush it to keep moving.
            logger.warning("Remainder of %d chars fills the window; emitting it as a chunk", len(remainder))
            yield Chunk(
                content=remainder,
                position=position,
                heading_context=headings.observe(remainder),
                chunk_type=REMAINDER_CHUNK_TYPE,
            )
            position += 1
            remainder = ""
            continue

        window_index += 1
        result = extract_chunks(llm, window, window_index=window_index, prior_context=prior_context)

        if not result.chunks and is_last_window:
            if window.strip():
                yield Chunk(
                    content=window,
                    position=position,
                    heading_context=headings.observe(window),
                    chunk_type=FALLBACK_CHUNK_TYPE,
                )
            return

        for extracted in result.chunks:
            if not extracted.text.strip():
                continue
            if extracted.text not in window:
                logger.warning(
                    "Window %d: chunk text is not a verbatim substring of the window (%r...)",
                    window_index,
                    extracted.text[:60],
                )
            yield Chunk(
                content=extracted.text,
                position=position,
                heading_context=headings.observe(extracted.text),
                chunk_type=extracted.type,
                keywords=list(extracted.keywords),
            )
            position += 1

        remainder = result.remainder
        prior_context = result.summary or None
        cursor = fresh_end

        if result.summary:
            logger.debug("Handover summary: %s", result.summary)
        if remainder:
            logger.debug("Handover remainder: %d chars", len(remainder))

        if is_last_window:
            if remainder.strip():
                yield Chunk(
                    content=remainder,
                    position=position,
                    heading_context=headings.observe(remainder),
                    chunk_type=REMAINDER_CHUNK_TYPE,
                )
            return


def _clean_keywords(raw: list[Any]) -> list[str]:
    out: list[str] = []
    for k in raw:
        if not isinstance(k, str):
            continue
        k = k.strip()
        if k and k not in out:
            out.append(k)
    return out


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _estimate_tokens(text: str) -> int:
    # Rough: 1 token ~ 4 chars of English
    return (len(text) + 3) // 4
