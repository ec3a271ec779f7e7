from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .client import ChatMessage, OllamaChatClient
from .json_repair import parse_json_array


logger = logging.getLogger(__name__)

MAX_ARTICLE_KEYWORDS = 10


@dataclass(frozen=True)
class KeywordGroup:
    label: str
    keywords: list[str]


def summarize_article(llm: OllamaChatClient, title: str, content: str) -> str:
    logger.info('Generating article summary: "%s"', title)
    prompt = (
        f'Summarize this article titled "{title}" in 2-4 sentences. '
        "Capture the main themes and key takeaways. Reply with the summary only.\n\n"
        f"{content}"
    )
    return llm.chat([ChatMessage(role="user", content=prompt)]).strip()


def reduce_keywords_for_article(
    llm: OllamaChatClient,
    title: str,
    groups: list[KeywordGroup],
    *,
    max_keywords: int = MAX_ARTICLE_KEYWORDS,
) -> list[str]:
    """Bubble chunk keywords up into a short curated article-level list.

    The reply may reuse input keywords verbatim or synthesize new ones.
    Duplicates and blanks are dropped; at most `max_keywords` are returned.
    """
    groups = [g for g in groups if g.keywords]
    if not groups:
        return []

    listing = "\n".join(f"- {g.label}: {', '.join(g.keywords)}" for g in groups)
    prompt = (
        f'These keyword groups come from the sections of the article "{title}".\n\n'
        f"{listing}\n\n"
        f"Pick the 3-{max_keywords} keywords that best describe the article as a whole. "
        "Prefer keywords from the lists above, copied exactly; only write a new one when "
        "several specific keywords share a broader theme. Avoid generic words like "
        '"introduction" or "summary".\n\n'
        'Return ONLY a JSON array of lowercase strings, e.g. ["gradient descent", "kahneman"].'
    )
    reply = llm.chat([ChatMessage(role="user", content=prompt)])

    try:
        raw = parse_json_array(reply)
    except json.JSONDecodeError:
        logger.warning('Keyword reduction for "%s" returned unparseable text; keeping none', title)
        return []

    out: list[str] = []
    for k in raw:
        k = k.strip()
        if k and k not in out:
            out.append(k)
        if len(out) >= max_keywords:
            break
    return out
