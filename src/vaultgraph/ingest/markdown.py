from __future__ import annotations

import re
from dataclasses import dataclass, field


_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*$")
_FRONTMATTER_RE = re.compile(r"\A---\n.*?\n---\n?", re.DOTALL)
# [[Target]] and [[Target|alias]]
_WIKILINK_RE = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]+)?\]\]")

_CONTEXT_MAX_CHARS = 200


@dataclass(frozen=True)
class Backlink:
    link_text: str
    context: str | None = None


@dataclass(frozen=True)
class ParsedArticle:
    title: str
    content: str
    backlinks: list[Backlink] = field(default_factory=list)


def parse_markdown(text: str, filename: str) -> ParsedArticle:
    """Title from the filename, content without frontmatter, unique [[backlinks]]."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    content = _FRONTMATTER_RE.sub("", normalized, count=1).strip()
    title = re.sub(r"\.(md|markdown)$", "", filename)
    return ParsedArticle(title=title, content=content, backlinks=extract_backlinks(content))


def extract_backlinks(content: str) -> list[Backlink]:
    seen: set[str] = set()
    out: list[Backlink] = []
    for line in content.split("\n"):
        for m in _WIKILINK_RE.finditer(line):
            link = m.group(1).strip()
            if not link or link in seen:
                continue
            seen.add(link)
            ctx = line.strip()
            if len(ctx) > _CONTEXT_MAX_CHARS:
                ctx = ctx[:_CONTEXT_MAX_CHARS].rstrip() + "..."
            out.append(Backlink(link_text=link, context=ctx or None))
    return out


class HeadingTracker:
    """Level-aware heading stack carried across consecutive pieces of text.

    Pushing a heading pops any tracked heading at the same or a deeper level.
    """

    def __init__(self) -> None:
        self._stack: list[tuple[int, str]] = []

    def observe(self, text: str) -> list[str]:
        """Scan `text` for headings, update the stack, return the current titles."""
        for line in text.split("\n"):
            m = _HEADING_RE.match(line)
            if not m:
                continue
            level = len(m.group(1))
            title = m.group(2).strip()
            if not title:
                continue
            while self._stack and self._stack[-1][0] >= level:
                self._stack.pop()
            self._stack.append((level, title))
        return self.titles

    @property
    def titles(self) -> list[str]:
        return [t for _, t in self._stack]
