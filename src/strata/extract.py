"""Markdown extraction — sections and raw entity candidates.

The consolidation pipeline accepts any object with an ``extract(path, text)``
method returning an ``Extraction``. ``MarkdownExtractor`` is the bundled
default: structural signals only (wikilinks, bold terms, inline code, hashtags
and frontmatter), no NLP.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import frontmatter

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_WIKILINK = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]*)?\]\]")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_CODE = re.compile(r"`([^`]+)`")
_HASHTAG = re.compile(r"(?:^|\s)#([A-Za-z][\w/-]*)")
_CAUSAL = re.compile(
    r"(?:led to|because of|resulted in|caused by|due to|which meant|this meant)\s",
    re.IGNORECASE,
)
_NOISY_CODE = re.compile(r"[{}()=<>&|$+^~/\\]|\s--?[A-Za-z]|^\d+(?:\.\d+){3}")

INTRO = "intro"


@dataclass
class Section:
    heading: str
    heading_path: str
    content: str
    start_line: int
    end_line: int


@dataclass
class RawEntity:
    text: str
    type: str
    confidence: float
    source: str
    position: dict[str, Any] = field(default_factory=dict)


@dataclass
class Extraction:
    sections: list[Section] = field(default_factory=list)
    entities: list[RawEntity] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def entities_in(self, index: int) -> list[RawEntity]:
        """Entities found in the section at ``index``."""
        return [e for e in self.entities if e.position.get("section_index") == index]


@runtime_checkable
class Extractor(Protocol):
    def extract(self, path: str, text: str) -> Extraction: ...


def has_causal_phrase(text: str) -> bool:
    return _CAUSAL.search(text) is not None


def split_sections(body: str, line_offset: int = 0) -> list[Section]:
    """Split markdown on ATX headings. Text before the first heading is the intro."""
    sections: list[Section] = []
    stack: list[tuple[int, str]] = []
    heading, path, start = INTRO, f"({INTRO})", 1 + line_offset
    buf: list[str] = []

    def flush(end: int) -> None:
        content = "\n".join(buf).strip()
        if content:
            sections.append(Section(heading, path, content, start, max(end, start)))

    for lineno, line in enumerate(body.splitlines(), 1 + line_offset):
        m = _HEADING.match(line)
        if not m:
            buf.append(line)
            continue
        flush(lineno - 1)
        level, heading = len(m.group(1)), m.group(2)
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, heading))
        path = " > ".join(f"{'#' * lvl} {h}" for lvl, h in stack)
        start = lineno
        buf = []

    flush(line_offset + len(body.splitlines()))
    return sections


class MarkdownExtractor:
    """Structural entity extraction from markdown with YAML frontmatter."""

    def extract(self, path: str, text: str) -> Extraction:
        post = frontmatter.loads(text)
        metadata = dict(post.metadata)
        start = text.find(post.content) if metadata and post.content else -1
        offset = text.count("\n", 0, start) if start > 0 else 0
        sections = split_sections(post.content, offset)
        entities: list[RawEntity] = []

        for i, section in enumerate(sections):
            pos = {
                "file": path,
                "section": section.heading_path,
                "section_index": i,
                "line": section.start_line,
            }
            entities.extend(self._section_entities(section.content, pos))

        if sections:
            first = {
                "file": path,
                "section": sections[0].heading_path,
                "section_index": 0,
                "line": sections[0].start_line,
            }
            for tag in _as_list(metadata.get("tags")):
                entities.append(RawEntity(tag, "tag", 0.8, "frontmatter", dict(first)))
            for person in _as_list(metadata.get("people")):
                entities.append(RawEntity(person, "person", 0.9, "frontmatter", dict(first)))

        logger.debug("Extracted %d entities from %d sections in %s", len(entities), len(sections), path)
        return Extraction(sections=sections, entities=entities, metadata=metadata)

    def _section_entities(self, content: str, pos: dict[str, Any]) -> list[RawEntity]:
        found: list[RawEntity] = []
        for m in _WIKILINK.finditer(content):
            found.append(RawEntity(m.group(1).strip(), "concept", 0.95, "wikilink", dict(pos)))
        for m in _BOLD.finditer(content):
            term = m.group(1).strip()
            if len(term) > 2:
                found.append(RawEntity(term, "concept", 0.7, "bold", dict(pos)))
        for m in _CODE.finditer(content):
            term = m.group(1).strip()
            if 1 < len(term) <= 40 and not _NOISY_CODE.search(term):
                found.append(RawEntity(term, "tool", 0.7, "code", dict(pos)))
        for m in _HASHTAG.finditer(content):
            found.append(RawEntity(m.group(1), "tag", 0.8, "hashtag", dict(pos)))
        return found


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]
