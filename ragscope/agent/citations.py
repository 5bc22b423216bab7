from __future__ import annotations

import re
from typing import Any

from ragscope.domain.entities import AssembledContext


MAX_OPTIONS = 10
_PREVIEW_CHARS = 200
_NUMBERED_RE = re.compile(r"^\s*(\d+)\.\s+(.+?)$", re.MULTILINE)
_BOLD_BULLET_RE = re.compile(r"^-\s+\*\*(.+?)\*\*:?\s*(.+?)(?=\n-|\n\n|\Z)", re.MULTILINE | re.DOTALL)
_HEADER_RE = re.compile(r"^#{2,4}\s+(.+?)$", re.MULTILINE)
_CITATION_RE = re.compile(r"\[(?:Source\s+)?(\d+)\]", re.IGNORECASE)


def build_sources(context: AssembledContext) -> list[dict[str, Any]]:
    sources: list[dict[str, Any]] = []
    for entry in context.items:
        item = entry.item
        sources.append(
            {
                "index": entry.citation_index,
                "id": item.external_id,
                "collection": item.source_collection,
                "title": item.title or f"Source {entry.citation_index + 1}",
                "relevance": round(item.score * 100, 1),
                "content_preview": item.content[:_PREVIEW_CHARS],
                "truncated": entry.truncated,
            }
        )
    return sources


def _option(number: int, text: str, full_text: str) -> dict[str, Any]:
    return {
        "number": number,
        "text": text,
        "full_text": full_text,
        "preview": text[:100],
        "clickable": True,
        "action": "select_option",
        "value": str(number),
    }


def extract_numbered_options(answer: str) -> list[dict[str, Any]]:
    """Find selectable options in an answer.

    Patterns are tried in order (numbered list, bold bullet, markdown header)
    and the first one that yields anything wins.
    """
    options: list[dict[str, Any]] = []
    for match in _NUMBERED_RE.finditer(answer):
        if len(options) >= MAX_OPTIONS:
            break
        full_line = match.group(2).strip()
        text = full_line
        if ":" in full_line:
            text = full_line.split(":", 1)[0].strip()
        elif "." in full_line:
            text = full_line.split(".", 1)[0].strip()
        if len(text) < 3:
            continue
        options.append(_option(int(match.group(1)), text, full_line))
    if options:
        return options

    for number, match in enumerate(_BOLD_BULLET_RE.finditer(answer), start=1):
        if number > MAX_OPTIONS:
            break
        title = match.group(1).strip()
        options.append(_option(number, title, f"{title}: {match.group(2).strip()}"))
    if options:
        return options

    for number, match in enumerate(_HEADER_RE.finditer(answer), start=1):
        if number > MAX_OPTIONS:
            break
        title = match.group(1).strip()
        options.append(_option(number, title, title))
    return options


def link_options(options: list[dict[str, Any]], context: AssembledContext) -> list[dict[str, Any]]:
    # Explicit citation markers win; otherwise fall back to title, then content, matching.
    valid = {entry.citation_index for entry in context.items}
    linked: list[dict[str, Any]] = []
    for option in options:
        citation: int | None = None
        for match in _CITATION_RE.finditer(option["full_text"]):
            index = int(match.group(1))
            if index in valid:
                citation = index
                break
        if citation is None:
            citation = _match_by_text(option, context)
        linked.append({**option, "citation_index": citation})
    return linked


def _match_by_text(option: dict[str, Any], context: AssembledContext) -> int | None:
    text = option["text"].casefold()
    full_text = option["full_text"].casefold()
    for entry in context.items:
        title = (entry.item.title or "").casefold()
        if title and (title in full_text or text in title):
            return entry.citation_index
    for entry in context.items:
        if len(text) >= 3 and text in entry.item.content.casefold():
            return entry.citation_index
    return None
