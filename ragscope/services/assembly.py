from __future__ import annotations

import logging
import math
from typing import Any

from ragscope.core.config import ConfigurationSource
from ragscope.domain.entities import AssembledContext, AssembledItem, ContextBudget, RetrievedItem


logger = logging.getLogger(__name__)


ELISION_MARKER = "\n[... content truncated ...]\n"
# Share of the truncated budget kept from the start of the text; the rest comes from the end.
_HEAD_SHARE = 0.6
_MAX_RECIPIENTS = 3


def estimate_tokens(text: str, *, ratio: float) -> int:
    # Deterministic heuristic; no tokenizer dependency.
    if not text:
        return 0
    return max(1, int(len(text) / max(ratio, 0.1)))


def truncate_head_tail(text: str, max_tokens: int, *, ratio: float) -> tuple[str, bool]:
    """Shrink ``text`` to fit ``max_tokens`` keeping its start and end.

    The elision marker stays visible so the model knows content is missing.
    """
    if estimate_tokens(text, ratio=ratio) <= max_tokens:
        return text, False
    max_chars = max(1, int(max_tokens * ratio))
    available = max_chars - len(ELISION_MARKER)
    if available <= 1:
        return text[:max_chars], True
    head = math.ceil(available * _HEAD_SHARE)
    tail = available - head
    tail_text = text[-tail:] if tail > 0 else ""
    return text[:head] + ELISION_MARKER + tail_text, True


class ContextAssembler:
    def __init__(self, config: ConfigurationSource) -> None:
        self._config = config

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text, ratio=self._config.settings.chars_per_token)

    def assemble(self, items: list[RetrievedItem], budget: ContextBudget) -> AssembledContext:
        """Fit ranked items into the budget without reordering them.

        Items are walked in rank order. The first item that would overflow
        ``max_total_tokens`` is dropped together with everything after it, so
        a lower-ranked item never displaces a higher-ranked one.
        """
        ratio = self._config.settings.chars_per_token
        assembled: list[AssembledItem] = []
        total = 0
        ranked = list(items)
        for position, item in enumerate(ranked):
            if len(assembled) >= budget.max_results:
                break
            content, truncated = truncate_head_tail(item.content, budget.max_tokens_per_item, ratio=ratio)
            tokens = estimate_tokens(content, ratio=ratio)
            if total + tokens > budget.max_total_tokens:
                logger.debug(
                    "context_budget_exhausted kept=%s dropped=%s total_tokens=%s",
                    len(assembled),
                    len(ranked) - position,
                    total,
                )
                break
            assembled.append(
                AssembledItem(
                    item=item,
                    citation_index=len(assembled),
                    content=content,
                    token_estimate=tokens,
                    truncated=truncated,
                )
            )
            total += tokens
        return AssembledContext(items=tuple(assembled), total_tokens=total, dropped=len(ranked) - len(assembled))


def _metadata_line(metadata: dict[str, Any]) -> str:
    parts: list[str] = []
    date = metadata.get("email_date") or metadata.get("created_at")
    if date:
        parts.append(f"Date: {date}")
    sender = metadata.get("from_address")
    if sender:
        name = metadata.get("from_name")
        parts.append(f"From: {name} <{sender}>" if name else f"From: {sender}")
    recipients = metadata.get("to_addresses")
    if isinstance(recipients, list) and recipients:
        rendered = []
        for recipient in recipients[:_MAX_RECIPIENTS]:
            if isinstance(recipient, dict):
                email = recipient.get("email", "")
                rendered.append(f"{recipient['name']} <{email}>" if recipient.get("name") else email)
            else:
                rendered.append(str(recipient))
        parts.append("To: " + ", ".join(rendered))
        if len(recipients) > _MAX_RECIPIENTS:
            parts.append(f"... and {len(recipients) - _MAX_RECIPIENTS} more recipients")
    if metadata.get("folder_name"):
        parts.append(f"Folder: {metadata['folder_name']}")
    elif metadata.get("category"):
        parts.append(f"Category: {metadata['category']}")
    if metadata.get("type"):
        parts.append(f"Type: {metadata['type']}")
    if metadata.get("status"):
        parts.append(f"Status: {metadata['status']}")
    if metadata.get("in_reply_to"):
        parts.append("Part of conversation thread")
    return " | ".join(parts)


def render_context(context: AssembledContext) -> str:
    # Prompt fragment; headers carry the citation index the answer refers to.
    blocks: list[str] = []
    for entry in context.items:
        item = entry.item
        title = item.title or f"Document {entry.citation_index + 1}"
        block = f"[Source {entry.citation_index}: {title}] (Relevance: {round(item.score * 100, 1)}%)"
        metadata = _metadata_line(item.metadata)
        if metadata:
            block += f"\n{metadata}"
        block += f"\n{entry.content}"
        blocks.append(block)
    return "\n\n---\n\n".join(blocks)
