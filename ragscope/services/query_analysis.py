from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from ragscope.agent.prompts import ANALYSIS_SCHEMA, build_analysis_messages, build_analysis_prompt
from ragscope.core.config import ConfigurationSource, Settings
from ragscope.core.errors import AnalysisParseError
from ragscope.domain.entities import AnalysisOutcome, Analyzed, Degraded, QueryAnalysis, QueryType
from ragscope.providers.llm.base import LanguageModel
from ragscope.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_QUERY_TYPES: set[str] = {"conversational", "factual", "aggregate"}
_QUERY_TYPE_ALIASES: dict[str, QueryType] = {
    "informational": "factual",
    "information": "factual",
    "lookup": "factual",
    "search": "factual",
    "count": "aggregate",
    "statistics": "aggregate",
    "statistical": "aggregate",
    "summary": "aggregate",
    "chat": "conversational",
    "greeting": "conversational",
}
_TRUE_STRINGS = {"true", "yes", "1", "y"}
_FALSE_STRINGS = {"false", "no", "0", "n"}
_GREETING_SUFFIXES = {"", "there", "again", "everyone", "all", "a lot", "so much", "very much"}
_SMALL_WORDS = {"a", "an", "the", "of", "and", "or", "in", "on", "for", "to", "at", "by", "with"}
_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)
_QUOTED_RE = re.compile(r'"([^"]+)"|“([^”]+)”|(?<!\w)\'([^\']+)\'(?!\w)')
_WORD_RE = re.compile(r"[\w'-]+")
# Anything at or under this many words is kept verbatim as a search term.
_SHORT_QUERY_WORDS = 4


def _normalize(text: str) -> str:
    lowered = text.lower().strip()
    lowered = re.sub(r"[^\w\s']", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def _contains_phrase(normalized: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase.lower())}\b", normalized) is not None


def is_greeting(message: str, greetings: list[str]) -> bool:
    normalized = _normalize(message)
    if not normalized:
        return False
    for greeting in greetings:
        greeting = greeting.lower()
        if normalized == greeting:
            return True
        if normalized.startswith(greeting + " ") and normalized[len(greeting) + 1 :] in _GREETING_SUFFIXES:
            return True
    return False


def matches_aggregate(message: str, patterns: list[str]) -> bool:
    normalized = _normalize(message)
    return any(_contains_phrase(normalized, pattern) for pattern in patterns)


def mentioned_collections(message: str, candidates: list[str]) -> list[str]:
    # Tolerate singular/plural and snake_case names ("invoice", "sales orders").
    normalized = _normalize(message)
    found: list[str] = []
    for candidate in candidates:
        base = candidate.lower().replace("_", " ").replace("-", " ")
        variants = {base, base.rstrip("s"), base + "s"}
        if base.endswith("ies"):
            variants.add(base[:-3] + "y")
        if any(variant and _contains_phrase(normalized, variant) for variant in variants):
            found.append(candidate)
    return found


def _is_title_like(message: str) -> bool:
    stripped = message.strip()
    if stripped.endswith("?"):
        return False
    words = _WORD_RE.findall(stripped)
    if len(words) < 2:
        return False
    significant = [word for word in words if word.lower() not in _SMALL_WORDS]
    return bool(significant) and all(word[0].isupper() or word[0].isdigit() for word in significant)


def verbatim_terms(message: str) -> list[str]:
    """Phrases that must be searched exactly as written.

    Quoted spans always qualify. The whole message qualifies when it is short
    or reads like a title, since paraphrasing those loses exact-match recall.
    """
    terms: list[str] = []
    for match in _QUOTED_RE.finditer(message):
        phrase = next(group for group in match.groups() if group is not None).strip()
        if phrase:
            terms.append(phrase)
    stripped = message.strip()
    word_count = len(_WORD_RE.findall(stripped))
    if stripped and (word_count <= _SHORT_QUERY_WORDS or _is_title_like(stripped)):
        terms.insert(0, stripped)
    return _dedupe(terms)


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        key = value.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def parse_model_output(raw: dict | str) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise AnalysisParseError(f"unexpected analyzer output type {type(raw).__name__}")
    text = _CODE_FENCE_RE.sub("", raw).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise AnalysisParseError("analyzer output contains no JSON object")
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise AnalysisParseError("analyzer output is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise AnalysisParseError("analyzer output is not a JSON object")
    return parsed


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _coerce_strings(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def repair_analysis(
    raw: dict[str, Any],
    message: str,
    candidates: list[str],
    settings: Settings,
) -> tuple[QueryAnalysis, list[str]]:
    """Force untrusted model output into a usable analysis.

    Returns the analysis plus the list of repairs applied, for logging.
    """
    repairs: list[str] = []

    needs_context = _coerce_bool(raw.get("needs_context"))
    if needs_context is None:
        # Retrieval on uncertainty beats silence.
        needs_context = True
        repairs.append("needs_context_defaulted")

    raw_type = str(raw.get("query_type") or "").strip().lower()
    query_type: QueryType
    if raw_type in _QUERY_TYPES:
        query_type = raw_type  # type: ignore[assignment]
    elif raw_type in _QUERY_TYPE_ALIASES:
        query_type = _QUERY_TYPE_ALIASES[raw_type]
        repairs.append(f"query_type_aliased:{raw_type}")
    else:
        query_type = "conversational"
        if raw_type:
            repairs.append(f"query_type_unknown:{raw_type}")
    if query_type == "aggregate" and not needs_context:
        needs_context = True
        repairs.append("aggregate_forces_context")

    by_name = {name.casefold(): name for name in candidates}
    targets: list[str] = []
    raw_collections = raw.get("collections", raw.get("target_collections"))
    for name in _coerce_strings(raw_collections):
        canonical = by_name.get(name.casefold())
        if canonical is None:
            logger.warning("analysis_collection_dropped collection=%s", name)
            repairs.append(f"collection_dropped:{name}")
            continue
        if canonical not in targets:
            targets.append(canonical)
    if not targets:
        targets = list(candidates)
        repairs.append("collections_fallback_all")

    queries: list[str] = []
    if needs_context:
        queries = _coerce_strings(raw.get("search_queries"))
        verbatim = verbatim_terms(message)
        missing = [term for term in verbatim if term.casefold() not in {q.casefold() for q in queries}]
        if missing:
            repairs.append("verbatim_terms_added")
        queries = _dedupe(verbatim + queries)
        if not queries:
            queries = [message]
            repairs.append("search_queries_fallback")
        queries = queries[: max(1, settings.analyzer_max_search_queries)]

    reasoning = raw.get("reasoning")
    analysis = QueryAnalysis(
        needs_context=needs_context,
        search_queries=queries,
        target_collections=targets,
        query_type=query_type,
        reasoning=str(reasoning) if reasoning else "",
    )
    return analysis, repairs


def degraded_analysis(message: str, candidates: list[str], reason: str) -> Degraded:
    analysis = QueryAnalysis(
        needs_context=bool(candidates),
        search_queries=[message] if candidates else [],
        target_collections=list(candidates),
        query_type="conversational",
        reasoning=f"degraded: {reason}",
    )
    return Degraded(analysis=analysis, reason=reason)


class QueryAnalyzer:
    def __init__(self, llm: LanguageModel, config: ConfigurationSource) -> None:
        self._llm = llm
        self._config = config

    async def analyze(
        self,
        message: str,
        history: list[dict[str, Any]],
        candidate_collections: list[str],
    ) -> AnalysisOutcome:
        """Decide retrieval for one message; never raises for model failures."""
        candidates = list(dict.fromkeys(candidate_collections))
        settings = self._config.settings

        if not candidates:
            return Analyzed(
                analysis=QueryAnalysis(
                    needs_context=False,
                    target_collections=[],
                    query_type="conversational",
                    reasoning="no collections available",
                ),
                source="lexical",
            )

        if not message.strip():
            return degraded_analysis(message, candidates, "empty_message")

        if is_greeting(message, settings.greeting_phrases):
            return Analyzed(
                analysis=QueryAnalysis(
                    needs_context=False,
                    target_collections=list(candidates),
                    query_type="conversational",
                    reasoning="greeting",
                ),
                source="lexical",
            )

        if matches_aggregate(message, settings.aggregate_patterns):
            targets = mentioned_collections(message, candidates) or list(candidates)
            return Analyzed(
                analysis=QueryAnalysis(
                    needs_context=True,
                    search_queries=[message.strip()],
                    target_collections=targets,
                    query_type="aggregate",
                    reasoning="aggregate pattern",
                ),
                source="lexical",
            )

        aggregate_hint = matches_aggregate(message, settings.aggregate_hint_patterns)
        try:
            raw = await asyncio.wait_for(
                self._llm.complete(
                    build_analysis_prompt(candidates, aggregate_hint=aggregate_hint),
                    build_analysis_messages(history, message, settings.analyzer_history_messages),
                    schema=ANALYSIS_SCHEMA,
                    timeout_s=settings.analyzer_timeout_ms / 1000.0,
                ),
                timeout=settings.analyzer_timeout_ms / 1000.0,
            )
            parsed = parse_model_output(raw)
            analysis, repairs = repair_analysis(parsed, message, candidates, settings)
        except asyncio.TimeoutError:
            increment_counter("analysis_degraded_total.timeout")
            logger.warning("analysis_degraded reason=timeout")
            return degraded_analysis(message, candidates, "timeout")
        except AnalysisParseError as exc:
            increment_counter("analysis_degraded_total.malformed")
            logger.warning("analysis_degraded reason=malformed detail=%s", exc)
            return degraded_analysis(message, candidates, "malformed")
        except Exception as exc:  # noqa: BLE001 - model failures must not escape the analyzer
            increment_counter("analysis_degraded_total.error")
            logger.warning("analysis_degraded reason=error", exc_info=exc)
            return degraded_analysis(message, candidates, f"error:{exc.__class__.__name__}")

        if repairs:
            increment_counter("analysis_repaired_total")
            logger.info("analysis_repaired repairs=%s", ",".join(repairs))
        return Analyzed(analysis=analysis, source="model", repairs=tuple(repairs))
