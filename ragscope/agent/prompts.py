from __future__ import annotations

from typing import Any


ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "needs_context": {"type": "boolean"},
        "search_queries": {"type": "array", "items": {"type": "string"}},
        "collections": {"type": "array", "items": {"type": "string"}},
        "query_type": {"type": "string", "enum": ["conversational", "factual", "aggregate"]},
        "reasoning": {"type": "string"},
    },
    "required": ["needs_context", "search_queries", "collections", "query_type"],
}


def build_analysis_prompt(candidate_collections: list[str], aggregate_hint: bool = False) -> str:
    collections = "\n".join(f"- {name}" for name in candidate_collections) or "- (none)"
    prompt = (
        "You decide whether a user message needs information from the knowledge base.\n\n"
        f"Available collections:\n{collections}\n\n"
        "Reply with JSON only:\n"
        '{"needs_context": true, "search_queries": ["..."], "collections": ["..."], '
        '"query_type": "factual", "reasoning": "..."}\n\n'
        "Rules:\n"
        "1. When in doubt, search: set needs_context to true.\n"
        "2. Set needs_context to false only for plain greetings, thanks, or small talk.\n"
        "3. Keep quoted phrases, titles and names exactly as written in search_queries.\n"
        "4. Only use collection names from the list above.\n"
        "5. query_type is aggregate when the user wants counts, totals or statistics; "
        "factual when they want specific information; conversational otherwise."
    )
    if aggregate_hint:
        prompt += "\n\nThe message mentions counting or summarising; consider query_type aggregate."
    return prompt


def build_analysis_messages(history: list[dict[str, Any]], message: str, max_history: int) -> list[dict[str, str]]:
    # Recent turns only; older history rarely changes the retrieval decision.
    recent = history[-max_history:] if max_history > 0 else []
    messages = [{"role": msg.get("role", "user"), "content": str(msg.get("content", ""))} for msg in recent]
    messages.append({"role": "user", "content": message})
    return messages


def build_answer_prompt(context_text: str, searched: bool, system_prompt: str | None = None) -> str:
    prompt = system_prompt or (
        "You are a helpful assistant. Answer the user using the provided context. "
        "Cite sources with their bracketed index, for example [0]."
    )
    if context_text:
        prompt += (
            "\n\nRELEVANT CONTEXT FROM KNOWLEDGE BASE:\n"
            f"{context_text}\n\n"
            "Answer based on the context above and the conversation. If the context does not fully "
            "answer the question, say what you can answer and what you cannot."
        )
    elif searched:
        prompt += (
            "\n\nThe knowledge base was searched but no matching content was found for this request. "
            "Answer helpfully from the conversation and general knowledge, and suggest being more "
            "specific or using different keywords when the user asks about their own data."
        )
    return prompt


def build_answer_messages(history: list[dict[str, Any]], user_message: str) -> list[dict[str, str]]:
    messages = [{"role": msg.get("role", "user"), "content": str(msg.get("content", ""))} for msg in history]
    messages.append({"role": "user", "content": user_message})
    return messages
