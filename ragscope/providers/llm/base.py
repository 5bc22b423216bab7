from __future__ import annotations

from typing import Any, Protocol


class LanguageModel(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        schema: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> dict | str:
        """Return parsed JSON when ``schema`` is given and the provider honors it, else text.

        Retry and backoff belong to the provider, not to callers.
        """
        ...
