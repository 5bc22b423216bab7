from __future__ import annotations

import asyncio
from typing import Any, Callable


class FakeLanguageModel:
    """Scripted model for tests and offline development.

    ``responses`` is consumed in order; an ``Exception`` instance is raised
    instead of returned. ``handler`` takes precedence and receives the call.
    """

    def __init__(
        self,
        response: dict | str = "This is a fake response.",
        *,
        responses: list[Any] | None = None,
        handler: Callable[[str, list[dict], dict | None], Any] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        # Deterministic responses keep tests stable without external calls.
        self._default = response
        self._responses = list(responses or [])
        self._handler = handler
        self._delay_s = delay_s
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        schema: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> dict | str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": messages,
                "schema": schema,
                "timeout_s": timeout_s,
            }
        )
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._handler is not None:
            result = self._handler(system_prompt, messages, schema)
        elif self._responses:
            result = self._responses.pop(0)
        else:
            result = self._default
        if isinstance(result, Exception):
            raise result
        return result
