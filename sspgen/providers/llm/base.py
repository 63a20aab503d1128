from __future__ import annotations

from typing import Protocol


class LLMProvider(Protocol):
    name: str

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> str | None:
        ...
