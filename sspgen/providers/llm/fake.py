from __future__ import annotations

import json


DEFAULT_FAKE_RESPONSE = json.dumps(
    {
        "narrative": (
            "The organization manages information system accounts, including establishing, "
            "activating, modifying, reviewing, disabling, and removing accounts."
        ),
        "evidence": [
            "User provisioning workflow documentation",
            "Access control policy document",
            "Quarterly access review reports",
        ],
        "citations": ["NIST SP 800-53 Rev. 5", "FedRAMP AC-2 Control"],
    }
)


class FakeLLMProvider:
    name = "fake"

    def __init__(self, response: str | None = DEFAULT_FAKE_RESPONSE, error: Exception | None = None) -> None:
        # Deterministic output keeps tests stable without external calls.
        self._response = response
        self._error = error
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> str | None:
        self.calls.append(
            {
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "json_output": json_output,
            }
        )
        if self._error is not None:
            raise self._error
        return self._response
