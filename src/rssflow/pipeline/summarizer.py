"""
LLM summarization collaborator.

Only the prompt-in, completion-out interface matters to the pipeline.
The OpenAI implementation imports its client lazily so the package works
without the `llm` extra installed.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


@runtime_checkable
class Summarizer(Protocol):
    """Given a prompt, return a completion. May fail or time out."""

    async def summarize(self, prompt: str) -> str: ...


def build_prompt(keywords: list[str]) -> str:
    """Prompt used by the summarize_keywords activity."""
    return (
        "These are the most frequent keywords in today's news headlines: "
        f"{', '.join(keywords)}. "
        "Write a short paragraph summarizing what the news is about."
    )


class OpenAISummarizer:
    """Summarizer backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        timeout: float = 60.0,
        max_tokens: int = 300,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ImportError(
                    "openai package is required for OpenAISummarizer. "
                    "Install with: pip install rssflow[llm]"
                ) from e

            kwargs: dict[str, Any] = {"api_key": self.api_key, "timeout": self.timeout}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncOpenAI(**kwargs)

        return self._client

    async def summarize(self, prompt: str) -> str:
        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=self.max_tokens,
        )
        content = response.choices[0].message.content or ""
        logger.debug(f"Summary from {self.model}: {len(content)} chars")
        return content.strip()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
