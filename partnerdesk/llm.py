"""Advisory text-completion client.

One async client over Anthropic and OpenAI(-compatible) APIs. Callers get a
parsed JSON object back; answers are free text, so the first ``{...}``
substring is extracted rather than trusting the model to return bare JSON.
"""
from __future__ import annotations

import logging
import os
from typing import Any

from partnerdesk.utils import extract_json_object

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def probe_timeout() -> float:
    """Per-call time bound for network-bound probes and notifications."""
    try:
        return float(os.environ.get("PROBE_TIMEOUT", DEFAULT_TIMEOUT))
    except ValueError:
        return DEFAULT_TIMEOUT


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.timeout = timeout or probe_timeout()
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                timeout=self.timeout,
                max_retries=0,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {"timeout": self.timeout, "max_retries": 0}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str, temperature: float = 0.3) -> str:
        """Send system+user message to the LLM, return the raw answer text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=2048,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return response.content[0].text.strip()
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=2048,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def call(self, system: str, user: str, temperature: float = 0.3) -> dict[str, Any]:
        """Send system+user message to the LLM, return the first JSON object in the answer."""
        text = await self.complete(system, user, temperature)
        parsed = extract_json_object(text)
        if parsed is None:
            raise LLMCallError(f"LLM returned no JSON object: {text[:200]}", retryable=False)
        return parsed


def get_llm_client() -> LLMClient | None:
    """Build the configured client, or None when no provider is usable.

    ``None`` switches callers to their documented fallbacks (neutral advisory
    opinion, no personalization).
    """
    try:
        return LLMClient()
    except Exception as exc:
        log.warning("LLM client unavailable, advisory features degraded: %s", exc)
        return None
