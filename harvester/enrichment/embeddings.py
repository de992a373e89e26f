"""Text -> vector, used only by the Index stage.

Embeddings are optional: without an API key the NullEmbedder is used and
events are indexed without a vector.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Optional, Protocol

import openai
from openai import OpenAI

from harvester.errors import EnrichmentError
from harvester.runtime.resilience import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 8000

_RETRYABLE = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class Embedder(Protocol):
    def embed(self, text: str) -> Optional[list[float]]: ...


class NullEmbedder:
    def embed(self, text: str) -> Optional[list[float]]:
        return None


class OpenAIEmbedder:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        timeout_s: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2, base_delay_s=2.0)
        # Retries are ours, not the SDK's, so one policy governs every dependency.
        self._client = client or OpenAI(api_key=api_key, timeout=timeout_s, max_retries=0)
        self._sleep = sleep

    def _call(self, text: str) -> list[float]:
        try:
            resp = self._client.embeddings.create(model=self.model, input=text)
        except _RETRYABLE as e:
            raise EnrichmentError(f"embedding service: {type(e).__name__}: {e}", retryable=True) from e
        except openai.APIError as e:
            raise EnrichmentError(f"embedding service: {type(e).__name__}: {e}", retryable=False) from e
        return list(resp.data[0].embedding)

    def embed(self, text: str) -> Optional[list[float]]:
        text = (text or "").strip()[:MAX_INPUT_CHARS]
        if not text:
            return None
        return call_with_retry(
            lambda: self._call(text), policy=self.retry_policy, sleep=self._sleep, label="embed"
        )


def embedding_text(
    title: str,
    description: str = "",
    venue: str = "",
    category: str = "",
) -> str:
    return " | ".join(p for p in (title, description, venue, category) if p)


def build_embedder(settings) -> Embedder:
    key = settings.openai_api_key
    if not key:
        logger.info("No OpenAI API key configured; events will be indexed without embeddings")
        return NullEmbedder()
    return OpenAIEmbedder(api_key=key, model=settings.EMBEDDING_MODEL)
