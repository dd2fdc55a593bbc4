import asyncio
import math
import re
from numbers import Real
from typing import Any, Protocol

import openai
from llama_index.embeddings.openai import OpenAIEmbedding

from .config import Settings
from .errors import EmbeddingError, TransientIOError
from .log import get_logger
from .retry import RateLimiter, with_retry

logger = get_logger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RUN = re.compile(r"\s+")


class EmbedModel(Protocol):
    async def aget_text_embedding(self, text: str) -> list[float]: ...


def preprocess_text(text: str) -> str:
    """Strip control characters and collapse whitespace.

    A whitespace run containing a newline becomes a single newline, any other
    run a single space.
    """
    text = _CONTROL_CHARS.sub("", text)
    text = _WHITESPACE_RUN.sub(lambda m: "\n" if "\n" in m.group(0) else " ", text)
    return text.strip()


def validate_vector(vector: Any, dimensions: int) -> list[float]:
    if not isinstance(vector, (list, tuple)):
        raise EmbeddingError(f"Invalid embedding response: expected a list, got {type(vector).__name__}")
    if len(vector) != dimensions:
        raise EmbeddingError(f"Embedding dimension mismatch: expected {dimensions}, got {len(vector)}")
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise EmbeddingError("Invalid embedding response: non-numeric component")
        if math.isnan(value):
            raise EmbeddingError("Invalid embedding response: NaN component")
    return [float(v) for v in vector]


class EmbeddingClient:
    def __init__(
        self,
        embed_model: EmbedModel,
        dimensions: int,
        rate_limiter: RateLimiter,
        max_input_length: int = 4096,
        timeout: float = 120.0,
        max_attempts: int = 3,
        base_delay: float = 2.0,
    ):
        self.embed_model = embed_model
        self.dimensions = dimensions
        self.rate_limiter = rate_limiter
        self.max_input_length = max_input_length
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    @classmethod
    def from_settings(cls, settings: Settings, rate_limiter: RateLimiter | None = None) -> "EmbeddingClient":
        embed_model = OpenAIEmbedding(
            model=settings.embedding_model,
            dimensions=settings.dimensions,
            api_base=settings.embedding_api_base,
            api_key=settings.embedding_api_key,
            max_retries=0,
            timeout=settings.request_timeout,
            default_headers={
                "HTTP-Referer": "https://github.com/codeindex",
                "X-Title": "codeindex",
            },
        )
        return cls(
            embed_model=embed_model,
            dimensions=settings.dimensions,
            rate_limiter=rate_limiter or RateLimiter(settings.embedding_rpm_limit),
            max_input_length=settings.max_input_length,
            timeout=settings.request_timeout,
            max_attempts=settings.max_retries,
            base_delay=settings.retry_delay,
        )

    async def _call(self, text: str) -> Any:
        await self.rate_limiter.acquire()
        try:
            return await asyncio.wait_for(self.embed_model.aget_text_embedding(text), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientIOError(f"Embedding request timed out after {self.timeout}s") from e
        except openai.APIStatusError as e:
            # Client errors are final, except 429.
            if 400 <= e.status_code < 500 and e.status_code != 429:
                raise EmbeddingError(f"Embedding request rejected ({e.status_code}): {e.message}") from e
            raise TransientIOError(f"Embedding request failed ({e.status_code}): {e.message}") from e
        except openai.APIError as e:
            raise TransientIOError(f"Embedding request failed: {e}") from e

    async def embed(self, text: str) -> list[float]:
        processed = preprocess_text(text)
        if not processed:
            raise EmbeddingError("Cannot embed empty text")
        if len(processed) > self.max_input_length:
            processed = processed[: self.max_input_length]

        try:
            vector = await with_retry(lambda: self._call(processed), self.max_attempts, self.base_delay)
            return validate_vector(vector, self.dimensions)
        except (EmbeddingError, TransientIOError) as e:
            logger.error(
                "embedding.failed",
                error=str(e),
                input_length=len(processed),
                input_snippet=processed[:100],
            )
            raise
