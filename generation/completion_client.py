"""
Shared OpenAI helper for the generation pipeline, backed by a credential pool.

Used by:
  - concept_extractor.py   (Agent 1)
  - question_crafter.py    (Agent 2)
  - reviewer.py            (Agent 3)
  - retrieval_engine.py / embeddings  (embed)

Rotation policy:
  - pool[cursor % size] is used for every call
  - rate limit (429) / unavailable (503) / timeout / connection error
        → advance cursor, sleep backoff, retry
  - any other error → raised immediately
  - at most 2 × pool size attempts per logical call, then CredentialsExhaustedError

Model: gpt-4o-mini  (override with GPT_MODEL env var, e.g. "gpt-4o")
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import openai
from openai import AsyncOpenAI

from generation.config import PipelineConfig, get_config
from generation.errors import CredentialsExhaustedError

log = logging.getLogger("generation.completion")

T = TypeVar("T")

ROTATABLE_STATUS = {429, 503}

DEFAULT_SYSTEM = "You are a helpful academic assistant. Output only what is asked."


class CredentialPool:
    """
    Ordered, read-only list of API keys with one shared rotation cursor.
    The cursor moves only on failure and wraps modulo the pool size.
    """

    def __init__(self, keys: Sequence[str], start: int = 0):
        self._keys: Tuple[str, ...] = tuple(k for k in keys if k)
        self._cursor = start
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._keys)

    @property
    def cursor(self) -> int:
        return self._cursor % self.size if self._keys else 0

    def current(self) -> Tuple[int, str]:
        """(index, key) currently selected."""
        if not self._keys:
            raise RuntimeError(
                "No API keys configured. Set OPENAI_API_KEYS (or OPENAI_API_KEY) in your .env file."
            )
        with self._lock:
            index = self._cursor % len(self._keys)
        return index, self._keys[index]

    def advance(self, failed_index: int) -> int:
        """
        Move past failed_index. If another caller already rotated away from it
        the cursor is left where it is.
        """
        with self._lock:
            if self._cursor % len(self._keys) == failed_index:
                self._cursor = (failed_index + 1) % len(self._keys)
            return self._cursor


def is_rotatable(exc: BaseException) -> bool:
    """Rate-limited or transiently unavailable: worth trying the next key."""
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in ROTATABLE_STATUS
    return isinstance(exc, asyncio.TimeoutError)


ClientFactory = Callable[[str], AsyncOpenAI]


class CompletionClient:
    """
    complete(prompt) -> text and embed(text) -> vector over a CredentialPool.

    client_factory builds one SDK client per key; tests pass fakes here.
    SDK-level retries are disabled so every retry goes through the pool.
    """

    def __init__(
        self,
        pool: CredentialPool,
        config: Optional[PipelineConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.config = config or get_config()
        self._client_factory = client_factory or self._default_factory
        self._clients: Dict[str, AsyncOpenAI] = {}
        self._sleep = sleep
        self.attempts = 0   # total SDK calls made, for stats and tests

    def _default_factory(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.config.base_url,
            timeout=self.config.completion_timeout,
            max_retries=0,
        )

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    async def _with_rotation(self, op: str, call: Callable[[AsyncOpenAI], Awaitable[T]]) -> T:
        max_attempts = 2 * self.pool.size
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            index, key = self.pool.current()
            self.attempts += 1
            try:
                return await asyncio.wait_for(
                    call(self._client_for(key)),
                    timeout=self.config.completion_timeout,
                )
            except Exception as exc:
                if not is_rotatable(exc):
                    raise
                last_error = exc
                new_index = self.pool.advance(index)
                log.warning(
                    f"[{op}] key #{index} failed ({type(exc).__name__}), "
                    f"attempt {attempt}/{max_attempts}, rotating to key #{new_index}"
                )
                if attempt < max_attempts:
                    await self._sleep(self.config.credential_backoff)

        log.error(f"[{op}] all {self.pool.size} keys exhausted after {max_attempts} attempts")
        raise CredentialsExhaustedError(max_attempts, self.pool.size, last_error)

    async def complete(
        self,
        prompt: str,
        system: str = DEFAULT_SYSTEM,
        model_hint: Optional[str] = None,
        temperature: float = 0.4,
        max_tokens: int = 2048,
        json_mode: bool = False,
    ) -> str:
        """
        Call Chat Completions and return the assistant message text.

        Args:
            prompt:      User-turn message
            system:      System prompt
            model_hint:  Model override (defaults to GPT_MODEL)
            temperature: Sampling temperature
            max_tokens:  Max response tokens
            json_mode:   Ask for a JSON object response
        """
        kwargs = dict(
            model=model_hint or self.config.gpt_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        async def call(client: AsyncOpenAI) -> str:
            response = await client.chat.completions.create(**kwargs)
            return response.choices[0].message.content or ""

        return await self._with_rotation("complete", call)

    async def embed(self, text: str) -> List[float]:
        """Embedding vector for one text."""
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embedding vectors for several texts, in input order."""
        if not texts:
            return []
        inputs = [t if t and t.strip() else " " for t in texts]

        async def call(client: AsyncOpenAI) -> List[List[float]]:
            response = await client.embeddings.create(
                input=inputs,
                model=self.config.embedding_model,
            )
            data = sorted(response.data, key=lambda item: item.index)
            return [list(item.embedding) for item in data]

        return await self._with_rotation("embed", call)


# Lazy singleton
_client: Optional[CompletionClient] = None


def get_completion_client() -> CompletionClient:
    global _client
    if _client is None:
        config = get_config()
        _client = CompletionClient(CredentialPool(config.api_keys), config)
    return _client
