"""OpenAI-compatible chat client used to rewrite and translate search queries."""

import os
from typing import Any

import httpx
from loguru import logger

from .exceptions import QueryExpansionError
from .query_cache import LRUCache


class LLMClient:
    """Minimal chat-completions client for query rewriting.

    Any OpenAI-compatible endpoint works (OpenAI, DeepSeek, Moonshot, a local
    Ollama ``/v1`` server). Configuration priority: explicit argument, then
    environment.

    Environment Variables:
        KB_SEARCH_LLM_API_KEY: API key (falls back to OPENAI_API_KEY)
        KB_SEARCH_LLM_BASE_URL: API base URL, e.g. ``http://localhost:11434/v1``
        KB_SEARCH_LLM_MODEL: Chat model name
    """

    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_MODEL = "gpt-4o-mini"
    TIMEOUT_SECONDS = 30.0

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize LLM client.

        Args:
            api_key: API key (or KB_SEARCH_LLM_API_KEY / OPENAI_API_KEY)
            base_url: API base URL (or KB_SEARCH_LLM_BASE_URL)
            model: Model to use (or KB_SEARCH_LLM_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.api_key = (
            api_key
            or os.environ.get("KB_SEARCH_LLM_API_KEY")
            or os.environ.get("OPENAI_API_KEY")
        )
        self.base_url = (
            base_url or os.environ.get("KB_SEARCH_LLM_BASE_URL") or self.DEFAULT_BASE_URL
        ).rstrip("/")
        self.model = model or os.environ.get("KB_SEARCH_LLM_MODEL") or self.DEFAULT_MODEL
        self.timeout = timeout
        self._transport = transport
        self._translations: LRUCache[tuple[str, str], str] = LRUCache(
            max_size=500, ttl_seconds=24 * 3600
        )

        logger.debug(f"Initialized LLM client: {self.base_url} model={self.model}")

    @property
    def is_configured(self) -> bool:
        """True when an API key is available or the endpoint is local."""
        return bool(self.api_key) or self.base_url.startswith(
            ("http://localhost", "http://127.0.0.1")
        )

    @property
    def api_endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def _chat_completion(
        self, messages: list[dict[str, str]], temperature: float = 0.0
    ) -> str:
        """Make a chat completion request and return the first message text.

        Raises:
            QueryExpansionError: If the request fails or the response is malformed
        """
        if not self.is_configured:
            raise QueryExpansionError(
                "No LLM API key found. Set KB_SEARCH_LLM_API_KEY or OPENAI_API_KEY."
            )

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.api_endpoint, headers=headers, json=payload
                )
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException as e:
            logger.error(f"LLM API timeout after {self.timeout}s")
            raise QueryExpansionError(
                f"LLM request timed out after {self.timeout} seconds"
            ) from e

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error_msg = f"LLM API error (HTTP {status_code})"
            if status_code == 401:
                error_msg = "Invalid LLM API key. Please check KB_SEARCH_LLM_API_KEY."
            elif status_code == 429:
                error_msg = "LLM API rate limit exceeded. Please wait and try again."
            elif status_code >= 500:
                error_msg = "LLM API server error. Please try again later."

            logger.error(error_msg)
            raise QueryExpansionError(error_msg, {"status_code": status_code}) from e

        except Exception as e:
            logger.error(f"LLM API request failed: {e}")
            raise QueryExpansionError(f"LLM request failed: {e}") from e

        try:
            return str(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError) as e:
            raise QueryExpansionError(f"Malformed LLM response: {data!r:.200}") from e

    async def rewrite_query(self, query: str, count: int = 3) -> list[str]:
        """Ask the model for ``count`` alternative phrasings, one per line.

        Returns:
            Up to ``count`` non-empty rewrites (the original is not included)

        Raises:
            QueryExpansionError: If the API call fails
        """
        system_prompt = (
            f"Generate {count} different versions of the user's question to "
            "retrieve relevant documents from a vector database. Output one "
            "query per line with no numbering or explanation, in the same "
            "language as the question."
        )
        content = await self._chat_completion(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": query},
            ],
            temperature=0.3,
        )
        rewrites = [
            line.strip().lstrip("-*0123456789.) ").strip()
            for line in content.splitlines()
        ]
        rewrites = [r for r in rewrites if r]
        logger.debug(f"LLM produced {len(rewrites)} rewrites for '{query}'")
        return rewrites[:count]

    async def translate_query(self, query: str, target_lang: str = "en") -> str:
        """Translate a query, cached per (query, target language).

        Raises:
            QueryExpansionError: If the API call fails
        """
        cache_key = (query, target_lang)
        cached = self._translations.get(cache_key)
        if cached is not None:
            return cached

        target = "English" if target_lang == "en" else "Chinese"
        content = await self._chat_completion(
            [
                {
                    "role": "system",
                    "content": (
                        f"Translate the user's search query to {target}. Only "
                        "return the translated text."
                    ),
                },
                {"role": "user", "content": query},
            ]
        )
        translated = content.strip()
        self._translations.set(cache_key, translated)
        logger.debug(f"Translated '{query}' -> '{translated}' ({target_lang})")
        return translated
