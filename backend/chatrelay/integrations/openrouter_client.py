"""OpenRouter integration: model listing via httpx, chat completions via the OpenAI SDK."""

import logging
from collections.abc import AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI

from chatrelay.core.config import settings
from chatrelay.core.exceptions import CatalogUnavailable, ProviderError

logger = logging.getLogger(__name__)


class OpenRouterClient:
    """Client for an OpenAI-compatible completion API (OpenRouter by default)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {api_key}"}
        self.timeout = timeout
        self._http_client = http_client
        self._client = AsyncOpenAI(api_key=api_key, base_url=self.base_url, timeout=timeout)

    async def list_models(self) -> list[dict]:
        """Fetch the raw model listing (`data` array of GET /models)."""
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    f"{self.base_url}/models", headers=self.headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(f"{self.base_url}/models", headers=self.headers)
            response.raise_for_status()
            return response.json()["data"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise CatalogUnavailable(f"Model listing failed: {e}") from e

    async def complete(self, messages: list[dict], model: str, temperature: float) -> str:
        """Non-streaming chat completion; returns choices[0].message.content."""
        logger.info("Sending completion request model=%s temperature=%s", model, temperature)
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"Provider request failed: {e}") from e

        if not response.choices or response.choices[0].message is None:
            raise ProviderError("Provider returned no choices")
        return response.choices[0].message.content or ""

    async def stream(self, messages: list[dict], model: str, temperature: float) -> AsyncIterator[str]:
        """Streaming chat completion; yields choices[0].delta.content of each chunk."""
        logger.info("Opening completion stream model=%s temperature=%s", model, temperature)
        try:
            stream = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                stream=True,
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"Provider request failed: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                content = delta.content if delta is not None else None
                if content:
                    yield content
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise ProviderError(f"Provider stream interrupted: {e}") from e
        finally:
            await stream.close()

    async def aclose(self) -> None:
        await self._client.close()


def build_openrouter_client() -> OpenRouterClient:
    return OpenRouterClient(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        timeout=settings.provider_timeout_seconds,
    )
