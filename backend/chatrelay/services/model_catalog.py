"""Model catalog: time-boxed cache of the provider's model list with a static fallback."""

import logging
import time
from collections.abc import Awaitable, Callable

from chatrelay.core.exceptions import CatalogUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


def fallback_models(default_model: str) -> list[dict]:
    return [
        {
            "id": default_model,
            "name": "Default model",
            "context_length": 8192,
            "max_completion_tokens": 4096,
            "pricing": {"prompt": 0, "completion": 0},
        }
    ]


def project_models(raw_models: list[dict]) -> list[dict]:
    """Sort by display name and keep only the fields the UI needs."""
    projected = [
        {
            "id": m["id"],
            "name": m["name"],
            "context_length": m["context_length"],
            "max_completion_tokens": m["top_provider"]["max_completion_tokens"],
            "pricing": m["pricing"],
        }
        for m in raw_models
    ]
    return sorted(projected, key=lambda m: m["name"])


class ModelCatalog:
    """Process-wide model list, refreshed in bulk once the TTL has elapsed.

    Concurrent refreshes on expiry may both hit the provider; the refresh is
    idempotent so no lock is taken.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[dict]]],
        default_model: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.fetch = fetch
        self.default_model = default_model
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._models: list[dict] | None = None
        self._expires_at: float = 0.0

    async def get_models(self) -> list[dict]:
        if self._models is not None and self.clock() < self._expires_at:
            return self._models
        return await self.refresh()

    async def refresh(self) -> list[dict]:
        """Fetch from the provider. Failures return the fallback and are not cached."""
        try:
            raw_models = await self.fetch()
            models = project_models(raw_models)
        except (CatalogUnavailable, KeyError, TypeError, ValueError) as e:
            logger.error("Failed to fetch model list, using fallback: %s", e)
            return fallback_models(self.default_model)

        self._models = models
        self._expires_at = self.clock() + self.ttl_seconds
        return models

    def invalidate(self) -> None:
        self._models = None
        self._expires_at = 0.0

    async def is_available(self, model_id: str | None) -> bool:
        if not model_id:
            return False
        models = await self.get_models()
        return any(m["id"] == model_id for m in models)

    async def resolve(self, model_id: str | None) -> str:
        """Return model_id when the catalog lists it, else the default model."""
        if await self.is_available(model_id):
            return model_id
        logger.info("Model %r unavailable, using default model %s", model_id, self.default_model)
        return self.default_model
