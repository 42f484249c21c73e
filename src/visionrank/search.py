"""Web search lookup for a predicted label (Google Custom Search JSON API)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from visionrank.errors import SearchError

if TYPE_CHECKING:
    from visionrank.config import Settings

logger = logging.getLogger(__name__)


class SearchResult(BaseModel):
    """A single search hit."""

    title: str = ""
    link: str
    snippet: str = ""
    display_link: str = Field(default="", validation_alias=AliasChoices("displayLink", "display_link"))


class SearchClient:
    """Thin async client over the Custom Search endpoint."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._url = settings.search_url
        self._key = settings.search_api_key
        self._engine_id = settings.search_engine_id
        self._num_results = settings.search_num_results
        self._client = client or httpx.AsyncClient(timeout=settings.search_timeout)

    @property
    def enabled(self) -> bool:
        return bool(self._key and self._engine_id)

    async def search(self, term: str) -> list[SearchResult]:
        """Look up ``term`` and return the parsed hits (possibly none).

        Raises:
            SearchError: On transport failure, a non-2xx status, or a malformed body.
        """
        if not self.enabled:
            raise SearchError("Search is not configured")

        params = {"key": self._key, "cx": self._engine_id, "q": term, "num": self._num_results}
        try:
            response = await self._client.get(self._url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SearchError(f"Search for '{term}' returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SearchError(f"Search for '{term}' failed: {exc}") from exc
        except ValueError as exc:
            raise SearchError(f"Search for '{term}' returned malformed JSON") from exc

        if not isinstance(payload, dict):
            raise SearchError(f"Search for '{term}' returned an unexpected payload")
        items = payload.get("items") or []
        if not isinstance(items, list):
            raise SearchError(f"Search for '{term}' returned malformed items")
        try:
            results = [SearchResult.model_validate(item) for item in items]
        except ValidationError as exc:
            raise SearchError(f"Search for '{term}' returned malformed items") from exc

        logger.debug("Search for %r returned %d results", term, len(results))
        return results

    async def aclose(self) -> None:
        await self._client.aclose()
