from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from competitor_alert.errors import SearchProviderError
from competitor_alert.models.schemas import SearchHit

logger = logging.getLogger(__name__)

MAX_RESULTS_PER_CALL = 10


class SearchClient:
    """Serper-style web search with retry and exponential backoff.

    A search that fails every attempt yields an empty list so one bad
    competitor/platform pair never aborts the whole alert.
    """

    def __init__(
        self,
        api_key: str,
        endpoint: str = "https://google.serper.dev/search",
        *,
        retries: int = 3,
        timeout: float = 20.0,
        locale: str = "en",
        country: str = "us",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.retries = max(1, retries)
        self.timeout = timeout
        self.locale = locale
        self.country = country
        self._sleep = sleep

    def search(self, query: str, max_results: int) -> list[SearchHit]:
        for attempt in range(1, self.retries + 1):
            try:
                logger.debug("Search attempt %d: %s", attempt, query[:50])
                hits = self._search_once(query, max_results)
            except SearchProviderError as exc:
                logger.warning("Search attempt %d failed: %s", attempt, exc)
                if attempt == self.retries:
                    logger.error(
                        "Search failed after %d attempts for query: %s",
                        self.retries,
                        query,
                    )
                    return []
                wait_seconds = 2**attempt
                logger.info("Waiting %ss before retry", wait_seconds)
                self._sleep(wait_seconds)
                continue

            logger.info("Search successful: %d results", len(hits))
            return hits
        return []

    def _search_once(self, query: str, max_results: int) -> list[SearchHit]:
        payload = {
            "q": query,
            "num": min(max_results, MAX_RESULTS_PER_CALL),
            "hl": self.locale,
            "gl": self.country,
        }
        headers = {
            "X-API-KEY": self.api_key,
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                self.endpoint,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SearchProviderError(f"request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise SearchProviderError(
                f"status {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise SearchProviderError(f"invalid JSON body: {exc}") from exc

        if not isinstance(data, dict):
            raise SearchProviderError("unexpected response shape")
        organic = data.get("organic") or []
        if not isinstance(organic, list):
            raise SearchProviderError("unexpected response shape")
        return parse_hits(organic)


def parse_hits(entries: list[Any]) -> list[SearchHit]:
    hits: list[SearchHit] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        url = str(entry.get("link") or entry.get("url") or "").strip()
        if not url:
            continue
        try:
            position = int(entry.get("position") or index + 1)
        except (TypeError, ValueError):
            position = index + 1
        hits.append(
            SearchHit(
                title=str(entry.get("title") or ""),
                url=url,
                snippet=str(entry.get("snippet") or ""),
                display_url=str(entry.get("displayLink") or entry.get("displayUrl") or ""),
                position=position,
            )
        )
    return hits
