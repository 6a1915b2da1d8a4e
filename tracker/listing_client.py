"""
Client for the external listing aggregator.

Fetches release listings per source over httpx with bounded timeouts,
retries and throttling, and keeps a read-through cache per source.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog
from asyncio_throttle import Throttler
from bs4 import BeautifulSoup
from pydantic import ValidationError

from scheduler.errors import ListingFetchError
from tracker.models import Listing
from utilities.config import TrackerConfig
from utilities.logger import CycleLogger

logger = structlog.get_logger(__name__)


def decode_title(title: str) -> str:
    """Decode HTML entities and markup left in aggregator titles."""
    if "&" not in title and "<" not in title:
        return title.strip()
    return BeautifulSoup(title, "html.parser").get_text(" ", strip=True)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    return parsed


class ListingClient:
    """Async client for the listing collaborator."""

    def __init__(self, config: TrackerConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the client.

        Args:
            config: Tracker configuration
            transport: Optional httpx transport, used by tests
        """
        self.config = config
        self.base_url = config.listing_api_url
        self.throttler = Throttler(rate_limit=config.rate_limit_per_second)
        self.cache_ttl = timedelta(minutes=config.listing_cache_ttl_minutes)
        self.cycle_logger = CycleLogger("listing_client")
        self.logger = logger.bind(component="listing_client")
        self._cache: Dict[str, Tuple[datetime, List[Listing]]] = {}

        self.client_config = {
            "timeout": httpx.Timeout(config.request_timeout),
            "headers": config.get_headers(),
            "follow_redirects": True,
            "limits": httpx.Limits(max_keepalive_connections=5, max_connections=10),
        }
        if transport is not None:
            self.client_config["transport"] = transport

    async def fetch_listings(self, source: str, fresh: bool = False) -> List[Listing]:
        """
        Fetch the current listings for a source.

        Args:
            source: Source tag understood by the aggregator
            fresh: Bypass the cache (the result still repopulates it)

        Returns:
            Parsed listings; malformed entries are skipped

        Raises:
            ListingFetchError: when the aggregator cannot be reached
        """
        if not fresh:
            cached = self._cache.get(source)
            if cached and datetime.utcnow() - cached[0] < self.cache_ttl:
                self.logger.debug("Listing cache hit", source=source, count=len(cached[1]))
                return list(cached[1])

        async with httpx.AsyncClient(**self.client_config) as client:
            async with self.throttler:
                response = await self._make_request_with_retry(client, {"source": source})

        try:
            payload = response.json()
        except ValueError as e:
            raise ListingFetchError(f"Listing response for {source} is not JSON", {"source": source}) from e

        listings = self._parse_listings(payload, source)
        self._cache[source] = (datetime.utcnow(), listings)
        self.logger.info("Fetched listings", source=source, count=len(listings))
        return list(listings)

    async def refresh_cache(self) -> Dict[str, int]:
        """
        Re-prime every cached source.

        Returns:
            {source: listing count}; failed sources map to -1
        """
        results = {}
        for source in list(self._cache.keys()):
            try:
                listings = await self.fetch_listings(source, fresh=True)
                results[source] = len(listings)
            except ListingFetchError as e:
                self.logger.warning("Cache refresh failed", source=source, error=str(e))
                results[source] = -1
        self.logger.info("Listing cache refreshed", sources=len(results))
        return results

    def clear_cache(self) -> None:
        """Drop all cached listings."""
        self._cache.clear()

    def cached_sources(self) -> List[str]:
        return sorted(self._cache.keys())

    async def _make_request_with_retry(self, client: httpx.AsyncClient, params: Dict[str, str]) -> httpx.Response:
        """
        GET the listing endpoint with exponential backoff.

        Raises:
            ListingFetchError: after the last attempt fails
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.config.retry_attempts + 1):
            try:
                response = await client.get(self.base_url, params=params)
                response.raise_for_status()
                return response

            except httpx.HTTPError as e:
                last_exception = e

                if attempt < self.config.retry_attempts:
                    delay = self.config.retry_delay * (2 ** attempt)
                    self.cycle_logger.log_retry(self.base_url, attempt + 1, self.config.retry_attempts, delay)
                    await asyncio.sleep(delay)

        self.cycle_logger.log_error(f"Request failed after {self.config.retry_attempts} retries",
                                    source=params.get("source"))
        raise ListingFetchError(
            f"Failed to fetch listings for {params.get('source')}: {last_exception}",
            {"source": params.get("source")},
        ) from last_exception

    def _parse_listings(self, payload: Any, source: str) -> List[Listing]:
        if isinstance(payload, dict):
            items = payload.get("listings") or payload.get("games") or payload.get("results") or []
        elif isinstance(payload, list):
            items = payload
        else:
            raise ListingFetchError(f"Unexpected listing payload for {source}", {"source": source})

        listings = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                listings.append(Listing(
                    title=decode_title(str(item.get("title") or "")),
                    link=item.get("link") or item.get("url") or "",
                    image=item.get("image"),
                    raw_version_text=item.get("rawVersionText") or item.get("raw_version_text"),
                    source=item.get("source") or source,
                    published_at=_parse_timestamp(item.get("publishedAt") or item.get("date")),
                ))
            except ValidationError as e:
                self.logger.debug("Skipping malformed listing", source=source, error=str(e))
        return listings
