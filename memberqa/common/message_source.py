"""
Message Source

Async HTTP client for the paginated member-messages API.
Fetches the full corpus in batches with per-page retry and backoff.

The API returns pages shaped as {"total": int, "items": [message, ...]}
and accepts ``skip`` / ``limit`` query parameters.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import SourceConfig
from .schemas import Message

logger = logging.getLogger("memberqa.common.message_source")


class SourceUnavailable(Exception):
    """The corpus could not be fetched from the message source."""
    pass


class HttpMessageSource:
    """
    Paginated message source backed by httpx.AsyncClient.

    Usage:
        source = HttpMessageSource(SourceConfig(base_url="https://..."))
        messages = await source.fetch_all()
        await source.close()
    """

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize message source.

        Args:
            config: Source configuration (URL, batch size, retries, timeout)
            client: Optional pre-built AsyncClient (tests inject a MockTransport)
        """
        self.config = config or SourceConfig()
        self._base_url = self.config.base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Create the async HTTP client if not yet created."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_all(self) -> List[Message]:
        """
        Fetch every message from the API.

        Returns:
            Messages in source order

        Raises:
            SourceUnavailable: if any page fails after all retries
        """
        messages: List[Message] = []
        skip = 0

        logger.info("Fetching messages from %s", self._base_url)

        while True:
            try:
                page = await self._fetch_page_with_retry(skip, self.config.batch_size)
            except (httpx.HTTPError, ValueError) as e:
                logger.error("Failed to fetch messages at skip=%d: %s", skip, e)
                raise SourceUnavailable(f"Failed to fetch messages: {e}") from e

            items = page.get("items") or []
            if not items:
                break

            messages.extend(Message.from_api(item) for item in items)
            skip += len(items)

            total = int(page.get("total", 0) or 0)
            logger.debug("Fetched %d / %d messages", len(messages), total)

            if skip >= total:
                break

        logger.info("Fetched %d messages", len(messages))
        return messages

    async def _fetch_page_with_retry(self, skip: int, limit: int) -> Dict[str, Any]:
        """Fetch a single page, retrying with linear backoff."""
        client = self._ensure_client()
        attempts = max(1, self.config.max_retries)

        for attempt in range(1, attempts + 1):
            try:
                response = await client.get(
                    f"{self._base_url}/messages/",
                    params={"skip": skip, "limit": limit},
                    timeout=self.config.timeout,
                )
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError(f"Unexpected page format: {type(payload).__name__}")
                return payload
            except (httpx.HTTPError, ValueError) as e:
                if attempt == attempts:
                    raise
                logger.warning("Retry %d/%d after error: %s", attempt, attempts, e)
                await asyncio.sleep(self.config.retry_delay * attempt)

        raise SourceUnavailable("Max retries exceeded")

    async def ping(self) -> bool:
        """Test API connectivity with a single-item request."""
        client = self._ensure_client()
        try:
            response = await client.get(
                f"{self._base_url}/messages/",
                params={"skip": 0, "limit": 1},
                timeout=5.0,
            )
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Message source connectivity check failed: %s", e)
            return False
