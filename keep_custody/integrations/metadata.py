"""
Keep Custody — metadata fallback sources.

`Keep.uri(id)` returns the locally set URI when there is one. Otherwise
it asks the configured fetcher, which is where a deployment plugs in a
shared metadata service.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)


class UriFetcher(ABC):
    """Source of metadata URIs for identifiers without a local URI."""

    @abstractmethod
    def uri(self, token_id: int) -> str:
        ...


class StaticUriFetcher(UriFetcher):
    """Template-based fetcher: `template.format(id=token_id)`."""

    def __init__(self, template: str) -> None:
        self.template = template

    def uri(self, token_id: int) -> str:
        return self.template.format(id=token_id)


class HttpUriFetcher(UriFetcher):
    """
    HTTP metadata client.

    GET {base_url}/{token_id} returns the URI as plain text. Transport
    errors and non-2xx responses propagate as httpx errors.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def _ensure_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def uri(self, token_id: int) -> str:
        client = self._ensure_client()
        resp = client.get(f"/{token_id}")
        resp.raise_for_status()
        logger.debug("Fetched metadata URI for id=%d", token_id)
        return resp.text.strip()
