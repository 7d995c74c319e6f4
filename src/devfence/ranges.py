"""Bulk CIDR range fetching for providers that publish their address space.

Unlike per-domain DNS failures, a provider that cannot be fetched is fatal:
proceeding without, say, every GitHub range would break the agent in a way
that looks exactly like an attack. Individual malformed CIDRs are dropped.
"""

from __future__ import annotations

import ipaddress
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from devfence.errors import MalformedEntry, ProviderUnavailable
from devfence.policy.models import IPNetwork, RangeProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RangeResult:
    """Validated networks published by one provider."""

    provider: str
    networks: tuple[IPNetwork, ...] = ()
    malformed: tuple[MalformedEntry, ...] = ()


class RangeFetcher:
    """Fetches and validates provider range documents over HTTPS."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        retries: int = 2,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._retries = retries
        self._backoff = backoff
        self._sleep = sleep

    def fetch_ranges(self, provider: RangeProvider) -> RangeResult:
        """Fetch one provider. Raises ``ProviderUnavailable`` on any fatal problem."""
        logger.info("Fetching %s IP ranges from %s", provider.name, provider.url)
        document = self._get_json(provider)

        raw: list[str] = []
        # Without explicit keys every array in the document is taken
        keys = provider.keys or tuple(k for k, v in document.items() if isinstance(v, list))
        if not keys:
            raise ProviderUnavailable(provider.name, "response contains no range arrays")
        for key in keys:
            values = document.get(key)
            if not isinstance(values, list):
                raise ProviderUnavailable(
                    provider.name, f"response missing required key {key!r}"
                )
            raw.extend(str(v) for v in values)

        networks: set[IPNetwork] = set()
        malformed: list[MalformedEntry] = []
        for value in raw:
            try:
                networks.add(ipaddress.ip_network(value.strip(), strict=False))
            except ValueError:
                logger.warning("Invalid CIDR from %s: %s (skipping)", provider.name, value)
                malformed.append(MalformedEntry(provider.name, value))

        ordered = tuple(sorted(networks, key=lambda n: (n.version, n)))
        logger.info("Fetched %d ranges from %s", len(ordered), provider.name)
        return RangeResult(provider=provider.name, networks=ordered, malformed=tuple(malformed))

    def fetch_all(self, providers: tuple[RangeProvider, ...]) -> list[RangeResult]:
        """Fetch every provider in order; the first failure propagates."""
        return [self.fetch_ranges(p) for p in providers]

    def _get_json(self, provider: RangeProvider) -> dict:
        attempt = 0
        while True:
            try:
                response = self._request(provider.url)
            except httpx.HTTPError as exc:
                reason = f"{exc.__class__.__name__}: {exc}"
            else:
                if response.is_success:
                    return _decode(provider, response)
                reason = f"HTTP {response.status_code}"
                # Client errors will not fix themselves
                if response.is_client_error:
                    raise ProviderUnavailable(provider.name, reason)

            if attempt >= self._retries:
                raise ProviderUnavailable(provider.name, reason)
            delay = self._backoff * (2**attempt)
            logger.warning(
                "Fetching %s failed (%s), retrying in %.1fs", provider.name, reason, delay
            )
            self._sleep(delay)
            attempt += 1

    def _request(self, url: str) -> httpx.Response:
        if self._client is not None:
            return self._client.get(url, timeout=self._timeout)
        with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
            return client.get(url)


def _decode(provider: RangeProvider, response: httpx.Response) -> dict:
    try:
        document = response.json()
    except ValueError as exc:
        raise ProviderUnavailable(provider.name, f"invalid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ProviderUnavailable(provider.name, "response is not a JSON object")
    return document
