"""Outbound HTTP calls with timeout, bounded retry and failure classification."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import httpx

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.exceptions import (
    UpstreamError,
    UpstreamNetworkError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
)
from sessionguard.core.results import ErrorKind, Outcome

logger = logging.getLogger(__name__)


class UpstreamClient:
    """
    Thin wrapper over ``httpx.Client``

    Timeouts and transport errors are retried with exponential backoff up to
    ``max_retries`` times. Non-2xx responses are never retried.
    """

    def __init__(
        self,
        *,
        cfg: Settings = default_settings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = cfg.UPSTREAM_TIMEOUT_SECONDS
        self.max_retries = max(0, cfg.UPSTREAM_MAX_RETRIES)
        self.retry_delay = cfg.UPSTREAM_RETRY_DELAY_SECONDS
        self.transport = transport
        self.sleep = sleep

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Perform a request and return the 2xx response

        Raises:
            UpstreamTimeoutError: every attempt timed out
            UpstreamNetworkError: every attempt failed at the transport level
            UpstreamRejectedError: the upstream answered with a non-2xx status
        """
        attempt = 0
        while True:
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                failure: UpstreamError = UpstreamTimeoutError(f"Request to {_host(url)} timed out")
                cause: Exception = exc
            except httpx.TransportError as exc:
                failure = UpstreamNetworkError(f"Could not reach {_host(url)}")
                cause = exc
            else:
                if response.is_success:
                    return response
                logger.warning(
                    "Upstream %s %s rejected with status %s", method, _host(url), response.status_code
                )
                raise UpstreamRejectedError(
                    f"{_host(url)} rejected the request ({response.status_code})",
                    upstream_status=response.status_code,
                )

            if attempt >= self.max_retries:
                logger.error("Upstream %s %s failed after %s attempts: %s", method, _host(url), attempt + 1, cause)
                raise failure from cause

            delay = self.retry_delay * (2 ** attempt)
            attempt += 1
            logger.info(
                "Retrying %s %s in %.1fs (attempt %s/%s): %s",
                method,
                _host(url),
                delay,
                attempt,
                self.max_retries,
                cause,
            )
            self.sleep(delay)

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host or url
    except httpx.InvalidURL:
        return url


def denial_for(exc: UpstreamError) -> Outcome:
    """Convert a classified upstream failure into a denial outcome."""
    kind = exc.kind or ErrorKind.UPSTREAM_NETWORK_ERROR
    details = {"upstream_status": exc.upstream_status} if exc.upstream_status is not None else None
    return Outcome.deny(kind, exc.message, details=details)
