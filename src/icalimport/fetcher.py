"""Feed fetcher with a primary async client and a fallback transport."""

import asyncio
import logging
from typing import List, Optional, Union

import httpx
import requests
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import Settings
from .models import FetchErrorKind, FetchFailure, RawFeedDocument

logger = logging.getLogger(__name__)

FetchOutcome = Union[RawFeedDocument, FetchFailure]


def normalize_feed_url(url: str) -> str:
    """Rewrite webcal:// subscriptions to https://."""
    url = url.strip()
    if url.lower().startswith('webcal://'):
        return 'https://' + url[len('webcal://'):]
    return url


def _charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    for part in (content_type or '').split(';')[1:]:
        key, _, value = part.partition('=')
        if key.strip().lower() == 'charset' and value.strip():
            return value.strip().strip('"')
    return None


class FeedFetcher:
    """Retrieve raw ICS documents.

    httpx is tried first (retrying transport errors); if it fails for any
    reason, including a non-2xx status or an empty body, a plain requests
    call is made before the failure is reported.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fallback_session: Optional[requests.Session] = None,
        retry_wait: Optional[object] = None
    ):
        """Initialize the fetcher.

        Args:
            settings: Application settings (timeout, TLS, retries)
            transport: Optional httpx transport, used by tests
            fallback_session: Optional requests session for the fallback
            retry_wait: tenacity wait strategy between primary attempts
        """
        self.settings = settings
        self.transport = transport
        self.fallback_session = fallback_session
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)
        self.logger = logger
        if not settings.verify_ssl:
            self.logger.warning("TLS certificate verification is disabled for feed requests")

    @property
    def headers(self):
        return {
            'User-Agent': self.settings.user_agent,
            'Accept': 'text/calendar, text/plain;q=0.9, */*;q=0.5',
        }

    async def fetch(self, url: str, timeout_seconds: Optional[float] = None) -> FetchOutcome:
        """Fetch a feed; never raises.

        Args:
            url: Feed URL (http, https or webcal)
            timeout_seconds: Overrides the configured request timeout

        Returns:
            RawFeedDocument on success, otherwise the FetchFailure of the
            last transport tried
        """
        url = normalize_feed_url(url)
        timeout = timeout_seconds or self.settings.request_timeout_seconds
        attempts: List[str] = []

        primary = await self._fetch_primary(url, timeout)
        if isinstance(primary, RawFeedDocument):
            return primary
        attempts.append(f"httpx: {primary}")
        self.logger.info(f"Primary fetch of {url} failed ({primary}), trying fallback")

        fallback = await asyncio.get_running_loop().run_in_executor(
            None, self._fetch_fallback, url, timeout
        )
        if isinstance(fallback, RawFeedDocument):
            return fallback
        attempts.append(f"requests: {fallback}")
        self.logger.error(f"Fetching {url} failed: {'; '.join(attempts)}")

        fallback.attempts = attempts
        return fallback

    async def _fetch_primary(self, url: str, timeout: float) -> FetchOutcome:
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                verify=self.settings.verify_ssl,
                headers=self.headers,
                transport=self.transport
            ) as client:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.settings.fetch_retry_attempts),
                    wait=self.retry_wait,
                    retry=retry_if_exception_type(httpx.TransportError),
                    reraise=True
                ):
                    with attempt:
                        response = await client.get(url)
        except httpx.TimeoutException as e:
            return FetchFailure(FetchErrorKind.TIMEOUT, f"timed out after {timeout}s: {e}", url)
        except httpx.HTTPError as e:
            return FetchFailure(FetchErrorKind.UNREACHABLE, str(e) or type(e).__name__, url)

        return self._to_document(
            url,
            response.status_code,
            response.content,
            _charset_from_content_type(response.headers.get('content-type')),
            'httpx'
        )

    def _fetch_fallback(self, url: str, timeout: float) -> FetchOutcome:
        session = self.fallback_session or requests.Session()
        try:
            response = session.get(
                url,
                headers=self.headers,
                timeout=timeout,
                allow_redirects=True,
                verify=self.settings.verify_ssl
            )
        except requests.exceptions.Timeout as e:
            return FetchFailure(FetchErrorKind.TIMEOUT, f"timed out after {timeout}s: {e}", url)
        except requests.exceptions.RequestException as e:
            return FetchFailure(FetchErrorKind.UNREACHABLE, str(e) or type(e).__name__, url)
        finally:
            if self.fallback_session is None:
                session.close()

        return self._to_document(
            url,
            response.status_code,
            response.content,
            _charset_from_content_type(response.headers.get('Content-Type')),
            'requests'
        )

    def _to_document(self, url: str, status: int, content: Optional[bytes],
                     encoding: Optional[str], transport: str) -> FetchOutcome:
        if not 200 <= status < 300:
            return FetchFailure(FetchErrorKind.UNREACHABLE, f"HTTP {status}", url)
        if not content or not content.strip():
            return FetchFailure(FetchErrorKind.EMPTY_BODY, "empty response body", url)
        self.logger.debug(f"Fetched {len(content)} bytes from {url} via {transport}")
        return RawFeedDocument(content=content, encoding=encoding or 'utf-8', url=url, transport=transport)
