#!/usr/bin/env python3
"""
Conditional feed fetcher.

This module issues HTTP GET requests for feeds, using the caching validators
stored from previous fetches so unchanged feeds cost a 304 instead of a full
download, and classifies the response for the update pipeline.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError, UnexpectedHttpResponseError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("fetcher")
_tracer = get_tracer("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304

# Header opting in to RFC 3229 feed deltas
DELTA_UPDATE_HEADER = 'A-IM'
DELTA_UPDATE_VALUE = 'feed'


@dataclass(frozen=True)
class FetchResponse:
    """A response worth processing: 2xx with a body, or 304 without one."""

    status: int
    content: Optional[bytes] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status == HTTP_NOT_MODIFIED


class ConditionalFetcher:
    """Fetches feeds with If-None-Match / If-Modified-Since validators."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def build_request_headers(self, etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
        """Prepare HTTP headers, adding conditional headers only for known validators."""
        headers = {'User-Agent': config.USER_AGENT}
        enable_delta_updates = False

        if etag:
            headers['If-None-Match'] = etag
            enable_delta_updates = True

        if last_modified:
            headers['If-Modified-Since'] = last_modified
            enable_delta_updates = True

        if enable_delta_updates:
            headers[DELTA_UPDATE_HEADER] = DELTA_UPDATE_VALUE

        return headers

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag=None, last_modified=None: {
            "http.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchResponse:
        """Fetch a feed and classify the response.

        Returns:
            FetchResponse for 2xx (body read) and 304 (no body)

        Raises:
            UnexpectedHttpResponseError: Any other HTTP status
            FeedFetchError: Transport errors and timeouts
        """
        headers = self.build_request_headers(etag, last_modified)
        if len(headers) > 1:
            logger.debug(f"Conditional request for {url}: {sorted(k for k in headers if k != 'User-Agent')}")

        session = await self._get_session()
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.info(f"Feed {url} not modified since last fetch")
                    return FetchResponse(status=response.status)

                if not 200 <= response.status < 300:
                    raise UnexpectedHttpResponseError(response.status, response.reason)

                content = await response.read()
                return FetchResponse(
                    status=response.status,
                    content=content,
                    etag=response.headers.get('ETag'),
                    last_modified=response.headers.get('Last-Modified'),
                )
        except asyncio.TimeoutError as e:
            raise FeedFetchError(f"Timed out after {config.HTTP_TIMEOUT}s") from e
        except ClientError as e:
            raise FeedFetchError(self._format_client_error(e)) from e

    def _format_client_error(self, error: ClientError) -> str:
        """Return a compact description of an aiohttp client error."""
        parts = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
