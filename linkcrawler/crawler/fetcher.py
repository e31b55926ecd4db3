"""
Page fetcher used by the crawl engine.

Every request is bounded by ``request_timeout``. Redirects are followed by
aiohttp; the final response decides success.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Optional, Dict
from dataclasses import dataclass
from aiohttp import ClientResponse, ClientSession, ClientTimeout, ClientError


class FetchError(Exception):
    """A page could not be retrieved."""

    def __init__(self, url: str, message: str, status_code: int = 0):
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.status_code = status_code


@dataclass
class FetchResult:
    """Outcome of one GET request."""
    url: str
    status_code: int = 0
    content: Optional[str] = None
    content_type: str = ''
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300


class WebFetcher:
    """
    Fetches pages over HTTP.

    Any response outside 2xx is reported as an error. Responses that are not
    text are not downloaded; they yield empty content so that the page simply
    has no outbound links.
    """

    TEXT_TYPES = (
        'text/html',
        'text/plain',
        'text/xml',
        'application/xml',
        'application/xhtml+xml',
    )

    def __init__(self, user_agent: str, request_timeout: float = 120,
                 max_connections: int = 20, max_content_size: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_connections = max_connections
        self.max_content_size = max_content_size

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Open the HTTP session."""
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=ClientTimeout(total=self.request_timeout),
            headers={'User-Agent': self.user_agent},
            connector=aiohttp.TCPConnector(limit=self.max_connections, ttl_dns_cache=300)
        )
        self.logger.info(f"WebFetcher session started (timeout {self.request_timeout}s)")

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str) -> FetchResult:
        """GET ``url``; failures are reported in the result, never raised."""
        if self.session is None:
            await self.start()

        self.stats['total_requests'] += 1
        started = time.time()
        try:
            async with self.session.get(url) as response:
                result = await self._read_response(url, response)
        except asyncio.TimeoutError:
            self.logger.warning(f"Timeout fetching {url}")
            result = FetchResult(url=url, error="Request timeout")
        except ClientError as e:
            self.logger.warning(f"Client error fetching {url}: {e}")
            result = FetchResult(url=url, error=f"Client error: {e}")
        except ValueError as e:
            # aiohttp rejects some malformed URLs before connecting
            self.logger.warning(f"Invalid url {url}: {e}")
            result = FetchResult(url=url, error=f"Invalid url: {e}")

        result.elapsed = time.time() - started
        if result.ok:
            self.stats['successful_requests'] += 1
            self.stats['total_bytes_downloaded'] += len(result.content or '')
        else:
            self.stats['failed_requests'] += 1
        return result

    async def fetch_page(self, url: str) -> str:
        """Fetch ``url`` and return its text, raising FetchError on any failure."""
        result = await self.fetch(url)
        if not result.ok:
            raise FetchError(url, result.error or "unknown error", result.status_code)
        return result.content or ''

    async def _read_response(self, url: str, response: ClientResponse) -> FetchResult:
        content_type = response.headers.get('content-type', '').lower()
        result = FetchResult(url=url, status_code=response.status, content_type=content_type)

        if not 200 <= response.status < 300:
            self.logger.info(f"Got status code {response.status} when crawling {url}")
            result.error = f"Received a non-2xx status code: {response.status}"
            return result

        if not self._is_text_content(content_type):
            self.logger.debug(f"Skipping body of non-text content: {url} ({content_type})")
            result.content = ''
            return result

        body = await self._read_limited(response)
        if body is None:
            self.logger.warning(f"Content of {url} exceeds {self.max_content_size} bytes")
            result.error = "Content too large"
            return result

        result.content = self._decode(body, response.charset)
        self.logger.debug(f"Fetched {url}: {response.status} ({len(body)} bytes)")
        return result

    def _is_text_content(self, content_type: str) -> bool:
        """A missing content type counts as text."""
        if not content_type:
            return True
        return any(text_type in content_type for text_type in self.TEXT_TYPES)

    async def _read_limited(self, response: ClientResponse) -> Optional[bytes]:
        """Body bytes, or None once it grows past ``max_content_size``."""
        declared = response.content_length
        if declared is not None and declared > self.max_content_size:
            return None

        chunks = []
        size = 0
        async for chunk in response.content.iter_chunked(8192):
            size += len(chunk)
            if size > self.max_content_size:
                return None
            chunks.append(chunk)
        return b''.join(chunks)

    @staticmethod
    def _decode(body: bytes, charset: Optional[str]) -> str:
        try:
            return body.decode(charset or 'utf-8')
        except (UnicodeDecodeError, LookupError):
            return body.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
