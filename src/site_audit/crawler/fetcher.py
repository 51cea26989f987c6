"""
HTTP fetching: bounded single requests, retries on transient failures and
manual redirect-chain resolution.

Network failures never propagate as exceptions from this module; they are
encoded in the returned status as ``TIMEOUT`` or ``FETCH_ERROR``.
"""

import asyncio
import aiohttp
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, List, Union, Any
from urllib.parse import urljoin
from aiohttp import ClientSession, ClientTimeout, ClientError

TIMEOUT = "TIMEOUT"
FETCH_ERROR = "FETCH_ERROR"
LOOP_DETECTED = "LOOP_DETECTED"

NETWORK_FAILURES = (TIMEOUT, FETCH_ERROR)

Status = Union[int, str]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status: Status
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    size: int = 0
    truncated: bool = False
    response_time: float = 0.0  # milliseconds until response headers arrived
    attempts: int = 1
    error: Optional[str] = None
    final_url: Optional[str] = None

    @property
    def is_network_error(self) -> bool:
        return self.status in NETWORK_FAILURES

    @property
    def ok(self) -> bool:
        return isinstance(self.status, int) and 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get('content-type', '').lower()


@dataclass
class RedirectHop:
    """One request in a redirect chain."""
    url: str
    status: Status
    headers: Dict[str, str] = field(default_factory=dict)
    location: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            'url': self.url,
            'status': self.status,
            'headers': self.headers,
            'location': self.location,
            'error': self.error,
            'timestamp': self.timestamp
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RedirectHop':
        return cls(
            url=data['url'],
            status=data['status'],
            headers=data.get('headers') or {},
            location=data.get('location'),
            error=data.get('error'),
            timestamp=data.get('timestamp') or utc_now_iso()
        )


@dataclass
class RedirectChain:
    """Trace produced by following redirects manually."""
    original_url: str
    hops: List[RedirectHop] = field(default_factory=list)
    redirect_count: int = 0
    has_loop: bool = False
    max_redirects_reached: bool = False

    @property
    def final_url(self) -> str:
        if not self.hops:
            return self.original_url
        # A chain cut off by the hop cap ends at the unfollowed location
        return self.hops[-1].location or self.hops[-1].url

    @property
    def final_status(self) -> Optional[Status]:
        return self.hops[-1].status if self.hops else None

    def to_dict(self) -> dict:
        return {
            'original_url': self.original_url,
            'final_url': self.final_url,
            'chain': [hop.to_dict() for hop in self.hops],
            'redirect_count': self.redirect_count,
            'has_loop': self.has_loop,
            'max_redirects_reached': self.max_redirects_reached
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RedirectChain':
        return cls(
            original_url=data['original_url'],
            hops=[RedirectHop.from_dict(hop) for hop in data.get('chain', [])],
            redirect_count=data.get('redirect_count', 0),
            has_loop=data.get('has_loop', False),
            max_redirects_reached=data.get('max_redirects_reached', False)
        )


class WebFetcher:
    """
    Fetches web pages and probes links over a shared aiohttp session.
    """

    def __init__(self, user_agent: str, request_timeout: float = 30.0,
                 retries: int = 2, retry_backoff: float = 1.0,
                 max_connections: int = 20,
                 oversized_response_bytes: int = 5 * 1024 * 1024,
                 oversized_hard_multiple: int = 2):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.retries = retries
        self.retry_backoff = retry_backoff
        self.max_connections = max_connections
        self.oversized_response_bytes = oversized_response_bytes
        self.oversized_hard_multiple = oversized_hard_multiple

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'failed_requests': 0,
            'timeouts': 0,
            'retries': 0,
            'truncated_pages': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={
                    'User-Agent': self.user_agent,
                    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
                },
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    limit_per_host=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch_with_timeout(self, url: str, timeout: Optional[float] = None,
                                 method: str = 'GET', allow_redirects: bool = True,
                                 read_body: bool = False, max_redirects: int = 10) -> FetchResult:
        """
        Issue a single request bounded by ``timeout`` seconds.

        The body is only read (and size-bounded) when ``read_body`` is set and
        the response is 2xx.
        """
        if self.session is None:
            await self.start()

        timeout = self.request_timeout if timeout is None else timeout
        start_time = time.monotonic()
        self.stats['total_requests'] += 1

        try:
            async with self.session.request(
                method, url,
                timeout=ClientTimeout(total=timeout),
                allow_redirects=allow_redirects,
                max_redirects=max_redirects
            ) as response:
                result = FetchResult(
                    url=url,
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    response_time=(time.monotonic() - start_time) * 1000,
                    final_url=str(response.url)
                )

                if read_body and result.ok:
                    result.body, result.size, result.truncated = await self._read_content(response, url)
                    self.stats['total_bytes_downloaded'] += result.size

                return result

        except asyncio.TimeoutError:
            self.stats['failed_requests'] += 1
            self.stats['timeouts'] += 1
            self.logger.debug(f"Timeout fetching {url} after {timeout}s")
            return FetchResult(url=url, status=TIMEOUT, error="Request timed out",
                               response_time=(time.monotonic() - start_time) * 1000)

        except ClientError as e:
            self.stats['failed_requests'] += 1
            self.logger.debug(f"Client error fetching {url}: {e}")
            return FetchResult(url=url, status=FETCH_ERROR, error=f"{type(e).__name__}: {e}",
                               response_time=(time.monotonic() - start_time) * 1000)

        except Exception as e:
            self.stats['failed_requests'] += 1
            self.logger.warning(f"Unexpected error fetching {url}: {type(e).__name__}: {e}")
            return FetchResult(url=url, status=FETCH_ERROR, error=f"{type(e).__name__}: {e}",
                               response_time=(time.monotonic() - start_time) * 1000)

    async def fetch_with_retry(self, url: str, retries: Optional[int] = None,
                               timeout: Optional[float] = None, method: str = 'GET',
                               **kwargs) -> FetchResult:
        """
        Call fetch_with_timeout up to ``retries + 1`` times.

        Only TIMEOUT and FETCH_ERROR are retried; any HTTP status, including
        4xx/5xx, is returned from the attempt that produced it.
        """
        retries = self.retries if retries is None else retries
        result = None

        for attempt in range(retries + 1):
            if attempt > 0:
                self.stats['retries'] += 1
                if self.retry_backoff > 0:
                    await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))

            result = await self.fetch_with_timeout(url, timeout=timeout, method=method, **kwargs)
            result.attempts = attempt + 1

            if not result.is_network_error:
                return result

            self.logger.debug(f"Attempt {attempt + 1}/{retries + 1} for {url} failed: {result.status}")

        return result

    async def fetch_page(self, url: str, max_redirects: int = 5) -> FetchResult:
        """GET a page with retries and a size-bounded body read."""
        return await self.fetch_with_retry(url, method='GET', read_body=True, max_redirects=max_redirects)

    async def check_redirect_chain(self, url: str, max_redirects: int = 5,
                                   method: str = 'GET',
                                   timeout: Optional[float] = None) -> RedirectChain:
        """
        Follow 3xx responses manually, recording every hop.

        Stops at the first non-3xx response, after ``max_redirects`` hops, or
        when the next target already appears in the chain, in which case a
        LOOP_DETECTED hop is appended.
        """
        chain = RedirectChain(original_url=url)
        current_url = url

        while True:
            result = await self.fetch_with_timeout(
                current_url, timeout=timeout, method=method, allow_redirects=False
            )
            hop = RedirectHop(url=current_url, status=result.status,
                              headers=result.headers, error=result.error)
            chain.hops.append(hop)

            if not isinstance(result.status, int) or not 300 <= result.status < 400:
                break

            location = result.headers.get('location')
            if not location:
                hop.error = 'Missing location header'
                break

            try:
                next_url = urljoin(current_url, location)
            except ValueError:
                hop.error = f'Invalid location header: {location}'
                break
            hop.location = next_url

            if any(seen.url == next_url for seen in chain.hops):
                chain.hops.append(RedirectHop(url=next_url, status=LOOP_DETECTED))
                chain.has_loop = True
                self.logger.debug(f"Redirect loop detected for {url} at {next_url}")
                break

            chain.redirect_count += 1
            if chain.redirect_count >= max_redirects:
                chain.max_redirects_reached = True
                break

            current_url = next_url

        return chain

    async def _read_content(self, response: aiohttp.ClientResponse, url: str):
        """
        Stream the response body.

        Logs a warning once the body passes ``oversized_response_bytes`` and
        truncates the read at ``oversized_response_bytes * oversized_hard_multiple``.

        Returns:
            Tuple of (decoded text, bytes read, truncated flag)
        """
        hard_limit = self.oversized_response_bytes * self.oversized_hard_multiple

        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.oversized_response_bytes:
            self.logger.warning(f"Large page detected ({int(content_length) / 1024 / 1024:.1f}MB): {url}")

        chunks = []
        size = 0
        warned = False
        truncated = False

        async for chunk in response.content.iter_chunked(8192):
            chunks.append(chunk)
            size += len(chunk)

            if size > self.oversized_response_bytes and not warned:
                warned = True
                self.logger.warning(f"Page passed {self.oversized_response_bytes} bytes while streaming: {url}")

            if size > hard_limit:
                truncated = True
                self.stats['truncated_pages'] += 1
                self.logger.warning(f"Page exceeds maximum size threshold ({size / 1024 / 1024:.1f}MB), "
                                    f"truncating: {url}")
                break

        return self._decode(b''.join(chunks), response.charset), size, truncated

    @staticmethod
    def _decode(content_bytes: bytes, charset: Optional[str]) -> str:
        for encoding in (charset, 'utf-8', 'cp1252'):
            if not encoding:
                continue
            try:
                return content_bytes.decode(encoding)
            except (UnicodeDecodeError, LookupError):
                continue

        return content_bytes.decode('utf-8', errors='replace')

    def get_stats(self) -> Dict[str, Any]:
        """Get fetcher statistics."""
        return self.stats.copy()
