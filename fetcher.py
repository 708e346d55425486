#!/usr/bin/env python3
"""
HTTP content fetcher.

This module performs the network side of the pipeline: GET/POST requests with a
browser-like identity, cookies persisted across runs, an optional pool of
outbound addresses picked at random per request, and direct-to-file streaming
for media downloads. HTTP errors are never raised; callers inspect the status,
and network failures are reported as status 0 with an empty body.
"""

from asyncio import TimeoutError
from dataclasses import dataclass
import ipaddress
import os
import pickle
import random
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, CookieJar, TCPConnector
from bs4 import UnicodeDammit

from config import config, get_logger
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-refiner-fetcher")
_tracer = get_tracer("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_FORBIDDEN = 403
# Reserved status for network-level failures (timeout, DNS, TLS, refused connection)
NETWORK_ERROR = 0

CHUNK_SIZE = 64 * 1024

BROWSER_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8',
    'Cache-Control': 'max-age=0',
    'Upgrade-Insecure-Requests': '1',
    'Connection': 'keep-alive',
}


@dataclass
class FetchResult:
    """Outcome of a single fetch: status code, raw body and response metadata."""

    status: int
    body: bytes = b""
    url: str = ""
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return self.status == HTTP_OK

    @property
    def charset(self) -> Optional[str]:
        for part in self.content_type.split(';')[1:]:
            key, _, value = part.strip().partition('=')
            if key.lower() == 'charset' and value:
                return value.strip('"\' ')
        return None

    @property
    def text(self) -> str:
        return decode_body(self.body, self.charset)


def decode_body(body: bytes, declared_encoding: Optional[str] = None) -> str:
    """Detect the body's encoding and return it as text (UTF-8 safe).

    The charset announced by the server is tried first, then the document's
    own declarations and byte-level detection.
    """
    if not body:
        return ""
    if isinstance(body, str):
        return body
    dammit = UnicodeDammit(body, [declared_encoding] if declared_encoding else [], is_html=True)
    if dammit.unicode_markup is None:
        logger.debug("Could not detect body encoding, decoding as UTF-8 with replacement")
        return body.decode('utf-8', errors='replace')
    if dammit.original_encoding and dammit.original_encoding.lower() not in ('utf-8', 'ascii'):
        logger.debug(f"Converted body from {dammit.original_encoding}")
    return dammit.unicode_markup


def load_ip_pool(file_path: Optional[str]) -> List[str]:
    """Read outbound addresses, one per line, keeping only globally routable ones."""
    if not file_path or not os.path.isfile(file_path):
        return []
    addresses: List[str] = []
    with open(file_path, 'r', encoding='utf-8') as f:
        for line in f:
            candidate = line.strip()
            if not candidate or candidate.startswith('#'):
                continue
            try:
                address = ipaddress.ip_address(candidate)
            except ValueError:
                logger.warning(f"Ignoring invalid outbound address {candidate!r}")
                continue
            if not address.is_global:
                logger.warning(f"Ignoring non-public outbound address {candidate}")
                continue
            addresses.append(str(address))
    if addresses:
        logger.info(f"Loaded {len(addresses)} outbound addresses from {file_path}")
    return addresses


class ContentFetcher:
    """Fetches URLs with a persistent identity.

    One instance is meant to live for the whole process: it owns the cookie jar,
    the outbound address pool and one aiohttp session per outbound address.
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        cookie_jar_path: Optional[str] = None,
        ip_pool_path: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.user_agent = user_agent or config.USER_AGENT
        self.cookie_jar_path = cookie_jar_path if cookie_jar_path is not None else config.COOKIE_JAR_PATH
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.ip_pool = load_ip_pool(ip_pool_path if ip_pool_path is not None else config.IP_POOL_PATH)
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)
        self.cookie_jar: Optional[CookieJar] = None
        self._sessions: Dict[Optional[str], ClientSession] = {}

    def _ensure_cookie_jar(self) -> CookieJar:
        # The jar binds to the running loop, so it is created on first use
        if self.cookie_jar is None:
            self.cookie_jar = CookieJar()
            self._load_cookies()
        return self.cookie_jar

    def _load_cookies(self) -> None:
        if not self.cookie_jar_path or not os.path.isfile(self.cookie_jar_path):
            return
        try:
            self.cookie_jar.load(self.cookie_jar_path)
            logger.debug(f"Loaded cookies from {self.cookie_jar_path}")
        except (OSError, EOFError, pickle.UnpicklingError) as e:
            logger.warning(f"Could not load cookie jar {self.cookie_jar_path}: {e}")

    def _save_cookies(self) -> None:
        if not self.cookie_jar_path or self.cookie_jar is None:
            return
        try:
            directory = os.path.dirname(self.cookie_jar_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self.cookie_jar.save(self.cookie_jar_path)
        except OSError as e:
            logger.warning(f"Could not save cookie jar {self.cookie_jar_path}: {e}")

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'User-Agent': self.user_agent,
            'Accept-Language': config.ACCEPT_LANGUAGE,
            **BROWSER_HEADERS,
        }

    def _pick_address(self) -> Optional[str]:
        if not self.ip_pool:
            return None
        return random.choice(self.ip_pool)

    def _session_for(self, address: Optional[str]) -> ClientSession:
        session = self._sessions.get(address)
        if session is None or session.closed:
            connector = TCPConnector(local_addr=(address, 0)) if address else TCPConnector()
            session = ClientSession(
                connector=connector,
                cookie_jar=self._ensure_cookie_jar(),
                timeout=ClientTimeout(total=self.timeout),
            )
            self._sessions[address] = session
        return session

    def _format_client_error(self, error: Exception) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        os_error = getattr(error, 'os_error', None)
        if os_error is not None and getattr(os_error, 'errno', None) is not None:
            parts.append(f"errno={os_error.errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    @trace_span(
        "fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, data=None: {"http.url": url, "http.method": "POST" if data is not None else "GET"},
    )
    async def fetch(self, url: str, data: Optional[Any] = None) -> FetchResult:
        """Fetch a URL, following redirects. POSTs `data` when given."""
        method = 'POST' if data is not None else 'GET'
        for attempt in range(config.MAX_RETRIES + 1):
            address = self._pick_address()
            if address:
                logger.debug(f"Using outbound address {address} for {url}")
            session = self._session_for(address)
            try:
                async with session.request(
                    method,
                    url,
                    data=data,
                    headers=self.headers,
                    allow_redirects=True,
                    max_redirects=config.MAX_REDIRECTS,
                ) as response:
                    body = await response.read()
                    logger.debug(f"{method} {url}: HTTP {response.status}")
                    return FetchResult(
                        status=response.status,
                        body=body,
                        url=str(response.url),
                        content_type=response.headers.get('Content-Type', ''),
                    )
            except (ClientError, TimeoutError, OSError) as e:
                detail = self._format_client_error(e)
                if attempt < config.MAX_RETRIES:
                    logger.warning(f"Retry {attempt + 1}/{config.MAX_RETRIES} for {url} due to error: {detail}")
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                logger.warning(f"Network error fetching {url}: {detail}")
        return FetchResult(status=NETWORK_ERROR, url=url)

    async def post(self, url: str, data: Any) -> FetchResult:
        """POST form data to a URL."""
        return await self.fetch(url, data=data if data is not None else {})

    @trace_span(
        "fetch_to_file",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, destination: {"http.url": url},
    )
    async def fetch_to_file(self, url: str, destination: str) -> int:
        """Stream a URL to a file and return the HTTP status.

        The file is only kept when the response is a 200 that was fully written.
        """
        address = self._pick_address()
        session = self._session_for(address)
        try:
            async with session.get(
                url,
                headers=self.headers,
                allow_redirects=True,
                max_redirects=config.MAX_REDIRECTS,
                timeout=ClientTimeout(total=None, sock_read=self.timeout, sock_connect=self.timeout),
            ) as response:
                if response.status != HTTP_OK:
                    logger.warning(f"Download of {url} failed: HTTP {response.status}")
                    return response.status
                with open(destination, 'wb') as out:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        out.write(chunk)
                return response.status
        except (ClientError, TimeoutError, OSError) as e:
            logger.warning(f"Network error downloading {url}: {self._format_client_error(e)}")
            if os.path.exists(destination):
                os.remove(destination)
            return NETWORK_ERROR

    async def close(self) -> None:
        """Persist cookies and close all sessions."""
        self._save_cookies()
        for session in self._sessions.values():
            if not session.closed:
                await session.close()
        self._sessions.clear()
        logger.debug("ContentFetcher closed")
