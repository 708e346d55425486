#!/usr/bin/env python3
"""
Utility classes and functions for the feed refining pipeline.

This module contains helpers shared by the fetcher, the resolvers and the
publisher: URL validation and cleaning, date parsing, file naming, and retry
backoff.
"""

from asyncio import sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from calendar import timegm
from typing import Any, Optional
import re
from urllib.parse import urlsplit, urlunsplit

import feedparser

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

LOCK_MARKER = "🔒 "
FILESIZE_UNITS = "BKMGTP"
# Epoch values above this are milliseconds (it is year 5138 in seconds)
MILLISECOND_EPOCH_THRESHOLD = 100_000_000_000
# 9999-12-31T23:59:59Z, the last instant datetime can represent
MAX_TIMESTAMP = 253_402_300_799


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url or any(c.isspace() for c in url):
        return False

    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ('http', 'https') and bool(parts.hostname) and '.' in parts.netloc


def clean_link(link: str) -> str:
    """Fix links that carry a doubled scheme, such as "http://https://host/path"."""
    match = re.match(r'^http://(https://.*)$', link or '')
    if match:
        return match.group(1)
    return link


def strip_query(url: str) -> str:
    """Return the URL without its query string and fragment."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, '', ''))


def detect_paywall(title: str, haystack: str, needle: str) -> str:
    """Prefix the title with a lock marker when the needle shows up in the haystack."""
    if needle and haystack and needle in haystack:
        return f"{LOCK_MARKER}{title}"
    return title


def human_filesize(size: int, decimals: int = 2) -> str:
    """Format a byte count for reports.

    The unit is picked from the number of decimal digits (every three digits
    step one unit up) and the value is divided by powers of 1024, so 1500
    bytes reads "1.46K".
    """
    size = max(int(size or 0), 0)
    factor = min((len(str(size)) - 1) // 3, len(FILESIZE_UNITS) - 1)
    return f"{size / (1024 ** factor):.{decimals}f}{FILESIZE_UNITS[factor]}"


def safe_filename(filename: str, max_length: int = 255) -> str:
    """Convert a string to a safe filename by removing/replacing problematic characters.

    Args:
        filename: The original filename string
        max_length: Maximum allowed length for the filename

    Returns:
        A sanitized filename safe for filesystem use
    """
    if not filename:
        return "untitled"

    safe_name = re.sub(r'[<>:"/\\|?*\s]', '_', filename)
    safe_name = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', safe_name)  # Remove control characters
    safe_name = safe_name.strip('. ')

    if not safe_name:
        return "untitled"

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('. ')

    return safe_name


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return int(timegm(time_struct))
    except (ValueError, TypeError, AttributeError, OSError, OverflowError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
    except (TypeError, ValueError, OverflowError):
        return None
    return None


def _parse_with_iso_format(date_str: str) -> Optional[int]:
    try:
        dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    custom_formats = [
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S",
        "%d/%m/%Y %H:%M",
        "%d/%m/%Y",
        "%Y-%m-%d",
    ]
    for fmt in custom_formats:
        try:
            dt = datetime.strptime(date_str, fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        except (ValueError, TypeError):
            continue
    return None


def parse_timestamp(value: Any) -> Optional[int]:
    """Convert assorted date representations into a Unix timestamp.

    Accepts epoch numbers in seconds or milliseconds (or numeric strings),
    datetimes and date strings in the formats feeds and pages commonly use.
    Returns None when nothing matches or the date is out of range.
    """
    if value in (None, ''):
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            timestamp = int(value)
        except (OverflowError, ValueError):
            return None
        if timestamp > MILLISECOND_EPOCH_THRESHOLD:
            timestamp //= 1000
        return timestamp if 0 < timestamp <= MAX_TIMESTAMP else None

    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    if not isinstance(value, str):
        return None

    date_str = value.strip()
    if date_str.isdigit():
        return parse_timestamp(int(date_str))

    for parser in (_parse_with_iso_format, _parse_with_email_utils, _parse_with_feedparser, _parse_with_custom_formats):
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp
    logger.debug(f"Unrecognized date format: {date_str!r}")
    return None


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)
