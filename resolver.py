#!/usr/bin/env python3
"""
Item content resolution.

ContentResolver turns one feed item (its URL plus whatever title, content and
time the source already carried) into its final title/content/time: from the
cache when the item was seen before, otherwise by fetching the item, running
readability extraction and the feed's hooks, normalizing the text and storing
the result.

Failures never raise: the returned ResolvedItem carries status "error" and the
source's own values, with a marker in the title when the fetch itself failed.
"""

from dataclasses import dataclass, replace
from enum import Enum
import json
import re
from typing import Any, Optional

from config import get_logger
from errors import ExtractionError
from feeds import FeedDescriptor, ItemFields, SourceKind, call_hook
from fetcher import HTTP_FORBIDDEN, FetchResult
from telemetry import get_tracer, init_telemetry, trace_span
from utils import parse_timestamp

# Module-specific logger
logger = get_logger("resolver")
init_telemetry("feed-refiner-resolver")
_tracer = get_tracer("resolver")

# Title prefixes for items whose page could not be fetched
FORBIDDEN_MARKER = "⛔️ "
FAILURE_MARKER = "⚠️ "

_TEXT_REPLACEMENTS = (
    ("&#xD;", " "),
    ("&#xA;", " "),
    ("\u0092", "’"),
)
_WHITESPACE_RUN = re.compile(r"\s\s+")


class ItemStatus(str, Enum):
    CACHE = "cache"
    NEW = "new"
    ERROR = "error"


@dataclass
class ResolvedItem:
    """Outcome of resolving one item. Link and podcast fields are filled by the assembler."""

    status: ItemStatus
    link: str = ""
    title: str = ""
    content: str = ""
    time: int = 0
    enclosure_url: str = ""
    enclosure_length: int = 0
    enclosure_type: str = ""
    enclosure_duration: int = 0
    image_url: str = ""


def normalize_text(text: Optional[str]) -> str:
    """Replace stray line-break entities and the mis-encoded apostrophe, then collapse whitespace."""
    if not text:
        return ""
    for needle, replacement in _TEXT_REPLACEMENTS:
        text = text.replace(needle, replacement)
    return _WHITESPACE_RUN.sub(" ", text).strip()


def coerce_time(value: Any) -> int:
    """Best-effort conversion of a hook- or source-supplied time to epoch seconds."""
    return parse_timestamp(value) or 0


def apply_fallback(fields: ItemFields, fallback: ItemFields, include_time: bool = True) -> None:
    """Non-empty source values win over empty resolved ones."""
    if not fields.title:
        fields.title = fallback.title
    if not fields.content:
        fields.content = fallback.content
    if include_time and not fields.time:
        fields.time = fallback.time


class ContentResolver:
    """Cache-or-fetch orchestrator for item content."""

    def __init__(self, fetcher, cache, extractor=None):
        self.fetcher = fetcher
        self.cache = cache
        self.extractor = extractor

    @trace_span(
        "resolve",
        tracer_name="resolver",
        attr_from_args=lambda self, feed, url, *args, **kwargs: {"feed.name": feed.name, "item.url": url},
    )
    async def resolve(
        self,
        feed: FeedDescriptor,
        url: str,
        fallback_title: str = "",
        fallback_content: str = "",
        fallback_time: Any = 0,
        json_url: Optional[str] = None,
    ) -> ResolvedItem:
        """Resolve an item's title, content and time."""
        key = feed.cache_key(url)

        cached = await self.cache.execute("get_article", feed=feed.name, url=key)
        if cached:
            logger.debug(f"{feed.name}: cache hit for {key}")
            await self.cache.execute("touch_article", feed=feed.name, url=key)
            return ResolvedItem(
                status=ItemStatus.CACHE,
                link=url,
                title=cached.get("title") or "",
                content=cached.get("content") or "",
                time=int(cached.get("time") or 0),
            )

        fallback = ItemFields(fallback_title or "", fallback_content or "", coerce_time(fallback_time))
        target = json_url or url
        logger.debug(f"{feed.name}: cache miss for {key}, fetching {target}")

        result = await self.fetcher.fetch(target)
        if not result.ok:
            marker = FORBIDDEN_MARKER if result.status == HTTP_FORBIDDEN else FAILURE_MARKER
            logger.warning(f"{feed.name}: could not fetch {target} (HTTP {result.status})")
            return ResolvedItem(
                status=ItemStatus.ERROR,
                link=url,
                title=f"{marker}{fallback.title}",
                content=fallback.content,
                time=fallback.time,
            )

        if feed.source_kind is SourceKind.JSON:
            fields, ok = await self._from_json(feed, target, result, fallback)
        else:
            fields, ok = await self._from_page(feed, target, result, fallback)
        status = ItemStatus.NEW if ok else ItemStatus.ERROR

        apply_fallback(fields, fallback)
        fields.title = normalize_text(fields.title)
        fields.content = normalize_text(fields.content)
        fields.time = coerce_time(fields.time)

        if not fields.title and not fields.content:
            logger.warning(f"{feed.name}: nothing usable extracted from {target}")
            status = ItemStatus.ERROR

        if status is ItemStatus.NEW:
            await self.cache.execute(
                "put_article",
                feed=feed.name,
                url=key,
                title=fields.title,
                content=fields.content,
                time=fields.time,
            )

        return ResolvedItem(status=status, link=url, title=fields.title, content=fields.content, time=fields.time)

    async def _apply_hook(self, feed: FeedDescriptor, hook, url: str, payload: Any, fields: ItemFields):
        """Run an item hook. Returns the resulting fields and whether the hook succeeded.

        A failing hook keeps what was resolved before it ran.
        """
        before = replace(fields)
        try:
            replacement = await call_hook(hook, payload, fields)
        except Exception as e:
            # Hooks are user code; a failing hook costs the item, not the feed
            logger.error(f"{feed.name}: item hook failed for {url}: {e}")
            return before, False
        if isinstance(replacement, ItemFields):
            return replacement, True
        return fields, True

    async def _from_page(self, feed: FeedDescriptor, url: str, result: FetchResult, fallback: ItemFields):
        """Extract an HTML page. Returns the fields and whether extraction and the hook succeeded."""
        body = result.text
        fields = ItemFields()
        extracted = True

        if feed.readability and self.extractor is not None:
            try:
                fields.title, fields.content = await self.extractor.extract(body, url)
            except ExtractionError as e:
                logger.warning(f"{feed.name}: readability failed for {url}: {e}")
                extracted = False

        apply_fallback(fields, fallback, include_time=False)

        if feed.item_callback is None:
            return fields, extracted
        fields, hooked = await self._apply_hook(feed, feed.item_callback, url, body, fields)
        return fields, extracted and hooked

    async def _from_json(self, feed: FeedDescriptor, url: str, result: FetchResult, fallback: ItemFields):
        try:
            data = json.loads(result.text)
        except (ValueError, TypeError) as e:
            logger.warning(f"{feed.name}: error decoding JSON from {url}: {e}")
            return ItemFields(), True
        if not data:
            logger.warning(f"{feed.name}: empty JSON document from {url}")
            return ItemFields(), True

        fields = ItemFields(fallback.title, fallback.content, fallback.time)
        if feed.json_item_callback is None:
            return fields, True
        return await self._apply_hook(feed, feed.json_item_callback, url, data, fields)
