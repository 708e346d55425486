#!/usr/bin/env python3
"""
Cache eviction.

CacheJanitor deletes cached items whose last access is older than their feed's
cache_limit. For podcast feeds the media files and enclosure/image rows tied to
an item go first (file, then row), the article row last, so that an interrupted
run never leaves a row pointing at a deleted file behind an article that will
be retried. The database is compacted at the end of a run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import os
import time
from typing import Iterable, List, Optional

from config import get_logger
from feeds import FeedDescriptor
from podcast import ImageType
from telemetry import get_tracer, init_telemetry, trace_span
from utils import human_filesize

# Module-specific logger
logger = get_logger("janitor")
init_telemetry("feed-refiner-janitor")
_tracer = get_tracer("janitor")


@dataclass
class FeedCleanup:
    """What one feed's cleanup removed."""

    feed: str
    cutoff: int
    articles: int = 0
    enclosures: int = 0
    images: int = 0
    files: int = 0

    def describe(self) -> str:
        cutoff = datetime.fromtimestamp(self.cutoff, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        text = f"Feed {self.feed}: delete before {cutoff}, {self.articles} rows deleted"
        if self.enclosures or self.images or self.files:
            text += f" ({self.enclosures} enclosures, {self.images} images, {self.files} files)"
        return text


@dataclass
class JanitorReport:
    feeds: List[FeedCleanup] = field(default_factory=list)
    size_before: int = 0
    size_after: int = 0
    urls_before: int = 0
    urls_after: int = 0

    @property
    def deleted(self) -> int:
        return sum(cleanup.articles for cleanup in self.feeds)

    def lines(self) -> List[str]:
        lines = [cleanup.describe() for cleanup in self.feeds]
        size_diff = max(self.size_before - self.size_after, 0)
        lines.append(
            f"Size: {human_filesize(self.size_before)} → {human_filesize(self.size_after)} (-{human_filesize(size_diff)})"
        )
        lines.append(f"URLs: {self.urls_before} → {self.urls_after} (-{self.urls_before - self.urls_after})")
        return lines


class CacheJanitor:
    def __init__(self, cache, store):
        self.cache = cache
        self.store = store

    def _database_size(self) -> int:
        db_path = getattr(self.cache, "db_path", None)
        if not db_path or not os.path.isfile(db_path):
            return 0
        return os.path.getsize(db_path)

    async def _remove_files(self, names: Iterable[str]) -> int:
        removed = 0
        for name in names or []:
            if await self.store.remove(name):
                removed += 1
        return removed

    @trace_span(
        "clean_feed",
        tracer_name="janitor",
        attr_from_args=lambda self, feed, now=None: {"feed.name": feed.name},
    )
    async def clean_feed(self, feed: FeedDescriptor, now: Optional[float] = None) -> FeedCleanup:
        """Evict one feed's items last accessed before now - cache_limit."""
        cutoff = int(now if now is not None else time.time()) - feed.cache_limit
        cleanup = FeedCleanup(feed=feed.name, cutoff=cutoff)

        if not feed.podcast:
            cleanup.articles = await self.cache.execute("delete_expired_articles", feed=feed.name, cutoff=cutoff) or 0
            logger.debug(f"{feed.name}: {cleanup.articles} entries deleted")
            return cleanup

        urls = await self.cache.execute("list_expired_articles", feed=feed.name, cutoff=cutoff) or []
        for url in urls:
            files = await self.cache.execute("list_enclosure_files", feed=feed.name, url=url)
            cleanup.files += await self._remove_files(files)
            enclosures = await self.cache.execute("delete_enclosures", feed=feed.name, url=url) or 0

            images = await self.cache.execute("list_image_files", feed=feed.name, type=ImageType.ENTRY.value, id=url)
            cleanup.files += await self._remove_files(images)
            image_rows = await self.cache.execute("delete_images", feed=feed.name, type=ImageType.ENTRY.value, id=url) or 0

            cleanup.articles += await self.cache.execute("delete_article", feed=feed.name, url=url) or 0
            cleanup.enclosures += enclosures
            cleanup.images += image_rows
            logger.debug(f"{feed.name}, {url}: {enclosures} podcast entries deleted, {image_rows} images deleted")
        return cleanup

    async def run(self, feeds: Iterable[FeedDescriptor], now: Optional[float] = None) -> JanitorReport:
        """Clean every given feed, compact the database and report."""
        report = JanitorReport(size_before=self._database_size())
        report.urls_before = await self.cache.execute("count_articles") or 0

        for feed in feeds:
            cleanup = await self.clean_feed(feed, now)
            report.feeds.append(cleanup)
            logger.info(f"🧹 {cleanup.describe()}")

        report.urls_after = await self.cache.execute("count_articles") or 0
        await self.cache.execute("vacuum")
        report.size_after = self._database_size()
        return report
