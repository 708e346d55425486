#!/usr/bin/env python3
"""
Feed assembly.

FeedAssembler produces the output document for one feed descriptor:

- feed sources: the upstream RSS/Atom document is parsed, every item's title and
  content are resolved, and nodes whose value changed get a CDATA replacement;
  the document is then re-serialized as UTF-8
- page sources: items are scraped from HTML with XPath and a new RSS 2.0
  document is synthesized
- json sources: items come from a JSON API (hook or dotted path) and a new RSS
  2.0 document is synthesized

Podcast feeds additionally get enclosures, artwork and iTunes channel metadata.
Items that have no usable link are skipped with a warning. Resolution failures
leave a marked but present item, and an item that fails unexpectedly is logged
and dropped without affecting the rest of the feed.
"""

from asyncio import Semaphore, gather
from datetime import datetime, timezone
import json
from collections.abc import Mapping
from typing import Any, Awaitable, List, Optional

from feedgen.feed import FeedGenerator
from lxml import etree
import lxml.html

from config import config, get_logger
from feeds import FeedDescriptor, SourceKind, call_hook, lookup_path
from podcast import ImageType, PodcastResolver
from resolver import ContentResolver, ItemStatus, ResolvedItem
from telemetry import get_tracer, init_telemetry, trace_span
from utils import clean_link, parse_timestamp, validate_url

# Module-specific logger
logger = get_logger("publisher")
init_telemetry("feed-refiner-publisher")
_tracer = get_tracer("publisher")

GENERATOR = "Feed Refiner"


def sanitize_xml_string(text: Any) -> str:
    """Remove characters XML 1.0 cannot carry (NULL and most control characters)."""
    if not text:
        return ''
    if isinstance(text, bytes):
        text = text.decode('utf-8', errors='ignore')
    return ''.join(
        char for char in str(text)
        if char in ('\t', '\n', '\r') or (ord(char) >= 32 and ord(char) != 0x7F)
    )


def _first(node, expression: str, namespaces=None):
    """First result of an XPath query relative to a node, or None."""
    try:
        result = node.xpath(expression, namespaces=namespaces or None)
    except etree.XPathEvalError as e:
        logger.warning(f"XPath {expression!r} failed: {e}")
        return None
    if isinstance(result, list):
        return result[0] if result else None
    return result


def _text_of(value) -> str:
    if value is None:
        return ""
    if isinstance(value, etree._Element):
        return str(value.xpath("string()"))
    return str(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def replace_with_cdata(node, value: str) -> None:
    """Replace every child of an element with a single CDATA section."""
    if not isinstance(node, etree._Element):
        return
    for child in list(node):
        node.remove(child)
    value = sanitize_xml_string(value)
    # A CDATA section cannot contain its own terminator
    node.text = etree.CDATA(value) if "]]>" not in value else value


class FeedAssembler:
    """Builds output documents for feed descriptors."""

    def __init__(self, fetcher, resolver: ContentResolver, podcasts: Optional[PodcastResolver] = None,
                 concurrency: Optional[int] = None):
        self.fetcher = fetcher
        self.resolver = resolver
        self.podcasts = podcasts
        self.concurrency = max(int(concurrency or config.ITEM_CONCURRENCY), 1)

    async def _gather_items(self, feed: FeedDescriptor, jobs: List[Awaitable]) -> list:
        """Run item jobs with bounded concurrency, keeping their order.

        A job that fails unexpectedly yields None: the item is dropped (or, for
        feed sources, left as it was) and the rest of the feed carries on.
        """
        semaphore = Semaphore(self.concurrency)

        async def _bounded(number, job):
            async with semaphore:
                try:
                    return await job
                except Exception as e:
                    logger.error(f'Feed "{feed.name}": item #{number} failed: {e}', exc_info=True)
                    return None

        return list(await gather(*(_bounded(number, job) for number, job in enumerate(jobs, 1))))

    @trace_span(
        "generate",
        tracer_name="publisher",
        attr_from_args=lambda self, feed: {"feed.name": feed.name, "feed.source": feed.source_kind.value},
    )
    async def generate(self, feed: FeedDescriptor) -> Optional[str]:
        """Return the output document for a feed, or None when the source is unusable."""
        result = await self.fetcher.fetch(feed.url)
        if not result.ok:
            logger.warning(f'Feed "{feed.name}": invalid HTTP code {result.status} for {feed.url}')
            return None

        if feed.source_kind is SourceKind.FEED:
            output = await self._assemble_feed(feed, result.body)
        elif feed.source_kind is SourceKind.PAGE:
            output = await self._assemble_page(feed, result.text)
        else:
            output = await self._assemble_json(feed, result.text)

        if output is None:
            return None
        return await self._finalize(feed, output)

    async def _finalize(self, feed: FeedDescriptor, output: str) -> str:
        if feed.finalize is None:
            return output
        try:
            finalized = await call_hook(feed.finalize, output)
        except Exception as e:
            # Finalizers are user hooks; the unfinalized document is still valid output
            logger.error(f'Feed "{feed.name}": finalizer failed, keeping unfinalized output: {e}')
            return output
        if not isinstance(finalized, str):
            logger.warning(f'Feed "{feed.name}": finalizer returned {type(finalized).__name__}, ignoring it')
            return output
        return finalized

    # Feed sources
    async def _assemble_feed(self, feed: FeedDescriptor, body: bytes) -> Optional[str]:
        parser = etree.XMLParser(recover=True, strip_cdata=False, resolve_entities=False)
        try:
            root = etree.fromstring(body, parser)
        except etree.XMLSyntaxError as e:
            logger.warning(f'Feed "{feed.name}": could not parse source XML: {e}')
            return None
        if root is None:
            logger.warning(f'Feed "{feed.name}": source is not an XML document')
            return None

        items = self._select_items(feed, root, feed.xml_namespaces)
        if items is None:
            return None

        await self._gather_items(feed, [self._refine_feed_item(feed, item, n) for n, item in enumerate(items, 1)])
        return etree.tostring(root.getroottree(), xml_declaration=True, encoding="UTF-8").decode("utf-8")

    def _select_items(self, feed: FeedDescriptor, root, namespaces=None) -> Optional[list]:
        try:
            items = root.xpath(feed.items_xpath, namespaces=namespaces or None)
        except etree.XPathError as e:
            logger.warning(f'Feed "{feed.name}": invalid "items_xpath" parameter: {e}')
            return None
        if not isinstance(items, list):
            logger.warning(f'Feed "{feed.name}": "items_xpath" does not select nodes')
            return None
        items = [item for item in items if isinstance(item, etree._Element)]
        if not items:
            logger.warning(f'Feed "{feed.name}": no item found')
        return items

    async def _refine_feed_item(self, feed: FeedDescriptor, item, number: int) -> None:
        namespaces = feed.xml_namespaces
        link_node = _first(item, feed.item_link_xpath, namespaces)
        if link_node is None:
            logger.warning(f'Feed "{feed.name}": no link found for item #{number}')
            return
        link = clean_link(_text_of(link_node).strip())
        if not link:
            logger.warning(f'Feed "{feed.name}": empty link for item #{number}')
            return

        title_node = _first(item, feed.item_title_xpath, namespaces) if feed.item_title_xpath else None
        if title_node is None:
            logger.warning(f'Feed "{feed.name}": no title found for item #{number} ({link})')
        content_node = _first(item, feed.item_content_xpath, namespaces) if feed.item_content_xpath else None
        if content_node is None:
            logger.warning(f'Feed "{feed.name}": no content found for item #{number} ({link})')

        original_title = _text_of(title_node)
        original_content = _text_of(content_node)
        resolved = await self.resolver.resolve(feed, link, original_title, original_content)

        # Only rewrite nodes whose value actually changed
        if resolved.title != original_title:
            replace_with_cdata(title_node, resolved.title)
        if resolved.content != original_content:
            replace_with_cdata(content_node, resolved.content)

    # Page sources
    async def _assemble_page(self, feed: FeedDescriptor, text: str) -> Optional[str]:
        if not text.strip():
            logger.warning(f'Feed "{feed.name}": empty page')
            return None
        try:
            document = lxml.html.document_fromstring(
                text.encode('utf-8'), parser=lxml.html.HTMLParser(encoding='utf-8')
            )
        except (etree.ParserError, ValueError) as e:
            logger.warning(f'Feed "{feed.name}": could not parse source HTML: {e}')
            return None

        items = self._select_items(feed, document)
        if items is None:
            return None

        jobs = [self._page_entry(feed, node, n) for n, node in enumerate(items, 1)]
        entries = await self._gather_items(feed, jobs)
        return await self._build_rss(feed, [entry for entry in entries if entry is not None], document)

    async def _page_entry(self, feed: FeedDescriptor, node, number: int) -> Optional[ResolvedItem]:
        link = _text_of(_first(node, feed.item_link_xpath)).strip()
        if link and feed.item_link_prefix:
            link = f"{feed.item_link_prefix}{link}"
        link = clean_link(link)
        if not link or not validate_url(link):
            logger.warning(f'Feed "{feed.name}": no link found for item #{number}')
            return None

        title = _text_of(_first(node, feed.item_title_xpath)).strip() if feed.item_title_xpath else ""
        content = _text_of(_first(node, feed.item_content_xpath)).strip() if feed.item_content_xpath else ""
        published = 0
        if feed.item_time_xpath:
            published = parse_timestamp(_text_of(_first(node, feed.item_time_xpath)).strip()) or 0

        return await self._complete_entry(feed, link, title, content, published, node)

    # JSON sources
    async def _assemble_json(self, feed: FeedDescriptor, text: str) -> Optional[str]:
        try:
            data = json.loads(text)
        except ValueError as e:
            logger.warning(f'Feed "{feed.name}": could not decode source JSON: {e}')
            return None

        if feed.json_items_callback is not None:
            try:
                items = await call_hook(feed.json_items_callback, data)
            except Exception as e:
                logger.error(f'Feed "{feed.name}": json_items_callback failed: {e}')
                return None
        else:
            items = lookup_path(data, feed.json_items_path)

        if items is None:
            items = []
        if isinstance(items, Mapping):
            items = list(items.values())
        if not isinstance(items, (list, tuple)):
            logger.warning(f'Feed "{feed.name}": JSON items are a {type(items).__name__}, not a list')
            return None
        if not items:
            logger.warning(f'Feed "{feed.name}": no item found')

        jobs = [self._json_entry(feed, item, n) for n, item in enumerate(items, 1)]
        entries = await self._gather_items(feed, jobs)
        return await self._build_rss(feed, [entry for entry in entries if entry is not None], data)

    async def _json_entry(self, feed: FeedDescriptor, item: Any, number: int) -> Optional[ResolvedItem]:
        link = _as_text(lookup_path(item, feed.item_link_field)).strip()
        if link and feed.item_link_prefix:
            link = f"{feed.item_link_prefix}{link}"
        link = clean_link(link)
        if not link or not validate_url(link):
            logger.warning(f'Feed "{feed.name}": no link found for item #{number}')
            return None

        title = _as_text(lookup_path(item, feed.item_title_field)).strip()
        content = _as_text(lookup_path(item, feed.item_content_field)).strip()
        published = parse_timestamp(lookup_path(item, feed.item_time_field)) or 0
        json_url = None
        if feed.item_json_url_field:
            candidate = _as_text(lookup_path(item, feed.item_json_url_field)).strip()
            json_url = candidate if validate_url(candidate) else None

        return await self._complete_entry(feed, link, title, content, published, item, json_url)

    # Synthesized documents
    async def _complete_entry(self, feed: FeedDescriptor, link: str, title: str, content: str, published: int,
                              source: Any, json_url: Optional[str] = None) -> ResolvedItem:
        """Fill what the source lacks from the item itself, then attach podcast media."""
        entry = ResolvedItem(status=ItemStatus.NEW, link=link, title=title, content=content, time=published)
        if not title or not content:
            resolved = await self.resolver.resolve(feed, link, title, content, published, json_url)
            entry.status = resolved.status
            entry.title = title or resolved.title
            entry.content = content or resolved.content
            entry.time = published or resolved.time

        if feed.podcast and self.podcasts is not None:
            await self._attach_media(feed, entry, source)
        return entry

    async def _attach_media(self, feed: FeedDescriptor, entry: ResolvedItem, source: Any) -> None:
        enclosure = await self.podcasts.resolve_enclosure(feed, entry.link)
        if enclosure.status is not ItemStatus.ERROR:
            entry.enclosure_url = enclosure.url
            entry.enclosure_length = enclosure.length
            entry.enclosure_type = enclosure.type
            entry.enclosure_duration = enclosure.duration
        if feed.podcast_item_image_callback is not None:
            entry.image_url = await self.podcasts.resolve_image(feed, ImageType.ENTRY, entry.link, source)

    def _podcast_channel(self, fg: FeedGenerator, feed: FeedDescriptor) -> None:
        """iTunes channel metadata. Values feedgen rejects are logged and skipped."""
        if feed.podcast_category:
            category = {'cat': feed.podcast_category}
            if feed.podcast_subcategory:
                category['sub'] = feed.podcast_subcategory
            try:
                fg.podcast.itunes_category(category)
            except ValueError as e:
                logger.warning(f'Feed "{feed.name}": invalid podcast category {category}: {e}')
        if feed.podcast_owner_name and feed.podcast_owner_email:
            fg.podcast.itunes_owner(name=feed.podcast_owner_name, email=feed.podcast_owner_email)
        if feed.podcast_block:
            fg.podcast.itunes_block(True)

    @staticmethod
    def _published(feed: FeedDescriptor, entry: ResolvedItem, now: datetime) -> datetime:
        if not entry.time:
            return now
        try:
            return datetime.fromtimestamp(entry.time, tz=timezone.utc)
        except (OverflowError, OSError, TypeError, ValueError) as e:
            logger.warning(f'Feed "{feed.name}": unusable time {entry.time!r} for {entry.link}: {e}')
            return now

    async def _build_rss(self, feed: FeedDescriptor, entries: List[ResolvedItem], source: Any) -> str:
        """Create an RSS 2.0 document (feedgen) with entries in source order."""
        now = datetime.now(timezone.utc)
        fg = FeedGenerator()
        fg.title(sanitize_xml_string(feed.title or feed.name))
        fg.link(href=feed.url, rel='alternate')
        fg.description(sanitize_xml_string(feed.description or feed.title or feed.name))
        fg.generator(GENERATOR)
        fg.lastBuildDate(now)

        if feed.podcast:
            fg.load_extension('podcast')
            self._podcast_channel(fg, feed)
            if self.podcasts is not None:
                image_url = await self.podcasts.resolve_image(feed, ImageType.FEED, "", source)
                if image_url:
                    fg.image(url=image_url, title=sanitize_xml_string(feed.title or feed.name), link=feed.url)
                    try:
                        fg.podcast.itunes_image(image_url)
                    except ValueError as e:
                        logger.warning(f'Feed "{feed.name}": unusable podcast image {image_url}: {e}')

        for entry in entries:
            fe = fg.add_entry(order='append')
            fe.title(sanitize_xml_string(entry.title) or entry.link)
            fe.link(href=entry.link)
            fe.guid(entry.link, permalink=True)
            description = sanitize_xml_string(entry.content)
            if description:
                fe.description(description)
            fe.pubDate(self._published(feed, entry, now))

            if entry.enclosure_url:
                fe.enclosure(entry.enclosure_url, str(entry.enclosure_length),
                             entry.enclosure_type or 'application/octet-stream')
                if entry.enclosure_duration:
                    fe.podcast.itunes_duration(entry.enclosure_duration)
            if entry.image_url:
                try:
                    fe.podcast.itunes_image(entry.image_url)
                except ValueError as e:
                    logger.warning(f'Feed "{feed.name}": unusable item image {entry.image_url}: {e}')

        logger.debug(f'Feed "{feed.name}": assembled {len(entries)} items')
        return fg.rss_str(pretty=True).decode('utf-8')
