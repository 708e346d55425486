#!/usr/bin/env python3
"""
Reusable per-feed hooks.

feeds.yaml can reference these by import path, for example:

    item_callback:
      factory: "hooks:paywall_detector"
      options: {needle: "subscriber-only"}
    podcast_image_callback: "hooks:channel_image"
"""

from collections.abc import Mapping
from typing import Any, Callable, Optional

from lxml import etree
import lxml.html

from config import get_logger
from feeds import ItemFields, lookup_path
from podcast import FormDownloader
from utils import detect_paywall, parse_timestamp, validate_url

# Module-specific logger
logger = get_logger("hooks")

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
MEDIA_NS = "http://search.yahoo.com/mrss/"

_TIME_META = (
    'article:published_time',
    'og:published_time',
    'datePublished',
    'pubdate',
)


def paywall_detector(needle: str) -> Callable[[str, ItemFields], None]:
    """Build an item hook that marks titles of pages containing `needle`."""
    if not needle:
        raise ValueError("paywall_detector needs a non-empty needle")

    def _detect(body: str, item: ItemFields) -> None:
        item.title = detect_paywall(item.title, body, needle)

    return _detect


def page_meta_time(body: str, item: ItemFields) -> None:
    """Item hook: take the publication time from the page's meta tags."""
    if item.time or not body:
        return
    try:
        document = lxml.html.document_fromstring(body)
    except (etree.ParserError, ValueError) as e:
        logger.debug(f"Could not parse page for meta time: {e}")
        return
    for name in _TIME_META:
        values = document.xpath(
            '//meta[@property=$name or @name=$name or @itemprop=$name]/@content', name=name
        )
        for value in values:
            timestamp = parse_timestamp(value.strip())
            if timestamp:
                item.time = timestamp
                return


def _image_url(candidates) -> str:
    for candidate in candidates:
        value = str(candidate).strip()
        if validate_url(value):
            return value
    return ""


def channel_image(source: Any) -> str:
    """Podcast image hook: the channel artwork of an RSS source, or "image" of a JSON one."""
    if isinstance(source, Mapping):
        return _image_url([lookup_path(source, "image") or ""])
    if isinstance(source, etree._Element):
        return _image_url(
            source.xpath('//channel/itunes:image/@href', namespaces={'itunes': ITUNES_NS})
            + source.xpath('//channel/image/url/text()')
            + source.xpath('//meta[@property="og:image"]/@content')
        )
    return ""


def item_image(url: str, item: Any) -> str:
    """Podcast item image hook: artwork attached to a source item."""
    if isinstance(item, Mapping):
        return _image_url([lookup_path(item, "image") or ""])
    if isinstance(item, etree._Element):
        return _image_url(
            item.xpath('./itunes:image/@href', namespaces={'itunes': ITUNES_NS})
            + item.xpath('./media:thumbnail/@url', namespaces={'media': MEDIA_NS})
            + item.xpath('./enclosure[starts-with(@type, "image/")]/@url')
            + item.xpath('.//img/@src')
        )
    return ""


def form_enclosure_downloader(url: str, submit_button: str, url_input: str, link: str,
                              link_type: str = "filter") -> FormDownloader:
    """Factory for a FormDownloader used as podcast_enclosure_callback."""
    if not validate_url(url):
        raise ValueError(f"invalid download form URL {url!r}")
    return FormDownloader(url, submit_button, url_input, link, link_type)


def append_note(note: str, prefix: Optional[str] = "\n") -> Callable[[str], str]:
    """Build a finalizer that appends an XML comment to the output document."""
    safe_note = note.replace("--", "- -")

    def _finalize(output: str) -> str:
        return f"{output}{prefix or ''}<!-- {safe_note} -->\n"

    return _finalize
