#!/usr/bin/env python3
"""
Readable content extraction.

Wraps readability-lxml: given a page's HTML, return its title and main content
with navigation and boilerplate removed. Parsing is CPU-bound, so it runs in a
thread pool.
"""

from asyncio import get_running_loop
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Optional, Tuple

from lxml import etree
from readability import Document

from config import get_logger
from errors import ExtractionError

# Module-specific logger
logger = get_logger("extractor")

# readability-lxml returns this when the page has no <title>
NO_TITLE = "[no-title]"


class ReadabilityExtractor:
    """Extracts (title, content) pairs from HTML pages."""

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self.executor = executor or ThreadPoolExecutor(thread_name_prefix="readability")

    def parse(self, html: str, url: Optional[str] = None) -> Tuple[str, str]:
        """Parse HTML synchronously. Raises ExtractionError when the page can't be parsed."""
        if not html or not html.strip():
            raise ExtractionError(f"Empty document for {url}")
        try:
            document = Document(html, url=url)
            title = document.title() or ""
            content = document.summary(html_partial=True) or ""
        except (ValueError, TypeError, etree.LxmlError) as e:
            raise ExtractionError(f"Readability could not parse {url}: {e}") from e
        if title.strip() == NO_TITLE:
            title = ""
        return title.strip(), content

    async def extract(self, html: str, url: Optional[str] = None) -> Tuple[str, str]:
        """Parse HTML in the executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(self.parse, html, url))

    def close(self) -> None:
        self.executor.shutdown(wait=False)
