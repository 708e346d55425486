#!/usr/bin/env python3
"""
Podcast media resolution.

PodcastResolver downloads episode enclosures with an external downloader
(yt-dlp by default), identifies and probes them with `file` and `mediainfo`,
and caches podcast artwork after checking it is a square PNG or JPEG within the
size range podcast directories accept. Both follow the same cache, fetch,
persist sequence as article content; failures are logged and yield empty
results rather than errors.

FormDownloader is a fallback enclosure downloader for sites the external tool
cannot handle: it drives a third-party "paste a URL here" download form.
"""

import asyncio
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from enum import Enum
import io
import json
import os
from typing import Any, Callable, Optional, Sequence, Tuple
from urllib.parse import urlencode, urljoin

from bs4 import BeautifulSoup
from PIL import Image

from config import config, get_logger
from feeds import FeedDescriptor, call_hook
from fetcher import HTTP_OK
from resolver import ItemStatus
from telemetry import get_tracer, init_telemetry, trace_span
from utils import validate_url

# Module-specific logger
logger = get_logger("podcast")
init_telemetry("feed-refiner-podcast")
_tracer = get_tracer("podcast")

PODCAST_IMAGE_MIN_SIZE = 1400
PODCAST_IMAGE_MAX_SIZE = 3000

# `file` misdetects some MP3 files
MIME_CORRECTIONS = {
    "application/x-font-gdos": "audio/mpeg",
}

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "audio/mpeg": "mp3",
    "audio/x-m4a": "m4a",
}

# Pillow format -> (extension, mime type, save options)
IMAGE_FORMATS = {
    "PNG": ("png", "image/png", {}),
    "JPEG": ("jpg", "image/jpeg", {"quality": 100}),
}


class ImageType(str, Enum):
    FEED = "feed"
    ENTRY = "entry"


@dataclass
class EnclosureInfo:
    status: ItemStatus
    url: str = ""
    length: int = 0
    type: str = ""
    duration: int = 0


@dataclass
class ToolResult:
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_tool(args: Sequence[str], timeout: float) -> ToolResult:
    """Run an external tool, capturing its output. Never raises."""
    try:
        process = await asyncio.create_subprocess_exec(*args, stdout=PIPE, stderr=PIPE)
    except OSError as e:
        logger.warning(f"Could not run {args[0]}: {e}")
        return ToolResult(returncode=-1, stderr=str(e).encode())
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"{args[0]} timed out after {timeout}s")
        return ToolResult(returncode=-1, stderr=b"timeout")
    return ToolResult(returncode=process.returncode, stdout=stdout, stderr=stderr)


def guess_extension(mimetype: str) -> str:
    """File extension for the handful of media types podcasts use, or ""."""
    extension = MIME_EXTENSIONS.get(mimetype, "")
    if not extension:
        logger.warning(f"Unknown media type {mimetype!r}, keeping file without extension")
    return extension


def prepare_podcast_image(payload: bytes) -> Tuple[bytes, str, str]:
    """Validate podcast artwork and bring it within the accepted size range.

    Returns (bytes, extension, mime type). Raises ValueError when the image is
    not a square PNG or JPEG. A failed resize keeps the original bytes.
    """
    try:
        image = Image.open(io.BytesIO(payload))
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"unreadable image: {e}") from e

    with image:
        if image.format not in IMAGE_FORMATS:
            raise ValueError(f"unsupported image type {image.format}")
        extension, mimetype, save_options = IMAGE_FORMATS[image.format]
        width, height = image.size
        if width != height:
            raise ValueError(f"image is not square ({width}x{height})")
        if PODCAST_IMAGE_MIN_SIZE <= width <= PODCAST_IMAGE_MAX_SIZE:
            return payload, extension, mimetype

        new_size = PODCAST_IMAGE_MIN_SIZE if width < PODCAST_IMAGE_MIN_SIZE else PODCAST_IMAGE_MAX_SIZE
        resized = b""
        try:
            output = io.BytesIO()
            image.resize((new_size, new_size), Image.Resampling.LANCZOS).save(
                output, format=image.format, **save_options
            )
            resized = output.getvalue()
        except (OSError, ValueError) as e:
            logger.warning(f"Error resizing image from {width}px to {new_size}px: {e}")

    if not resized:
        logger.warning("Resized image is empty, keeping original image")
        return payload, extension, mimetype
    logger.debug(f"Resized podcast image from {width}px to {new_size}px")
    return resized, extension, mimetype


class FormDownloader:
    """Download an enclosure through a web form that turns a page URL into a file link.

    Args:
        url: Page holding the download form
        submit_button: Label (text, value, name or id) of the form's submit button
        url_input: Name of the form field receiving the enclosure page URL
        link: CSS selector or link text locating the download link in the result page
        link_type: "filter" to treat `link` as a CSS selector, "text" to match link text
    """

    def __init__(self, url: str, submit_button: str, url_input: str, link: str, link_type: str = "filter"):
        self.url = url
        self.submit_button = submit_button
        self.url_input = url_input
        self.link = link
        self.link_type = link_type

    def _find_button(self, soup: BeautifulSoup):
        label = self.submit_button.strip()
        for candidate in soup.find_all(["button", "input"]):
            if candidate.name == "input" and (candidate.get("type") or "").lower() not in ("submit", "button", "image"):
                continue
            names = {
                candidate.get_text(strip=True),
                candidate.get("value", ""),
                candidate.get("name", ""),
                candidate.get("id", ""),
            }
            if label in names:
                return candidate
        return None

    @staticmethod
    def _form_values(form) -> dict:
        values = {}
        for field in form.find_all(["input", "select", "textarea"]):
            name = field.get("name")
            if not name:
                continue
            kind = (field.get("type") or "").lower()
            if kind in ("submit", "button", "image", "reset", "file"):
                continue
            if kind in ("checkbox", "radio") and not field.has_attr("checked"):
                continue
            if field.name == "select":
                option = field.find("option", selected=True) or field.find("option")
                values[name] = option.get("value", option.get_text(strip=True)) if option else ""
            elif field.name == "textarea":
                values[name] = field.get_text()
            else:
                values[name] = field.get("value", "")
        return values

    def _find_link(self, soup: BeautifulSoup):
        if self.link_type == "filter":
            return soup.select_one(self.link)
        for anchor in soup.find_all("a", href=True):
            if anchor.get_text(strip=True) == self.link:
                return anchor
        return None

    async def __call__(self, fetcher, source_url: str, destination: str) -> bool:
        page = await fetcher.fetch(self.url)
        if not page.ok:
            logger.warning(f"Download form {self.url} unavailable (HTTP {page.status})")
            return False

        soup = BeautifulSoup(page.text, 'html.parser')
        button = self._find_button(soup)
        form = button.find_parent("form") if button is not None else None
        if form is None:
            logger.warning(f"No form with a {self.submit_button!r} button at {self.url}")
            return False

        data = self._form_values(form)
        if button.get("name"):
            data[button["name"]] = button.get("value", "")
        data[self.url_input] = source_url

        action = urljoin(page.url or self.url, form.get("action") or "")
        if (form.get("method") or "get").lower() == "post":
            result = await fetcher.post(action, data)
        else:
            separator = "&" if "?" in action else "?"
            result = await fetcher.fetch(f"{action}{separator}{urlencode(data)}")
        if not result.ok:
            logger.warning(f"Download form submission for {source_url} failed (HTTP {result.status})")
            return False

        link = self._find_link(BeautifulSoup(result.text, 'html.parser'))
        if link is None or not link.get("href"):
            logger.warning(f"No download link {self.link!r} in form result for {source_url}")
            return False

        href = urljoin(result.url or action, link["href"])
        if not validate_url(href):
            logger.warning(f"Invalid download link {href!r} for {source_url}")
            return False

        status = await fetcher.fetch_to_file(href, destination)
        if status != HTTP_OK:
            logger.warning(f"Error downloading {href} for {source_url} (HTTP {status})")
            return False
        return True


class PodcastResolver:
    """Cache-or-download orchestrator for enclosures and artwork."""

    def __init__(self, fetcher, cache, store, tool_runner: Callable = run_tool):
        self.fetcher = fetcher
        self.cache = cache
        self.store = store
        self.run_tool = tool_runner

    async def detect_mime_type(self, file_path: str) -> str:
        result = await self.run_tool([config.FILE_BIN, "--brief", "--mime-type", file_path], config.PROBE_TIMEOUT)
        if not result.ok:
            logger.warning(f"Could not detect type of {file_path}: {result.stderr.decode('utf-8', 'replace').strip()}")
            return "application/octet-stream"
        mimetype = result.stdout.decode("utf-8", "replace").strip()
        return MIME_CORRECTIONS.get(mimetype, mimetype)

    async def probe_duration(self, file_path: str) -> int:
        """Duration in whole seconds from mediainfo, 0 when unknown."""
        result = await self.run_tool([config.MEDIAINFO_BIN, "--Output=JSON", file_path], config.PROBE_TIMEOUT)
        if not result.ok:
            logger.warning(f"Error getting duration of {file_path}: {result.stderr.decode('utf-8', 'replace').strip()}")
            return 0
        try:
            info = json.loads(result.stdout)
            return int(round(float(info["media"]["track"][0]["Duration"])))
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"No duration in mediainfo output for {file_path}: {e}")
            return 0

    def _fallback_downloader(self, feed: FeedDescriptor) -> Optional[Callable]:
        if feed.podcast_enclosure_callback is not None:
            return feed.podcast_enclosure_callback
        if feed.podcast_enclosure_form:
            return FormDownloader(**feed.podcast_enclosure_form)
        return None

    async def _download(self, feed: FeedDescriptor, url: str, destination: str) -> bool:
        result = await self.run_tool(
            [config.DOWNLOADER_BIN, "--quiet", "--no-playlist", "-o", destination, url],
            config.DOWNLOAD_TIMEOUT,
        )
        if result.ok and os.path.isfile(destination):
            return True
        logger.warning(
            f"{feed.name}: error downloading {url} with {config.DOWNLOADER_BIN} "
            f"(exit {result.returncode}): {result.stderr.decode('utf-8', 'replace').strip()[-500:]}"
        )

        fallback = self._fallback_downloader(feed)
        if fallback is None:
            return False
        logger.debug(f"{feed.name}: trying fallback downloader for {url}")
        try:
            downloaded = await call_hook(fallback, self.fetcher, url, destination)
        except Exception as e:
            # Fallback downloaders are user hooks
            logger.warning(f"{feed.name}: fallback downloader failed for {url}: {e}")
            downloaded = False
        if downloaded and os.path.isfile(destination):
            return True
        logger.warning(f"{feed.name}: error downloading {url} with fallback downloader")
        return False

    def _cached_enclosure(self, row: dict) -> EnclosureInfo:
        return EnclosureInfo(
            status=ItemStatus.CACHE,
            url=self.store.public_url(row["enclosure"]),
            length=int(row.get("length") or 0),
            type=row.get("type") or "",
            duration=int(row.get("duration") or 0),
        )

    @trace_span(
        "resolve_enclosure",
        tracer_name="podcast",
        attr_from_args=lambda self, feed, url: {"feed.name": feed.name, "item.url": url},
    )
    async def resolve_enclosure(self, feed: FeedDescriptor, url: str) -> EnclosureInfo:
        """Return the cached or freshly downloaded enclosure for an item."""
        key = feed.cache_key(url)
        cached = await self.cache.execute("get_enclosure", feed=feed.name, url=key)
        if cached:
            logger.debug(f"{feed.name}: enclosure for {key} found in cache")
            return self._cached_enclosure(cached)

        name = self.store.unique_name(feed.name, "enclosure")
        if not await self._download(feed, url, self.store.path_for(name)):
            logger.error(f"{feed.name}: no enclosure found for {url}")
            await self.store.remove(name)
            return EnclosureInfo(status=ItemStatus.ERROR)

        mimetype = await self.detect_mime_type(self.store.path_for(name))
        extension = guess_extension(mimetype)
        if extension:
            try:
                name = self.store.rename(name, f"{name}.{extension}")
            except OSError as e:
                logger.error(f"{feed.name}: could not rename enclosure {name}: {e}")
                await self.store.remove(name)
                return EnclosureInfo(status=ItemStatus.ERROR)
        length = self.store.size(name)
        duration = await self.probe_duration(self.store.path_for(name))

        await self.store.publish(name, mimetype)
        stored = await self.cache.execute(
            "put_enclosure",
            feed=feed.name,
            url=key,
            enclosure=name,
            length=length,
            type=mimetype,
            duration=duration,
        )
        if stored is False:
            # Another item with the same link stored its enclosure first
            existing = await self.cache.execute("get_enclosure", feed=feed.name, url=key)
            if existing and existing["enclosure"] != name:
                logger.debug(f"{feed.name}: enclosure for {key} already stored, discarding {name}")
                await self.store.remove(name)
                return self._cached_enclosure(existing)
            logger.warning(f"{feed.name}: enclosure {name} for {key} could not be indexed")
        logger.info(f"🎧 {feed.name}: stored enclosure {name} ({length} bytes, {duration}s)")
        return EnclosureInfo(
            status=ItemStatus.NEW,
            url=self.store.public_url(name),
            length=length,
            type=mimetype,
            duration=duration,
        )

    @trace_span(
        "resolve_image",
        tracer_name="podcast",
        attr_from_args=lambda self, feed, image_type, image_id="", context=None: {
            "feed.name": feed.name,
            "image.type": str(image_type),
        },
    )
    async def resolve_image(self, feed: FeedDescriptor, image_type: ImageType, image_id: str = "",
                            context: Any = None) -> str:
        """Return the public URL of a feed or entry image, or "" when there is none.

        For entry images `image_id` is the item URL. `context` is handed to the
        feed's image hook: the parsed source document for feed images, the
        source item for entry images.
        """
        image_type = ImageType(image_type)
        key = feed.cache_key(image_id) if image_type is ImageType.ENTRY else ""

        cached = await self.cache.execute("get_image", feed=feed.name, type=image_type.value, id=key)
        if cached:
            if self.store.exists(cached):
                return self.store.public_url(cached)
            logger.warning(f"{feed.name}: cached image file {cached} is missing, resolving again")
            await self.cache.execute("delete_images", feed=feed.name, type=image_type.value, id=key)

        if image_type is ImageType.FEED:
            hook, args = feed.podcast_image_callback, (context,)
        else:
            hook, args = feed.podcast_item_image_callback, (image_id, context)
        if hook is None:
            return ""

        try:
            source_url = await call_hook(hook, *args)
        except Exception as e:
            logger.warning(f"{feed.name}: image hook failed for {image_type.value} {image_id}: {e}")
            return ""
        if not source_url or not validate_url(source_url):
            logger.debug(f"{feed.name}: no {image_type.value} image for {image_id or feed.url}")
            return ""

        result = await self.fetcher.fetch(source_url)
        if not result.ok or not result.body:
            logger.warning(f"{feed.name}: could not fetch image {source_url} (HTTP {result.status})")
            return ""

        try:
            payload, extension, mimetype = prepare_podcast_image(result.body)
        except ValueError as e:
            logger.warning(f"{feed.name}: rejecting image {source_url}: {e}")
            return ""

        name = self.store.unique_name(feed.name, image_type.value, extension)
        try:
            self.store.write_bytes(name, payload)
        except OSError as e:
            logger.error(f"{feed.name}: could not store image {name}: {e}")
            return ""
        await self.store.publish(name, mimetype)
        stored = await self.cache.execute("put_image", feed=feed.name, type=image_type.value, id=key, file=name)
        if stored is False:
            existing = await self.cache.execute("get_image", feed=feed.name, type=image_type.value, id=key)
            if existing and existing != name:
                logger.debug(f"{feed.name}: {image_type.value} image for {key or feed.url} already stored, "
                             f"discarding {name}")
                await self.store.remove(name)
                return self.store.public_url(existing)
            logger.warning(f"{feed.name}: image {name} could not be indexed")
        return self.store.public_url(name)
