#!/usr/bin/env python3
"""
Feed descriptors.

A FeedDescriptor is the validated, read-only form of one entry of feeds.yaml.
Descriptors are built when a feed is requested and every field is checked up
front: the first problem raises FeedConfigError before any network activity.

Per-feed hooks (item transforms, JSON enumerators, podcast image resolvers,
fallback enclosure downloaders) can be given as:

- a Python callable (when descriptors are built in code)
- an import path string, "package.module:attribute"
- a mapping {factory: "package.module:attribute", options: {...}}, where the
  factory is called once with the options and must return the hook
"""

from dataclasses import dataclass, field
from enum import Enum
import importlib
import inspect
from typing import Any, Callable, Dict, Mapping, Optional

from lxml import etree

from config import config, get_logger
from errors import FeedConfigError
from utils import strip_query, validate_url

# Module-specific logger
logger = get_logger("feeds")

DEFAULT_CACHE_LIMIT = 7 * 24 * 60 * 60

HOOK_FIELDS = (
    "item_callback",
    "json_items_callback",
    "json_item_callback",
    "finalize",
    "podcast_image_callback",
    "podcast_item_image_callback",
    "podcast_enclosure_callback",
)

STRING_FIELDS = (
    "title",
    "description",
    "items_xpath",
    "item_link_xpath",
    "item_link_prefix",
    "item_title_xpath",
    "item_content_xpath",
    "item_time_xpath",
    "json_items_path",
    "item_link_field",
    "item_title_field",
    "item_content_field",
    "item_time_field",
    "item_json_url_field",
    "podcast_category",
    "podcast_subcategory",
    "podcast_owner_name",
    "podcast_owner_email",
)

XPATH_FIELDS = (
    "items_xpath",
    "item_link_xpath",
    "item_title_xpath",
    "item_content_xpath",
    "item_time_xpath",
)

FORM_FIELDS = ("submit_button", "url_input", "link")

BOOL_FIELDS = ("readability", "podcast", "podcast_block", "strip_query")

KNOWN_FIELDS = set(HOOK_FIELDS) | set(STRING_FIELDS) | set(BOOL_FIELDS) | {
    "source_type", "url", "cache_limit", "xml_namespaces", "podcast_enclosure_form",
}


class SourceKind(str, Enum):
    FEED = "feed"
    PAGE = "page"
    JSON = "json"


@dataclass
class ItemFields:
    """Mutable title/content/time triple handed to per-item hooks."""

    title: str = ""
    content: str = ""
    time: int = 0


@dataclass(frozen=True)
class FeedDescriptor:
    name: str
    source_kind: SourceKind
    url: str
    title: str = ""
    description: str = ""
    items_xpath: str = "//item"
    item_link_xpath: str = "./link"
    item_link_prefix: str = ""
    item_title_xpath: str = "./title"
    item_content_xpath: str = "./description"
    item_time_xpath: str = ""
    item_callback: Optional[Callable] = None
    readability: bool = True
    cache_limit: int = DEFAULT_CACHE_LIMIT
    xml_namespaces: Dict[str, str] = field(default_factory=dict)
    finalize: Optional[Callable] = None
    strip_query: bool = False
    # JSON sources
    json_items_callback: Optional[Callable] = None
    json_items_path: str = ""
    item_link_field: str = "link"
    item_title_field: str = "title"
    item_content_field: str = "content"
    item_time_field: str = ""
    item_json_url_field: str = ""
    json_item_callback: Optional[Callable] = None
    # Podcasts
    podcast: bool = False
    podcast_image_callback: Optional[Callable] = None
    podcast_item_image_callback: Optional[Callable] = None
    podcast_enclosure_callback: Optional[Callable] = None
    podcast_enclosure_form: Dict[str, Any] = field(default_factory=dict)
    podcast_category: str = ""
    podcast_subcategory: str = ""
    podcast_owner_name: str = ""
    podcast_owner_email: str = ""
    podcast_block: bool = False

    def cache_key(self, url: str) -> str:
        """Key under which an item URL is cached for this feed."""
        if self.strip_query:
            return strip_query(url)
        return url

    @classmethod
    def from_mapping(cls, name: str, raw: Mapping[str, Any]) -> "FeedDescriptor":
        """Build and validate a descriptor from a configuration mapping."""
        if not isinstance(name, str) or not name.strip():
            raise FeedConfigError(str(name), "feed name must be a non-empty string")
        if not isinstance(raw, Mapping):
            raise FeedConfigError(name, "descriptor must be a mapping")

        unknown = sorted(set(raw) - KNOWN_FIELDS)
        if unknown:
            logger.warning(f"Feed {name}: ignoring unknown fields {', '.join(map(str, unknown))}")

        kind_value = raw.get("source_type", SourceKind.FEED.value)
        try:
            source_kind = SourceKind(str(kind_value).lower())
        except ValueError:
            raise FeedConfigError(name, f"unsupported source_type {kind_value!r}", "source_type") from None

        url = raw.get("url")
        if not url:
            raise FeedConfigError(name, "missing required field url", "url")
        if not isinstance(url, str) or not validate_url(url):
            raise FeedConfigError(name, f"invalid url {url!r}", "url")

        values: Dict[str, Any] = {"name": name, "source_kind": source_kind, "url": url.strip()}

        for key in STRING_FIELDS:
            if key in raw and raw[key] is not None:
                if not isinstance(raw[key], str):
                    raise FeedConfigError(name, f"{key} must be a string", key)
                values[key] = raw[key]

        for key in BOOL_FIELDS:
            if key in raw and raw[key] is not None:
                if not isinstance(raw[key], bool):
                    raise FeedConfigError(name, f"{key} must be true or false", key)
                values[key] = raw[key]

        if "cache_limit" in raw:
            limit = raw["cache_limit"]
            if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
                raise FeedConfigError(name, "cache_limit must be a positive number of seconds", "cache_limit")
            values["cache_limit"] = limit

        namespaces = raw.get("xml_namespaces") or {}
        if not isinstance(namespaces, Mapping):
            raise FeedConfigError(name, "xml_namespaces must map prefixes to URIs", "xml_namespaces")
        for prefix, uri in namespaces.items():
            if not isinstance(prefix, str) or not prefix or not isinstance(uri, str) or not uri:
                raise FeedConfigError(name, f"invalid namespace mapping {prefix!r}: {uri!r}", "xml_namespaces")
        values["xml_namespaces"] = dict(namespaces)

        # Feed sources are rewritten in place; enclosures only exist in synthesized documents
        if source_kind is SourceKind.FEED and values.get("podcast"):
            raise FeedConfigError(name, "podcast feeds need a page or json source", "podcast")
        if source_kind in (SourceKind.PAGE, SourceKind.JSON) and not values.get("title"):
            raise FeedConfigError(name, f"{source_kind.value} feeds need a title", "title")
        if source_kind is SourceKind.PAGE:
            for key in ("items_xpath", "item_link_xpath"):
                if not values.get(key):
                    raise FeedConfigError(name, f"page feeds need {key}", key)
            # Pages have no RSS-shaped defaults: missing fields come from the item page
            values.setdefault("item_title_xpath", "")
            values.setdefault("item_content_xpath", "")

        for key in HOOK_FIELDS:
            hook = resolve_hook(name, key, raw.get(key))
            if hook is not None:
                values[key] = hook

        if source_kind is SourceKind.JSON:
            if values.get("json_items_callback") is None and not values.get("json_items_path"):
                raise FeedConfigError(name, "json feeds need json_items_callback or json_items_path",
                                      "json_items_callback")
        else:
            _compile_xpaths(name, values)

        form = raw.get("podcast_enclosure_form")
        if form is not None:
            if not isinstance(form, Mapping) or not validate_url(form.get("url", "")):
                raise FeedConfigError(name, "podcast_enclosure_form needs a valid url", "podcast_enclosure_form")
            missing = [key for key in FORM_FIELDS if not isinstance(form.get(key), str) or not form.get(key)]
            if missing:
                raise FeedConfigError(name, f"podcast_enclosure_form is missing {', '.join(missing)}",
                                      "podcast_enclosure_form")
            if form.get("link_type", "filter") not in ("filter", "text"):
                raise FeedConfigError(name, "podcast_enclosure_form link_type must be filter or text",
                                      "podcast_enclosure_form")
            values["podcast_enclosure_form"] = {
                key: form[key] for key in ("url", "link_type") + FORM_FIELDS if key in form
            }

        return cls(**values)


def _compile_xpaths(name: str, values: Dict[str, Any]) -> None:
    namespaces = values.get("xml_namespaces") or None
    for key in XPATH_FIELDS:
        expression = values.get(key, getattr(FeedDescriptor, key))
        if not expression:
            continue
        try:
            etree.XPath(expression, namespaces=namespaces)
        except etree.XPathError as e:
            raise FeedConfigError(name, f"invalid {key} {expression!r}: {e}", key) from e


def resolve_hook(feed: str, key: str, value: Any) -> Optional[Callable]:
    """Turn a configured hook value into a callable."""
    if value is None:
        return None
    if callable(value):
        return value
    if isinstance(value, str):
        return _import_hook(feed, key, value)
    if isinstance(value, Mapping):
        factory = _import_hook(feed, key, value.get("factory", ""))
        options = value.get("options") or {}
        if not isinstance(options, Mapping):
            raise FeedConfigError(feed, f"{key} options must be a mapping", key)
        try:
            hook = factory(**options)
        except (TypeError, ValueError) as e:
            raise FeedConfigError(feed, f"could not build {key}: {e}", key) from e
        if not callable(hook):
            raise FeedConfigError(feed, f"{key} factory did not return a callable", key)
        return hook
    raise FeedConfigError(feed, f"{key} must be a callable or an import path", key)


def _import_hook(feed: str, key: str, target: Any) -> Callable:
    if not isinstance(target, str) or ":" not in target:
        raise FeedConfigError(feed, f"{key} must look like 'module:attribute', got {target!r}", key)
    module_name, _, attribute = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise FeedConfigError(feed, f"could not import {module_name} for {key}: {e}", key) from e
    hook = getattr(module, attribute, None)
    if not callable(hook):
        raise FeedConfigError(feed, f"{target} is not callable", key)
    return hook


async def call_hook(hook: Callable, *args, **kwargs) -> Any:
    """Call a hook that may be a plain function or a coroutine function."""
    result = hook(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def lookup_path(data: Any, path: str) -> Any:
    """Walk a dotted path ("data.items.0.url") through dicts and lists."""
    if not path:
        return None
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def load_feed(name: str) -> FeedDescriptor:
    """Build the descriptor for a feed named in feeds.yaml."""
    raw = config.FEED_CONFIGS.get(name)
    if raw is None:
        raise FeedConfigError(name, "no such feed in configuration")
    return FeedDescriptor.from_mapping(name, raw)


def feed_names() -> list:
    return sorted(config.FEED_CONFIGS)
