from pathlib import Path

import pytest
import yaml

from config import config
from errors import FeedConfigError
from feeds import (
    DEFAULT_CACHE_LIMIT,
    FeedDescriptor,
    SourceKind,
    feed_names,
    load_feed,
    lookup_path,
    resolve_hook,
)
import hooks


def build(raw, name='test'):
    return FeedDescriptor.from_mapping(name, raw)


def test_minimal_feed_gets_rss_defaults():
    feed = build({'url': 'https://example.com/feed.xml'})
    assert feed.source_kind is SourceKind.FEED
    assert feed.items_xpath == '//item'
    assert feed.item_link_xpath == './link'
    assert feed.item_title_xpath == './title'
    assert feed.item_content_xpath == './description'
    assert feed.readability is True
    assert feed.cache_limit == DEFAULT_CACHE_LIMIT
    assert feed.strip_query is False


@pytest.mark.parametrize('raw, field', [
    ({}, 'url'),
    ({'url': 'ftp://example.com/feed'}, 'url'),
    ({'url': 'https://example.com/feed', 'source_type': 'csv'}, 'source_type'),
    ({'url': 'https://example.com/feed', 'cache_limit': 0}, 'cache_limit'),
    ({'url': 'https://example.com/feed', 'cache_limit': True}, 'cache_limit'),
    ({'url': 'https://example.com/feed', 'readability': 'yes'}, 'readability'),
    ({'url': 'https://example.com/feed', 'title': 42}, 'title'),
    ({'url': 'https://example.com/feed', 'items_xpath': '//item['}, 'items_xpath'),
    ({'url': 'https://example.com/feed', 'xml_namespaces': {'a': ''}}, 'xml_namespaces'),
    ({'url': 'https://example.com/page', 'source_type': 'page', 'items_xpath': '//li', 'item_link_xpath': './a'},
     'title'),
    ({'url': 'https://example.com/page', 'source_type': 'page', 'title': 'T', 'item_link_xpath': './a'},
     'items_xpath'),
    ({'url': 'https://example.com/api', 'source_type': 'json', 'title': 'T'}, 'json_items_callback'),
    ({'url': 'https://example.com/feed', 'item_callback': 'hooks.nothing'}, 'item_callback'),
    ({'url': 'https://example.com/feed', 'item_callback': 'no_such_module:hook'}, 'item_callback'),
    ({'url': 'https://example.com/feed', 'item_callback': 'hooks:ITUNES_NS'}, 'item_callback'),
    ({'url': 'https://example.com/feed', 'podcast_enclosure_form': {'url': 'https://dl.example.com'}},
     'podcast_enclosure_form'),
    ({'url': 'https://example.com/show.xml', 'podcast': True}, 'podcast'),
])
def test_invalid_descriptors_are_rejected(raw, field):
    with pytest.raises(FeedConfigError) as excinfo:
        build(raw)
    assert excinfo.value.field == field
    assert excinfo.value.feed == 'test'


def test_page_descriptor_has_no_rss_field_defaults():
    feed = build({
        'source_type': 'page',
        'url': 'https://example.com/blog',
        'title': 'Blog',
        'items_xpath': '//article',
        'item_link_xpath': './/a/@href',
    })
    assert feed.source_kind is SourceKind.PAGE
    assert feed.item_title_xpath == ''
    assert feed.item_content_xpath == ''


def test_json_descriptor_does_not_need_xpaths():
    feed = build({
        'source_type': 'JSON',
        'url': 'https://api.example.com/news',
        'title': 'API',
        'json_items_path': 'data.items',
    })
    assert feed.source_kind is SourceKind.JSON
    assert feed.json_items_path == 'data.items'


def test_hooks_resolve_from_import_paths_and_factories():
    feed = build({
        'url': 'https://example.com/feed.xml',
        'item_callback': {'factory': 'hooks:paywall_detector', 'options': {'needle': 'subscribers'}},
        'podcast_image_callback': 'hooks:channel_image',
        'finalize': hooks.append_note('done'),
    })
    assert callable(feed.item_callback)
    assert feed.podcast_image_callback is hooks.channel_image
    assert feed.finalize('x').endswith('<!-- done -->\n')


def test_factory_errors_are_configuration_errors():
    with pytest.raises(FeedConfigError):
        resolve_hook('test', 'item_callback', {'factory': 'hooks:paywall_detector', 'options': {'needle': ''}})
    with pytest.raises(FeedConfigError):
        resolve_hook('test', 'item_callback', {'factory': 'hooks:paywall_detector', 'options': {'bogus': 1}})
    with pytest.raises(FeedConfigError):
        resolve_hook('test', 'item_callback', 42)


def test_enclosure_form_is_validated_and_kept():
    feed = build({
        'source_type': 'json',
        'url': 'https://example.com/show.json',
        'title': 'Show',
        'json_items_path': 'episodes',
        'podcast': True,
        'podcast_enclosure_form': {
            'url': 'https://dl.example.com/',
            'submit_button': 'Go',
            'url_input': 'url',
            'link': 'Download',
            'link_type': 'text',
        },
    })
    assert feed.podcast_enclosure_form['link_type'] == 'text'
    with pytest.raises(FeedConfigError):
        build({'url': 'https://example.com/show.xml', 'podcast_enclosure_form': {
            'url': 'https://dl.example.com/', 'submit_button': 'Go', 'url_input': 'url', 'link': 'a',
            'link_type': 'xpath'}})


def test_unknown_fields_only_warn(caplog):
    feed = build({'url': 'https://example.com/feed.xml', 'colour': 'blue'})
    assert feed.url == 'https://example.com/feed.xml'
    assert any('colour' in r.getMessage() for r in caplog.records)


def test_cache_key_honours_strip_query():
    url = 'https://example.com/a?utm_source=rss#top'
    assert build({'url': 'https://example.com/feed.xml'}).cache_key(url) == url
    stripped = build({'url': 'https://example.com/feed.xml', 'strip_query': True})
    assert stripped.cache_key(url) == 'https://example.com/a'


def test_load_feed_reads_configuration(monkeypatch):
    monkeypatch.setattr(config, 'FEED_CONFIGS', {
        'b-feed': {'url': 'https://example.com/b.xml'},
        'a-feed': {'url': 'https://example.com/a.xml', 'cache_limit': 60},
    })
    assert feed_names() == ['a-feed', 'b-feed']
    assert load_feed('a-feed').cache_limit == 60
    with pytest.raises(FeedConfigError):
        load_feed('missing')


def test_lookup_path_walks_dicts_and_lists():
    data = {'data': {'items': [{'url': 'first'}, {'url': 'second'}]}}
    assert lookup_path(data, 'data.items.1.url') == 'second'
    assert lookup_path(data, 'data.items.-1.url') == 'second'
    assert lookup_path(data, 'data.items.5.url') is None
    assert lookup_path(data, 'data.missing') is None
    assert lookup_path(data, '') is None
    assert lookup_path(['a', 'b'], '0') == 'a'


def test_shipped_feeds_are_valid():
    path = Path(__file__).resolve().parent.parent / 'feeds.yaml'
    raw = yaml.safe_load(path.read_text(encoding='utf-8'))['feeds']
    descriptors = {name: FeedDescriptor.from_mapping(name, values) for name, values in raw.items()}
    assert descriptors['radio-show'].podcast is True
    assert descriptors['radio-show'].source_kind is SourceKind.PAGE
