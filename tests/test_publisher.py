from datetime import datetime, timezone
import json
import logging

import pytest
from lxml import etree

from errors import ExtractionError
from feeds import FeedDescriptor, SourceKind
from fetcher import FetchResult
from hooks import append_note
from podcast import EnclosureInfo, ImageType
from publisher import FeedAssembler, replace_with_cdata, sanitize_xml_string
from resolver import ContentResolver, ItemStatus, ResolvedItem

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"


class DummyCache:
    """Cache in pass-through mode: every lookup misses."""

    async def execute(self, operation_name, **params):
        return None


class FakeFetcher:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def fetch(self, url, data=None):
        self.calls.append(url)
        response = self.responses.get(url, 404)
        if isinstance(response, int):
            return FetchResult(status=response, url=url)
        body = response if isinstance(response, bytes) else response.encode('utf-8')
        return FetchResult(status=200, body=body, url=url, content_type='text/html; charset=utf-8')


class FakeExtractor:
    def __init__(self, pages):
        self.pages = pages

    async def extract(self, html, url=None):
        if url not in self.pages:
            raise ExtractionError(f"nothing readable at {url}")
        return self.pages[url]


class FakePodcasts:
    async def resolve_enclosure(self, feed, url):
        return EnclosureInfo(status=ItemStatus.NEW, url=f"https://media.example.com/{url.rsplit('/', 1)[-1]}.mp3",
                             length=1234, type='audio/mpeg', duration=61)

    async def resolve_image(self, feed, image_type, image_id="", context=None):
        if image_type is ImageType.FEED:
            return 'https://media.example.com/cover.jpg'
        return ''


def make_assembler(responses, pages=None, podcasts=None):
    fetcher = FakeFetcher(responses)
    resolver = ContentResolver(fetcher, DummyCache(), FakeExtractor(pages or {}))
    return FeedAssembler(fetcher, resolver, podcasts, concurrency=2), fetcher


def channel_items(output):
    root = etree.fromstring(output.encode('utf-8'))
    return root.findall('./channel/item')


SOURCE_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Source</title><link>https://example.com/</link><description>d</description>
<item><title>Short</title><link>https://example.com/a</link><description>Teaser</description></item>
<item><title>Same</title><link>https://example.com/b</link><description>Plain text</description></item>
</channel></rss>
"""


@pytest.mark.asyncio
async def test_feed_source_rewrites_changed_nodes_as_cdata():
    feed = FeedDescriptor(name='news', source_kind=SourceKind.FEED, url='https://example.com/feed.xml')
    assembler, _ = make_assembler(
        {
            'https://example.com/feed.xml': SOURCE_FEED,
            'https://example.com/a': '<html>a</html>',
            'https://example.com/b': '<html>b</html>',
        },
        {
            'https://example.com/a': ('Full title', '<p>Full body</p>'),
            'https://example.com/b': ('Same', 'Plain text'),
        },
    )

    output = await assembler.generate(feed)

    assert output.startswith("<?xml version='1.0' encoding='UTF-8'?>")
    assert '<title><![CDATA[Full title]]></title>' in output
    assert '<description><![CDATA[<p>Full body</p>]]></description>' in output
    # Unchanged nodes are left as they were
    assert '<title>Same</title>' in output
    assert '<description>Plain text</description>' in output
    assert '<title>Source</title>' in output


@pytest.mark.asyncio
async def test_feed_source_item_without_link_is_left_alone(caplog):
    source = SOURCE_FEED.replace('<link>https://example.com/a</link>', '')
    feed = FeedDescriptor(name='news', source_kind=SourceKind.FEED, url='https://example.com/feed.xml')
    assembler, fetcher = make_assembler(
        {'https://example.com/feed.xml': source, 'https://example.com/b': '<html>b</html>'},
        {'https://example.com/b': ('Better', 'Plain text')},
    )
    caplog.set_level(logging.WARNING)

    output = await assembler.generate(feed)

    assert '<title>Short</title>' in output
    assert '<title><![CDATA[Better]]></title>' in output
    assert fetcher.calls == ['https://example.com/feed.xml', 'https://example.com/b']
    assert sum('no link found for item #1' in r.getMessage() for r in caplog.records) == 1


@pytest.mark.asyncio
async def test_feed_source_with_no_items_still_produces_output(caplog):
    source = ('<?xml version="1.0"?><rss version="2.0"><channel><title>Empty</title>'
              '<link>https://example.com/</link></channel></rss>')
    feed = FeedDescriptor(name='news', source_kind=SourceKind.FEED, url='https://example.com/feed.xml')
    assembler, _ = make_assembler({'https://example.com/feed.xml': source})
    caplog.set_level(logging.WARNING)

    output = await assembler.generate(feed)

    assert '<title>Empty</title>' in output
    assert any('no item found' in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_namespaced_feed_source():
    source = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom"><title>Atom</title>
<entry><title>Entry</title><link href="https://example.com/e1"/><content>Short</content></entry>
</feed>"""
    feed = FeedDescriptor(
        name='atom', source_kind=SourceKind.FEED, url='https://example.com/atom.xml',
        items_xpath='//atom:entry', item_link_xpath='./atom:link/@href', item_title_xpath='./atom:title',
        item_content_xpath='./atom:content', xml_namespaces={'atom': 'http://www.w3.org/2005/Atom'},
    )
    assembler, _ = make_assembler(
        {'https://example.com/atom.xml': source, 'https://example.com/e1': '<html>e1</html>'},
        {'https://example.com/e1': ('Entry', 'Long content')},
    )

    output = await assembler.generate(feed)

    assert '<content><![CDATA[Long content]]></content>' in output
    assert '<title>Entry</title>' in output


@pytest.mark.asyncio
async def test_source_fetch_failure_yields_no_document():
    feed = FeedDescriptor(name='news', source_kind=SourceKind.FEED, url='https://example.com/feed.xml')
    assembler, _ = make_assembler({'https://example.com/feed.xml': 500})
    assert await assembler.generate(feed) is None


BLOG_PAGE = """<html><body>
<div class="post"><a href="/p1">Post 1</a><p>Body 1</p></div>
<div class="post"><a href="/p2">Post 2</a><p>Body 2</p></div>
<div class="post"><span>No link here</span><p>Body 3</p></div>
<div class="post"><a href="/p4">Post 4</a><p>Body 4</p></div>
<div class="post"><a href="/p5">Post 5</a><p>Body 5</p></div>
</body></html>"""


def blog_feed(**overrides):
    values = dict(
        name='blog', source_kind=SourceKind.PAGE, url='https://example.com/blog', title='Blog',
        items_xpath="//div[@class='post']", item_link_xpath='./a/@href', item_link_prefix='https://example.com',
        item_title_xpath='./a', item_content_xpath='./p',
    )
    values.update(overrides)
    return FeedDescriptor(**values)


@pytest.mark.asyncio
async def test_page_item_without_link_is_skipped_others_kept(caplog):
    assembler, fetcher = make_assembler({'https://example.com/blog': BLOG_PAGE})
    caplog.set_level(logging.WARNING)

    output = await assembler.generate(blog_feed())

    items = channel_items(output)
    assert [item.findtext('title') for item in items] == ['Post 1', 'Post 2', 'Post 4', 'Post 5']
    assert [item.findtext('link') for item in items][0] == 'https://example.com/p1'
    assert items[0].findtext('description') == 'Body 1'
    assert sum('no link found' in r.getMessage() for r in caplog.records) == 1
    # Every item carried its own title and content
    assert fetcher.calls == ['https://example.com/blog']


@pytest.mark.asyncio
async def test_page_items_missing_content_are_resolved():
    page = '<html><body><div class="post"><a href="/p1">Post 1</a></div></body></html>'
    assembler, fetcher = make_assembler(
        {'https://example.com/blog': page, 'https://example.com/p1': '<html>p1</html>'},
        {'https://example.com/p1': ('Page title', '<p>Extracted</p>')},
    )

    output = await assembler.generate(blog_feed())

    items = channel_items(output)
    assert items[0].findtext('title') == 'Post 1'
    assert items[0].findtext('description') == '<p>Extracted</p>'
    assert fetcher.calls == ['https://example.com/blog', 'https://example.com/p1']


@pytest.mark.asyncio
async def test_page_channel_metadata():
    assembler, _ = make_assembler({'https://example.com/blog': BLOG_PAGE})

    output = await assembler.generate(blog_feed(description='All the posts'))

    root = etree.fromstring(output.encode('utf-8'))
    assert root.tag == 'rss'
    assert root.findtext('./channel/title') == 'Blog'
    assert root.findtext('./channel/description') == 'All the posts'
    assert root.findtext('./channel/generator') == 'Feed Refiner'


API_DOCUMENT = {
    'data': {
        'items': [
            {'permalink': 'https://example.com/n/1', 'headline': 'One', 'summary': 'First',
             'published_at': '2024-01-02T03:04:05Z'},
            {'headline': 'No link'},
            {'permalink': 'https://example.com/n/3', 'headline': 'Three', 'summary': 'Third'},
        ]
    }
}


def api_feed(**overrides):
    values = dict(
        name='api', source_kind=SourceKind.JSON, url='https://api.example.com/news', title='API news',
        json_items_path='data.items', item_link_field='permalink', item_title_field='headline',
        item_content_field='summary', item_time_field='published_at',
    )
    values.update(overrides)
    return FeedDescriptor(**values)


@pytest.mark.asyncio
async def test_json_items_from_dotted_path():
    assembler, _ = make_assembler({'https://api.example.com/news': json.dumps(API_DOCUMENT)})

    output = await assembler.generate(api_feed())

    items = channel_items(output)
    assert [item.findtext('title') for item in items] == ['One', 'Three']
    assert items[0].findtext('pubDate') == 'Tue, 02 Jan 2024 03:04:05 +0000'
    assert items[0].findtext('guid') == 'https://example.com/n/1'


@pytest.mark.asyncio
async def test_json_items_from_callback():
    def enumerate_items(data):
        return [item for item in data['data']['items'] if 'permalink' in item][::-1]

    assembler, _ = make_assembler({'https://api.example.com/news': json.dumps(API_DOCUMENT)})

    output = await assembler.generate(api_feed(json_items_path='', json_items_callback=enumerate_items))

    assert [item.findtext('title') for item in channel_items(output)] == ['Three', 'One']


@pytest.mark.asyncio
async def test_json_items_that_are_not_a_list_yield_no_document():
    assembler, _ = make_assembler({'https://api.example.com/news': json.dumps({'data': {'items': 'nope'}})})
    assert await assembler.generate(api_feed()) is None


@pytest.mark.asyncio
async def test_json_millisecond_timestamps_are_understood():
    document = {'data': {'items': [
        {'permalink': 'https://example.com/n/1', 'headline': 'Seconds', 'summary': 'S', 'published_at': 1700000000},
        {'permalink': 'https://example.com/n/2', 'headline': 'Millis', 'summary': 'M', 'published_at': 1700000000000},
    ]}}
    assembler, _ = make_assembler({'https://api.example.com/news': json.dumps(document)})

    output = await assembler.generate(api_feed())

    items = channel_items(output)
    assert [item.findtext('title') for item in items] == ['Seconds', 'Millis']
    assert [item.findtext('pubDate') for item in items] == ['Tue, 14 Nov 2023 22:13:20 +0000'] * 2


def test_unrepresentable_item_time_falls_back_to_generation_time():
    now = datetime(2024, 1, 2, tzinfo=timezone.utc)
    entry = ResolvedItem(status=ItemStatus.NEW, link='https://example.com/n/1', time=10 ** 15)
    assert FeedAssembler._published(api_feed(), entry, now) == now


class FlakyPodcasts(FakePodcasts):
    async def resolve_enclosure(self, feed, url):
        if url.endswith('/1'):
            raise OSError('disk full')
        return await super().resolve_enclosure(feed, url)


@pytest.mark.asyncio
async def test_unexpected_item_failure_drops_only_that_item(caplog):
    assembler, _ = make_assembler({'https://api.example.com/news': json.dumps(API_DOCUMENT)},
                                  podcasts=FlakyPodcasts())

    output = await assembler.generate(api_feed(podcast=True))

    assert [item.findtext('title') for item in channel_items(output)] == ['Three']
    assert any('item #1 failed: disk full' in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_podcast_document_carries_enclosures_and_artwork():
    assembler, _ = make_assembler({'https://api.example.com/news': json.dumps(API_DOCUMENT)}, podcasts=FakePodcasts())
    feed = api_feed(podcast=True, podcast_owner_name='Owner', podcast_owner_email='owner@example.com',
                    podcast_block=True)

    output = await assembler.generate(feed)

    root = etree.fromstring(output.encode('utf-8'))
    enclosure = root.find('./channel/item/enclosure')
    assert enclosure.get('url') == 'https://media.example.com/1.mp3'
    assert enclosure.get('length') == '1234'
    assert enclosure.get('type') == 'audio/mpeg'
    assert root.find('./channel/item/{%s}duration' % ITUNES_NS).text == '61'
    assert root.find('./channel/{%s}image' % ITUNES_NS).get('href') == 'https://media.example.com/cover.jpg'
    assert root.findtext('./channel/{%s}block' % ITUNES_NS) == 'yes'
    assert root.findtext('./channel/{%s}owner/{%s}email' % (ITUNES_NS, ITUNES_NS)) == 'owner@example.com'


@pytest.mark.asyncio
async def test_finalizer_output_is_used():
    assembler, _ = make_assembler({'https://example.com/blog': BLOG_PAGE})

    output = await assembler.generate(blog_feed(finalize=append_note('refined')))

    assert output.endswith('<!-- refined -->\n')


@pytest.mark.asyncio
async def test_failing_finalizer_keeps_unfinalized_output():
    def broken(output):
        raise RuntimeError("boom")

    assembler, _ = make_assembler({'https://example.com/blog': BLOG_PAGE})

    output = await assembler.generate(blog_feed(finalize=broken))

    assert len(channel_items(output)) == 4


def test_replace_with_cdata_drops_children():
    node = etree.fromstring('<description>old <b>markup</b> tail</description>')
    replace_with_cdata(node, 'new \x00value')
    assert etree.tostring(node) == b'<description><![CDATA[new value]]></description>'


def test_replace_with_cdata_falls_back_to_escaped_text():
    node = etree.fromstring('<title>x</title>')
    replace_with_cdata(node, 'a ]]> b')
    assert etree.tostring(node) == b'<title>a ]]&gt; b</title>'


def test_sanitize_xml_string():
    assert sanitize_xml_string('ok\tline\n\x01\x7f') == 'ok\tline\n'
    assert sanitize_xml_string(b'bytes') == 'bytes'
    assert sanitize_xml_string(None) == ''
