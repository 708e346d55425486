from datetime import datetime, timezone

import pytest

from fetcher import FetchResult, decode_body, load_ip_pool
from utils import (
    LOCK_MARKER,
    RetryHelper,
    clean_link,
    detect_paywall,
    human_filesize,
    parse_timestamp,
    safe_filename,
    strip_query,
    validate_url,
)


@pytest.mark.parametrize('size, expected', [
    (0, '0.00B'),
    (999, '999.00B'),
    (1500, '1.46K'),
    (1048576, '1.00M'),
])
def test_human_filesize(size, expected):
    assert human_filesize(size) == expected


def test_clean_link_fixes_doubled_scheme():
    assert clean_link('http://https://example.com/a') == 'https://example.com/a'
    assert clean_link('https://example.com/a') == 'https://example.com/a'
    assert clean_link('') == ''


def test_strip_query():
    assert strip_query('https://example.com/a/b?x=1&y=2#frag') == 'https://example.com/a/b'
    assert strip_query('https://example.com/a') == 'https://example.com/a'


def test_validate_url():
    assert validate_url('https://example.com/feed')
    assert validate_url('http://news.example.org')
    assert not validate_url('ftp://example.com/feed')
    assert not validate_url('https://exa mple.com/')
    assert not validate_url('/relative/path')
    assert not validate_url(None)


def test_detect_paywall():
    assert detect_paywall('Title', '<p>Subscribers only</p>', 'Subscribers only') == f'{LOCK_MARKER}Title'
    assert detect_paywall('Title', '<p>Free</p>', 'Subscribers only') == 'Title'


@pytest.mark.parametrize('value', [
    '2024-01-02T03:04:05Z',
    '2024-01-02T04:04:05+01:00',
    'Tue, 02 Jan 2024 03:04:05 GMT',
    '1704164645',
    1704164645,
    1704164645000,
    '1704164645123',
    datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
])
def test_parse_timestamp_formats(value):
    assert parse_timestamp(value) == 1704164645


@pytest.mark.parametrize('value', [None, '', 'not a date', True, 0, -5, {'a': 1}, float('inf'), 10 ** 20])
def test_parse_timestamp_rejects_unusable_values(value):
    assert parse_timestamp(value) is None


def test_safe_filename():
    assert safe_filename('my feed/name?') == 'my_feed_name_'
    assert safe_filename('') == 'untitled'


def test_retry_delay_is_capped():
    helper = RetryHelper(max_retries=5, base_delay=1.0, max_delay=5.0)
    assert [helper.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_load_ip_pool_keeps_public_addresses(tmp_path):
    pool = tmp_path / 'outbound_ips'
    pool.write_text('\n'.join([
        '# outbound addresses',
        '8.8.8.8',
        '10.0.0.1',
        '127.0.0.1',
        'not-an-ip',
        '',
        '2001:4860:4860::8888',
    ]))
    assert load_ip_pool(str(pool)) == ['8.8.8.8', '2001:4860:4860::8888']
    assert load_ip_pool(str(tmp_path / 'missing')) == []
    assert load_ip_pool(None) == []


def test_fetch_result_reports_charset_and_text():
    result = FetchResult(status=200, body='café'.encode('latin-1'), content_type='text/html; charset="ISO-8859-1"')
    assert result.ok
    assert result.charset == 'ISO-8859-1'
    assert result.text == 'café'
    assert not FetchResult(status=403).ok
    assert FetchResult(status=200).text == ''


def test_decode_body_defaults_to_utf8():
    assert decode_body('naïve'.encode('utf-8')) == 'naïve'
