import pytest

from config import config
import main
from main import FeedOrchestrator, write_output


class DummyAssembler:
    def __init__(self, document):
        self.document = document
        self.generated = []

    async def generate(self, feed):
        self.generated.append(feed.name)
        return self.document


@pytest.fixture
def feeds(monkeypatch):
    monkeypatch.setattr(config, 'FEED_CONFIGS', {
        'news': {'url': 'https://example.com/feed.xml'},
        'broken': {'url': 'not a url'},
    })


def test_write_output_replaces_file_atomically(tmp_path):
    target = tmp_path / 'out' / 'news.xml'
    write_output(target, '<rss>one</rss>')
    write_output(target, '<rss>two</rss>')
    assert target.read_text(encoding='utf-8') == '<rss>two</rss>'
    assert [p.name for p in target.parent.iterdir()] == ['news.xml']


@pytest.mark.asyncio
async def test_generate_feed_writes_output(tmp_path, monkeypatch, feeds):
    monkeypatch.setattr(config, 'OUTPUT_DIR', str(tmp_path / 'feeds'))
    assembler = DummyAssembler('<rss/>')
    orchestrator = FeedOrchestrator()
    monkeypatch.setattr(orchestrator, 'assembler', lambda: assembler)

    assert await orchestrator.generate_feed('news') is True
    assert (tmp_path / 'feeds' / 'news.xml').read_text(encoding='utf-8') == '<rss/>'

    custom = tmp_path / 'custom.xml'
    assert await orchestrator.generate_feed('news', str(custom)) is True
    assert custom.read_text(encoding='utf-8') == '<rss/>'
    assert assembler.generated == ['news', 'news']


@pytest.mark.asyncio
async def test_generate_feed_to_stdout(monkeypatch, capsys, feeds):
    orchestrator = FeedOrchestrator()
    monkeypatch.setattr(orchestrator, 'assembler', lambda: DummyAssembler('<rss>stdout</rss>'))

    assert await orchestrator.generate_feed('news', to_stdout=True) is True
    assert '<rss>stdout</rss>' in capsys.readouterr().out


@pytest.mark.asyncio
async def test_configuration_errors_abort_only_that_feed(monkeypatch, feeds):
    assembler = DummyAssembler('<rss/>')
    orchestrator = FeedOrchestrator()
    monkeypatch.setattr(orchestrator, 'assembler', lambda: assembler)

    assert await orchestrator.generate_feed('broken') is False
    assert await orchestrator.generate_feed('unknown') is False
    assert assembler.generated == []


@pytest.mark.asyncio
async def test_unusable_source_is_a_failure(tmp_path, monkeypatch, feeds):
    monkeypatch.setattr(config, 'OUTPUT_DIR', str(tmp_path / 'feeds'))
    orchestrator = FeedOrchestrator()
    monkeypatch.setattr(orchestrator, 'assembler', lambda: DummyAssembler(None))

    assert await orchestrator.generate_feed('news') is False
    assert not (tmp_path / 'feeds' / 'news.xml').exists()


def test_list_feeds_reports_broken_descriptors(feeds):
    rows = {row['name']: row for row in FeedOrchestrator().list_feeds()}
    assert rows['news']['error'] is None
    assert rows['news']['source'] == 'feed'
    assert 'invalid url' in rows['broken']['error']


def test_check_status(tmp_path, monkeypatch, feeds):
    monkeypatch.setattr(config, 'CACHE_DB_PATH', str(tmp_path / 'cache.db'))
    monkeypatch.setattr(config, 'OUTPUT_DIR', str(tmp_path / 'feeds'))
    monkeypatch.setattr(config, 'PUBLIC_DIR', str(tmp_path / 'public'))
    (tmp_path / 'feeds').mkdir()
    (tmp_path / 'feeds' / 'news.xml').write_text('<rss/>')

    status = FeedOrchestrator().check_status()

    assert status['checks']['cache']['status'] == 'missing'
    assert status['checks']['output']['feeds'] == 1
    assert status['overall_status'] == 'issues_detected'
    assert status['config']['feed_count'] == 2


def test_cli_lists_feeds(monkeypatch, capsys, feeds):
    monkeypatch.setattr('sys.argv', ['main.py', 'list'])
    main.main()
    out = capsys.readouterr().out
    assert 'news' in out
    assert '❌' in out
