#!/usr/bin/env python3
"""
Feed Refiner command line.

Modes:
1. generate FEED...  build the refined document for named feeds and write it to
   OUTPUT_DIR/<feed>.xml (or --output, or stdout with --stdout)
2. clean [FEED...]   evict expired cache entries and media, then compact the cache
3. list              show configured feeds
4. status            show cache and output status
"""

import argparse
import asyncio
import os
import shutil
import sys
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from config import config, get_logger
from errors import FeedConfigError
from extractor import ReadabilityExtractor
from feeds import FeedDescriptor, feed_names, load_feed
from fetcher import ContentFetcher
from janitor import CacheJanitor
from models import ItemCache
from podcast import PodcastResolver
from publisher import FeedAssembler
from resolver import ContentResolver
from storage import create_media_store
from telemetry import init_telemetry, get_tracer, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("feed-refiner-orchestrator")
_tracer = get_tracer("orchestrator")


def write_output(output_file: Path, content: str) -> None:
    """Write a document atomically (temporary file in the same directory, then move)."""
    output_file.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', suffix='.xml',
                                     dir=output_file.parent, delete=False) as temp_file:
        temp_file.write(content)
        temp_file.flush()
        os.fsync(temp_file.fileno())
        temp_path = temp_file.name
    shutil.move(temp_path, output_file)


class FeedOrchestrator:
    """Owns the long-lived services (fetcher, cache, media store) for one run."""

    def __init__(self) -> None:
        self.fetcher: Optional[ContentFetcher] = None
        self.cache: Optional[ItemCache] = None
        self.extractor: Optional[ReadabilityExtractor] = None
        self.store = None

    async def start(self) -> None:
        self.fetcher = ContentFetcher()
        self.cache = ItemCache()
        await self.cache.start()
        self.extractor = ReadabilityExtractor()
        self.store = create_media_store()

    async def close(self) -> None:
        if self.fetcher:
            await self.fetcher.close()
        if self.cache:
            await self.cache.stop()
        if self.extractor:
            self.extractor.close()
        if self.store:
            await self.store.close()

    def assembler(self) -> FeedAssembler:
        resolver = ContentResolver(self.fetcher, self.cache, self.extractor)
        podcasts = PodcastResolver(self.fetcher, self.cache, self.store)
        return FeedAssembler(self.fetcher, resolver, podcasts)

    @trace_span(
        "generate_feed",
        tracer_name="orchestrator",
        attr_from_args=lambda self, name, output=None, to_stdout=False: {"feed.name": name},
    )
    async def generate_feed(self, name: str, output: Optional[str] = None, to_stdout: bool = False) -> bool:
        """Generate one feed. Configuration errors abort this feed only."""
        logger.info(f"📡 Generating feed {name}")
        start_time = time.time()
        try:
            feed = load_feed(name)
        except FeedConfigError as e:
            logger.error(f"❌ {e}")
            return False

        document = await self.assembler().generate(feed)
        if document is None:
            logger.error(f"❌ Feed {name} could not be generated")
            return False

        if to_stdout:
            sys.stdout.write(document)
        else:
            output_file = Path(output) if output else Path(config.OUTPUT_DIR) / f"{name}.xml"
            write_output(output_file, document)
            logger.info(f"✅ Wrote {output_file} in {time.time() - start_time:.1f}s")
        return True

    async def run_generate(self, names: List[str], output: Optional[str] = None, to_stdout: bool = False) -> bool:
        await self.start()
        try:
            results = [await self.generate_feed(name, output, to_stdout) for name in names]
        finally:
            await self.close()
        return all(results)

    @trace_span("clean_cache", tracer_name="orchestrator")
    async def run_clean(self, names: Optional[List[str]] = None) -> bool:
        """Evict expired entries for the given feeds (all configured feeds by default)."""
        logger.info("🧹 Cleaning cache")
        descriptors: List[FeedDescriptor] = []
        ok = True
        for name in names or feed_names():
            try:
                descriptors.append(load_feed(name))
            except FeedConfigError as e:
                logger.error(f"❌ {e}")
                ok = False

        self.cache = ItemCache()
        await self.cache.start()
        self.store = create_media_store()
        try:
            report = await CacheJanitor(self.cache, self.store).run(descriptors)
        finally:
            await self.close()

        for line in report.lines():
            print(line)
        logger.info(f"✅ Cache cleaned: {report.deleted} entries deleted")
        return ok

    def list_feeds(self) -> List[dict]:
        rows = []
        for name in feed_names():
            raw = config.FEED_CONFIGS[name]
            try:
                feed = load_feed(name)
                rows.append({"name": name, "source": feed.source_kind.value, "url": feed.url,
                             "podcast": feed.podcast, "error": None})
            except FeedConfigError as e:
                rows.append({"name": name, "source": raw.get("source_type", "feed"), "url": raw.get("url"),
                             "podcast": bool(raw.get("podcast")), "error": str(e)})
        return rows

    def check_status(self) -> dict:
        """Check the current status of the cache and the output directory."""
        logger.info("📊 Checking system status")
        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'checks': {},
        }

        db_path = Path(config.CACHE_DB_PATH)
        status['checks']['cache'] = {
            'status': 'ok' if db_path.exists() else 'missing',
            'size_bytes': db_path.stat().st_size if db_path.exists() else 0,
        }

        output_dir = Path(config.OUTPUT_DIR)
        public_dir = Path(config.PUBLIC_DIR)
        status['checks']['output'] = {
            'output_dir_exists': output_dir.exists(),
            'feeds': len(list(output_dir.glob('*.xml'))) if output_dir.exists() else 0,
            'media_files': len([p for p in public_dir.iterdir() if p.is_file()]) if public_dir.exists() else 0,
        }
        all_ok = status['checks']['cache']['status'] == 'ok' and status['checks']['output']['output_dir_exists']
        status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
        return status

    def print_status(self, status: dict):
        """Print formatted status information."""
        print("\n📊 Feed Refiner Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")
        cache = status['checks']['cache']
        print(f"\n💾 Cache: {cache['status'].upper()} ({cache['size_bytes']} bytes)")
        output = status['checks']['output']
        print("\n📁 Output:")
        print(f"   📡 Feeds: {output['feeds']}")
        print(f"   🎧 Media files: {output['media_files']}")
        print(f"   🗂️ Configured feeds: {status['config']['feed_count']}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Refiner')
    parser.add_argument('mode', choices=['generate', 'clean', 'list', 'status'], help='Operation mode')
    parser.add_argument('feeds', nargs='*', help='Feed names (required for generate, optional for clean)')
    parser.add_argument('--output', type=str, help='Output file (generate with a single feed)')
    parser.add_argument('--stdout', action='store_true', help='Write the generated document to stdout')

    args = parser.parse_args()
    orchestrator = FeedOrchestrator()

    try:
        if args.mode == 'generate':
            if not args.feeds:
                parser.error('generate needs at least one feed name')
            if args.output and len(args.feeds) > 1:
                parser.error('--output can only be used with a single feed')
            success = asyncio.run(orchestrator.run_generate(args.feeds, args.output, args.stdout))
            sys.exit(0 if success else 1)

        elif args.mode == 'clean':
            success = asyncio.run(orchestrator.run_clean(args.feeds or None))
            sys.exit(0 if success else 1)

        elif args.mode == 'list':
            for row in orchestrator.list_feeds():
                flag = " 🎧" if row['podcast'] else ""
                print(f"{row['name']:<24} {row['source']:<5} {row['url']}{flag}")
                if row['error']:
                    print(f"   ❌ {row['error']}")

        elif args.mode == 'status':
            orchestrator.print_status(orchestrator.check_status())

    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except OSError as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
