#!/usr/bin/env python3
"""
Main entry point for the site audit crawler.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

# Add src to Python path
src_path = Path(__file__).parent / 'src'
sys.path.insert(0, str(src_path))

from site_audit import __version__
from site_audit.crawler.fetcher import WebFetcher
from site_audit.crawler.links import normalize_url, registrable_domain
from site_audit.crawler.scheduler import CrawlerScheduler
from site_audit.storage.checkpoint import RedisStateBackend
from site_audit.storage.page_store import StorageError
from site_audit.utils.config import load_config, Config, ConfigError
from site_audit.utils.logger import setup_logging, log_system_info
from site_audit.utils.monitoring import initialize_monitoring


class CrawlerApp:
    """Main application class for the site audit crawler."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(signum, lambda s, frame: signal_handler(s))

    async def run(self, config_path: str, seed: Optional[str] = None,
                  max_pages: Optional[int] = None, fresh: bool = False,
                  dry_run: bool = False) -> int:
        """Run the site audit crawler."""
        self._shutdown_event = asyncio.Event()

        try:
            config = load_config(config_path, overrides={
                'crawler': {'seed_url': seed, 'max_pages': max_pages}
            })
        except ConfigError as e:
            print(f"Configuration error: {e}")
            return 1

        setup_logging(asdict(config.logging), enable_json=config.logging.json)
        log_system_info()

        try:
            self.setup_signal_handlers()

            self.logger.info("=== SITE AUDIT CRAWLER STARTING ===")
            self.logger.info(f"Configuration loaded from: {config_path}")
            self.logger.info(f"Seed URL: {config.crawler.seed_url}")
            self.logger.info(f"Crawl workers: {config.crawler.max_parallel_crawl}, "
                             f"external link workers: {config.crawler.max_parallel_checks}")
            self.logger.info(f"Max pages: {config.crawler.max_pages or 'unlimited'}")
            self.logger.info(f"Checkpoint every {config.crawler.checkpoint_every} pages "
                             f"({config.storage.backend} backend)")

            await self._preflight(config)

            if dry_run:
                self.logger.info("DRY RUN MODE: configuration and seed are valid, not crawling")
                return 0

            monitor = initialize_monitoring(config.monitoring.metrics_enabled,
                                            config.monitoring.prometheus_port)

            self.scheduler = CrawlerScheduler(config, monitor=monitor)
            await self.scheduler.initialize(resume=False if fresh else None)

            crawl_task = asyncio.create_task(self.scheduler.start_crawling())
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())

            done, _ = await asyncio.wait(
                [crawl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            if shutdown_task in done:
                self.logger.info("Shutdown requested, stopping crawler...")
                await self.scheduler.stop_crawling()
            else:
                shutdown_task.cancel()

            # In-flight pages finish and the final checkpoint is written
            report = await crawl_task
            self.logger.info(f"Crawl report: {json.dumps(report.to_dict())}")

        except ConfigError as e:
            self.logger.error(f"Preflight failed: {e}")
            return 1

        except StorageError as e:
            self.logger.error(f"Fatal storage error, crawl aborted: {e}", exc_info=True)
            return 1

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== SITE AUDIT CRAWLER FINISHED ===")

        return 0

    async def _preflight(self, config: Config):
        """
        Validate what the engine takes for granted: a reachable seed URL with
        a usable registrable domain, and a reachable Redis when it stores the
        checkpoints.

        Raises:
            ConfigError: if any check fails
        """
        seed = normalize_url(config.crawler.seed_url)
        if not seed:
            raise ConfigError(f"Invalid seed URL: {config.crawler.seed_url}")

        domain = registrable_domain(config.crawler.base_url or seed)
        if not domain:
            raise ConfigError(f"Could not determine the site domain for {seed}")
        self.logger.info(f"Site domain: {domain}")

        self.logger.info("Testing seed URL...")
        async with WebFetcher(
            user_agent=config.crawler.user_agent,
            request_timeout=config.crawler.request_timeout,
            retries=config.crawler.retry_attempts,
            retry_backoff=config.crawler.retry_backoff,
            max_connections=1
        ) as fetcher:
            result = await fetcher.fetch_with_retry(seed)
            if not isinstance(result.status, int):
                raise ConfigError(f"Seed URL is unreachable ({result.status}): {result.error}")
            self.logger.info(f"✓ Seed URL responded with {result.status}")

        if config.storage.backend == 'redis':
            self.logger.info("Testing Redis connection...")
            backend = RedisStateBackend.from_config(config.redis, domain)
            try:
                await backend.ping()
            except StorageError as e:
                raise ConfigError(str(e))
            finally:
                await backend.close()
            self.logger.info("✓ Redis connection successful")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Site Audit Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                 # Run with default config.yaml
  python main.py --config my_config.yaml         # Run with custom config
  python main.py --seed https://example.com      # Override the seed URL
  python main.py --max-pages 500                 # Limit to 500 pages
  python main.py --fresh                         # Ignore an existing checkpoint
  python main.py --dry-run                       # Validate configuration and seed only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--seed',
        help='Seed URL (overrides crawler.seed_url)'
    )

    parser.add_argument(
        '--max-pages',
        type=int,
        help='Maximum number of pages to crawl, 0 for unlimited (overrides crawler.max_pages)'
    )

    parser.add_argument(
        '--fresh',
        action='store_true',
        help='Start a new crawl even if a checkpoint exists'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate configuration, backend and seed URL without crawling'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Site Audit Crawler {__version__}'
    )

    args = parser.parse_args()

    # Check if config file exists
    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    # Run the crawler
    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config_path=args.config,
            seed=args.seed,
            max_pages=args.max_pages,
            fresh=args.fresh,
            dry_run=args.dry_run
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
