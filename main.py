#!/usr/bin/env python3
"""
Main entry point for the site indexer.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from site_indexer import __version__, __description__
from site_indexer.crawler.fetcher import WebFetcher, FetchError
from site_indexer.crawler.scheduler import IndexingScheduler
from site_indexer.storage.database import DatabaseManager, DatabaseError
from site_indexer.storage.models import IndexingStatus
from site_indexer.utils.config import load_config, Config
from site_indexer.utils.logger import setup_logging, log_system_info
from site_indexer.utils.monitoring import initialize_monitoring


class IndexerApp:
    """Main application class for the site indexer."""

    def __init__(self):
        self.scheduler: Optional[IndexingScheduler] = None
        self.logger = logging.getLogger(__name__)

    def setup_signal_handlers(self):
        """Stop indexing on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, stopping indexing...")
            if self.scheduler and self.scheduler.status is IndexingStatus.RUNNING:
                self.scheduler.stop_indexing()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def run(self, config_path: str, dry_run: bool = False) -> int:
        """Run one indexing pass over every configured site."""
        try:
            config = load_config(config_path)
            setup_logging(config.logging)
            log_system_info()

            self.logger.info("=== SITE INDEXER STARTING ===")
            self.logger.info(f"Configuration loaded from: {config_path}")
            self.logger.info(f"Sites: {[site.url for site in config.indexing.sites]}")
            self.logger.info(f"Database type: {config.database.type}")

            if dry_run:
                self.logger.info("DRY RUN MODE: No actual indexing will be performed")
                await self._dry_run(config)
                return 0

            monitor = initialize_monitoring(
                config.monitoring.metrics_enabled,
                config.monitoring.prometheus_port
            )
            monitor.metrics.start_prometheus_server()

            self.scheduler = IndexingScheduler(config, monitor=monitor)
            await self.scheduler.initialize()
            self.setup_signal_handlers()

            await self.scheduler.start_indexing()
            await self.scheduler.wait_until_stopped()

            stats = self.scheduler.get_stats()
            failed = [name for name, site in stats['sites'].items() if site['status'] == 'FAILED']
            if failed:
                self.logger.warning(f"Sites not fully indexed: {failed}")
            self.logger.info(f"Metrics summary: {monitor.get_summary()}")
            self.logger.info(f"Storage stats: {await self.scheduler.database.get_stats()}")

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== SITE INDEXER FINISHED ===")

        return 0

    async def _dry_run(self, config: Config):
        """Check configuration and connections without crawling."""
        if config.redis.enabled:
            self.logger.info("Testing Redis connection...")
            try:
                import redis.asyncio as redis
                redis_client = redis.Redis(
                    host=config.redis.host,
                    port=config.redis.port,
                    db=config.redis.db,
                    password=config.redis.password
                )
                await redis_client.ping()
                await redis_client.aclose()
                self.logger.info("Redis connection successful")
            except Exception as e:
                self.logger.error(f"Redis connection failed: {e}")

        self.logger.info("Testing database configuration...")
        try:
            db_manager = DatabaseManager(config.database)
            await db_manager.initialize()
            await db_manager.close()
            self.logger.info("Database initialization successful")
        except DatabaseError as e:
            self.logger.error(f"Database initialization failed: {e}")

        self.logger.info("Testing fetcher configuration...")
        async with WebFetcher(config.fetcher) as fetcher:
            test_url = config.indexing.sites[0].url
            try:
                result = await fetcher.fetch(test_url)
                self.logger.info(f"Test fetch successful: {result.status_code}")
            except FetchError as e:
                self.logger.warning(f"Test fetch failed: {e}")

        self.logger.info("Dry run completed")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description=__description__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                           # Run with default config.yaml
  python main.py --config my_config.yaml   # Run with custom config
  python main.py --dry-run                 # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without actually indexing'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Site Indexer {__version__}'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    app = IndexerApp()
    try:
        return asyncio.run(app.run(config_path=args.config, dry_run=args.dry_run))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
