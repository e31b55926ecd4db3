#!/usr/bin/env python3
"""
Main entry point for the link crawler.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from linkcrawler import __version__
from linkcrawler.api import ApiServer
from linkcrawler.crawler.results import CrawlNotCompletedError
from linkcrawler.crawler.scheduler import CrawlerScheduler
from linkcrawler.service import CrawlService
from linkcrawler.storage import DatabaseManager, DatabaseError, CrawlRequestNotFound
from linkcrawler.utils.config import Config, load_config, validate_config
from linkcrawler.utils.logger import setup_logging, log_system_info


class CrawlerApp:
    """Main application class for the link crawler."""

    def __init__(self, config: Config):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def run_crawler(self) -> int:
        """Run the crawl engine until a shutdown signal arrives."""
        scheduler = CrawlerScheduler(self.config)
        try:
            self.setup_signal_handlers()
            self.logger.info("=== LINK CRAWLER STARTING ===")
            self.logger.info(f"Max workers: {self.config.crawler.max_workers}")
            self.logger.info(f"Scheduling mode: {self.config.crawler.scheduling_mode}")
            self.logger.info(f"Request timeout: {self.config.crawler.request_timeout}s")
            self.logger.info(f"Database type: {self.config.database.scheme}")

            await scheduler.initialize()

            crawl_task = asyncio.create_task(scheduler.start_crawling())
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())

            done, pending = await asyncio.wait(
                [crawl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            if shutdown_task in done:
                self.logger.info("Shutdown requested, draining in-flight tasks...")
                await scheduler.stop_crawling()
                await crawl_task
            else:
                shutdown_task.cancel()
                # Surface the exception that ended the engine
                crawl_task.result()

        except DatabaseError as e:
            self.logger.error(f"Unable to start crawler: {e}")
            return 1

        finally:
            await scheduler.close()
            self.logger.info("=== LINK CRAWLER FINISHED ===")

        return 0

    async def run_api(self) -> int:
        """Serve the HTTP API until a shutdown signal arrives."""
        database = DatabaseManager(self.config.database)
        try:
            await database.initialize()
        except DatabaseError as e:
            self.logger.error(f"Unable to start API server: {e}")
            return 1

        server = ApiServer(CrawlService(database), self.config.api.host, self.config.api.port)
        try:
            self.setup_signal_handlers()
            await server.start()
            await self._shutdown_event.wait()
        finally:
            await server.stop()
            await database.close()
        return 0

    async def run_command(self, args: argparse.Namespace) -> int:
        """Run one of the create/status/results commands against the store."""
        async with DatabaseManager(self.config.database) as database:
            service = CrawlService(database)
            try:
                if args.command == 'create':
                    output = {'id': await service.create(args.url, args.levels)}
                elif args.command == 'status':
                    output = (await service.status(args.id)).to_dict()
                else:
                    output = await service.results(args.id)
            except (ValueError, CrawlRequestNotFound, CrawlNotCompletedError) as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
        print(json.dumps(output, indent=2, sort_keys=True))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Link Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py crawler --dsn postgresql://crawler@localhost/crawler --max-workers 20
  python main.py api --config config.yaml --port 8080
  python main.py create http://example.com 2
  python main.py status 1
  python main.py results 1
        """
    )
    parser.add_argument(
        '--config',
        help='Path to configuration file (defaults are used when omitted)'
    )
    parser.add_argument(
        '--dsn',
        help='Storage connection string, e.g. sqlite:///data/crawler.db or postgresql://...'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'Link Crawler {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    crawler = subparsers.add_parser('crawler', help='Run the crawl engine')
    crawler.add_argument('--max-workers', type=int, help='Maximum number of concurrent workers')
    crawler.add_argument('--mode', choices=['batch', 'pool'], help='Scheduling mode')

    api = subparsers.add_parser('api', help='Serve the HTTP API')
    api.add_argument('--host', help='Interface to bind')
    api.add_argument('--port', type=int, help='Port to listen on')

    create = subparsers.add_parser('create', help='Create a crawl request')
    create.add_argument('url')
    create.add_argument('levels', type=int)

    for name in ('status', 'results'):
        sub = subparsers.add_parser(name, help=f'Show the {name} of a crawl request')
        sub.add_argument('id', type=int)

    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Let command line flags take precedence over the configuration file."""
    if args.dsn:
        config.database.url = args.dsn
    if getattr(args, 'max_workers', None) is not None:
        config.crawler.max_workers = args.max_workers
    if getattr(args, 'mode', None):
        config.crawler.scheduling_mode = args.mode
    if getattr(args, 'host', None):
        config.api.host = args.host
    if getattr(args, 'port', None) is not None:
        config.api.port = args.port
    validate_config(config)
    return config


async def run(args: argparse.Namespace, config: Config) -> int:
    app = CrawlerApp(config)
    if args.command == 'crawler':
        return await app.run_crawler()
    if args.command == 'api':
        return await app.run_api()
    return await app.run_command(args)


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.config and not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        return 1

    try:
        config = apply_overrides(load_config(args.config), args)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}")
        return 1

    if args.command in ('crawler', 'api'):
        setup_logging(config.logging)
        log_system_info()

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1
    except DatabaseError as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
