#!/usr/bin/env python3
"""
Feed Notifier entry point.

One invocation is one run: fetch the configured feeds, deliver unseen items to
the Telegram channel (oldest first, up to the per-run limit), persist the
seen-set and exit. Scheduling is left to cron or whatever starts the process.

Modes:
  run     Execute one notification run
  status  Show configuration and seen-state without touching the network
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from os import path
from typing import Optional

from aiohttp import ClientSession, ClientTimeout

from config import config, get_logger
from errors import ConfigurationError
from fetcher import FeedFetcher
from models import RunReport
from notifier import FeedNotifier
from state import SeenStore
from summarizer import ArticleSummarizer
from telegram import TelegramClient
from telemetry import init_telemetry

logger = get_logger("main")
init_telemetry("feed-notifier")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


class NotifierOrchestrator:
    """Wires configuration into the collaborators for a single run."""

    def __init__(self, state_file: Optional[str] = None, max_posts: Optional[int] = None,
                 summaries: bool = True) -> None:
        self.state_file = state_file or config.STATE_FILE
        self.max_posts = max_posts
        self.summaries = summaries and config.summaries_enabled()

    async def run(self) -> RunReport:
        """Validate delivery settings, then execute one run.

        Raises:
            ConfigurationError: before any network activity when credentials are missing.
        """
        config.validate_delivery()
        if not config.FEED_SOURCES:
            logger.warning(f"No feeds configured in {config.FEEDS_CONFIG_PATH}; nothing to do")
        if not self.summaries:
            logger.info("ℹ️ AI summaries disabled; sending feed descriptions instead")

        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        async with ClientSession(timeout=timeout) as session:
            notifier = FeedNotifier(
                feeds=config.FEED_SOURCES,
                store=SeenStore(self.state_file),
                delivery=TelegramClient(
                    config.TG_BOT_TOKEN,
                    config.TG_CHANNEL_ID,
                    session,
                    disable_preview=config.TELEGRAM_DISABLE_PREVIEW,
                ),
                fetcher=FeedFetcher(),
                session=session,
                summarizer=ArticleSummarizer() if self.summaries else None,
                max_posts_per_run=self.max_posts,
            )
            return await notifier.run()

    def check_status(self) -> dict:
        """Collect configuration and seen-state information."""
        seen = SeenStore(self.state_file).load()
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'feeds': [(feed.name, feed.url) for feed in config.FEED_SOURCES],
            'state_file': path.abspath(self.state_file),
            'state_exists': path.exists(self.state_file),
            'seen_count': len(seen),
            'delivery_configured': bool(config.TG_BOT_TOKEN and config.TG_CHANNEL_ID),
        }

    def print_status(self, status: dict):
        """Print formatted status information."""
        print(f"\n📊 Feed Notifier Status")
        print(f"⏰ {status['timestamp']}")
        print(f"📨 Delivery configured: {'yes' if status['delivery_configured'] else 'NO'}")
        print(f"🧠 Summaries enabled: {'yes' if status['config']['summaries_enabled'] else 'no'}")
        print(f"🔑 Identity fields: {status['config']['identity_fields']}")
        print(f"📏 Posts per run: {status['config']['max_posts_per_run']}")
        print(f"\n💾 State: {status['state_file']}")
        if status['state_exists']:
            print(f"   Seen identities: {status['seen_count']}")
        else:
            print("   (no state file yet)")
        print(f"\n📡 Feeds ({len(status['feeds'])}):")
        for name, url in status['feeds']:
            print(f"   {name}: {url}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Notifier')
    parser.add_argument('mode', choices=['run', 'status'], nargs='?', default='run',
                        help='Operation mode (default: run)')
    parser.add_argument('--max-posts', type=int,
                        help='Override the per-run delivery limit')
    parser.add_argument('--no-summaries', action='store_true',
                        help='Skip article fetching and AI summaries')
    parser.add_argument('--state-file', type=str,
                        help='Path to the seen-state JSON file')

    args = parser.parse_args()
    if args.max_posts is not None and args.max_posts < 1:
        parser.error("--max-posts must be at least 1")

    orchestrator = NotifierOrchestrator(
        state_file=args.state_file,
        max_posts=args.max_posts,
        summaries=not args.no_summaries,
    )

    try:
        if args.mode == 'status':
            orchestrator.print_status(orchestrator.check_status())
            sys.exit(EXIT_OK)

        report = asyncio.run(orchestrator.run())
        print(f"\n🎉 Job finished: {report.posts_sent} posts sent")
        sys.exit(EXIT_OK)

    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        logger.info("💡 Set TG_BOT_TOKEN and TG_CHANNEL_ID in the environment, .env or SECRETS_FILE")
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        logger.info("👋 Interrupted")
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
