#!/usr/bin/env python3
"""
Feed Aggregator command line.

Subcommands map onto the ingestion pipeline:
- classify: detect what kind of source a URL is
- subscribe / unsubscribe / import-opml: manage a user's sources
- pause / resume: stop or restart syncing one subscription
- sync: fetch, extract and reconcile a user's sources
- status: source health for a user
- sweep: garbage-collect soft-deleted sources
- serve: run the HTTP trigger endpoints
"""

import asyncio
import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional

from api import Services, serve
from config import config, get_logger
from reconciler import SyncWindow
from subscriptions import import_opml, set_paused, subscribe, unsubscribe
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("cli")
_tracer = get_tracer("cli")


class AggregatorCLI:
    """Runs one CLI command against freshly started services."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path

    async def classify(self, url: str) -> int:
        async with Services(self.db_path) as services:
            result = await services.classifier.classify(url)
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.source_type else 1

    async def subscribe(self, user_id: str, url: str, title: Optional[str] = None) -> int:
        async with Services(self.db_path) as services:
            outcome = await subscribe(services.db, services.classifier, user_id, url, title=title)
        if not outcome.ok:
            print(f"❌ {url}: {outcome.error}")
            return 1
        if outcome.warning:
            print(f"⚠️ {outcome.warning}")
        verb = "Subscribed to" if outcome.created_subscription else "Already subscribed to"
        print(f"✅ {verb} {outcome.source.source_type.value} source {outcome.source.id} ({outcome.source.url})")
        return 0

    async def unsubscribe(self, user_id: str, source_id: str) -> int:
        async with Services(self.db_path) as services:
            outcome = await unsubscribe(services.db, user_id, source_id)
        if not outcome["removed"]:
            print(f"❌ User {user_id} is not subscribed to {source_id}")
            return 1
        print(f"✅ Unsubscribed from {source_id}" + (" (source marked deleted)" if outcome["source_deleted"] else ""))
        return 0

    async def pause(self, user_id: str, source_id: str, paused: bool = True) -> int:
        async with Services(self.db_path) as services:
            changed = await set_paused(services.db, user_id, source_id, paused)
        if not changed:
            print(f"❌ User {user_id} is not subscribed to {source_id}")
            return 1
        print(f"{'⏸️ Paused' if paused else '▶️ Resumed'} {source_id}")
        return 0

    async def import_opml(self, user_id: str, opml_path: str) -> int:
        text = Path(opml_path).read_text(encoding='utf-8')
        async with Services(self.db_path) as services:
            outcomes = await import_opml(services.db, services.classifier, user_id, text)
        failed = [o for o in outcomes if not o.ok]
        for outcome in failed:
            print(f"❌ {outcome.url}: {outcome.error}")
        print(f"📥 Imported {len(outcomes) - len(failed)}/{len(outcomes)} feeds")
        return 0 if not failed else 1

    @trace_span(
        "cli.sync",
        tracer_name="cli",
        attr_from_args=lambda self, user_id, source_id=None, window=None: {
            "user.id": user_id,
            "source.id": source_id or "",
        },
    )
    async def sync(self, user_id: str, source_id: Optional[str] = None,
                   window: Optional[SyncWindow] = None) -> int:
        window = window or SyncWindow.recent(config.RECENT_WINDOW_HOURS)
        start_time = time.time()
        async with Services(self.db_path) as services:
            if source_id:
                result = await services.orchestrator.sync_one(user_id, source_id, window)
                if result is None:
                    print(f"❌ Source {source_id} not found for user {user_id}")
                    return 1
                payload = result.to_response()
                success = result.success
            else:
                batch = await services.orchestrator.sync_user(user_id, window)
                payload = batch.to_response()
                success = batch.failed_syncs == 0
        logger.info(f"🎉 Sync finished in {format_duration(time.time() - start_time)}")
        print(json.dumps(payload, indent=2))
        return 0 if success else 1

    async def status(self, user_id: str) -> int:
        async with Services(self.db_path) as services:
            status = await services.db.execute('sync_status', user_id=user_id,
                                               recent_minutes=config.STATUS_RECENT_MINUTES)
        print(f"\n📊 Sync status for {user_id}")
        print(f"   📡 Sources: {status['totalSources']}")
        print(f"   ⏱️ Fetched in last {config.STATUS_RECENT_MINUTES} min: {status['recentlyFetched']}")
        print(f"   ⚠️ With errors: {status['withErrors']}")
        last = status['lastFetchedAt']
        print(f"   🕐 Last fetch: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(last)) if last else 'never'}")
        return 0

    async def sweep(self, older_than_hours: int = 0) -> int:
        async with Services(self.db_path) as services:
            removed = await services.db.execute('sweep_deleted_sources',
                                                older_than_seconds=older_than_hours * 3600)
        print(f"🧹 Removed {removed} deleted sources")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Aggregator')
    parser.add_argument('--db', type=str, help='SQLite database path (defaults to DATABASE_PATH)')
    commands = parser.add_subparsers(dest='command', required=True)

    p = commands.add_parser('classify', help='Detect the source type of a URL')
    p.add_argument('url')

    p = commands.add_parser('subscribe', help='Subscribe a user to a URL')
    p.add_argument('--user', required=True)
    p.add_argument('--title', help='Override the detected title')
    p.add_argument('url')

    p = commands.add_parser('unsubscribe', help='Remove a subscription')
    p.add_argument('--user', required=True)
    p.add_argument('source_id')

    for name, help_text in (('pause', 'Stop syncing a subscription'), ('resume', 'Resume a paused subscription')):
        p = commands.add_parser(name, help=help_text)
        p.add_argument('--user', required=True)
        p.add_argument('source_id')

    p = commands.add_parser('import-opml', help='Subscribe a user to every feed in an OPML file')
    p.add_argument('--user', required=True)
    p.add_argument('file')

    p = commands.add_parser('sync', help="Sync a user's sources")
    p.add_argument('--user', required=True)
    p.add_argument('--source', help='Only sync this source id')
    p.add_argument('--full', action='store_true', help='Consider the full feed history')
    p.add_argument('--hours', type=int, help='Recent window in hours (defaults to RECENT_WINDOW_HOURS)')

    p = commands.add_parser('status', help='Show source health for a user')
    p.add_argument('--user', required=True)

    p = commands.add_parser('sweep', help='Purge soft-deleted sources nobody follows')
    p.add_argument('--older-than-hours', type=int, default=0)

    p = commands.add_parser('serve', help='Run the HTTP trigger endpoints')
    p.add_argument('--host', default=None)
    p.add_argument('--port', type=int, default=None)

    return parser


def window_from_args(args) -> SyncWindow:
    if args.full:
        return SyncWindow.full()
    return SyncWindow.recent(args.hours or config.RECENT_WINDOW_HOURS)


def run_command(args) -> int:
    cli = AggregatorCLI(args.db)
    if args.command == 'classify':
        return asyncio.run(cli.classify(args.url))
    elif args.command == 'subscribe':
        return asyncio.run(cli.subscribe(args.user, args.url, title=args.title))
    elif args.command == 'unsubscribe':
        return asyncio.run(cli.unsubscribe(args.user, args.source_id))
    elif args.command in ('pause', 'resume'):
        return asyncio.run(cli.pause(args.user, args.source_id, paused=args.command == 'pause'))
    elif args.command == 'import-opml':
        return asyncio.run(cli.import_opml(args.user, args.file))
    elif args.command == 'sync':
        return asyncio.run(cli.sync(args.user, source_id=args.source, window=window_from_args(args)))
    elif args.command == 'status':
        return asyncio.run(cli.status(args.user))
    elif args.command == 'sweep':
        return asyncio.run(cli.sweep(args.older_than_hours))
    elif args.command == 'serve':
        asyncio.run(serve(args.host, args.port))
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    init_telemetry("feed-aggregator")
    logger.debug(f"Configuration: {config.get_config_summary()}")

    try:
        sys.exit(run_command(args))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
