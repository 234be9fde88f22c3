#!/usr/bin/env python3
"""
Podcast Feed API entry point.

Modes:
  serve     run the HTTP API
  podcast   print the podcast metadata of a feed as JSON
  episodes  print one page of episodes of a feed as JSON

The one-shot modes run the same pipeline the HTTP API uses and exit non-zero
on any failure.
"""

import asyncio
import json
import sys
import argparse

from config import get_logger
from errors import FeedError
from service import PodcastFeedService, parse_page_params
from server import run_server
from telemetry import init_telemetry

# Module-specific logger
logger = get_logger("main")


async def print_podcast(url: str) -> None:
    podcast, _ = await PodcastFeedService().get_podcast(url, refresh=True)
    print(json.dumps({"podcast": podcast.to_dict()}, ensure_ascii=False, indent=2))


async def print_episodes(url: str, offset: str, limit: str) -> None:
    start, size = parse_page_params(offset, limit)
    page, _ = await PodcastFeedService().get_episodes_page(url, offset=start, limit=size, refresh=True)
    print(json.dumps(page.to_dict(), ensure_ascii=False, indent=2))


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='SSRF-safe podcast feed API')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP API')
    serve.add_argument('--host', type=str, help='Bind address (default: HOST)')
    serve.add_argument('--port', type=int, help='Listen port (default: PORT)')

    podcast = subparsers.add_parser('podcast', help='Print podcast metadata for a feed URL')
    podcast.add_argument('url', help='RSS/Atom feed URL')

    episodes = subparsers.add_parser('episodes', help='Print a page of episodes for a feed URL')
    episodes.add_argument('url', help='RSS/Atom feed URL')
    episodes.add_argument('--offset', type=str, default='0', help='Zero-based item offset')
    episodes.add_argument('--limit', type=str, default=None, help='Page size (clamped to MAX_PAGE_SIZE)')

    args = parser.parse_args()

    try:
        if args.mode == 'serve':
            run_server(args.host, args.port)

        elif args.mode == 'podcast':
            init_telemetry("podcast-feed-cli")
            asyncio.run(print_podcast(args.url))

        elif args.mode == 'episodes':
            init_telemetry("podcast-feed-cli")
            asyncio.run(print_episodes(args.url, args.offset, args.limit))

    except KeyboardInterrupt:
        logger.info("Shutting down")
    except FeedError as e:
        print(f"error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
