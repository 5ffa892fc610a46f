"""Entry point for chatrelay.

Supports two transports:
  1. `chatrelay` — serves SSE over HTTP (default)
  2. `chatrelay --transport console <channel>` — tails one channel in the terminal
"""

from __future__ import annotations

import argparse
import sys
import threading

from chatrelay.config import AppConfig
from chatrelay.engine.registry import SessionRegistry
from chatrelay.feed.youtube import YouTubeFeedClient
from chatrelay.log import setup_logging
from chatrelay.monitor.reporter import StatusReporter


def main():
    parser = argparse.ArgumentParser(description="chatrelay — live chat ingestion and fan-out")
    parser.add_argument("--config", "-c", help="Path to config.json file")
    parser.add_argument(
        "--transport",
        choices=["http", "console"],
        default="http",
        help="Transport to start (default: http)",
    )
    parser.add_argument("channel", nargs="?", help="Channel id, @handle, URL or video id (console)")
    args = parser.parse_args()

    # Auto-discover ~/.chatrelay/config.json (or CHATRELAY_CONFIG env)
    config = AppConfig.load(args.config)

    errors = config.validate()
    if errors:
        print("Config errors:")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)

    if args.transport == "console" and not args.channel:
        print("A channel is required for the console transport")
        sys.exit(1)

    setup_logging(config.log_level)

    feed_client = YouTubeFeedClient(config.feed)
    registry = SessionRegistry(feed_client, config.engine)
    reporter = None
    if config.reporter.enabled:
        reporter = StatusReporter(registry, config.reporter.schedule)
        reporter.start()

    try:
        if args.transport == "console":
            _start_console(registry, args.channel)
        else:
            _start_http(config, registry, feed_client)
    finally:
        if reporter:
            reporter.stop()
        registry.shutdown()
        feed_client.close()


def _start_console(registry: SessionRegistry, channel_id: str) -> None:
    """Tail one channel until Ctrl+C."""
    from chatrelay.channels.console import ConsoleChannel

    ConsoleChannel(registry, channel_id).start()


def _start_http(config: AppConfig, registry: SessionRegistry, feed_client: YouTubeFeedClient) -> None:
    """Serve SSE until Ctrl+C."""
    from chatrelay.channels.http_api import HttpApiChannel

    channel = HttpApiChannel(
        registry=registry,
        feed_client=feed_client,
        host=config.http.host,
        port=config.http.port,
        keepalive=config.http.keepalive,
        queue_size=config.engine.subscriber_queue_size,
    )
    print(f"Starting chatrelay on {config.http.host}:{config.http.port}")
    print("  Stream:  /sse?channel=<channel id | @handle | video id>")
    print("  Status:  /status/<channel>")
    print("  Press Ctrl+C to stop.\n")
    channel.start()

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\nGoodbye!")
    finally:
        channel.stop()


if __name__ == "__main__":
    main()
