"""HTTP transport — streams a channel's chat as Server-Sent Events.

Endpoints:
    GET /sse?channel=<id>     — SSE stream of `status` and `batch` events
    GET /status/<channel>     — Session state for one channel
    GET /sessions             — All sessions (diagnostics)
    GET /resolve/<channel>    — Which live feed a channel resolves to right now
    GET /health               — Health check
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Iterator

from chatrelay.channels.base import TransportAdapter
from chatrelay.engine.models import SessionState
from chatrelay.engine.registry import SessionHandle, SessionRegistry
from chatrelay.engine.subscriber import Delivery, QueueSubscriber
from chatrelay.feed.client import FeedClient, FeedNotFound, FeedTransientError

logger = logging.getLogger(__name__)


def format_sse(event: str, data: Any) -> str:
    """Encode one Server-Sent Event frame."""
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def _encode(item: Delivery) -> str:
    if item.kind == "batch":
        return format_sse("batch", [m.to_dict() for m in item.payload])
    return format_sse("status", {"text": item.payload})


class HttpApiChannel(TransportAdapter):
    """Flask-based SSE transport.

    Usage::

        channel = HttpApiChannel(registry=registry, feed_client=feed, port=3000)
        channel.start()  # Starts Flask in a thread
    """

    name = "http"

    def __init__(
        self,
        registry: SessionRegistry,
        feed_client: FeedClient,
        host: str = "0.0.0.0",
        port: int = 3000,
        keepalive: float = 20.0,
        queue_size: int = 256,
    ) -> None:
        super().__init__(registry)
        self._feed = feed_client
        self._host = host
        self._port = port
        self._keepalive = keepalive
        self._queue_size = queue_size
        self._thread: threading.Thread | None = None
        self._app: Any = None

    def _create_app(self):
        """Create the Flask application with routes."""
        from flask import Flask, Response, jsonify, request

        app = Flask("chatrelay-http")

        @app.route("/health", methods=["GET"])
        def health():
            return jsonify({"status": "ok", "sessions": len(self._registry)})

        @app.route("/sessions", methods=["GET"])
        def list_sessions():
            return jsonify({"sessions": self._registry.snapshot()})

        @app.route("/status/<path:channel_id>", methods=["GET"])
        def status(channel_id: str):
            session = self._registry.get(channel_id)
            if session is None:
                return jsonify({"error": "no session for channel"}), 404
            return jsonify({
                "channel": channel_id,
                "state": session.state.value,
                "subscribers": session.subscriber_count,
                "status": session.status_text,
            })

        @app.route("/resolve/<path:channel_id>", methods=["GET"])
        def resolve(channel_id: str):
            try:
                handle = self._feed.resolve(channel_id)
            except FeedNotFound:
                return jsonify({"error": "no live feed for channel"}), 404
            except FeedTransientError:
                logger.warning("Resolve for %s failed transiently", channel_id)
                return jsonify({"error": "upstream unavailable, try again"}), 503
            return jsonify({"channel": channel_id, "feedId": handle.feed_id})

        @app.route("/sse", methods=["GET"])
        def sse():
            channel_id = (request.args.get("channel") or "").strip()
            if not channel_id:
                return jsonify({"error": "channel is required"}), 400

            subscriber = QueueSubscriber(maxsize=self._queue_size)
            handle = self.join(channel_id, subscriber)
            return Response(
                self._stream(handle, subscriber),
                mimetype="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        self._app = app
        return app

    def _stream(self, handle: SessionHandle, subscriber: QueueSubscriber) -> Iterator[str]:
        """Drain the subscriber queue into SSE frames until the client leaves."""
        try:
            while True:
                item = subscriber.get(timeout=self._keepalive)
                if item is not None:
                    yield _encode(item)
                elif not subscriber.closed:
                    yield ":\n\n"  # keepalive comment

                if subscriber.closed or (handle.state is SessionState.ENDED and not len(subscriber)):
                    break
        finally:
            # runs on client disconnect too (GeneratorExit)
            subscriber.close()
            self.leave(handle, subscriber)

    def start(self) -> None:
        """Start Flask in a background thread."""
        app = self._create_app()

        def _run():
            app.run(host=self._host, port=self._port, debug=False, use_reloader=False, threaded=True)

        self._thread = threading.Thread(target=_run, daemon=True, name="http-transport")
        self._thread.start()
        logger.info("HTTP transport started on %s:%d", self._host, self._port)

    def stop(self) -> None:
        """Stop the HTTP server (daemon thread dies with process)."""
        self._thread = None
        logger.info("HTTP transport stopped")

    @property
    def app(self):
        """Expose the Flask app for testing."""
        if self._app is None:
            self._create_app()
        return self._app

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
