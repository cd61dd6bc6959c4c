"""Status endpoints.

``/`` and ``/ping`` are liveness probes, ``/stats`` returns the pipeline
metrics snapshot. The app only reads :class:`pipeline.metrics.PipelineMetrics`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from flask import Flask, Response, jsonify
from werkzeug.serving import make_server

from pipeline.metrics import PipelineMetrics
from version import ENGINE_NAME, ENGINE_VERSION

logger = logging.getLogger(__name__)


def create_app(metrics: PipelineMetrics) -> Flask:
    """Build the status app bound to one metrics registry."""
    app = Flask(__name__)

    @app.route("/", methods=["GET", "HEAD"])
    def index() -> Any:
        return Response("ok", mimetype="text/plain")

    @app.route("/ping", methods=["GET"])
    def ping() -> Any:
        return Response("pong", mimetype="text/plain")

    @app.route("/stats", methods=["GET"])
    def stats() -> Any:
        payload = metrics.snapshot()
        payload["engine"] = {"name": ENGINE_NAME, "version": ENGINE_VERSION}
        return jsonify(payload)

    @app.errorhandler(404)
    def not_found(_exc: Exception) -> Any:
        return jsonify({"ok": False, "error": "not_found", "message": "Page not found."}), 404

    return app


class StatusServer:
    """Serves the status app from a daemon thread."""

    def __init__(self, app: Flask, *, host: str, port: int) -> None:
        self._server = make_server(host, int(port), app, threaded=True)
        self._thread = threading.Thread(target=self._server.serve_forever, name="status-api", daemon=True)

    @property
    def port(self) -> int:
        return int(self._server.server_port)

    def start(self) -> None:
        self._thread.start()
        logger.info("Status endpoint listening port=%d", self.port)

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5.0)
