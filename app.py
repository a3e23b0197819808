# app.py
from __future__ import annotations

import logging
import os
import threading
import time

from flask import Flask, jsonify, request

from admission import Decision, event_from_review, review_response
from config import Settings
from errors import ParseFailure
from hostmap import load as load_aliases
from k8s import ClusterStore, load_kube
from reconcile import Reconciler
from stats import JsonlStatsSink, StatsEmitter

logger = logging.getLogger(__name__)


def create_app(reconciler: Reconciler, timeout_seconds: float = 25.0) -> Flask:
    app = Flask(__name__)

    @app.route("/admission", methods=["POST"])
    def admission():
        review = request.get_json(silent=True)
        try:
            event = event_from_review(review)
        except ValueError as e:
            logger.error("[webhook] unreadable admission review: %s", e)
            return jsonify({"error": str(e)}), 400

        logger.info(
            "[webhook] %s admission for %s", event.operation.value, event.pod.identity
        )
        deadline = time.monotonic() + timeout_seconds
        try:
            decision = reconciler.handle(event, deadline=deadline)
        except Exception as e:
            # fail closed: a pod whose egress could not be set up must not start
            logger.exception("[webhook] reconcile crashed for %s", event.pod.identity)
            decision = Decision(allowed=False, reason=f"internal error: {e}")

        if not decision.allowed:
            logger.warning("[webhook] denying %s: %s", event.pod.identity, decision.reason)
        return jsonify(review_response(review, decision))

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return "ok"

    @app.route("/readyz", methods=["GET"])
    def readyz():
        return "ok"

    return app


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        aliases = load_aliases(settings.host_alias_path)
    except ParseFailure as e:
        logger.error("[webhook] unable to load host aliases: %s", e)
        raise SystemExit(1)

    load_kube(settings.in_cluster)

    sink = JsonlStatsSink(settings.stats_path) if settings.stats_path else None
    stats = StatsEmitter(sink, maxsize=settings.stats_queue_size)
    stop_event = threading.Event()
    stats_thread = stats.start(stop_event)

    reconciler = Reconciler(
        ClusterStore(),
        aliases,
        stats,
        fqdn_attempts=settings.fqdn_attempts,
        backoff_seconds=settings.fqdn_backoff_seconds,
        confirm_timeout=settings.confirm_timeout_seconds,
    )
    app = create_app(reconciler, settings.webhook_timeout_seconds)

    ssl_context = None
    if settings.cert_path:
        ssl_context = (
            os.path.join(settings.cert_path, "tls.crt"),
            os.path.join(settings.cert_path, "tls.key"),
        )

    logger.info("[webhook] listening on %s", settings.bind_address)
    try:
        app.run(host=settings.host, port=settings.port, ssl_context=ssl_context, threaded=True)
    finally:
        logger.info("[webhook] shutting down")
        stop_event.set()
        if stats_thread is not None:
            stats_thread.join(timeout=5)


if __name__ == "__main__":
    main()
