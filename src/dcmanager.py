#!/usr/bin/env python3
# src/dcmanager.py
"""
Cassandra Datacenter Operator - process entry point

Loads the Kubernetes configuration, starts the metrics and health endpoint,
the reconcile workers, the watch threads and the periodic resync, and shuts
everything down on SIGTERM/SIGINT.
"""

import logging
import os
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

from kubernetes import client, config
from prometheus_client import Info, generate_latest

from controller import Controller, build_watchers, resync_loop
from k8s_utils import (
    NamespaceNotFoundError,
    RunLocalError,
    WatchNamespaceNotSetError,
    get_operator_namespace,
    get_watch_namespace,
)
from reconciler import DatacenterReconciler

# -----------------------------
# Environment variables
# -----------------------------
POD_NAME = os.environ.get("POD_NAME", "")
WORKERS = int(os.environ.get("WORKERS", 2))
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logger = logging.getLogger("cassandra-operator")

info_metric = Info("cassandra_operator_info", "Information about the operator instance")

# -----------------------------
# Global State
# -----------------------------
shutdown_event = threading.Event()
operator_ready = False


def setup_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
    )


def load_kube_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def resolve_operator_namespace() -> str:
    """Namespace the operator runs in, or "" when it cannot be determined."""
    try:
        return get_operator_namespace()
    except RunLocalError:
        logger.info("Running locally, operator namespace not available")
    except NamespaceNotFoundError:
        logger.info("Operator namespace file not found")
    return ""


# -----------------------------
# HTTP Server for Metrics and Health
# -----------------------------


class OperatorHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics plus liveness and readiness probes."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self._respond(200, metrics_data, "text/plain; version=0.0.4; charset=utf-8")
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._respond(500, b"Error generating metrics")

        elif path == "/healthz":
            self._respond(200, b"OK")

        elif path == "/readyz":
            if operator_ready:
                self._respond(200, b"OK")
            else:
                self._respond(503, b"Not ready")

        else:
            self._respond(404, b"Not Found")

    def _respond(self, code: int, body: bytes, content_type: str = "text/plain"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server(port: int = METRICS_PORT) -> HTTPServer:
    server = HTTPServer(("0.0.0.0", port), OperatorHTTPHandler)
    thread = threading.Thread(target=server.serve_forever, name="http", daemon=True)
    thread.start()
    logger.info(f"HTTP server started on port {port} (metrics: /metrics, probes: /healthz /readyz)")
    return server


# -----------------------------
# Main
# -----------------------------


def main() -> int:
    global operator_ready

    setup_logging()

    try:
        watch_namespace = get_watch_namespace()
    except WatchNamespaceNotSetError as e:
        logger.error(str(e))
        return 1

    load_kube_config()
    operator_namespace = resolve_operator_namespace()

    info_metric.info(
        {
            "pod_name": POD_NAME or "unknown",
            "operator_namespace": operator_namespace or "unknown",
            "watch_namespace": watch_namespace or "all",
        }
    )
    logger.info(
        f"Starting Cassandra datacenter operator (pod={POD_NAME or 'local'}, "
        f"watch_namespace={watch_namespace or 'all'}, workers={WORKERS})"
    )

    core_api = client.CoreV1Api()
    apps_api = client.AppsV1Api()
    custom_objects = client.CustomObjectsApi()

    reconciler = DatacenterReconciler(core_api, apps_api, custom_objects)
    controller = Controller(reconciler.reconcile)

    server = start_metrics_server()
    controller.start_workers(WORKERS)

    watchers = build_watchers(
        watch_namespace, core_api, apps_api, custom_objects, controller, shutdown_event
    )
    for watcher in watchers:
        watcher.start()

    resync = threading.Thread(
        target=resync_loop,
        args=(watch_namespace, custom_objects, controller, shutdown_event),
        name="resync",
        daemon=True,
    )
    resync.start()
    operator_ready = True

    try:
        shutdown_event.wait()
    except KeyboardInterrupt:
        shutdown_event.set()
    finally:
        operator_ready = False
        logger.info("Shutting down gracefully...")
        controller.stop()
        server.shutdown()
        logger.info("Cassandra datacenter operator shutdown complete")
    return 0


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    shutdown_event.set()


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    sys.exit(main())
