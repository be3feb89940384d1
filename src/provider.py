#!/usr/bin/env python3
# src/provider.py
"""
provider-kind - reconciles Cluster custom resources into local KIND clusters.

This process polls Cluster objects, drives each one through the KIND external
client and serves Prometheus metrics and health endpoints.
"""

import logging
import os
import random
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from prometheus_client import Info, generate_latest

from cluster_controller import Connector
from kind_config import parse_duration
from managed import CLUSTER, NAMESPACED_CLUSTER
from reconciler import Reconciler
from usage_tracker import ProviderConfigUsageTracker

VERSION = "0.1.0"

# -----------------------------
# Environment variables
# -----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
POLL_INTERVAL = os.environ.get("POLL_INTERVAL", "10m")
MAX_CONCURRENT_RECONCILES = int(os.environ.get("MAX_CONCURRENT_RECONCILES", 10))
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8080))
ENABLE_NAMESPACED_CLUSTERS = os.environ.get(
    "ENABLE_NAMESPACED_CLUSTERS", "true"
).lower() in ("true", "1", "yes")

logger = logging.getLogger("provider-kind")

info_metric = Info("kind_provider", "Information about the provider-kind instance")

# -----------------------------
# Global State
# -----------------------------
shutdown_event = threading.Event()
first_pass_completed = False


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
    )


def load_kubernetes_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def calculate_jittered_sleep(base_interval: float, max_jitter_percent: float = 0.2) -> float:
    """Calculate sleep interval with jitter to prevent synchronized wake-ups.

    Args:
        base_interval: Base sleep interval in seconds
        max_jitter_percent: Maximum jitter as percentage of base interval (0.0-1.0)

    Returns:
        Sleep interval with random jitter applied
    """
    jitter_range = base_interval * max_jitter_percent
    jitter = random.uniform(-jitter_range, jitter_range)
    return max(1.0, base_interval + jitter)  # Ensure minimum 1 second


def build_reconcilers(custom_objects, core_api, cancel: threading.Event):
    tracker = ProviderConfigUsageTracker(custom_objects)
    connector = Connector(tracker)
    kinds = [CLUSTER]
    if ENABLE_NAMESPACED_CLUSTERS:
        kinds.append(NAMESPACED_CLUSTER)
    return [
        Reconciler(custom_objects, core_api, connector, resource_kind=kind, cancel=cancel)
        for kind in kinds
    ]


def reconcile_pass(reconcilers, executor: ThreadPoolExecutor) -> int:
    """Reconcile every listed resource once and wait for all of them.

    Waiting for the whole pass guarantees a resource is never reconciled
    concurrently with itself.
    """
    futures = []
    for reconciler in reconcilers:
        try:
            items = reconciler.list_resources()
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{reconciler.resource_kind.label} is not installed")
            else:
                logger.error(f"Cannot list {reconciler.resource_kind.label}: {e}")
            continue
        for obj in items:
            futures.append(executor.submit(reconciler.reconcile, obj))

    failed = 0
    for future in futures:
        try:
            if future.result() == "error":
                failed += 1
        except Exception as e:
            failed += 1
            logger.error(f"Unexpected reconcile error: {e}")
    logger.debug(f"Reconcile pass finished: {len(futures)} resources, {failed} failed")
    return len(futures)


# -----------------------------
# HTTP Server for Metrics and Health
# -----------------------------


class ProviderHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics, liveness and readiness."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self._reply(200, metrics_data, "text/plain; version=0.0.4; charset=utf-8")
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._reply(500, b"Error generating metrics")

        elif path == "/health":
            self._reply(200, b"OK")

        elif path == "/ready":
            if first_pass_completed:
                self._reply(200, b"OK")
            else:
                self._reply(503, b"Initial reconcile pass not completed")

        else:
            self._reply(404, b"Not Found")

    def _reply(self, code: int, body: bytes, content_type: str = "text/plain"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server():
    """Start HTTP server for metrics and health in a background thread."""

    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), ProviderHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (/metrics, /health, /ready)")
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


# -----------------------------
# Main Loop
# -----------------------------


def main():
    """Main application loop."""
    global first_pass_completed

    setup_logging()
    poll_seconds = parse_duration(POLL_INTERVAL)

    logger.info(
        f"Starting provider-kind {VERSION} (poll: {POLL_INTERVAL}, "
        f"max concurrent reconciles: {MAX_CONCURRENT_RECONCILES})"
    )
    info_metric.info(
        {
            "version": VERSION,
            "poll_interval": POLL_INTERVAL,
            "namespaced_clusters": str(ENABLE_NAMESPACED_CLUSTERS).lower(),
        }
    )

    load_kubernetes_config()
    reconcilers = build_reconcilers(
        client.CustomObjectsApi(), client.CoreV1Api(), shutdown_event
    )

    start_metrics_server()

    with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_RECONCILES) as executor:
        while not shutdown_event.is_set():
            try:
                reconcile_pass(reconcilers, executor)
                first_pass_completed = True
            except Exception as e:
                logger.error(f"Error in reconcile pass: {e}")

            sleep_for = calculate_jittered_sleep(poll_seconds)
            logger.debug(f"Sleeping for {sleep_for:.2f}s (base: {poll_seconds}s + jitter)")
            if shutdown_event.wait(sleep_for):
                break

    logger.info("provider-kind shutdown complete")


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    shutdown_event.set()


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    main()
