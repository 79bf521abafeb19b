from __future__ import annotations

import logging
import signal
import sys
from socketserver import ThreadingMixIn
from threading import Thread
from typing import Any, Callable, Iterable, List
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.gc_collector import GCCollector
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from . import __version__
from .exporter import Exporter

log = logging.getLogger(__name__)

LANDING_PAGE = """<html>
<head><title>Tapo Exporter</title></head>
<body>
<h1>Tapo Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


class BuildInfoCollector:
    def describe(self) -> List[GaugeMetricFamily]:
        return [self._family()]

    def collect(self) -> List[GaugeMetricFamily]:
        fam = self._family()
        fam.add_metric([__version__, sys.version.split()[0]], 1.0)
        return [fam]

    def _family(self) -> GaugeMetricFamily:
        return GaugeMetricFamily("tapo_exporter_build_info", "Exporter build information.", labels=["version", "python"])


def build_registry(exporter: Exporter, disable_exporter_metrics: bool = False) -> CollectorRegistry:
    registry = CollectorRegistry()
    if not disable_exporter_metrics:
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        GCCollector(registry=registry)
    registry.register(BuildInfoCollector())
    registry.register(exporter)
    return registry


def make_app(registry: CollectorRegistry, telemetry_path: str) -> Callable[..., Iterable[bytes]]:
    landing = LANDING_PAGE.format(path=telemetry_path).encode("utf-8")

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path:
            output = generate_latest(registry)
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [landing]
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def serve(host: str, port: int, app: Callable[..., Iterable[bytes]], exporter: Exporter) -> None:
    httpd = make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    log.info("listening=%s:%s", host if host else "0.0.0.0", port)

    try:
        httpd.serve_forever()
    finally:
        exporter.close()
        httpd.server_close()
        log.info("stopped")
