"""Exporters that expose rendered metrics over HTTP or push them to a push gateway."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Optional, Union

from promexport.common import BuildError
from promexport.recorder import PrometheusHandle

_log = logging.getLogger(__name__)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _parse_network(address: Union[str, Network]) -> Network:
    if isinstance(address, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return address
    try:
        return ipaddress.ip_network(str(address).strip(), strict=False)
    except ValueError as exc:
        raise BuildError(
            f"failed to parse address as a valid IP address/subnet: {exc}"
        ) from exc


def _seconds(interval: Union[float, timedelta]) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class _ScrapeHandler(BaseHTTPRequestHandler):
    """Answers any request path with the rendered metrics, or 403 if not allowed."""

    def _respond(self, with_body: bool = True) -> None:
        exporter = self.server.exporter
        if exporter.is_allowed(self.client_address[0]):
            status, payload = 200, exporter.handle.render().encode("utf-8")
        else:
            status, payload = 403, b""
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if with_body:
            self.wfile.write(payload)

    def do_GET(self) -> None:
        self._respond()

    def do_POST(self) -> None:
        self._respond()

    def do_PUT(self) -> None:
        self._respond()

    def do_HEAD(self) -> None:
        self._respond(with_body=False)

    def log_message(self, format: str, *args) -> None:
        pass


class _ScrapeServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], exporter: "HttpListenerExporter") -> None:
        self.exporter = exporter
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(address, _ScrapeHandler)


class HttpListenerExporter:
    """Serves the scrape payload over HTTP from a background thread.

    Every request path answers with the current render. When an allowlist is
    given, clients outside it receive 403 Forbidden.
    """

    def __init__(
        self,
        handle: PrometheusHandle,
        host: str = "0.0.0.0",
        port: int = 9000,
        allowed_addresses: Optional[Iterable[Union[str, Network]]] = None,
    ) -> None:
        self.handle = handle
        self._address = (host, int(port))
        self._allowed: Optional[list[Network]] = (
            None
            if allowed_addresses is None
            else [_parse_network(address) for address in allowed_addresses]
        )
        self._server: Optional[_ScrapeServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def server_address(self) -> tuple[str, int]:
        """The address actually bound, or the configured one before starting."""
        if self._server is not None:
            host, port = self._server.server_address[:2]
            return host, port
        return self._address

    @property
    def running(self) -> bool:
        """Whether the listener is serving."""
        return self._thread is not None and self._thread.is_alive()

    def is_allowed(self, address: str) -> bool:
        """Return whether a client at ``address`` may scrape."""
        if self._allowed is None:
            return True
        try:
            ip = ipaddress.ip_address(str(address).split("%", 1)[0])
        except ValueError:
            return False
        candidates = [ip]
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            candidates.append(ip.ipv4_mapped)
        return any(candidate in network for network in self._allowed for candidate in candidates)

    def start(self) -> "HttpListenerExporter":
        """Bind the listener and start serving in a daemon thread."""
        if self._server is not None:
            raise RuntimeError("exporter already started")
        try:
            server = _ScrapeServer(self._address, self)
        except OSError as exc:
            raise BuildError(f"failed to create HTTP listener: {exc}") from exc
        thread = threading.Thread(
            target=server.serve_forever,
            name="metrics-exporter-prometheus-http-listener",
            daemon=True,
        )
        self._server, self._thread = server, thread
        thread.start()
        return self

    def stop(self) -> None:
        """Stop serving and release the socket; does nothing if not started."""
        server, thread = self._server, self._thread
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join()
        self._server, self._thread = None, None

    def __enter__(self) -> "HttpListenerExporter":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()


class PushGatewayExporter:
    """Periodically PUTs the scrape payload to a push gateway endpoint."""

    def __init__(
        self,
        handle: PrometheusHandle,
        endpoint: str,
        interval: Union[float, timedelta],
        timeout: float = 30.0,
    ) -> None:
        parts = urllib.parse.urlsplit(str(endpoint))
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise BuildError(f"push gateway endpoint is not valid: {endpoint!r}")
        seconds = _seconds(interval)
        if seconds < 0:
            raise ValueError("push interval cannot be negative")
        self.handle = handle
        self.endpoint = str(endpoint)
        self.interval = seconds
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        """Whether the push loop is running."""
        return self._thread is not None and self._thread.is_alive()

    def push_once(self) -> Optional[int]:
        """Push the current render once; return the HTTP status, or ``None`` if it failed to send."""
        body = self.handle.render().encode("utf-8")
        request = urllib.request.Request(self.endpoint, data=body, method="PUT")
        try:
            with self._opener.open(request, timeout=self._timeout) as response:
                return response.status
        except urllib.error.HTTPError as exc:
            reason = exc.reason or str(exc.code)
            try:
                text = exc.read().decode("utf-8")
            except (OSError, UnicodeDecodeError):
                text = "<failed to read response body>"
            _log.error(
                "unexpected status after pushing metrics to push gateway: status=%s body=%s",
                reason,
                text,
            )
            return exc.code
        except (urllib.error.URLError, OSError) as exc:
            _log.error("error sending request to push gateway: %r", exc)
            return None

    def _run(self) -> None:
        while not self._stopping.wait(self.interval):
            self.push_once()

    def start(self) -> "PushGatewayExporter":
        """Start pushing every ``interval`` seconds in a daemon thread."""
        if self._thread is not None:
            raise RuntimeError("exporter already started")
        self._stopping.clear()
        thread = threading.Thread(
            target=self._run,
            name="metrics-exporter-prometheus-push-gateway",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return self

    def stop(self) -> None:
        """Stop the push loop; does nothing if not started."""
        thread = self._thread
        if thread is None:
            return
        self._stopping.set()
        thread.join()
        self._thread = None

    def __enter__(self) -> "PushGatewayExporter":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()