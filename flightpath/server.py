"""HTTP server routing requests to registered services behind the middleware stack."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from socketserver import ThreadingMixIn
from typing import Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from flightpath.config import Config
from flightpath.middleware import WSGIApp, cors, recovery, request_logging

NOT_FOUND_BODY = b"404 page not found\n"


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args) -> None:
        # Requests are logged by the logging middleware.
        pass


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


def _not_found(environ: dict, start_response: Callable) -> Iterable[bytes]:
    start_response(
        "404 Not Found",
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(NOT_FOUND_BODY))),
        ],
    )
    return [NOT_FOUND_BODY]


class Server:
    """Holds registered services and serves them over HTTP."""

    def __init__(self, config: Config, logger: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.logger = logger if logger is not None else logging.getLogger("flightpath.server")
        self._routes: dict[str, WSGIApp] = {}
        self._lock = threading.Lock()
        self._httpd: Optional[_ThreadingWSGIServer] = None
        self._shutdown_requested = False

        handler: WSGIApp = cors(config.server.cors_origins)(self._route)
        handler = request_logging(self.logger)(handler)
        self._handler = recovery(self.logger)(handler)

    @property
    def bound_address(self) -> Optional[tuple]:
        """The address the listening socket is bound to, once started."""
        httpd = self._httpd
        return httpd.server_address if httpd is not None else None

    def register_service(self, path: str, app: WSGIApp) -> None:
        """Mount ``app`` at ``path``; a path ending in "/" matches everything below it."""
        if not path:
            raise ValueError("invalid pattern: empty path")
        with self._lock:
            if path in self._routes:
                raise ValueError(f"multiple registrations for {path}")
            self._routes[path] = app
        self.logger.info("Registering service: %s", path)

    def wsgi_app(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        """Handle one request through the middleware stack."""
        return self._handler(environ, start_response)

    def start(self) -> None:
        """Listen on the configured address and serve until shutdown() is called."""
        host, port = self.config.server.host, self.config.server.port
        with self._lock:
            if self._shutdown_requested:
                return
            if self._httpd is not None:
                raise RuntimeError("server already started")
            httpd = make_server(
                host,
                port,
                self.wsgi_app,
                server_class=_ThreadingWSGIServer,
                handler_class=_QuietHandler,
            )
            self._httpd = httpd
        self.logger.info("Flightpath server starting on %s", self.config.server_addr())
        self.logger.info("Ready to accept Connect protocol requests")
        try:
            httpd.serve_forever()
        finally:
            httpd.server_close()

    def shutdown(self) -> None:
        """Stop serving; does nothing if the server was never started."""
        with self._lock:
            self._shutdown_requested = True
            httpd = self._httpd
        if httpd is None:
            return
        httpd.shutdown()

    def _match(self, path: str) -> Optional[WSGIApp]:
        with self._lock:
            candidates = [
                pattern
                for pattern in self._routes
                if pattern == path or (pattern.endswith("/") and path.startswith(pattern))
            ]
            if not candidates:
                return None
            return self._routes[max(candidates, key=len)]

    def _route(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        app = self._match(path)
        if app is not None:
            return app(environ, start_response)

        subtree = path + "/"
        with self._lock:
            redirect = subtree in self._routes
        if redirect:
            query = environ.get("QUERY_STRING", "")
            location = subtree + (f"?{query}" if query else "")
            body = f'<a href="{location}">Moved Permanently</a>.\n\n'.encode()
            start_response(
                "301 Moved Permanently",
                [
                    ("Location", location),
                    ("Content-Type", "text/html; charset=utf-8"),
                    ("Content-Length", str(len(body))),
                ],
            )
            return [body]
        return _not_found(environ, start_response)