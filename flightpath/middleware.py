"""WSGI middleware: CORS headers, request logging and exception recovery."""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Optional

WSGIApp = Callable[..., Iterable[bytes]]
Middleware = Callable[[WSGIApp], WSGIApp]

ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = "Content-Type, Connect-Protocol-Version, Connect-Timeout-Ms, Authorization"
ALLOW_CREDENTIALS = "true"
MAX_AGE = "3600"

INTERNAL_ERROR_BODY = b"Internal server error"


def _merge_headers(
    defaults: list[tuple[str, str]], overrides: Iterable[tuple[str, str]]
) -> list[tuple[str, str]]:
    """Combine header lists; a header set by the application replaces a default."""
    overrides = list(overrides)
    names = {name.lower() for name, _ in overrides}
    return [(n, v) for n, v in defaults if n.lower() not in names] + overrides


def cors(allowed_origins: Iterable[str]) -> Middleware:
    """Return middleware adding CORS headers and answering preflight requests.

    The request's Origin is echoed back when it is listed or when "*" is listed.
    OPTIONS requests are answered with 200 without reaching the wrapped app.
    """
    allowed = frozenset(allowed_origins)

    def middleware(app: WSGIApp) -> WSGIApp:
        def wrapped(environ: dict, start_response: Callable) -> Iterable[bytes]:
            origin = environ.get("HTTP_ORIGIN", "")
            headers: list[tuple[str, str]] = []
            if origin and ("*" in allowed or origin in allowed):
                headers.append(("Access-Control-Allow-Origin", origin))
            headers += [
                ("Access-Control-Allow-Methods", ALLOW_METHODS),
                ("Access-Control-Allow-Headers", ALLOW_HEADERS),
                ("Access-Control-Allow-Credentials", ALLOW_CREDENTIALS),
                ("Access-Control-Max-Age", MAX_AGE),
            ]

            if environ.get("REQUEST_METHOD") == "OPTIONS":
                start_response("200 OK", headers + [("Content-Length", "0")])
                return [b""]

            def start_with_cors(status, response_headers, exc_info=None):
                return start_response(status, _merge_headers(headers, response_headers), exc_info)

            return app(environ, start_with_cors)

        return wrapped

    return middleware


def _trim(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def _format_duration(seconds: float) -> str:
    """Format a duration compactly, e.g. "850ns", "12.5µs", "3.2ms", "1.5s"."""
    nanos = round(seconds * 1e9)
    if nanos < 1000:
        return f"{nanos}ns"
    if nanos < 1_000_000:
        return _trim(nanos / 1e3) + "µs"
    if nanos < 1_000_000_000:
        return _trim(nanos / 1e6) + "ms"
    return _trim(nanos / 1e9) + "s"


@dataclass
class _Exchange:
    status: int = 200
    written: int = 0


class _LoggedResponse:
    """Wraps a response iterable, counting bytes and logging once it ends."""

    def __init__(self, iterable: Iterable[bytes], exchange: _Exchange,
                 finish: Callable[[bool], None]) -> None:
        self._iterable = iterable
        self._exchange = exchange
        self._finish = finish
        self._exhausted = False
        self._failed = False
        self._logged = False

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._iterable:
                self._exchange.written += len(chunk)
                yield chunk
        except Exception:
            self._failed = True
            raise
        self._exhausted = True
        self._log()

    def close(self) -> None:
        close = getattr(self._iterable, "close", None)
        try:
            if close is not None:
                close()
        finally:
            self._log()

    def _log(self) -> None:
        if self._logged or self._failed:
            return
        self._logged = True
        self._finish(not self._exhausted)


def request_logging(logger: logging.Logger) -> Middleware:
    """Return middleware logging method, path, status, duration and bytes of each request.

    The line is written once the response ends; a response closed before it
    was fully sent is marked " [canceled]". Requests that fail are not logged.
    """

    def middleware(app: WSGIApp) -> WSGIApp:
        def wrapped(environ: dict, start_response: Callable) -> Iterable[bytes]:
            start = time.perf_counter()
            exchange = _Exchange()

            def capture(status, headers, exc_info=None):
                exchange.status = int(str(status).split(" ", 1)[0])
                write = start_response(status, headers, exc_info)

                def counting_write(data: bytes) -> Any:
                    exchange.written += len(data)
                    return write(data)

                return counting_write

            def finish(canceled: bool) -> None:
                logger.info(
                    "%s %s %d %s %d bytes%s",
                    environ.get("REQUEST_METHOD", ""),
                    environ.get("PATH_INFO", ""),
                    exchange.status,
                    _format_duration(time.perf_counter() - start),
                    exchange.written,
                    " [canceled]" if canceled else "",
                )

            result = app(environ, capture)
            return _LoggedResponse(result, exchange, finish)

        return wrapped

    return middleware


def recovery(logger: logging.Logger) -> Middleware:
    """Return middleware turning an exception in the wrapped app into a 500 response."""

    def report(start_response: Callable) -> bool:
        exc = sys.exc_info()
        logger.error("PANIC: %s", exc[1], exc_info=exc)
        try:
            start_response(
                "500 Internal Server Error",
                [("Content-Type", "text/plain; charset=utf-8")],
                exc,
            )
        except Exception:
            # Headers were already sent; the response cannot be replaced.
            return False
        return True

    def guard(result: Iterable[bytes], start_response: Callable) -> Iterator[bytes]:
        try:
            for chunk in result:
                yield chunk
        except Exception:
            if report(start_response):
                yield INTERNAL_ERROR_BODY
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()

    def middleware(app: WSGIApp) -> WSGIApp:
        def wrapped(environ: dict, start_response: Callable) -> Iterable[bytes]:
            try:
                result = app(environ, start_response)
            except Exception:
                return [INTERNAL_ERROR_BODY] if report(start_response) else []
            return guard(result, start_response)

        return wrapped

    return middleware