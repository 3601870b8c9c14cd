"""WSGI rate-limit middleware and a demo business server."""

from __future__ import annotations

import argparse
import logging
import random
import time
from collections.abc import Callable, Iterable, Mapping
from http import HTTPStatus
from socketserver import ThreadingMixIn
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from casebook.limiter import VIP_CTX_KEY, Limiter, RateLimitMonitor, VipLimiter

logger = logging.getLogger(__name__)

CTX_ENVIRON_KEY = "casebook.ctx"

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]
Middleware = Callable[[WSGIApp], WSGIApp]


def _status(code: HTTPStatus) -> str:
    return f"{code.value} {code.phrase}"


def _text(start_response: Callable, code: HTTPStatus, body: str) -> list[bytes]:
    data = body.encode("utf-8")
    start_response(
        _status(code),
        [("Content-Type", "text/plain; charset=utf-8"), ("Content-Length", str(len(data)))],
    )
    return [data]


def ctx_with_vip(ctx: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``ctx`` marked as a VIP request."""
    return {**(ctx or {}), VIP_CTX_KEY: 1}


class RateLimitBuilder:
    """Builds middleware that tracks in-flight requests and applies a limiter."""

    def __init__(self, monitor: RateLimitMonitor, limiter: Limiter) -> None:
        self._monitor = monitor
        self._limiter = limiter

    def build(self) -> Middleware:
        def middleware(app: WSGIApp) -> WSGIApp:
            def wrapped(environ: dict, start_response: Callable) -> Iterable[bytes]:
                self._monitor.incr()
                try:
                    if environ.get("HTTP_VIP"):
                        environ[CTX_ENVIRON_KEY] = ctx_with_vip(environ.get(CTX_ENVIRON_KEY))
                    ctx = environ.get(CTX_ENVIRON_KEY, {})
                    try:
                        limited = self._limiter.limit(ctx)
                    except Exception:
                        logger.exception("限流判断失败")
                        return _text(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, "系统错误")
                    if limited:
                        return _text(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, "你被限流了")
                    response = app(environ, start_response)
                    try:
                        return list(response)
                    finally:
                        close = getattr(response, "close", None)
                        if close is not None:
                            close()
                finally:
                    self._monitor.decr()

            return wrapped

        return middleware


def biz_app(environ: dict, start_response: Callable) -> Iterable[bytes]:
    """Serve ``GET /ratelimit`` after 0.5–1.5 s of simulated work."""
    if environ.get("REQUEST_METHOD") == "GET" and environ.get("PATH_INFO") == "/ratelimit":
        time.sleep((500 + random.randrange(1000)) / 1000)
        start_response(_status(HTTPStatus.OK), [("Content-Length", "0")])
        return [b""]
    return _text(start_response, HTTPStatus.NOT_FOUND, "404 page not found")


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    """Request handler that sends access logs to debug level instead of stderr."""

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port_text = addr.rpartition(":")
    if not sep or not port_text.isdigit() or int(port_text) > 65535:
        raise ValueError(f"invalid address: {addr!r}")
    return host, int(port_text)


def start_server(addr: str, *middlewares: Middleware) -> None:
    """Serve :func:`biz_app` on ``addr`` (``host:port``), wrapped by ``middlewares``.

    The first middleware is the outermost. Blocks until interrupted.
    """
    host, port = _parse_addr(addr)
    app: WSGIApp = biz_app
    for middleware in reversed(middlewares):
        app = middleware(app)
    with make_server(host, port, app, server_class=_ThreadingWSGIServer, handler_class=_QuietHandler) as server:
        server.serve_forever()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rate-limited demo server with VIP bypass.")
    parser.add_argument("--addr", default=":8080", help="listen address, host:port")
    parser.add_argument("--qps-limit", type=int, default=1000, help="in-flight request limit")
    args = parser.parse_args(argv)

    monitor = RateLimitMonitor()
    limiter = VipLimiter(args.qps_limit, monitor)
    limiter.start()
    try:
        start_server(args.addr, RateLimitBuilder(monitor, limiter).build())
    except KeyboardInterrupt:
        pass
    finally:
        limiter.stop()
    return 0