"""Threaded TCP server exposing a storage engine."""

from __future__ import annotations

import functools
import logging
import selectors
import socket
import threading
from contextlib import closing
from typing import Optional, Union

from .engine import KvsEngine
from .errors import KvsError
from .protocol import (
    GetRequest,
    JsonStream,
    RemoveRequest,
    Request,
    Response,
    SetRequest,
    parse_addr,
    request_from_wire,
    response_to_wire,
)
from .thread_pool import ThreadPool

logger = logging.getLogger(__name__)

Address = Union[str, tuple]

_POLL_INTERVAL = 0.1


def _socket_address(addr: Address) -> tuple[str, int]:
    if isinstance(addr, str):
        return parse_addr(addr)
    return str(addr[0]), int(addr[1])


def _dispatch(engine: KvsEngine, request: Request) -> Response:
    try:
        if isinstance(request, GetRequest):
            return Response(value=engine.get(request.key))
        if isinstance(request, SetRequest):
            engine.set(request.key, request.value)
        elif isinstance(request, RemoveRequest):
            engine.remove(request.key)
        return Response()
    except KvsError as exc:
        return Response(error=str(exc))


def _handle(engine: KvsEngine, conn: socket.socket, peer: object) -> None:
    with closing(conn.makefile("rb")) as rfile, closing(conn.makefile("wb")) as wfile:
        for obj in JsonStream(rfile):
            request = request_from_wire(obj)
            logger.debug("Receive request from %s: %r", peer, request)
            response = _dispatch(engine, request)
            wfile.write(response_to_wire(response))
            wfile.flush()
            logger.debug("Response sent to %s: %r", peer, response)


def _serve_client(engine: KvsEngine, conn: socket.socket) -> None:
    with conn:
        try:
            peer = conn.getpeername()
            _handle(engine, conn, peer)
        except (KvsError, OSError) as exc:
            logger.error("Error on serving client: %s", exc)


class KvsServer:
    """Serves requests on a storage engine, one pool job per connection."""

    def __init__(self, engine: KvsEngine, pool: ThreadPool) -> None:
        self.engine = engine
        self.pool = pool
        self._listener: Optional[socket.socket] = None
        self._stop = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()

    def bind(self, addr: Address) -> tuple[str, int]:
        """Start listening on ``addr``; return the bound ``(host, port)``."""
        host, port = _socket_address(addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            listener = socket.create_server((host, port), family=family)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        self._listener = listener
        bound = listener.getsockname()
        return bound[0], bound[1]

    def serve_forever(self) -> None:
        """Accept connections until ``shutdown`` is called."""
        listener = self._listener
        if listener is None:
            raise KvsError("The server is not bound to an address")
        self._stopped.clear()
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(listener, selectors.EVENT_READ)
                while not self._stop.is_set():
                    if not selector.select(timeout=_POLL_INTERVAL):
                        continue
                    try:
                        conn, _ = listener.accept()
                    except OSError as exc:
                        logger.error("Connection failed: %s", exc)
                        continue
                    conn.setblocking(True)
                    self.pool.spawn(functools.partial(_serve_client, self.engine, conn))
        finally:
            listener.close()
            self._listener = None
            self._stopped.set()

    def shutdown(self) -> None:
        """Stop serving and close the listening socket."""
        self._stop.set()
        self._stopped.wait()
        listener = self._listener
        if listener is not None:
            listener.close()
            self._listener = None

    def run(self, addr: Address) -> None:
        """Listen on ``addr`` and serve until shut down."""
        self.bind(addr)
        self.serve_forever()