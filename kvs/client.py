"""Blocking client for a key/value server."""

from __future__ import annotations

import socket
from typing import Optional, Union

from .errors import KvsError
from .protocol import (
    GetRequest,
    JsonStream,
    RemoveRequest,
    Request,
    SetRequest,
    parse_addr,
    request_to_wire,
    response_from_wire,
)

Address = Union[str, tuple]


def _socket_address(addr: Address) -> tuple[str, int]:
    if isinstance(addr, str):
        return parse_addr(addr)
    return str(addr[0]), int(addr[1])


class KvsClient:
    """A connection to a key/value server.

    ``addr`` is an ``IP:PORT`` string or a ``(host, port)`` tuple.
    """

    def __init__(self, addr: Address) -> None:
        target = _socket_address(addr)
        try:
            self._sock = socket.create_connection(target)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        self._rfile = self._sock.makefile("rb")
        self._wfile = self._sock.makefile("wb")
        self._responses = JsonStream(self._rfile)

    def _call(self, request: Request) -> Optional[str]:
        try:
            self._wfile.write(request_to_wire(request))
            self._wfile.flush()
            reply = self._responses.read()
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        if reply is None:
            raise KvsError("serde_json error: EOF while parsing a value")
        response = response_from_wire(reply)
        if response.is_error:
            raise KvsError(response.error)
        return response.value

    def get(self, key: str) -> Optional[str]:
        """Return the value of ``key`` on the server, or ``None``."""
        return self._call(GetRequest(key))

    def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value`` on the server."""
        self._call(SetRequest(key, value))

    def remove(self, key: str) -> None:
        """Remove ``key`` on the server; raise KvsError if that fails."""
        self._call(RemoveRequest(key))

    def close(self) -> None:
        """Close the connection."""
        for closable in (self._wfile, self._rfile, self._sock):
            try:
                closable.close()
            except OSError:
                pass

    def __enter__(self) -> "KvsClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()