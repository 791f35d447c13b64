"""Asynchronous engine wrapper, client and server over length-delimited JSON frames."""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from typing import Any, Callable, Optional, TypeVar, Union

from .engine import KvsEngine
from .errors import KvsError
from .protocol import (
    GetRequest,
    RemoveRequest,
    Request,
    SetRequest,
    parse_addr,
    request_from_wire,
    request_to_wire,
)
from .thread_pool import ThreadPool

logger = logging.getLogger(__name__)

MAX_FRAME_LENGTH = 8 * 1024 * 1024
_HEADER = struct.Struct(">I")

_GET = "Get"
_SET = "Set"
_REMOVE = "Remove"
_ERR = "Err"

T = TypeVar("T")
Address = Union[str, tuple]


def encode_frame(payload: bytes) -> bytes:
    """Prefix ``payload`` with its length as a 4-byte big-endian integer."""
    if len(payload) > MAX_FRAME_LENGTH:
        raise KvsError("IO error: frame size too big")
    return _HEADER.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Optional[bytes]:
    """Read one length-delimited frame; return ``None`` at a clean end of stream."""
    try:
        header = await reader.readexactly(_HEADER.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise KvsError("IO error: bytes remaining on stream") from exc
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc
    (length,) = _HEADER.unpack(header)
    if length > MAX_FRAME_LENGTH:
        raise KvsError("IO error: frame size too big")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise KvsError("IO error: bytes remaining on stream") from exc
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _encode_response(kind: str, payload: Optional[str] = None) -> bytes:
    if kind in (_SET, _REMOVE):
        return _dumps(kind)
    return _dumps({kind: payload})


def _decode_response(data: bytes) -> tuple[str, Optional[str]]:
    try:
        obj = json.loads(data)
    except ValueError as exc:
        raise KvsError(f"serde_json error: {exc}") from exc
    if obj in (_SET, _REMOVE):
        return obj, None
    if isinstance(obj, dict) and len(obj) == 1:
        ((tag, body),) = obj.items()
        if tag == _GET and (body is None or isinstance(body, str)):
            return _GET, body
        if tag == _ERR and isinstance(body, str):
            return _ERR, body
    raise KvsError("serde_json error: invalid response")


def _socket_address(addr: Address) -> tuple[str, int]:
    if isinstance(addr, str):
        return parse_addr(addr)
    return str(addr[0]), int(addr[1])


class AsyncEngine:
    """Runs a blocking engine's operations on a thread pool and awaits them."""

    def __init__(self, engine: KvsEngine, pool: ThreadPool) -> None:
        self.engine = engine
        self.pool = pool

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def deliver(result: Any, error: Optional[BaseException]) -> None:
            if future.cancelled():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def job() -> None:
            try:
                outcome: tuple[Any, Optional[BaseException]] = (func(*args), None)
            except Exception as exc:
                outcome = (None, exc)
            try:
                loop.call_soon_threadsafe(deliver, *outcome)
            except RuntimeError:
                logger.error("Receiving end is dropped")

        self.pool.spawn(job)
        return await future

    async def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``."""
        await self._run(self.engine.set, key, value)

    async def get(self, key: str) -> Optional[str]:
        """Return the value of ``key``, or ``None``."""
        return await self._run(self.engine.get, key)

    async def remove(self, key: str) -> None:
        """Remove ``key``; raise KeyNotFoundError if it does not exist."""
        await self._run(self.engine.remove, key)


class AsyncKvsClient:
    """An asynchronous connection to a key/value server."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def _send_request(self, request: Request) -> Optional[tuple[str, Optional[str]]]:
        try:
            self._writer.write(encode_frame(request_to_wire(request)))
            await self._writer.drain()
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        frame = await read_frame(self._reader)
        if frame is None:
            return None
        return _decode_response(frame)

    async def _call(self, request: Request, expected: str) -> Optional[str]:
        reply = await self._send_request(request)
        if reply is None:
            raise KvsError("No response received")
        kind, payload = reply
        if kind == _ERR:
            raise KvsError(payload)
        if kind != expected:
            raise KvsError("Invalid response")
        return payload

    async def get(self, key: str) -> Optional[str]:
        """Return the value of ``key`` on the server, or ``None``."""
        return await self._call(GetRequest(key), _GET)

    async def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value`` on the server."""
        await self._call(SetRequest(key, value), _SET)

    async def remove(self, key: str) -> None:
        """Remove ``key`` on the server; raise KvsError if that fails."""
        await self._call(RemoveRequest(key), _REMOVE)

    async def close(self) -> None:
        """Close the connection."""
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            pass

    async def __aenter__(self) -> "AsyncKvsClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


async def connect(addr: Address) -> AsyncKvsClient:
    """Open a connection to the server at ``addr``."""
    host, port = _socket_address(addr)
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc
    return AsyncKvsClient(reader, writer)


class AsyncKvsServer:
    """Serves requests on an AsyncEngine, one task per connection."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped: Optional[asyncio.Event] = None
        self._tasks: set[asyncio.Task] = set()

    async def start(self, addr: Address) -> tuple[str, int]:
        """Start listening on ``addr``; return the bound ``(host, port)``."""
        host, port = _socket_address(addr)
        try:
            self._server = await asyncio.start_server(self._handle, host, port)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        self._stopped = asyncio.Event()
        bound = self._server.sockets[0].getsockname()
        return bound[0], bound[1]

    async def stop(self) -> None:
        """Stop listening and drop open connections."""
        server = self._server
        if server is None:
            return
        self._server = None
        server.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await server.wait_closed()
        if self._stopped is not None:
            self._stopped.set()

    async def run(self, addr: Address) -> None:
        """Listen on ``addr`` and serve until ``stop`` is called."""
        await self.start(addr)
        assert self._stopped is not None
        await self._stopped.wait()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await self._serve(reader, writer)
        except (KvsError, OSError) as exc:
            logger.error("Error on serving client: %s", exc)
        finally:
            if task is not None:
                self._tasks.discard(task)
            writer.close()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while (frame := await read_frame(reader)) is not None:
            writer.write(encode_frame(await self._respond(frame)))
            await writer.drain()

    async def _respond(self, frame: bytes) -> bytes:
        try:
            request = request_from_wire(frame)
            if isinstance(request, GetRequest):
                return _encode_response(_GET, await self.engine.get(request.key))
            if isinstance(request, SetRequest):
                await self.engine.set(request.key, request.value)
                return _encode_response(_SET)
            await self.engine.remove(request.key)
            return _encode_response(_REMOVE)
        except KvsError as exc:
            return _encode_response(_ERR, str(exc))