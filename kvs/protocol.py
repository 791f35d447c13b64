"""Requests, responses and their JSON wire form."""

from __future__ import annotations

import codecs
import ipaddress
import json
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator, Optional, Union

from .errors import KvsError


@dataclass(frozen=True)
class GetRequest:
    """Ask for the value of ``key``."""

    key: str


@dataclass(frozen=True)
class SetRequest:
    """Store ``value`` under ``key``."""

    key: str
    value: str


@dataclass(frozen=True)
class RemoveRequest:
    """Remove ``key``."""

    key: str


Request = Union[GetRequest, SetRequest, RemoveRequest]


@dataclass(frozen=True)
class Response:
    """Reply to a request: a value (possibly ``None``) or an error message."""

    value: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _load(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray, str)):
        try:
            return json.loads(data)
        except ValueError as exc:
            raise KvsError(f"serde_json error: {exc}") from exc
    return data


def _single_variant(obj: Any, what: str) -> tuple[str, Any]:
    if not isinstance(obj, dict) or len(obj) != 1:
        raise KvsError(f"serde_json error: expected a {what} variant object")
    ((tag, body),) = obj.items()
    return tag, body


def _string_field(fields: Any, name: str) -> str:
    if not isinstance(fields, dict) or name not in fields:
        raise KvsError(f"serde_json error: missing field `{name}`")
    value = fields[name]
    if not isinstance(value, str):
        raise KvsError(f"serde_json error: field `{name}` must be a string")
    return value


def request_to_wire(request: Request) -> bytes:
    """Encode a request as compact JSON bytes."""
    if isinstance(request, GetRequest):
        body: dict = {"Get": {"key": request.key}}
    elif isinstance(request, SetRequest):
        body = {"Set": {"key": request.key, "value": request.value}}
    elif isinstance(request, RemoveRequest):
        body = {"Remove": {"key": request.key}}
    else:
        raise TypeError(f"not a request: {request!r}")
    return _dumps(body)


def request_from_wire(data: Any) -> Request:
    """Decode a request from JSON bytes, text or an already parsed object."""
    tag, fields = _single_variant(_load(data), "request")
    if tag == "Get":
        return GetRequest(_string_field(fields, "key"))
    if tag == "Set":
        return SetRequest(_string_field(fields, "key"), _string_field(fields, "value"))
    if tag == "Remove":
        return RemoveRequest(_string_field(fields, "key"))
    raise KvsError(f"serde_json error: unknown variant `{tag}`")


def response_to_wire(response: Response) -> bytes:
    """Encode a response as compact JSON bytes."""
    if response.is_error:
        return _dumps({"Err": response.error})
    return _dumps({"Ok": response.value})


def response_from_wire(data: Any) -> Response:
    """Decode a response from JSON bytes, text or an already parsed object."""
    tag, body = _single_variant(_load(data), "response")
    if tag == "Ok":
        if body is not None and not isinstance(body, str):
            raise KvsError("serde_json error: response value must be a string or null")
        return Response(value=body)
    if tag == "Err":
        if not isinstance(body, str):
            raise KvsError("serde_json error: error message must be a string")
        return Response(error=body)
    raise KvsError(f"serde_json error: unknown variant `{tag}`")


def parse_addr(text: str) -> tuple[str, int]:
    """Parse ``IP:PORT`` (``[IPv6]:PORT`` for IPv6) into ``(host, port)``.

    Raises ValueError when the text is not a socket address.
    """
    host, sep, port_text = text.rpartition(":")
    if not sep:
        raise ValueError(f"invalid socket address syntax: {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host, version = host[1:-1], 6
    else:
        version = 4
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"invalid socket address syntax: {text!r}") from None
    if ip.version != version:
        raise ValueError(f"invalid socket address syntax: {text!r}")
    if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > 0xFFFF:
        raise ValueError(f"invalid socket address syntax: {text!r}")
    return str(ip), int(port_text)


_WHITESPACE = " \t\n\r"
_PENDING = object()


class JsonStream:
    """Reads a sequence of concatenated JSON values from a binary stream."""

    _CHUNK = 8192

    def __init__(self, rfile: BinaryIO) -> None:
        self._read = getattr(rfile, "read1", None) or rfile.read
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._json = json.JSONDecoder()
        self._text = ""
        self._eof = False

    def read(self) -> Any:
        """Return the next value, or ``None`` at a clean end of stream."""
        while True:
            self._text = self._text.lstrip(_WHITESPACE)
            if self._text:
                value = self._try_decode()
                if value is not _PENDING:
                    return value
            elif self._eof:
                return None
            self._fill()

    def __iter__(self) -> Iterator[Any]:
        while (value := self.read()) is not None:
            yield value

    def _try_decode(self) -> Any:
        try:
            value, end = self._json.raw_decode(self._text)
        except json.JSONDecodeError as exc:
            if self._eof:
                raise KvsError(f"serde_json error: {exc}") from exc
            return _PENDING
        truncatable = isinstance(value, (int, float)) and not isinstance(value, bool)
        if truncatable and end == len(self._text) and not self._eof:
            return _PENDING
        self._text = self._text[end:]
        return value

    def _fill(self) -> None:
        chunk = self._read(self._CHUNK)
        try:
            if chunk:
                self._text += self._utf8.decode(chunk)
            else:
                self._eof = True
                self._text += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise KvsError(f"serde_json error: {exc}") from exc