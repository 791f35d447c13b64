"""Log-structured key/value store kept in generation-numbered log files."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Optional, Union

from .engine import KvsEngine
from .errors import KeyNotFoundError, KvsError, UnexpectedCommandTypeError

logger = logging.getLogger(__name__)

COMPACTION_THRESHOLD = 1024 * 1024

_WHITESPACE = re.compile(r"[ \t\n\r]*")

_SET = "Set"
_REMOVE = "Remove"


@dataclass(frozen=True)
class _CommandPos:
    """Where a serialized command lives: log generation, byte offset, byte length."""

    gen: int
    pos: int
    length: int


@dataclass(frozen=True)
class _Command:
    kind: str
    key: str
    value: Optional[str] = None


@contextmanager
def _io_errors() -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _encode_set(key: str, value: str) -> bytes:
    return _dumps({_SET: {"key": key, "value": value}})


def _encode_remove(key: str) -> bytes:
    return _dumps({_REMOVE: {"key": key}})


def _string_field(fields: Any, name: str) -> str:
    if not isinstance(fields, dict) or not isinstance(fields.get(name), str):
        raise KvsError(f"serde_json error: missing or invalid field `{name}`")
    return fields[name]


def _decode_command(obj: Any) -> _Command:
    if not isinstance(obj, dict) or len(obj) != 1:
        raise KvsError("serde_json error: expected a command variant object")
    ((tag, fields),) = obj.items()
    if tag == _SET:
        return _Command(_SET, _string_field(fields, "key"), _string_field(fields, "value"))
    if tag == _REMOVE:
        return _Command(_REMOVE, _string_field(fields, "key"))
    raise KvsError(f"serde_json error: unknown variant `{tag}`")


def _parse_command(data: bytes) -> _Command:
    try:
        obj = json.loads(data)
    except ValueError as exc:
        raise KvsError(f"serde_json error: {exc}") from exc
    return _decode_command(obj)


def _iter_commands(text: str) -> Iterator[tuple[int, int, _Command]]:
    """Yield ``(start, end, command)`` with byte offsets for each command in ``text``."""
    decoder = json.JSONDecoder()
    index = 0
    byte_pos = 0
    while True:
        begin = index
        index = _WHITESPACE.match(text, index).end()
        if index == len(text):
            return
        try:
            obj, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError as exc:
            raise KvsError(f"serde_json error: {exc}") from exc
        new_byte_pos = byte_pos + len(text[begin:end].encode("utf-8"))
        yield byte_pos, new_byte_pos, _decode_command(obj)
        byte_pos = new_byte_pos
        index = end


def _log_path(directory: Path, gen: int) -> Path:
    return directory / f"{gen}.log"


def _sorted_gen_list(directory: Path) -> list[int]:
    """Return the generation numbers of the log files in ``directory``, sorted."""
    gens = []
    for entry in directory.iterdir():
        if entry.suffix != ".log" or not entry.is_file():
            continue
        stem = entry.stem
        if stem.isascii() and stem.isdigit():
            gens.append(int(stem))
    return sorted(gens)


class _LogWriter:
    """Appends to one log file and tracks the byte position of its end."""

    def __init__(self, path: Path) -> None:
        with _io_errors():
            self._file: BinaryIO = open(path, "ab")
            self.pos = self._file.tell()

    def append(self, data: bytes) -> tuple[int, int]:
        """Write ``data`` and flush it; return its byte range in the file."""
        start = self.pos
        with _io_errors():
            self._file.write(data)
            self._file.flush()
        self.pos += len(data)
        return start, self.pos

    def close(self) -> None:
        with _io_errors():
            self._file.close()


class _LogReader:
    """Reads commands from log files, with separate file handles per thread.

    ``safe_point`` is the generation of the latest compaction file; handles to
    older generations are no longer needed and are closed on the next read.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self.safe_point = 0
        self._local = threading.local()
        self._lock = threading.Lock()
        self._all_handles: set[BinaryIO] = set()

    def _handles(self) -> dict[int, BinaryIO]:
        handles = getattr(self._local, "handles", None)
        if handles is None:
            handles = self._local.handles = {}
        return handles

    def close_stale_handles(self) -> None:
        handles = self._handles()
        safe_point = self.safe_point
        for gen in [gen for gen in handles if gen < safe_point]:
            handle = handles.pop(gen)
            with self._lock:
                self._all_handles.discard(handle)
            handle.close()

    def read(self, cmd_pos: _CommandPos) -> bytes:
        """Return the raw bytes of the command at ``cmd_pos``."""
        self.close_stale_handles()
        handles = self._handles()
        handle = handles.get(cmd_pos.gen)
        with _io_errors():
            if handle is None:
                handle = open(_log_path(self._directory, cmd_pos.gen), "rb")
                handles[cmd_pos.gen] = handle
                with self._lock:
                    self._all_handles.add(handle)
            handle.seek(cmd_pos.pos)
            return handle.read(cmd_pos.length)

    def close(self) -> None:
        with self._lock:
            handles = list(self._all_handles)
            self._all_handles.clear()
        for handle in handles:
            handle.close()


class KvStore(KvsEngine):
    """Stores string key/value pairs in append-only log files.

    Log files are named after increasing generation numbers with a ``.log``
    extension. An in-memory index maps each key to the location of its latest
    ``Set`` command. Stale entries are compacted away once they take up more
    than ``COMPACTION_THRESHOLD`` bytes. One instance may be shared by threads.
    """

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self._path = Path(path)
        with _io_errors():
            self._path.mkdir(parents=True, exist_ok=True)
            gens = _sorted_gen_list(self._path)

        self._index: dict[str, _CommandPos] = {}
        uncompacted = 0
        for gen in gens:
            uncompacted += self._load(gen)

        self._current_gen = (gens[-1] if gens else 0) + 1
        self._writer = _LogWriter(_log_path(self._path, self._current_gen))
        self._uncompacted = uncompacted
        self._reader = _LogReader(self._path)
        self._write_lock = threading.Lock()
        self._closed = False

    def _load(self, gen: int) -> int:
        """Replay one log file into the index; return the stale byte count."""
        with _io_errors():
            raw = _log_path(self._path, gen).read_bytes()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise KvsError(f"serde_json error: {exc}") from exc
        uncompacted = 0
        for start, end, command in _iter_commands(text):
            if command.kind == _SET:
                old = self._index.get(command.key)
                if old is not None:
                    uncompacted += old.length
                self._index[command.key] = _CommandPos(gen, start, end - start)
            else:
                old = self._index.pop(command.key, None)
                if old is not None:
                    uncompacted += old.length
                # the remove command itself goes away in the next compaction
                uncompacted += end - start
        return uncompacted

    def _check_open(self) -> None:
        if self._closed:
            raise KvsError("The store is closed")

    def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``, overwriting any previous value."""
        with self._write_lock:
            self._check_open()
            start, end = self._writer.append(_encode_set(key, value))
            old = self._index.get(key)
            if old is not None:
                self._uncompacted += old.length
            self._index[key] = _CommandPos(self._current_gen, start, end - start)
            if self._uncompacted > COMPACTION_THRESHOLD:
                self._compact()

    def get(self, key: str) -> Optional[str]:
        """Return the value of ``key``, or ``None`` if it does not exist."""
        self._check_open()
        while True:
            cmd_pos = self._index.get(key)
            if cmd_pos is None:
                return None
            try:
                data = self._reader.read(cmd_pos)
            except KvsError:
                # a compaction may have moved the entry and removed its file
                if self._index.get(key) != cmd_pos:
                    continue
                raise
            command = _parse_command(data)
            if command.kind != _SET:
                raise UnexpectedCommandTypeError()
            return command.value

    def remove(self, key: str) -> None:
        """Remove ``key``; raise KeyNotFoundError if it does not exist."""
        with self._write_lock:
            self._check_open()
            if key not in self._index:
                raise KeyNotFoundError()
            start, end = self._writer.append(_encode_remove(key))
            old = self._index.pop(key)
            self._uncompacted += old.length + (end - start)
            if self._uncompacted > COMPACTION_THRESHOLD:
                self._compact()

    def compact(self) -> None:
        """Rewrite the live entries into a fresh log and delete stale logs."""
        with self._write_lock:
            self._check_open()
            self._compact()

    def _compact(self) -> None:
        compaction_gen = self._current_gen + 1
        self._current_gen += 2
        self._writer.close()
        self._writer = _LogWriter(_log_path(self._path, self._current_gen))

        compaction_writer = _LogWriter(_log_path(self._path, compaction_gen))
        try:
            for key, cmd_pos in sorted(self._index.items()):
                start, end = compaction_writer.append(self._reader.read(cmd_pos))
                self._index[key] = _CommandPos(compaction_gen, start, end - start)
        finally:
            compaction_writer.close()

        self._reader.safe_point = compaction_gen
        self._reader.close_stale_handles()

        # Files still held open by other threads may refuse deletion on some
        # platforms; they are removed by a later compaction.
        with _io_errors():
            stale_gens = [gen for gen in _sorted_gen_list(self._path) if gen < compaction_gen]
        for gen in stale_gens:
            file_path = _log_path(self._path, gen)
            try:
                file_path.unlink()
            except OSError as exc:
                logger.error("%s cannot be deleted: %s", file_path, exc)
        self._uncompacted = 0

    def close(self) -> None:
        """Close all log files; later operations raise KvsError."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._writer.close()
            self._reader.close()

    def __enter__(self) -> "KvStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()