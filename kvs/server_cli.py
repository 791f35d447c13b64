"""Command line server: ``kvs-server [--addr IP:PORT] [--engine kvs|sled]``."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Optional, Sequence, Union

from .engine import KvsEngine, SledKvsEngine
from .errors import KvsError
from .kv_store import KvStore
from .protocol import parse_addr
from .server import KvsServer
from .thread_pool import ExecutorThreadPool

logger = logging.getLogger(__name__)

DEFAULT_LISTENING_ADDRESS = "127.0.0.1:4000"
ENGINE_FILE = "engine"


class Engine(Enum):
    """Storage engines the server can run."""

    KVS = "kvs"
    SLED = "sled"

    def __str__(self) -> str:
        return self.value


DEFAULT_ENGINE = Engine.KVS


def _version() -> str:
    try:
        return metadata.version("kvs")
    except metadata.PackageNotFoundError:
        return "0.1.0"


def _socket_addr(text: str) -> tuple[str, int]:
    try:
        return parse_addr(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _format_addr(addr: tuple[str, int]) -> str:
    host, port = addr
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kvs-server")
    parser.add_argument("-V", "--version", action="version", version=f"kvs-server {_version()}")
    parser.add_argument(
        "--addr",
        type=_socket_addr,
        default=DEFAULT_LISTENING_ADDRESS,
        metavar="IP:PORT",
        help="Sets the listening address",
    )
    parser.add_argument(
        "--engine",
        type=Engine,
        choices=list(Engine),
        metavar="ENGINE-NAME",
        help="Sets the storage engine (kvs or sled)",
    )
    return parser


def current_engine(directory: Union[str, os.PathLike, None] = None) -> Optional[Engine]:
    """Return the engine recorded in ``directory``, or ``None`` if there is none.

    An unreadable engine name is logged as a warning and treated as absent.
    """
    path = Path.cwd() if directory is None else Path(directory)
    engine_file = path / ENGINE_FILE
    if not engine_file.exists():
        return None
    content = engine_file.read_text(encoding="utf-8")
    for engine in Engine:
        if content.lower() == engine.value:
            return engine
    logger.warning("The content of engine file is invalid: %r is not a valid engine", content)
    return None


def _open_engine(engine: Engine, directory: Path) -> KvsEngine:
    if engine is Engine.KVS:
        return KvStore(directory)
    return SledKvsEngine(directory)


def _run(engine: Engine, addr: tuple[str, int], directory: Path) -> None:
    logger.info("kvs-server %s", _version())
    logger.info("Storage engine: %s", engine)
    logger.info("Listening on %s", _format_addr(addr))

    try:
        (directory / ENGINE_FILE).write_text(str(engine), encoding="utf-8")
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc

    pool = ExecutorThreadPool(os.cpu_count() or 1)
    store = _open_engine(engine, directory)
    try:
        KvsServer(store, pool).run(addr)
    finally:
        store.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the server; return the process exit code."""
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args(argv)
    directory = Path.cwd()
    try:
        stored = current_engine(directory)
    except OSError as exc:
        logger.error("IO error: %s", exc)
        return 1

    engine = args.engine or stored
    if stored is not None and engine is not stored:
        logger.error("Wrong engine!")
        return 1

    try:
        _run(engine or DEFAULT_ENGINE, args.addr, directory)
    except KvsError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())