"""Command line client: ``kvs-client get|set|rm``."""

from __future__ import annotations

import argparse
import sys
from importlib import metadata
from typing import Optional, Sequence

from .client import KvsClient
from .errors import KvsError
from .protocol import parse_addr

DEFAULT_ADDRESS = "127.0.0.1:4000"


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


def _add_addr(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--addr",
        type=_socket_addr,
        default=DEFAULT_ADDRESS,
        metavar="IP:PORT",
        help="Sets the server address",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kvs-client")
    parser.add_argument("-V", "--version", action="version", version=f"kvs-client {_version()}")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    get = commands.add_parser("get", help="Get the string value of a given string key")
    get.add_argument("key", metavar="KEY", help="A string key")
    _add_addr(get)

    set_ = commands.add_parser("set", help="Set the value of a string key to a string")
    set_.add_argument("key", metavar="KEY", help="A string key")
    set_.add_argument("value", metavar="VALUE", help="The string value of the key")
    _add_addr(set_)

    rm = commands.add_parser("rm", help="Remove a given string key")
    rm.add_argument("key", metavar="KEY", help="A string key")
    _add_addr(rm)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the client; return the process exit code."""
    args = _build_parser().parse_args(argv)
    try:
        with KvsClient(args.addr) as client:
            if args.command == "get":
                value = client.get(args.key)
                print(value if value is not None else "Key not found")
            elif args.command == "set":
                client.set(args.key, args.value)
            else:
                client.remove(args.key)
    except KvsError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())