"""A persistent key/value store: log-structured and SQLite engines, thread pools,
a threaded TCP server and client, an asyncio server and client, and commands."""

__version__ = "0.1.0"

__all__ = [
    "aio",
    "client",
    "client_cli",
    "engine",
    "errors",
    "kv_store",
    "protocol",
    "server",
    "server_cli",
    "thread_pool",
]