# kvs

A small persistent key/value store for string keys and string values,
written with the standard library only.

It comes with:

- `kvs.kv_store.KvStore`, a log-structured storage engine. Every write is
  appended as a JSON command to a numbered `.log` file in a directory; an
  in-memory index maps each key to the position of its latest value. Once
  more than 1 MiB (`COMPACTION_THRESHOLD`) of stale entries has piled up, the
  live entries are rewritten into a fresh log and the old logs are deleted.
  `compact()` does the same on demand.
- `kvs.engine.SledKvsEngine`, a second engine that keeps its data in an
  SQLite database file (`sled.sqlite3`) inside the given directory.
- Both engines implement `kvs.engine.KvsEngine` (`set`, `get`, `remove`,
  `close`) and can be used as context managers.
- `kvs.server.KvsServer` and `kvs.client.KvsClient`, a TCP server and a
  blocking client that exchange a stream of JSON requests and responses.
- Thread pools in `kvs.thread_pool` (`NaiveThreadPool`,
  `SharedQueueThreadPool`, `ExecutorThreadPool`); the server hands each
  connection to one as a job.
- `kvs.aio`, an asyncio server (`AsyncKvsServer`) and client
  (`AsyncKvsClient`, opened with `connect`) that exchange JSON messages in
  4-byte length-prefixed frames, with `AsyncEngine` running blocking engine
  calls on a thread pool.

Errors are raised as `kvs.errors.KvsError`; removing a missing key raises its
subclass `KeyNotFoundError` (message `Key not found`).

## Installation

```
pip install .
```

## Command line

Start a server in the directory that should hold the data:

```
kvs-server --addr 127.0.0.1:4000 --engine kvs
```

`--addr` defaults to `127.0.0.1:4000` and `--engine` accepts `kvs` or `sled`.
The chosen engine is recorded in a file named `engine` in the current
directory; starting the server again in the same directory with the other
engine is refused with `Wrong engine!` and exit status 1. Without `--engine`,
the recorded engine is used, or `kvs` if none has been recorded yet. The
server logs its version, engine and address to standard error at start-up.

Talk to it with the client:

```
kvs-client set key1 value1
kvs-client get key1
kvs-client rm key1
```

Every client subcommand takes `--addr IP:PORT` as well (default
`127.0.0.1:4000`). `get` prints the value, or `Key not found` when the key is
absent. An error from the server, such as `rm` on a missing key, is printed
to standard error and the client exits with status 1. Both commands print
their version with `-V`.

## Library use

Using the storage engine directly:

```python
from kvs.kv_store import KvStore
from kvs.errors import KeyNotFoundError

with KvStore("data") as store:
    store.set("key", "value")
    assert store.get("key") == "value"
    assert store.get("missing") is None

    store.remove("key")
    try:
        store.remove("key")
    except KeyNotFoundError:
        pass
```

Reopening a `KvStore` on the same directory replays the logs and restores
every key. One instance may be shared between threads.

Running a server from code:

```python
import threading

from kvs.kv_store import KvStore
from kvs.server import KvsServer
from kvs.thread_pool import SharedQueueThreadPool

server = KvsServer(KvStore("data"), SharedQueueThreadPool(4))
host, port = server.bind("127.0.0.1:0")   # port 0 picks a free port
threading.Thread(target=server.serve_forever, daemon=True).start()
# ... later
server.shutdown()
```

`server.run(addr)` binds and serves in one blocking call.

Reaching it with the client (an `IP:PORT` string or a `(host, port)` tuple):

```python
from kvs.client import KvsClient

with KvsClient((host, port)) as client:
    client.set("key", "value")
    print(client.get("key"))
    client.remove("key")
```

Errors reported by the server arrive at the client as `KvsError` carrying the
server's message, for example `Key not found`.

The asyncio variant, with its own server:

```python
import asyncio

from kvs import aio
from kvs.kv_store import KvStore
from kvs.thread_pool import SharedQueueThreadPool

async def demo():
    engine = aio.AsyncEngine(KvStore("data"), SharedQueueThreadPool(4))
    server = aio.AsyncKvsServer(engine)
    addr = await server.start("127.0.0.1:0")

    client = await aio.connect(addr)
    await client.set("key", "value")
    print(await client.get("key"))
    await client.remove("key")
    await client.close()

    await server.stop()

asyncio.run(demo())
```

## What it does not do

- The asyncio server and client use length-prefixed frames, while
  `kvs-server`, `KvsServer` and `KvsClient` use an unframed JSON stream; the
  two families cannot talk to each other. There is no command that starts
  the asyncio server or client; use `kvs.aio` from code.
- There is no authentication or encryption on either server.
- Values are strings only; there is no listing, scanning or expiry of keys.

## Running the tests

```
pip install .[test]
pytest
```