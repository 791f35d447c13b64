import socket
import threading
from contextlib import contextmanager

import pytest

from kvs.client_cli import main
from kvs.kv_store import KvStore
from kvs.server import KvsServer
from kvs.thread_pool import NaiveThreadPool


@contextmanager
def running_server(directory):
    store = KvStore(directory)
    server = KvsServer(store, NaiveThreadPool(1))
    host, port = server.bind(("127.0.0.1", 0))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"{host}:{port}"
    finally:
        server.shutdown()
        thread.join(timeout=5)
        store.close()


def run(capsys, *args):
    code = main(list(args))
    out, err = capsys.readouterr()
    return code, out, err


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["get"],
        ["get", "extra", "field"],
        ["get", "key", "--addr", "invalid-addr"],
        ["get", "key", "--unknown-flag"],
        ["set"],
        ["set", "missing_field"],
        ["set", "key", "value", "extra_field"],
        ["set", "key", "value", "--addr", "invalid-addr"],
        ["rm"],
        ["rm", "extra", "field"],
        ["rm", "key", "--addr", "invalid-addr"],
        ["rm", "key", "--unknown-flag"],
        ["unknown"],
    ],
)
def test_invalid_arguments_fail(argv, capsys):
    with pytest.raises(SystemExit) as info:
        main(argv)
    capsys.readouterr()
    assert info.value.code == 2


def test_version(capsys):
    with pytest.raises(SystemExit) as info:
        main(["-V"])
    out, _ = capsys.readouterr()
    assert info.value.code == 0
    assert out.startswith("kvs-client ")


def test_access_server(tmp_path, capsys):
    with running_server(tmp_path) as addr:
        assert run(capsys, "set", "key1", "value1", "--addr", addr)[:2] == (0, "")
        assert run(capsys, "get", "key1", "--addr", addr)[:2] == (0, "value1\n")
        assert run(capsys, "set", "key1", "value2", "--addr", addr)[:2] == (0, "")
        assert run(capsys, "get", "key1", "--addr", addr)[:2] == (0, "value2\n")

        code, out, _ = run(capsys, "get", "key2", "--addr", addr)
        assert code == 0
        assert "Key not found" in out

        code, _, err = run(capsys, "rm", "key2", "--addr", addr)
        assert code == 1
        assert "Key not found" in err

        assert run(capsys, "set", "key2", "value3", "--addr", addr)[:2] == (0, "")
        assert run(capsys, "rm", "key1", "--addr", addr)[:2] == (0, "")

    with running_server(tmp_path) as addr:
        code, out, _ = run(capsys, "get", "key2", "--addr", addr)
        assert code == 0
        assert "value3" in out
        code, out, _ = run(capsys, "get", "key1", "--addr", addr)
        assert code == 0
        assert "Key not found" in out


def test_unreachable_server(capsys):
    with socket.create_server(("127.0.0.1", 0)) as probe:
        port = probe.getsockname()[1]
    code, out, err = run(capsys, "get", "key", "--addr", f"127.0.0.1:{port}")
    assert code == 1
    assert out == ""
    assert err.startswith("IO error")