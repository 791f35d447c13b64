import logging
import os
import socket
import subprocess
import sys
import time
from contextlib import contextmanager
from pathlib import Path

import pytest

import kvs.server_cli as server_cli
from kvs.client import KvsClient
from kvs.errors import KvsError
from kvs.server_cli import Engine, current_engine, main


def free_port():
    with socket.create_server(("127.0.0.1", 0)) as sock:
        return sock.getsockname()[1]


def wait_for_port(port, proc, timeout=15):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            raise AssertionError(f"server exited with {proc.returncode}")
        try:
            socket.create_connection(("127.0.0.1", port), timeout=0.5).close()
            return
        except OSError:
            time.sleep(0.05)
    raise AssertionError("server did not start")


@contextmanager
def server_process(directory, engine, port, stderr_path=None):
    package_root = str(Path(server_cli.__file__).resolve().parent.parent)
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [package_root, env.get("PYTHONPATH")]))
    stderr = open(stderr_path, "wb") if stderr_path else subprocess.DEVNULL
    proc = subprocess.Popen(
        [sys.executable, "-m", "kvs.server_cli", "--engine", engine, "--addr", f"127.0.0.1:{port}"],
        cwd=directory,
        env=env,
        stderr=stderr,
        stdout=subprocess.DEVNULL,
    )
    try:
        wait_for_port(port, proc)
        yield proc
    finally:
        proc.terminate()
        proc.wait(timeout=10)
        if stderr_path:
            stderr.close()


def test_current_engine_missing(tmp_path):
    assert current_engine(tmp_path) is None


@pytest.mark.parametrize("text, expected", [("kvs", Engine.KVS), ("sled", Engine.SLED)])
def test_current_engine_recorded(tmp_path, text, expected):
    (tmp_path / "engine").write_text(text)
    assert current_engine(tmp_path) is expected


def test_current_engine_invalid(tmp_path, caplog):
    (tmp_path / "engine").write_text("bogus")
    with caplog.at_level(logging.WARNING):
        assert current_engine(tmp_path) is None
    assert "The content of engine file is invalid" in caplog.text


def test_version(capsys):
    with pytest.raises(SystemExit) as info:
        main(["-V"])
    out, _ = capsys.readouterr()
    assert info.value.code == 0
    assert out.startswith("kvs-server ")


@pytest.mark.parametrize(
    "argv",
    [["--addr", "invalid-addr"], ["--engine", "unknown"], ["--unknown-flag"]],
)
def test_invalid_arguments(argv, capsys):
    with pytest.raises(SystemExit) as info:
        main(argv)
    capsys.readouterr()
    assert info.value.code == 2


def test_wrong_engine_in_process(tmp_path, monkeypatch, caplog):
    (tmp_path / "engine").write_text("sled")
    monkeypatch.chdir(tmp_path)
    with caplog.at_level(logging.ERROR):
        code = main(["--engine", "kvs", "--addr", f"127.0.0.1:{free_port()}"])
    assert code == 1
    assert "Wrong engine!" in caplog.text
    assert (tmp_path / "engine").read_text() == "sled"


def test_log_configuration(tmp_path):
    port = free_port()
    stderr_path = tmp_path / "stderr"
    with server_process(tmp_path, "kvs", port, stderr_path):
        pass
    content = stderr_path.read_text()
    assert "kvs-server" in content
    assert "Storage engine: kvs" in content
    assert f"127.0.0.1:{port}" in content
    assert (tmp_path / "engine").read_text() == "kvs"
    assert current_engine(tmp_path) is Engine.KVS


@pytest.mark.parametrize("first, second", [("sled", "kvs"), ("kvs", "sled")])
def test_wrong_engine_after_run(tmp_path, monkeypatch, first, second):
    with server_process(tmp_path, first, free_port()):
        pass
    monkeypatch.chdir(tmp_path)
    assert main(["--engine", second, "--addr", f"127.0.0.1:{free_port()}"]) == 1


@pytest.mark.parametrize("engine", ["kvs", "sled"])
def test_access_server(tmp_path, engine):
    port = free_port()
    with server_process(tmp_path, engine, port):
        with KvsClient(("127.0.0.1", port)) as client:
            client.set("key1", "value1")
            assert client.get("key1") == "value1"
            client.set("key1", "value2")
            assert client.get("key1") == "value2"
            assert client.get("key2") is None
            with pytest.raises(KvsError, match="Key not found"):
                client.remove("key2")
            client.set("key2", "value3")
            client.remove("key1")

    with server_process(tmp_path, engine, port):
        with KvsClient(("127.0.0.1", port)) as client:
            assert client.get("key2") == "value3"
            assert client.get("key1") is None


def test_engine_defaults_to_recorded(tmp_path):
    port = free_port()
    with server_process(tmp_path, "sled", port):
        pass
    assert current_engine(tmp_path) is Engine.SLED