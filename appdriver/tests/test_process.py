"""Tests for appdriver.process module.

These start real child processes: a stdlib HTTP server stands in for the app.
"""

import sys
import time
import urllib.request
from pathlib import Path

import pytest

import appdriver
from appdriver.config import DriverConfig
from appdriver.errors import LaunchError, LaunchTimeout
from appdriver.logs import LogBuffer
from appdriver.process import AppProcess, find_free_port, is_port_in_use

HTTP_SERVER = (sys.executable, "-m", "http.server", "{port}", "--bind", "{host}")
PACKAGE_ROOT = Path(appdriver.__file__).resolve().parent.parent


def make_config(tmp_path: Path, **overrides) -> DriverConfig:
    defaults = dict(
        app_dir=str(tmp_path),
        command=HTTP_SERVER,
        load_timeout=10.0,
        env={"PYTHONUNBUFFERED": "1"},
    )
    defaults.update(overrides)
    return DriverConfig(**defaults)


@pytest.fixture
def app(tmp_path: Path):
    (tmp_path / "index.html").write_text("<h1>hello</h1>")
    proc = AppProcess(make_config(tmp_path), LogBuffer())
    proc.start()
    yield proc
    proc.stop()


def wait_for_log(logs: LogBuffer, text: str, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if any(text in e.message for e in logs.entries("server")):
            return True
        time.sleep(0.05)
    return False


class TestPorts:
    def test_free_port_is_not_in_use(self):
        port = find_free_port()
        assert 0 < port < 65536
        assert not is_port_in_use(port)


class TestAppProcess:
    def test_start_serves_http(self, app: AppProcess):
        assert app.is_alive()
        with urllib.request.urlopen(app.url, timeout=5) as resp:
            assert b"hello" in resp.read()

    def test_server_output_is_captured(self, app: AppProcess):
        with urllib.request.urlopen(app.url + "index.html", timeout=5):
            pass
        assert wait_for_log(app.logs, "GET /index.html")

    def test_stop_terminates_and_is_idempotent(self, app: AppProcess):
        app.stop()
        assert not app.is_alive()
        assert not is_port_in_use(app.port)
        app.stop()

    def test_port_owned_by_live_session(self, tmp_path: Path, app: AppProcess):
        other = AppProcess(make_config(tmp_path, port=app.port))
        with pytest.raises(LaunchError, match="already"):
            other.start()
        assert app.is_alive()

    def test_port_released_after_stop(self, tmp_path: Path, app: AppProcess):
        port = app.port
        app.stop()
        again = AppProcess(make_config(tmp_path, port=port))
        again.start()
        try:
            assert again.port == port
        finally:
            again.stop()

    def test_seed_passed_in_environment(self, tmp_path: Path):
        script = tmp_path / "serve.py"
        script.write_text(
            "import os, sys, http.server, socketserver\n"
            "print('seed=' + os.environ['APPDRIVER_SEED'], flush=True)\n"
            "port = int(sys.argv[1])\n"
            "socketserver.TCPServer(('127.0.0.1', port), http.server.SimpleHTTPRequestHandler).serve_forever()\n"
        )
        proc = AppProcess(
            make_config(tmp_path, command=(sys.executable, str(script), "{port}"), seed=7)
        )
        proc.start()
        try:
            assert wait_for_log(proc.logs, "seed=7")
        finally:
            proc.stop()

    def test_seeded_app_random_is_reproducible(self, tmp_path: Path):
        (tmp_path / "rng_server.py").write_text(
            "import random, sys, http.server, socketserver\n"
            "print(f'random={random.random()!r}', flush=True)\n"
            "port = int(sys.argv[1])\n"
            "socketserver.TCPServer(('127.0.0.1', port), http.server.SimpleHTTPRequestHandler).serve_forever()\n"
        )
        command = (sys.executable, "-m", "appdriver.seeded", "rng_server", "{port}")
        env = {"PYTHONUNBUFFERED": "1", "PYTHONPATH": str(PACKAGE_ROOT)}

        def first_random(seed):
            proc = AppProcess(make_config(tmp_path, command=command, env=env, seed=seed))
            proc.start()
            try:
                assert wait_for_log(proc.logs, "random=")
                (line,) = [e.message for e in proc.logs.entries("server") if "random=" in e.message]
                return line
            finally:
                proc.stop()

        assert first_random(7) == first_random(7)
        assert first_random(7) != first_random(8)

    def test_early_exit_reports_logs(self, tmp_path: Path):
        config = make_config(
            tmp_path,
            command=(sys.executable, "-c", "import sys; print('no such app', file=sys.stderr); sys.exit(3)"),
        )
        proc = AppProcess(config)
        with pytest.raises(LaunchError) as exc_info:
            proc.start()
        assert "exited with code 3" in str(exc_info.value)
        assert any("no such app" in e.message for e in exc_info.value.logs)
        assert not proc.is_alive()

    def test_not_serving_times_out(self, tmp_path: Path):
        config = make_config(
            tmp_path,
            command=(sys.executable, "-c", "import time; time.sleep(60)"),
            load_timeout=0.5,
        )
        proc = AppProcess(config)
        with pytest.raises(LaunchTimeout):
            proc.start()
        assert not proc.is_alive()

    def test_missing_executable(self, tmp_path: Path):
        proc = AppProcess(make_config(tmp_path, command=("definitely-not-a-real-binary-xyz",)))
        with pytest.raises(LaunchError, match="Could not start"):
            proc.start()

    def test_url_before_start(self, tmp_path: Path):
        with pytest.raises(LaunchError):
            AppProcess(make_config(tmp_path)).url
