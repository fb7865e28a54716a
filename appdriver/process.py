"""Application server process supervision."""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import IO

from appdriver.config import DriverConfig
from appdriver.errors import LaunchError, LaunchTimeout
from appdriver.logs import LogBuffer

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
STOP_GRACE = 3.0

# Ports owned by live AppProcess instances in this interpreter.
_claimed_ports: set[int] = set()
_ports_lock = threading.Lock()


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        return sock.getsockname()[1]
    finally:
        sock.close()


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Check if something is accepting connections on the port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(0.5)
    try:
        sock.connect((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def _claim_port(port: int, host: str) -> None:
    with _ports_lock:
        if port in _claimed_ports:
            raise LaunchError(f"Port {port} is already owned by another live session")
        if is_port_in_use(port, host):
            raise LaunchError(f"Port {port} on {host} is already in use")
        _claimed_ports.add(port)


def _release_port(port: int) -> None:
    with _ports_lock:
        _claimed_ports.discard(port)


class AppProcess:
    """Runs the application under test as a child process.

    Output is drained by reader threads into the session's ``LogBuffer`` so a
    chatty child never blocks on a full pipe.
    """

    def __init__(self, config: DriverConfig, logs: LogBuffer | None = None):
        self.config = config
        self.logs = logs if logs is not None else LogBuffer()
        self.port: int | None = None
        self._proc: subprocess.Popen | None = None
        self._readers: list[threading.Thread] = []
        self._stopped = False

    @property
    def url(self) -> str:
        if self.port is None:
            raise LaunchError("Application has not been started")
        return f"http://{self.config.host}:{self.port}/"

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.poll() if self._proc else None

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> AppProcess:
        """Launch the app and block until its port accepts connections."""
        if self._proc is not None:
            raise LaunchError("Application process was already started")
        config = self.config
        port = config.port or find_free_port(config.host)
        _claim_port(port, config.host)
        self.port = port

        cmd = config.launch_command(port)
        env = dict(os.environ)
        env.update(config.env)
        env["APPDRIVER_PORT"] = str(port)
        if config.seed is not None:
            env["APPDRIVER_SEED"] = str(config.seed)
            if 0 <= config.seed < 2**32:
                env.setdefault("PYTHONHASHSEED", str(config.seed))

        logger.info(f"Starting app on port {port}: {' '.join(cmd)}")
        try:
            self._proc = subprocess.Popen(
                cmd,
                cwd=str(Path(config.app_dir).resolve()),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            _release_port(port)
            self._stopped = True
            raise LaunchError(f"Could not start {cmd[0]!r}: {e}")

        self._readers = [
            self._spawn_reader(self._proc.stdout, "info"),
            self._spawn_reader(self._proc.stderr, "warning"),
        ]

        try:
            self._wait_until_serving(port)
        except LaunchError:
            self.stop()
            raise
        logger.info(f"App is serving at {self.url}")
        return self

    def _spawn_reader(self, stream: IO[bytes], level: str) -> threading.Thread:
        def _drain():
            try:
                for raw in iter(stream.readline, b""):
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if line:
                        self.logs.append("server", level, line)
            except (OSError, ValueError):
                # Pipe closed underneath us during teardown.
                pass

        thread = threading.Thread(target=_drain, name=f"appdriver-{level}-reader", daemon=True)
        thread.start()
        return thread

    def _wait_until_serving(self, port: int) -> None:
        deadline = time.monotonic() + self.config.load_timeout
        while time.monotonic() < deadline:
            code = self._proc.poll()
            if code is not None:
                self._join_readers(1.0)
                raise LaunchError(
                    f"Application exited with code {code} before serving on port {port}",
                    self.logs.entries("server"),
                )
            if is_port_in_use(port, self.config.host):
                return
            time.sleep(POLL_INTERVAL)
        raise LaunchTimeout(
            f"Application did not start serving on port {port} "
            f"within {self.config.load_timeout:.1f}s",
            self.logs.entries("server"),
        )

    def _join_readers(self, timeout: float) -> None:
        for thread in self._readers:
            thread.join(timeout)

    def _signal(self, sig: int) -> None:
        proc = self._proc
        try:
            if sys.platform != "win32":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def stop(self) -> None:
        """Terminate the app; escalate to SIGKILL if it ignores SIGTERM.

        Calling this more than once is a no-op.
        """
        if self._stopped:
            return
        self._stopped = True
        proc = self._proc
        try:
            if proc is not None and proc.poll() is None:
                self._signal(signal.SIGTERM)
                try:
                    proc.wait(timeout=STOP_GRACE)
                except subprocess.TimeoutExpired:
                    logger.warning(f"App (pid {proc.pid}) ignored SIGTERM; killing it")
                    self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))
                    proc.wait(timeout=STOP_GRACE)
            self._join_readers(1.0)
        finally:
            # A reader still blocked in readline() owns its stream.
            if proc is not None and not any(t.is_alive() for t in self._readers):
                for stream in (proc.stdout, proc.stderr):
                    if stream is not None:
                        stream.close()
            if self.port is not None:
                _release_port(self.port)
            logger.info("App process stopped")
