"""Session configuration and environment-dependent defaults."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable

from appdriver.errors import ConfigError

CI_ENV_VARS = (
    "CI",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "BUILDKITE",
    "CIRCLECI",
    "JENKINS_URL",
    "TF_BUILD",
)


def is_ci() -> bool:
    """Return True when running under a continuous-integration service."""
    for name in CI_ENV_VARS:
        value = os.environ.get(name, "").strip().lower()
        if value and value not in ("0", "false", "no"):
            return True
    return False


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}")


def default_load_timeout() -> float:
    """Seconds to wait for startup; read per config, longer on CI."""
    return _env_float("APPDRIVER_LOAD_TIMEOUT", 60.0 if is_ci() else 15.0)


def default_timeout() -> float:
    return _env_float("APPDRIVER_TIMEOUT", 15.0 if is_ci() else 5.0)


def default_chrome_path() -> str:
    return os.environ.get("APPDRIVER_CHROME") or os.environ.get("CHROMOTE_CHROME", "")


# Shiny for Python, started through appdriver.seeded so ``seed`` reaches the
# app; override ``command`` for any other server.
DEFAULT_COMMAND = (
    sys.executable,
    "-m",
    "appdriver.seeded",
    "shiny",
    "run",
    "--host",
    "{host}",
    "--port",
    "{port}",
    "{app_dir}",
)

# True while the server or the reactive runtime in the page has pending work.
DEFAULT_BUSY_JS = "document.documentElement.classList.contains('shiny-busy')"

BASE_CHROME_ARGS = (
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-default-apps",
    "--disable-sync",
    "--mute-audio",
    "--no-first-run",
    "--no-default-browser-check",
    "--force-color-profile=srgb",
    "--hide-scrollbars",
)


@dataclass(frozen=True)
class DriverConfig:
    """Immutable options for one session, resolved once at creation."""

    app_dir: str = "."
    # Placeholders {host}, {port}, {app_dir} and {seed} are substituted.
    command: tuple[str, ...] = DEFAULT_COMMAND
    app_args: tuple[str, ...] = ()
    url: str | None = None
    host: str = "127.0.0.1"
    port: int | None = None
    seed: int | None = None
    env: dict[str, str] = field(default_factory=dict)

    load_timeout: float = field(default_factory=default_load_timeout)
    timeout: float = field(default_factory=default_timeout)
    idle_duration: float = 0.5
    poll_interval: float = 0.05
    busy_js: str = DEFAULT_BUSY_JS

    view: bool = False
    width: int = 992
    height: int = 744
    chrome_path: str = field(default_factory=default_chrome_path)
    chrome_args: tuple[str, ...] = ()
    no_sandbox: bool | None = None

    name: str | None = None
    variant: str | None = None
    snapshot_dir: str | None = None
    expect_values_screenshot: bool = True
    screenshot_threshold: float = 0.0
    pixel_tolerance: int = 0
    stop_on_failure: bool = False
    transform: tuple[Callable[[str], str], ...] = ()

    def __post_init__(self):
        if self.load_timeout <= 0:
            raise ConfigError("load_timeout must be positive")
        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.idle_duration < 0:
            raise ConfigError("idle_duration must not be negative")
        if self.width <= 0 or self.height <= 0:
            raise ConfigError("viewport width and height must be positive")
        if not 0 <= self.pixel_tolerance <= 255:
            raise ConfigError("pixel_tolerance must be between 0 and 255")
        if not 0 <= self.screenshot_threshold <= 100:
            raise ConfigError("screenshot_threshold is a percentage (0-100)")
        if self.port is not None and not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.url is None and not self.command:
            raise ConfigError("Either url or command must be given")
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "app_args", tuple(self.app_args))
        object.__setattr__(self, "chrome_args", tuple(self.chrome_args))
        object.__setattr__(self, "transform", tuple(self.transform))

    @property
    def sandbox_disabled(self) -> bool:
        if self.no_sandbox is not None:
            return self.no_sandbox
        return is_ci()

    def browser_args(self) -> list[str]:
        """Chrome command-line flags for this session."""
        args = list(BASE_CHROME_ARGS)
        if not self.view:
            args.append("--headless=new")
        args.append(f"--window-size={self.width},{self.height}")
        if self.sandbox_disabled:
            args.append("--no-sandbox")
        args.extend(self.chrome_args)
        return args

    def launch_command(self, port: int) -> list[str]:
        """Application command line with placeholders filled in."""
        values = {
            "host": self.host,
            "port": str(port),
            "app_dir": str(Path(self.app_dir).resolve()),
            "seed": "" if self.seed is None else str(self.seed),
        }
        return [part.format(**values) for part in self.command] + list(self.app_args)

    def driver_name(self) -> str:
        if self.name:
            return self.name
        return Path(self.app_dir).resolve().name or "app"

    def with_options(self, **changes) -> DriverConfig:
        return replace(self, **changes)


def resolve_app_dir(app_dir: str | Path | None = None) -> Path:
    """Application directory; from inside a ``tests`` folder, its parent."""
    if app_dir is not None:
        return Path(app_dir)
    cwd = Path.cwd()
    if cwd.name == "tests":
        return cwd.parent
    return cwd
