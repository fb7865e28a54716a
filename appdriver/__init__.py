"""Browser-driven regression testing for reactive web applications."""

from appdriver.config import DriverConfig
from appdriver.driver import AppDriver
from appdriver.errors import (
    AppDriverError,
    BrowserError,
    ConditionTimeout,
    ConfigError,
    DuplicateSnapshot,
    LaunchError,
    LaunchTimeout,
    PageLoadTimeout,
    ScriptError,
    SessionClosed,
    SnapshotMismatch,
    StillBusy,
    TeardownWarning,
    UnknownField,
)
from appdriver.harness import load_app_env, test_app, write_setup_file
from appdriver.logs import LogEntry
from appdriver.snapshot import scrub
from appdriver.values import JsonValue

__version__ = "0.1.0"

__all__ = [
    "AppDriver",
    "AppDriverError",
    "BrowserError",
    "ConditionTimeout",
    "ConfigError",
    "DriverConfig",
    "DuplicateSnapshot",
    "JsonValue",
    "LaunchError",
    "LaunchTimeout",
    "LogEntry",
    "PageLoadTimeout",
    "ScriptError",
    "SessionClosed",
    "SnapshotMismatch",
    "StillBusy",
    "TeardownWarning",
    "UnknownField",
    "load_app_env",
    "scrub",
    "test_app",
    "write_setup_file",
]
