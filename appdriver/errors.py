"""Exception types raised by appdriver."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from appdriver.logs import LogEntry
    from appdriver.sync import IdleSignal


class AppDriverError(Exception):
    """Base class for every infrastructure error raised by appdriver."""


class ConfigError(AppDriverError):
    """Invalid configuration or a missing test setup file."""


class LaunchError(AppDriverError):
    """The application process could not be started."""

    def __init__(self, message: str, logs: list[LogEntry] | None = None):
        self.logs = list(logs or [])
        if self.logs:
            tail = "\n".join(f"  {entry}" for entry in self.logs[-20:])
            message = f"{message}\nStartup logs:\n{tail}"
        super().__init__(message)


class LaunchTimeout(LaunchError):
    """The application did not start serving within ``load_timeout``."""


class BrowserError(AppDriverError):
    """Transport or protocol failure talking to the browser."""

    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


class PageLoadTimeout(BrowserError):
    """The page did not finish loading within ``load_timeout``."""


class SessionClosed(AppDriverError):
    """The session is unusable: it was stopped, or a child process died.

    ``component`` is ``"session"`` after an explicit stop, otherwise the name
    of the process that died (``"browser"`` or ``"server"``).
    """

    def __init__(
        self,
        component: str = "session",
        detail: str = "",
        logs: list[LogEntry] | None = None,
    ):
        self.component = component
        self.logs = list(logs or [])
        if component == "session":
            message = "Session closed: the driver has been stopped"
        else:
            message = f"Session closed: the {component} process is no longer running"
        if detail:
            message = f"{message} ({detail})"
        if self.logs:
            tail = "\n".join(f"  {entry}" for entry in self.logs[-10:])
            message = f"{message}\nLast logs:\n{tail}"
        super().__init__(message)


class StillBusy(AppDriverError):
    """The application did not become idle before the timeout."""

    def __init__(self, timeout: float, signal: IdleSignal | None):
        self.timeout = timeout
        self.signal = signal
        if signal is None:
            state = "no signal could be read from the page"
        else:
            state = signal.describe()
        super().__init__(
            f"Application was still busy after {timeout:.1f}s; last state: {state}"
        )


class ConditionTimeout(AppDriverError):
    """A ``wait_for_*`` condition was not met before its timeout."""

    def __init__(self, what: str, timeout: float, last_value: Any = None):
        self.what = what
        self.timeout = timeout
        self.last_value = last_value
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for {what}; last value: {last_value!r}"
        )


class ScriptError(AppDriverError):
    """Script evaluated in the page raised an exception."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(message)


class UnknownField(AppDriverError, KeyError):
    """An input or output name does not exist in the page."""

    def __init__(self, name: str, kind: str = "field"):
        self.name = name
        self.kind = kind
        super().__init__(f"No {kind} named {name!r} exists in the page")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateSnapshot(AppDriverError):
    """A snapshot name was used twice within one run."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Snapshot {name!r} was already captured in this run; "
            "use a different name or add an index suffix (e.g. '-002')"
        )


class SnapshotMismatch(AssertionError):
    """One or more snapshots differ from their checked-in baselines.

    This is an assertion failure reported like any other failed check, not an
    infrastructure error.
    """

    def __init__(self, message: str, outcomes: list[Any] | None = None):
        self.outcomes = list(outcomes or [])
        super().__init__(message)


class TeardownWarning(UserWarning):
    """Both the browser and the server failed to shut down cleanly."""
