"""AppDriver: the command/query surface used by test scripts.

Every command waits for the application to settle before it acts, and
commands that change state wait again before returning, so command N's
settled post-state is command N+1's pre-state.

The browser protocol is asynchronous; the driver runs its own asyncio loop on
a background thread and blocks the calling test until each command finishes.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
import threading
import warnings
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterable

from appdriver import tracer
from appdriver.browser import ChromeBrowser, PageSession
from appdriver.config import DriverConfig, resolve_app_dir
from appdriver.errors import (
    BrowserError,
    SessionClosed,
    SnapshotMismatch,
    StillBusy,
    TeardownWarning,
    UnknownField,
)
from appdriver.logs import LogBuffer, LogEntry
from appdriver.process import AppProcess
from appdriver.snapshot import SnapshotOutcome, SnapshotStore, snapshot_dir_for
from appdriver.sync import IdleSignal, SyncEngine
from appdriver.values import JsonValue, to_json_value

logger = logging.getLogger(__name__)

PRIORITIES = ("input", "event")


class _LoopThread:
    """An asyncio event loop running on a daemon thread."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="appdriver-loop", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()

    def run(self, coro: Coroutine, timeout: float | None = None) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise BrowserError(f"Browser command did not complete within {timeout:.1f}s")

    def stop(self) -> None:
        if not self._thread.is_alive():
            return

        async def _cancel_tasks():
            tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            asyncio.run_coroutine_threadsafe(_cancel_tasks(), self.loop).result(5)
        except Exception as e:
            logger.debug(f"Error cancelling driver tasks: {e}")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)


@dataclass
class _Resources:
    """Everything a session owns; released exactly once by ``_shutdown``."""

    loop: _LoopThread
    logs: LogBuffer
    app: AppProcess | None = None
    browser: ChromeBrowser | None = None
    page: PageSession | None = None


async def _close_browser(page: PageSession | None, browser: ChromeBrowser | None) -> None:
    try:
        if page is not None:
            await page.close()
    finally:
        if browser is not None:
            await browser.close()


def _shutdown(res: _Resources) -> list[tuple[str, BaseException]]:
    """Close the browser, then the server; collect rather than raise errors."""
    errors: list[tuple[str, BaseException]] = []
    if res.page is not None or res.browser is not None:
        try:
            res.loop.run(_close_browser(res.page, res.browser), timeout=20)
        except Exception as e:
            errors.append(("browser", e))
    if res.app is not None:
        try:
            res.app.stop()
        except Exception as e:
            errors.append(("server", e))
    res.loop.stop()
    for component, error in errors:
        res.logs.append("driver", "warning", f"Error stopping {component}: {error}")
    return errors


def default_snapshot_dir(config: DriverConfig) -> Path:
    """Snapshot directory for the test file that is currently running.

    An explicit ``config.snapshot_dir`` is used as-is.
    """
    if config.snapshot_dir:
        return Path(config.snapshot_dir)
    current = os.environ.get("PYTEST_CURRENT_TEST", "")
    test_file = current.split("::")[0] if current else ""
    if test_file:
        return snapshot_dir_for(test_file, config.variant)
    tests_dir = Path(config.app_dir) / "tests"
    return snapshot_dir_for(tests_dir / config.driver_name(), config.variant)


class AppDriver:
    """Drive a running application in a headless browser.

    ``AppDriver(app_dir)`` launches the app with ``config.command`` on a free
    port; ``AppDriver(url="http://...")`` attaches to an app that is already
    being served. Use it as a context manager or call :meth:`stop`; the
    session is also torn down at interpreter exit.
    """

    def __init__(
        self,
        app_dir: str | Path | None = None,
        *,
        config: DriverConfig | None = None,
        **options,
    ):
        if config is None:
            config = DriverConfig(app_dir=str(resolve_app_dir(app_dir)), **options)
        elif app_dir is not None or options:
            if app_dir is not None:
                options["app_dir"] = str(app_dir)
            config = config.with_options(**options)
        self.config = config
        self.logs = LogBuffer()
        self.snapshots = SnapshotStore(
            default_snapshot_dir(config),
            default_name=config.driver_name(),
            transform=config.transform,
            pixel_tolerance=config.pixel_tolerance,
            threshold=config.screenshot_threshold,
        )
        self._lock = threading.RLock()
        self._closed = False
        self._res = _Resources(loop=_LoopThread(), logs=self.logs)
        self._finalizer = weakref.finalize(self, _shutdown, self._res)
        self._engine: SyncEngine | None = None
        try:
            self._start()
        except BaseException:
            self._closed = True
            self._finalizer()
            raise

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        url = self._res.page.url if self._res.page else None
        return f"<AppDriver {self.config.driver_name()!r} {url} ({state})>"

    def __enter__(self) -> AppDriver:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ── Lifecycle ───────────────────────────────────────────────

    def _start(self) -> None:
        config = self.config
        res = self._res
        if config.url:
            url = config.url
        else:
            res.app = AppProcess(config, self.logs)
            res.app.start()
            url = res.app.url

        res.browser = ChromeBrowser(config, self.logs)
        res.loop.run(res.browser.launch(), timeout=config.load_timeout + 10)
        res.page = PageSession(res.browser.connection, config, self.logs)
        res.loop.run(res.page.attach(url), timeout=config.load_timeout * 2 + 10)
        self._engine = SyncEngine(res.page, config, self._check_alive)
        res.loop.run(
            self._engine.wait_for_idle(timeout=config.load_timeout),
            timeout=config.load_timeout + 10,
        )
        self.logs.append("driver", "info", f"Session started at {url}")

    def _check_alive(self) -> None:
        if self._closed:
            raise SessionClosed()
        res = self._res
        if res.app is not None and not res.app.is_alive():
            raise SessionClosed(
                "server", f"exit code {res.app.returncode}", self.logs.entries("server")
            )
        browser_ok = res.browser is not None and res.browser.is_alive()
        page_ok = res.page is not None and res.page.is_alive()
        if not (browser_ok and page_ok):
            raise SessionClosed("browser", logs=self.logs.tail())

    def stop(self) -> None:
        """Close the browser, then stop the app. Safe to call repeatedly.

        Failures closing either child are logged and swallowed; if both fail a
        single ``TeardownWarning`` is emitted.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        errors = self._finalizer() or []
        if len(errors) > 1:
            detail = "; ".join(f"{component}: {error}" for component, error in errors)
            warnings.warn(f"Errors while stopping the session: {detail}", TeardownWarning)
        for component, error in errors:
            logger.warning(f"Error stopping {component}: {error}")
        logger.info("Session stopped")

    @property
    def closed(self) -> bool:
        return self._closed

    def _call(self, fn: Callable[..., Coroutine], *args, timeout: float | None = None) -> Any:
        with self._lock:
            self._check_alive()
            wait = max(timeout or 0.0, self.config.timeout)
            return self._res.loop.run(fn(*args), timeout=wait * 3 + 30)

    @property
    def _page(self) -> PageSession:
        return self._res.page

    # ── Synchronization ─────────────────────────────────────────

    def wait_for_idle(self, duration: float | None = None, timeout: float | None = None) -> IdleSignal:
        """Wait until no network, DOM or application activity for ``duration`` seconds."""
        return self._call(self._engine.wait_for_idle, timeout, duration, timeout=timeout)

    def wait_for_value(
        self,
        name: str,
        ignore: Iterable[Any] = (None, ""),
        timeout: float | None = None,
        interval: float | None = None,
    ) -> JsonValue:
        """Wait until ``name`` has a value not in ``ignore``; return it."""
        ignored = list(ignore)

        async def _check():
            (result,) = await self._page.evaluate(tracer.call("lookup", [name]))
            if not result["found"] or result["value"] in ignored:
                return False, result["value"]
            return True, result["value"]

        async def _wait():
            value = await self._engine.wait_for_condition(
                _check, f"a new value for {name!r}", timeout, interval
            )
            await self._engine.wait_for_idle(timeout)
            return value

        return self._call(_wait, timeout=timeout)

    def wait_for_js(
        self, script: str, timeout: float | None = None, interval: float | None = None
    ) -> None:
        """Wait until ``script`` evaluates to a truthy value."""

        async def _check():
            value = await self._page.evaluate(script)
            return bool(value), value

        async def _wait():
            await self._engine.wait_for_condition(_check, f"script {script!r}", timeout, interval)

        self._call(_wait, timeout=timeout)

    # ── Inputs and values ───────────────────────────────────────

    def set_inputs(
        self,
        inputs: dict[str, Any] | None = None,
        /,
        *,
        wait_: bool = True,
        timeout_: float | None = None,
        allow_no_input_binding_: bool = False,
        priority_: str = "input",
        **kwargs: Any,
    ) -> None:
        """Set one or more inputs, then wait once for the app to settle.

        ``set_inputs(n=7)`` or ``set_inputs({"n": 7, "go": "click"})``. The
        value ``"click"`` on a button clicks it.
        """
        values = dict(inputs or {})
        values.update(kwargs)
        if not values:
            raise ValueError("set_inputs() needs at least one input")
        if priority_ not in PRIORITIES:
            raise ValueError(f"priority_ must be one of {PRIORITIES}")
        values = {name: to_json_value(value) for name, value in values.items()}
        self._call(
            self._set_inputs, values, wait_, timeout_, allow_no_input_binding_, priority_,
            timeout=timeout_,
        )

    async def _set_inputs(
        self,
        values: dict[str, JsonValue],
        wait: bool,
        timeout: float | None,
        allow_no_input_binding: bool,
        priority: str,
    ) -> None:
        await self._engine.wait_for_idle(timeout)
        if not allow_no_input_binding:
            found = await self._page.evaluate(tracer.call("lookup", list(values)))
            for name, result in zip(values, found):
                if not result["found"]:
                    raise UnknownField(name, "input")
        self.logs.append("driver", "info", f"Setting inputs: {', '.join(values)}")
        missing = await self._page.evaluate(
            tracer.call("setInputs", values, allow_no_input_binding, priority)
        )
        if missing:
            raise UnknownField(missing[0], "input")
        if wait:
            await self._engine.wait_for_idle(timeout)

    def get_value(self, name: str) -> JsonValue:
        """Current value of one input or output."""
        return self.get_values([name])[name]

    def get_values(self, names: Iterable[str] | None = None) -> dict[str, JsonValue]:
        """Current values keyed by name; every input and output if ``names`` is None."""
        names = None if names is None else list(names)
        return self._call(self._get_values, names)

    async def _get_values(self, names: list[str] | None) -> dict[str, JsonValue]:
        await self._engine.wait_for_idle()
        if names is None:
            everything = await self._page.evaluate(tracer.call("allValues"))
            return {**everything["input"], **everything["output"]}
        found = await self._page.evaluate(tracer.call("lookup", names))
        values: dict[str, JsonValue] = {}
        for name, result in zip(names, found):
            if not result["found"]:
                raise UnknownField(name)
            values[name] = result["value"]
        return values

    async def _snapshot_values(
        self, inputs: bool | Iterable[str], outputs: bool | Iterable[str]
    ) -> dict[str, dict[str, JsonValue]]:
        await self._engine.wait_for_idle()
        everything = await self._page.evaluate(tracer.call("allValues"))
        fields: dict[str, dict[str, JsonValue]] = {}
        for key, wanted in (("input", inputs), ("output", outputs)):
            if wanted is False:
                continue
            available = everything[key]
            if wanted is True:
                fields[key] = dict(sorted(available.items()))
                continue
            selected = {}
            for name in wanted:
                if name not in available:
                    raise UnknownField(name, key)
                selected[name] = available[name]
            fields[key] = selected
        return fields

    # ── Scripts and DOM ─────────────────────────────────────────

    def run_js(self, code: str, timeout: float | None = None) -> JsonValue:
        """Evaluate ``code`` in the page, wait for the app to settle, return the result."""

        async def _run():
            await self._engine.wait_for_idle(timeout)
            self.logs.append("driver", "info", "Running script")
            result = await self._page.evaluate(code, timeout=timeout or self.config.timeout)
            await self._engine.wait_for_idle(timeout)
            return result

        return self._call(_run, timeout=timeout)

    def get_js(self, code: str, timeout: float | None = None) -> JsonValue:
        """Evaluate side-effect-free ``code`` and return the result."""

        async def _get():
            await self._engine.wait_for_idle(timeout)
            return await self._page.evaluate(code, timeout=timeout or self.config.timeout)

        return self._call(_get, timeout=timeout)

    def get_html(self, selector: str, outer: bool = True) -> list[str]:
        """Markup of every element matching ``selector`` (empty list if none)."""
        return self._read(tracer.call("html", selector, outer))

    def get_text(self, selector: str) -> list[str]:
        return self._read(tracer.call("text", selector))

    def get_url(self) -> str:
        return self._read("window.location.href")

    def get_window_size(self) -> dict[str, int]:
        return self._read(tracer.call("windowSize"))

    def _read(self, expression: str) -> Any:
        async def _get():
            await self._engine.wait_for_idle()
            return await self._page.evaluate(expression)

        return self._call(_get)

    def click(self, selector: str, timeout: float | None = None) -> None:
        """Click the first element matching ``selector`` and wait for the app to settle."""

        async def _click():
            await self._engine.wait_for_idle(timeout)
            self.logs.append("driver", "info", f"Clicking {selector}")
            if not await self._page.evaluate(tracer.call("click", selector)):
                raise UnknownField(selector, "element matching selector")
            await self._engine.wait_for_idle(timeout)

        self._call(_click, timeout=timeout)

    def set_window_size(self, width: int, height: int) -> None:
        async def _resize():
            await self._engine.wait_for_idle()
            await self._page.set_viewport(width, height)
            await self._engine.wait_for_idle()

        self._call(_resize)

    def add_init_script(self, source: str | Path) -> None:
        """Load a script now and on every future page load (e.g. a UI fuzzer)."""
        if isinstance(source, Path):
            source = source.read_text(encoding="utf-8")

        async def _add():
            await self._engine.wait_for_idle()
            await self._page.add_init_script(source)

        self._call(_add)

    def get_screenshot(
        self,
        path: str | Path | None = None,
        selector: str | None = None,
        full_page: bool = False,
    ) -> bytes:
        """PNG bytes of the viewport, the whole page, or one element."""

        async def _shot():
            await self._engine.wait_for_idle()
            return await self._page.screenshot(selector=selector, full_page=full_page)

        data = self._call(_shot)
        if path is not None:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_bytes(data)
        return data

    # ── Logs ────────────────────────────────────────────────────

    def get_logs(self, kinds: Iterable[str] | str | None = None) -> list[LogEntry]:
        """Collected logs, oldest first; repeatable.

        On a live session this waits for idle first so in-flight activity is
        included. A stopped, dead or never-settling session still returns
        what was collected.
        """
        try:
            self._call(self._engine.wait_for_idle)
        except SessionClosed:
            pass
        except StillBusy as e:
            logger.debug(f"Returning logs from a busy session: {e}")
        return self.logs.entries(kinds)

    def log_message(self, message: str) -> None:
        self.logs.append("driver", "info", message)

    # ── Snapshot expectations ───────────────────────────────────

    def _expect(self, outcome: SnapshotOutcome) -> SnapshotOutcome:
        self.logs.append("driver", "info", f"Snapshot {outcome.name}: {outcome.status}")
        if outcome.failed and self.config.stop_on_failure:
            raise SnapshotMismatch(
                f"{outcome.diff}\n  review: {outcome.candidate_path}", [outcome]
            )
        return outcome

    def expect_values(
        self,
        name: str | None = None,
        *,
        input: bool | Iterable[str] = True,
        output: bool | Iterable[str] = True,
        screenshot_: bool | None = None,
    ) -> SnapshotOutcome:
        """Snapshot input and output values and compare them with the baseline.

        A debug screenshot (``<name>_.png``) is saved next to the values for
        human review; it is never compared.
        """
        fields = self._call(self._snapshot_values, input, output)
        record = self.snapshots.capture(name, fields, "values")
        take_screenshot = self.config.expect_values_screenshot if screenshot_ is None else screenshot_
        if take_screenshot:
            self.get_screenshot(self.snapshots.directory / f"{record.name}_.png")
        return self._expect(self.snapshots.check(record))

    def expect_screenshot(
        self,
        name: str | None = None,
        selector: str | None = None,
        full_page: bool = False,
    ) -> SnapshotOutcome:
        image = self.get_screenshot(selector=selector, full_page=full_page)
        record = self.snapshots.capture(name, {"image": image}, "screenshot")
        return self._expect(self.snapshots.check(record))

    def expect_text(self, selector: str, name: str | None = None) -> SnapshotOutcome:
        record = self.snapshots.capture(name, {selector: self.get_text(selector)}, "text")
        return self._expect(self.snapshots.check(record))

    def expect_html(self, selector: str, outer: bool = True, name: str | None = None) -> SnapshotOutcome:
        record = self.snapshots.capture(name, {selector: self.get_html(selector, outer)}, "html")
        return self._expect(self.snapshots.check(record))

    def expect_js(self, code: str, name: str | None = None) -> SnapshotOutcome:
        record = self.snapshots.capture(name, {"result": self.get_js(code)}, "js")
        return self._expect(self.snapshots.check(record))

    def check_snapshots(self) -> None:
        """Raise ``SnapshotMismatch`` listing every snapshot that changed so far."""
        self.snapshots.raise_for_failures()
