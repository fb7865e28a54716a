"""Tests for appdriver.driver module.

The browser and app are replaced by fakes; the driver's own event loop
thread, synchronization engine and snapshot store are real.
"""

import io
import json
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from appdriver.driver import AppDriver, default_snapshot_dir
from appdriver.config import DriverConfig
from appdriver.errors import (
    ConditionTimeout,
    ScriptError,
    SessionClosed,
    SnapshotMismatch,
    StillBusy,
    TeardownWarning,
    UnknownField,
)
from appdriver.sync import SyncEngine
from appdriver.tracer import TRACER_NAME

PREFIX = f"window.{TRACER_NAME}."


# ── Helpers ─────────────────────────────────────────────────────


def parse_call(expression):
    if not expression.startswith(PREFIX):
        return None, []
    name, _, rest = expression[len(PREFIX):].partition("(")
    if name == "state":
        return name, []
    return name, json.loads("[" + rest[:-1] + "]")


def png(color=(255, 255, 255)):
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="PNG")
    return buf.getvalue()


class FakePage:
    """A page holding one input ``n``, a button ``go`` and an output ``txt``."""

    def __init__(self):
        self.inputs = {"n": 1, "go": 0}
        self.outputs = {}
        self.pending_requests = 0
        self.alive = True
        self.closed = False
        self.calls = []
        self.viewport = (992, 744)
        self.init_scripts = []
        self.url = "http://127.0.0.1:8000/"
        self.color = (255, 255, 255)
        self._recompute()

    def _recompute(self):
        self.outputs["txt"] = f"n*2 = {self.inputs['n'] * 2}, clicks = {self.inputs['go']}"

    def is_alive(self):
        return self.alive and not self.closed

    def state(self):
        return {"msSinceMutation": 10000, "mutations": 1, "appBusy": False, "readyState": "complete"}

    def _lookup(self, name):
        if name in self.inputs:
            return {"found": True, "kind": "input", "value": self.inputs[name]}
        if name in self.outputs:
            return {"found": True, "kind": "output", "value": self.outputs[name]}
        return {"found": False, "kind": None, "value": None}

    async def evaluate(self, expression, timeout=30.0):
        name, args = parse_call(expression)
        self.calls.append(name or expression)
        if name == "state":
            return self.state()
        if name == "lookup":
            return [self._lookup(n) for n in args[0]]
        if name == "setInputs":
            values, allow_no_binding, _priority = args
            missing = []
            for key, value in values.items():
                if key == "go" and value == "click":
                    self.inputs["go"] += 1
                elif key in self.inputs or allow_no_binding:
                    self.inputs[key] = value
                else:
                    missing.append(key)
            self._recompute()
            return missing
        if name == "allValues":
            return {"input": dict(self.inputs), "output": dict(self.outputs)}
        if name == "html":
            return [f'<pre id="txt">{self.outputs["txt"]}</pre>'] if args[0] == "#txt" else []
        if name == "text":
            return [self.outputs["txt"]] if args[0] == "#txt" else []
        if name == "click":
            if args[0] != "#go":
                return False
            self.inputs["go"] += 1
            self._recompute()
            return True
        if name == "windowSize":
            return {"width": self.viewport[0], "height": self.viewport[1]}
        if expression == "window.location.href":
            return self.url
        if expression.startswith("throw"):
            raise ScriptError("Error: thrown on purpose")
        if expression == "false":
            return False
        return {"evaluated": expression}

    async def screenshot(self, selector=None, full_page=False):
        return png(self.color)

    async def set_viewport(self, width, height):
        self.viewport = (width, height)

    async def add_init_script(self, source):
        self.init_scripts.append(source)

    async def close(self):
        self.closed = True


class DelayedAckPage(FakePage):
    """A page whose server answers input changes late, like a Shiny text input.

    Setting an input mutates no DOM. The server sees the change ``debounce``
    seconds later, stays busy for ``compute`` seconds, then updates ``txt``.
    The tracer state reports the change as unacknowledged until the server
    turns busy, and its quiet period restarts at the action.
    """

    def __init__(self, debounce=0.25, compute=1.0):
        self.debounce = debounce
        self.compute = compute
        self.changed_at = None
        self.last_mutation = time.monotonic() - 10
        self._started = False
        super().__init__()
        self._started = True

    def _recompute(self):
        if not self._started:
            super()._recompute()
            return
        self.changed_at = time.monotonic()
        self.last_mutation = self.changed_at

    def _settle(self):
        if self.changed_at is None:
            return
        done_at = self.changed_at + self.debounce + self.compute
        if time.monotonic() >= done_at:
            super()._recompute()
            self.last_mutation = done_at
            self.changed_at = None

    def state(self):
        self._settle()
        now = time.monotonic()
        unacked = busy = False
        if self.changed_at is not None:
            unacked = now - self.changed_at < self.debounce
            busy = not unacked
        return {
            "msSinceMutation": (now - self.last_mutation) * 1000,
            "mutations": 1,
            "appBusy": busy or unacked,
            "pendingInputs": int(unacked),
            "readyState": "complete",
        }

    async def evaluate(self, expression, timeout=30.0):
        self._settle()
        return await super().evaluate(expression, timeout)


class FakeBrowser:
    def __init__(self, fail_close=False):
        self.alive = True
        self.fail_close = fail_close

    def is_alive(self):
        return self.alive

    async def close(self):
        self.alive = False
        if self.fail_close:
            raise RuntimeError("browser would not quit")


class FakeApp:
    def __init__(self, fail_stop=False):
        self.alive = True
        self.returncode = None
        self.fail_stop = fail_stop

    def is_alive(self):
        return self.alive

    def stop(self):
        self.alive = False
        if self.fail_stop:
            raise RuntimeError("server would not stop")


def make_driver(tmp_path: Path, page=None, browser=None, app=None, **options) -> AppDriver:
    page = page or FakePage()
    browser = browser or FakeBrowser()

    def fake_start(self):
        self._res.app = app
        self._res.browser = browser
        self._res.page = page
        self._engine = SyncEngine(page, self.config, self._check_alive)

    defaults = dict(
        url="http://127.0.0.1:8000/",
        command=(),
        snapshot_dir=str(tmp_path / "snaps"),
        timeout=1.0,
        poll_interval=0.01,
        idle_duration=0.0,
        expect_values_screenshot=False,
    )
    defaults.update(options)
    with patch.object(AppDriver, "_start", fake_start):
        return AppDriver(**defaults)


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def driver(tmp_path: Path, page: FakePage):
    d = make_driver(tmp_path, page)
    yield d
    d.stop()


# ── Inputs and values ───────────────────────────────────────────


class TestInputs:
    def test_set_inputs_waits_once_around_batch(self, driver: AppDriver, page: FakePage):
        driver.set_inputs(n=5, go="click")
        assert page.calls == ["state", "lookup", "setInputs", "state"]
        assert page.inputs == {"n": 5, "go": 1}

    def test_get_value_after_set_inputs(self, driver: AppDriver):
        driver.set_inputs({"n": 21})
        assert driver.get_value("txt") == "n*2 = 42, clicks = 0"

    def test_repeated_reads_are_consistent(self, driver: AppDriver):
        driver.set_inputs(n=3)
        assert driver.get_value("txt") == driver.get_value("txt")

    def test_set_inputs_without_wait(self, driver: AppDriver, page: FakePage):
        driver.set_inputs(n=2, wait_=False)
        assert page.calls == ["state", "lookup", "setInputs"]

    def test_unknown_input(self, driver: AppDriver, page: FakePage):
        with pytest.raises(UnknownField, match="missing"):
            driver.set_inputs(missing=1)
        assert "setInputs" not in page.calls

    def test_unknown_input_allowed(self, driver: AppDriver, page: FakePage):
        driver.set_inputs(extra="x", allow_no_input_binding_=True)
        assert page.inputs["extra"] == "x"

    def test_set_inputs_needs_values(self, driver: AppDriver):
        with pytest.raises(ValueError):
            driver.set_inputs()

    def test_invalid_priority(self, driver: AppDriver):
        with pytest.raises(ValueError, match="priority_"):
            driver.set_inputs(n=1, priority_="urgent")

    def test_non_json_value_rejected(self, driver: AppDriver):
        with pytest.raises(TypeError):
            driver.set_inputs(n=object())

    def test_get_values_by_name(self, driver: AppDriver):
        assert driver.get_values(["n", "txt"]) == {"n": 1, "txt": "n*2 = 2, clicks = 0"}

    def test_get_values_all(self, driver: AppDriver):
        values = driver.get_values()
        assert set(values) == {"n", "go", "txt"}

    def test_get_unknown_value(self, driver: AppDriver):
        with pytest.raises(UnknownField) as exc_info:
            driver.get_value("nope")
        assert isinstance(exc_info.value, KeyError)
        assert "nope" in str(exc_info.value)

    def test_wait_for_value(self, driver: AppDriver):
        assert driver.wait_for_value("txt").startswith("n*2")

    def test_wait_for_value_ignoring_current(self, driver: AppDriver):
        with pytest.raises(ConditionTimeout):
            driver.wait_for_value("n", ignore=[1], timeout=0.05)


class TestDelayedServer:
    @pytest.fixture
    def slow_page(self):
        return DelayedAckPage()

    @pytest.fixture
    def slow_driver(self, tmp_path: Path, slow_page: DelayedAckPage):
        d = make_driver(tmp_path, slow_page, timeout=5.0, idle_duration=0.5)
        yield d
        d.stop()

    def test_get_value_after_set_inputs(self, slow_driver: AppDriver):
        slow_driver.set_inputs(n=7)
        assert slow_driver.get_value("txt") == "n*2 = 14, clicks = 0"

    def test_set_inputs_returns_after_server_finishes(
        self, slow_driver: AppDriver, slow_page: DelayedAckPage
    ):
        started = time.monotonic()
        slow_driver.set_inputs(n=7)
        assert time.monotonic() - started >= slow_page.debounce + slow_page.compute
        assert slow_page.changed_at is None
        assert slow_page.outputs["txt"] == "n*2 = 14, clicks = 0"

    def test_click_waits_for_computation(self, slow_driver: AppDriver):
        slow_driver.click("#go")
        assert slow_driver.get_value("txt") == "n*2 = 2, clicks = 1"

    def test_read_waits_for_unsettled_change(self, slow_driver: AppDriver):
        slow_driver.set_inputs(n=7, wait_=False)
        assert slow_driver.get_value("txt") == "n*2 = 14, clicks = 0"
        assert slow_driver.get_value("txt") == slow_driver.get_value("txt")


# ── Scripts and DOM ─────────────────────────────────────────────


class TestScripts:
    def test_run_js_waits_before_and_after(self, driver: AppDriver, page: FakePage):
        result = driver.run_js("document.title = 'x'")
        assert result == {"evaluated": "document.title = 'x'"}
        assert page.calls == ["state", "document.title = 'x'", "state"]

    def test_get_js_waits_before_only(self, driver: AppDriver, page: FakePage):
        driver.get_js("1 + 1")
        assert page.calls == ["state", "1 + 1"]

    def test_script_error(self, driver: AppDriver):
        with pytest.raises(ScriptError, match="thrown on purpose"):
            driver.run_js("throw new Error('thrown on purpose')")

    def test_wait_for_js_timeout(self, driver: AppDriver):
        with pytest.raises(ConditionTimeout):
            driver.wait_for_js("false", timeout=0.05)

    def test_html_and_text(self, driver: AppDriver):
        assert driver.get_html("#txt") == ['<pre id="txt">n*2 = 2, clicks = 0</pre>']
        assert driver.get_text("#txt") == ["n*2 = 2, clicks = 0"]
        assert driver.get_text(".nothing") == []

    def test_click(self, driver: AppDriver, page: FakePage):
        driver.click("#go")
        assert page.inputs["go"] == 1
        assert page.calls[-1] == "state"

    def test_click_missing_element(self, driver: AppDriver):
        with pytest.raises(UnknownField, match="#nope"):
            driver.click("#nope")

    def test_url_and_window_size(self, driver: AppDriver):
        assert driver.get_url() == "http://127.0.0.1:8000/"
        driver.set_window_size(1200, 800)
        assert driver.get_window_size() == {"width": 1200, "height": 800}

    def test_add_init_script(self, driver: AppDriver, page: FakePage, tmp_path: Path):
        script = tmp_path / "fuzz.js"
        script.write_text("window.fuzzer = true;")
        driver.add_init_script(script)
        assert page.init_scripts == ["window.fuzzer = true;"]

    def test_screenshot_to_file(self, driver: AppDriver, tmp_path: Path):
        path = tmp_path / "shots" / "page.png"
        data = driver.get_screenshot(path)
        assert path.read_bytes() == data


# ── Logs ────────────────────────────────────────────────────────


class TestLogs:
    def test_commands_are_logged(self, driver: AppDriver):
        driver.set_inputs(n=4)
        messages = [e.message for e in driver.get_logs("driver")]
        assert "Setting inputs: n" in messages

    def test_log_message(self, driver: AppDriver):
        driver.log_message("checkpoint")
        assert driver.get_logs()[-1].message == "checkpoint"

    def test_logs_available_after_stop(self, driver: AppDriver):
        driver.log_message("before stop")
        driver.stop()
        assert any(e.message == "before stop" for e in driver.get_logs())

    def test_logs_available_while_app_stays_busy(self, tmp_path: Path, page: FakePage):
        d = make_driver(tmp_path, page, timeout=0.1)
        try:
            d.log_message("stuck")
            page.state = lambda: {"msSinceMutation": 0, "mutations": 1, "appBusy": True}
            with pytest.raises(StillBusy):
                d.get_value("txt")
            assert any(e.message == "stuck" for e in d.get_logs("driver"))
        finally:
            d.stop()


# ── Lifecycle ───────────────────────────────────────────────────


class TestLifecycle:
    def test_command_after_stop(self, driver: AppDriver):
        driver.stop()
        with pytest.raises(SessionClosed, match="stopped"):
            driver.get_value("n")

    def test_stop_is_idempotent(self, driver: AppDriver, page: FakePage):
        driver.stop()
        driver.stop()
        assert page.closed
        assert driver.closed

    def test_context_manager(self, tmp_path: Path, page: FakePage):
        with make_driver(tmp_path, page) as d:
            d.set_inputs(n=2)
        assert d.closed
        assert page.closed

    def test_dead_browser(self, driver: AppDriver, page: FakePage):
        page.alive = False
        with pytest.raises(SessionClosed, match="browser"):
            driver.get_value("n")

    def test_dead_server(self, tmp_path: Path):
        app = FakeApp()
        d = make_driver(tmp_path, app=app)
        try:
            app.alive = False
            app.returncode = 1
            with pytest.raises(SessionClosed, match="server") as exc_info:
                d.set_inputs(n=2)
            assert exc_info.value.component == "server"
            assert "exit code 1" in str(exc_info.value)
        finally:
            d.stop()

    def test_stop_closes_browser_then_server(self, tmp_path: Path):
        app = FakeApp()
        browser = FakeBrowser()
        d = make_driver(tmp_path, browser=browser, app=app)
        d.stop()
        assert not browser.alive
        assert not app.alive

    def test_single_teardown_error_is_not_a_warning(self, tmp_path: Path, recwarn):
        d = make_driver(tmp_path, browser=FakeBrowser(fail_close=True), app=FakeApp())
        d.stop()
        assert not [w for w in recwarn if issubclass(w.category, TeardownWarning)]
        assert any("browser would not quit" in e.message for e in d.logs.entries("driver"))

    def test_both_teardown_errors_warn(self, tmp_path: Path):
        d = make_driver(
            tmp_path, browser=FakeBrowser(fail_close=True), app=FakeApp(fail_stop=True)
        )
        with pytest.warns(TeardownWarning, match="browser would not quit"):
            d.stop()

    def test_failed_start_releases_resources(self, tmp_path: Path):
        browser = FakeBrowser()

        def broken_start(self):
            self._res.browser = browser
            raise RuntimeError("no page")

        with patch.object(AppDriver, "_start", broken_start):
            with pytest.raises(RuntimeError):
                AppDriver(url="http://127.0.0.1:8000/", command=(), snapshot_dir=str(tmp_path))
        assert not browser.alive


# ── Snapshots ───────────────────────────────────────────────────


class TestExpectations:
    def test_new_values_snapshot(self, driver: AppDriver, tmp_path: Path):
        outcome = driver.expect_values("initial")
        assert outcome.status == "new"
        data = json.loads((tmp_path / "snaps" / "initial.json").read_text())
        assert data == {
            "input": {"go": 0, "n": 1},
            "output": {"txt": "n*2 = 2, clicks = 0"},
        }

    def test_selected_values(self, driver: AppDriver, tmp_path: Path):
        driver.expect_values("only-n", input=["n"], output=False)
        data = json.loads((tmp_path / "snaps" / "only-n.json").read_text())
        assert data == {"input": {"n": 1}}

    def test_selected_unknown_value(self, driver: AppDriver):
        with pytest.raises(UnknownField):
            driver.expect_values(input=["nope"])

    def test_debug_screenshot(self, tmp_path: Path):
        d = make_driver(tmp_path, expect_values_screenshot=True)
        try:
            d.expect_values("with-shot")
            assert (tmp_path / "snaps" / "with-shot_.png").exists()
        finally:
            d.stop()

    def test_mismatch_is_deferred(self, driver: AppDriver, tmp_path: Path):
        snaps = tmp_path / "snaps"
        snaps.mkdir(parents=True)
        (snaps / "initial.json").write_text(json.dumps({"input": {"go": 0, "n": 1}, "output": {"txt": "old"}}))
        outcome = driver.expect_values("initial")
        assert outcome.failed
        assert (snaps / "initial.new.json").exists()
        driver.set_inputs(n=2)
        with pytest.raises(SnapshotMismatch, match="output.txt"):
            driver.check_snapshots()

    def test_stop_on_failure(self, tmp_path: Path):
        snaps = tmp_path / "snaps"
        snaps.mkdir(parents=True)
        (snaps / "initial.json").write_text(json.dumps({"output": {"txt": "old"}}))
        d = make_driver(tmp_path, stop_on_failure=True)
        try:
            with pytest.raises(SnapshotMismatch):
                d.expect_values("initial", input=False)
        finally:
            d.stop()

    def test_screenshot_snapshot(self, driver: AppDriver, page: FakePage, tmp_path: Path):
        assert driver.expect_screenshot("page").status == "new"
        assert (tmp_path / "snaps" / "page.png").exists()

    def test_auto_named_snapshots(self, driver: AppDriver):
        first = driver.expect_text("#txt")
        second = driver.expect_js("1 + 1")
        assert first.name.endswith("-001")
        assert second.name.endswith("-002")

    def test_expect_html(self, driver: AppDriver, tmp_path: Path):
        driver.expect_html("#txt", name="markup")
        data = json.loads((tmp_path / "snaps" / "markup.json").read_text())
        assert data == {"#txt": ['<pre id="txt">n*2 = 2, clicks = 0</pre>']}


class TestDefaultSnapshotDir:
    def test_explicit(self):
        config = DriverConfig(snapshot_dir="/tmp/snaps", variant="linux")
        assert default_snapshot_dir(config) == Path("/tmp/snaps")

    def test_from_current_test(self, monkeypatch):
        monkeypatch.setenv("PYTEST_CURRENT_TEST", "tests/test_slider.py::test_echo (call)")
        config = DriverConfig(variant="mac")
        assert default_snapshot_dir(config) == Path("tests/_snaps/mac/test_slider")

    def test_outside_pytest(self, monkeypatch, tmp_path: Path):
        monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)
        config = DriverConfig(app_dir=str(tmp_path), name="demo")
        assert default_snapshot_dir(config) == tmp_path / "tests" / "_snaps" / "demo"
