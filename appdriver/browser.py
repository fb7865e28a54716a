"""Headless Chrome process and the single page the driver controls."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import shutil
import sys
import tempfile
from typing import Any, Callable

from appdriver.cdp import CdpConnection
from appdriver.config import DriverConfig
from appdriver.errors import BrowserError, PageLoadTimeout, ScriptError, UnknownField
from appdriver.logs import LogBuffer
from appdriver.tracer import TRACER_JS
from appdriver.values import JsonValue, from_remote_object

logger = logging.getLogger(__name__)

CHROME_NAMES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
    "microsoft-edge",
    "msedge",
)

CHROME_PATHS = {
    "darwin": (
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/Applications/Chromium.app/Contents/MacOS/Chromium",
        "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
    ),
    "win32": (
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Microsoft\Edge\Application\msedge.exe",
    ),
}

DEVTOOLS_PREFIX = "DevTools listening on "

# Long-lived streams never finish loading, so they never count as pending.
UNTRACKED_REQUEST_TYPES = ("EventSource", "WebSocket")

CONSOLE_LEVELS = {
    "log": "info",
    "info": "info",
    "debug": "debug",
    "warning": "warning",
    "error": "error",
    "assert": "error",
    "trace": "debug",
}


def find_chrome(explicit: str = "") -> str | None:
    """Locate a Chrome/Chromium executable."""
    if explicit:
        if os.path.isfile(explicit):
            return explicit
        return shutil.which(explicit)
    for path in CHROME_PATHS.get(sys.platform, ()):
        if os.path.isfile(path):
            return path
    for name in CHROME_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None


def _remote_object_text(obj: dict[str, Any]) -> str:
    if "value" in obj:
        return str(obj["value"])
    if "unserializableValue" in obj:
        return obj["unserializableValue"]
    return obj.get("description", obj.get("type", ""))


def exception_message(details: dict[str, Any]) -> str:
    """Readable message from a DevTools ``ExceptionDetails`` object."""
    exception = details.get("exception") or {}
    message = exception.get("description") or details.get("text") or "Script error"
    return message.splitlines()[0] if message else "Script error"


class ChromeBrowser:
    """A Chrome process started with remote debugging on a random port."""

    def __init__(self, config: DriverConfig, logs: LogBuffer | None = None):
        self.config = config
        self.logs = logs if logs is not None else LogBuffer()
        self.connection: CdpConnection | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._profile_dir: str | None = None
        self._stderr_task: asyncio.Task | None = None
        self._closed = False

    def is_alive(self) -> bool:
        if self._proc is None or self._proc.returncode is not None:
            return False
        return self.connection is not None and not self.connection.closed

    async def launch(self) -> ChromeBrowser:
        path = find_chrome(self.config.chrome_path)
        if path is None:
            raise BrowserError(
                "Could not find a Chrome or Chromium executable. "
                "Set APPDRIVER_CHROME to its path."
            )
        self._profile_dir = tempfile.mkdtemp(prefix="appdriver-chrome-")
        args = [
            path,
            "--remote-debugging-port=0",
            f"--user-data-dir={self._profile_dir}",
            *self.config.browser_args(),
            "about:blank",
        ]
        logger.info(f"Launching browser: {' '.join(args)}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            shutil.rmtree(self._profile_dir, ignore_errors=True)
            raise BrowserError(f"Could not start browser {path!r}: {e}")

        try:
            ws_url = await asyncio.wait_for(
                self._read_devtools_url(), timeout=self.config.load_timeout
            )
            self.connection = await CdpConnection(ws_url).connect()
        except asyncio.TimeoutError:
            await self.close()
            raise BrowserError(
                f"Browser did not open its DevTools endpoint within "
                f"{self.config.load_timeout:.1f}s"
            )
        except BrowserError:
            await self.close()
            raise
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        return self

    async def _read_devtools_url(self) -> str:
        seen: list[str] = []
        while True:
            raw = await self._proc.stderr.readline()
            if not raw:
                output = "\n".join(seen[-10:])
                raise BrowserError(f"Browser exited during startup:\n{output}")
            line = raw.decode("utf-8", errors="replace").strip()
            if line.startswith(DEVTOOLS_PREFIX):
                return line[len(DEVTOOLS_PREFIX):]
            seen.append(line)

    async def _drain_stderr(self) -> None:
        while True:
            raw = await self._proc.stderr.readline()
            if not raw:
                return
            logger.debug(f"chrome: {raw.decode('utf-8', errors='replace').rstrip()}")

    async def close(self) -> None:
        """Shut Chrome down; tolerates a browser that already exited."""
        if self._closed:
            return
        self._closed = True
        conn = self.connection
        if conn is not None and not conn.closed:
            try:
                await conn.send("Browser.close", timeout=2.0)
            except BrowserError as e:
                logger.debug(f"Browser.close failed: {e}")
            await conn.close()
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=3.0)
            except asyncio.TimeoutError:
                logger.warning(f"Browser (pid {proc.pid}) did not exit; killing it")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except (asyncio.CancelledError, Exception):
                pass
        if self._profile_dir:
            shutil.rmtree(self._profile_dir, ignore_errors=True)
        logger.info("Browser closed")


class PageSession:
    """The one page (tab) bound to the application.

    Keeps the count of in-flight network requests and copies console, error
    and network events into the session's ``LogBuffer``.
    """

    def __init__(
        self,
        connection: CdpConnection,
        config: DriverConfig,
        logs: LogBuffer | None = None,
    ):
        self.connection = connection
        self.config = config
        self.logs = logs if logs is not None else LogBuffer()
        self.session_id: str | None = None
        self.target_id: str | None = None
        self.url: str | None = None
        self.crashed = False
        self._requests: dict[str, str] = {}
        self._unsubscribe: list[Callable[[], None]] = []
        self._closed = False

    @property
    def pending_requests(self) -> int:
        return len(self._requests)

    def is_alive(self) -> bool:
        return not (self._closed or self.crashed or self.connection.closed)

    async def attach(self, url: str) -> PageSession:
        targets = await self.connection.send("Target.getTargets")
        pages = [t for t in targets.get("targetInfos", []) if t.get("type") == "page"]
        if pages:
            self.target_id = pages[0]["targetId"]
        else:
            created = await self.connection.send("Target.createTarget", {"url": "about:blank"})
            self.target_id = created["targetId"]
        attached = await self.connection.send(
            "Target.attachToTarget", {"targetId": self.target_id, "flatten": True}
        )
        self.session_id = attached["sessionId"]
        self._subscribe()
        self.connection.on_close(self._on_connection_lost)

        for domain in ("Page", "Runtime", "Network", "Log"):
            await self.send(f"{domain}.enable")
        await self.set_viewport(self.config.width, self.config.height)
        await self.send("Page.addScriptToEvaluateOnNewDocument", {"source": TRACER_JS})
        await self.navigate(url)
        return self

    def _subscribe(self) -> None:
        handlers = {
            "Network.requestWillBeSent": self._on_request,
            "Network.loadingFinished": self._on_request_done,
            "Network.loadingFailed": self._on_request_failed,
            "Network.responseReceived": self._on_response,
            "Network.webSocketFrameSent": self._on_ws_frame("sent"),
            "Network.webSocketFrameReceived": self._on_ws_frame("received"),
            "Runtime.consoleAPICalled": self._on_console,
            "Runtime.exceptionThrown": self._on_exception,
            "Log.entryAdded": self._on_log_entry,
            "Inspector.targetCrashed": self._on_crash,
            "Inspector.detached": self._on_detached,
        }
        for event, handler in handlers.items():
            self._unsubscribe.append(self.connection.on(event, handler, self.session_id))

    # ── Event handlers ──────────────────────────────────────────

    def _on_request(self, params: dict[str, Any]) -> None:
        if params.get("type") in UNTRACKED_REQUEST_TYPES:
            return
        self._requests[params["requestId"]] = params.get("request", {}).get("url", "")

    def _on_request_done(self, params: dict[str, Any]) -> None:
        self._requests.pop(params.get("requestId"), None)

    def _on_request_failed(self, params: dict[str, Any]) -> None:
        url = self._requests.pop(params.get("requestId"), None)
        if url is not None and not params.get("canceled"):
            self.logs.append("network", "error", f"{url} failed: {params.get('errorText', '')}")

    def _on_response(self, params: dict[str, Any]) -> None:
        response = params.get("response", {})
        status = response.get("status", 0)
        level = "warning" if status >= 400 else "info"
        self.logs.append("network", level, f"{status} {response.get('url', '')}")

    def _on_ws_frame(self, direction: str) -> Callable[[dict[str, Any]], None]:
        def _handler(params: dict[str, Any]) -> None:
            payload = params.get("response", {}).get("payloadData", "")
            if len(payload) > 500:
                payload = payload[:500] + "..."
            self.logs.append("network", "debug", f"websocket {direction}: {payload}")

        return _handler

    def _on_console(self, params: dict[str, Any]) -> None:
        level = CONSOLE_LEVELS.get(params.get("type", "log"), "info")
        text = " ".join(_remote_object_text(arg) for arg in params.get("args", []))
        self.logs.append("browser-console", level, text)

    def _on_exception(self, params: dict[str, Any]) -> None:
        details = params.get("exceptionDetails", {})
        self.logs.append("browser-console", "error", exception_message(details))

    def _on_log_entry(self, params: dict[str, Any]) -> None:
        entry = params.get("entry", {})
        level = entry.get("level", "info")
        if level == "verbose":
            level = "debug"
        self.logs.append("browser-console", level, entry.get("text", ""))

    def _on_crash(self, params: dict[str, Any]) -> None:
        self.crashed = True
        self.logs.append("driver", "error", "Browser page crashed")

    def _on_detached(self, params: dict[str, Any]) -> None:
        self.crashed = True
        reason = params.get("reason", "")
        self.logs.append("driver", "error", f"Browser page detached: {reason}")

    def _on_connection_lost(self, reason: str) -> None:
        if not self._closed:
            self.logs.append("driver", "error", f"Browser connection lost: {reason}")

    # ── Commands ────────────────────────────────────────────────

    async def send(
        self, method: str, params: dict[str, Any] | None = None, timeout: float = 30.0
    ) -> dict[str, Any]:
        return await self.connection.send(method, params, self.session_id, timeout)

    async def navigate(self, url: str) -> None:
        """Load ``url`` and wait for the page's load event."""
        loaded = asyncio.Event()
        off = self.connection.on("Page.loadEventFired", lambda _: loaded.set(), self.session_id)
        timeout = self.config.load_timeout
        try:
            result = await self.send("Page.navigate", {"url": url}, timeout=timeout)
            if result.get("errorText"):
                raise BrowserError(f"Navigation to {url} failed: {result['errorText']}")
            await asyncio.wait_for(loaded.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise PageLoadTimeout(f"Page {url} did not load within {timeout:.1f}s")
        finally:
            off()
        self.url = url
        logger.info(f"Page loaded: {url}")

    async def evaluate(self, expression: str, timeout: float = 30.0) -> JsonValue:
        """Evaluate script in the page and return its JSON result."""
        result = await self.send(
            "Runtime.evaluate",
            {
                "expression": expression,
                "returnByValue": True,
                "awaitPromise": True,
                "userGesture": True,
            },
            timeout=timeout,
        )
        details = result.get("exceptionDetails")
        if details:
            raise ScriptError(exception_message(details), details)
        return from_remote_object(result.get("result", {}))

    async def set_viewport(self, width: int, height: int) -> None:
        await self.send(
            "Emulation.setDeviceMetricsOverride",
            {"width": width, "height": height, "deviceScaleFactor": 1, "mobile": False},
        )

    async def screenshot(self, selector: str | None = None, full_page: bool = False) -> bytes:
        params: dict[str, Any] = {"format": "png"}
        if selector:
            rect = await self.evaluate(
                "(function (sel) {"
                " var el = document.querySelector(sel); if (!el) { return null; }"
                " var r = el.getBoundingClientRect();"
                " return {x: r.left + window.scrollX, y: r.top + window.scrollY,"
                " width: r.width, height: r.height}; })"
                f"({json.dumps(selector)})"
            )
            if rect is None:
                raise UnknownField(selector, "element matching selector")
            params["clip"] = {**rect, "scale": 1}
            params["captureBeyondViewport"] = True
        elif full_page:
            metrics = await self.send("Page.getLayoutMetrics")
            size = metrics.get("cssContentSize") or metrics.get("contentSize", {})
            params["clip"] = {
                "x": 0,
                "y": 0,
                "width": size.get("width", self.config.width),
                "height": size.get("height", self.config.height),
                "scale": 1,
            }
            params["captureBeyondViewport"] = True
        data = await self.send("Page.captureScreenshot", params)
        return base64.b64decode(data["data"])

    async def add_init_script(self, source: str) -> None:
        """Run ``source`` now and on every future document load."""
        await self.send("Page.addScriptToEvaluateOnNewDocument", {"source": source})
        await self.evaluate(source)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for off in self._unsubscribe:
            off()
        self._unsubscribe.clear()
        if self.connection.closed or self.target_id is None:
            return
        try:
            await self.connection.send(
                "Target.closeTarget", {"targetId": self.target_id}, timeout=2.0
            )
        except BrowserError as e:
            logger.debug(f"Target.closeTarget failed: {e}")
