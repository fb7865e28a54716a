"""Wait-for-idle: deciding when the application has settled.

No single signal says "done". Network quiescence misses client-only work, DOM
quiescence misses a pending server round-trip, and the application's busy
flag misses browser-side rendering. The engine polls all three and declares
the page idle only when every one of them is quiet in the same tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from appdriver.config import DriverConfig
from appdriver.errors import (
    BrowserError,
    ConditionTimeout,
    ScriptError,
    SessionClosed,
    StillBusy,
)
from appdriver.tracer import state_expression
from appdriver.values import JsonValue

logger = logging.getLogger(__name__)


class Page(Protocol):
    pending_requests: int

    def is_alive(self) -> bool: ...

    async def evaluate(self, expression: str, timeout: float = 30.0) -> JsonValue: ...


@dataclass(frozen=True)
class IdleSignal:
    """The three raw activity signals, sampled in one polling tick."""

    pending_requests: int
    ms_since_mutation: float
    app_busy: bool
    busy_error: str | None = None
    ready_state: str = ""
    pending_inputs: int = 0

    def is_idle(self, duration: float) -> bool:
        return (
            self.pending_requests == 0
            and self.ms_since_mutation >= duration * 1000
            and not self.app_busy
            and self.pending_inputs == 0
        )

    def describe(self) -> str:
        text = (
            f"{self.pending_requests} pending network request(s), "
            f"last DOM mutation {self.ms_since_mutation:.0f}ms ago, "
            f"application busy={self.app_busy}"
        )
        if self.pending_inputs:
            text += f", {self.pending_inputs} input change(s) not yet seen by the server"
        if self.ready_state and self.ready_state != "complete":
            text += f", document {self.ready_state}"
        if self.busy_error:
            text += f", busy check failed: {self.busy_error}"
        return text


class SyncEngine:
    """Polls a page until it settles.

    ``check_alive`` is called every tick and must raise ``SessionClosed`` when
    the browser or the server has died; those errors are never retried.
    """

    def __init__(
        self,
        page: Page,
        config: DriverConfig,
        check_alive: Callable[[], None] | None = None,
    ):
        self.page = page
        self.config = config
        self.check_alive = check_alive or self._check_page
        self.last_signal: IdleSignal | None = None

    def _check_page(self) -> None:
        if not self.page.is_alive():
            raise SessionClosed("browser")

    async def read_signal(self, timeout: float | None = None) -> IdleSignal:
        state = await self.page.evaluate(
            state_expression(self.config.busy_js),
            timeout=timeout or self.config.timeout,
        )
        if not isinstance(state, dict):
            raise ScriptError(f"Unexpected idle state from page: {state!r}")
        signal = IdleSignal(
            pending_requests=self.page.pending_requests,
            ms_since_mutation=float(state.get("msSinceMutation", 0.0)),
            app_busy=bool(state.get("appBusy", True)),
            busy_error=state.get("busyError"),
            ready_state=state.get("readyState", ""),
            pending_inputs=int(state.get("pendingInputs") or 0),
        )
        self.last_signal = signal
        return signal

    async def wait_for_idle(
        self, timeout: float | None = None, duration: float | None = None
    ) -> IdleSignal:
        """Block until the page is idle for ``duration`` seconds.

        Raises ``StillBusy`` with the last sampled signal on timeout. Protocol
        hiccups while polling (a navigation destroying the execution context,
        a slow reply) are retried until the deadline.
        """
        timeout = self.config.timeout if timeout is None else timeout
        duration = self.config.idle_duration if duration is None else duration
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            self.check_alive()
            remaining = deadline - loop.time()
            try:
                signal = await self.read_signal(timeout=max(remaining, self.config.poll_interval))
                if signal.is_idle(duration):
                    return signal
            except (BrowserError, ScriptError) as e:
                self.check_alive()
                logger.debug(f"Idle poll failed, retrying: {e}")
            if loop.time() >= deadline:
                raise StillBusy(timeout, self.last_signal)
            await asyncio.sleep(self.config.poll_interval)

    async def wait_for_condition(
        self,
        check: Callable[[], Awaitable[tuple[bool, Any]]],
        what: str,
        timeout: float | None = None,
        interval: float | None = None,
    ) -> Any:
        """Poll ``check`` until it reports success; return its value."""
        timeout = self.config.timeout if timeout is None else timeout
        interval = self.config.poll_interval if interval is None else interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_value = None
        while True:
            self.check_alive()
            try:
                done, last_value = await check()
                if done:
                    return last_value
            except (BrowserError, ScriptError) as e:
                self.check_alive()
                logger.debug(f"Condition poll failed, retrying: {e}")
            if loop.time() >= deadline:
                raise ConditionTimeout(what, timeout, last_value)
            await asyncio.sleep(interval)
