"""Chrome DevTools Protocol transport over a WebSocket connection."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from appdriver.errors import BrowserError

logger = logging.getLogger(__name__)

# Full-page screenshots are returned inline as base64 and can be large.
MAX_MESSAGE_SIZE = 256 * 1024 * 1024
DEFAULT_COMMAND_TIMEOUT = 30.0

EventCallback = Callable[[dict[str, Any]], None]


class CdpConnection:
    """One WebSocket connection to a browser's DevTools endpoint.

    Commands are ``{"id", "method", "params"[, "sessionId"]}`` messages;
    replies are matched to their command by id. Everything without an id is an
    event and is dispatched to the callbacks registered with :meth:`on`.
    """

    def __init__(self, ws_url: str):
        self.ws_url = ws_url
        self.closed = False
        self.close_reason = ""
        self._ws = None
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: dict[str, list[tuple[str | None, EventCallback]]] = {}
        self._close_callbacks: list[Callable[[str], None]] = []
        self._reader: asyncio.Task | None = None

    async def connect(self) -> CdpConnection:
        try:
            self._ws = await ws_connect(
                self.ws_url,
                max_size=MAX_MESSAGE_SIZE,
                ping_interval=None,
            )
        except (OSError, WebSocketException) as e:
            raise BrowserError(f"Could not connect to browser at {self.ws_url}: {e}")
        self._reader = asyncio.create_task(self._read_loop())
        return self

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: str | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> dict[str, Any]:
        """Send a command and wait for its reply.

        Protocol-level errors (e.g. "Cannot find context with specified id")
        raise ``BrowserError`` with the protocol's error code.
        """
        if self.closed or self._ws is None:
            raise BrowserError(f"{method}: browser connection is closed ({self.close_reason})")
        self._next_id += 1
        msg_id = self._next_id
        msg: dict[str, Any] = {"id": msg_id, "method": method, "params": params or {}}
        if session_id:
            msg["sessionId"] = session_id

        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._ws.send(json.dumps(msg))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise BrowserError(f"{method}: no reply from browser within {timeout:.1f}s")
        except ConnectionClosed as e:
            self._mark_closed(f"connection closed: {e}")
            raise BrowserError(f"{method}: browser connection closed")
        finally:
            self._pending.pop(msg_id, None)

    def on(
        self, event: str, callback: EventCallback, session_id: str | None = None
    ) -> Callable[[], None]:
        """Subscribe to an event; returns a function that unsubscribes."""
        entry = (session_id, callback)
        self._listeners.setdefault(event, []).append(entry)

        def _off():
            listeners = self._listeners.get(event, [])
            if entry in listeners:
                listeners.remove(entry)

        return _off

    def on_close(self, callback: Callable[[str], None]) -> None:
        self._close_callbacks.append(callback)

    def _dispatch(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        if not method:
            return
        session_id = msg.get("sessionId")
        params = msg.get("params", {})
        for wanted_session, callback in list(self._listeners.get(method, [])):
            if wanted_session is not None and wanted_session != session_id:
                continue
            try:
                callback(params)
            except Exception:
                logger.exception(f"Error in {method} event handler")

    def _resolve(self, msg: dict[str, Any]) -> None:
        future = self._pending.get(msg["id"])
        if future is None or future.done():
            return
        if "error" in msg:
            error = msg["error"]
            future.set_exception(
                BrowserError(error.get("message", "Unknown browser error"), error.get("code"))
            )
        else:
            future.set_result(msg.get("result", {}))

    async def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed DevTools message: {raw[:200]!r}")
                    continue
                if "id" in msg:
                    self._resolve(msg)
                else:
                    self._dispatch(msg)
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except asyncio.CancelledError:
            reason = "connection closed by driver"
            raise
        finally:
            self._mark_closed(reason)

    def _mark_closed(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        for future in self._pending.values():
            if not future.done():
                future.set_exception(BrowserError(f"Browser connection lost ({reason})"))
        for callback in self._close_callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Error in connection close handler")

    async def close(self) -> None:
        """Close the connection; safe on an already-dead connection."""
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing DevTools socket: {e}")
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except (asyncio.CancelledError, Exception):
                pass
        self._mark_closed("connection closed by driver")
