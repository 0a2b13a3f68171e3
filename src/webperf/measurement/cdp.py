"""Minimal Chrome DevTools Protocol session over a page websocket."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 30.0


class CdpError(RuntimeError):
    """Raised when a DevTools command fails or the connection drops."""


class CdpSession:
    """Request/response multiplexer for one DevTools target.

    Command replies are matched by ``id``; events are fanned out to queues
    obtained from :meth:`subscribe`. A ``None`` on a subscriber queue means the
    connection closed.
    """

    def __init__(self, websocket: aiohttp.ClientWebSocketResponse, http: aiohttp.ClientSession) -> None:
        self._websocket = websocket
        self._http = http
        self._next_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._reader: Optional[asyncio.Task] = None
        self.closed = False

    @classmethod
    async def connect(cls, websocket_url: str, *, timeout: float = 10.0) -> "CdpSession":
        http = aiohttp.ClientSession()
        try:
            websocket = await asyncio.wait_for(http.ws_connect(websocket_url, max_msg_size=0), timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            await http.close()
            raise CdpError(f"Unable to connect to DevTools at {websocket_url}: {exc}") from exc
        except BaseException:
            await http.close()
            raise
        session = cls(websocket, http)
        session._reader = asyncio.create_task(session._read_loop())
        return session

    async def send(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: float = COMMAND_TIMEOUT,
    ) -> Dict[str, Any]:
        if self.closed or (self._reader is not None and self._reader.done()):
            raise CdpError("DevTools session is closed")
        self._next_id += 1
        message_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._websocket.send_json({"id": message_id, "method": method, "params": params or {}})
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise CdpError(f"{method} timed out after {timeout:.0f}s") from exc
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise CdpError(f"{method} failed: {exc}") from exc
        finally:
            self._pending.pop(message_id, None)

    async def evaluate(self, expression: str, *, await_promise: bool = True) -> Any:
        """Evaluate a script in the page and return its JSON-serializable value."""
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "awaitPromise": await_promise, "returnByValue": True},
        )
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            raise CdpError(exception.get("description") or details.get("text") or "Script evaluation failed")
        return (result.get("result") or {}).get("value")

    def subscribe(self, method: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(method, []).append(queue)
        return queue

    def unsubscribe(self, method: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(method, [])
        if queue in queues:
            queues.remove(queue)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._websocket.close()
        await self._http.close()
        if self._reader is not None:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader

    async def _read_loop(self) -> None:
        try:
            async for message in self._websocket:
                if message.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    payload = json.loads(message.data)
                except json.JSONDecodeError:
                    logger.debug("Ignoring malformed DevTools message: %.200s", message.data)
                    continue
                self._dispatch(payload)
        finally:
            self._fail_outstanding()

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        if "id" in payload:
            future = self._pending.get(payload["id"])
            if future is None or future.done():
                return
            error = payload.get("error")
            if error:
                future.set_exception(CdpError(error.get("message") or str(error)))
            else:
                future.set_result(payload.get("result") or {})
            return
        for queue in self._subscribers.get(payload.get("method", ""), []):
            queue.put_nowait(payload.get("params") or {})

    def _fail_outstanding(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(CdpError("DevTools connection closed"))
        for queues in self._subscribers.values():
            for queue in queues:
                queue.put_nowait(None)
