"""Realtime fan-out to connected members and best-effort push delivery.

The hub keeps a small per-member history and forwards every event to the
member's open WebSocket connections. Lifecycle code runs in worker threads, so
publishing hands the coroutine to the event loop bound at application startup.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Iterable, Protocol

import httpx
from fastapi import WebSocket

from .config import settings
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


class RealtimeHub:
    """Per-member WebSocket registry with bounded event history."""

    def __init__(self, history_size: int = 50) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)
        self._history: dict[str, deque[dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=history_size)
        )
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    async def connect(self, member_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        with self._lock:
            self._connections[member_id].add(websocket)
        logger.info("Realtime client connected for member %s", member_id)

    def disconnect(self, member_id: str, websocket: WebSocket) -> None:
        with self._lock:
            sockets = self._connections.get(member_id)
            if not sockets:
                return
            sockets.discard(websocket)
            if not sockets:
                del self._connections[member_id]

    def history(self, member_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._history.get(member_id, ()))

    def clear(self) -> None:
        with self._lock:
            self._history.clear()

    def publish(self, event_type: str, payload: dict[str, Any], member_ids: Iterable[str]) -> int:
        """Record ``event_type`` for every member and push it to live sockets.

        Returns the number of members addressed.
        """
        targets = sorted(set(member_ids))
        event = {
            "type": event_type,
            "timestamp": utcnow().isoformat(),
            "target_member_ids": targets,
            **payload,
        }
        with self._lock:
            for member_id in targets:
                self._history[member_id].append(event)
            live = {
                member_id: list(self._connections.get(member_id, ()))
                for member_id in targets
                if self._connections.get(member_id)
            }
        loop = self._loop
        if live and loop is not None and loop.is_running():
            for member_id, sockets in live.items():
                asyncio.run_coroutine_threadsafe(
                    self._send(member_id, sockets, event), loop
                )
        return len(targets)

    async def _send(
        self, member_id: str, sockets: list[WebSocket], event: dict[str, Any]
    ) -> None:
        for websocket in sockets:
            try:
                await websocket.send_json(event)
            except Exception as exc:
                logger.info("Dropping realtime socket for member %s: %s", member_id, exc)
                self.disconnect(member_id, websocket)


class PushSender(Protocol):
    def send(
        self,
        member_id: str,
        *,
        title: str,
        body: str | None,
        metadata: dict[str, Any],
    ) -> None: ...


class LoggingPushSender:
    """Default sender when no push endpoint is configured."""

    def send(self, member_id, *, title, body, metadata):
        logger.info("Push notification for member %s: %s", member_id, title)


class WebhookPushSender:
    """POST each notification to an HTTP push gateway."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def send(self, member_id, *, title, body, metadata):
        response = httpx.post(
            self.url,
            json={
                "member_id": member_id,
                "title": title,
                "body": body,
                "type": "info",
                "metadata": metadata,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


hub = RealtimeHub(history_size=settings.realtime_history_size)
_push_sender: PushSender | None = None


def get_push_sender() -> PushSender:
    global _push_sender
    if _push_sender is None:
        if settings.push_webhook_url:
            _push_sender = WebhookPushSender(
                settings.push_webhook_url, timeout=settings.push_timeout_seconds
            )
        else:
            _push_sender = LoggingPushSender()
    return _push_sender


def set_push_sender(sender: PushSender | None) -> None:
    global _push_sender
    _push_sender = sender
