from __future__ import annotations
from typing import Dict, Set
from fastapi import WebSocket
import asyncio
import json
import logging

from deadswitch.services.events import ConditionEvent, EventNotifier, GLOBAL, RateLimitedCallback, Subscription

logger = logging.getLogger(__name__)

class NotificationConnectionManager:
    """Manager of WebSocket connections per user id.
    We keep a set of active WebSockets for each user.
    """
    def __init__(self) -> None:
        self._user_sockets: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._hint_limiters: Dict[str, RateLimitedCallback] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.quiet_period_seconds = 0.0

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            if user_id not in self._user_sockets:
                self._user_sockets[user_id] = set()
            self._user_sockets[user_id].add(websocket)

    async def disconnect(self, user_id: str, websocket: WebSocket):
        async with self._lock:
            conns = self._user_sockets.get(user_id)
            if conns and websocket in conns:
                conns.remove(websocket)
                if not conns:
                    self._user_sockets.pop(user_id, None)
                    self._hint_limiters.pop(user_id, None)

    async def send_to_user(self, user_id: str, payload: dict):
        # Send to every open tab/session of the user
        message = json.dumps(payload, ensure_ascii=False)
        async with self._lock:
            conns = list(self._user_sockets.get(user_id, []))
        for ws in conns:
            try:
                await ws.send_text(message)
            except Exception:
                logger.info(f"Dropping dead socket for user {user_id}")
                await self.disconnect(user_id, ws)

    def push(self, user_id: str, payload: dict) -> None:
        """Schedule a push from sync code, inside or outside the event loop."""
        coro = self.send_to_user(user_id, payload)
        try:
            task = asyncio.get_running_loop().create_task(coro)
            # the loop keeps only weak references to tasks
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        except RuntimeError:
            # called from a worker thread (sync endpoint): hand over to the app loop
            if self._loop is not None and self._loop.is_running():
                asyncio.run_coroutine_threadsafe(coro, self._loop)
            else:
                coro.close()

    def forward_event(self, event: ConditionEvent) -> None:
        """Event subscriber: push condition changes to the owner's sockets."""
        if event.user_id:
            self.push(event.user_id, event.to_payload())

    def route_event(self, event: ConditionEvent) -> None:
        """Optimistic hints are throttled per user; confirmed events always go out."""
        if not event.optimistic or not event.user_id:
            self.forward_event(event)
            return
        if event.user_id not in self._user_sockets:
            # no open socket to hint
            return
        limiter = self._hint_limiters.get(event.user_id)
        if limiter is None:
            limiter = self._hint_limiters[event.user_id] = RateLimitedCallback(self.forward_event, self.quiet_period_seconds)
        limiter(event)

    def attach(
        self,
        notifier: EventNotifier,
        loop: asyncio.AbstractEventLoop | None = None,
        quiet_period_seconds: float = 0.0,
    ) -> Subscription:
        self._loop = loop
        self.quiet_period_seconds = quiet_period_seconds
        return notifier.subscribe(GLOBAL, self.route_event)


manager = NotificationConnectionManager()
