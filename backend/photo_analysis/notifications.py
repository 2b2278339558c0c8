# backend/photo_analysis/notifications.py
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationSink:
    """Receives queue events. The default does nothing."""

    def notify_progress(self, report_id: str, processed_images: int, total_images: int, percentage: int):
        pass

    def notify_status_change(self, report_id: str, status: str):
        pass


class WebSocketNotifier(NotificationSink):
    """
    Pushes events to websocket clients subscribed to a report.
    Events are raised from worker threads, so sends are scheduled on the
    server's event loop.
    """

    def __init__(self):
        self._rooms = defaultdict(set)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop, replace: bool = True):
        if replace or self._loop is None or self._loop.is_closed():
            self._loop = loop

    def join(self, report_id: str, websocket: WebSocket):
        with self._lock:
            self._rooms[report_id].add(websocket)
        logger.debug("client joined report %s", report_id)

    def leave(self, report_id: str, websocket: WebSocket):
        with self._lock:
            room = self._rooms.get(report_id)
            if room:
                room.discard(websocket)
                if not room:
                    del self._rooms[report_id]

    def subscribers(self, report_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(report_id, ()))

    async def _send(self, report_id: str, websocket: WebSocket, payload: Dict[str, Any]):
        try:
            await websocket.send_json(payload)
        except Exception:
            logger.debug("dropping dead websocket for report %s", report_id)
            self.leave(report_id, websocket)

    def _emit(self, report_id: str, event: str, data: Dict[str, Any]):
        if self._loop is None or self._loop.is_closed():
            return
        with self._lock:
            sockets = list(self._rooms.get(report_id, ()))
        for websocket in sockets:
            asyncio.run_coroutine_threadsafe(
                self._send(report_id, websocket, {"event": event, "data": data}), self._loop)

    def notify_progress(self, report_id, processed_images, total_images, percentage):
        self._emit(report_id, "progress", {
            "reportId": report_id,
            "processedImages": processed_images,
            "totalImages": total_images,
            "percentage": percentage,
        })

    def notify_status_change(self, report_id, status):
        self._emit(report_id, "statusChange", {"reportId": report_id, "status": status})
