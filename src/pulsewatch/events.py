"""Live event fan-out to websocket subscribers, grouped by workspace."""
import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger("pulsewatch.events")

CHECK_RESULT = "check-result"
MONITOR_UPDATE = "monitor-update"
INCIDENT_UPDATE = "incident-update"


class EventPublisher:
    def __init__(self):
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, workspace_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections[workspace_id].add(websocket)
        logger.info(f"WebSocket joined workspace {workspace_id}")

    async def disconnect(self, workspace_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            subscribers = self._connections.get(workspace_id)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self._connections[workspace_id]

    def connection_count(self, workspace_id: str) -> int:
        return len(self._connections.get(workspace_id, ()))

    async def publish(self, workspace_id: str, event: str, data: dict[str, Any]) -> int:
        """Send ``event`` to every subscriber of the workspace; returns deliveries."""
        async with self._lock:
            subscribers = list(self._connections.get(workspace_id, ()))
        if not subscribers:
            return 0

        message = json.dumps(
            {
                "event": event,
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        delivered = 0
        dead = []
        for websocket in subscribers:
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping websocket after send failure: {e}")
                dead.append(websocket)

        for websocket in dead:
            await self.disconnect(workspace_id, websocket)
        return delivered
