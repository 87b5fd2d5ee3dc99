"""
WebSocket Manager - Broadcast engine events to operator clients
"""
import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Real-time fan-out sink used by the scheduler, executor and queue.

    Events are queued by broadcast() and delivered to every connected client
    from a single background loop. The last events are kept in memory so a
    client connecting late can be sent a short backlog.
    """

    def __init__(self, history_size: int = 200):
        self.active_connections: Set[WebSocket] = set()
        self.message_queue: asyncio.Queue = asyncio.Queue()
        self.history: Deque[Dict] = deque(maxlen=history_size)
        self.running = False
        self.broadcast_task: Optional[asyncio.Task] = None
        self.stats = {
            "events": 0,
            "delivered": 0,
            "send_errors": 0,
        }

    async def connect(self, websocket: WebSocket, backlog: int = 20):
        """Accept new WebSocket connection and replay recent events"""
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info(f"Event WebSocket connected (total: {len(self.active_connections)})")

        await self.send_personal_message({
            "type": "connected",
            "message": "Connected to Shelter Master event stream",
            "timestamp": datetime.utcnow().isoformat()
        }, websocket)
        for event in list(self.history)[-backlog:]:
            await self.send_personal_message(event, websocket)

    def disconnect(self, websocket: WebSocket):
        """Remove WebSocket connection"""
        if websocket in self.active_connections:
            self.active_connections.discard(websocket)
            logger.info(f"Event WebSocket disconnected (remaining: {len(self.active_connections)})")

    async def send_personal_message(self, message: Dict, websocket: WebSocket):
        """Send message to specific client"""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending personal message: {e}")

    async def broadcast(self, message: Dict):
        """Queue message for broadcast to all connected clients"""
        self.history.append(message)
        self.stats["events"] += 1
        await self.message_queue.put(message)

    async def broadcast_log(self, level: str, service: str, message: str, data: Optional[Dict] = None):
        event = {
            "type": "log",
            "level": level,
            "service": service,
            "message": message,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if data is not None:
            event["data"] = data
        await self.broadcast(event)

    async def broadcast_command_status(self, device_id: str, unit_id: str, action: str, status: str,
                                       value: Any = None, error: Optional[str] = None):
        event = {
            "type": "command_status",
            "deviceId": device_id,
            "unitId": unit_id,
            "action": action,
            "status": status,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if value is not None:
            event["value"] = value
        if error is not None:
            event["error"] = error
        await self.broadcast(event)

    async def start_broadcasting(self):
        """Start background task for broadcasting queued messages"""
        self.running = True
        self.broadcast_task = asyncio.create_task(self._broadcast_loop())
        logger.info("WebSocket broadcaster started")

    async def stop_broadcasting(self):
        """Stop broadcasting"""
        self.running = False
        if self.broadcast_task:
            self.broadcast_task.cancel()
            try:
                await self.broadcast_task
            except asyncio.CancelledError:
                pass
            self.broadcast_task = None

    async def _broadcast_loop(self):
        """Background loop to broadcast queued messages"""
        while self.running:
            try:
                # Get message from queue with timeout
                try:
                    message = await asyncio.wait_for(self.message_queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue

                # Broadcast to all connected clients
                disconnected = set()
                for websocket in list(self.active_connections):
                    try:
                        await websocket.send_json(message)
                        self.stats["delivered"] += 1
                    except Exception as e:
                        logger.error(f"Error broadcasting to client: {e}")
                        self.stats["send_errors"] += 1
                        disconnected.add(websocket)

                # Remove disconnected clients
                for websocket in disconnected:
                    self.disconnect(websocket)

            except Exception as e:
                logger.error(f"Error in broadcast loop: {e}")

    def get_connection_count(self) -> int:
        """Get number of active connections"""
        return len(self.active_connections)
