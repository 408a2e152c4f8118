import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from cloudpanel.core.events import EventBus, EventType, PanelEvent, Subscription
from cloudpanel.services.inactivity_monitor import InactivityMonitor
from cloudpanel.users.models import User
from cloudpanel.vm.controller import VMController

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Websocket clients, each with its own outbound queue and sender task.

    Queuing a message never waits on the socket, so a browser that stops
    reading only holds up its own sender. A client that falls
    ``max_pending_messages`` behind is dropped.
    """

    def __init__(self, max_pending_messages: int = 100):
        self.max_pending_messages = max_pending_messages
        self.user_connections: Dict[WebSocket, User] = {}
        self._queues: Dict[WebSocket, asyncio.Queue] = {}
        self._senders: Dict[WebSocket, asyncio.Task] = {}
        self._closing: Set[asyncio.Task] = set()

    @property
    def connection_count(self) -> int:
        return len(self.user_connections)

    async def connect(self, websocket: WebSocket, user: User):
        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending_messages)
        self.user_connections[websocket] = user
        self._queues[websocket] = queue
        self._senders[websocket] = asyncio.create_task(
            self._send_loop(websocket, queue)
        )
        logger.info(f"Event stream connected for user {user.username}")

    def disconnect(self, websocket: WebSocket):
        user = self.user_connections.pop(websocket, None)
        self._queues.pop(websocket, None)
        sender = self._senders.pop(websocket, None)
        if sender is not None and sender is not asyncio.current_task():
            sender.cancel()
        if user is not None:
            logger.info(f"Event stream disconnected for user {user.username}")

    def disconnect_all(self):
        for websocket in list(self.user_connections):
            self.disconnect(websocket)

    def send_personal_message(self, websocket: WebSocket, message: dict) -> bool:
        queue = self._queues.get(websocket)
        if queue is None:
            return False

        try:
            queue.put_nowait(json.dumps(message))
        except asyncio.QueueFull:
            user = self.user_connections.get(websocket)
            logger.warning(
                f"Event stream for {user.username if user else 'unknown user'} "
                f"is {self.max_pending_messages} messages behind, dropping it"
            )
            self.disconnect(websocket)
            self._close_in_background(websocket)
            return False
        return True

    def broadcast(self, message: dict):
        for connection in list(self._queues):
            self.send_personal_message(connection, message)

    async def _send_loop(self, websocket: WebSocket, queue: asyncio.Queue):
        while True:
            text = await queue.get()
            try:
                await websocket.send_text(text)
            except Exception as e:
                logger.error(f"Error sending message to WebSocket: {e}")
                self.disconnect(websocket)
                return

    def _close_in_background(self, websocket: WebSocket):
        task = asyncio.create_task(self._close(websocket))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _close(websocket: WebSocket):
        try:
            # 1013: try again later
            await asyncio.wait_for(websocket.close(code=1013), timeout=5)
        except Exception as e:
            logger.debug(f"Closing a dropped event stream failed: {e}")


class NotificationService:
    """Relays panel events to connected browsers.

    The bus subscription only exists while at least one client is
    connected. Every frame a client sends counts as web activity for the
    inactivity monitor.
    """

    def __init__(
        self,
        events: EventBus,
        vm_controller: VMController,
        monitor: InactivityMonitor,
    ):
        self.events = events
        self.vm_controller = vm_controller
        self.monitor = monitor
        self.connection_manager = ConnectionManager()
        self._subscription: Optional[Subscription] = None

    @property
    def is_relaying(self) -> bool:
        return self._subscription is not None

    async def handle_connection(self, websocket: WebSocket, user: User):
        await self.connect(websocket, user)

        try:
            while True:
                data = await websocket.receive_text()
                self._handle_message(websocket, data)

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            self.disconnect(websocket)

    async def connect(self, websocket: WebSocket, user: User):
        await self.connection_manager.connect(websocket, user)
        if self._subscription is None:
            self._subscription = self.events.subscribe(self.broadcast_event)

        # An open panel is web activity
        self.monitor.record_web_activity()
        self._send_initial_status(websocket)

    def disconnect(self, websocket: WebSocket):
        self.connection_manager.disconnect(websocket)
        if self.connection_manager.connection_count == 0 and self._subscription:
            self._subscription.unsubscribe()
            self._subscription = None

    def broadcast_event(self, event: PanelEvent):
        self.connection_manager.broadcast(event.to_message())

    def close(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self.connection_manager.disconnect_all()

    def _send_initial_status(self, websocket: WebSocket):
        message = {
            "type": EventType.vm_status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {
                "status": self.vm_controller.status.value,
                "agentReady": self.vm_controller.agent_ready,
            },
        }
        self.connection_manager.send_personal_message(websocket, message)

    def _handle_message(self, websocket: WebSocket, data: str):
        self.monitor.record_web_activity()

        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            message = {"type": data.strip()}

        if isinstance(message, dict) and message.get("type") == "ping":
            self.connection_manager.send_personal_message(
                websocket,
                {"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()},
            )
