"""
Realtime fan-out of task and notification changes over WebSockets.

Route handlers never talk to sockets directly. They call a RealtimeEmitter,
which hands deliveries to a bounded queue drained by a single dispatcher task
on the event loop. The dispatcher pushes them through a Broadcaster (the
WebSocket ConnectionManager in production, a recorder in tests).

Delivery is at-most-once: a full queue, a stopped emitter, or a broken socket
drops the event. Clients reconcile by re-fetching through the authorized API.
Events carry ids only, never task contents.
"""

import asyncio
import enum
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect, status

from auth.security import verify_token

logger = logging.getLogger(__name__)

REALTIME_QUEUE_SIZE = int(os.environ.get("REALTIME_QUEUE_SIZE", "1000"))


class TaskEventType(str, enum.Enum):
    task_created = "task.created"
    task_updated = "task.updated"
    task_deleted = "task.deleted"
    comment_created = "comment.created"
    activity_created = "activity.created"
    assignment_updated = "assignment.updated"


class NotificationEventType(str, enum.Enum):
    notification_read = "notification.read"
    notification_read_all = "notification.read_all"


def task_room(task_id) -> str:
    return f"task:{task_id}"


def user_room(user_id) -> str:
    return f"user:{user_id}"


# ============== Broadcaster capability ==============

class Broadcaster(ABC):
    """Where dispatched events end up."""

    @abstractmethod
    async def send_to_room(self, room: str, message: dict) -> None:
        ...

    @abstractmethod
    async def send_to_all(self, message: dict) -> None:
        ...


class ConnectionManager(Broadcaster):
    """Registry of live WebSocket connections and the rooms they joined."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        # room name -> sockets, e.g. "task:42" or "user:7"
        self.rooms: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id) -> None:
        await websocket.accept()
        self.active_connections.add(websocket)
        self.join(websocket, user_room(user_id))
        logger.debug(f"Socket connected for user {user_id} ({len(self.active_connections)} active)")

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        for room in list(self.rooms):
            self.leave(websocket, room)
        logger.debug(f"Socket disconnected ({len(self.active_connections)} active)")

    def join(self, websocket: WebSocket, room: str) -> None:
        self.rooms.setdefault(room, set()).add(websocket)

    def leave(self, websocket: WebSocket, room: str) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room]

    async def send_to_room(self, room: str, message: dict) -> None:
        for connection in list(self.rooms.get(room, ())):
            await self._send(connection, message)

    async def send_to_all(self, message: dict) -> None:
        for connection in list(self.active_connections):
            await self._send(connection, message)

    async def _send(self, connection: WebSocket, message: dict) -> None:
        try:
            await connection.send_json(message)
        except Exception as e:  # socket may already be closed
            logger.debug(f"Dropping realtime message for closed socket: {e}")


# ============== Emitter ==============

@dataclass(frozen=True)
class Delivery:
    room: Optional[str]  # None broadcasts to every connection
    message: dict


class RealtimeEmitter:
    """
    Thread-safe, non-blocking front door for realtime events.

    emit_* may be called from sync route handlers running in the threadpool;
    deliveries are handed to the event loop with call_soon_threadsafe and
    never raise back into the caller.
    """

    def __init__(self, broadcaster: Broadcaster, max_queue_size: int = REALTIME_QUEUE_SIZE):
        self.broadcaster = broadcaster
        self.max_queue_size = max_queue_size
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self) -> None:
        """Bind to the running loop and start the dispatcher."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._dispatcher = asyncio.create_task(self._dispatch())
        logger.info(f"Realtime emitter started (queue size {self.max_queue_size})")

    async def stop(self) -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.cancel()
        with suppress(asyncio.CancelledError):
            await self._dispatcher
        self._dispatcher = None
        self._loop = None
        logger.info("Realtime emitter stopped")

    def emit_task(self, event_type: TaskEventType, task_id: int, payload: Optional[Dict[str, Any]] = None) -> None:
        """Send a task event to the task's room and to every connection."""
        data = {
            "type": TaskEventType(event_type).value,
            "task_id": task_id,
            "payload": payload or {},
        }
        self._submit([
            Delivery(room=task_room(task_id), message={"event": "task:event", "data": data}),
            Delivery(room=None, message={"event": "workspace:event", "data": data}),
        ])

    def emit_notification(
        self,
        event_type: NotificationEventType,
        user_id: int,
        notification_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send a notification event to one user's room only."""
        data = {
            "type": NotificationEventType(event_type).value,
            "user_id": user_id,
            "notification_id": notification_id,
            "payload": payload or {},
        }
        self._submit([
            Delivery(room=user_room(user_id), message={"event": "notification:event", "data": data}),
        ])

    def _submit(self, deliveries: list) -> None:
        loop = self._loop
        if loop is None or not self.running:
            logger.debug(f"Realtime emitter not running, dropping {len(deliveries)} deliveries")
            return
        try:
            loop.call_soon_threadsafe(self._offer, deliveries)
        except RuntimeError as e:  # loop already closed
            logger.debug(f"Realtime loop unavailable, dropping deliveries: {e}")

    def _offer(self, deliveries: list) -> None:
        for delivery in deliveries:
            try:
                self._queue.put_nowait(delivery)
            except asyncio.QueueFull:
                logger.warning(f"Realtime queue full, dropping event for room {delivery.room or '*'}")

    async def _dispatch(self) -> None:
        while True:
            delivery = await self._queue.get()
            try:
                if delivery.room is None:
                    await self.broadcaster.send_to_all(delivery.message)
                else:
                    await self.broadcaster.send_to_room(delivery.room, delivery.message)
            except Exception:
                logger.exception(f"Realtime delivery to {delivery.room or '*'} failed")
            finally:
                self._queue.task_done()


def get_emitter(request: Request) -> RealtimeEmitter:
    """FastAPI dependency: the emitter wired into the app at startup."""
    return request.app.state.emitter


# ============== WebSocket endpoint ==============

router = APIRouter(tags=["realtime"])


def _token_from_socket(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):]
    return None


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Live update channel.

    Every connection joins its user's room and receives all task events.
    Clients may additionally subscribe to individual task rooms with
    {"type": "task:subscribe", "task_id": <id>}.
    """
    payload = verify_token(_token_from_socket(websocket, token) or "")
    if payload is None or payload.get("type") != "access" or payload.get("sub") is None:
        logger.info("Rejecting realtime socket without a valid access token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = payload["sub"]
    manager: ConnectionManager = websocket.app.state.connections
    await manager.connect(websocket, user_id)

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", status.WS_1000_NORMAL_CLOSURE))

            text = frame.get("text")
            if text is None:
                # Binary frames carry nothing we understand
                await websocket.send_json({"event": "error", "data": {"detail": "Unsupported message"}})
                continue
            try:
                message = json.loads(text)
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"detail": "Invalid JSON"}})
                continue

            message_type = message.get("type") if isinstance(message, dict) else None
            task_id = message.get("task_id") if isinstance(message, dict) else None
            if message_type not in ("task:subscribe", "task:unsubscribe") or task_id in (None, ""):
                await websocket.send_json({"event": "error", "data": {"detail": "Unsupported message"}})
                continue

            if message_type == "task:subscribe":
                manager.join(websocket, task_room(task_id))
                ack = "task:subscribed"
            else:
                manager.leave(websocket, task_room(task_id))
                ack = "task:unsubscribed"
            logger.debug(f"User {user_id} {ack} {task_id}")
            await websocket.send_json({"event": ack, "data": {"task_id": task_id}})
    except WebSocketDisconnect:
        logger.debug(f"Realtime socket of user {user_id} closed by client")
    finally:
        manager.disconnect(websocket)
