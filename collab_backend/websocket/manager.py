import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from websockets.exceptions import ConnectionClosed

from ..models.events import frame

logger = logging.getLogger("uvicorn.error")


class SessionState(str, Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


OUTBOX_LIMIT = 1000


class ClientSession:
    """One live client connection.

    Outbound frames go through a bounded queue so that ``send`` never
    suspends; the ``pump`` task writes them to the socket in order. A client
    that stops reading until the queue fills up is treated as gone and its
    socket is closed.
    """

    def __init__(
        self,
        websocket: Optional[WebSocket] = None,
        session_id: str = None,
        outbox_limit: int = OUTBOX_LIMIT,
    ):
        self.websocket = websocket
        self.id = session_id or str(uuid.uuid4())
        self.state = SessionState.CONNECTED
        self.room_id: Optional[str] = None
        self.rooms: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_limit)
        self.overflowed = False

    def send(self, message: dict) -> bool:
        if self.state is SessionState.DISCONNECTED:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"[Send] Outbox of {self.id} is full, dropping the connection")
            self.state = SessionState.DISCONNECTED
            self.overflowed = True
            return False
        return True

    async def pump(self):
        """Write queued frames to the socket until the connection goes away."""
        while True:
            message = await self.outbox.get()
            if self.overflowed:
                try:
                    # 1013: try again later
                    await self.websocket.close(code=1013)
                except (RuntimeError, ConnectionClosed) as e:
                    logger.debug(f"[Send] Connection {self.id} already closed: {e}")
                return
            try:
                await self.websocket.send_text(json.dumps(jsonable_encoder(message)))
            except (WebSocketDisconnect, ConnectionClosed):
                logger.info(f"[Send] Connection {self.id} closed, dropping outbound frames")
                self.state = SessionState.DISCONNECTED
                return
            except Exception as e:
                logger.warning(f"[Send] Failed to send to {self.id}: {e}")
                self.state = SessionState.DISCONNECTED
                return


class RoomRegistry:
    """Maps room ids to the sessions currently joined to them."""

    def __init__(self):
        # session_id -> session
        self.sessions: Dict[str, ClientSession] = {}
        # room_id -> set of session_ids
        self.rooms: Dict[str, Set[str]] = {}

    def connect(self, session: ClientSession) -> ClientSession:
        self.sessions[session.id] = session
        logger.info(f"[Connect] Session {session.id} connected")
        return session

    def session(self, session_id: str) -> Optional[ClientSession]:
        return self.sessions.get(session_id)

    def join(self, session_id: str, room_id: str) -> bool:
        """Add a session to a room. Returns False if it was already a member."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"[Join] Unknown session {session_id} tried to join room {room_id}")
            return False

        if room_id not in self.rooms:
            self.rooms[room_id] = set()
            logger.info(f"[Join] Created room {room_id}")

        session.room_id = room_id
        session.state = SessionState.JOINED
        if session_id in self.rooms[room_id]:
            return False

        self.rooms[room_id].add(session_id)
        session.rooms.add(room_id)
        logger.info(f"[Join] Session {session_id} joined room {room_id}")
        return True

    def disconnect(self, session_id: str) -> List[str]:
        """Remove a session from every room it joined. Returns those rooms."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            logger.warning(f"[Disconnect] Session {session_id} not found")
            return []

        session.state = SessionState.DISCONNECTED
        left = sorted(session.rooms)
        for room_id in left:
            members = self.rooms.get(room_id)
            if members is None:
                continue
            members.discard(session_id)
            if not members:
                del self.rooms[room_id]
                logger.info(f"[Disconnect] Room {room_id} is now empty and removed")

        logger.info(f"[Disconnect] Session {session_id} removed from {len(left)} room(s)")
        return left

    def broadcast(self, room_id: str, event: str, payload: Any = None, exclude: str = None) -> int:
        """Queue a frame for every member of a room except ``exclude``.

        Best-effort: no acknowledgement, no retry. Returns the number of
        sessions the frame was queued for.
        """
        members = self.rooms.get(room_id)
        if not members:
            logger.debug(f"[Broadcast] Room {room_id} has no members, skipping {event}")
            return 0

        message = frame(event, payload)
        delivered = 0
        for session_id in list(members):
            if exclude and session_id == exclude:
                continue
            session = self.sessions.get(session_id)
            if session is not None and session.send(message):
                delivered += 1

        logger.debug(f"[Broadcast] {event} queued for {delivered} session(s) in room {room_id}")
        return delivered

    def room_members(self, room_id: str) -> List[str]:
        return list(self.rooms.get(room_id, set()))
