import asyncio
import logging
from typing import Any, Set

from pydantic import ValidationError

from ..database import Store, touch
from ..errors import RecordNotFound
from ..models.events import (
    CURSOR_POSITION,
    DOC_CHANGE,
    DOC_UPDATE,
    JOIN_ROOM,
    USER_CURSOR,
    USER_LEFT,
    WB_CHANGE,
    WB_UPDATE,
    CursorPosition,
    DocChange,
    WhiteboardChange,
    frame,
)
from ..models.records import RecordKind
from .manager import ClientSession, RoomRegistry

logger = logging.getLogger("uvicorn.error")


class SessionHandler:
    """Dispatches client events to the room registry and the store.

    A change is broadcast first and persisted afterwards in its own task. A
    failed write is logged and dropped; peers keep the update they already
    received.
    """

    def __init__(self, registry: RoomRegistry, store: Store):
        self.registry = registry
        self.store = store
        self.pending: Set[asyncio.Task] = set()
        self.handlers = {
            JOIN_ROOM: self.join_room,
            DOC_CHANGE: self.doc_change,
            WB_CHANGE: self.wb_change,
            CURSOR_POSITION: self.cursor_position,
        }

    async def handle(self, session: ClientSession, event: str, data: Any):
        handler = self.handlers.get(event)
        if handler is None:
            logger.warning(f"[Event] Unknown event '{event}' from session {session.id}")
            return
        try:
            await handler(session, data)
        except ValidationError as e:
            logger.warning(
                f"[Event] Malformed '{event}' payload from session {session.id}: {e.error_count()} error(s)"
            )
            session.send(frame("error", {"message": f"Malformed {event} payload"}))

    async def join_room(self, session: ClientSession, room_id: Any):
        if not isinstance(room_id, str) or not room_id:
            session.send(frame("error", {"message": "join-room expects a room id"}))
            return
        self.registry.join(session.id, room_id)

    async def doc_change(self, session: ClientSession, data: Any):
        change = DocChange.model_validate(data or {})
        if not change.room_id:
            logger.warning(f"[Event] doc-change without roomId from session {session.id}")
            return
        self.registry.broadcast(change.room_id, DOC_UPDATE, change.content, exclude=session.id)
        self.persist(RecordKind.DOCUMENTS, change.room_id, change.content)

    async def wb_change(self, session: ClientSession, data: Any):
        change = WhiteboardChange.model_validate(data or {})
        if not change.room_id:
            logger.warning(f"[Event] wb-change without roomId from session {session.id}")
            return
        self.registry.broadcast(change.room_id, WB_UPDATE, change.elements, exclude=session.id)
        if not isinstance(change.elements, list):
            logger.warning(f"[Event] wb-change elements from session {session.id} are not a list, not saved")
            return
        self.persist(RecordKind.WHITEBOARDS, change.room_id, change.elements)

    async def cursor_position(self, session: ClientSession, data: Any):
        cursor = CursorPosition.model_validate(data or {})
        if not cursor.room_id:
            return
        self.registry.broadcast(
            cursor.room_id,
            USER_CURSOR,
            {"position": cursor.position, "user": cursor.user, "id": session.id},
            exclude=session.id,
        )

    def persist(self, kind: RecordKind, record_id: str, value: Any) -> asyncio.Task:
        # The timestamp is taken when the event is handled, not when the write lands.
        task = asyncio.create_task(self._write(kind, record_id, touch(kind, value)))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        return task

    async def _write(self, kind: RecordKind, record_id: str, fields: dict):
        try:
            await self.store.update(kind, record_id, fields)
            logger.debug(f"[Persist] Saved {kind.content_field} for {kind.label.lower()} {record_id}")
        except RecordNotFound:
            logger.warning(f"[Persist] {kind.label} {record_id} does not exist, change not saved")
        except Exception as e:
            logger.error(f"[Persist] {kind.label} update error for {record_id}: {e}", exc_info=True)

    async def drain(self):
        """Wait for every in-flight write to finish."""
        while self.pending:
            await asyncio.gather(*list(self.pending))

    def disconnect(self, session: ClientSession):
        for room_id in self.registry.disconnect(session.id):
            self.registry.broadcast(room_id, USER_LEFT, {"id": session.id})

    def notify_deleted(self, kind: RecordKind, record_id: str) -> int:
        return self.registry.broadcast(record_id, kind.deleted_event, {"id": record_id})
