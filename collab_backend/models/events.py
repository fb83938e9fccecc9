"""Payloads of the client -> server events.

Relayed fields are untyped: a payload is passed on with whatever it carries,
missing values simply come through as ``None``. Only ``roomId`` has a shape,
a string (numbers are accepted and turned into strings).
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

JOIN_ROOM = "join-room"
DOC_CHANGE = "doc-change"
WB_CHANGE = "wb-change"
CURSOR_POSITION = "cursor-position"

DOC_UPDATE = "doc-update"
WB_UPDATE = "wb-update"
USER_CURSOR = "user-cursor"
USER_LEFT = "user-left"


class RoomEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    room_id: Optional[str] = Field(default=None, alias="roomId")


class DocChange(RoomEvent):
    content: Any = None


class WhiteboardChange(RoomEvent):
    elements: Any = None


class CursorPosition(RoomEvent):
    position: Any = None
    user: Any = None


def frame(event: str, data: Any = None) -> dict:
    """Build an outbound frame."""
    message = {"type": event}
    if data is not None:
        message["data"] = data
    return message
