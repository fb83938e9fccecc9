from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str = Field(..., alias="_id")
    title: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    def to_mongo(self) -> dict:
        return self.model_dump(by_alias=True)


class Document(Record):
    content: Any = Field(default_factory=lambda: {"text": ""})


class Whiteboard(Record):
    # Strokes are relayed and stored as sent, e.g. {"type": "line", "points": [{"x": 0, "y": 0}, ...]}
    elements: List[Any] = Field(default_factory=list)


class RecordKind(str, Enum):
    """The two persisted record kinds. The value is the collection name."""

    DOCUMENTS = "documents"
    WHITEBOARDS = "whiteboards"

    @property
    def model(self) -> Type[Record]:
        return Document if self is RecordKind.DOCUMENTS else Whiteboard

    @property
    def label(self) -> str:
        return "Document" if self is RecordKind.DOCUMENTS else "Whiteboard"

    @property
    def content_field(self) -> str:
        return "content" if self is RecordKind.DOCUMENTS else "elements"

    @property
    def deleted_event(self) -> str:
        return "doc-deleted" if self is RecordKind.DOCUMENTS else "wb-deleted"

    def new(self, record_id: str, title: Optional[str]) -> Record:
        return self.model(_id=record_id, title=title)

    def parse(self, raw: dict) -> Record:
        return self.model.model_validate(raw)


class CreateRecord(BaseModel):
    # Numbers are accepted as titles and stored as strings.
    model_config = ConfigDict(coerce_numbers_to_str=True)

    title: Optional[str] = None


class DeleteResult(BaseModel):
    message: str
