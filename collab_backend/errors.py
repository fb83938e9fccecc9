from typing import Optional


class CollabError(Exception):
    """Base class for errors raised by the collaboration backend."""


class RecordNotFound(CollabError):
    def __init__(self, label: str, record_id: Optional[str]):
        self.label = label
        self.record_id = record_id
        super().__init__(f"{label} not found")


class PersistenceError(CollabError):
    """The document store was unreachable or rejected an operation."""
