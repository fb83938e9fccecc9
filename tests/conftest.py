import os

import pytest
from fastapi.testclient import TestClient

# Importing collab_backend.main builds a module-level app; keep it off MongoDB.
os.environ.setdefault("MONGODB_URI", "memory://")

from collab_backend.config import MEMORY_URI, Settings
from collab_backend.database import MemoryStore
from collab_backend.main import create_app
from collab_backend.websocket.handler import SessionHandler
from collab_backend.websocket.manager import RoomRegistry


@pytest.fixture
def settings() -> Settings:
    return Settings(mongodb_uri=MEMORY_URI)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def registry() -> RoomRegistry:
    return RoomRegistry()


@pytest.fixture
def handler(registry: RoomRegistry, store: MemoryStore) -> SessionHandler:
    return SessionHandler(registry, store)


@pytest.fixture
def app(settings, store):
    return create_app(settings, store)


@pytest.fixture
def client(app):
    # Entering the client shares one event loop between HTTP calls and every websocket.
    with TestClient(app) as client:
        yield client
