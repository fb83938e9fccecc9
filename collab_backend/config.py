import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

DEFAULT_MONGODB_URI = "mongodb://localhost:27017/collab-tool"
DEFAULT_DATABASE_NAME = "collab-tool"
MEMORY_URI = "memory://"


class Settings(BaseModel):
    frontend_url: str = "http://localhost:5173"
    host: str = "0.0.0.0"
    port: int = 5000
    mongodb_uri: str = DEFAULT_MONGODB_URI
    # None means "whatever database the URI names"
    database_name: Optional[str] = None
    keepalive_seconds: float = 60.0
    log_level: str = "info"

    @property
    def use_memory_store(self) -> bool:
        return self.mongodb_uri.startswith(MEMORY_URI)


def get_settings() -> Settings:
    """Read settings from the environment (and .env, if present)."""
    return Settings(
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 5000)),
        mongodb_uri=os.getenv("MONGODB_URI", DEFAULT_MONGODB_URI),
        database_name=os.getenv("DATABASE_NAME") or None,
        keepalive_seconds=float(os.getenv("KEEPALIVE_SECONDS", 60)),
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
