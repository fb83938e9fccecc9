"""Real-time collaboration backend: rooms, broadcast relay and document store."""

__version__ = "0.1.0"
