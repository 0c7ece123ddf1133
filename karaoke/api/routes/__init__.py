"""API route modules."""
from __future__ import annotations

from karaoke.api.routes import health, sessions, songs

__all__ = ["health", "sessions", "songs"]
