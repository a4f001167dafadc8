"""Persistent storage for session records."""

from .database import Database
from .session_store import SessionStore

__all__ = ['Database', 'SessionStore']
