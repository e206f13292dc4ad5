"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  job = await store.create_job(Job(device_id="d1"), ["15551234567"])
"""
from database.models import (
    Base, JobRow, JobItemRow, AutoReplyRuleRow, ConversationRow,
    DeviceBotConfigRow, BotActionLogRow,
)
from database.session import (
    build_engine, create_session_factory, create_tables,
    get_engine, get_session, init_db, close_db,
)
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "JobRow", "JobItemRow", "AutoReplyRuleRow", "ConversationRow",
    "DeviceBotConfigRow", "BotActionLogRow",
    # Session management
    "build_engine", "create_session_factory", "create_tables",
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStore",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
