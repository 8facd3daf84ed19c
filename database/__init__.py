"""
Database layer — Prompt library persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_prompt_library
  library = create_prompt_library()
  prompt = await library.get_by_name("summarize")
"""
from database.models import Base, PromptRow
from database.session import get_engine, get_session, init_db, close_db
from database.prompt_library import (
    Prompt, PromptExistsError, BasePromptLibrary,
    SqlPromptLibrary, InMemoryPromptLibrary, create_prompt_library,
)

__all__ = [
    # ORM models
    "Base", "PromptRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Library
    "Prompt", "PromptExistsError", "BasePromptLibrary",
    "SqlPromptLibrary", "InMemoryPromptLibrary", "create_prompt_library",
]
