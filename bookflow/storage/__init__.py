# storage/__init__.py
from bookflow.storage.repository import Repository
from bookflow.storage.models import ContentStats, SearchHit
from bookflow.storage.store import ContentStore, SqliteContentStore

__all__ = [
    "Repository",
    "ContentStats", "SearchHit",
    "ContentStore", "SqliteContentStore",
]
