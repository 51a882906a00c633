# storage/store.py
import asyncio
import functools
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar

from bookflow.errors import PersistenceFailure
from bookflow.models import Book, Chapter, SpinRecord, ValueTableEntry
from bookflow.storage.models import ContentStats, SearchHit
from bookflow.storage.repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContentStore(ABC):
    """Almacén de libros, capítulos y versiones con búsqueda por texto."""

    @abstractmethod
    async def store_book(self, book: Book) -> None: ...

    @abstractmethod
    async def store_chapter(self, chapter: Chapter, book_id: str) -> None: ...

    @abstractmethod
    async def query(
        self,
        text:    str,
        filters: Optional[dict[str, Any]] = None,
        limit:   int = 20,
    ) -> list[SearchHit]: ...

    @abstractmethod
    async def stats(self) -> ContentStats: ...

    @abstractmethod
    async def get_book(self, book_id: str) -> Optional[Book]: ...

    async def similar_chapters(self, chapter_id: str, limit: int = 5) -> list[SearchHit]:
        """Opcional: capítulos parecidos a chapter_id."""
        return []

    async def chapter_versions(self, chapter_id: str) -> list[SpinRecord]:
        """Opcional: historial de spins del capítulo."""
        return []

    async def save_value_table(self, entries: list[ValueTableEntry]) -> None:
        """Opcional: los stores sin persistencia de aprendizaje no hacen nada."""

    async def load_value_table(self) -> list[ValueTableEntry]:
        return []

    async def aclose(self) -> None:
        """Libera la conexión subyacente."""


class SqliteContentStore(ContentStore):
    """
    ContentStore sobre el Repository SQLite.
    Cada operación corre en un hilo del executor para no bloquear el loop;
    los errores de SQLite se traducen a PersistenceFailure.
    """

    def __init__(self, repo: Repository):
        self._repo = repo

    @property
    def repository(self) -> Repository:
        return self._repo

    async def store_book(self, book: Book) -> None:
        await self._run(self._repo.save_book, book)

    async def store_chapter(self, chapter: Chapter, book_id: str) -> None:
        await self._run(self._repo.save_chapter, chapter, book_id)

    async def query(self, text, filters=None, limit=20) -> list[SearchHit]:
        return await self._run(self._repo.search_chapters, text, filters, limit)

    async def stats(self) -> ContentStats:
        return await self._run(self._repo.stats)

    async def get_book(self, book_id: str) -> Optional[Book]:
        return await self._run(self._repo.get_book, book_id)

    async def similar_chapters(self, chapter_id: str, limit: int = 5) -> list[SearchHit]:
        return await self._run(self._repo.similar_chapters, chapter_id, limit)

    async def chapter_versions(self, chapter_id: str) -> list[SpinRecord]:
        return await self._run(self._repo.chapter_versions, chapter_id)

    async def save_value_table(self, entries: list[ValueTableEntry]) -> None:
        await self._run(self._repo.save_value_table, entries)

    async def load_value_table(self) -> list[ValueTableEntry]:
        return await self._run(self._repo.load_value_table)

    async def aclose(self) -> None:
        self._repo.close()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(functools.partial(func, *args))
        except sqlite3.Error as e:
            logger.error("SQLite falló en %s: %s", func.__name__, e)
            raise PersistenceFailure(f"{func.__name__}: {e}") from e
