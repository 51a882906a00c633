# tests/storage/test_store.py
import asyncio
import sqlite3
from unittest.mock import MagicMock

import pytest

from bookflow.errors import PersistenceFailure
from bookflow.models import AgentRole, Book, BookMetadata, Chapter, SpinRecord
from bookflow.storage.repository import Repository
from bookflow.storage.store import SqliteContentStore


@pytest.fixture
def store():
    s = SqliteContentStore(Repository(db_path=":memory:"))
    yield s
    s.repository.close()


def make_book() -> Book:
    return Book(
        title    = "El faro",
        metadata = BookMetadata(source_url="libro.txt"),
        chapters = [Chapter(title="Uno", content="La luz del faro")],
    )


class TestSqliteContentStore:

    def test_store_y_get_book(self, store):
        book = make_book()

        async def scenario():
            await store.store_book(book)
            return await store.get_book(book.id)

        loaded = asyncio.run(scenario())
        assert loaded.chapters[0].title == "Uno"

    def test_store_chapter_y_query(self, store):
        book    = make_book()
        chapter = Chapter(title="Dos", content="Tormenta en la bahía")

        async def scenario():
            await store.store_book(book)
            await store.store_chapter(chapter, book.id)
            return await store.query("tormenta", limit=5)

        hits = asyncio.run(scenario())
        assert [h.id for h in hits] == [chapter.id]

    def test_stats(self, store):
        async def scenario():
            await store.store_book(make_book())
            return await store.stats()

        assert asyncio.run(scenario()).total_chapters == 1

    def test_similar_chapters_y_versiones(self, store):
        book = make_book()
        otro = Chapter(title="Dos", content="El faro de noche")
        book.chapters.append(otro)
        book.chapters[0].commit_pass("La luz del faro", [
            SpinRecord(role=AgentRole.WRITER, model="m", prompt="p", response="r", reward=50.0),
        ])

        async def scenario():
            await store.store_book(book)
            similar  = await store.similar_chapters(book.chapters[0].id, limit=5)
            versions = await store.chapter_versions(book.chapters[0].id)
            return similar, versions

        similar, versions = asyncio.run(scenario())
        assert [h.id for h in similar] == [otro.id]
        assert [v.role for v in versions] == [AgentRole.WRITER]

    def test_error_de_sqlite_se_traduce(self):
        repo = MagicMock()
        repo.save_book.side_effect = sqlite3.OperationalError("database is locked")
        repo.save_book.__name__ = "save_book"
        store = SqliteContentStore(repo)

        with pytest.raises(PersistenceFailure, match="save_book"):
            asyncio.run(store.store_book(make_book()))

    def test_aclose_cierra_el_repositorio(self):
        repo  = MagicMock()
        store = SqliteContentStore(repo)
        asyncio.run(store.aclose())
        repo.close.assert_called_once()
