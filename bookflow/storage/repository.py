# storage/repository.py
import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from bookflow.models import (
    AgentRole, Book, BookMetadata, Chapter, ChapterStatus,
    HumanFeedback, SpinRecord, ValueTableEntry,
)
from bookflow.storage.db import get_connection, init_schema
from bookflow.storage.models import ContentStats, SearchHit

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")


class Repository:
    """
    Única interfaz entre el resto de la aplicación y SQLite.
    Recibe un db_path para facilitar el testing con :memory:.
    Todas las operaciones pasan por un lock: la conexión se comparte entre hilos.
    """

    def __init__(self, db_path: str | None = None):
        self._conn = get_connection(db_path)
        self._lock = threading.RLock()
        init_schema(self._conn)

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def save_book(self, book: Book) -> None:
        """Upsert del libro con todos sus capítulos y versiones."""
        meta = book.metadata
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO books
                    (id, title, source_url, author, language, reading_time,
                     metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title         = excluded.title,
                    source_url    = excluded.source_url,
                    author        = excluded.author,
                    language      = excluded.language,
                    reading_time  = excluded.reading_time,
                    metadata_json = excluded.metadata_json,
                    updated_at    = excluded.updated_at
                """,
                (book.id, book.title, meta.source_url, meta.author, meta.language,
                 meta.estimated_reading_time, json.dumps(meta.extra, default=str),
                 book.created_at.isoformat(), book.updated_at.isoformat()),
            )
            for position, chapter in enumerate(book.chapters):
                self._upsert_chapter(chapter, book.id, position)

    def get_book(self, book_id: str) -> Book | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if row is None:
                return None
            chapter_rows = self._conn.execute(
                "SELECT * FROM chapters WHERE book_id = ? ORDER BY position ASC",
                (book_id,),
            ).fetchall()
            chapters = [self._row_to_chapter(r) for r in chapter_rows]

        return Book(
            id         = row["id"],
            title      = row["title"],
            metadata   = BookMetadata(
                source_url             = row["source_url"],
                estimated_reading_time = row["reading_time"],
                author                 = row["author"],
                language               = row["language"],
                extra                  = json.loads(row["metadata_json"]),
            ),
            chapters   = chapters,
            created_at = _parse_dt(row["created_at"]),
            updated_at = _parse_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    def save_chapter(self, chapter: Chapter, book_id: str, position: Optional[int] = None) -> None:
        """
        Upsert del capítulo y de sus versiones. Idempotente: reescribir el
        mismo capítulo no duplica versiones (INSERT OR IGNORE por id de spin).
        """
        with self._lock, self._conn:
            self._upsert_chapter(chapter, book_id, position)

    def get_chapter(self, chapter_id: str) -> Chapter | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM chapters WHERE id = ?", (chapter_id,)
            ).fetchone()
            return self._row_to_chapter(row) if row else None

    def search_chapters(
        self,
        text:    str,
        filters: Optional[dict[str, Any]] = None,
        limit:   int = 20,
        exclude: Optional[str] = None,
    ) -> list[SearchHit]:
        """
        Búsqueda por cobertura de términos.
        Si la consulta completa aparece literal en el título o el contenido
        (aunque corte palabras) la distancia es 0; si no,
        distance = 1 − fracción de términos de la consulta presentes en el capítulo.
        Capítulos sin ningún término no se devuelven.

        filters admite: book_id, status (ChapterStatus o str), min_reward.
        exclude descarta un id de capítulo concreto.
        """
        needle = " ".join(text.lower().split())
        if not needle:
            return []
        terms = set(_TOKEN_RE.findall(needle))

        sql, params = "SELECT * FROM chapters WHERE 1 = 1", []
        filters = filters or {}
        if "book_id" in filters:
            sql += " AND book_id = ?"
            params.append(filters["book_id"])
        if "status" in filters:
            status = filters["status"]
            sql += " AND status = ?"
            params.append(status.value if isinstance(status, ChapterStatus) else status)
        if "min_reward" in filters:
            sql += " AND reward_score >= ?"
            params.append(float(filters["min_reward"]))
        if exclude is not None:
            sql += " AND id != ?"
            params.append(exclude)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()

        hits = []
        for row in rows:
            haystack = " ".join(f"{row['title']} {row['content']}".lower().split())
            if needle in haystack:
                coverage = 1.0
            elif terms:
                words    = set(_TOKEN_RE.findall(haystack))
                coverage = len(terms & words) / len(terms)
            else:
                coverage = 0.0
            if coverage == 0:
                continue
            hits.append(self._row_to_hit(row, 1 - coverage))

        hits.sort(key=lambda h: (h.distance, -h.metadata["reward_score"]))
        return hits[:limit]

    def similar_chapters(self, chapter_id: str, limit: int = 5) -> list[SearchHit]:
        """Capítulos que comparten términos con chapter_id, sin incluirlo."""
        with self._lock:
            row = self._conn.execute(
                "SELECT content FROM chapters WHERE id = ?", (chapter_id,)
            ).fetchone()
        if row is None:
            return []
        return self.search_chapters(row["content"], limit=limit, exclude=chapter_id)

    def chapter_versions(self, chapter_id: str) -> list[SpinRecord]:
        """Historial de spins del capítulo en orden cronológico."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM versions WHERE chapter_id = ? ORDER BY timestamp ASC, rowid ASC",
                (chapter_id,),
            ).fetchall()
        return [self._row_to_spin(r) for r in rows]


    def stats(self) -> ContentStats:
        with self._lock:
            books    = self._conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            chapters = self._conn.execute(
                "SELECT COUNT(*), COALESCE(AVG(reward_score), 0) FROM chapters"
            ).fetchone()
            versions = self._conn.execute("SELECT COUNT(*) FROM versions").fetchone()[0]
        return ContentStats(
            total_books    = books,
            total_chapters = chapters[0],
            total_versions = versions,
            mean_reward    = float(chapters[1]),
        )

    # ------------------------------------------------------------------
    # Value table del motor de recompensas
    # ------------------------------------------------------------------

    def save_value_table(self, entries: list[ValueTableEntry]) -> None:
        rows = [(e.state, e.action, e.value, e.visits) for e in entries]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO value_table (state, action, value, visits)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(state, action) DO UPDATE SET
                    value  = excluded.value,
                    visits = excluded.visits
                """,
                rows,
            )

    def load_value_table(self) -> list[ValueTableEntry]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM value_table").fetchall()
        return [
            ValueTableEntry(state=r["state"], action=r["action"], value=r["value"], visits=r["visits"])
            for r in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Helpers privados
    # ------------------------------------------------------------------

    def _upsert_chapter(self, chapter: Chapter, book_id: str, position: Optional[int]) -> None:
        if position is None:
            row = self._conn.execute(
                """
                SELECT COALESCE(
                    (SELECT position FROM chapters WHERE id = ?),
                    (SELECT COALESCE(MAX(position) + 1, 0) FROM chapters WHERE book_id = ?)
                )
                """,
                (chapter.id, book_id),
            ).fetchone()
            position = row[0]

        self._conn.execute(
            """
            INSERT INTO chapters
                (id, book_id, position, title, content, original_content, version,
                 status, reward_score, feedback_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                position      = excluded.position,
                title         = excluded.title,
                content       = excluded.content,
                version       = excluded.version,
                status        = excluded.status,
                reward_score  = excluded.reward_score,
                feedback_json = excluded.feedback_json,
                updated_at    = excluded.updated_at
            """,
            (chapter.id, book_id, position, chapter.title, chapter.content,
             chapter.original_content, chapter.version, chapter.status.value,
             chapter.reward_score,
             json.dumps([_feedback_to_dict(f) for f in chapter.human_feedback]),
             chapter.created_at.isoformat(), chapter.updated_at.isoformat()),
        )
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO versions
                (id, chapter_id, role, model, prompt, response, reward, metadata_json, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (s.id, chapter.id, s.role.value, s.model, s.prompt, s.response,
                 s.reward, json.dumps(s.metadata, default=str), s.timestamp.isoformat())
                for s in chapter.spin_history
            ],
        )

    def _row_to_chapter(self, row) -> Chapter:
        return Chapter(
            id               = row["id"],
            title            = row["title"],
            content          = row["content"],
            original_content = row["original_content"],
            version          = row["version"],
            status           = ChapterStatus(row["status"]),
            spin_history     = self.chapter_versions(row["id"]),
            human_feedback   = [_feedback_from_dict(d) for d in json.loads(row["feedback_json"])],
            created_at       = _parse_dt(row["created_at"]),
            updated_at       = _parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_hit(row, distance: float) -> SearchHit:
        return SearchHit(
            id       = row["id"],
            content  = row["content"],
            distance = distance,
            metadata = {
                "book_id":      row["book_id"],
                "title":        row["title"],
                "position":     row["position"],
                "version":      row["version"],
                "status":       row["status"],
                "reward_score": row["reward_score"],
                "word_count":   len(row["content"].split()),
            },
        )

    @staticmethod
    def _row_to_spin(row) -> SpinRecord:
        return SpinRecord(
            id        = row["id"],
            role      = AgentRole(row["role"]),
            model     = row["model"],
            prompt    = row["prompt"],
            response  = row["response"],
            reward    = row["reward"],
            metadata  = json.loads(row["metadata_json"]),
            timestamp = _parse_dt(row["timestamp"]),
        )


def _feedback_to_dict(feedback: HumanFeedback) -> dict:
    return {
        "id":          feedback.id,
        "chapter_id":  feedback.chapter_id,
        "user_id":     feedback.user_id,
        "role":        feedback.role.value,
        "comment":     feedback.comment,
        "rating":      feedback.rating,
        "suggestions": list(feedback.suggestions),
        "timestamp":   feedback.timestamp.isoformat(),
    }


def _feedback_from_dict(data: dict) -> HumanFeedback:
    return HumanFeedback(
        id          = data["id"],
        chapter_id  = data["chapter_id"],
        user_id     = data["user_id"],
        role        = AgentRole(data["role"]),
        comment     = data["comment"],
        rating      = data["rating"],
        suggestions = tuple(data.get("suggestions", ())),
        timestamp   = _parse_dt(data["timestamp"]),
    )


def _parse_dt(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
