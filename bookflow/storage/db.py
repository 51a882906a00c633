# storage/db.py
import os
import sqlite3
from pathlib import Path


_DEFAULT_DB_PATH = Path.home() / ".bookflow" / "bookflow.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id            TEXT PRIMARY KEY,
    title         TEXT NOT NULL,
    source_url    TEXT NOT NULL,
    author        TEXT,
    language      TEXT,
    reading_time  REAL NOT NULL DEFAULT 0,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chapters (
    id               TEXT    PRIMARY KEY,
    book_id          TEXT    NOT NULL,
    position         INTEGER NOT NULL,
    title            TEXT    NOT NULL,
    content          TEXT    NOT NULL,
    original_content TEXT    NOT NULL,
    version          INTEGER NOT NULL DEFAULT 1,
    status           TEXT    NOT NULL,
    reward_score     REAL    NOT NULL DEFAULT 0,
    feedback_json    TEXT    NOT NULL DEFAULT '[]',
    created_at       TEXT    NOT NULL,
    updated_at       TEXT    NOT NULL,
    FOREIGN KEY (book_id) REFERENCES books(id)
);

CREATE TABLE IF NOT EXISTS versions (
    id            TEXT PRIMARY KEY,
    chapter_id    TEXT NOT NULL,
    role          TEXT NOT NULL,
    model         TEXT NOT NULL,
    prompt        TEXT NOT NULL,
    response      TEXT NOT NULL,
    reward        REAL NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    timestamp     TEXT NOT NULL,
    FOREIGN KEY (chapter_id) REFERENCES chapters(id)
);

CREATE TABLE IF NOT EXISTS value_table (
    state  TEXT    NOT NULL,
    action TEXT    NOT NULL,
    value  REAL    NOT NULL,
    visits INTEGER NOT NULL,
    PRIMARY KEY (state, action)
);

CREATE INDEX IF NOT EXISTS idx_chapters_book ON chapters(book_id, position);
CREATE INDEX IF NOT EXISTS idx_versions_chapter ON versions(chapter_id, timestamp);
"""


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """
    Abre y configura la conexión a SQLite.
    Siempre devuelve rows como dicts (row_factory).
    check_same_thread=False: el store async la usa desde hilos del executor,
    siempre serializado por el lock del Repository.
    """
    path = db_path or os.environ.get("BOOKFLOW_DB_PATH") or str(_DEFAULT_DB_PATH)

    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Crea las tablas si no existen. Idempotente."""
    with conn:
        conn.executescript(_SCHEMA)
