import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Sequence

from models import (
    Chapter,
    ChapterStatus,
    Character,
    Outline,
    OutlineKind,
    SceneFrame,
    WorldSetting,
    parse_outline_payload,
)


class StoryRepository(Protocol):
    """Narrow persistence contract consumed by the generation core."""

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]: ...

    def list_chapters(self, project_id: str) -> List[Chapter]: ...

    def update_chapter_content(
        self, chapter_id: str, content: str, word_count: int, status: ChapterStatus
    ) -> Optional[Chapter]: ...

    def set_chapter_embedding(
        self, chapter_id: str, embedding: Sequence[float], expected_version: int
    ) -> bool: ...

    def list_outlines(self, project_id: str, kind: Optional[OutlineKind] = None) -> List[Outline]: ...

    def get_chapter_outline(self, chapter_id: str) -> Optional[Outline]: ...

    def list_characters(self, project_id: str) -> List[Character]: ...

    def list_settings(self, project_id: str) -> List[WorldSetting]: ...

    def list_scene_frames(self, chapter_id: str) -> List[SceneFrame]: ...

    def save_scene_frames(self, chapter_id: str, frames: Sequence[SceneFrame]) -> None: ...


def _dump_list(value: Optional[Sequence]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(list(value), ensure_ascii=False)


def _load_list(raw: Optional[str]) -> Optional[list]:
    if not raw:
        return None
    return json.loads(raw)


class StoryStore:
    """SQLite-backed story repository.

    One database per deployment; rows are scoped by ``project_id``.
    Chapter ``version`` increments on every content write so that
    background embedding jobs can detect that they read stale text.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as exc:
            raise sqlite3.OperationalError(f"{exc} (db_path={self.db_path})") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS chapters (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    order_index INTEGER NOT NULL,
                    word_count INTEGER DEFAULT 0,
                    embedding TEXT,
                    version INTEGER DEFAULT 0,
                    status TEXT NOT NULL,
                    volume_id TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_chapters_project ON chapters(project_id, order_index)"
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS outlines (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    chapter_id TEXT,
                    volume_id TEXT,
                    order_index INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS characters (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    role TEXT,
                    description TEXT,
                    mention_count INTEGER DEFAULT 0
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS world_settings (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT,
                    category TEXT NOT NULL,
                    embedding TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS scene_frames (
                    id TEXT PRIMARY KEY,
                    chapter_id TEXT NOT NULL,
                    scene_index INTEGER NOT NULL,
                    purpose TEXT NOT NULL,
                    focal_entities TEXT,
                    beats TEXT,
                    entry_state TEXT,
                    exit_state TEXT,
                    target_words INTEGER DEFAULT 2000
                )
                """
            )
            conn.commit()

    # chapters

    def save_chapter(self, chapter: Chapter):
        chapter.updated_at = datetime.now()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO chapters
                (id, project_id, title, content, order_index, word_count,
                 embedding, version, status, volume_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chapter.id,
                    chapter.project_id,
                    chapter.title,
                    chapter.content,
                    chapter.order_index,
                    chapter.word_count,
                    _dump_list(chapter.embedding),
                    chapter.version,
                    chapter.status.value,
                    chapter.volume_id,
                    chapter.updated_at.isoformat(),
                ),
            )
            conn.commit()

    def _row_to_chapter(self, row: sqlite3.Row) -> Chapter:
        return Chapter(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            content=row["content"],
            order_index=row["order_index"],
            word_count=row["word_count"],
            embedding=_load_list(row["embedding"]),
            version=row["version"],
            status=ChapterStatus(row["status"]),
            volume_id=row["volume_id"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM chapters WHERE id = ?", (chapter_id,)).fetchone()
            return self._row_to_chapter(row) if row else None

    def list_chapters(self, project_id: str) -> List[Chapter]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE project_id = ? ORDER BY order_index ASC",
                (project_id,),
            ).fetchall()
            return [self._row_to_chapter(row) for row in rows]

    def update_chapter_content(
        self, chapter_id: str, content: str, word_count: int, status: ChapterStatus
    ) -> Optional[Chapter]:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE chapters
                SET content = ?, word_count = ?, status = ?, version = version + 1, updated_at = ?
                WHERE id = ?
                """,
                (content, word_count, status.value, datetime.now().isoformat(), chapter_id),
            )
            conn.commit()
        return self.get_chapter(chapter_id)

    def set_chapter_embedding(
        self, chapter_id: str, embedding: Sequence[float], expected_version: int
    ) -> bool:
        """Store ``embedding`` only if the chapter was not edited since ``expected_version``."""
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE chapters SET embedding = ? WHERE id = ? AND version = ?",
                (_dump_list(embedding), chapter_id, expected_version),
            )
            conn.commit()
            return cursor.rowcount > 0

    # outlines

    def save_outline(self, outline: Outline):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO outlines
                (id, project_id, kind, payload, chapter_id, volume_id, order_index, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outline.id,
                    outline.project_id,
                    outline.kind.value,
                    json.dumps(outline.payload.to_wire(), ensure_ascii=False),
                    outline.chapter_id,
                    outline.volume_id,
                    outline.order_index,
                    outline.created_at.isoformat(),
                ),
            )
            conn.commit()

    def _row_to_outline(self, row: sqlite3.Row) -> Outline:
        kind = OutlineKind(row["kind"])
        return Outline(
            id=row["id"],
            project_id=row["project_id"],
            kind=kind,
            payload=parse_outline_payload(kind, json.loads(row["payload"])),
            chapter_id=row["chapter_id"],
            volume_id=row["volume_id"],
            order_index=row["order_index"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_outlines(self, project_id: str, kind: Optional[OutlineKind] = None) -> List[Outline]:
        query = "SELECT * FROM outlines WHERE project_id = ?"
        params: list = [project_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(OutlineKind(kind).value)
        query += " ORDER BY order_index ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_outline(row) for row in rows]

    def get_chapter_outline(self, chapter_id: str) -> Optional[Outline]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM outlines WHERE chapter_id = ? AND kind = ? ORDER BY created_at DESC LIMIT 1",
                (chapter_id, OutlineKind.CHAPTER.value),
            ).fetchone()
            return self._row_to_outline(row) if row else None

    # characters / settings

    def save_character(self, character: Character):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO characters
                (id, project_id, name, role, description, mention_count)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    character.id,
                    character.project_id,
                    character.name,
                    character.role,
                    character.description,
                    character.mention_count,
                ),
            )
            conn.commit()

    def list_characters(self, project_id: str) -> List[Character]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM characters WHERE project_id = ? ORDER BY rowid ASC",
                (project_id,),
            ).fetchall()
            return [
                Character(
                    id=row["id"],
                    project_id=row["project_id"],
                    name=row["name"],
                    role=row["role"] or "",
                    description=row["description"] or "",
                    mention_count=row["mention_count"] or 0,
                )
                for row in rows
            ]

    def save_setting(self, setting: WorldSetting):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO world_settings
                (id, project_id, title, content, category, embedding)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    setting.id,
                    setting.project_id,
                    setting.title,
                    setting.content,
                    setting.category,
                    _dump_list(setting.embedding),
                ),
            )
            conn.commit()

    def list_settings(self, project_id: str) -> List[WorldSetting]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM world_settings WHERE project_id = ? ORDER BY rowid ASC",
                (project_id,),
            ).fetchall()
            return [
                WorldSetting(
                    id=row["id"],
                    project_id=row["project_id"],
                    title=row["title"],
                    content=row["content"] or "",
                    category=row["category"],
                    embedding=_load_list(row["embedding"]),
                )
                for row in rows
            ]

    # scene frames

    def list_scene_frames(self, chapter_id: str) -> List[SceneFrame]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scene_frames WHERE chapter_id = ? ORDER BY scene_index ASC",
                (chapter_id,),
            ).fetchall()
            return [
                SceneFrame(
                    id=row["id"],
                    chapter_id=row["chapter_id"],
                    index=row["scene_index"],
                    purpose=row["purpose"],
                    focal_entities=_load_list(row["focal_entities"]) or [],
                    beats=_load_list(row["beats"]) or [],
                    entry_state=row["entry_state"] or "",
                    exit_state=row["exit_state"] or "",
                    target_words=row["target_words"] or 2000,
                )
                for row in rows
            ]

    def save_scene_frames(self, chapter_id: str, frames: Sequence[SceneFrame]) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM scene_frames WHERE chapter_id = ?", (chapter_id,))
            conn.executemany(
                """
                INSERT INTO scene_frames
                (id, chapter_id, scene_index, purpose, focal_entities, beats,
                 entry_state, exit_state, target_words)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        frame.id,
                        chapter_id,
                        frame.index,
                        frame.purpose,
                        _dump_list(frame.focal_entities),
                        _dump_list(frame.beats),
                        frame.entry_state,
                        frame.exit_state,
                        frame.target_words,
                    )
                    for frame in frames
                ],
            )
            conn.commit()
