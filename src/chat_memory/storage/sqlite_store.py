"""SQLite storage backend for the memory system.

Persists memory records, relation edges, the maintenance log and user
profiles using aiosqlite. Timestamps are stored as fixed-width UTC ISO
strings so they compare correctly as text.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import aiosqlite
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..embedding import EmbeddingService
from ..models import (
    LearningPatterns,
    MemoryKind,
    MemoryRecord,
    MemoryRelation,
    UserPreferences,
)

_ORDERABLE = frozenset(
    {
        "importance",
        "created_at",
        "updated_at",
        "last_accessed",
        "access_count",
        "reinforcements",
    }
)

_RECORD_COLUMNS = (
    "id, owner_id, conversation_id, kind, content, summary, tags, category, "
    "embedding, embedding_model, importance, decay_rate, reinforcements, "
    "access_count, created_at, updated_at, last_accessed, last_maintained_at, "
    "expires_at, active"
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _casefold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def _like(term: str) -> str:
    escaped = term.casefold().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SQLiteStore:
    """SQLite implementation of the memory store and profile source.

    Uses WAL mode for concurrent reads. Records are never removed except
    expired ephemeral rows that no relation edge references.
    """

    def __init__(self, db_path: str = "./memory/chat_memory.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        # SQLite lower() only folds ASCII
        await self._db.create_function("casefold", 1, _casefold, deterministic=True)

        await self._create_tables()
        await self._create_indexes()

        await self._db.commit()
        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_records (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                conversation_id TEXT,
                kind TEXT NOT NULL,
                content TEXT NOT NULL,
                summary TEXT DEFAULT '',
                tags TEXT DEFAULT '[]',
                category TEXT DEFAULT 'general',
                embedding BLOB,
                embedding_model TEXT,
                importance REAL DEFAULT 0,
                decay_rate REAL DEFAULT 0.1,
                reinforcements INTEGER DEFAULT 0,
                access_count INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_accessed TEXT NOT NULL,
                last_maintained_at TEXT,
                expires_at TEXT,
                active INTEGER DEFAULT 1
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_relations (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                relation_type TEXT DEFAULT 'related',
                strength REAL DEFAULT 1.0,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS maintenance_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                job TEXT NOT NULL,
                ran_at TEXT NOT NULL,
                summary TEXT
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                communication_style TEXT DEFAULT 'casual',
                language_style TEXT DEFAULT 'concise',
                preferred_topics TEXT DEFAULT '[]',
                knowledge_areas TEXT DEFAULT '[]',
                avg_session_length REAL DEFAULT 0,
                total_sessions INTEGER DEFAULT 0,
                most_active_hours TEXT DEFAULT '[]',
                learning_patterns TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_record_owner
            ON memory_records(owner_id, active)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_record_importance
            ON memory_records(importance DESC)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_record_conversation
            ON memory_records(conversation_id)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_relation_source
            ON memory_relations(source_id)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_relation_target
            ON memory_relations(target_id)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_maintenance_owner_job
            ON maintenance_log(owner_id, job, ran_at)
        """)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @staticmethod
    def _record_params(record: MemoryRecord) -> dict[str, Any]:
        embedding = None
        if record.embedding:
            embedding = EmbeddingService.serialize_embedding(record.embedding)
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "conversation_id": record.conversation_id,
            "kind": record.kind.value,
            "content": record.content,
            "summary": record.summary,
            "tags": json.dumps(record.tags, ensure_ascii=False),
            "category": record.category,
            "embedding": embedding,
            "embedding_model": record.embedding_model,
            "importance": record.importance,
            "decay_rate": record.decay_rate,
            "reinforcements": record.reinforcements,
            "access_count": record.access_count,
            "created_at": _ts(record.created_at),
            "updated_at": _ts(record.updated_at),
            "last_accessed": _ts(record.last_accessed),
            "last_maintained_at": _ts(record.last_maintained_at),
            "expires_at": _ts(record.expires_at),
            "active": 1 if record.active else 0,
        }

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> MemoryRecord:
        embedding = None
        if row["embedding"] is not None:
            embedding = EmbeddingService.deserialize_embedding(row["embedding"])
        return MemoryRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            conversation_id=row["conversation_id"],
            kind=MemoryKind(row["kind"]),
            content=row["content"],
            summary=row["summary"] or "",
            tags=json.loads(row["tags"] or "[]"),
            category=row["category"] or "general",
            embedding=embedding,
            embedding_model=row["embedding_model"],
            importance=row["importance"],
            decay_rate=row["decay_rate"],
            reinforcements=row["reinforcements"],
            access_count=row["access_count"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            last_accessed=_parse_ts(row["last_accessed"]),
            last_maintained_at=_parse_ts(row["last_maintained_at"]),
            expires_at=_parse_ts(row["expires_at"]),
            active=bool(row["active"]),
        )

    async def insert_record(self, record: MemoryRecord) -> str:
        db = self._conn()
        params = self._record_params(record)
        placeholders = ", ".join(f":{k}" for k in params)
        await db.execute(
            f"INSERT INTO memory_records ({_RECORD_COLUMNS}) VALUES ({placeholders})",
            params,
        )
        await db.commit()
        logger.debug(f"Memory record inserted: {record.id} ({record.kind.value})")
        return record.id

    async def get_record(self, record_id: str) -> MemoryRecord | None:
        db = self._conn()
        async with db.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memory_records WHERE id = ?",
            (record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def update_record(self, record: MemoryRecord) -> None:
        db = self._conn()
        params = self._record_params(record)
        assignments = ", ".join(f"{k} = :{k}" for k in params if k != "id")
        await db.execute(
            f"UPDATE memory_records SET {assignments} WHERE id = :id", params
        )
        await db.commit()

    async def query_records(
        self,
        owner_id: str,
        *,
        active: bool | None = True,
        kinds: Sequence[MemoryKind] | None = None,
        conversation_id: str | None = None,
        exclude_conversation_id: str | None = None,
        terms: Sequence[str] | None = None,
        tags_any: Sequence[str] | None = None,
        categories: Sequence[str] | None = None,
        embedding_model: str | None = None,
        created_before: datetime | None = None,
        created_after: datetime | None = None,
        accessed_after: datetime | None = None,
        min_access_count: int | None = None,
        order_by: Sequence[tuple[str, str]] | None = None,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Filtered record lookup.

        ``terms`` match content or tags case-insensitively (any term);
        ``tags_any`` matches records carrying at least one of the tags.
        """
        db = self._conn()
        where = ["owner_id = ?"]
        params: list[Any] = [owner_id]

        if active is not None:
            where.append("active = ?")
            params.append(1 if active else 0)
        if kinds:
            where.append(f"kind IN ({', '.join('?' for _ in kinds)})")
            params.extend(MemoryKind(k).value for k in kinds)
        if conversation_id is not None:
            where.append("conversation_id = ?")
            params.append(conversation_id)
        if exclude_conversation_id is not None:
            where.append("(conversation_id IS NULL OR conversation_id != ?)")
            params.append(exclude_conversation_id)
        if terms is not None:
            clauses = []
            for term in terms:
                clauses.append(
                    "(casefold(content) LIKE ? ESCAPE '\\' OR casefold(tags) LIKE ? ESCAPE '\\')"
                )
                params.extend([_like(term), _like(term)])
            where.append(f"({' OR '.join(clauses)})" if clauses else "0")
        if tags_any is not None:
            clauses = []
            for tag in tags_any:
                clauses.append("casefold(tags) LIKE ? ESCAPE '\\'")
                params.append(_like(json.dumps(tag, ensure_ascii=False)))
            where.append(f"({' OR '.join(clauses)})" if clauses else "0")
        if categories:
            where.append(f"category IN ({', '.join('?' for _ in categories)})")
            params.extend(categories)
        if embedding_model is not None:
            where.append("embedding_model = ?")
            params.append(embedding_model)
        if created_before is not None:
            where.append("created_at < ?")
            params.append(_ts(created_before))
        if created_after is not None:
            where.append("created_at > ?")
            params.append(_ts(created_after))
        if accessed_after is not None:
            where.append("last_accessed > ?")
            params.append(_ts(accessed_after))
        if min_access_count is not None:
            where.append("access_count >= ?")
            params.append(min_access_count)

        order_parts = []
        for column, direction in order_by or [("created_at", "asc")]:
            if column not in _ORDERABLE:
                raise ValueError(f"Cannot order by {column!r}")
            order_parts.append(f"{column} {'DESC' if direction == 'desc' else 'ASC'}")
        order_parts.append("id ASC")

        sql = (
            f"SELECT {_RECORD_COLUMNS} FROM memory_records "
            f"WHERE {' AND '.join(where)} ORDER BY {', '.join(order_parts)}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def touch_records(
        self, record_ids: Sequence[str], accessed_at: datetime
    ) -> int:
        """Increment access_count and set last_accessed for each id."""
        if not record_ids:
            return 0
        db = self._conn()
        placeholders = ", ".join("?" for _ in record_ids)
        cursor = await db.execute(
            f"""
            UPDATE memory_records
            SET last_accessed = ?, access_count = access_count + 1
            WHERE id IN ({placeholders})
            """,
            (_ts(accessed_at), *record_ids),
        )
        await db.commit()
        return cursor.rowcount

    async def deactivate_records(
        self, record_ids: Sequence[str], updated_at: datetime
    ) -> int:
        if not record_ids:
            return 0
        db = self._conn()
        placeholders = ", ".join("?" for _ in record_ids)
        cursor = await db.execute(
            f"""
            UPDATE memory_records SET active = 0, updated_at = ?
            WHERE id IN ({placeholders}) AND active = 1
            """,
            (_ts(updated_at), *record_ids),
        )
        await db.commit()
        logger.debug(f"Deactivated {cursor.rowcount} memory records")
        return cursor.rowcount

    async def count_records(
        self,
        owner_id: str,
        *,
        active: bool | None = None,
        importance_below: float | None = None,
        importance_at_least: float | None = None,
    ) -> int:
        db = self._conn()
        where = ["owner_id = ?"]
        params: list[Any] = [owner_id]
        if active is not None:
            where.append("active = ?")
            params.append(1 if active else 0)
        if importance_below is not None:
            where.append("importance < ?")
            params.append(importance_below)
        if importance_at_least is not None:
            where.append("importance >= ?")
            params.append(importance_at_least)
        async with db.execute(
            f"SELECT COUNT(*) FROM memory_records WHERE {' AND '.join(where)}",
            params,
        ) as cursor:
            row = await cursor.fetchone()
        return row[0]

    async def count_by_kind(self, owner_id: str) -> dict[MemoryKind, int]:
        """Active record counts per kind."""
        db = self._conn()
        async with db.execute(
            """
            SELECT kind, COUNT(*) FROM memory_records
            WHERE owner_id = ? AND active = 1
            GROUP BY kind
            """,
            (owner_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return {MemoryKind(row[0]): row[1] for row in rows}

    async def list_owners(self) -> list[str]:
        """Owners with at least one active record."""
        db = self._conn()
        async with db.execute(
            "SELECT DISTINCT owner_id FROM memory_records WHERE active = 1 ORDER BY owner_id"
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    async def insert_relation(self, relation: MemoryRelation) -> str:
        db = self._conn()
        await db.execute(
            """
            INSERT OR IGNORE INTO memory_relations (
                id, source_id, target_id, relation_type, strength, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                relation.id,
                relation.source_id,
                relation.target_id,
                relation.relation_type,
                relation.strength,
                _ts(relation.created_at),
            ),
        )
        await db.commit()
        logger.debug(
            f"Memory relation inserted: {relation.source_id} "
            f"-[{relation.relation_type}]-> {relation.target_id}"
        )
        return relation.id

    async def get_relations(self, owner_id: str) -> list[MemoryRelation]:
        """Edges whose source record belongs to ``owner_id``."""
        db = self._conn()
        async with db.execute(
            """
            SELECT rel.id, rel.source_id, rel.target_id, rel.relation_type,
                   rel.strength, rel.created_at
            FROM memory_relations rel
            JOIN memory_records r ON r.id = rel.source_id
            WHERE r.owner_id = ?
            ORDER BY rel.created_at
            """,
            (owner_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            MemoryRelation(
                id=row[0],
                source_id=row[1],
                target_id=row[2],
                relation_type=row[3],
                strength=row[4],
                created_at=_parse_ts(row[5]),
            )
            for row in rows
        ]

    async def relation_degrees(self, owner_id: str) -> dict[str, int]:
        """In+out edge count for each active record of ``owner_id``."""
        db = self._conn()
        async with db.execute(
            """
            SELECT e.node, COUNT(*)
            FROM (
                SELECT source_id AS node FROM memory_relations
                UNION ALL
                SELECT target_id AS node FROM memory_relations
            ) e
            JOIN memory_records r ON r.id = e.node
            WHERE r.owner_id = ? AND r.active = 1
            GROUP BY e.node
            """,
            (owner_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    async def purge_expired(self, now: datetime) -> int:
        """Hard-delete expired ephemeral records that no edge references."""
        db = self._conn()
        cursor = await db.execute(
            """
            DELETE FROM memory_records
            WHERE kind = ? AND expires_at IS NOT NULL AND expires_at <= ?
              AND id NOT IN (SELECT source_id FROM memory_relations)
              AND id NOT IN (SELECT target_id FROM memory_relations)
            """,
            (MemoryKind.EPHEMERAL.value, _ts(now)),
        )
        await db.commit()
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} expired ephemeral records")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Maintenance log
    # ------------------------------------------------------------------

    async def last_maintenance(self, owner_id: str, job: str) -> datetime | None:
        db = self._conn()
        async with db.execute(
            "SELECT MAX(ran_at) FROM maintenance_log WHERE owner_id = ? AND job = ?",
            (owner_id, job),
        ) as cursor:
            row = await cursor.fetchone()
        return _parse_ts(row[0]) if row else None

    async def log_maintenance(
        self, owner_id: str, job: str, ran_at: datetime, summary: str
    ) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO maintenance_log (owner_id, job, ran_at, summary)
            VALUES (?, ?, ?, ?)
            """,
            (owner_id, job, _ts(ran_at), summary),
        )
        await db.commit()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_preferences(self, user_id: str) -> UserPreferences | None:
        db = self._conn()
        async with db.execute(
            """
            SELECT communication_style, language_style, preferred_topics,
                   knowledge_areas, avg_session_length, total_sessions,
                   most_active_hours, learning_patterns
            FROM user_profiles WHERE user_id = ?
            """,
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None

        patterns = LearningPatterns()
        if row["learning_patterns"]:
            try:
                patterns = LearningPatterns.model_validate_json(
                    row["learning_patterns"]
                )
            except PydanticValidationError as e:
                logger.warning(f"Invalid learning patterns for {user_id}: {e}")

        return UserPreferences(
            communication_style=row["communication_style"],
            language_style=row["language_style"],
            preferred_topics=json.loads(row["preferred_topics"] or "[]"),
            knowledge_areas=json.loads(row["knowledge_areas"] or "[]"),
            avg_session_length=row["avg_session_length"],
            total_sessions=row["total_sessions"],
            most_active_hours=json.loads(row["most_active_hours"] or "[]"),
            learning_patterns=patterns,
        )

    async def save_profile(self, user_id: str, preferences: UserPreferences) -> None:
        """Insert or replace a user's profile."""
        db = self._conn()
        await db.execute(
            """
            INSERT INTO user_profiles (
                user_id, communication_style, language_style, preferred_topics,
                knowledge_areas, avg_session_length, total_sessions,
                most_active_hours, learning_patterns, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(user_id) DO UPDATE SET
                communication_style = excluded.communication_style,
                language_style = excluded.language_style,
                preferred_topics = excluded.preferred_topics,
                knowledge_areas = excluded.knowledge_areas,
                avg_session_length = excluded.avg_session_length,
                total_sessions = excluded.total_sessions,
                most_active_hours = excluded.most_active_hours,
                learning_patterns = excluded.learning_patterns,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                user_id,
                preferences.communication_style,
                preferences.language_style,
                json.dumps(preferences.preferred_topics, ensure_ascii=False),
                json.dumps(preferences.knowledge_areas, ensure_ascii=False),
                preferences.avg_session_length,
                preferences.total_sessions,
                json.dumps(preferences.most_active_hours),
                preferences.learning_patterns.model_dump_json(),
            ),
        )
        await db.commit()
        logger.debug(f"Profile saved for {user_id}")
