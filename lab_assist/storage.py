"""
SQLite storage for animals, cages, readings, sessions and the command
audit trail.

One connection is held for the store's lifetime (so ``:memory:`` works)
and guarded by a re-entrant lock. ``transaction()`` nests: only the
outermost block commits or rolls back, which lets the executor wrap a
whole command around several store calls.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .config import DatabaseConfig
from .types import (
    Animal,
    Cage,
    CommandLogEntry,
    Reading,
    Session,
    SessionContext,
    StorageError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Schema Definition
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS animals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    number INTEGER UNIQUE NOT NULL,
    current_cage INTEGER,
    current_weight REAL,
    group_id TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS cages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    number INTEGER UNIQUE NOT NULL,
    group_name TEXT,
    capacity INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_time DATETIME DEFAULT CURRENT_TIMESTAMP,
    end_time DATETIME,
    is_active BOOLEAN DEFAULT 1
);

CREATE TABLE IF NOT EXISTS readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    animal_id INTEGER NOT NULL REFERENCES animals(id),
    weight REAL NOT NULL,
    cage_id INTEGER NOT NULL REFERENCES cages(id),
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    notes TEXT,
    session_id INTEGER NOT NULL REFERENCES sessions(id)
);

CREATE TABLE IF NOT EXISTS session_context (
    session_id INTEGER PRIMARY KEY REFERENCES sessions(id),
    last_rat INTEGER,
    last_cage INTEGER,
    last_weight REAL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- Audit trail of every processed command
CREATE TABLE IF NOT EXISTS command_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL REFERENCES sessions(id),
    raw_text TEXT NOT NULL,
    parsed_command TEXT,
    confidence REAL,
    executed BOOLEAN DEFAULT 0,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_animals_number ON animals(number);
CREATE INDEX IF NOT EXISTS idx_cages_number ON cages(number);
CREATE INDEX IF NOT EXISTS idx_readings_animal_id ON readings(animal_id);
CREATE INDEX IF NOT EXISTS idx_readings_timestamp ON readings(timestamp);
CREATE INDEX IF NOT EXISTS idx_command_history_session ON command_history(session_id);

CREATE TRIGGER IF NOT EXISTS update_animals_timestamp
AFTER UPDATE ON animals
BEGIN
    UPDATE animals SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
END;
"""


class LabStore:
    """
    Relational store behind the command executor.

    Example:
        >>> store = LabStore(":memory:")
        >>> session = store.start_session()
        >>> store.record_reading(5, 3, 280.0, session.id)
    """

    def __init__(self, db_path: str | None = None, config: DatabaseConfig | None = None):
        self.config = config or DatabaseConfig()
        self.db_path = db_path or self.config.resolved_path()
        self._lock = threading.RLock()
        self._depth = 0
        self._conn: sqlite3.Connection | None = None

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        try:
            conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA foreign_keys={'ON' if self.config.foreign_keys else 'OFF'}")
            conn.execute(f"PRAGMA journal_mode={self.config.journal_mode}")
            conn.execute(f"PRAGMA synchronous={self.config.synchronous}")
            conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize database at {self.db_path}: {e}") from e
        self._conn = conn
        logger.debug(f"Database initialized at: {self.db_path}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Atomic block. Re-entrant: nested blocks join the outer one.

        Raises:
            StorageError: On any SQLite error or out-of-range integer (after rolling back)
        """
        with self._lock:
            if self._conn is None:
                raise StorageError("Database is closed")
            conn = self._conn
            outermost = self._depth == 0
            if outermost:
                conn.execute("BEGIN")
            self._depth += 1
            try:
                yield conn
            except (sqlite3.Error, OverflowError) as e:
                # OverflowError: integer outside SQLite's 64-bit range
                self._depth -= 1
                if outermost:
                    conn.rollback()
                raise StorageError(f"Database operation failed: {e}") from e
            except BaseException:
                self._depth -= 1
                if outermost:
                    conn.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    conn.commit()

    # =========================================================================
    # Animals and cages
    # =========================================================================

    def get_animal(self, number: int) -> Animal | None:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM animals WHERE number = ?", (number,)).fetchone()
        return self._row_to_animal(row) if row else None

    def get_or_create_animal(self, number: int) -> Animal:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM animals WHERE number = ?", (number,)).fetchone()
            if row is None:
                cursor = conn.execute("INSERT INTO animals (number) VALUES (?)", (number,))
                row = conn.execute(
                    "SELECT * FROM animals WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
        return self._row_to_animal(row)

    def get_or_create_cage(self, number: int) -> Cage:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM cages WHERE number = ?", (number,)).fetchone()
            if row is None:
                cursor = conn.execute("INSERT INTO cages (number) VALUES (?)", (number,))
                row = conn.execute(
                    "SELECT * FROM cages WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
        return self._row_to_cage(row)

    def move_animal(self, animal_number: int, cage_number: int) -> bool:
        """Set the animal's current cage. False if the animal is unknown."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE animals SET current_cage = ? WHERE number = ?",
                (cage_number, animal_number),
            )
        return cursor.rowcount > 0

    def get_animals_around_weight(self, target: float, tolerance: float = 20.0) -> list[Animal]:
        """Animals within ``target ± tolerance``, nearest first."""
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM animals
                WHERE current_weight BETWEEN ? AND ?
                ORDER BY ABS(current_weight - ?) ASC, number ASC
                """,
                (target - tolerance, target + tolerance, target),
            ).fetchall()
        return [self._row_to_animal(row) for row in rows]

    # =========================================================================
    # Readings
    # =========================================================================

    def record_reading(
        self,
        animal_number: int,
        cage_number: int,
        weight: float,
        session_id: int,
        notes: str | None = None,
    ) -> Reading:
        """Append a reading and update the animal's current cage and weight."""
        with self.transaction() as conn:
            animal = self.get_or_create_animal(animal_number)
            cage = self.get_or_create_cage(cage_number)
            cursor = conn.execute(
                """
                INSERT INTO readings (animal_id, weight, cage_id, session_id, notes)
                VALUES (?, ?, ?, ?, ?)
                """,
                (animal.id, weight, cage.id, session_id, notes),
            )
            conn.execute(
                "UPDATE animals SET current_cage = ?, current_weight = ? WHERE id = ?",
                (cage_number, weight, animal.id),
            )
            row = conn.execute(
                "SELECT * FROM readings WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._row_to_reading(row)

    def update_animal_weight(
        self, animal_number: int, weight: float, session_id: int
    ) -> Reading | None:
        """
        Correct an animal's current weight.

        If the animal has a current cage, an audit reading noted
        "Weight updated" is appended as well and returned.

        Raises:
            StorageError: If the animal does not exist
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM animals WHERE number = ?", (animal_number,)
            ).fetchone()
            if row is None:
                raise StorageError(f"Animal {animal_number} not found")
            animal = self._row_to_animal(row)

            conn.execute(
                "UPDATE animals SET current_weight = ? WHERE id = ?", (weight, animal.id)
            )

            if animal.current_cage is None:
                return None
            cage_row = conn.execute(
                "SELECT * FROM cages WHERE number = ?", (animal.current_cage,)
            ).fetchone()
            if cage_row is None:
                return None
            cursor = conn.execute(
                """
                INSERT INTO readings (animal_id, weight, cage_id, session_id, notes)
                VALUES (?, ?, ?, ?, 'Weight updated')
                """,
                (animal.id, weight, cage_row["id"], session_id),
            )
            reading = conn.execute(
                "SELECT * FROM readings WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._row_to_reading(reading)

    def list_readings(
        self,
        animal_number: int | None = None,
        session_id: int | None = None,
        limit: int | None = None,
    ) -> list[Reading]:
        """Readings, newest first, optionally filtered."""
        query = "SELECT r.* FROM readings r JOIN animals a ON a.id = r.animal_id WHERE 1=1"
        params: list[int] = []
        if animal_number is not None:
            query += " AND a.number = ?"
            params.append(animal_number)
        if session_id is not None:
            query += " AND r.session_id = ?"
            params.append(session_id)
        query += " ORDER BY r.id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_reading(row) for row in rows]

    # =========================================================================
    # Sessions and context
    # =========================================================================

    def start_session(self) -> Session:
        """Deactivate any active session and open a new one."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET is_active = 0, end_time = CURRENT_TIMESTAMP "
                "WHERE is_active = 1"
            )
            cursor = conn.execute("INSERT INTO sessions DEFAULT VALUES")
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        logger.info(f"Started session {row['id']}")
        return self._row_to_session(row)

    def get_current_session(self) -> Session | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE is_active = 1 ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return self._row_to_session(row) if row else None

    def end_session(self, session_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET is_active = 0, end_time = CURRENT_TIMESTAMP "
                "WHERE id = ? AND is_active = 1",
                (session_id,),
            )

    def update_session_context(
        self,
        session_id: int,
        last_rat: int | None = None,
        last_cage: int | None = None,
        last_weight: float | None = None,
    ) -> None:
        """Upsert context; ``None`` leaves the stored value unchanged."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO session_context (session_id, last_rat, last_cage, last_weight, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(session_id) DO UPDATE SET
                    last_rat = COALESCE(excluded.last_rat, last_rat),
                    last_cage = COALESCE(excluded.last_cage, last_cage),
                    last_weight = COALESCE(excluded.last_weight, last_weight),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (session_id, last_rat, last_cage, last_weight),
            )

    def clear_session_context(self, session_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM session_context WHERE session_id = ?", (session_id,))

    def get_session_context(self, session_id: int) -> SessionContext | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM session_context WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_context(row) if row else None

    # =========================================================================
    # Command audit trail
    # =========================================================================

    def log_command(
        self,
        session_id: int,
        raw_text: str,
        parsed_command: str,
        confidence: float,
        executed: bool,
    ) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO command_history (session_id, raw_text, parsed_command, confidence, executed)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, raw_text, parsed_command, confidence, int(executed)),
            )
        return int(cursor.lastrowid)

    def list_commands(self, session_id: int | None = None) -> list[CommandLogEntry]:
        with self.transaction() as conn:
            if session_id is None:
                rows = conn.execute("SELECT * FROM command_history ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM command_history WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()
        return [self._row_to_command(row) for row in rows]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _row_to_animal(self, row: sqlite3.Row) -> Animal:
        return Animal(
            id=row["id"],
            number=row["number"],
            current_cage=row["current_cage"],
            current_weight=row["current_weight"],
            group_id=row["group_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_cage(self, row: sqlite3.Row) -> Cage:
        return Cage(
            id=row["id"],
            number=row["number"],
            group_name=row["group_name"],
            capacity=row["capacity"],
            created_at=row["created_at"],
        )

    def _row_to_reading(self, row: sqlite3.Row) -> Reading:
        return Reading(
            id=row["id"],
            animal_id=row["animal_id"],
            weight=row["weight"],
            cage_id=row["cage_id"],
            session_id=row["session_id"],
            timestamp=row["timestamp"],
            notes=row["notes"],
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            is_active=bool(row["is_active"]),
        )

    def _row_to_context(self, row: sqlite3.Row) -> SessionContext:
        updated = row["updated_at"]
        return SessionContext(
            session_id=row["session_id"],
            last_rat=row["last_rat"],
            last_cage=row["last_cage"],
            last_weight=row["last_weight"],
            updated_at=datetime.fromisoformat(updated) if updated else None,
        )

    def _row_to_command(self, row: sqlite3.Row) -> CommandLogEntry:
        return CommandLogEntry(
            id=row["id"],
            session_id=row["session_id"],
            raw_text=row["raw_text"],
            parsed_command=row["parsed_command"],
            confidence=row["confidence"],
            executed=bool(row["executed"]),
            timestamp=row["timestamp"],
        )


__all__ = ["LabStore", "SCHEMA_SQL"]
