"""
Unit tests for the SQLite lab store.
"""

import sqlite3
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from lab_assist.config import DatabaseConfig
from lab_assist.storage import LabStore
from lab_assist.types import StorageError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def session(store):
    return store.start_session()


# =============================================================================
# Schema and configuration
# =============================================================================


class TestSchema:
    """Tests for database initialization."""

    def test_creates_tables(self, store):
        """All tables exist after initialization."""
        with store.transaction() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        tables = {row["name"] for row in rows}

        assert {
            "animals",
            "cages",
            "sessions",
            "readings",
            "session_context",
            "command_history",
        } <= tables

    def test_file_database_and_parent_dirs(self, tmp_path):
        """A file path is created along with its parent directory."""
        db_path = tmp_path / "nested" / "lab.db"
        file_store = LabStore(str(db_path))
        file_store.start_session()
        file_store.close()

        assert db_path.exists()

    def test_path_from_config(self, tmp_path):
        """The database path can come from DatabaseConfig."""
        db_path = tmp_path / "configured.db"
        file_store = LabStore(config=DatabaseConfig(path=str(db_path)))

        assert file_store.db_path == str(db_path)
        file_store.close()

    def test_closed_store_raises(self):
        """Using a closed store is a StorageError."""
        closed = LabStore(":memory:")
        closed.close()

        with pytest.raises(StorageError):
            closed.get_current_session()


class TestTransactions:
    """Tests for transaction handling."""

    def test_rollback_on_error(self, store):
        """A failing block leaves no partial writes."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.get_or_create_animal(5)
                raise RuntimeError("abort")

        assert store.get_animal(5) is None

    def test_sqlite_errors_become_storage_errors(self, store):
        """Driver errors are wrapped."""
        with pytest.raises(StorageError):
            with store.transaction() as conn:
                conn.execute("INSERT INTO nonexistent VALUES (1)")

    def test_integer_overflow_becomes_storage_error(self, store):
        """Numbers past SQLite's 64-bit integer range are wrapped too."""
        with pytest.raises(StorageError):
            store.get_or_create_animal(2**63)

        # The store is still usable afterwards
        assert store.get_or_create_animal(5).number == 5

    def test_nested_blocks_join_outer(self, store, session):
        """An inner failure rolls back the outer block too."""
        with pytest.raises(StorageError):
            with store.transaction():
                store.record_reading(5, 3, 280.0, session.id)
                store.update_animal_weight(99, 300.0, session.id)

        assert store.get_animal(5) is None
        assert store.list_readings() == []


# =============================================================================
# Animals and cages
# =============================================================================


class TestAnimals:
    """Tests for animal and cage rows."""

    def test_get_or_create_is_idempotent(self, store):
        """The same number returns the same row."""
        first = store.get_or_create_animal(5)
        second = store.get_or_create_animal(5)

        assert first.id == second.id
        assert first.current_cage is None

    def test_get_or_create_cage(self, store):
        """Cages default to capacity 1."""
        cage = store.get_or_create_cage(3)

        assert cage.number == 3
        assert cage.capacity == 1
        assert store.get_or_create_cage(3).id == cage.id

    def test_move_animal(self, store):
        """Moving updates the current cage."""
        store.get_or_create_animal(7)

        assert store.move_animal(7, 12) is True
        assert store.get_animal(7).current_cage == 12

    def test_move_unknown_animal(self, store):
        """Moving an unknown animal reports False."""
        assert store.move_animal(404, 1) is False

    def test_animals_around_weight(self, store, session):
        """Results are within tolerance and nearest first."""
        store.record_reading(1, 1, 240.0, session.id)
        store.record_reading(2, 1, 255.0, session.id)
        store.record_reading(3, 1, 262.0, session.id)
        store.record_reading(4, 1, 400.0, session.id)

        animals = store.get_animals_around_weight(250.0, 20.0)

        assert [a.number for a in animals] == [2, 1, 3]

    def test_equal_distance_ties_on_number(self, store, session):
        """Animals at the same distance are ordered by number."""
        store.record_reading(8, 1, 260.0, session.id)
        store.record_reading(6, 1, 240.0, session.id)

        animals = store.get_animals_around_weight(250.0)

        assert [a.number for a in animals] == [6, 8]


# =============================================================================
# Readings
# =============================================================================


class TestReadings:
    """Tests for readings and weight updates."""

    def test_record_reading_updates_animal(self, store, session):
        """Recording sets the animal's current cage and weight."""
        reading = store.record_reading(5, 3, 280.0, session.id)
        animal = store.get_animal(5)

        assert reading.weight == 280.0
        assert reading.session_id == session.id
        assert reading.animal_id == animal.id
        assert animal.current_cage == 3
        assert animal.current_weight == 280.0

    def test_update_weight_appends_audit_reading(self, store, session):
        """Updating a caged animal writes a 'Weight updated' reading."""
        store.record_reading(5, 3, 280.0, session.id)

        reading = store.update_animal_weight(5, 300.0, session.id)

        assert reading is not None
        assert reading.notes == "Weight updated"
        assert store.get_animal(5).current_weight == 300.0
        assert len(store.list_readings(animal_number=5)) == 2

    def test_update_weight_without_cage(self, store, session):
        """An uncaged animal gets its weight updated without a reading."""
        store.get_or_create_animal(5)

        assert store.update_animal_weight(5, 300.0, session.id) is None
        assert store.get_animal(5).current_weight == 300.0
        assert store.list_readings() == []

    def test_update_unknown_animal(self, store, session):
        """Updating a missing animal is a StorageError."""
        with pytest.raises(StorageError, match="Animal 99 not found"):
            store.update_animal_weight(99, 300.0, session.id)

    def test_list_readings_newest_first(self, store, session):
        """Readings come back newest first and honour the limit."""
        store.record_reading(5, 3, 280.0, session.id)
        store.record_reading(5, 3, 285.0, session.id)
        store.record_reading(6, 3, 300.0, session.id)

        assert [r.weight for r in store.list_readings(animal_number=5)] == [285.0, 280.0]
        assert len(store.list_readings(limit=1)) == 1

    def test_foreign_keys_are_enforced(self, store):
        """Readings must reference an existing session."""
        with pytest.raises(StorageError):
            store.record_reading(5, 3, 280.0, session_id=999)


# =============================================================================
# Sessions and context
# =============================================================================


class TestSessions:
    """Tests for sessions and session context."""

    def test_only_one_active_session(self, store):
        """Starting a session deactivates the previous one."""
        first = store.start_session()
        second = store.start_session()

        current = store.get_current_session()
        assert current.id == second.id
        assert current.id != first.id

    def test_end_session(self, store, session):
        """An ended session is no longer current."""
        store.end_session(session.id)

        assert store.get_current_session() is None

    def test_context_upsert_keeps_unspecified_fields(self, store, session):
        """None leaves a stored context value unchanged."""
        store.update_session_context(session.id, last_rat=5, last_cage=3, last_weight=280.0)
        store.update_session_context(session.id, last_weight=300.0)

        context = store.get_session_context(session.id)
        assert context.last_rat == 5
        assert context.last_cage == 3
        assert context.last_weight == 300.0
        assert context.updated_at is not None

    def test_clear_context(self, store, session):
        """Clearing removes the stored context."""
        store.update_session_context(session.id, last_rat=5)
        store.clear_session_context(session.id)

        assert store.get_session_context(session.id) is None


class TestCommandHistory:
    """Tests for the command audit trail."""

    def test_log_and_list(self, store, session):
        """Logged commands are listed in insertion order."""
        store.log_command(session.id, "stop listening", '{"type": "system"}', 0.9, True)
        store.log_command(session.id, "hello", '{"type": "system"}', 0.4, False)

        entries = store.list_commands(session.id)
        assert [e.raw_text for e in entries] == ["stop listening", "hello"]
        assert entries[0].executed is True
        assert entries[1].executed is False

    def test_list_all_sessions(self, store):
        """Without a session id every entry is returned."""
        a = store.start_session()
        store.log_command(a.id, "one", None, 0.5, False)
        b = store.start_session()
        store.log_command(b.id, "two", None, 0.5, False)

        assert len(store.list_commands()) == 2
        assert len(store.list_commands(b.id)) == 1
