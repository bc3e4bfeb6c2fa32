"""
Database Migration System

Versioned schema changes for the SQL ledger stores. Each migration carries
DDL per dialect; applied versions and their checksums are recorded in the
schema_migrations table.
"""

from typing import Dict, List, Optional, Any, TYPE_CHECKING
from datetime import datetime, timezone
import hashlib
import logging

if TYPE_CHECKING:
    from .storage import SQLLedgerStore


logger = logging.getLogger(__name__)

# Advisory lock key shared by every process migrating the same PostgreSQL database
SCHEMA_LOCK_KEY = 727465


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, statements: Dict[str, List[str]]):
        self.version = version
        self.name = name
        self.statements = statements
        self.applied_at: Optional[datetime] = None

    def statements_for(self, dialect: str) -> List[str]:
        if dialect not in self.statements:
            raise ValueError(f"{self} has no statements for dialect {dialect}")
        return self.statements[dialect]

    def checksum(self, dialect: str) -> str:
        return hashlib.md5("\n".join(self.statements_for(dialect)).encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


MIGRATIONS_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        checksum TEXT NOT NULL,
        applied_at TEXT NOT NULL
    )
"""


def default_migrations() -> List[Migration]:
    """Built-in ledger schema"""
    return [
        Migration(1, "Create users table", {
            "sqlite": ["""
                CREATE TABLE users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE,
                    created_at TEXT NOT NULL
                )
            """],
            "postgresql": ["""
                CREATE TABLE users (
                    id BIGSERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE,
                    created_at TIMESTAMPTZ NOT NULL
                )
            """],
        }),
        # Amounts are TEXT in SQLite: NUMERIC affinity would coerce them to float
        Migration(2, "Create balances table", {
            "sqlite": ["""
                CREATE TABLE balances (
                    user_id INTEGER PRIMARY KEY REFERENCES users(id),
                    amount TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """],
            "postgresql": ["""
                CREATE TABLE balances (
                    user_id BIGINT PRIMARY KEY REFERENCES users(id),
                    amount NUMERIC NOT NULL CHECK (amount >= 0),
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
            """],
        }),
        Migration(3, "Create transactions table", {
            "sqlite": [
                """
                CREATE TABLE transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id),
                    type TEXT NOT NULL
                        CHECK (type IN ('DEPOSIT', 'WITHDRAW', 'TRANSFER_OUT', 'TRANSFER_IN')),
                    amount TEXT NOT NULL,
                    comment TEXT CHECK (comment IS NULL OR length(comment) <= 255),
                    related_user_id INTEGER REFERENCES users(id),
                    created_at TEXT NOT NULL
                )
                """,
                "CREATE INDEX idx_transactions_user_id ON transactions(user_id)",
            ],
            "postgresql": [
                """
                CREATE TABLE transactions (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL REFERENCES users(id),
                    type TEXT NOT NULL
                        CHECK (type IN ('DEPOSIT', 'WITHDRAW', 'TRANSFER_OUT', 'TRANSFER_IN')),
                    amount NUMERIC NOT NULL CHECK (amount > 0),
                    comment VARCHAR(255),
                    related_user_id BIGINT REFERENCES users(id),
                    created_at TIMESTAMPTZ NOT NULL
                )
                """,
                "CREATE INDEX idx_transactions_user_id ON transactions(user_id)",
            ],
        }),
    ]


class MigrationManager:
    """Manages database migrations for a SQL ledger store"""

    def __init__(self, store: 'SQLLedgerStore', migrations: Optional[List[Migration]] = None):
        self.store = store
        self.dialect = store.dialect
        self.migrations: List[Migration] = []
        for migration in migrations if migrations is not None else default_migrations():
            self.add_migration(migration)
        self._ensure_migration_table()

    def _ensure_migration_table(self) -> None:
        with self.store.session(lock_user_ids=()) as connection:
            cursor = connection.cursor()
            self._lock_schema(cursor)
            cursor.execute(MIGRATIONS_TABLE)

    def _lock_schema(self, cursor: Any) -> None:
        """Serialize schema changes across processes until the transaction ends"""
        # SQLite writer sessions already hold the database lock (BEGIN IMMEDIATE)
        if self.dialect == "postgresql":
            cursor.execute("SELECT pg_advisory_xact_lock(%s)", (SCHEMA_LOCK_KEY,))

    def _is_applied(self, cursor: Any, version: int) -> bool:
        cursor.execute(self.store.sql("SELECT 1 FROM schema_migrations WHERE version = ?"), (version,))
        return cursor.fetchone() is not None

    def add_migration(self, migration: Migration) -> None:
        """Add a migration to the manager"""
        if any(m.version == migration.version for m in self.migrations):
            raise ValueError(f"Duplicate migration version {migration.version}")
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        with self.store.session() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT version, name, checksum, applied_at FROM schema_migrations ORDER BY version")
            rows = cursor.fetchall()
        return [
            {"version": row[0], "name": row[1], "checksum": row[2], "applied_at": row[3]}
            for row in rows
        ]

    def get_current_version(self) -> int:
        """Get the current database version"""
        applied = self.get_applied_migrations()
        return max((m["version"] for m in applied), default=0)

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)

        return [m for m in self.migrations if current_version < m.version <= max_version]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version, each in its own transaction"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.debug("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            logger.info(f"Applying {migration}")
            now = datetime.now(timezone.utc)

            try:
                with self.store.session(lock_user_ids=()) as connection:
                    cursor = connection.cursor()
                    self._lock_schema(cursor)
                    # Another process may have applied it while we waited for the lock
                    if self._is_applied(cursor, migration.version):
                        logger.info(f"{migration} already applied, skipping")
                        continue
                    for statement in migration.statements_for(self.dialect):
                        cursor.execute(statement)
                    cursor.execute(
                        self.store.sql(
                            "INSERT INTO schema_migrations (version, name, checksum, applied_at) "
                            "VALUES (?, ?, ?, ?)"
                        ),
                        (migration.version, migration.name, migration.checksum(self.dialect), now.isoformat())
                    )
            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

            migration.applied_at = now
            applied.append(migration)

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied_migration in self.get_applied_migrations():
            version = applied_migration["version"]
            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            expected_checksum = migration.checksum(self.dialect)
            if applied_migration["checksum"] != expected_checksum:
                logger.error(
                    f"Checksum mismatch for v{version}: expected {expected_checksum}, "
                    f"got {applied_migration['checksum']}"
                )
                return False

        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        pending = self.get_pending_migrations()
        return {
            "dialect": self.dialect,
            "current_version": self.get_current_version(),
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
