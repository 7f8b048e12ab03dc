"""
Database Migration System

Simple migration system for managing the ledger schema without external
dependencies. Every migration carries DDL for both SQLite and PostgreSQL.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib
import logging

from .storage import SQLStorage


logger = logging.getLogger(__name__)


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, up_sql: Dict[str, str],
                 down_sql: Optional[Dict[str, str]] = None):
        self.version = version
        self.name = name
        self.up_sql = up_sql
        self.down_sql = down_sql or {}
        self.applied_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"

    def statements(self, dialect: str, direction: str = "up") -> List[str]:
        """Split the DDL for a dialect into individual statements"""
        scripts = self.up_sql if direction == "up" else self.down_sql
        script = scripts.get(dialect, "")
        return [s.strip() for s in script.split(";") if s.strip()]


class MigrationManager:
    """Manages database migrations"""

    def __init__(self, storage: SQLStorage):
        self.storage = storage
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()
        self._ensure_migration_table()

    def _init_migrations(self) -> None:
        """Initialize built-in migrations"""

        # v001: Create ledger tables
        self.add_migration(1, "Create ledger tables", {
            "postgresql": """
                CREATE TABLE accounts (
                    id BIGSERIAL PRIMARY KEY,
                    owner VARCHAR NOT NULL,
                    balance BIGINT NOT NULL,
                    currency VARCHAR NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                CREATE TABLE entries (
                    id BIGSERIAL PRIMARY KEY,
                    account_id BIGINT NOT NULL REFERENCES accounts (id),
                    amount BIGINT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                CREATE TABLE transfers (
                    id BIGSERIAL PRIMARY KEY,
                    from_account_id BIGINT NOT NULL REFERENCES accounts (id),
                    to_account_id BIGINT NOT NULL REFERENCES accounts (id),
                    amount BIGINT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                CREATE INDEX ON accounts (owner);
                CREATE INDEX ON entries (account_id);
                CREATE INDEX ON transfers (from_account_id);
                CREATE INDEX ON transfers (to_account_id);
                CREATE INDEX ON transfers (from_account_id, to_account_id);
            """,
            "sqlite": """
                CREATE TABLE accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner TEXT NOT NULL,
                    balance INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL REFERENCES accounts (id),
                    amount INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE transfers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    from_account_id INTEGER NOT NULL REFERENCES accounts (id),
                    to_account_id INTEGER NOT NULL REFERENCES accounts (id),
                    amount INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX idx_accounts_owner ON accounts (owner);
                CREATE INDEX idx_entries_account_id ON entries (account_id);
                CREATE INDEX idx_transfers_from ON transfers (from_account_id);
                CREATE INDEX idx_transfers_to ON transfers (to_account_id);
                CREATE INDEX idx_transfers_from_to ON transfers (from_account_id, to_account_id);
            """,
        }, {
            "postgresql": """
                DROP TABLE IF EXISTS entries;
                DROP TABLE IF EXISTS transfers;
                DROP TABLE IF EXISTS accounts;
            """,
            "sqlite": """
                DROP TABLE IF EXISTS entries;
                DROP TABLE IF EXISTS transfers;
                DROP TABLE IF EXISTS accounts;
            """,
        })

        # v002: Users own accounts, one account per currency per user
        self.add_migration(2, "Add users", {
            "postgresql": """
                CREATE TABLE users (
                    username VARCHAR PRIMARY KEY,
                    hashed_password VARCHAR NOT NULL,
                    full_name VARCHAR NOT NULL,
                    email VARCHAR UNIQUE NOT NULL,
                    password_changed_at TIMESTAMPTZ NOT NULL DEFAULT '0001-01-01 00:00:00Z',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                ALTER TABLE accounts ADD CONSTRAINT accounts_owner_fkey
                    FOREIGN KEY (owner) REFERENCES users (username);
                ALTER TABLE accounts ADD CONSTRAINT owner_currency_key UNIQUE (owner, currency);
            """,
            # SQLite cannot add constraints to an existing table, so the
            # accounts table is rebuilt with them
            "sqlite": """
                CREATE TABLE users (
                    username TEXT PRIMARY KEY,
                    hashed_password TEXT NOT NULL,
                    full_name TEXT NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    password_changed_at TEXT NOT NULL DEFAULT '0001-01-01T00:00:00+00:00',
                    created_at TEXT NOT NULL
                );
                CREATE TABLE accounts_new (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner TEXT NOT NULL REFERENCES users (username),
                    balance INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (owner, currency)
                );
                INSERT INTO accounts_new SELECT id, owner, balance, currency, created_at FROM accounts;
                DROP TABLE accounts;
                ALTER TABLE accounts_new RENAME TO accounts;
                CREATE INDEX idx_accounts_owner ON accounts (owner);
            """,
        }, {
            "postgresql": """
                ALTER TABLE IF EXISTS accounts DROP CONSTRAINT IF EXISTS owner_currency_key;
                ALTER TABLE IF EXISTS accounts DROP CONSTRAINT IF EXISTS accounts_owner_fkey;
                DROP TABLE IF EXISTS users;
            """,
            "sqlite": """
                CREATE TABLE accounts_old (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner TEXT NOT NULL,
                    balance INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                INSERT INTO accounts_old SELECT id, owner, balance, currency, created_at FROM accounts;
                DROP TABLE accounts;
                ALTER TABLE accounts_old RENAME TO accounts;
                CREATE INDEX idx_accounts_owner ON accounts (owner);
                DROP TABLE IF EXISTS users;
            """,
        })

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        self.storage.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._migration_table} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)

    def add_migration(self, version: int, name: str, up_sql: Dict[str, str],
                      down_sql: Optional[Dict[str, str]] = None) -> None:
        """Add a migration to the manager"""
        migration = Migration(version, name, up_sql, down_sql)
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        rows = self.storage.execute(
            f"SELECT version, name, checksum, applied_at FROM {self._migration_table} ORDER BY version"
        )
        return [dict(row) for row in rows]

    def get_current_version(self) -> int:
        """Get the current database version"""
        versions = [m["version"] for m in self.get_applied_migrations()]
        return max(versions) if versions else 0

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)

        return [m for m in self.migrations if current_version < m.version <= max_version]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            try:
                logger.info(f"Applying {migration}")

                with self.storage.atomic():
                    for statement in migration.statements(self.storage.dialect, "up"):
                        self.storage.execute(statement)

                    self.storage.execute(
                        f"INSERT INTO {self._migration_table} (version, name, checksum, applied_at) "
                        f"VALUES (%s, %s, %s, %s)",
                        (
                            migration.version,
                            migration.name,
                            self._calculate_checksum(migration, self.storage.dialect),
                            datetime.now(timezone.utc).isoformat(),
                        )
                    )

                migration.applied_at = datetime.now(timezone.utc)
                applied.append(migration)
                logger.info(f"Successfully applied {migration}")

            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rollback_migrations = [
            m for m in reversed(self.migrations)
            if target_version < m.version <= current_version
        ]

        rolledback = []

        logger.info(f"Rolling back {len(rollback_migrations)} migrations")

        for migration in rollback_migrations:
            statements = migration.statements(self.storage.dialect, "down")
            if not statements:
                logger.warning(f"No rollback SQL for {migration}, skipping")
                continue

            try:
                logger.info(f"Rolling back {migration}")

                with self.storage.atomic():
                    for statement in statements:
                        self.storage.execute(statement)
                    self.storage.execute(
                        f"DELETE FROM {self._migration_table} WHERE version = %s",
                        (migration.version,)
                    )

                rolledback.append(migration)
                logger.info(f"Successfully rolled back {migration}")

            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise RuntimeError(f"Rollback failed: {migration}") from e

        logger.info(f"Successfully rolled back {len(rolledback)} migrations")
        return rolledback

    def _calculate_checksum(self, migration: Migration, dialect: str) -> str:
        """Calculate checksum for migration SQL"""
        return hashlib.md5(migration.up_sql.get(dialect, "").encode()).hexdigest()

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied_migration in self.get_applied_migrations():
            version = applied_migration["version"]
            stored_checksum = applied_migration.get("checksum", "")

            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            expected_checksum = self._calculate_checksum(migration, self.storage.dialect)
            if stored_checksum != expected_checksum:
                logger.error(f"Checksum mismatch for v{version}: expected {expected_checksum}, got {stored_checksum}")
                return False

        logger.info("All applied migrations validated successfully")
        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()
        applied = self.get_applied_migrations()

        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(applied),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
