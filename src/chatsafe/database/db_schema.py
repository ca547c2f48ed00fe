"""
Database schema initialization.

Creates the stream checkpoint and infraction journal tables and tracks the
schema version.
"""

import aiosqlite
from chatsafe.util.logger import get_logger

logger = get_logger("database_schema")

SCHEMA_VERSION = 1


class SchemaManager:
    """Creates tables, indexes and triggers for the local store."""

    @staticmethod
    async def initialize_schema(db: aiosqlite.Connection) -> None:
        """
        Create all tables, indexes and triggers if they do not exist.

        Args:
            db: Open database connection
        """
        await SchemaManager._create_tables(db)
        await SchemaManager._create_indexes(db)
        await SchemaManager._create_triggers(db)
        await SchemaManager._update_schema_version(db)
        await db.commit()
        logger.info("[SCHEMA] Database schema initialized")

    @staticmethod
    async def _create_tables(db: aiosqlite.Connection) -> None:
        # Highest arrival_seq below which every message has been fully processed
        await db.execute("""
            CREATE TABLE IF NOT EXISTS stream_checkpoint (
                stream_id TEXT PRIMARY KEY,
                last_seq INTEGER NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # status: pending | confirmed | failed
        await db.execute("""
            CREATE TABLE IF NOT EXISTS infraction_journal (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                arrival_seq INTEGER NOT NULL,
                subject TEXT NOT NULL,
                reason TEXT NOT NULL,
                detected_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                transaction_ref TEXT,
                error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    @staticmethod
    async def _create_indexes(db: aiosqlite.Connection) -> None:
        await db.execute("CREATE INDEX IF NOT EXISTS idx_infraction_journal_status ON infraction_journal(status, id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_infraction_journal_subject ON infraction_journal(subject)")

    @staticmethod
    async def _create_triggers(db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TRIGGER IF NOT EXISTS update_infraction_journal_timestamp
            AFTER UPDATE OF status ON infraction_journal
            FOR EACH ROW
            BEGIN
                UPDATE infraction_journal SET updated_at = CURRENT_TIMESTAMP
                WHERE id = NEW.id;
            END
        """)

    @staticmethod
    async def _update_schema_version(db: aiosqlite.Connection) -> None:
        await db.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
