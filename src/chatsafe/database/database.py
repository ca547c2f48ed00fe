"""
Local SQLite store for the stream checkpoint and the infraction journal.

The checkpoint is the highest ``arrival_seq`` below which every message has
been fully processed; on restart the agent resumes after it.

The journal mirrors ledger submissions: a row is written as ``pending``
before the append is attempted and updated to ``confirmed`` or ``failed``
afterwards. Rows still ``pending`` at startup belong to submissions whose
fate the previous run never learned; they may or may not be on the ledger.
The journal is for operators and is never used to resubmit.

Lifecycle:
    1. ``await database.initialize()`` at startup
    2. checkpoint / journal calls while running
    3. ``await database.shutdown()`` at exit
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from chatsafe.database.db_connection import ConnectionManager
from chatsafe.database.db_schema import SchemaManager
from chatsafe.datatypes.moderation_datatypes import Infraction
from chatsafe.util.logger import get_logger

logger = get_logger("database")

DB_PATH = Path("./data/chatsafe.db").resolve()

DEFAULT_STREAM_ID = "default"


@dataclass(slots=True)
class JournalEntry:
    """One row of the infraction journal."""
    entry_id: int
    arrival_seq: int
    subject: str
    reason: str
    detected_at: str
    status: str
    transaction_ref: Optional[str] = None
    error: Optional[str] = None


class Database:
    """
    Coordinator for checkpoint and journal persistence.

    Args:
        db_path: Path to the SQLite database file.
        stream_id: Key under which this agent's checkpoint is stored.
    """

    def __init__(self, db_path: Path = DB_PATH, stream_id: str = DEFAULT_STREAM_ID) -> None:
        self.db_path = db_path
        self.stream_id = stream_id
        self._connection = ConnectionManager()
        self._initialized = False

    async def initialize(self) -> None:
        """Open the connection and create the schema.

        Raises:
            Exception: Propagated from aiosqlite when the file cannot be opened;
                the agent does not start without its store.
        """
        if self._initialized:
            logger.debug("[DATABASE] Already initialized, skipping")
            return

        await self._connection.open(self.db_path)
        async with self._connection.transaction() as db:
            await SchemaManager.initialize_schema(db)
        self._initialized = True
        logger.info("[DATABASE] Database initialized at %s", self.db_path)

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self._connection.close()
        self._initialized = False
        logger.info("[DATABASE] Database shutdown complete")

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    async def load_checkpoint(self) -> int | None:
        """Return the stored checkpoint, or None when the stream was never processed."""
        async with self._connection.read() as db:
            cursor = await db.execute(
                "SELECT last_seq FROM stream_checkpoint WHERE stream_id = ?",
                (self.stream_id,),
            )
            row = await cursor.fetchone()
        return int(row["last_seq"]) if row is not None else None

    async def save_checkpoint(self, last_seq: int) -> None:
        """Persist ``last_seq``; the stored value never moves backwards."""
        async with self._connection.transaction() as db:
            await db.execute(
                """
                INSERT INTO stream_checkpoint (stream_id, last_seq) VALUES (?, ?)
                ON CONFLICT(stream_id) DO UPDATE SET
                    last_seq = MAX(last_seq, excluded.last_seq),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (self.stream_id, last_seq),
            )
        logger.debug("[CHECKPOINT] Saved last_seq=%d", last_seq)

    # ------------------------------------------------------------------
    # Infraction journal
    # ------------------------------------------------------------------

    async def record_pending(self, arrival_seq: int, infraction: Infraction) -> int:
        """Journal an infraction before it is submitted; returns the entry id."""
        async with self._connection.transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO infraction_journal (arrival_seq, subject, reason, detected_at, status)
                VALUES (?, ?, ?, ?, 'pending')
                """,
                (arrival_seq, infraction.subject, infraction.reason, infraction.detected_at.isoformat()),
            )
            entry_id = cursor.lastrowid
        logger.debug("[JOURNAL] Entry %s pending for seq=%d", entry_id, arrival_seq)
        return int(entry_id)

    async def record_confirmed(self, entry_id: int, transaction_ref: str) -> None:
        async with self._connection.transaction() as db:
            await db.execute(
                "UPDATE infraction_journal SET status = 'confirmed', transaction_ref = ?, error = NULL WHERE id = ?",
                (transaction_ref, entry_id),
            )

    async def record_failed(self, entry_id: int, error: str, transaction_ref: str | None = None) -> None:
        async with self._connection.transaction() as db:
            await db.execute(
                "UPDATE infraction_journal SET status = 'failed', transaction_ref = ?, error = ? WHERE id = ?",
                (transaction_ref, error, entry_id),
            )

    async def unresolved_entries(self, limit: int = 50) -> List[JournalEntry]:
        """Return pending and failed entries, oldest first."""
        async with self._connection.read() as db:
            cursor = await db.execute(
                """
                SELECT id, arrival_seq, subject, reason, detected_at, status, transaction_ref, error
                FROM infraction_journal
                WHERE status IN ('pending', 'failed')
                ORDER BY id
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
        return [
            JournalEntry(
                entry_id=row["id"],
                arrival_seq=row["arrival_seq"],
                subject=row["subject"],
                reason=row["reason"],
                detected_at=row["detected_at"],
                status=row["status"],
                transaction_ref=row["transaction_ref"],
                error=row["error"],
            )
            for row in rows
        ]

    async def report_ambiguous_submissions(self) -> int:
        """Log journal entries a previous run left pending; returns how many there were."""
        pending = [entry for entry in await self.unresolved_entries(limit=1000) if entry.status == "pending"]
        for entry in pending:
            logger.warning(
                "[JOURNAL] Submission for seq=%d subject=%s reason=%r was never resolved; "
                "it may or may not be on the ledger",
                entry.arrival_seq,
                entry.subject,
                entry.reason,
            )
        return len(pending)
