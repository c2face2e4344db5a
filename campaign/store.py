"""
Campaign Orchestrator — Operation Store

Durable keyed storage for operations, their history, scheduled messages
and the action ledger, on top of engine.db (SQLite by default).

Every update is read-modify-write inside one transaction: the row is
loaded into a fresh object, handed to a mutator, and written back. The
caller only ever sees the new value if the write committed. Driver
errors surface as PersistenceError.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from engine.db import DatabaseBackend, PersistenceError, SQLiteBackend
from engine.logging import get_logger

from campaign.result import DuplicateActiveOperation
from campaign.types import (
    MessageStatus,
    Operation,
    OperationStatus,
    ScheduledMessage,
)

logger = get_logger("store")

OperationMutator = Callable[[Operation], "Operation | None"]
MessageMutator = Callable[[ScheduledMessage], "ScheduledMessage | None"]


SCHEMA = """
    CREATE TABLE IF NOT EXISTS operations (
        operation_id TEXT PRIMARY KEY,
        target_id TEXT NOT NULL,
        status TEXT NOT NULL,
        phase INTEGER NOT NULL,
        start_time REAL NOT NULL,
        record TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        operation_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        status TEXT NOT NULL,
        archived_at REAL NOT NULL,
        record TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS scheduled_messages (
        message_id TEXT PRIMARY KEY,
        operation_id TEXT NOT NULL,
        status TEXT NOT NULL,
        scheduled_at REAL NOT NULL,
        record TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS action_ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        operation_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        details TEXT NOT NULL,
        idempotency_key TEXT UNIQUE,
        created_at REAL NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_operations_active_target
        ON operations(target_id) WHERE status = 'active';
    CREATE INDEX IF NOT EXISTS idx_history_target ON history(target_id);
    CREATE INDEX IF NOT EXISTS idx_history_operation ON history(operation_id);
    CREATE INDEX IF NOT EXISTS idx_messages_status ON scheduled_messages(status, scheduled_at);
    CREATE INDEX IF NOT EXISTS idx_messages_operation ON scheduled_messages(operation_id);
    CREATE INDEX IF NOT EXISTS idx_ledger_operation ON action_ledger(operation_id)
"""


class CampaignStore:
    """Keyed, transactional store for campaign state."""

    def __init__(self, db: DatabaseBackend | None = None):
        self.db = db or SQLiteBackend(":memory:")
        with self._guard("create schema"):
            self.db.executescript(SCHEMA)

    # ─── Plumbing ────────────────────────────────────────────────────

    @contextmanager
    def _guard(self, what: str) -> Iterator[None]:
        """Translate driver errors into PersistenceError."""
        try:
            yield
        except PersistenceError:
            raise
        except self.db.integrity_errors as e:
            raise PersistenceError(f"{what}: constraint violated: {e}") from e
        except self.db.driver_errors as e:
            logger.error("Store failure during %s: %s", what, e)
            raise PersistenceError(f"{what}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group several store calls into one commit.

        Usage:
            with store.transaction():
                store.create_operation(op)
                store.create_messages(msgs)
        """
        with self._guard("transaction"):
            with self.db.transaction():
                yield

    @staticmethod
    def _dump(record: Any) -> str:
        return json.dumps(record.to_dict(), sort_keys=True)

    # ─── Operations ──────────────────────────────────────────────────

    def create_operation(self, op: Operation) -> None:
        try:
            with self._guard(f"create operation {op.operation_id}"):
                self.db.execute("""
                    INSERT INTO operations
                    (operation_id, target_id, status, phase, start_time, record)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    op.operation_id, op.target_id, op.status.value,
                    op.phase, op.start_time, self._dump(op),
                ))
        except PersistenceError as e:
            if isinstance(e.__cause__, self.db.integrity_errors):
                raise DuplicateActiveOperation(
                    f"target {op.target_id} already has an active operation"
                ) from e.__cause__
            raise

    def get_operation(self, operation_id: str) -> Operation | None:
        with self._guard(f"get operation {operation_id}"):
            row = self.db.fetchone(
                "SELECT record FROM operations WHERE operation_id = ?", (operation_id,)
            )
        return Operation.from_dict(json.loads(row["record"])) if row else None

    def list_active_by_target(self, target_id: str) -> list[Operation]:
        with self._guard(f"list operations for {target_id}"):
            rows = self.db.fetchall(
                "SELECT record FROM operations WHERE target_id = ? AND status = ? "
                "ORDER BY start_time",
                (target_id, OperationStatus.ACTIVE.value),
            )
        return [Operation.from_dict(json.loads(r["record"])) for r in rows]

    def list_active_operations(self) -> list[Operation]:
        with self._guard("list active operations"):
            rows = self.db.fetchall(
                "SELECT record FROM operations WHERE status = ? ORDER BY start_time",
                (OperationStatus.ACTIVE.value,),
            )
        return [Operation.from_dict(json.loads(r["record"])) for r in rows]

    def update_operation(self, operation_id: str, mutator: OperationMutator) -> Operation | None:
        """
        Atomically apply `mutator` to a fresh copy of the operation.

        Returns the stored result, or None when the operation does not
        exist. A mutator returning None aborts without writing and the
        unchanged record is returned.
        """
        with self._guard(f"update operation {operation_id}"):
            with self.db.transaction():
                row = self.db.fetchone(
                    "SELECT record FROM operations WHERE operation_id = ?", (operation_id,)
                )
                if row is None:
                    return None
                current = Operation.from_dict(json.loads(row["record"]))
                updated = mutator(Operation.from_dict(json.loads(row["record"])))
                if updated is None:
                    return current
                if updated.operation_id != operation_id:
                    raise ValueError("mutator must not change operation_id")
                self.db.execute("""
                    UPDATE operations
                    SET target_id = ?, status = ?, phase = ?, start_time = ?, record = ?
                    WHERE operation_id = ?
                """, (
                    updated.target_id, updated.status.value, updated.phase,
                    updated.start_time, self._dump(updated), operation_id,
                ))
                return updated

    def remove_operation(self, operation_id: str) -> bool:
        with self._guard(f"remove operation {operation_id}"):
            return self.db.execute(
                "DELETE FROM operations WHERE operation_id = ?", (operation_id,)
            ) > 0

    # ─── History ─────────────────────────────────────────────────────

    def archive_operation(self, op: Operation, archived_at: float | None = None) -> int:
        """
        Move a terminal operation to history in one transaction:
        delete it from the active table, append the snapshot, and purge
        every scheduled message it owns. Returns the purged message count.
        """
        if op.is_active:
            raise ValueError("only completed or cancelled operations can be archived")
        archived_at = time.time() if archived_at is None else archived_at
        with self._guard(f"archive operation {op.operation_id}"):
            with self.db.transaction():
                self.db.execute(
                    "DELETE FROM operations WHERE operation_id = ?", (op.operation_id,)
                )
                self.db.execute("""
                    INSERT INTO history
                    (operation_id, target_id, status, archived_at, record)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    op.operation_id, op.target_id, op.status.value,
                    archived_at, self._dump(op),
                ))
                return self.db.execute(
                    "DELETE FROM scheduled_messages WHERE operation_id = ?",
                    (op.operation_id,),
                )

    def get_history(self, operation_id: str) -> Operation | None:
        with self._guard(f"get history {operation_id}"):
            row = self.db.fetchone(
                "SELECT record FROM history WHERE operation_id = ? ORDER BY id DESC",
                (operation_id,),
            )
        return Operation.from_dict(json.loads(row["record"])) if row else None

    def list_history(self, target_id: str) -> list[Operation]:
        with self._guard(f"list history for {target_id}"):
            rows = self.db.fetchall(
                "SELECT record FROM history WHERE target_id = ? ORDER BY id",
                (target_id,),
            )
        return [Operation.from_dict(json.loads(r["record"])) for r in rows]

    # ─── Scheduled Messages ──────────────────────────────────────────

    def create_message(self, msg: ScheduledMessage) -> None:
        self.create_messages([msg])

    def create_messages(self, messages: list[ScheduledMessage]) -> None:
        if not messages:
            return
        with self._guard(f"create {len(messages)} messages"):
            with self.db.transaction():
                for msg in messages:
                    self.db.execute("""
                        INSERT INTO scheduled_messages
                        (message_id, operation_id, status, scheduled_at, record)
                        VALUES (?, ?, ?, ?, ?)
                    """, (
                        msg.message_id, msg.operation_id, msg.status.value,
                        msg.scheduled_at, self._dump(msg),
                    ))

    def get_message(self, message_id: str) -> ScheduledMessage | None:
        with self._guard(f"get message {message_id}"):
            row = self.db.fetchone(
                "SELECT record FROM scheduled_messages WHERE message_id = ?", (message_id,)
            )
        return ScheduledMessage.from_dict(json.loads(row["record"])) if row else None

    def list_messages(
        self,
        status: MessageStatus | None = None,
        operation_id: str | None = None,
        limit: int | None = None,
    ) -> list[ScheduledMessage]:
        query = "SELECT record FROM scheduled_messages WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if operation_id:
            query += " AND operation_id = ?"
            params.append(operation_id)
        query += " ORDER BY scheduled_at, message_id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._guard("list messages"):
            rows = self.db.fetchall(query, tuple(params))
        return [ScheduledMessage.from_dict(json.loads(r["record"])) for r in rows]

    def update_message(self, message_id: str, mutator: MessageMutator) -> ScheduledMessage | None:
        """Atomic read-modify-write of one message. Same contract as update_operation."""
        with self._guard(f"update message {message_id}"):
            with self.db.transaction():
                row = self.db.fetchone(
                    "SELECT record FROM scheduled_messages WHERE message_id = ?", (message_id,)
                )
                if row is None:
                    return None
                current = ScheduledMessage.from_dict(json.loads(row["record"]))
                updated = mutator(ScheduledMessage.from_dict(json.loads(row["record"])))
                if updated is None:
                    return current
                if updated.message_id != message_id:
                    raise ValueError("mutator must not change message_id")
                if updated.phase != current.phase:
                    raise ValueError("scheduled message phase is immutable")
                self.db.execute("""
                    UPDATE scheduled_messages
                    SET status = ?, scheduled_at = ?, record = ?
                    WHERE message_id = ?
                """, (
                    updated.status.value, updated.scheduled_at,
                    self._dump(updated), message_id,
                ))
                return updated

    def remove_message(self, message_id: str) -> bool:
        with self._guard(f"remove message {message_id}"):
            return self.db.execute(
                "DELETE FROM scheduled_messages WHERE message_id = ?", (message_id,)
            ) > 0

    def take_message(
        self,
        message_id: str,
        expected_status: MessageStatus,
    ) -> tuple[ScheduledMessage | None, bool]:
        """
        Delete a message only if it is currently in `expected_status`.

        Returns (message as last seen, removed). (None, False) means the
        message does not exist.
        """
        with self._guard(f"take message {message_id}"):
            with self.db.transaction():
                row = self.db.fetchone(
                    "SELECT record FROM scheduled_messages WHERE message_id = ?", (message_id,)
                )
                if row is None:
                    return None, False
                msg = ScheduledMessage.from_dict(json.loads(row["record"]))
                if msg.status != expected_status:
                    return msg, False
                self.db.execute(
                    "DELETE FROM scheduled_messages WHERE message_id = ?", (message_id,)
                )
                return msg, True

    def purge_messages(self, operation_id: str) -> int:
        with self._guard(f"purge messages for {operation_id}"):
            return self.db.execute(
                "DELETE FROM scheduled_messages WHERE operation_id = ?", (operation_id,)
            )

    # ─── Action Ledger ───────────────────────────────────────────────

    def log_action(
        self,
        operation_id: str,
        target_id: str,
        action_type: str,
        details: dict[str, Any],
        idempotency_key: str | None = None,
        now: float | None = None,
    ) -> bool:
        """
        Append to the ledger. Returns False if the idempotency key was
        already recorded.
        """
        try:
            with self._guard(f"log {action_type} for {operation_id}"):
                self.db.execute("""
                    INSERT INTO action_ledger
                    (operation_id, target_id, action_type, details,
                     idempotency_key, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    operation_id, target_id, action_type,
                    json.dumps(details, default=str),
                    idempotency_key, time.time() if now is None else now,
                ))
            return True
        except PersistenceError as e:
            if isinstance(e.__cause__, self.db.integrity_errors):
                return False
            raise

    def get_ledger(
        self,
        operation_id: str | None = None,
        target_id: str | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM action_ledger WHERE 1=1"
        params: list[Any] = []
        if operation_id:
            query += " AND operation_id = ?"
            params.append(operation_id)
        if target_id:
            query += " AND target_id = ?"
            params.append(target_id)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        with self._guard("read ledger"):
            rows = self.db.fetchall(query, tuple(params))
        return [
            {
                "id": r["id"],
                "operation_id": r["operation_id"],
                "target_id": r["target_id"],
                "action_type": r["action_type"],
                "details": json.loads(r["details"]),
                "idempotency_key": r["idempotency_key"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self._guard("stats"):
            ops = self.db.fetchall(
                "SELECT status, COUNT(*) AS cnt FROM operations GROUP BY status"
            )
            hist = self.db.fetchall(
                "SELECT status, COUNT(*) AS cnt FROM history GROUP BY status"
            )
            msgs = self.db.fetchall(
                "SELECT status, COUNT(*) AS cnt FROM scheduled_messages GROUP BY status"
            )
            ledger = self.db.fetchone("SELECT COUNT(*) AS cnt FROM action_ledger")
        return {
            "operations": {r["status"]: r["cnt"] for r in ops},
            "history": {r["status"]: r["cnt"] for r in hist},
            "messages": {r["status"]: r["cnt"] for r in msgs},
            "action_ledger_entries": ledger["cnt"] if ledger else 0,
        }

    def close(self) -> None:
        self.db.close()
