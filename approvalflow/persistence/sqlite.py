"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from ..exceptions import (
    ConcurrentModification,
    DefinitionAlreadyExists,
    DefinitionNotFound,
    DuplicateBusinessKey,
    InstanceNotFound,
    StepExecutionNotFound,
)
from ..models import (
    ACTIVE_STEP_STATUSES,
    LIVE_WORKFLOW_STATUSES,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from .repository import WorkflowRepository

_LIVE = ", ".join(f"'{s.value}'" for s in sorted(LIVE_WORKFLOW_STATUSES))
_ACTIVE_STEPS = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STEP_STATUSES))


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist definitions, instances and step executions using SQLite.

    Queried fields live in their own columns; the full record is stored as
    JSON in ``data``. Every write of an instance or execution is a
    compare-and-swap on the ``version`` column.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version INTEGER NOT NULL,
                category TEXT,
                is_active INTEGER NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (name, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                workflow_definition_id TEXT NOT NULL,
                business_key TEXT,
                status TEXT NOT NULL,
                timeout_at TEXT,
                created_at TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_instances_live_business_key
            ON workflow_instances (business_key)
            WHERE business_key IS NOT NULL AND status IN ({_LIVE})
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id TEXT PRIMARY KEY,
                workflow_instance_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                timeout_at TEXT,
                resume_at TEXT,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (workflow_instance_id, step_order)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _compare_and_swap(
        self, table: str, record_id: str, expected: int, columns: dict[str, Any]
    ) -> int:
        """Update ``table`` only if the stored version matches; return rows changed."""
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"UPDATE {table} SET {assignments}, version = ? WHERE id = ? AND version = ?",
                (*columns.values(), expected + 1, record_id, expected),
            )
            self._conn.commit()
            return cur.rowcount

    # ------------------------------------------------------------------
    # Definitions
    def _insert_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO workflow_definitions (id, name, version, category, is_active, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        definition.id,
                        definition.name,
                        definition.version,
                        definition.category,
                        int(definition.is_active),
                        definition.model_dump_json(),
                    ),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise DefinitionAlreadyExists(
                    f"Workflow definition {definition.name} v{definition.version} already exists"
                ) from exc

    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        await asyncio.to_thread(self._insert_definition, definition)
        return definition

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_definitions WHERE id = ?",
            definition_id,
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def get_definition_version(
        self, name: str, version: int
    ) -> Optional[WorkflowDefinition]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_definitions WHERE name = ? AND version = ?",
            name,
            version,
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def get_latest_definition(self, name: str) -> Optional[WorkflowDefinition]:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT data FROM workflow_definitions
            WHERE name = ? AND is_active = 1
            ORDER BY version DESC LIMIT 1
            """,
            name,
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def list_definitions(
        self, active_only: bool = False, category: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        query = "SELECT data FROM workflow_definitions WHERE 1 = 1"
        params: list[Any] = []
        if active_only:
            query += " AND is_active = 1"
        if category is not None:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY name, version"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    def _update_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM workflow_definitions WHERE id = ?", (definition.id,)
            ).fetchone()
            if row is None:
                raise DefinitionNotFound(f"Workflow definition {definition.id} not found")
            stored = WorkflowDefinition.model_validate_json(row["data"])
            # steps are immutable once stored
            updated = definition.model_copy(update={"steps": stored.steps})
            self._conn.execute(
                """
                UPDATE workflow_definitions
                SET category = ?, is_active = ?, data = ?
                WHERE id = ?
                """,
                (
                    updated.category,
                    int(updated.is_active),
                    updated.model_dump_json(),
                    updated.id,
                ),
            )
            self._conn.commit()

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        definition.updated_at = utcnow()
        await asyncio.to_thread(self._update_definition, definition)
        return definition

    # ------------------------------------------------------------------
    # Instances
    def _insert_instance(
        self, instance: WorkflowInstance, executions: list[StepExecution]
    ) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                if instance.business_key:
                    existing = cur.execute(
                        f"""
                        SELECT id FROM workflow_instances
                        WHERE business_key = ? AND status IN ({_LIVE})
                        """,
                        (instance.business_key,),
                    ).fetchone()
                    if existing:
                        raise DuplicateBusinessKey(instance.business_key, existing["id"])
                cur.execute(
                    """
                    INSERT INTO workflow_instances
                        (id, workflow_definition_id, business_key, status, timeout_at,
                         created_at, version, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        instance.id,
                        instance.workflow_definition_id,
                        instance.business_key,
                        instance.status.value,
                        _ts(instance.timeout_at),
                        _ts(instance.created_at),
                        instance.version,
                        instance.model_dump_json(),
                    ),
                )
                cur.executemany(
                    """
                    INSERT INTO step_executions
                        (id, workflow_instance_id, step_order, step_type, status,
                         timeout_at, resume_at, version, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            e.id,
                            e.workflow_instance_id,
                            e.step_order,
                            e.step_type.value,
                            e.status.value,
                            _ts(e.timeout_at),
                            _ts(e.resume_at),
                            e.version,
                            e.model_dump_json(),
                        )
                        for e in executions
                    ],
                )
                cur.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                cur.execute("ROLLBACK")
                raise DuplicateBusinessKey(instance.business_key or "") from exc
            except BaseException:
                cur.execute("ROLLBACK")
                raise

    async def create_instance(
        self, instance: WorkflowInstance, executions: list[StepExecution]
    ) -> WorkflowInstance:
        await asyncio.to_thread(self._insert_instance, instance, executions)
        return instance

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflow_instances WHERE id = ?", instance_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT data FROM workflow_instances ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM workflow_instances WHERE status = ? ORDER BY created_at",
                WorkflowStatus(status).value,
            )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def find_instance_by_business_key(
        self, business_key: str, statuses: Iterable[WorkflowStatus]
    ) -> Optional[WorkflowInstance]:
        wanted = [WorkflowStatus(s).value for s in statuses]
        if not wanted:
            return None
        placeholders = ", ".join("?" for _ in wanted)
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT data FROM workflow_instances
            WHERE business_key = ? AND status IN ({placeholders})
            ORDER BY created_at DESC LIMIT 1
            """,
            business_key,
            *wanted,
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        expected = instance.version
        stamped = instance.model_copy(
            update={"version": expected + 1, "updated_at": utcnow()}
        )
        changed = await asyncio.to_thread(
            self._compare_and_swap,
            "workflow_instances",
            instance.id,
            expected,
            {
                "status": stamped.status.value,
                "timeout_at": _ts(stamped.timeout_at),
                "data": stamped.model_dump_json(),
            },
        )
        if not changed:
            await self._raise_stale(
                "workflow_instances", InstanceNotFound, "Workflow instance", instance.id, expected
            )
        instance.version = stamped.version
        instance.updated_at = stamped.updated_at
        return instance

    # ------------------------------------------------------------------
    # Step executions
    async def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM step_executions WHERE id = ?", execution_id
        )
        return StepExecution.model_validate_json(row["data"]) if row else None

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM step_executions WHERE workflow_instance_id = ? ORDER BY step_order",
            instance_id,
        )
        return [StepExecution.model_validate_json(r["data"]) for r in rows]

    async def save_execution(self, execution: StepExecution) -> StepExecution:
        expected = execution.version
        stamped = execution.model_copy(
            update={"version": expected + 1, "updated_at": utcnow()}
        )
        changed = await asyncio.to_thread(
            self._compare_and_swap,
            "step_executions",
            execution.id,
            expected,
            {
                "status": stamped.status.value,
                "timeout_at": _ts(stamped.timeout_at),
                "resume_at": _ts(stamped.resume_at),
                "data": stamped.model_dump_json(),
            },
        )
        if not changed:
            await self._raise_stale(
                "step_executions", StepExecutionNotFound, "Step execution", execution.id, expected
            )
        execution.version = stamped.version
        execution.updated_at = stamped.updated_at
        return execution

    async def next_pending_execution(
        self, instance_id: str, min_order: Optional[int] = None
    ) -> Optional[StepExecution]:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT data FROM step_executions
            WHERE workflow_instance_id = ? AND status = ? AND step_order >= ?
            ORDER BY step_order LIMIT 1
            """,
            instance_id,
            StepStatus.PENDING.value,
            min_order if min_order is not None else 0,
        )
        return StepExecution.model_validate_json(row["data"]) if row else None

    async def active_execution(self, instance_id: str) -> Optional[StepExecution]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT data FROM step_executions
            WHERE workflow_instance_id = ? AND status IN ({_ACTIVE_STEPS})
            ORDER BY step_order LIMIT 1
            """,
            instance_id,
        )
        return StepExecution.model_validate_json(row["data"]) if row else None

    async def list_expired_instances(self, now: datetime) -> list[WorkflowInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT data FROM workflow_instances
            WHERE status IN (?, ?) AND timeout_at IS NOT NULL AND timeout_at < ?
            """,
            WorkflowStatus.RUNNING.value,
            WorkflowStatus.WAITING.value,
            _ts(now),
        )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def list_expired_executions(self, now: datetime) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT data FROM step_executions
            WHERE status IN ({_ACTIVE_STEPS}) AND timeout_at IS NOT NULL AND timeout_at < ?
            """,
            _ts(now),
        )
        return [StepExecution.model_validate_json(r["data"]) for r in rows]

    async def list_due_wait_executions(self, now: datetime) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT data FROM step_executions
            WHERE step_type = ? AND status = ? AND resume_at IS NOT NULL AND resume_at <= ?
            """,
            StepType.WAIT.value,
            StepStatus.WAITING_APPROVAL.value,
            _ts(now),
        )
        return [StepExecution.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def _raise_stale(
        self, table: str, missing: type[Exception], label: str, record_id: str, expected: int
    ) -> None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT version FROM {table} WHERE id = ?", record_id
        )
        if row is None:
            raise missing(f"{label} {record_id} not found")
        raise ConcurrentModification(
            f"{label} {record_id} was modified concurrently "
            f"(expected version {expected}, found {row['version']})"
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
