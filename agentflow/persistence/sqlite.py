"""SQLite implementation of the state store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import WorkflowDefinition
from .models import (
    CompensationRecord,
    InstanceUpdate,
    StepState,
    StepStatus,
    StepUpdate,
    WorkflowErrorInfo,
    WorkflowInstance,
    WorkflowStatus,
    apply_instance_transition,
    apply_step_transition,
    utcnow,
)
from .store import StateStore

_INSTANCE_COLUMNS = (
    "id, parent_id, status, definition, inputs, variables, outputs, error, "
    "compensation_log, created_at, started_at, completed_at"
)


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStateStore(StateStore):
    """Persist workflow state using SQLite.

    Statements run in a worker thread through ``asyncio.to_thread``; a
    thread lock serialises read-modify-write sequences so that every
    transition is an atomic compare-and-swap.
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
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                parent_id TEXT,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                definition TEXT NOT NULL,
                inputs TEXT NOT NULL,
                variables TEXT NOT NULL,
                outputs TEXT NOT NULL,
                error TEXT,
                compensation_log TEXT NOT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_states (
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL,
                completion_seq INTEGER,
                data TEXT NOT NULL,
                PRIMARY KEY (instance_id, step_id)
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

    def _row_to_instance(self, row: sqlite3.Row) -> WorkflowInstance:
        step_rows = self._conn.execute(
            "SELECT data FROM step_states WHERE instance_id = ?", (row["id"],)
        ).fetchall()
        steps = [StepState.model_validate_json(r["data"]) for r in step_rows]
        return WorkflowInstance(
            id=row["id"],
            parent_id=row["parent_id"],
            status=WorkflowStatus(row["status"]),
            definition=WorkflowDefinition.model_validate_json(row["definition"]),
            inputs=json.loads(row["inputs"]),
            variables=json.loads(row["variables"]),
            outputs=json.loads(row["outputs"]),
            error=WorkflowErrorInfo.model_validate_json(row["error"]) if row["error"] else None,
            compensation_log=[
                CompensationRecord.model_validate(item)
                for item in json.loads(row["compensation_log"])
            ],
            created_at=_parse_timestamp(row["created_at"]),
            started_at=_parse_timestamp(row["started_at"]),
            completed_at=_parse_timestamp(row["completed_at"]),
            steps={state.step_id: state for state in steps},
        )

    def _is_frozen(self, instance_id: str) -> bool:
        row = self._conn.execute(
            "SELECT status FROM workflow_instances WHERE id = ?", (instance_id,)
        ).fetchone()
        return row is None or WorkflowStatus(row["status"]).is_terminal

    # ------------------------------------------------------------------
    # Synchronous operations executed in a worker thread
    def _create(self, instance: WorkflowInstance) -> None:
        with self._lock:
            self._conn.execute(
                f"INSERT INTO workflow_instances (definition_id, {_INSTANCE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    instance.definition_id,
                    instance.id,
                    instance.parent_id,
                    instance.status.value,
                    instance.definition.model_dump_json(by_alias=True),
                    json.dumps(instance.inputs),
                    json.dumps(instance.variables),
                    json.dumps(instance.outputs),
                    None,
                    "[]",
                    _timestamp(instance.created_at),
                    None,
                    None,
                ),
            )
            self._conn.executemany(
                "INSERT INTO step_states (instance_id, step_id, status, data) VALUES (?, ?, ?, ?)",
                [
                    (instance.id, state.step_id, state.status.value, state.model_dump_json())
                    for state in instance.steps.values()
                ],
            )
            self._conn.commit()

    def _get(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?",
                (instance_id,),
            ).fetchone()
            return self._row_to_instance(row) if row else None

    def _list(self, status: Optional[WorkflowStatus]) -> list[WorkflowInstance]:
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY created_at"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
            return [self._row_to_instance(row) for row in rows]

    def _transition_step(
        self,
        instance_id: str,
        step_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        payload: Optional[StepUpdate],
    ) -> bool:
        with self._lock:
            if self._is_frozen(instance_id):
                return False
            row = self._conn.execute(
                "SELECT data FROM step_states WHERE instance_id = ? AND step_id = ?",
                (instance_id, step_id),
            ).fetchone()
            current = (
                StepState.model_validate_json(row["data"])
                if row
                else StepState(step_id=step_id)
            )
            if current.status != from_status:
                return False

            seq = None
            if to_status == StepStatus.COMPLETED:
                seq = self._conn.execute(
                    "SELECT COALESCE(MAX(completion_seq), 0) + 1 AS seq FROM step_states"
                ).fetchone()["seq"]
            state = apply_step_transition(current, to_status, payload, seq)
            cur = self._conn.execute(
                """
                INSERT INTO step_states (instance_id, step_id, status, completion_seq, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (instance_id, step_id) DO UPDATE
                SET status = excluded.status,
                    completion_seq = excluded.completion_seq,
                    data = excluded.data
                WHERE step_states.status = ?
                """,
                (
                    instance_id,
                    step_id,
                    to_status.value,
                    state.completion_seq,
                    state.model_dump_json(),
                    from_status.value,
                ),
            )
            self._conn.commit()
            return cur.rowcount == 1

    def _transition_instance(
        self,
        instance_id: str,
        from_statuses: list[WorkflowStatus],
        to_status: WorkflowStatus,
        payload: Optional[InstanceUpdate],
    ) -> bool:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?",
                (instance_id,),
            ).fetchone()
            if not row:
                return False
            current = WorkflowStatus(row["status"])
            if current.is_terminal or current not in from_statuses:
                return False
            instance = self._row_to_instance(row)
            update = apply_instance_transition(instance, to_status, payload)
            instance = instance.model_copy(update=update)
            cur = self._conn.execute(
                """
                UPDATE workflow_instances
                SET status = ?, outputs = ?, error = ?, started_at = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    to_status.value,
                    json.dumps(instance.outputs),
                    instance.error.model_dump_json() if instance.error else None,
                    _timestamp(instance.started_at),
                    _timestamp(instance.completed_at),
                    instance_id,
                    current.value,
                ),
            )
            self._conn.commit()
            return cur.rowcount == 1

    def _update_json_column(self, instance_id: str, column: str, change) -> None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {column} FROM workflow_instances WHERE id = ?", (instance_id,)
            ).fetchone()
            if not row:
                return
            value = change(json.loads(row[column]))
            self._conn.execute(
                f"UPDATE workflow_instances SET {column} = ? WHERE id = ?",
                (json.dumps(value), instance_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Store API
    async def create_instance(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, Any],
        *,
        instance_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> str:
        instance = WorkflowInstance(
            id=instance_id or str(uuid.uuid4()),
            definition=definition,
            inputs=inputs,
            parent_id=parent_id,
            created_at=utcnow(),
            steps={
                step.id: StepState(step_id=step.id)
                for step in definition.top_level_steps()
            },
        )
        await asyncio.to_thread(self._create, instance)
        return instance.id

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        return await asyncio.to_thread(self._get, instance_id)

    async def get_step(self, instance_id: str, step_id: str) -> StepState | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM step_states WHERE instance_id = ? AND step_id = ?",
            instance_id,
            step_id,
        )
        return StepState.model_validate_json(row["data"]) if row else None

    async def transition_step(
        self,
        instance_id: str,
        step_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        payload: Optional[StepUpdate] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._transition_step, instance_id, step_id, from_status, to_status, payload
        )

    async def transition_instance(
        self,
        instance_id: str,
        from_statuses: Iterable[WorkflowStatus],
        to_status: WorkflowStatus,
        payload: Optional[InstanceUpdate] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._transition_instance, instance_id, list(from_statuses), to_status, payload
        )

    async def append_variable(self, instance_id: str, key: str, value: Any) -> None:
        def change(variables: dict) -> dict:
            variables[key] = value
            return variables

        await asyncio.to_thread(self._update_json_column, instance_id, "variables", change)

    async def append_compensation(
        self, instance_id: str, record: CompensationRecord
    ) -> None:
        entry = record.model_dump(mode="json")
        await asyncio.to_thread(
            self._update_json_column,
            instance_id,
            "compensation_log",
            lambda log: log + [entry],
        )

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        return await asyncio.to_thread(self._list, status)

    def close(self) -> None:
        self._conn.close()
