"""PostgreSQL implementation of the state store."""

from __future__ import annotations

import json
import uuid
from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import WorkflowDefinition
from .models import (
    TERMINAL_WORKFLOW_STATUSES,
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


def _loads(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresStateStore(StateStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                parent_id TEXT,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                definition JSONB NOT NULL,
                inputs JSONB NOT NULL,
                variables JSONB NOT NULL,
                outputs JSONB NOT NULL,
                error JSONB,
                compensation_log JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_states (
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL,
                completion_seq BIGINT,
                data JSONB NOT NULL,
                PRIMARY KEY (instance_id, step_id)
            )
            """
        )
        await conn.execute(
            "CREATE SEQUENCE IF NOT EXISTS step_completion_seq"
        )

    async def _load(self, conn: asyncpg.Connection, row: asyncpg.Record) -> WorkflowInstance:
        step_rows = await conn.fetch(
            "SELECT data FROM step_states WHERE instance_id = $1", row["id"]
        )
        steps = [StepState.model_validate(_loads(r["data"])) for r in step_rows]
        error = _loads(row["error"])
        return WorkflowInstance(
            id=row["id"],
            parent_id=row["parent_id"],
            status=WorkflowStatus(row["status"]),
            definition=WorkflowDefinition.model_validate(_loads(row["definition"])),
            inputs=_loads(row["inputs"]),
            variables=_loads(row["variables"]),
            outputs=_loads(row["outputs"]),
            error=WorkflowErrorInfo.model_validate(error) if error else None,
            compensation_log=[
                CompensationRecord.model_validate(item)
                for item in _loads(row["compensation_log"])
            ],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            steps={state.step_id: state for state in steps},
        )

    # ------------------------------------------------------------------
    async def create_instance(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, Any],
        *,
        instance_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> str:
        instance_id = instance_id or str(uuid.uuid4())
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO workflow_instances (definition_id, {_INSTANCE_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, '{}'::jsonb, '{}'::jsonb, NULL, '[]'::jsonb, $7, NULL, NULL)",
                    definition.id,
                    instance_id,
                    parent_id,
                    WorkflowStatus.CREATED.value,
                    definition.model_dump_json(by_alias=True),
                    json.dumps(inputs),
                    utcnow(),
                )
                await conn.executemany(
                    "INSERT INTO step_states (instance_id, step_id, status, data) VALUES ($1, $2, $3, $4::jsonb)",
                    [
                        (
                            instance_id,
                            step.id,
                            StepStatus.PENDING.value,
                            StepState(step_id=step.id).model_dump_json(),
                        )
                        for step in definition.top_level_steps()
                    ],
                )
        finally:
            await conn.close()
        return instance_id

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1",
                instance_id,
            )
            if not row:
                return None
            return await self._load(conn, row)
        finally:
            await conn.close()

    async def get_step(self, instance_id: str, step_id: str) -> StepState | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM step_states WHERE instance_id = $1 AND step_id = $2",
                instance_id,
                step_id,
            )
        finally:
            await conn.close()
        return StepState.model_validate(_loads(row["data"])) if row else None

    async def transition_step(
        self,
        instance_id: str,
        step_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        payload: Optional[StepUpdate] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.fetchval(
                    "SELECT status FROM workflow_instances WHERE id = $1 FOR SHARE",
                    instance_id,
                )
                if status is None or WorkflowStatus(status).is_terminal:
                    return False
                await conn.execute(
                    "INSERT INTO step_states (instance_id, step_id, status, data) "
                    "VALUES ($1, $2, $3, $4::jsonb) ON CONFLICT DO NOTHING",
                    instance_id,
                    step_id,
                    StepStatus.PENDING.value,
                    StepState(step_id=step_id).model_dump_json(),
                )
                row = await conn.fetchrow(
                    "SELECT data FROM step_states WHERE instance_id = $1 AND step_id = $2 FOR UPDATE",
                    instance_id,
                    step_id,
                )
                current = StepState.model_validate(_loads(row["data"]))
                if current.status != from_status:
                    return False
                seq = None
                if to_status == StepStatus.COMPLETED:
                    seq = await conn.fetchval("SELECT nextval('step_completion_seq')")
                state = apply_step_transition(current, to_status, payload, seq)
                updated = await conn.fetchval(
                    """
                    UPDATE step_states
                    SET status = $1, completion_seq = $2, data = $3::jsonb
                    WHERE instance_id = $4 AND step_id = $5 AND status = $6
                    RETURNING step_id
                    """,
                    to_status.value,
                    state.completion_seq,
                    state.model_dump_json(),
                    instance_id,
                    step_id,
                    from_status.value,
                )
                return updated is not None
        finally:
            await conn.close()

    async def transition_instance(
        self,
        instance_id: str,
        from_statuses: Iterable[WorkflowStatus],
        to_status: WorkflowStatus,
        payload: Optional[InstanceUpdate] = None,
    ) -> bool:
        allowed = [
            status.value
            for status in from_statuses
            if status not in TERMINAL_WORKFLOW_STATUSES
        ]
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1 FOR UPDATE",
                    instance_id,
                )
                if not row or row["status"] not in allowed:
                    return False
                instance = await self._load(conn, row)
                instance = instance.model_copy(
                    update=apply_instance_transition(instance, to_status, payload)
                )
                updated = await conn.fetchval(
                    """
                    UPDATE workflow_instances
                    SET status = $1, outputs = $2::jsonb, error = $3::jsonb,
                        started_at = $4, completed_at = $5
                    WHERE id = $6 AND status = ANY($7::text[])
                    RETURNING id
                    """,
                    to_status.value,
                    json.dumps(instance.outputs),
                    instance.error.model_dump_json() if instance.error else None,
                    instance.started_at,
                    instance.completed_at,
                    instance_id,
                    allowed,
                )
                return updated is not None
        finally:
            await conn.close()

    async def append_variable(self, instance_id: str, key: str, value: Any) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_instances SET variables = jsonb_set(variables, ARRAY[$1::text], $2::jsonb) WHERE id = $3",
                key,
                json.dumps(value),
                instance_id,
            )
        finally:
            await conn.close()

    async def append_compensation(
        self, instance_id: str, record: CompensationRecord
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_instances SET compensation_log = compensation_log || $1::jsonb WHERE id = $2",
                json.dumps([record.model_dump(mode="json")]),
                instance_id,
            )
        finally:
            await conn.close()

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE status = $1 ORDER BY created_at",
                    status.value,
                )
            return [await self._load(conn, row) for row in rows]
        finally:
            await conn.close()
