"""Persistent state management using SQLite."""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from .errors import ConflictError
from .models import (
    ActionSpec,
    ApprovalProcessDefinition,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStepDefinition,
    ApprovalStepInstance,
    AutomationDefinition,
    DefinitionKind,
    FieldType,
    StepStatus,
    WebformDefinition,
    WRITABLE_SYSTEM_FIELDS,
    new_id,
)


Definition = Union[AutomationDefinition, ApprovalProcessDefinition]


class StateManager:
    """Durable store for records, definitions, approvals and audit rows.

    All writes go through one connection guarded by ``_lock`` so that the
    conditional approval transition is atomic.
    """

    def __init__(self, db_path: str = "./data/recordflow.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                module_id TEXT NOT NULL,
                owner_id TEXT,
                title TEXT,
                status TEXT,
                stage TEXT,
                email TEXT,
                phone TEXT,
                tags_json TEXT DEFAULT '[]',
                data_json TEXT DEFAULT '{}',
                created_by TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                role TEXT,
                is_active INTEGER DEFAULT 1,
                manager_id TEXT,
                email TEXT,
                full_name TEXT
            );

            CREATE TABLE IF NOT EXISTS module_fields (
                module_id TEXT NOT NULL,
                field_name TEXT NOT NULL,
                field_type TEXT NOT NULL,
                PRIMARY KEY (module_id, field_name)
            );

            -- Workflows, macros and approval processes
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                module_id TEXT NOT NULL,
                is_enabled INTEGER DEFAULT 1,
                priority INTEGER DEFAULT 0,
                body_json TEXT NOT NULL,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS webforms (
                id TEXT PRIMARY KEY,
                module_id TEXT NOT NULL,
                body_json TEXT NOT NULL,
                submit_count INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                process_id TEXT NOT NULL,
                record_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                current_step_index INTEGER NOT NULL DEFAULT 0,
                steps_json TEXT NOT NULL,
                on_approve_json TEXT NOT NULL,
                on_reject_json TEXT NOT NULL,
                auto_approve_after_hours REAL,
                requested_by TEXT,
                created_at REAL NOT NULL,
                resolved_at REAL,
                resolved_by TEXT
            );

            CREATE TABLE IF NOT EXISTS approval_steps (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                request_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                approver_ids_json TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at REAL NOT NULL,
                decided_by TEXT,
                decided_at REAL,
                comment TEXT,
                delegated_to TEXT
            );

            -- Audit log of live executions
            CREATE TABLE IF NOT EXISTS automation_runs (
                id TEXT PRIMARY KEY,
                definition_id TEXT,
                source TEXT NOT NULL,
                record_id TEXT,
                event_id TEXT,
                status TEXT NOT NULL,
                outcomes_json TEXT,
                error TEXT,
                started_at REAL NOT NULL,
                duration_ms REAL,
                idempotency_key TEXT
            );

            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                title TEXT,
                body TEXT,
                record_id TEXT,
                created_at REAL NOT NULL,
                is_read INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS outbox (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                recipient TEXT NOT NULL,
                subject TEXT,
                body TEXT,
                record_id TEXT,
                created_at REAL NOT NULL,
                sent_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_records_module ON records(module_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);
            CREATE INDEX IF NOT EXISTS idx_definitions_module ON definitions(module_id, kind);
            CREATE INDEX IF NOT EXISTS idx_runs_definition ON automation_runs(definition_id);
            CREATE INDEX IF NOT EXISTS idx_runs_idempotency ON automation_runs(idempotency_key);
            CREATE INDEX IF NOT EXISTS idx_steps_request ON approval_steps(request_id, seq);
            CREATE UNIQUE INDEX IF NOT EXISTS uq_open_request
                ON approval_requests(process_id, record_id) WHERE status = 'pending';
            CREATE UNIQUE INDEX IF NOT EXISTS uq_pending_step
                ON approval_steps(request_id) WHERE status = 'pending';
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ==================== Records ====================

    @staticmethod
    def _split_fields(fields: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Separate system columns from free-form data."""
        system: dict[str, Any] = {}
        data: dict[str, Any] = {}
        for key, value in fields.items():
            if key in WRITABLE_SYSTEM_FIELDS:
                system[key] = value
            elif key == "data" and isinstance(value, dict):
                data.update(value)
            elif key in ("id", "module_id", "tags", "created_by", "created_at", "updated_at"):
                continue
            else:
                data[key] = value
        return system, data

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "module_id": row["module_id"],
            "owner_id": row["owner_id"],
            "title": row["title"],
            "status": row["status"],
            "stage": row["stage"],
            "email": row["email"],
            "phone": row["phone"],
            "tags": json.loads(row["tags_json"] or "[]"),
            "data": json.loads(row["data_json"] or "{}"),
            "created_by": row["created_by"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def create_record(
        self,
        module_id: str,
        fields: dict[str, Any],
        created_by: Optional[str] = None,
        record_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> dict[str, Any]:
        """Insert a record. Non-system keys are stored in the data blob."""
        system, data = self._split_fields(fields)
        now = now if now is not None else time.time()
        record_id = record_id or new_id()
        tags = list(fields.get("tags") or [])

        async with self._lock:
            await self._db.execute("""
                INSERT INTO records
                (id, module_id, owner_id, title, status, stage, email, phone,
                 tags_json, data_json, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record_id,
                module_id,
                system.get("owner_id", created_by),
                system.get("title"),
                system.get("status"),
                system.get("stage"),
                system.get("email"),
                system.get("phone"),
                json.dumps(tags),
                json.dumps(data),
                created_by,
                now,
                now,
            ))
            await self._db.commit()

        return await self.get_record(record_id)

    async def get_record(self, record_id: str) -> Optional[dict[str, Any]]:
        cursor = await self._db.execute(
            "SELECT * FROM records WHERE id = ?", (record_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def update_record(
        self,
        record_id: str,
        changes: dict[str, Any],
        now: Optional[float] = None,
    ) -> tuple[Optional[dict[str, Any]], list[str]]:
        """
        Apply field changes to a record.

        Returns the updated record and the list of keys written. Unknown
        keys are merged into the data blob.
        """
        system, data = self._split_fields(changes)
        now = now if now is not None else time.time()

        async with self._lock:
            cursor = await self._db.execute(
                "SELECT data_json FROM records WHERE id = ?", (record_id,)
            )
            row = await cursor.fetchone()
            if not row:
                return None, []

            merged = json.loads(row["data_json"] or "{}")
            merged.update(data)

            assignments = [f"{column} = ?" for column in system]
            params: list[Any] = list(system.values())
            assignments.extend(["data_json = ?", "updated_at = ?"])
            params.extend([json.dumps(merged), now, record_id])

            await self._db.execute(
                f"UPDATE records SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            await self._db.commit()

        return await self.get_record(record_id), list(system) + list(data)

    async def set_tags(
        self,
        record_id: str,
        tags: list[str],
        now: Optional[float] = None,
    ) -> Optional[dict[str, Any]]:
        async with self._lock:
            cursor = await self._db.execute(
                "UPDATE records SET tags_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(tags), now if now is not None else time.time(), record_id),
            )
            await self._db.commit()
            if cursor.rowcount == 0:
                return None
        return await self.get_record(record_id)

    async def list_records(self, module_id: str) -> list[dict[str, Any]]:
        cursor = await self._db.execute(
            "SELECT * FROM records WHERE module_id = ? ORDER BY created_at, rowid",
            (module_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def find_by_fields(
        self,
        module_id: str,
        field_values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """
        Find records whose fields all equal the given values.

        System columns are compared in SQL; data-blob fields are compared
        after decoding. Results are oldest first.
        """
        system, data = self._split_fields(field_values)
        clauses = ["module_id = ?"]
        params: list[Any] = [module_id]
        for column, value in system.items():
            clauses.append(f"{column} = ?")
            params.append(value)

        cursor = await self._db.execute(
            f"SELECT * FROM records WHERE {' AND '.join(clauses)} ORDER BY created_at, rowid",
            params,
        )
        rows = await cursor.fetchall()
        records = [self._row_to_record(row) for row in rows]
        return [
            r for r in records
            if all(r["data"].get(key) == value for key, value in data.items())
        ]

    # ==================== Directory ====================

    async def upsert_user(
        self,
        user_id: str,
        role: Optional[str] = None,
        is_active: bool = True,
        manager_id: Optional[str] = None,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> None:
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO users (id, role, is_active, manager_id, email, full_name)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, role, int(is_active), manager_id, email, full_name))
            await self._db.commit()

    async def get_user(self, user_id: str) -> Optional[dict[str, Any]]:
        cursor = await self._db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        user = dict(row)
        user["is_active"] = bool(user["is_active"])
        return user

    async def list_users_by_role(self, role: str, active_only: bool = True) -> list[str]:
        query = "SELECT id FROM users WHERE role = ?"
        if active_only:
            query += " AND is_active = 1"
        cursor = await self._db.execute(query + " ORDER BY id", (role,))
        rows = await cursor.fetchall()
        return [row["id"] for row in rows]

    # ==================== Module schema ====================

    async def set_field_types(self, module_id: str, field_types: dict[str, FieldType]) -> None:
        async with self._lock:
            await self._db.executemany(
                "INSERT OR REPLACE INTO module_fields (module_id, field_name, field_type) VALUES (?, ?, ?)",
                [(module_id, name, ftype.value) for name, ftype in field_types.items()],
            )
            await self._db.commit()

    async def get_field_types(self, module_id: str) -> dict[str, FieldType]:
        cursor = await self._db.execute(
            "SELECT field_name, field_type FROM module_fields WHERE module_id = ?",
            (module_id,),
        )
        rows = await cursor.fetchall()
        return {row["field_name"]: FieldType(row["field_type"]) for row in rows}

    # ==================== Definitions ====================

    async def save_definition(self, definition: Definition) -> None:
        """Insert or replace a workflow, macro or approval process."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO definitions
                (id, kind, module_id, is_enabled, priority, body_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                definition.id,
                definition.kind.value,
                definition.module_id,
                int(definition.is_enabled),
                definition.priority,
                json.dumps(definition.to_dict()),
                definition.created_at,
            ))
            await self._db.commit()

    @staticmethod
    def _row_to_definition(row: aiosqlite.Row) -> Definition:
        body = json.loads(row["body_json"])
        kind = DefinitionKind(row["kind"])
        if kind == DefinitionKind.APPROVAL_PROCESS:
            return ApprovalProcessDefinition.from_dict(body)
        return AutomationDefinition.from_dict(body, kind=kind)

    async def get_definition(self, definition_id: str) -> Optional[Definition]:
        cursor = await self._db.execute(
            "SELECT * FROM definitions WHERE id = ?", (definition_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_definition(row) if row else None

    async def list_definitions(
        self,
        module_id: Optional[str],
        kind: DefinitionKind,
        enabled_only: bool = False,
    ) -> list[Definition]:
        """List definitions of one kind, optionally for one module."""
        query = "SELECT * FROM definitions WHERE kind = ?"
        params: list[Any] = [kind.value]
        if module_id is not None:
            query += " AND module_id = ?"
            params.append(module_id)
        if enabled_only:
            query += " AND is_enabled = 1"
        cursor = await self._db.execute(query + " ORDER BY priority, created_at, id", params)
        rows = await cursor.fetchall()
        return [self._row_to_definition(row) for row in rows]

    async def save_webform(self, webform: WebformDefinition) -> None:
        async with self._lock:
            await self._db.execute("""
                INSERT INTO webforms (id, module_id, body_json) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET module_id = excluded.module_id,
                                              body_json = excluded.body_json
            """, (webform.id, webform.module_id, json.dumps(webform.to_dict())))
            await self._db.commit()

    async def get_webform(self, webform_id: str) -> Optional[WebformDefinition]:
        cursor = await self._db.execute(
            "SELECT body_json FROM webforms WHERE id = ?", (webform_id,)
        )
        row = await cursor.fetchone()
        return WebformDefinition.from_dict(json.loads(row["body_json"])) if row else None

    async def increment_submit_count(self, webform_id: str) -> int:
        async with self._lock:
            await self._db.execute(
                "UPDATE webforms SET submit_count = submit_count + 1 WHERE id = ?",
                (webform_id,),
            )
            await self._db.commit()
            cursor = await self._db.execute(
                "SELECT submit_count FROM webforms WHERE id = ?", (webform_id,)
            )
            row = await cursor.fetchone()
        return row["submit_count"] if row else 0

    # ==================== Approvals ====================

    @staticmethod
    def _row_to_request(row: aiosqlite.Row) -> ApprovalRequest:
        return ApprovalRequest(
            id=row["id"],
            process_id=row["process_id"],
            record_id=row["record_id"],
            module_id=row["module_id"],
            status=ApprovalStatus(row["status"]),
            current_step_index=row["current_step_index"],
            steps=[ApprovalStepDefinition.from_dict(s) for s in json.loads(row["steps_json"])],
            on_approve_actions=[ActionSpec.from_dict(a) for a in json.loads(row["on_approve_json"])],
            on_reject_actions=[ActionSpec.from_dict(a) for a in json.loads(row["on_reject_json"])],
            auto_approve_after_hours=row["auto_approve_after_hours"],
            requested_by=row["requested_by"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
        )

    @staticmethod
    def _row_to_step(row: aiosqlite.Row) -> ApprovalStepInstance:
        return ApprovalStepInstance(
            id=row["id"],
            request_id=row["request_id"],
            step_index=row["step_index"],
            resolved_approver_ids=json.loads(row["approver_ids_json"]),
            status=StepStatus(row["status"]),
            created_at=row["created_at"],
            decided_by=row["decided_by"],
            decided_at=row["decided_at"],
            comment=row["comment"],
            delegated_to=row["delegated_to"],
        )

    async def _insert_step(self, instance: ApprovalStepInstance) -> None:
        await self._db.execute("""
            INSERT INTO approval_steps
            (id, request_id, step_index, approver_ids_json, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            instance.id,
            instance.request_id,
            instance.step_index,
            json.dumps(instance.resolved_approver_ids),
            instance.status.value,
            instance.created_at,
        ))

    async def create_approval_request(
        self,
        request: ApprovalRequest,
        first_step: ApprovalStepInstance,
    ) -> None:
        """
        Persist a new request together with its first pending step.

        Raises ConflictError(already_open) if the record already has an
        open request for the same process.
        """
        async with self._lock:
            try:
                await self._db.execute("""
                    INSERT INTO approval_requests
                    (id, process_id, record_id, module_id, status, current_step_index,
                     steps_json, on_approve_json, on_reject_json, auto_approve_after_hours,
                     requested_by, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    request.id,
                    request.process_id,
                    request.record_id,
                    request.module_id,
                    request.status.value,
                    request.current_step_index,
                    json.dumps([s.to_dict() for s in request.steps]),
                    json.dumps([a.to_dict() for a in request.on_approve_actions]),
                    json.dumps([a.to_dict() for a in request.on_reject_actions]),
                    request.auto_approve_after_hours,
                    request.requested_by,
                    request.created_at,
                ))
                await self._insert_step(first_step)
                await self._db.commit()
            except aiosqlite.IntegrityError:
                await self._db.rollback()
                raise ConflictError(
                    ConflictError.ALREADY_OPEN,
                    f"Record {request.record_id} already has an open request for {request.process_id}",
                    request_id=request.id,
                )

    async def get_approval_request(self, request_id: str) -> Optional[ApprovalRequest]:
        cursor = await self._db.execute(
            "SELECT * FROM approval_requests WHERE id = ?", (request_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_request(row) if row else None

    async def find_open_request(self, process_id: str, record_id: str) -> Optional[ApprovalRequest]:
        cursor = await self._db.execute(
            "SELECT * FROM approval_requests WHERE process_id = ? AND record_id = ? AND status = 'pending'",
            (process_id, record_id),
        )
        row = await cursor.fetchone()
        return self._row_to_request(row) if row else None

    async def get_pending_step(self, request_id: str) -> Optional[ApprovalStepInstance]:
        cursor = await self._db.execute(
            "SELECT * FROM approval_steps WHERE request_id = ? AND status = 'pending'",
            (request_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_step(row) if row else None

    async def list_step_instances(self, request_id: str) -> list[ApprovalStepInstance]:
        cursor = await self._db.execute(
            "SELECT * FROM approval_steps WHERE request_id = ? ORDER BY seq",
            (request_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_step(row) for row in rows]

    async def list_pending_step_instances(self) -> list[ApprovalStepInstance]:
        cursor = await self._db.execute(
            "SELECT * FROM approval_steps WHERE status = 'pending' ORDER BY created_at, seq"
        )
        rows = await cursor.fetchall()
        return [self._row_to_step(row) for row in rows]

    async def transition_step(
        self,
        request_id: str,
        step_index: int,
        expected_status: StepStatus,
        new_status: StepStatus,
        *,
        instance_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        decided_at: Optional[float] = None,
        comment: Optional[str] = None,
        delegated_to: Optional[str] = None,
        request_status: ApprovalStatus = ApprovalStatus.PENDING,
        next_step_index: Optional[int] = None,
        next_instance: Optional[ApprovalStepInstance] = None,
    ) -> bool:
        """
        Conditionally move a step instance and its request in one transaction.

        The step must still be in ``expected_status`` and the request must
        still be pending at ``step_index``. When ``instance_id`` is given the
        step row must also be that instance, so a caller that authorized
        against an instance since replaced by delegation loses. Returns
        False, leaving the store unchanged, when any guard fails.
        """
        decided_at = decided_at if decided_at is not None else time.time()
        new_index = next_step_index if next_step_index is not None else step_index
        terminal = request_status.is_terminal

        step_query = """
            UPDATE approval_steps
            SET status = ?, decided_by = ?, decided_at = ?, comment = ?, delegated_to = ?
            WHERE request_id = ? AND step_index = ? AND status = ?
        """
        step_params: list[Any] = [
            new_status.value, actor_id, decided_at, comment, delegated_to,
            request_id, step_index, expected_status.value,
        ]
        if instance_id is not None:
            step_query += " AND id = ?"
            step_params.append(instance_id)

        async with self._lock:
            try:
                cursor = await self._db.execute(step_query, step_params)
                if cursor.rowcount == 0:
                    await self._db.rollback()
                    return False

                cursor = await self._db.execute("""
                    UPDATE approval_requests
                    SET status = ?, current_step_index = ?, resolved_at = ?, resolved_by = ?
                    WHERE id = ? AND status = 'pending' AND current_step_index = ?
                """, (
                    request_status.value,
                    new_index,
                    decided_at if terminal else None,
                    actor_id if terminal else None,
                    request_id,
                    step_index,
                ))
                if cursor.rowcount == 0:
                    await self._db.rollback()
                    return False

                if next_instance is not None:
                    await self._insert_step(next_instance)

                await self._db.commit()
                return True
            except aiosqlite.IntegrityError:
                await self._db.rollback()
                return False

    # ==================== Audit and side-effect outputs ====================

    async def record_run(
        self,
        run_id: str,
        definition_id: Optional[str],
        source: str,
        record_id: Optional[str],
        event_id: Optional[str],
        status: str,
        outcomes: list[dict[str, Any]],
        error: Optional[str],
        started_at: float,
        duration_ms: float,
        idempotency_key: Optional[str] = None,
    ) -> None:
        async with self._lock:
            await self._db.execute("""
                INSERT INTO automation_runs
                (id, definition_id, source, record_id, event_id, status,
                 outcomes_json, error, started_at, duration_ms, idempotency_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run_id, definition_id, source, record_id, event_id, status,
                json.dumps(outcomes, default=str), error, started_at, duration_ms,
                idempotency_key,
            ))
            await self._db.commit()

    async def has_run(self, idempotency_key: str) -> bool:
        """Whether a live run was already recorded under this key."""
        cursor = await self._db.execute(
            "SELECT 1 FROM automation_runs WHERE idempotency_key = ? LIMIT 1",
            (idempotency_key,),
        )
        return await cursor.fetchone() is not None

    async def list_runs(
        self,
        definition_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM automation_runs WHERE 1 = 1"
        params: list[Any] = []
        if definition_id is not None:
            query += " AND definition_id = ?"
            params.append(definition_id)
        if record_id is not None:
            query += " AND record_id = ?"
            params.append(record_id)
        cursor = await self._db.execute(query + " ORDER BY started_at, rowid", params)
        rows = await cursor.fetchall()
        runs = []
        for row in rows:
            run = dict(row)
            run["outcomes"] = json.loads(run.pop("outcomes_json") or "[]")
            runs.append(run)
        return runs

    async def add_notification(
        self,
        user_id: str,
        title: str,
        body: str = "",
        record_id: Optional[str] = None,
    ) -> int:
        async with self._lock:
            cursor = await self._db.execute("""
                INSERT INTO notifications (user_id, title, body, record_id, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, title, body, record_id, time.time()))
            await self._db.commit()
            return cursor.lastrowid

    async def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        cursor = await self._db.execute(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY id", (user_id,)
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def enqueue_outbox(
        self,
        recipient: str,
        subject: str,
        body: str = "",
        record_id: Optional[str] = None,
    ) -> int:
        async with self._lock:
            cursor = await self._db.execute("""
                INSERT INTO outbox (recipient, subject, body, record_id, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (recipient, subject, body, record_id, time.time()))
            await self._db.commit()
            return cursor.lastrowid

    async def list_outbox(self) -> list[dict[str, Any]]:
        cursor = await self._db.execute("SELECT * FROM outbox ORDER BY id")
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def table_counts(self) -> dict[str, int]:
        """Row counts of every mutable table."""
        counts = {}
        for table in (
            "records", "approval_requests", "approval_steps",
            "automation_runs", "notifications", "outbox",
        ):
            cursor = await self._db.execute(f"SELECT COUNT(*) AS n FROM {table}")
            row = await cursor.fetchone()
            counts[table] = row["n"]
        return counts
