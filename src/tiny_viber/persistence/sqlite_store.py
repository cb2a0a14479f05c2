import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from tiny_viber.domain.config_models import ConfigOverrides
from tiny_viber.domain.pipeline import MERGEABLE_FIELDS, PipelineRequest, can_transition
from tiny_viber.events.event_bus import EventBus, StatusEvent
from tiny_viber.observability.structured_log import log_json
from tiny_viber.util import redact_with_audit

logger = logging.getLogger(__name__)

EVENT_CREATED = "request.created"
EVENT_UPDATED = "request.updated"
EVENT_TRANSITION_REJECTED = "request.transition_rejected"
EVENT_REDACTION_APPLIED = "security.redaction.applied"

# Sections of the override document an operator may edit.
OVERRIDE_SECTIONS = ("rules", "skills", "productContext")


class SqliteStatusStore:
    """Live status documents for pipeline requests.

    Writes after creation are merge writes: only the named fields change and
    the status column only moves forward through the transition table.
    Every committed change is published on the event bus with the full
    document as JSON payload.
    """

    def __init__(self, db_path: Path, event_bus: Optional[EventBus] = None):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._event_bus = event_bus or EventBus()
        self._init_schema()

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_requests (
                    request_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    skill_id TEXT NOT NULL,
                    branch_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT,
                    pr_number INTEGER,
                    pr_url TEXT,
                    commit_sha TEXT,
                    files_changed_json TEXT,
                    checks_status TEXT,
                    preview_url TEXT,
                    deploy_status TEXT,
                    deploy_url TEXT,
                    deploy_is_production INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS request_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pipeline_requests_pr ON pipeline_requests(pr_number)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pipeline_requests_status ON pipeline_requests(status, updated_at)"
            )

    def create(self, request: PipelineRequest) -> PipelineRequest:
        redacted_prompt = redact_with_audit(request.prompt)
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_requests (
                    request_id, session_id, user_id, prompt, skill_id, branch_name, status,
                    error, pr_number, pr_url, commit_sha, files_changed_json, checks_status,
                    preview_url, deploy_status, deploy_url, deploy_is_production, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.session_id,
                    request.user_id,
                    redacted_prompt.text,
                    request.skill_id,
                    request.branch_name,
                    request.status,
                    request.error,
                    request.pr_number,
                    request.pr_url,
                    request.commit_sha,
                    _dump_files(request.files_changed),
                    request.checks_status,
                    request.preview_url,
                    request.deploy_status,
                    request.deploy_url,
                    _bool_to_db(request.deploy_is_production),
                    now,
                    now,
                ),
            )
            _append_event(conn, request.request_id, EVENT_CREATED, f"status={request.status}")
            if redacted_prompt.redacted:
                _append_redaction_audit(conn, request.request_id, "request.prompt", redacted_prompt.replacements)
        created = self.get(request.request_id)
        assert created is not None
        self._publish(created, EVENT_CREATED)
        return created

    def get(self, request_id: str) -> Optional[PipelineRequest]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM pipeline_requests WHERE request_id = ?", (request_id,)).fetchone()
        if not row:
            return None
        return _row_to_request(row)

    def merge(self, request_id: str, **fields: Any) -> Optional[PipelineRequest]:
        """Apply a partial update. Returns the updated document, or None if absent.

        Unknown fields raise ``ValueError``. A status that would move the
        state machine backwards is dropped (and logged); the remaining fields
        are still written.
        """
        unknown = sorted(set(fields) - MERGEABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be merged: {', '.join(unknown)}")

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status FROM pipeline_requests WHERE request_id = ?", (request_id,)).fetchone()
            if not row:
                return None
            updates = dict(fields)
            target = updates.get("status")
            if target is not None and not can_transition(row["status"], target):
                updates.pop("status")
                _append_event(conn, request_id, EVENT_TRANSITION_REJECTED, f"{row['status']}->{target}")
                log_json(
                    logger,
                    "status.transition_rejected",
                    level="warning",
                    request_id=request_id,
                    current=row["status"],
                    target=target,
                )
            columns: List[str] = []
            values: List[Any] = []
            for name, value in sorted(updates.items()):
                column, db_value = self._to_column(conn, request_id, name, value)
                columns.append(f"{column} = ?")
                values.append(db_value)
            columns.append("updated_at = ?")
            values.append(_utc_now())
            conn.execute(
                f"UPDATE pipeline_requests SET {', '.join(columns)} WHERE request_id = ?",
                (*values, request_id),
            )
            if updates:
                _append_event(conn, request_id, EVENT_UPDATED, ",".join(sorted(updates)))
        updated = self.get(request_id)
        if updated is not None and updates:
            self._publish(updated, EVENT_UPDATED)
        return updated

    def find_by_pr_number(self, pr_number: int) -> Optional[PipelineRequest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_requests WHERE pr_number = ? ORDER BY updated_at DESC LIMIT 1",
                (int(pr_number),),
            ).fetchone()
        if not row:
            return None
        return _row_to_request(row)

    def latest_with_status(
        self,
        status: str,
        without_deploy_status: Optional[str] = None,
    ) -> Optional[PipelineRequest]:
        query = "SELECT * FROM pipeline_requests WHERE status = ?"
        params: List[Any] = [status]
        if without_deploy_status is not None:
            query += " AND (deploy_status IS NULL OR deploy_status != ?)"
            params.append(without_deploy_status)
        query += " ORDER BY updated_at DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        if not row:
            return None
        return _row_to_request(row)

    def list_recent(self, limit: int = 20) -> List[PipelineRequest]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_requests ORDER BY created_at DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        return [_row_to_request(r) for r in rows]

    def list_events(self, request_id: str, limit: int = 200) -> List[StatusEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT request_id, event_type, payload, created_at
                FROM request_events
                WHERE request_id = ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (request_id, max(1, limit)),
            ).fetchall()
        return [
            StatusEvent(
                request_id=row["request_id"],
                event_type=row["event_type"],
                payload=row["payload"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def subscribe(self, request_id: str, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        return self._event_bus.subscribe_to(request_id, callback)

    def _to_column(self, conn: sqlite3.Connection, request_id: str, name: str, value: Any):
        if name == "files_changed":
            return "files_changed_json", _dump_files(value)
        if name == "deploy_is_production":
            return name, _bool_to_db(value)
        if name == "pr_number":
            return name, int(value) if value is not None else None
        if name == "error" and value is not None:
            redacted = redact_with_audit(str(value))
            if redacted.redacted:
                _append_redaction_audit(conn, request_id, "request.error", redacted.replacements)
            return name, redacted.text
        return name, value

    def _publish(self, request: PipelineRequest, event_type: str) -> None:
        self._event_bus.publish(
            request.request_id,
            event_type,
            json.dumps(request.to_dict(), sort_keys=True),
        )


class SqliteConfigOverrideStore:
    """Key-value store of configuration override documents (camelCase JSON)."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS config_overrides (
                    key TEXT PRIMARY KEY,
                    document_json TEXT NOT NULL,
                    updated_by TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def get(self, key: str = "current") -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT document_json FROM config_overrides WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row["document_json"] or "{}")

    def save(self, key: str, overrides: Mapping[str, Any], updated_by: str) -> Dict[str, Any]:
        """Shallow-merge the editable sections into the stored document.

        Raises ``ValueError`` when the sections do not validate.
        """
        patch = ConfigOverrides.model_validate(dict(overrides)).model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"updated_by"},
        )
        now = _utc_now()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT document_json FROM config_overrides WHERE key = ?", (key,)).fetchone()
            document: Dict[str, Any] = json.loads(row["document_json"]) if row else {}
            for section in OVERRIDE_SECTIONS:
                if section in patch:
                    document[section] = patch[section]
            document["updatedAt"] = now
            document["updatedBy"] = updated_by
            conn.execute(
                """
                INSERT INTO config_overrides (key, document_json, updated_by, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    document_json = excluded.document_json,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(document, sort_keys=True), updated_by, now),
            )
        log_json(logger, "config.override_saved", key=key, updated_by=updated_by, sections=sorted(patch))
        return document


def _dump_files(files: Optional[List[str]]) -> Optional[str]:
    if files is None:
        return None
    return json.dumps(list(files))


def _bool_to_db(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


def _row_to_request(row: sqlite3.Row) -> PipelineRequest:
    files_raw = row["files_changed_json"]
    production = row["deploy_is_production"]
    return PipelineRequest(
        request_id=row["request_id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        prompt=row["prompt"],
        skill_id=row["skill_id"],
        branch_name=row["branch_name"],
        status=row["status"],
        error=row["error"],
        pr_number=row["pr_number"],
        pr_url=row["pr_url"],
        commit_sha=row["commit_sha"],
        files_changed=json.loads(files_raw) if files_raw is not None else None,
        checks_status=row["checks_status"],
        preview_url=row["preview_url"],
        deploy_status=row["deploy_status"],
        deploy_url=row["deploy_url"],
        deploy_is_production=bool(production) if production is not None else None,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _append_event(conn: sqlite3.Connection, request_id: str, event_type: str, payload: str) -> None:
    conn.execute(
        """
        INSERT INTO request_events (request_id, event_type, payload, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (request_id, event_type, payload, _utc_now()),
    )


def _append_redaction_audit(conn: sqlite3.Connection, request_id: str, context: str, replacements: int) -> None:
    _append_event(
        conn,
        request_id,
        EVENT_REDACTION_APPLIED,
        f"context={context}, replacements={replacements}",
    )
