"""Fingerprint-keyed deduplication of structured log events into counted issues."""
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import closing
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel, Field, field_validator

from .models import LogEvent, LogIssue, LogSeverity, LogStatus, utcnow

logger = logging.getLogger(__name__)

MAX_TAGS = 16
LOCK_STRIPES = 64
CRITICAL_SEVERITIES = (LogSeverity.WARNING, LogSeverity.ERROR)

_T = TypeVar("_T")

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS log_issues (
    id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL UNIQUE,
    severity TEXT NOT NULL,
    service TEXT NOT NULL,
    message TEXT NOT NULL,
    description TEXT NOT NULL,
    tags TEXT NOT NULL,
    status TEXT NOT NULL,
    occurrences INTEGER NOT NULL,
    affected_users INTEGER,
    recommended_action TEXT,
    metadata TEXT NOT NULL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_log_issues_last_seen
    ON log_issues (last_seen DESC, occurrences DESC);
"""

_COLUMNS = (
    "id, fingerprint, severity, service, message, description, tags, status, "
    "occurrences, affected_users, recommended_action, metadata, first_seen, last_seen"
)


class LogStoreError(RuntimeError):
    """Raised when the log store cannot complete an operation."""


class LogIssueNotFoundError(LogStoreError):
    """Raised when an issue id does not exist."""


# ---------------------------------------------------------------------------
# Boundary validation
# ---------------------------------------------------------------------------


class LogEventPayload(BaseModel):
    """Validated shape of an inbound log event."""

    severity: LogSeverity = LogSeverity.ERROR
    service: str = "application"
    message: str = "(empty message)"
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: Optional[LogStatus] = None
    occurrences: Optional[int] = None
    affected_users: Optional[int] = None
    recommended_action: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _alias_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return {"warn": "warning", "err": "error", "critical": "error"}.get(lowered, lowered)
        return value

    @field_validator("service", mode="before")
    @classmethod
    def _default_service(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or "application"

    @field_validator("message", mode="before")
    @classmethod
    def _default_message(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or "(empty message)"

    @field_validator("description", "recommended_action", "fingerprint", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> List[str]:
        if not isinstance(value, (list, tuple, set, frozenset)):
            return []
        return merge_tags([], [str(tag) for tag in value if isinstance(tag, str)])

    @field_validator("occurrences", mode="before")
    @classmethod
    def _positive_occurrences(cls, value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            count = int(value)
        except (TypeError, ValueError):
            return 1
        return count if count >= 1 else 1

    def to_event(self, now: Optional[datetime] = None) -> LogEvent:
        timestamp = self.timestamp or now or utcnow()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return LogEvent(
            severity=self.severity,
            service=self.service,
            message=self.message,
            timestamp=timestamp.astimezone(timezone.utc),
            description=self.description,
            tags=list(self.tags),
            status=self.status,
            occurrences=self.occurrences,
            affected_users=self.affected_users,
            recommended_action=self.recommended_action,
            metadata=dict(self.metadata),
            fingerprint=self.fingerprint,
        )


class StatusUpdate(BaseModel):
    issue_id: str = Field(min_length=1)
    status: LogStatus


def parse_log_event(data: Mapping[str, Any], now: Optional[datetime] = None) -> LogEvent:
    """Validate a raw mapping (e.g. decoded JSON) into a :class:`LogEvent`."""

    return LogEventPayload.model_validate(dict(data)).to_event(now)


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


def fingerprint_for(severity: Union[LogSeverity, str], service: str, message: str) -> str:
    severity_value = severity.value if isinstance(severity, LogSeverity) else str(severity)
    source = f"{severity_value}|{service.strip()}|{message.strip()}"
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


def event_fingerprint(event: LogEvent) -> str:
    if event.fingerprint:
        return hashlib.sha256(event.fingerprint.encode("utf-8")).hexdigest()
    return fingerprint_for(event.severity, event.service, event.message)


def merge_tags(existing: Iterable[str], incoming: Iterable[str]) -> List[str]:
    merged: List[str] = []
    for tag in [*existing, *incoming]:
        cleaned = tag.strip()
        if cleaned and cleaned not in merged:
            merged.append(cleaned)
    return merged[:MAX_TAGS]


def new_issue(event: LogEvent, fingerprint: str) -> LogIssue:
    return LogIssue(
        id=uuid.uuid4().hex,
        fingerprint=fingerprint,
        severity=event.severity,
        service=event.service,
        message=event.message,
        description=event.description or event.message,
        tags=merge_tags([], event.tags),
        status=event.status or LogStatus.OPEN,
        occurrences=event.occurrences or 1,
        first_seen=event.timestamp,
        last_seen=event.timestamp,
        affected_users=event.affected_users,
        recommended_action=event.recommended_action,
        metadata=dict(event.metadata),
    )


def merge_issue(existing: LogIssue, event: LogEvent) -> LogIssue:
    """Fold a repeat occurrence into an existing issue.

    Severity, description and status follow the latest observation,
    occurrences accumulate, tags union, optional fields only overwrite when
    supplied, metadata is shallow-merged and ``last_seen`` never moves back.
    """

    if event.timestamp < existing.last_seen:
        logger.debug(
            "Clamping out-of-order event for issue %s (%s < %s)",
            existing.id,
            event.timestamp.isoformat(),
            existing.last_seen.isoformat(),
        )
    return replace(
        existing,
        severity=event.severity,
        service=event.service,
        message=event.message,
        description=event.description or event.message,
        status=event.status or existing.status,
        occurrences=existing.occurrences + (event.occurrences or 1),
        tags=merge_tags(existing.tags, event.tags),
        recommended_action=(
            event.recommended_action
            if event.recommended_action is not None
            else existing.recommended_action
        ),
        affected_users=(
            event.affected_users if event.affected_users is not None else existing.affected_users
        ),
        metadata={**existing.metadata, **event.metadata},
        last_seen=max(existing.last_seen, event.timestamp),
    )


def _db_time(value: datetime) -> str:
    # Fixed-width so lexical order matches chronological order.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _row_to_issue(row: Sequence[Any]) -> LogIssue:
    return LogIssue(
        id=row[0],
        fingerprint=row[1],
        severity=LogSeverity(row[2]),
        service=row[3],
        message=row[4],
        description=row[5],
        tags=json.loads(row[6]) if row[6] else [],
        status=LogStatus(row[7]),
        occurrences=int(row[8]),
        affected_users=row[9],
        recommended_action=row[10],
        metadata=json.loads(row[11]) if row[11] else {},
        first_seen=datetime.fromisoformat(row[12]),
        last_seen=datetime.fromisoformat(row[13]),
    )


def _issue_params(issue: LogIssue) -> tuple:
    return (
        issue.fingerprint,
        issue.severity.value,
        issue.service,
        issue.message,
        issue.description,
        json.dumps(issue.tags),
        issue.status.value,
        issue.occurrences,
        issue.affected_users,
        issue.recommended_action,
        json.dumps(issue.metadata, default=str),
        _db_time(issue.first_seen),
        _db_time(issue.last_seen),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class LogIssueStore:
    """SQLite-backed arena of log issues keyed by fingerprint."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        retry_attempts: int = 3,
        retry_delay: float = 0.05,
        busy_timeout: float = 1.0,
    ) -> None:
        self.db_path = db_path or Path("analytics_logs.db")
        self._clock = clock
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay
        self._busy_timeout = busy_timeout
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self._busy_timeout, isolation_level=None)

    def _init_database(self) -> None:
        with closing(self._connect()) as conn:
            conn.executescript(_DB_SCHEMA)

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        # Striped: one fingerprint always maps to the same lock.
        return self._locks[hash(fingerprint) % LOCK_STRIPES]

    def _transaction(self, operation: Callable[[sqlite3.Connection], _T], action: str) -> _T:
        last_error: Optional[sqlite3.OperationalError] = None
        for attempt in range(self._retry_attempts):
            try:
                with closing(self._connect()) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        result = operation(conn)
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
                    conn.execute("COMMIT")
                    return result
            except sqlite3.OperationalError as exc:
                last_error = exc
                logger.warning(
                    "Log store %s attempt %d/%d failed: %s",
                    action,
                    attempt + 1,
                    self._retry_attempts,
                    exc,
                )
                if attempt < self._retry_attempts - 1:
                    time.sleep(self._retry_delay * (attempt + 1))
        raise LogStoreError(f"Log store {action} failed after {self._retry_attempts} attempts") from last_error

    # Public API --------------------------------------------------------
    def record(self, event: Union[LogEvent, Mapping[str, Any]]) -> LogIssue:
        """Create or update the issue matching ``event``'s fingerprint."""

        if not isinstance(event, LogEvent):
            event = parse_log_event(event, self._clock())
        fingerprint = event_fingerprint(event)

        def _merge(conn: sqlite3.Connection) -> LogIssue:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM log_issues WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
            if row is None:
                issue = new_issue(event, fingerprint)
                conn.execute(
                    f"INSERT INTO log_issues ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (issue.id, *_issue_params(issue)),
                )
                return issue
            issue = merge_issue(_row_to_issue(row), event)
            conn.execute(
                """
                UPDATE log_issues SET
                    fingerprint = ?, severity = ?, service = ?, message = ?,
                    description = ?, tags = ?, status = ?, occurrences = ?,
                    affected_users = ?, recommended_action = ?, metadata = ?,
                    first_seen = ?, last_seen = ?
                WHERE id = ?
                """,
                (*_issue_params(issue), issue.id),
            )
            return issue

        with self._lock_for(fingerprint):
            return self._transaction(_merge, "record")

    def get(self, issue_id: str) -> Optional[LogIssue]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM log_issues WHERE id = ?", (issue_id,)
            ).fetchone()
        return _row_to_issue(row) if row else None

    def list_recent(
        self,
        limit: int = 20,
        within: Optional[timedelta] = timedelta(hours=48),
        *,
        severities: Optional[Iterable[Union[LogSeverity, str]]] = None,
    ) -> List[LogIssue]:
        """Issues seen inside the trailing window, newest first, then most frequent."""

        if int(limit) <= 0:
            return []
        clauses: List[str] = []
        params: List[Any] = []
        if within is not None:
            if within.total_seconds() <= 0:
                return []
            clauses.append("last_seen >= ?")
            params.append(_db_time(self._clock() - within))
        if severities is not None:
            values = [LogSeverity(value).value for value in severities]
            if not values:
                return []
            clauses.append(f"severity IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM log_issues {where} "
                "ORDER BY last_seen DESC, occurrences DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_issue(row) for row in rows]

    def list_critical(self, limit: int = 20, within: Optional[timedelta] = timedelta(hours=48)) -> List[LogIssue]:
        return self.list_recent(limit, within, severities=CRITICAL_SEVERITIES)

    def set_status(self, issue_id: str, status: Union[LogStatus, str]) -> LogIssue:
        """Move an issue to ``status``; any transition is allowed."""

        new_status = LogStatus(status)

        def _update(conn: sqlite3.Connection) -> LogIssue:
            cursor = conn.execute(
                "UPDATE log_issues SET status = ? WHERE id = ?", (new_status.value, issue_id)
            )
            if cursor.rowcount == 0:
                raise LogIssueNotFoundError(f"Unknown log issue: {issue_id}")
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM log_issues WHERE id = ?", (issue_id,)
            ).fetchone()
            return _row_to_issue(row)

        return self._transaction(_update, "status update")

    def count(self) -> int:
        with closing(self._connect()) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM log_issues").fetchone()[0])


# ---------------------------------------------------------------------------
# stdlib logging bridge
# ---------------------------------------------------------------------------


class LogIssueHandler(logging.Handler):
    """Forward log records into a :class:`LogIssueStore`.

    ``extra`` keys ``service``, ``tags``, ``affected_users`` and
    ``recommended_action`` are honoured when present on the record.
    """

    def __init__(self, store: LogIssueStore, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self.store = store
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(__name__) or getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            self.store.record(self._to_event(record))
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False

    @staticmethod
    def _to_event(record: logging.LogRecord) -> LogEvent:
        if record.levelno >= logging.ERROR:
            severity = LogSeverity.ERROR
        elif record.levelno >= logging.WARNING:
            severity = LogSeverity.WARNING
        else:
            severity = LogSeverity.INFO
        description = None
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            description = f"{type(exc).__name__}: {exc}"
        tags = getattr(record, "tags", None)
        return LogEvent(
            severity=severity,
            service=str(getattr(record, "service", record.name)),
            message=record.getMessage(),
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
            description=description,
            tags=list(tags) if isinstance(tags, (list, tuple, set)) else [],
            affected_users=getattr(record, "affected_users", None),
            recommended_action=getattr(record, "recommended_action", None),
            metadata={"logger": record.name, "module": record.module, "line": record.lineno},
        )


__all__ = [
    "CRITICAL_SEVERITIES",
    "LogEventPayload",
    "LogIssueHandler",
    "LogIssueNotFoundError",
    "LogIssueStore",
    "LogStoreError",
    "StatusUpdate",
    "event_fingerprint",
    "fingerprint_for",
    "merge_issue",
    "merge_tags",
    "new_issue",
    "parse_log_event",
]
