"""
Append-only SQLite store of violations and sessions.

One dedicated writer connection, guarded by a lock, performs every append so
ids stay monotonic; readers open short-lived connections of their own (WAL
journal mode lets them run alongside the writer). There is no update or delete
API: corrections are new records. Patterns are never stored, they are
aggregated from the `violations` table on every query.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, cast

from archsentinel.engine.types import FixOutcome, Severity

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    initiator_agent TEXT NOT NULL,
    scanned_unit_count INTEGER NOT NULL,
    violations_found INTEGER NOT NULL,
    violations_fixed INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS violations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    session_id TEXT,
    agent_name TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    path TEXT NOT NULL,
    auto_fixed INTEGER NOT NULL DEFAULT 0,
    fix_description TEXT,
    outcome TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_violations_rule ON violations(rule_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_violations_agent ON violations(agent_name, timestamp);
"""


class StoreUnavailableError(RuntimeError):
    """The violation store cannot be opened, read or written."""


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    @classmethod
    def trailing(cls, now: datetime, *, days: float, offset_days: float = 0.0) -> TimeWindow:
        end = now - timedelta(days=offset_days)
        return cls(start=end - timedelta(days=days), end=end)


@dataclass(frozen=True, slots=True)
class ViolationRecord:
    timestamp: datetime
    session_id: str | None
    agent_name: str
    rule_id: str
    severity: Severity
    path: str
    auto_fixed: bool
    fix_description: str | None
    outcome: FixOutcome
    id: int | None = None


@dataclass(frozen=True, slots=True)
class Pattern:
    rule_id: str
    occurrence_count: int
    first_seen: datetime
    last_seen: datetime
    auto_fix_success_rate: float


@dataclass(frozen=True, slots=True)
class SessionRecord:
    id: str
    started_at: datetime
    initiator_agent: str
    scanned_unit_count: int
    violations_found: int
    violations_fixed: int


@dataclass(frozen=True, slots=True)
class AgentSummary:
    agent_name: str
    violations: int
    auto_fixed: int

    @property
    def fix_rate(self) -> float:
        return self.auto_fixed / self.violations if self.violations else 0.0


@dataclass(frozen=True, slots=True)
class DailyCount:
    date: str  # YYYY-MM-DD (UTC)
    violations: int
    auto_fixed: int


class ViolationStore:
    def __init__(self, path: Path, *, read_only: bool = False) -> None:
        self.path = path
        self.read_only = read_only
        self._lock = threading.Lock()
        self._writer: sqlite3.Connection | None = None

    @classmethod
    def open(cls, path: Path) -> ViolationStore:
        store = cls(path)
        store._connect_writer()
        return store

    @classmethod
    def open_readonly(cls, path: Path) -> ViolationStore:
        """Open for queries only. A missing file reads as an empty history and is not created."""

        return cls(path, read_only=True)

    def __enter__(self) -> ViolationStore:
        if self._writer is None and not self.read_only:
            self._connect_writer()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._writer is not None:
                self._writer.close()
                self._writer = None

    def _connect_writer(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.executescript(SCHEMA_SQL)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailableError(f"cannot open violation store {self.path}: {exc}") from exc
        self._writer = conn

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            if self.read_only and not self.path.exists():
                conn = sqlite3.connect(":memory:")
                conn.executescript(SCHEMA_SQL)
            else:
                conn = sqlite3.connect(str(self.path), timeout=30)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"cannot read violation store {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"query on {self.path} failed: {exc}") from exc
        finally:
            conn.close()

    # --- writes -------------------------------------------------------------

    def ping(self) -> None:
        """Raise StoreUnavailableError unless the writer connection is usable."""

        with self._lock:
            if self._writer is None:
                raise StoreUnavailableError(f"violation store {self.path} is closed")
            try:
                self._writer.execute("SELECT 1").fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"violation store {self.path} is unusable: {exc}") from exc

    def record(self, violation: ViolationRecord) -> int:
        ids = self._append([violation], session=None)
        return ids[0]

    def record_session(self, session: SessionRecord, violations: Iterable[ViolationRecord]) -> list[int]:
        """Append a session and its violations in one transaction."""

        return self._append(list(violations), session=session)

    def _append(self, violations: list[ViolationRecord], *, session: SessionRecord | None) -> list[int]:
        if self.read_only:
            raise StoreUnavailableError(f"violation store {self.path} is open read-only")
        with self._lock:
            if self._writer is None:
                raise StoreUnavailableError(f"violation store {self.path} is closed")
            conn = self._writer
            ids: list[int] = []
            try:
                with conn:
                    if session is not None:
                        conn.execute(
                            "INSERT INTO sessions (id, started_at, initiator_agent, scanned_unit_count, "
                            "violations_found, violations_fixed) VALUES (?, ?, ?, ?, ?, ?)",
                            (
                                session.id,
                                _ts(session.started_at),
                                session.initiator_agent,
                                session.scanned_unit_count,
                                session.violations_found,
                                session.violations_fixed,
                            ),
                        )
                    for v in violations:
                        cursor = conn.execute(
                            "INSERT INTO violations (timestamp, session_id, agent_name, rule_id, severity, path, "
                            "auto_fixed, fix_description, outcome) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                _ts(v.timestamp),
                                v.session_id,
                                v.agent_name,
                                v.rule_id,
                                v.severity,
                                v.path,
                                1 if v.auto_fixed else 0,
                                v.fix_description,
                                v.outcome,
                            ),
                        )
                        ids.append(int(cursor.lastrowid or 0))
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"cannot write to violation store {self.path}: {exc}") from exc
            logger.debug("recorded %d violation(s)", len(ids))
            return ids

    # --- reads --------------------------------------------------------------

    def _select(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._reader() as conn:
            return list(conn.execute(sql, tuple(params)).fetchall())

    def query_by_rule(self, rule_id: str, window: TimeWindow | None = None) -> list[ViolationRecord]:
        where, params = _window_clause(window)
        rows = self._select(
            f"SELECT * FROM violations WHERE rule_id = ?{where} ORDER BY id",
            (rule_id, *params),
        )
        return [_row_to_record(r) for r in rows]

    def query_by_agent(self, agent_name: str, window: TimeWindow | None = None) -> list[ViolationRecord]:
        where, params = _window_clause(window)
        rows = self._select(
            f"SELECT * FROM violations WHERE agent_name = ?{where} ORDER BY id",
            (agent_name, *params),
        )
        return [_row_to_record(r) for r in rows]

    def count_by_agent(self, agent_name: str, window: TimeWindow | None = None) -> int:
        where, params = _window_clause(window)
        rows = self._select(
            f"SELECT COUNT(*) AS n FROM violations WHERE agent_name = ?{where}",
            (agent_name, *params),
        )
        return int(rows[0]["n"]) if rows else 0

    def aggregate_patterns(
        self,
        window: TimeWindow | None = None,
        *,
        agent_name: str | None = None,
    ) -> list[Pattern]:
        """Patterns ordered by occurrence count (desc), then rule id."""

        where, params = _window_clause(window)
        agent_clause = ""
        if agent_name is not None:
            agent_clause = " AND agent_name = ?"
            params = (*params, agent_name)
        rows = self._select(
            "SELECT rule_id, COUNT(*) AS n, MIN(timestamp) AS first_seen, MAX(timestamp) AS last_seen, "
            "AVG(auto_fixed) AS fix_rate "
            f"FROM violations WHERE 1 = 1{where}{agent_clause} "
            "GROUP BY rule_id ORDER BY n DESC, rule_id ASC",
            params,
        )
        return [
            Pattern(
                rule_id=str(r["rule_id"]),
                occurrence_count=int(r["n"]),
                first_seen=_parse_ts(r["first_seen"]),
                last_seen=_parse_ts(r["last_seen"]),
                auto_fix_success_rate=float(r["fix_rate"] or 0.0),
            )
            for r in rows
        ]

    def agent_summary(self, window: TimeWindow | None = None) -> list[AgentSummary]:
        where, params = _window_clause(window)
        rows = self._select(
            "SELECT agent_name, COUNT(*) AS n, SUM(auto_fixed) AS fixed "
            f"FROM violations WHERE 1 = 1{where} GROUP BY agent_name ORDER BY n DESC, agent_name ASC",
            params,
        )
        return [
            AgentSummary(agent_name=str(r["agent_name"]), violations=int(r["n"]), auto_fixed=int(r["fixed"] or 0))
            for r in rows
        ]

    def daily_trend(self, window: TimeWindow | None = None, *, agent_name: str | None = None) -> list[DailyCount]:
        where, params = _window_clause(window)
        agent_clause = ""
        if agent_name is not None:
            agent_clause = " AND agent_name = ?"
            params = (*params, agent_name)
        rows = self._select(
            "SELECT substr(timestamp, 1, 10) AS day, COUNT(*) AS n, SUM(auto_fixed) AS fixed "
            f"FROM violations WHERE 1 = 1{where}{agent_clause} GROUP BY day ORDER BY day DESC",
            params,
        )
        return [DailyCount(date=str(r["day"]), violations=int(r["n"]), auto_fixed=int(r["fixed"] or 0)) for r in rows]

    def sessions(self, window: TimeWindow | None = None) -> list[SessionRecord]:
        where, params = _window_clause(window, column="started_at")
        rows = self._select(f"SELECT * FROM sessions WHERE 1 = 1{where} ORDER BY started_at", params)
        return [
            SessionRecord(
                id=str(r["id"]),
                started_at=_parse_ts(r["started_at"]),
                initiator_agent=str(r["initiator_agent"]),
                scanned_unit_count=int(r["scanned_unit_count"]),
                violations_found=int(r["violations_found"]),
                violations_fixed=int(r["violations_fixed"]),
            )
            for r in rows
        ]

    def export(self, *, limit: int = 1000) -> dict[str, Any]:
        """JSON-ready dump of recent violations plus the rule patterns."""

        rows = self._select("SELECT * FROM violations ORDER BY id DESC LIMIT ?", (limit,))
        return {
            "violations": [record_to_json(_row_to_record(r)) for r in rows],
            "patterns": [
                {
                    "ruleId": p.rule_id,
                    "count": p.occurrence_count,
                    "firstSeen": _ts(p.first_seen),
                    "lastSeen": _ts(p.last_seen),
                    "fixRate": round(p.auto_fix_success_rate, 4),
                }
                for p in self.aggregate_patterns()
            ],
            "sessions": [
                {
                    "id": s.id,
                    "startedAt": _ts(s.started_at),
                    "agent": s.initiator_agent,
                    "filesScanned": s.scanned_unit_count,
                    "violationsFound": s.violations_found,
                    "violationsFixed": s.violations_fixed,
                }
                for s in self.sessions()
            ],
        }


def _window_clause(window: TimeWindow | None, *, column: str = "timestamp") -> tuple[str, tuple[str, ...]]:
    if window is None:
        return "", ()
    return f" AND {column} >= ? AND {column} < ?", (_ts(window.start), _ts(window.end))


def _row_to_record(row: sqlite3.Row) -> ViolationRecord:
    return ViolationRecord(
        id=int(row["id"]),
        timestamp=_parse_ts(row["timestamp"]),
        session_id=row["session_id"],
        agent_name=str(row["agent_name"]),
        rule_id=str(row["rule_id"]),
        severity=cast(Severity, row["severity"]),
        path=str(row["path"]),
        auto_fixed=bool(row["auto_fixed"]),
        fix_description=row["fix_description"],
        outcome=cast(FixOutcome, row["outcome"]),
    )


def record_to_json(record: ViolationRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "timestamp": _ts(record.timestamp),
        "sessionId": record.session_id,
        "agent": record.agent_name,
        "ruleId": record.rule_id,
        "severity": record.severity,
        "file": record.path,
        "autoFixed": record.auto_fixed,
        "fixDescription": record.fix_description,
        "outcome": record.outcome,
    }
