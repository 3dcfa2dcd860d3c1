import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from db_pool import SQLiteConnectionPool
from engines.batch_recompute import RecomputeFailure
from engines.models import (
    DifficultyAdjustment,
    DifficultyState,
    Intervention,
    LearningGap,
    PerformanceSnapshot,
    ProgressAlert,
    RiskAssessment,
    StudentProfile,
    SubjectMetrics,
)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    return json.loads(value)


def _coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return _coerce_to_utc(dt).isoformat() if dt is not None else None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _coerce_to_utc(datetime.fromisoformat(text))


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS students (
              student_id  TEXT PRIMARY KEY,
              key_stage   TEXT NOT NULL,
              subjects    TEXT NOT NULL,
              attendance  REAL,
              created_at  TEXT NOT NULL,
              updated_at  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cohort_members (
              cohort_id   TEXT NOT NULL,
              student_id  TEXT NOT NULL REFERENCES students(student_id) ON DELETE CASCADE,
              added_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (cohort_id, student_id)
            );

            CREATE TABLE IF NOT EXISTS snapshots (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id        TEXT NOT NULL REFERENCES students(student_id) ON DELETE CASCADE,
              subject           TEXT NOT NULL,
              topic             TEXT NOT NULL,
              ts                TEXT NOT NULL,
              correct           INTEGER NOT NULL CHECK (correct IN (0, 1)),
              response_time_ms  INTEGER NOT NULL CHECK (response_time_ms > 0),
              completed         INTEGER NOT NULL DEFAULT 1 CHECK (completed IN (0, 1))
            );

            CREATE INDEX IF NOT EXISTS idx_snapshots_student_subject ON snapshots(student_id, subject, id);

            CREATE TABLE IF NOT EXISTS subject_metrics (
              student_id  TEXT NOT NULL REFERENCES students(student_id) ON DELETE CASCADE,
              subject     TEXT NOT NULL,
              metrics     TEXT NOT NULL,
              updated_at  TEXT NOT NULL,
              PRIMARY KEY (student_id, subject)
            );

            CREATE TABLE IF NOT EXISTS difficulty_states (
              student_id  TEXT NOT NULL REFERENCES students(student_id) ON DELETE CASCADE,
              subject     TEXT NOT NULL,
              level       INTEGER NOT NULL,
              state       TEXT NOT NULL,
              updated_at  TEXT NOT NULL,
              PRIMARY KEY (student_id, subject)
            );

            CREATE TABLE IF NOT EXISTS difficulty_adjustments (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id      TEXT NOT NULL,
              subject         TEXT NOT NULL,
              previous_level  INTEGER NOT NULL,
              new_level       INTEGER NOT NULL,
              payload         TEXT NOT NULL,
              created_at      TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_adjustments_student ON difficulty_adjustments(student_id, subject, id);

            CREATE TABLE IF NOT EXISTS risk_assessments (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id     TEXT NOT NULL,
              tier           TEXT NOT NULL CHECK (tier IN ('low', 'medium', 'high')),
              overall_score  REAL,
              trend          TEXT NOT NULL,
              payload        TEXT NOT NULL,
              computed_at    TEXT NOT NULL,
              is_current     INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_risk_student ON risk_assessments(student_id, is_current, id);

            CREATE TABLE IF NOT EXISTS learning_gaps (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id   TEXT NOT NULL,
              subject      TEXT NOT NULL,
              topic        TEXT NOT NULL,
              severity     TEXT NOT NULL CHECK (severity IN ('low', 'medium', 'high')),
              payload      TEXT NOT NULL,
              computed_at  TEXT NOT NULL,
              is_current   INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_gaps_student ON learning_gaps(student_id, is_current, id);

            CREATE TABLE IF NOT EXISTS interventions (
              intervention_id  TEXT PRIMARY KEY,
              target_type      TEXT NOT NULL CHECK (target_type IN ('student', 'cohort')),
              target_id        TEXT NOT NULL,
              payload          TEXT NOT NULL,
              status           TEXT NOT NULL DEFAULT 'proposed',
              is_current       INTEGER NOT NULL DEFAULT 1,
              created_at       TEXT NOT NULL,
              updated_at       TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_interventions_target ON interventions(target_type, target_id, is_current);

            CREATE TABLE IF NOT EXISTS alerts (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id  TEXT NOT NULL,
              alert_type  TEXT NOT NULL,
              severity    TEXT NOT NULL,
              subject     TEXT,
              message     TEXT NOT NULL,
              created_at  TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_student ON alerts(student_id, id);

            CREATE TABLE IF NOT EXISTS recompute_failures (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id   TEXT NOT NULL,
              error        TEXT NOT NULL,
              failures     INTEGER NOT NULL,
              failed_at    TEXT NOT NULL,
              retry_after  TEXT NOT NULL
            );
            """
        )
        con.commit()


# -------------- students & cohorts --------------
def upsert_student(profile: StudentProfile) -> None:
    now = _iso(datetime.now(timezone.utc))
    _exec(
        """
        INSERT INTO students (student_id, key_stage, subjects, attendance, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(student_id) DO UPDATE SET
            key_stage = excluded.key_stage,
            subjects = excluded.subjects,
            attendance = COALESCE(excluded.attendance, students.attendance),
            updated_at = excluded.updated_at
        """,
        (
            profile.student_id,
            profile.key_stage,
            json_dumps(list(profile.subjects)),
            profile.attendance,
            _iso(profile.created_at) or now,
            now,
        ),
    )


def _student_from_row(row: sqlite3.Row) -> StudentProfile:
    return StudentProfile(
        student_id=row["student_id"],
        key_stage=row["key_stage"],
        subjects=list(_decode_json_field(row["subjects"]) or []),
        attendance=row["attendance"],
        created_at=_parse_timestamp(row["created_at"]),
    )


def get_student(student_id: str) -> Optional[StudentProfile]:
    rows = _query(
        "SELECT student_id, key_stage, subjects, attendance, created_at FROM students WHERE student_id = ?",
        (student_id,),
    )
    if not rows:
        return None
    return _student_from_row(rows[0])


def list_student_ids() -> List[str]:
    rows = _query("SELECT student_id FROM students ORDER BY student_id")
    return [row["student_id"] for row in rows]


def set_attendance(student_id: str, attendance: Optional[float]) -> None:
    _exec(
        "UPDATE students SET attendance = ?, updated_at = ? WHERE student_id = ?",
        (attendance, _iso(datetime.now(timezone.utc)), student_id),
    )


def add_cohort_members(cohort_id: str, student_ids: Sequence[str]) -> None:
    with _pool.transaction() as con:
        con.executemany(
            "INSERT OR IGNORE INTO cohort_members (cohort_id, student_id) VALUES (?, ?)",
            [(cohort_id, student_id) for student_id in student_ids],
        )


def list_cohort_members(cohort_id: str) -> List[str]:
    rows = _query(
        "SELECT student_id FROM cohort_members WHERE cohort_id = ? ORDER BY student_id",
        (cohort_id,),
    )
    return [row["student_id"] for row in rows]


# -------------- snapshots, metrics, difficulty --------------
def _snapshot_from_row(row: sqlite3.Row) -> PerformanceSnapshot:
    return PerformanceSnapshot(
        student_id=row["student_id"],
        subject=row["subject"],
        topic=row["topic"],
        timestamp=_parse_timestamp(row["ts"]),
        correct=bool(row["correct"]),
        response_time_ms=int(row["response_time_ms"]),
        completed=bool(row["completed"]),
    )


def list_snapshots(student_id: str, subject: Optional[str] = None) -> List[PerformanceSnapshot]:
    """Stored history window in insertion order."""
    if subject is None:
        rows = _query(
            """
            SELECT student_id, subject, topic, ts, correct, response_time_ms, completed
            FROM snapshots WHERE student_id = ? ORDER BY id
            """,
            (student_id,),
        )
    else:
        rows = _query(
            """
            SELECT student_id, subject, topic, ts, correct, response_time_ms, completed
            FROM snapshots WHERE student_id = ? AND subject = ? ORDER BY id
            """,
            (student_id, subject),
        )
    return [_snapshot_from_row(row) for row in rows]


def list_snapshot_windows(student_id: str) -> Dict[str, List[PerformanceSnapshot]]:
    windows: Dict[str, List[PerformanceSnapshot]] = {}
    for snapshot in list_snapshots(student_id):
        windows.setdefault(snapshot.subject, []).append(snapshot)
    return windows


def _upsert_difficulty_state(con: sqlite3.Connection, state: DifficultyState) -> None:
    con.execute(
        """
        INSERT INTO difficulty_states (student_id, subject, level, state, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(student_id, subject) DO UPDATE SET
            level = excluded.level,
            state = excluded.state,
            updated_at = excluded.updated_at
        """,
        (
            state.student_id,
            state.subject,
            state.level,
            json_dumps(state.to_dict()),
            _iso(state.updated_at) or _iso(datetime.now(timezone.utc)),
        ),
    )


def _insert_adjustment(con: sqlite3.Connection, adjustment: DifficultyAdjustment) -> None:
    con.execute(
        """
        INSERT INTO difficulty_adjustments
        (student_id, subject, previous_level, new_level, payload, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            adjustment.student_id,
            adjustment.subject,
            adjustment.previous_level,
            adjustment.new_level,
            json_dumps(adjustment.to_dict()),
            _iso(adjustment.created_at),
        ),
    )


def save_ingestion(
    snapshot: PerformanceSnapshot,
    window_size: int,
    metrics: SubjectMetrics,
    state: DifficultyState,
    adjustment: Optional[DifficultyAdjustment] = None,
) -> None:
    """Persist one accepted interaction and everything derived from it atomically.

    The snapshot window for ``(student, subject)`` is trimmed to
    ``window_size`` entries, oldest first.
    """
    with _pool.transaction() as con:
        con.execute(
            """
            INSERT INTO snapshots (student_id, subject, topic, ts, correct, response_time_ms, completed)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.student_id,
                snapshot.subject,
                snapshot.topic,
                _iso(snapshot.timestamp),
                int(snapshot.correct),
                int(snapshot.response_time_ms),
                int(snapshot.completed),
            ),
        )
        con.execute(
            """
            DELETE FROM snapshots
            WHERE student_id = ? AND subject = ? AND id NOT IN (
                SELECT id FROM snapshots
                WHERE student_id = ? AND subject = ?
                ORDER BY id DESC LIMIT ?
            )
            """,
            (snapshot.student_id, snapshot.subject, snapshot.student_id, snapshot.subject, int(window_size)),
        )
        con.execute(
            """
            INSERT INTO subject_metrics (student_id, subject, metrics, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(student_id, subject) DO UPDATE SET
                metrics = excluded.metrics,
                updated_at = excluded.updated_at
            """,
            (
                snapshot.student_id,
                snapshot.subject,
                json_dumps(metrics.to_dict()),
                _iso(datetime.now(timezone.utc)),
            ),
        )
        _upsert_difficulty_state(con, state)
        if adjustment is not None:
            _insert_adjustment(con, adjustment)


def get_subject_metrics(student_id: str) -> Dict[str, SubjectMetrics]:
    rows = _query(
        "SELECT subject, metrics FROM subject_metrics WHERE student_id = ? ORDER BY subject",
        (student_id,),
    )
    return {row["subject"]: SubjectMetrics.from_dict(_decode_json_field(row["metrics"])) for row in rows}


def get_difficulty_state(student_id: str, subject: str) -> Optional[DifficultyState]:
    rows = _query(
        "SELECT state FROM difficulty_states WHERE student_id = ? AND subject = ?",
        (student_id, subject),
    )
    if not rows:
        return None
    return DifficultyState.from_dict(_decode_json_field(rows[0]["state"]))


def save_difficulty_state(state: DifficultyState) -> None:
    with _pool.transaction() as con:
        _upsert_difficulty_state(con, state)


def list_difficulty_adjustments(student_id: str, subject: str, limit: int = 50) -> List[DifficultyAdjustment]:
    rows = _query(
        """
        SELECT payload FROM difficulty_adjustments
        WHERE student_id = ? AND subject = ?
        ORDER BY id DESC LIMIT ?
        """,
        (student_id, subject, int(limit)),
    )
    adjustments: List[DifficultyAdjustment] = []
    for row in rows:
        data = _decode_json_field(row["payload"])
        data["created_at"] = _parse_timestamp(data["created_at"])
        adjustments.append(DifficultyAdjustment(**data))
    return adjustments


# -------------- risk, gaps, interventions, alerts --------------
def _risk_from_payload(data: Dict[str, Any]) -> RiskAssessment:
    payload = dict(data)
    payload["computed_at"] = _parse_timestamp(payload["computed_at"])
    return RiskAssessment(**payload)


def _gap_from_payload(data: Dict[str, Any]) -> LearningGap:
    payload = dict(data)
    payload.pop("deficit", None)
    payload["detected_at"] = _parse_timestamp(payload["detected_at"])
    payload["last_practiced_at"] = _parse_timestamp(payload.get("last_practiced_at"))
    return LearningGap(**payload)


def _intervention_from_row(row: sqlite3.Row) -> Intervention:
    payload = dict(_decode_json_field(row["payload"]))
    payload["created_at"] = _parse_timestamp(payload["created_at"])
    payload["status"] = row["status"]
    return Intervention(**payload)


def _replace_interventions(
    con: sqlite3.Connection,
    target_type: str,
    target_id: str,
    interventions: Sequence[Intervention],
    now: str,
) -> None:
    con.execute(
        "UPDATE interventions SET is_current = 0 WHERE target_type = ? AND target_id = ?",
        (target_type, target_id),
    )
    # An existing row keeps its externally set status.
    con.executemany(
        """
        INSERT INTO interventions
        (intervention_id, target_type, target_id, payload, status, is_current, created_at, updated_at)
        VALUES (?, ?, ?, ?, 'proposed', 1, ?, ?)
        ON CONFLICT(intervention_id) DO UPDATE SET
            payload = excluded.payload,
            is_current = 1,
            updated_at = excluded.updated_at
        """,
        [
            (
                item.intervention_id,
                item.target_type,
                item.target_id,
                json_dumps(item.to_dict()),
                _iso(item.created_at),
                now,
            )
            for item in interventions
        ],
    )


def replace_student_outputs(
    student_id: str,
    risk: RiskAssessment,
    gaps: Sequence[LearningGap],
    interventions: Sequence[Intervention],
    alerts: Sequence[ProgressAlert] = (),
) -> None:
    """Swap a student's current risk, gaps and interventions in one transaction."""
    computed_at = _iso(risk.computed_at)
    with _pool.transaction() as con:
        con.execute(
            "UPDATE risk_assessments SET is_current = 0 WHERE student_id = ? AND is_current = 1",
            (student_id,),
        )
        con.execute(
            """
            INSERT INTO risk_assessments (student_id, tier, overall_score, trend, payload, computed_at, is_current)
            VALUES (?, ?, ?, ?, ?, ?, 1)
            """,
            (student_id, risk.tier, risk.overall_score, risk.trend, json_dumps(risk.to_dict()), computed_at),
        )
        con.execute(
            "UPDATE learning_gaps SET is_current = 0 WHERE student_id = ? AND is_current = 1",
            (student_id,),
        )
        con.executemany(
            """
            INSERT INTO learning_gaps (student_id, subject, topic, severity, payload, computed_at, is_current)
            VALUES (?, ?, ?, ?, ?, ?, 1)
            """,
            [
                (student_id, gap.subject, gap.topic, gap.severity, json_dumps(gap.to_dict()), computed_at)
                for gap in gaps
            ],
        )
        _replace_interventions(con, "student", student_id, interventions, computed_at)
        con.executemany(
            """
            INSERT INTO alerts (student_id, alert_type, severity, subject, message, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (student_id, alert.alert_type, alert.severity, alert.subject, alert.message, _iso(alert.created_at))
                for alert in alerts
            ],
        )


def replace_cohort_interventions(cohort_id: str, interventions: Sequence[Intervention]) -> None:
    with _pool.transaction() as con:
        _replace_interventions(con, "cohort", cohort_id, interventions, _iso(datetime.now(timezone.utc)))


def get_current_risk(student_id: str) -> Optional[RiskAssessment]:
    rows = _query(
        """
        SELECT payload FROM risk_assessments
        WHERE student_id = ? AND is_current = 1
        ORDER BY id DESC LIMIT 1
        """,
        (student_id,),
    )
    if not rows:
        return None
    return _risk_from_payload(_decode_json_field(rows[0]["payload"]))


def list_risk_history(student_id: str, limit: int = 50) -> List[RiskAssessment]:
    rows = _query(
        "SELECT payload FROM risk_assessments WHERE student_id = ? ORDER BY id DESC LIMIT ?",
        (student_id, int(limit)),
    )
    return [_risk_from_payload(_decode_json_field(row["payload"])) for row in rows]


def get_current_gaps(student_id: str) -> List[LearningGap]:
    rows = _query(
        "SELECT payload FROM learning_gaps WHERE student_id = ? AND is_current = 1 ORDER BY id",
        (student_id,),
    )
    return [_gap_from_payload(_decode_json_field(row["payload"])) for row in rows]


def list_gap_history(student_id: str, limit: int = 20) -> List[Tuple[datetime, List[LearningGap]]]:
    """Past gap sets, newest first, one entry per recompute that recorded gaps."""
    runs = _query(
        """
        SELECT computed_at, MAX(id) AS last_id FROM learning_gaps
        WHERE student_id = ?
        GROUP BY computed_at
        ORDER BY last_id DESC LIMIT ?
        """,
        (student_id, int(limit)),
    )
    history: List[Tuple[datetime, List[LearningGap]]] = []
    for run in runs:
        rows = _query(
            "SELECT payload FROM learning_gaps WHERE student_id = ? AND computed_at = ? ORDER BY id",
            (student_id, run["computed_at"]),
        )
        history.append(
            (
                _parse_timestamp(run["computed_at"]),
                [_gap_from_payload(_decode_json_field(row["payload"])) for row in rows],
            )
        )
    return history


def get_current_interventions(target_type: str, target_id: str) -> List[Intervention]:
    rows = _query(
        """
        SELECT payload, status FROM interventions
        WHERE target_type = ? AND target_id = ? AND is_current = 1
        """,
        (target_type, target_id),
    )
    items = [_intervention_from_row(row) for row in rows]
    items.sort(key=lambda item: (-item.score, item.subject, item.topic))
    return items


def get_intervention(intervention_id: str) -> Optional[Intervention]:
    rows = _query(
        "SELECT payload, status FROM interventions WHERE intervention_id = ?",
        (intervention_id,),
    )
    if not rows:
        return None
    return _intervention_from_row(rows[0])


def update_intervention_status(intervention_id: str, status: str) -> None:
    _exec(
        "UPDATE interventions SET status = ?, updated_at = ? WHERE intervention_id = ?",
        (status, _iso(datetime.now(timezone.utc)), intervention_id),
    )


def list_alerts(student_id: str, limit: int = 50) -> List[ProgressAlert]:
    rows = _query(
        """
        SELECT student_id, alert_type, severity, subject, message, created_at
        FROM alerts WHERE student_id = ? ORDER BY id DESC LIMIT ?
        """,
        (student_id, int(limit)),
    )
    return [
        ProgressAlert(
            student_id=row["student_id"],
            alert_type=row["alert_type"],
            severity=row["severity"],
            subject=row["subject"],
            message=row["message"],
            created_at=_parse_timestamp(row["created_at"]),
        )
        for row in rows
    ]


# -------------- batch failures --------------
def record_recompute_failure(failure: RecomputeFailure) -> None:
    _exec(
        """
        INSERT INTO recompute_failures (student_id, error, failures, failed_at, retry_after)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            failure.student_id,
            failure.error,
            failure.failures,
            _iso(failure.failed_at),
            _iso(failure.retry_after),
        ),
    )


def list_recompute_failures(student_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if student_id:
        rows = _query(
            """
            SELECT id, student_id, error, failures, failed_at, retry_after
            FROM recompute_failures WHERE student_id = ? ORDER BY id DESC LIMIT ?
            """,
            (student_id, int(limit)),
        )
    else:
        rows = _query(
            """
            SELECT id, student_id, error, failures, failed_at, retry_after
            FROM recompute_failures ORDER BY id DESC LIMIT ?
            """,
            (int(limit),),
        )
    return [dict(row) for row in rows]
