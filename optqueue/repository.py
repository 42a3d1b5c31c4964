import json
import sqlite3
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .config import ALLOWED_CONFIG_KEYS, Config
from .errors import DuplicateSubjectError
from .models import (
    Job, Outcome, PRIORITIES, STATES, TERMINAL_STATES,
    PENDING, PROCESSING, COMPLETED, FAILED, ABANDONED,
)
from .utils import parse_iso

_TERMINAL_SQL = "('completed', 'abandoned')"
_ERROR_MAX = 500


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    # reject values that would fail at startup
    Config.from_mapping({key: value})
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Jobs: insert / claim / result ----------
def insert_job(conn, job: Job, unique_active_subject: bool = True) -> str:
    """
    Persist a new pending job.

    With unique_active_subject the existence check and the insert are a single
    statement, so two enqueues racing for one subject cannot both win.
    """
    columns = (
        "id, subject_id, payload, status, priority, attempts, max_attempts, "
        "next_attempt_at, created_at, updated_at, current_score, target_score"
    )
    params = (
        job.id,
        job.subject_id,
        json.dumps(job.payload),
        PENDING,
        PRIORITIES[job.priority],
        0,
        int(job.max_attempts),
        job.next_attempt_at or job.created_at,
        job.created_at,
        job.updated_at or job.created_at,
        job.current_score,
        job.target_score,
    )

    with conn:
        if unique_active_subject:
            cur = conn.execute(
                f"""INSERT INTO jobs ({columns})
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM jobs
                        WHERE subject_id=? AND status NOT IN {_TERMINAL_SQL}
                    )""",
                params + (job.subject_id,),
            )
            if cur.rowcount != 1:
                existing = active_job_for_subject(conn, job.subject_id)
                raise DuplicateSubjectError(job.subject_id, existing.id if existing else None)
        else:
            conn.execute(
                f"INSERT INTO jobs ({columns}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
    return job.id


def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_due(conn, now: str, limit: int) -> List[Job]:
    """Jobs ready for a send attempt: high priority first, FIFO within a priority."""
    rows = conn.execute(
        """SELECT * FROM jobs
           WHERE (next_attempt_at IS NULL OR next_attempt_at <= ?)
             AND (status=? OR (status=? AND attempts < max_attempts))
           ORDER BY priority DESC, created_at ASC, rowid ASC
           LIMIT ?""",
        (now, PENDING, FAILED, int(limit)),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def mark_processing(conn, job_id: str, now: str) -> bool:
    """
    Claim a job for one send attempt.

    Compare-and-set from pending / due failed to processing. The attempt is
    counted here, in the same statement, so attempts can never pass
    max_attempts and a crash after the claim still leaves a counted attempt.
    """
    with conn:
        cur = conn.execute(
            """UPDATE jobs
               SET status=?, attempts=attempts + 1, started_at=?, updated_at=?
               WHERE id=?
                 AND status IN (?, ?)
                 AND attempts < max_attempts
                 AND (next_attempt_at IS NULL OR next_attempt_at <= ?)""",
            (PROCESSING, now, now, job_id, PENDING, FAILED, now),
        )
    return cur.rowcount == 1


def mark_accepted(conn, job_id: str, started_at: str, now: str) -> bool:
    """Record that the endpoint took the job; it stays processing until the callback."""
    with conn:
        cur = conn.execute(
            """UPDATE jobs SET last_error=NULL, updated_at=?
               WHERE id=? AND status=? AND started_at=?""",
            (now, job_id, PROCESSING, started_at),
        )
    return cur.rowcount == 1


def mark_result(
    conn,
    job_id: str,
    outcome: Outcome,
    now: str,
    expected_status: Union[str, Sequence[str], None] = None,
    expected_attempts: Optional[int] = None,
    expected_started_at: Optional[str] = None,
) -> bool:
    """
    Apply a terminal or retry-eligible transition.

    Terminal jobs are never touched: re-applying an outcome to a completed or
    abandoned job is a no-op that returns False. The expected_* arguments turn
    the update into a compare-and-set against what the caller last read.
    """
    if outcome.status not in (COMPLETED, FAILED, ABANDONED):
        raise ValueError(f"Cannot apply outcome status {outcome.status!r}")

    sets = ["status=?", "updated_at=?", "last_error=?", "next_attempt_at=?"]
    params: list = [
        outcome.status,
        now,
        outcome.error[:_ERROR_MAX] if outcome.error else None,
        outcome.next_attempt_at,
    ]
    if outcome.status in TERMINAL_STATES:
        sets.append("finished_at=?")
        params.append(now)
    if outcome.result is not None:
        sets.append("result=?")
        params.append(json.dumps(outcome.result))
    if outcome.current_score is not None:
        sets.append("current_score=?")
        params.append(outcome.current_score)

    where = [f"id=? AND status NOT IN {_TERMINAL_SQL}"]
    params.append(job_id)
    if expected_status is not None:
        statuses = (expected_status,) if isinstance(expected_status, str) else tuple(expected_status)
        where.append(f"status IN ({', '.join('?' for _ in statuses)})")
        params.extend(statuses)
    if expected_attempts is not None:
        where.append("attempts=?")
        params.append(expected_attempts)
    if expected_started_at is not None:
        where.append("started_at=?")
        params.append(expected_started_at)
    if outcome.status == FAILED:
        where.append("attempts < max_attempts")

    with conn:
        cur = conn.execute(
            f"UPDATE jobs SET {', '.join(sets)} WHERE {' AND '.join(where)}",
            params,
        )
    return cur.rowcount == 1


def list_stuck(conn, cutoff: str) -> List[Job]:
    rows = conn.execute(
        """SELECT * FROM jobs
           WHERE status=? AND started_at IS NOT NULL AND started_at <= ?
           ORDER BY started_at ASC""",
        (PROCESSING, cutoff),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def remove_job(conn, job_id: str) -> bool:
    with conn:
        cur = conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
    return cur.rowcount == 1


def purge_finished(conn, older_than: str) -> int:
    """Delete terminal jobs that finished before `older_than`."""
    try:
        with conn:
            cur = conn.execute(
                f"""DELETE FROM jobs
                    WHERE status IN {_TERMINAL_SQL}
                      AND COALESCE(finished_at, updated_at) < ?""",
                (older_than,),
            )
        return cur.rowcount
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during purge: {e}")


# ---------- Queries ----------
def active_job_for_subject(conn, subject_id: str) -> Optional[Job]:
    row = conn.execute(
        f"""SELECT * FROM jobs
            WHERE subject_id=? AND status NOT IN {_TERMINAL_SQL}
            ORDER BY created_at ASC LIMIT 1""",
        (subject_id,),
    ).fetchone()
    return Job.from_row(row) if row else None


def jobs_for_subject(conn, subject_id: str, limit: Optional[int] = 10) -> List[Job]:
    """Newest first. limit=None returns the whole history."""
    sql = "SELECT * FROM jobs WHERE subject_id=? ORDER BY created_at DESC, rowid DESC"
    params: list = [subject_id]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    rows = conn.execute(sql, params).fetchall()
    return [Job.from_row(r) for r in rows]


def list_jobs(conn, status: Optional[str] = None, limit: int = 100) -> Iterable[Job]:
    if status:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE status=? ORDER BY priority DESC, created_at ASC LIMIT ?",
            (status, int(limit)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (int(limit),)
        ).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
        if r["status"] in out:
            out[r["status"]] = r["c"]
    out["total"] = sum(out[s] for s in STATES)
    return out


def stats(conn) -> Dict[str, float]:
    out: Dict[str, float] = dict(counts(conn))
    finished = out[COMPLETED] + out[ABANDONED]
    out["success_rate"] = round(out[COMPLETED] * 100.0 / finished, 2) if finished else 0.0

    durations = []
    for r in conn.execute(
        "SELECT started_at, finished_at FROM jobs "
        "WHERE status=? AND started_at IS NOT NULL AND finished_at IS NOT NULL",
        (COMPLETED,),
    ):
        delta = parse_iso(r["finished_at"]) - parse_iso(r["started_at"])
        durations.append(delta.total_seconds())
    out["avg_processing_seconds"] = round(sum(durations) / len(durations), 2) if durations else 0.0

    # score gained by each completed job over the previous scored job for its subject
    improvement = conn.execute(
        """SELECT AVG(j1.current_score - (
               SELECT j2.current_score FROM jobs j2
               WHERE j2.subject_id = j1.subject_id
                 AND j2.created_at < j1.created_at
                 AND j2.current_score IS NOT NULL
               ORDER BY j2.created_at DESC LIMIT 1
           )) AS improvement
           FROM jobs j1
           WHERE j1.status=? AND j1.current_score IS NOT NULL""",
        (COMPLETED,),
    ).fetchone()["improvement"]
    out["avg_score_improvement"] = round(improvement, 2) if improvement is not None else 0.0
    return out
