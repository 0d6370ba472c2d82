import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidTransitionError, JobNotFoundError, QueueFullError
from .models import DEFAULTS, Job, JobStatus
from .utils import iso, new_id, utcnow

logger = logging.getLogger(__name__)

_local = threading.local()

# fields update_job() may touch; status moves only through the transition functions
_PATCHABLE = {"priority", "payload", "external_job_id", "callback_data", "error_message"}


def data_dir() -> Path:
    return Path(os.environ.get("RENDERQ_HOME", Path.home() / ".renderq"))


def db_path() -> Path:
    return data_dir() / "queue.db"


def get_conn() -> sqlite3.Connection:
    """One connection per thread and database path."""
    path = db_path()
    conns = getattr(_local, "conns", None)
    if conns is None:
        conns = _local.conns = {}
    conn = conns.get(path)
    if conn is None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # autocommit; multi-statement changes open BEGIN IMMEDIATE themselves
        conn = sqlite3.connect(path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conns[path] = conn
        init_db(conn)
    return conn


def with_conn(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        conn = get_conn()
        return fn(conn, *args, **kwargs)
    return wrapper


class _immediate:
    """BEGIN IMMEDIATE ... COMMIT, rolled back on error. Only one writer wins."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def __enter__(self):
        self.conn.execute("BEGIN IMMEDIATE")
        return self.conn

    def __exit__(self, exc_type, exc, tb):
        self.conn.execute("ROLLBACK" if exc_type else "COMMIT")
        return False


def init_db(conn: sqlite3.Connection):
    conn.executescript(
        """
        PRAGMA journal_mode=WAL;
        CREATE TABLE IF NOT EXISTS jobs(
          id TEXT PRIMARY KEY,
          type TEXT NOT NULL,
          status TEXT NOT NULL,
          priority INTEGER NOT NULL DEFAULT 0,
          attempts INTEGER NOT NULL DEFAULT 0,
          max_attempts INTEGER NOT NULL,
          engine_id TEXT NOT NULL,
          payload TEXT NOT NULL DEFAULT '{}',
          external_job_id TEXT,
          callback_data TEXT,
          error_message TEXT,
          worker_id TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          next_run_at TEXT NOT NULL,
          started_at TEXT,
          completed_at TEXT,
          CHECK (attempts <= max_attempts)
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, created_at);
        CREATE INDEX IF NOT EXISTS idx_jobs_external ON jobs(external_job_id);
        CREATE TABLE IF NOT EXISTS config(
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS engine_outcomes(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          engine_id TEXT NOT NULL,
          ok INTEGER NOT NULL,
          recorded_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_outcomes_engine ON engine_outcomes(engine_id, id);
        CREATE TABLE IF NOT EXISTS workers(
          id TEXT PRIMARY KEY,
          pid INTEGER NOT NULL,
          started_at TEXT NOT NULL,
          stopped_at TEXT
        );
        """
    )
    # defaults
    for k, v in DEFAULTS.items():
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
            (k, str(v)),
        )
    conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _load(conn: sqlite3.Connection, job_id: str) -> Job:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    if row is None:
        raise JobNotFoundError(job_id)
    return Job.from_row(row)


def backoff_delay(attempts: int, base: float = 2.0, max_delay: Optional[float] = None) -> float:
    """delay = base ** attempts, capped at max_delay"""
    delay = float(base) ** int(attempts)
    if max_delay is not None:
        delay = min(delay, float(max_delay))
    return delay


# -----------------------------
# Enqueue / read
# -----------------------------
@with_conn
def enqueue_job(
    conn,
    engine_id: str,
    payload: Optional[Dict[str, Any]] = None,
    job_type: str = "render",
    priority: int = 0,
    max_attempts: Optional[int] = None,
    max_depth: Optional[int] = None,
    job_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Insert a queued job. Raises QueueFullError once max_depth jobs are waiting."""
    if max_attempts is None:
        max_attempts = int(config_get("max_attempts", str(DEFAULTS["max_attempts"])))
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if max_depth is None:
        max_depth = int(config_get("max_queue_depth", str(DEFAULTS["max_queue_depth"])))
    ts = iso(now or utcnow())
    job_id = job_id or new_id("job")
    with _immediate(conn):
        waiting = conn.execute("SELECT COUNT(*) FROM jobs WHERE status='queued'").fetchone()[0]
        if max_depth and waiting >= max_depth:
            raise QueueFullError(waiting)
        conn.execute(
            """INSERT INTO jobs(id,type,status,priority,attempts,max_attempts,engine_id,payload,
                                created_at,updated_at,next_run_at)
               VALUES(?,?,'queued',?,0,?,?,?,?,?,?)""",
            (job_id, job_type, priority, max_attempts, engine_id, _dumps(payload or {}), ts, ts, ts),
        )
    logger.info("Enqueued job %s for %s (priority %d)", job_id, engine_id, priority)
    return get_job(job_id)


@with_conn
def get_job(conn, job_id: str) -> Job:
    return _load(conn, job_id)


@with_conn
def find_by_external_id(conn, external_job_id: str) -> Optional[Job]:
    row = conn.execute(
        "SELECT * FROM jobs WHERE external_job_id=? ORDER BY created_at DESC LIMIT 1",
        (external_job_id,),
    ).fetchone()
    return Job.from_row(row) if row else None


@with_conn
def list_jobs(conn, status: Optional[str] = None) -> List[Job]:
    if status:
        cur = conn.execute("SELECT * FROM jobs WHERE status=? ORDER BY created_at, rowid", (status,))
    else:
        cur = conn.execute("SELECT * FROM jobs ORDER BY created_at, rowid")
    return [Job.from_row(r) for r in cur.fetchall()]


@with_conn
def list_processing_external(conn) -> List[Job]:
    cur = conn.execute(
        "SELECT * FROM jobs WHERE status='processing' AND external_job_id IS NOT NULL ORDER BY updated_at"
    )
    return [Job.from_row(r) for r in cur.fetchall()]


@with_conn
def counts_by_state(conn) -> List[Tuple[str, int]]:
    cur = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status ORDER BY status")
    return [(r[0], r[1]) for r in cur.fetchall()]


@with_conn
def queue_stats(conn, now: Optional[datetime] = None) -> Dict[str, Any]:
    counts = dict(counts_by_state())
    oldest = conn.execute("SELECT MIN(created_at) FROM jobs WHERE status='queued'").fetchone()[0]
    oldest_age = None
    if oldest:
        oldest_age = ((now or utcnow()) - datetime.fromisoformat(oldest)).total_seconds()
    return {
        "waiting": counts.get(JobStatus.QUEUED.value, 0),
        "active": counts.get(JobStatus.PROCESSING.value, 0),
        "completed": counts.get(JobStatus.COMPLETED.value, 0),
        "failed": counts.get(JobStatus.FAILED.value, 0),
        "oldest_waiting_sec": oldest_age,
    }


# -----------------------------
# Claim (queued -> processing)
# -----------------------------
_CLAIM_SQL = """
    UPDATE jobs
       SET status='processing', attempts=attempts+1, started_at=?, updated_at=?, worker_id=?
     WHERE id=? AND status='queued' AND attempts < max_attempts
"""


@with_conn
def claim_next(conn, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
    """Atomically move the best claimable job to processing."""
    ts = iso(now or utcnow())
    with _immediate(conn):
        row = conn.execute(
            """
            SELECT id FROM jobs
             WHERE status='queued' AND next_run_at <= ? AND attempts < max_attempts
             ORDER BY priority DESC, created_at ASC, rowid ASC
             LIMIT 1
            """,
            (ts,),
        ).fetchone()
        if not row:
            return None
        conn.execute(_CLAIM_SQL, (ts, ts, worker_id, row["id"]))
        job = _load(conn, row["id"])
    logger.debug("Worker %s claimed %s (attempt %d/%d)", worker_id, job.id, job.attempts, job.max_attempts)
    return job


@with_conn
def claim(conn, job_id: str, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
    """Compare-and-swap claim of one specific job; None if someone else got it."""
    ts = iso(now or utcnow())
    with _immediate(conn):
        cur = conn.execute(_CLAIM_SQL, (ts, ts, worker_id, job_id))
        if cur.rowcount != 1:
            return None
        return _load(conn, job_id)


# -----------------------------
# Updates and terminal transitions
# -----------------------------
@with_conn
def update_job(conn, job_id: str, patch: Dict[str, Any], now: Optional[datetime] = None) -> Job:
    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise ValueError(f"cannot patch field(s): {', '.join(sorted(unknown))}")
    ts = iso(now or utcnow())
    values = {k: (_dumps(v) if k in ("payload", "callback_data") else v) for k, v in patch.items()}
    with _immediate(conn):
        job = _load(conn, job_id)
        if job.terminal:
            raise InvalidTransitionError(job_id, job.status.value)
        assignments = ", ".join(f"{k}=:{k}" for k in values)
        sep = ", " if assignments else ""
        conn.execute(
            f"UPDATE jobs SET {assignments}{sep}updated_at=:updated_at WHERE id=:id",
            {**values, "updated_at": ts, "id": job_id},
        )
        return _load(conn, job_id)


def set_external_job_id(job_id: str, external_job_id: str) -> Job:
    return update_job(job_id, {"external_job_id": external_job_id})


@with_conn
def complete_job(
    conn, job_id: str, callback_data: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None
) -> Job:
    ts = iso(now or utcnow())
    with _immediate(conn):
        job = _load(conn, job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidTransitionError(job_id, job.status.value, JobStatus.COMPLETED.value)
        data = dict(job.callback_data or {})
        data.update(callback_data or {})
        conn.execute(
            """UPDATE jobs SET status='completed', callback_data=?, error_message=NULL,
                               completed_at=?, updated_at=?, worker_id=NULL
                WHERE id=? AND status='processing'""",
            (_dumps(data), ts, ts, job_id),
        )
        job = _load(conn, job_id)
    logger.info("Job %s completed", job_id)
    return job


@with_conn
def fail_job(
    conn,
    job_id: str,
    error: str,
    now: Optional[datetime] = None,
    backoff_base: Optional[float] = None,
    backoff_max: Optional[float] = None,
) -> Job:
    """
    Record a failed attempt. With attempts left the job goes back to queued
    after an exponential backoff; otherwise it becomes terminal `failed`.
    """
    current = now or utcnow()
    ts = iso(current)
    if backoff_base is None:
        backoff_base = float(config_get("backoff_base", str(DEFAULTS["backoff_base"])))
    if backoff_max is None:
        backoff_max = float(config_get("backoff_max_sec", str(DEFAULTS["backoff_max_sec"])))
    error = (error or "")[:512]
    with _immediate(conn):
        job = _load(conn, job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidTransitionError(job_id, job.status.value, JobStatus.FAILED.value)
        if job.attempts >= job.max_attempts:
            conn.execute(
                """UPDATE jobs SET status='failed', error_message=?, completed_at=?, updated_at=?, worker_id=NULL
                    WHERE id=? AND status='processing'""",
                (error, ts, ts, job_id),
            )
        else:
            delay = backoff_delay(job.attempts, backoff_base, backoff_max)
            conn.execute(
                """UPDATE jobs SET status='queued', error_message=?, next_run_at=?, updated_at=?,
                                   worker_id=NULL, external_job_id=NULL
                    WHERE id=? AND status='processing'""",
                (error, iso(current + timedelta(seconds=delay)), ts, job_id),
            )
        job = _load(conn, job_id)
    if job.status == JobStatus.FAILED:
        logger.warning("Job %s failed permanently after %d attempts: %s", job_id, job.attempts, error)
    else:
        logger.info("Job %s attempt %d failed, retry at %s: %s", job_id, job.attempts, iso(job.next_run_at), error)
    return job


# -----------------------------
# Stuck-job detection
# -----------------------------
@with_conn
def list_stuck(conn, threshold_sec: float, now: Optional[datetime] = None) -> List[Job]:
    cutoff = iso((now or utcnow()) - timedelta(seconds=threshold_sec))
    cur = conn.execute(
        "SELECT * FROM jobs WHERE status='processing' AND updated_at < ? ORDER BY updated_at",
        (cutoff,),
    )
    return [Job.from_row(r) for r in cur.fetchall()]


def recover_stuck(threshold_sec: float, now: Optional[datetime] = None) -> List[Job]:
    """Fail-and-retry every job stuck in processing longer than threshold_sec."""
    recovered = []
    for job in list_stuck(threshold_sec, now=now):
        try:
            recovered.append(fail_job(job.id, f"stuck in processing for more than {threshold_sec:g}s", now=now))
        except InvalidTransitionError:
            # completed or failed by someone else since listing
            continue
    return recovered


@with_conn
def requeue_copy(conn, job_id: str) -> Job:
    """Operator retry: clone a terminal failed job into a fresh queued job."""
    job = _load(conn, job_id)
    if job.status != JobStatus.FAILED:
        raise InvalidTransitionError(job_id, job.status.value, "requeue")
    payload = dict(job.payload)
    payload["retry_of"] = job.id
    return enqueue_job(
        job.engine_id,
        payload=payload,
        job_type=job.type,
        priority=job.priority,
        max_attempts=job.max_attempts,
    )


# -----------------------------
# Engine outcomes
# -----------------------------
@with_conn
def record_outcome(conn, engine_id: str, ok: bool, keep: int = 100):
    """Append one engine outcome and drop all but the newest `keep` for that engine."""
    with _immediate(conn):
        conn.execute(
            "INSERT INTO engine_outcomes(engine_id, ok, recorded_at) VALUES(?,?,?)",
            (engine_id, 1 if ok else 0, iso(utcnow())),
        )
        conn.execute(
            """DELETE FROM engine_outcomes
                WHERE engine_id=? AND id NOT IN (
                      SELECT id FROM engine_outcomes WHERE engine_id=? ORDER BY id DESC LIMIT ?)""",
            (engine_id, engine_id, keep),
        )


@with_conn
def recent_outcomes(conn, engine_id: str, window: int) -> List[bool]:
    """Newest first."""
    cur = conn.execute(
        "SELECT ok FROM engine_outcomes WHERE engine_id=? ORDER BY id DESC LIMIT ?",
        (engine_id, window),
    )
    return [bool(r[0]) for r in cur.fetchall()]


@with_conn
def outcome_engines(conn) -> List[str]:
    return [r[0] for r in conn.execute("SELECT DISTINCT engine_id FROM engine_outcomes ORDER BY engine_id")]


@with_conn
def clear_outcomes(conn):
    conn.execute("DELETE FROM engine_outcomes")


# -----------------------------
# Config and workers
# -----------------------------
@with_conn
def config_get(conn, key: str, default: Optional[str] = None) -> Optional[str]:
    cur = conn.execute("SELECT value FROM config WHERE key=?", (key,))
    row = cur.fetchone()
    return row[0] if row else default


@with_conn
def config_set(conn, key: str, value: str):
    conn.execute(
        "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )


@with_conn
def config_items(conn) -> Dict[str, str]:
    return {r[0]: r[1] for r in conn.execute("SELECT key, value FROM config ORDER BY key").fetchall()}


@with_conn
def register_worker(conn, wid: str, pid: int):
    conn.execute("INSERT INTO workers(id,pid,started_at) VALUES(?,?,?)", (wid, pid, iso(utcnow())))


@with_conn
def stop_worker_record(conn, wid: str):
    conn.execute("UPDATE workers SET stopped_at=? WHERE id=?", (iso(utcnow()), wid))


@with_conn
def list_workers(conn):
    return conn.execute("SELECT * FROM workers WHERE stopped_at IS NULL").fetchall()
