"""SQLite storage for jobflow.

One connection per operation; `_connect()` commits on success, rolls
back on error and always closes. Deadlines and versions live in the
database, so they survive process restarts and are shared by every
process pointed at the same file.
"""

import contextlib
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from jobflow.commerce.audit import AuditRecord
from jobflow.commerce.credits.models import CommissionPayment
from jobflow.commerce.disputes.models import Dispute, DisputeStatus
from jobflow.commerce.errors import (
    AuditError,
    CommissionSettlementError,
    ConflictError,
    DuplicateAccessError,
    DuplicateApplicationError,
    DuplicateCommissionError,
    JobNotFoundError,
    WorkflowError,
)
from jobflow.commerce.jobs.models import (
    ApplicationStatus,
    Job,
    JobAccess,
    JobApplication,
    JobStateTransition,
    JobStatus,
)
from jobflow.storage.schema import init_db, sortable_ts
from jobflow.types import utc_now

logger = logging.getLogger(__name__)


def get_jobflow_home() -> Path:
    """Directory for local jobflow data (JOBFLOW_HOME or ~/.jobflow)."""
    return Path(os.environ.get("JOBFLOW_HOME") or Path.home() / ".jobflow")


def default_db_path() -> Path:
    return get_jobflow_home() / "jobflow.db"


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True)


def _value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def write_commission(
    conn: sqlite3.Connection,
    commission: CommissionPayment,
    replace_unsettled: bool = False,
) -> None:
    """Insert a commission row inside the caller's transaction.

    With replace_unsettled, an outstanding (PENDING or OVERDUE) row already
    held by the job is replaced. Only a caller that knows the job never
    committed its completion may ask for that.

    Raises:
        DuplicateCommissionError: If the job already has a commission
        CommissionSettlementError: If the existing commission was paid or waived
    """
    if replace_unsettled:
        row = conn.execute(
            "SELECT data FROM commission_payments WHERE job_id = ?", (commission.job_id,)
        ).fetchone()
        if row is not None:
            stale = CommissionPayment.from_dict(json.loads(row["data"]))
            if not stale.is_outstanding:
                raise CommissionSettlementError(
                    f"Job {commission.job_id} already has a {stale.status} commission {stale.id}"
                )
            conn.execute("DELETE FROM commission_payments WHERE id = ?", (stale.id,))
            logger.warning(
                "Replacing stale commission %s for job %s with %s",
                stale.id,
                commission.job_id,
                commission.id,
            )
    try:
        conn.execute(
            """INSERT INTO commission_payments
               (id, job_id, contractor_id, status, due_date, data)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                commission.id,
                commission.job_id,
                commission.contractor_id,
                commission.status,
                sortable_ts(commission.due_date),
                _dumps(commission.to_dict()),
            ),
        )
    except sqlite3.IntegrityError as e:
        raise DuplicateCommissionError(
            f"Commission already exists for job {commission.job_id}"
        ) from e


def write_audit_record(conn: sqlite3.Connection, record: AuditRecord) -> None:
    """Append an audit record inside the caller's transaction."""
    seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM audit_records").fetchone()[0]
    conn.execute(
        """INSERT INTO audit_records (id, action, subject_id, seq, created_at, data)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            record.id,
            record.action,
            record.subject_id,
            seq,
            sortable_ts(record.created_at or utc_now()),
            _dumps(record.to_dict()),
        ),
    )


class SQLiteDatabase:
    """Base for SQLite-backed stores sharing one database file."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        path = Path(db_path) if db_path else default_db_path()
        if str(path) == ":memory:":
            raise ValueError("SQLite stores need a file path; use the in-memory stores instead")
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = path
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection.

        Prefer the _connect() context manager, which handles both
        commit/rollback and close.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug("Transaction failed, rolling back: %s", e)
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            init_db(conn)

    def close(self) -> None:
        """Connections are per-operation; nothing to release."""


class SQLiteJobStorage(SQLiteDatabase):
    """JobStore backed by SQLite.

    `save` is a single transaction: a version-checked UPDATE of the job,
    the history entry, the dispute row, the settled commission and the
    audit record commit together or not at all. Commissions land in the
    ledger's table, so the credit ledger must use the same database file.
    """

    # === Jobs ===

    def create_job(self, job: Job, transition: Optional[JobStateTransition] = None) -> Job:
        job.version = 1
        with self._connect() as conn:
            try:
                conn.execute(
                    """INSERT INTO jobs
                       (id, customer_id, status, won_by_contractor_id,
                        final_price_timeout_at, version, created_at, data)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        job.id,
                        job.customer_id,
                        job.status,
                        job.won_by_contractor_id,
                        sortable_ts(job.final_price_timeout_at),
                        job.version,
                        sortable_ts(job.created_at or utc_now()),
                        _dumps(job.to_dict()),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("jobs", job.id, None, None) from e
            if transition is not None:
                self._insert_transition(conn, transition)
        return job

    def load(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT version, data FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def save(
        self,
        job: Job,
        expected_version: int,
        transition: Optional[JobStateTransition] = None,
        dispute: Optional[Dispute] = None,
        commission: Optional[CommissionPayment] = None,
        audit: Optional[AuditRecord] = None,
    ) -> Job:
        new_version = expected_version + 1
        job.version = new_version
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE jobs
                   SET status = ?, won_by_contractor_id = ?, final_price_timeout_at = ?,
                       version = ?, data = ?
                   WHERE id = ? AND version = ?""",
                (
                    job.status,
                    job.won_by_contractor_id,
                    sortable_ts(job.final_price_timeout_at),
                    new_version,
                    _dumps(job.to_dict()),
                    job.id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                row = conn.execute("SELECT version FROM jobs WHERE id = ?", (job.id,)).fetchone()
                job.version = expected_version
                if row is None:
                    raise JobNotFoundError(f"Job {job.id} not found")
                raise ConflictError("jobs", job.id, expected_version, row["version"])
            if transition is not None:
                self._insert_transition(conn, transition)
            if dispute is not None:
                conn.execute(
                    """INSERT OR REPLACE INTO disputes (id, job_id, status, opened_at, data)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        dispute.id,
                        dispute.job_id,
                        dispute.status,
                        sortable_ts(dispute.opened_at or utc_now()),
                        _dumps(dispute.to_dict()),
                    ),
                )
            try:
                if commission is not None:
                    # The CAS above proved the stored job was not yet completed
                    write_commission(conn, commission, replace_unsettled=True)
                if audit is not None:
                    try:
                        write_audit_record(conn, audit)
                    except sqlite3.Error as e:
                        raise AuditError(f"Could not record {audit.action} for job {job.id}") from e
            except WorkflowError:
                job.version = expected_version
                raise
        return job

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        customer_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        timeout_before=None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        query = "SELECT version, data FROM jobs WHERE 1=1"
        params: List[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(_value(status))
        if customer_id is not None:
            query += " AND customer_id = ?"
            params.append(customer_id)
        if contractor_id is not None:
            query += " AND won_by_contractor_id = ?"
            params.append(contractor_id)
        if timeout_before is not None:
            query += " AND final_price_timeout_at IS NOT NULL AND final_price_timeout_at <= ?"
            params.append(sortable_ts(timeout_before))
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    # === Access ===

    def save_access(self, access: JobAccess) -> JobAccess:
        with self._connect() as conn:
            try:
                conn.execute(
                    """INSERT INTO job_access (id, job_id, contractor_id, purchased_at, data)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        access.id,
                        access.job_id,
                        access.contractor_id,
                        sortable_ts(access.purchased_at),
                        _dumps(access.to_dict()),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateAccessError(
                    f"Contractor {access.contractor_id} already has access to job {access.job_id}"
                ) from e
        return access

    def get_access(self, job_id: str, contractor_id: str) -> Optional[JobAccess]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM job_access WHERE job_id = ? AND contractor_id = ?",
                (job_id, contractor_id),
            ).fetchone()
        return JobAccess.from_dict(json.loads(row["data"])) if row else None

    def list_access(
        self, job_id: Optional[str] = None, contractor_id: Optional[str] = None
    ) -> List[JobAccess]:
        query = "SELECT data FROM job_access WHERE 1=1"
        params: List[Any] = []
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        if contractor_id is not None:
            query += " AND contractor_id = ?"
            params.append(contractor_id)
        query += " ORDER BY purchased_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [JobAccess.from_dict(json.loads(r["data"])) for r in rows]

    # === Applications ===

    def save_application(self, application: JobApplication) -> JobApplication:
        with self._connect() as conn:
            try:
                conn.execute(
                    """INSERT INTO job_applications
                       (id, job_id, contractor_id, status, applied_at, data)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        application.id,
                        application.job_id,
                        application.contractor_id,
                        application.status,
                        sortable_ts(application.applied_at or utc_now()),
                        _dumps(application.to_dict()),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateApplicationError(
                    f"Contractor {application.contractor_id} already applied to job {application.job_id}"
                ) from e
        return application

    def get_application(self, application_id: str) -> Optional[JobApplication]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM job_applications WHERE id = ?", (application_id,)
            ).fetchone()
        return JobApplication.from_dict(json.loads(row["data"])) if row else None

    def list_applications(
        self,
        job_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
    ) -> List[JobApplication]:
        query = "SELECT data FROM job_applications WHERE 1=1"
        params: List[Any] = []
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        if contractor_id is not None:
            query += " AND contractor_id = ?"
            params.append(contractor_id)
        if status is not None:
            query += " AND status = ?"
            params.append(_value(status))
        query += " ORDER BY applied_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [JobApplication.from_dict(json.loads(r["data"])) for r in rows]

    def update_application_status(self, application_id: str, status: ApplicationStatus) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM job_applications WHERE id = ?", (application_id,)
            ).fetchone()
            if row is None:
                return False
            application = JobApplication.from_dict(json.loads(row["data"]))
            application.status = _value(status)
            conn.execute(
                "UPDATE job_applications SET status = ?, data = ? WHERE id = ?",
                (application.status, _dumps(application.to_dict()), application_id),
            )
        return True

    # === Disputes ===

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM disputes WHERE id = ?", (dispute_id,)).fetchone()
        return Dispute.from_dict(json.loads(row["data"])) if row else None

    def get_open_dispute(self, job_id: str) -> Optional[Dispute]:
        open_disputes = self.list_disputes(status=DisputeStatus.OPEN, job_id=job_id)
        return open_disputes[-1] if open_disputes else None

    def list_disputes(
        self, status: Optional[DisputeStatus] = None, job_id: Optional[str] = None
    ) -> List[Dispute]:
        query = "SELECT data FROM disputes WHERE 1=1"
        params: List[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(_value(status))
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        query += " ORDER BY opened_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Dispute.from_dict(json.loads(r["data"])) for r in rows]

    # === Transitions ===

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM job_transitions WHERE job_id = ? ORDER BY seq", (job_id,)
            ).fetchall()
        return [JobStateTransition.from_dict(json.loads(r["data"])) for r in rows]

    # === Helpers ===

    def _insert_transition(self, conn: sqlite3.Connection, transition: JobStateTransition) -> None:
        seq = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM job_transitions WHERE job_id = ?",
            (transition.job_id,),
        ).fetchone()[0]
        conn.execute(
            """INSERT INTO job_transitions (id, job_id, seq, created_at, data)
               VALUES (?, ?, ?, ?, ?)""",
            (
                transition.id,
                transition.job_id,
                seq,
                sortable_ts(transition.created_at or utc_now()),
                _dumps(transition.to_dict()),
            ),
        )

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        job = Job.from_dict(json.loads(row["data"]))
        job.version = row["version"]
        return job
