"""
Jobs storage layer.

Provides persistence for jobs, job access, applications, disputes and
the transition history. Job saves are compare-and-swap on `version`;
the history entry, any dispute change, the commission settled on
completion and any audit record are written in the same atomic step
as the job.
"""

import copy
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from jobflow.commerce.audit import AuditLog, AuditRecord
from jobflow.commerce.credits.models import CommissionPayment
from jobflow.commerce.credits.storage import CreditLedger
from jobflow.commerce.disputes.models import Dispute, DisputeStatus
from jobflow.commerce.errors import (
    AuditError,
    CommissionSettlementError,
    ConflictError,
    DuplicateAccessError,
    DuplicateApplicationError,
    JobNotFoundError,
)
from jobflow.commerce.jobs.models import (
    ApplicationStatus,
    Job,
    JobAccess,
    JobApplication,
    JobStateTransition,
    JobStatus,
)
from jobflow.types import utc_now

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Protocol for job persistence backends."""

    # Jobs
    def create_job(self, job: Job, transition: Optional[JobStateTransition] = None) -> Job:
        """Insert a new job. Returns the stored job."""
        ...

    def load(self, job_id: str) -> Optional[Job]:
        """Get a job by ID (a private copy the caller may mutate)."""
        ...

    def save(
        self,
        job: Job,
        expected_version: int,
        transition: Optional[JobStateTransition] = None,
        dispute: Optional[Dispute] = None,
        commission: Optional[CommissionPayment] = None,
        audit: Optional[AuditRecord] = None,
    ) -> Job:
        """Compare-and-swap save.

        Writes the job with version expected_version + 1, plus the history
        entry, dispute, settled commission and audit record, atomically.
        An outstanding commission left on the job by an earlier attempt
        that never committed is replaced.

        Raises:
            ConflictError: If the stored version is not expected_version
            JobNotFoundError: If the job does not exist
            CommissionSettlementError: If the commission cannot be recorded
            AuditError: If the audit record cannot be recorded
        """
        ...

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        customer_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        timeout_before: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs with optional filters."""
        ...

    # Access
    def save_access(self, access: JobAccess) -> JobAccess:
        """Record access. Raises DuplicateAccessError if one exists."""
        ...

    def get_access(self, job_id: str, contractor_id: str) -> Optional[JobAccess]:
        ...

    def list_access(
        self, job_id: Optional[str] = None, contractor_id: Optional[str] = None
    ) -> List[JobAccess]:
        ...

    # Applications
    def save_application(self, application: JobApplication) -> JobApplication:
        """Record an application. Raises DuplicateApplicationError if one exists."""
        ...

    def get_application(self, application_id: str) -> Optional[JobApplication]:
        ...

    def list_applications(
        self,
        job_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
    ) -> List[JobApplication]:
        ...

    def update_application_status(self, application_id: str, status: ApplicationStatus) -> bool:
        ...

    # Disputes
    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        ...

    def get_open_dispute(self, job_id: str) -> Optional[Dispute]:
        ...

    def list_disputes(
        self, status: Optional[DisputeStatus] = None, job_id: Optional[str] = None
    ) -> List[Dispute]:
        ...

    # Transitions (audit log)
    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Get all state transitions for a job, oldest first."""
        ...


class InMemoryJobStorage:
    """In-memory job storage for testing and local development.

    Commissions and audit records passed to `save` are written to the
    bound ledger and audit log while the store lock is held; a failure
    undoes the partial write and leaves the job untouched.
    """

    def __init__(
        self,
        ledger: Optional[CreditLedger] = None,
        audit_log: Optional[AuditLog] = None,
    ):
        """Initialize empty storage.

        Args:
            ledger: Credit ledger receiving commissions settled on completion
            audit_log: Audit log receiving records written with a job save
        """
        self.ledger = ledger
        self.audit_log = audit_log
        self._jobs: Dict[str, Job] = {}
        self._access: Dict[Tuple[str, str], JobAccess] = {}
        self._applications: Dict[str, JobApplication] = {}
        self._disputes: Dict[str, Dispute] = {}
        self._transitions: Dict[str, List[JobStateTransition]] = {}  # job_id -> list
        self._lock = threading.RLock()

    # === Jobs ===

    def create_job(self, job: Job, transition: Optional[JobStateTransition] = None) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ConflictError("jobs", job.id, None, self._jobs[job.id].version)
            stored = replace(copy.deepcopy(job), version=1)
            self._jobs[job.id] = stored
            self._transitions[job.id] = [transition] if transition else []
            return copy.deepcopy(stored)

    def load(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def save(
        self,
        job: Job,
        expected_version: int,
        transition: Optional[JobStateTransition] = None,
        dispute: Optional[Dispute] = None,
        commission: Optional[CommissionPayment] = None,
        audit: Optional[AuditRecord] = None,
    ) -> Job:
        with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(f"Job {job.id} not found")
            if current.version != expected_version:
                raise ConflictError("jobs", job.id, expected_version, current.version)

            if commission is not None:
                self._write_commission(commission)
            if audit is not None:
                try:
                    self._write_audit(audit)
                except AuditError:
                    if commission is not None:
                        self._undo_commission(commission)
                    raise

            stored = replace(copy.deepcopy(job), version=expected_version + 1)
            self._jobs[job.id] = stored
            if transition is not None:
                self._transitions.setdefault(job.id, []).append(transition)
            if dispute is not None:
                self._disputes[dispute.id] = copy.deepcopy(dispute)
            return copy.deepcopy(stored)

    def _write_commission(self, commission: CommissionPayment) -> None:
        if self.ledger is None:
            raise CommissionSettlementError(
                f"No credit ledger bound; cannot record commission for job {commission.job_id}"
            )
        try:
            # The version check proved the stored job was not yet completed
            self.ledger.save_commission(commission, replace_unsettled=True)
        except CommissionSettlementError:
            raise
        except Exception as e:
            logger.error("Commission write for job %s failed: %s", commission.job_id, e)
            raise CommissionSettlementError(
                f"Could not record commission for job {commission.job_id}"
            ) from e

    def _write_audit(self, record: AuditRecord) -> None:
        if self.audit_log is None:
            raise AuditError(f"No audit log bound; cannot record {record.action} on {record.subject_id}")
        try:
            self.audit_log.append(record)
        except Exception as e:
            logger.error("Audit append for %s on %s failed: %s", record.action, record.subject_id, e)
            raise AuditError(f"Could not record {record.action} on {record.subject_id}") from e

    def _undo_commission(self, commission: CommissionPayment) -> None:
        try:
            self.ledger.delete_commission(commission.id)
        except Exception:
            logger.exception(
                "Could not remove commission %s for job %s after a failed save",
                commission.id,
                commission.job_id,
            )

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        customer_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        timeout_before: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        with self._lock:
            jobs = [copy.deepcopy(j) for j in self._jobs.values()]

        if status is not None:
            status_val = status.value if isinstance(status, JobStatus) else status
            jobs = [j for j in jobs if j.status == status_val]
        if customer_id is not None:
            jobs = [j for j in jobs if j.customer_id == customer_id]
        if contractor_id is not None:
            jobs = [j for j in jobs if j.won_by_contractor_id == contractor_id]
        if timeout_before is not None:
            jobs = [
                j
                for j in jobs
                if j.final_price_timeout_at is not None and j.final_price_timeout_at <= timeout_before
            ]

        # Sort by created_at desc
        jobs.sort(key=lambda j: j.created_at or utc_now(), reverse=True)
        return jobs[offset : offset + limit]

    # === Access ===

    def save_access(self, access: JobAccess) -> JobAccess:
        key = (access.job_id, access.contractor_id)
        with self._lock:
            if key in self._access:
                raise DuplicateAccessError(
                    f"Contractor {access.contractor_id} already has access to job {access.job_id}"
                )
            self._access[key] = copy.deepcopy(access)
        return access

    def get_access(self, job_id: str, contractor_id: str) -> Optional[JobAccess]:
        with self._lock:
            access = self._access.get((job_id, contractor_id))
            return copy.deepcopy(access) if access else None

    def list_access(
        self, job_id: Optional[str] = None, contractor_id: Optional[str] = None
    ) -> List[JobAccess]:
        with self._lock:
            result = [copy.deepcopy(a) for a in self._access.values()]
        if job_id is not None:
            result = [a for a in result if a.job_id == job_id]
        if contractor_id is not None:
            result = [a for a in result if a.contractor_id == contractor_id]
        result.sort(key=lambda a: a.purchased_at)
        return result

    # === Applications ===

    def save_application(self, application: JobApplication) -> JobApplication:
        with self._lock:
            for existing in self._applications.values():
                if (
                    existing.job_id == application.job_id
                    and existing.contractor_id == application.contractor_id
                ):
                    raise DuplicateApplicationError(
                        f"Contractor {application.contractor_id} already applied to job {application.job_id}"
                    )
            self._applications[application.id] = copy.deepcopy(application)
        return application

    def get_application(self, application_id: str) -> Optional[JobApplication]:
        with self._lock:
            app = self._applications.get(application_id)
            return copy.deepcopy(app) if app else None

    def list_applications(
        self,
        job_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
    ) -> List[JobApplication]:
        with self._lock:
            apps = [copy.deepcopy(a) for a in self._applications.values()]

        if job_id is not None:
            apps = [a for a in apps if a.job_id == job_id]
        if contractor_id is not None:
            apps = [a for a in apps if a.contractor_id == contractor_id]
        if status is not None:
            status_val = status.value if isinstance(status, ApplicationStatus) else status
            apps = [a for a in apps if a.status == status_val]

        apps.sort(key=lambda a: a.applied_at or utc_now())
        return apps

    def update_application_status(self, application_id: str, status: ApplicationStatus) -> bool:
        with self._lock:
            app = self._applications.get(application_id)
            if not app:
                return False
            app.status = status.value if isinstance(status, ApplicationStatus) else status
            return True

    # === Disputes ===

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        with self._lock:
            dispute = self._disputes.get(dispute_id)
            return copy.deepcopy(dispute) if dispute else None

    def get_open_dispute(self, job_id: str) -> Optional[Dispute]:
        open_disputes = self.list_disputes(status=DisputeStatus.OPEN, job_id=job_id)
        return open_disputes[-1] if open_disputes else None

    def list_disputes(
        self, status: Optional[DisputeStatus] = None, job_id: Optional[str] = None
    ) -> List[Dispute]:
        with self._lock:
            disputes = [copy.deepcopy(d) for d in self._disputes.values()]
        if status is not None:
            status_val = status.value if isinstance(status, DisputeStatus) else status
            disputes = [d for d in disputes if d.status == status_val]
        if job_id is not None:
            disputes = [d for d in disputes if d.job_id == job_id]
        disputes.sort(key=lambda d: d.opened_at or utc_now())
        return disputes

    # === Transitions ===

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        with self._lock:
            transitions = list(self._transitions.get(job_id, []))
        # Sort by created_at asc
        return sorted(transitions, key=lambda t: t.created_at or utc_now())
