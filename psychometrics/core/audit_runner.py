"""
Background thread audit job runner.

Provides a singleton AuditRunner that starts manual psychometric audits in a
background thread, with at most one audit running at a time.

- Uses threading.Thread (daemon=True) so the caller returns immediately
- Creates its own database session for the thread (never the caller's)
- In-memory dict tracks job state; _current_running_job_id is cleared in a
  finally block
- Only the most recent finished jobs are kept (AUDIT_JOB_HISTORY_LIMIT);
  older ones are pruned with their threads
"""
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from psychometrics.core.audit import get_last_audit_run, run_psychometric_audit
from psychometrics.core.config import settings
from psychometrics.core.data_sources import SqlItemCatalog, SqlResponseSource
from psychometrics.models.base import SessionLocal
from psychometrics.models.models import AuditTrigger

logger = logging.getLogger(__name__)


@dataclass
class AuditJobState:
    """State for a single audit job."""

    job_id: str
    status: str  # "running" | "completed" | "skipped" | "failed"
    trigger: AuditTrigger
    started_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[Dict] = None
    error_message: Optional[str] = None


class AuditRunner:
    """
    Singleton runner for psychometric audit jobs.

    Only one audit can run at a time; audits read every response in the
    pool and write every statistics table.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        history_limit: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._history_limit = (
            history_limit
            if history_limit is not None
            else settings.AUDIT_JOB_HISTORY_LIMIT
        )
        self._lock = threading.Lock()
        self._jobs: Dict[str, AuditJobState] = {}
        self._current_running_job_id: Optional[str] = None
        self._threads: Dict[str, threading.Thread] = {}

    def start_job(self, trigger: AuditTrigger = AuditTrigger.MANUAL) -> AuditJobState:
        """
        Start a new audit in a background thread.

        Returns:
            AuditJobState with job_id and initial status

        Raises:
            RuntimeError: If an audit is already running
        """
        with self._lock:
            if self._current_running_job_id is not None:
                current_job = self._jobs.get(self._current_running_job_id)
                if current_job and current_job.status == "running":
                    raise RuntimeError(
                        f"Audit job already running: {self._current_running_job_id}"
                    )

            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
            job_id = f"psychometric_audit_{timestamp}_{secrets.token_hex(4)}"

            job = AuditJobState(
                job_id=job_id,
                status="running",
                trigger=trigger,
                started_at=datetime.now(timezone.utc),
            )
            self._prune_finished_jobs()
            self._jobs[job_id] = job
            self._current_running_job_id = job_id

            thread = threading.Thread(
                target=self._run_audit_thread,
                args=(job_id, trigger),
                daemon=True,
            )
            self._threads[job_id] = thread
        thread.start()

        logger.info(f"Started audit job: {job_id}")
        return job

    def _run_audit_thread(self, job_id: str, trigger: AuditTrigger) -> None:
        """Run one audit with a dedicated database session."""
        db = None
        try:
            db = self._session_factory()
            summary = run_psychometric_audit(
                db,
                SqlResponseSource(db),
                SqlItemCatalog(db),
                last_run=get_last_audit_run(db),
                trigger=trigger,
            )

            with self._lock:
                job = self._jobs.get(job_id)
                if job:
                    job.completed_at = datetime.now(timezone.utc)
                    if summary is None:
                        job.status = "skipped"
                    else:
                        job.status = "completed"
                        job.result = {
                            "audit_run_id": summary.audit_run_id,
                            "items_initialized": summary.items_initialized,
                            "items_recalculated": summary.items_recalculated,
                            "calibrations_run": summary.calibrations_run,
                            "competencies_recalculated": summary.competencies_recalculated,
                            "traits_recalculated": summary.traits_recalculated,
                            "statuses_updated": summary.statuses_updated,
                            "failures": summary.failures,
                        }

            logger.info(f"Audit job {job_id} finished")

        except Exception as e:
            logger.exception(f"Audit job {job_id} failed with unexpected error")
            with self._lock:
                job = self._jobs.get(job_id)
                if job:
                    job.status = "failed"
                    job.completed_at = datetime.now(timezone.utc)
                    job.error_message = f"Unexpected error: {str(e)}"

        finally:
            if db:
                db.close()

            with self._lock:
                if self._current_running_job_id == job_id:
                    self._current_running_job_id = None
                self._prune_finished_jobs()

    def _prune_finished_jobs(self) -> None:
        """Drop the oldest finished jobs beyond the history limit. Caller holds the lock."""
        finished = [
            job_id for job_id, job in self._jobs.items() if job.status != "running"
        ]
        for job_id in finished[: max(0, len(finished) - self._history_limit)]:
            del self._jobs[job_id]
            self._threads.pop(job_id, None)

    def get_job(self, job_id: str) -> Optional[AuditJobState]:
        """State of an audit job, or None if the id is unknown."""
        with self._lock:
            return self._jobs.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[AuditJobState]:
        """Block until a job's thread finishes, then return its state."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_job(job_id)


# Singleton instance
audit_runner = AuditRunner()
