import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .db import connect_db
from .errors import DuplicateSubjectError, InvalidPayloadError, JobNotFoundError
from .events import EventBus, JOB_QUEUED, JOB_DISPATCHED, JOB_FAILED, JOB_ABANDONED
from .models import Job, Outcome, PRIORITIES, PENDING, PROCESSING, FAILED, ABANDONED
from .repository import get_job, insert_job, jobs_for_subject, mark_accepted, mark_processing, mark_result
from .retry import RetryPolicy
from .utils import iso_after_ms, to_iso, utc_now
from .webhook import WebhookClient

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Validates and enqueues optimization jobs and performs single send attempts.

    Every send goes through the atomic claim in the job store, so several
    dispatchers (threads or processes) can share one database safely.
    """

    def __init__(
        self,
        config: Config,
        db_path: Optional[str] = None,
        client: Optional[WebhookClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db_path = db_path
        self.client = client or WebhookClient(timeout_ms=config.timeout_ms, api_key=config.api_key)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config, clock=clock)
        self.events = events or EventBus()
        self.clock = clock

    def _connect(self):
        return connect_db(self.db_path)

    # ---------- Enqueue ----------
    def enqueue(
        self,
        subject_id: Any,
        payload: Dict[str, Any],
        priority: str = "normal",
        target_score: Optional[float] = None,
        current_score: Optional[float] = None,
        delay_seconds: Optional[int] = None,
    ) -> str:
        subject_id = self._validate(subject_id, payload, priority, target_score, current_score, delay_seconds)

        now = self.clock()
        ts = to_iso(now)
        job = Job(
            subject_id=subject_id,
            payload=payload,
            priority=priority,
            max_attempts=self.config.max_attempts,
            created_at=ts,
            updated_at=ts,
            next_attempt_at=iso_after_ms(now, delay_seconds * 1000) if delay_seconds else ts,
            target_score=target_score,
            current_score=current_score,
        )

        conn = self._connect()
        try:
            insert_job(conn, job, unique_active_subject=True)
        except DuplicateSubjectError as e:
            if self.config.on_duplicate == "reuse" and e.job_id:
                logger.info("enqueue.reused subject_id=%s job_id=%s", subject_id, e.job_id)
                return e.job_id
            logger.warning("enqueue.duplicate subject_id=%s active_job=%s", subject_id, e.job_id)
            raise
        finally:
            conn.close()

        logger.info("enqueue.queued job_id=%s subject_id=%s priority=%s", job.id, subject_id, priority)
        self.events.emit(JOB_QUEUED, job)
        return job.id

    @staticmethod
    def _validate(subject_id, payload, priority, target_score, current_score, delay_seconds) -> str:
        if isinstance(subject_id, bool) or not isinstance(subject_id, (str, int)):
            raise InvalidPayloadError("subject_id must be a string")
        subject_id = str(subject_id).strip()
        if not subject_id:
            raise InvalidPayloadError("subject_id is required")
        if not isinstance(payload, dict) or not payload:
            raise InvalidPayloadError("payload must be a non-empty JSON object")
        try:
            json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(f"payload is not JSON serializable: {e}")
        if not isinstance(priority, str) or priority not in PRIORITIES:
            raise InvalidPayloadError(f"priority must be one of {', '.join(PRIORITIES)}")
        for name, score in (("target_score", target_score), ("current_score", current_score)):
            if score is None:
                continue
            if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 100:
                raise InvalidPayloadError(f"{name} must be a number between 0 and 100")
        if delay_seconds is not None and delay_seconds <= 0:
            raise InvalidPayloadError("delay must be > 0 seconds")
        return subject_id

    # ---------- Dispatch ----------
    def build_request(self, job: Job, now: datetime) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "jobId": job.id,
            "attempt": job.attempts,
            "timestamp": to_iso(now),
            "priority": job.priority,
            "targetScore": job.target_score,
            "currentScore": job.current_score,
        }
        if self.config.callback_base_url:
            metadata["callbackUrl"] = f"{self.config.callback_base_url}/callback/{job.id}"
        return {"subjectId": job.subject_id, "payload": job.payload, "metadata": metadata}

    def dispatch(self, job_id: str) -> Optional[Job]:
        """
        Make one send attempt for a job.

        Returns the job as stored afterwards, or None when the claim was lost
        to another worker or the job is not claimable. Transport failures are
        never raised; they become failed/abandoned state.
        """
        endpoint = self.config.require_endpoint()
        claimed_at = self.clock()

        conn = self._connect()
        try:
            if not mark_processing(conn, job_id, to_iso(claimed_at)):
                logger.debug("dispatch.not_claimed job_id=%s", job_id)
                return None
            job = get_job(conn, job_id)

            logger.info("dispatch.sending job_id=%s attempt=%s/%s", job.id, job.attempts, job.max_attempts)
            result = self.client.send(
                endpoint,
                self.build_request(job, claimed_at),
                secret=self.config.secret,
                timeout_ms=self.config.timeout_ms,
            )

            done = self.clock()
            if result.accepted:
                if mark_accepted(conn, job.id, job.started_at, to_iso(done)):
                    logger.info("dispatch.accepted job_id=%s status_code=%s", job.id, result.status_code)
                    self.events.emit(JOB_DISPATCHED, job, response=result.body)
                else:
                    # a callback landed while the request was in flight
                    logger.info("dispatch.accepted_after_callback job_id=%s", job.id)
            else:
                self._apply_failure(conn, job, result.describe(), done)

            return get_job(conn, job_id)
        finally:
            conn.close()

    def _apply_failure(self, conn, job: Job, error: str, now: datetime) -> Optional[Outcome]:
        outcome = self.retry_policy.outcome_for_failure(
            job.attempts, error, max_attempts=job.max_attempts, now=now
        )
        applied = mark_result(
            conn,
            job.id,
            outcome,
            to_iso(now),
            expected_status=PROCESSING,
            expected_attempts=job.attempts,
            expected_started_at=job.started_at,
        )
        if not applied:
            logger.info("dispatch.failure_superseded job_id=%s error=%s", job.id, error)
            return None

        if outcome.status == FAILED:
            logger.warning(
                "dispatch.failed job_id=%s attempt=%s/%s next_attempt_at=%s error=%s",
                job.id, job.attempts, job.max_attempts, outcome.next_attempt_at, error,
            )
            self.events.emit(JOB_FAILED, job, error=error, next_attempt_at=outcome.next_attempt_at)
        else:
            logger.error("dispatch.abandoned job_id=%s attempts=%s error=%s", job.id, job.attempts, error)
            self.events.emit(JOB_ABANDONED, job, error=error)
        return outcome

    # ---------- Queries / control ----------
    def get_job(self, job_id: str) -> Job:
        conn = self._connect()
        try:
            job = get_job(conn, job_id)
        finally:
            conn.close()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_status(self, job_id: str) -> Dict[str, Any]:
        return self.get_job(job_id).to_status()

    def history(self, subject_id: str, limit: Optional[int] = 10) -> List[Job]:
        conn = self._connect()
        try:
            return jobs_for_subject(conn, str(subject_id), limit=limit)
        finally:
            conn.close()

    def cancel(self, job_id: str) -> bool:
        """Abandon a job that is not terminal and not in flight."""
        conn = self._connect()
        try:
            job = get_job(conn, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return self._cancel(conn, job)
        finally:
            conn.close()

    def cancel_subject(self, subject_id: str) -> List[str]:
        """Abandon every queued or failed job for a subject; in-flight jobs are left alone."""
        conn = self._connect()
        try:
            cancelled = [
                job.id
                for job in jobs_for_subject(conn, str(subject_id), limit=None)
                if job.status in (PENDING, FAILED) and self._cancel(conn, job)
            ]
        finally:
            conn.close()
        logger.info("dispatch.cancelled_subject subject_id=%s count=%s", subject_id, len(cancelled))
        return cancelled

    def _cancel(self, conn, job: Job) -> bool:
        cancelled = mark_result(
            conn,
            job.id,
            Outcome(status=ABANDONED, error="cancelled"),
            to_iso(self.clock()),
            expected_status=(PENDING, FAILED),
        )
        if cancelled:
            logger.info("dispatch.cancelled job_id=%s", job.id)
            self.events.emit(JOB_ABANDONED, job, error="cancelled")
        return cancelled
