import json
import logging
from datetime import datetime
from typing import Callable, Optional, Union

from .config import Config
from .db import connect_db
from .errors import InvalidPayloadError, InvalidSignatureError, UnknownJobError
from .events import EventBus, JOB_COMPLETED, JOB_FAILED, JOB_ABANDONED
from .models import CallbackOutcome, Outcome, ReconcileResult, COMPLETED, FAILED
from .repository import get_job, mark_result
from .retry import RetryPolicy
from .utils import to_iso, utc_now, verify_signature

logger = logging.getLogger(__name__)

# Attempts to re-read and re-apply when a concurrent writer moved the job
# between our read and our conditional update.
MAX_CAS_ROUNDS = 3


def parse_callback(raw_body: Union[bytes, str]) -> CallbackOutcome:
    """Decode `{success: bool, result?: object, error?: string}`."""
    try:
        data = json.loads(raw_body)
    except (TypeError, ValueError):
        raise InvalidPayloadError("callback body is not valid JSON")
    if not isinstance(data, dict):
        raise InvalidPayloadError("callback body must be a JSON object")

    success = data.get("success")
    if not isinstance(success, bool):
        raise InvalidPayloadError("callback 'success' must be a boolean")
    result = data.get("result")
    if result is not None and not isinstance(result, dict):
        raise InvalidPayloadError("callback 'result' must be an object")
    error = data.get("error")
    if error is not None and not isinstance(error, str):
        error = json.dumps(error)
    return CallbackOutcome(success=success, result=result, error=error)


def _score_from(result: Optional[dict]) -> Optional[float]:
    if not result:
        return None
    score = result.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return None
    return float(score)


class CallbackReconciler:
    """Applies asynchronous results from the automation service to stored jobs."""

    def __init__(
        self,
        config: Config,
        db_path: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db_path = db_path
        self.retry_policy = retry_policy or RetryPolicy.from_config(config, clock=clock)
        self.events = events or EventBus()
        self.clock = clock

    def verify(self, job_id: str, signature: Optional[str], raw_body: bytes) -> None:
        if not self.config.secret:
            return
        if not verify_signature(self.config.secret, raw_body, signature):
            logger.warning(
                "reconcile.signature_mismatch job_id=%s signature_present=%s",
                job_id, bool(signature),
            )
            raise InvalidSignatureError(f"Invalid signature for job '{job_id}'")

    def reconcile(
        self,
        job_id: str,
        outcome: CallbackOutcome,
        signature: Optional[str],
        raw_body: Union[bytes, str],
    ) -> ReconcileResult:
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        self.verify(job_id, signature, raw_body)
        return self.apply(job_id, outcome)

    def apply(self, job_id: str, outcome: CallbackOutcome) -> ReconcileResult:
        """Apply an already-verified callback outcome. Idempotent on terminal jobs."""
        conn = connect_db(self.db_path)
        try:
            for _ in range(MAX_CAS_ROUNDS):
                job = get_job(conn, job_id)
                if job is None:
                    logger.warning("reconcile.unknown_job job_id=%s", job_id)
                    raise UnknownJobError(job_id)
                if job.is_terminal:
                    logger.info("reconcile.ignored_terminal job_id=%s status=%s", job_id, job.status)
                    return ReconcileResult(job_id=job_id, status=job.status, changed=False)

                now = self.clock()
                if outcome.success:
                    transition = Outcome(
                        status=COMPLETED,
                        result=outcome.result or {},
                        current_score=_score_from(outcome.result),
                    )
                else:
                    transition = self.retry_policy.outcome_for_failure(
                        job.attempts,
                        outcome.error or "reported failure",
                        max_attempts=job.max_attempts,
                        now=now,
                    )

                if mark_result(
                    conn,
                    job_id,
                    transition,
                    to_iso(now),
                    expected_status=job.status,
                    expected_attempts=job.attempts,
                ):
                    self._announce(job, transition)
                    return ReconcileResult(job_id=job_id, status=transition.status, changed=True)

                logger.debug("reconcile.retry_cas job_id=%s", job_id)

            # still losing races; report what is stored now
            job = get_job(conn, job_id)
            logger.warning("reconcile.contended job_id=%s status=%s", job_id, job.status)
            return ReconcileResult(job_id=job_id, status=job.status, changed=False)
        finally:
            conn.close()

    def _announce(self, job, transition: Outcome) -> None:
        if transition.status == COMPLETED:
            logger.info("reconcile.completed job_id=%s score=%s", job.id, transition.current_score)
            self.events.emit(JOB_COMPLETED, job, result=transition.result)
        elif transition.status == FAILED:
            logger.warning(
                "reconcile.failed job_id=%s next_attempt_at=%s error=%s",
                job.id, transition.next_attempt_at, transition.error,
            )
            self.events.emit(JOB_FAILED, job, error=transition.error,
                             next_attempt_at=transition.next_attempt_at)
        else:
            logger.error("reconcile.abandoned job_id=%s attempts=%s error=%s",
                         job.id, job.attempts, transition.error)
            self.events.emit(JOB_ABANDONED, job, error=transition.error)
