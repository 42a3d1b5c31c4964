import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import Config
from .db import connect_db
from .dispatcher import Dispatcher
from .events import EventBus, JOB_FAILED, JOB_ABANDONED
from .models import TickReport, FAILED, PROCESSING
from .repository import list_due, list_stuck, mark_result
from .retry import RetryPolicy
from .utils import to_iso, utc_now

logger = logging.getLogger(__name__)

STUCK_ERROR = "callback timeout"


class QueueProcessor:
    """
    One scheduling pass over the queue: reap stuck jobs, then dispatch due ones.

    tick() holds no state between calls and may run concurrently in several
    processes; the claim in the job store is the only mutual exclusion.
    """

    def __init__(
        self,
        config: Config,
        db_path: Optional[str] = None,
        dispatcher: Optional[Dispatcher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db_path = db_path
        self.clock = clock
        self.events = events or EventBus()
        self.retry_policy = retry_policy or RetryPolicy.from_config(config, clock=clock)
        self.dispatcher = dispatcher or Dispatcher(
            config, db_path, retry_policy=self.retry_policy, events=self.events, clock=clock
        )

    def reap_stuck(self, now: Optional[datetime] = None) -> int:
        """Fail (or abandon) processing jobs that never got a callback within the grace window."""
        now = now or self.clock()
        cutoff = to_iso(now - timedelta(milliseconds=self.config.processing_grace_ms))

        reaped = 0
        conn = connect_db(self.db_path)
        try:
            for job in list_stuck(conn, cutoff):
                outcome = self.retry_policy.outcome_for_failure(
                    job.attempts, STUCK_ERROR, max_attempts=job.max_attempts, now=now
                )
                if not mark_result(
                    conn,
                    job.id,
                    outcome,
                    to_iso(now),
                    expected_status=PROCESSING,
                    expected_attempts=job.attempts,
                    expected_started_at=job.started_at,
                ):
                    continue
                reaped += 1
                logger.warning(
                    "reaper.stuck job_id=%s started_at=%s attempts=%s/%s -> %s",
                    job.id, job.started_at, job.attempts, job.max_attempts, outcome.status,
                )
                if outcome.status == FAILED:
                    self.events.emit(JOB_FAILED, job, error=STUCK_ERROR,
                                     next_attempt_at=outcome.next_attempt_at)
                else:
                    self.events.emit(JOB_ABANDONED, job, error=STUCK_ERROR)
        finally:
            conn.close()
        return reaped

    def tick(self, batch_size: Optional[int] = None) -> TickReport:
        batch_size = batch_size or self.config.batch_size
        now = self.clock()
        report = TickReport(reaped=self.reap_stuck(now))

        conn = connect_db(self.db_path)
        try:
            due = list_due(conn, to_iso(now), batch_size)
        finally:
            conn.close()
        report.due = len(due)
        if not due:
            logger.debug("tick.idle reaped=%s", report.reaped)
            return report

        with ThreadPoolExecutor(max_workers=min(batch_size, len(due)),
                                thread_name_prefix="optqueue-dispatch") as pool:
            results = list(pool.map(self.dispatcher.dispatch, [job.id for job in due]))

        report.dispatched = sum(1 for r in results if r is not None)
        report.skipped = report.due - report.dispatched
        logger.info(
            "tick.done due=%s dispatched=%s skipped=%s reaped=%s",
            report.due, report.dispatched, report.skipped, report.reaped,
        )
        return report
