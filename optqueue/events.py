import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from .models import Job

logger = logging.getLogger(__name__)

JOB_QUEUED = "job.queued"
JOB_DISPATCHED = "job.dispatched"
JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_ABANDONED = "job.abandoned"

Handler = Callable[..., Any]


class EventBus:
    """
    In-process hooks fired after a job transition is persisted.

    Handlers run synchronously on the emitting thread. A handler that raises is
    logged and skipped; the transition that triggered it stays committed.
    """

    def __init__(self):
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    def emit(self, name: str, job: Job, **data: Any) -> None:
        for handler in list(self._handlers.get(name, ())):
            try:
                handler(job, **data)
            except Exception:
                logger.exception("events.handler_failed event=%s job_id=%s", name, job.id)
