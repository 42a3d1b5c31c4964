from typing import Optional


class OptQueueError(Exception):
    """Base class for errors raised by optqueue."""


class ConfigError(OptQueueError):
    """Malformed configuration. Raised at startup, never handled."""


class InvalidPayloadError(OptQueueError, ValueError):
    pass


class DuplicateSubjectError(OptQueueError):
    def __init__(self, subject_id: str, job_id: Optional[str] = None):
        self.subject_id = subject_id
        self.job_id = job_id
        msg = f"Subject '{subject_id}' already has an active job"
        if job_id:
            msg += f" ({job_id})"
        super().__init__(msg)


class InvalidSignatureError(OptQueueError):
    pass


class JobLookupError(OptQueueError, LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class JobNotFoundError(JobLookupError):
    pass


class UnknownJobError(JobLookupError):
    """A callback referenced a job this queue never created."""
