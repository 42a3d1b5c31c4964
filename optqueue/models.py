import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Job States
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
ABANDONED = "abandoned"

STATES = (PENDING, PROCESSING, COMPLETED, FAILED, ABANDONED)
TERMINAL_STATES = (COMPLETED, ABANDONED)

# Priorities, stored as rank so ORDER BY priority DESC pops high first
PRIORITIES = {"low": 0, "normal": 5, "high": 10}
PRIORITY_NAMES = {rank: name for name, rank in PRIORITIES.items()}

# Delivery kinds
ACCEPTED = "accepted"
REJECTED = "rejected"
NETWORK_ERROR = "network_error"


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    subject_id: str
    payload: Dict[str, Any]
    id: str = field(default_factory=new_job_id)
    status: str = PENDING
    priority: str = "normal"
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None
    current_score: Optional[float] = None
    target_score: Optional[float] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            payload=json.loads(row["payload"]),
            status=row["status"],
            priority=PRIORITY_NAMES.get(row["priority"], "normal"),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_attempt_at=row["next_attempt_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            last_error=row["last_error"],
            current_score=row["current_score"],
            target_score=row["target_score"],
            result=json.loads(row["result"]) if row["result"] else None,
        )

    def to_status(self) -> Dict[str, Any]:
        """Public projection returned by status queries."""
        return {
            "id": self.id,
            "subjectId": self.subject_id,
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "nextAttemptAt": self.next_attempt_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastError": self.last_error,
            "currentScore": self.current_score,
            "targetScore": self.target_score,
            "result": self.result,
        }


@dataclass
class DeliveryResult:
    kind: str
    status_code: Optional[int] = None
    body: Any = None
    raw_body: Optional[str] = None
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.kind == ACCEPTED

    def describe(self) -> str:
        if self.kind == NETWORK_ERROR:
            return f"network_error: {self.error}"
        if self.kind == REJECTED:
            detail = self.error or (self.raw_body or "")[:200]
            if self.status_code is None:
                return f"rejected: {detail}"
            return f"rejected: http {self.status_code}: {detail}"
        return f"accepted: http {self.status_code}"


@dataclass
class RetryDecision:
    retry: bool
    next_attempt_at: Optional[str] = None


@dataclass
class Outcome:
    """A state transition to persist through mark_result."""

    status: str
    error: Optional[str] = None
    next_attempt_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    current_score: Optional[float] = None


@dataclass
class CallbackOutcome:
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    job_id: str
    status: str
    changed: bool


@dataclass
class TickReport:
    reaped: int = 0
    due: int = 0
    dispatched: int = 0
    skipped: int = 0
