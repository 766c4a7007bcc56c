"""Domain types shared by the dispatcher, the worker pool and the stores.

Rows read from the database travel as plain dictionaries (see
:mod:`bulk_mail_service.persistence`); this module only holds the enums,
the small value objects exchanged with external collaborators and the
pure retry decision used by the workers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

PRIORITY_LABELS = {
    0: "immediate",
    1: "high",
    2: "medium",
    3: "low",
}
LABEL_TO_PRIORITY = {label: value for value, label in PRIORITY_LABELS.items()}
DEFAULT_PRIORITY = 0
DEFAULT_MAX_RECIPIENT_RETRIES = 3

# Rate-limit and send-count scopes
GLOBAL_SCOPE = "global"
CREATOR_SCOPE_PREFIX = "user:"


def creator_scope(created_by: str) -> str:
    """Return the scope key shared by every job of ``created_by``."""
    return f"{CREATOR_SCOPE_PREFIX}{created_by}"


class JobStatus(str, Enum):
    """Lifecycle of an email job."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    SCHEDULED = "SCHEDULED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.SCHEDULED})


class LogStatus(str, Enum):
    """Status of a single (job, recipient) delivery."""

    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    BOUNCED = "BOUNCED"
    FAILED = "FAILED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


# Statuses reached only after the provider accepted the message.
DELIVERED_LOG_STATUSES = frozenset(
    {
        LogStatus.SENT,
        LogStatus.DELIVERED,
        LogStatus.OPENED,
        LogStatus.CLICKED,
        LogStatus.UNSUBSCRIBED,
        LogStatus.BOUNCED,
    }
)
SETTLED_LOG_STATUSES = DELIVERED_LOG_STATUSES | {LogStatus.FAILED}


class RecipientType(str, Enum):
    """How the recipient list of a job was selected."""

    INDIVIDUAL = "INDIVIDUAL"
    ROLE_BASED = "ROLE_BASED"
    COHORT_BASED = "COHORT_BASED"
    LEAGUE_BASED = "LEAGUE_BASED"
    ALL_USERS = "ALL_USERS"
    CUSTOM_LIST = "CUSTOM_LIST"


class AuditAction(str, Enum):
    """Job lifecycle events forwarded to the audit sink."""

    JOB_CREATED = "BULK_EMAIL_STARTED"
    JOB_STARTED = "BULK_EMAIL_PROCESSING"
    JOB_COMPLETED = "BULK_EMAIL_COMPLETED"
    JOB_FAILED = "BULK_EMAIL_FAILED"
    JOB_CANCELLED = "BULK_EMAIL_CANCELLED"


@dataclass(frozen=True)
class Recipient:
    """A resolved recipient, snapshotted into the job at admission time."""

    id: str
    email: str
    name: Optional[str] = None

    @classmethod
    def from_value(cls, value: Union["Recipient", Mapping[str, Any]]) -> "Recipient":
        """Build a recipient from a mapping (``id``/``email``/``name``)."""
        if isinstance(value, Recipient):
            return value
        if not isinstance(value, Mapping):
            raise ValueError("recipient must be an object")
        rid = value.get("id")
        email = value.get("email")
        if not rid or not email or not isinstance(email, str):
            raise ValueError("each recipient must have an id and an email")
        email = email.strip()
        if "@" not in email:
            raise ValueError(f"invalid recipient email: {email!r}")
        name = value.get("name")
        return cls(id=str(rid), email=email, name=str(name) if name else None)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name}


def dedupe_recipients(recipients: List[Recipient]) -> List[Recipient]:
    """Drop repeated recipients (same id or same address), keeping list order."""
    seen_ids: set[str] = set()
    seen_emails: set[str] = set()
    unique: List[Recipient] = []
    for recipient in recipients:
        email_key = recipient.email.lower()
        if recipient.id in seen_ids or email_key in seen_emails:
            continue
        seen_ids.add(recipient.id)
        seen_emails.add(email_key)
        unique.append(recipient)
    return unique


def normalise_priority(value: Any, default: int = DEFAULT_PRIORITY) -> int:
    """Coerce a user supplied priority (int or label) into a non-negative int."""
    if value is None:
        return max(0, int(default))
    if isinstance(value, str):
        key = value.strip().lower()
        if key in LABEL_TO_PRIORITY:
            return LABEL_TO_PRIORITY[key]
        try:
            value = int(key)
        except ValueError:
            return max(0, int(default))
    if isinstance(value, bool):
        return max(0, int(default))
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return max(0, int(default))


@dataclass(frozen=True)
class RenderedTemplate:
    subject: str
    html: str
    text: Optional[str] = None


# --------------------------------------------------------------- transports
@dataclass
class SendResult:
    """Normalised answer of a mail transport for one message.

    ``retryable`` tells soft failures (timeouts, throttling, 4xx) apart from
    hard ones (invalid address, 5xx bounce).
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.message_id:
            data["messageId"] = self.message_id
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class BulkSendResult:
    results: List[Tuple[str, SendResult]] = field(default_factory=list)
    total_sent: int = 0
    total_failed: int = 0


# ----------------------------------------------------------------- outcomes
@dataclass(frozen=True)
class Sent:
    message_id: Optional[str] = None


@dataclass(frozen=True)
class TransientFailure:
    reason: str


@dataclass(frozen=True)
class PermanentFailure:
    reason: str


DeliveryOutcome = Union[Sent, TransientFailure, PermanentFailure]


def outcome_from_result(result: SendResult) -> DeliveryOutcome:
    """Translate a transport result into a delivery outcome."""
    if result.success:
        return Sent(result.message_id)
    reason = result.error or "Unknown error"
    if result.retryable:
        return TransientFailure(reason)
    return PermanentFailure(reason)


class RecipientAction(str, Enum):
    MARK_SENT = "sent"
    RETRY = "retry"
    MARK_FAILED = "failed"


@dataclass(frozen=True)
class RecipientDecision:
    action: RecipientAction
    retry_count: int
    error: Optional[str] = None


def decide_recipient(outcome: DeliveryOutcome, retry_count: int, max_retries: int) -> RecipientDecision:
    """Decide what happens to a recipient after one delivery attempt.

    ``retry_count`` is the number of failed attempts recorded so far. A
    transient failure stays pending while the new count is below
    ``max_retries``; a permanent failure fails straight away.
    """
    if isinstance(outcome, Sent):
        return RecipientDecision(RecipientAction.MARK_SENT, retry_count)
    attempts = retry_count + 1
    if isinstance(outcome, TransientFailure) and attempts < max(1, max_retries):
        return RecipientDecision(RecipientAction.RETRY, attempts, outcome.reason)
    if isinstance(outcome, TransientFailure):
        return RecipientDecision(
            RecipientAction.MARK_FAILED,
            attempts,
            f"Max retries ({max_retries}) exceeded: {outcome.reason}",
        )
    return RecipientDecision(RecipientAction.MARK_FAILED, attempts, outcome.reason)
