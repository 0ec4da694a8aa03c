"""
Invoice Hub - Invoice & Queue Job State Machine

Authoritative states for invoices and their queue jobs, and the legal
transitions between them. Pure business logic: no HTTP or DB calls.

Invoice path (a given invoice only visits the subset relevant to its queues):

    draft -> pending_validation -> {validated | rejected}
    validated -> queued_for_delivery -> {sent | sent-error}
    sent-error -> queued_for_delivery   (re-queue is always allowed)

Job path (shared by all three queues):

    pending -> processing -> sent
    processing -> pending   (retryable failure, attempts < max)
    processing -> failed    (exhausted, fatal or configuration error)
    failed -> pending       (explicit re-queue)

Webhook corrections are a first-class transition source and may set any
known invoice status.
"""

from enum import Enum
from typing import Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class InvoiceStateError(Exception):
    """Raised when a requested transition is not allowed."""


class InvoiceNotFoundError(LookupError):
    """Raised when an invoice id does not match any record."""


# =============================================================================
# INVOICE STATUS
# =============================================================================

class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING_VALIDATION = "pending_validation"
    VALIDATED = "validated"
    REJECTED = "rejected"
    QUEUED_FOR_DELIVERY = "queued_for_delivery"
    SENT = "sent"
    SENT_ERROR = "sent-error"


class InvoiceEvent(str, Enum):
    ON_VALIDATION_REQUESTED = "on_validation_requested"
    ON_VALIDATION_APPROVED = "on_validation_approved"
    ON_VALIDATION_REJECTED = "on_validation_rejected"
    ON_VALIDATION_FAILED = "on_validation_failed"
    ON_DELIVERY_QUEUED = "on_delivery_queued"
    ON_DELIVERY_SUCCEEDED = "on_delivery_succeeded"
    ON_DELIVERY_FAILED = "on_delivery_failed"
    ON_WEBHOOK_CORRECTION = "on_webhook_correction"


# Per-channel delivery status stored in invoice.delivery_channels
class ChannelStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    SENT_ERROR = "sent-error"


S = InvoiceStatus
E = InvoiceEvent

INVOICE_TRANSITIONS: Dict[str, Dict[str, str]] = {
    S.DRAFT.value: {
        E.ON_VALIDATION_REQUESTED.value: S.PENDING_VALIDATION.value,
    },
    S.PENDING_VALIDATION.value: {
        E.ON_VALIDATION_REQUESTED.value: S.PENDING_VALIDATION.value,
        E.ON_VALIDATION_APPROVED.value: S.VALIDATED.value,
        E.ON_VALIDATION_REJECTED.value: S.REJECTED.value,
        E.ON_VALIDATION_FAILED.value: S.REJECTED.value,
    },
    S.REJECTED.value: {
        # Corrected record, fresh validation job
        E.ON_VALIDATION_REQUESTED.value: S.PENDING_VALIDATION.value,
    },
    S.VALIDATED.value: {
        E.ON_DELIVERY_QUEUED.value: S.QUEUED_FOR_DELIVERY.value,
        E.ON_DELIVERY_SUCCEEDED.value: S.SENT.value,
        E.ON_DELIVERY_FAILED.value: S.SENT_ERROR.value,
    },
    S.QUEUED_FOR_DELIVERY.value: {
        E.ON_DELIVERY_QUEUED.value: S.QUEUED_FOR_DELIVERY.value,
        E.ON_DELIVERY_SUCCEEDED.value: S.SENT.value,
        E.ON_DELIVERY_FAILED.value: S.SENT_ERROR.value,
    },
    S.SENT_ERROR.value: {
        E.ON_DELIVERY_QUEUED.value: S.QUEUED_FOR_DELIVERY.value,
        E.ON_DELIVERY_SUCCEEDED.value: S.SENT.value,
        E.ON_DELIVERY_FAILED.value: S.SENT_ERROR.value,
    },
    # sent is terminal per channel; other channels may still be attempted
    S.SENT.value: {
        E.ON_DELIVERY_QUEUED.value: S.SENT.value,
        E.ON_DELIVERY_SUCCEEDED.value: S.SENT.value,
        E.ON_DELIVERY_FAILED.value: S.SENT.value,
    },
}

# Statuses from which PDF/email delivery may be queued
DELIVERABLE_STATUSES = frozenset({
    S.VALIDATED.value,
    S.QUEUED_FOR_DELIVERY.value,
    S.SENT.value,
    S.SENT_ERROR.value,
})

# Statuses from which a validation job may be created
VALIDATABLE_STATUSES = frozenset({
    S.DRAFT.value,
    S.PENDING_VALIDATION.value,
    S.REJECTED.value,
})

ALL_INVOICE_STATUSES = frozenset(s.value for s in InvoiceStatus)


# =============================================================================
# JOB STATUS
# =============================================================================

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class JobEvent(str, Enum):
    CLAIM = "claim"
    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"
    REQUEUE = "requeue"


JOB_TRANSITIONS: Dict[str, Dict[str, str]] = {
    JobStatus.PENDING.value: {
        JobEvent.CLAIM.value: JobStatus.PROCESSING.value,
    },
    JobStatus.PROCESSING.value: {
        JobEvent.SUCCEED.value: JobStatus.SENT.value,
        JobEvent.RETRY.value: JobStatus.PENDING.value,
        JobEvent.FAIL.value: JobStatus.FAILED.value,
    },
    JobStatus.FAILED.value: {
        JobEvent.REQUEUE.value: JobStatus.PENDING.value,
    },
    JobStatus.SENT.value: {},
}

OPEN_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def _key(value) -> Optional[str]:
    return value.value if isinstance(value, Enum) else value


def _lookup(table: Dict[str, Dict[str, str]], label: str, current, event) -> Tuple[bool, Optional[str], str]:
    current_key = _key(current)
    event_key = _key(event)

    status_transitions = table.get(current_key)
    if status_transitions is None:
        return (False, None, f"No transitions defined for {label} status '{current_key}'")

    next_status = status_transitions.get(event_key)
    if next_status is None:
        valid_events = list(status_transitions.keys())
        return (False, None, f"Event '{event_key}' not valid for {label} status '{current_key}'. Valid: {valid_events}")

    return (True, next_status, "Transition allowed")


class InvoiceStateMachine:
    """Transition checks for invoices and queue jobs."""

    @staticmethod
    def can_transition(current_status, event) -> Tuple[bool, Optional[str], str]:
        """
        Check an invoice transition.

        Returns:
            (can_transition, next_status, reason)
        """
        return _lookup(INVOICE_TRANSITIONS, "invoice", current_status, event)

    @staticmethod
    def next_status(current_status, event) -> str:
        """Next invoice status for an event. Raises InvoiceStateError if illegal."""
        allowed, next_status, reason = InvoiceStateMachine.can_transition(current_status, event)
        if not allowed:
            raise InvoiceStateError(reason)
        return next_status

    @staticmethod
    def correction_target(status) -> str:
        """Validate an explicit status set by a webhook correction."""
        key = _key(status)
        if key not in ALL_INVOICE_STATUSES:
            raise InvoiceStateError(
                f"Unknown invoice status '{key}'. Valid: {sorted(ALL_INVOICE_STATUSES)}"
            )
        return key

    @staticmethod
    def can_transition_job(current_status, event) -> Tuple[bool, Optional[str], str]:
        return _lookup(JOB_TRANSITIONS, "job", current_status, event)

    @staticmethod
    def next_job_status(current_status, event) -> str:
        allowed, next_status, reason = InvoiceStateMachine.can_transition_job(current_status, event)
        if not allowed:
            raise InvoiceStateError(reason)
        return next_status

    @staticmethod
    def is_deliverable(invoice_status) -> bool:
        return _key(invoice_status) in DELIVERABLE_STATUSES

    @staticmethod
    def is_validatable(invoice_status) -> bool:
        return _key(invoice_status) in VALIDATABLE_STATUSES

    @staticmethod
    def get_terminal_job_statuses():
        return [JobStatus.SENT.value, JobStatus.FAILED.value]
