"""
Invoice Hub - Invoice Webhook Reconciler

Applies asynchronous callbacks from external systems (DGI validation results,
generated PDFs) to invoices.

- Lookup by invoice_id; invoice_number is used only when no id is sent
- Only fields present in the payload are written; a replay that changes
  nothing does not write at all
- A DGI status of aprobado/approved moves pending_validation -> validated,
  rechazado/rejected moves it to rejected; an explicit "status" overrides
- pdf_id completes the invoice's in-flight PDF job
- Callbacks carrying outcome fields that change the invoice get a validation
  log entry (source=webhook); replays get none
- Unknown invoices are reported, never created
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .integration_config import ConfigType, select_active_config
from .invoice_fields import (
    OUTCOME_FIELDS,
    changed_updates,
    dgi_status_verdict,
    normalize_fields,
    to_invoice_updates,
)
from .invoice_state import (
    ChannelStatus,
    InvoiceEvent,
    InvoiceStateError,
    InvoiceStateMachine,
    InvoiceStatus,
    JobStatus,
)
from .pipeline_config import QueueName
from .pipeline_store import PipelineStore, utc_now

logger = logging.getLogger(__name__)

# Conditional write retries when the invoice changes between read and write
MAX_WRITE_ATTEMPTS = 3


class ReconcileStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    CONFLICT = "conflict"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    record_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_status: Optional[str] = None
    message: str = ""
    changed_fields: List[str] = field(default_factory=list)
    log_written: bool = False

    @property
    def success(self) -> bool:
        return self.status == ReconcileStatus.OK

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "record_id": self.record_id,
            "invoice_number": self.invoice_number,
            "status": self.invoice_status,
            "message": self.message,
        }


def _status_target(invoice: Dict[str, Any], fields: Dict[str, Any], override: Optional[str]) -> Optional[str]:
    """New invoice status implied by the callback, or None to leave it."""
    current = invoice.get("status") or InvoiceStatus.DRAFT.value
    if override:
        return override

    verdict = dgi_status_verdict(fields.get("dgi_status"))
    if verdict is None:
        return None
    event = InvoiceEvent.ON_VALIDATION_APPROVED if verdict == "approved" else InvoiceEvent.ON_VALIDATION_REJECTED
    allowed, next_status, reason = InvoiceStateMachine.can_transition(current, event)
    if not allowed:
        logger.info("[Webhook] Invoice %s: DGI status '%s' leaves status unchanged (%s)",
                    invoice.get("id"), fields.get("dgi_status"), reason)
        return None
    return next_status


def build_webhook_updates(invoice: Dict[str, Any], fields: Dict[str, Any], override: Optional[str]) -> Dict[str, Any]:
    """Full set of updates a callback asks for (before dropping unchanged values)."""
    updates = to_invoice_updates(fields)

    target = _status_target(invoice, fields, override)
    if target and target != invoice.get("status"):
        updates["status"] = target
        if invoice.get("status") == InvoiceStatus.PENDING_VALIDATION.value:
            updates["pending_validation"] = False
        if target == InvoiceStatus.VALIDATED.value and "validated_at" not in updates:
            updates["validated_at"] = fields.get("dgi_validated_at") or utc_now()

    if fields.get("pdf_id"):
        updates["delivery_channels.pdf"] = ChannelStatus.SENT.value

    return updates


class WebhookReconciler:
    """Idempotent partial updates of invoices from external callbacks."""

    def __init__(self, store: PipelineStore):
        self.store = store

    async def reconcile(self, payload: Dict[str, Any]) -> ReconcileResult:
        invoice_id = payload.get("invoice_id")
        invoice_number = payload.get("invoice_number")
        if not invoice_id and not invoice_number:
            return ReconcileResult(ReconcileStatus.INVALID, message="invoice_id or invoice_number is required")

        fields = normalize_fields({k: v for k, v in payload.items() if k not in ("invoice_id", "invoice_number")})

        override = None
        if fields.get("status"):
            try:
                override = InvoiceStateMachine.correction_target(fields["status"])
            except InvoiceStateError as e:
                return ReconcileResult(ReconcileStatus.INVALID, message=str(e))

        changed: Dict[str, Any] = {}
        invoice = None
        for _ in range(MAX_WRITE_ATTEMPTS):
            invoice = await self.store.find_invoice(invoice_id=invoice_id, invoice_number=invoice_number)
            if not invoice:
                logger.warning("[Webhook] Invoice not found (id=%s, number=%s)", invoice_id, invoice_number)
                return ReconcileResult(
                    ReconcileStatus.NOT_FOUND,
                    message=f"Invoice not found (invoice_id={invoice_id}, invoice_number={invoice_number})",
                )

            changed = changed_updates(invoice, build_webhook_updates(invoice, fields, override))
            if not changed:
                break
            write = dict(changed)
            write["updated_at"] = utc_now()
            if await self.store.update_invoice(invoice["id"], write, expected_status=invoice.get("status")):
                break
            logger.info("[Webhook] Invoice %s changed during reconciliation, re-reading", invoice["id"])
        else:
            return ReconcileResult(
                ReconcileStatus.CONFLICT,
                record_id=invoice["id"],
                message="Invoice kept changing during reconciliation, try again",
            )

        final_status = changed.get("status", invoice.get("status"))
        if changed:
            logger.info("[Webhook] Invoice %s updated: %s", invoice["id"], ", ".join(sorted(changed)))
        else:
            logger.info("[Webhook] Invoice %s already up to date", invoice["id"])

        if fields.get("pdf_id"):
            await self._complete_pdf_jobs(invoice["id"], fields["pdf_id"])

        log_written = False
        if changed and any(fields.get(name) for name in OUTCOME_FIELDS):
            await self._write_log(invoice, payload, fields, final_status)
            log_written = True

        return ReconcileResult(
            ReconcileStatus.OK,
            record_id=invoice["id"],
            invoice_number=invoice.get("invoice_number"),
            invoice_status=final_status,
            message="Invoice updated" if changed else "No changes",
            changed_fields=sorted(changed),
            log_written=log_written,
        )

    async def _complete_pdf_jobs(self, invoice_id: str, pdf_id: str):
        jobs = await self.store.find_jobs_for_invoice(
            QueueName.PDF, invoice_id, statuses=[JobStatus.PROCESSING.value]
        )
        for job in jobs:
            await self.store.update_job(QueueName.PDF, job["id"], {
                "status": JobStatus.SENT.value,
                "external_reference": pdf_id,
                "last_error": None,
                "processed_at": utc_now(),
            })
            logger.info("[Webhook] PDF job %s for invoice %s marked sent", job["id"], invoice_id)

    async def _write_log(self, invoice: Dict[str, Any], payload: Dict[str, Any], fields: Dict[str, Any], final_status):
        configs = await self.store.list_configs(ConfigType.VALIDATION)
        config = select_active_config(configs, ConfigType.VALIDATION)
        await self.store.append_log({
            "id": str(uuid.uuid4()),
            "invoice_id": invoice["id"],
            "config_id": config.id if config else None,
            "queue": QueueName.VALIDATION.value,
            "job_id": None,
            "source": "webhook",
            "request_payload": payload,
            "response_payload": {"status": final_status, "dgi_status": fields.get("dgi_status")},
            "status_code": 200,
            "status": "success",
            "error_message": None,
            "validation_result": dgi_status_verdict(fields.get("dgi_status")),
            "external_reference": fields.get("external_reference") or fields.get("dgi_efactura_id"),
            "duration_ms": 0,
            "retry_count": 0,
            "created_at": utc_now(),
        })
