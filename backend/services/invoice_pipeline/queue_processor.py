"""
Invoice Hub - Invoice Queue Processor

Shared processing logic for the three invoice queues:

- validation: tax authority / e-invoice validation (DGI)
- pdf:        PDF generation and delivery
- email:      invoice email delivery

Per polling cycle:
1. (validation only) materialize jobs for invoices flagged pending_validation
2. select up to N pending jobs, highest priority first, then oldest first
3. claim each job atomically (pending -> processing) before any external call
4. resolve the active integration config, build the request from the invoice
   context, deliver, extract the response, apply the state machine
5. append one validation log entry per call attempt

Two retry strategies are kept distinct:
- IN_CALL_BACKOFF: the executor retries inside one claim with linear backoff
  (validation, pdf)
- ACROSS_CYCLES: one attempt per claim; the job goes back to pending and is
  retried on a later polling cycle (email)

An error while processing one job never stops the rest of the batch.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .delivery_executor import AttemptRecord, DeliveryExecutor, OutcomeKind, is_transient
from .integration_config import (
    ConfigType,
    IntegrationConfig,
    build_request_headers,
    select_active_config,
)
from .invoice_fields import normalize_fields, to_invoice_updates
from .invoice_state import (
    ChannelStatus,
    InvoiceEvent,
    InvoiceNotFoundError,
    InvoiceStateError,
    InvoiceStateMachine,
    InvoiceStatus,
    JobEvent,
    JobStatus,
    OPEN_JOB_STATUSES,
)
from .mapping_engine import ConfigurationError, build_request, compile_mapping, extract_response
from .pipeline_config import (
    DEFAULT_RETRY_ATTEMPTS,
    EMAIL_MAX_ATTEMPTS,
    QUEUE_BATCH_SIZE,
    VALIDATION_FEED_LIMIT,
    QueueName,
)
from .pipeline_store import PipelineStore, new_job, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# QUEUE DEFINITIONS
# =============================================================================

class RetryStrategy(str, Enum):
    IN_CALL_BACKOFF = "in_call_backoff"
    ACROSS_CYCLES = "across_cycles"


# Used when an integration config leaves request_mapping / response_mapping empty
VALIDATION_REQUEST_MAPPING = {
    "numero_cfe": "invoice.invoice_number",
    "fecha_emision": "invoice.issue_date",
    "moneda": "invoice.currency",
    "subtotal": "invoice.subtotal",
    "iva": "invoice.tax_amount",
    "descuento": "invoice.discount_amount",
    "total": "invoice.total_amount",
    "cliente": {
        "type": "object",
        "mapping": {
            "nombre": "client.contact_name",
            "razon_social": "client.company_name",
            "documento": "client.tax_id",
            "email": "client.email",
            "direccion": "client.address",
        },
    },
    "items": {
        "type": "array",
        "source": "items",
        "mapping": {
            "descripcion": "product_name",
            "cantidad": "quantity",
            "precio_unitario": "unit_price",
            "iva_porcentaje": "tax_rate",
            "total": "total_price",
        },
    },
    "datos_adicionales.observaciones": "invoice.notes",
    "datos_adicionales.forma_pago": "order.payment_method",
}

VALIDATION_RESPONSE_MAPPING = {
    "approved": "response.approved",
    "message": "response.message",
    "reference": "response.reference",
    "numero_cfe": "response.numero_cfe",
    "serie_cfe": "response.serie_cfe",
    "tipo_cfe": "response.tipo_cfe",
    "cae": "response.cae",
    "vencimiento_cae": "response.vencimiento_cae",
    "qr_code": "response.qr_code",
    "dgi_estado": "response.dgi_estado",
    "dgi_codigo_autorizacion": "response.dgi_codigo_autorizacion",
    "dgi_mensaje": "response.dgi_mensaje",
    "dgi_id_efactura": "response.dgi_id_efactura",
    "dgi_fecha_validacion": "response.dgi_fecha_validacion",
}

PDF_REQUEST_MAPPING = {
    "template_name": "settings.pdf_template_name",
    "recipient_email": "client.email",
    "invoice_id": "invoice.id",
    "order_id": "invoice.order_id",
    "data.response_payload.numero_cfe": "invoice.external.cfe_number",
    "data.response_payload.serie_cfe": "invoice.external.cfe_series",
    "data.response_payload.tipo_cfe": "invoice.external.cfe_type",
    "data.response_payload.cae": "invoice.external.cae",
    "data.response_payload.vencimiento_cae": "invoice.external.cae_expiration",
    "data.response_payload.qr_code": "invoice.external.qr_code",
    "data.response_payload.dgi_estado": "invoice.external.dgi_status",
    "data.response_payload.dgi_codigo_autorizacion": "invoice.external.dgi_authorization_code",
    "data.issuer.numero_cfe": "invoice.invoice_number",
    "data.issuer.serie": "invoice.external.cfe_series",
    "data.issuer.rut": "invoice.rut_emisor",
    "data.issuer.razon_social": "invoice.company_name",
    "data.issuer.fecha_emision": "invoice.issue_date",
    "data.issuer.moneda": "invoice.currency",
    "data.issuer.subtotal": "totals.subtotal",
    "data.issuer.iva": "totals.tax_amount",
    "data.issuer.total": "totals.total",
    "data.items": {
        "type": "array",
        "source": "lines",
        "mapping": {
            "descripcion": "description",
            "cantidad": "quantity",
            "precio_unitario": "unit_price",
            "iva_porcentaje": "tax_rate",
            "subtotal": "subtotal",
            "iva": "tax_amount",
            "total": "total",
        },
    },
    "data.datos_adicionales.observaciones": "invoice.notes",
    "data.datos_adicionales.forma_pago": "order.payment_method",
}

PDF_RESPONSE_MAPPING = {
    "approved": "response.success",
    "message": "response.message",
    "pdf_id": "response.data.pdf_id",
    "pdf_filename": "response.data.filename",
    "pdf_size_bytes": "response.data.size_bytes",
    "pdf_generated_at": "response.data.generated_at",
}

EMAIL_REQUEST_MAPPING = {
    "invoice_id": "invoice.id",
    "invoice_number": "invoice.invoice_number",
    "recipient_email": "client.email",
    "recipient_name": "client.contact_name",
    "total": "invoice.total_amount",
    "currency": "invoice.currency",
    "pdf_id": "invoice.pdf.pdf_id",
    "cfe_number": "invoice.external.cfe_number",
}

EMAIL_RESPONSE_MAPPING = {
    "approved": "response.success",
    "message": "response.message",
    "reference": "response.message_id",
}


@dataclass(frozen=True)
class QueueDefinition:
    """Static description of one queue."""
    name: QueueName
    label: str
    config_type: ConfigType
    retry_strategy: RetryStrategy
    default_request_mapping: Dict[str, Any] = field(default_factory=dict)
    default_response_mapping: Dict[str, Any] = field(default_factory=dict)
    channel: Optional[str] = None  # delivery_channels key; None for validation
    max_attempts: Optional[int] = None  # upper bound on config.retry_attempts + 1

    @property
    def is_validation(self) -> bool:
        return self.name == QueueName.VALIDATION

    def max_attempts_for(self, config: Optional[IntegrationConfig]) -> int:
        limit = config.max_attempts if config is not None else DEFAULT_RETRY_ATTEMPTS + 1
        if self.max_attempts is not None:
            limit = min(limit, self.max_attempts)
        return max(1, limit)


QUEUE_DEFINITIONS: Dict[QueueName, QueueDefinition] = {
    QueueName.VALIDATION: QueueDefinition(
        name=QueueName.VALIDATION,
        label="ValidationQueue",
        config_type=ConfigType.VALIDATION,
        retry_strategy=RetryStrategy.IN_CALL_BACKOFF,
        default_request_mapping=VALIDATION_REQUEST_MAPPING,
        default_response_mapping=VALIDATION_RESPONSE_MAPPING,
    ),
    QueueName.PDF: QueueDefinition(
        name=QueueName.PDF,
        label="PdfQueue",
        config_type=ConfigType.PDF_GENERATION,
        retry_strategy=RetryStrategy.IN_CALL_BACKOFF,
        default_request_mapping=PDF_REQUEST_MAPPING,
        default_response_mapping=PDF_RESPONSE_MAPPING,
        channel="pdf",
    ),
    QueueName.EMAIL: QueueDefinition(
        name=QueueName.EMAIL,
        label="EmailQueue",
        config_type=ConfigType.EMAIL_DELIVERY,
        retry_strategy=RetryStrategy.ACROSS_CYCLES,
        default_request_mapping=EMAIL_REQUEST_MAPPING,
        default_response_mapping=EMAIL_RESPONSE_MAPPING,
        channel="email",
        max_attempts=EMAIL_MAX_ATTEMPTS,
    ),
}


def get_queue_definition(queue) -> QueueDefinition:
    return QUEUE_DEFINITIONS[QueueName(queue)]


# =============================================================================
# ATTEMPT CLASSIFICATION
# =============================================================================

class Verdict(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MALFORMED = "malformed"
    TRANSIENT = "transient"
    FATAL = "fatal"


_FALSY_STRINGS = {"", "false", "0", "no", "rejected", "rechazado"}


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def _failure_observation(definition: QueueDefinition, message: Optional[str]) -> str:
    if definition.is_validation:
        return f"Validation failed: {message}"
    return f"Error sending {definition.channel}: {message}"


def _body_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])
    return None


@dataclass
class AttemptVerdict:
    kind: Verdict
    extracted: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind in (Verdict.MALFORMED, Verdict.TRANSIENT)


def classify_attempt(attempt: AttemptRecord, response_mapping: Dict[str, Any]) -> AttemptVerdict:
    """
    Decide what one call attempt means for the job.

    A 2xx whose response_mapping declares "approved" is approved only when the
    extracted value is truthy; an absent value counts as a malformed response.
    """
    if attempt.kind == OutcomeKind.SUCCESS:
        if not attempt.body_parsed:
            return AttemptVerdict(Verdict.MALFORMED, message=attempt.error or "Response body is not valid JSON")

        extracted = extract_response(response_mapping, attempt.body)
        if "approved" in compile_mapping(response_mapping):
            if "approved" not in extracted:
                return AttemptVerdict(
                    Verdict.MALFORMED,
                    extracted=extracted,
                    message="Response is missing the mapped 'approved' field",
                )
            if not _is_truthy(extracted["approved"]):
                message = extracted.get("message") or _body_message(attempt.body) or "Rejected by external system"
                return AttemptVerdict(Verdict.REJECTED, extracted=extracted, message=str(message))

        return AttemptVerdict(Verdict.APPROVED, extracted=extracted, message=extracted.get("message"))

    message = attempt.error or attempt.kind.value
    body_message = _body_message(attempt.body)
    if body_message:
        message = f"{message}: {body_message}"

    if is_transient(attempt):
        return AttemptVerdict(Verdict.TRANSIENT, message=message)
    return AttemptVerdict(Verdict.FATAL, message=message)


# =============================================================================
# PROCESSOR
# =============================================================================

class QueueProcessor:
    """
    Runs polling cycles for the invoice queues against a PipelineStore.

    Callers are expected to serialize cycles per queue (see QueueWorker);
    correctness across processes comes from the atomic job claim.
    """

    def __init__(
        self,
        store: PipelineStore,
        executor: Optional[DeliveryExecutor] = None,
        batch_size: int = QUEUE_BATCH_SIZE,
    ):
        self.store = store
        self.executor = executor or DeliveryExecutor()
        self.batch_size = batch_size

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def run_cycle(self, queue) -> Dict[str, Any]:
        """
        Process one batch of pending jobs for a queue.

        Returns:
            {"queue", "processed", "successful", "failed", "skipped", "results"}
        """
        definition = get_queue_definition(queue)
        label = definition.label

        if definition.is_validation:
            try:
                await self.feed_validation_queue()
            except Exception as e:
                logger.error("[%s] Failed to feed validation queue: %s", label, str(e), exc_info=True)

        jobs = await self.store.select_pending_jobs(definition.name, self.batch_size)
        summary = {
            "queue": definition.name.value,
            "processed": 0,
            "successful": 0,
            "failed": 0,
            "skipped": 0,
            "results": [],
        }
        if not jobs:
            logger.debug("[%s] No pending jobs", label)
            return summary

        logger.info("[%s] Found %d pending jobs", label, len(jobs))

        for job in jobs:
            claimed = await self._claim(definition, job)
            if claimed is None:
                summary["skipped"] += 1
                summary["results"].append({
                    "job_id": job.get("id"),
                    "invoice_id": job.get("invoice_id"),
                    "status": "skipped",
                    "outcome": "claimed_elsewhere",
                })
                continue

            summary["processed"] += 1
            try:
                result = await self._process_claimed(definition, claimed)
            except Exception as e:
                logger.error(
                    "[%s] Unexpected error processing job %s (invoice %s): %s",
                    label, claimed.get("id"), claimed.get("invoice_id"), str(e), exc_info=True
                )
                result = await self._record_crash(definition, claimed, e)

            if result.get("outcome") == Verdict.APPROVED.value:
                summary["successful"] += 1
            else:
                summary["failed"] += 1
            summary["results"].append(result)

        logger.info(
            "[%s] Cycle complete: processed=%d successful=%d failed=%d skipped=%d",
            label, summary["processed"], summary["successful"], summary["failed"], summary["skipped"]
        )
        return summary

    async def _claim(self, definition: QueueDefinition, job: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            claimed = await self.store.claim_job(definition.name, job["id"])
        except Exception as e:
            logger.error("[%s] Failed to claim job %s: %s", definition.label, job.get("id"), str(e), exc_info=True)
            return None
        if claimed is None:
            logger.info("[%s] Job %s already claimed, skipping", definition.label, job.get("id"))
        return claimed

    # =========================================================================
    # ELIGIBILITY FEED
    # =========================================================================

    async def feed_validation_queue(self) -> int:
        """
        Create validation jobs for invoices flagged pending_validation that
        have no open job. An invoice whose latest job failed is left alone
        until it is re-queued explicitly through enqueue().
        Returns the number of jobs created.
        """
        statuses = [InvoiceStatus.DRAFT.value, InvoiceStatus.PENDING_VALIDATION.value]
        invoices = await self.store.find_invoices_pending_validation(statuses, VALIDATION_FEED_LIMIT)

        created = 0
        for invoice in invoices:
            jobs = await self.store.find_jobs_for_invoice(QueueName.VALIDATION, invoice["id"])
            if any(job.get("status") in OPEN_JOB_STATUSES for job in jobs):
                continue
            if jobs and jobs[0].get("status") == JobStatus.FAILED.value:
                logger.debug("[ValidationQueue] Invoice %s has a failed job awaiting re-queue", invoice["id"])
                continue
            try:
                await self.enqueue(invoice["id"], QueueName.VALIDATION)
                created += 1
            except InvoiceStateError as e:
                logger.info("[ValidationQueue] Not queueing invoice %s: %s", invoice["id"], str(e))

        if created:
            logger.info("[ValidationQueue] Queued %d invoices pending validation", created)
        return created

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    async def enqueue(
        self,
        invoice_id: str,
        queue,
        priority: Optional[int] = None,
        config_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Queue an invoice for validation or delivery.

        Returns the existing open job if there is one; otherwise re-opens the
        most recent failed job or creates a new one.

        Raises:
            InvoiceNotFoundError: unknown invoice
            InvoiceStateError: the invoice's status does not allow this queue
        """
        definition = get_queue_definition(queue)
        invoice = await self.store.get_invoice(invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")

        status = invoice.get("status") or InvoiceStatus.DRAFT.value
        if definition.is_validation:
            if not InvoiceStateMachine.is_validatable(status):
                raise InvoiceStateError(f"Invoice in status '{status}' cannot be queued for validation")
            event = InvoiceEvent.ON_VALIDATION_REQUESTED
        else:
            if not InvoiceStateMachine.is_deliverable(status):
                raise InvoiceStateError(
                    f"Invoice in status '{status}' cannot be queued for {definition.channel} delivery; "
                    "it must be validated first"
                )
            event = InvoiceEvent.ON_DELIVERY_QUEUED

        open_job = await self.store.find_open_job(definition.name, invoice_id)
        if open_job:
            return open_job

        now = utc_now()
        updates: Dict[str, Any] = {
            "status": InvoiceStateMachine.next_status(status, event),
            "updated_at": now,
        }
        if definition.is_validation:
            updates["pending_validation"] = True
        else:
            updates[f"delivery_channels.{definition.channel}"] = ChannelStatus.QUEUED.value
        if not await self.store.update_invoice(invoice_id, updates, expected_status=invoice.get("status")):
            raise InvoiceStateError(f"Invoice {invoice_id} changed while being queued, try again")

        failed_jobs = await self.store.find_jobs_for_invoice(
            definition.name, invoice_id, statuses=[JobStatus.FAILED.value]
        )
        if failed_jobs:
            job = failed_jobs[0]
            reopened = {
                "status": InvoiceStateMachine.next_job_status(job["status"], JobEvent.REQUEUE),
                "attempts_at_requeue": job.get("attempts", 0),
                "last_error": None,
                "requeued_at": now,
            }
            if priority is not None:
                reopened["priority"] = priority
            if config_id is not None:
                reopened["config_id"] = config_id
            if await self.store.update_job(definition.name, job["id"], reopened, expected_status=JobStatus.FAILED.value):
                logger.info("[%s] Re-opened job %s for invoice %s", definition.label, job["id"], invoice_id)
                return {**job, **reopened}

        job = new_job(invoice_id, priority=priority, config_id=config_id)
        await self.store.insert_job(definition.name, job)
        logger.info("[%s] Queued invoice %s (job %s)", definition.label, invoice_id, job["id"])
        return job

    # =========================================================================
    # SINGLE JOB
    # =========================================================================

    async def _process_claimed(self, definition: QueueDefinition, job: Dict[str, Any]) -> Dict[str, Any]:
        label = definition.label
        invoice = await self.store.get_invoice(job["invoice_id"])
        if not invoice:
            return await self._fail_without_call(definition, job, None, f"Invoice {job['invoice_id']} not found")

        status_at_claim = invoice.get("status") or InvoiceStatus.DRAFT.value
        if definition.is_validation:
            if not InvoiceStateMachine.is_validatable(status_at_claim):
                return await self._fail_without_call(
                    definition, job, invoice,
                    f"Invoice in status '{status_at_claim}' does not accept validation"
                )
        elif not InvoiceStateMachine.is_deliverable(status_at_claim):
            return await self._fail_without_call(
                definition, job, invoice,
                f"Invoice in status '{status_at_claim}' is not eligible for {definition.channel} delivery"
            )

        # Corrected draft/rejected invoices enter validation on claim
        if definition.is_validation and status_at_claim != InvoiceStatus.PENDING_VALIDATION.value:
            next_status = InvoiceStateMachine.next_status(status_at_claim, InvoiceEvent.ON_VALIDATION_REQUESTED)
            if await self.store.update_invoice(
                invoice["id"], {"status": next_status, "updated_at": utc_now()}, expected_status=status_at_claim
            ):
                status_at_claim = next_status

        configs = await self.store.list_configs(definition.config_type)
        config = select_active_config(configs, definition.config_type, job.get("config_id"))
        if config is None:
            detail = f" with id {job['config_id']}" if job.get("config_id") else ""
            return await self._configuration_error(
                definition, job, invoice, status_at_claim,
                f"No active {definition.config_type.value} integration config{detail}"
            )

        context = await self.store.load_context(invoice)
        response_mapping = config.response_mapping or definition.default_response_mapping
        try:
            payload = build_request(config.request_mapping or definition.default_request_mapping, context)
            compile_mapping(response_mapping)
        except ConfigurationError as e:
            return await self._configuration_error(
                definition, job, invoice, status_at_claim, f"Config {config.id}: {e}"
            )
        headers = build_request_headers(config, context)

        max_attempts = definition.max_attempts_for(config)
        floor = job.get("attempts_at_requeue", 0)
        used = job.get("attempts", 0) - floor
        remaining = max(1, max_attempts - used)
        if definition.retry_strategy == RetryStrategy.IN_CALL_BACKOFF:
            max_retries = remaining - 1
        else:
            max_retries = 0

        def should_retry(attempt: AttemptRecord) -> bool:
            return classify_attempt(attempt, response_mapping).retryable

        logger.info(
            "[%s] Delivering invoice %s via config %s (attempt budget %d)",
            label, invoice["id"], config.id, remaining
        )
        outcome = await self.executor.execute(
            config.api_url, "POST", headers, payload, config.timeout, max_retries, should_retry
        )

        verdicts = [classify_attempt(attempt, response_mapping) for attempt in outcome.attempts]
        await self._write_attempt_logs(definition, job, config, payload, outcome.attempts, verdicts)

        final = verdicts[-1]
        attempts_total = job.get("attempts", 0) + outcome.attempt_count

        if final.kind == Verdict.APPROVED:
            job_status = await self._apply_approved(
                definition, job, invoice, status_at_claim, final, outcome.body, attempts_total
            )
        elif final.kind == Verdict.REJECTED:
            job_status = await self._apply_rejected(
                definition, job, invoice, status_at_claim, final, outcome.body, attempts_total
            )
        elif final.kind == Verdict.FATAL or attempts_total - floor >= max_attempts:
            job_status = await self._apply_terminal_failure(
                definition, job, invoice, status_at_claim, final, attempts_total
            )
        else:
            job_status = await self._apply_retry(definition, job, invoice, status_at_claim, final, attempts_total)

        return {
            "job_id": job["id"],
            "invoice_id": invoice["id"],
            "status": job_status,
            "outcome": final.kind.value,
            "attempts": attempts_total,
            "error": None if final.kind == Verdict.APPROVED else final.message,
        }

    # =========================================================================
    # OUTCOME APPLICATION
    # =========================================================================

    async def _update_invoice(
        self,
        definition: QueueDefinition,
        invoice: Dict[str, Any],
        status_at_claim: str,
        event: InvoiceEvent,
        updates: Dict[str, Any],
    ):
        """Apply an outcome to the invoice, only if its status is still the one read at claim time."""
        allowed, next_status, reason = InvoiceStateMachine.can_transition(status_at_claim, event)
        if allowed:
            updates["status"] = next_status
        else:
            logger.warning("[%s] Invoice %s: %s", definition.label, invoice["id"], reason)
        updates["updated_at"] = utc_now()

        applied = await self.store.update_invoice(invoice["id"], updates, expected_status=status_at_claim)
        if not applied:
            logger.warning(
                "[%s] Invoice %s changed status since claim (was %s); outcome not applied to invoice",
                definition.label, invoice["id"], status_at_claim
            )
        return applied

    async def _propagate_failure(self, definition, invoice, status_at_claim: str, observations: str):
        """A terminal job failure: validation -> rejected, delivery -> channel sent-error."""
        if definition.is_validation:
            updates = {"pending_validation": False, "observations": observations}
            event = InvoiceEvent.ON_VALIDATION_FAILED
        else:
            updates = {
                f"delivery_channels.{definition.channel}": ChannelStatus.SENT_ERROR.value,
                "observations": observations,
            }
            event = InvoiceEvent.ON_DELIVERY_FAILED
        return await self._update_invoice(definition, invoice, status_at_claim, event, updates)

    async def _apply_approved(self, definition, job, invoice, status_at_claim, verdict, body, attempts_total):
        now = utc_now()
        fields = normalize_fields(verdict.extracted)
        reference = fields.get("external_reference") or fields.get("pdf_id")

        await self.store.update_job(definition.name, job["id"], {
            "status": InvoiceStateMachine.next_job_status(JobStatus.PROCESSING, JobEvent.SUCCEED),
            "attempts": attempts_total,
            "last_error": None,
            "processed_at": now,
            "external_reference": reference,
        })

        updates = to_invoice_updates(verdict.extracted)
        updates["observations"] = None
        if definition.is_validation:
            updates["pending_validation"] = False
            updates["validation_response"] = body
            updates.setdefault("validated_at", now)
            event = InvoiceEvent.ON_VALIDATION_APPROVED
        else:
            updates[f"delivery_channels.{definition.channel}"] = ChannelStatus.SENT.value
            updates["sent_at"] = now
            event = InvoiceEvent.ON_DELIVERY_SUCCEEDED

        await self._update_invoice(definition, invoice, status_at_claim, event, updates)
        logger.info("[%s] Invoice %s approved (job %s)", definition.label, invoice["id"], job["id"])
        return JobStatus.SENT.value

    async def _apply_rejected(self, definition, job, invoice, status_at_claim, verdict, body, attempts_total):
        now = utc_now()
        await self.store.update_job(definition.name, job["id"], {
            "status": InvoiceStateMachine.next_job_status(JobStatus.PROCESSING, JobEvent.SUCCEED),
            "attempts": attempts_total,
            "last_error": verdict.message,
            "processed_at": now,
            "external_reference": normalize_fields(verdict.extracted).get("external_reference"),
        })

        updates = to_invoice_updates(verdict.extracted)
        if definition.is_validation:
            updates.setdefault("external.dgi_status", "rechazado")
            updates["pending_validation"] = False
            updates["validation_response"] = body
            updates["observations"] = f"Validation rejected: {verdict.message}"
            event = InvoiceEvent.ON_VALIDATION_REJECTED
        else:
            updates[f"delivery_channels.{definition.channel}"] = ChannelStatus.SENT_ERROR.value
            updates["observations"] = f"Error sending {definition.channel}: {verdict.message}"
            event = InvoiceEvent.ON_DELIVERY_FAILED

        await self._update_invoice(definition, invoice, status_at_claim, event, updates)
        logger.warning("[%s] Invoice %s rejected: %s", definition.label, invoice["id"], verdict.message)
        return JobStatus.SENT.value

    async def _apply_terminal_failure(self, definition, job, invoice, status_at_claim, verdict, attempts_total):
        await self.store.update_job(definition.name, job["id"], {
            "status": InvoiceStateMachine.next_job_status(JobStatus.PROCESSING, JobEvent.FAIL),
            "attempts": attempts_total,
            "last_error": verdict.message,
            "processed_at": utc_now(),
        })

        await self._propagate_failure(
            definition, invoice, status_at_claim, _failure_observation(definition, verdict.message)
        )
        logger.error(
            "[%s] Job %s for invoice %s failed after %d attempts: %s",
            definition.label, job["id"], invoice["id"], attempts_total, verdict.message
        )
        return JobStatus.FAILED.value

    async def _apply_retry(self, definition, job, invoice, status_at_claim, verdict, attempts_total):
        await self.store.update_job(definition.name, job["id"], {
            "status": InvoiceStateMachine.next_job_status(JobStatus.PROCESSING, JobEvent.RETRY),
            "attempts": attempts_total,
            "last_error": verdict.message,
        })

        # Delivery retried across cycles surfaces the error on the invoice meanwhile
        if definition.retry_strategy == RetryStrategy.ACROSS_CYCLES and not definition.is_validation:
            await self._update_invoice(definition, invoice, status_at_claim, InvoiceEvent.ON_DELIVERY_FAILED, {
                f"delivery_channels.{definition.channel}": ChannelStatus.SENT_ERROR.value,
                "observations": _failure_observation(definition, verdict.message),
            })

        logger.warning(
            "[%s] Job %s for invoice %s will be retried (attempt %d): %s",
            definition.label, job["id"], invoice["id"], attempts_total, verdict.message
        )
        return JobStatus.PENDING.value

    async def _configuration_error(self, definition, job, invoice, status_at_claim, message: str) -> Dict[str, Any]:
        """Fail the job without consuming an attempt; the invoice takes the failure."""
        error = f"Configuration error: {message}"
        await self.store.update_job(definition.name, job["id"], {
            "status": InvoiceStateMachine.next_job_status(JobStatus.PROCESSING, JobEvent.FAIL),
            "last_error": error,
            "processed_at": utc_now(),
        })

        await self._propagate_failure(definition, invoice, status_at_claim, error)

        logger.error("[%s] Job %s: %s", definition.label, job["id"], error)
        return {
            "job_id": job["id"],
            "invoice_id": invoice["id"],
            "status": JobStatus.FAILED.value,
            "outcome": "configuration_error",
            "attempts": job.get("attempts", 0),
            "error": error,
        }

    async def _fail_without_call(self, definition, job, invoice, message: str) -> Dict[str, Any]:
        await self.store.update_job(definition.name, job["id"], {
            "status": InvoiceStateMachine.next_job_status(JobStatus.PROCESSING, JobEvent.FAIL),
            "last_error": message,
            "processed_at": utc_now(),
        })
        if invoice is not None:
            status = invoice.get("status") or InvoiceStatus.DRAFT.value
            await self._propagate_failure(definition, invoice, status, _failure_observation(definition, message))
        logger.warning("[%s] Job %s failed without delivery: %s", definition.label, job["id"], message)
        return {
            "job_id": job["id"],
            "invoice_id": job.get("invoice_id"),
            "status": JobStatus.FAILED.value,
            "outcome": "ineligible",
            "attempts": job.get("attempts", 0),
            "error": message,
        }

    async def _record_crash(self, definition, job, error: Exception) -> Dict[str, Any]:
        """
        Turn an unexpected exception into a failed attempt on the job.

        The attempt counts against the same budget as a delivery attempt and
        gets its own log entry; once the budget is spent the invoice takes the
        failure like any other terminal outcome.
        """
        label = definition.label
        message = f"Unexpected error: {type(error).__name__}: {error}"

        config = None
        try:
            configs = await self.store.list_configs(definition.config_type)
            config = select_active_config(configs, definition.config_type, job.get("config_id"))
        except Exception as e:
            logger.error("[%s] Could not resolve config for crashed job %s: %s", label, job["id"], str(e))

        attempts = job.get("attempts", 0) + 1
        exhausted = attempts - job.get("attempts_at_requeue", 0) >= definition.max_attempts_for(config)
        status = JobStatus.FAILED.value if exhausted else JobStatus.PENDING.value

        fields: Dict[str, Any] = {"status": status, "attempts": attempts, "last_error": message}
        if exhausted:
            fields["processed_at"] = utc_now()
        try:
            recorded = await self.store.update_job(definition.name, job["id"], fields)
            if recorded:
                await self.store.append_log(self._log_entry(
                    definition, job, config.id if config else None, error_message=message
                ))
            else:
                logger.warning("[%s] Job %s was no longer processing; crash not recorded", label, job["id"])
            if recorded and exhausted:
                invoice = await self.store.get_invoice(job["invoice_id"])
                if invoice:
                    await self._propagate_failure(
                        definition, invoice, invoice.get("status") or InvoiceStatus.DRAFT.value,
                        _failure_observation(definition, message)
                    )
        except Exception as e:
            logger.error("[%s] Could not record failure for job %s: %s", label, job["id"], str(e), exc_info=True)

        return {
            "job_id": job["id"],
            "invoice_id": job.get("invoice_id"),
            "status": status,
            "outcome": "error",
            "attempts": attempts,
            "error": message,
        }

    # =========================================================================
    # AUDIT LOG
    # =========================================================================

    def _log_entry(self, definition: QueueDefinition, job: Dict[str, Any], config_id: Optional[str], **fields):
        entry = {
            "id": str(uuid.uuid4()),
            "invoice_id": job["invoice_id"],
            "config_id": config_id,
            "queue": definition.name.value,
            "job_id": job["id"],
            "source": "queue",
            "request_payload": None,
            "response_payload": None,
            "status_code": None,
            "status": "error",
            "error_message": None,
            "validation_result": "error",
            "external_reference": None,
            "duration_ms": 0,
            "retry_count": job.get("attempts", 0),
            "created_at": utc_now(),
        }
        entry.update(fields)
        return entry

    async def _write_attempt_logs(
        self,
        definition: QueueDefinition,
        job: Dict[str, Any],
        config: IntegrationConfig,
        payload: Dict[str, Any],
        attempts: List[AttemptRecord],
        verdicts: List[AttemptVerdict],
    ):
        retries_before = job.get("attempts", 0)
        for attempt, verdict in zip(attempts, verdicts):
            if attempt.kind == OutcomeKind.TIMEOUT:
                status = "timeout"
            elif verdict.kind in (Verdict.APPROVED, Verdict.REJECTED):
                status = "success"
            else:
                status = "error"

            if verdict.kind in (Verdict.APPROVED, Verdict.REJECTED):
                validation_result = verdict.kind.value
            else:
                validation_result = "error"

            fields = normalize_fields(verdict.extracted)
            await self.store.append_log(self._log_entry(
                definition, job, config.id,
                request_payload=payload,
                response_payload=attempt.body,
                status_code=attempt.http_status,
                status=status,
                error_message=None if verdict.kind == Verdict.APPROVED else verdict.message,
                validation_result=validation_result,
                external_reference=fields.get("external_reference") or fields.get("pdf_id"),
                duration_ms=attempt.duration_ms,
                retry_count=retries_before + attempt.index - 1,
            ))
