"""
Invoice Hub - Invoice Pipeline API Routes

Inbound webhook for external systems:
- POST /webhook (also /api/invoice-pipeline/webhook)

Admin endpoints:
- Pipeline and worker status
- Manual queue triggers and one-off cycles
- Manual (re)queue of an invoice
- Validation log history
- Integration configs (credentials redacted)
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.invoice_pipeline.integration_config import ConfigType
from services.invoice_pipeline.invoice_state import InvoiceNotFoundError, InvoiceStateError
from services.invoice_pipeline.mapping_engine import list_template_paths
from services.invoice_pipeline.pipeline_config import QueueName, is_invoice_pipeline_enabled, parse_queue_name
from services.invoice_pipeline.webhook_reconciler import ReconcileStatus

logger = logging.getLogger(__name__)

# Create routers
invoice_pipeline_router = APIRouter(prefix="/api/invoice-pipeline", tags=["Invoice Pipeline"])
webhook_router = APIRouter(tags=["Invoice Webhook"])

# Dependencies (set during app startup)
_store = None
_processor = None
_workers = None
_reconciler = None


def set_dependencies(store, processor, workers=None, reconciler=None):
    """Set pipeline dependencies for the routes."""
    global _store, _processor, _workers, _reconciler
    _store = store
    _processor = processor
    _workers = workers
    _reconciler = reconciler


def _require_store():
    if _store is None or _processor is None:
        raise HTTPException(status_code=500, detail="Invoice pipeline not initialized")


def _queue_or_404(queue: str) -> QueueName:
    try:
        return parse_queue_name(queue)
    except ValueError:
        valid = [q.value for q in QueueName]
        raise HTTPException(status_code=404, detail=f"Unknown queue '{queue}'. Valid: {valid}")


def _notify(queue: QueueName):
    if _workers is not None and _workers.get(queue).is_running:
        _workers.notify(queue)


# =============================================================================
# MODELS
# =============================================================================

class EnqueueRequest(BaseModel):
    """Request model for manual (re)queue."""
    priority: Optional[int] = None
    config_id: Optional[str] = None


# =============================================================================
# WEBHOOK
# =============================================================================

async def _handle_webhook(request: Request):
    if _reconciler is None:
        return JSONResponse(
            status_code=500,
            content={"success": False, "record_id": None, "status": None, "message": "Invoice pipeline not initialized"},
        )

    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return JSONResponse(
            status_code=400,
            content={"success": False, "record_id": None, "status": None, "message": "Body must be a JSON object"},
        )

    try:
        result = await _reconciler.reconcile(payload)
    except Exception as e:
        logger.error("[Webhook] Error processing callback: %s", str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "record_id": None, "status": None, "message": str(e)},
        )

    status_codes = {
        ReconcileStatus.OK: 200,
        ReconcileStatus.INVALID: 400,
        ReconcileStatus.NOT_FOUND: 404,
        ReconcileStatus.CONFLICT: 409,
    }
    return JSONResponse(status_code=status_codes[result.status], content=result.to_response())


@webhook_router.post("/webhook")
async def invoice_webhook(request: Request):
    """
    Receive an asynchronous invoice callback (DGI result, generated PDF).

    Body: invoice_id or invoice_number, plus any of dgi_status,
    dgi_authorization_code, dgi_message, dgi_efactura_id, dgi_validated_at,
    pdf_id, pdf_base64, pdf_filename, pdf_size_bytes, pdf_generated_at, status.
    """
    return await _handle_webhook(request)


@invoice_pipeline_router.post("/webhook")
async def invoice_pipeline_webhook(request: Request):
    return await _handle_webhook(request)


# =============================================================================
# STATUS
# =============================================================================

@invoice_pipeline_router.get("/status")
async def get_pipeline_status():
    """Feature flag, job counts per queue, and worker state."""
    _require_store()

    counts = {}
    for queue in QueueName:
        counts[queue.value] = await _store.count_jobs_by_status(queue)

    return {
        "enabled": is_invoice_pipeline_enabled(),
        "queues": counts,
        "workers": _workers.status() if _workers is not None else {},
    }


# =============================================================================
# QUEUES
# =============================================================================

@invoice_pipeline_router.post("/queues/{queue}/trigger")
async def trigger_queue(queue: str):
    """Request a debounced re-poll of a queue."""
    queue_name = _queue_or_404(queue)
    if _workers is None or not _workers.get(queue_name).is_running:
        raise HTTPException(status_code=409, detail=f"Worker for queue '{queue_name.value}' is not running")

    _workers.notify(queue_name)
    return {"queue": queue_name.value, "triggered": True}


@invoice_pipeline_router.post("/queues/{queue}/process")
async def process_queue(queue: str):
    """Run one processing cycle now and return its results."""
    _require_store()
    queue_name = _queue_or_404(queue)

    if _workers is not None:
        return await _workers.get(queue_name).run_once()
    return await _processor.run_cycle(queue_name)


# =============================================================================
# INVOICES
# =============================================================================

@invoice_pipeline_router.post("/invoices/{invoice_id}/enqueue/{queue}")
async def enqueue_invoice(invoice_id: str, queue: str, body: Optional[EnqueueRequest] = None):
    """Queue (or re-queue) an invoice for validation, PDF or email delivery."""
    _require_store()
    queue_name = _queue_or_404(queue)
    body = body or EnqueueRequest()

    try:
        job = await _processor.enqueue(invoice_id, queue_name, priority=body.priority, config_id=body.config_id)
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvoiceStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    _notify(queue_name)
    return {"queue": queue_name.value, "job": job}


@invoice_pipeline_router.get("/invoices/{invoice_id}/logs")
async def get_invoice_logs(invoice_id: str, limit: int = Query(100, ge=1, le=500)):
    """Validation log history for an invoice, newest first."""
    _require_store()

    invoice = await _store.get_invoice(invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail=f"Invoice {invoice_id} not found")

    logs = await _store.list_logs(invoice_id, limit=limit)
    return {"invoice_id": invoice_id, "total": len(logs), "logs": logs}


# =============================================================================
# CONFIGS
# =============================================================================

@invoice_pipeline_router.get("/configs")
async def list_integration_configs(config_type: Optional[ConfigType] = None):
    """Integration configs with credentials redacted."""
    _require_store()

    configs = await _store.list_configs(config_type)
    items = []
    for config in configs:
        data = config.sanitized()
        data["header_template_paths"] = list_template_paths(config.headers)
        items.append(data)
    return {"total": len(items), "configs": items}
