"""
Invoice Hub - Invoice Pipeline Store

MongoDB access for the invoice pipeline. Only the primitives the pipeline
relies on are exposed:

- conditional update ("set X only if status is Y"), including the atomic
  job claim pending -> processing
- selection with ordering and limit
- append-only insert for validation log entries

Collections:
- invoices, clients, orders, order_items, invoice_items (read / invoice updates)
- integration_configs (read-only)
- invoice_validation_queue, invoice_pdf_queue, invoice_email_queue
- external_invoice_validation_log (append-only)
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .integration_config import ConfigType, IntegrationConfig
from .invoice_state import JobStatus, OPEN_JOB_STATUSES
from .pipeline_config import (
    CLIENTS_COLLECTION,
    CONFIGS_COLLECTION,
    DEFAULT_TAX_RATE,
    INVOICE_ITEMS_COLLECTION,
    INVOICES_COLLECTION,
    ORDER_ITEMS_COLLECTION,
    ORDERS_COLLECTION,
    PDF_TEMPLATE_NAME,
    QUEUE_COLLECTIONS,
    SHIPPING_LINE_DESCRIPTION,
    VALIDATION_LOG_COLLECTION,
    QueueName,
)

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job(invoice_id: str, priority: Optional[int] = None, config_id: Optional[str] = None) -> Dict[str, Any]:
    """A fresh pending queue job document."""
    return {
        "id": str(uuid.uuid4()),
        "invoice_id": invoice_id,
        "config_id": config_id,
        "status": JobStatus.PENDING.value,
        "attempts": 0,
        "last_error": None,
        "priority": priority,
        "created_at": utc_now(),
        "claimed_at": None,
        "processed_at": None,
        "external_reference": None,
    }


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def _priced_line(description: str, quantity: float, unit_price: float, tax_rate: float) -> Dict[str, Any]:
    subtotal = quantity * unit_price
    tax = subtotal * tax_rate / 100
    return {
        "description": description,
        "quantity": quantity,
        "unit_price": unit_price,
        "tax_rate": tax_rate,
        "subtotal": round(subtotal, 2),
        "tax_amount": round(tax, 2),
        "total": round(subtotal + tax, 2),
    }


def build_invoice_lines(items: List[Dict[str, Any]], order: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Priced lines for document payloads: per-line subtotal, IVA and total,
    plus a shipping line when the order carries a shipping cost.
    """
    order = order or {}
    default_rate = _to_float(order.get("tax_rate"), DEFAULT_TAX_RATE)

    lines = []
    for item in items:
        lines.append(_priced_line(
            item.get("product_name") or item.get("description") or "",
            _to_float(item.get("quantity"), 1.0),
            _to_float(item.get("unit_price"), 0.0),
            _to_float(item.get("tax_rate"), default_rate),
        ))

    shipping_cost = _to_float(order.get("shipping_cost"), 0.0)
    if shipping_cost > 0:
        lines.append(_priced_line(SHIPPING_LINE_DESCRIPTION, 1.0, shipping_cost, DEFAULT_TAX_RATE))
    return lines


def build_context(
    invoice: Dict[str, Any],
    client: Optional[Dict[str, Any]],
    order: Optional[Dict[str, Any]],
    order_items: List[Dict[str, Any]],
    invoice_items: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Mapping context for one invoice.

    Related records are reachable both at the top level ("client.email") and
    embedded in the invoice ("invoice.clients.email"). "items" prefers the
    invoice's own lines and falls back to the order's; "lines" are the same
    items priced, with "totals" summed over them.
    """
    invoice_view = dict(invoice)
    invoice_view["clients"] = client or {}
    invoice_view["orders"] = order or {}
    items = list(invoice_items or order_items or [])
    lines = build_invoice_lines(items, order)
    return {
        "invoice": invoice_view,
        "client": client or {},
        "order": order or {},
        "items": items,
        "order_items": list(order_items or []),
        "invoice_items": list(invoice_items or []),
        "lines": lines,
        "totals": {
            "subtotal": round(sum(line["subtotal"] for line in lines), 2),
            "tax_amount": round(sum(line["tax_amount"] for line in lines), 2),
            "total": round(sum(line["total"] for line in lines), 2),
        },
        "settings": {"pdf_template_name": PDF_TEMPLATE_NAME},
    }


class PipelineStore:
    """Motor-backed store for invoices, queue jobs, configs and the validation log."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    def _queue(self, queue: QueueName):
        return self.db[QUEUE_COLLECTIONS[QueueName(queue)]]

    # =========================================================================
    # INDEXES
    # =========================================================================

    async def ensure_indexes(self):
        await self.db[INVOICES_COLLECTION].create_index("id", unique=True)
        await self.db[INVOICES_COLLECTION].create_index("invoice_number")
        await self.db[INVOICES_COLLECTION].create_index([("pending_validation", 1), ("status", 1)])
        await self.db[CONFIGS_COLLECTION].create_index([("config_type", 1), ("is_active", 1)])
        await self.db[VALIDATION_LOG_COLLECTION].create_index([("invoice_id", 1), ("created_at", -1)])
        for queue in QueueName:
            collection = self._queue(queue)
            await collection.create_index("id", unique=True)
            await collection.create_index([("status", 1), ("priority", -1), ("created_at", 1)])
            await collection.create_index([("invoice_id", 1), ("status", 1)])
        logger.info("Invoice pipeline indexes ensured")

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[INVOICES_COLLECTION].find_one({"id": invoice_id}, NO_ID)

    async def find_invoice(self, invoice_id: Optional[str] = None, invoice_number: Optional[str] = None):
        """Look up by id; the business key is used only when no id is given."""
        if invoice_id:
            return await self.get_invoice(invoice_id)
        if invoice_number:
            return await self.db[INVOICES_COLLECTION].find_one({"invoice_number": invoice_number}, NO_ID)
        return None

    async def update_invoice(
        self,
        invoice_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        """
        Set fields on an invoice. With expected_status, the write only applies
        if the invoice still has that status. Returns True if a document matched.
        """
        query: Dict[str, Any] = {"id": invoice_id}
        if expected_status is not None:
            query["status"] = expected_status
        result = await self.db[INVOICES_COLLECTION].update_one(query, {"$set": fields})
        return result.matched_count == 1

    async def find_invoices_pending_validation(self, statuses: List[str], limit: int) -> List[Dict[str, Any]]:
        cursor = self.db[INVOICES_COLLECTION].find(
            {"pending_validation": True, "status": {"$in": list(statuses)}},
            NO_ID,
        ).sort("created_at", 1).limit(limit)
        return await cursor.to_list(limit)

    async def load_context(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        """Invoice plus its client, order and line items, shaped for the mapping engine."""
        client = None
        order = None
        order_items: List[Dict[str, Any]] = []

        if invoice.get("client_id"):
            client = await self.db[CLIENTS_COLLECTION].find_one({"id": invoice["client_id"]}, NO_ID)
        if invoice.get("order_id"):
            order = await self.db[ORDERS_COLLECTION].find_one({"id": invoice["order_id"]}, NO_ID)
            order_items = await self.db[ORDER_ITEMS_COLLECTION].find(
                {"order_id": invoice["order_id"]}, NO_ID
            ).to_list(1000)
        invoice_items = await self.db[INVOICE_ITEMS_COLLECTION].find(
            {"invoice_id": invoice["id"]}, NO_ID
        ).to_list(1000)

        return build_context(invoice, client, order, order_items, invoice_items)

    # =========================================================================
    # CONFIGS
    # =========================================================================

    async def list_configs(self, config_type: Optional[ConfigType] = None) -> List[IntegrationConfig]:
        query: Dict[str, Any] = {}
        if config_type is not None:
            query["config_type"] = ConfigType(config_type).value
        docs = await self.db[CONFIGS_COLLECTION].find(query, NO_ID).to_list(200)

        configs = []
        for doc in docs:
            try:
                configs.append(IntegrationConfig(**doc))
            except ValueError as e:
                logger.warning("Skipping invalid integration config %s: %s", doc.get("id"), str(e))
        return configs

    # =========================================================================
    # QUEUE JOBS
    # =========================================================================

    async def select_pending_jobs(self, queue: QueueName, limit: int) -> List[Dict[str, Any]]:
        """Pending jobs, highest priority first (absent sorts lowest), then oldest first."""
        cursor = self._queue(queue).find(
            {"status": JobStatus.PENDING.value}, NO_ID
        ).sort([("priority", -1), ("created_at", 1)]).limit(limit)
        return await cursor.to_list(limit)

    async def claim_job(self, queue: QueueName, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Atomically move a job pending -> processing.

        Returns the claimed job, or None if another worker got there first.
        """
        return await self._queue(queue).find_one_and_update(
            {"id": job_id, "status": JobStatus.PENDING.value},
            {"$set": {"status": JobStatus.PROCESSING.value, "claimed_at": utc_now()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def update_job(
        self,
        queue: QueueName,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = JobStatus.PROCESSING.value,
    ) -> bool:
        query: Dict[str, Any] = {"id": job_id}
        if expected_status is not None:
            query["status"] = expected_status
        result = await self._queue(queue).update_one(query, {"$set": fields})
        return result.matched_count == 1

    async def insert_job(self, queue: QueueName, job: Dict[str, Any]) -> Dict[str, Any]:
        await self._queue(queue).insert_one(dict(job))
        return job

    async def find_jobs_for_invoice(
        self,
        queue: QueueName,
        invoice_id: str,
        statuses: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"invoice_id": invoice_id}
        if statuses:
            query["status"] = {"$in": list(statuses)}
        return await self._queue(queue).find(query, NO_ID).sort("created_at", -1).to_list(100)

    async def find_open_job(self, queue: QueueName, invoice_id: str) -> Optional[Dict[str, Any]]:
        return await self._queue(queue).find_one(
            {"invoice_id": invoice_id, "status": {"$in": list(OPEN_JOB_STATUSES)}}, NO_ID
        )

    async def count_jobs_by_status(self, queue: QueueName) -> Dict[str, int]:
        counts = {}
        for status in JobStatus:
            counts[status.value] = await self._queue(queue).count_documents({"status": status.value})
        return counts

    # =========================================================================
    # VALIDATION LOG (append-only)
    # =========================================================================

    async def append_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        # insert_one adds _id to the dict it is given
        await self.db[VALIDATION_LOG_COLLECTION].insert_one(dict(entry))
        return entry

    async def list_logs(self, invoice_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.db[VALIDATION_LOG_COLLECTION].find(
            {"invoice_id": invoice_id}, NO_ID
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(limit)


# =============================================================================
# DATABASE REFERENCE (set during app startup)
# =============================================================================

_store: Optional[PipelineStore] = None


def set_pipeline_db(db: AsyncIOMotorDatabase) -> PipelineStore:
    """Set the database used by the invoice pipeline."""
    global _store
    _store = PipelineStore(db)
    logger.info("Invoice pipeline store initialized with database")
    return _store


def get_pipeline_store() -> Optional[PipelineStore]:
    return _store
