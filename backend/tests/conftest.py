"""
Shared fixtures for invoice pipeline tests.

InMemoryPipelineStore implements the same primitives as PipelineStore
(atomic claim, conditional updates, ordered selection, append-only log)
over plain dicts, so processor and webhook tests run without MongoDB.
"""

import copy
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from services.invoice_pipeline.integration_config import ConfigType, IntegrationConfig
from services.invoice_pipeline.invoice_state import JobStatus, OPEN_JOB_STATUSES
from services.invoice_pipeline.path_resolver import set_path
from services.invoice_pipeline.pipeline_config import QueueName
from services.invoice_pipeline.pipeline_store import build_context, new_job


class InMemoryPipelineStore:
    """Dict-backed stand-in for the Mongo store."""

    def __init__(self):
        self.invoices = {}
        self.clients = {}
        self.orders = {}
        self.order_items = []
        self.invoice_items = []
        self.configs = []
        self.jobs = {queue: [] for queue in QueueName}
        self.logs = []
        self.invoice_writes = 0

    # -- seeding helpers -----------------------------------------------------

    def add_invoice(self, **overrides):
        invoice = {
            "id": str(uuid.uuid4()),
            "invoice_number": "INV-0001",
            "client_id": None,
            "order_id": None,
            "subtotal": 100.0,
            "tax_amount": 22.0,
            "discount_amount": 0.0,
            "total_amount": 122.0,
            "currency": "UYU",
            "issue_date": "2026-01-15",
            "status": "draft",
            "pending_validation": False,
            "observations": None,
            "created_at": "2026-01-15T10:00:00+00:00",
        }
        invoice.update(overrides)
        self.invoices[invoice["id"]] = invoice
        return invoice

    def add_config(self, config_type=ConfigType.VALIDATION, **overrides):
        config = {
            "id": str(uuid.uuid4()),
            "name": "Test endpoint",
            "config_type": ConfigType(config_type).value,
            "api_url": "https://external.test/api",
            "auth_type": "none",
            "auth_credentials": {},
            "headers": {},
            "request_mapping": {"numero": "invoice.invoice_number"},
            "response_mapping": {"approved": "response.approved", "message": "response.message"},
            "retry_attempts": 2,
            "timeout": 1000,
            "is_active": True,
            "updated_at": "2026-01-01T00:00:00+00:00",
        }
        config.update(overrides)
        self.configs.append(config)
        return config

    def add_job(self, queue, invoice_id, created_offset_s=0, **overrides):
        job = new_job(invoice_id)
        created = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc) + timedelta(seconds=created_offset_s)
        job["created_at"] = created.isoformat()
        job.update(overrides)
        self.jobs[QueueName(queue)].append(job)
        return job

    def job(self, queue, job_id):
        for job in self.jobs[QueueName(queue)]:
            if job["id"] == job_id:
                return job
        return None

    # -- store primitives ----------------------------------------------------

    async def get_invoice(self, invoice_id):
        invoice = self.invoices.get(invoice_id)
        return copy.deepcopy(invoice) if invoice else None

    async def find_invoice(self, invoice_id=None, invoice_number=None):
        if invoice_id:
            invoice = self.invoices.get(invoice_id)
            return copy.deepcopy(invoice) if invoice else None
        if invoice_number:
            for invoice in self.invoices.values():
                if invoice.get("invoice_number") == invoice_number:
                    return copy.deepcopy(invoice)
        return None

    async def update_invoice(self, invoice_id, fields, expected_status=None):
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            return False
        if expected_status is not None and invoice.get("status") != expected_status:
            return False
        for path, value in fields.items():
            set_path(invoice, path, copy.deepcopy(value))
        self.invoice_writes += 1
        return True

    async def find_invoices_pending_validation(self, statuses, limit):
        found = [
            copy.deepcopy(i) for i in self.invoices.values()
            if i.get("pending_validation") is True and i.get("status") in statuses
        ]
        found.sort(key=lambda i: i.get("created_at") or "")
        return found[:limit]

    async def load_context(self, invoice):
        client = self.clients.get(invoice.get("client_id"))
        order = self.orders.get(invoice.get("order_id"))
        order_items = [i for i in self.order_items if i.get("order_id") == invoice.get("order_id")]
        invoice_items = [i for i in self.invoice_items if i.get("invoice_id") == invoice["id"]]
        return build_context(invoice, client, order, order_items, invoice_items)

    async def list_configs(self, config_type=None):
        configs = []
        for doc in self.configs:
            if config_type is not None and doc["config_type"] != ConfigType(config_type).value:
                continue
            configs.append(IntegrationConfig(**doc))
        return configs

    async def select_pending_jobs(self, queue, limit):
        pending = [j for j in self.jobs[QueueName(queue)] if j["status"] == JobStatus.PENDING.value]
        pending.sort(key=lambda j: j["created_at"])
        pending.sort(key=lambda j: j.get("priority") if j.get("priority") is not None else float("-inf"), reverse=True)
        return [copy.deepcopy(j) for j in pending[:limit]]

    async def claim_job(self, queue, job_id):
        job = self.job(queue, job_id)
        if job is None or job["status"] != JobStatus.PENDING.value:
            return None
        job["status"] = JobStatus.PROCESSING.value
        job["claimed_at"] = datetime.now(timezone.utc).isoformat()
        return copy.deepcopy(job)

    async def update_job(self, queue, job_id, fields, expected_status=JobStatus.PROCESSING.value):
        job = self.job(queue, job_id)
        if job is None:
            return False
        if expected_status is not None and job["status"] != expected_status:
            return False
        job.update(copy.deepcopy(fields))
        return True

    async def insert_job(self, queue, job):
        self.jobs[QueueName(queue)].append(copy.deepcopy(job))
        return job

    async def find_jobs_for_invoice(self, queue, invoice_id, statuses=None):
        jobs = [
            copy.deepcopy(j) for j in self.jobs[QueueName(queue)]
            if j["invoice_id"] == invoice_id and (not statuses or j["status"] in statuses)
        ]
        jobs.sort(key=lambda j: j["created_at"], reverse=True)
        return jobs

    async def find_open_job(self, queue, invoice_id):
        for job in self.jobs[QueueName(queue)]:
            if job["invoice_id"] == invoice_id and job["status"] in OPEN_JOB_STATUSES:
                return copy.deepcopy(job)
        return None

    async def count_jobs_by_status(self, queue):
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs[QueueName(queue)]:
            counts[job["status"]] += 1
        return counts

    async def append_log(self, entry):
        self.logs.append(copy.deepcopy(entry))
        return entry

    async def list_logs(self, invoice_id, limit=100):
        logs = [copy.deepcopy(e) for e in self.logs if e["invoice_id"] == invoice_id]
        logs.sort(key=lambda e: e["created_at"], reverse=True)
        return logs[:limit]


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _scripted_transport(steps, seen=None):
    """
    httpx transport that replays one step per request. A step is either an
    httpx.Response, an exception to raise, or a callable taking the request.
    """
    steps = list(steps)

    def handler(request):
        if seen is not None:
            seen.append(request)
        if not steps:
            raise AssertionError(f"Unexpected request to {request.url}")
        step = steps.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return step

    return httpx.MockTransport(handler)


@pytest.fixture
def store():
    return InMemoryPipelineStore()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def scripted_transport():
    return _scripted_transport
