"""
Invoice Hub - External Invoice Integration Pipeline

Config-driven validation and delivery of invoices to external systems
(DGI e-invoice validation, PDF generation, email delivery).

Components:
- path_resolver.py: dotted-path get/set over nested records
- mapping_engine.py: request building / response extraction from mapping configs
- integration_config.py: integration config model, selection, auth headers
- delivery_executor.py: HTTP POST with timeout and bounded linear retry
- invoice_state.py: invoice and queue job state machine
- invoice_fields.py: where external values land on the invoice
- pipeline_store.py: MongoDB access (claim, conditional update, audit log)
- queue_processor.py: polling cycle shared by the three queues
- queue_worker.py: one polling task per queue
- webhook_reconciler.py: idempotent callback reconciliation

Usage:
    from services.invoice_pipeline import PipelineStore, QueueProcessor, QueueWorkerPool

    store = PipelineStore(db)
    processor = QueueProcessor(store)
    workers = QueueWorkerPool(processor)
    workers.start_all()
"""

from .delivery_executor import DeliveryExecutor, DeliveryOutcome, OutcomeKind
from .integration_config import AuthType, ConfigType, IntegrationConfig
from .invoice_state import InvoiceNotFoundError, InvoiceStateError, InvoiceStatus, JobStatus
from .mapping_engine import ConfigurationError, MappingError, build_request, extract_response
from .pipeline_config import QueueName, is_invoice_pipeline_enabled
from .pipeline_store import PipelineStore, get_pipeline_store, set_pipeline_db
from .queue_processor import QueueProcessor, RetryStrategy
from .queue_worker import QueueWorker, QueueWorkerPool
from .webhook_reconciler import ReconcileStatus, WebhookReconciler

__all__ = [
    'DeliveryExecutor', 'DeliveryOutcome', 'OutcomeKind',
    'AuthType', 'ConfigType', 'IntegrationConfig',
    'InvoiceNotFoundError', 'InvoiceStateError', 'InvoiceStatus', 'JobStatus',
    'ConfigurationError', 'MappingError', 'build_request', 'extract_response',
    'QueueName', 'is_invoice_pipeline_enabled',
    'PipelineStore', 'get_pipeline_store', 'set_pipeline_db',
    'QueueProcessor', 'RetryStrategy',
    'QueueWorker', 'QueueWorkerPool',
    'ReconcileStatus', 'WebhookReconciler',
]
