"""
Invoice Hub - Invoice Pipeline Configuration

Environment-driven settings for the external invoice integration pipeline.
Values are read once at import time; server.py loads .env before importing
this module.

Feature Flag: INVOICE_PIPELINE_ENABLED
- When True: queue workers start on app startup
- When False: workers are not started; the webhook and admin routes still respond
"""

import os
from enum import Enum


def _get_int(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _get_float(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


# =============================================================================
# FEATURE FLAG
# =============================================================================

def is_invoice_pipeline_enabled() -> bool:
    """Check if the invoice pipeline workers are enabled via feature flag."""
    return os.environ.get("INVOICE_PIPELINE_ENABLED", "true").lower() in ("true", "1", "yes")


# =============================================================================
# QUEUE POLLING
# =============================================================================

# Fixed polling interval per queue
QUEUE_POLL_INTERVAL_SECONDS = _get_float("INVOICE_QUEUE_POLL_INTERVAL_SECONDS", 30.0)

# Jobs claimed per polling cycle
QUEUE_BATCH_SIZE = _get_int("INVOICE_QUEUE_BATCH_SIZE", 5)

# Delay between a change notification and the re-poll it triggers
QUEUE_DEBOUNCE_SECONDS = _get_float("INVOICE_QUEUE_DEBOUNCE_SECONDS", 1.0)

# Invoices scanned per cycle when feeding the validation queue
VALIDATION_FEED_LIMIT = _get_int("INVOICE_VALIDATION_FEED_LIMIT", 10)


# =============================================================================
# DELIVERY DEFAULTS (used when an integration config leaves them unset)
# =============================================================================

DEFAULT_RETRY_ATTEMPTS = _get_int("INVOICE_DEFAULT_RETRY_ATTEMPTS", 3)
DEFAULT_TIMEOUT_MS = _get_int("INVOICE_DEFAULT_TIMEOUT_MS", 30000)

# Linear backoff step between in-call attempts (attempt_index * step)
RETRY_BACKOFF_STEP_MS = _get_int("INVOICE_RETRY_BACKOFF_STEP_MS", 1000)

# Email queue retries across polling cycles; caps config.retry_attempts + 1
EMAIL_MAX_ATTEMPTS = _get_int("INVOICE_EMAIL_MAX_ATTEMPTS", 3)


# =============================================================================
# INVOICE LINES (mapping context)
# =============================================================================

# IVA rate for lines without their own tax_rate, and for the shipping line
DEFAULT_TAX_RATE = _get_float("INVOICE_DEFAULT_TAX_RATE", 22.0)

SHIPPING_LINE_DESCRIPTION = os.environ.get("INVOICE_SHIPPING_LINE_DESCRIPTION", "Costo de Envío")

# Template the PDF/email service renders; exposed to mappings as settings.pdf_template_name
PDF_TEMPLATE_NAME = os.environ.get("INVOICE_PDF_TEMPLATE_NAME", "invoice_email_service")


# =============================================================================
# COLLECTIONS
# =============================================================================

INVOICES_COLLECTION = "invoices"
CLIENTS_COLLECTION = "clients"
ORDERS_COLLECTION = "orders"
ORDER_ITEMS_COLLECTION = "order_items"
INVOICE_ITEMS_COLLECTION = "invoice_items"
CONFIGS_COLLECTION = "integration_configs"
VALIDATION_LOG_COLLECTION = "external_invoice_validation_log"


class QueueName(str, Enum):
    VALIDATION = "validation"
    PDF = "pdf"
    EMAIL = "email"


QUEUE_COLLECTIONS = {
    QueueName.VALIDATION: "invoice_validation_queue",
    QueueName.PDF: "invoice_pdf_queue",
    QueueName.EMAIL: "invoice_email_queue",
}


def parse_queue_name(value) -> QueueName:
    """Resolve a queue name from a path parameter. Raises ValueError if unknown."""
    if isinstance(value, QueueName):
        return value
    return QueueName(str(value).strip().lower())
