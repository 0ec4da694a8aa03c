"""
Invoice Hub - Routes Package

Modular API routers for the Invoice Hub.
"""

from .invoice_pipeline import (
    invoice_pipeline_router,
    webhook_router,
    set_dependencies as set_invoice_pipeline_deps,
)

__all__ = [
    'invoice_pipeline_router', 'webhook_router', 'set_invoice_pipeline_deps',
]
