from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from services.invoice_pipeline import (
    QueueProcessor,
    QueueWorkerPool,
    WebhookReconciler,
    is_invoice_pipeline_enabled,
    set_pipeline_db,
)
from routes.invoice_pipeline import invoice_pipeline_router, webhook_router, set_dependencies as set_invoice_pipeline_deps

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

app = FastAPI(title="Invoice Hub API")

# Invoice pipeline (wired at startup)
_pipeline_store = None
_queue_workers = None


# ==================== APP SETUP ====================

# Invoice pipeline admin API
app.include_router(invoice_pipeline_router)
# Inbound webhook for external invoice systems
app.include_router(webhook_router)

@app.get("/api/health")
async def health_check():
    """Health check endpoint for Docker/Kubernetes probes."""
    return {"status": "healthy", "service": "invoice-hub"}

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    global _pipeline_store, _queue_workers
    # Invoice pipeline: store, indexes, processor, workers
    _pipeline_store = set_pipeline_db(db)
    await _pipeline_store.ensure_indexes()
    processor = QueueProcessor(_pipeline_store)
    _queue_workers = QueueWorkerPool(processor)
    set_invoice_pipeline_deps(_pipeline_store, processor, _queue_workers, WebhookReconciler(_pipeline_store))

    # Start one polling worker per queue if enabled
    if is_invoice_pipeline_enabled():
        _queue_workers.start_all()
        logger.info("Invoice queue workers started")
    else:
        logger.info("Invoice pipeline disabled (INVOICE_PIPELINE_ENABLED=false); workers not started")

    logger.info("Invoice Hub started")

@app.on_event("shutdown")
async def shutdown_db_client():
    # Cancel queue workers if running
    if _queue_workers is not None:
        await _queue_workers.stop_all()
        logger.info("Invoice queue workers stopped")
    client.close()
