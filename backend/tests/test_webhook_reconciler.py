"""
Tests for webhook reconciliation of external callbacks.
"""
import pytest

from services.invoice_pipeline.pipeline_config import QueueName
from services.invoice_pipeline.webhook_reconciler import (
    ReconcileStatus,
    WebhookReconciler,
    build_webhook_updates,
)


class TestReconcileLookup:
    """Finding the invoice a callback refers to."""

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, store):
        invoice = store.add_invoice(status="pending_validation")
        before = dict(invoice)

        result = await WebhookReconciler(store).reconcile({"invoice_id": "nope", "dgi_status": "aprobado"})

        assert result.status == ReconcileStatus.NOT_FOUND
        assert result.success is False
        assert store.logs == []
        assert store.invoice_writes == 0
        assert store.invoices[invoice["id"]] == before

    @pytest.mark.asyncio
    async def test_missing_identifiers(self, store):
        result = await WebhookReconciler(store).reconcile({"dgi_status": "aprobado"})

        assert result.status == ReconcileStatus.INVALID
        assert "required" in result.message

    @pytest.mark.asyncio
    async def test_lookup_by_invoice_number_without_id(self, store):
        invoice = store.add_invoice(invoice_number="A-100", status="pending_validation")

        result = await WebhookReconciler(store).reconcile({
            "invoice_number": "A-100",
            "cae": "CAE-1",
        })

        assert result.status == ReconcileStatus.OK
        assert result.record_id == invoice["id"]
        assert store.invoices[invoice["id"]]["external"]["cae"] == "CAE-1"

    @pytest.mark.asyncio
    async def test_unknown_id_does_not_fall_back_to_number(self, store):
        invoice = store.add_invoice(invoice_number="INV-9", status="pending_validation", pending_validation=True)
        before = dict(invoice)

        result = await WebhookReconciler(store).reconcile({
            "invoice_id": "does-not-exist",
            "invoice_number": "INV-9",
            "dgi_status": "aprobado",
        })

        assert result.status == ReconcileStatus.NOT_FOUND
        assert store.invoices[invoice["id"]] == before
        assert store.invoice_writes == 0
        assert store.logs == []

    @pytest.mark.asyncio
    async def test_invalid_status_override(self, store):
        invoice = store.add_invoice()

        result = await WebhookReconciler(store).reconcile({"invoice_id": invoice["id"], "status": "paid"})

        assert result.status == ReconcileStatus.INVALID
        assert store.invoice_writes == 0


class TestReconcileUpdates:
    """Applying callback fields."""

    @pytest.mark.asyncio
    async def test_dgi_approval_validates_invoice(self, store):
        config = store.add_config()
        invoice = store.add_invoice(status="pending_validation", pending_validation=True)

        result = await WebhookReconciler(store).reconcile({
            "invoice_id": invoice["id"],
            "dgi_estado": "aprobado",
            "dgi_codigo_autorizacion": "AUTH-7",
            "dgi_fecha_validacion": "2026-02-01T12:00:00Z",
        })

        assert result.status == ReconcileStatus.OK
        assert result.invoice_status == "validated"
        stored = store.invoices[invoice["id"]]
        assert stored["status"] == "validated"
        assert stored["pending_validation"] is False
        assert stored["validated_at"] == "2026-02-01T12:00:00Z"
        assert stored["external"]["dgi_status"] == "aprobado"
        assert stored["external"]["dgi_authorization_code"] == "AUTH-7"

        assert len(store.logs) == 1
        log = store.logs[0]
        assert log["source"] == "webhook"
        assert log["config_id"] == config["id"]
        assert log["validation_result"] == "approved"
        assert log["response_payload"]["status"] == "validated"

    @pytest.mark.asyncio
    async def test_dgi_rejection(self, store):
        invoice = store.add_invoice(status="pending_validation", pending_validation=True)

        result = await WebhookReconciler(store).reconcile({
            "invoice_id": invoice["id"],
            "dgi_status": "rechazado",
            "dgi_message": "RUT invalido",
        })

        assert result.invoice_status == "rejected"
        stored = store.invoices[invoice["id"]]
        assert stored["status"] == "rejected"
        assert stored["external"]["dgi_message"] == "RUT invalido"
        assert store.logs[0]["validation_result"] == "rejected"
        assert store.logs[0]["config_id"] is None

    @pytest.mark.asyncio
    async def test_dgi_status_outside_validation_keeps_status(self, store):
        invoice = store.add_invoice(status="sent")

        result = await WebhookReconciler(store).reconcile({"invoice_id": invoice["id"], "dgi_status": "aprobado"})

        assert result.invoice_status == "sent"
        assert store.invoices[invoice["id"]]["status"] == "sent"
        assert store.invoices[invoice["id"]]["external"]["dgi_status"] == "aprobado"

    @pytest.mark.asyncio
    async def test_status_override_wins(self, store):
        invoice = store.add_invoice(status="sent-error")

        result = await WebhookReconciler(store).reconcile({
            "invoice_id": invoice["id"],
            "dgi_status": "rechazado",
            "status": "validated",
        })

        assert result.invoice_status == "validated"
        assert store.invoices[invoice["id"]]["status"] == "validated"

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, store):
        invoice = store.add_invoice(status="pending_validation")
        payload = {"invoice_id": invoice["id"], "dgi_status": "aprobado", "cae": "CAE-1"}
        reconciler = WebhookReconciler(store)

        first = await reconciler.reconcile(payload)
        snapshot = dict(store.invoices[invoice["id"]])
        writes = store.invoice_writes
        second = await reconciler.reconcile(payload)

        assert first.message == "Invoice updated"
        assert second.status == ReconcileStatus.OK
        assert second.message == "No changes"
        assert second.changed_fields == []
        assert store.invoice_writes == writes
        assert store.invoices[invoice["id"]] == snapshot
        assert len(store.logs) == 1
        assert second.log_written is False

    @pytest.mark.asyncio
    async def test_only_present_fields_are_written(self, store):
        invoice = store.add_invoice(status="validated", external={"cae": "CAE-1", "qr_code": "QR"})

        await WebhookReconciler(store).reconcile({"invoice_id": invoice["id"], "qr_code": "QR-2", "cae": ""})

        assert store.invoices[invoice["id"]]["external"] == {"cae": "CAE-1", "qr_code": "QR-2"}
        assert store.logs == []

    @pytest.mark.asyncio
    async def test_pdf_callback_completes_pdf_job(self, store):
        invoice = store.add_invoice(status="queued_for_delivery")
        job = store.add_job(QueueName.PDF, invoice["id"], status="processing")

        result = await WebhookReconciler(store).reconcile({
            "invoice_id": invoice["id"],
            "pdf_id": "pdf-9",
            "pdf_filename": "A-100.pdf",
            "pdf_base64": "JVBERi0=",
        })

        assert result.status == ReconcileStatus.OK
        stored = store.invoices[invoice["id"]]
        assert stored["pdf"] == {"pdf_id": "pdf-9", "filename": "A-100.pdf", "base64": "JVBERi0="}
        assert stored["delivery_channels"]["pdf"] == "sent"
        stored_job = store.job(QueueName.PDF, job["id"])
        assert stored_job["status"] == "sent"
        assert stored_job["external_reference"] == "pdf-9"

    @pytest.mark.asyncio
    async def test_conflict_after_repeated_concurrent_changes(self, store, monkeypatch):
        invoice = store.add_invoice(status="pending_validation")

        async def always_stale(invoice_id, fields, expected_status=None):
            return False

        monkeypatch.setattr(store, "update_invoice", always_stale)

        result = await WebhookReconciler(store).reconcile({"invoice_id": invoice["id"], "dgi_status": "aprobado"})

        assert result.status == ReconcileStatus.CONFLICT
        assert store.logs == []


class TestBuildWebhookUpdates:
    """Pure update computation."""

    def test_validated_at_defaults_to_now(self):
        updates = build_webhook_updates({"status": "pending_validation"}, {"dgi_status": "approved"}, None)
        assert updates["status"] == "validated"
        assert updates["pending_validation"] is False
        assert updates["validated_at"]

    def test_unknown_fields_ignored(self):
        assert build_webhook_updates({"status": "validated"}, {"foo": "bar"}, None) == {}
