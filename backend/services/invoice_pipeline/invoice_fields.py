"""
Invoice Hub - Invoice Field Layout

Where externally sourced values land on an invoice document, and the field
names external systems use for them. Both response extraction and webhook
callbacks go through to_invoice_updates(), so a value can only reach the
invoice through a known target.

External systems may use the Spanish DGI names (dgi_estado,
numero_cfe, ...) or the English names; both are accepted.
"""

from typing import Any, Dict

from .path_resolver import get_path, MISSING


# Canonical name -> dotted path on the invoice document
EXTERNAL_FIELD_TARGETS = {
    "cfe_number": "external.cfe_number",
    "cfe_series": "external.cfe_series",
    "cfe_type": "external.cfe_type",
    "cae": "external.cae",
    "cae_expiration": "external.cae_expiration",
    "qr_code": "external.qr_code",
    "dgi_status": "external.dgi_status",
    "dgi_authorization_code": "external.dgi_authorization_code",
    "dgi_message": "external.dgi_message",
    "dgi_efactura_id": "external.dgi_efactura_id",
    "dgi_validated_at": "external.dgi_validated_at",
    "external_reference": "external.external_reference",
    "validation_date": "validated_at",
    "pdf_id": "pdf.pdf_id",
    "pdf_filename": "pdf.filename",
    "pdf_size_bytes": "pdf.size_bytes",
    "pdf_generated_at": "pdf.generated_at",
    "pdf_base64": "pdf.base64",
}

FIELD_ALIASES = {
    "numero_cfe": "cfe_number",
    "serie_cfe": "cfe_series",
    "tipo_cfe": "cfe_type",
    "vencimiento_cae": "cae_expiration",
    "dgi_estado": "dgi_status",
    "dgi_codigo_autorizacion": "dgi_authorization_code",
    "dgi_mensaje": "dgi_message",
    "dgi_id_efactura": "dgi_efactura_id",
    "dgi_fecha_validacion": "dgi_validated_at",
    "reference": "external_reference",
    "referencia": "external_reference",
    "fecha_validacion": "validation_date",
}

# Fields that describe a validation/delivery outcome (trigger an audit log entry)
OUTCOME_FIELDS = frozenset({
    "dgi_status",
    "dgi_authorization_code",
    "dgi_message",
    "dgi_efactura_id",
    "dgi_validated_at",
    "external_reference",
})

PDF_FIELDS = frozenset({"pdf_id", "pdf_filename", "pdf_size_bytes", "pdf_generated_at", "pdf_base64"})

# DGI status values, lowercased
DGI_APPROVED_VALUES = frozenset({"aprobado", "approved"})
DGI_REJECTED_VALUES = frozenset({"rechazado", "rejected"})


def canonical_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


def normalize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Rename aliased keys to canonical names. Canonical keys win over aliases."""
    normalized: Dict[str, Any] = {}
    for name, value in fields.items():
        canonical = canonical_field(name)
        if canonical in normalized and canonical != name:
            continue
        normalized[canonical] = value
    return normalized


def to_invoice_updates(fields: Dict[str, Any], truthy_only: bool = True) -> Dict[str, Any]:
    """
    Turn canonical external fields into a flat {dotted_path: value} update.

    Unknown fields are ignored. With truthy_only, empty values ("", None, 0)
    are skipped so a sparse response never blanks out stored data.
    """
    updates: Dict[str, Any] = {}
    for name, value in normalize_fields(fields).items():
        target = EXTERNAL_FIELD_TARGETS.get(name)
        if target is None:
            continue
        if truthy_only and not value:
            continue
        if not truthy_only and value is None:
            continue
        updates[target] = value
    return updates


def changed_updates(invoice: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Subset of updates whose value differs from what the invoice already holds."""
    changed = {}
    for path, value in updates.items():
        current = get_path(invoice, path)
        if current is MISSING or current != value:
            changed[path] = value
    return changed


def dgi_status_verdict(value: Any):
    """'approved', 'rejected' or None for a DGI status value."""
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered in DGI_APPROVED_VALUES:
        return "approved"
    if lowered in DGI_REJECTED_VALUES:
        return "rejected"
    return None
