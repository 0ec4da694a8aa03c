"""
Invoice Hub - External Integration Configs

An IntegrationConfig describes one external endpoint: where to POST, how to
authenticate, which headers to send, and how to map the request and response.
Configs are data stored in MongoDB and are read-only to the pipeline.

Config types:
- validation: tax authority / e-invoice validator
- pdf_generation: PDF rendering and delivery service
- email_delivery: invoice email delivery service
"""

import base64
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .mapping_engine import resolve_headers
from .pipeline_config import DEFAULT_RETRY_ATTEMPTS, DEFAULT_TIMEOUT_MS

logger = logging.getLogger(__name__)


class ConfigType(str, Enum):
    VALIDATION = "validation"
    PDF_GENERATION = "pdf_generation"
    EMAIL_DELIVERY = "email_delivery"


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


class IntegrationConfig(BaseModel):
    """One external endpoint definition."""
    id: str
    name: str = ""
    config_type: ConfigType
    api_url: str
    auth_type: AuthType = AuthType.NONE
    auth_credentials: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, Any] = Field(default_factory=dict)
    request_mapping: Dict[str, Any] = Field(default_factory=dict)
    response_mapping: Dict[str, Any] = Field(default_factory=dict)
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    timeout: int = DEFAULT_TIMEOUT_MS  # milliseconds
    is_active: bool = False
    updated_at: Optional[str] = None

    @property
    def max_attempts(self) -> int:
        """Total attempts allowed: the first call plus retry_attempts retries."""
        return max(0, self.retry_attempts) + 1

    def sanitized(self) -> Dict[str, Any]:
        """Config as a dict with credential values redacted (for API responses)."""
        data = self.model_dump(mode="json")
        data["auth_credentials"] = {k: "***" for k in self.auth_credentials}
        return data


def _updated_sort_key(config: IntegrationConfig) -> datetime:
    if config.updated_at:
        try:
            parsed = datetime.fromisoformat(config.updated_at.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.min.replace(tzinfo=timezone.utc)


def select_active_config(
    configs: List[IntegrationConfig],
    config_type: ConfigType,
    config_id: Optional[str] = None,
) -> Optional[IntegrationConfig]:
    """
    Pick the config to use for a call.

    If config_id is given, only that config qualifies (and it must be active).
    Otherwise, among active configs of the type, the most recently updated wins.
    Configs without updated_at sort oldest; remaining ties keep input order.
    """
    candidates = [c for c in configs if c.is_active and c.config_type == config_type]
    if config_id:
        candidates = [c for c in candidates if c.id == config_id]
    if not candidates:
        return None

    if len(candidates) > 1:
        logger.warning(
            "Multiple active %s configs (%s); using the most recently updated",
            config_type.value, ", ".join(c.id for c in candidates)
        )
    # max() keeps the first of equal keys
    return max(candidates, key=_updated_sort_key)


def build_auth_headers(config: IntegrationConfig) -> Dict[str, str]:
    """Authorization headers for the config's auth scheme."""
    creds = config.auth_credentials or {}

    if config.auth_type == AuthType.BASIC and creds.get("username") and creds.get("password"):
        encoded = base64.b64encode(f"{creds['username']}:{creds['password']}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}

    if config.auth_type == AuthType.BEARER and creds.get("token"):
        return {"Authorization": f"Bearer {creds['token']}"}

    if config.auth_type == AuthType.API_KEY and creds.get("key") and creds.get("value"):
        return {str(creds["key"]): str(creds["value"])}

    if config.auth_type != AuthType.NONE:
        logger.warning("Config %s uses %s auth but credentials are incomplete", config.id, config.auth_type.value)
    return {}


def build_request_headers(config: IntegrationConfig, context: Dict[str, Any]) -> Dict[str, str]:
    """
    Full header set for an outbound call: JSON content type, configured
    headers (templates resolved against the context), then auth.
    """
    headers = {"Content-Type": "application/json"}
    headers.update(resolve_headers(config.headers, context))
    headers.update(build_auth_headers(config))
    return headers
