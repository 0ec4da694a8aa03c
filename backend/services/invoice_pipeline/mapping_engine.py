"""
Invoice Hub - Mapping Engine

Translates between internal invoice data and an arbitrary external API shape.
The shape is supplied as data (an integration config's request_mapping and
response_mapping), never as code.

Directive grammar (a closed set of three shapes):

    "target.path": "source.path"                      # scalar
    "target": {"type": "object", "mapping": {...}}    # nested object
    "target": {"type": "array", "source": "items",    # one object per element,
               "mapping": {...}}                      # evaluated against the element

Target keys are dotted paths, so {"customer.name": "client.contact_name"}
produces {"customer": {"name": ...}}. Anything that is not one of the three
shapes is skipped: a request with a missing optional field is preferred over
no request at all.

All functions here are pure; no I/O.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .path_resolver import MISSING, get_path, set_path

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """An integration config cannot be used as written."""


class MappingError(ConfigurationError):
    """A mapping configuration is structurally malformed."""


# =============================================================================
# DIRECTIVES
# =============================================================================

@dataclass(frozen=True)
class ScalarDirective:
    path: str


@dataclass(frozen=True)
class ObjectDirective:
    mapping: Dict[str, "Directive"]


@dataclass(frozen=True)
class ArrayDirective:
    source: str
    mapping: Dict[str, "Directive"]


Directive = Union[ScalarDirective, ObjectDirective, ArrayDirective]


def compile_directive(raw: Any) -> Optional[Directive]:
    """Compile one mapping value into a directive, or None if the shape is unknown."""
    if isinstance(raw, str):
        return ScalarDirective(path=raw)

    if not isinstance(raw, dict):
        return None

    directive_type = raw.get("type")
    sub_mapping = raw.get("mapping")

    if directive_type == "object" and isinstance(sub_mapping, dict):
        return ObjectDirective(mapping=compile_mapping(sub_mapping))

    if directive_type == "array" and isinstance(sub_mapping, dict) and isinstance(raw.get("source"), str):
        return ArrayDirective(source=raw["source"], mapping=compile_mapping(sub_mapping))

    return None


def compile_mapping(mapping: Any) -> Dict[str, Directive]:
    """
    Compile a whole mapping.

    Raises MappingError if the mapping is not a dict at all; individual entries
    with unknown shapes are dropped.
    """
    if mapping is None:
        return {}
    if not isinstance(mapping, dict):
        raise MappingError(f"Mapping must be an object, got {type(mapping).__name__}")

    compiled: Dict[str, Directive] = {}
    for target, raw in mapping.items():
        directive = compile_directive(raw)
        if directive is None:
            logger.debug("Skipping unsupported mapping directive for '%s': %r", target, raw)
            continue
        compiled[str(target)] = directive
    return compiled


# =============================================================================
# EVALUATION
# =============================================================================

def _evaluate(directive: Directive, context: Any) -> Any:
    """Evaluate a single directive. Returns MISSING when nothing should be emitted."""
    if isinstance(directive, ScalarDirective):
        return get_path(context, directive.path)

    if isinstance(directive, ObjectDirective):
        return _build(directive.mapping, context)

    if isinstance(directive, ArrayDirective):
        source = get_path(context, directive.source)
        if source is MISSING or source is None:
            return []
        if not isinstance(source, (list, tuple)):
            logger.debug("Array source '%s' is not a sequence, skipping", directive.source)
            return MISSING
        return [_build(directive.mapping, element) for element in source]

    return MISSING


def _build(compiled: Dict[str, Directive], context: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for target, directive in compiled.items():
        value = _evaluate(directive, context)
        if value is MISSING:
            continue
        set_path(payload, target, value)
    return payload


def build_request(mapping: Any, context: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build an outbound request payload from a request_mapping and an invoice context.

    Args:
        mapping: request_mapping from an IntegrationConfig
        context: {"invoice": ..., "client": ..., "order": ..., "items": [...], ...}

    Returns:
        New payload dict. Same inputs always produce the same output.
    """
    return _build(compile_mapping(mapping), context)


def _response_root(response: Any) -> Dict[str, Any]:
    # Paths may be written relative to the payload ("success") or with the
    # "response." prefix used by stored config templates ("response.success").
    if isinstance(response, dict):
        root = dict(response)
        root["response"] = response
        return root
    return {"response": response}


def extract_response(mapping: Any, response: Any) -> Dict[str, Any]:
    """
    Extract fields from an external response using a response_mapping.

    Returns a flat {field_name: value} dict. Fields that do not resolve are
    omitted. The caller decides which extracted fields are applied to the invoice.
    """
    compiled = compile_mapping(mapping)
    root = _response_root(response)

    extracted: Dict[str, Any] = {}
    for field_name, directive in compiled.items():
        value = _evaluate(directive, root)
        if value is MISSING:
            continue
        extracted[field_name] = value
    return extracted


# =============================================================================
# HEADERS
# =============================================================================

_TEMPLATE_RE = re.compile(r"^\s*\{\{\s*([^{}]+?)\s*\}\}\s*$")


def is_template(value: Any) -> bool:
    return isinstance(value, str) and _TEMPLATE_RE.match(value) is not None


def resolve_headers(headers: Optional[Dict[str, Any]], context: Dict[str, Any]) -> Dict[str, str]:
    """
    Resolve configured headers against the build context.

    A value written as "{{ invoice.client_id }}" is resolved through the path
    resolver; templates that do not resolve are dropped. Plain values pass
    through unchanged (stringified).
    """
    resolved: Dict[str, str] = {}
    for name, value in (headers or {}).items():
        if value is None:
            continue
        if isinstance(value, str):
            match = _TEMPLATE_RE.match(value)
            if match:
                found = get_path(context, match.group(1))
                if found is MISSING or found is None:
                    logger.debug("Header template '%s' did not resolve, dropping header", value)
                    continue
                resolved[str(name)] = str(found)
                continue
        resolved[str(name)] = str(value)
    return resolved


def list_template_paths(headers: Optional[Dict[str, Any]]) -> List[str]:
    """Paths referenced by templated header values (for config inspection)."""
    paths = []
    for value in (headers or {}).values():
        if isinstance(value, str):
            match = _TEMPLATE_RE.match(value)
            if match:
                paths.append(match.group(1))
    return paths
