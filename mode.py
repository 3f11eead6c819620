# mode.py
from __future__ import annotations

import logging

from annotations import MAPPING_STRATEGY, get_string

logger = logging.getLogger(__name__)

ENDPOINTS = "endpoints"
ENDPOINTS_VERBOSE = "endpoints-verbose"
EDGES = "edges"


def compute_mode(obj: dict) -> str:
    """
    Decide which output model an Ingress or Gateway compiles to.
    Priority:
      1) Annotation k8s.ngrok.com/mapping-strategy (edges/endpoints/endpoints-verbose)
      2) Default to endpoints
    An unknown value falls back to endpoints with a warning.
    """
    val = get_string(obj, MAPPING_STRATEGY)
    if val is None:
        return ENDPOINTS
    if val.lower() == EDGES:
        return EDGES
    if val.lower() in {ENDPOINTS, ENDPOINTS_VERBOSE}:
        return ENDPOINTS
    m = obj.get("metadata", {}) or {}
    logger.warning(
        f"[mode] invalid value {val!r} for {MAPPING_STRATEGY!r} on {m.get('namespace')}/{m.get('name')}, "
        f"defaulting to {ENDPOINTS!r}"
    )
    return ENDPOINTS


def uses_edges(obj: dict) -> bool:
    return compute_mode(obj) == EDGES
