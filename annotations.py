# annotations.py
from __future__ import annotations

import json
from typing import Dict, List, Optional

from errors import InvalidAnnotation

PREFIX = "k8s.ngrok.com/"

MAPPING_STRATEGY = PREFIX + "mapping-strategy"
POOLING_ENABLED = PREFIX + "pooling-enabled"
TRAFFIC_POLICY = PREFIX + "traffic-policy"
MODULES = PREFIX + "modules"
BINDINGS = PREFIX + "bindings"
APP_PROTOCOLS = PREFIX + "app-protocols"
DOMAIN = PREFIX + "domain"

DEFAULT_BINDING = "public"


def _annotations(obj: dict) -> Dict[str, str]:
    return ((obj or {}).get("metadata", {}) or {}).get("annotations", {}) or {}


def get_string(obj: dict, key: str) -> Optional[str]:
    val = _annotations(obj).get(key)
    if val is None:
        return None
    return str(val).strip()


def get_string_list(obj: dict, key: str) -> Optional[List[str]]:
    val = get_string(obj, key)
    if val is None:
        return None
    return [v.strip() for v in val.split(",") if v.strip()]


def traffic_policy_name(obj: dict) -> Optional[str]:
    names = get_string_list(obj, TRAFFIC_POLICY)
    if not names:
        return None
    if len(names) > 1:
        raise InvalidAnnotation(TRAFFIC_POLICY, ",".join(names), "multiple traffic policies are not supported")
    return names[0]


def domain(obj: dict) -> Optional[str]:
    return get_string(obj, DOMAIN) or None


def module_set_names(obj: dict) -> List[str]:
    return get_string_list(obj, MODULES) or []


def pooling_enabled(obj: dict) -> bool:
    val = get_string(obj, POOLING_ENABLED)
    return val is not None and val.lower() == "true"


def bindings(obj: dict) -> List[str]:
    vals = get_string_list(obj, BINDINGS)
    if not vals:
        return [DEFAULT_BINDING]
    if len(vals) > 1:
        raise InvalidAnnotation(BINDINGS, ",".join(vals), "multiple bindings are not supported")
    return vals


def app_protocols(service: dict) -> Dict[str, str]:
    """Port name to protocol map from the service's app-protocols annotation."""
    raw = get_string(service, APP_PROTOCOLS)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise InvalidAnnotation(APP_PROTOCOLS, raw, f"could not parse protocol annotation: {e}") from e
    if not isinstance(parsed, dict):
        raise InvalidAnnotation(APP_PROTOCOLS, raw, "expected a JSON object of port name to protocol")
    return {str(k): str(v) for k, v in parsed.items()}
