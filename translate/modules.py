# translate/modules.py
"""NgrokModuleSet and NgrokTrafficPolicy annotation lookups.

Module sets named in the ``k8s.ngrok.com/modules`` annotation are merged in
annotation order, a later set overriding whole modules of an earlier one.
Edges carry the merged modules verbatim. Endpoints only understand the
``policy`` module.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from annotations import module_set_names, traffic_policy_name
from errors import BackendResolutionError, NotFoundError
from ir.model import OwningResource
from policy.trafficpolicy import TrafficPolicy, parse_policy_document
from store import Store, meta

logger = logging.getLogger(__name__)

POLICY_MODULE = "policy"


def merged_modules(store: Store, obj: dict) -> Tuple[Dict[str, Any], Optional[OwningResource]]:
    ns = meta(obj).get("namespace", "")
    modules: Dict[str, Any] = {}
    owner = None
    for name in module_set_names(obj):
        try:
            modset = store.get_module_set(name, ns)
        except NotFoundError as e:
            raise BackendResolutionError(f"unable to load module set from annotation: {e}") from e
        for key, val in (modset.get("modules", {}) or {}).items():
            if val is not None:
                modules[key] = val
        owner = OwningResource("NgrokModuleSet", name, ns)
    return modules, owner


PolicyLookup = Tuple[Optional[TrafficPolicy], Optional[OwningResource], Optional[bool]]


def module_set_policy(store: Store, obj: dict) -> PolicyLookup:
    modules, owner = merged_modules(store, obj)
    if not modules:
        return None, None, None
    ignored = sorted(k for k in modules if k != POLICY_MODULE)
    if ignored:
        m = meta(obj)
        logger.warning(
            f"[translate] module set modules {', '.join(ignored)} on {m.get('namespace')}/{m.get('name')} "
            f"are ignored for endpoints, only the policy module is used"
        )
    if not modules.get(POLICY_MODULE):
        return None, None, None
    policy, enabled = parse_policy_document(modules[POLICY_MODULE])
    return policy, owner, enabled


def annotation_traffic_policy(store: Store, obj: dict) -> PolicyLookup:
    """Policy named by the traffic-policy annotation, falling back to the module set annotation.

    Returns the policy, the object it came from and its enabled flag.
    """
    name = traffic_policy_name(obj)
    ns = meta(obj).get("namespace", "")
    if name is None:
        return module_set_policy(store, obj)
    try:
        found = store.get_traffic_policy(name, ns)
    except NotFoundError as e:
        raise BackendResolutionError(f"unable to load traffic policy from annotations: {e}") from e
    policy, enabled = parse_policy_document((found.get("spec", {}) or {}).get("policy"))
    return policy, OwningResource("NgrokTrafficPolicy", name, ns), enabled
