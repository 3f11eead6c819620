# translate/grants.py
from __future__ import annotations

from typing import Optional

from config import Settings
from store import Store

GATEWAY_GROUP = "gateway.networking.k8s.io"


def _group(g: Optional[str]) -> str:
    g = (g or "").lower()
    return "" if g == "core" else g


def is_ref_to_namespace_allowed(
    store: Store,
    settings: Settings,
    from_namespace: str,
    from_group: str,
    from_kind: str,
    to_namespace: str,
    to_group: str,
    to_kind: str,
    to_name: str = "",
) -> bool:
    """Whether an object in from_namespace may reference one in to_namespace.

    Same-namespace references are always allowed. Cross-namespace ones need a
    ReferenceGrant living in the target namespace.
    """
    if not to_namespace or from_namespace == to_namespace:
        return True
    if settings.disable_reference_grants:
        return True

    for grant in store.list_reference_grants(to_namespace):
        spec = grant.get("spec", {}) or {}
        to_ok = False
        for to in spec.get("to", []) or []:
            if _group(to.get("group")) != _group(to_group):
                continue
            if (to.get("kind") or "").lower() != to_kind.lower():
                continue
            if to.get("name") and to["name"].lower() != to_name.lower():
                continue
            to_ok = True
            break
        if not to_ok:
            continue

        for frm in spec.get("from", []) or []:
            if (_group(frm.get("group")) == _group(from_group)
                    and (frm.get("kind") or "").lower() == from_kind.lower()
                    and (frm.get("namespace") or "").lower() == from_namespace.lower()):
                return True
    return False

