# translate/ingress.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from annotations import bindings as binding_annotation
from annotations import pooling_enabled
from config import Settings
from errors import Diagnostics, TranslationError
from ir.model import (
    PATH_EXACT,
    PATH_PREFIX,
    PROTOCOL_HTTPS,
    IRDestination,
    IRHTTPMatch,
    IRListener,
    IRRoute,
    IRVirtualHost,
    OwningResource,
)
from mode import uses_edges
from store import Store, meta
from translate.backends import UpstreamCache, classify_ingress_backend, resolve_destination
from translate.modules import annotation_traffic_policy

logger = logging.getLogger(__name__)


def ingress_owner(ingress: dict) -> OwningResource:
    m = meta(ingress)
    return OwningResource("Ingress", m.get("name", ""), m.get("namespace", ""))


def path_type_to_ir(path_type: Optional[str], owner: OwningResource, diagnostics: Diagnostics) -> str:
    if path_type is None or path_type in ("Prefix", "ImplementationSpecific"):
        return PATH_PREFIX
    if path_type == "Exact":
        return PATH_EXACT
    diagnostics.report(owner, f"unknown path type {path_type!r}, defaulting to prefix match")
    return PATH_PREFIX


def _host_conflict(
    vhost: IRVirtualHost,
    namespace: str,
    pooling: bool,
    policy_obj: Optional[OwningResource],
    default_destination: Optional[IRDestination],
) -> Optional[str]:
    if vhost.traffic_policy_obj != policy_obj:
        return "different traffic policy annotations provided for the same hostname"
    if vhost.endpoint_pooling_enabled != pooling:
        return "different endpoint pooling annotations provided for the same hostname"
    if vhost.namespace != namespace:
        return f"hostname is already used by an ingress in namespace {vhost.namespace!r}"
    current = vhost.default_destination.identity() if vhost.default_destination else None
    incoming = default_destination.identity() if default_destination else None
    if current != incoming:
        return "different default backends provided for the same hostname"
    return None


def ingresses_to_ir(
    store: Store,
    settings: Settings,
    upstreams: UpstreamCache,
    diagnostics: Diagnostics,
) -> List[IRVirtualHost]:
    """Build one virtual host per distinct ingress hostname.

    The first ingress to claim a hostname owns it; later ingresses that
    disagree on namespace, policy, pooling or default backend are reported
    and their rules for that hostname dropped.
    """
    hosts: Dict[str, IRVirtualHost] = {}

    for ingress in store.list_managed_ingresses():
        owner = ingress_owner(ingress)
        if uses_edges(ingress):
            logger.info(f"[translate] {owner} is served by edges because of its mapping-strategy annotation")
            continue

        try:
            pooling = pooling_enabled(ingress)
            policy, policy_obj, policy_enabled = annotation_traffic_policy(store, ingress)
            host_bindings = binding_annotation(ingress)
            default_destination = None
            default_backend = (ingress.get("spec", {}) or {}).get("defaultBackend")
            if default_backend:
                default_destination = resolve_destination(
                    store, classify_ingress_backend(default_backend, owner.namespace), owner, upstreams
                )
        except TranslationError as e:
            diagnostics.report(owner, e)
            continue

        for rule in (ingress.get("spec", {}) or {}).get("rules", []) or []:
            host = rule.get("host") or ""
            if not host:
                diagnostics.report(owner, "skipping ingress rule with an empty host")
                continue

            vhost = hosts.get(host)
            if vhost is not None:
                conflict = _host_conflict(vhost, owner.namespace, pooling, policy_obj, default_destination)
                if conflict:
                    diagnostics.report(owner, f"{host}: {conflict}; keeping the configuration from {vhost.owning_resources[0]}")
                    continue
                vhost.add_owning_resource(owner)
            else:
                vhost = IRVirtualHost(
                    namespace=owner.namespace,
                    listener=IRListener(hostname=host, port=443, protocol=PROTOCOL_HTTPS),
                    endpoint_pooling_enabled=pooling,
                    traffic_policy=policy.deep_copy() if policy is not None else None,
                    traffic_policy_obj=policy_obj,
                    traffic_policy_enabled=policy_enabled,
                    default_destination=default_destination,
                    owning_resources=[owner],
                    labels_to_add=dict(settings.ownership_labels),
                    metadata=settings.ingress_metadata,
                    bindings=list(host_bindings),
                )
                hosts[host] = vhost

            http = rule.get("http")
            if not http:
                continue
            for path in http.get("paths", []) or []:
                try:
                    destination = resolve_destination(
                        store, classify_ingress_backend(path.get("backend"), owner.namespace), owner, upstreams
                    )
                except TranslationError as e:
                    diagnostics.report(owner, f"{host}{path.get('path', '')}: {e}")
                    continue
                vhost.routes.append(IRRoute(
                    match_criteria=IRHTTPMatch(
                        path=path.get("path") or "/",
                        path_type=path_type_to_ir(path.get("pathType"), owner, diagnostics),
                    ),
                    destinations=[destination],
                ))

    return list(hosts.values())
