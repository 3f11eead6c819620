# translate/services.py
"""LoadBalancer Services of the ngrok class -> TCP or TLS virtual hosts.

A Service without a domain annotation gets a tcp:// endpoint whose address
the platform assigns. With ``k8s.ngrok.com/domain`` it gets a tls://
endpoint on port 443 of that domain. Either way the first service port is
the only one exposed.
"""
from __future__ import annotations

import logging
from typing import List

from annotations import bindings as binding_annotation
from annotations import domain as domain_annotation
from annotations import pooling_enabled
from config import Settings
from errors import Diagnostics, TranslationError
from ir.model import (
    PROTOCOL_TCP,
    PROTOCOL_TLS,
    SCHEME_TCP,
    IRDestination,
    IRHTTPMatch,
    IRListener,
    IRRoute,
    IRVirtualHost,
    OwningResource,
)
from mode import uses_edges
from store import Store, meta
from translate.backends import ServiceBackend, UpstreamCache, resolve_service
from translate.modules import annotation_traffic_policy

logger = logging.getLogger(__name__)

TLS_PORT = 443


def service_owner(service: dict) -> OwningResource:
    m = meta(service)
    return OwningResource("Service", m.get("name", ""), m.get("namespace", ""))


def service_listener(service: dict) -> IRListener:
    host = domain_annotation(service)
    if host:
        return IRListener(hostname=host, port=TLS_PORT, protocol=PROTOCOL_TLS)
    port = int(((service.get("spec", {}) or {}).get("ports") or [{}])[0].get("port", 0))
    return IRListener(hostname="", port=port, protocol=PROTOCOL_TCP)


def services_to_ir(
    store: Store,
    settings: Settings,
    upstreams: UpstreamCache,
    diagnostics: Diagnostics,
) -> List[IRVirtualHost]:
    out: List[IRVirtualHost] = []
    for service in store.list_load_balancer_services():
        owner = service_owner(service)
        ports = (service.get("spec", {}) or {}).get("ports") or []
        if not ports:
            logger.info(f"[translate] {owner} has no ports, skipping")
            continue
        if uses_edges(service):
            diagnostics.report(owner, "tcp and tls edges are not generated for services, use the endpoints mapping strategy")
            continue

        try:
            policy, policy_obj, policy_enabled = annotation_traffic_policy(store, service)
            ir_service = resolve_service(
                store, ServiceBackend(owner.name, owner.namespace, int(ports[0].get("port"))), scheme=SCHEME_TCP,
            )
            vhost = IRVirtualHost(
                namespace=owner.namespace,
                listener=service_listener(service),
                name_prefix=f"{owner.name}.{owner.namespace}.svc",
                endpoint_pooling_enabled=pooling_enabled(service),
                traffic_policy=policy,
                traffic_policy_obj=policy_obj,
                traffic_policy_enabled=policy_enabled,
                owning_resources=[owner],
                labels_to_add=dict(settings.ownership_labels),
                metadata=settings.ingress_metadata,
                bindings=list(binding_annotation(service)),
            )
        except TranslationError as e:
            diagnostics.report(owner, e)
            continue

        vhost.routes.append(IRRoute(
            match_criteria=IRHTTPMatch(),
            destinations=[IRDestination(upstream=upstreams.get(ir_service, owner))],
        ))
        out.append(vhost)
    return out
