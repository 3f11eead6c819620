# synth/domains.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict

from annotations import domain as domain_annotation
from config import Settings
from mode import uses_edges
from store import Store, meta
from synth.naming import hyphenated_domain_name

logger = logging.getLogger(__name__)

INGRESS_API_VERSION = "ingress.k8s.ngrok.com/v1alpha1"


@dataclass
class DomainSet:
    """Desired domains keyed by hostname, split by the output model of their source object."""
    edge_domains: Dict[str, dict] = field(default_factory=dict)
    endpoint_domains: Dict[str, dict] = field(default_factory=dict)

    def all(self) -> Dict[str, dict]:
        out = dict(self.endpoint_domains)
        out.update(self.edge_domains)
        return out

    def __contains__(self, host: str) -> bool:
        return host in self.edge_domains or host in self.endpoint_domains


def build_domain(host: str, namespace: str, settings: Settings, metadata: str) -> dict:
    return {
        "apiVersion": INGRESS_API_VERSION,
        "kind": "Domain",
        "metadata": {
            "name": hyphenated_domain_name(host),
            "namespace": namespace,
            "labels": dict(settings.ownership_labels),
        },
        "spec": {"domain": host, "metadata": metadata},
    }


def _add(domains: DomainSet, obj: dict, host: str, domain: dict) -> None:
    if uses_edges(obj):
        domains.edge_domains[host] = domain
    else:
        domains.endpoint_domains[host] = domain


def calculate_domains(store: Store, settings: Settings) -> DomainSet:
    domains = DomainSet()

    for ingress in store.list_managed_ingresses():
        ns = meta(ingress).get("namespace", "")
        for rule in (ingress.get("spec", {}) or {}).get("rules", []) or []:
            host = rule.get("host") or ""
            if not host:
                continue
            _add(domains, ingress, host, build_domain(host, ns, settings, settings.ingress_metadata))

    for gateway in store.list_managed_gateways():
        m = meta(gateway)
        for listener in (gateway.get("spec", {}) or {}).get("listeners", []) or []:
            host = listener.get("hostname") or ""
            if not host:
                continue
            if host in domains:
                logger.debug(f"[domains] {host} on gateway {m.get('namespace')}/{m.get('name')} already declared")
                continue
            _add(domains, gateway, host, build_domain(host, m.get("namespace", ""), settings, settings.gateway_metadata))

    for service in store.list_load_balancer_services():
        host = domain_annotation(service)
        if not host or uses_edges(service) or host in domains:
            continue
        domains.endpoint_domains[host] = build_domain(host, meta(service).get("namespace", ""), settings, settings.ingress_metadata)

    return domains
