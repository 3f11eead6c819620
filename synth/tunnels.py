# synth/tunnels.py
"""Tunnels for the services behind edge-mode ingresses and HTTPRoutes.

Edges route to tunnels by label, so every (namespace, service, port) used by
an edge route gets exactly one Tunnel carrying the matching backend labels.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Tuple

from config import Settings
from errors import Diagnostics, TranslationError
from ir.model import OwningResource
from mode import uses_edges
from store import HTTPROUTES, Store, meta, obj_key
from translate.backends import (
    ServiceBackend,
    classify_backend_ref,
    classify_ingress_backend,
    port_app_protocol,
    port_protocol,
    service_port,
)

logger = logging.getLogger(__name__)

INGRESS_API_VERSION = "ingress.k8s.ngrok.com/v1alpha1"

LABEL_NAMESPACE = "k8s.ngrok.com/namespace"
LABEL_SERVICE_UID = "k8s.ngrok.com/service-uid"
LABEL_SERVICE = "k8s.ngrok.com/service"
LABEL_PORT = "k8s.ngrok.com/port"

TunnelKey = Tuple[str, str, str]  # (namespace, service, port)


def backend_labels(namespace: str, service_uid: str, service_name: str, port: int) -> Dict[str, str]:
    """Labels an edge route selects its tunnel group with."""
    return {
        LABEL_NAMESPACE: namespace,
        LABEL_SERVICE_UID: service_uid,
        LABEL_SERVICE: service_name,
        LABEL_PORT: str(port),
    }


def tunnel_key(tunnel: dict) -> TunnelKey:
    labels = meta(tunnel).get("labels", {}) or {}
    return (meta(tunnel).get("namespace", ""), labels.get(LABEL_SERVICE, ""), labels.get(LABEL_PORT, ""))


def edge_gateways_for_route(store: Store, route: dict) -> Iterator[Tuple[dict, dict]]:
    """(gateway, parentRef) pairs for the managed edge-mode gateways a route attaches to."""
    gateways = {obj_key(g): g for g in store.list_managed_gateways()}
    route_ns = meta(route).get("namespace", "")
    for parent in (route.get("spec", {}) or {}).get("parentRefs", []) or []:
        if (parent.get("kind") or "Gateway") != "Gateway":
            continue
        gateway = gateways.get((parent.get("namespace") or route_ns, parent.get("name", "")))
        if gateway is not None and uses_edges(gateway):
            yield gateway, parent


def _owner_reference(obj: dict, kind: str, api_version: str) -> dict:
    m = meta(obj)
    return {
        "apiVersion": obj.get("apiVersion") or api_version,
        "kind": obj.get("kind") or kind,
        "name": m.get("name", ""),
        "uid": m.get("uid", ""),
    }


class TunnelCalculator:
    def __init__(self, store: Store, settings: Settings, diagnostics: Diagnostics):
        self.store = store
        self.settings = settings
        self.diagnostics = diagnostics
        self.tunnels: Dict[TunnelKey, dict] = {}

    def _tunnel(self, backend: ServiceBackend) -> dict:
        service, port = service_port(self.store, backend)
        number = int(port.get("port"))
        key = (backend.namespace, backend.name, str(number))
        found = self.tunnels.get(key)
        if found is not None:
            return found

        labels = dict(self.settings.ownership_labels)
        labels[LABEL_SERVICE] = backend.name
        labels[LABEL_PORT] = str(number)
        spec: dict = {
            "forwardsTo": f"{backend.name}.{backend.namespace}.{self.settings.cluster_domain}:{number}",
            "labels": backend_labels(backend.namespace, meta(service).get("uid", ""), backend.name, number),
            "backend": {"protocol": port_protocol(service, port)},
        }
        app_protocol = port_app_protocol(service, port)
        if app_protocol:
            spec["appProtocol"] = app_protocol
        tunnel = {
            "apiVersion": INGRESS_API_VERSION,
            "kind": "Tunnel",
            "metadata": {
                "generateName": f"{backend.name}-{number}-",
                "namespace": backend.namespace,
                "labels": labels,
                "ownerReferences": [],
            },
            "spec": spec,
        }
        self.tunnels[key] = tunnel
        return tunnel

    def _add(self, backend, owner: OwningResource, owner_ref: dict) -> None:
        if not isinstance(backend, ServiceBackend):
            return
        try:
            tunnel = self._tunnel(backend)
        except TranslationError as e:
            self.diagnostics.report(owner, f"no tunnel for service {backend.namespace}/{backend.name}: {e}")
            return
        refs: List[dict] = tunnel["metadata"]["ownerReferences"]
        if not any(r["uid"] == owner_ref["uid"] and r["name"] == owner_ref["name"] for r in refs):
            refs.append(owner_ref)
            refs.sort(key=lambda r: (r["uid"], r["name"]))

    def from_ingresses(self) -> None:
        for ingress in self.store.list_managed_ingresses():
            if not uses_edges(ingress):
                continue
            m = meta(ingress)
            owner = OwningResource("Ingress", m.get("name", ""), m.get("namespace", ""))
            ref = _owner_reference(ingress, "Ingress", "networking.k8s.io/v1")
            for rule in (ingress.get("spec", {}) or {}).get("rules", []) or []:
                for path in ((rule.get("http") or {}).get("paths", []) or []):
                    self._add(classify_ingress_backend(path.get("backend"), owner.namespace), owner, ref)

    def from_httproutes(self) -> None:
        for route in self.store.list(HTTPROUTES):
            if next(edge_gateways_for_route(self.store, route), None) is None:
                continue
            m = meta(route)
            owner = OwningResource("HTTPRoute", m.get("name", ""), m.get("namespace", ""))
            ref = _owner_reference(route, "HTTPRoute", "gateway.networking.k8s.io/v1")
            for rule in (route.get("spec", {}) or {}).get("rules", []) or []:
                for backend_ref in rule.get("backendRefs", []) or []:
                    backend = classify_backend_ref(backend_ref, owner.namespace)
                    if isinstance(backend, ServiceBackend) and backend.namespace != owner.namespace:
                        self.diagnostics.report(owner, f"cross-namespace backend {backend.namespace}/{backend.name} "
                                                       f"is not supported with edges")
                        continue
                    self._add(backend, owner, ref)


def calculate_tunnels(store: Store, settings: Settings,
                      diagnostics: Optional[Diagnostics] = None) -> Dict[TunnelKey, dict]:
    calc = TunnelCalculator(store, settings, diagnostics if diagnostics is not None else Diagnostics())
    calc.from_ingresses()
    calc.from_httproutes()
    return calc.tunnels
