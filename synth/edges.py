# synth/edges.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from annotations import traffic_policy_name
from config import Settings
from errors import BackendResolutionError, Diagnostics, NotFoundError, TranslationError
from ir.model import OwningResource
from mode import uses_edges
from store import HTTPROUTES, Store, meta
from synth.domains import INGRESS_API_VERSION, DomainSet
from synth.tunnels import backend_labels, edge_gateways_for_route
from translate.backends import ServiceBackend, classify_backend_ref, classify_ingress_backend, service_port
from translate.filters import filters_enabled, filters_to_policy
from translate.gateway import http_match_to_ir, listener_allows_namespace
from translate.modules import POLICY_MODULE, merged_modules

logger = logging.getLogger(__name__)

MATCH_PREFIX = "path_prefix"
MATCH_EXACT = "exact_path"

# module set entries copied onto every edge route
ROUTE_MODULES = (
    "circuitBreaker",
    "compression",
    "ipRestriction",
    "headers",
    "oauth",
    "oidc",
    "saml",
    "webhookVerification",
)

EDGE_PORT_SUFFIX = ":443"


def edge_domain(edge: dict) -> Optional[str]:
    """Hostname an observed edge serves, None when it has more than one hostport."""
    hostports = (edge.get("spec", {}) or {}).get("hostports", []) or []
    if len(hostports) != 1:
        return None
    hp = hostports[0]
    return hp[:-len(EDGE_PORT_SUFFIX)] if hp.endswith(EDGE_PORT_SUFFIX) else hp


def build_edge(domain: dict, settings: Settings) -> dict:
    host = domain["spec"]["domain"]
    return {
        "apiVersion": INGRESS_API_VERSION,
        "kind": "HTTPSEdge",
        "metadata": {
            "generateName": f"{domain['metadata']['name']}-",
            "namespace": domain["metadata"]["namespace"],
            "labels": dict(settings.ownership_labels),
        },
        "spec": {
            "hostports": [host + EDGE_PORT_SUFFIX],
            "metadata": domain["spec"].get("metadata", ""),
            "routes": [],
        },
    }


def ingress_match_type(path_type: Optional[str]) -> Optional[str]:
    if path_type is None or path_type in ("Prefix", "ImplementationSpecific"):
        return MATCH_PREFIX
    if path_type == "Exact":
        return MATCH_EXACT
    return None


def add_route(edge: dict, route: dict) -> None:
    """Append ``route``, replacing an earlier one with the same match and match type."""
    routes: List[dict] = edge["spec"]["routes"]
    for i, existing in enumerate(routes):
        if existing["match"] == route["match"] and existing["matchType"] == route["matchType"]:
            logger.info(f"[edges] replacing existing route {existing['matchType']} {existing['match']!r} "
                        f"on {edge['spec']['hostports'][0]}")
            routes[i] = route
            return
    routes.append(route)


class EdgeCalculator:
    def __init__(self, store: Store, settings: Settings, diagnostics: Diagnostics):
        self.store = store
        self.settings = settings
        self.diagnostics = diagnostics

    def _backend(self, backend) -> Dict[str, Any]:
        if not isinstance(backend, ServiceBackend):
            raise BackendResolutionError("edges only support service backends")
        service, port = service_port(self.store, backend)
        return {"labels": backend_labels(
            backend.namespace, meta(service).get("uid", ""), backend.name, int(port.get("port")),
        )}

    def _ingress_policy(self, ingress: dict, modules: Dict[str, Any]) -> Optional[Any]:
        name = traffic_policy_name(ingress)
        if name is None:
            return modules.get(POLICY_MODULE)
        if modules.get(POLICY_MODULE) is not None:
            raise BackendResolutionError("cannot have both a traffic policy and a module set policy")
        try:
            tp = self.store.get_traffic_policy(name, meta(ingress).get("namespace", ""))
        except NotFoundError as e:
            raise BackendResolutionError(f"unable to load traffic policy from annotations: {e}") from e
        return (tp.get("spec", {}) or {}).get("policy")

    def from_ingresses(self, edges: Dict[str, dict]) -> None:
        for ingress in self.store.list_managed_ingresses():
            if not uses_edges(ingress):
                continue
            m = meta(ingress)
            owner = OwningResource("Ingress", m.get("name", ""), m.get("namespace", ""))
            try:
                modules, _ = merged_modules(self.store, ingress)
                policy = self._ingress_policy(ingress, modules)
            except TranslationError as e:
                self.diagnostics.report(owner, e)
                continue

            for rule in (ingress.get("spec", {}) or {}).get("rules", []) or []:
                host = rule.get("host") or ""
                edge = edges.get(host)
                if edge is None:
                    self.diagnostics.report(owner, f"could not find an edge for host {host!r}")
                    continue
                tls = modules.get("tlsTermination") or {}
                if tls.get("minVersion"):
                    edge["spec"]["tlsTermination"] = {"minVersion": tls["minVersion"]}
                if modules.get("mutualTLS") is not None:
                    edge["spec"]["mutualTLS"] = modules["mutualTLS"]

                for path in ((rule.get("http") or {}).get("paths", []) or []):
                    match_type = ingress_match_type(path.get("pathType"))
                    if match_type is None:
                        self.diagnostics.report(owner, f"unknown path type {path.get('pathType')!r}")
                        continue
                    try:
                        backend = self._backend(classify_ingress_backend(path.get("backend"), owner.namespace))
                    except TranslationError as e:
                        self.diagnostics.report(owner, f"{host}{path.get('path', '')}: {e}")
                        continue
                    route: Dict[str, Any] = {
                        "match": path.get("path") or "/",
                        "matchType": match_type,
                        "backend": backend,
                        "metadata": self.settings.ingress_metadata,
                    }
                    for key in ROUTE_MODULES:
                        if modules.get(key) is not None:
                            route[key] = modules[key]
                    if policy is not None:
                        route["policy"] = policy
                    add_route(edge, route)

    def _gateway_rule_route(self, rule: dict, owner: OwningResource) -> Dict[str, Any]:
        match = next((mt for mt in rule.get("matches", []) or [] if mt.get("path")), None)
        ir_match = http_match_to_ir(match)
        route: Dict[str, Any] = {
            "match": ir_match.path,
            "matchType": MATCH_EXACT if (match or {}).get("path", {}).get("type") == "Exact" else MATCH_PREFIX,
            "metadata": self.settings.gateway_metadata,
        }
        filters = rule.get("filters", []) or []
        policy = filters_to_policy(self.store, filters, owner.namespace, ir_match)
        if policy is not None:
            route["policy"] = policy.to_document(filters_enabled(self.store, filters, owner.namespace))
        # edges route every rule to a single backend
        refs = rule.get("backendRefs", []) or []
        if refs:
            backend = classify_backend_ref(refs[0], owner.namespace)
            if isinstance(backend, ServiceBackend) and backend.namespace != owner.namespace:
                raise BackendResolutionError(f"cross-namespace backend {backend.namespace}/{backend.name} "
                                             f"is not supported with edges")
            route["backend"] = self._backend(backend)
        return route

    def from_httproutes(self, edges: Dict[str, dict]) -> None:
        for route_obj in self.store.list(HTTPROUTES):
            m = meta(route_obj)
            owner = OwningResource("HTTPRoute", m.get("name", ""), m.get("namespace", ""))
            hostnames = (route_obj.get("spec", {}) or {}).get("hostnames", []) or []
            for gateway, _ in edge_gateways_for_route(self.store, route_obj):
                for listener in (gateway.get("spec", {}) or {}).get("listeners", []) or []:
                    host = listener.get("hostname") or ""
                    edge = edges.get(host)
                    if edge is None or host not in hostnames:
                        continue
                    kinds = (listener.get("allowedRoutes") or {}).get("kinds") or []
                    if kinds and not any(k.get("kind") == "HTTPRoute" for k in kinds):
                        continue
                    if not listener_allows_namespace(self.store, gateway, listener, owner.namespace, self.diagnostics):
                        continue
                    for rule in (route_obj.get("spec", {}) or {}).get("rules", []) or []:
                        try:
                            add_route(edge, self._gateway_rule_route(rule, owner))
                        except TranslationError as e:
                            self.diagnostics.report(owner, f"{host}: {e}")


def calculate_https_edges(store: Store, settings: Settings, domains: DomainSet,
                          diagnostics: Optional[Diagnostics] = None) -> Dict[str, dict]:
    """Desired HTTPSEdges keyed by hostname, one per edge-mode domain."""
    calc = EdgeCalculator(store, settings, diagnostics if diagnostics is not None else Diagnostics())
    edges = {host: build_edge(domain, settings) for host, domain in domains.edge_domains.items()}
    calc.from_ingresses(edges)
    calc.from_httproutes(edges)
    return edges
