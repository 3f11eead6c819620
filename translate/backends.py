# translate/backends.py
"""Backend references and their resolution into IR destinations.

Ingress backends and Gateway API backendRefs are first classified into a
closed set of variants (service, traffic-policy resource, unsupported) so the
translators never inspect raw kinds themselves.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple, Union

from annotations import app_protocols
from errors import BackendResolutionError, InvalidAnnotation, NotFoundError
from ir.model import (
    PROTOCOL_HTTP,
    PROTOCOL_HTTPS,
    SCHEME_HTTP,
    SCHEME_HTTPS,
    IRDestination,
    IRObjectRef,
    IRService,
    IRUpstream,
    OwningResource,
)
from policy.trafficpolicy import TrafficPolicy, parse_policy_document
from store import Store, meta

logger = logging.getLogger(__name__)

POLICY_GROUP = "ngrok.k8s.ngrok.com"
POLICY_KIND = "NgrokTrafficPolicy"

HTTP2_APP_PROTOCOLS = ("k8s.ngrok.com/http2", "kubernetes.io/h2c")


@dataclass(frozen=True)
class ServiceBackend:
    name: str
    namespace: str
    port_number: Optional[int] = None
    port_name: Optional[str] = None


@dataclass(frozen=True)
class PolicyResourceBackend:
    name: str
    namespace: str


@dataclass(frozen=True)
class UnsupportedBackend:
    kind: str
    name: str
    reason: str


Backend = Union[ServiceBackend, PolicyResourceBackend, UnsupportedBackend]


def classify_ingress_backend(backend: dict, namespace: str) -> Backend:
    backend = backend or {}
    svc = backend.get("service")
    res = backend.get("resource")
    if svc:
        port = svc.get("port", {}) or {}
        return ServiceBackend(
            name=svc.get("name", ""),
            namespace=namespace,
            port_number=port.get("number") or None,
            port_name=port.get("name") or None,
        )
    if res:
        kind = res.get("kind", "")
        group = res.get("apiGroup") or ""
        if kind != POLICY_KIND or group != POLICY_GROUP:
            return UnsupportedBackend(
                kind=kind,
                name=res.get("name", ""),
                reason=f"resource backends must be {POLICY_KIND} in group {POLICY_GROUP}, got {group}/{kind}",
            )
        return PolicyResourceBackend(name=res.get("name", ""), namespace=namespace)
    return UnsupportedBackend(kind="", name="", reason="backend has neither a service nor a resource")


def classify_backend_ref(ref: dict, route_namespace: str) -> Backend:
    """Gateway API backendRef; only core Services are routable."""
    kind = ref.get("kind") or "Service"
    group = ref.get("group") or ""
    name = ref.get("name", "")
    if kind != "Service" or group not in ("", "core"):
        return UnsupportedBackend(kind=kind, name=name, reason=f"unsupported backendRef kind {group}/{kind}, only Service is supported")
    return ServiceBackend(
        name=name,
        namespace=ref.get("namespace") or route_namespace,
        port_number=ref.get("port"),
    )


def find_service_port(service: dict, number: Optional[int] = None, name: Optional[str] = None) -> dict:
    for port in (service.get("spec", {}) or {}).get("ports", []) or []:
        if (number and port.get("port") == number) or (name and port.get("name") == name):
            return port
    m = meta(service)
    raise BackendResolutionError(
        f"could not find matching port for service {m.get('namespace')}/{m.get('name')}, backend port {number}, name {name}"
    )


def port_protocol(service: dict, port: dict) -> str:
    """HTTP or HTTPS, taken from the service's app-protocols annotation keyed by port name."""
    protocols = app_protocols(service)
    proto = protocols.get(port.get("name", ""))
    if proto is None:
        return PROTOCOL_HTTP
    upper = proto.upper()
    if upper not in (PROTOCOL_HTTP, PROTOCOL_HTTPS):
        m = meta(service)
        raise InvalidAnnotation(
            "k8s.ngrok.com/app-protocols", proto,
            f"must be 'HTTP' or 'HTTPS' (service {m.get('namespace')}/{m.get('name')})",
        )
    return upper


def port_app_protocol(service: dict, port: dict) -> Optional[str]:
    app_proto = port.get("appProtocol")
    if not app_proto:
        return None
    if app_proto in HTTP2_APP_PROTOCOLS:
        return "http2"
    m = meta(service)
    raise BackendResolutionError(
        f"unsupported appProtocol {app_proto!r}, must be one of {', '.join(HTTP2_APP_PROTOCOLS)} or empty "
        f"(service {m.get('namespace')}/{m.get('name')})"
    )


def load_policy_resource(store: Store, name: str, namespace: str) -> Tuple[TrafficPolicy, Optional[bool]]:
    try:
        obj = store.get_traffic_policy(name, namespace)
    except NotFoundError as e:
        raise BackendResolutionError(str(e)) from e
    return parse_policy_document((obj.get("spec", {}) or {}).get("policy"))


def service_port(store: Store, backend: ServiceBackend) -> Tuple[dict, dict]:
    """The Service object and the matching entry of its spec.ports."""
    try:
        service = store.get_service(backend.name, backend.namespace)
    except NotFoundError as e:
        raise BackendResolutionError(str(e)) from e
    return service, find_service_port(service, backend.port_number, backend.port_name)


def resolve_service(
    store: Store,
    backend: ServiceBackend,
    client_cert_refs: Iterable[IRObjectRef] = (),
    scheme: Optional[str] = None,
) -> IRService:
    service, port = service_port(store, backend)
    if scheme is None:
        scheme = SCHEME_HTTPS if port_protocol(service, port) == PROTOCOL_HTTPS else SCHEME_HTTP
    return IRService(
        uid=meta(service).get("uid", ""),
        namespace=backend.namespace,
        name=backend.name,
        port=int(port.get("port")),
        client_cert_refs=tuple(client_cert_refs),
        scheme=scheme,
        protocol=port_app_protocol(service, port),
    )


class UpstreamCache:
    """Service key to upstream for one pass, so every route to a backend shares it."""

    def __init__(self):
        self._upstreams: Dict[str, IRUpstream] = {}

    def get(self, service: IRService, owner: OwningResource) -> IRUpstream:
        upstream = self._upstreams.get(service.key())
        if upstream is None:
            upstream = IRUpstream(service=service)
            self._upstreams[service.key()] = upstream
        upstream.add_owning_resource(owner)
        return upstream

    def __len__(self) -> int:
        return len(self._upstreams)


def policy_destination(store: Store, name: str, namespace: str) -> IRDestination:
    policy, enabled = load_policy_resource(store, name, namespace)
    if policy.on_tcp_connect:
        raise BackendResolutionError(
            f"{POLICY_KIND} {namespace}/{name} used as a backend may not contain on_tcp_connect rules"
        )
    return IRDestination(traffic_policies=[policy], traffic_policy_enabled=enabled)


def resolve_destination(
    store: Store,
    backend: Backend,
    owner: OwningResource,
    upstreams: UpstreamCache,
) -> IRDestination:
    if isinstance(backend, UnsupportedBackend):
        raise BackendResolutionError(backend.reason)
    if isinstance(backend, PolicyResourceBackend):
        return policy_destination(store, backend.name, backend.namespace)
    service = resolve_service(store, backend)
    return IRDestination(upstream=upstreams.get(service, owner))
