# translate/gateway.py
"""Gateway API (Gateway, HTTPRoute, TCPRoute, TLSRoute) to IR.

Virtual hosts are keyed per gateway and then per listener identity
(hostname, port, protocol). A route contributes to every virtual host whose
listener it matches through its parent refs.
"""
from __future__ import annotations

import base64
import dataclasses
import fnmatch
import ipaddress
import logging
from typing import Dict, List, Optional, Tuple

from annotations import bindings as binding_annotation
from annotations import pooling_enabled
from config import Settings
from errors import (
    BackendResolutionError,
    Diagnostics,
    InvalidTLSConfig,
    NotFoundError,
    RefNotPermitted,
    TranslationError,
    UnsupportedFilter,
)
from ir.model import (
    PATH_EXACT,
    PATH_PREFIX,
    PATH_REGEX,
    PROTOCOL_HTTP,
    PROTOCOL_HTTPS,
    PROTOCOL_TCP,
    PROTOCOL_TLS,
    SCHEME_HTTPS,
    SCHEME_TCP,
    SCHEME_TLS,
    VALUE_EXACT,
    VALUE_REGEX,
    IRDestination,
    IRHTTPMatch,
    IRListener,
    IRObjectRef,
    IRRoute,
    IRStringMatch,
    IRTLSTermination,
    IRVirtualHost,
    OwningResource,
)
from labelselectors import selector_matches
from mode import uses_edges
from policy.actions import RESERVED_TLS_KEYS
from store import HTTPROUTES, TCPROUTES, TLSROUTES, Store, meta, obj_key
from translate.backends import ServiceBackend, UnsupportedBackend, UpstreamCache, classify_backend_ref, resolve_service
from translate.filters import filters_enabled, filters_to_policy
from translate.grants import GATEWAY_GROUP, is_ref_to_namespace_allowed
from translate.modules import annotation_traffic_policy

logger = logging.getLogger(__name__)

HTTP_ROUTE = "HTTPRoute"
TCP_ROUTE = "TCPRoute"
TLS_ROUTE = "TLSRoute"

# listener protocols each route kind may attach to
ROUTE_KIND_PROTOCOLS = {
    HTTP_ROUTE: (PROTOCOL_HTTP, PROTOCOL_HTTPS),
    TCP_ROUTE: (PROTOCOL_TCP,),
    TLS_ROUTE: (PROTOCOL_TLS,),
}

TLS_OPTION_PREFIX = "k8s.ngrok.com/terminate-tls."


def hosts_glob_match(host1: str, host2: str) -> bool:
    """Either side may be the glob; when both are, host1 is the pattern."""
    if "*" in host1:
        return fnmatch.fnmatchcase(host2, host1)
    if "*" in host2:
        return fnmatch.fnmatchcase(host1, host2)
    return host1 == host2


def _gw_owner(gateway: dict) -> OwningResource:
    m = meta(gateway)
    return OwningResource("Gateway", m.get("name", ""), m.get("namespace", ""))


def gateway_address_hostnames(gateway: dict, diagnostics: Diagnostics) -> List[str]:
    owner = _gw_owner(gateway)
    hostnames: List[str] = []
    for addr in (gateway.get("spec", {}) or {}).get("addresses", []) or []:
        value = addr.get("value", "")
        if addr.get("type") != "Hostname":
            diagnostics.report(owner, f"address {value!r} skipped, only Hostname type addresses are supported")
            continue
        try:
            ipaddress.ip_address(value)
        except ValueError:
            pass
        else:
            diagnostics.report(owner, f"address {value!r} skipped, IP addresses are not supported")
            continue
        if value not in hostnames:
            hostnames.append(value)
    return hostnames


def listener_allows_namespace(store: Store, gateway: dict, listener: dict, route_namespace: str,
                               diagnostics: Diagnostics) -> bool:
    gw_ns = meta(gateway).get("namespace", "")
    allowed = (listener.get("allowedRoutes") or {}).get("namespaces") or {}
    origin = allowed.get("from") or "Same"
    if origin == "All":
        return True
    if origin == "Selector":
        try:
            ns = store.get_namespace(route_namespace)
        except NotFoundError as e:
            diagnostics.report(_gw_owner(gateway), f"unable to check allowedRoutes selector: {e}")
            return False
        return selector_matches(allowed.get("selector"), meta(ns).get("labels"))
    return gw_ns == route_namespace


def _listener_allows_kind(listener: dict, route_kind: str) -> bool:
    if listener.get("protocol") not in ROUTE_KIND_PROTOCOLS[route_kind]:
        return False
    kinds = (listener.get("allowedRoutes") or {}).get("kinds") or []
    if not kinds:
        return True
    return any((k.get("kind") or "").lower() == route_kind.lower() for k in kinds)


def match_listeners_to_route(
    store: Store,
    gateway: dict,
    address_hostnames: List[str],
    route_namespace: str,
    route_kind: str,
    section_name: Optional[str],
    port: Optional[int],
    route_hostnames: List[str],
    diagnostics: Diagnostics,
) -> List[dict]:
    owner = _gw_owner(gateway)
    matching: List[dict] = []

    for listener in (gateway.get("spec", {}) or {}).get("listeners", []) or []:
        if section_name is not None and listener.get("name") != section_name:
            continue
        if port is not None and listener.get("port") != port:
            continue
        if not _listener_allows_kind(listener, route_kind):
            continue
        if not listener_allows_namespace(store, gateway, listener, route_namespace, diagnostics):
            continue

        hostname = listener.get("hostname")
        if not address_hostnames and (hostname is None or hostname in ("", "*")):
            diagnostics.report(
                owner,
                f"listener {listener.get('name')!r} skipped, a hostname other than '*' is required when spec.addresses is empty",
            )
            continue
        listener_hostname = hostname or "*"

        # every listener binds to every address
        for address in address_hostnames:
            if not hosts_glob_match(listener_hostname, address):
                diagnostics.report(
                    owner,
                    f"listener hostname {listener_hostname!r} does not match address {address!r}, gateway skipped",
                )
                return []

        if not route_hostnames:
            matching.append(listener)
            continue
        for route_host in route_hostnames:
            if route_host == "*" or hosts_glob_match(listener_hostname, route_host):
                matching.append(listener)
                break

    return matching


def _b64(data: dict, key: str) -> Optional[str]:
    raw = data.get(key)
    if raw is None:
        return None
    return base64.b64decode(raw).decode()


def gateway_tls_config_to_ir(store: Store, settings: Settings, tls: Optional[dict],
                             gateway: dict, diagnostics: Diagnostics) -> Optional[IRTLSTermination]:
    if not tls or tls.get("mode") == "Passthrough":
        return None
    owner = _gw_owner(gateway)
    gw_ns = owner.namespace
    term = IRTLSTermination()

    cert_refs = tls.get("certificateRefs") or []
    if cert_refs:
        if len(cert_refs) > 1:
            diagnostics.report(owner, "multiple TLS certificateRefs provided, only the first is used")
        ref = cert_refs[0]
        kind = ref.get("kind") or "Secret"
        if kind.lower() != "secret" or (ref.get("group") or "") not in ("", "core"):
            raise InvalidTLSConfig(f"unsupported kind {kind!r} for TLS certificateRef, only core Secrets are supported")
        ref_ns = ref.get("namespace") or gw_ns
        if not is_ref_to_namespace_allowed(store, settings, gw_ns, GATEWAY_GROUP, "Gateway", ref_ns, "", "Secret", ref.get("name", "")):
            raise RefNotPermitted(f"reference to Secret {ref_ns}/{ref.get('name')} is not allowed without a valid ReferenceGrant")
        try:
            secret = store.get_secret(ref.get("name", ""), ref_ns)
        except NotFoundError as e:
            raise InvalidTLSConfig(f"unable to resolve TLS certificateRef: {e}") from e
        if secret.get("type") != "kubernetes.io/tls":
            raise InvalidTLSConfig(f"secret {ref_ns}/{ref.get('name')} is not of type kubernetes.io/tls (got {secret.get('type')!r})")
        data = secret.get("data", {}) or {}
        key = _b64(data, "tls.key")
        if key is None:
            raise InvalidTLSConfig(f"secret {ref_ns}/{ref.get('name')} is missing tls.key data")
        cert = _b64(data, "tls.crt")
        if cert is None:
            raise InvalidTLSConfig(f"secret {ref_ns}/{ref.get('name')} is missing tls.crt data")
        term.server_certificate = cert
        term.server_private_key = key

    for ref in (tls.get("frontendValidation") or {}).get("caCertificateRefs", []) or []:
        ref_ns = ref.get("namespace") or gw_ns
        if (ref.get("kind") or "").lower() != "configmap":
            raise InvalidTLSConfig(f"unsupported kind {ref.get('kind')!r} for frontend validation, only ConfigMaps are supported")
        if not is_ref_to_namespace_allowed(store, settings, gw_ns, GATEWAY_GROUP, "Gateway", ref_ns, "", "ConfigMap", ref.get("name", "")):
            raise RefNotPermitted(f"reference to ConfigMap {ref_ns}/{ref.get('name')} is not allowed without a valid ReferenceGrant")
        try:
            cm = store.get_configmap(ref.get("name", ""), ref_ns)
        except NotFoundError as e:
            raise InvalidTLSConfig(f"unable to resolve frontend validation ConfigMap: {e}") from e
        ca = (cm.get("data", {}) or {}).get("ca.crt")
        if ca is None:
            raise InvalidTLSConfig(f"configmap {ref_ns}/{ref.get('name')} is missing ca.crt data")
        term.mutual_tls_certificate_authorities.append(ca)

    for key, val in sorted((tls.get("options") or {}).items()):
        if not key.startswith(TLS_OPTION_PREFIX):
            continue
        suffix = key[len(TLS_OPTION_PREFIX):]
        if suffix in RESERVED_TLS_KEYS:
            raise InvalidTLSConfig(f"{key!r} is a reserved field and may not be provided in listener tls options")
        term.extended_options[suffix] = val

    return term


def http_match_to_ir(match: Optional[dict]) -> IRHTTPMatch:
    match = match or {}
    path = match.get("path") or {}
    path_type = {"Exact": PATH_EXACT, "RegularExpression": PATH_REGEX}.get(path.get("type"), PATH_PREFIX)

    def _strings(items) -> List[IRStringMatch]:
        return [
            IRStringMatch(
                name=i.get("name", ""),
                value=i.get("value", ""),
                value_type=VALUE_REGEX if i.get("type") == "RegularExpression" else VALUE_EXACT,
            )
            for i in items or []
        ]

    method = match.get("method")
    return IRHTTPMatch(
        path=path.get("value") or "/",
        path_type=path_type,
        headers=_strings(match.get("headers")),
        query_params=_strings(match.get("queryParams")),
        method=method.upper() if method else None,
    )


class _GatewayContext:
    """Per (gateway, route) settings read once before listeners are matched."""

    def __init__(self, store: Store, settings: Settings, gateway: dict, diagnostics: Diagnostics):
        self.gateway = gateway
        self.owner = _gw_owner(gateway)
        self.address_hostnames = gateway_address_hostnames(gateway, diagnostics)
        self.pooling = pooling_enabled(gateway)
        self.policy, self.policy_obj, self.policy_enabled = annotation_traffic_policy(store, gateway)
        self.bindings = binding_annotation(gateway)
        self.client_cert_refs: List[IRObjectRef] = []

        backend_tls = (gateway.get("spec", {}) or {}).get("backendTLS") or {}
        ref = backend_tls.get("clientCertificateRef")
        if ref:
            ref_ns = ref.get("namespace") or self.owner.namespace
            if not is_ref_to_namespace_allowed(store, settings, self.owner.namespace, GATEWAY_GROUP, "Gateway",
                                               ref_ns, "", "Secret", ref.get("name", "")):
                raise RefNotPermitted(
                    f"backendTLS.clientCertificateRef to Secret {ref_ns}/{ref.get('name')} is not allowed without a valid ReferenceGrant"
                )
            self.client_cert_refs.append(IRObjectRef(name=ref.get("name", ""), namespace=ref_ns))

        infra = (gateway.get("spec", {}) or {}).get("infrastructure") or {}
        self.labels: Dict[str, str] = dict(infra.get("labels") or {})
        self.annotations: Dict[str, str] = dict(infra.get("annotations") or {})


class GatewayTranslator:
    def __init__(self, store: Store, settings: Settings, upstreams: UpstreamCache, diagnostics: Diagnostics):
        self.store = store
        self.settings = settings
        self.upstreams = upstreams
        self.diagnostics = diagnostics
        self.gateways = {obj_key(g): g for g in store.list_managed_gateways()}
        self.vhosts: Dict[Tuple[str, str], Dict[IRListener, IRVirtualHost]] = {}

    def translate(self) -> List[IRVirtualHost]:
        for route in self.store.list(HTTPROUTES):
            self._add_route(route, HTTP_ROUTE)
        for route in self.store.list(TCPROUTES):
            self._add_route(route, TCP_ROUTE)
        for route in self.store.list(TLSROUTES):
            self._add_route(route, TLS_ROUTE)
        return [vh for per_gw in self.vhosts.values() for vh in per_gw.values()]

    def _add_route(self, route: dict, kind: str) -> None:
        m = meta(route)
        route_owner = OwningResource(kind, m.get("name", ""), m.get("namespace", ""))
        hostnames = list((route.get("spec", {}) or {}).get("hostnames", []) or [])

        for vhost in self._matching_vhosts(route, route_owner, hostnames):
            if kind == HTTP_ROUTE:
                routes = self._http_routes(route, route_owner, vhost)
            else:
                tcp_route = self._stream_route(route, route_owner, vhost, kind)
                routes = [tcp_route] if tcp_route is not None else []
            for r in routes:
                for dest in r.destinations:
                    if dest.upstream is not None:
                        for owner in vhost.owning_resources:
                            dest.upstream.add_owning_resource(owner)
                vhost.routes.append(r)

    def _matching_vhosts(self, route: dict, route_owner: OwningResource, hostnames: List[str]) -> List[IRVirtualHost]:
        matched: Dict[int, IRVirtualHost] = {}

        for parent in (route.get("spec", {}) or {}).get("parentRefs", []) or []:
            if (parent.get("kind") or "Gateway") != "Gateway":
                continue
            key = (parent.get("namespace") or route_owner.namespace, parent.get("name", ""))
            gateway = self.gateways.get(key)
            if gateway is None:
                logger.info(f"[translate] {route_owner} parent ref {key[0]}/{key[1]} is not a managed gateway")
                continue
            gw_owner = _gw_owner(gateway)
            if uses_edges(gateway):
                if route_owner.kind != HTTP_ROUTE:
                    self.diagnostics.report(route_owner, f"{route_owner.kind}s are not supported on {gw_owner}, it uses edges")
                continue

            try:
                ctx = _GatewayContext(self.store, self.settings, gateway, self.diagnostics)
            except TranslationError as e:
                self.diagnostics.report(gw_owner, e)
                continue

            listeners = match_listeners_to_route(
                self.store, gateway, ctx.address_hostnames, route_owner.namespace, route_owner.kind,
                parent.get("sectionName"), parent.get("port"), hostnames, self.diagnostics,
            )
            for listener in listeners:
                vhosts = self._listener_vhosts(ctx, listener, route_owner)
                for vh in vhosts:
                    matched[id(vh)] = vh

        return list(matched.values())

    def _listener_vhosts(self, ctx: _GatewayContext, listener: dict, route_owner: OwningResource) -> List[IRVirtualHost]:
        protocol = listener.get("protocol")
        tls = listener.get("tls")
        if tls:
            if protocol == PROTOCOL_HTTPS and tls.get("mode") == "Passthrough":
                self.diagnostics.report(ctx.owner, f"listener {listener.get('name')!r} skipped, TLS passthrough is not possible for HTTPS listeners")
                return []
            if protocol in (PROTOCOL_HTTP, PROTOCOL_TCP):
                self.diagnostics.report(ctx.owner, f"listener {listener.get('name')!r} skipped, TLS is not supported for {protocol} listeners")
                return []

        termination = None
        if protocol in (PROTOCOL_HTTPS, PROTOCOL_TLS):
            try:
                termination = gateway_tls_config_to_ir(self.store, self.settings, tls, ctx.gateway, self.diagnostics)
            except TranslationError as e:
                self.diagnostics.report(ctx.owner, f"listener {listener.get('name')!r} skipped: {e}")
                return []

        hostnames = ctx.address_hostnames or [listener.get("hostname")]
        per_gw = self.vhosts.setdefault(obj_key(ctx.gateway), {})
        out = []
        for hostname in hostnames:
            ir_listener = IRListener(hostname=hostname, port=int(listener.get("port")), protocol=protocol)
            vhost = per_gw.get(ir_listener)
            if vhost is None:
                prefix = f"{ctx.owner.name}.{ctx.owner.namespace}"
                if protocol in (PROTOCOL_TCP, PROTOCOL_TLS):
                    prefix += f".{ir_listener.port}"
                vhost = IRVirtualHost(
                    namespace=ctx.owner.namespace,
                    listener=ir_listener,
                    name_prefix=prefix,
                    endpoint_pooling_enabled=ctx.pooling,
                    traffic_policy=ctx.policy.deep_copy() if ctx.policy is not None else None,
                    traffic_policy_obj=ctx.policy_obj,
                    traffic_policy_enabled=ctx.policy_enabled,
                    tls_termination=termination,
                    client_cert_refs=list(ctx.client_cert_refs),
                    labels_to_add=dict(self.settings.ownership_labels),
                    metadata=self.settings.gateway_metadata,
                    bindings=list(ctx.bindings),
                )
                per_gw[ir_listener] = vhost
            vhost.add_owning_resource(ctx.owner)
            vhost.add_owning_resource(route_owner)
            vhost.labels_to_add.update(ctx.labels)
            vhost.annotations_to_add.update(ctx.annotations)
            out.append(vhost)
        return out

    def _http_routes(self, route: dict, owner: OwningResource, vhost: IRVirtualHost) -> List[IRRoute]:
        out: List[IRRoute] = []
        for idx, rule in enumerate((route.get("spec", {}) or {}).get("rules", []) or []):
            matches = rule.get("matches") or [{}]
            rule_routes: List[IRRoute] = []
            try:
                for m in matches:
                    criteria = http_match_to_ir(m)
                    filters = rule.get("filters") or []
                    policy = filters_to_policy(self.store, filters, owner.namespace, criteria)
                    ir_route = IRRoute(match_criteria=criteria, traffic_policies=[policy] if policy is not None else [],
                                       traffic_policy_enabled=filters_enabled(self.store, filters, owner.namespace))
                    for ref in rule.get("backendRefs", []) or []:
                        dest = self._destination(ref, owner, vhost, criteria)
                        if dest is not None:
                            ir_route.destinations.append(dest)
                    if ir_route.traffic_policies or ir_route.destinations:
                        rule_routes.append(ir_route)
            except UnsupportedFilter as e:
                self.diagnostics.report(owner, f"rule {idx} skipped: {e}")
                continue
            out.extend(rule_routes)
        return out

    def _stream_route(self, route: dict, owner: OwningResource, vhost: IRVirtualHost, kind: str) -> Optional[IRRoute]:
        ir_route = IRRoute(match_criteria=IRHTTPMatch())
        for rule in (route.get("spec", {}) or {}).get("rules", []) or []:
            for ref in rule.get("backendRefs", []) or []:
                dest = self._destination(ref, owner, vhost, None, SCHEME_TLS if kind == TLS_ROUTE else SCHEME_TCP)
                if dest is not None:
                    ir_route.destinations.append(dest)
        if not ir_route.destinations:
            return None
        return ir_route

    def _destination(self, ref: dict, owner: OwningResource, vhost: IRVirtualHost,
                     criteria: Optional[IRHTTPMatch], scheme: Optional[str] = None) -> Optional[IRDestination]:
        """Resolve one backendRef; None means it was dropped (weight 0 or an error already reported)."""
        weight = ref.get("weight")
        if weight is not None and int(weight) == 0:
            return None
        try:
            policy, enabled = None, None
            if ref.get("filters"):
                policy = filters_to_policy(self.store, ref["filters"], owner.namespace, criteria)
                enabled = filters_enabled(self.store, ref["filters"], owner.namespace)

            backend = classify_backend_ref(ref, owner.namespace)
            if isinstance(backend, UnsupportedBackend):
                raise BackendResolutionError(backend.reason)
            if not backend.name:
                if policy is None:
                    raise BackendResolutionError("backendRef has neither a name nor filters")
                return IRDestination(traffic_policies=[policy], weight=weight, traffic_policy_enabled=enabled)
            if not is_ref_to_namespace_allowed(self.store, self.settings, owner.namespace, GATEWAY_GROUP, owner.kind,
                                               backend.namespace, "", "Service", backend.name):
                raise RefNotPermitted(
                    f"reference to Service {backend.namespace}/{backend.name} is not allowed without a valid ReferenceGrant"
                )
            if backend.port_number is None:
                raise BackendResolutionError(f"backendRef {backend.namespace}/{backend.name} is missing the required port")

            service = resolve_service(self.store, ServiceBackend(backend.name, backend.namespace, int(backend.port_number)),
                                      scheme=scheme)
            if vhost.client_cert_refs and service.scheme in (SCHEME_HTTPS, SCHEME_TLS):
                service = dataclasses.replace(service, client_cert_refs=tuple(vhost.client_cert_refs))
        except TranslationError as e:
            self.diagnostics.report(owner, f"backendRef {ref.get('name', '')!r} dropped: {e}")
            return None

        return IRDestination(
            upstream=self.upstreams.get(service, owner),
            weight=weight,
            filter_policies=[policy] if policy is not None else [],
            traffic_policy_enabled=enabled,
        )


def gateway_api_to_ir(store: Store, settings: Settings, upstreams: UpstreamCache,
                      diagnostics: Diagnostics) -> List[IRVirtualHost]:
    return GatewayTranslator(store, settings, upstreams, diagnostics).translate()
