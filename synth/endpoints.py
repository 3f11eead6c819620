# synth/endpoints.py
"""IR virtual hosts -> CloudEndpoint and AgentEndpoint resources.

Every virtual host becomes one public CloudEndpoint whose traffic policy
routes requests, via forward-internal, to one internal AgentEndpoint per
distinct upstream service. AgentEndpoints are shared between hosts and are
keyed by service key; the first host to reference a service decides its
internal URL scheme and labels.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import policy.actions as actions
from config import Settings
from errors import Diagnostics
from ir.model import (
    PATH_EXACT,
    PROTOCOL_HTTP,
    PROTOCOL_HTTPS,
    PROTOCOL_TCP,
    PROTOCOL_TLS,
    VALUE_REGEX,
    IRDestination,
    IRHTTPMatch,
    IRService,
    IRStringMatch,
    IRTLSTermination,
    IRVirtualHost,
    protocol_to_scheme,
)
from policy.trafficpolicy import Action, Rule, TrafficPolicy, append_unique, merge_enabled
from store import ObjKey
from synth.naming import (
    agent_endpoint_upstream_url,
    internal_agent_endpoint_name,
    internal_agent_endpoint_url,
    sanitize_k8s_name,
    sanitize_label_value,
)

logger = logging.getLogger(__name__)

API_VERSION = "ngrok.k8s.ngrok.com/v1alpha1"
CLOUD_ENDPOINT_KIND = "CloudEndpoint"
AGENT_ENDPOINT_KIND = "AgentEndpoint"

LABEL_FROM_INGRESSES = "k8s.ngrok.com/from-ingresses"

FALLBACK_404_CONTENT = "No route was found for this ngrok Endpoint"

WEIGHT_VAR = "vars.weighted_route_random_num"

_STREAM_PROTOCOLS = (PROTOCOL_TCP, PROTOCOL_TLS)
_HTTP_PROTOCOLS = (PROTOCOL_HTTP, PROTOCOL_HTTPS)


def _string_match_expression(source: str, m: IRStringMatch) -> str:
    expr = f"{source}.exists_one(x, x == '{m.name}') && {source}['{m.name}'].join(',')"
    if m.value_type == VALUE_REGEX:
        return f"{expr}.matches('{m.value}')"
    return f"{expr} == '{m.value}'"


def match_expressions(match: Optional[IRHTTPMatch], from_vars: bool = False) -> List[str]:
    """CEL expressions that select requests satisfying ``match``.

    With ``from_vars`` set the expressions read the request data captured
    before any rewrite ran instead of the live request.
    """
    out: List[str] = []
    if match is None:
        return out

    if match.path is not None:
        path_var = "vars.original_path" if from_vars else "req.url.path"
        if match.path_type == PATH_EXACT:
            out = append_unique(out, f"{path_var} == '{match.path}'")
        else:
            out = append_unique(out, f"{path_var}.startsWith('{match.path}')")

    headers = "vars.original_headers.decodeJson()" if from_vars else "req.headers"
    for h in match.headers:
        out = append_unique(out, _string_match_expression(headers, h))

    params = "vars.original_query_params.decodeJson()" if from_vars else "req.url.query_params"
    for q in match.query_params:
        out = append_unique(out, _string_match_expression(params, q))

    if match.method:
        out = append_unique(out, f"req.method == '{match.method}'")
    return out


def _modifies_matched_data(action: Action, match: Optional[IRHTTPMatch]) -> bool:
    if match is None:
        return False
    if action.type in (actions.ADD_HEADERS, actions.REMOVE_HEADERS):
        return bool(match.headers)
    if action.type == actions.URL_REWRITE:
        return match.path is not None
    return False


def _destination_policies(dest: IRDestination) -> List[TrafficPolicy]:
    return list(dest.traffic_policies) + list(dest.filter_policies)


def needs_request_capture(vhost: IRVirtualHost) -> bool:
    """Whether any request rule rewrites data a later route match depends on."""
    for route in vhost.routes:
        policies = list(route.traffic_policies)
        for dest in route.destinations:
            policies.extend(_destination_policies(dest))
        for tp in policies:
            for rule in tp.on_http_request:
                if any(_modifies_matched_data(a, route.match_criteria) for a in rule.actions):
                    return True
    return False


def capture_rule() -> Rule:
    return Rule(name="Capture-Original-Request-Data", actions=[actions.set_vars(
        {"original_path": "${req.url.path}"},
        {"original_headers": "${req.headers.encodeJson()}"},
        {"original_query_params": "${req.url.query_params.encodeJson()}"},
    )])


def tls_termination_rule(term: IRTLSTermination) -> Rule:
    return Rule(name="Gateway-TLS-Termination", actions=[actions.terminate_tls(
        server_certificate=term.server_certificate,
        server_private_key=term.server_private_key,
        mutual_tls_certificate_authorities=term.mutual_tls_certificate_authorities,
        extended_options=term.extended_options,
    )])


def fallback_404_rule() -> Rule:
    return Rule(name="Fallback-404", actions=[actions.custom_response(
        404, FALLBACK_404_CONTENT, {"content-type": "text/plain"},
    )])


def weight_expressions(destinations: List[IRDestination]) -> List[Optional[str]]:
    """Per-destination range check against the random number, None for a single destination."""
    if len(destinations) <= 1:
        return [None] * len(destinations)
    out: List[Optional[str]] = []
    lower = 0
    for dest in destinations:
        upper = lower + (dest.weight if dest.weight is not None else 1)
        if lower == 0:
            out.append(f"int({WEIGHT_VAR}) <= {upper - 1}")
        else:
            out.append(f"int({WEIGHT_VAR}) >= {lower} && int({WEIGHT_VAR}) <= {upper - 1}")
        lower = upper
    return out


def random_number_rule(destinations: List[IRDestination], expressions: List[str]) -> Rule:
    total = sum(d.weight if d.weight is not None else 1 for d in destinations)
    return Rule(
        name="Gen-Random-Number",
        expressions=list(expressions),
        actions=[actions.set_vars({"weighted_route_random_num": f"${{rand.int(0,{total - 1})}}"})],
    )


def build_public_url(vhost: IRVirtualHost) -> str:
    listener = vhost.listener
    scheme = protocol_to_scheme(listener.protocol)
    if not listener.hostname:
        # the platform assigns the address
        return scheme
    if listener.protocol == PROTOCOL_HTTPS and listener.port == 443:
        return f"{scheme}{listener.hostname}"
    if listener.protocol == PROTOCOL_HTTP and listener.port == 80:
        return f"{scheme}{listener.hostname}"
    return f"{scheme}{listener.hostname}:{listener.port}"


def _ingress_names(vhost: IRVirtualHost) -> List[str]:
    return sorted({o.name for o in vhost.owning_resources if o.kind == "Ingress"})


def _object_meta(name: str, namespace: str, labels: Dict[str, str], annotations: Dict[str, str]) -> dict:
    md: dict = {"name": name, "namespace": namespace}
    if labels:
        md["labels"] = dict(labels)
    if annotations:
        md["annotations"] = dict(annotations)
    return md


def cloud_endpoint_name(vhost: IRVirtualHost) -> str:
    return sanitize_k8s_name("-".join(p for p in (vhost.name_prefix, vhost.hostname) if p))


def endpoint_enabled(vhost: IRVirtualHost) -> Optional[bool]:
    """Enabled flag of every traffic policy folded into the host's endpoint."""
    enabled = vhost.traffic_policy_enabled
    for route in vhost.routes:
        enabled = merge_enabled(enabled, route.traffic_policy_enabled)
    dests = [d for r in vhost.routes for d in r.destinations]
    if vhost.default_destination is not None:
        dests.append(vhost.default_destination)
    for dest in dests:
        enabled = merge_enabled(enabled, dest.traffic_policy_enabled)
    return enabled


def build_cloud_endpoint(vhost: IRVirtualHost, policy: TrafficPolicy, enabled: Optional[bool] = None) -> dict:
    labels = dict(vhost.labels_to_add)
    ingresses = _ingress_names(vhost)
    if ingresses:
        labels[LABEL_FROM_INGRESSES] = sanitize_label_value("-".join(ingresses))

    spec: dict = {
        "url": build_public_url(vhost),
        "poolingEnabled": vhost.endpoint_pooling_enabled,
        "metadata": vhost.metadata,
        "trafficPolicy": {"policy": policy.to_document(enabled)},
    }
    if vhost.bindings:
        spec["bindings"] = list(vhost.bindings)
    return {
        "apiVersion": API_VERSION,
        "kind": CLOUD_ENDPOINT_KIND,
        "metadata": _object_meta(cloud_endpoint_name(vhost), vhost.namespace, labels, vhost.annotations_to_add),
        "spec": spec,
    }


def build_agent_endpoint(vhost: IRVirtualHost, service: IRService, cluster_domain: str, metadata: str) -> dict:
    name = internal_agent_endpoint_name(
        service.uid, service.name, service.namespace, cluster_domain, service.port, service.client_cert_refs,
    )
    upstream: dict = {
        "url": agent_endpoint_upstream_url(service.name, service.namespace, cluster_domain, service.port, service.scheme),
    }
    if service.protocol:
        upstream["protocol"] = service.protocol
    spec: dict = {
        "url": internal_agent_endpoint_url(
            service.uid, service.name, service.namespace, cluster_domain, service.port,
            service.client_cert_refs, vhost.listener.protocol,
        ),
        "metadata": metadata,
        "upstream": upstream,
    }
    if service.client_cert_refs:
        spec["clientCertificateRefs"] = [{"name": r.name, "namespace": r.namespace} for r in service.client_cert_refs]
    return {
        "apiVersion": API_VERSION,
        "kind": AGENT_ENDPOINT_KIND,
        "metadata": _object_meta(name, service.namespace, vhost.labels_to_add, vhost.annotations_to_add),
        "spec": spec,
    }


def _splice(target: TrafficPolicy, source: TrafficPolicy, expressions: List[str]) -> None:
    # on_tcp_connect rules are not supported per route
    for rule in source.on_http_request:
        target.add_rule_on_http_request(rule.with_expressions(*expressions))
    for rule in source.on_http_response:
        target.add_rule_on_http_response(rule.with_expressions(*expressions))


class EndpointSynthesizer:
    def __init__(self, settings: Settings, diagnostics: Diagnostics):
        self.settings = settings
        self.diagnostics = diagnostics
        self.agent_endpoints: Dict[str, dict] = {}

    def agent_endpoint(self, vhost: IRVirtualHost, service: IRService, metadata: str) -> dict:
        key = service.key()
        found = self.agent_endpoints.get(key)
        if found is None:
            found = build_agent_endpoint(vhost, service, self.settings.cluster_domain, metadata)
            self.agent_endpoints[key] = found
        return found

    def _forward_rule(self, name: str, vhost: IRVirtualHost, dest: IRDestination, metadata: str) -> Rule:
        agent = self.agent_endpoint(vhost, dest.upstream.service, metadata)
        return Rule(name=name, actions=[actions.forward_internal(agent["spec"]["url"])])

    def routing_policy(self, vhost: IRVirtualHost) -> TrafficPolicy:
        tp = TrafficPolicy()
        stream = vhost.listener.protocol in _STREAM_PROTOCOLS

        capture = needs_request_capture(vhost)
        if capture:
            tp.add_rule_on_http_request(capture_rule())

        for route in vhost.routes:
            if not route.destinations and not route.traffic_policies:
                for owner in vhost.owning_resources:
                    self.diagnostics.report(owner, f"{vhost.hostname}: skipping route without a destination")
                continue

            exprs = match_expressions(route.match_criteria, capture)
            for route_tp in route.traffic_policies:
                _splice(tp, route_tp, exprs)

            if len(route.destinations) > 1:
                rand = random_number_rule(route.destinations, exprs)
                if stream:
                    tp.add_rule_on_tcp_connect(rand)
                else:
                    tp.add_rule_on_http_request(rand)

            for dest, weight_expr in zip(route.destinations, weight_expressions(route.destinations)):
                dest_exprs = append_unique(exprs, weight_expr) if weight_expr else list(exprs)
                for dest_tp in _destination_policies(dest):
                    _splice(tp, dest_tp, dest_exprs)
                if dest.upstream is None:
                    continue
                forward = self._forward_rule("Generated-Route", vhost, dest, vhost.metadata)
                forward = forward.with_expressions(*dest_exprs)
                if stream:
                    tp.add_rule_on_tcp_connect(forward)
                else:
                    tp.add_rule_on_http_request(forward)
        return tp

    def default_destination_policy(self, vhost: IRVirtualHost) -> TrafficPolicy:
        tp = TrafficPolicy()
        dest = vhost.default_destination
        if dest is None:
            return tp
        for dest_tp in _destination_policies(dest):
            tp.merge(dest_tp)
        if dest.upstream is not None:
            tp.add_rule_on_http_request(self._forward_rule(
                "Generated-Route-Default-Backend", vhost, dest, self.settings.ingress_metadata,
            ))
        return tp

    def endpoint_policy(self, vhost: IRVirtualHost) -> TrafficPolicy:
        policy = vhost.traffic_policy.deep_copy() if vhost.traffic_policy is not None else TrafficPolicy()
        if vhost.tls_termination is not None:
            policy.prepend_rule("on_tcp_connect", tls_termination_rule(vhost.tls_termination))
        policy.merge(self.routing_policy(vhost))
        policy.merge(self.default_destination_policy(vhost))
        if vhost.listener.protocol in _HTTP_PROTOCOLS and vhost.default_destination is None:
            policy.add_rule_on_http_request(fallback_404_rule())
        return policy

    def synthesize(self, vhosts: List[IRVirtualHost]) -> Tuple[Dict[ObjKey, dict], Dict[ObjKey, dict]]:
        cloud: Dict[ObjKey, dict] = {}
        for vhost in vhosts:
            if vhost.traffic_policy is None and not vhost.routes and vhost.default_destination is None:
                for owner in vhost.owning_resources:
                    self.diagnostics.report(
                        owner, f"{vhost.hostname}: no traffic policy, routes or default backend, not generating endpoints"
                    )
                continue
            # checked before the policy is built so a dropped host registers no agent endpoints
            key = (vhost.namespace, cloud_endpoint_name(vhost))
            if key in cloud:
                logger.warning(f"[translate] cloud endpoint {key[0]}/{key[1]} generated twice, keeping the first")
                continue
            cloud[key] = build_cloud_endpoint(vhost, self.endpoint_policy(vhost), endpoint_enabled(vhost))

        agents: Dict[ObjKey, dict] = {}
        for ep in self.agent_endpoints.values():
            agents[(ep["metadata"]["namespace"], ep["metadata"]["name"])] = ep
        logger.debug(f"[translate] synthesized {len(cloud)} cloud endpoints and {len(agents)} agent endpoints")
        return cloud, agents


def ir_to_endpoints(
    vhosts: List[IRVirtualHost],
    settings: Settings,
    diagnostics: Optional[Diagnostics] = None,
) -> Tuple[Dict[ObjKey, dict], Dict[ObjKey, dict]]:
    """Desired CloudEndpoints and AgentEndpoints keyed by (namespace, name)."""
    synth = EndpointSynthesizer(settings, diagnostics if diagnostics is not None else Diagnostics())
    return synth.synthesize(vhosts)
