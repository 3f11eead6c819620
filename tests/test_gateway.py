from __future__ import annotations

from builders import (
    backend_ref,
    gateway,
    gateway_store,
    httproute,
    listener,
    namespace,
    parent,
    path_match,
    reference_grant,
    route_rule,
    rule_names,
    service,
    tcproute,
    tls_secret,
    tlsroute,
    traffic_policy,
)
from config import Settings
from errors import Diagnostics
from ir.ordering import sort_routes
from store import Store
from synth.endpoints import ir_to_endpoints
from translate.backends import UpstreamCache
from translate.gateway import gateway_api_to_ir, hosts_glob_match


def _compile(store: Store, settings: Settings = None):
    settings = settings or Settings()
    diags = Diagnostics()
    vhosts = gateway_api_to_ir(store, settings, UpstreamCache(), diags)
    for vh in vhosts:
        vh.routes = sort_routes(vh.routes)
    cloud, agents = ir_to_endpoints(vhosts, settings, diags)
    return vhosts, cloud, agents, diags


def _app_gateway(**kw) -> dict:
    return gateway(listeners=[listener("https", "app.example.com")], **kw)


def test_httproute_on_https_listener() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", hostnames=["app.example.com"], rules=[
            route_rule(backend_ref("api"), matches=[path_match("/v1")]),
        ])],
        services=[service("api")],
    )
    vhosts, cloud, agents, diags = _compile(store)

    assert list(diags) == []
    assert [vh.name_prefix for vh in vhosts] == ["gw.default"]
    ep = cloud[("default", "gw.default-app.example.com")]
    assert ep["spec"]["url"] == "https://app.example.com"
    policy = ep["spec"]["trafficPolicy"]["policy"]
    assert rule_names(policy) == ["Generated-Route", "Fallback-404"]
    assert policy["on_http_request"][0]["expressions"] == ["req.url.path.startsWith('/v1')"]
    assert len(agents) == 1


def test_route_matches_are_combined_into_expressions() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[
            route_rule(backend_ref("api"), matches=[path_match("/v1", "Exact", headers={"x-env": "prod"}, method="post")]),
        ])],
        services=[service("api")],
    )
    _, cloud, _, _ = _compile(store)
    forward = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]["on_http_request"][0]
    assert forward["expressions"] == [
        "req.url.path == '/v1'",
        "req.headers.exists_one(x, x == 'x-env') && req.headers['x-env'].join(',') == 'prod'",
        "req.method == 'POST'",
    ]


def test_listener_without_hostname_needs_gateway_addresses() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https")]),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
    )
    vhosts, cloud, _, diags = _compile(store)
    assert vhosts == [] and cloud == {}
    assert any("hostname other than '*'" in d.message for d in diags.for_owner("Gateway default/gw"))


def test_gateway_addresses_become_hostnames() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https", "*.example.com")], addresses=["a.example.com", "10.0.0.1"]),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
    )
    vhosts, _, _, diags = _compile(store)
    assert [vh.hostname for vh in vhosts] == ["a.example.com"]
    assert any("IP addresses" in d.message for d in diags)


def test_route_hostnames_must_match_listener() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", hostnames=["other.example.com"], rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
    )
    vhosts, _, _, _ = _compile(store)
    assert vhosts == []


def test_cross_namespace_backend_needs_a_reference_grant() -> None:
    objects = dict(
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"), backend_ref("remote", ns="other"))])],
        services=[service("api"), service("remote", ns="other")],
    )
    vhosts, _, _, diags = _compile(gateway_store(_app_gateway(), **objects))
    (route,) = vhosts[0].routes
    assert [d.upstream.service.name for d in route.destinations] == ["api"]
    assert any("ReferenceGrant" in d.message for d in diags.for_owner("HTTPRoute default/web"))

    granted = gateway_store(
        _app_gateway(),
        referencegrants=[reference_grant("allow", "other", "HTTPRoute", "default")],
        **objects,
    )
    vhosts, _, _, diags = _compile(granted)
    (route,) = vhosts[0].routes
    assert [d.upstream.service.name for d in route.destinations] == ["api", "remote"]
    assert list(diags) == []


def test_weighted_backends_split_by_random_number() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("blue", weight=1), backend_ref("green", weight=3))])],
        services=[service("blue"), service("green")],
    )
    _, cloud, agents, _ = _compile(store)
    rules = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]["on_http_request"]

    assert [r["name"] for r in rules] == ["Gen-Random-Number", "Generated-Route", "Generated-Route", "Fallback-404"]
    assert rules[0]["actions"][0]["config"]["vars"] == [{"weighted_route_random_num": "${rand.int(0,3)}"}]
    assert rules[1]["expressions"][-1] == "int(vars.weighted_route_random_num) <= 0"
    assert rules[2]["expressions"][-1] == "int(vars.weighted_route_random_num) >= 1 && int(vars.weighted_route_random_num) <= 3"
    assert len(agents) == 2


def test_zero_weight_backend_is_dropped() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("blue", weight=0), backend_ref("green"))])],
        services=[service("blue"), service("green")],
    )
    vhosts, _, agents, _ = _compile(store)
    assert [d.upstream.service.name for d in vhosts[0].routes[0].destinations] == ["green"]
    assert len(agents) == 1


def test_header_filter_with_header_match_captures_original_request() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[route_rule(
            backend_ref("api"),
            matches=[path_match("/", headers={"x-env": "prod"})],
            filters=[{"type": "RequestHeaderModifier", "requestHeaderModifier": {"set": [{"name": "x-env", "value": "dev"}]}}],
        )])],
        services=[service("api")],
    )
    _, cloud, _, _ = _compile(store)
    rules = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]["on_http_request"]

    assert [r["name"] for r in rules] == [
        "Capture-Original-Request-Data", "GatewayAPI-Request-Header-Filter", "Generated-Route", "Fallback-404",
    ]
    assert "expressions" not in rules[0]
    assert rules[1]["expressions"][0] == "vars.original_path.startsWith('/')"
    assert rules[1]["expressions"][1].startswith("vars.original_headers.decodeJson().exists_one")
    assert rules[1]["actions"][0] == {"type": "remove-headers", "config": {"headers": ["x-env"]}}
    assert rules[1]["actions"][1] == {"type": "add-headers", "config": {"headers": {"x-env": "dev"}}}


def test_backend_filters_run_before_the_forward() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api", filters=[
            {"type": "ResponseHeaderModifier", "responseHeaderModifier": {"add": [{"name": "x-served-by", "value": "api"}]}},
        ]))])],
        services=[service("api")],
    )
    vhosts, cloud, _, _ = _compile(store)
    assert vhosts[0].routes[0].destinations[0].filter_policies
    policy = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]
    assert rule_names(policy, "on_http_response") == ["GatewayAPI-Response-Header-Filter"]
    assert policy["on_http_response"][0]["expressions"] == ["req.url.path.startsWith('/')"]


def test_unsupported_filter_drops_the_whole_rule() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[
            route_rule(backend_ref("api"), matches=[path_match("/mirror")],
                       filters=[{"type": "RequestMirror", "requestMirror": {"backendRef": {"name": "api"}}}]),
            route_rule(backend_ref("api"), matches=[path_match("/ok")]),
        ])],
        services=[service("api")],
    )
    vhosts, _, _, diags = _compile(store)
    assert [r.match_criteria.path for r in vhosts[0].routes] == ["/ok"]
    assert any("request mirror" in d.message for d in diags.for_owner("HTTPRoute default/web"))


def test_redirect_only_rule_has_no_forward() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[route_rule(
            matches=[path_match("/old")],
            filters=[{"type": "RequestRedirect", "requestRedirect": {"scheme": "https", "statusCode": 301}}],
        )])],
    )
    _, cloud, agents, _ = _compile(store)
    policy = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]
    assert rule_names(policy) == ["GatewayAPI-Redirect-Filter", "Fallback-404"]
    assert agents == {}


def test_tls_termination_from_certificate_secret() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https", "app.example.com", tls={
            "mode": "Terminate",
            "certificateRefs": [{"name": "cert"}],
            "options": {"k8s.ngrok.com/terminate-tls.min_version": "1.3", "other.io/ignored": "x"},
        })]),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
        secrets=[tls_secret("cert", cert="PEM-CERT", key="PEM-KEY")],
    )
    _, cloud, _, _ = _compile(store)
    policy = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]
    (term,) = policy["on_tcp_connect"]
    assert term["name"] == "Gateway-TLS-Termination"
    assert term["actions"][0]["config"] == {
        "server_certificate": "PEM-CERT",
        "server_private_key": "PEM-KEY",
        "min_version": "1.3",
    }


def test_reserved_tls_option_skips_the_listener() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https", "app.example.com", tls={
            "mode": "Terminate",
            "options": {"k8s.ngrok.com/terminate-tls.server_private_key": "nope"},
        })]),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
    )
    vhosts, _, _, diags = _compile(store)
    assert vhosts == []
    assert any("reserved" in d.message for d in diags)


def test_passthrough_is_rejected_on_https_but_allowed_on_tls() -> None:
    store = gateway_store(
        gateway(listeners=[
            listener("https", "app.example.com", tls={"mode": "Passthrough"}),
            listener("tls", "tls.example.com", port=8443, protocol="TLS", tls={"mode": "Passthrough"}),
        ]),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        tlsroutes=[tlsroute("secure", rules=[route_rule(backend_ref("api", 443))])],
        services=[service("api", ports=((80, "http"), (443, "tls")))],
    )
    vhosts, cloud, agents, diags = _compile(store)

    assert [(vh.hostname, vh.tls_termination) for vh in vhosts] == [("tls.example.com", None)]
    assert any("passthrough is not possible" in d.message for d in diags)
    ep = cloud[("default", "gw.default.8443-tls.example.com")]
    assert ep["spec"]["url"] == "tls://tls.example.com:8443"
    (agent,) = agents.values()
    assert agent["spec"]["url"].startswith("tls://")
    assert agent["spec"]["upstream"]["url"] == "tls://api.default.svc.cluster.local:443"


def test_tcproute_forwards_on_tcp_connect() -> None:
    store = gateway_store(
        gateway(listeners=[listener("db", "db.example.com", port=5432, protocol="TCP")]),
        tcproutes=[tcproute("postgres", rules=[route_rule(backend_ref("db", 5432))])],
        services=[service("db", ports=((5432, "pg"),))],
    )
    _, cloud, agents, diags = _compile(store)

    assert list(diags) == []
    ep = cloud[("default", "gw.default.5432-db.example.com")]
    assert ep["spec"]["url"] == "tcp://db.example.com:5432"
    policy = ep["spec"]["trafficPolicy"]["policy"]
    assert "on_http_request" not in policy
    assert rule_names(policy, "on_tcp_connect") == ["Generated-Route"]
    (agent,) = agents.values()
    assert agent["spec"]["url"].startswith("tcp://") and agent["spec"]["url"].endswith(".internal:5432")
    assert agent["spec"]["upstream"]["url"] == "tcp://db.default.svc.cluster.local:5432"


def test_httproute_does_not_attach_to_tcp_listener() -> None:
    store = gateway_store(
        gateway(listeners=[listener("db", "db.example.com", port=5432, protocol="TCP")]),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
    )
    vhosts, _, _, _ = _compile(store)
    assert vhosts == []


def test_allowed_routes_selector_checks_namespace_labels() -> None:
    gw = gateway(listeners=[listener("https", "app.example.com", allowed_routes={
        "namespaces": {"from": "Selector", "selector": {"matchLabels": {"team": "web"}}},
    })])
    objects = dict(
        httproutes=[
            httproute("allowed", ns="web-ns", parents=[parent(ns="default")], rules=[route_rule(backend_ref("api"))]),
            httproute("denied", ns="ops-ns", parents=[parent(ns="default")], rules=[route_rule(backend_ref("api"))]),
        ],
        services=[service("api", ns="web-ns"), service("api", ns="ops-ns")],
        namespaces=[namespace("web-ns", {"team": "web"}), namespace("ops-ns", {"team": "ops"})],
    )
    vhosts, _, _, _ = _compile(gateway_store(gw, **objects))
    (vhost,) = vhosts
    assert [d.upstream.service.namespace for r in vhost.routes for d in r.destinations] == ["web-ns"]


def test_gateway_traffic_policy_and_infrastructure_labels() -> None:
    gw = _app_gateway(annotations={"k8s.ngrok.com/traffic-policy": "gw-policy"})
    gw["spec"]["infrastructure"] = {"labels": {"team": "web"}, "annotations": {"note": "hi"}}
    store = gateway_store(
        gw,
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"))])],
        services=[service("api")],
        ngroktrafficpolicies=[traffic_policy("gw-policy", policy={"on_tcp_connect": [{"name": "ips", "actions": [{"type": "restrict-ips"}]}]})],
    )
    _, cloud, agents, _ = _compile(store)
    ep = cloud[("default", "gw.default-app.example.com")]
    assert rule_names(ep["spec"]["trafficPolicy"]["policy"], "on_tcp_connect") == ["ips"]
    assert ep["metadata"]["labels"]["team"] == "web"
    assert ep["metadata"]["annotations"] == {"note": "hi"}
    assert '"owned-by":"kubernetes-gateway-api"' in ep["spec"]["metadata"]
    (agent,) = agents.values()
    assert agent["metadata"]["labels"]["team"] == "web"


def test_hosts_glob_match() -> None:
    assert hosts_glob_match("*.example.com", "a.example.com")
    assert hosts_glob_match("a.example.com", "*.example.com")
    assert hosts_glob_match("a.example.com", "a.example.com")
    assert not hosts_glob_match("*.example.com", "a.other.com")


def test_extension_ref_filter_carries_its_enabled_flag() -> None:
    store = gateway_store(
        _app_gateway(),
        httproutes=[httproute("web", rules=[route_rule(backend_ref("api"), filters=[
            {"type": "ExtensionRef", "extensionRef": {
                "group": "ngrok.k8s.ngrok.com", "kind": "NgrokTrafficPolicy", "name": "auth",
            }},
        ])])],
        services=[service("api")],
        ngroktrafficpolicies=[traffic_policy("auth", policy={
            "enabled": False,
            "on_http_request": [{"name": "basic", "actions": [{"type": "basic-auth"}]}],
        })],
    )
    vhosts, cloud, _, _ = _compile(store)
    assert vhosts[0].routes[0].traffic_policy_enabled is False
    policy = cloud[("default", "gw.default-app.example.com")]["spec"]["trafficPolicy"]["policy"]
    assert policy["enabled"] is False
    assert rule_names(policy) == ["basic", "Generated-Route", "Fallback-404"]
