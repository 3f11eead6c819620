from __future__ import annotations

from builders import (
    backend_ref,
    gateway,
    gateway_store,
    httproute,
    ingress,
    ingress_class,
    ingress_store,
    listener,
    module_set,
    path,
    path_match,
    route_rule,
    rule,
    service,
    svc_backend,
    traffic_policy,
)
from config import Settings
from errors import Diagnostics
from synth.domains import calculate_domains
from synth.edges import MATCH_EXACT, MATCH_PREFIX, add_route, calculate_https_edges, edge_domain
from synth.tunnels import LABEL_PORT, LABEL_SERVICE, LABEL_SERVICE_UID, calculate_tunnels, tunnel_key

EDGES = {"k8s.ngrok.com/mapping-strategy": "edges"}


def _edges(store, settings=None):
    settings = settings or Settings()
    diags = Diagnostics()
    domains = calculate_domains(store, settings)
    return calculate_https_edges(store, settings, domains, diags), diags


def test_domains_are_split_by_mapping_strategy() -> None:
    store = ingress_store(
        ingress("new", rules=[rule("a.example.com")]),
        ingress("old", rules=[rule("*.legacy.example.com")], annotations=EDGES),
    )
    domains = calculate_domains(store, Settings())

    assert list(domains.endpoint_domains) == ["a.example.com"]
    assert list(domains.edge_domains) == ["*.legacy.example.com"]
    assert "a.example.com" in domains
    d = domains.edge_domains["*.legacy.example.com"]
    assert d["metadata"]["name"] == "wildcard-legacy-example-com"
    assert d["metadata"]["labels"] == Settings().ownership_labels
    assert d["spec"] == {"domain": "*.legacy.example.com", "metadata": Settings().ingress_metadata}


def test_gateway_listener_does_not_replace_an_ingress_domain() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https", "a.example.com")]),
        ingressclasses=[ingress_class()],
        ingresses=[ingress("app", ns="apps", rules=[rule("a.example.com")])],
    )

    domains = calculate_domains(store, Settings())
    assert domains.all()["a.example.com"]["metadata"]["namespace"] == "apps"


def test_ingress_edge_routes_and_modules() -> None:
    store = ingress_store(
        ingress(
            "legacy",
            rules=[rule("edge.example.com", path("/", svc_backend("api")), path("/exact", svc_backend("api"), path_type="Exact"))],
            annotations={**EDGES, "k8s.ngrok.com/modules": "base,override"},
        ),
        services=[service("api")],
        ngrokmodulesets=[
            module_set("base", compression={"enabled": True}, tlsTermination={"minVersion": "1.2"}),
            module_set("override", compression={"enabled": False}, headers={"request": {"add": {"x": "1"}}}),
        ],
    )
    edges, diags = _edges(store)

    assert list(diags) == []
    edge = edges["edge.example.com"]
    assert edge["spec"]["tlsTermination"] == {"minVersion": "1.2"}
    routes = edge["spec"]["routes"]
    assert [(r["match"], r["matchType"]) for r in routes] == [("/", MATCH_PREFIX), ("/exact", MATCH_EXACT)]
    assert routes[0]["compression"] == {"enabled": False}
    assert routes[0]["headers"] == {"request": {"add": {"x": "1"}}}
    labels = routes[0]["backend"]["labels"]
    assert labels[LABEL_SERVICE_UID] == "uid-default-api"
    assert labels[LABEL_PORT] == "80"


def test_traffic_policy_annotation_becomes_route_policy() -> None:
    policy = {"on_http_request": [{"actions": [{"type": "deny"}]}]}
    store = ingress_store(
        ingress("legacy", rules=[rule("edge.example.com", path("/", svc_backend("api")))],
                annotations={**EDGES, "k8s.ngrok.com/traffic-policy": "tp"}),
        services=[service("api")],
        ngroktrafficpolicies=[traffic_policy("tp", policy=policy)],
    )
    edges, _ = _edges(store)
    assert edges["edge.example.com"]["spec"]["routes"][0]["policy"] == policy


def test_traffic_policy_and_module_set_policy_conflict() -> None:
    store = ingress_store(
        ingress("legacy", rules=[rule("edge.example.com", path("/", svc_backend("api")))],
                annotations={**EDGES, "k8s.ngrok.com/traffic-policy": "tp", "k8s.ngrok.com/modules": "ms"}),
        services=[service("api")],
        ngroktrafficpolicies=[traffic_policy("tp", policy={"on_http_request": []})],
        ngrokmodulesets=[module_set("ms", policy={"inbound": []})],
    )
    edges, diags = _edges(store)
    assert edges["edge.example.com"]["spec"]["routes"] == []
    assert any("both a traffic policy and a module set policy" in d.message for d in diags)


def test_duplicate_edge_route_is_replaced() -> None:
    edge = {"spec": {"hostports": ["a.example.com:443"], "routes": [{"match": "/", "matchType": MATCH_PREFIX, "backend": 1}]}}
    add_route(edge, {"match": "/", "matchType": MATCH_PREFIX, "backend": 2})
    add_route(edge, {"match": "/", "matchType": MATCH_EXACT, "backend": 3})
    assert [r["backend"] for r in edge["spec"]["routes"]] == [2, 3]


def test_edge_domain() -> None:
    assert edge_domain({"spec": {"hostports": ["a.example.com:443"]}}) == "a.example.com"
    assert edge_domain({"spec": {"hostports": ["a.example.com:443", "b.example.com:443"]}}) is None


def test_httproute_on_edge_gateway() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https", "gw.example.com")], annotations=EDGES),
        httproutes=[httproute("web", hostnames=["gw.example.com"], rules=[
            route_rule(backend_ref("api"), matches=[path_match("/v1", "Exact")], filters=[
                {"type": "RequestHeaderModifier", "requestHeaderModifier": {"add": [{"name": "x", "value": "1"}]}},
            ]),
            route_rule(backend_ref("api", ns="other")),
        ])],
        services=[service("api"), service("api", ns="other")],
    )
    edges, diags = _edges(store)

    (route,) = edges["gw.example.com"]["spec"]["routes"]
    assert (route["match"], route["matchType"]) == ("/v1", MATCH_EXACT)
    assert route["policy"]["on_http_request"][0]["name"] == "GatewayAPI-Request-Header-Filter"
    assert route["metadata"] == Settings().gateway_metadata
    assert any("cross-namespace" in d.message for d in diags.for_owner("HTTPRoute default/web"))


def test_tunnels_are_shared_per_service_port() -> None:
    store = ingress_store(
        ingress("one", rules=[rule("a.example.com", path("/", svc_backend("api")))], annotations=EDGES),
        ingress("two", rules=[rule("b.example.com", path("/", svc_backend("api")))], annotations=EDGES),
        ingress("endpoints", rules=[rule("c.example.com", path("/", svc_backend("web")))]),
        services=[service("api"), service("web")],
    )
    tunnels = calculate_tunnels(store, Settings())

    assert list(tunnels) == [("default", "api", "80")]
    tunnel = tunnels[("default", "api", "80")]
    assert tunnel_key(tunnel) == ("default", "api", "80")
    assert tunnel["metadata"]["generateName"] == "api-80-"
    assert tunnel["metadata"]["labels"][LABEL_SERVICE] == "api"
    assert [r["name"] for r in tunnel["metadata"]["ownerReferences"]] == ["one", "two"]
    assert tunnel["spec"]["forwardsTo"] == "api.default.svc.cluster.local:80"
    assert tunnel["spec"]["backend"] == {"protocol": "HTTP"}
    assert "appProtocol" not in tunnel["spec"]


def test_tunnel_carries_http2_app_protocol() -> None:
    store = ingress_store(
        ingress("one", rules=[rule("a.example.com", path("/", svc_backend("grpc")))], annotations=EDGES),
        services=[service("grpc", app_protocol="kubernetes.io/h2c")],
    )
    (tunnel,) = calculate_tunnels(store, Settings()).values()
    assert tunnel["spec"]["appProtocol"] == "http2"


def test_missing_service_gets_no_tunnel() -> None:
    diags = Diagnostics()
    store = ingress_store(ingress("one", rules=[rule("a.example.com", path("/", svc_backend("gone")))], annotations=EDGES))
    assert calculate_tunnels(store, Settings(), diags) == {}
    assert diags.for_owner("Ingress default/one")


def test_edge_route_policy_keeps_the_enabled_flag() -> None:
    store = gateway_store(
        gateway(listeners=[listener("https", "gw.example.com")], annotations=EDGES),
        httproutes=[httproute("web", hostnames=["gw.example.com"], rules=[
            route_rule(backend_ref("api"), matches=[path_match("/")], filters=[
                {"type": "ExtensionRef", "extensionRef": {"kind": "NgrokTrafficPolicy", "name": "auth"}},
            ]),
        ])],
        services=[service("api")],
        ngroktrafficpolicies=[traffic_policy("auth", policy={
            "enabled": True,
            "on_http_request": [{"name": "basic", "actions": [{"type": "basic-auth"}]}],
        })],
    )
    edges, _ = _edges(store)
    (route,) = edges["gw.example.com"]["spec"]["routes"]
    assert route["policy"]["enabled"] is True
    assert route["policy"]["on_http_request"][0]["name"] == "basic"
