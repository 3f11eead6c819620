# translate/filters.py
"""HTTPRoute filters compiled into traffic policy.

Every filter turns into exactly one TrafficPolicy. Callers merge the results
in filter order and drop the whole rule when any filter fails.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import policy.actions as actions
from errors import NotFoundError, UnsupportedFilter
from ir.model import IRHTTPMatch
from policy.trafficpolicy import Rule, TrafficPolicy, merge_enabled, parse_policy_document
from store import Store
from translate.backends import POLICY_GROUP, POLICY_KIND

REQUEST_HEADER_MODIFIER = "RequestHeaderModifier"
RESPONSE_HEADER_MODIFIER = "ResponseHeaderModifier"
REQUEST_REDIRECT = "RequestRedirect"
URL_REWRITE = "URLRewrite"
REQUEST_MIRROR = "RequestMirror"
EXTENSION_REF = "ExtensionRef"

FULL_PATH = "ReplaceFullPath"
PREFIX_MATCH = "ReplacePrefixMatch"

DEFAULT_PORTS = {"http": 80, "https": 443}

SECTION_KEYS = {
    REQUEST_HEADER_MODIFIER: "requestHeaderModifier",
    RESPONSE_HEADER_MODIFIER: "responseHeaderModifier",
    REQUEST_REDIRECT: "requestRedirect",
    URL_REWRITE: "urlRewrite",
    EXTENSION_REF: "extensionRef",
}


def _section(flt: dict, ftype: str) -> dict:
    section = flt.get(SECTION_KEYS[ftype])
    if section is None:
        raise UnsupportedFilter(f"filter type specified as {ftype} but the section config was nil")
    return section


def _header_rule(name: str, modifier: dict) -> Rule:
    remove: List[str] = list(modifier.get("remove", []) or [])
    add: Dict[str, str] = {}
    for h in modifier.get("add", []) or []:
        add[h["name"]] = h.get("value", "")
    # add-headers appends, so "set" removes the header first
    for h in modifier.get("set", []) or []:
        remove.append(h["name"])
        add[h["name"]] = h.get("value", "")
    return Rule(name=name, actions=[actions.remove_headers(remove), actions.add_headers(add)])


def _rewrite_from(match: Optional[IRHTTPMatch]) -> str:
    prefix = ""
    if match is not None and match.path:
        prefix = match.path.replace("/", r"\/")
    return (
        r"^(?P<scheme>[a-zA-Z][a-zA-Z0-9+\-.]*):\/\/(?P<hostname>[^\/:]+)(?P<port>:\d+)?"
        f"(?P<prefix>{prefix})(?P<remaining>.*)$"
    )


def _path_parts(path: Optional[dict], prefix: str, remaining: str):
    if not path:
        return prefix, remaining
    ptype = path.get("type")
    if ptype == FULL_PATH:
        if path.get("replaceFullPath") is None:
            raise UnsupportedFilter("ReplaceFullPath type specified but replaceFullPath is nil")
        return "", path["replaceFullPath"]
    if ptype == PREFIX_MATCH:
        if path.get("replacePrefixMatch") is None:
            raise UnsupportedFilter("ReplacePrefixMatch type specified but replacePrefixMatch is nil")
        return path["replacePrefixMatch"], remaining
    raise UnsupportedFilter(f"unknown path modifier type {ptype!r}")


def redirect_policy(redirect: dict, match: Optional[IRHTTPMatch]) -> TrafficPolicy:
    scheme = redirect.get("scheme")
    to_scheme = f"{scheme}://" if scheme else "$1://"
    to_host = redirect.get("hostname") or "$2"
    to_port = "$3"
    port = redirect.get("port")
    if port is not None:
        port = int(port)
        # the scheme's default port is left implicit
        if scheme and DEFAULT_PORTS.get(scheme.lower()) == port:
            to_port = ""
        else:
            to_port = f":{port}"
    to_prefix, to_rest = _path_parts(redirect.get("path"), "$4", "$5")

    tp = TrafficPolicy()
    tp.add_rule_on_http_request(Rule(name="GatewayAPI-Redirect-Filter", actions=[actions.redirect(
        _rewrite_from(match),
        f"{to_scheme}{to_host}{to_port}{to_prefix}{to_rest}",
        int(redirect.get("statusCode") or 302),
    )]))
    return tp


def url_rewrite_policy(rewrite: dict, match: Optional[IRHTTPMatch]) -> TrafficPolicy:
    if not rewrite.get("hostname") and not rewrite.get("path"):
        raise UnsupportedFilter("URLRewrite filter must specify at least one of hostname or path")
    to_host = rewrite.get("hostname") or "$2"
    to_prefix, to_rest = _path_parts(rewrite.get("path"), "$4", "$5")

    tp = TrafficPolicy()
    tp.add_rule_on_http_request(Rule(name="GatewayAPI-URL-Rewrite-Filter", actions=[actions.url_rewrite(
        _rewrite_from(match),
        f"$1://{to_host}$3{to_prefix}{to_rest}",
    )]))
    return tp


def extension_ref_document(store: Store, ref: dict, namespace: str) -> Tuple[TrafficPolicy, Optional[bool]]:
    """The referenced NgrokTrafficPolicy and its separately tracked enabled flag."""
    kind = ref.get("kind") or ""
    group = ref.get("group") or ""
    if kind.lower() != POLICY_KIND.lower():
        raise UnsupportedFilter(f"extension ref filter has unknown kind {kind!r}, only {POLICY_KIND} is supported")
    if group and group.lower() != POLICY_GROUP:
        raise UnsupportedFilter(f"extension ref filter has unknown group {group!r}, only {POLICY_GROUP!r} is supported")
    try:
        obj = store.get_traffic_policy(ref.get("name", ""), namespace)
    except NotFoundError as e:
        raise UnsupportedFilter(f"unable to resolve traffic policy for extension ref filter: {e}") from e
    policy, enabled = parse_policy_document((obj.get("spec", {}) or {}).get("policy"))
    if policy.on_tcp_connect:
        raise UnsupportedFilter(
            "traffic policies supplied as extension ref filters may not contain on_tcp_connect rules"
        )
    return policy, enabled


def extension_ref_policy(store: Store, ref: dict, namespace: str) -> TrafficPolicy:
    return extension_ref_document(store, ref, namespace)[0]


def filter_to_policy(store: Store, flt: dict, namespace: str, match: Optional[IRHTTPMatch] = None) -> TrafficPolicy:
    ftype = flt.get("type")
    if ftype == REQUEST_HEADER_MODIFIER:
        tp = TrafficPolicy()
        tp.add_rule_on_http_request(_header_rule("GatewayAPI-Request-Header-Filter", _section(flt, ftype)))
        return tp
    if ftype == RESPONSE_HEADER_MODIFIER:
        tp = TrafficPolicy()
        tp.add_rule_on_http_response(_header_rule("GatewayAPI-Response-Header-Filter", _section(flt, ftype)))
        return tp
    if ftype == REQUEST_REDIRECT:
        return redirect_policy(_section(flt, ftype), match)
    if ftype == URL_REWRITE:
        return url_rewrite_policy(_section(flt, ftype), match)
    if ftype == EXTENSION_REF:
        return extension_ref_policy(store, _section(flt, ftype), namespace)
    if ftype == REQUEST_MIRROR:
        raise UnsupportedFilter("request mirror filters are not currently supported")
    raise UnsupportedFilter(f"filter type {ftype!r} is not supported")


def filters_to_policy(store: Store, filters: List[dict], namespace: str,
                      match: Optional[IRHTTPMatch] = None) -> Optional[TrafficPolicy]:
    if not filters:
        return None
    tp = TrafficPolicy()
    for flt in filters:
        tp.merge(filter_to_policy(store, flt, namespace, match))
    return tp


def filters_enabled(store: Store, filters: List[dict], namespace: str) -> Optional[bool]:
    """Combined enabled flag of the traffic policies referenced by ExtensionRef filters."""
    enabled: Optional[bool] = None
    for flt in filters or []:
        if flt.get("type") == EXTENSION_REF:
            _, flag = extension_ref_document(store, _section(flt, EXTENSION_REF), namespace)
            enabled = merge_enabled(enabled, flag)
    return enabled
