# policy/actions.py
"""Constructors for the traffic policy actions the translators emit."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from policy.trafficpolicy import Action

ADD_HEADERS = "add-headers"
CUSTOM_RESPONSE = "custom-response"
FORWARD_INTERNAL = "forward-internal"
REDIRECT = "redirect"
REMOVE_HEADERS = "remove-headers"
SET_VARS = "set-vars"
TERMINATE_TLS = "terminate-tls"
URL_REWRITE = "url-rewrite"

# keys the gateway TLS termination owns; user supplied extended options may not set them
RESERVED_TLS_KEYS = ("server_private_key", "server_certificate", "mutual_tls_certificate_authorities")


def add_headers(headers: Dict[str, str]) -> Action:
    return Action(ADD_HEADERS, {"headers": dict(headers)})


def remove_headers(headers: List[str]) -> Action:
    return Action(REMOVE_HEADERS, {"headers": list(headers)})


def custom_response(status_code: int, content: str = "", headers: Optional[Dict[str, str]] = None) -> Action:
    cfg: Dict[str, Any] = {"status_code": status_code}
    if content:
        cfg["content"] = content
    if headers:
        cfg["headers"] = dict(headers)
    return Action(CUSTOM_RESPONSE, cfg)


def terminate_tls(
    server_certificate: Optional[str] = None,
    server_private_key: Optional[str] = None,
    mutual_tls_certificate_authorities: Optional[List[str]] = None,
    extended_options: Optional[Dict[str, Any]] = None,
) -> Action:
    cfg: Dict[str, Any] = {}
    if mutual_tls_certificate_authorities:
        cfg["mutual_tls_certificate_authorities"] = list(mutual_tls_certificate_authorities)
    if server_certificate is not None:
        cfg["server_certificate"] = server_certificate
    if server_private_key is not None:
        cfg["server_private_key"] = server_private_key
    for key, val in sorted((extended_options or {}).items()):
        cfg[key] = val
    return Action(TERMINATE_TLS, cfg)


def forward_internal(url: str) -> Action:
    return Action(FORWARD_INTERNAL, {"url": url})


def set_vars(*pairs: Dict[str, Any]) -> Action:
    return Action(SET_VARS, {"vars": [dict(p) for p in pairs]})


def redirect(from_: str, to: str, status_code: int = 302) -> Action:
    return Action(REDIRECT, {"from": from_, "to": to, "status_code": status_code})


def url_rewrite(from_: str, to: str) -> Action:
    return Action(URL_REWRITE, {"from": from_, "to": to})
