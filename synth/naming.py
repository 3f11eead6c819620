# synth/naming.py
from __future__ import annotations

import hashlib
import re
from typing import Iterable, Optional

from config import DEFAULT_CLUSTER_DOMAIN
from ir.model import PROTOCOL_TCP, PROTOCOL_TLS, IRObjectRef

MAX_NAME_LEN = 63


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode()).hexdigest()


def sanitize_k8s_name(name: str) -> str:
    n = (name or "").replace("*", "wildcard").lower()
    n = re.sub(r"[^a-z0-9.-]+", "-", n)
    n = re.sub(r"^[^a-z0-9]+", "", n)
    n = re.sub(r"[^a-z0-9]+$", "", n)
    if not n:
        return "default"
    if len(n) > MAX_NAME_LEN:
        h = _sha256_hex(n)[:8]
        n = n[:MAX_NAME_LEN - len(h) - 1] + "-" + h
    return n


def sanitize_for_url(s: str) -> str:
    s = (s or "").replace("*", "wildcard")
    return re.sub(r"[^a-zA-Z0-9._~-]", "-", s)


def sanitize_label_value(val: str) -> str:
    v = str(val or "")
    v = re.sub(r"[^A-Za-z0-9-_.]", "-", v)
    v = re.sub(r"[-_.]{2,}", "-", v)
    v = re.sub(r"^[^A-Za-z0-9]+", "", v)
    v = re.sub(r"[^A-Za-z0-9]+$", "", v)
    if not v:
        return "value"
    if len(v) > MAX_NAME_LEN:
        h = hashlib.sha1(str(val).encode()).hexdigest()[:6]
        v = v[:(MAX_NAME_LEN - 7)] + "-" + h
        v = re.sub(r"[^A-Za-z0-9]+$", "", v)
        if not v:
            v = h
    return v


def hyphenated_domain_name(domain: str) -> str:
    return domain.replace(".", "-").replace("*", "wildcard")


def _tls_suffix(client_cert_refs: Iterable[IRObjectRef]) -> str:
    refs = list(client_cert_refs)
    if not refs:
        return ""
    tls_str = "".join(f"{r.name}.{r.namespace}" for r in refs)
    return f"tls-{_sha256_hex(tls_str)[:5]}"


def _custom_cluster_domain(cluster_domain: Optional[str]) -> bool:
    return bool(cluster_domain) and cluster_domain != DEFAULT_CLUSTER_DOMAIN


def internal_agent_endpoint_name(uid: str, name: str, namespace: str, cluster_domain: str, port: int,
                                 client_cert_refs: Iterable[IRObjectRef] = ()) -> str:
    ret = f"{_sha256_hex(uid)[:5]}-{name}-{namespace}"
    suffix = _tls_suffix(client_cert_refs)
    if suffix:
        ret += f"-{suffix}"
    if _custom_cluster_domain(cluster_domain):
        ret += f"-{cluster_domain}"
    ret += f"-{port}"
    return sanitize_k8s_name(ret)


def _cap_label(label: str, tail: str) -> str:
    if len(label) + len(tail) <= MAX_NAME_LEN:
        return label + tail
    h = _sha256_hex(label)[:8]
    keep = MAX_NAME_LEN - len(h) - len(tail) - 1
    return label[:keep].rstrip("-") + "-" + h + tail


def internal_agent_endpoint_url(uid: str, name: str, namespace: str, cluster_domain: str, port: int,
                                client_cert_refs: Iterable[IRObjectRef] = (), protocol: str = "HTTPS") -> str:
    """Internal URL the public endpoint forwards to.

    Dots are replaced so the host stays a single label under ``.internal``.
    Labels over 63 characters are cut and suffixed with a hash, keeping the port.
    TCP listeners need a tcp:// internal URL with an explicit port.
    """
    host = "-".join([
        sanitize_for_url(_sha256_hex(uid)[:5]),
        sanitize_for_url(name),
        sanitize_for_url(namespace),
    ])
    suffix = _tls_suffix(client_cert_refs)
    if suffix:
        host += f"-{suffix}"
    if _custom_cluster_domain(cluster_domain):
        host += f"-{sanitize_for_url(cluster_domain)}"
    host = _cap_label(host.replace(".", "-"), f"-{port}") + ".internal"

    if protocol == PROTOCOL_TCP:
        return f"tcp://{host}:{port}"
    if protocol == PROTOCOL_TLS:
        return f"tls://{host}"
    return f"https://{host}"


def agent_endpoint_upstream_url(name: str, namespace: str, cluster_domain: str, port: int, scheme: str) -> str:
    domain = cluster_domain or DEFAULT_CLUSTER_DOMAIN
    return f"{scheme}{sanitize_for_url(name)}.{sanitize_for_url(namespace)}.{domain}:{port}"
