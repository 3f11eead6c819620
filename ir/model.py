# ir/model.py
"""Intermediate representation shared by the ingress and gateway translators.

Every pass rebuilds these from the store; nothing here outlives a pass.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from policy.trafficpolicy import TrafficPolicy

PROTOCOL_HTTP = "HTTP"
PROTOCOL_HTTPS = "HTTPS"
PROTOCOL_TCP = "TCP"
PROTOCOL_TLS = "TLS"

PATH_PREFIX = "prefix"
PATH_EXACT = "exact"
PATH_REGEX = "regex"

VALUE_EXACT = "exact"
VALUE_REGEX = "regex"

SCHEME_HTTP = "http://"
SCHEME_HTTPS = "https://"
SCHEME_TCP = "tcp://"
SCHEME_TLS = "tls://"

_PROTOCOL_SCHEMES = {
    PROTOCOL_HTTP: SCHEME_HTTP,
    PROTOCOL_HTTPS: SCHEME_HTTPS,
    PROTOCOL_TCP: SCHEME_TCP,
    PROTOCOL_TLS: SCHEME_TLS,
}


def protocol_to_scheme(protocol: str) -> str:
    try:
        return _PROTOCOL_SCHEMES[protocol]
    except KeyError:
        raise ValueError(f"unsupported protocol {protocol!r}") from None


@dataclass(frozen=True)
class OwningResource:
    kind: str
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class IRObjectRef:
    name: str
    namespace: str


@dataclass(frozen=True)
class IRListener:
    hostname: str
    port: int
    protocol: str


@dataclass
class IRTLSTermination:
    server_certificate: Optional[str] = None
    server_private_key: Optional[str] = None
    mutual_tls_certificate_authorities: List[str] = field(default_factory=list)
    extended_options: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class IRStringMatch:
    """A header or query parameter constraint."""
    name: str
    value: str
    value_type: str = VALUE_EXACT


@dataclass
class IRHTTPMatch:
    path: Optional[str] = None
    path_type: Optional[str] = None
    headers: List[IRStringMatch] = field(default_factory=list)
    query_params: List[IRStringMatch] = field(default_factory=list)
    method: Optional[str] = None


@dataclass(frozen=True)
class IRService:
    uid: str
    namespace: str
    name: str
    port: int
    client_cert_refs: tuple = ()
    scheme: str = SCHEME_HTTP
    protocol: Optional[str] = None

    def key(self) -> str:
        key = f"{self.uid}/{self.namespace}/{self.name}/{self.port}"
        for ref in self.client_cert_refs:
            key += f"/{ref.name}.{ref.namespace}"
        return key


@dataclass
class IRUpstream:
    service: IRService
    owning_resources: List[OwningResource] = field(default_factory=list)

    def add_owning_resource(self, owner: OwningResource) -> None:
        if owner not in self.owning_resources:
            self.owning_resources.append(owner)


@dataclass
class IRDestination:
    upstream: Optional[IRUpstream] = None
    traffic_policies: List[TrafficPolicy] = field(default_factory=list)
    weight: Optional[int] = None
    # backend-level filters that run before an upstream is forwarded to
    filter_policies: List[TrafficPolicy] = field(default_factory=list)
    traffic_policy_enabled: Optional[bool] = None

    def __post_init__(self):
        if self.upstream is not None and self.traffic_policies:
            raise ValueError("destination must be an upstream or inline traffic policies, not both")
        if self.upstream is None and not self.traffic_policies:
            raise ValueError("destination needs an upstream or at least one traffic policy")
        if self.filter_policies and self.upstream is None:
            raise ValueError("filter policies only apply to upstream destinations")

    def identity(self) -> tuple:
        """Value identity used to compare default backends across objects."""
        if self.upstream is not None:
            return ("upstream", self.upstream.service.key(), tuple(tp.to_json() for tp in self.filter_policies))
        return ("policy", tuple(tp.to_json() for tp in self.traffic_policies))


@dataclass
class IRRoute:
    match_criteria: IRHTTPMatch = field(default_factory=IRHTTPMatch)
    traffic_policies: List[TrafficPolicy] = field(default_factory=list)
    destinations: List[IRDestination] = field(default_factory=list)
    traffic_policy_enabled: Optional[bool] = None


@dataclass
class IRVirtualHost:
    namespace: str
    listener: IRListener
    name_prefix: Optional[str] = None
    endpoint_pooling_enabled: bool = False
    traffic_policy: Optional[TrafficPolicy] = None
    traffic_policy_obj: Optional[OwningResource] = None
    traffic_policy_enabled: Optional[bool] = None
    routes: List[IRRoute] = field(default_factory=list)
    default_destination: Optional[IRDestination] = None
    tls_termination: Optional[IRTLSTermination] = None
    client_cert_refs: List[IRObjectRef] = field(default_factory=list)
    labels_to_add: Dict[str, str] = field(default_factory=dict)
    annotations_to_add: Dict[str, str] = field(default_factory=dict)
    owning_resources: List[OwningResource] = field(default_factory=list)
    metadata: str = ""
    bindings: List[str] = field(default_factory=list)

    @property
    def hostname(self) -> str:
        return self.listener.hostname

    def add_owning_resource(self, owner: OwningResource) -> None:
        if owner not in self.owning_resources:
            self.owning_resources.append(owner)

    def unique_services(self) -> List[IRService]:
        seen: Dict[str, IRService] = {}
        dests = [d for r in self.routes for d in r.destinations]
        if self.default_destination is not None:
            dests.append(self.default_destination)
        for d in dests:
            if d.upstream is not None:
                seen.setdefault(d.upstream.service.key(), d.upstream.service)
        return list(seen.values())
