# driver.py
"""Orchestrates one pass: store -> desired resources -> applied resources.

The Driver owns the current Store snapshot, computes every desired output
kind from it and reconciles each kind against the objects the cluster
holds, serialized through a SyncCoordinator.
"""
from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from config import Settings
from errors import Diagnostics, DomainStillCreating, SyncCancelled
from ir.model import IRVirtualHost
from ir.ordering import sort_routes
from reconcile import KindRules, ReconcilePlan, apply_owned, normalize, owned_by_controller, plan_owned
from store import AGENT_ENDPOINTS, CLOUD_ENDPOINTS, DOMAINS, EDGES, TUNNELS, ObjKey, Store, obj_key
from sync import SyncCoordinator
from synth.domains import DomainSet, calculate_domains
from synth.edges import calculate_https_edges, edge_domain
from synth.endpoints import ir_to_endpoints
from synth.tunnels import TunnelKey, calculate_tunnels, tunnel_key
from translate.backends import UpstreamCache
from translate.gateway import gateway_api_to_ir
from translate.ingress import ingresses_to_ir
from translate.services import services_to_ir

logger = logging.getLogger(__name__)

RECLAIM_POLICY = "reclaimPolicy"


def translate(store: Store, settings: Settings, diagnostics: Diagnostics) -> List[IRVirtualHost]:
    """Ingress virtual hosts, then Gateway API ones, then LoadBalancer Services, each with its routes in match order."""
    upstreams = UpstreamCache()
    vhosts = ingresses_to_ir(store, settings, upstreams, diagnostics)
    vhosts += gateway_api_to_ir(store, settings, upstreams, diagnostics)
    vhosts += services_to_ir(store, settings, upstreams, diagnostics)
    for vhost in vhosts:
        vhost.routes = sort_routes(vhost.routes)
    return vhosts


@dataclass
class DesiredState:
    domains: DomainSet = field(default_factory=DomainSet)
    edges: Dict[str, dict] = field(default_factory=dict)
    tunnels: Dict[TunnelKey, dict] = field(default_factory=dict)
    cloud_endpoints: Dict[ObjKey, dict] = field(default_factory=dict)
    agent_endpoints: Dict[ObjKey, dict] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    def desired_domains(self) -> Dict[ObjKey, dict]:
        return {obj_key(d): d for d in self.domains.all().values()}

    def for_kind(self, kind: str) -> dict:
        if kind == DOMAINS:
            return self.desired_domains()
        return {
            EDGES: self.edges,
            TUNNELS: self.tunnels,
            CLOUD_ENDPOINTS: self.cloud_endpoints,
            AGENT_ENDPOINTS: self.agent_endpoints,
        }[kind]


# domains

def _without_reclaim(spec: Optional[dict]) -> dict:
    spec = dict(spec or {})
    spec.pop(RECLAIM_POLICY, None)
    return spec


def domain_differs(desired: dict, current: dict) -> bool:
    return _without_reclaim(desired.get("spec")) != _without_reclaim(current.get("spec"))


def domain_merge(desired: dict, current: dict) -> dict:
    updated = normalize(current)
    spec = copy.deepcopy(desired.get("spec") or {})
    # reclaimPolicy is chosen once, at creation
    current_policy = (current.get("spec") or {}).get(RECLAIM_POLICY)
    if current_policy is not None:
        spec[RECLAIM_POLICY] = current_policy
    else:
        spec.pop(RECLAIM_POLICY, None)
    updated["spec"] = spec
    return updated


def domain_ready(domain: dict) -> bool:
    status = domain.get("status") or {}
    if status.get("id"):
        return True
    return any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in status.get("conditions", []) or []
    )


# tunnels

def tunnel_differs(desired: dict, current: dict) -> bool:
    if desired.get("spec") != current.get("spec"):
        return True
    return (desired["metadata"].get("ownerReferences") or []) != (current.get("metadata", {}).get("ownerReferences") or [])


def tunnel_merge(desired: dict, current: dict) -> dict:
    updated = normalize(current)
    updated["spec"] = copy.deepcopy(desired.get("spec"))
    updated["metadata"]["ownerReferences"] = copy.deepcopy(desired["metadata"].get("ownerReferences") or [])
    return updated


class Driver:
    def __init__(self, client, settings: Settings, store: Optional[Store] = None,
                 coordinator: Optional[SyncCoordinator] = None):
        self.client = client
        self.settings = settings
        self._store = store or Store(
            ingress_controller_name=settings.ingress_controller_name,
            gateway_controller_name=settings.gateway_controller_name,
        )
        self._store_lock = threading.Lock()
        self.coordinator = coordinator or SyncCoordinator(allow_concurrent=settings.sync_allow_concurrent)
        self.rules = {
            DOMAINS: KindRules(
                DOMAINS, differs=domain_differs, merge=domain_merge,
                prepare_create=self._prepare_domain, delete=False,
            ),
            EDGES: KindRules(EDGES, key=edge_domain),
            TUNNELS: KindRules(TUNNELS, key=tunnel_key, differs=tunnel_differs, merge=tunnel_merge),
            CLOUD_ENDPOINTS: KindRules(CLOUD_ENDPOINTS),
            AGENT_ENDPOINTS: KindRules(AGENT_ENDPOINTS),
        }

    @property
    def store(self) -> Store:
        with self._store_lock:
            return self._store

    def update_store(self, store: Store) -> None:
        with self._store_lock:
            self._store = store

    def _prepare_domain(self, domain: dict) -> dict:
        domain.setdefault("spec", {})[RECLAIM_POLICY] = self.settings.default_domain_reclaim_policy
        return domain

    def calculate(self) -> DesiredState:
        store = self.store
        state = DesiredState()
        state.domains = calculate_domains(store, self.settings)
        state.edges = calculate_https_edges(store, self.settings, state.domains, state.diagnostics)
        state.tunnels = calculate_tunnels(store, self.settings, state.diagnostics)
        vhosts = translate(store, self.settings, state.diagnostics)
        state.cloud_endpoints, state.agent_endpoints = ir_to_endpoints(vhosts, self.settings, state.diagnostics)
        logger.info(
            f"[driver] desired domains={len(state.domains.all())} edges={len(state.edges)} "
            f"tunnels={len(state.tunnels)} cloudendpoints={len(state.cloud_endpoints)} "
            f"agentendpoints={len(state.agent_endpoints)} diagnostics={len(state.diagnostics)}"
        )
        return state

    def _current(self, kind: str) -> List[dict]:
        # listed unscoped so hand-made objects under a desired name or key are recognized and left alone
        return self.client.list(kind)

    def _unready_domains(self, state: DesiredState, current: List[dict]) -> List[str]:
        desired = state.desired_domains()
        return [
            (d.get("spec") or {}).get("domain", obj_key(d)[1])
            for d in current
            if obj_key(d) in desired and owned_by_controller(d, self.settings.ownership_labels) and not domain_ready(d)
        ]

    def _apply(self, kinds: Tuple[str, ...], cancel: Optional[threading.Event] = None) -> List[ReconcilePlan]:
        state = self.calculate()
        plans: List[ReconcilePlan] = []
        unready: List[str] = []
        for kind in kinds:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled(f"cancelled before listing {kind}")
            current = self._current(kind)
            plans.append(apply_owned(
                self.client, self.rules[kind], state.for_kind(kind), current,
                self.settings.ownership_labels, self.settings.max_concurrent_ops, cancel,
            ))
            if kind == DOMAINS:
                unready = self._unready_domains(state, current)
        if unready:
            raise DomainStillCreating(unready)
        return plans

    def plan(self, kinds: Tuple[str, ...] = (DOMAINS, EDGES, TUNNELS, CLOUD_ENDPOINTS, AGENT_ENDPOINTS)) -> List[ReconcilePlan]:
        state = self.calculate()
        return [
            plan_owned(self.rules[kind], state.for_kind(kind), self._current(kind), self.settings.ownership_labels)
            for kind in kinds
        ]

    def sync(self, cancel: Optional[threading.Event] = None) -> Optional[List[ReconcilePlan]]:
        logger.info("[driver] syncing driver state")
        return self.coordinator.run(
            lambda: self._apply((DOMAINS, EDGES, TUNNELS, CLOUD_ENDPOINTS, AGENT_ENDPOINTS), cancel),
            partial=False, cancel=cancel,
        )

    def sync_endpoints(self, cancel: Optional[threading.Event] = None) -> Optional[List[ReconcilePlan]]:
        logger.info("[driver] syncing endpoints")
        return self.coordinator.run(
            lambda: self._apply((CLOUD_ENDPOINTS, AGENT_ENDPOINTS), cancel), partial=True, cancel=cancel,
        )

    def sync_edges(self, cancel: Optional[threading.Event] = None) -> Optional[List[ReconcilePlan]]:
        logger.info("[driver] syncing edges")
        return self.coordinator.run(
            lambda: self._apply((DOMAINS, EDGES, TUNNELS), cancel), partial=True, cancel=cancel,
        )
