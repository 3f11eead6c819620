# store.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from errors import NotFoundError

INGRESSES = "ingresses"
INGRESS_CLASSES = "ingressclasses"
GATEWAYS = "gateways"
GATEWAY_CLASSES = "gatewayclasses"
HTTPROUTES = "httproutes"
TCPROUTES = "tcproutes"
TLSROUTES = "tlsroutes"
REFERENCE_GRANTS = "referencegrants"
SERVICES = "services"
SECRETS = "secrets"
CONFIGMAPS = "configmaps"
NAMESPACES = "namespaces"
TRAFFIC_POLICIES = "ngroktrafficpolicies"
MODULE_SETS = "ngrokmodulesets"
DOMAINS = "domains"
EDGES = "httpsedges"
TUNNELS = "tunnels"
CLOUD_ENDPOINTS = "cloudendpoints"
AGENT_ENDPOINTS = "agentendpoints"

KINDS = (
    INGRESSES, INGRESS_CLASSES, GATEWAYS, GATEWAY_CLASSES, HTTPROUTES, TCPROUTES, TLSROUTES,
    REFERENCE_GRANTS, SERVICES, SECRETS, CONFIGMAPS, NAMESPACES, TRAFFIC_POLICIES, MODULE_SETS,
    DOMAINS, EDGES, TUNNELS, CLOUD_ENDPOINTS, AGENT_ENDPOINTS,
)

DEFAULT_CLASS_ANNOTATION = "ingressclass.kubernetes.io/is-default-class"
LEGACY_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
NGROK_LOAD_BALANCER_CLASS = "ngrok"

ObjKey = Tuple[str, str]  # (namespace, name)


def meta(obj: dict) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def obj_key(obj: dict) -> ObjKey:
    m = meta(obj)
    return (m.get("namespace", "") or "", m.get("name", "") or "")


class Store:
    """Read-only snapshot of the watched objects, indexed by kind and (namespace, name).

    Objects are plain dicts in Kubernetes JSON shape.
    """

    def __init__(
        self,
        objects: Optional[Dict[str, Iterable[dict]]] = None,
        ingress_controller_name: str = "k8s.ngrok.com/ingress-controller",
        gateway_controller_name: str = "ngrok.com/gateway-controller",
    ):
        self.ingress_controller_name = ingress_controller_name
        self.gateway_controller_name = gateway_controller_name
        self._items: Dict[str, Dict[ObjKey, dict]] = {k: {} for k in KINDS}
        for kind, objs in (objects or {}).items():
            for obj in objs:
                self.add(kind, obj)

    def add(self, kind: str, obj: dict) -> None:
        if kind not in self._items:
            raise ValueError(f"unknown kind {kind!r}")
        self._items[kind][obj_key(obj)] = obj

    def get(self, kind: str, name: str, namespace: str = "") -> dict:
        try:
            return self._items[kind][(namespace or "", name)]
        except KeyError:
            raise NotFoundError(kind, namespace, name) from None

    def list(self, kind: str) -> List[dict]:
        items = self._items[kind]
        return [items[k] for k in sorted(items)]

    # typed lookups

    def get_service(self, name: str, namespace: str) -> dict:
        return self.get(SERVICES, name, namespace)

    def get_secret(self, name: str, namespace: str) -> dict:
        return self.get(SECRETS, name, namespace)

    def get_configmap(self, name: str, namespace: str) -> dict:
        return self.get(CONFIGMAPS, name, namespace)

    def get_namespace(self, name: str) -> dict:
        return self.get(NAMESPACES, name)

    def get_gateway(self, name: str, namespace: str) -> dict:
        return self.get(GATEWAYS, name, namespace)

    def get_traffic_policy(self, name: str, namespace: str) -> dict:
        return self.get(TRAFFIC_POLICIES, name, namespace)

    def get_module_set(self, name: str, namespace: str) -> dict:
        return self.get(MODULE_SETS, name, namespace)

    def list_reference_grants(self, namespace: Optional[str] = None) -> List[dict]:
        grants = self.list(REFERENCE_GRANTS)
        if namespace is None:
            return grants
        return [g for g in grants if meta(g).get("namespace") == namespace]

    # managed object filters

    def _managed_ingress_classes(self) -> Tuple[set, bool]:
        names = set()
        has_default = False
        for cls in self.list(INGRESS_CLASSES):
            if (cls.get("spec", {}) or {}).get("controller") != self.ingress_controller_name:
                continue
            names.add(meta(cls).get("name"))
            annotations = meta(cls).get("annotations", {}) or {}
            if annotations.get(DEFAULT_CLASS_ANNOTATION, "").lower() == "true":
                has_default = True
        return names, has_default

    def list_managed_ingresses(self) -> List[dict]:
        classes, has_default = self._managed_ingress_classes()
        out = []
        for ing in self.list(INGRESSES):
            class_name = (ing.get("spec", {}) or {}).get("ingressClassName")
            if class_name is None:
                class_name = (meta(ing).get("annotations", {}) or {}).get(LEGACY_CLASS_ANNOTATION)
            if class_name is None:
                if has_default:
                    out.append(ing)
            elif class_name in classes:
                out.append(ing)
        return out

    def list_managed_gateways(self) -> List[dict]:
        classes = {
            meta(gc).get("name")
            for gc in self.list(GATEWAY_CLASSES)
            if (gc.get("spec", {}) or {}).get("controllerName") == self.gateway_controller_name
        }
        return [g for g in self.list(GATEWAYS) if (g.get("spec", {}) or {}).get("gatewayClassName") in classes]

    def list_load_balancer_services(self) -> List[dict]:
        """LoadBalancer Services that ask for the ngrok load balancer class."""
        out = []
        for svc in self.list(SERVICES):
            spec = svc.get("spec", {}) or {}
            if spec.get("type") == "LoadBalancer" and spec.get("loadBalancerClass") == NGROK_LOAD_BALANCER_CLASS:
                out.append(svc)
        return out

    def is_managed_gateway(self, gateway: dict) -> bool:
        return any(obj_key(g) == obj_key(gateway) for g in self.list_managed_gateways())
