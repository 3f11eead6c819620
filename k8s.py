# k8s.py
"""Lists every watched kind from the API server into a Store snapshot."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

import store as st
from config import Settings
from store import Store

logger = logging.getLogger(__name__)

GATEWAY_GROUP = "gateway.networking.k8s.io"
NGROK_GROUP = "ngrok.k8s.ngrok.com"
INGRESS_GROUP = "ingress.k8s.ngrok.com"

# kind -> (group, version, plural) for everything served as a custom resource
CUSTOM_RESOURCES: Dict[str, Tuple[str, str, str]] = {
    st.GATEWAYS: (GATEWAY_GROUP, "v1", "gateways"),
    st.GATEWAY_CLASSES: (GATEWAY_GROUP, "v1", "gatewayclasses"),
    st.HTTPROUTES: (GATEWAY_GROUP, "v1", "httproutes"),
    st.TCPROUTES: (GATEWAY_GROUP, "v1alpha2", "tcproutes"),
    st.TLSROUTES: (GATEWAY_GROUP, "v1alpha2", "tlsroutes"),
    st.REFERENCE_GRANTS: (GATEWAY_GROUP, "v1beta1", "referencegrants"),
    st.TRAFFIC_POLICIES: (NGROK_GROUP, "v1alpha1", "ngroktrafficpolicies"),
    st.MODULE_SETS: (INGRESS_GROUP, "v1alpha1", "ngrokmodulesets"),
    st.DOMAINS: (INGRESS_GROUP, "v1alpha1", "domains"),
    st.EDGES: (INGRESS_GROUP, "v1alpha1", "httpsedges"),
    st.TUNNELS: (INGRESS_GROUP, "v1alpha1", "tunnels"),
    st.CLOUD_ENDPOINTS: (NGROK_GROUP, "v1alpha1", "cloudendpoints"),
    st.AGENT_ENDPOINTS: (NGROK_GROUP, "v1alpha1", "agentendpoints"),
}


def _typed_listers(api_client) -> Dict[str, Callable]:
    core = client.CoreV1Api(api_client)
    networking = client.NetworkingV1Api(api_client)
    return {
        st.INGRESSES: networking.list_ingress_for_all_namespaces,
        st.INGRESS_CLASSES: networking.list_ingress_class,
        st.SERVICES: core.list_service_for_all_namespaces,
        st.SECRETS: core.list_secret_for_all_namespaces,
        st.CONFIGMAPS: core.list_config_map_for_all_namespaces,
        st.NAMESPACES: core.list_namespace,
    }


def list_custom(custom: client.CustomObjectsApi, kind: str) -> List[dict]:
    group, version, plural = CUSTOM_RESOURCES[kind]
    try:
        res = custom.list_cluster_custom_object(group=group, version=version, plural=plural)
    except ApiException as e:
        if e.status == 404:
            logger.info(f"[k8s] {plural}.{group}/{version} is not installed, treating it as empty")
            return []
        raise
    return res.get("items", [])


def load_store(api_client, settings: Settings) -> Store:
    """Snapshot every kind the translators read, in Kubernetes JSON (camelCase) shape."""
    objects: Dict[str, List[dict]] = {}

    for kind, lister in _typed_listers(api_client).items():
        items = lister().items
        objects[kind] = [api_client.sanitize_for_serialization(i) for i in items]

    custom = client.CustomObjectsApi(api_client)
    for kind in CUSTOM_RESOURCES:
        objects[kind] = list_custom(custom, kind)

    logger.debug(f"[k8s] loaded {sum(len(v) for v in objects.values())} objects")
    return Store(
        objects,
        ingress_controller_name=settings.ingress_controller_name,
        gateway_controller_name=settings.gateway_controller_name,
    )
