# config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

DEFAULT_CLUSTER_DOMAIN = "svc.cluster.local"

OWNED_BY_INGRESS = "kubernetes-ingress-controller"
OWNED_BY_GATEWAY = "kubernetes-gateway-api"

RECLAIM_DELETE = "Delete"
RECLAIM_RETAIN = "Retain"


def _env_bool(env: Mapping[str, str], key: str, default: str = "0") -> bool:
    return env.get(key, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    namespace: str = "ngrok-operator"
    controller_name: str = "ngrok-operator-manager"
    ingress_controller_name: str = "k8s.ngrok.com/ingress-controller"
    gateway_controller_name: str = "ngrok.com/gateway-controller"
    cluster_domain: str = DEFAULT_CLUSTER_DOMAIN
    loop_seconds: int = 5
    cleanup_seconds: int = 60
    disable_reference_grants: bool = False
    sync_allow_concurrent: bool = False
    max_concurrent_ops: int = 8
    default_domain_reclaim_policy: str = RECLAIM_DELETE
    ngrok_metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def ownership_labels(self) -> Dict[str, str]:
        return {
            "k8s.ngrok.com/controller-name": self.controller_name,
            "k8s.ngrok.com/controller-namespace": self.namespace,
        }

    @property
    def ingress_metadata(self) -> str:
        return metadata_json(OWNED_BY_INGRESS, self.ngrok_metadata)

    @property
    def gateway_metadata(self) -> str:
        return metadata_json(OWNED_BY_GATEWAY, self.ngrok_metadata)


def metadata_json(owner: str, custom: Optional[Mapping[str, str]] = None) -> str:
    """Metadata string attached to synthesized resources; custom keys win over owned-by."""
    meta = {"owned-by": owner}
    meta.update(custom or {})
    return json.dumps(meta, sort_keys=True, separators=(",", ":"))


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    raw_meta = env.get("NGROK_METADATA", "").strip()
    custom_meta: Dict[str, str] = {}
    if raw_meta:
        parsed = json.loads(raw_meta)
        if not isinstance(parsed, dict):
            raise ValueError("NGROK_METADATA must be a JSON object")
        custom_meta = {str(k): str(v) for k, v in parsed.items()}

    reclaim = env.get("DEFAULT_DOMAIN_RECLAIM_POLICY", RECLAIM_DELETE)
    if reclaim not in (RECLAIM_DELETE, RECLAIM_RETAIN):
        raise ValueError(f"DEFAULT_DOMAIN_RECLAIM_POLICY must be {RECLAIM_DELETE} or {RECLAIM_RETAIN}, got {reclaim!r}")

    return Settings(
        namespace=env.get("NAMESPACE", "ngrok-operator"),
        controller_name=env.get("CONTROLLER_NAME", "ngrok-operator-manager"),
        ingress_controller_name=env.get("INGRESS_CONTROLLER_NAME", "k8s.ngrok.com/ingress-controller"),
        gateway_controller_name=env.get("GATEWAY_CONTROLLER_NAME", "ngrok.com/gateway-controller"),
        cluster_domain=env.get("CLUSTER_DOMAIN", DEFAULT_CLUSTER_DOMAIN) or DEFAULT_CLUSTER_DOMAIN,
        loop_seconds=int(env.get("LOOP_SECONDS", "5")),
        cleanup_seconds=int(env.get("CLEANUP_SECONDS", "60")),
        disable_reference_grants=_env_bool(env, "DISABLE_REFERENCE_GRANTS"),
        sync_allow_concurrent=_env_bool(env, "SYNC_ALLOW_CONCURRENT"),
        max_concurrent_ops=max(1, int(env.get("MAX_CONCURRENT_OPS", "8"))),
        default_domain_reclaim_policy=reclaim,
        ngrok_metadata=custom_meta,
    )
