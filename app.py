# app.py
from __future__ import annotations

import logging
import os
import re
import threading
import time
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from config import Settings, load_settings
from driver import Driver
from errors import NotFoundError, PlatformError, SyncCancelled, classify
from k8s import CUSTOM_RESOURCES, load_store
from store import AGENT_ENDPOINTS, CLOUD_ENDPOINTS, DOMAINS, EDGES, TUNNELS

logger = logging.getLogger("controller")

OUTPUT_KINDS = (DOMAINS, EDGES, TUNNELS, CLOUD_ENDPOINTS, AGENT_ENDPOINTS)

_NGROK_CODE = re.compile(r"ERR_NGROK_(\d+)")


def _platform_error(e: ApiException) -> PlatformError:
    body = e.body.decode() if isinstance(e.body, bytes) else (e.body or "")
    m = _NGROK_CODE.search(body) or _NGROK_CODE.search(e.reason or "")
    return PlatformError(e.status or 0, body or (e.reason or ""), int(m.group(1)) if m else None)


# ─────────────────────────────────────────────
# ngrok CRD API wrapper
# ─────────────────────────────────────────────
class NgrokClient:
    """ObjectClient over CustomObjectsApi for the controller's output kinds."""

    def __init__(self, api_client=None):
        self.api = client.CustomObjectsApi(api_client)

    @staticmethod
    def _crd(kind: str):
        if kind not in OUTPUT_KINDS:
            raise ValueError(f"{kind!r} is not an output kind")
        return CUSTOM_RESOURCES[kind]

    def _call(self, kind: str, obj: Optional[dict], fn, **kwargs):
        try:
            return fn(**kwargs)
        except ApiException as e:
            if e.status == 404:
                meta = (obj or {}).get("metadata", {}) or {}
                raise NotFoundError(kind, meta.get("namespace", ""), meta.get("name", "")) from e
            raise _platform_error(e) from e

    def list(self, kind: str, labels: Optional[Dict[str, str]] = None) -> List[dict]:
        group, version, plural = self._crd(kind)
        selector = ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items()))
        res = self._call(
            kind, None, self.api.list_cluster_custom_object,
            group=group, version=version, plural=plural, label_selector=selector,
        )
        return res.get("items", [])

    def create(self, kind: str, obj: dict) -> dict:
        group, version, plural = self._crd(kind)
        return self._call(
            kind, obj, self.api.create_namespaced_custom_object,
            group=group, version=version, namespace=obj["metadata"]["namespace"], plural=plural, body=obj,
        )

    def update(self, kind: str, obj: dict) -> dict:
        group, version, plural = self._crd(kind)
        meta = obj["metadata"]
        return self._call(
            kind, obj, self.api.replace_namespaced_custom_object,
            group=group, version=version, namespace=meta["namespace"], plural=plural, name=meta["name"], body=obj,
        )

    def delete(self, kind: str, obj: dict) -> None:
        group, version, plural = self._crd(kind)
        meta = obj["metadata"]
        self._call(
            kind, obj, self.api.delete_namespaced_custom_object,
            group=group, version=version, namespace=meta["namespace"], plural=plural, name=meta["name"],
        )


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
        logger.info("[controller] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("[controller] using kubeconfig (local)")


def retry_delay(err: BaseException, default: float) -> float:
    decision = classify(err)
    if not decision.retry:
        logger.error(f"[controller] sync failed and will not be retried until inputs change: {err}")
        return default
    logger.warning(f"[controller] sync failed, retrying: {err}")
    return decision.after or default


def run_cleanup_loop(stop_event: threading.Event, driver: Driver, interval: float) -> None:
    """Periodically re-run the endpoint pass until ``stop_event`` is set."""
    while not stop_event.is_set():
        try:
            driver.sync_endpoints(cancel=stop_event)
        except SyncCancelled:
            return
        except (PlatformError, NotFoundError) as e:
            logger.warning(f"[cleanup] endpoint sync failed: {e}")
        except Exception as e:
            logger.exception(f"[cleanup] unexpected error during endpoint sync: {e}")
        stop_event.wait(interval)


# ─────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────
def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings: Settings = load_settings()
    load_kubernetes_config()

    api_client = client.ApiClient()
    driver = Driver(NgrokClient(api_client), settings)

    stop_event = threading.Event()
    cleanup_thread = threading.Thread(
        target=run_cleanup_loop,
        args=(stop_event, driver, settings.cleanup_seconds),
        daemon=True,
    )

    try:
        driver.update_store(load_store(api_client, settings))
        cleanup_thread.start()
        while True:
            delay: float = settings.loop_seconds
            try:
                driver.update_store(load_store(api_client, settings))
                plans = driver.sync(cancel=stop_event)
                for plan in plans or []:
                    counts = plan.get("counts", {})
                    if any(counts.values()):
                        logger.info(f"[controller] {plan.get('kind')}: {counts}")
            except ApiException as e:
                delay = retry_delay(_platform_error(e), delay)
            except Exception as e:
                delay = retry_delay(e, delay)
            time.sleep(delay)

    except KeyboardInterrupt:
        logger.info("[controller] shutting down")
        stop_event.set()
        if cleanup_thread.is_alive():
            cleanup_thread.join(timeout=5)


if __name__ == "__main__":
    main()
