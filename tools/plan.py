#!/usr/bin/env python3
"""Plan-only runner: prints what the controller would reconcile without applying changes.

Usage:
  CONTROLLER_NAME=my-operator NAMESPACE=ngrok-operator python3 tools/plan.py
  python3 tools/plan.py endpoints     # cloud/agent endpoints only
  python3 tools/plan.py edges         # domains, edges and tunnels only

Notes:
- Uses your local kubeconfig (same behavior as app.py).
- Does not create/update/delete any objects.
"""

from __future__ import annotations

import sys
from pathlib import Path

from kubernetes import client

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import NgrokClient, load_kubernetes_config  # noqa: E402
from config import load_settings  # noqa: E402
from driver import Driver  # noqa: E402
from k8s import load_store  # noqa: E402
from reconcile import print_plan  # noqa: E402
from store import AGENT_ENDPOINTS, CLOUD_ENDPOINTS, DOMAINS, EDGES, TUNNELS  # noqa: E402

SCOPES = {
    "all": (DOMAINS, EDGES, TUNNELS, CLOUD_ENDPOINTS, AGENT_ENDPOINTS),
    "endpoints": (CLOUD_ENDPOINTS, AGENT_ENDPOINTS),
    "edges": (DOMAINS, EDGES, TUNNELS),
}


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    scope = argv[0] if argv else "all"
    if scope not in SCOPES:
        print(f"[plan] unknown scope {scope!r}, expected one of {', '.join(SCOPES)}", file=sys.stderr)
        return 2

    settings = load_settings()
    load_kubernetes_config()
    api_client = client.ApiClient()

    driver = Driver(NgrokClient(api_client), settings, store=load_store(api_client, settings))
    for plan in driver.plan(SCOPES[scope]):
        print_plan(plan)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
