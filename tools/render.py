#!/usr/bin/env python3
"""tools/render.py

Render the controller's desired ngrok resources as multi-document YAML.

Why this exists:
- Endpoints, domains, edges and tunnels are computed from Ingress and Gateway API objects.
- Sometimes you want an artifact to review / diff / apply manually.

Usage examples:
  python3 tools/render.py > /tmp/ngrok.yaml

  # Only cloud endpoints:
  python3 tools/render.py cloudendpoints | head

Notes:
- This does NOT apply anything.
- Translation problems are printed to stderr, one per line.
- For safe validation, pair it with: kubectl apply --dry-run=server -f -
"""

from __future__ import annotations

import os
import sys

import yaml
from kubernetes import client

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import NgrokClient, load_kubernetes_config  # noqa: E402
from config import load_settings  # noqa: E402
from driver import Driver  # noqa: E402
from k8s import load_store  # noqa: E402
from store import AGENT_ENDPOINTS, CLOUD_ENDPOINTS, DOMAINS, EDGES, TUNNELS  # noqa: E402

ALL_KINDS = (DOMAINS, EDGES, TUNNELS, CLOUD_ENDPOINTS, AGENT_ENDPOINTS)


def render(state, kinds, out) -> None:
    for kind in kinds:
        desired = state.for_kind(kind)
        for key in sorted(desired, key=str):
            yaml.safe_dump(desired[key], out, sort_keys=False)
            out.write("---\n")


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    kinds = tuple(argv) or ALL_KINDS
    unknown = [k for k in kinds if k not in ALL_KINDS]
    if unknown:
        print(f"[render] unknown kinds: {', '.join(unknown)}", file=sys.stderr)
        return 2

    settings = load_settings()
    load_kubernetes_config()
    api_client = client.ApiClient()
    driver = Driver(NgrokClient(api_client), settings, store=load_store(api_client, settings))
    state = driver.calculate()

    for diag in state.diagnostics:
        print(f"[render] {diag}", file=sys.stderr)

    # Multi-doc YAML to stdout
    try:
        render(state, kinds, sys.stdout)
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
