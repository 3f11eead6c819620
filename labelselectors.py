# labelselectors.py
from __future__ import annotations

from typing import Dict, Optional


def selector_matches(selector: Optional[dict], labels: Optional[Dict[str, str]]) -> bool:
    """Kubernetes label selector evaluation (matchLabels + matchExpressions).

    An empty selector matches everything, like the API server treats it.
    """
    selector = selector or {}
    labels = labels or {}
    match_labels = selector.get("matchLabels", {}) or {}
    for k, v in match_labels.items():
        if labels.get(k) != v:
            return False

    for expr in selector.get("matchExpressions", []) or []:
        key = expr.get("key")
        op = expr.get("operator")
        vals = expr.get("values", []) or []
        if op == "In":
            if labels.get(key) not in vals:
                return False
        elif op == "NotIn":
            if key in labels and labels.get(key) in vals:
                return False
        elif op == "Exists":
            if key not in labels:
                return False
        elif op == "DoesNotExist":
            if key in labels:
                return False
        else:
            # unknown operator never matches
            return False

    return True
