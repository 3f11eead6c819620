# ir/ordering.py
from __future__ import annotations

from typing import List

from ir.model import PATH_EXACT, PATH_PREFIX, PATH_REGEX, VALUE_EXACT, VALUE_REGEX, IRRoute, IRStringMatch

_PATH_TYPE_ORDER = {PATH_EXACT: 0, PATH_PREFIX: 1, PATH_REGEX: 2}
_VALUE_TYPE_ORDER = {VALUE_EXACT: 0, VALUE_REGEX: 1}


def _matches_to_string(matches: List[IRStringMatch]) -> str:
    ordered = sorted(matches, key=lambda m: (m.name, _VALUE_TYPE_ORDER.get(m.value_type, 2), m.value))
    return "".join(f"{m.name}:{m.value_type}:{m.value};" for m in ordered)


def route_sort_key(route: IRRoute) -> tuple:
    m = route.match_criteria
    if m.path is not None:
        path_key = (0, _PATH_TYPE_ORDER.get(m.path_type or PATH_PREFIX, 3), -len(m.path), m.path)
    else:
        path_key = (1, 0, 0, "")
    header_key = (0, _matches_to_string(m.headers)) if m.headers else (1, "")
    query_key = (0, _matches_to_string(m.query_params)) if m.query_params else (1, "")
    method_key = (0, m.method) if m.method is not None else (1, "")
    return path_key + header_key + query_key + method_key


def sort_routes(routes: List[IRRoute]) -> List[IRRoute]:
    """Order routes most-specific first so first-match semantics pick the right one.

    The order depends only on match criteria: exact before prefix before
    regex, longer paths first, then header, query and method constraints.
    """
    return sorted(routes, key=route_sort_key)
