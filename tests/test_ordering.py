from __future__ import annotations

import itertools

from ir.model import PATH_EXACT, PATH_PREFIX, PATH_REGEX, VALUE_REGEX, IRHTTPMatch, IRRoute, IRStringMatch
from ir.ordering import sort_routes


def _route(path=None, path_type=PATH_PREFIX, headers=None, method=None) -> IRRoute:
    return IRRoute(match_criteria=IRHTTPMatch(
        path=path,
        path_type=path_type if path is not None else None,
        headers=[IRStringMatch(k, v) for k, v in (headers or {}).items()],
        method=method,
    ))


def _describe(routes):
    return [(r.match_criteria.path, r.match_criteria.path_type, len(r.match_criteria.headers), r.match_criteria.method)
            for r in routes]


def test_exact_before_prefix_before_regex_and_longest_first() -> None:
    routes = [
        _route("/"),
        _route("/api/.*", PATH_REGEX),
        _route("/api"),
        _route("/api", PATH_EXACT),
        _route("/api/v1"),
    ]
    assert [(r.match_criteria.path, r.match_criteria.path_type) for r in sort_routes(routes)] == [
        ("/api", PATH_EXACT),
        ("/api/v1", PATH_PREFIX),
        ("/api", PATH_PREFIX),
        ("/", PATH_PREFIX),
        ("/api/.*", PATH_REGEX),
    ]


def test_constrained_routes_come_before_unconstrained_ones() -> None:
    plain = _route("/")
    with_header = _route("/", headers={"x-env": "prod"})
    with_method = _route("/", method="POST")
    no_path = _route(None)

    ordered = sort_routes([no_path, plain, with_method, with_header])
    assert ordered == [with_header, with_method, plain, no_path]


def test_order_does_not_depend_on_discovery_order() -> None:
    routes = [
        _route("/a"),
        _route("/a", PATH_EXACT),
        _route("/b", headers={"h": "1"}),
        _route("/b"),
        _route("/", method="GET"),
    ]
    expected = _describe(sort_routes(routes))
    for perm in itertools.permutations(routes):
        assert _describe(sort_routes(list(perm))) == expected


def test_regex_header_values_sort_after_exact_ones() -> None:
    exact = IRRoute(match_criteria=IRHTTPMatch(path="/", path_type=PATH_PREFIX, headers=[IRStringMatch("h", "b")]))
    regex = IRRoute(match_criteria=IRHTTPMatch(
        path="/", path_type=PATH_PREFIX, headers=[IRStringMatch("h", "a", VALUE_REGEX)],
    ))
    assert sort_routes([regex, exact]) == [exact, regex]
