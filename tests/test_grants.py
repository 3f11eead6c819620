from __future__ import annotations

from builders import make_store, reference_grant
from config import Settings
from translate.grants import GATEWAY_GROUP, is_ref_to_namespace_allowed


def _allowed(store, settings=None, from_kind="HTTPRoute", from_ns="default", to_ns="other", to_kind="Service", to_name="api"):
    return is_ref_to_namespace_allowed(
        store, settings or Settings(), from_ns, GATEWAY_GROUP, from_kind, to_ns, "", to_kind, to_name,
    )


def test_same_namespace_is_always_allowed() -> None:
    assert _allowed(make_store(), to_ns="default")


def test_cross_namespace_needs_a_grant() -> None:
    assert not _allowed(make_store())
    assert _allowed(make_store(referencegrants=[reference_grant("g", "other", "HTTPRoute", "default")]))


def test_grant_must_live_in_the_target_namespace() -> None:
    store = make_store(referencegrants=[reference_grant("g", "default", "HTTPRoute", "default")])
    assert not _allowed(store)


def test_grant_must_name_the_referring_kind_and_namespace() -> None:
    store = make_store(referencegrants=[reference_grant("g", "other", "TCPRoute", "default")])
    assert not _allowed(store)
    store = make_store(referencegrants=[reference_grant("g", "other", "HTTPRoute", "elsewhere")])
    assert not _allowed(store)


def test_named_grant_only_covers_that_object() -> None:
    store = make_store(referencegrants=[reference_grant("g", "other", "HTTPRoute", "default", to_name="api")])
    assert _allowed(store, to_name="api")
    assert not _allowed(store, to_name="db")


def test_grant_kind_must_match_target_kind() -> None:
    store = make_store(referencegrants=[reference_grant("g", "other", "Gateway", "default", to_kind="Secret")])
    assert _allowed(store, from_kind="Gateway", to_kind="Secret")
    assert not _allowed(store, from_kind="Gateway", to_kind="ConfigMap")


def test_disabled_reference_grants_allow_everything() -> None:
    assert _allowed(make_store(), settings=Settings(disable_reference_grants=True))
