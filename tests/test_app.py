from __future__ import annotations

import threading

import pytest
from kubernetes.client.rest import ApiException

import app
from errors import NotFoundError, PlatformError, SyncCancelled
from k8s import list_custom
from store import CLOUD_ENDPOINTS, DOMAINS, GATEWAYS, SERVICES


def _api_error(status: int, body: str = "", reason: str = "") -> ApiException:
    e = ApiException(status=status, reason=reason)
    e.body = body
    return e


class _FakeCustomObjects:
    def __init__(self, error: ApiException = None, items=()):
        self.error = error
        self.items = list(items)
        self.calls = []

    def _record(self, name, kwargs):
        self.calls.append((name, kwargs))
        if self.error is not None:
            raise self.error

    def list_cluster_custom_object(self, **kwargs):
        self._record("list", kwargs)
        return {"items": self.items}

    def create_namespaced_custom_object(self, **kwargs):
        self._record("create", kwargs)
        return kwargs["body"]

    def replace_namespaced_custom_object(self, **kwargs):
        self._record("replace", kwargs)
        return kwargs["body"]

    def delete_namespaced_custom_object(self, **kwargs):
        self._record("delete", kwargs)


def _client(api: _FakeCustomObjects) -> app.NgrokClient:
    c = app.NgrokClient.__new__(app.NgrokClient)
    c.api = api
    return c


def _ep(name: str = "a-example-com") -> dict:
    return {"metadata": {"name": name, "namespace": "default"}, "spec": {"url": "https://a.example.com"}}


def test_list_builds_a_sorted_label_selector() -> None:
    api = _FakeCustomObjects(items=[_ep()])
    items = _client(api).list(CLOUD_ENDPOINTS, {"k8s.ngrok.com/controller-namespace": "ops",
                                                "k8s.ngrok.com/controller-name": "mine"})
    assert items == [_ep()]
    (name, kwargs), = api.calls
    assert kwargs["plural"] == "cloudendpoints"
    assert kwargs["label_selector"] == "k8s.ngrok.com/controller-name=mine,k8s.ngrok.com/controller-namespace=ops"


def test_mutations_are_namespaced() -> None:
    api = _FakeCustomObjects()
    c = _client(api)
    c.create(DOMAINS, _ep())
    c.update(DOMAINS, _ep())
    c.delete(DOMAINS, _ep())
    assert [n for n, _ in api.calls] == ["create", "replace", "delete"]
    assert all(kw["namespace"] == "default" and kw["group"] == "ingress.k8s.ngrok.com" for _, kw in api.calls)
    assert api.calls[1][1]["name"] == "a-example-com"


def test_not_found_is_translated() -> None:
    c = _client(_FakeCustomObjects(error=_api_error(404, reason="Not Found")))
    with pytest.raises(NotFoundError) as exc:
        c.delete(CLOUD_ENDPOINTS, _ep("gone"))
    assert exc.value.name == "gone"


def test_ngrok_error_code_is_parsed() -> None:
    body = '{"message": "admission webhook denied the request: ERR_NGROK_446 domain is attached to an edge"}'
    c = _client(_FakeCustomObjects(error=_api_error(409, body=body)))
    with pytest.raises(PlatformError) as exc:
        c.create(DOMAINS, _ep())
    assert exc.value.status_code == 409
    assert exc.value.code == 446


def test_output_kinds_only() -> None:
    with pytest.raises(ValueError):
        _client(_FakeCustomObjects()).list(SERVICES)


def test_missing_crd_lists_empty() -> None:
    assert list_custom(_FakeCustomObjects(error=_api_error(404)), GATEWAYS) == []
    with pytest.raises(ApiException):
        list_custom(_FakeCustomObjects(error=_api_error(403)), GATEWAYS)


def test_retry_delay() -> None:
    assert app.retry_delay(PlatformError(400, "bad"), 5) == 5
    assert app.retry_delay(PlatformError(400, "in use", code=446), 5) == 30.0
    assert app.retry_delay(RuntimeError("flaky"), 5) == 5


class _Driver:
    def __init__(self, stop: threading.Event, outcomes):
        self.stop = stop
        self.outcomes = list(outcomes)
        self.calls = 0

    def sync_endpoints(self, cancel=None):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if not self.outcomes:
            self.stop.set()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def test_cleanup_loop_survives_errors_until_stopped() -> None:
    stop = threading.Event()
    driver = _Driver(stop, [PlatformError(503), RuntimeError("boom"), []])
    app.run_cleanup_loop(stop, driver, 0)
    assert driver.calls == 3


def test_cleanup_loop_returns_on_cancel() -> None:
    stop = threading.Event()
    driver = _Driver(stop, [SyncCancelled(), []])
    app.run_cleanup_loop(stop, driver, 0)
    assert driver.calls == 1
