from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, List

import pytest
from kubernetes.client.rest import ApiException

from kube_deploy_kit.errors import FatalControlPlaneError, NotFoundError, UnsupportedResourceKind
from kube_deploy_kit.kube import KIND_SPECS, KubeClient, PodLogStream, translate_api_exception
from kube_deploy_kit.manifest import RESOURCE_TYPES


class _RecordingApi:
    """어떤 메서드든 (이름, kwargs) 를 기록하는 API 대역."""

    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.calls: List[tuple] = []
        self.result = result
        self.error = error

    def __getattr__(self, name: str):
        def method(**kwargs: Any) -> Any:
            self.calls.append((name, kwargs))
            if self.error is not None:
                raise self.error
            return self.result

        return method


def _client(**apis: _RecordingApi) -> KubeClient:
    kube = KubeClient.__new__(KubeClient)
    for attr in ("core_v1", "apps_v1", "batch_v1", "networking_v1", "rbac_v1"):
        setattr(kube, attr, apis.get(attr, _RecordingApi()))
    return kube


def _api_exception(status: int, message: str) -> ApiException:
    e = ApiException(status=status, reason="Error")
    e.body = json.dumps({"kind": "Status", "message": message})
    return e


def test_every_manifest_kind_has_an_api() -> None:
    assert set(RESOURCE_TYPES) <= set(KIND_SPECS)


def test_translate_not_found() -> None:
    error = translate_api_exception(_api_exception(404, 'namespaces "shop" not found'))

    assert isinstance(error, NotFoundError)
    assert error.namespace_missing
    assert error.status == 404


def test_translate_other_statuses_are_fatal() -> None:
    error = translate_api_exception(
        _api_exception(403, "unable to create new content in namespace shop because it is being terminated")
    )

    assert isinstance(error, FatalControlPlaneError)
    assert error.namespace_terminating


def test_translate_without_body_uses_reason() -> None:
    error = translate_api_exception(ApiException(status=500, reason="Internal Server Error"))

    assert error.message == "Internal Server Error"


def test_namespaced_dispatch() -> None:
    apps = _RecordingApi()
    kube = _client(apps_v1=apps)

    kube.create("deployment", "shop", {"metadata": {"name": "api"}})
    kube.delete("deployment", "api", "shop")

    assert apps.calls == [
        ("create_namespaced_deployment", {"namespace": "shop", "body": {"metadata": {"name": "api"}}}),
        ("delete_namespaced_deployment", {"name": "api", "namespace": "shop", "grace_period_seconds": 0}),
    ]


def test_cluster_scoped_dispatch() -> None:
    rbac = _RecordingApi()
    kube = _client(rbac_v1=rbac)

    kube.get("clusterrole", "reader", "ignored")

    assert rbac.calls == [("read_cluster_role", {"name": "reader"})]


def test_unknown_kind() -> None:
    with pytest.raises(UnsupportedResourceKind):
        _client().get("cronjob", "x", "shop")


def test_api_errors_are_translated() -> None:
    core = _RecordingApi(error=_api_exception(404, 'pods "web" not found'))
    kube = _client(core_v1=core)

    with pytest.raises(NotFoundError):
        kube.get("pod", "web", "shop")


def test_list_names() -> None:
    items = [SimpleNamespace(metadata=SimpleNamespace(name=n)) for n in ("a", "b")]
    core = _RecordingApi(result=SimpleNamespace(items=items))
    kube = _client(core_v1=core)

    assert kube.list_names("pod", "shop", "job-name=migrate") == ["a", "b"]
    assert core.calls == [("list_namespaced_pod", {"namespace": "shop", "label_selector": "job-name=migrate"})]


def test_stream_pod_log_requests_follow() -> None:
    response = SimpleNamespace(stream=lambda size: iter([b"a", b"b"]), close=lambda: None, release_conn=lambda: None)
    core = _RecordingApi(result=response)
    kube = _client(core_v1=core)

    stream = kube.stream_pod_log("web", "shop", container="app", since_seconds=5)

    assert isinstance(stream, PodLogStream)
    assert list(stream) == [b"a", b"b"]
    assert core.calls == [
        (
            "read_namespaced_pod_log",
            {
                "name": "web",
                "namespace": "shop",
                "follow": True,
                "_preload_content": False,
                "container": "app",
                "since_seconds": 5,
            },
        )
    ]
