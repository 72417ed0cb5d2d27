from __future__ import annotations

import pytest
import yaml

from kube_deploy_kit.errors import ManifestDecodeError, UnsupportedResourceKind
from kube_deploy_kit.manifest import RESOURCE_TYPES, decode, parse_asset


ALL_KINDS = [
    "Pod",
    "Deployment",
    "Service",
    "Job",
    "PersistentVolumeClaim",
    "ConfigMap",
    "Secret",
    "Ingress",
    "Endpoints",
    "DaemonSet",
    "ServiceAccount",
    "Role",
    "ClusterRole",
    "RoleBinding",
    "ClusterRoleBinding",
    "StatefulSet",
]


def _raw(kind: str, name: str = "sample", namespace: str = "team-a") -> bytes:
    return yaml.safe_dump(
        {"apiVersion": "v1", "kind": kind, "metadata": {"name": name, "namespace": namespace}}
    ).encode("utf-8")


def test_every_supported_kind_is_registered() -> None:
    assert sorted(RESOURCE_TYPES) == sorted(k.lower() for k in ALL_KINDS)


@pytest.mark.parametrize("kind", ALL_KINDS)
def test_decode_exposes_name_and_namespace(kind: str) -> None:
    asset = parse_asset(f"{kind}.yml", _raw(kind))

    assert asset.kind == kind.lower()
    assert asset.name == "sample"
    assert asset.resource.namespace == "team-a"


def test_unknown_kind_is_rejected() -> None:
    with pytest.raises(UnsupportedResourceKind) as excinfo:
        parse_asset("cron.yml", _raw("CronJob"))

    assert excinfo.value.kind == "cronjob"
    assert excinfo.value.source_path == "cron.yml"


def test_set_namespace_is_idempotent() -> None:
    asset = parse_asset("svc.yml", _raw("Service"))

    asset.set_namespace("prod")
    first = dict(asset.resource.manifest["metadata"])
    asset.set_namespace("prod")

    assert asset.resource.manifest["metadata"] == first
    assert asset.resource.namespace == "prod"


def test_json_manifest_is_accepted() -> None:
    raw = b'{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cfg"}, "data": {"a": "1"}}'

    asset = parse_asset("cfg.json", raw)

    assert asset.kind == "configmap"
    assert asset.resource.namespace == ""
    assert asset.raw == raw


@pytest.mark.parametrize(
    "raw",
    [
        b"- just\n- a list\n",
        b"metadata:\n  name: x\n",
        b"kind: Service\nmetadata: nope\n",
        b"kind: Service\nmetadata:\n  namespace: a\n",
        b"kind: Service\nmetadata: {name: [broken\n",
    ],
)
def test_malformed_manifest_reports_source_path(raw: bytes) -> None:
    with pytest.raises(ManifestDecodeError) as excinfo:
        parse_asset("broken.yml", raw)

    assert excinfo.value.source_path == "broken.yml"


def test_workload_images_include_init_containers() -> None:
    manifest = {
        "kind": "deployment",
        "metadata": {"name": "api"},
        "spec": {
            "template": {
                "spec": {
                    "initContainers": [{"name": "migrate", "image": "gcr.io/p/migrate:v1"}],
                    "containers": [{"name": "app", "image": "gcr.io/p/app:v1"}],
                }
            }
        },
    }

    resource = decode("deployment", manifest)

    assert resource.images() == ["gcr.io/p/migrate:v1", "gcr.io/p/app:v1"]


def test_pod_images_and_non_workloads() -> None:
    pod = decode("pod", {"metadata": {"name": "p"}, "spec": {"containers": [{"name": "c", "image": "redis:7"}]}})
    service = decode("service", {"metadata": {"name": "s"}})

    assert pod.images() == ["redis:7"]
    assert service.images() == []
