"""
manifest
--------

렌더링이 끝난 매니페스트 한 개를 kind 별 리소스 객체로 해석하는 모듈.

지원 kind 는 닫힌 집합이며(RESOURCE_TYPES), 모르는 kind 는 항상
UnsupportedResourceKind 로 실패한다. 모든 리소스 클래스는
name / namespace / set_namespace() / images() 를 동일하게 제공하므로
네임스페이스 재작성은 호출자가 kind 와 상관없이 한 번에 처리한다.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional, Type

import yaml

from .errors import ManifestDecodeError, UnsupportedResourceKind


class Resource:
    """kind 별 리소스의 공통 부모. 원본 매니페스트 dict 를 그대로 들고 있다."""

    kind: ClassVar[str] = ""
    namespaced: ClassVar[bool] = True

    def __init__(self, manifest: Dict[str, Any]) -> None:
        self.manifest = manifest

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.manifest["metadata"]

    @property
    def name(self) -> str:
        return self.metadata["name"]

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or ""

    def set_namespace(self, namespace: str) -> None:
        self.metadata["namespace"] = namespace

    def images(self) -> List[str]:
        return []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, namespace={self.namespace!r})"


def _pod_spec_images(pod_spec: Optional[Dict[str, Any]]) -> List[str]:
    if not pod_spec:
        return []
    images: List[str] = []
    for key in ("initContainers", "containers"):
        for container in pod_spec.get(key) or []:
            image = (container or {}).get("image")
            if image:
                images.append(image)
    return images


class _PodTemplateResource(Resource):
    """spec.template 에 파드 템플릿을 가지는 워크로드."""

    def images(self) -> List[str]:
        spec = self.manifest.get("spec") or {}
        template = spec.get("template") or {}
        return _pod_spec_images(template.get("spec"))


class Pod(Resource):
    kind = "pod"

    def images(self) -> List[str]:
        return _pod_spec_images(self.manifest.get("spec"))


class Deployment(_PodTemplateResource):
    kind = "deployment"


class Job(_PodTemplateResource):
    kind = "job"


class DaemonSet(_PodTemplateResource):
    kind = "daemonset"


class StatefulSet(_PodTemplateResource):
    kind = "statefulset"


class Service(Resource):
    kind = "service"


class PersistentVolumeClaim(Resource):
    kind = "persistentvolumeclaim"


class ConfigMap(Resource):
    kind = "configmap"


class Secret(Resource):
    kind = "secret"


class Ingress(Resource):
    kind = "ingress"


class Endpoints(Resource):
    kind = "endpoints"


class ServiceAccount(Resource):
    kind = "serviceaccount"


class Role(Resource):
    kind = "role"


class RoleBinding(Resource):
    kind = "rolebinding"


class ClusterRole(Resource):
    kind = "clusterrole"
    namespaced = False


class ClusterRoleBinding(Resource):
    kind = "clusterrolebinding"
    namespaced = False


RESOURCE_TYPES: Dict[str, Type[Resource]] = {
    cls.kind: cls
    for cls in (
        Pod,
        Deployment,
        Service,
        Job,
        PersistentVolumeClaim,
        ConfigMap,
        Secret,
        Ingress,
        Endpoints,
        DaemonSet,
        ServiceAccount,
        Role,
        ClusterRole,
        RoleBinding,
        ClusterRoleBinding,
        StatefulSet,
    )
}


def decode(kind: str, data: Dict[str, Any], source_path: str = "<memory>") -> Resource:
    """
    kind 에 맞는 리소스 클래스로 감싼다.
    metadata.name 만 확인하고, 나머지 필드는 API 서버 판단에 맡긴다.
    """
    cls = RESOURCE_TYPES.get(kind)
    if cls is None:
        raise UnsupportedResourceKind(kind, source_path)

    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        raise ManifestDecodeError(source_path, "metadata 가 매핑이 아닙니다")
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise ManifestDecodeError(source_path, "metadata.name 이 비어 있습니다")
    namespace = metadata.get("namespace")
    if namespace is not None and not isinstance(namespace, str):
        raise ManifestDecodeError(source_path, "metadata.namespace 가 문자열이 아닙니다")
    return cls(data)


@dataclass
class Asset:
    kind: str
    resource: Resource
    source_path: str
    raw: bytes

    @property
    def name(self) -> str:
        return self.resource.name

    def set_namespace(self, namespace: str) -> None:
        self.resource.set_namespace(namespace)


def parse_asset(source_path: str, raw: bytes) -> Asset:
    """렌더링된 바이트(YAML 또는 JSON 한 문서)를 Asset 으로 만든다."""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ManifestDecodeError(source_path, str(e)) from e

    if not isinstance(data, dict):
        raise ManifestDecodeError(source_path, "최상위가 매핑이 아닙니다")
    raw_kind = data.get("kind")
    if not isinstance(raw_kind, str) or not raw_kind:
        raise ManifestDecodeError(source_path, "kind 가 없습니다")

    kind = raw_kind.lower()
    resource = decode(kind, data, source_path)
    return Asset(kind=kind, resource=resource, source_path=source_path, raw=raw)
