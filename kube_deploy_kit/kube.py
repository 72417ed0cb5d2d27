"""
kube
----

kubernetes 파이썬 클라이언트를 감싸는 얇은 컨트롤 플레인 클라이언트.

kind 별 API 그룹/메서드 이름은 KIND_SPECS 한 곳에만 두고,
get / create / replace / delete / list / watch 는 모두 kind 문자열로 디스패치한다.
ApiException 은 404 → NotFoundError, 그 외 → FatalControlPlaneError 로 바꿔서 올린다.
"""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import ControlPlaneError, FatalControlPlaneError, NotFoundError, UnsupportedResourceKind
from .logging_utils import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class KindSpec:
    api: str
    resource: str
    namespaced: bool = True


KIND_SPECS: Dict[str, KindSpec] = {
    "pod": KindSpec("core_v1", "pod"),
    "service": KindSpec("core_v1", "service"),
    "persistentvolumeclaim": KindSpec("core_v1", "persistent_volume_claim"),
    "configmap": KindSpec("core_v1", "config_map"),
    "secret": KindSpec("core_v1", "secret"),
    "endpoints": KindSpec("core_v1", "endpoints"),
    "serviceaccount": KindSpec("core_v1", "service_account"),
    "namespace": KindSpec("core_v1", "namespace", namespaced=False),
    "deployment": KindSpec("apps_v1", "deployment"),
    "daemonset": KindSpec("apps_v1", "daemon_set"),
    "statefulset": KindSpec("apps_v1", "stateful_set"),
    "replicaset": KindSpec("apps_v1", "replica_set"),
    "job": KindSpec("batch_v1", "job"),
    "ingress": KindSpec("networking_v1", "ingress"),
    "role": KindSpec("rbac_v1", "role"),
    "rolebinding": KindSpec("rbac_v1", "role_binding"),
    "clusterrole": KindSpec("rbac_v1", "cluster_role", namespaced=False),
    "clusterrolebinding": KindSpec("rbac_v1", "cluster_role_binding", namespaced=False),
}


def _api_message(e: ApiException) -> str:
    if e.body:
        try:
            body = json.loads(e.body)
        except (TypeError, ValueError):
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    return str(e.reason or e)


def translate_api_exception(e: ApiException) -> ControlPlaneError:
    message = _api_message(e)
    if e.status == 404:
        return NotFoundError(message, status=404)
    return FatalControlPlaneError(message, status=e.status)


@contextmanager
def _translated() -> Iterator[None]:
    try:
        yield
    except ApiException as e:
        raise translate_api_exception(e) from e


class PodLogStream:
    """
    read_namespaced_pod_log(_preload_content=False) 응답을 바이트 청크로 읽는 핸들.
    close() 는 다른 스레드에서 불러도 되고, 읽고 있던 쪽은 예외 또는 종료로 빠져나온다.
    """

    def __init__(self, response: Any, chunk_size: int = 4096) -> None:
        self._response = response
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._response.stream(self._chunk_size))

    def close(self) -> None:
        self._response.close()
        self._response.release_conn()


class KubeClient:
    """
    kind 문자열 기반 CRUD + watch + 로그 스트림.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None) -> None:
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.batch_v1 = client.BatchV1Api(api_client)
        self.networking_v1 = client.NetworkingV1Api(api_client)
        self.rbac_v1 = client.RbacAuthorizationV1Api(api_client)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: Optional[str] = None, context: Optional[str] = None) -> "KubeClient":
        """kubeconfig(+context) 를 우선 사용하고, 파일이 없으면 in-cluster 설정으로 넘어간다."""
        try:
            if kubeconfig and os.path.exists(kubeconfig):
                config.load_kube_config(config_file=kubeconfig, context=context)
                logger.debug("kubeconfig 로드: %s (context=%s)", kubeconfig, context or "(current)")
            else:
                config.load_incluster_config()
                logger.debug("in-cluster 설정 로드")
        except config.ConfigException as e:
            raise ControlPlaneError(f"Kubernetes 설정을 불러올 수 없습니다: {e}") from e
        return cls()

    def _method(self, kind: str, verb: str) -> Tuple[Any, bool]:
        spec = KIND_SPECS.get(kind)
        if spec is None:
            raise UnsupportedResourceKind(kind)
        api = getattr(self, spec.api)
        name = f"{verb}_namespaced_{spec.resource}" if spec.namespaced else f"{verb}_{spec.resource}"
        return getattr(api, name), spec.namespaced

    def get(self, kind: str, name: str, namespace: str) -> Any:
        method, namespaced = self._method(kind, "read")
        with _translated():
            if namespaced:
                return method(name=name, namespace=namespace)
            return method(name=name)

    def create(self, kind: str, namespace: str, body: Any) -> Any:
        method, namespaced = self._method(kind, "create")
        with _translated():
            if namespaced:
                return method(namespace=namespace, body=body)
            return method(body=body)

    def replace(self, kind: str, name: str, namespace: str, body: Any) -> Any:
        method, namespaced = self._method(kind, "replace")
        with _translated():
            if namespaced:
                return method(name=name, namespace=namespace, body=body)
            return method(name=name, body=body)

    def delete(self, kind: str, name: str, namespace: str) -> None:
        method, namespaced = self._method(kind, "delete")
        with _translated():
            if namespaced:
                method(name=name, namespace=namespace, grace_period_seconds=0)
            else:
                method(name=name, grace_period_seconds=0)

    def list_names(self, kind: str, namespace: str, label_selector: str) -> List[str]:
        method, _ = self._method(kind, "list")
        with _translated():
            result = method(namespace=namespace, label_selector=label_selector)
        return [item.metadata.name for item in result.items]

    def watch(
        self,
        kind: str,
        namespace: str,
        *,
        field_selector: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> Iterator[Tuple[str, Any]]:
        """(이벤트 타입, 리소스 객체) 를 차례로 내보낸다. 서버가 스트림을 닫으면 끝난다."""
        method, _ = self._method(kind, "list")
        kwargs: Dict[str, Any] = {"namespace": namespace}
        if field_selector:
            kwargs["field_selector"] = field_selector
        if label_selector:
            kwargs["label_selector"] = label_selector
        if timeout_seconds:
            kwargs["timeout_seconds"] = timeout_seconds
        w = watch.Watch()
        try:
            with _translated():
                for event in w.stream(method, **kwargs):
                    yield event["type"], event["object"]
        finally:
            w.stop()

    def stream_pod_log(
        self,
        name: str,
        namespace: str,
        *,
        container: Optional[str] = None,
        since_seconds: Optional[int] = None,
    ) -> PodLogStream:
        kwargs: Dict[str, Any] = {"follow": True, "_preload_content": False}
        if container:
            kwargs["container"] = container
        if since_seconds:
            kwargs["since_seconds"] = since_seconds
        with _translated():
            response = self.core_v1.read_namespaced_pod_log(name=name, namespace=namespace, **kwargs)
        return PodLogStream(response)
