"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 kube_deploy_kit 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.

클러스터/도커 없이 오케스트레이터를 돌리기 위한 인메모리 가짜 구현도 여기에 둔다.
"""

from __future__ import annotations

import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


def _body_name(body: Any) -> str:
    if isinstance(body, dict):
        return body["metadata"]["name"]
    return body.metadata.name


class FakeKube:
    """
    kind 문자열 기반 KubeClient 대역.

    errors[(verb, kind)] 에 예외 목록을 넣어두면 해당 호출에서 순서대로 하나씩 올린다.
    """

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str, str], Any] = {}
        self.labels: Dict[Tuple[str, str, str], Dict[str, str]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.errors: Dict[Tuple[str, str], List[Exception]] = {}
        self.watch_events: Dict[str, List[Tuple[str, Any]]] = {}

    def put(self, kind: str, name: str, namespace: str, obj: Any = None, labels: Optional[Dict[str, str]] = None) -> None:
        if obj is None:
            obj = SimpleNamespace(status=SimpleNamespace(phase="Running"))
        self.objects[(kind, namespace, name)] = obj
        self.labels[(kind, namespace, name)] = dict(labels or {})

    def _fail(self, verb: str, kind: str) -> None:
        pending = self.errors.get((verb, kind))
        if pending:
            raise pending.pop(0)

    def _missing(self, kind: str, name: str) -> Exception:
        from kube_deploy_kit.errors import NotFoundError

        return NotFoundError(f'{kind}s "{name}" not found', status=404)

    def verbs(self, verb: str) -> List[Tuple[str, str]]:
        return [(kind, name) for v, kind, name in self.calls if v == verb]

    def get(self, kind: str, name: str, namespace: str) -> Any:
        self.calls.append(("get", kind, name))
        self._fail("get", kind)
        try:
            return self.objects[(kind, namespace, name)]
        except KeyError:
            raise self._missing(kind, name) from None

    def create(self, kind: str, namespace: str, body: Any) -> Any:
        name = _body_name(body)
        self.calls.append(("create", kind, name))
        self._fail("create", kind)
        key = (kind, namespace, name)
        self.objects[key] = SimpleNamespace(status=SimpleNamespace(phase="Running"), body=body)
        self.labels[key] = {}
        return body

    def replace(self, kind: str, name: str, namespace: str, body: Any) -> Any:
        self.calls.append(("replace", kind, name))
        self._fail("replace", kind)
        key = (kind, namespace, name)
        if key not in self.objects:
            raise self._missing(kind, name)
        self.objects[key] = body
        return body

    def delete(self, kind: str, name: str, namespace: str) -> None:
        self.calls.append(("delete", kind, name))
        self._fail("delete", kind)
        key = (kind, namespace, name)
        if key not in self.objects:
            raise self._missing(kind, name)
        del self.objects[key]
        self.labels.pop(key, None)

    def list_names(self, kind: str, namespace: str, label_selector: str) -> List[str]:
        self.calls.append(("list", kind, label_selector))
        label, _, value = label_selector.partition("=")
        return sorted(
            name
            for (k, ns, name), labels in self.labels.items()
            if k == kind and ns == namespace and labels.get(label) == value
        )

    def watch(self, kind: str, namespace: str, **kwargs: Any):
        self.calls.append(("watch", kind, kwargs.get("field_selector") or ""))
        # 한 번 읽은 이벤트는 다시 나오지 않는다
        yield from self.watch_events.pop(kind, [])


class FakeDocker:
    """docker_backend 모듈과 같은 함수 이름을 가진 기록용 대역."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.fail_remove: set[str] = set()

    def build_image(self, context_dir: str, tag: str) -> None:
        self.calls.append(("build", context_dir, tag))

    def push_image(self, tag: str) -> None:
        self.calls.append(("push", tag))

    def tag_image(self, source: str, target: str) -> None:
        self.calls.append(("tag", source, target))

    def pull_image(self, image: str) -> None:
        self.calls.append(("pull", image))

    def login(self, host: str, username: str, password: str) -> None:
        self.calls.append(("login", host, username, password))

    def remove_image(self, tag: str) -> None:
        from kube_deploy_kit.errors import BuildBackendError

        self.calls.append(("rmi", tag))
        if tag in self.fail_remove:
            raise BuildBackendError(f"docker rmi {tag} 실패")


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker()
