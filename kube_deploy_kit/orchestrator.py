"""
orchestrator
------------

Project 를 클러스터에 적용/철거하는 리소스 라이프사이클 오케스트레이터.

up            : pull → init_up → docker login → build → namespace → resources → jobs → services → finalize_up
down          : init_down → services → jobs → resources → (namespace 삭제) → auto_clean → finalize_down
down_services : services 만 철거
update        : up 과 같은 준비 단계 후 pod/deployment/configmap/secret 만 교체
auto_update   : auto_updates 에 등록된 deployment 의 컨테이너 이미지를 새 태그로 교체

모든 단계는 순서대로 하나씩 실행하며, 처음 실패한 곳에서 예외를 올리고 멈춘다.
이미 실행된 단계의 결과는 되돌리지 않는다.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from kubernetes import client

from . import builds, docker_backend, registry
from .errors import (
    ControlPlaneError,
    FatalControlPlaneError,
    NotFoundError,
    ProjectConfigError,
    ScriptError,
    TransientControlPlaneError,
)
from .logging_utils import get_logger
from .manifest import Asset
from .project import AutoUpdate, AutoUpdateCredential, Project, read_password
from .registry import split_image
from .subprocess_utils import run_command


logger = get_logger(__name__)

DEFAULT_NAMESPACE = "default"

# 네임스페이스가 종료 중일 때 리소스 생성 재시도
CREATE_RETRY_LIMIT = 10
CREATE_RETRY_DELAY = 5.0

# 네임스페이스 삭제 재시도
NAMESPACE_DELETE_ATTEMPTS = 10
NAMESPACE_DELETE_DELAY = 5.0

UPDATABLE_KINDS = ("pod", "deployment", "configmap", "secret")

# 부모 리소스를 지울 때 함께 지울 파드의 라벨 키
CASCADE_POD_LABELS = {
    "deployment": "name",
    "job": "job-name",
    "daemonset": "name",
    "statefulset": "name",
}


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    kind: str
    name: str
    namespace: str
    outcome: str


Reporter = Callable[[ProgressEvent], None]


def log_reporter(event: ProgressEvent) -> None:
    logger.info(
        "[%s] %s %r (namespace=%s): %s",
        event.stage,
        event.kind,
        event.name,
        event.namespace,
        event.outcome,
    )


@dataclass
class DeployContext:
    project: Project
    kube: Any
    docker: Any = docker_backend
    registry: Any = registry
    reporter: Reporter = log_reporter
    sleep: Callable[[float], None] = time.sleep
    events: List[ProgressEvent] = field(default_factory=list)

    @property
    def namespace(self) -> str:
        return self.project.namespace

    def report(self, stage: str, kind: str, name: str, outcome: str) -> None:
        event = ProgressEvent(stage=stage, kind=kind, name=name, namespace=self.namespace, outcome=outcome)
        self.events.append(event)
        self.reporter(event)


# -----------------------------
# scripts
# -----------------------------
def run_scripts(ctx: DeployContext, scripts: Iterable[str]) -> None:
    for script in scripts:
        logger.info("스크립트 실행: %s", script)
        try:
            run_command(
                ["sh", "-c", script],
                cwd=ctx.project.root_folder,
                timeout=None,
                stream_output=True,
                log_command=False,
            )
        except RuntimeError as e:
            raise ScriptError(script, str(e)) from e


# -----------------------------
# namespace
# -----------------------------
def ensure_namespace(kube: Any, namespace: str) -> None:
    try:
        kube.get("namespace", namespace, "")
        return
    except NotFoundError:
        pass
    logger.info("네임스페이스 생성: %s", namespace)
    body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
    kube.create("namespace", "", body)


def delete_namespace(ctx: DeployContext) -> None:
    namespace = ctx.namespace
    if namespace == DEFAULT_NAMESPACE:
        logger.info("default 네임스페이스는 삭제하지 않습니다.")
        return
    try:
        ctx.kube.get("namespace", namespace, "")
    except NotFoundError:
        return

    attempt = 1
    while True:
        try:
            ctx.kube.delete("namespace", namespace, "")
            ctx.report("down", "namespace", namespace, "destroyed")
            return
        except NotFoundError:
            return
        except ControlPlaneError as e:
            logger.warning("네임스페이스 삭제 실패 (%d/%d): %s", attempt, NAMESPACE_DELETE_ATTEMPTS, e)
            if attempt >= NAMESPACE_DELETE_ATTEMPTS:
                raise TransientControlPlaneError(
                    f"네임스페이스를 삭제하지 못했습니다: {namespace}: {e.message}",
                    status=e.status,
                ) from e
            ctx.sleep(NAMESPACE_DELETE_DELAY)
            attempt += 1


# -----------------------------
# per-asset primitives
# -----------------------------
def resource_exists(kube: Any, kind: str, name: str, namespace: str) -> bool:
    """
    리소스 존재 여부. 파드는 Succeeded/Failed 면 '없음', Unknown 이면 오류.
    """
    try:
        obj = kube.get(kind, name, namespace)
    except NotFoundError:
        return False
    if kind != "pod":
        return True

    phase = obj.status.phase if obj.status is not None else None
    if phase == "Unknown":
        raise FatalControlPlaneError(f"파드 상태를 알 수 없습니다: {namespace}/{name}")
    return phase not in ("Succeeded", "Failed")


def _delete_if_present(kube: Any, kind: str, name: str, namespace: str) -> None:
    try:
        kube.delete(kind, name, namespace)
    except NotFoundError:
        logger.debug("이미 없음: %s %s/%s", kind, namespace, name)


def create_resource(ctx: DeployContext, asset: Asset) -> None:
    kind, name, namespace = asset.kind, asset.name, ctx.namespace
    retries = 0
    while True:
        try:
            if kind == "pod":
                # 같은 이름의 끝난 파드가 남아 있으면 생성이 막힌다.
                _delete_if_present(ctx.kube, "pod", name, namespace)
            ctx.kube.create(kind, namespace, asset.resource.manifest)
            return
        except ControlPlaneError as e:
            if e.namespace_terminating:
                retries += 1
                if retries > CREATE_RETRY_LIMIT:
                    raise TransientControlPlaneError(
                        f"네임스페이스가 계속 종료 중입니다: {namespace}: {e.message}", status=e.status
                    ) from e
                logger.warning(
                    "네임스페이스 %s 가 종료 중입니다. %.0f초 후 재시도 (%d/%d)",
                    namespace,
                    CREATE_RETRY_DELAY,
                    retries,
                    CREATE_RETRY_LIMIT,
                )
                ctx.sleep(CREATE_RETRY_DELAY)
                continue
            if e.namespace_missing:
                ensure_namespace(ctx.kube, namespace)
                continue
            raise


def destroy_resource(ctx: DeployContext, kind: str, name: str, namespace: str) -> None:
    if kind == "pod":
        _delete_if_present(ctx.kube, "pod", name, namespace)
        return

    ctx.kube.delete(kind, name, namespace)

    if kind == "deployment":
        for rs in ctx.kube.list_names("replicaset", namespace, f"name={name}"):
            _delete_if_present(ctx.kube, "replicaset", rs, namespace)

    label = CASCADE_POD_LABELS.get(kind)
    if label:
        for pod in ctx.kube.list_names("pod", namespace, f"{label}={name}"):
            _delete_if_present(ctx.kube, "pod", pod, namespace)


def create_asset(ctx: DeployContext, asset: Asset, stage: str = "up") -> None:
    ctx.report(stage, asset.kind, asset.name, "start")
    if resource_exists(ctx.kube, asset.kind, asset.name, ctx.namespace):
        ctx.report(stage, asset.kind, asset.name, "already exists")
        return
    create_resource(ctx, asset)
    ctx.report(stage, asset.kind, asset.name, "created")


def destroy_asset(ctx: DeployContext, asset: Asset, stage: str = "down") -> None:
    ctx.report(stage, asset.kind, asset.name, "start")
    existed = resource_exists(ctx.kube, asset.kind, asset.name, ctx.namespace)
    # 파드는 존재 여부와 상관없이 삭제를 시도한다 (404 무시).
    if not existed and asset.kind != "pod":
        ctx.report(stage, asset.kind, asset.name, "not existed")
        return
    destroy_resource(ctx, asset.kind, asset.name, ctx.namespace)
    ctx.report(stage, asset.kind, asset.name, "destroyed")


def update_asset(ctx: DeployContext, asset: Asset, stage: str = "update") -> None:
    if asset.kind not in UPDATABLE_KINDS:
        ctx.report(stage, asset.kind, asset.name, "skipped")
        return
    ctx.report(stage, asset.kind, asset.name, "start")
    if not resource_exists(ctx.kube, asset.kind, asset.name, ctx.namespace):
        ctx.report(stage, asset.kind, asset.name, "not existed")
        return
    ctx.kube.replace(asset.kind, asset.name, ctx.namespace, asset.resource.manifest)
    ctx.report(stage, asset.kind, asset.name, "updated")


# -----------------------------
# pipelines
# -----------------------------
def _prepare(ctx: DeployContext) -> None:
    cfg = ctx.project.config
    if cfg.pulls:
        builds.pull_images(ctx.project, ctx.docker)
    run_scripts(ctx, cfg.init_up)
    builds.login(cfg.credentials, ctx.project.root_folder, ctx.docker)
    builds.run_builds(ctx.project, ctx.docker)
    ensure_namespace(ctx.kube, ctx.namespace)


def up(ctx: DeployContext) -> None:
    _prepare(ctx)
    for group in (ctx.project.resources, ctx.project.jobs, ctx.project.services):
        for asset in group:
            create_asset(ctx, asset, "up")
    run_scripts(ctx, ctx.project.config.finalize_up)


def update(ctx: DeployContext) -> None:
    _prepare(ctx)
    for asset in ctx.project.all_assets():
        update_asset(ctx, asset, "update")
    run_scripts(ctx, ctx.project.config.finalize_up)


def down(ctx: DeployContext) -> None:
    cfg = ctx.project.config
    run_scripts(ctx, cfg.init_down)
    for group in (ctx.project.services, ctx.project.jobs, ctx.project.resources):
        for asset in group:
            destroy_asset(ctx, asset, "down")
    if cfg.delete_namespace:
        delete_namespace(ctx)
    failed = builds.clean_builds(cfg.build, ctx.docker)
    if failed:
        logger.warning("삭제하지 못한 이미지: %s", ", ".join(failed))
    run_scripts(ctx, cfg.finalize_down)


def down_services(ctx: DeployContext) -> None:
    for asset in ctx.project.services:
        destroy_asset(ctx, asset, "down")


# -----------------------------
# auto update
# -----------------------------
def _registry_login(
    ctx: DeployContext,
    credential_name: Optional[str],
    credentials: Mapping[str, AutoUpdateCredential],
) -> tuple[Optional[str], Optional[str]]:
    if not credential_name:
        return None, None
    credential = credentials.get(credential_name)
    if credential is None:
        raise ProjectConfigError(f"auto_update_credentials 에 없는 credential 입니다: {credential_name}")
    password = read_password(ctx.project.root_folder, credential.password, credential.password_file)
    return credential.username, password


def auto_update_deployment(
    ctx: DeployContext,
    asset: Asset,
    info: AutoUpdate,
    credentials: Mapping[str, AutoUpdateCredential],
    version: Optional[str] = None,
) -> Dict[str, str]:
    """
    살아 있는 deployment 를 가져와 지정된 컨테이너의 이미지 태그를 바꾼다.
    바뀐 {컨테이너 이름: 새 이미지} 를 돌려준다.
    """
    name, namespace = asset.name, ctx.namespace
    ctx.report("autoupdate", "deployment", name, "start")
    if not resource_exists(ctx.kube, "deployment", name, namespace):
        ctx.report("autoupdate", "deployment", name, "not existed")
        return {}

    deployment = ctx.kube.get("deployment", name, namespace)
    containers = deployment.spec.template.spec.containers or []
    current = {c.name: c for c in containers}

    new_images: Dict[str, str] = {}
    for entry in info.containers:
        container = current.get(entry.name)
        if container is None:
            logger.warning("컨테이너를 찾을 수 없습니다: %s (deployment=%s)", entry.name, name)
            continue

        repository, current_tag = split_image(container.image)
        new_tag = version
        if not new_tag:
            if not ctx.registry.supports(container.image):
                logger.warning(
                    "태그 탐색을 지원하지 않는 이미지이므로 건너뜁니다: %s (%s)", entry.name, container.image
                )
                continue
            username, password = _registry_login(ctx, entry.credential, credentials)
            new_tag = ctx.registry.discover_latest_tag(container.image, username, password)

        if new_tag == current_tag:
            logger.info("이미 같은 태그 %r 입니다. 건너뜀: %s (%s)", new_tag, entry.name, container.image)
            continue
        new_images[entry.name] = f"{repository}:{new_tag}"

    if not new_images:
        ctx.report("autoupdate", "deployment", name, "skipped")
        return {}

    for container in containers:
        if container.name in new_images:
            container.image = new_images[container.name]
    ctx.kube.replace("deployment", name, namespace, deployment)

    for container_name, image in sorted(new_images.items()):
        logger.info("%s: %s -> %s", name, container_name, image)
    ctx.report("autoupdate", "deployment", name, "updated")
    return new_images


def auto_update(ctx: DeployContext, version: Optional[str] = None) -> Dict[str, Dict[str, str]]:
    if version:
        logger.info("지정된 태그로 autoupdate: %s", version)
    else:
        logger.info("레지스트리에서 최신 태그를 찾아 autoupdate 합니다.")

    cfg = ctx.project.config
    updates = {u.name: u for u in cfg.auto_updates}
    credentials = {c.name: c for c in cfg.auto_update_credentials}

    result: Dict[str, Dict[str, str]] = {}
    for asset in ctx.project.all_assets():
        if asset.kind != "deployment":
            continue
        info = updates.get(asset.name)
        if info is None:
            continue
        changed = auto_update_deployment(ctx, asset, info, credentials, version)
        if changed:
            result[asset.name] = changed
    return result
