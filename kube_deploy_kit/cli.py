import os
import sys
from typing import Callable, Dict, Optional, Tuple

import click

from . import __version__
from .config import AppConfig, load_env_files
from .errors import DeployError, WaitTimeoutError
from .job_waiter import JobWaiter
from .kube import KubeClient
from .log_follower import LogFollower
from .logging_utils import get_logger, setup_logging
from .orchestrator import DeployContext, auto_update, down, down_services, up, update
from .project import DEFAULT_NAMESPACE, Project, load_project


logger = get_logger(__name__)

EXIT_FAILED = 1
EXIT_TIMEOUT = 2


def _parse_variables(values: Tuple[str, ...]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"KEY=VALUE 형식이어야 합니다: {item!r}", param_hint="-V/--variable")
        result[key.strip()] = value
    return result


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다.",
)
@click.option("--kubeconfig", type=str, default=None, help="kubeconfig 경로 (기본: KUBE_DEPLOY_KUBECONFIG 또는 ~/.kube/config)")
@click.option("--context", "kube_context", type=str, default=None, help="kubeconfig context 이름")
@click.option("-n", "--namespace", type=str, default=None, help="project.yml 의 namespace 를 덮어씁니다.")
@click.option("--timeout", type=float, default=None, help="wait 명령의 제한 시간(초)")
@click.option(
    "-V",
    "--variable",
    "variables",
    multiple=True,
    help="템플릿 변수 덮어쓰기 (KEY=VALUE, 여러 번 지정 가능)",
)
@click.pass_context
def main(
    ctx: click.Context,
    chdir: str,
    verbose: int,
    kubeconfig: Optional[str],
    kube_context: Optional[str],
    namespace: Optional[str],
    timeout: Optional[float],
    variables: Tuple[str, ...],
) -> None:
    """project.yml 기반 Kubernetes 배포 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["overrides"] = _parse_variables(variables)
    ctx.obj["cli"] = {
        "kubeconfig": kubeconfig,
        "context": kube_context,
        "namespace": namespace,
        "timeout": timeout,
    }


def _load_config_from_ctx(ctx: click.Context) -> AppConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = AppConfig.from_env()
    # CLI 플래그가 환경변수보다 우선
    for key, value in ctx.obj["cli"].items():
        if value is not None:
            setattr(cfg, key, value)
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _resolve_path(ctx: click.Context, path: str) -> str:
    return os.path.normpath(os.path.join(ctx.obj["chdir"], path))


def _load(ctx: click.Context, path: str) -> Tuple[AppConfig, Project]:
    try:
        cfg = _load_config_from_ctx(ctx)
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)
    try:
        project = load_project(
            _resolve_path(ctx, path),
            overrides=ctx.obj["overrides"],
            namespace=cfg.namespace,
            data_dir=cfg.data_dir,
        )
    except DeployError as e:
        click.echo(f"[ERROR] 프로젝트 로드 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)
    return cfg, project


def _kube_client(cfg: AppConfig) -> KubeClient:
    try:
        return KubeClient.from_kubeconfig(cfg.kubeconfig, cfg.context)
    except DeployError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(EXIT_FAILED)


def _run_pipeline(ctx: click.Context, path: str, label: str, pipeline: Callable[[DeployContext], object]) -> None:
    cfg, project = _load(ctx, path)
    deploy_ctx = DeployContext(project=project, kube=_kube_client(cfg))
    try:
        pipeline(deploy_ctx)
    except DeployError as e:
        logger.debug("%s 실패", label, exc_info=True)
        click.echo(f"[ERROR] {label} 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"{label} 완료 (namespace={project.namespace})")


project_path = click.argument("path", required=False, default=".", type=click.Path(exists=False))


@main.command(name="up")
@project_path
@click.pass_context
def up_cmd(ctx: click.Context, path: str) -> None:
    """이미지를 빌드하고 리소스 → Job → 서비스 순서로 생성"""
    _run_pipeline(ctx, path, "up", up)


@main.command(name="down")
@project_path
@click.pass_context
def down_cmd(ctx: click.Context, path: str) -> None:
    """서비스 → Job → 리소스 순서로 삭제"""
    _run_pipeline(ctx, path, "down", down)


@main.command(name="down-services")
@project_path
@click.pass_context
def down_services_cmd(ctx: click.Context, path: str) -> None:
    """서비스만 삭제"""
    _run_pipeline(ctx, path, "down-services", down_services)


@main.command(name="update")
@project_path
@click.pass_context
def update_cmd(ctx: click.Context, path: str) -> None:
    """pod/deployment/configmap/secret 을 새 매니페스트로 교체"""
    _run_pipeline(ctx, path, "update", update)


@main.command(name="autoupdate")
@project_path
@click.argument("version", required=False, default=None)
@click.pass_context
def autoupdate_cmd(ctx: click.Context, path: str, version: Optional[str]) -> None:
    """
    auto_updates 에 등록된 deployment 의 이미지를 새 태그로 교체.
    VERSION 을 생략하면 레지스트리에서 가장 최근 태그를 찾는다.
    """
    _run_pipeline(ctx, path, "autoupdate", lambda deploy_ctx: auto_update(deploy_ctx, version))


@main.command(name="render")
@project_path
@click.pass_context
def render_cmd(ctx: click.Context, path: str) -> None:
    """렌더링된 매니페스트를 출력 (클러스터에는 접속하지 않음)"""
    _, project = _load(ctx, path)
    for asset, text in project.debug_dump():
        click.echo(f"# {asset.source_path}")
        click.echo("---")
        click.echo(text.rstrip("\n"))


@main.command(name="wait")
@click.argument("job")
@click.pass_context
def wait_cmd(ctx: click.Context, job: str) -> None:
    """Job 이 끝날 때까지 대기. 실패하면 exit 1, 시간 초과면 exit 2"""
    try:
        cfg = _load_config_from_ctx(ctx)
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)

    waiter = JobWaiter(
        _kube_client(cfg),
        job,
        cfg.namespace or DEFAULT_NAMESPACE,
        timeout=cfg.timeout,
        poll_interval=cfg.job_poll_interval,
    )
    try:
        outcome = waiter.wait()
    except WaitTimeoutError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(EXIT_TIMEOUT)
    except DeployError as e:
        click.echo(f"[ERROR] Job 대기 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)

    if not outcome.succeeded:
        click.echo(f"[ERROR] Job 실패: {job}: {outcome.message}", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Job 완료: {job}")


@main.command(name="log")
@click.argument("pod")
@click.option("-c", "--container", type=str, default=None, help="컨테이너 이름 (기본: 첫 번째 컨테이너)")
@click.pass_context
def log_cmd(ctx: click.Context, pod: str, container: Optional[str]) -> None:
    """파드 로그를 따라가고, 파드가 Succeeded 가 아니면 exit 1"""
    try:
        cfg = _load_config_from_ctx(ctx)
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)

    follower = LogFollower(
        _kube_client(cfg),
        pod,
        cfg.namespace or DEFAULT_NAMESPACE,
        sys.stdout.buffer,
        container=container,
        grace=cfg.log_grace_seconds,
    )
    try:
        phase = follower.follow()
    except DeployError as e:
        click.echo(f"[ERROR] 로그 추적 실패: {e}", err=True)
        sys.exit(EXIT_FAILED)

    if phase != "Succeeded":
        click.echo(f"[ERROR] 파드 종료 상태: {phase}", err=True)
        sys.exit(EXIT_FAILED)


@main.command(name="version")
def version_cmd() -> None:
    """버전 출력"""
    click.echo(__version__)
