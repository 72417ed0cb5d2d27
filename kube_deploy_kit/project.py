"""
project
-------

project.yml 디스크립터와 resources/jobs/services 매니페스트를 읽어
한 번의 명령 실행 동안 변하지 않는 Project 를 만든다.

로드 순서:
  1) 디스크립터 위치 결정 (파일 / 디렉토리의 project.yml / 없음)
  2) 오버라이드 변수만으로 디스크립터 렌더링 후 ProjectConfig 로 파싱
  3) 네임스페이스: CLI > project.yml > "default"
  4) root_folder 결정
  5) 변수 스코프 구성 (내장 < variables < 빌드 < 오버라이드)
  6) excludes 확장
  7) 각 glob 을 확장하여 렌더링 → 해석 → 네임스페이스 재작성

중간에 하나라도 실패하면 예외를 그대로 올리고, 부분적인 Project 는 만들지 않는다.
"""

from __future__ import annotations

import glob
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

import yaml

from .config import DEFAULT_DATA_DIR
from .errors import ProjectConfigError
from .logging_utils import get_logger
from .manifest import Asset, parse_asset
from .variables import build_var_name, builtin_variables, merge_scopes, render


logger = get_logger(__name__)

PROJECT_FILE = "project.yml"
DEFAULT_NAMESPACE = "default"


def translate_file_path(root_folder: str, path: str) -> str:
    """절대경로와 ~/ 경로는 그대로, 나머지는 root_folder 기준으로 바꾼다."""
    if path.startswith("/") or path.startswith("~/"):
        return path
    return os.path.join(root_folder, path)


def _expect(value: Any, typ: Any, where: str) -> Any:
    if not isinstance(value, typ):
        expected = "/".join(t.__name__ for t in typ) if isinstance(typ, tuple) else typ.__name__
        raise ProjectConfigError(
            f"project.yml 의 {where} 값 형식이 잘못되었습니다: {type(value).__name__} (기대: {expected})"
        )
    return value


def _str_list(raw: Mapping[str, Any], key: str) -> List[str]:
    value = raw.get(key)
    if value is None:
        return []
    _expect(value, list, key)
    return [str(_expect(v, (str, int, float), f"{key}[]")) for v in value]


def _str_or_none(raw: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    return str(_expect(value, (str, int, float), f"{where}.{key}"))


_TRUE = ("true", "yes", "on")
_FALSE = ("false", "no", "off", "")


def _bool(raw: Mapping[str, Any], key: str, where: str) -> bool:
    value = raw.get(key)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    text = str(_expect(value, str, f"{where}.{key}")).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ProjectConfigError(f"project.yml 의 {where}.{key} 값은 true 또는 false 여야 합니다: {value!r}")


def _reject_unknown(raw: Mapping[str, Any], cls: type, where: str) -> None:
    known = {f.metadata.get("key", f.name) for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ProjectConfigError(f"{where} 에 알 수 없는 키가 있습니다: {', '.join(unknown)}")


@dataclass
class ProjectBuild:
    name: str
    tag: str
    from_: str = field(default=".", metadata={"key": "from"})
    var_name: Optional[str] = None
    push: bool = False
    push_latest: bool = False
    auto_clean: bool = False

    @property
    def image(self) -> str:
        return f"{self.name}:{self.tag}"

    @property
    def latest_image(self) -> str:
        return f"{self.name}:latest"

    @property
    def variable(self) -> str:
        return build_var_name(self.name, self.var_name)

    @classmethod
    def from_dict(cls, raw: Any) -> "ProjectBuild":
        _expect(raw, dict, "build[]")
        _reject_unknown(raw, cls, "build[]")
        name = _str_or_none(raw, "name", "build[]")
        tag = _str_or_none(raw, "tag", "build[]")
        if not name or not tag:
            raise ProjectConfigError("build[] 항목에는 name 과 tag 가 필요합니다")
        return cls(
            name=name,
            tag=tag,
            from_=_str_or_none(raw, "from", "build[]") or ".",
            var_name=_str_or_none(raw, "var_name", "build[]"),
            push=_bool(raw, "push", "build[]"),
            push_latest=_bool(raw, "push_latest", "build[]"),
            auto_clean=_bool(raw, "auto_clean", "build[]"),
        )


@dataclass
class DockerCredential:
    host: str
    username: str
    password: Optional[str] = None
    password_file: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "DockerCredential":
        _expect(raw, dict, "credentials[]")
        _reject_unknown(raw, cls, "credentials[]")
        return cls(
            host=_str_or_none(raw, "host", "credentials[]") or "",
            username=_str_or_none(raw, "username", "credentials[]") or "",
            password=_str_or_none(raw, "password", "credentials[]"),
            password_file=_str_or_none(raw, "password_file", "credentials[]"),
        )


@dataclass
class AutoUpdateContainer:
    name: str
    credential: Optional[str] = None


@dataclass
class AutoUpdate:
    name: str
    containers: List[AutoUpdateContainer] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "AutoUpdate":
        _expect(raw, dict, "auto_updates[]")
        _reject_unknown(raw, cls, "auto_updates[]")
        containers: List[AutoUpdateContainer] = []
        for item in _expect(raw.get("containers") or [], list, "auto_updates[].containers"):
            _expect(item, dict, "auto_updates[].containers[]")
            _reject_unknown(item, AutoUpdateContainer, "auto_updates[].containers[]")
            containers.append(
                AutoUpdateContainer(
                    name=_str_or_none(item, "name", "auto_updates[].containers[]") or "",
                    credential=_str_or_none(item, "credential", "auto_updates[].containers[]"),
                )
            )
        return cls(name=_str_or_none(raw, "name", "auto_updates[]") or "", containers=containers)


@dataclass
class AutoUpdateCredential:
    name: str
    username: str = ""
    password: Optional[str] = None
    password_file: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "AutoUpdateCredential":
        _expect(raw, dict, "auto_update_credentials[]")
        _reject_unknown(raw, cls, "auto_update_credentials[]")
        return cls(
            name=_str_or_none(raw, "name", "auto_update_credentials[]") or "",
            username=_str_or_none(raw, "username", "auto_update_credentials[]") or "",
            password=_str_or_none(raw, "password", "auto_update_credentials[]"),
            password_file=_str_or_none(raw, "password_file", "auto_update_credentials[]"),
        )


def read_password(root_folder: str, password: Optional[str], password_file: Optional[str]) -> str:
    """password 가 있으면 그대로, 없으면 password_file 을 읽는다 (끝 개행 제거)."""
    if password:
        return password
    if not password_file:
        return ""
    path = os.path.expanduser(translate_file_path(root_folder, password_file))
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().rstrip("\r\n")
    except OSError as e:
        raise ProjectConfigError(f"password_file 을 읽을 수 없습니다: {path}: {e}") from e


@dataclass
class ProjectConfig:
    root_folder: str = ""
    namespace: str = ""
    variables: Dict[str, str] = field(default_factory=dict)
    build: List[ProjectBuild] = field(default_factory=list)
    credentials: List[DockerCredential] = field(default_factory=list)
    pulls: List[str] = field(default_factory=list)
    init_up: List[str] = field(default_factory=list)
    init_down: List[str] = field(default_factory=list)
    finalize_up: List[str] = field(default_factory=list)
    finalize_down: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    jobs: List[str] = field(default_factory=list)
    services: List[str] = field(default_factory=list)
    excludes: List[str] = field(default_factory=list)
    delete_namespace: bool = False
    auto_updates: List[AutoUpdate] = field(default_factory=list)
    auto_update_credentials: List[AutoUpdateCredential] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "ProjectConfig":
        if raw is None:
            return cls()
        _expect(raw, dict, "(최상위)")
        _reject_unknown(raw, cls, "project.yml")

        variables = raw.get("variables") or {}
        _expect(variables, dict, "variables")

        return cls(
            root_folder=_str_or_none(raw, "root_folder", "project") or "",
            namespace=_str_or_none(raw, "namespace", "project") or "",
            variables={str(k): "" if v is None else str(v) for k, v in variables.items()},
            build=[ProjectBuild.from_dict(b) for b in _expect(raw.get("build") or [], list, "build")],
            credentials=[
                DockerCredential.from_dict(c) for c in _expect(raw.get("credentials") or [], list, "credentials")
            ],
            pulls=_str_list(raw, "pulls"),
            init_up=_str_list(raw, "init_up"),
            init_down=_str_list(raw, "init_down"),
            finalize_up=_str_list(raw, "finalize_up"),
            finalize_down=_str_list(raw, "finalize_down"),
            resources=_str_list(raw, "resources"),
            jobs=_str_list(raw, "jobs"),
            services=_str_list(raw, "services"),
            excludes=_str_list(raw, "excludes"),
            delete_namespace=_bool(raw, "delete_namespace", "project"),
            auto_updates=[
                AutoUpdate.from_dict(a) for a in _expect(raw.get("auto_updates") or [], list, "auto_updates")
            ],
            auto_update_credentials=[
                AutoUpdateCredential.from_dict(c)
                for c in _expect(raw.get("auto_update_credentials") or [], list, "auto_update_credentials")
            ],
        )


@dataclass(frozen=True)
class Project:
    config: ProjectConfig
    project_folder: str
    variables: Dict[str, str]
    resources: Tuple[Asset, ...] = ()
    jobs: Tuple[Asset, ...] = ()
    services: Tuple[Asset, ...] = ()

    @property
    def namespace(self) -> str:
        return self.config.namespace

    @property
    def root_folder(self) -> str:
        return self.config.root_folder

    def all_assets(self) -> Iterator[Asset]:
        yield from self.resources
        yield from self.jobs
        yield from self.services

    def debug_dump(self) -> Iterator[Tuple[Asset, str]]:
        """렌더링이 끝난 매니페스트 원문을 (asset, text) 로 돌려준다."""
        for asset in self.all_assets():
            yield asset, asset.raw.decode("utf-8")


def _locate_descriptor(path: str) -> Tuple[Optional[str], str]:
    """(디스크립터 파일 경로 또는 None, 프로젝트 폴더)"""
    if not os.path.exists(path):
        raise ProjectConfigError(f"프로젝트 경로가 존재하지 않습니다: {path}")
    if os.path.isdir(path):
        candidate = os.path.join(path, PROJECT_FILE)
        if os.path.isfile(candidate):
            return candidate, path
        return None, path
    return path, os.path.dirname(path)


def _read_config(descriptor: Optional[str], overrides: Mapping[str, str]) -> ProjectConfig:
    if descriptor is None:
        logger.debug("project.yml 이 없어 기본 설정을 사용합니다.")
        return ProjectConfig()
    with open(descriptor, "r", encoding="utf-8") as f:
        text = f.read()
    # 디스크립터 자신의 variables 는 아직 없으므로 오버라이드만으로 렌더링한다.
    rendered = render(text, overrides, descriptor)
    try:
        # 스칼라는 모두 원문 문자열로 읽는다.
        raw = yaml.load(rendered, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        raise ProjectConfigError(f"project.yml 파싱 실패: {descriptor}: {e}") from e
    return ProjectConfig.from_dict(raw)


def _expand(root_folder: str, pattern: str) -> List[str]:
    return sorted(glob.glob(os.path.expanduser(translate_file_path(root_folder, pattern))))


def _read_assets(
    root_folder: str,
    patterns: List[str],
    default_pattern: str,
    excludes: Set[str],
    scope: Mapping[str, str],
    namespace: str,
) -> Tuple[Asset, ...]:
    assets: List[Asset] = []
    for pattern in patterns or [default_pattern]:
        for path in _expand(root_folder, pattern):
            if path in excludes or os.path.isdir(path):
                continue
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
            rendered = render(text, scope, path)
            asset = parse_asset(path, rendered.encode("utf-8"))
            asset.set_namespace(namespace)
            logger.debug("매니페스트 로드: %s %s (%s)", asset.kind, asset.name, path)
            assets.append(asset)
    return tuple(assets)


def load_project(
    path: str,
    overrides: Optional[Mapping[str, str]] = None,
    namespace: Optional[str] = None,
    data_dir: str = DEFAULT_DATA_DIR,
) -> Project:
    overrides = dict(overrides or {})
    descriptor, project_folder = _locate_descriptor(path)
    cfg = _read_config(descriptor, overrides)

    cfg.namespace = namespace or cfg.namespace or DEFAULT_NAMESPACE
    if cfg.root_folder:
        cfg.root_folder = translate_file_path(project_folder, cfg.root_folder)
    else:
        cfg.root_folder = project_folder

    build_vars = {b.variable: b.image for b in cfg.build}
    scope = merge_scopes(
        builtin_variables(cfg.namespace, cfg.root_folder, data_dir),
        cfg.variables,
        build_vars,
        overrides,
    )

    excludes: Set[str] = set()
    for pattern in cfg.excludes:
        excludes.update(_expand(cfg.root_folder, pattern))

    project = Project(
        config=cfg,
        project_folder=project_folder,
        variables=scope,
        resources=_read_assets(cfg.root_folder, cfg.resources, "resources/*", excludes, scope, cfg.namespace),
        jobs=_read_assets(cfg.root_folder, cfg.jobs, "jobs/*", excludes, scope, cfg.namespace),
        services=_read_assets(cfg.root_folder, cfg.services, "services/*", excludes, scope, cfg.namespace),
    )
    logger.info(
        "프로젝트 로드 완료: namespace=%s, resources=%d, jobs=%d, services=%d",
        cfg.namespace,
        len(project.resources),
        len(project.jobs),
        len(project.services),
    )
    return project
