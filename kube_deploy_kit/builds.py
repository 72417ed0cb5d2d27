"""
builds
------

project.yml 의 build / credentials / pulls 를 처리하는 빌드 파이프라인.

build 는 선언 순서대로 하나씩 실행한다.
teardown 시 auto_clean 이미지 삭제는 실패해도 로그만 남기고 계속 진행한다.
"""

from __future__ import annotations

import os
from typing import Any, Iterable, List, Set

from . import docker_backend
from .errors import BuildBackendError
from .logging_utils import get_logger
from .project import DockerCredential, Project, ProjectBuild, read_password, translate_file_path
from .registry import split_image


logger = get_logger(__name__)


def build_image(build: ProjectBuild, root_folder: str, docker: Any = docker_backend) -> None:
    """
    build.from 을 컨텍스트로 name:tag 이미지를 만들고,
    push=True 면 푸시, push_latest=True 면 name:latest 도 태그해서 푸시한다.
    """
    context_dir = os.path.expanduser(translate_file_path(root_folder, build.from_))
    docker.build_image(context_dir, build.image)
    if not build.push:
        return
    docker.push_image(build.image)
    if build.push_latest:
        docker.tag_image(build.image, build.latest_image)
        docker.push_image(build.latest_image)


def run_builds(project: Project, docker: Any = docker_backend) -> None:
    for build in project.config.build:
        build_image(build, project.root_folder, docker)


def clean_builds(builds: Iterable[ProjectBuild], docker: Any = docker_backend) -> List[str]:
    """
    auto_clean 이미지를 지운다. 실패한 태그 목록을 돌려준다 (예외는 올리지 않음).
    """
    failed: List[str] = []
    for build in builds:
        if not build.auto_clean:
            continue
        targets = [build.image]
        if build.push and build.push_latest:
            targets.append(build.latest_image)
        for tag in targets:
            try:
                docker.remove_image(tag)
            except BuildBackendError as e:
                logger.error("이미지 삭제 실패 (무시하고 계속 진행): %s: %s", tag, e)
                failed.append(tag)
    return failed


def login(credentials: Iterable[DockerCredential], root_folder: str, docker: Any = docker_backend) -> None:
    for credential in credentials:
        password = read_password(root_folder, credential.password, credential.password_file)
        docker.login(credential.host, credential.username, password)


def pull_images(project: Project, docker: Any = docker_backend) -> List[str]:
    wanted: Set[str] = set(project.config.pulls)
    pulled: List[str] = []
    for asset in project.all_assets():
        for image in asset.resource.images():
            if split_image(image)[0] in wanted:
                docker.pull_image(image)
                pulled.append(image)
    return pulled
