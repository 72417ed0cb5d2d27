"""
docker_backend
--------------

docker CLI 를 감싸는 빌드 백엔드.
build / push / tag / rmi / login / pull 을 성공 또는 BuildBackendError 로만 다룬다.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from .errors import BuildBackendError
from .logging_utils import get_logger
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)

REMOVE_ATTEMPTS = 5
REMOVE_RETRY_DELAY = 2.0


def _run(
    cmd: list[str],
    *,
    timeout: float = 1800.0,
    input_text: Optional[str] = None,
    stream_output: bool = False,
) -> RunResult:
    """
    run_command 래퍼. 실패는 BuildBackendError 로 바꿔서 올린다.
    """
    try:
        return run_command(
            cmd,
            timeout=timeout,
            input_text=input_text,
            stream_output=stream_output,
        )
    except RuntimeError as e:
        raise BuildBackendError(str(e)) from e


def build_image(context_dir: str, tag: str) -> None:
    logger.info("이미지 빌드: %s (context=%s)", tag, context_dir)
    _run(["docker", "build", "-t", tag, context_dir], stream_output=True)


def push_image(tag: str) -> None:
    logger.info("이미지 푸시: %s", tag)
    _run(["docker", "push", tag], stream_output=True)


def tag_image(source: str, target: str) -> None:
    _run(["docker", "tag", source, target])


def pull_image(image: str) -> None:
    logger.info("이미지 pull: %s", image)
    _run(["docker", "pull", image], stream_output=True)


def login(host: str, username: str, password: str) -> None:
    logger.info("레지스트리 로그인: %s (user=%s)", host, username)
    cmd = ["docker", "login", "-u", username, "--password-stdin"]
    if host:
        cmd.append(host)
    _run(cmd, input_text=password)


def remove_image(
    tag: str,
    *,
    attempts: int = REMOVE_ATTEMPTS,
    delay: float = REMOVE_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    docker rmi. 방금 정지된 컨테이너가 아직 이미지를 잡고 있으면
    "must force" 오류가 나므로, 일정 횟수까지 고정 간격으로 재시도한다.
    """
    logger.info("이미지 삭제: %s", tag)
    for attempt in range(1, attempts + 1):
        try:
            _run(["docker", "rmi", tag])
            return
        except BuildBackendError as e:
            if "must force" not in str(e) or attempt == attempts:
                raise
            logger.warning("이미지가 아직 사용 중입니다. %.1f초 후 재시도 (%d/%d): %s", delay, attempt, attempts, tag)
            sleep(delay)
