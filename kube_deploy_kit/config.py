from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, List

from dotenv import load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.kube"]

DEFAULT_DATA_DIR = "/mnt/sda1/var/data"


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _default_kubeconfig() -> str:
    return os.path.join(os.path.expanduser("~"), ".kube", "config")


@dataclass
class AppConfig:
    # 클러스터 접속
    kubeconfig: str
    context: Optional[str] = None

    # 비어 있으면 project.yml 의 namespace, 그것도 없으면 "default"
    namespace: Optional[str] = None

    # 대기/추적
    timeout: float = 900.0
    job_poll_interval: float = 60.0
    log_grace_seconds: float = 2.0

    # app_var_data_dir 내장 변수 값
    data_dir: str = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls) -> "AppConfig":
        invalid: List[str] = []

        def num(name: str, default: float) -> float:
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = float(raw)
            except ValueError:
                invalid.append(name)
                return default
            if value <= 0:
                invalid.append(name)
                return default
            return value

        cfg = cls(
            kubeconfig=os.getenv("KUBE_DEPLOY_KUBECONFIG") or _default_kubeconfig(),
            context=os.getenv("KUBE_DEPLOY_CONTEXT") or None,
            namespace=os.getenv("KUBE_DEPLOY_NAMESPACE") or None,
            timeout=num("KUBE_DEPLOY_TIMEOUT", 900.0),
            job_poll_interval=num("KUBE_DEPLOY_JOB_POLL_INTERVAL", 60.0),
            log_grace_seconds=num("KUBE_DEPLOY_LOG_GRACE", 2.0),
            data_dir=os.getenv("KUBE_DEPLOY_DATA_DIR") or DEFAULT_DATA_DIR,
        )

        if invalid:
            raise ValueError(
                "숫자(양수)여야 하는 환경변수 값이 잘못되었습니다: " + ", ".join(sorted(set(invalid)))
            )

        return cfg
