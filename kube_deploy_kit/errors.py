"""
errors
------

kube_deploy_kit 전반에서 사용하는 예외 계층.
모든 예외는 RuntimeError 를 상속하므로, CLI 에서는 한 번에 잡아서
"[ERROR] ..." 형태로 출력하고 종료한다.
"""

from __future__ import annotations

from typing import Optional


class DeployError(RuntimeError):
    """kube_deploy_kit 예외의 공통 부모."""


class UnsupportedResourceKind(DeployError):
    def __init__(self, kind: str, source_path: Optional[str] = None) -> None:
        self.kind = kind
        self.source_path = source_path
        where = f" ({source_path})" if source_path else ""
        super().__init__(f"지원하지 않는 리소스 종류입니다: {kind!r}{where}")


class ManifestDecodeError(DeployError):
    def __init__(self, source_path: str, reason: str) -> None:
        self.source_path = source_path
        self.reason = reason
        super().__init__(f"매니페스트를 해석할 수 없습니다: {source_path!r}: {reason}")


class TemplateRenderError(DeployError):
    def __init__(self, template_name: str, reason: str) -> None:
        self.template_name = template_name
        self.reason = reason
        super().__init__(f"템플릿 렌더링 실패: {template_name!r}: {reason}")


class ProjectConfigError(DeployError):
    """프로젝트 디스크립터(project.yml) 가 없거나 형식이 잘못된 경우."""


class ControlPlaneError(DeployError):
    """
    Kubernetes API 호출 실패.

    status 는 HTTP 상태 코드(알 수 없으면 None), message 는 API 서버가
    돌려준 Status.message (없으면 reason) 이다.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        self.message = message
        super().__init__(message if status is None else f"{message} (status={status})")

    @property
    def namespace_terminating(self) -> bool:
        return (
            "unable to create new content in namespace" in self.message
            and "being terminated" in self.message
        )

    @property
    def namespace_missing(self) -> bool:
        return "namespaces" in self.message and "not found" in self.message


class NotFoundError(ControlPlaneError):
    """404. 존재 여부 확인/삭제에서는 실패가 아니라 '없음' 으로 취급한다."""


class TransientControlPlaneError(ControlPlaneError):
    """재시도 한도를 넘긴 일시적 오류(네임스페이스 종료 중 등)."""


class FatalControlPlaneError(ControlPlaneError):
    """그 외의 API 오류. 즉시 전체 작업을 중단한다."""


class BuildBackendError(DeployError):
    """docker build/push/tag/rmi/login/pull 실패."""


class ScriptError(DeployError):
    def __init__(self, script: str, detail: str) -> None:
        self.script = script
        super().__init__(f"스크립트 실행 실패: {script!r}: {detail}")


class WatchStreamError(DeployError):
    """대기/로그 추적 중 리소스 삭제, 알 수 없는 phase, 이벤트 해석 실패."""


class WaitTimeoutError(DeployError):
    """Job 완료 대기 중 제한 시간 초과."""


class RegistryError(DeployError):
    """레지스트리 태그 목록 조회/해석 실패."""
