"""
kube_deploy_kit
---------------

project.yml 하나로 Kubernetes 리소스/Job/서비스를 배포하는 CLI 패키지.
매니페스트 템플릿 렌더링, docker 이미지 빌드, 순서가 보장된 생성/삭제,
Job 완료 대기, 파드 로그 추적, 이미지 태그 자동 업데이트를 지원한다.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "orchestrator",
    "project",
]
