"""
registry
--------

autoupdate 용 최신 태그 탐색.

Docker Registry v2 tags/list 응답 중 GCR 확장 필드(manifest)를 사용한다.
  {"manifest": {"sha256:...": {"tag": ["v2", "latest"], "timeCreatedMs": "200"}}}
gcr.io 와 Artifact Registry(*-docker.pkg.dev) 가 이 형식을 돌려준다.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple

import httpx

from .errors import RegistryError
from .logging_utils import get_logger


logger = get_logger(__name__)

LATEST_TAG = "latest"


def split_image(image: str) -> Tuple[str, str]:
    """
    "repo:tag" → ("repo", "tag"). 태그가 없으면 tag 는 "".
    다이제스트(@sha256:...)는 버리고, 레지스트리 포트의 ':' 는 태그로 보지 않는다.
    """
    image = image.split("@", 1)[0]
    head, sep, tail = image.rpartition(":")
    if sep and "/" not in tail:
        return head, tail
    return image, ""


def _host(repository: str) -> str:
    first, sep, _ = repository.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return ""


def supports(image: str) -> bool:
    host = _host(split_image(image)[0])
    return host == "gcr.io" or host.endswith(".gcr.io") or host.endswith("-docker.pkg.dev")


def select_latest_tag(manifests: Mapping[str, Any]) -> str:
    """
    timeCreatedMs 가 가장 큰 매니페스트의 태그를 고른다 ("latest" 제외).
    한 매니페스트에 태그가 여러 개면 마지막 태그가 이긴다.
    "latest" 외 태그가 없는 매니페스트는 후보에서 뺀다.
    """
    latest_tag = ""
    latest_ts = -1
    for digest, entry in manifests.items():
        if not isinstance(entry, Mapping):
            raise RegistryError(f"매니페스트 항목 형식이 잘못되었습니다: {digest}")
        try:
            ts = int(entry.get("timeCreatedMs", 0))
        except (TypeError, ValueError) as e:
            raise RegistryError(f"timeCreatedMs 를 해석할 수 없습니다: {digest}: {entry.get('timeCreatedMs')!r}") from e
        tags = [t for t in entry.get("tag") or [] if t != LATEST_TAG]
        if not tags or ts <= latest_ts:
            continue
        latest_ts = ts
        latest_tag = tags[-1]
    return latest_tag


def discover_latest_tag(
    image: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    *,
    http_client: Optional[httpx.Client] = None,
    timeout: float = 30.0,
) -> str:
    repository, _ = split_image(image)
    if not supports(image):
        raise RegistryError(f"태그 탐색을 지원하지 않는 레지스트리입니다: {image}")

    host = _host(repository)
    path = repository[len(host) + 1:]
    url = f"https://{host}/v2/{path}/tags/list"
    auth = (username, password or "") if username else None

    logger.info("최신 태그 조회: %s", url)
    own_client = http_client is None
    http = http_client or httpx.Client(timeout=timeout)
    try:
        response = http.get(url, auth=auth)
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPError as e:
        raise RegistryError(f"태그 목록 조회 실패: {url}: {e}") from e
    except ValueError as e:
        raise RegistryError(f"태그 목록 응답을 해석할 수 없습니다: {url}: {e}") from e
    finally:
        if own_client:
            http.close()

    manifests = payload.get("manifest") if isinstance(payload, dict) else None
    if not isinstance(manifests, dict):
        raise RegistryError(f"태그 목록 응답에 manifest 가 없습니다: {url}")

    tag = select_latest_tag(manifests)
    if not tag:
        raise RegistryError(f"사용할 수 있는 태그가 없습니다: {image}")
    logger.debug("최신 태그: %s -> %s", repository, tag)
    return tag
