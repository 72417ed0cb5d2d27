from __future__ import annotations

import base64

import httpx
import pytest

from kube_deploy_kit.errors import RegistryError
from kube_deploy_kit.registry import discover_latest_tag, select_latest_tag, split_image, supports


LISTING = {
    "manifest": {
        "sha256:aaa": {"tag": ["v1"], "timeCreatedMs": "100"},
        "sha256:bbb": {"tag": ["v2", "latest"], "timeCreatedMs": "200"},
    }
}


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "image, expected",
    [
        ("gcr.io/p/app:v1", ("gcr.io/p/app", "v1")),
        ("gcr.io/p/app", ("gcr.io/p/app", "")),
        ("localhost:5000/app", ("localhost:5000/app", "")),
        ("localhost:5000/app:2", ("localhost:5000/app", "2")),
        ("gcr.io/p/app:v1@sha256:abc", ("gcr.io/p/app", "v1")),
    ],
)
def test_split_image(image: str, expected: tuple) -> None:
    assert split_image(image) == expected


def test_supported_hosts() -> None:
    assert supports("gcr.io/p/app:v1")
    assert supports("asia.gcr.io/p/app:v1")
    assert supports("us-central1-docker.pkg.dev/p/repo/app:v1")
    assert not supports("docker.io/library/nginx:1.25")
    assert not supports("nginx:1.25")


def test_select_latest_tag_ignores_latest() -> None:
    assert select_latest_tag(LISTING["manifest"]) == "v2"


def test_select_latest_tag_skips_manifests_with_only_latest() -> None:
    manifests = {
        "sha256:aaa": {"tag": ["v1"], "timeCreatedMs": "100"},
        "sha256:bbb": {"tag": ["latest"], "timeCreatedMs": "300"},
    }

    assert select_latest_tag(manifests) == "v1"


def test_select_latest_tag_last_tag_in_manifest_wins() -> None:
    assert select_latest_tag({"sha256:a": {"tag": ["v3", "v3.0.1"], "timeCreatedMs": "5"}}) == "v3.0.1"


def test_discover_latest_tag_queries_tag_list_with_basic_auth() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=LISTING)

    tag = discover_latest_tag("gcr.io/p/app:v1", "_json_key", "pw", http_client=_client(handler))

    assert tag == "v2"
    assert str(seen[0].url) == "https://gcr.io/v2/p/app/tags/list"
    expected = "Basic " + base64.b64encode(b"_json_key:pw").decode("ascii")
    assert seen[0].headers["Authorization"] == expected


def test_discover_latest_tag_anonymous() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=LISTING)

    discover_latest_tag("us-docker.pkg.dev/p/repo/app", http_client=_client(handler))

    assert str(seen[0].url) == "https://us-docker.pkg.dev/v2/p/repo/app/tags/list"
    assert "Authorization" not in seen[0].headers


def test_discover_latest_tag_unsupported_host() -> None:
    with pytest.raises(RegistryError):
        discover_latest_tag("nginx:1.25", http_client=_client(lambda r: httpx.Response(200, json=LISTING)))


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, json={"errors": []}),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json={"tags": ["v1"]}),
        httpx.Response(200, json={"manifest": {"sha256:a": {"tag": ["latest"], "timeCreatedMs": "1"}}}),
    ],
)
def test_discover_latest_tag_failures(response: httpx.Response) -> None:
    with pytest.raises(RegistryError):
        discover_latest_tag("gcr.io/p/app:v1", http_client=_client(lambda r: response))
