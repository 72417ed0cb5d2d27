"""
variables
---------

변수 스코프 병합과 {{ }} 템플릿 렌더링.

우선순위(낮음 → 높음):
  내장 변수 < project.yml variables < 빌드 변수 < 호출자(-V) 오버라이드

정의되지 않은 변수를 참조하면 빈 문자열로 치환하지 않고 항상 실패한다.
"""

from __future__ import annotations

import os
import re
from typing import Dict, Mapping, Optional

import jinja2

from .errors import TemplateRenderError


_INVALID_VAR_CHARS = re.compile(r"[^a-zA-Z0-9_]")
_REPEATED_UNDERSCORES = re.compile(r"_+")


def make_path(*segments: str) -> str:
    if segments and segments[0].startswith("/"):
        return os.path.join(*segments)
    return os.path.join(os.getcwd(), *segments)


_env = jinja2.Environment(
    loader=jinja2.BaseLoader(),
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)
_env.globals["make_path"] = make_path


def builtin_variables(namespace: str, root_folder: str, data_dir: str) -> Dict[str, str]:
    return {
        "app_var_namespace": namespace,
        "app_var_home": os.getenv("HOME", ""),
        "app_var_data_dir": data_dir,
        "app_var_cwd": root_folder,
    }


def build_var_name(image_name: str, var_name: Optional[str] = None) -> str:
    """
    빌드 결과 태그를 담을 변수 이름.
    var_name 이 없으면 "build_var_" + 영숫자/_ 이외 문자를 _ 로 바꾼 이름 (연속 _ 는 하나로).
    """
    if var_name:
        return var_name
    sanitized = _REPEATED_UNDERSCORES.sub("_", _INVALID_VAR_CHARS.sub("_", image_name))
    return "build_var_" + sanitized


def merge_scopes(*scopes: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """앞에서부터 낮은 우선순위. None 은 건너뛴다."""
    merged: Dict[str, str] = {}
    for scope in scopes:
        if scope:
            merged.update(scope)
    return merged


def render(template: str, scope: Mapping[str, str], name: str = "<template>") -> str:
    try:
        return _env.from_string(template).render(dict(scope))
    except jinja2.UndefinedError as e:
        raise TemplateRenderError(name, f"정의되지 않은 변수: {e.message}") from e
    except jinja2.TemplateSyntaxError as e:
        raise TemplateRenderError(name, f"템플릿 문법 오류(line {e.lineno}): {e.message}") from e
