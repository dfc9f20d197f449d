"""Async functional analysis operations."""

import asyncio
import json
import logging
from typing import Optional

import yaml

from .config import Settings
from .core.registry_client import RegistryClient
from .core.types import ImageSource
from .exceptions import UnsupportedFormatError
from .models import AnalyzeOptions, Summary
from .pull import extracted_image
from .utils.inspect import analyze

logger = logging.getLogger(__name__)

FORMATS = ("json", "yaml")
CONTENT_TYPES = {"json": "application/json", "yaml": "application/x-yaml"}


async def _analyze_with(
    image_ref: str, settings: Settings, options: AnalyzeOptions, source: ImageSource
) -> Summary:
    async with extracted_image(
        image_ref,
        source,
        base_dir=settings.analyze.unpack_dir,
        options=settings.analyze.unpack_options(),
        timeout=settings.analyze.pull_timeout,
    ) as (root, image_config):
        return await asyncio.get_event_loop().run_in_executor(
            None, analyze, root, image_config, options
        )


async def analyze_image(
    image_ref: str,
    settings: Optional[Settings] = None,
    options: Optional[AnalyzeOptions] = None,
    source: Optional[ImageSource] = None,
) -> Summary:
    """이미지를 가져와 파일 시스템을 분석합니다.

    레이어를 임시 디렉토리에 풀어 OS 정보, Python 패키지, 주요 도구 설치
    여부를 확인한 뒤 임시 디렉토리를 삭제합니다.

    Args:
        image_ref: 이미지 참조 (예: "python:3.12-slim")
        settings: 애플리케이션 설정 (기본값: 기본 설정)
        options: 실행할 분석 항목 (기본값: 설정의 analyze 섹션)
        source: 이미지 소스 (기본값: 설정으로 만든 RegistryClient)

    Returns:
        Summary: 분석 결과

    Raises:
        ResolutionError: 이미지를 찾지 못한 경우
        ApplyAbortedError: 레이어 적용에 실패한 경우
        PullTimeoutError: 제한 시간을 넘긴 경우

    Examples:
        summary = await analyze_image("python:3.12-slim")
        print(summary.python_packages)
    """
    settings = settings or Settings()
    options = options or settings.analyze.options()
    logger.info("Analyzing %s", image_ref, extra={"image": image_ref})

    if source is not None:
        summary = await _analyze_with(image_ref, settings, options, source)
    else:
        async with RegistryClient(settings.registry.registry_config(image_ref)) as client:
            summary = await _analyze_with(image_ref, settings, options, client)

    logger.info(
        "Analysis of %s finished: %d python packages",
        image_ref,
        len(summary.python_packages),
        extra={"image": image_ref},
    )
    return summary


def render_summary(summary: Summary, fmt: str = "json") -> str:
    """분석 결과를 JSON 또는 YAML 문자열로 변환합니다.

    Args:
        summary: 분석 결과
        fmt: 출력 형식 ("json" 또는 "yaml")

    Returns:
        str: 직렬화된 보고서

    Raises:
        UnsupportedFormatError: 지원하지 않는 형식인 경우
    """
    data = summary.to_dict()
    if fmt == "json":
        return json.dumps(data, indent=2, ensure_ascii=False)
    if fmt == "yaml":
        return yaml.safe_dump(
            data, sort_keys=False, allow_unicode=True, default_flow_style=False
        )
    raise UnsupportedFormatError(f"Unsupported output format: {fmt}")
