"""ImageAnalyzer agent — classifies uploaded images and suggests where they belong."""

from __future__ import annotations

import logging

from ..llm import LLMGateway, parse_json_reply
from ..models import AgentProfile, ExtractedImage, ImageAnalysis, ImageAnalysisReport

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "你是专业的需求文档分析师，请分析图片并输出JSON格式结果。"

PROFILE = AgentProfile(
    name="ImageAnalyzer", role="analyzer", system_message=SYSTEM_PROMPT, temperature=0.3, max_tokens=2000,
)

DOC_SUMMARY_CHARS = 2000

ANALYSIS_PROMPT = """\
请根据文件名和文档上下文，判断每张图片的内容类型以及应插入的具体章节。

## 图片列表
{image_list}

## 类型
架构图（系统/功能/技术/部署架构）、流程图、界面原型、数据模型、用例图、时序图

## 位置建议（精确到小节）
- 架构类 → "4.1 功能架构"
- 流程类 → "3.3 场景描述" 或 "5.X.1 功能说明"
- 界面类 → "5.X.5 界面设计"
- 数据类 → "5.X.3 处理数据"
- 部署类 → "6.6 部署要求"

只输出JSON：
{{
  "images": [
    {{
      "id": "img_1",
      "filename": "xxx",
      "contentType": "系统功能架构图",
      "suggestedSection": "4.1 功能架构",
      "suggestedTitle": "图4-1: 平台整体架构图",
      "description": "图片内容及其在文档中的作用"
    }}
  ]
}}

文档摘要（用于理解上下文）：
{summary}
"""


def build_prompt(images: list[ExtractedImage], document: str) -> str:
    image_list = "\n".join(
        f'- 图片{idx}: 文件名="{img.filename or "未命名"}", '
        f'原始推断类型="{img.inferred_type or "unknown"}", 建议位置="{img.suggested_section or "未知"}"'
        for idx, img in enumerate(images, 1)
    )
    return ANALYSIS_PROMPT.format(image_list=image_list, summary=document[:DOC_SUMMARY_CHARS])


def merge_analysis(images: list[ExtractedImage], analysis: list[ImageAnalysis]) -> list[ExtractedImage]:
    """Overlay analysis results onto *images*, matched by ``img_N`` id, then by position."""
    by_id = {a.id: a for a in analysis if a.id}
    merged: list[ExtractedImage] = []
    for idx, img in enumerate(images):
        found = by_id.get(f"img_{idx + 1}")
        if found is None and idx < len(analysis):
            found = analysis[idx]
        if found is None:
            merged.append(img)
            continue
        merged.append(img.model_copy(update={
            "suggested_section": found.suggested_section or img.suggested_section,
            "suggested_title": found.suggested_title or img.description,
            "description": found.description or img.description,
            "content_type": found.content_type or img.inferred_type,
        }))
    return merged


def analyze_images(llm: LLMGateway, images: list[ExtractedImage], document: str) -> list[ImageAnalysis]:
    """Ask the model about *images*; an empty list means "keep the upload heuristics"."""
    if not images:
        return []
    try:
        reply = llm.ask(PROFILE, build_prompt(images, document))
    except Exception as e:  # noqa: BLE001
        logger.warning("Image analysis failed: %s", e)
        return []
    report = parse_json_reply(reply, ImageAnalysisReport)
    if report is None:
        return []
    logger.info("Analysed %d/%d images", len(report.images), len(images))
    return report.images
