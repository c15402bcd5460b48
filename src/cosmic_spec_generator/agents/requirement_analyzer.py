"""RequirementAnalyzer agent — structured pre-analysis and one-shot spec prompts.

Used by the single-request generation path: a short JSON analysis of the
document is produced first, then the whole specification is streamed in one
call with the analysis and image guidance folded into the prompt.
"""

from __future__ import annotations

import logging

from ..llm import LLMGateway, extract_json_block
from ..models import AgentProfile, ExtractedImage, RequirementAnalysis
from .chapter_writer import SPEC_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

ANALYSIS_PROFILE = AgentProfile(
    name="RequirementAnalyzer",
    role="analyzer",
    system_message="你是一名需求分析顾问，请输出严格JSON。",
    temperature=0.3,
    max_tokens=4000,
)
SPEC_PROFILE = AgentProfile(
    name="SpecWriter", role="writer", system_message=SPEC_SYSTEM_PROMPT, temperature=0.65, max_tokens=16000,
)
CONTINUE_PROFILE = SPEC_PROFILE.model_copy(update={"name": "SpecContinuer", "temperature": 0.7})

ANALYSIS_DOC_CHARS = 4000
SPEC_DOC_CHARS = 8000
CONTINUE_CHARS = 3000
FALLBACK_NOTE = "[知识库补全] 无法解析原始文档，改为基于最佳实践生成"
SPEC_COMPLETE_MARKER = "[SPEC_COMPLETE]"

ANALYSIS_PROMPT = """\
请分析以下需求文档摘要，输出简洁的JSON结构。

文档摘要：
{summary}

请输出以下JSON格式（每个数组最多5项）：
{{
  "background": "一句话系统背景",
  "stakeholders": ["角色1", "角色2"],
  "businessGoals": ["目标1", "目标2"],
  "modules": [{{"name": "模块名", "description": "功能描述"}}],
  "risks": ["风险点"]
}}

只输出JSON；信息不足时用[知识库补全]标注。
"""

# image type -> where it must be placed
_PLACEMENT = [
    ("architecture", "架构类", '"4. 产品功能架构"的"4.1功能架构"'),
    ("flowchart", "流程类", '"3. 用户需求"的场景描述或"5. 功能需求"的业务规则'),
    ("ui", "界面类", '"5. 功能需求"中对应模块的"界面设计"'),
    ("data", "数据类", '"5. 功能需求"的"处理数据"或"附录-数据字典"'),
    ("usecase", "用例类", '"3. 用户需求"的"用例图"'),
    ("sequence", "时序类", '"5. 功能需求"的"接口"'),
    ("deployment", "部署类", '"6. 系统需求"的"部署要求"'),
]

SPEC_PROMPT = """\
你已完成如下结构化分析：
{analysis}
{image_section}

请基于以上结论和原始需求文档，生成一份内容详尽的《软件需求规格说明书》。

## 章节结构（严格按顺序）
1. 概述  2. 业务需求  3. 用户需求  4. 产品功能架构  5. 功能需求  6. 系统需求  7. 附录

## 内容要求
- 每个功能模块的功能说明从目标定位、核心流程、输入输出、异常处理、扩展点五个维度展开
- 接口设计列出接口名称、请求方式、URL、请求参数表、响应参数表、错误码
- 用Mermaid绘制系统架构图(graph TB + subgraph)、用例图(graph LR)、业务流程图(flowchart TD)、ER图(erDiagram)
- 至少包含性能指标表、接口参数表、数据字典表、角色权限表、错误码表
- AI补全内容标注[知识库补全]，待确认内容标注[待业务确认]，假设数据标注[假设数据]

原始需求文档：
{document}
"""

SECTION_PROMPT = """\
你已生成部分内容：
{previous}

请继续生成 {section} 部分，仍需参考结构化分析：
{analysis}

要求：维持相同的详细程度和风格，继续补充Mermaid图表和数据表格，避免重复已生成的内容。
"""

CONTINUE_PROMPT = """\
继续完善需求规格书。

原始需求文档：
{document}...

已生成的内容（最后部分）：
{previous}

请继续生成 {section} 的内容，确保与已生成内容衔接自然，格式保持一致。
如果所有章节都已完成，请回复"{marker}"。
"""


def fallback_analysis_text() -> str:
    return RequirementAnalysis(note=FALLBACK_NOTE).model_dump_json(include={"note"})


def analyze_requirements(llm: LLMGateway, document: str) -> tuple[str, str | None]:
    """Run the structured analysis.

    Returns ``(analysis_text, warning)``. On failure the analysis is a generic
    note and *warning* says so; the caller continues with the generic template.
    """
    try:
        reply = llm.ask(ANALYSIS_PROFILE, ANALYSIS_PROMPT.format(summary=document[:ANALYSIS_DOC_CHARS]))
    except Exception as e:  # noqa: BLE001
        logger.warning("Requirement analysis failed: %s", e)
        return fallback_analysis_text(), "结构化分析失败，已切换到通用模板"

    block = extract_json_block(reply)
    if block is not None:
        try:
            RequirementAnalysis.model_validate_json(block)
            return block, None
        except ValueError as e:
            logger.warning("Requirement analysis JSON invalid: %s", e)
    return fallback_analysis_text(), "结构化分析结果无法解析，已切换到通用模板"


def build_image_section(images: list[ExtractedImage]) -> str:
    if not images:
        return ""
    counts: dict[str, int] = {}
    for img in images:
        counts[img.inferred_type or "general"] = counts.get(img.inferred_type or "general", 0) + 1

    lines = [f"\n## 原文档图片资源（共{len(images)}张），请将图片插入到对应章节\n"]
    for idx, img in enumerate(images, 1):
        lines.append(
            f"- 图片{idx}: {img.filename or '未命名'}；类型：{img.description or '文档图片'}；"
            f"建议位置：{img.suggested_section or '相关章节'}；引用：[插入图片: img_{idx}]，"
            f"其后添加 *图{idx}: 说明*"
        )
    lines.append("\n插入规则：")
    for n, (kind, label, target) in enumerate(_PLACEMENT, 1):
        lines.append(f"{n}. {label}图片（{counts.get(kind, 0)}张）→ {target}")
    lines.append(f"{len(_PLACEMENT) + 1}. 其他图片（{counts.get('general', 0)}张）→ 最相关的位置")
    lines.append("不要将所有图片集中放在附录。")
    return "\n".join(lines)


def build_spec_prompt(
    document: str,
    analysis: str,
    images: list[ExtractedImage],
    *,
    section: str = "all",
    previous: str = "",
) -> str:
    if section != "all":
        return SECTION_PROMPT.format(previous=previous[-4000:], section=section, analysis=analysis)
    return SPEC_PROMPT.format(
        analysis=analysis, image_section=build_image_section(images), document=document[:SPEC_DOC_CHARS],
    )


def build_continue_prompt(document: str, previous: str, section: str | None = None) -> str:
    return CONTINUE_PROMPT.format(
        document=document[:CONTINUE_CHARS],
        previous=previous[-CONTINUE_CHARS:],
        section=section or "后续章节",
        marker=SPEC_COMPLETE_MARKER,
    )
