"""ChapterWriter agent: chapter templates, generate/enhance prompts and image hints.

Two templates are built in. Template 1 is a full seven-chapter requirement
specification where every chapter is generated and then enhanced. Template 2
is a concise five-chapter functional document where only the functions
chapter gets an enhance round.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from ..models import AgentProfile, ChapterDescriptor, ChapterTemplate, ExtractedImage, RoundPhase

# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

TEMPLATE_FULL = ChapterTemplate(
    template_id=1,
    name="完整型需求规格说明书",
    description="适用于正式立项、招投标场景，包含7个章节：概述、业务需求、用户需求、功能架构、功能需求、系统需求、附录",
    chapters=[
        ChapterDescriptor(key="chapter1_overview", display_name="第1章 概述", chapter_number=1),
        ChapterDescriptor(key="chapter2_business", display_name="第2章 业务需求", chapter_number=2),
        ChapterDescriptor(key="chapter3_user", display_name="第3章 用户需求", chapter_number=3),
        ChapterDescriptor(key="chapter4_architecture", display_name="第4章 产品功能架构", chapter_number=4),
        ChapterDescriptor(key="chapter5_functions", display_name="第5章 功能需求", chapter_number=5),
        ChapterDescriptor(key="chapter6_system", display_name="第6章 系统需求", chapter_number=6),
        ChapterDescriptor(key="chapter7_appendix", display_name="第7章 附录", chapter_number=7),
    ],
    features=["详细业务分析", "用例图和用例描述", "完整接口设计", "界面布局设计", "验收标准"],
)

TEMPLATE_CONCISE = ChapterTemplate(
    template_id=2,
    name="简洁型功能需求文档",
    description="适用于内部功能开发、快速迭代场景，包含5个章节：系统概述、需求分析、功能说明（含字段表）、部署说明、其他补充",
    chapters=[
        ChapterDescriptor(key="t2_chapter1_overview", display_name="第1章 系统概述", chapter_number=1, skip_enhance=True),
        ChapterDescriptor(key="t2_chapter2_analysis", display_name="第2章 需求分析", chapter_number=2, skip_enhance=True),
        ChapterDescriptor(key="t2_chapter3_functions", display_name="第3章 功能说明", chapter_number=3),
        ChapterDescriptor(key="t2_chapter4_deploy", display_name="第4章 部署说明", chapter_number=4, skip_enhance=True),
        ChapterDescriptor(key="t2_chapter5_supplement", display_name="第5章 其他补充说明", chapter_number=5, skip_enhance=True),
    ],
    features=["标准编号格式", "功能说明含字段表", "接口说明表", "简洁直接"],
)

TEMPLATES: dict[int, ChapterTemplate] = {t.template_id: t for t in (TEMPLATE_FULL, TEMPLATE_CONCISE)}


def get_template(template_id: int) -> ChapterTemplate:
    try:
        return TEMPLATES[template_id]
    except KeyError:
        raise ValueError(f"Unknown template id {template_id!r}; choose from {sorted(TEMPLATES)}") from None


# ---------------------------------------------------------------------------
# System prompts & sampling
# ---------------------------------------------------------------------------

SPEC_SYSTEM_PROMPT = """\
# 角色
你是一名资深软件需求分析专家，负责编写结构清晰、内容充实的软件需求规格说明书。

# 输出原则
1. 严格按章节编号顺序输出，标题层级使用 #、##、###
2. 功能说明不少于300字，包含业务背景、使用场景、操作流程、异常处理
3. 业务规则不少于5条，写明触发条件和处理逻辑
4. 数据项表格不少于8行：字段名、类型、长度、必填、校验规则、说明
5. 接口设计包含接口编号、请求方式、URL、请求参数表、响应参数表和错误码表
6. 验收标准不少于5条，覆盖正常、异常和边界场景
7. 表格使用标准Markdown格式，表头下必须有 |---| 分隔行
8. Mermaid图使用正确语法，节点名称取自真实业务对象；erDiagram 实体名使用英文
9. AI依据行业实践补充的内容标注[知识库补全]，需业务确认的标注[待业务确认]

# 禁止
- 空白章节、占位符（XXX、待定、略）
- "请参考""详见""同上"之类的推诿表述
- "以下是完善后的内容"之类的元描述
"""

CONCISE_SYSTEM_PROMPT = """\
你是资深需求分析师。请深度分析原始需求文档，按规范格式编写项目需求文档。

【标题级别】
- "1"、"2" 等一级编号用 #，例如 "# 1 系统概述"
- "1.1" 用 ##，"1.1.1" 用 ###，"1.1.1.1" 用 ####

【格式】
1. 标题与正文之间空一行
2. 表格使用标准Markdown格式，表头下必须有分隔行
3. 只输出需求文档正文，不输出解释性文字
"""

_PROFILES: dict[tuple[int, RoundPhase], AgentProfile] = {
    (1, RoundPhase.GENERATE): AgentProfile(
        name="ChapterWriter", role="writer", system_message=SPEC_SYSTEM_PROMPT,
        temperature=0.7, max_tokens=16000),
    (1, RoundPhase.ENHANCE): AgentProfile(
        name="ChapterEnhancer", role="enhancer", system_message=SPEC_SYSTEM_PROMPT,
        temperature=0.8, max_tokens=16000),
    (2, RoundPhase.GENERATE): AgentProfile(
        name="ChapterWriter", role="writer", system_message=CONCISE_SYSTEM_PROMPT,
        temperature=0.6, max_tokens=12000),
    (2, RoundPhase.ENHANCE): AgentProfile(
        name="ChapterEnhancer", role="enhancer", system_message=CONCISE_SYSTEM_PROMPT,
        temperature=0.7, max_tokens=12000),
}

# chapters whose output is long enough to need a bigger budget
_LONG_CHAPTERS = {"t2_chapter3_functions": (20000, 16000)}
_DOC_LIMIT = {1: 10000, 2: 15000}
_ENHANCE_DOC_LIMIT = {1: 6000, 2: 10000}
PREVIOUS_TAIL = 8000


def chapter_profile(template_id: int, chapter: ChapterDescriptor, phase: RoundPhase) -> AgentProfile:
    profile = _PROFILES[(template_id, phase)]
    if chapter.key in _LONG_CHAPTERS:
        return profile.model_copy(update={"max_tokens": _LONG_CHAPTERS[chapter.key][1]})
    return profile


def document_limit(template_id: int, chapter: ChapterDescriptor, phase: RoundPhase) -> int:
    if phase is RoundPhase.ENHANCE:
        return _ENHANCE_DOC_LIMIT[template_id]
    if chapter.key in _LONG_CHAPTERS:
        return _LONG_CHAPTERS[chapter.key][0]
    return _DOC_LIMIT[template_id]


# ---------------------------------------------------------------------------
# Chapter outlines
# ---------------------------------------------------------------------------

CHAPTER_OUTLINES: dict[str, str] = {
    "chapter1_overview": """\
# 1. 概述
## 1.1 编写目的（说明文档用途，并用表格列出预期读者、阅读目的、关注章节）
## 1.2 项目背景（项目名称、来源、不少于150字的背景说明、本期范围与后续规划）
## 1.3 系统概述（系统定位、核心功能列表、系统边界）
## 1.4 术语定义（术语、英文/缩写、定义说明表格）
## 1.5 参考资料""",
    "chapter2_business": """\
# 2. 业务需求
## 2.1 业务现状与痛点（现状描述与痛点表格：痛点、影响、期望）
## 2.2 业务目标（可量化目标表格：目标、指标、当前值、目标值）
## 2.3 干系人分析（干系人、职责、关注点、影响程度）
## 2.4 业务流程（使用 flowchart TD 绘制主业务流程并逐步说明）
## 2.5 业务规则（编号、名称、触发条件、处理逻辑）""",
    "chapter3_user": """\
# 3. 用户需求
## 3.1 用户角色（角色、描述、权限、使用频率）
## 3.2 用例图（graph LR，角色用圆形节点）
## 3.3 用例描述（每个用例：编号、名称、参与者、前置条件、基本流程、备选流程、后置条件）
## 3.4 用户场景""",
    "chapter4_architecture": """\
# 4. 产品功能架构
## 4.1 系统架构（graph TB + subgraph 分层架构图，并逐层说明）
{architecture_image}
## 4.2 功能模块划分（模块、子功能、说明表格）
## 4.3 模块关系与数据流
## 4.4 技术选型""",
    "chapter5_functions": """\
# 5. 功能需求
为每个功能模块编写 5.N 小节，每个小节包含：
### 功能说明（不少于300字）
### 业务规则（不少于5条）
### 处理数据（字段表不少于8行）
### 接口设计（请求参数、响应参数、错误码）
### 界面设计（布局、组件、交互）
{ui_images}
### 验收标准（不少于5条）""",
    "chapter6_system": """\
# 6. 系统需求
## 6.1 性能需求（指标、要求、测试方法）
## 6.2 安全需求
## 6.3 可靠性与可用性
## 6.4 兼容性
## 6.5 部署要求（部署架构图与环境配置表）
{deploy_image}
## 6.6 运维与监控""",
    "chapter7_appendix": """\
# 7. 附录
## 7.1 数据字典（根据前文已生成的处理数据汇总）
## 7.2 接口清单（汇总前文接口）
## 7.3 ER图（erDiagram，实体名使用英文）
## 7.4 修订记录（版本、日期 {date}、修订人、说明）""",
    "t2_chapter1_overview": """\
# 1 系统概述
## 1.1 建设背景
## 1.2 建设目标
## 1.3 系统范围""",
    "t2_chapter2_analysis": """\
# 2 需求分析
## 2.1 现状分析
## 2.2 需求描述
## 2.3 用户角色""",
    "t2_chapter3_functions": """\
# 3 功能说明
覆盖原始文档中的全部功能模块，不得遗漏。每个功能按如下结构编写：
## 3.N 模块名称
### 3.N.M 功能名称
#### 3.N.M.1 功能描述
#### 3.N.M.2 业务流程
#### 3.N.M.3 字段说明（字段名称、类型、长度、必填、说明）
#### 3.N.M.4 接口说明（接口名称、方式、地址、参数、返回）""",
    "t2_chapter4_deploy": """\
# 4 部署说明
## 4.1 部署架构
## 4.2 软硬件环境（资源类型、配置、数量）
## 4.3 网络要求""",
    "t2_chapter5_supplement": """\
# 5 其他补充说明
## 5.1 性能要求
## 5.2 安全要求
## 5.3 约束与假设（{date}）""",
}

GENERATE_PROMPT = """\
请根据原始需求文档，只编写「{chapter_name}」的完整内容，每个小节都要有实质内容。

## 原始需求文档：
{document}

## 已生成的前序章节（保持术语和编号一致，不要重复输出）：
{previous}

## 图片信息：
{images}

## 本章结构：
{outline}
"""

ENHANCE_PROMPT = """\
请对以下章节进行深度完善和扩展，使其达到专业需求规格说明书的标准。

## 当前章节内容（需要完善）：
{chapter}

## 原始需求文档（参考）：
{document}

## 图片信息：
{images}

## 完善要求
1. 补足字数、条数、行数不达标的部分（功能说明≥300字、业务规则≥5条、数据项≥8行、验收标准≥5条）
2. 把"XXX""待定""..."替换为与业务相关的具体内容
3. 接口设计补齐请求参数、响应参数和错误码表
4. 在合适位置插入图片引用 [插入图片: img_X]，其后加说明 *图X-Y: 图片描述*
5. 保持原有章节编号与结构，直接从章节标题开始输出完善后的正文，不输出任何元描述
"""

NO_IMAGES = "（本章节无相关图片）"


# ---------------------------------------------------------------------------
# Image selection
# ---------------------------------------------------------------------------

_RELEVANCE: dict[int, dict[int, tuple[str, ...]]] = {
    1: {3: ("流程",), 4: ("架构",), 5: ("界面",), 6: ("部署",)},
    2: {3: ("流程", "界面"), 4: ("部署",)},
}


def relevant_images(
    images: list[ExtractedImage], template_id: int, chapter_number: int,
) -> list[tuple[int, ExtractedImage]]:
    """Images (with 1-based positions) that belong in the given chapter."""
    keywords = _RELEVANCE.get(template_id, {}).get(chapter_number)
    if not keywords:
        return []
    selected: list[tuple[int, ExtractedImage]] = []
    for pos, img in enumerate(images, 1):
        section = img.suggested_section or ""
        kind = img.content_type or img.inferred_type or ""
        if f"{chapter_number}." in section or any(k in kind for k in keywords):
            selected.append((pos, img))
    return selected


def describe_images(selected: list[tuple[int, ExtractedImage]]) -> str:
    if not selected:
        return NO_IMAGES
    lines = [f"本章节相关图片（共{len(selected)}张）："]
    for pos, img in selected:
        lines.append(
            f"- 图片{pos}: {img.filename or '未命名'}\n"
            f"  类型: {img.content_type or img.inferred_type or '未知'}\n"
            f"  建议位置: {img.suggested_section or '本章节'}\n"
            f"  描述: {img.description or '无'}\n"
            f"  引用格式: [插入图片: img_{pos}]"
        )
    return "\n".join(lines)


def image_placeholder(pos: int, figure: str, title: str) -> str:
    return f"[插入图片: img_{pos}]\n*图{figure}: {title}*"


@dataclass
class ImagePlaceholders:
    architecture_image: str = ""
    ui_images: str = ""
    deploy_image: str = ""


def build_placeholders(images: list[ExtractedImage]) -> ImagePlaceholders:
    """Ready-made figure markers for the architecture, UI and deployment sections."""
    def _kind(img: ExtractedImage) -> str:
        return img.content_type or img.inferred_type or ""

    arch = [(i, img) for i, img in enumerate(images, 1) if "架构" in _kind(img)]
    ui = [(i, img) for i, img in enumerate(images, 1) if "界面" in _kind(img)]
    deploy = [(i, img) for i, img in enumerate(images, 1) if "部署" in _kind(img)]
    return ImagePlaceholders(
        architecture_image=image_placeholder(arch[0][0], "4-1", arch[0][1].suggested_title or "系统架构图") if arch else "",
        ui_images="\n\n".join(
            image_placeholder(pos, f"5-{n}", img.suggested_title or "界面原型")
            for n, (pos, img) in enumerate(ui, 1)
        ),
        deploy_image=image_placeholder(deploy[0][0], "6-1", deploy[0][1].suggested_title or "部署架构图") if deploy else "",
    )


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

def build_generate_prompt(
    template_id: int,
    chapter: ChapterDescriptor,
    document: str,
    previous: str,
    images: list[ExtractedImage],
    *,
    today: date | None = None,
) -> str:
    placeholders = build_placeholders(images)
    outline = CHAPTER_OUTLINES[chapter.key].format(
        architecture_image=placeholders.architecture_image,
        ui_images=placeholders.ui_images,
        deploy_image=placeholders.deploy_image,
        date=(today or date.today()).isoformat(),
    )
    limit = document_limit(template_id, chapter, RoundPhase.GENERATE)
    return GENERATE_PROMPT.format(
        chapter_name=chapter.display_name,
        document=document[:limit],
        previous=previous[-PREVIOUS_TAIL:] if previous else "（无）",
        images=describe_images(relevant_images(images, template_id, chapter.chapter_number)),
        outline=outline,
    )


def build_enhance_prompt(
    template_id: int,
    chapter: ChapterDescriptor,
    chapter_text: str,
    document: str,
    images: list[ExtractedImage],
) -> str:
    limit = document_limit(template_id, chapter, RoundPhase.ENHANCE)
    return ENHANCE_PROMPT.format(
        chapter=chapter_text,
        document=document[:limit],
        images=describe_images(relevant_images(images, template_id, chapter.chapter_number)),
    )
