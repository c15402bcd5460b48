"""Tests for the agent modules: prompts, templates and reply handling."""

from __future__ import annotations

from datetime import date

import pytest
from conftest import FakeLLM

from cosmic_spec_generator.agents.chapter_writer import (
    NO_IMAGES,
    build_enhance_prompt,
    build_generate_prompt,
    build_placeholders,
    chapter_profile,
    describe_images,
    document_limit,
    get_template,
    relevant_images,
)
from cosmic_spec_generator.agents.cosmic_splitter import (
    build_document_message,
    build_round_prompt,
    is_done,
    unique_in_order,
)
from cosmic_spec_generator.agents.diagram_architect import (
    build_prompt as build_diagram_prompt,
    layers_from_analysis,
    mermaid_from_reply,
    parse_analysis,
)
from cosmic_spec_generator.agents.image_analyzer import analyze_images, merge_analysis
from cosmic_spec_generator.agents.name_synthesizer import AINameSynthesizer
from cosmic_spec_generator.agents.requirement_analyzer import (
    FALLBACK_NOTE,
    SPEC_COMPLETE_MARKER,
    analyze_requirements,
    build_continue_prompt,
    build_image_section,
    build_spec_prompt,
)
from cosmic_spec_generator.models import ExtractedImage, ImageAnalysis, RoundPhase
from cosmic_spec_generator.tools.dedup import local_attribute_name, local_group_name


def _chapter(template_id: int, key: str):
    return next(c for c in get_template(template_id).chapters if c.key == key)


# ---------------------------------------------------------------------------
# CosmicSplitter
# ---------------------------------------------------------------------------

class TestCosmicSplitter:
    def test_first_round_prompt(self):
        prompt = build_round_prompt("订单系统需求", [], 1, 30)
        assert "订单系统需求" in prompt
        assert "至少识别 30 个功能过程" in prompt
        assert "已完成的功能过程" not in prompt

    def test_later_round_lists_completed(self):
        names = [f"功能{i}" for i in range(25)]
        prompt = build_round_prompt("订单系统需求", names, 3, 40)
        assert "订单系统需求" in prompt
        assert "已完成的功能过程（25个）" in prompt
        assert "功能19..." in prompt
        assert "功能20" not in prompt
        assert "至少覆盖 40 个功能过程" in prompt
        assert "[ALL_DONE]" in prompt

    def test_is_done(self):
        assert is_done("所有功能都已拆分 [ALL_DONE]")
        assert is_done("功能已完成拆分")
        assert not is_done("|功能用户|触发事件|")

    def test_unique_in_order(self):
        assert unique_in_order(["查询订单", "", "审核订单", "查询订单"]) == ["查询订单", "审核订单"]

    def test_document_message(self):
        assert build_document_message("需求").endswith("生成标准的Markdown表格。")
        assert build_document_message("需求", table_hint=False).endswith("请根据上述内容进行Cosmic拆分。")


# ---------------------------------------------------------------------------
# NameSynthesizer
# ---------------------------------------------------------------------------

class TestNameSynthesizer:
    def test_model_name_cleaned(self):
        llm = FakeLLM({"GroupNamer": "「订单审核记录」", "AttributeNamer": "审核意见\n"})
        namer = AINameSynthesizer(llm)
        assert namer.group_name("订单信息", "审核订单", "审核订单", []) == "订单审核记录"
        assert namer.attribute_name("订单ID", "审核订单", "审核订单", [], "订单审核记录") == "审核意见"
        assert "已使用的数据组：（无）" in llm.prompts_for("GroupNamer")[0]

    def test_unconfigured_uses_local_heuristics(self):
        llm = FakeLLM(configured=False)
        namer = AINameSynthesizer(llm)
        assert namer.group_name("订单信息", "审核订单", "审核订单", []) == local_group_name("订单信息", "审核订单")
        assert namer.attribute_name("订单ID", "审核订单", "审核订单", [], "订单信息", seed=2) == \
            local_attribute_name("订单ID", "审核订单", "订单信息", seed=2)
        assert llm.calls == []

    def test_failure_uses_local_heuristics(self):
        namer = AINameSynthesizer(FakeLLM({"GroupNamer": RuntimeError("timeout")}))
        assert namer.group_name("订单信息", "审核订单", "审核订单", []) == local_group_name("订单信息", "审核订单")

    def test_blank_reply_uses_local_heuristics(self):
        namer = AINameSynthesizer(FakeLLM({"GroupNamer": "  "}))
        assert namer.group_name("订单信息", "", "审核订单", []) == local_group_name("订单信息", "")


# ---------------------------------------------------------------------------
# ChapterWriter
# ---------------------------------------------------------------------------

class TestTemplates:
    def test_round_counts(self):
        assert get_template(1).total_rounds == 14
        assert get_template(2).total_rounds == 6

    def test_unknown_template(self):
        with pytest.raises(ValueError, match="Unknown template"):
            get_template(3)

    def test_profiles_and_limits(self):
        functions = _chapter(2, "t2_chapter3_functions")
        overview = _chapter(1, "chapter1_overview")
        assert chapter_profile(2, functions, RoundPhase.GENERATE).max_tokens == 16000
        assert chapter_profile(1, overview, RoundPhase.ENHANCE).role == "enhancer"
        assert document_limit(2, functions, RoundPhase.GENERATE) == 20000
        assert document_limit(2, functions, RoundPhase.ENHANCE) == 10000
        assert document_limit(1, overview, RoundPhase.GENERATE) == 10000


class TestChapterImages:
    def test_relevant_images(self, sample_images):
        assert [pos for pos, _ in relevant_images(sample_images, 1, 4)] == [1, 3]
        assert [pos for pos, _ in relevant_images(sample_images, 1, 5)] == [2]
        assert [pos for pos, _ in relevant_images(sample_images, 1, 6)] == [3]
        assert relevant_images(sample_images, 1, 1) == []
        assert [pos for pos, _ in relevant_images(sample_images, 2, 3)] == [2]

    def test_keyword_match_outside_section(self):
        image = ExtractedImage(id="img_1", filename="image1.png", suggested_section="相关章节",
                               content_type="部署架构图")
        assert [pos for pos, _ in relevant_images([image], 1, 4)] == [1]
        assert [pos for pos, _ in relevant_images([image], 1, 6)] == [1]
        assert relevant_images([image], 1, 5) == []
        assert [pos for pos, _ in relevant_images([image], 2, 4)] == [1]

    def test_describe_images(self, sample_images):
        assert describe_images([]) == NO_IMAGES
        text = describe_images([(2, sample_images[1])])
        assert "共1张" in text
        assert "[插入图片: img_2]" in text

    def test_placeholders(self, sample_images):
        placeholders = build_placeholders(sample_images)
        assert placeholders.architecture_image == "[插入图片: img_1]\n*图4-1: 系统架构图*"
        assert placeholders.ui_images == "[插入图片: img_2]\n*图5-1: 界面原型*"
        assert placeholders.deploy_image == "[插入图片: img_3]\n*图6-1: 部署架构图*"
        assert build_placeholders([]).architecture_image == ""


class TestChapterPrompts:
    def test_generate_prompt(self, sample_images):
        chapter = _chapter(1, "chapter4_architecture")
        prompt = build_generate_prompt(1, chapter, "订单系统需求", "", sample_images)
        assert "「第4章 产品功能架构」" in prompt
        assert "（无）" in prompt
        assert "[插入图片: img_1]\n*图4-1: 系统架构图*" in prompt
        assert "# 4. 产品功能架构" in prompt

    def test_previous_tail_and_date(self):
        chapter = _chapter(1, "chapter7_appendix")
        previous = "前" * 9000
        prompt = build_generate_prompt(1, chapter, "需求", previous, [], today=date(2026, 1, 2))
        assert "2026-01-02" in prompt
        assert "前" * 8000 in prompt
        assert "前" * 8001 not in prompt

    def test_enhance_prompt_truncates_document(self):
        chapter = _chapter(1, "chapter1_overview")
        prompt = build_enhance_prompt(1, chapter, "# 1. 概述\n草稿", "文" * 20000, [])
        assert "# 1. 概述\n草稿" in prompt
        assert "文" * 6000 in prompt
        assert "文" * 6001 not in prompt
        assert NO_IMAGES in prompt


# ---------------------------------------------------------------------------
# ImageAnalyzer
# ---------------------------------------------------------------------------

class TestImageAnalyzer:
    def test_merge_by_id(self, sample_images):
        analysis = [
            ImageAnalysis(id="img_2", content_type="界面原型图", suggested_section="5.1.5 界面设计"),
            ImageAnalysis(id="img_1", content_type="技术架构图", suggested_title="图4-1: 技术架构"),
        ]
        merged = merge_analysis(sample_images[:2], analysis)
        assert merged[0].content_type == "技术架构图"
        assert merged[0].suggested_title == "图4-1: 技术架构"
        assert merged[0].suggested_section == "4. 产品功能架构"
        assert merged[1].suggested_section == "5.1.5 界面设计"

    def test_merge_by_position(self):
        images = [
            ExtractedImage(id="img_1", filename="a.png", inferred_type="general"),
            ExtractedImage(id="img_2", filename="b.png", inferred_type="flowchart"),
        ]
        merged = merge_analysis(images, [ImageAnalysis(description="审批流程")])
        assert merged[0].description == "审批流程"
        assert merged[0].content_type == "general"
        assert merged[1] == images[1]

    def test_analyze_images(self, sample_images):
        reply = '```json\n{"images": [{"id": "img_1", "contentType": "系统功能架构图"}]}\n```'
        llm = FakeLLM({"ImageAnalyzer": reply})
        result = analyze_images(llm, sample_images, "订单系统")
        assert [a.content_type for a in result] == ["系统功能架构图"]
        assert '文件名="系统架构.png"' in llm.prompts_for("ImageAnalyzer")[0]

    def test_analyze_images_degrades(self, sample_images):
        assert analyze_images(FakeLLM(), [], "doc") == []
        assert analyze_images(FakeLLM({"ImageAnalyzer": "无法识别"}), sample_images, "doc") == []
        assert analyze_images(FakeLLM({"ImageAnalyzer": RuntimeError("boom")}), sample_images, "doc") == []


# ---------------------------------------------------------------------------
# RequirementAnalyzer
# ---------------------------------------------------------------------------

class TestRequirementAnalyzer:
    def test_analysis_block_returned(self):
        reply = '```json\n{"background": "订单管理", "stakeholders": ["用户"]}\n```'
        text, warning = analyze_requirements(FakeLLM({"RequirementAnalyzer": reply}), "需求")
        assert text == '{"background": "订单管理", "stakeholders": ["用户"]}'
        assert warning is None

    def test_unparseable_analysis(self):
        text, warning = analyze_requirements(FakeLLM({"RequirementAnalyzer": "没有JSON"}), "需求")
        assert FALLBACK_NOTE in text
        assert warning == "结构化分析结果无法解析，已切换到通用模板"

    def test_failed_analysis(self):
        text, warning = analyze_requirements(FakeLLM({"RequirementAnalyzer": RuntimeError("x")}), "需求")
        assert FALLBACK_NOTE in text
        assert warning == "结构化分析失败，已切换到通用模板"

    def test_image_section(self, sample_images):
        assert build_image_section([]) == ""
        section = build_image_section(sample_images)
        assert "共3张" in section
        assert "[插入图片: img_3]" in section
        assert "架构类图片（1张）" in section
        assert "其他图片（0张）" in section

    def test_spec_prompts(self, sample_images):
        full = build_spec_prompt("订单需求", '{"background": "x"}', sample_images)
        assert "订单需求" in full and "共3张" in full
        section = build_spec_prompt("订单需求", "{}", [], section="第5章", previous="已有内容")
        assert "请继续生成 第5章 部分" in section
        assert "已有内容" in section

    def test_continue_prompt(self):
        prompt = build_continue_prompt("需求", "已生成")
        assert "后续章节" in prompt
        assert SPEC_COMPLETE_MARKER in prompt
        assert "第6章" in build_continue_prompt("需求", "已生成", "第6章")


# ---------------------------------------------------------------------------
# DiagramArchitect
# ---------------------------------------------------------------------------

ANALYSIS = {
    "systemName": "订单系统",
    "layers": [
        {"name": "接入层", "groups": [{"name": "入口", "modules": ["网关", "鉴权"]}]},
        {"name": "空层", "groups": []},
        {"name": "数据层", "groups": [{"name": "存储", "modules": ["订单库"]}]},
    ],
}


class TestDiagramArchitect:
    def test_parse_analysis(self):
        assert parse_analysis('说明\n```json\n{"systemName": "订单系统"}\n```') == {"systemName": "订单系统"}
        assert parse_analysis("```json\n{broken\n```") is None
        assert parse_analysis("```json\n[1, 2]\n```") is None
        assert parse_analysis("no analysis") is None

    def test_layers_skip_empty(self):
        assert layers_from_analysis(ANALYSIS) == [("接入层", ["网关", "鉴权"]), ("数据层", ["订单库"])]

    def test_mermaid_from_reply(self):
        assert mermaid_from_reply("```mermaid\ngraph TB\n  A --> B\n```") == "graph TB\n  A --> B"

    def test_default_diagram_from_analysis(self):
        code = mermaid_from_reply("只有文字", ANALYSIS)
        assert "title[订单系统架构图]" in code
        assert "subgraph L2[数据层]" in code

    def test_default_diagram_without_analysis(self):
        assert "title[系统架构图]" in mermaid_from_reply("只有文字")

    def test_prompt(self):
        assert "无文档内容" in build_diagram_prompt("")
        assert "订单系统" in build_diagram_prompt("订单系统")
