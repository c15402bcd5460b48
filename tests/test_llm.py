"""Tests for llm.py reply helpers and the gateway guard."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from cosmic_spec_generator.agents.cosmic_splitter import CHAT_PROFILE
from cosmic_spec_generator.errors import LLMNotConfiguredError
from cosmic_spec_generator.llm import AgentLLM, extract_json_block, extract_text, parse_json_reply
from cosmic_spec_generator.models import ImageAnalysisReport, ProjectConfig, RequirementAnalysis


class TestExtractText:
    def test_summary_preferred(self):
        response = SimpleNamespace(summary="  最终回复 ", chat_history=[{"content": "history"}])
        assert extract_text(response) == "最终回复"

    def test_last_history_message(self):
        response = SimpleNamespace(summary="", chat_history=[{"content": "a"}, {"content": "最后一条"}])
        assert extract_text(response) == "最后一条"

    def test_plain_string(self):
        assert extract_text("直接文本") == "直接文本"


class TestJsonReplies:
    def test_block_from_fenced_reply(self):
        assert extract_json_block('结果：\n```json\n{"a": {"b": 1}}\n```\n完毕') == '{"a": {"b": 1}}'

    def test_no_block(self):
        assert extract_json_block("没有对象") is None
        assert extract_json_block("") is None

    def test_parse_model(self):
        reply = '{"background": "订单", "businessGoals": ["提效"], "extraField": 1}'
        parsed = parse_json_reply(reply, RequirementAnalysis)
        assert parsed.background == "订单"
        assert parsed.business_goals == ["提效"]

    def test_parse_failure_returns_none(self):
        assert parse_json_reply('{"images": "not a list"}', ImageAnalysisReport) is None
        assert parse_json_reply("plain text", ImageAnalysisReport) is None


class TestAgentLLMGuard:
    def test_configured_flag(self):
        cfg = ProjectConfig()
        assert not AgentLLM(cfg).is_configured()
        cfg.endpoint.api_key = "k"
        assert AgentLLM(cfg).is_configured()

    def test_calls_without_key_raise(self):
        llm = AgentLLM(ProjectConfig())
        with pytest.raises(LLMNotConfiguredError, match="请先配置API密钥"):
            llm.ask(CHAT_PROFILE, "hi")
        with pytest.raises(LLMNotConfiguredError):
            llm.chat(CHAT_PROFILE, [{"role": "user", "content": "hi"}])
        with pytest.raises(LLMNotConfiguredError):
            next(llm.stream(CHAT_PROFILE, "hi"))
