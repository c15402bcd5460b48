"""NameSynthesizer agent — proposes replacement data-group and attribute names."""

from __future__ import annotations

import logging

from ..llm import LLMGateway
from ..models import AgentProfile
from ..tools.dedup import clean_synthesized_name, local_attribute_name, local_group_name

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
你是COSMIC数据建模助手。你的任务是给重复的数据组或数据属性起一个新的、简短的中文名称。
只输出名称本身，不要解释，不要引号或括号，不超过20个字。
"""

GROUP_PROFILE = AgentProfile(
    name="GroupNamer", role="namer", system_message=SYSTEM_PROMPT, temperature=0.3, max_tokens=50,
)
ATTRIBUTE_PROFILE = AgentProfile(
    name="AttributeNamer", role="namer", system_message=SYSTEM_PROMPT, temperature=0.4, max_tokens=50,
)

MAX_EXISTING_LISTED = 15


def build_group_prompt(original: str, description: str, process: str, existing: list[str]) -> str:
    listed = "、".join(existing[-MAX_EXISTING_LISTED:]) or "（无）"
    return (
        f"数据组名称「{original}」已被使用，请结合下面的上下文生成一个新的数据组名称。\n"
        f"功能过程：{process or '未知'}\n"
        f"子过程描述：{description or '无'}\n"
        f"已使用的数据组：{listed}\n\n"
        "要求：保留原名称的业务对象，融入子过程描述中的1-2个关键词，例如"
        "「订单信息」→「订单审核记录」、「用户数据」→「用户登录凭证」。"
    )


def build_attribute_prompt(original: str, description: str, process: str, group: str) -> str:
    return (
        f"数据属性「{original}」与已有记录重复，请为数据组「{group}」补充一个新的字段名称，"
        "使其与现有字段区分开。\n"
        f"功能过程：{process or '未知'}\n"
        f"子过程描述：{description or '无'}\n\n"
        "只输出一个字段名，例如「审核意见」或「派单时间」。"
    )


class AINameSynthesizer:
    """LLM-backed synthesizer; any failure falls back to the local heuristics."""

    def __init__(self, llm: LLMGateway) -> None:
        self.llm = llm

    def _ask(self, profile: AgentProfile, prompt: str) -> str:
        if not self.llm.is_configured():
            return ""
        try:
            return clean_synthesized_name(self.llm.ask(profile, prompt))
        except Exception as e:  # noqa: BLE001
            logger.warning("%s failed, using local heuristic: %s", profile.name, e)
            return ""

    def group_name(self, original: str, description: str, process: str, existing: list[str]) -> str:
        name = self._ask(GROUP_PROFILE, build_group_prompt(original, description, process, existing))
        return name or local_group_name(original, description)

    def attribute_name(
        self, original: str, description: str, process: str, existing: list[str], group: str, *, seed: int = 0,
    ) -> str:
        name = self._ask(ATTRIBUTE_PROFILE, build_attribute_prompt(original, description, process, group))
        return name or local_attribute_name(original, description, group, seed=seed)
