"""DiagramArchitect agent — analyses a document and proposes a layered Mermaid diagram."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..models import AgentProfile
from ..tools.diagram import default_architecture_mermaid, extract_mermaid_code

logger = logging.getLogger(__name__)

PROFILE = AgentProfile(
    name="DiagramArchitect",
    role="diagrammer",
    system_message="你是一位专业的系统架构师，擅长分析需求文档并绘制清晰的架构图。",
    temperature=0.5,
    max_tokens=4000,
)

DOC_CHARS = 6000
RESPONSE_PREVIEW_CHARS = 2000

ANALYSIS_PROMPT = """\
请对需求文档进行深度分析，然后生成一个专业的分层架构图。

## 分析步骤
1. 识别系统层级（3-5层）：展示层、业务层、数据层、基础设施层、外部接口层
2. 识别功能模块：每层2-4个具体且有业务含义的模块，相关模块用subgraph分组
3. 识别层级之间的数据流向

## 输出
先输出JSON分析结果：
```json
{{
  "systemName": "系统名称",
  "layers": [
    {{"name": "层级名称", "type": "application|service|data|infrastructure",
      "groups": [{{"name": "分组名称", "modules": ["模块1", "模块2"]}}]}}
  ],
  "dataFlows": [{{"from": "层级1", "to": "层级2", "description": "数据流说明"}}]
}}
```

再输出Mermaid代码：
```mermaid
graph TB
    subgraph 应用层
        ...
    end
```

风格：subgraph嵌套表示层级和分组；节点ID用英文（如A1、B2），显示名称用中文；
同层模块用 direction LR 横向排列；层级间用箭头表示数据流向。

## 原始需求文档：
{document}

请进行深度分析并生成架构图。
"""

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)```")


def build_prompt(document: str) -> str:
    return ANALYSIS_PROMPT.format(document=document[:DOC_CHARS] if document else "无文档内容")


def parse_analysis(reply: str) -> dict[str, Any] | None:
    """The fenced ```json block of a reply, or ``None``."""
    match = _JSON_FENCE_RE.search(reply or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        logger.info("Diagram analysis JSON could not be parsed; skipping")
        return None
    return data if isinstance(data, dict) else None


def layers_from_analysis(analysis: dict[str, Any]) -> list[tuple[str, list[str]]]:
    layers: list[tuple[str, list[str]]] = []
    for layer in analysis.get("layers") or []:
        if not isinstance(layer, dict) or not layer.get("name"):
            continue
        modules = [
            str(module)
            for group in layer.get("groups") or [] if isinstance(group, dict)
            for module in group.get("modules") or []
        ]
        if modules:
            layers.append((str(layer["name"]), modules))
    return layers


def mermaid_from_reply(reply: str, analysis: dict[str, Any] | None = None) -> str:
    """Mermaid source from the reply; a default layered diagram when none is present."""
    code = extract_mermaid_code(reply)
    if code:
        return code
    logger.info("No Mermaid code in diagram reply; using default architecture diagram")
    if analysis:
        return default_architecture_mermaid(
            str(analysis.get("systemName") or "系统"), layers_from_analysis(analysis) or None,
        )
    return default_architecture_mermaid("系统")
