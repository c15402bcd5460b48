"""Mermaid extraction/cleanup and Kroki rendering with graceful degradation."""

from __future__ import annotations

import base64
import logging
import re
import zlib
from collections.abc import Callable
from dataclasses import dataclass

import requests

from ..errors import DiagramRenderError

logger = logging.getLogger(__name__)

DEFAULT_KROKI_URL = "https://kroki.io"
VALID_DIAGRAM_TYPES = (
    "flowchart", "graph", "sequenceDiagram", "classDiagram", "stateDiagram",
    "erDiagram", "gantt", "pie", "journey", "mindmap", "timeline",
)
FINAL_PLACEHOLDER = "flowchart TD\n  A[图表预览不可用] --> B[请导出Word查看]"

_FENCE_RE = re.compile(r"```mermaid\s*([\s\S]*?)```", re.I)
_GRAPH_RE = re.compile(r"(graph\s+(?:TB|TD|BT|RL|LR)[\s\S]*)", re.I)
_PUNCT_MAP = str.maketrans({"：": ":", "；": ";", "，": ",", "（": "(", "）": ")", "【": "[", "】": "]"})

DEFAULT_LAYERS: list[tuple[str, list[str]]] = [
    ("应用层", ["用户界面", "业务展示", "数据可视化"]),
    ("服务层", ["业务逻辑", "数据处理", "接口服务"]),
    ("数据层", ["数据存储", "缓存服务", "日志服务"]),
]


# ---------------------------------------------------------------------------
# Source handling
# ---------------------------------------------------------------------------

def extract_mermaid_code(text: str) -> str | None:
    """Return the Mermaid source inside a reply, or ``None`` when there is none."""
    match = _FENCE_RE.search(text or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    match = _GRAPH_RE.search(text or "")
    if match:
        return match.group(1).strip()
    return None


def default_architecture_mermaid(system_name: str = "系统", layers: list[tuple[str, list[str]]] | None = None) -> str:
    """A three-layer architecture diagram used when the model gives no usable source."""
    layers = layers or DEFAULT_LAYERS
    lines = ["graph TB", f"    title[{system_name}架构图]", "    style title fill:#fff,stroke:none", ""]
    for i, (layer, items) in enumerate(layers, 1):
        lines.append(f"    subgraph L{i}[{layer}]")
        lines.append("        direction LR")
        for j, item in enumerate(items, 1):
            lines.append(f"        L{i}_{j}[{item}]")
        lines.append("    end")
        lines.append("")
    for i in range(1, len(layers)):
        lines.append(f"    L{i} --> L{i + 1}")
    return "\n".join(lines) + "\n"


def _has_valid_header(code: str) -> bool:
    first = code.strip().split("\n", 1)[0].strip().lower()
    return any(first.startswith(t.lower()) for t in VALID_DIAGRAM_TYPES)


def clean_mermaid_code(code: str) -> str:
    """Normalise common LLM mistakes: fences, full-width punctuation, arrows, labels."""
    cleaned = (code or "").strip()
    cleaned = re.sub(r"^```mermaid\s*", "", cleaned, flags=re.I)
    cleaned = re.sub(r"```\s*$", "", cleaned).strip()
    cleaned = cleaned.translate(_PUNCT_MAP)
    if "erDiagram" not in cleaned and "sequenceDiagram" not in cleaned:
        cleaned = re.sub(r"[ \t]*-+>[ \t]*", " --> ", cleaned)
        cleaned = re.sub(r"[ \t]*=+>[ \t]*", " ==> ", cleaned)

    def _quote_subgraph(m: re.Match) -> str:
        name = m.group(1).strip()
        if re.search(r"[^\w]", name):
            return f'subgraph "{name}"\n'
        return m.group(0)

    cleaned = re.sub(r'subgraph\s+([^\n\["]+?)\s*\n', _quote_subgraph, cleaned)
    cleaned = re.sub(
        r"\[([^\]]+)\]",
        lambda m: "[" + m.group(1).replace('"', "'").replace("|", "/") + "]",
        cleaned,
    )
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    if cleaned and not _has_valid_header(cleaned):
        cleaned = "flowchart TD\n" + cleaned
    return cleaned


def simplify_mermaid(code: str, attempt: int) -> str:
    """Next rung of the degradation ladder after render attempt *attempt* failed."""
    if attempt == 0:
        code = re.sub(r"^\s*style\s+\w+\s+[^\n]+$", "", code, flags=re.M)
        code = re.sub(r"^\s*classDef\s+[^\n]+$", "", code, flags=re.M)
        code = re.sub(r"^\s*class\s+\w+\s+\w+\s*$", "", code, flags=re.M)
        return re.sub(r"\n{2,}", "\n", code)
    if attempt == 1:
        code = re.sub(r"\[([^\]]{30,})\]", lambda m: f"[{m.group(1)[:25]}...]", code)
        return re.sub(r"\(([^)]{30,})\)", lambda m: f"({m.group(1)[:25]}...)", code)
    if attempt == 2:
        first = code.split("\n", 1)[0]
        if re.match(r"^(flowchart|graph|erDiagram|sequenceDiagram)", first, re.I):
            return first + "\n  A[图表加载中] --> B[请查看源代码]"
        return code
    return FINAL_PLACEHOLDER


# ---------------------------------------------------------------------------
# Kroki
# ---------------------------------------------------------------------------

def encode_diagram(source: str) -> str:
    """zlib-deflate + URL-safe base64, the Kroki GET encoding."""
    return base64.urlsafe_b64encode(zlib.compress(source.encode("utf-8"), 9)).decode("ascii")


def kroki_url(source: str, *, diagram_type: str = "mermaid", fmt: str = "svg",
              base_url: str = DEFAULT_KROKI_URL) -> str:
    return f"{base_url.rstrip('/')}/{diagram_type}/{fmt}/{encode_diagram(source)}"


def mime_for_format(fmt: str) -> str:
    return "image/png" if fmt == "png" else "image/svg+xml"


@dataclass
class KrokiClient:
    """Renders diagram source through Kroki: POST first, GET as fallback transport."""

    base_url: str = DEFAULT_KROKI_URL
    timeout: int = 30
    session: requests.Session | None = None

    def _http(self) -> requests.Session:
        if self.session is None:
            self.session = requests.Session()
        return self.session

    def render(self, source: str, *, diagram_type: str = "mermaid", fmt: str = "svg") -> bytes:
        post_url = f"{self.base_url.rstrip('/')}/{diagram_type}/{fmt}"
        try:
            resp = self._http().post(
                post_url, data=source.encode("utf-8"),
                headers={"Content-Type": "text/plain"}, timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.content
        except requests.RequestException as e:
            logger.warning("Kroki POST failed (%s); retrying with GET", e)

        try:
            resp = self._http().get(
                kroki_url(source, diagram_type=diagram_type, fmt=fmt, base_url=self.base_url),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.content
        except requests.RequestException as e:
            raise DiagramRenderError(f"图表生成失败: {e}") from e


@dataclass
class RenderOutcome:
    source: str
    image: bytes | None
    attempts: int
    placeholder_used: bool


def render_with_fallback(
    source: str,
    render: Callable[[str], bytes],
    *,
    max_retries: int = 4,
) -> RenderOutcome:
    """Try *render* on progressively simpler sources.

    Returns the last source tried; ``image`` is ``None`` only when even the
    final placeholder could not be rendered.
    """
    code = clean_mermaid_code(source)
    for attempt in range(max_retries + 1):
        try:
            image = render(code)
            return RenderOutcome(code, image, attempt + 1, code == FINAL_PLACEHOLDER)
        except DiagramRenderError as e:
            logger.warning("Render attempt %d/%d failed: %s", attempt + 1, max_retries + 1, e)
            if attempt < max_retries:
                code = simplify_mermaid(code, attempt)
    return RenderOutcome(code, None, max_retries + 1, code == FINAL_PLACEHOLDER)
