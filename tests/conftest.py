"""Shared test fixtures."""

from __future__ import annotations

import io
import struct
import zlib
from collections.abc import Iterator

import pytest

from cosmic_spec_generator.models import AgentProfile, ExtractedImage, ProjectConfig
from cosmic_spec_generator.service import AppContext

SAMPLE_TABLE = """\
|功能用户|触发事件|功能过程|子过程描述|数据移动类型|数据组|数据属性|
|---|---|---|---|---|---|---|
|用户|点击|查询订单|接收请求|E|订单请求|订单ID|
||||读取订单|R|订单信息|订单ID, 状态|
"""


def make_table(*processes: str) -> str:
    """A well-formed four-row table per functional process."""
    lines = [
        "|功能用户|触发事件|功能过程|子过程描述|数据移动类型|数据组|数据属性|",
        "|:---|:---|:---|:---|:---|:---|:---|",
    ]
    for name in processes:
        lines += [
            f"|发起者：用户 接收者：用户|用户触发|{name}|提交{name}请求|E|{name}请求参数|{name}编号、请求时间、操作人|",
            f"||||读取{name}数据|R|{name}记录表|{name}编号、状态、创建时间|",
            f"||||写入{name}结果|W|{name}结果表|{name}编号、结果、处理人|",
            f"||||返回{name}结果|X|{name}反馈数据|{name}编号、反馈状态、反馈时间|",
        ]
    return "\n".join(lines) + "\n"


def make_png(width: int = 2, height: int = 2) -> bytes:
    """A valid RGB PNG of the given size."""
    def _chunk(kind: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF)

    raw = b"".join(b"\x00" + b"\xff\x00\x00" * width for _ in range(height))
    return (
        b"\x89PNG\r\n\x1a\n"
        + _chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0))
        + _chunk(b"IDAT", zlib.compress(raw))
        + _chunk(b"IEND", b"")
    )


def make_tiff(width: int = 2, height: int = 2) -> bytes:
    """A little-endian TIFF header carrying only width and length tags."""
    entries = [(256, 3, 1, width), (257, 3, 1, height)]
    ifd = struct.pack("<H", len(entries))
    ifd += b"".join(struct.pack("<HHIHH", tag, kind, count, value, 0) for tag, kind, count, value in entries)
    ifd += struct.pack("<I", 0)
    return b"II*\x00" + struct.pack("<I", 8) + ifd


class FakeLLM:
    """Scripted ``LLMGateway``: replies are looked up by agent profile name.

    A reply may be a string, a list of strings (consumed one per call, the
    last one repeating) or an exception instance to raise.
    """

    def __init__(self, replies: dict | None = None, *, configured: bool = True) -> None:
        self.replies = dict(replies or {})
        self.configured = configured
        self.calls: list[tuple[str, object]] = []

    def is_configured(self) -> bool:
        return self.configured

    def _next(self, profile: AgentProfile):
        reply = self.replies.get(profile.name, "")
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def ask(self, profile: AgentProfile, message: str) -> str:
        self.calls.append((profile.name, message))
        return self._next(profile)

    def chat(self, profile: AgentProfile, messages: list[dict[str, str]]) -> str:
        self.calls.append((profile.name, messages))
        return self._next(profile)

    def stream(self, profile: AgentProfile, message) -> Iterator[str]:
        self.calls.append((profile.name, message))
        text = self._next(profile)
        for i in range(0, len(text), 5):
            yield text[i:i + 5]

    def prompts_for(self, name: str) -> list:
        return [msg for n, msg in self.calls if n == name]


@pytest.fixture
def config() -> ProjectConfig:
    cfg = ProjectConfig()
    cfg.endpoint.api_key = "test-key"
    cfg.endpoint.base_url = "https://llm.example.com/v1"
    cfg.kroki_url = "https://kroki.example.com"
    return cfg


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def context(config: ProjectConfig, fake_llm: FakeLLM) -> AppContext:
    return AppContext(config=config, llm_factory=lambda _cfg: fake_llm)


@pytest.fixture
def sample_table() -> str:
    return SAMPLE_TABLE


@pytest.fixture
def sample_images() -> list[ExtractedImage]:
    return [
        ExtractedImage(id="img_1", filename="系统架构.png", inferred_type="architecture",
                       suggested_section="4. 产品功能架构", content_type="系统功能架构图",
                       data_url="data:image/png;base64,AAAA"),
        ExtractedImage(id="img_2", filename="登录界面.png", inferred_type="ui",
                       suggested_section="5. 功能需求-界面设计", content_type="界面原型",
                       data_url="data:image/png;base64,BBBB"),
        ExtractedImage(id="img_3", filename="部署图.png", inferred_type="deployment",
                       suggested_section="6. 系统需求-部署要求", content_type="部署架构图",
                       data_url="data:image/png;base64,CCCC"),
    ]


@pytest.fixture
def docx_bytes() -> bytes:
    """A small .docx with a heading, two paragraphs, a table and one image."""
    import docx
    from docx.shared import Inches

    png = make_png()
    document = docx.Document()
    document.add_heading("订单管理系统", level=1)
    document.add_paragraph("用户可以查询订单。")
    document.add_paragraph("管理员可以审核订单。")
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "功能"
    table.cell(0, 1).text = "说明"
    table.cell(1, 0).text = "查询订单"
    table.cell(1, 1).text = "按编号查询"
    document.add_picture(io.BytesIO(png), width=Inches(0.5))
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()
