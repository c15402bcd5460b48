"""Service layer — every operation the HTTP server and the local backend expose.

State that outlives a request (configuration, the LLM gateway, the uploaded
image cache) lives on an explicit ``AppContext`` handed to each operation.
Streaming operations are generators of typed ``StreamEvent``s; an exception
inside a stream becomes a final ``ErrorEvent`` instead of propagating.
"""

from __future__ import annotations

import base64
import logging
import random
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .agents import chapter_writer, cosmic_splitter, diagram_architect, image_analyzer, requirement_analyzer
from .agents.name_synthesizer import AINameSynthesizer
from .config import DEFAULT_BASE_URL
from .errors import DiagramRenderError, LLMNotConfiguredError
from .llm import AgentLLM, LLMGateway
from .models import (
    AnalyzeRoundRequest,
    ChapterRoundRequest,
    ContentEvent,
    DataMovementRow,
    DiagramResult,
    DoneEvent,
    ErrorEvent,
    ExtractedImage,
    PhaseEvent,
    ProjectConfig,
    RoundReply,
    StreamEvent,
    UploadResult,
)
from .pipeline import RoundPlan, resolve_round
from .tools.dedup import LocalNameSynthesizer, NameSynthesizer, UniquenessEnforcer
from .tools.diagram import KrokiClient, kroki_url, mime_for_format, render_with_fallback
from .tools.doc_reader import parse_upload
from .tools.image_cache import ImageCache, new_doc_id
from .tools.table_parser import parse_markdown_table

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class AppContext:
    """Everything a request handler needs; created once per app."""

    config: ProjectConfig
    llm_factory: Callable[[ProjectConfig], LLMGateway] = AgentLLM
    images: ImageCache | None = None
    rng: random.Random | None = None
    _llm: LLMGateway | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.images is None:
            self.images = ImageCache(self.config.server.image_cache_size)

    @property
    def llm(self) -> LLMGateway:
        if self._llm is None:
            self._llm = self.llm_factory(self.config)
        return self._llm

    def reset_llm(self) -> None:
        self._llm = None

    def require_llm(self) -> LLMGateway:
        llm = self.llm
        if not llm.is_configured():
            raise LLMNotConfiguredError()
        return llm

    def update_endpoint(self, *, api_key: str | None = None, base_url: str | None = None,
                        model: str | None = None) -> None:
        """Apply new credentials and drop the cached client."""
        if api_key:
            self.config.endpoint.api_key = api_key
        if base_url:
            self.config.endpoint.base_url = base_url.rstrip("/")
        if model:
            self.config.models.default = model
        self.reset_llm()
        logger.info("Endpoint configuration updated (base_url=%s)", self.config.endpoint.base_url or DEFAULT_BASE_URL)

    def kroki(self) -> KrokiClient:
        return KrokiClient(base_url=self.config.kroki_url, timeout=self.config.kroki_timeout)

    def name_synthesizer(self) -> NameSynthesizer:
        if self.config.ai_naming and self.llm.is_configured():
            return AINameSynthesizer(self.llm)
        return LocalNameSynthesizer()


def health(ctx: AppContext) -> dict[str, Any]:
    return {
        "status": "ok",
        "hasApiKey": bool(ctx.config.endpoint.api_key),
        "baseUrl": ctx.config.endpoint.base_url or DEFAULT_BASE_URL,
        "model": ctx.config.models.default,
    }


def _guarded(events: Iterable[StreamEvent], error_prefix: str) -> Iterator[StreamEvent]:
    """Turn an exception raised mid-stream into a terminal error event."""
    try:
        yield from events
    except Exception as e:  # noqa: BLE001
        logger.error("%s%s", error_prefix, e)
        yield ErrorEvent(error=f"{error_prefix}{e}")


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

def handle_upload(ctx: AppContext, filename: str, data: bytes) -> UploadResult:
    """Parse an upload and cache its images under a fresh ``doc_id``."""
    result = parse_upload(filename, data, max_bytes=ctx.config.server.max_upload_mb * 1024 * 1024)
    if result.images:
        doc_id = new_doc_id()
        ctx.images.put(doc_id, result.images)
        result = result.model_copy(update={"doc_id": doc_id})
    logger.info("Parsed %s: %d chars, %d images", filename, len(result.text), len(result.images))
    return result


# ---------------------------------------------------------------------------
# COSMIC split
# ---------------------------------------------------------------------------

def _chat_history(messages: list[dict[str, str]], document: str, *, table_hint: bool) -> list[dict[str, str]]:
    history: list[dict[str, str]] = []
    if document:
        history.append({"role": "user", "content": cosmic_splitter.build_document_message(document, table_hint=table_hint)})
    history.extend({"role": m["role"], "content": m["content"]} for m in messages if m.get("content"))
    return history


def chat(ctx: AppContext, messages: list[dict[str, str]], document: str = "") -> str:
    llm = ctx.require_llm()
    return llm.chat(cosmic_splitter.CHAT_PROFILE, _chat_history(messages, document, table_hint=False))


def chat_stream(ctx: AppContext, messages: list[dict[str, str]], document: str = "") -> Iterator[StreamEvent]:
    def _events() -> Iterator[StreamEvent]:
        llm = ctx.require_llm()
        history = _chat_history(messages, document, table_hint=True)
        for delta in llm.stream(cosmic_splitter.CHAT_PROFILE, history):
            yield ContentEvent(content=delta)
        yield DoneEvent()

    return _guarded(_events(), "调用AI失败: ")


def continue_analyze(ctx: AppContext, request: AnalyzeRoundRequest) -> RoundReply:
    """One incremental-analysis round."""
    llm = ctx.require_llm()
    completed = cosmic_splitter.unique_in_order([r.functional_process for r in request.previous_results])
    prompt = cosmic_splitter.build_round_prompt(
        request.document_content, completed, request.round, request.target_functions,
    )
    logger.info("Analysis round %d started, %d processes done", request.round, len(completed))
    reply = llm.ask(cosmic_splitter.CHAT_PROFILE, prompt)
    logger.info("Analysis round %d finished, reply %d chars", request.round, len(reply))
    return RoundReply(
        reply=reply,
        round=request.round,
        is_done=cosmic_splitter.is_done(reply),
        completed_functions=len(completed),
        target_functions=request.target_functions,
    )


def parse_table(ctx: AppContext, markdown: str) -> list[DataMovementRow]:
    """Extract rows and enforce per-call name uniqueness."""
    rows = parse_markdown_table(markdown)
    if not rows:
        return []
    enforcer = UniquenessEnforcer(
        ctx.name_synthesizer(), shuffle=ctx.config.shuffle_attributes, rng=ctx.rng,
    )
    return enforcer.enforce(rows)


# ---------------------------------------------------------------------------
# Chapter rounds
# ---------------------------------------------------------------------------

_ERROR_PREFIX = {1: "完善失败: ", 2: "生成失败: "}


def _analyze_images(llm: LLMGateway, images: list[ExtractedImage], document: str) -> Iterator[StreamEvent]:
    yield PhaseEvent(phase="thinking", message="深度思考：正在分析文档中的图片内容和最佳插入位置...")
    analysis = image_analyzer.analyze_images(llm, images, document)
    if analysis:
        merged = image_analyzer.merge_analysis(images, analysis)
        images[:] = merged
        yield PhaseEvent(
            phase="thinking_complete",
            message=f"图片分析完成，已确定{len(merged)}张图片的最佳插入位置",
            analyzedImages=[img.model_dump(by_alias=True) for img in merged],
        )


def _chapter_events(
    llm: LLMGateway, template_id: int, plan: RoundPlan, request: ChapterRoundRequest,
) -> Iterator[StreamEvent]:
    total = chapter_writer.get_template(template_id).total_rounds
    images = list(request.images)
    if plan.round == 1 and images:
        yield from _analyze_images(llm, images, request.document_content)

    chapter = plan.chapter
    if plan.is_enhance:
        prompt = chapter_writer.build_enhance_prompt(
            template_id, chapter, request.previous_content, request.document_content, images,
        )
    else:
        prompt = chapter_writer.build_generate_prompt(
            template_id, chapter, request.document_content, request.previous_content, images,
        )
    label = "完善" if plan.is_enhance else "生成"
    meta: dict[str, Any] = {"templateType": template_id} if template_id != 1 else {}

    logger.info("Template %d: %s %s, round %d/%d", template_id, label, chapter.display_name, plan.round, total)
    yield PhaseEvent(
        phase="enhancing_chapter" if plan.is_enhance else "generating_chapter",
        message=f"正在{label} {chapter.display_name}... ({plan.round}/{total})",
        round=plan.round,
        totalRounds=total,
        chapterKey=chapter.key,
        chapterName=chapter.display_name,
        chapterIndex=plan.chapter_index,
        isEnhancePhase=plan.is_enhance,
        phaseLabel=label,
        **meta,
    )

    profile = chapter_writer.chapter_profile(template_id, chapter, plan.phase)
    length = 0
    for delta in llm.stream(profile, prompt):
        length += len(delta)
        yield ContentEvent(content=delta)

    logger.info("Round %d (%s) done, %d chars", plan.round, label, length)
    yield PhaseEvent(
        phase="round_complete",
        round=plan.round,
        contentLength=length,
        chapterIndex=plan.chapter_index,
        isEnhancePhase=plan.is_enhance,
        **meta,
    )
    yield DoneEvent()


def stream_chapter_round(ctx: AppContext, template_id: int, request: ChapterRoundRequest) -> Iterator[StreamEvent]:
    """Stream one Chapter Pipeline round.

    Raises ``ValueError`` (unknown template, round out of range) and
    ``LLMNotConfiguredError`` before any event is produced.
    """
    template = chapter_writer.get_template(template_id)
    plan = resolve_round(request.round, template.chapters)
    llm = ctx.require_llm()
    return _guarded(_chapter_events(llm, template_id, plan, request), _ERROR_PREFIX.get(template_id, "生成失败: "))


# ---------------------------------------------------------------------------
# One-shot specification
# ---------------------------------------------------------------------------

def generate_spec_stream(
    ctx: AppContext,
    document: str,
    images: list[ExtractedImage] | None = None,
    *,
    section: str = "all",
    previous: str = "",
) -> Iterator[StreamEvent]:
    """Structured analysis phase, then the whole document in one stream."""
    llm = ctx.require_llm()

    def _events() -> Iterator[StreamEvent]:
        analysis, warning = requirement_analyzer.analyze_requirements(llm, document)
        extra: dict[str, Any] = {"warning": warning} if warning else {}
        yield PhaseEvent(phase="analysis", content=analysis, **extra)
        prompt = requirement_analyzer.build_spec_prompt(
            document, analysis, list(images or []), section=section, previous=previous,
        )
        length = 0
        for delta in llm.stream(requirement_analyzer.SPEC_PROFILE, prompt):
            length += len(delta)
            yield ContentEvent(content=delta)
        logger.info("Specification generated, %d chars", length)
        yield DoneEvent()

    return _guarded(_events(), "生成失败: ")


def continue_spec_stream(ctx: AppContext, document: str, previous: str, section: str | None = None) -> Iterator[StreamEvent]:
    llm = ctx.require_llm()

    def _events() -> Iterator[StreamEvent]:
        prompt = requirement_analyzer.build_continue_prompt(document, previous, section)
        for delta in llm.stream(requirement_analyzer.CONTINUE_PROFILE, prompt):
            yield ContentEvent(content=delta)
        yield DoneEvent()

    return _guarded(_events(), "生成失败: ")


# ---------------------------------------------------------------------------
# Diagrams
# ---------------------------------------------------------------------------

def _data_url(image: bytes, fmt: str) -> str:
    return f"data:{mime_for_format(fmt)};base64,{base64.b64encode(image).decode('ascii')}"


def generate_diagram(ctx: AppContext, document: str, fmt: str = "svg") -> tuple[DiagramResult, str]:
    """AI architecture analysis + Kroki render; returns the result and the raw reply."""
    llm = ctx.require_llm()
    reply = llm.ask(diagram_architect.PROFILE, diagram_architect.build_prompt(document))
    analysis = diagram_architect.parse_analysis(reply)
    code = diagram_architect.mermaid_from_reply(reply, analysis)

    client = ctx.kroki()
    outcome = render_with_fallback(
        code, lambda src: client.render(src, fmt=fmt), max_retries=ctx.config.diagram_max_retries,
    )
    result = DiagramResult(
        mermaid_code=outcome.source,
        image=_data_url(outcome.image, fmt) if outcome.image is not None else None,
        image_format=fmt,
        attempts=outcome.attempts,
        placeholder_used=outcome.placeholder_used,
        analysis=analysis,
    )
    return result, reply


def render_diagram(ctx: AppContext, code: str, fmt: str = "svg") -> tuple[bytes, str, int]:
    """Render Mermaid source through the degradation ladder.

    Returns ``(image, source_used, attempts)``; raises ``DiagramRenderError``
    only when even the placeholder fails.
    """
    client = ctx.kroki()
    outcome = render_with_fallback(code, lambda src: client.render(src, fmt=fmt), max_retries=ctx.config.diagram_max_retries)
    if outcome.image is None:
        raise DiagramRenderError(f"图片渲染失败（已尝试 {outcome.attempts} 次）")
    return outcome.image, outcome.source, outcome.attempts


def diagram_url(ctx: AppContext, code: str, fmt: str = "svg") -> str:
    return kroki_url(code, fmt=fmt, base_url=ctx.config.kroki_url)


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------

class LocalBackend:
    """Drives the pipelines directly against an ``AppContext``."""

    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx

    def continue_analyze(self, request: AnalyzeRoundRequest) -> RoundReply:
        return continue_analyze(self.ctx, request)

    def parse_table(self, markdown: str) -> list[DataMovementRow]:
        return parse_table(self.ctx, markdown)

    def stream_chapter_round(self, template_id: int, request: ChapterRoundRequest) -> Iterable[StreamEvent]:
        return stream_chapter_round(self.ctx, template_id, request)

