"""Pipeline — the two orchestration loops.

RoundController: incremental COSMIC analysis until a target number of
    distinct functional processes is reached (or the model runs dry).
ChapterPipeline: chapter-by-chapter specification generation, each chapter
    generated and (unless ``skip_enhance``) enhanced, re-integrated after
    every round.

Both loops are strictly sequential and talk to the model only through a
backend, either in-process (``service.LocalBackend``) or over HTTP
(``client.RemoteBackend``).
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

from pydantic import ValidationError

from .logging_config import PipelineCallbacks, RichCallbacks
from .models import (
    AnalysisResult,
    AnalyzeRoundRequest,
    ChapterDescriptor,
    ChapterRoundRequest,
    ChapterTemplate,
    DataMovementRow,
    ExtractedImage,
    GenerationRound,
    PhaseEvent,
    PipelineState,
    RoundPhase,
    RoundReply,
    SpecResult,
    StopReason,
    StreamEvent,
)
from .tools.sse import consume_stream
from .tools.table_parser import distinct_processes

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class AnalysisBackend(Protocol):
    def continue_analyze(self, request: AnalyzeRoundRequest) -> RoundReply: ...

    def parse_table(self, markdown: str) -> list[DataMovementRow]: ...


class ChapterBackend(Protocol):
    def stream_chapter_round(self, template_id: int, request: ChapterRoundRequest) -> Iterable[StreamEvent]: ...


# ---------------------------------------------------------------------------
# Round resolution & integration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RoundPlan:
    """Which chapter, and which phase, a round number stands for."""

    round: int
    chapter_index: int
    chapter: ChapterDescriptor
    is_enhance: bool

    @property
    def phase(self) -> RoundPhase:
        return RoundPhase.ENHANCE if self.is_enhance else RoundPhase.GENERATE


def total_rounds(chapters: list[ChapterDescriptor]) -> int:
    return sum(1 if c.skip_enhance else 2 for c in chapters)


def resolve_round(round_num: int, chapters: list[ChapterDescriptor]) -> RoundPlan:
    """Map a 1-based round number onto a chapter and phase.

    Chapters are walked in order, each costing one round (``skip_enhance``)
    or two (generate then enhance).
    """
    if round_num < 1:
        raise ValueError(f"Round numbers start at 1, got {round_num}")
    consumed = 0
    for index, chapter in enumerate(chapters):
        cost = 1 if chapter.skip_enhance else 2
        if round_num <= consumed + cost:
            return RoundPlan(round_num, index, chapter, is_enhance=(round_num - consumed == 2))
        consumed += cost
    raise ValueError(f"Round {round_num} is beyond the {consumed} rounds of this template")


_CHAPTER_NUMBER_RE = re.compile(r"chapter(\d+)", re.I)
_FIRST_NUMBER_RE = re.compile(r"\d+")


def _chapter_sort_key(key: str) -> tuple[int, str]:
    match = _CHAPTER_NUMBER_RE.search(key)
    if match:
        return (int(match.group(1)), key)
    match = _FIRST_NUMBER_RE.search(key)
    return (int(match.group()) if match else 10**6, key)


def integrate_chapters(chapters: dict[str, str]) -> str:
    """Join chapter texts ordered by chapter number.

    The number is the one after ``chapter`` in the key (``t2_chapter3_functions``
    sorts as 3), else the first number in it; keys without one go last.
    """
    ordered = sorted(chapters, key=_chapter_sort_key)
    blocks = [chapters[k].strip() for k in ordered]
    return "\n\n".join(b for b in blocks if b)


# ---------------------------------------------------------------------------
# Round Controller
# ---------------------------------------------------------------------------

class RoundController:
    """Repeats analysis rounds until the distinct-process target is met."""

    def __init__(
        self,
        backend: AnalysisBackend,
        *,
        target: int = 30,
        max_rounds: int = 12,
        cooldown: float = 1.5,
        callbacks: PipelineCallbacks | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if target <= 0 or max_rounds <= 0:
            raise ValueError("target and max_rounds must be positive")
        self.backend = backend
        self.target = target
        self.max_rounds = max_rounds
        self.cooldown = cooldown
        self.callbacks = callbacks or RichCallbacks()
        self.sleep = sleep

        self.rows: list[DataMovementRow] = []
        self.history: list[int] = []   # distinct count after each round
        self.replies: list[str] = []

    @property
    def distinct(self) -> int:
        return distinct_processes(self.rows)

    def _result(self, rounds: int, reason: StopReason, warnings: list[str], error: str | None = None) -> AnalysisResult:
        distinct = self.distinct
        return AnalysisResult(
            rows=list(self.rows),
            rounds=rounds,
            distinct_processes=distinct,
            reached_target=distinct >= self.target,
            stop_reason=reason,
            warnings=warnings,
            error=error,
        )

    def _parse(self, reply: str, round_num: int) -> list[DataMovementRow]:
        try:
            return self.backend.parse_table(reply)
        except Exception as e:  # noqa: BLE001
            logger.warning("Round %d: table parsing failed: %s", round_num, e)
            return []

    def run(self, document: str) -> AnalysisResult:
        """Run rounds until a termination condition; partial rows survive failures."""
        self.callbacks.on_phase_start("ANALYSIS", f"COSMIC analysis (target {self.target} processes)")
        warnings: list[str] = []
        round_num = 0

        while round_num < self.max_rounds:
            if self.distinct >= self.target:
                break
            round_num += 1
            self.callbacks.on_round_start(round_num, self.max_rounds)

            try:
                reply = self.backend.continue_analyze(AnalyzeRoundRequest(
                    document_content=document,
                    previous_results=list(self.rows),
                    round=round_num,
                    target_functions=self.target,
                ))
            except Exception as e:  # noqa: BLE001
                logger.error("Round %d failed: %s", round_num, e)
                self.callbacks.on_error(f"分析失败: {e}")
                self.callbacks.on_phase_end("ANALYSIS", False)
                return self._result(round_num, StopReason.FAILED, warnings, error=str(e))

            self.replies.append(reply.reply)
            new_rows = self._parse(reply.reply, round_num)
            self.rows.extend(new_rows)
            distinct = self.distinct
            self.history.append(distinct)
            self.callbacks.on_round_end(round_num, len(new_rows), len(self.rows), distinct)

            if distinct >= self.target:
                self.callbacks.on_phase_end("ANALYSIS", True)
                reason = StopReason.DONE_SIGNAL if reply.is_done else StopReason.TARGET_REACHED
                return self._result(round_num, reason, warnings)
            if reply.is_done:
                message = (
                    f"第 {round_num} 轮：模型表示已拆分完成，但只识别了 {distinct}/{self.target} 个功能过程，"
                    "目标可能无法达到，继续尝试扩展覆盖"
                )
                warnings.append(message)
                self.callbacks.on_warning(message)
            if not new_rows and round_num > 1:
                logger.info("Round %d produced no rows; stopping", round_num)
                self.callbacks.on_phase_end("ANALYSIS", False)
                return self._result(round_num, StopReason.EXHAUSTED, warnings)

            if round_num < self.max_rounds and self.cooldown > 0:
                self.sleep(self.cooldown)

        if self.distinct >= self.target:
            self.callbacks.on_phase_end("ANALYSIS", True)
            return self._result(round_num, StopReason.TARGET_REACHED, warnings)
        self.callbacks.on_warning(f"未达到目标数量：{self.distinct}/{self.target} 个功能过程")
        self.callbacks.on_phase_end("ANALYSIS", False)
        return self._result(round_num, StopReason.MAX_ROUNDS, warnings)


# ---------------------------------------------------------------------------
# Chapter Pipeline
# ---------------------------------------------------------------------------

class ChapterPipeline:
    """Explicit state machine over the rounds of one chapter template.

    ``step()`` runs exactly one round; ``run()`` steps until ``DONE`` or
    ``FAILED``. ``chapters`` (the chapter map) and ``document`` are valid at
    every point, including after a failure.
    """

    def __init__(
        self,
        backend: ChapterBackend,
        template: ChapterTemplate,
        document: str,
        *,
        images: list[ExtractedImage] | None = None,
        base_content: str = "",
        delay: float = 0.5,
        callbacks: PipelineCallbacks | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_content: Callable[[str], None] | None = None,
    ) -> None:
        self.backend = backend
        self.template = template
        self.source = document
        self.images = list(images or [])
        self.base_content = base_content
        self.delay = delay
        self.callbacks = callbacks or RichCallbacks()
        self.sleep = sleep
        self.on_content = on_content

        self.total_rounds = total_rounds(template.chapters)
        self.chapters: dict[str, str] = {}
        self.rounds_completed = 0
        self.state = PipelineState.IDLE
        self.current: GenerationRound | None = None
        self.error: str | None = None

    @property
    def document(self) -> str:
        return integrate_chapters(self.chapters)

    @property
    def finished(self) -> bool:
        return self.state in (PipelineState.DONE, PipelineState.FAILED)

    def _on_phase(self, event: PhaseEvent) -> None:
        extra = event.model_extra or {}
        analyzed = extra.get("analyzedImages")
        if analyzed:
            try:
                self.images = [ExtractedImage.model_validate(img) for img in analyzed]
            except ValidationError as e:
                logger.warning("Ignoring malformed analyzedImages payload: %s", e)
            else:
                logger.info("Image list updated from analysis (%d images)", len(self.images))
        if event.message:
            self.callbacks.on_status(event.message)

    def _request_for(self, plan: RoundPlan) -> ChapterRoundRequest:
        if plan.is_enhance:
            previous = self.chapters.get(plan.chapter.key, "")
        else:
            previous = self.document or self.base_content
        return ChapterRoundRequest(
            document_content=self.source,
            previous_content=previous,
            images=self.images,
            round=plan.round,
            total_rounds=self.total_rounds,
        )

    def step(self) -> PipelineState:
        """Run the next round and return the resulting state."""
        if self.finished:
            return self.state

        plan = resolve_round(self.rounds_completed + 1, self.template.chapters)
        self.state = PipelineState.ENHANCING if plan.is_enhance else PipelineState.GENERATING
        self.current = GenerationRound(index=plan.round, phase=plan.phase, chapter_key=plan.chapter.key)
        self.callbacks.on_chapter_start(plan.round, self.total_rounds, plan.chapter.display_name, plan.is_enhance)

        def _collect(delta: str) -> None:
            self.current.accumulated_text += delta
            if self.on_content is not None:
                self.on_content(delta)

        try:
            events = self.backend.stream_chapter_round(self.template.template_id, self._request_for(plan))
            consume_stream(events, on_phase=self._on_phase, on_content=_collect)
        except Exception as e:  # noqa: BLE001
            self.error = str(e)
            self.state = PipelineState.FAILED
            logger.error("Round %d (%s) failed: %s", plan.round, plan.chapter.key, e)
            self.callbacks.on_error(
                f"生成过程中出错: {e}；已保留已生成的 {len(self.chapters)} 个章节内容"
            )
            return self.state

        text = self.current.accumulated_text
        if text:
            self.chapters[plan.chapter.key] = text
        else:
            logger.warning("Round %d returned no content for %s", plan.round, plan.chapter.key)
        self.rounds_completed = plan.round
        self.callbacks.on_chapter_end(plan.round, plan.chapter.key, len(text))
        self.current = None

        if self.rounds_completed >= self.total_rounds:
            self.state = PipelineState.DONE
        return self.state

    def run(self) -> SpecResult:
        self.callbacks.on_phase_start("SPEC", f"{self.template.name}（{self.total_rounds} 轮）")
        while not self.finished:
            self.step()
            if not self.finished and self.delay > 0:
                self.sleep(self.delay)
        self.callbacks.on_phase_end("SPEC", self.state is PipelineState.DONE)
        return self.result()

    def result(self) -> SpecResult:
        return SpecResult(
            chapters=dict(self.chapters),
            document=self.document,
            rounds_completed=self.rounds_completed,
            total_rounds=self.total_rounds,
            state=self.state,
            error=self.error,
        )
