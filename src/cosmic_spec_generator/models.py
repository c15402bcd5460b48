"""Pydantic models for the COSMIC split and requirement spec generator."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class MovementType(str, Enum):
    ENTRY = "E"
    READ = "R"
    WRITE = "W"
    EXIT = "X"


class RoundPhase(str, Enum):
    GENERATE = "generate"
    ENHANCE = "enhance"


class PipelineState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    ENHANCING = "enhancing"
    DONE = "done"
    FAILED = "failed"


class StopReason(str, Enum):
    TARGET_REACHED = "target_reached"
    DONE_SIGNAL = "done_signal"
    EXHAUSTED = "exhausted"
    MAX_ROUNDS = "max_rounds"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# LLM endpoint & model configuration
# ---------------------------------------------------------------------------

class EndpointConfig(BaseModel):
    """OpenAI-compatible (or Azure OpenAI) connection settings."""
    api_key: str = Field(default="", description="API key")
    api_version: str = Field(default="", description="API version (Azure only)")
    base_url: str = Field(default="", description="Endpoint base URL")


class ModelEndpointOverride(BaseModel):
    """Per-model endpoint settings that take precedence over ``endpoint``."""
    base_url: str
    api_key: str | None = None
    api_version: str | None = None
    api_type: str | None = None


class ModelConfig(BaseModel):
    """LLM model configuration per role."""
    default: str = Field(default="glm-4-flash", description="Default model")
    splitter: str | None = Field(default=None)
    writer: str | None = Field(default=None)
    namer: str | None = Field(default=None)
    analyzer: str | None = Field(default=None)
    diagrammer: str | None = Field(default=None)
    overrides: dict[str, ModelEndpointOverride] = Field(default_factory=dict)


class ServerConfig(BaseModel):
    """HTTP server settings."""
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    max_upload_mb: int = 50
    image_cache_size: int = 10


class ProjectConfig(BaseModel):
    """Top-level configuration."""
    project_name: str = Field(default="cosmic-spec", description="Used for exported file names")
    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Round controller
    target_functions: int = Field(default=30, gt=0)
    max_analysis_rounds: int = Field(default=12, gt=0)
    analysis_cooldown: float = Field(default=1.5, ge=0)

    # Chapter pipeline
    template_id: int = Field(default=1, description="1 = full spec, 2 = concise functional doc")
    chapter_delay: float = Field(default=0.5, ge=0)

    # Uniqueness enforcement
    ai_naming: bool = True
    shuffle_attributes: bool = False

    # Diagram rendering
    kroki_url: str = "https://kroki.io"
    kroki_timeout: int = 30
    diagram_max_retries: int = 4

    timeout: int = 120
    seed: int | None = None


class AgentProfile(BaseModel):
    """Static description of one LLM agent: who it is and how it samples."""
    name: str
    role: str
    system_message: str
    temperature: float = 0.7
    max_tokens: int = 8000


# ---------------------------------------------------------------------------
# COSMIC rows
# ---------------------------------------------------------------------------

class DataMovementRow(BaseModel):
    """One COSMIC data movement. Serialised with camelCase names over HTTP."""
    model_config = ConfigDict(populate_by_name=True)

    functional_user: str = Field(default="", alias="functionalUser")
    trigger_event: str = Field(default="", alias="triggerEvent")
    functional_process: str = Field(default="", alias="functionalProcess")
    sub_process_desc: str = Field(default="", alias="subProcessDesc")
    data_movement_type: str = Field(default="", alias="dataMovementType")
    data_group: str = Field(default="", alias="dataGroup")
    data_attributes: str = Field(default="", alias="dataAttributes")


class RoundReply(BaseModel):
    """Reply of one incremental-analysis round."""
    model_config = ConfigDict(populate_by_name=True)

    reply: str
    round: int
    is_done: bool = Field(default=False, alias="isDone")
    completed_functions: int = Field(default=0, alias="completedFunctions")
    target_functions: int = Field(default=0, alias="targetFunctions")


class AnalyzeRoundRequest(BaseModel):
    """Input of one incremental-analysis round."""
    model_config = ConfigDict(populate_by_name=True)

    document_content: str = Field(alias="documentContent")
    previous_results: list[DataMovementRow] = Field(default_factory=list, alias="previousResults")
    round: int = Field(default=1, ge=1)
    target_functions: int = Field(default=30, gt=0, alias="targetFunctions")


class AnalysisResult(BaseModel):
    """Outcome of a whole Round Controller run."""
    rows: list[DataMovementRow] = Field(default_factory=list)
    rounds: int = 0
    distinct_processes: int = 0
    reached_target: bool = False
    stop_reason: StopReason = StopReason.MAX_ROUNDS
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    def type_counts(self) -> dict[str, int]:
        counts = {t.value: 0 for t in MovementType}
        for row in self.rows:
            if row.data_movement_type in counts:
                counts[row.data_movement_type] += 1
        return counts


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------

class ChapterDescriptor(BaseModel):
    key: str
    display_name: str
    chapter_number: int
    skip_enhance: bool = False


class ChapterTemplate(BaseModel):
    """An ordered chapter sequence plus its catalogue metadata."""
    template_id: int
    name: str
    description: str = ""
    chapters: list[ChapterDescriptor]
    features: list[str] = Field(default_factory=list)

    @property
    def total_rounds(self) -> int:
        return sum(1 if c.skip_enhance else 2 for c in self.chapters)


class GenerationRound(BaseModel):
    """One streamed call of the Chapter Pipeline."""
    index: int = Field(ge=1)
    phase: RoundPhase
    chapter_key: str
    accumulated_text: str = ""


class SpecResult(BaseModel):
    """Outcome of a Chapter Pipeline run; ``document`` is always the best-effort integration."""
    chapters: dict[str, str] = Field(default_factory=dict)
    document: str = ""
    rounds_completed: int = 0
    total_rounds: int = 0
    state: PipelineState = PipelineState.IDLE
    error: str | None = None


# ---------------------------------------------------------------------------
# Documents & images
# ---------------------------------------------------------------------------

class ExtractedImage(BaseModel):
    """An image pulled out of an uploaded .docx."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    filename: str
    mime_type: str = Field(default="image/png", alias="mimeType")
    base64: str = ""
    data_url: str = Field(default="", alias="dataUrl")
    size: int = 0
    index: int = 0
    inferred_type: str = Field(default="general", alias="inferredType")
    suggested_section: str = Field(default="", alias="suggestedSection")
    description: str = ""
    content_type: str = Field(default="", alias="contentType")
    suggested_title: str = Field(default="", alias="suggestedTitle")


class ImageAnalysis(BaseModel):
    """LLM re-classification of one image."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    filename: str = ""
    content_type: str = Field(default="", alias="contentType")
    suggested_section: str = Field(default="", alias="suggestedSection")
    suggested_title: str = Field(default="", alias="suggestedTitle")
    description: str = ""


class ImageAnalysisReport(BaseModel):
    images: list[ImageAnalysis] = Field(default_factory=list)


class ChapterRoundRequest(BaseModel):
    """Input of one Chapter Pipeline round.

    ``previous_content`` is the integrated document so far for a generate
    round, and this chapter's draft for an enhance round.
    """
    model_config = ConfigDict(populate_by_name=True)

    document_content: str = Field(alias="documentContent")
    previous_content: str = Field(default="", alias="previousContent")
    images: list[ExtractedImage] = Field(default_factory=list)
    round: int = Field(default=1, ge=1)
    total_rounds: int | None = Field(default=None, alias="totalRounds")


class UploadResult(BaseModel):
    """Text (and images) extracted from an uploaded requirement document."""
    model_config = ConfigDict(populate_by_name=True)

    text: str
    html: str = ""
    filename: str
    file_size: int = Field(default=0, alias="fileSize")
    word_count: int = Field(default=0, alias="wordCount")
    doc_id: str | None = Field(default=None, alias="docId")
    images: list[ExtractedImage] = Field(default_factory=list)


class RequirementAnalysis(BaseModel):
    """Structured pre-analysis produced before one-shot spec generation."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    background: str = ""
    stakeholders: list[str] = Field(default_factory=list)
    business_goals: list[str] = Field(default_factory=list, alias="businessGoals")
    modules: list[dict[str, str] | str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    note: str = ""


class DiagramResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mermaid_code: str = Field(alias="mermaidCode")
    image: str | None = Field(default=None, description="data: URL of the rendered image")
    image_format: str = Field(default="svg", alias="imageFormat")
    attempts: int = 0
    placeholder_used: bool = Field(default=False, alias="placeholderUsed")
    analysis: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

class ContentEvent(BaseModel):
    kind: Literal["content"] = "content"
    content: str


class PhaseEvent(BaseModel):
    """Progress marker; any extra keys (round, chapterKey, analyzedImages...) are kept."""
    model_config = ConfigDict(extra="allow")

    kind: Literal["phase"] = "phase"
    phase: str
    message: str = ""


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    error: str


class DoneEvent(BaseModel):
    kind: Literal["done"] = "done"


StreamEvent = Annotated[
    Union[ContentEvent, PhaseEvent, ErrorEvent, DoneEvent],
    Field(discriminator="kind"),
]
