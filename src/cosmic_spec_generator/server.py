"""FastAPI application exposing the COSMIC split, spec generation and diagram APIs.

Create the app with ``create_app(context)``; all state lives on the
``AppContext`` so tests can inject a fake LLM gateway.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from . import service
from .agents.chapter_writer import TEMPLATES
from .errors import DiagramRenderError, LLMNotConfiguredError, UploadError
from .models import (
    AnalyzeRoundRequest,
    ChapterRoundRequest,
    DataMovementRow,
    ExtractedImage,
    StreamEvent,
)
from .service import AppContext
from .tools.diagram import mime_for_format
from .tools.exporters import DOC_MIME, XLSX_MIME, content_disposition, markdown_to_word_html, rows_to_xlsx
from .tools.sse import SSE_HEADERS, format_sse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConfigUpdate(_Body):
    api_key: str | None = Field(default=None, alias="apiKey")
    base_url: str | None = Field(default=None, alias="baseUrl")
    model: str | None = None


class ChatMessage(_Body):
    role: str
    content: str


class ChatRequest(_Body):
    messages: list[ChatMessage] = Field(default_factory=list)
    document_content: str = Field(default="", alias="documentContent")


class ParseTableRequest(_Body):
    markdown: str = ""


class ExportExcelRequest(_Body):
    table_data: list[DataMovementRow] = Field(default_factory=list, alias="tableData")
    filename: str | None = None


class ExportWordRequest(_Body):
    content: str = ""
    filename: str | None = None
    title: str | None = None
    images: list[ExtractedImage] = Field(default_factory=list)


class SpecGenerateRequest(_Body):
    document_content: str = Field(alias="documentContent")
    previous_content: str = Field(default="", alias="previousContent")
    section: str = "all"
    images: list[ExtractedImage] = Field(default_factory=list)


class SpecContinueRequest(_Body):
    document_content: str = Field(alias="documentContent")
    previous_content: str = Field(default="", alias="previousContent")
    target_section: str | None = Field(default=None, alias="targetSection")


class DiagramGenerateRequest(_Body):
    document_content: str = Field(default="", alias="documentContent")
    diagram_type: str = Field(default="layered", alias="diagramType")
    output_format: str = Field(default="svg", alias="outputFormat")


class DiagramSourceRequest(_Body):
    mermaid_code: str = Field(default="", alias="mermaidCode")
    output_format: str = Field(default="svg", alias="outputFormat")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def _sse(events: Iterable[StreamEvent]) -> StreamingResponse:
    def _frames() -> Iterator[str]:
        for event in events:
            yield format_sse(event)

    return StreamingResponse(_frames(), media_type="text/event-stream", headers=SSE_HEADERS)


def _dump_images(images: list[ExtractedImage]) -> list[dict[str, Any]]:
    return [img.model_dump(by_alias=True, include={"id", "filename", "mime_type", "data_url",
                                                   "inferred_type", "suggested_section", "description"})
            for img in images]


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(context: AppContext) -> FastAPI:
    app = FastAPI(title="COSMIC Spec Generator")
    app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=context.config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LLMNotConfiguredError)
    async def _not_configured(request: Request, exc: LLMNotConfiguredError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(UploadError)
    async def _upload_failed(request: Request, exc: UploadError) -> JSONResponse:
        return _error(400, str(exc))

    # -- status & config ------------------------------------------------------

    @app.get("/api/health")
    def get_health() -> dict[str, Any]:
        return service.health(context)

    @app.post("/api/config")
    def update_config(body: ConfigUpdate) -> dict[str, Any]:
        context.update_endpoint(api_key=body.api_key, base_url=body.base_url, model=body.model)
        return {"success": True, "message": "API配置已更新"}

    # -- documents ------------------------------------------------------------

    @app.post("/api/parse-word")
    def parse_word(file: UploadFile | None = File(default=None)) -> Any:
        if file is None or not file.filename:
            return _error(400, "请上传文件")
        max_bytes = context.config.server.max_upload_mb * 1024 * 1024
        # at most one byte past the limit
        result = service.handle_upload(context, file.filename, file.file.read(max_bytes + 1))
        return {
            "success": True,
            "text": result.text,
            "html": result.html,
            "filename": result.filename,
            "fileSize": result.file_size,
            "wordCount": result.word_count,
            "docId": result.doc_id,
            "images": _dump_images(result.images),
            "imageCount": len(result.images),
        }

    @app.get("/api/images/{doc_id}")
    def get_images(doc_id: str) -> Any:
        images = context.images.get(doc_id)
        if images is None:
            return _error(404, "图片缓存已过期或不存在")
        return {"success": True, "images": [img.model_dump(by_alias=True) for img in images]}

    # -- COSMIC split ---------------------------------------------------------

    @app.post("/api/chat")
    def post_chat(body: ChatRequest) -> Any:
        try:
            reply = service.chat(context, [m.model_dump() for m in body.messages], body.document_content)
        except LLMNotConfiguredError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.error("Chat failed: %s", e)
            return _error(500, f"AI对话失败: {e}")
        return {"success": True, "reply": reply}

    @app.post("/api/chat/stream")
    def post_chat_stream(body: ChatRequest) -> StreamingResponse:
        return _sse(service.chat_stream(context, [m.model_dump() for m in body.messages], body.document_content))

    @app.post("/api/continue-analyze")
    def post_continue_analyze(body: AnalyzeRoundRequest) -> Any:
        try:
            reply = service.continue_analyze(context, body)
        except LLMNotConfiguredError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.error("Analysis round %d failed: %s", body.round, e)
            return _error(500, f"分析失败: {e}")
        return {"success": True, **reply.model_dump(by_alias=True)}

    @app.post("/api/parse-table")
    def post_parse_table(body: ParseTableRequest) -> Any:
        if not body.markdown:
            return _error(400, "无Markdown内容")
        rows = service.parse_table(context, body.markdown)
        if not rows:
            return _error(400, "未找到有效的Markdown表格")
        return {"success": True, "tableData": [row.model_dump(by_alias=True) for row in rows]}

    # -- exports --------------------------------------------------------------

    @app.post("/api/export-excel")
    def export_excel(body: ExportExcelRequest) -> Response:
        if not body.table_data:
            return _error(400, "无有效数据可导出")
        name = f"{body.filename or 'cosmic_result'}.xlsx"
        return Response(
            content=rows_to_xlsx(body.table_data),
            media_type=XLSX_MIME,
            headers={"Content-Disposition": content_disposition(name)},
        )

    @app.post("/api/export-word")
    def export_word(body: ExportWordRequest) -> Response:
        if not body.content:
            return _error(400, "无内容可导出")
        html = markdown_to_word_html(
            body.content,
            title=body.title or "需求规格说明书",
            images=body.images,
            kroki_base=context.config.kroki_url,
        )
        name = f"{body.filename or '需求规格说明书'}.doc"
        return Response(
            content=html.encode("utf-8"),
            media_type=f"{DOC_MIME}; charset=utf-8",
            headers={"Content-Disposition": content_disposition(name)},
        )

    # -- requirement specification --------------------------------------------

    @app.post("/api/requirement-spec/generate")
    def spec_generate(body: SpecGenerateRequest) -> StreamingResponse:
        return _sse(service.generate_spec_stream(
            context, body.document_content, body.images,
            section=body.section, previous=body.previous_content,
        ))

    @app.post("/api/requirement-spec/continue")
    def spec_continue(body: SpecContinueRequest) -> StreamingResponse:
        return _sse(service.continue_spec_stream(
            context, body.document_content, body.previous_content, body.target_section,
        ))

    def _chapter_round(template_id: int, body: ChapterRoundRequest) -> Response:
        try:
            events = service.stream_chapter_round(context, template_id, body)
        except ValueError as e:
            return _error(400, str(e))
        return _sse(events)

    @app.post("/api/requirement-spec/enhance")
    def spec_enhance(body: ChapterRoundRequest) -> Response:
        return _chapter_round(1, body)

    @app.post("/api/requirement-spec/template2/enhance")
    def spec_template2_enhance(body: ChapterRoundRequest) -> Response:
        return _chapter_round(2, body)

    @app.get("/api/requirement-spec/templates")
    def list_templates() -> dict[str, Any]:
        return {
            "success": True,
            "templates": [
                {
                    "id": t.template_id,
                    "name": t.name,
                    "description": t.description,
                    "chapters": [c.display_name for c in t.chapters],
                    "totalRounds": t.total_rounds,
                    "features": t.features,
                }
                for t in TEMPLATES.values()
            ],
        }

    # -- diagrams ---------------------------------------------------------------

    @app.post("/api/diagram/generate")
    def diagram_generate(body: DiagramGenerateRequest) -> Any:
        try:
            result, reply = service.generate_diagram(context, body.document_content, body.output_format)
        except LLMNotConfiguredError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.error("Diagram generation failed: %s", e)
            return _error(500, f"架构图生成失败: {e}")
        return {
            "success": True,
            "mermaidCode": result.mermaid_code,
            "imageUrl": result.image,
            "imageFormat": result.image_format,
            "attempts": result.attempts,
            "placeholderUsed": result.placeholder_used,
            "analysis": result.analysis,
            "aiResponse": reply[:2000],
        }

    @app.post("/api/diagram/render")
    def diagram_render(body: DiagramSourceRequest) -> Response:
        if not body.mermaid_code:
            return _error(400, "请提供Mermaid代码")
        try:
            image, _, _ = service.render_diagram(context, body.mermaid_code, body.output_format)
        except DiagramRenderError as e:
            return _error(500, str(e))
        return Response(content=image, media_type=mime_for_format(body.output_format))

    @app.post("/api/diagram/url")
    def diagram_url(body: DiagramSourceRequest) -> Any:
        if not body.mermaid_code:
            return _error(400, "请提供Mermaid代码")
        return {"success": True, "url": service.diagram_url(context, body.mermaid_code, body.output_format)}

    return app
