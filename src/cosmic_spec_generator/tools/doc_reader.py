"""Read uploaded requirement documents (.docx / .txt / .md) and their images."""

from __future__ import annotations

import base64
import html
import io
import logging
import re
import zipfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import docx
from docx.opc.exceptions import PackageNotFoundError

from ..errors import UploadError
from ..models import ExtractedImage, UploadResult

if TYPE_CHECKING:
    from docx.document import Document

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".docx", ".doc", ".txt", ".md")
DEFAULT_MAX_BYTES = 50 * 1024 * 1024

# (pattern, type, suggested section, description); first match wins
_IMAGE_RULES: list[tuple[re.Pattern[str], str, str, str]] = [
    (re.compile(r"架构|系统|structure|arch|framework|topology|拓扑", re.I),
     "architecture", "4. 产品功能架构", "系统架构图"),
    (re.compile(r"流程|process|flow|业务|workflow|步骤", re.I),
     "flowchart", "3. 用户需求", "业务流程图"),
    (re.compile(r"界面|UI|页面|screen|原型|prototype|mockup|设计|design", re.I),
     "ui", "5. 功能需求-界面设计", "界面原型图"),
    (re.compile(r"数据|ER|model|表|database|实体|entity|schema", re.I),
     "data", "附录-数据字典", "数据模型图"),
    (re.compile(r"用例|usecase|actor|角色", re.I),
     "usecase", "3. 用户需求-用例图", "用例图"),
    (re.compile(r"时序|sequence|交互|interaction|通信", re.I),
     "sequence", "5. 功能需求-接口设计", "时序图"),
    (re.compile(r"部署|deploy|环境|server|服务器", re.I),
     "deployment", "6. 系统需求-部署要求", "部署架构图"),
]


def infer_image_type(filename: str, index: int) -> tuple[str, str, str]:
    """Guess (type, suggested section, description) from an image file name."""
    for pattern, kind, section, description in _IMAGE_RULES:
        if pattern.search(filename):
            return kind, section, description
    if index == 0:
        return "overview", "1. 概述", "概述图"
    return "general", "相关章节", "文档图片"


def extract_docx_images(document: Document) -> list[ExtractedImage]:
    """Collect the image parts related to the document body, ordered by part name."""
    parts = {}
    for rel in document.part.rels.values():
        if rel.is_external or "image" not in rel.reltype:
            continue
        parts[str(rel.target_part.partname)] = rel.target_part

    images: list[ExtractedImage] = []
    for partname in sorted(parts):
        part = parts[partname]
        filename = PurePosixPath(partname).name
        encoded = base64.b64encode(part.blob).decode("ascii")
        kind, section, description = infer_image_type(filename, len(images))
        images.append(ExtractedImage(
            id=f"img_{len(images) + 1}",
            filename=filename,
            mime_type=part.content_type,
            base64=encoded,
            data_url=f"data:{part.content_type};base64,{encoded}",
            size=len(part.blob),
            index=len(images),
            inferred_type=kind,
            suggested_section=section,
            description=description,
        ))

    if images:
        logger.info("Extracted %d images: %s", len(images),
                    ", ".join(f"{i.id}={i.inferred_type}" for i in images))
    return images


def read_docx(data: bytes) -> tuple[str, str, list[ExtractedImage]]:
    """Return (plain text, simple HTML, embedded images) for a .docx payload."""
    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise UploadError(
            f"Word文档解析失败: {e}。请确保文件是有效的.docx格式（不支持旧版.doc格式）"
        ) from e

    lines: list[str] = []
    html_parts: list[str] = []
    for para in document.paragraphs:
        text = para.text
        lines.append(text)
        if not text.strip():
            continue
        style = (para.style.name if para.style is not None else "") or ""
        level = re.match(r"Heading (\d)", style)
        tag = f"h{level.group(1)}" if level else "p"
        html_parts.append(f"<{tag}>{html.escape(text)}</{tag}>")

    for table in document.tables:
        html_parts.append("<table>")
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            lines.append("\t".join(cells))
            html_parts.append("<tr>" + "".join(f"<td>{html.escape(c)}</td>" for c in cells) + "</tr>")
        html_parts.append("</table>")

    return "\n".join(lines), "\n".join(html_parts), extract_docx_images(document)


def validate_upload(filename: str, size: int, *, max_bytes: int = DEFAULT_MAX_BYTES) -> str:
    """Check name and size of an upload; return the lower-case extension."""
    ext = Path(filename).suffix.lower()
    if size > max_bytes:
        raise UploadError(f"文件大小超过限制（最大{max_bytes // (1024 * 1024)}MB）")
    if ext not in ALLOWED_EXTENSIONS:
        raise UploadError(f"不支持的文件格式: {ext}，请上传 .docx, .txt 或 .md 文件")
    if ext == ".doc":
        raise UploadError("不支持旧版.doc格式，请将文件另存为.docx格式后重新上传")
    return ext


def parse_upload(filename: str, data: bytes, *, max_bytes: int = DEFAULT_MAX_BYTES) -> UploadResult:
    """Validate and read an uploaded document.

    Raises ``UploadError`` for rejected files; nothing is cached here.
    """
    ext = validate_upload(filename, len(data), max_bytes=max_bytes)
    images: list[ExtractedImage] = []
    if ext == ".docx":
        text, body_html, images = read_docx(data)
    else:
        text = data.decode("utf-8", errors="replace")
        body_html = f"<pre>{html.escape(text)}</pre>"

    if not text.strip():
        raise UploadError("文档内容为空，请检查文件是否正确")

    logger.info("Parsed %s (%d bytes, %d chars, %d images)", filename, len(data), len(text), len(images))
    return UploadResult(
        text=text,
        html=body_html,
        filename=filename,
        file_size=len(data),
        word_count=len(text),
        images=images,
    )


def read_document(path: str | Path) -> UploadResult:
    """Read a requirement document from disk (CLI entry)."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Document not found: {p}")
    return parse_upload(p.name, p.read_bytes())
