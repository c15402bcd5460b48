"""Excel and Word-compatible exports of COSMIC rows and generated documents."""

from __future__ import annotations

import html
import io
import logging
import re
from datetime import date
from urllib.parse import quote

import markdown
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from ..models import DataMovementRow, ExtractedImage
from .diagram import DEFAULT_KROKI_URL, clean_mermaid_code, kroki_url

logger = logging.getLogger(__name__)

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
DOC_MIME = "application/msword"
SHEET_TITLE = "Cosmic拆分结果"

# (header, row attribute, column width)
EXCEL_COLUMNS: list[tuple[str, str, int]] = [
    ("功能用户", "functional_user", 25),
    ("触发事件", "trigger_event", 15),
    ("功能过程", "functional_process", 30),
    ("子过程描述", "sub_process_desc", 35),
    ("数据移动类型", "data_movement_type", 15),
    ("数据组", "data_group", 25),
    ("数据属性", "data_attributes", 50),
]

_HEADER_FILL = PatternFill(fill_type="solid", fgColor="FF4472C4")
_STRIPE_FILL = PatternFill(fill_type="solid", fgColor="FFF2F2F2")
_THIN = Side(style="thin")
_BORDER = Border(top=_THIN, left=_THIN, bottom=_THIN, right=_THIN)

_IMAGE_REF_RE = re.compile(r"\[插入图片:\s*img_(\d+)\]")
_MERMAID_BLOCK_RE = re.compile(r"```mermaid\n([\s\S]*?)```")


def content_disposition(filename: str) -> str:
    """RFC 5987 attachment header that survives non-ASCII names."""
    return f"attachment; filename*=UTF-8''{quote(filename, safe='')}"


# ---------------------------------------------------------------------------
# Excel
# ---------------------------------------------------------------------------

def rows_to_xlsx(rows: list[DataMovementRow]) -> bytes:
    """Render rows as a styled single-sheet workbook."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE

    ws.append([header for header, _, _ in EXCEL_COLUMNS])
    for col_idx, (_, _, width) in enumerate(EXCEL_COLUMNS, 1):
        ws.column_dimensions[ws.cell(row=1, column=col_idx).column_letter].width = width
    for cell in ws[1]:
        cell.font = Font(bold=True, color="FFFFFFFF")
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(vertical="center", horizontal="center")
        cell.border = _BORDER
    ws.row_dimensions[1].height = 25

    for index, row in enumerate(rows):
        ws.append([getattr(row, attr) or "" for _, attr, _ in EXCEL_COLUMNS])
        for cell in ws[ws.max_row]:
            if index % 2 == 1:
                cell.fill = _STRIPE_FILL
            cell.alignment = Alignment(vertical="center", wrap_text=True)
            cell.border = _BORDER

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Word (HTML .doc)
# ---------------------------------------------------------------------------

def _mermaid_to_img(source: str, counter: list[int], kroki_base: str) -> str:
    counter[0] += 1
    url = kroki_url(clean_mermaid_code(source), fmt="png", base_url=kroki_base)
    return (
        '\n\n<div style="text-align:center;margin:20pt 0;page-break-inside:avoid;">'
        f'<img src="{url}" alt="图表{counter[0]}" style="max-width:95%;height:auto;"/>'
        f'<p style="font-size:9pt;color:#666;font-style:italic;">图表 {counter[0]}</p></div>\n\n'
    )


def _insert_images(body: str, images: list[ExtractedImage]) -> tuple[str, int]:
    used: set[int] = set()

    def _replace(m: re.Match) -> str:
        idx = int(m.group(1)) - 1
        if 0 <= idx < len(images) and images[idx].data_url:
            used.add(idx)
            img = images[idx]
            return (
                '<div style="text-align:center;margin:15pt 0;page-break-inside:avoid;">'
                f'<img src="{img.data_url}" alt="文档图片{idx + 1}" '
                'style="max-width:450px;width:80%;height:auto;border:1px solid #ddd;"/>'
                f'<p style="font-size:10pt;color:#666;">图{idx + 1}: {html.escape(img.filename or "文档图片")}</p></div>'
            )
        return m.group(0)

    return _IMAGE_REF_RE.sub(_replace, body), len(used)


def markdown_to_word_html(
    content: str,
    *,
    title: str = "需求规格说明书",
    images: list[ExtractedImage] | None = None,
    kroki_base: str = DEFAULT_KROKI_URL,
) -> str:
    """Convert a generated Markdown document to Word-openable HTML.

    Mermaid blocks become Kroki image links and ``[插入图片: img_N]``
    markers are replaced by the uploaded image N; unknown markers stay as text.
    """
    images = images or []
    counter = [0]
    text = content.replace("\r\n", "\n")
    text = _MERMAID_BLOCK_RE.sub(lambda m: _mermaid_to_img(m.group(1), counter, kroki_base), text)
    body = markdown.markdown(text, extensions=["tables", "fenced_code", "sane_lists"])
    body, used = _insert_images(body, images)
    if images and used < len(images):
        logger.info("Word export: %d images placed, %d unused", used, len(images) - used)

    today = date.today()
    return f"""<!DOCTYPE html>
<html xmlns:o="urn:schemas-microsoft-com:office:office"
      xmlns:w="urn:schemas-microsoft-com:office:word"
      xmlns="http://www.w3.org/TR/REC-html40">
<head>
<meta charset="utf-8">
<title>{html.escape(title)}</title>
<style>
  @page {{ size: A4; margin: 2.54cm 3.17cm; }}
  body {{ font-family: "微软雅黑", "Microsoft YaHei", "SimSun", sans-serif; font-size: 12pt; line-height: 1.6; }}
  table {{ border-collapse: collapse; width: 100%; }}
  th, td {{ border: 1px solid #999; padding: 4pt 6pt; }}
  th {{ background: #4472C4; color: #fff; }}
</style>
</head>
<body>
<h1 style="text-align:center;">{html.escape(title)}</h1>
<p style="text-align:center;color:#666;">{today.year}年{today.month}月{today.day}日</p>
{body}
<p style="text-align:center;color:#aaa;font-size:9pt;">{len(content)} 字 | {len(images)} 张图片 | {counter[0]} 个图表</p>
</body>
</html>
"""
