"""Markdown pipe-table -> ``DataMovementRow`` extraction (deterministic).

LLM output is often a slightly broken table: merged cells left blank, trailing
pipes missing, or a separator row split across two lines by the stream. The
parser tolerates all of these and never raises on malformed input.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from ..models import DataMovementRow, MovementType

logger = logging.getLogger(__name__)

MOVEMENT_TYPES = frozenset(t.value for t in MovementType)
CARRY_COLUMNS = ("functional_user", "trigger_event", "functional_process")

_SEPARATOR_RE = re.compile(r"^\|?\s*:?-+:?\s*(\|\s*:?-+:?\s*)*\|?\s*$")
_SEPARATOR_CHARS_RE = re.compile(r"^[|:\- \t]+$")
_WS_RE = re.compile(r"\s+")


@dataclass
class CarryForward:
    """Last non-empty value seen for each merged (carried) column."""

    last_seen: dict[str, str] = field(default_factory=lambda: dict.fromkeys(CARRY_COLUMNS, ""))

    def update(self, cells: list[str]) -> dict[str, str]:
        for idx, column in enumerate(CARRY_COLUMNS):
            value = cells[idx] if idx < len(cells) else ""
            if value:
                self.last_seen[column] = value
        return dict(self.last_seen)


def _is_separator_fragment(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and "-" in stripped and bool(_SEPARATOR_CHARS_RE.match(stripped))


def repair_split_separator(markdown: str) -> str:
    """Join a header separator row that the stream broke across a newline.

    ``|---|---|`` followed by ``---|`` (or ``|---|\\n---|---|``) becomes a
    single separator line. Only lines made entirely of ``|``, ``-``, ``:`` and
    blanks are merged.
    """
    lines = markdown.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    out: list[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        while (
            line.strip().startswith("|")
            and _is_separator_fragment(line)
            and i + 1 < len(lines)
            and _is_separator_fragment(lines[i + 1])
            and not lines[i + 1].strip().startswith("|")
        ):
            line = line.rstrip() + lines[i + 1].strip()
            i += 1
        out.append(line)
        i += 1
    return "\n".join(out)


def sanitize_text(value: str) -> str:
    """Replace hyphens with a middle dot and collapse whitespace runs."""
    return _WS_RE.sub(" ", value.replace("-", "·")).strip()


def normalize_cells(line: str) -> list[str]:
    """Split a table line into trimmed cells, keeping inner empty cells."""
    raw = line.strip().split("|")
    if raw and raw[0].strip() == "":
        raw = raw[1:]
    if raw and raw[-1].strip() == "":
        raw = raw[:-1]
    return [cell.strip() for cell in raw]


def is_separator_row(line: str) -> bool:
    return bool(_SEPARATOR_RE.match(line.strip()))


def table_lines(markdown: str) -> list[str]:
    """Return the lines that belong to a pipe table, after separator repair."""
    repaired = repair_split_separator(markdown)
    return [line for line in repaired.split("\n") if line.strip().startswith("|")]


def _locate_movement(cells: list[str]) -> tuple[str, str, str, str]:
    """Return (description, movement, group, attributes) for a row's cells."""
    desc = cells[3] if len(cells) > 3 else ""
    movement = cells[4] if len(cells) > 4 else ""
    group = cells[5] if len(cells) > 5 else ""
    attrs = cells[6] if len(cells) > 6 else ""

    if movement.upper() in MOVEMENT_TYPES:
        return desc, movement.upper(), group, attrs

    idx = next((i for i, c in enumerate(cells) if c.upper() in MOVEMENT_TYPES), -1)
    if idx == -1:
        return desc, movement.upper(), group, attrs

    movement = cells[idx].upper()
    if idx > 0 and cells[idx - 1]:
        desc = cells[idx - 1]
    if idx + 1 < len(cells) and cells[idx + 1]:
        group = cells[idx + 1]
    tail = " | ".join(c for c in cells[idx + 2:] if c)
    if tail:
        attrs = tail
    return desc, movement, group, attrs


def parse_markdown_table(markdown: str) -> list[DataMovementRow]:
    """Extract COSMIC rows from the first pipe table in *markdown*.

    Returns an empty list when no table with a header and separator row is
    present; callers treat that as "no table found".
    """
    lines = table_lines(markdown or "")
    if len(lines) < 3:
        logger.debug("No table found (%d pipe lines)", len(lines))
        return []
    if not is_separator_row(lines[1]):
        logger.debug("No separator row under table header: %r", lines[1][:80])
        return []

    carry = CarryForward()
    rows: list[DataMovementRow] = []
    for line in lines[2:]:
        if is_separator_row(line):
            continue
        cells = normalize_cells(line)
        if len(cells) < 4:
            logger.debug("Dropping short table row: %r", line[:80])
            continue

        carried = carry.update(cells)
        desc, movement, group, attrs = _locate_movement(cells)
        process = carried["functional_process"]

        if not group:
            group = f"{process or '功能过程'}·{desc or '数据'}"
        if not attrs:
            attrs = f"{process or '功能过程'}ID | {desc or '子过程'}字段 | 记录时间"

        rows.append(DataMovementRow(
            functional_user=carried["functional_user"],
            trigger_event=carried["trigger_event"],
            functional_process=process,
            sub_process_desc=desc,
            data_movement_type=movement,
            data_group=sanitize_text(group),
            data_attributes=sanitize_text(attrs),
        ))
    return rows


def distinct_processes(rows: list[DataMovementRow]) -> int:
    """Count distinct non-empty functional process names."""
    return len({r.functional_process for r in rows if r.functional_process})
