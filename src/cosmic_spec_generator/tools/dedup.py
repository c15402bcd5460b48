"""Uniqueness enforcement for ``data_group`` / ``data_attributes`` columns.

Within one parse, the first occurrence of a name wins and is never altered.
Later duplicates (case-insensitive) are rewritten: a data group is replaced
by a synthesised name, a data attribute list gets one synthesised field
appended. Synthesis goes through a ``NameSynthesizer``; the local heuristics
here are both the offline implementation and the fallback for the LLM one.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Protocol

from ..models import DataMovementRow

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 20

ACTION_WORDS = (
    "查询", "读取", "写入", "删除", "更新", "新增", "修改", "获取", "提交",
    "保存", "导出", "导入", "分析", "统计", "处理", "审核", "验证", "确认",
)
ATTR_SUFFIXES = ("标识", "编号", "类型", "参数", "版本", "状态", "配置", "属性", "字段", "值")

_DIGITS_RE = re.compile(r"\d")
_PUNCT_RE = re.compile(r"[，。、《》（）()？：；\-·]")
_GROUP_FILLER_RE = re.compile(r"[数据表信息记录]")
_ATTR_SPLIT_RE = re.compile(r"[|,、]")
_QUOTES_RE = re.compile(r"[\"'“”‘’`\r\n]")
_WRAPPERS = ("()", "（）", "[]", "【】", "《》", "「」")


# ---------------------------------------------------------------------------
# Local heuristics
# ---------------------------------------------------------------------------

def clean_synthesized_name(raw: str) -> str:
    """Strip quotes, newlines and wrapping brackets; cap to ``MAX_NAME_LENGTH``."""
    name = _QUOTES_RE.sub("", raw or "").strip()
    changed = True
    while changed and len(name) >= 2:
        changed = False
        for opener, closer in _WRAPPERS:
            if name.startswith(opener) and name.endswith(closer):
                name = name[1:-1].strip()
                changed = True
    return name[:MAX_NAME_LENGTH]


def _description_tokens(description: str) -> tuple[str, list[str]]:
    cleaned = _PUNCT_RE.sub(" ", _DIGITS_RE.sub("", description or "")).strip()
    return cleaned, cleaned.split()


def _first_action(cleaned: str) -> str:
    return next((word for word in ACTION_WORDS if word in cleaned), "")


def local_group_name(original: str, description: str = "") -> str:
    """Fuse *original* with the first action verb and noun-like token of *description*."""
    cleaned, tokens = _description_tokens(description)
    if not cleaned:
        return clean_synthesized_name(original + "扩展表")

    action = _first_action(cleaned)
    noun = next((t for t in tokens if len(t) >= 2 and t not in ACTION_WORDS), "")
    if action and noun:
        name = original + action + noun
    elif action:
        name = original + action + "表"
    elif noun:
        name = original + noun + "表"
    else:
        prefix = "".join(t[:3] for t in tokens[:2])
        name = original + (prefix or "扩展") + "表"
    return clean_synthesized_name(name)


def local_attribute_name(original: str, description: str = "", group: str = "", *, seed: int = 0) -> str:
    """Build one new field name from the description verb and the group keyword.

    The suffix is picked by ``seed`` so repeated collisions get different names.
    """
    cleaned, tokens = _description_tokens(description)
    action = _first_action(cleaned)
    keyword = _GROUP_FILLER_RE.sub("", group or "")[:4]
    suffix = ATTR_SUFFIXES[seed % len(ATTR_SUFFIXES)]

    if action and keyword:
        name = action + keyword + suffix
    elif action:
        name = action + original + suffix
    elif keyword:
        name = keyword + original[:4] + suffix
    else:
        prefix = "".join(t[:2] for t in tokens[:2])
        name = (prefix or "扩展") + original + suffix
    return clean_synthesized_name(name) or "扩展属性"


# ---------------------------------------------------------------------------
# Synthesizer protocol
# ---------------------------------------------------------------------------

class NameSynthesizer(Protocol):
    """Produces replacement names on collision. Implementations never raise."""

    def group_name(self, original: str, description: str, process: str, existing: list[str]) -> str: ...

    def attribute_name(
        self, original: str, description: str, process: str, existing: list[str], group: str, *, seed: int = 0,
    ) -> str: ...


class LocalNameSynthesizer:
    """Offline synthesizer built on the verb/noun heuristics."""

    def group_name(self, original: str, description: str, process: str, existing: list[str]) -> str:
        return local_group_name(original, description)

    def attribute_name(
        self, original: str, description: str, process: str, existing: list[str], group: str, *, seed: int = 0,
    ) -> str:
        return local_attribute_name(original, description, group, seed=seed)


# ---------------------------------------------------------------------------
# Registry & enforcer
# ---------------------------------------------------------------------------

@dataclass
class RegistryEntry:
    name: str
    source_description: str = ""


@dataclass
class UniquenessRegistry:
    """Case-insensitive name registries, scoped to one parse."""

    groups: dict[str, RegistryEntry] = field(default_factory=dict)
    attributes: dict[str, RegistryEntry] = field(default_factory=dict)

    @staticmethod
    def _key(name: str) -> str:
        return name.lower()

    def has_group(self, name: str) -> bool:
        return self._key(name) in self.groups

    def has_attributes(self, name: str) -> bool:
        return self._key(name) in self.attributes

    def add_group(self, name: str, description: str = "") -> None:
        self.groups[self._key(name)] = RegistryEntry(name, description)

    def add_attributes(self, name: str, description: str = "") -> None:
        self.attributes[self._key(name)] = RegistryEntry(name, description)

    def group_names(self) -> list[str]:
        return [e.name for e in self.groups.values()]

    def attribute_names(self) -> list[str]:
        return [e.name for e in self.attributes.values()]


def split_attributes(attributes: str) -> list[str]:
    return [part.strip() for part in _ATTR_SPLIT_RE.split(attributes) if part.strip()]


def shuffle_fields(fields: list[str], rng: random.Random | None = None) -> list[str]:
    """Fisher-Yates shuffle returning a new list."""
    rng = rng or random.Random()
    result = list(fields)
    for i in range(len(result) - 1, 0, -1):
        j = rng.randint(0, i)
        result[i], result[j] = result[j], result[i]
    return result


def _suffix_until_free(name: str, taken) -> str:
    candidate = name
    n = 2
    while taken(candidate):
        candidate = f"{name}-{n}"
        n += 1
    return candidate


class UniquenessEnforcer:
    """Sequential single-pass dedup of group and attribute names."""

    def __init__(
        self,
        synthesizer: NameSynthesizer | None = None,
        *,
        shuffle: bool = False,
        rng: random.Random | None = None,
    ) -> None:
        self.synthesizer = synthesizer or LocalNameSynthesizer()
        self.shuffle = shuffle
        self.rng = rng
        self.registry = UniquenessRegistry()
        self._attr_collisions = 0

    def _unique_group(self, row: DataMovementRow) -> str:
        original = row.data_group
        proposed = clean_synthesized_name(self.synthesizer.group_name(
            original, row.sub_process_desc, row.functional_process, self.registry.group_names(),
        ))
        if not proposed or self.registry.has_group(proposed):
            proposed = local_group_name(proposed or original, row.sub_process_desc)
        final = _suffix_until_free(proposed, self.registry.has_group)
        logger.info("Data group dedup: %r -> %r", original, final)
        return final

    def _unique_attributes(self, row: DataMovementRow, group: str) -> str:
        original = row.data_attributes
        seed = self._attr_collisions
        self._attr_collisions += 1
        new_field = clean_synthesized_name(self.synthesizer.attribute_name(
            original, row.sub_process_desc, row.functional_process,
            self.registry.attribute_names(), group, seed=seed,
        )) or local_attribute_name(original, row.sub_process_desc, group, seed=seed)

        fields = split_attributes(original)

        def _join(extra: str) -> str:
            combined = fields + [extra]
            if self.shuffle:
                combined = shuffle_fields(combined, self.rng)
            return ", ".join(combined)

        candidate = _join(new_field)
        n = 2
        while self.registry.has_attributes(candidate):
            candidate = _join(f"{new_field}-{n}")
            n += 1
        logger.info("Data attributes dedup: %r -> %r", original, candidate)
        return candidate

    def enforce_row(self, row: DataMovementRow) -> DataMovementRow:
        group = row.data_group
        if self.registry.has_group(group):
            group = self._unique_group(row)
        self.registry.add_group(group, row.sub_process_desc)

        attributes = row.data_attributes
        if self.registry.has_attributes(attributes):
            attributes = self._unique_attributes(row, group)
        self.registry.add_attributes(attributes, row.sub_process_desc)

        return row.model_copy(update={"data_group": group, "data_attributes": attributes})

    def enforce(self, rows: list[DataMovementRow]) -> list[DataMovementRow]:
        return [self.enforce_row(row) for row in rows]


def enforce_uniqueness(
    rows: list[DataMovementRow],
    synthesizer: NameSynthesizer | None = None,
    *,
    shuffle: bool = False,
    rng: random.Random | None = None,
) -> list[DataMovementRow]:
    """Return *rows* with duplicate data groups/attributes rewritten (fresh registry)."""
    return UniquenessEnforcer(synthesizer, shuffle=shuffle, rng=rng).enforce(rows)
