"""Tests for tools/dedup.py — data group / attribute uniqueness."""

from __future__ import annotations

import random

from cosmic_spec_generator.models import DataMovementRow
from cosmic_spec_generator.tools.dedup import (
    MAX_NAME_LENGTH,
    UniquenessEnforcer,
    clean_synthesized_name,
    enforce_uniqueness,
    local_attribute_name,
    local_group_name,
    shuffle_fields,
    split_attributes,
)
from cosmic_spec_generator.tools.table_parser import parse_markdown_table


def _row(group: str, attrs: str, desc: str = "读取订单", process: str = "查询订单") -> DataMovementRow:
    return DataMovementRow(
        functional_process=process, sub_process_desc=desc, data_movement_type="R",
        data_group=group, data_attributes=attrs,
    )


class FixedSynthesizer:
    """Always proposes the same names, forcing the collision fallbacks."""

    def __init__(self, group: str = "订单信息", attribute: str = "审核意见") -> None:
        self.group = group
        self.attribute = attribute

    def group_name(self, original, description, process, existing):
        return self.group

    def attribute_name(self, original, description, process, existing, group, *, seed=0):
        return self.attribute


def _assert_unique(rows: list[DataMovementRow]) -> None:
    groups = [r.data_group.lower() for r in rows]
    attrs = [r.data_attributes.lower() for r in rows]
    assert len(set(groups)) == len(groups)
    assert len(set(attrs)) == len(attrs)


class TestEnforcer:
    def test_first_occurrence_untouched(self):
        rows = [_row("订单信息", "订单ID, 状态"), _row("订单信息", "订单ID, 金额", desc="审核订单")]
        result = enforce_uniqueness(rows)
        assert result[0].data_group == "订单信息"
        assert result[1].data_group != "订单信息"
        assert result[0].data_attributes == "订单ID, 状态"
        assert result[1].data_attributes == "订单ID, 金额"

    def test_case_insensitive(self):
        rows = [_row("OrderInfo", "a, b"), _row("orderinfo", "A, B")]
        result = enforce_uniqueness(rows)
        _assert_unique(result)
        assert result[0].data_group == "OrderInfo"

    def test_duplicate_attributes_get_new_field(self):
        rows = [_row("订单表", "订单ID, 状态"), _row("订单明细", "订单ID, 状态", desc="查询订单明细")]
        result = enforce_uniqueness(rows)
        second = split_attributes(result[1].data_attributes)
        assert second[:2] == ["订单ID", "状态"]
        assert len(second) == 3

    def test_many_duplicates_all_unique(self):
        rows = [_row("订单信息", "订单ID, 状态", desc="读取订单") for _ in range(12)]
        result = enforce_uniqueness(rows)
        _assert_unique(result)

    def test_colliding_synthesizer_falls_back_to_suffix(self):
        rows = [_row("订单信息", "订单ID"), _row("订单信息", "订单ID"), _row("订单信息", "订单ID")]
        result = enforce_uniqueness(rows, FixedSynthesizer())
        _assert_unique(result)
        assert result[0].data_group == "订单信息"

    def test_repeated_attribute_proposal_suffixed(self):
        rows = [_row(f"组{i}", "订单ID") for i in range(3)]
        result = enforce_uniqueness(rows, FixedSynthesizer(attribute="审核意见"))
        assert result[1].data_attributes == "订单ID, 审核意见"
        assert result[2].data_attributes == "订单ID, 审核意见-2"

    def test_parsed_table_rows_unique(self):
        table = (
            "|功能用户|触发事件|功能过程|子过程描述|数据移动类型|数据组|数据属性|\n"
            "|---|---|---|---|---|---|---|\n"
            "|用户|点击|查询订单|读取订单|R|订单信息|订单ID, 状态|\n"
            "|用户|点击|审核订单|读取待审订单|R|订单信息|订单ID, 状态|\n"
        )
        result = enforce_uniqueness(parse_markdown_table(table))
        assert result[0].data_group == "订单信息"
        assert result[1].data_group != result[0].data_group
        _assert_unique(result)

    def test_registry_scoped_to_enforcer(self):
        enforcer = UniquenessEnforcer()
        enforcer.enforce([_row("订单信息", "a")])
        fresh = UniquenessEnforcer()
        assert fresh.enforce([_row("订单信息", "a")])[0].data_group == "订单信息"

    def test_shuffle_keeps_fields(self):
        rows = [_row("g1", "a, b, c"), _row("g2", "a, b, c")]
        result = enforce_uniqueness(rows, shuffle=True, rng=random.Random(7))
        assert set(split_attributes(result[1].data_attributes)) >= {"a", "b", "c"}
        assert len(split_attributes(result[1].data_attributes)) == 4


class TestLocalHeuristics:
    def test_group_name_uses_action_and_noun(self):
        assert local_group_name("订单信息", "查询 订单明细") == "订单信息查询订单明细"

    def test_group_name_without_description(self):
        assert local_group_name("订单信息", "") == "订单信息扩展表"

    def test_group_name_capped(self):
        assert len(local_group_name("很长的数据组名称" * 4, "审核")) <= MAX_NAME_LENGTH

    def test_attribute_name_varies_with_seed(self):
        a = local_attribute_name("订单ID", "审核订单", "订单信息", seed=0)
        b = local_attribute_name("订单ID", "审核订单", "订单信息", seed=1)
        assert a != b
        assert a.startswith("审核订单")

    def test_clean_synthesized_name(self):
        assert clean_synthesized_name('「订单审核记录」') == "订单审核记录"
        assert clean_synthesized_name('"（订单明细）"\n') == "订单明细"
        assert len(clean_synthesized_name("字" * 40)) == MAX_NAME_LENGTH


class TestHelpers:
    def test_split_attributes(self):
        assert split_attributes("a | b、c,d") == ["a", "b", "c", "d"]

    def test_shuffle_is_permutation(self):
        fields = list("abcdef")
        shuffled = shuffle_fields(fields, random.Random(1))
        assert sorted(shuffled) == fields
        assert fields == list("abcdef")
