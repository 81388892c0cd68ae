"""Tests for postback field extraction."""

import pytest

from postback_tracker.ingest.extractor import extract_fields, map_sum, parse_decimal
from postback_tracker.partners.registry import PartnerConfig, SumMappingRule


def make_config(**overrides) -> PartnerConfig:
    values = {
        "id": "acme",
        "name": "Acme",
        "clickid_keys": ("clickid", "cid"),
        "sum_keys": ("sum", "payout"),
    }
    values.update(overrides)
    return PartnerConfig(**values)


class TestParseDecimal:
    """Test decimal parsing."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("5", 5.0),
            ("2.50", 2.5),
            (" 3 ", 3.0),
            ("-1.5", -1.5),
            (".5", 0.5),
            ("1e3", 1000.0),
            (7, 7.0),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_decimal(raw) == expected

    @pytest.mark.parametrize("raw", ["abc", "", "nan", "inf", "1_000", "0x10", "1,5", None, True])
    def test_invalid(self, raw):
        assert parse_decimal(raw) is None


class TestExtractFields:
    """Test click id / sum / extra param extraction."""

    def test_basic_query(self):
        fields = extract_fields(make_config(), {"pid": "acme", "clickid": "xyz", "sum": "5"}, {})

        assert fields.click_id == "xyz"
        assert fields.sum == 5.0
        assert fields.mapped_sum == 0.0
        assert fields.extra_params == {}

    def test_first_listed_key_wins_regardless_of_param_order(self):
        query = {"cid": "second", "clickid": "first"}

        fields = extract_fields(make_config(), query, {})

        assert fields.click_id == "first"

    def test_query_checked_before_body_for_each_key(self):
        fields = extract_fields(make_config(), {"cid": "from-query"}, {"clickid": "from-body"})

        # "clickid" is listed first, so the body value wins over query "cid"
        assert fields.click_id == "from-body"

        fields = extract_fields(make_config(), {"clickid": "q"}, {"clickid": "b"})
        assert fields.click_id == "q"

    def test_click_id_is_trimmed(self):
        fields = extract_fields(make_config(), {"clickid": "  xyz  "}, {})
        assert fields.click_id == "xyz"

    def test_missing_click_id_is_none(self):
        fields = extract_fields(make_config(), {"sum": "1"}, {})
        assert fields.click_id is None

    def test_sum_from_body(self):
        fields = extract_fields(make_config(), {}, {"payout": "12.5"})
        assert fields.sum == 12.5

    def test_invalid_sum_is_null(self):
        fields = extract_fields(make_config(), {"sum": "abc"}, {})

        assert fields.sum is None
        assert fields.mapped_sum == 0.0

    def test_first_present_sum_key_decides_even_if_invalid(self):
        fields = extract_fields(make_config(), {"sum": "oops", "payout": "3"}, {})
        assert fields.sum is None

    def test_list_values_use_first_element(self):
        fields = extract_fields(make_config(), {"clickid": ["a", "b"], "sum": ["2", "9"]}, {})

        assert fields.click_id == "a"
        assert fields.sum == 2.0

    def test_extra_params_exclude_reserved_keys(self):
        query = {"pid": "acme", "clickid": "xyz", "cid": "other", "sum": "1", "geo": "US"}
        body = {"payout": "2", "offer": "42"}

        fields = extract_fields(make_config(), query, body)

        assert fields.extra_params == {"geo": "US", "offer": "42"}

    def test_body_wins_for_colliding_extra_params(self):
        fields = extract_fields(make_config(), {"geo": "US"}, {"geo": "DE"})
        assert fields.extra_params == {"geo": "DE"}

    def test_extra_params_keep_lists_verbatim(self):
        fields = extract_fields(make_config(), {"tag": ["a", "b"]}, {})
        assert fields.extra_params == {"tag": ["a", "b"]}

    def test_custom_partner_id_key(self):
        fields = extract_fields(make_config(), {"partner": "acme", "pid": "x"}, {}, partner_id_key="partner")
        assert fields.extra_params == {"pid": "x"}


class TestSumMapping:
    """Test sum mapping rules."""

    RULES = (
        SumMappingRule(from_value="1", to_value="10"),
        SumMappingRule(from_value="2", to_value="20"),
    )

    def test_matching_rule(self):
        config = make_config(sum_mapping=self.RULES)

        fields = extract_fields(config, {"sum": "2.0"}, {})

        assert fields.sum == 2.0
        assert fields.mapped_sum == 20.0

    def test_no_match_maps_to_zero(self):
        config = make_config(sum_mapping=self.RULES)

        fields = extract_fields(config, {"sum": "3.0"}, {})

        assert fields.sum == 3.0
        assert fields.mapped_sum == 0.0

    def test_first_matching_rule_wins(self):
        rules = (
            SumMappingRule(from_value="5", to_value="50"),
            SumMappingRule(from_value="5.0", to_value="99"),
        )
        assert map_sum(5.0, rules) == 50.0

    def test_unparseable_rules_are_skipped(self):
        rules = (
            SumMappingRule(from_value="x", to_value="1"),
            SumMappingRule(from_value="5", to_value="y"),
            SumMappingRule(from_value="5", to_value="7"),
        )
        assert map_sum(5.0, rules) == 7.0

    def test_null_sum_maps_to_zero(self):
        assert map_sum(None, self.RULES) == 0.0
