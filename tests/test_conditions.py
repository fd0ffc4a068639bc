"""Tests for the equation condition evaluator."""
import math

import pytest

from utils.conditions import evaluate_equation, get_nested_value, is_present, to_number


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"
        assert get_nested_value(data, "order.items") == 3

    def test_array_index(self):
        data = {"orders": [{"sku": "A1"}, {"sku": "B2"}]}
        assert get_nested_value(data, "orders[1].sku") == "B2"
        assert get_nested_value(data, "orders.0.sku") == "A1"

    def test_json_path_prefix(self):
        assert get_nested_value({"data": {"id": 7}}, "$.data.id") == 7

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None

    def test_index_out_of_range(self):
        assert get_nested_value({"items": [1]}, "items[3]") is None

    def test_through_scalar(self):
        assert get_nested_value({"a": "text"}, "a.b") is None


class TestCoercion:
    def test_to_number(self):
        assert to_number(3) == 3.0
        assert to_number("4.5") == 4.5
        assert to_number(" 10 ") == 10.0
        assert to_number(True) == 1.0
        assert math.isnan(to_number("abc"))
        assert to_number(None) == 0.0
        assert to_number("") == 0.0
        assert to_number("   ") == 0.0

    def test_is_present(self):
        assert is_present("x")
        assert is_present(0)
        assert is_present(False)
        assert not is_present("")
        assert not is_present(None)


class TestExists:
    def test_exists(self):
        assert evaluate_equation("{{email}} exists", {"email": "a@b.c"})
        assert not evaluate_equation("{{email}} exists", {"email": ""})
        assert not evaluate_equation("{{email}} exists", {})

    def test_not_exists(self):
        assert evaluate_equation("{{email}} not exists", {"email": None})
        assert not evaluate_equation("{{email}} NOT EXISTS", {"email": "x"})


class TestComparisons:
    def test_equality_is_case_insensitive(self):
        assert evaluate_equation('{{status}} == "Active"', {"status": "active"})
        assert not evaluate_equation('{{status}} != "ACTIVE"', {"status": "active"})

    def test_numeric(self):
        assert evaluate_equation("{{n}} >= 3", {"n": 3})
        assert evaluate_equation("{{n}} > 2", {"n": "3"})
        assert evaluate_equation("{{n}} < 10", {"n": 9.5})
        assert not evaluate_equation("{{n}} <= 2", {"n": 3})

    def test_unset_counter_compares_as_zero(self):
        assert evaluate_equation("{{attempts}} < 3", {"attempts": ""})
        assert evaluate_equation("{{attempts}} < 3", {})
        assert not evaluate_equation("{{attempts}} >= 1", {"attempts": None})

    def test_nan_comparison_is_false(self):
        assert not evaluate_equation("{{n}} >= 3", {"n": "abc"})
        assert not evaluate_equation("{{n}} < 3", {"n": "abc"})

    def test_contains(self):
        assert evaluate_equation('{{user_input}} CONTAINS "yes"', {}, "Yes please")
        assert not evaluate_equation('{{user_input}} contains "yes"', {}, "no thanks")

    def test_not_contains(self):
        assert evaluate_equation("{{user_input}} NOT CONTAINS 'cancel'", {}, "keep it")
        assert not evaluate_equation("{{user_input}} not contains 'cancel'", {}, "please CANCEL")

    def test_right_side_is_substituted(self):
        assert evaluate_equation('{{balance}} > {{limit}}', {"balance": 500, "limit": "100"})
        assert evaluate_equation('{{a}} == "{{b}}"', {"a": "x", "b": "X"})

    def test_user_input_argument_wins(self):
        assert evaluate_equation('{{user_input}} == "new"', {"user_input": "old"}, "new")

    def test_booleans_compare_as_text(self):
        assert evaluate_equation('{{_function_success}} == true', {"_function_success": True})


class TestPermissiveFailure:
    @pytest.mark.parametrize("condition", [
        "",
        "gibberish",
        "{{n}} ~= 3",
        "{{n}}",
        "n > 3",
    ])
    def test_malformed_is_false(self, condition):
        assert evaluate_equation(condition, {"n": 5}) is False

    def test_bare_true_literal(self):
        assert evaluate_equation("true", {})
        assert evaluate_equation("{{flag}}", {"flag": True})
        assert not evaluate_equation("false", {})

    def test_ordering_is_stable(self):
        results = {evaluate_equation("{{n}} > 1", {"n": 2}) for _ in range(20)}
        assert results == {True}
