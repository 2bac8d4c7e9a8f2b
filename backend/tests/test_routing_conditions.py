"""Tests for the routing condition evaluator."""

from ouvidoria.routing.conditions import build_facts, evaluate


def facts(text="Poste de luz quebrado na rua", channel="whatsapp"):
    return build_facts(text, channel)


class TestLeafOperators:
    def test_contains_is_case_insensitive(self):
        assert evaluate({"field": "message.text", "op": "contains", "value": "POSTE"}, facts())
        assert not evaluate({"field": "message.text", "op": "contains", "value": "buraco"}, facts())

    def test_eq_and_ne(self):
        assert evaluate({"field": "channel", "op": "eq", "value": "whatsapp"}, facts())
        assert evaluate({"field": "channel", "op": "ne", "value": "web"}, facts())

    def test_regex(self):
        assert evaluate({"field": "message.text", "op": "regex", "value": r"poste\s+de\s+luz"}, facts())

    def test_invalid_regex_does_not_match(self):
        assert not evaluate({"field": "message.text", "op": "regex", "value": "(unclosed"}, facts())

    def test_in_and_not_in_trim_items(self):
        assert evaluate({"field": "channel", "op": "in", "value": "web , whatsapp"}, facts())
        assert not evaluate({"field": "channel", "op": "not_in", "value": "instagram,  whatsapp "}, facts())
        assert evaluate({"field": "channel", "op": "in", "value": ["web", "whatsapp"]}, facts())

    def test_unresolved_field_never_equals_empty(self):
        assert not evaluate({"field": "citizen.age", "op": "eq", "value": ""}, facts())
        assert not evaluate({"field": "citizen.age", "op": "in", "value": "a,,b"}, facts())
        assert evaluate({"field": "citizen.age", "op": "ne", "value": ""}, facts())
        assert evaluate({"field": "citizen.age", "op": "not_in", "value": "a,,b"}, facts())
        assert not evaluate({"field": "message.text", "op": "eq", "value": ""}, facts(text=None))

    def test_exists(self):
        assert evaluate({"field": "message.text", "op": "exists"}, facts())
        assert not evaluate({"field": "message.text", "op": "exists"}, facts(text=None))

    def test_numeric_comparison_with_non_number_is_false(self):
        assert not evaluate({"field": "message.text", "op": "gt", "value": 3}, facts())
        assert evaluate({"field": "message.text", "op": "gte", "value": 10}, facts(text="12"))
        assert evaluate({"field": "message.text", "op": "lt", "value": "10"}, facts(text="9.5"))

    def test_unknown_operator_and_field(self):
        assert not evaluate({"field": "message.text", "op": "startswith", "value": "Poste"}, facts())
        assert not evaluate({"field": "citizen.name", "op": "eq", "value": "x"}, facts())


class TestComposition:
    def test_all_any_not(self):
        node = {
            "all": [
                {"field": "channel", "op": "eq", "value": "whatsapp"},
                {"any": [
                    {"field": "message.text", "op": "contains", "value": "buraco"},
                    {"field": "message.text", "op": "contains", "value": "poste"},
                ]},
                {"not": {"field": "message.text", "op": "contains", "value": "elogio"}},
            ]
        }
        assert evaluate(node, facts())
        assert not evaluate(node, facts(channel="web"))

    def test_empty_groups(self):
        assert evaluate({"all": []}, facts())
        assert not evaluate({"any": []}, facts())

    def test_malformed_nodes_do_not_match(self):
        assert not evaluate(None, facts())
        assert not evaluate([], facts())
        assert not evaluate({}, facts())
        assert not evaluate({"all": "poste"}, facts())
        assert not evaluate({"not": "poste"}, facts())
