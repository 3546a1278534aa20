"""Tests for condition operators and condition-node evaluation."""
import pytest

from flows.conditions import client_data_value, evaluate_condition, evaluate_sub_condition
from models.flow import Condition, FlowSession, SubCondition
from models.variables import MISSING
from utils.conditions import apply_operator, combine, get_nested_value, split_list


def _session(**variables) -> FlowSession:
    return FlowSession(flow_id="f", chat_id="chat-1", customer_id="cust-1",
                       current_node_id="n", variables=variables)


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"

    def test_json_path_prefix_and_index(self):
        data = {"data": {"rows": [{"id": 1}, {"id": 2}]}}
        assert get_nested_value(data, "$.data.rows.1.id") == 2
        assert get_nested_value(data, "$.data.rows.5.id") is None

    def test_missing(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None
        assert get_nested_value("scalar", "a") is None


class TestOperators:
    def test_equal_is_textual(self):
        assert apply_operator("equalTo", 10, "10")
        assert apply_operator("notEqual", "a", "b")
        assert apply_operator("notEqualTo", "a", "b")
        assert not apply_operator("equalTo", "A", "a")

    def test_contains_case_insensitive(self):
        assert apply_operator("contains", "Quero PIZZA grande", "pizza")
        assert apply_operator("doesNotContain", "salada", "pizza")
        assert apply_operator("notContains", "salada", "pizza")

    @pytest.mark.parametrize("op,a,b,expected", [
        ("greaterThan", "10", 5, True),
        ("lessThan", 3, "4.5", True),
        ("greaterThanOrEqual", 5, 5, True),
        ("lessThanOrEqual", 6, 5, False),
        ("greaterThan", "abc", 1, False),
        ("lessThan", None, 1, False),
    ])
    def test_numeric(self, op, a, b, expected):
        assert apply_operator(op, a, b) is expected

    def test_set_and_empty(self):
        assert apply_operator("isSet", "x", None)
        assert not apply_operator("isSet", "", None)
        assert apply_operator("isEmpty", [], None)
        assert apply_operator("isEmpty", None, None)
        assert not apply_operator("isEmpty", 0, None)

    def test_starts_ends_with(self):
        assert apply_operator("startsWith", "Olá mundo", "olá")
        assert apply_operator("endsWith", "arquivo.PDF", ".pdf")

    def test_regex(self):
        assert apply_operator("matchesRegex", "CEP 13010-000", r"\d{5}-\d{3}")
        assert apply_operator("doesNotMatchRegex", "sem cep", r"\d{5}")
        assert not apply_operator("matchesRegex", "x", "([unclosed")
        assert not apply_operator("doesNotMatchRegex", "x", "([unclosed")

    def test_in_list(self):
        assert apply_operator("inList", "vip", "vip,gold")
        assert not apply_operator("notInList", "vip", "vip,gold")
        assert apply_operator("inList", " Gold ", "vip, gold ")
        assert apply_operator("inList", ["basic", "vip"], "vip,gold")
        assert apply_operator("notInList", ["basic"], "vip,gold")
        assert not apply_operator("notInList", " VIP ", "vip,gold")
        assert apply_operator("inList", [" promo "], "Promo")

    def test_unknown_operator(self):
        assert apply_operator("approximately", 1, 1) is False

    def test_split_list(self):
        assert split_list(" A, b ,,c") == ["a", "b", "c"]

    def test_combine(self):
        assert combine("AND", [True, True])
        assert not combine("AND", [True, False])
        assert combine("OR", [False, True])
        assert not combine("or", [False, False])


class TestClientData:
    def test_customer_fields(self, customer, chat):
        assert client_data_value("customer_name", customer, chat) == "Ana Souza"
        assert client_data_value("custumer_email", customer, chat) == "ana@example.com"
        assert client_data_value("customer_plan", customer, chat) == "gold"
        assert client_data_value("customer_unknown", customer, chat) is MISSING

    def test_chat_fields(self, customer, chat):
        assert client_data_value("chat_funil", customer, chat) == "stage-2"
        assert client_data_value("chat_funnel", customer, chat) == "funnel-1"
        assert client_data_value("chat_price", customer, chat) == 150.0
        assert client_data_value("chat_team", customer, chat) == "team-sales"
        assert client_data_value("chat_tags", customer, chat) == ["vip", "promo"]
        assert client_data_value("chat_unknown", customer, chat) is MISSING


class TestEvaluateCondition:
    def test_missing_variable_is_false(self):
        sub = SubCondition(type="variable", field="nope", operator="isEmpty")
        assert not evaluate_sub_condition(sub, _session())

    def test_compare_value_interpolated(self):
        sub = SubCondition(field="answer", operator="equalTo", value="{{expected}}")
        assert evaluate_sub_condition(sub, _session(answer="42", expected="42"))

    def test_and_or(self):
        subs = [
            SubCondition(field="age", operator="greaterThan", value="17"),
            SubCondition(field="city", operator="equalTo", value="Recife"),
        ]
        session = _session(age=30, city="Campinas")
        assert not evaluate_condition(Condition(logic_operator="AND", sub_conditions=subs), session)
        assert evaluate_condition(Condition(logic_operator="OR", sub_conditions=subs), session)

    def test_empty_condition_never_matches(self):
        assert not evaluate_condition(Condition(), _session())

    def test_funnel_stage_uses_stage_ids(self, customer, chat):
        sub = SubCondition(type="clientData", field="chat_funnel_stage", operator="inList",
                           value="ignored", stage_ids=["stage-1", "stage-2"])
        assert evaluate_sub_condition(sub, _session(), customer, chat)

    def test_tag_list_any_element(self, customer, chat):
        sub = SubCondition(type="clientData", field="chat_tag", operator="inList", value="vip")
        assert evaluate_sub_condition(sub, _session(), customer, chat)
