"""Tests for next-node resolution."""
from conftest import edge, make_flow

from flows.graph import get_next_node, get_timeout_node, match_option
from models.flow import FlowSession
from models.schemas import InboundMessage


def _session(**variables) -> FlowSession:
    return FlowSession(flow_id="flow-1", chat_id="chat-1", customer_id="cust-1",
                       current_node_id="start-node", variables=variables)


def _condition_flow():
    return make_flow(
        nodes=[
            {"id": "cond", "type": "condition", "data": {"conditions": [
                {"logicOperator": "AND", "subConditions": [
                    {"type": "variable", "field": "age", "operator": "lessThan", "value": "18"},
                ]},
                {"logicOperator": "AND", "subConditions": [
                    {"type": "variable", "field": "age", "operator": "greaterThan", "value": "60"},
                ]},
            ]}},
            {"id": "minor", "type": "text"},
            {"id": "senior", "type": "text"},
            {"id": "adult", "type": "text"},
        ],
        edges=[
            edge("cond", "minor", "condition-0"),
            edge("cond", "senior", "condition-1"),
            edge("cond", "adult", "else"),
        ],
    )


class TestConditionRouting:
    def test_first_true_condition(self):
        flow = _condition_flow()
        assert get_next_node(flow, flow.node("cond"), None, _session(age=12)).id == "minor"
        assert get_next_node(flow, flow.node("cond"), None, _session(age=70)).id == "senior"

    def test_else_branch(self):
        flow = _condition_flow()
        assert get_next_node(flow, flow.node("cond"), None, _session(age=30)).id == "adult"

    def test_no_else_halts(self):
        flow = _condition_flow()
        flow.edges = [e for e in flow.edges if e.source_handle != "else"]
        assert get_next_node(flow, flow.node("cond"), None, _session(age=30)) is None

    def test_missing_variable_goes_to_else(self):
        flow = _condition_flow()
        assert get_next_node(flow, flow.node("cond"), None, _session()).id == "adult"


class TestOptionRouting:
    def _flow(self):
        return make_flow(
            nodes=[
                {"id": "menu", "type": "input", "data": {
                    "inputType": "options",
                    "options": [{"text": "Pedido"}, {"text": "Suporte"}],
                }},
                {"id": "order", "type": "text"},
                {"id": "support", "type": "text"},
                {"id": "retry", "type": "text"},
            ],
            edges=[
                edge("menu", "order", "option0"),
                edge("menu", "support", "option1"),
                edge("menu", "retry", "no-match"),
            ],
        )

    def test_match_trimmed_case_insensitive(self):
        flow = self._flow()
        assert match_option(flow.node("menu"), "  suporte ") == 1
        nxt = get_next_node(flow, flow.node("menu"), InboundMessage(content="SUPORTE"), _session())
        assert nxt.id == "support"

    def test_no_match(self):
        flow = self._flow()
        nxt = get_next_node(flow, flow.node("menu"), InboundMessage(content="outra"), _session())
        assert nxt.id == "retry"

    def test_no_event_is_no_match(self):
        flow = self._flow()
        assert get_next_node(flow, flow.node("menu"), None, _session()).id == "retry"


class TestDefaultRouting:
    def test_first_edge_skips_timeout(self):
        flow = make_flow(
            nodes=[
                {"id": "ask", "type": "input"},
                {"id": "late", "type": "text"},
                {"id": "next", "type": "text"},
            ],
            edges=[edge("ask", "late", "timeout"), edge("ask", "next")],
        )
        assert get_next_node(flow, flow.node("ask"), None, _session()).id == "next"
        assert get_timeout_node(flow, flow.node("ask")).id == "late"

    def test_no_edges(self):
        flow = make_flow(nodes=[{"id": "t", "type": "text"}], edges=[])
        assert get_next_node(flow, flow.node("t"), None, _session()) is None
        assert get_timeout_node(flow, flow.node("t")) is None

    def test_dangling_target(self):
        flow = make_flow(nodes=[{"id": "t", "type": "text"}], edges=[edge("t", "ghost")])
        assert get_next_node(flow, flow.node("t"), None, _session()) is None
