"""
Edge resolution — which node follows the current one.

Precedence:
  1. condition nodes: first true condition → ``condition-{i}``; none → ``else``
  2. option inputs: case-insensitive trimmed label match → ``option{i}``;
     no match → ``no-match``
  3. anything else: the first outgoing edge (timeout edges excluded)

Returns None when no edge applies; the walker then ends the session.
"""
from __future__ import annotations

from typing import Optional

import structlog

from flows.conditions import evaluate_condition
from models.flow import ConditionNode, Edge, Flow, FlowSession, Handle, InputNode
from models.schemas import Chat, Customer, InboundMessage

logger = structlog.get_logger()


def _edge(edges: list[Edge], handle: str) -> Optional[Edge]:
    return next((e for e in edges if e.source_handle == handle), None)


def _target(flow: Flow, edge: Optional[Edge]):
    if edge is None:
        return None
    node = flow.node(edge.target)
    if node is None:
        logger.warning("flow_edge_target_missing", flow_id=flow.id,
                       edge_id=edge.id, target=edge.target)
    return node


def match_option(node: InputNode, content: str) -> Optional[int]:
    """Index of the option whose label equals ``content`` (trimmed, case-insensitive)."""
    wanted = (content or "").strip().lower()
    for i, option in enumerate(node.data.options):
        if option.text.strip().lower() == wanted:
            return i
    return None


def get_next_node(
    flow: Flow,
    current,
    event: Optional[InboundMessage],
    session: FlowSession,
    customer: Optional[Customer] = None,
    chat: Optional[Chat] = None,
):
    edges = flow.edges_from(current.id)
    if not edges:
        return None

    if isinstance(current, ConditionNode):
        for i, condition in enumerate(current.data.conditions):
            if not evaluate_condition(condition, session, customer, chat):
                continue
            edge = _edge(edges, Handle.condition(i))
            if edge is not None:
                return _target(flow, edge)
        return _target(flow, _edge(edges, Handle.ELSE))

    if isinstance(current, InputNode) and current.is_options:
        index = match_option(current, event.content if event else "")
        if index is not None:
            edge = _edge(edges, Handle.option(index))
            if edge is not None:
                return _target(flow, edge)
        return _target(flow, _edge(edges, Handle.NO_MATCH))

    default = next((e for e in edges if e.source_handle != Handle.TIMEOUT), None)
    return _target(flow, default)


def get_timeout_node(flow: Flow, current):
    """Target of the current node's ``timeout`` edge, if any."""
    return _target(flow, _edge(flow.edges_from(current.id), Handle.TIMEOUT))
