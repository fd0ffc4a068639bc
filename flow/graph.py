"""
Graph loading and lookup helpers.

The graph is parsed and validated once, when a call starts. After that
the executor only does lookups: node by id, and successor by handle.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import ValidationError

from models.schemas import (
    DEFAULT_HANDLE, FlowGraph, NodeType, ValidationIssue, ValidationResult,
)

logger = structlog.get_logger()


class FlowValidationError(Exception):
    """The authored graph cannot be executed."""

    def __init__(self, result: ValidationResult):
        self.result = result
        summary = "; ".join(f"{e.code}: {e.message}" for e in result.errors[:5])
        super().__init__(f"Invalid flow: {summary}")


def load_flow(raw: dict[str, Any], strict: bool = True) -> FlowGraph:
    """
    Parse an authored flow (editor or canonical shape) into a FlowGraph.

    With ``strict`` the graph must also pass validate_flow().
    """
    from flow.validation import validate_flow

    try:
        graph = FlowGraph.model_validate(raw)
    except ValidationError as e:
        issues = [
            ValidationIssue(
                code="INVALID_SCHEMA",
                message=err["msg"],
                field=".".join(str(p) for p in err["loc"]),
            )
            for err in e.errors()
        ]
        raise FlowValidationError(ValidationResult(valid=False, errors=issues)) from e

    if strict:
        result = validate_flow(graph)
        if not result.valid:
            raise FlowValidationError(result)
        for warning in result.warnings:
            logger.warning("flow_validation_warning", flow_id=graph.id,
                           code=warning.code, node_id=warning.node_id)

    logger.info("flow_loaded", flow_id=graph.id, nodes=len(graph.nodes),
                edges=len(graph.edges), variables=len(graph.variables))
    return graph


def find_start_node(graph: FlowGraph) -> Optional[str]:
    """The start node's id (first node if none is typed start)."""
    for node in graph.nodes:
        if node.type == NodeType.START.value:
            return node.id
    return graph.nodes[0].id if graph.nodes else None


def initialize_variables(graph: FlowGraph) -> dict[str, Any]:
    """Bindings for a new call: every declared variable gets its default or ''."""
    return {
        v.name: v.default_value if v.default_value is not None else ""
        for v in graph.variables
    }


def find_next_node(graph: FlowGraph, source_id: str, handle: Optional[str]) -> Optional[str]:
    """
    Successor of ``source_id`` along ``handle``. The first exact match wins;
    otherwise the first edge labelled "default" (or unlabelled) is used.
    """
    edges = graph.outgoing(source_id)
    if handle:
        for edge in edges:
            if edge.source_handle == handle:
                return edge.target
    for edge in edges:
        if edge.handle == DEFAULT_HANDLE:
            return edge.target
    return None
