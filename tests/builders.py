"""Graph builders shared by the test modules."""
from typing import Any

from flow.graph import load_flow
from models.schemas import FlowGraph


def node(node_id: str, node_type: str, **config) -> dict[str, Any]:
    """Editor-shaped node, the way graphs arrive from the canvas."""
    return {"id": node_id, "type": node_type, "data": {"label": node_id, "config": config}}


def edge(source: str, target: str, handle: str = "default") -> dict[str, Any]:
    return {"id": f"{source}-{handle}-{target}", "source": source, "target": target,
            "sourceHandle": handle}


def flow(nodes: list, edges: list, variables: list = None, **settings) -> dict[str, Any]:
    return {
        "id": "flow-1",
        "name": "Test flow",
        "nodes": nodes,
        "edges": edges,
        "variables": variables or [],
        "settings": settings,
    }


def build_graph(nodes: list, edges: list, variables: list = None, **settings) -> FlowGraph:
    return load_flow(flow(nodes, edges, variables, **settings), strict=False)
