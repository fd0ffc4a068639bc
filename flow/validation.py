"""
Flow Validation — structural and semantic checks run at graph-load time.

Errors make a graph unexecutable and are refused by load_flow(strict=True).
Warnings describe authoring smells that still execute deterministically
(an unused variable, a transition without an edge that falls back to
``default``, a loop of silent nodes that the hop limit will cut).
"""
from __future__ import annotations

from collections import Counter, deque
from typing import Iterable, Optional

from models.schemas import (
    AssignmentOperation, CallTransferConfig, ConversationConfig, EndConfig, ExecutionType, FlowGraph,
    FlowNode, FunctionConfig, NodeType, SetVariableConfig, StartConfig,
    TransitionCondition, ValidationIssue, ValidationResult,
)
from utils.conditions import USER_INPUT_VAR
from utils.templating import referenced_variables

# Variables the engine itself binds while a call runs
RUNTIME_VARIABLES = {USER_INPUT_VAR, "_http_response", "_function_success", "_function_status"}

TERMINAL_TYPES = {NodeType.END.value, NodeType.CALL_TRANSFER.value}


class _Collector:

    def __init__(self):
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(self, code: str, message: str, node_id: str = None, field: str = None):
        self.errors.append(ValidationIssue(code=code, message=message, node_id=node_id, field=field))

    def warn(self, code: str, message: str, node_id: str = None, field: str = None):
        self.warnings.append(ValidationIssue(code=code, message=message, node_id=node_id, field=field))

    def result(self) -> ValidationResult:
        return ValidationResult(valid=not self.errors, errors=self.errors, warnings=self.warnings)


def validate_flow(graph: FlowGraph) -> ValidationResult:
    """Run every check and return all issues found (never raises)."""
    issues = _Collector()
    _check_structure(graph, issues)
    for node in graph.nodes:
        _check_node(graph, node, issues)
    _check_variables(graph, issues)
    _check_silent_cycles(graph, issues)
    return issues.result()


# ── Structure ─────────────────────────────────────────────────

def _check_structure(graph: FlowGraph, issues: _Collector):
    starts = [n for n in graph.nodes if n.type == NodeType.START.value]
    if not starts:
        issues.error("NO_START_NODE", "Flow must have exactly one start node")
    elif len(starts) > 1:
        for node in starts[1:]:
            issues.error("MULTIPLE_START_NODES", "Flow has more than one start node", node.id)

    for node_id, count in Counter(n.id for n in graph.nodes).items():
        if count > 1:
            issues.error("DUPLICATE_NODE_ID", f"Node id '{node_id}' is used {count} times", node_id)

    node_ids = {n.id for n in graph.nodes}
    seen_handles: set[tuple[str, str]] = set()
    for edge in graph.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            issues.error(
                "DANGLING_EDGE",
                f"Edge '{edge.id or edge.source}' connects {edge.source} -> {edge.target}, "
                "which is not in the graph",
                edge.source if edge.source in node_ids else None,
            )
            continue
        key = (edge.source, edge.handle)
        if key in seen_handles:
            issues.error("DUPLICATE_HANDLE",
                         f"More than one edge leaves via handle '{edge.handle}'",
                         edge.source, "sourceHandle")
        seen_handles.add(key)

    reachable = _reachable_from(graph, starts[0].id) if starts else None
    sources = {e.source for e in graph.edges}
    for node in graph.nodes:
        if reachable is not None and node.type != NodeType.START.value and node.id not in reachable:
            issues.error("ORPHANED_NODE",
                         f"Node '{node.label or node.id}' is not reachable from the start node", node.id)
        if node.type not in TERMINAL_TYPES and node.id not in sources:
            issues.error("NO_OUTGOING_CONNECTION",
                         f"Node '{node.label or node.id}' has no outgoing connection", node.id)


def _reachable_from(graph: FlowGraph, start_id: str) -> set[str]:
    outgoing: dict[str, list[str]] = {}
    for edge in graph.edges:
        outgoing.setdefault(edge.source, []).append(edge.target)

    seen = {start_id}
    queue = deque([start_id])
    while queue:
        for target in outgoing.get(queue.popleft(), ()):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


# ── Per-node configuration ────────────────────────────────────

def _check_node(graph: FlowGraph, node: FlowNode, issues: _Collector):
    config = node.config

    if not node.is_known_type:
        issues.warn("UNKNOWN_NODE_TYPE",
                    f"Node type '{node.type}' is not supported; it will pass through to default",
                    node.id)
        return

    if isinstance(config, ConversationConfig):
        if not config.content.content.strip():
            issues.error("MISSING_CONTENT", "Conversation node needs a prompt or static text",
                         node.id, "content")
        if config.temperature is not None and not 0 <= config.temperature <= 2:
            issues.error("INVALID_TEMPERATURE", "Temperature must be between 0 and 2",
                         node.id, "temperature")
        _check_transitions(graph, node, config.transitions, issues)

    elif isinstance(config, FunctionConfig):
        if config.execution_type == ExecutionType.HTTP and not config.url.strip():
            issues.error("MISSING_URL", "HTTP function needs a URL", node.id, "url")
        if config.execution_type == ExecutionType.CODE:
            if not config.code.strip():
                issues.error("MISSING_CODE", "Code function needs code", node.id, "code")
            if not config.output_variable.strip():
                issues.error("MISSING_OUTPUT_VARIABLE", "Code function needs an output variable",
                             node.id, "outputVariable")
        if config.timeout is not None and config.timeout <= 0:
            issues.error("INVALID_TIMEOUT", "Timeout must be a positive number of milliseconds",
                         node.id, "timeout")
        _check_transitions(graph, node, config.transitions, issues)

    elif isinstance(config, CallTransferConfig):
        if not config.destination.strip():
            issues.error("MISSING_DESTINATION", "Transfer node needs a destination",
                         node.id, "destination")

    elif isinstance(config, SetVariableConfig):
        if not config.assignments:
            issues.error("MISSING_ASSIGNMENTS", "Set-variable node has no assignments",
                         node.id, "assignments")
        for i, assignment in enumerate(config.assignments):
            if not assignment.variable.strip():
                issues.error("MISSING_VARIABLE_NAME", f"Assignment {i + 1} has no variable name",
                             node.id, f"assignments[{i}].variable")


def _check_transitions(
    graph: FlowGraph,
    node: FlowNode,
    transitions: list[TransitionCondition],
    issues: _Collector,
):
    handles = {e.handle for e in graph.outgoing(node.id)}
    for i, transition in enumerate(transitions):
        if not transition.condition.strip() or not transition.handle.strip():
            issues.error("INVALID_TRANSITION", f"Transition {i + 1} needs a condition and a handle",
                         node.id, f"transitions[{i}]")
            continue
        if transition.handle not in handles:
            issues.warn("MISSING_TRANSITION_EDGE",
                        f"No edge leaves via handle '{transition.handle}'; default will be used",
                        node.id, f"transitions[{i}].handle")


# ── Variables ─────────────────────────────────────────────────

def _node_texts(node: FlowNode) -> Iterable[str]:
    """Every authored string of a node that may contain {{placeholders}}."""
    config = node.config
    if isinstance(config, StartConfig) and config.greeting:
        yield config.greeting.content
    elif isinstance(config, ConversationConfig):
        yield config.content.content
        yield from (t.condition for t in config.transitions)
    elif isinstance(config, FunctionConfig):
        yield config.url
        yield from config.headers.values()
        yield config.body or ""
        if config.speak_during_execution:
            yield config.speak_during_execution.content
        yield from (t.condition for t in config.transitions)
    elif isinstance(config, CallTransferConfig):
        yield config.destination
    elif isinstance(config, SetVariableConfig):
        yield from (a.value for a in config.assignments)
    elif isinstance(config, EndConfig) and config.speak_during_execution:
        yield config.speak_during_execution.content


def _node_writes(node: FlowNode) -> set[str]:
    config = node.config
    if isinstance(config, SetVariableConfig):
        return {a.variable for a in config.assignments if a.variable}
    if isinstance(config, FunctionConfig):
        written = {m.variable for m in config.response_mapping}
        if config.output_variable:
            written.add(config.output_variable)
        return written
    return set()


def _node_reads(node: FlowNode) -> set[str]:
    names: set[str] = set()
    for text in _node_texts(node):
        names.update(referenced_variables(text))
    config = node.config
    if isinstance(config, FunctionConfig):
        names.update(config.input_variables)
    if isinstance(config, SetVariableConfig):
        # increment/append read their target
        names.update(a.variable for a in config.assignments if a.operation != AssignmentOperation.SET)
    return names


def _check_variables(graph: FlowGraph, issues: _Collector):
    for name, count in Counter(v.name for v in graph.variables).items():
        if count > 1:
            issues.error("DUPLICATE_VARIABLE", f"Variable '{name}' is declared {count} times",
                         field="variables")

    declared = {v.name for v in graph.variables}
    written: set[str] = set()
    reads: dict[str, Optional[str]] = {}
    for node in graph.nodes:
        written |= _node_writes(node)
        for name in _node_reads(node):
            reads.setdefault(name, node.id)
    for name in referenced_variables(graph.settings.global_prompt):
        reads.setdefault(name, None)

    known = declared | written | RUNTIME_VARIABLES
    for name, node_id in reads.items():
        if name not in known:
            issues.warn("UNDEFINED_VARIABLE", f"Variable '{name}' is used but never declared or set",
                        node_id)

    for name in declared:
        if name not in reads and name not in written:
            issues.warn("UNUSED_VARIABLE", f"Variable '{name}' is declared but never used",
                        field="variables")


# ── Silent loops ──────────────────────────────────────────────

def is_silent(node: FlowNode) -> bool:
    """True if executing this node hops on without speaking."""
    config = node.config
    if not node.is_known_type or isinstance(config, SetVariableConfig):
        return True
    if isinstance(config, FunctionConfig):
        return config.speak_during_execution is None or not config.speak_during_execution.content
    if isinstance(config, StartConfig):
        return not (config.speaks_first and config.greeting and config.greeting.content)
    return False


def _check_silent_cycles(graph: FlowGraph, issues: _Collector):
    silent = {n.id for n in graph.nodes if is_silent(n)}
    adjacency: dict[str, list[str]] = {node_id: [] for node_id in silent}
    for edge in graph.edges:
        if edge.source in silent and edge.target in silent:
            adjacency[edge.source].append(edge.target)

    # Iterative three-colour DFS
    WHITE, GREY, BLACK = 0, 1, 2
    colour: dict[str, int] = {node_id: WHITE for node_id in silent}
    reported: set[str] = set()
    for root in adjacency:
        if colour[root] != WHITE:
            continue
        stack = [(root, iter(adjacency[root]))]
        colour[root] = GREY
        while stack:
            node_id, children = stack[-1]
            child = next(children, None)
            if child is None:
                colour[node_id] = BLACK
                stack.pop()
            elif colour[child] == GREY:
                if child not in reported:
                    reported.add(child)
                    issues.warn("POTENTIAL_INFINITE_LOOP",
                                "Nodes in this loop never wait for the caller; "
                                "execution will stop at the hop limit",
                                child)
            elif colour[child] == WHITE:
                colour[child] = GREY
                stack.append((child, iter(adjacency[child])))
