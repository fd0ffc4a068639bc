"""
Flow Executor — the turn dispatcher that walks a FlowGraph.

One call to execute_node() is one conversational turn:

    host → FlowExecutor.execute_node(graph, node_id, user_input, variables, history)
      → run the node's handler (start / conversation / function / ...)
      → silent nodes hop straight into their successor, same turn
      → the first node that speaks, waits, transfers or ends produces
        the ExecutionTurnResult the host acts on

Hops are an explicit loop bounded by ``engine.max_hops`` so an authored
cycle of silent nodes cannot spin forever. The executor holds no per-call
state: variables and history come in with every turn and the updated
variables go out in the result. The caller's bindings are never mutated.
"""
from __future__ import annotations

import math
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from backend.http_function import HTTPFunctionExecutor
from backend.sandbox import CodeSandbox
from config.settings import Settings, get_settings
from core.engine import ConversationEngine
from core.transitions import TransitionResolver
from flow.graph import find_next_node
from models.schemas import (
    AssignmentOperation, CallTransferConfig, ContentMode, ConversationConfig,
    EndConfig, ExecutionTurnResult, ExecutionType, FlowGraph, FlowNode,
    FunctionConfig, SetVariableConfig, StartConfig, TransferType, TurnAction, DEFAULT_HANDLE,
)
from utils.conditions import to_number
from utils.templating import stringify, substitute

logger = structlog.get_logger()

FUNCTION_SUCCESS_VAR = "_function_success"
FUNCTION_STATUS_VAR = "_function_status"


@dataclass
class TurnContext:
    """Working state of one turn. ``variables`` is a private copy."""
    graph: FlowGraph
    user_input: str
    variables: dict[str, Any]
    history: list[dict[str, str]] = field(default_factory=list)
    hops: int = 0


@dataclass
class Hop:
    """Advance silently into ``next_node_id`` within the same turn."""
    next_node_id: str


class FlowExecutor:
    """
    Executes flow nodes against live call state.

    Collaborators are injected so tests (and hosts) can swap the LLM,
    the HTTP transport or the sandbox without touching the dispatcher.
    """

    def __init__(
        self,
        engine: ConversationEngine = None,
        resolver: TransitionResolver = None,
        http_executor: HTTPFunctionExecutor = None,
        sandbox: CodeSandbox = None,
        settings: Settings = None,
    ):
        self._settings = settings or get_settings()
        self._engine = engine or ConversationEngine(self._settings)
        self._resolver = resolver or TransitionResolver(self._engine)
        self._http = http_executor or HTTPFunctionExecutor(self._settings.functions)
        self._sandbox = sandbox or CodeSandbox(self._settings.functions)

        self._handlers = {
            "start": self._execute_start,
            "conversation": self._execute_conversation,
            "function": self._execute_function,
            "set_variable": self._execute_set_variable,
            "call_transfer": self._execute_call_transfer,
            "end": self._execute_end,
        }

    # ══════════════════════════════════════════════════════════
    #  MAIN ENTRY POINT
    # ══════════════════════════════════════════════════════════

    async def execute_node(
        self,
        graph: FlowGraph,
        node_id: str,
        user_input: str = "",
        variables: dict[str, Any] = None,
        history: list[dict[str, str]] = None,
    ) -> ExecutionTurnResult:
        """
        Run one turn starting at ``node_id``.

        Never raises for authoring or downstream failures: an unknown node
        ends the call with an apology, anything else degrades to a reply
        that keeps the caller on the line. Cancellation propagates.
        """
        ctx = TurnContext(
            graph=graph,
            user_input=user_input or "",
            variables=dict(variables or {}),
            history=list(history or []),
        )
        max_hops = self._settings.engine.max_hops
        current = node_id

        while True:
            node = graph.get_node(current)
            if node is None:
                logger.error("flow_node_not_found", flow_id=graph.id, node_id=current)
                return self._result(ctx, self._settings.engine.error_message, TurnAction.END)

            logger.info("node_executing", flow_id=graph.id, node_id=node.id,
                        node_type=node.type, hop=ctx.hops)
            try:
                outcome = await self._execute_step(node, ctx)
            except Exception as e:
                logger.error("node_execution_failed", node_id=node.id, node_type=node.type,
                             error=str(e), exc_info=True)
                return self._result(ctx, self._settings.engine.fallback_message,
                                    TurnAction.GATHER, node.id)

            if isinstance(outcome, ExecutionTurnResult):
                logger.info("turn_completed", node_id=node.id, action=outcome.action.value,
                            next_node_id=outcome.next_node_id, hops=ctx.hops)
                return outcome

            ctx.hops += 1
            if ctx.hops > max_hops:
                logger.error("flow_hop_limit_exceeded", flow_id=graph.id,
                             node_id=node.id, max_hops=max_hops)
                return self._result(ctx, self._settings.engine.error_message, TurnAction.END)
            current = outcome.next_node_id

    async def _execute_step(self, node: FlowNode, ctx: TurnContext) -> Union[ExecutionTurnResult, Hop]:
        handler = self._handlers.get(node.type)
        if handler is None:
            return self._execute_unknown(node, ctx)
        return await handler(node, ctx)

    # ══════════════════════════════════════════════════════════
    #  NODE HANDLERS
    # ══════════════════════════════════════════════════════════

    async def _execute_start(self, node: FlowNode, ctx: TurnContext):
        config: StartConfig = node.config
        next_node = find_next_node(ctx.graph, node.id, DEFAULT_HANDLE)

        if config.speaks_first and config.greeting and config.greeting.content:
            greeting = substitute(config.greeting.content, ctx.variables)
            return self._result(ctx, greeting, TurnAction.GATHER if next_node else TurnAction.END, next_node)

        if next_node:
            return Hop(next_node)
        return self._result(ctx, "", TurnAction.END)

    async def _execute_conversation(self, node: FlowNode, ctx: TurnContext):
        config: ConversationConfig = node.config
        if config.content.mode == ContentMode.STATIC:
            return await self._execute_static(node, config, ctx)

        # ── Generative ──
        llm = self._settings.llm
        result = await self._engine.generate_turn(
            prompt_config=config.content,
            user_input=ctx.user_input,
            variables=ctx.variables,
            history=ctx.history,
            transitions=config.transitions,
            model=config.model or llm.model,
            temperature=config.temperature if config.temperature is not None else llm.temperature,
            max_tokens=config.max_tokens or llm.max_tokens,
            global_prompt=ctx.graph.settings.global_prompt,
        )
        ctx.variables.update(result.extracted_variables)

        if result.matched_transition:
            next_node = find_next_node(ctx.graph, node.id, result.matched_transition)
            if next_node:
                return self._result(ctx, result.response, TurnAction.GATHER, next_node)

        # Equations are re-checked against the merged variables; the
        # spoken reply is kept even when the path differs from the model's
        handle = await self._resolver.resolve(
            config.transitions, ctx.variables, ctx.user_input, ctx.history,
        )
        if handle:
            next_node = find_next_node(ctx.graph, node.id, handle)
            if next_node:
                return self._result(ctx, result.response, TurnAction.GATHER, next_node)

        return self._result(ctx, result.response, TurnAction.GATHER, node.id)

    async def _execute_static(self, node: FlowNode, config: ConversationConfig, ctx: TurnContext):
        text = substitute(config.content.content, ctx.variables)

        if config.skip_response:
            next_node = find_next_node(ctx.graph, node.id, DEFAULT_HANDLE)
            return self._result(ctx, text, TurnAction.GATHER if next_node else TurnAction.END, next_node)

        if not ctx.user_input:
            return self._result(ctx, text, TurnAction.GATHER, node.id)

        handle = await self._resolver.resolve(
            config.transitions, ctx.variables, ctx.user_input, ctx.history,
        )
        if handle:
            next_node = find_next_node(ctx.graph, node.id, handle)
            if next_node:
                # The next node decides what to say
                return self._result(ctx, "", TurnAction.GATHER, next_node)

        logger.info("static_node_retry", node_id=node.id)
        return self._result(ctx, text, TurnAction.GATHER, node.id)

    async def _execute_function(self, node: FlowNode, ctx: TurnContext):
        config: FunctionConfig = node.config

        if config.execution_type == ExecutionType.CODE:
            await self._run_code(config, ctx)
        else:
            await self._run_http(config, ctx)

        handle = await self._resolver.resolve(
            config.transitions, ctx.variables, ctx.user_input, ctx.history,
        )
        next_node = None
        if handle:
            next_node = find_next_node(ctx.graph, node.id, handle)
        if not next_node:
            next_node = find_next_node(ctx.graph, node.id, DEFAULT_HANDLE)

        speech = config.speak_during_execution
        if speech and speech.content:
            text = substitute(speech.content, ctx.variables)
            return self._result(ctx, text, TurnAction.GATHER if next_node else TurnAction.END, next_node)

        if next_node:
            return Hop(next_node)
        return self._result(ctx, "", TurnAction.END)

    async def _run_http(self, config: FunctionConfig, ctx: TurnContext):
        timeout = self._timeout_seconds(config) or self._settings.functions.http_timeout_seconds
        result = await self._http.execute(config, ctx.variables, timeout)
        ctx.variables.update(result.variables)
        ctx.variables[FUNCTION_SUCCESS_VAR] = result.success
        ctx.variables[FUNCTION_STATUS_VAR] = result.status_code

    async def _run_code(self, config: FunctionConfig, ctx: TurnContext):
        timeout = self._timeout_seconds(config) or self._settings.functions.code_timeout_seconds
        inputs = {name: ctx.variables.get(name) for name in config.input_variables}
        value = await self._sandbox.run(config.code, inputs, timeout)
        if config.output_variable:
            ctx.variables[config.output_variable] = value

    async def _execute_set_variable(self, node: FlowNode, ctx: TurnContext):
        config: SetVariableConfig = node.config

        for assignment in config.assignments:
            if not assignment.variable:
                continue
            value = substitute(assignment.value, ctx.variables)
            current = ctx.variables.get(assignment.variable)
            op = assignment.operation

            if op == AssignmentOperation.APPEND:
                ctx.variables[assignment.variable] = stringify(current or "") + value
            elif op == AssignmentOperation.INCREMENT:
                ctx.variables[assignment.variable] = _as_number(to_number(current or 0) + to_number(value))
            elif op == AssignmentOperation.DECREMENT:
                ctx.variables[assignment.variable] = _as_number(to_number(current or 0) - to_number(value))
            else:
                ctx.variables[assignment.variable] = value

        logger.info("variables_assigned", node_id=node.id,
                    variables=[a.variable for a in config.assignments])

        next_node = find_next_node(ctx.graph, node.id, DEFAULT_HANDLE)
        if next_node:
            return Hop(next_node)
        return self._result(ctx, "", TurnAction.END)

    async def _execute_call_transfer(self, node: FlowNode, ctx: TurnContext):
        config: CallTransferConfig = node.config
        destination = substitute(config.destination, ctx.variables)
        logger.info("call_transfer", node_id=node.id, transfer_type=config.transfer_type.value)

        return ExecutionTurnResult(
            response="",
            action=TurnAction.TRANSFER,
            next_node_id=None,
            variables=ctx.variables,
            transfer_to=destination,
            transfer_type=config.transfer_type,
            warm_options=config.warm_options if config.transfer_type == TransferType.WARM else None,
        )

    async def _execute_end(self, node: FlowNode, ctx: TurnContext):
        config: EndConfig = node.config
        farewell = ""
        if config.speak_during_execution and config.speak_during_execution.content:
            farewell = substitute(config.speak_during_execution.content, ctx.variables)

        logger.info("call_ending", node_id=node.id, reason=config.reason)
        return self._result(ctx, farewell, TurnAction.END)

    def _execute_unknown(self, node: FlowNode, ctx: TurnContext):
        logger.warning("unknown_node_type", node_id=node.id, node_type=node.type)
        next_node = find_next_node(ctx.graph, node.id, DEFAULT_HANDLE)
        if next_node:
            return Hop(next_node)
        return self._result(ctx, "", TurnAction.END)

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _result(
        ctx: TurnContext,
        response: str,
        action: TurnAction,
        next_node_id: Optional[str] = None,
    ) -> ExecutionTurnResult:
        if action == TurnAction.END:
            next_node_id = None
        return ExecutionTurnResult(
            response=response,
            action=action,
            next_node_id=next_node_id,
            variables=ctx.variables,
        )

    @staticmethod
    def _timeout_seconds(config: FunctionConfig) -> Optional[float]:
        if config.timeout:
            return config.timeout / 1000.0
        return None


def _as_number(value: float) -> Any:
    # Counters stay integral in the variables returned to the host
    if math.isfinite(value) and value.is_integer():
        return int(value)
    return value
