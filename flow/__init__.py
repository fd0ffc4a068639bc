"""
Flow Execution.

A flow is an authored graph of typed nodes that drives one phone call.
The executor walks it one conversational turn at a time:

  - Start, conversation, function, set_variable, call_transfer and end nodes
  - Deterministic (equation) and LLM-judged (prompt) transitions
  - Silent hops through nodes that do not speak, bounded per turn
  - Load-time validation so the hot path never re-checks shapes
"""
from flow.graph import (
    FlowValidationError, load_flow, find_start_node, initialize_variables, find_next_node,
)
from flow.validation import validate_flow
from flow.executor import FlowExecutor
from flow.session import CallSession, CallSessionStore, SessionClosedError, SessionStatus
