"""
Call Session — the reference host for one live call.

The executor is stateless; a session owns what persists between turns:
the current node pointer, the variable bindings and the conversation
history. Each turn's result is committed only if the call is still
active when the turn returns, so a caller hanging up mid-turn never
leaks partial variables into anything that reads the session later.

Lifecycle:
  1. start()            → runs the start node, returns the greeting
  2. handle_input(text) → one turn per caller utterance
  3. end / transfer action, max_turns, or hang_up() closes the session

When a turn advances silently (empty response, new node), the session
immediately enters the new node with no input so the caller is never
left in dead air waiting for a prompt that was not spoken.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from config.settings import Settings, get_settings
from flow.executor import FlowExecutor
from flow.graph import find_start_node, initialize_variables
from models.schemas import ExecutionTurnResult, FlowGraph, TurnAction
from utils.conditions import USER_INPUT_VAR

logger = structlog.get_logger()


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"
    TRANSFERRED = "transferred"
    HUNG_UP = "hung_up"


class SessionClosedError(Exception):
    """Input arrived for a session that is no longer active."""


class CallSession:
    """Turn-by-turn state of one call against one FlowGraph."""

    def __init__(
        self,
        graph: FlowGraph,
        executor: FlowExecutor,
        settings: Settings = None,
        session_id: str = None,
        variables: dict[str, Any] = None,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.graph = graph
        self._executor = executor
        self._settings = settings or get_settings()
        self._lock = asyncio.Lock()

        self.current_node_id: Optional[str] = find_start_node(graph)
        self.variables: dict[str, Any] = {**initialize_variables(graph), **(variables or {})}
        self.history: list[dict[str, str]] = []
        self.turn_count = 0
        self.status = SessionStatus.PENDING
        self.transfer_to: Optional[str] = None
        self.created_at = datetime.now(timezone.utc)
        self.last_result: Optional[ExecutionTurnResult] = None

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.PENDING, SessionStatus.ACTIVE)

    async def start(self) -> ExecutionTurnResult:
        """Run the start node and return what the agent says first."""
        async with self._lock:
            if self.status != SessionStatus.PENDING:
                raise SessionClosedError(f"Session {self.id} already started")
            self.status = SessionStatus.ACTIVE
            logger.info("call_session_started", session_id=self.id, flow_id=self.graph.id,
                        start_node=self.current_node_id)
            return await self._run_turn("")

    async def handle_input(self, text: str) -> ExecutionTurnResult:
        """Process one caller utterance."""
        async with self._lock:
            if not self.is_active:
                raise SessionClosedError(f"Session {self.id} is {self.status.value}")
            if self.status == SessionStatus.PENDING:
                self.status = SessionStatus.ACTIVE

            result = await self._run_turn(text, {"role": "user", "content": text})

            max_turns = self.graph.settings.max_turns
            if self.is_active and max_turns and self.turn_count >= max_turns:
                logger.info("call_session_max_turns", session_id=self.id, max_turns=max_turns)
                self._close(SessionStatus.ENDED)
            return result

    def hang_up(self):
        """Caller disconnected. Any in-flight turn result will be discarded."""
        if self.is_active:
            self._close(SessionStatus.HUNG_UP)

    # ── Internals ─────────────────────────────────────────────

    async def _run_turn(self, text: str, user_message: dict[str, str] = None) -> ExecutionTurnResult:
        result = await self._execute(text, user_message)

        # Follow silent advances so the next node gets to speak
        follow_ups = 0
        while (
            self.is_active
            and result.action == TurnAction.GATHER
            and not result.response
            and result.next_node_id
            and follow_ups < self._settings.engine.max_hops
        ):
            follow_ups += 1
            result = await self._execute("")
        return result

    async def _execute(self, text: str, user_message: dict[str, str] = None) -> ExecutionTurnResult:
        # The caller's utterance is staged here and only lands on the session in _commit
        node_id = self.current_node_id
        variables, history = self.variables, self.history
        if user_message is not None:
            variables = {**variables, USER_INPUT_VAR: text}
            history = [*history, user_message]

        result = await self._executor.execute_node(self.graph, node_id, text, variables, history)
        if not self.is_active:
            logger.info("call_session_result_discarded", session_id=self.id, node_id=node_id)
            return result
        self._commit(result, user_message)
        return result

    def _commit(self, result: ExecutionTurnResult, user_message: dict[str, str] = None):
        if user_message is not None:
            self.history.append(user_message)
            self.turn_count += 1
        self.variables = dict(result.variables)
        self.last_result = result
        if result.response:
            self.history.append({"role": "assistant", "content": result.response})
        limit = self._settings.engine.history_limit
        if limit and len(self.history) > limit:
            self.history = self.history[-limit:]

        if result.action == TurnAction.END:
            self._close(SessionStatus.ENDED)
        elif result.action == TurnAction.TRANSFER:
            self.transfer_to = result.transfer_to
            self._close(SessionStatus.TRANSFERRED)
        elif result.next_node_id:
            self.current_node_id = result.next_node_id

    def _close(self, status: SessionStatus):
        self.status = status
        logger.info("call_session_closed", session_id=self.id, status=status.value,
                    turns=self.turn_count, node_id=self.current_node_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.graph.id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "turn_count": self.turn_count,
            "variables": self.variables,
            "history": self.history,
            "transfer_to": self.transfer_to,
        }


class CallSessionStore:
    """In-memory sessions keyed by id (browser test calls)."""

    def __init__(self):
        self._sessions: dict[str, CallSession] = {}

    def save(self, session: CallSession):
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.pop(session_id, None)

    def list_all(self) -> list[CallSession]:
        return list(self._sessions.values())

    @property
    def count(self) -> int:
        return len(self._sessions)
