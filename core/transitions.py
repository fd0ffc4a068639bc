"""
Transition Resolver — picks the exit a node takes.

Equation transitions are checked first, in authored order, and the first
true one wins. Only when none match are the prompt transitions sent, all
together and in authored order, to the model in a single request. The
model's answer is a proposal: a handle outside the prompt set is ignored.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.engine import ConversationEngine
from models.schemas import TransitionCondition, TransitionType
from utils.conditions import evaluate_equation

logger = structlog.get_logger()


class TransitionResolver:

    def __init__(self, engine: Optional[ConversationEngine] = None):
        self._engine = engine

    def resolve_equations(
        self,
        transitions: list[TransitionCondition],
        variables: dict[str, Any],
        user_input: str,
    ) -> Optional[str]:
        for transition in transitions:
            if transition.type != TransitionType.EQUATION:
                continue
            if evaluate_equation(transition.condition, variables, user_input):
                logger.info("equation_transition_matched",
                            condition=transition.condition, handle=transition.handle)
                return transition.handle
        return None

    async def resolve(
        self,
        transitions: list[TransitionCondition],
        variables: dict[str, Any],
        user_input: str,
        history: list[dict[str, str]],
    ) -> Optional[str]:
        """Return the handle of the first satisfied transition, or None."""
        if not transitions:
            return None

        handle = self.resolve_equations(transitions, variables, user_input)
        if handle:
            return handle

        prompts = [t for t in transitions if t.type == TransitionType.PROMPT]
        if not prompts:
            return None
        if self._engine is None:
            logger.warning("prompt_transitions_skipped", reason="no_engine", count=len(prompts))
            return None

        try:
            handle = await self._engine.match_prompt_conditions(prompts, variables, user_input, history)
        except Exception as e:
            logger.error("prompt_transition_resolution_failed", error=str(e))
            return None

        if handle and handle not in {t.handle for t in prompts}:
            logger.warning("prompt_transition_rejected", handle=handle)
            return None
        return handle or None
