"""
Conversation Engine — LLM-powered turn generation.

Two kinds of requests go to the model:
- generate_turn: the spoken reply for a generative conversation node,
  plus an optional transition handle and extracted variables, returned
  through a forced tool call (structured output).
- match_prompt_conditions: which natural-language transition condition,
  if any, the caller's latest input satisfies.

Every request is bounded by ``llm.timeout_seconds``. Failures never
propagate: the turn degrades to an apology and the node stays unresolved,
so the call neither goes silent nor crashes.
"""
from __future__ import annotations

import asyncio
import json
import re
import structlog
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator

from config.settings import Settings, get_settings
from models.schemas import ContentConfig, ConversationResult, TransitionCondition
from utils.templating import stringify, substitute

logger = structlog.get_logger()

TURN_TOOL_NAME = "process_conversation"
CONDITION_TOOL_NAME = "select_transition"
NO_MATCH = "none"

DEFAULT_BASE_PROMPT = "You are a helpful voice assistant."
EMPTY_REPLY = "I understand. How can I help you further?"
VOICE_STYLE = (
    "Keep responses concise and natural for voice (1-3 sentences). "
    "Do not use markdown, bullet points, or formatting."
)


class TurnOutput(BaseModel):
    """Structured output contract of the turn generator."""
    response: str
    matched_transition: Optional[str] = None
    extracted_variables: dict[str, Any] = {}

    @field_validator("extracted_variables", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class ConditionOutput(BaseModel):
    matched_handle: str = NO_MATCH
    reasoning: str = ""


class ConversationEngine:
    """
    Generates spoken replies and judges prompt conditions using OpenAI or Claude.
    Stateless across calls: everything a request needs is passed in.
    """

    def __init__(self, settings: Settings = None, client=None):
        self._settings = settings or get_settings()
        self._client = client
        self._provider = getattr(self._settings.llm, "provider", "openai")

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def fallback_message(self) -> str:
        return self._settings.engine.fallback_message

    async def _get_client(self):
        if self._client is None:
            if not self._settings.llm.api_key:
                logger.error("llm_api_key_missing", provider=self._provider)
                return None
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(
                        api_key=self._settings.llm.api_key,
                        timeout=self._settings.llm.timeout_seconds,
                    )
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(
                        api_key=self._settings.llm.api_key,
                        timeout=self._settings.llm.timeout_seconds,
                    )
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._settings.llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_structured(
        self,
        system: str,
        messages: list[dict[str, str]],
        tool: dict[str, Any],
        model: str = None,
        max_tokens: int = None,
        temperature: float = None,
    ) -> tuple[Optional[dict[str, Any]], str]:
        """
        Force a single tool call and return (tool arguments, raw text).
        Arguments are None when the model answered without calling the tool.
        Raises on transport errors and timeouts; callers degrade.
        """
        client = await self._get_client()
        if not client:
            raise RuntimeError("LLM client unavailable")

        model = model or self._settings.llm.model
        max_tokens = max_tokens or self._settings.llm.max_tokens
        temperature = temperature if temperature is not None else self._settings.llm.temperature

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            request = client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "system", "content": system}] + messages,
                tools=[{
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool["description"],
                        "parameters": tool["parameters"],
                    },
                }],
                tool_choice={"type": "function", "function": {"name": tool["name"]}},
            )
            response = await asyncio.wait_for(request, timeout=self._settings.llm.timeout_seconds)
            message = response.choices[0].message
            raw_text = message.content or ""
            for call in message.tool_calls or []:
                if call.function and call.function.name == tool["name"]:
                    try:
                        return json.loads(call.function.arguments or "{}"), raw_text
                    except ValueError:
                        logger.warning("tool_arguments_malformed", tool=tool["name"])
                        return None, raw_text
            return None, raw_text

        # Anthropic: system prompt is a separate parameter
        request = client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=messages,
            tools=[{
                "name": tool["name"],
                "description": tool["description"],
                "input_schema": tool["parameters"],
            }],
            tool_choice={"type": "tool", "name": tool["name"]},
        )
        response = await asyncio.wait_for(request, timeout=self._settings.llm.timeout_seconds)
        raw_text = "".join(
            getattr(block, "text", "") for block in response.content if block.type == "text"
        )
        for block in response.content:
            if block.type == "tool_use" and block.name == tool["name"]:
                return dict(block.input or {}), raw_text
        return None, raw_text

    # ── Conversational turn ───────────────────────────────────

    async def generate_turn(
        self,
        prompt_config: Optional[ContentConfig],
        user_input: str,
        variables: dict[str, Any],
        history: list[dict[str, str]],
        transitions: list[TransitionCondition],
        model: str = None,
        temperature: float = None,
        max_tokens: int = None,
        global_prompt: str = "",
    ) -> ConversationResult:
        """
        Produce the spoken reply for one generative conversation turn.

        The returned transition handle is advisory: it is dropped unless it
        names one of ``transitions``, and the executor re-checks equation
        transitions deterministically afterwards.
        """
        system = self._build_turn_prompt(prompt_config, variables, transitions, global_prompt)
        messages = self._build_messages(history, user_input)
        handles = [t.handle for t in transitions]

        try:
            arguments, raw_text = await self._call_structured(
                system=system,
                messages=messages,
                tool=self._turn_tool(handles),
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as e:
            logger.error("turn_generation_failed", error=str(e))
            return ConversationResult(response=self.fallback_message)

        output = None
        if arguments is not None:
            try:
                output = TurnOutput.model_validate(arguments)
            except ValidationError as e:
                logger.warning("turn_output_invalid", error=str(e))

        if output is None:
            logger.warning("turn_output_missing_using_text", has_text=bool(raw_text))
            return ConversationResult(response=raw_text.strip() or EMPTY_REPLY)

        matched = output.matched_transition or None
        if matched and matched not in handles:
            logger.warning("turn_transition_rejected", handle=matched, valid=handles)
            matched = None

        logger.info("turn_generated", response_length=len(output.response),
                    matched_transition=matched,
                    extracted=list(output.extracted_variables.keys()))

        return ConversationResult(
            response=output.response.strip() or EMPTY_REPLY,
            matched_transition=matched,
            extracted_variables=output.extracted_variables,
        )

    # ── Prompt conditions ─────────────────────────────────────

    async def match_prompt_conditions(
        self,
        transitions: list[TransitionCondition],
        variables: dict[str, Any],
        user_input: str,
        history: list[dict[str, str]],
    ) -> Optional[str]:
        """
        Ask the model which prompt condition (first in authored order) the
        caller's input satisfies. Returns a validated handle or None.
        """
        if not transitions:
            return None

        handles = [t.handle for t in transitions]
        system = self._build_condition_prompt(transitions, variables, user_input, history)
        model = self._settings.llm.condition_model or self._settings.llm.model

        try:
            arguments, raw_text = await self._call_structured(
                system=system,
                messages=[{"role": "user", "content": user_input or "(no input)"}],
                tool=self._condition_tool(handles),
                model=model,
                max_tokens=150,
                temperature=0.1,
            )
        except Exception as e:
            logger.error("prompt_condition_evaluation_failed", error=str(e))
            return None

        if arguments is None:
            arguments = self._parse_json_text(raw_text)
        try:
            output = ConditionOutput.model_validate(arguments or {})
        except ValidationError as e:
            logger.warning("prompt_condition_output_invalid", error=str(e))
            return None

        handle = output.matched_handle.strip()
        if not handle or handle.lower() == NO_MATCH:
            return None
        if handle not in handles:
            logger.warning("prompt_condition_handle_rejected", handle=handle, valid=handles)
            return None

        logger.info("prompt_condition_matched", handle=handle, reasoning=output.reasoning)
        return handle

    # ── Prompt Construction ───────────────────────────────────

    def _build_turn_prompt(
        self,
        prompt_config: Optional[ContentConfig],
        variables: dict[str, Any],
        transitions: list[TransitionCondition],
        global_prompt: str = "",
    ) -> str:
        base = (prompt_config.content if prompt_config else "") or DEFAULT_BASE_PROMPT
        parts = []
        if global_prompt:
            parts.append(substitute(global_prompt, variables))
        parts.append(substitute(base, variables))

        if variables:
            lines = "\n".join(f"- {k}: {json.dumps(v, default=stringify)}" for k, v in variables.items())
            parts.append(f"Current conversation variables:\n{lines}")

        if transitions:
            described = "\n".join(
                f"  {i}. [type={t.type.value}, handle=\"{t.handle}\"] {t.condition}"
                + (f" ({t.label})" if t.label else "")
                for i, t in enumerate(transitions, start=1)
            )
            parts.append(
                "Transition conditions (evaluate after responding):\n"
                f"{described}\n"
                "When one of the above conditions is met based on the user's input and the "
                "conversation so far, return its handle as matched_transition. Evaluate in "
                "order; the first TRUE condition wins. Otherwise return null."
            )

        parts.append(VOICE_STYLE)
        return "\n\n".join(parts)

    def _build_condition_prompt(
        self,
        transitions: list[TransitionCondition],
        variables: dict[str, Any],
        user_input: str,
        history: list[dict[str, str]],
    ) -> str:
        conditions = "\n".join(
            f"{i}. [handle=\"{t.handle}\"] Condition: \"{t.condition}\""
            + (f" (Label: {t.label})" if t.label else "")
            for i, t in enumerate(transitions, start=1)
        )
        variable_context = ""
        if variables:
            variable_context = "\nCurrent variables:\n" + "\n".join(
                f"  {k}: {json.dumps(v, default=stringify)}" for k, v in variables.items()
            )
        recent = history[-self._settings.llm.history_window:] if self._settings.llm.history_window else []
        history_context = ""
        if recent:
            history_context = "\nRecent conversation:\n" + "\n".join(
                f"  {m.get('role', 'user')}: {m.get('content', '')}" for m in recent
            )

        return f"""You are a transition condition evaluator for a voice AI agent.

Given the user's latest input, the conversation history, and the current variables, determine which transition condition (if any) is satisfied.

Transition conditions to evaluate (in order):
{conditions}
{variable_context}
{history_context}

User's latest input: "{user_input}"

Evaluate each condition in order. Return the handle of the FIRST condition that is TRUE, or "{NO_MATCH}" if no conditions match."""

    def _build_messages(self, history: list[dict[str, str]], user_input: str) -> list[dict[str, str]]:
        """Build the message history for the LLM."""
        messages = []
        for entry in history:
            role = "assistant" if entry.get("role") in ("assistant", "agent") else "user"
            content = entry.get("content", "")
            if content:
                messages.append({"role": role, "content": content})

        # The host may already have recorded this utterance
        if user_input and not (messages and messages[-1] == {"role": "user", "content": user_input}):
            messages.append({"role": "user", "content": user_input})

        # Ensure messages start with user
        if not messages:
            messages = [{"role": "user", "content": "[Call connected]"}]
        elif messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": "[Call connected]"})

        return messages

    @staticmethod
    def _turn_tool(handles: list[str]) -> dict[str, Any]:
        if handles:
            transition_doc = (
                "The handle of the first transition condition that is TRUE, or null if none "
                "match. Valid handles: " + ", ".join(f'"{h}"' for h in handles)
            )
        else:
            transition_doc = "Always null when there are no transitions"
        return {
            "name": TURN_TOOL_NAME,
            "description": "Return the spoken reply for this turn, the matched transition and extracted variables.",
            "parameters": {
                "type": "object",
                "properties": {
                    "response": {
                        "type": "string",
                        "description": "Natural, concise voice response to the user (1-3 sentences)",
                    },
                    "matched_transition": {
                        "type": ["string", "null"],
                        "description": transition_doc,
                    },
                    "extracted_variables": {
                        "type": "object",
                        "additionalProperties": True,
                        "description": (
                            "Variables or entities extracted from the user's input (name, phone "
                            "number, date...). Keys are variable names."
                        ),
                    },
                },
                "required": ["response", "matched_transition", "extracted_variables"],
            },
        }

    @staticmethod
    def _condition_tool(handles: list[str]) -> dict[str, Any]:
        return {
            "name": CONDITION_TOOL_NAME,
            "description": "Report which transition condition is satisfied.",
            "parameters": {
                "type": "object",
                "properties": {
                    "matched_handle": {"type": "string", "enum": handles + [NO_MATCH]},
                    "reasoning": {"type": "string", "description": "Brief explanation"},
                },
                "required": ["matched_handle", "reasoning"],
            },
        }

    @staticmethod
    def _parse_json_text(text: str) -> Optional[dict[str, Any]]:
        """Pull a JSON object out of a plain-text answer (possibly fenced)."""
        match = re.search(r"\{[\s\S]*\}", text or "")
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        # Older prompts used camelCase
        if "matchedHandle" in parsed and "matched_handle" not in parsed:
            parsed["matched_handle"] = parsed.pop("matchedHandle")
        return parsed
