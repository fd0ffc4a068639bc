"""Shared test fixtures for the flow engine."""
import pytest
from unittest.mock import AsyncMock, MagicMock

import httpx

from backend.http_function import HTTPFunctionExecutor
from backend.sandbox import CodeSandbox
from config.settings import EngineConfig, FunctionsConfig, LLMConfig, Settings
from core.engine import ConversationEngine
from flow.executor import FlowExecutor
from flow.graph import load_flow
from models.schemas import ConversationResult, FlowGraph
from tests.builders import edge, flow, node


@pytest.fixture
def settings() -> Settings:
    return Settings(
        llm=LLMConfig(api_key="", timeout_seconds=1.0),
        functions=FunctionsConfig(http_timeout_seconds=1.0, http_retries=0, code_timeout_seconds=5.0),
        engine=EngineConfig(max_hops=10, history_limit=6),
    )


@pytest.fixture
def mock_engine(settings) -> MagicMock:
    """ConversationEngine with both LLM entry points stubbed."""
    engine = MagicMock(spec=ConversationEngine)
    engine.generate_turn = AsyncMock(return_value=ConversationResult(response="Sure, tell me more."))
    engine.match_prompt_conditions = AsyncMock(return_value=None)
    return engine


@pytest.fixture
def http_handler():
    """Mutable request handler behind the mock transport; tests replace `.respond`."""
    class Handler:
        def __init__(self):
            self.requests = []
            self.respond = lambda request: httpx.Response(200, json={})

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.respond(request)

    return Handler()


@pytest.fixture
def http_executor(settings, http_handler) -> HTTPFunctionExecutor:
    return HTTPFunctionExecutor(settings.functions, transport=httpx.MockTransport(http_handler))


@pytest.fixture
def mock_sandbox() -> MagicMock:
    sandbox = MagicMock(spec=CodeSandbox)
    sandbox.run = AsyncMock(return_value=None)
    return sandbox


@pytest.fixture
def executor(settings, mock_engine, http_executor, mock_sandbox) -> FlowExecutor:
    return FlowExecutor(
        engine=mock_engine,
        http_executor=http_executor,
        sandbox=mock_sandbox,
        settings=settings,
    )


@pytest.fixture
def yes_flow_raw() -> dict:
    """start → static 'Need help?' → (user says yes) → end 'Bye'."""
    return flow(
        nodes=[
            node("start", "start"),
            node("ask", "conversation",
                 content={"mode": "static", "content": "Need help?"},
                 transitions=[{"id": "t1", "type": "equation",
                               "condition": '{{user_input}} CONTAINS "yes"', "handle": "yes"}]),
            node("bye", "end", speakDuringExecution={"mode": "static", "content": "Bye"}),
        ],
        edges=[edge("start", "ask"), edge("ask", "bye", "yes")],
    )


@pytest.fixture
def yes_flow(yes_flow_raw) -> FlowGraph:
    return load_flow(yes_flow_raw)
