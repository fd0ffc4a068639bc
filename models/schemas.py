"""
Core data models for the flow execution engine.

A FlowGraph is the authored, immutable snapshot of a conversation:
typed nodes, handle-labelled edges and declared variables. Node configs
are parsed into one model per node type when the graph is loaded, so the
executor never re-validates shapes while a call is live.

Both the editor's camelCase keys (``sourceHandle``, ``speaksFirst``) and
snake_case keys are accepted on input.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel


class FlowModel(BaseModel):
    """Base for authored models: camelCase aliases, unknown editor keys ignored."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    CONVERSATION = "conversation"
    FUNCTION = "function"
    SET_VARIABLE = "set_variable"
    CALL_TRANSFER = "call_transfer"
    END = "end"


class ContentMode(str, Enum):
    PROMPT = "prompt"             # base prompt for the turn generator
    STATIC = "static"             # fixed sentence, spoken as-is


class TransitionType(str, Enum):
    EQUATION = "equation"         # deterministic expression over variables
    PROMPT = "prompt"             # natural-language criterion judged by the LLM


class ExecutionType(str, Enum):
    HTTP = "http"
    CODE = "code"


class AssignmentOperation(str, Enum):
    SET = "set"
    APPEND = "append"
    INCREMENT = "increment"
    DECREMENT = "decrement"


class TransferType(str, Enum):
    COLD = "cold"
    WARM = "warm"


class TurnAction(str, Enum):
    SPEAK = "speak"
    TRANSFER = "transfer"
    END = "end"
    GATHER = "gather"


DEFAULT_HANDLE = "default"


# ──────────────────────────────────────────────────────────────
#  Shared config pieces
# ──────────────────────────────────────────────────────────────

class ContentConfig(FlowModel):
    """Prompt instructions or a static sentence."""
    mode: ContentMode = ContentMode.PROMPT
    content: str = ""


def _as_content(value: Any) -> Any:
    # Older editor builds stored a bare string instead of {mode, content}
    if isinstance(value, str):
        return {"mode": ContentMode.STATIC.value, "content": value}
    return value


class TransitionCondition(FlowModel):
    """One labelled exit of a node. Order is significant."""
    id: str = ""
    type: TransitionType
    condition: str = ""
    handle: str
    label: Optional[str] = None


class ResponseMapping(FlowModel):
    """Copy a dot-path of the HTTP response body into a variable."""
    id: str = ""
    variable: str
    path: str


class VariableAssignment(FlowModel):
    id: str = ""
    variable: str = ""
    value: str = ""                                # may contain {{templates}}
    operation: AssignmentOperation = AssignmentOperation.SET

    @field_validator("value", mode="before")
    @classmethod
    def _value_as_text(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v


class WarmTransferOptions(FlowModel):
    hold_music: Optional[bool] = None
    human_detection_timeout: Optional[float] = None   # seconds


# ──────────────────────────────────────────────────────────────
#  Node configs — one variant per node type
# ──────────────────────────────────────────────────────────────

class StartConfig(FlowModel):
    speaks_first: bool = True
    greeting: Optional[ContentConfig] = None

    @field_validator("greeting", mode="before")
    @classmethod
    def _greeting_as_content(cls, v: Any) -> Any:
        return _as_content(v)


class ConversationConfig(FlowModel):
    content: ContentConfig = Field(default_factory=ContentConfig)
    transitions: list[TransitionCondition] = []
    skip_response: bool = False                    # static: speak and advance without waiting
    block_interruptions: bool = False              # honoured by the host's barge-in handling
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @field_validator("content", mode="before")
    @classmethod
    def _content_as_config(cls, v: Any) -> Any:
        return _as_content(v)


class FunctionConfig(FlowModel):
    execution_type: ExecutionType = ExecutionType.HTTP

    # http
    method: str = "GET"
    url: str = ""
    headers: dict[str, str] = {}
    body: Optional[str] = None
    response_mapping: list[ResponseMapping] = []

    # code
    code: str = ""
    input_variables: list[str] = []
    output_variable: str = ""

    timeout: Optional[float] = None                # milliseconds
    speak_during_execution: Optional[ContentConfig] = None
    wait_for_result: bool = True
    transitions: list[TransitionCondition] = []

    @field_validator("speak_during_execution", mode="before")
    @classmethod
    def _speech_as_content(cls, v: Any) -> Any:
        return _as_content(v)

    @field_validator("body", mode="before")
    @classmethod
    def _body_as_text(cls, v: Any) -> Any:
        if isinstance(v, (dict, list)):
            return json.dumps(v)
        return v

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) and v else "GET"


class CallTransferConfig(FlowModel):
    destination: str = ""                          # E.164 number or {{variable}}
    transfer_type: TransferType = TransferType.COLD
    warm_options: Optional[WarmTransferOptions] = None


class SetVariableConfig(FlowModel):
    assignments: list[VariableAssignment] = []


class EndConfig(FlowModel):
    speak_during_execution: Optional[ContentConfig] = None
    reason: str = "completed"

    @field_validator("speak_during_execution", mode="before")
    @classmethod
    def _speech_as_content(cls, v: Any) -> Any:
        return _as_content(v)


NodeConfig = Union[
    StartConfig, ConversationConfig, FunctionConfig,
    CallTransferConfig, SetVariableConfig, EndConfig,
]

NODE_CONFIG_TYPES: dict[str, type[FlowModel]] = {
    NodeType.START.value: StartConfig,
    NodeType.CONVERSATION.value: ConversationConfig,
    NodeType.FUNCTION.value: FunctionConfig,
    NodeType.SET_VARIABLE.value: SetVariableConfig,
    NodeType.CALL_TRANSFER.value: CallTransferConfig,
    NodeType.END.value: EndConfig,
}


# ──────────────────────────────────────────────────────────────
#  Graph
# ──────────────────────────────────────────────────────────────

class FlowNode(FlowModel):
    """
    One step of conversation logic.

    ``type`` stays a plain string so graphs authored by newer editors
    still load; such nodes keep their raw config dict.
    """
    id: str
    type: str
    label: str = ""
    config: Any = None

    @model_validator(mode="before")
    @classmethod
    def _lift_editor_shape(cls, raw: Any) -> Any:
        # Editor shape: {id, type, data: {label, config}}
        if isinstance(raw, dict) and "config" not in raw and isinstance(raw.get("data"), dict):
            data = raw["data"]
            raw = {
                **raw,
                "config": data.get("config") or {},
                "label": raw.get("label") or data.get("label", ""),
            }
        return raw

    @model_validator(mode="after")
    def _parse_config(self) -> "FlowNode":
        config_cls = NODE_CONFIG_TYPES.get(self.type)
        if config_cls is None:
            if self.config is None:
                self.config = {}
        elif not isinstance(self.config, config_cls):
            self.config = config_cls.model_validate(self.config or {})
        return self

    @property
    def is_known_type(self) -> bool:
        return self.type in NODE_CONFIG_TYPES


class FlowEdge(FlowModel):
    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = None
    label: str = ""

    @property
    def handle(self) -> str:
        return self.source_handle or DEFAULT_HANDLE


class FlowVariable(FlowModel):
    id: str = ""
    name: str
    type: str = "string"                           # string | number | boolean | enum
    default_value: Any = None
    description: str = ""
    enum_options: list[str] = []


class FlowSettings(FlowModel):
    global_prompt: str = ""                        # persona/guardrails for every generative node
    max_turns: Optional[int] = None
    language: str = "en"


class FlowGraph(FlowModel):
    """Authored snapshot loaded once per call. Never mutated during execution."""
    id: str = ""
    name: str = ""
    nodes: list[FlowNode] = []
    edges: list[FlowEdge] = []
    variables: list[FlowVariable] = []
    settings: FlowSettings = Field(default_factory=FlowSettings)

    _node_index: dict[str, FlowNode] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        # First node wins on duplicate ids; validation reports the duplicate
        index: dict[str, FlowNode] = {}
        for node in self.nodes:
            index.setdefault(node.id, node)
        self._node_index = index

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        return self._node_index.get(node_id)

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]


# ──────────────────────────────────────────────────────────────
#  Execution results
# ──────────────────────────────────────────────────────────────

class HistoryMessage(FlowModel):
    role: str                                      # user | assistant
    content: str


class ExecutionTurnResult(FlowModel):
    """The atomic output of one turn. Immutable once returned."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    response: str = ""
    action: TurnAction
    next_node_id: Optional[str] = None
    variables: dict[str, Any] = {}
    transfer_to: Optional[str] = None
    transfer_type: Optional[TransferType] = None
    warm_options: Optional[WarmTransferOptions] = None


class ConversationResult(BaseModel):
    """What the turn generator produced for a generative conversation node."""
    response: str
    matched_transition: Optional[str] = None
    extracted_variables: dict[str, Any] = {}


class FunctionResult(BaseModel):
    """Outcome of an HTTP function call. Never raised, always returned."""
    success: bool
    status_code: int = 0
    variables: dict[str, Any] = {}
    error: str = ""


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

class ValidationIssue(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    field: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool = True
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
