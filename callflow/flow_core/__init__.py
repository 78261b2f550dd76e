from .compiler import PromptCompiler, compile_checked, compile_flow
from .engine import TraversalEngine
from .events import (
    CallEnd,
    CallError,
    CallEvent,
    CallStart,
    Message,
    SpeechEnd,
    SpeechStart,
    parse_call_event,
)
from .generator import FlowGenerator, GenerationResult
from .intent import IntentResolver, IntentResult, candidates_for_branch, match_branch_edge
from .ir import (
    ActionNode,
    ApiConfig,
    BranchNode,
    EndNode,
    FlowEdge,
    FlowGraph,
    FlowNode,
    ListenNode,
    MessageNode,
    NodeKind,
    Position,
    StartNode,
    TransferNode,
)
from .layout import LayoutAnimation, apply_positions, initial_layout, rearrange
from .state import TraversalState
from .validation import FlowValidationError, ValidationResult, ensure_valid, validate
from .view import FlowView, RecordingFlowView

__all__ = [
    "ActionNode",
    "ApiConfig",
    "BranchNode",
    "CallEnd",
    "CallError",
    "CallEvent",
    "CallStart",
    "EndNode",
    "FlowEdge",
    "FlowGenerator",
    "FlowGraph",
    "FlowNode",
    "FlowValidationError",
    "FlowView",
    "GenerationResult",
    "IntentResolver",
    "IntentResult",
    "LayoutAnimation",
    "ListenNode",
    "Message",
    "MessageNode",
    "NodeKind",
    "Position",
    "PromptCompiler",
    "RecordingFlowView",
    "SpeechEnd",
    "SpeechStart",
    "StartNode",
    "TransferNode",
    "TraversalEngine",
    "TraversalState",
    "ValidationResult",
    "apply_positions",
    "candidates_for_branch",
    "compile_checked",
    "compile_flow",
    "ensure_valid",
    "initial_layout",
    "match_branch_edge",
    "parse_call_event",
    "rearrange",
    "validate",
]
