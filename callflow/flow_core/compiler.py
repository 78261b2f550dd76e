"""Lower a flow graph into the agent's system instructions."""

from __future__ import annotations

from typing import assert_never

from .ir import (
    ActionNode,
    BranchNode,
    EndNode,
    FlowGraph,
    FlowNode,
    ListenNode,
    MessageNode,
    StartNode,
    TransferNode,
)
from .markers import MARKER_TEMPLATE, format_marker
from .validation import ensure_valid

NO_FLOW_PROMPT = "No conversation flow defined."

TRACKING_DIRECTIVE = (
    "   - Begin every response with the marker of the step you are executing, "
    f"written exactly as {MARKER_TEMPLATE.format(node_id='<id>')}"
)

CLOSING_RULES: tuple[str, ...] = (
    "[CRITICAL RULES]",
    '1. WAITING IS MANDATORY: When the flow says "WAIT FOR USER RESPONSE", you MUST:',
    "   - Complete your current sentence/question",
    "   - STOP talking completely",
    "   - Wait silently for the user to speak",
    "   - Do NOT fill silence with additional options or suggestions",
    "   - Do NOT continue the conversation until user responds",
    "",
    "2. ACKNOWLEDGMENT: After the user responds:",
    '   - First acknowledge their choice ("Great choice!" or "I understand you want...")',
    "   - Then proceed to the appropriate next step",
    "",
    "3. GENERAL RULES:",
    "   - Follow the flow steps in order",
    "   - Be natural and conversational",
    "   - If the user asks something unexpected, acknowledge it and guide them back to the flow",
    "   - Always be helpful and professional",
    "",
    "4. FLOW TRACKING:",
    TRACKING_DIRECTIVE,
    "   - Use the id shown on that step above; never invent ids",
    "   - The marker is read by software and is not spoken aloud",
)


class PromptCompiler:
    """Walks the graph from Start and renders one instruction per step.

    Non-branch nodes follow their first outgoing edge; branch nodes expand every
    outgoing edge in drawing order. Each node is rendered once, so graphs with
    cycles still terminate, and the walk uses an explicit stack so deep flows do
    not hit the recursion limit.
    """

    def __init__(self, graph: FlowGraph) -> None:
        self._graph = graph
        self._lines: list[str] = []
        self._step = 1

    def compile(self) -> str:
        start = self._graph.start_node()
        if start is None:
            return NO_FLOW_PROMPT

        self._lines = []
        self._step = 1
        visited: set[str] = set()
        stack: list[str] = [start.id]

        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)

            node = self._graph.node_by_id(node_id)
            if node is None:
                continue

            self._render(node)
            stack.extend(reversed(self._children(node)))

        sections: list[str] = [
            "[CONVERSATION FLOW]",
            "Follow this conversation flow step by step:",
            "",
            *self._lines,
            "",
            *CLOSING_RULES,
        ]
        return "\n".join(sections)

    def _children(self, node: FlowNode) -> list[str]:
        if isinstance(node, EndNode):
            return []
        if isinstance(node, BranchNode):
            return self._graph.successors(node.id)
        nxt = self._graph.next_node_id(node.id)
        return [nxt] if nxt is not None else []

    def _emit(self, text: str, node: FlowNode) -> None:
        self._lines.append(f"{self._step}. {format_marker(node.id)} {text}")
        self._step += 1

    def _render(self, node: FlowNode) -> None:
        if isinstance(node, StartNode):
            self._emit("[CALL STARTS] Begin the conversation.", node)
        elif isinstance(node, MessageNode):
            if node.data.content:
                self._emit(f'[SAY] "{node.data.content}"', node)
            else:
                self._emit(f"[SAY] {node.label}", node)
        elif isinstance(node, ListenNode):
            self._emit("[WAIT FOR USER RESPONSE]", node)
            self._lines.extend(
                [
                    "   CRITICAL: You MUST stop speaking completely and wait for the user to respond.",
                    "   - Do NOT continue speaking until the user has answered.",
                    "   - Do NOT assume what the user wants.",
                    "   - Do NOT offer multiple options in rapid succession.",
                    "   - Ask your question, then STOP and LISTEN.",
                ]
            )
            if node.data.intents:
                self._lines.append(f"   - Expected user choices: {', '.join(node.data.intents)}")
                self._lines.append("   - After user responds, acknowledge their choice before proceeding.")
        elif isinstance(node, BranchNode):
            self._emit("[BRANCH] Based on the detected choice, continue with the matching step:", node)
            for edge in self._graph.outgoing(node.id):
                target = self._graph.node_by_id(edge.target)
                if target is None:
                    continue
                choice = edge.label.strip() if edge.has_label else target.label  # type: ignore[union-attr]
                self._lines.append(
                    f'   - If the detected choice is "{choice}": proceed to "{target.label}" {format_marker(target.id)}'
                )
        elif isinstance(node, ActionNode):
            action_type = (node.data.action_type or "custom").upper()
            self._emit(f"[ACTION: {action_type}] {node.data.content or node.label}", node)
        elif isinstance(node, TransferNode):
            number = node.data.transfer_number or "configured number"
            self._emit(f"[TRANSFER] Transfer call to {number}", node)
        elif isinstance(node, EndNode):
            closing = node.closing_line
            if closing:
                self._emit(f'[END CALL] Say: "{closing}" and end the call.', node)
            else:
                self._emit("[END CALL] End the conversation politely.", node)
        else:
            assert_never(node)


def compile_flow(graph: FlowGraph) -> str:
    """Convenience function to compile a flow into the agent's instructions."""
    return PromptCompiler(graph).compile()


def compile_checked(graph: FlowGraph) -> str:
    """Compile only a graph that passes validation; used when publishing."""
    ensure_valid(graph)
    return compile_flow(graph)
