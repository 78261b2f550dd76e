from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NodeKind(str, Enum):
    """Closed set of node variants a flow can contain."""

    START = "start"
    MESSAGE = "message"
    LISTEN = "listen"
    BRANCH = "branch"
    ACTION = "action"
    TRANSFER = "transfer"
    END = "end"


TERMINAL_KINDS = frozenset({NodeKind.END.value, NodeKind.TRANSFER.value})


class _CamelModel(BaseModel):
    # Stored flows use the editor's camelCase keys
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Position(BaseModel):
    """Canvas coordinates. Presentation only."""

    x: float = 0.0
    y: float = 0.0


class ApiHeader(_CamelModel):
    key: str = ""
    value: str = ""


class ResponseMapping(_CamelModel):
    """Picks one field of an external response to surface as call context."""

    path: str  # dotted JSON path like "data.customer.name"
    label: str
    enabled: bool = True


class ApiConfig(_CamelModel):
    """External lookup performed when an Action node completes."""

    endpoint: str = ""  # e.g. "https://api.example.com/customer/{phone}"
    method: Literal["GET"] = "GET"
    headers: list[ApiHeader] = Field(default_factory=list)
    response_mapping: list[ResponseMapping] = Field(default_factory=list)
    test_phone: str | None = None
    last_test_response: Any | None = None


class NodeData(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    label: str = ""


class StartData(NodeData):
    pass


class MessageData(NodeData):
    content: str | None = None


class ListenData(NodeData):
    intents: list[str] = Field(default_factory=list)


class BranchData(NodeData):
    pass


class ActionData(NodeData):
    content: str | None = None
    action_type: str | None = None
    api_config: ApiConfig | None = None


class TransferData(NodeData):
    transfer_number: str | None = None


class EndData(NodeData):
    end_message: str | None = None
    content: str | None = None


class BaseNode(BaseModel):
    """Base class for all node types."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    position: Position = Field(default_factory=Position)
    data: NodeData

    @property
    def label(self) -> str:
        return self.data.label

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_KINDS


class StartNode(BaseNode):
    type: Literal["start"] = "start"
    data: StartData = Field(default_factory=StartData)


class MessageNode(BaseNode):
    """Agent speaks ``content``."""

    type: Literal["message"] = "message"
    data: MessageData = Field(default_factory=MessageData)


class ListenNode(BaseNode):
    """Agent stops and waits for the caller. ``intents`` are hints only."""

    type: Literal["listen"] = "listen"
    data: ListenData = Field(default_factory=ListenData)


class BranchNode(BaseNode):
    """Routing node; its labeled outgoing edges are the choices."""

    type: Literal["branch"] = "branch"
    data: BranchData = Field(default_factory=BranchData)


class ActionNode(BaseNode):
    """Agent performs an action, optionally backed by an external lookup."""

    type: Literal["action"] = "action"
    data: ActionData = Field(default_factory=ActionData)


class TransferNode(BaseNode):
    type: Literal["transfer"] = "transfer"
    data: TransferData = Field(default_factory=TransferData)


class EndNode(BaseNode):
    type: Literal["end"] = "end"
    data: EndData = Field(default_factory=EndData)

    @property
    def closing_line(self) -> str | None:
        return self.data.end_message or self.data.content


FlowNode = Annotated[
    StartNode | MessageNode | ListenNode | BranchNode | ActionNode | TransferNode | EndNode,
    Field(discriminator="type"),
]


class FlowEdge(BaseModel):
    """Directed connection. ``label`` names a branch condition."""

    model_config = ConfigDict(extra="allow")

    id: str
    source: str
    target: str
    label: str | None = None

    @property
    def has_label(self) -> bool:
        return bool(self.label and self.label.strip())


class FlowGraph(BaseModel):
    """One designed conversation, exchanged as two arrays: nodes and edges.

    The structure itself tolerates invalid intermediate states produced while
    editing; use :func:`callflow.flow_core.validation.validate` before
    publishing. Helpers keep edge order, which is the order edges were drawn.
    """

    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    def node_by_id(self, node_id: str | None) -> FlowNode | None:
        """Get node by ID."""
        if node_id is None:
            return None
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def nodes_of_kind(self, kind: NodeKind) -> list[FlowNode]:
        return [n for n in self.nodes if n.type == kind]

    def start_node(self) -> StartNode | None:
        """First Start node, if any."""
        for n in self.nodes:
            if isinstance(n, StartNode):
                return n
        return None

    def end_node(self) -> EndNode | None:
        for n in self.nodes:
            if isinstance(n, EndNode):
                return n
        return None

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.target == node_id]

    def successors(self, node_id: str) -> list[str]:
        return [e.target for e in self.edges if e.source == node_id]

    def next_node_id(self, node_id: str) -> str | None:
        """The single successor used for linear advancement (first drawn edge)."""
        for e in self.edges:
            if e.source == node_id:
                return e.target
        return None

    def adjacency(self) -> dict[str, list[str]]:
        """Forward adjacency in edge order."""
        adj: dict[str, list[str]] = {}
        for e in self.edges:
            adj.setdefault(e.source, []).append(e.target)
        return adj

    def to_payload(self) -> dict[str, Any]:
        """Serialize in the stored/canvas shape (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FlowGraph:
        return cls.model_validate(payload)

    @classmethod
    def minimal(cls) -> FlowGraph:
        """Start and End only, unconnected. Used for a fresh canvas."""
        return cls(
            nodes=[
                StartNode(id="start-1", position=Position(x=300, y=50), data=StartData(label="Call Starts")),
                EndNode(id="end-1", position=Position(x=300, y=300), data=EndData(label="End Call")),
            ],
            edges=[],
        )

    @classmethod
    def initial(cls) -> FlowGraph:
        """Default template: greet, listen, route to booking, info or support."""
        return cls(
            nodes=[
                StartNode(id="start-1", position=Position(x=400, y=50), data=StartData(label="Call Starts")),
                MessageNode(
                    id="message-1",
                    position=Position(x=400, y=180),
                    data=MessageData(
                        label="Greeting",
                        content="Hello! Thank you for calling. How can I help you today?",
                    ),
                ),
                ListenNode(
                    id="listen-1",
                    position=Position(x=400, y=310),
                    data=ListenData(
                        label="Listen for Intent",
                        intents=["Appointment", "Information", "Support"],
                    ),
                ),
                BranchNode(id="branch-1", position=Position(x=400, y=440), data=BranchData(label="Route by Intent")),
                ActionNode(
                    id="action-1",
                    position=Position(x=150, y=580),
                    data=ActionData(
                        label="Book Appointment",
                        content="Schedule appointment",
                        action_type="appointment",
                    ),
                ),
                MessageNode(
                    id="message-2",
                    position=Position(x=400, y=580),
                    data=MessageData(
                        label="Provide Info",
                        content="Let me provide you with that information...",
                    ),
                ),
                TransferNode(
                    id="transfer-1",
                    position=Position(x=650, y=580),
                    data=TransferData(label="Transfer to Support", transfer_number="+1234567890"),
                ),
                EndNode(
                    id="end-1",
                    position=Position(x=400, y=720),
                    data=EndData(
                        label="End Call",
                        end_message="Thank you for calling. Have a great day!",
                    ),
                ),
            ],
            edges=[
                FlowEdge(id="e1-2", source="start-1", target="message-1"),
                FlowEdge(id="e2-3", source="message-1", target="listen-1"),
                FlowEdge(id="e3-4", source="listen-1", target="branch-1"),
                FlowEdge(id="e4-5", source="branch-1", target="action-1", label="Appointment"),
                FlowEdge(id="e4-6", source="branch-1", target="message-2", label="Info"),
                FlowEdge(id="e4-7", source="branch-1", target="transfer-1", label="Support"),
                FlowEdge(id="e5-8", source="action-1", target="end-1"),
                FlowEdge(id="e6-8", source="message-2", target="end-1"),
                FlowEdge(id="e7-8", source="transfer-1", target="end-1"),
            ],
        )
