from __future__ import annotations

import pytest

from flow_test_utils import edge

from callflow.flow_core.ir import (
    ActionData,
    ActionNode,
    ApiConfig,
    BranchData,
    BranchNode,
    EndData,
    EndNode,
    FlowGraph,
    ListenData,
    ListenNode,
    MessageData,
    MessageNode,
    ResponseMapping,
    StartData,
    StartNode,
)

def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: Fast unit tests with mocks only")

@pytest.fixture
def branching_graph() -> FlowGraph:
    """Start -> greeting -> listen -> branch {A, B} -> end."""
    return FlowGraph(
        nodes=[
            StartNode(id="start", data=StartData(label="Call Starts")),
            MessageNode(id="greeting", data=MessageData(label="Greeting", content="Hi! A or B?")),
            ListenNode(id="listen", data=ListenData(label="Listen")),
            BranchNode(id="branch", data=BranchData(label="Choice")),
            MessageNode(id="msg-a", data=MessageData(label="MessageA", content="You picked A.")),
            MessageNode(id="msg-b", data=MessageData(label="MessageB", content="You picked B.")),
            EndNode(id="end", data=EndData(label="End Call", end_message="Goodbye!")),
        ],
        edges=[
            edge("start", "greeting"),
            edge("greeting", "listen"),
            edge("listen", "branch"),
            edge("branch", "msg-a", "A"),
            edge("branch", "msg-b", "B"),
            edge("msg-a", "end"),
            edge("msg-b", "end"),
        ],
    )

@pytest.fixture
def action_graph() -> FlowGraph:
    """Start -> lookup action -> end, with an API config on the action."""
    api = ApiConfig(
        endpoint="https://crm.example.com/customers/{phone}",
        response_mapping=[
            ResponseMapping(path="customer.name", label="Name"),
            ResponseMapping(path="customer.tier", label="Tier"),
        ],
    )
    return FlowGraph(
        nodes=[
            StartNode(id="start", data=StartData(label="Call Starts")),
            ActionNode(
                id="lookup",
                data=ActionData(label="Look up caller", action_type="lookup", api_config=api),
            ),
            EndNode(id="end", data=EndData(label="End Call")),
        ],
        edges=[edge("start", "lookup"), edge("lookup", "end")],
    )
