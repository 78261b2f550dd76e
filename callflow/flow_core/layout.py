"""Node placement for the flow canvas.

Two layouts are offered. ``initial_layout`` is the quick level-by-level
placement used right after a flow is generated. ``rearrange`` is the
user-triggered tidy: a layered (Sugiyama style) layout computed with networkx.
``LayoutAnimation`` moves nodes from their old to their new positions.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Literal

import networkx as nx

from .ir import FlowGraph, Position

logger = logging.getLogger(__name__)

Direction = Literal["TB", "LR"]

NODE_WIDTH = 100
NODE_HEIGHT = 100
MARGIN = 50
ORDERING_SWEEPS = 4

# (node spacing, rank spacing) per direction
DEFAULT_SPACING: dict[str, tuple[float, float]] = {"TB": (100, 130), "LR": (80, 180)}


def initial_layout(
    graph: FlowGraph,
    *,
    x_spacing: float = 200,
    y_spacing: float = 140,
    center_x: float = 300,
    top: float = 50,
) -> dict[str, Position]:
    """Place nodes by BFS level below the Start node.

    The level of a node is its shortest hop distance from Start. Nodes of one
    level are spread ``x_spacing`` apart, centered on ``center_x``, in the
    order BFS reached them. Nodes not reachable from Start keep their current
    position. Running it twice gives the same result.
    """
    positions = {n.id: n.position.model_copy() for n in graph.nodes}
    start = graph.start_node()
    if start is None:
        return positions

    adjacency = graph.adjacency()
    levels: dict[str, int] = {}
    queue: deque[tuple[str, int]] = deque([(start.id, 0)])
    while queue:
        node_id, level = queue.popleft()
        if node_id in levels:
            continue
        levels[node_id] = level
        for target in adjacency.get(node_id, []):
            if target not in levels:
                queue.append((target, level + 1))

    groups: dict[int, list[str]] = {}
    for node_id, level in levels.items():
        groups.setdefault(level, []).append(node_id)

    for level, members in groups.items():
        start_x = center_x - (len(members) - 1) * x_spacing / 2
        for index, node_id in enumerate(members):
            if node_id in positions:
                positions[node_id] = Position(x=start_x + index * x_spacing, y=top + level * y_spacing)
    return positions


def _to_dag(graph: FlowGraph) -> nx.DiGraph:
    """Directed graph of the flow with back edges reversed."""
    g = nx.DiGraph()
    start = graph.start_node()
    # DFS roots follow node insertion order, so Start goes first
    if start is not None:
        g.add_node(start.id)
    g.add_nodes_from(n.id for n in graph.nodes)
    g.add_edges_from(
        (e.source, e.target)
        for e in graph.edges
        if e.source in g and e.target in g and e.source != e.target
    )

    back_edges: list[tuple[str, str]] = []
    on_stack: set[str] = set()
    for u, v, kind in nx.dfs_labeled_edges(g):
        if kind == "forward":
            on_stack.add(v)
        elif kind == "reverse":
            on_stack.discard(v)
        elif kind == "nontree" and v in on_stack:
            back_edges.append((u, v))

    for u, v in back_edges:
        g.remove_edge(u, v)
        if not g.has_edge(v, u):
            g.add_edge(v, u)

    while not nx.is_directed_acyclic_graph(g):
        u, v = nx.find_cycle(g)[-1][:2]
        g.remove_edge(u, v)
    return g


def _assign_ranks(dag: nx.DiGraph) -> dict[str, int]:
    ranks: dict[str, int] = {}
    for node_id in nx.topological_sort(dag):
        ranks[node_id] = max((ranks[p] + 1 for p in dag.predecessors(node_id)), default=0)
    return ranks


def _order_layers(dag: nx.DiGraph, ranks: dict[str, int]) -> list[list[str]]:
    layers: list[list[str]] = [[] for _ in range(max(ranks.values(), default=-1) + 1)]
    for node_id in dag.nodes:
        layers[ranks[node_id]].append(node_id)

    def sweep(fixed: list[str], free: list[str], neighbours: Callable[[str], Iterable[str]]) -> list[str]:
        index = {node_id: i for i, node_id in enumerate(fixed)}
        current = {node_id: i for i, node_id in enumerate(free)}

        def barycenter(node_id: str) -> float:
            linked = [index[n] for n in neighbours(node_id) if n in index]
            return sum(linked) / len(linked) if linked else float(current[node_id])

        return sorted(free, key=lambda n: (barycenter(n), current[n]))

    for _ in range(ORDERING_SWEEPS):
        for r in range(1, len(layers)):
            layers[r] = sweep(layers[r - 1], layers[r], dag.predecessors)
        for r in range(len(layers) - 2, -1, -1):
            layers[r] = sweep(layers[r + 1], layers[r], dag.successors)
    return layers


def rearrange(
    graph: FlowGraph,
    direction: Direction = "TB",
    *,
    node_spacing: float | None = None,
    rank_spacing: float | None = None,
) -> dict[str, Position]:
    """Layered layout of the whole graph, top-to-bottom or left-to-right.

    Cycles are broken by reversing DFS back edges, ranks follow the longest
    path from the sources, and a few barycenter sweeps reduce crossings.
    Returned positions are top-left corners of 100x100 boxes, offset by a
    50 unit margin.
    """
    if direction not in DEFAULT_SPACING:
        raise ValueError(f"Unknown layout direction: {direction!r}")
    default_nodesep, default_ranksep = DEFAULT_SPACING[direction]
    nodesep = default_nodesep if node_spacing is None else node_spacing
    ranksep = default_ranksep if rank_spacing is None else rank_spacing

    if not graph.nodes:
        return {}

    dag = _to_dag(graph)
    ranks = _assign_ranks(dag)
    layers = _order_layers(dag, ranks)
    horizontal = direction == "LR"

    across_step = (NODE_HEIGHT if horizontal else NODE_WIDTH) + nodesep
    along_step = (NODE_WIDTH if horizontal else NODE_HEIGHT) + ranksep
    widest = max(len(layer) for layer in layers)

    positions: dict[str, Position] = {}
    for rank, layer in enumerate(layers):
        # Center each layer against the widest one
        offset = (widest - len(layer)) * across_step / 2
        for index, node_id in enumerate(layer):
            across = MARGIN + offset + index * across_step
            along = MARGIN + rank * along_step
            if horizontal:
                positions[node_id] = Position(x=along, y=across)
            else:
                positions[node_id] = Position(x=across, y=along)

    logger.debug("Rearranged %d nodes into %d ranks (%s)", len(positions), len(layers), direction)
    return positions


def apply_positions(graph: FlowGraph, positions: dict[str, Position]) -> FlowGraph:
    """Return a copy of ``graph`` with the given node positions."""
    nodes = [
        n.model_copy(update={"position": positions[n.id]}) if n.id in positions else n
        for n in graph.nodes
    ]
    return graph.model_copy(update={"nodes": nodes})


def ease_out_cubic(t: float) -> float:
    t = min(max(t, 0.0), 1.0)
    return 1 - (1 - t) ** 3


Redraw = Callable[[dict[str, Position]], Awaitable[None] | None]


class LayoutAnimation:
    """Moves nodes from ``start`` to ``target`` positions over ``duration``.

    Nodes missing from ``start`` jump straight to their target.
    """

    def __init__(
        self,
        start: dict[str, Position],
        target: dict[str, Position],
        *,
        duration: float = 0.5,
        frame_interval: float = 1 / 60,
    ) -> None:
        self.start = start
        self.target = target
        self.duration = duration
        self.frame_interval = frame_interval

    def frame(self, progress: float) -> dict[str, Position]:
        eased = ease_out_cubic(progress)
        frame: dict[str, Position] = {}
        for node_id, end in self.target.items():
            begin = self.start.get(node_id, end)
            frame[node_id] = Position(
                x=begin.x + (end.x - begin.x) * eased,
                y=begin.y + (end.y - begin.y) * eased,
            )
        return frame

    async def run(self, redraw: Redraw) -> dict[str, Position]:
        loop = asyncio.get_running_loop()
        began = loop.time()
        while self.duration > 0:
            progress = (loop.time() - began) / self.duration
            if progress >= 1:
                break
            result = redraw(self.frame(progress))
            if result is not None:
                await result
            await asyncio.sleep(self.frame_interval)

        final = {node_id: pos.model_copy() for node_id, pos in self.target.items()}
        result = redraw(final)
        if result is not None:
            await result
        return final
