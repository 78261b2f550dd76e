from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from callflow.core.logging import setup_logging
from callflow.settings import get_settings

from .compiler import compile_checked, compile_flow
from .engine import TraversalEngine
from .events import parse_call_event
from .generator import FlowGenerator
from .ir import FlowGraph
from .layout import LayoutAnimation, apply_positions, initial_layout, rearrange
from .validation import FlowValidationError, validate
from .view import RecordingFlowView

console = Console()


def _load_graph(path: str) -> FlowGraph:
    return FlowGraph.from_payload(json.loads(Path(path).read_text(encoding="utf-8")))


def _load_events(path: str) -> list[dict[str, Any]]:
    """Events are stored one JSON object per line; blank lines are skipped."""
    events: list[dict[str, Any]] = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        if line.strip():
            events.append(json.loads(line))
    return events


def _write_output(payload: str, output: str | None) -> None:
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        console.print(f"[green]Wrote {output}[/green]")
    else:
        sys.stdout.write(payload + "\n")


def cmd_validate(args: argparse.Namespace) -> int:
    result = validate(_load_graph(args.flow))
    if result.valid:
        console.print("[green]Flow is valid[/green]")
        return 0
    table = Table(title="Validation errors", show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", width=4)
    table.add_column("Error", style="red")
    for i, error in enumerate(result.errors, 1):
        table.add_row(str(i), error)
    console.print(table)
    return 1


def cmd_compile(args: argparse.Namespace) -> int:
    graph = _load_graph(args.flow)
    try:
        prompt = compile_flow(graph) if args.unchecked else compile_checked(graph)
    except FlowValidationError as exc:
        for error in exc.errors:
            console.print(f"[red]- {error}[/red]")
        return 1
    _write_output(prompt, args.output)
    return 0


def cmd_layout(args: argparse.Namespace) -> int:
    graph = _load_graph(args.flow)
    if args.mode == "initial":
        positions = initial_layout(graph)
    else:
        positions = rearrange(graph, args.direction)

    if args.animate:
        frames = 0

        def _count(_: dict[str, Any]) -> None:
            nonlocal frames
            frames += 1

        start = {n.id: n.position for n in graph.nodes}
        asyncio.run(LayoutAnimation(start, positions).run(_count))
        console.print(f"[dim]Animated {frames} frames[/dim]")

    _write_output(json.dumps(apply_positions(graph, positions).to_payload(), indent=2), args.output)
    return 0


async def _replay(graph: FlowGraph, events: list[dict[str, Any]], realtime: bool) -> TraversalEngine:
    settings = get_settings()
    if not realtime:
        settings = settings.model_copy(
            update={"start_completion_delay_ms": 0, "end_completion_delay_ms": 0}
        )
    engine = TraversalEngine.from_settings(
        graph, settings, view=RecordingFlowView(), call_id="replay"
    )
    async with engine:
        for raw in events:
            engine.submit(parse_call_event(raw))
            await engine.drain()
    return engine


def cmd_replay(args: argparse.Namespace) -> int:
    """Feed a recorded event log through the engine and show the resulting path."""
    graph = _load_graph(args.flow)
    events = _load_events(args.events)
    engine = asyncio.run(_replay(graph, events, args.realtime))
    snapshot = engine.snapshot()

    table = Table(title="View operations", show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", width=4)
    table.add_column("Op", style="cyan")
    table.add_column("Node", style="yellow")
    view = engine.view
    assert isinstance(view, RecordingFlowView)
    for i, op in enumerate(view.ops, 1):
        table.add_row(str(i), op.op, op.node_id or "-")
    console.print(table)

    console.print(
        Panel(
            f"Visited: {', '.join(snapshot['visited_nodes']) or '-'}\n"
            f"Current: {snapshot['current_node_id'] or '-'}\n"
            f"Active: {snapshot['is_active']}",
            title="Final state",
            border_style="green",
        )
    )
    return 0


def cmd_generate(args: argparse.Namespace) -> int:
    generator = FlowGenerator.from_settings(get_settings())
    if not generator.available:
        console.print("[red]Set OPENAI_API_KEY to generate flows[/red]")
        return 1
    result = asyncio.run(generator.generate(args.description))
    if not result.success or result.graph is None:
        console.print(f"[red]{result.error}[/red]")
        for error in result.errors:
            console.print(f"[red]- {error}[/red]")
        return 1

    console.print(
        Panel(
            f"{result.summary}\n"
            f"Nodes: {len(result.graph.nodes)}  Edges: {len(result.graph.edges)}",
            title="Generated flow",
            border_style="green",
        )
    )
    _write_output(json.dumps(result.graph.to_payload(), indent=2), args.output)
    return 0


def cmd_template(args: argparse.Namespace) -> int:
    graph = FlowGraph.minimal() if args.fresh else FlowGraph.initial()
    _write_output(json.dumps(graph.to_payload(), indent=2), args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="callflow", description="Voice call flow tools")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Check a flow's structure")
    p.add_argument("flow", help="Path to a flow JSON file")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("compile", help="Compile a flow into agent instructions")
    p.add_argument("flow")
    p.add_argument("--unchecked", action="store_true", help="Skip validation before compiling")
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(func=cmd_compile)

    p = sub.add_parser("layout", help="Recompute node positions")
    p.add_argument("flow")
    p.add_argument("--mode", choices=["initial", "rearrange"], default="rearrange")
    p.add_argument("--direction", choices=["TB", "LR"], default="TB")
    p.add_argument("--animate", action="store_true", help="Run the transition animation")
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(func=cmd_layout)

    p = sub.add_parser("replay", help="Replay a JSONL call event log against a flow")
    p.add_argument("flow")
    p.add_argument("events")
    p.add_argument("--realtime", action="store_true", help="Keep the configured completion delays")
    p.set_defaults(func=cmd_replay)

    p = sub.add_parser("generate", help="Draft a flow from a plain-language description")
    p.add_argument("description", help="What the voice agent should do")
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(func=cmd_generate)

    p = sub.add_parser("template", help="Print the default flow")
    p.add_argument("--fresh", action="store_true", help="Only Start and End nodes")
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(func=cmd_template)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or get_settings().log_level)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
