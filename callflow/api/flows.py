from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from callflow.core.app_context import get_app_context
from callflow.flow_core.compiler import compile_checked
from callflow.flow_core.ir import FlowGraph
from callflow.flow_core.layout import apply_positions, initial_layout, rearrange
from callflow.flow_core.validation import FlowValidationError, validate

router = APIRouter(prefix="/flows", tags=["flows"])


@router.get("/template")
async def get_template_flow(fresh: bool = False) -> dict[str, Any]:
    """Default flow for a new agent, or a bare Start/End canvas with ``fresh``."""
    graph = FlowGraph.minimal() if fresh else FlowGraph.initial()
    return graph.to_payload()


@router.post("/validate")
async def validate_flow(graph: FlowGraph) -> dict[str, Any]:
    result = validate(graph)
    return {"valid": result.valid, "errors": result.errors}


@router.post("/compile")
async def compile_flow_prompt(graph: FlowGraph) -> dict[str, Any]:
    """Compile a publishable flow into the agent's instruction script."""
    try:
        prompt = compile_checked(graph)
    except FlowValidationError as exc:
        raise HTTPException(status_code=422, detail={"errors": exc.errors}) from exc
    return {"prompt": prompt}


@router.post("/layout")
async def layout_flow(
    graph: FlowGraph,
    mode: Literal["initial", "rearrange"] = Query("rearrange"),
    direction: Literal["TB", "LR"] = Query("TB"),
) -> dict[str, Any]:
    if mode == "initial":
        positions = initial_layout(graph)
    else:
        positions = rearrange(graph, direction)
    return apply_positions(graph, positions).to_payload()


class GenerateFlowRequest(BaseModel):
    description: str = Field(min_length=1, max_length=4000)


@router.post("/generate")
async def generate_flow(body: GenerateFlowRequest, request: Request) -> dict[str, Any]:
    """Draft a validated, laid-out flow from a plain-language description."""
    generator = get_app_context(request.app).generator
    if not generator.available:
        raise HTTPException(status_code=503, detail="Flow generation is not configured")
    result = await generator.generate(body.description)
    if not result.success or result.graph is None:
        raise HTTPException(
            status_code=502, detail={"error": result.error, "errors": result.errors}
        )
    return {"graph": result.graph.to_payload(), "summary": result.summary}
