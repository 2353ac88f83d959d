"""
The graph-xml engine (draw.io / mxGraph).

Content is a list of ``MxCell`` user cells.  Text ingestion, truncation
and the node-level patch/delete rules come from ``continuation``; this
module wires them into the engine contract and renders converted
graphs with the style presets.
"""

from __future__ import annotations

import html
from typing import Any, Optional

from canvas_mcp import continuation
from canvas_mcp.converters import FlowGraph
from canvas_mcp.engine import DiagramEngine
from canvas_mcp.layout import LayoutConfig, layered_positions
from canvas_mcp.models import Diagram, DrawioFile, Geometry, MxCell, cells_to_xml, timestamp
from canvas_mcp.state import (
    Capability,
    DiagramFormat,
    DiagramState,
    Diagnostics,
    EngineDescriptor,
    Issue,
    OperationKind,
)
from canvas_mcp.styles import VertexStyle, edge_style, vertex_style
from canvas_mcp.validation import ValidationError


DRAWIO_DESCRIPTOR = EngineDescriptor(
    engine_id="drawio",
    name="draw.io",
    format=DiagramFormat.GRAPH_XML,
    content_key="xml",
    capabilities=frozenset(Capability),
    export_formats=("drawio", "xml"),
    grammars=("plantuml", "mermaid"),
)

# Export stamps: a fixed page id and, before any accepted change, the epoch.
EXPORT_PAGE_ID = "canvas-page-1"
UNMODIFIED = "1970-01-01T00:00:00.000Z"


class DrawioEngine(DiagramEngine):
    """Engine for mxGraph cell markup."""

    descriptor = DRAWIO_DESCRIPTOR

    def __init__(self, layout: Optional[LayoutConfig] = None) -> None:
        self.layout = layout or LayoutConfig()

    def apply(
        self,
        state: DiagramState,
        kind: OperationKind,
        payload: dict[str, Any],
    ) -> tuple[DiagramState, Diagnostics]:
        new_state, diag = super().apply(state, kind, payload)
        if diag.accepted:
            new_state = new_state.evolve(extras={**new_state.extras, "modified": timestamp()})
        return new_state, diag

    def parse(self, raw: Any, issues: list[Issue]) -> list[MxCell]:
        if not isinstance(raw, str):
            raise ValidationError(
                f"'xml' must be a string of mxCell markup, got {type(raw).__name__}."
            )
        return continuation.parse_cells(raw, issues)

    def serialize(self, content: list[MxCell]) -> str:
        return cells_to_xml(content)

    def is_complete(self, content: Any) -> bool:
        if isinstance(content, str):
            return continuation.is_complete(content)
        return all(isinstance(c, MxCell) and c.id for c in content)

    def identifiers(self, content: list[MxCell]) -> list[str]:
        return [c.id for c in content]

    def upsert(self, content, incoming, payload, issues):
        if payload.get("edits"):
            _check_edit_targets(content, incoming, payload["edits"])
        return continuation.upsert_cells(content, incoming, issues)

    def remove(self, content, ids, issues):
        return continuation.delete_cells(content, ids, issues)

    def check_references(self, content: list[MxCell], issues: list[Issue]) -> list[MxCell]:
        return continuation.check_references(content, issues)

    def is_restart(self, pending: str, fragment: str) -> bool:
        return continuation.is_restart(pending, fragment)

    def join_fragment(self, base: str, fragment: str) -> str:
        return continuation.append_fragment(base, fragment)

    def _reject_malformed(self, text: str) -> None:
        continuation.scan(text)

    def describe_incomplete(self, text: str) -> str:
        still_open = continuation.open_tags(text)
        opened = f" Still open: {', '.join(still_open)}." if still_open else ""
        return (
            f"XML is incomplete.{opened} Continue from exactly where it ended "
            f"(do not repeat wrapper tags or root cells):\n{continuation.pending_tail(text)}"
        )

    # ----- conversion -----

    def render_conversion(self, graph: FlowGraph) -> list[MxCell]:
        cfg = self.layout
        positions = layered_positions(graph.node_ids(), graph.edge_pairs(), graph.direction, cfg)
        diagram = Diagram()
        ids: dict[str, str] = {}
        for node in graph.nodes:
            style, width, height = vertex_style(node.shape, node.fill, node.stroke)
            x, y = positions[node.id]
            # centre odd-sized shapes in their layout slot
            x += (cfg.default_width - width) / 2
            y += (cfg.default_height - height) / 2
            ids[node.id] = diagram.add_vertex(
                _cell_label(node.label, node.members), x, y, width, height, style,
            )
        for edge in graph.edges:
            diagram.add_edge(
                ids[edge.source],
                ids[edge.target],
                value=html.escape(edge.label),
                style=edge_style(edge.line, edge.arrow),
            )
        return diagram.cells

    def fallback_content(self, text: str) -> list[MxCell]:
        lines = text.splitlines() or [text]
        width = min(800, max(200, 7 * max(len(line) for line in lines)))
        height = 20 * len(lines) + 20
        return [MxCell(
            id="2",
            value=text,
            style=VertexStyle.TEXT_BLOCK,
            vertex=True,
            geometry=Geometry(x=40, y=40, width=width, height=height),
        )]

    # ----- export -----

    def _export(self, state: DiagramState, target: str) -> str:
        if target == "xml":
            return cells_to_xml(state.content)
        drawio_file = DrawioFile(
            diagrams=[Diagram(id=EXPORT_PAGE_ID, cells=list(state.content))],
            modified=state.extras.get("modified", UNMODIFIED),
        )
        return drawio_file.to_xml(pretty=True)


def _cell_label(label: str, members: list[str]) -> str:
    parts = [html.escape(label).replace("\n", "<br>")]
    if members:
        parts.append("<hr>" + "<br>".join(html.escape(m) for m in members))
    return "".join(parts)


def _check_edit_targets(
    content: list[MxCell], incoming: list[MxCell], edits: list[dict[str, str]],
) -> None:
    """Hold ``add``/``update`` edits to the cells they name.

    Every cell in the new markup must be the ``cell_id`` of an edit; an
    ``update`` needs an existing cell and an ``add`` a new one.
    """
    named = {e["cell_id"] for e in edits}
    defined = {c.id for c in incoming}
    stray = sorted(defined - named)
    if stray:
        raise ValidationError(
            f"new_xml defines cell(s) {stray} that no add or update operation names."
        )
    known = {c.id for c in content}
    for edit in edits:
        cid, kind = edit["cell_id"], edit["operation"].strip().lower()
        if cid not in defined:
            raise ValidationError(f"new_xml for {kind} '{cid}' has no mxCell with id '{cid}'.")
        if kind == "update" and cid not in known:
            raise ValidationError(f"Cannot update cell '{cid}': it does not exist. Use add.")
        if kind == "add" and cid in known:
            raise ValidationError(f"Cannot add cell '{cid}': it already exists. Use update.")
        known.add(cid)
