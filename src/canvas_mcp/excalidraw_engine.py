"""
The element-json engine (Excalidraw).

Content is an ordered list of element dicts.  Element-set operations
come from ``elements``; this module adds scene settings (``appState``,
``files``), text continuation of cut-off JSON, rendering of converted
graphs as shapes with bound labels and arrows, and scene export.
"""

from __future__ import annotations

import json
import time
import zlib
from typing import Any, Optional

from canvas_mcp import elements
from canvas_mcp.converters import FlowEdge, FlowGraph, FlowNode
from canvas_mcp.engine import DiagramEngine, Outcome
from canvas_mcp.layout import LayoutConfig, layered_positions
from canvas_mcp.state import (
    Capability,
    DiagramFormat,
    DiagramState,
    EngineDescriptor,
    Issue,
)
from canvas_mcp.validation import ValidationError, validate_bool, validate_dict


EXCALIDRAW_DESCRIPTOR = EngineDescriptor(
    engine_id="excalidraw",
    name="Excalidraw",
    format=DiagramFormat.ELEMENT_JSON,
    content_key="elements",
    capabilities=frozenset(Capability),
    export_formats=("excalidraw", "json"),
    grammars=("mermaid", "plantuml"),
)

STROKE_COLOR = "#1e1e1e"
FONT_SIZE = 16
LINE_HEIGHT = 1.25

# Neutral node shape -> Excalidraw element type and roundness.
_SHAPE_TYPES: dict[str, tuple[str, Optional[dict[str, int]]]] = {
    "rectangle": ("rectangle", None),
    "rounded": ("rectangle", {"type": 3}),
    "stadium": ("rectangle", {"type": 3}),
    "subroutine": ("rectangle", None),
    "parallelogram": ("rectangle", None),
    "hexagon": ("rectangle", None),
    "cylinder": ("rectangle", {"type": 3}),
    "note": ("rectangle", None),
    "component": ("rectangle", None),
    "node": ("rectangle", None),
    "class": ("rectangle", None),
    "participant": ("rectangle", None),
    "diamond": ("diamond", {"type": 2}),
    "circle": ("ellipse", {"type": 2}),
    "ellipse": ("ellipse", {"type": 2}),
    "actor": ("ellipse", {"type": 2}),
}


class ExcalidrawEngine(DiagramEngine):
    """Engine for Excalidraw element lists."""

    descriptor = EXCALIDRAW_DESCRIPTOR

    def __init__(self, layout: Optional[LayoutConfig] = None) -> None:
        self.layout = layout or LayoutConfig(
            h_spacing=80, v_spacing=80, default_width=160, default_height=70,
        )

    def parse(self, raw: Any, issues: list[Issue]) -> list[dict[str, Any]]:
        incoming = elements.normalize_elements(raw, issues)
        return elements.replace_elements(incoming, issues)

    def serialize(self, content: list[dict[str, Any]]) -> str:
        return json.dumps(content, ensure_ascii=False)

    def is_complete(self, content: Any) -> bool:
        return elements.is_complete(content)

    def identifiers(self, content: list[dict[str, Any]]) -> list[str]:
        return [el["id"] for el in content]

    def upsert(self, content, incoming, payload, issues):
        merge = validate_bool(payload.get("merge", False), "merge")
        return elements.patch_elements(content, incoming, merge_fields=merge)

    def remove(self, content, ids, issues):
        return elements.delete_elements(content, ids)

    def _reject_malformed(self, text: str) -> None:
        elements.scan_json(text)

    def describe_incomplete(self, text: str) -> str:
        return (
            "Elements JSON is incomplete. Continue from exactly where it ended:\n"
            f"{text[-500:]}"
        )

    def scene_extras(self, extras, raw, payload):
        """``appState``/``files`` from a scene object or the payload."""
        merged = dict(extras)
        sources: list[dict[str, Any]] = []
        if isinstance(raw, dict):
            sources.append(raw)
        sources.append(payload)
        for source in sources:
            for key, alias in (("appState", "app_state"), ("files", "files")):
                value = source.get(key, source.get(alias))
                if value is not None:
                    merged[key] = validate_dict(value, alias)
        return merged

    def _append(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        raw = self._content_arg(payload)
        if isinstance(raw, str) and not state.truncated and raw.strip():
            # a settled scene takes whole elements; only a cut-off one takes raw text
            if not elements.scan_json(raw):
                raise ValidationError(
                    "The scene is complete; append whole elements as a JSON array, "
                    "not a partial fragment."
                )
            return self._append_structured(state, raw, issues)
        return super()._append(state, payload, issues)

    def _append_structured(self, state: DiagramState, raw: Any, issues: list[Issue]) -> Outcome:
        if state.truncated:
            raise ValidationError(
                "Elements JSON is waiting for a text continuation; append the rest "
                "of the JSON text, not a list of elements."
            )
        incoming = self.parse(raw, issues)
        content, touched = elements.append_elements(state.content, incoming)
        return Outcome(self._settle(state, content, issues), touched)

    # ----- conversion -----

    def render_conversion(self, graph: FlowGraph) -> list[dict[str, Any]]:
        cfg = self.layout
        positions = layered_positions(graph.node_ids(), graph.edge_pairs(), graph.direction, cfg)
        shapes: dict[str, dict[str, Any]] = {}
        out: list[dict[str, Any]] = []
        for node in graph.nodes:
            x, y = positions[node.id]
            shape, label = self._node_elements(node, x, y)
            shapes[node.id] = shape
            out.append(shape)
            if label is not None:
                out.append(label)
        for i, edge in enumerate(graph.edges):
            arrow, label = self._edge_elements(
                f"edge-{i + 1}", edge, shapes[edge.source], shapes[edge.target], graph.direction,
            )
            out.append(arrow)
            if label is not None:
                out.append(label)
        return out

    def _node_elements(
        self, node: FlowNode, x: float, y: float,
    ) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
        el_type, roundness = _SHAPE_TYPES.get(node.shape, _SHAPE_TYPES["rectangle"])
        shape_id = f"node-{node.id}"
        shape = _base_element(
            shape_id, el_type, x, y, self.layout.default_width, self.layout.default_height,
            strokeColor=node.stroke or STROKE_COLOR,
            backgroundColor=node.fill or "transparent",
            roundness=roundness,
        )
        text = "\n".join([node.label, *node.members]).strip()
        if not text:
            return shape, None
        label = _text_element(f"{shape_id}-label", text, shape, container_id=shape_id)
        shape["boundElements"] = [{"type": "text", "id": label["id"]}]
        return shape, label

    def _edge_elements(
        self,
        arrow_id: str,
        edge: FlowEdge,
        source: dict[str, Any],
        target: dict[str, Any],
        direction: str,
    ) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
        start_x, start_y = _anchor(source, direction, leaving=True)
        end_x, end_y = _anchor(target, direction, leaving=False)
        arrow = _base_element(
            arrow_id, "arrow", start_x, start_y,
            abs(end_x - start_x), abs(end_y - start_y),
            strokeStyle="dashed" if edge.line == "dashed" else "solid",
            strokeWidth=4 if edge.line == "thick" else 2,
            roundness={"type": 2},
        )
        arrow.update({
            "points": [[0, 0], [end_x - start_x, end_y - start_y]],
            "lastCommittedPoint": None,
            "startBinding": {"elementId": source["id"], "focus": 0, "gap": 4},
            "endBinding": {"elementId": target["id"], "focus": 0, "gap": 4},
            "startArrowhead": "arrow" if edge.arrow == "both" else None,
            "endArrowhead": None if edge.arrow == "none" else "arrow",
        })
        for shape in (source,) if source is target else (source, target):
            bound = shape["boundElements"] or []
            bound.append({"type": "arrow", "id": arrow_id})
            shape["boundElements"] = bound
        if not edge.label:
            return arrow, None
        label = _text_element(f"{arrow_id}-label", edge.label, arrow, container_id=arrow_id)
        arrow["boundElements"] = [{"type": "text", "id": label["id"]}]
        return arrow, label

    def fallback_content(self, text: str) -> list[dict[str, Any]]:
        lines = text.splitlines() or [text]
        width = min(800, max(200, 9 * max(len(line) for line in lines)))
        height = FONT_SIZE * LINE_HEIGHT * len(lines)
        holder = {"x": 40, "y": 40, "width": width, "height": height}
        label = _text_element("conversion-source", text, holder, container_id=None)
        label.update({"textAlign": "left", "verticalAlign": "top", "fontFamily": 3})
        return [label]

    # ----- export -----

    def _export(self, state: DiagramState, target: str) -> str:
        if target == "json":
            return json.dumps(state.content, indent=2, ensure_ascii=False)
        scene = {
            "type": "excalidraw",
            "version": 2,
            "source": "canvas-mcp",
            "elements": state.content,
            "appState": state.extras.get("appState", {"viewBackgroundColor": "#ffffff"}),
            "files": state.extras.get("files", {}),
        }
        return json.dumps(scene, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Element builders
# ---------------------------------------------------------------------------

def _seed(key: str) -> int:
    return zlib.crc32(key.encode("utf-8"))


def _base_element(
    element_id: str, el_type: str, x: float, y: float, width: float, height: float,
    **fields: Any,
) -> dict[str, Any]:
    el: dict[str, Any] = {
        "id": element_id,
        "type": el_type,
        "x": x,
        "y": y,
        "width": width,
        "height": height,
        "angle": 0,
        "strokeColor": STROKE_COLOR,
        "backgroundColor": "transparent",
        "fillStyle": "solid",
        "strokeWidth": 2,
        "strokeStyle": "solid",
        "roughness": 0,
        "opacity": 100,
        "groupIds": [],
        "frameId": None,
        "roundness": None,
        "seed": _seed(element_id),
        "version": 1,
        "versionNonce": _seed(element_id + ":nonce"),
        "isDeleted": False,
        "boundElements": None,
        "updated": int(time.time() * 1000),
        "link": None,
        "locked": False,
    }
    el.update(fields)
    return el


def _text_element(
    element_id: str, text: str, holder: dict[str, Any], container_id: Optional[str],
) -> dict[str, Any]:
    lines = text.splitlines() or [""]
    height = FONT_SIZE * LINE_HEIGHT * len(lines)
    width = min(holder["width"], max(len(line) for line in lines) * FONT_SIZE * 0.6)
    x = holder["x"] + (holder["width"] - width) / 2
    y = holder["y"] + (holder["height"] - height) / 2
    el = _base_element(element_id, "text", x, y, width, height, strokeWidth=1)
    el.update({
        "text": text,
        "originalText": text,
        "fontSize": FONT_SIZE,
        "fontFamily": 1,
        "textAlign": "center",
        "verticalAlign": "middle",
        "baseline": FONT_SIZE,
        "containerId": container_id,
        "lineHeight": LINE_HEIGHT,
    })
    return el


def _anchor(shape: dict[str, Any], direction: str, leaving: bool) -> tuple[float, float]:
    """Midpoint of the side an arrow leaves from or arrives at."""
    far_side = leaving == (direction in ("TB", "LR"))
    if direction in ("LR", "RL"):
        x = shape["x"] + shape["width"] if far_side else shape["x"]
        return x, shape["y"] + shape["height"] / 2
    y = shape["y"] + shape["height"] if far_side else shape["y"]
    return shape["x"] + shape["width"] / 2, y
