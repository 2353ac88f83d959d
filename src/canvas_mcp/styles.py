"""
Style builder and preset library for graph-xml cells.

Provides a fluent API to compose style strings, the vertex and edge
presets that converted diagrams are drawn with, and the mapping from
neutral node shapes / edge lines to those presets.
"""

from __future__ import annotations

from typing import Optional


# ---------------------------------------------------------------------------
# Style builder
# ---------------------------------------------------------------------------

class StyleBuilder:
    """Fluent builder for semicolon-delimited draw.io style strings."""

    def __init__(self, base: str = "") -> None:
        self._parts: dict[str, str] = {}
        self._prefix: str = ""
        if base:
            self._parse(base)

    def _parse(self, raw: str) -> None:
        tokens = [t.strip() for t in raw.split(";") if t.strip()]
        for tok in tokens:
            if "=" in tok:
                k, v = tok.split("=", 1)
                self._parts[k] = v
            else:
                # Shape name prefix like "ellipse", "rhombus", etc.
                self._prefix = tok

    def fill_color(self, color: str) -> StyleBuilder:
        self._parts["fillColor"] = color
        return self

    def stroke_color(self, color: str) -> StyleBuilder:
        self._parts["strokeColor"] = color
        return self

    def stroke_width(self, width: float) -> StyleBuilder:
        self._parts["strokeWidth"] = str(width)
        return self

    def dashed(self, on: bool = True, pattern: str = "") -> StyleBuilder:
        self._parts["dashed"] = "1" if on else "0"
        if pattern:
            self._parts["dashPattern"] = pattern
        return self

    def end_arrow(self, arrow: str) -> StyleBuilder:
        self._parts["endArrow"] = arrow
        return self

    def start_arrow(self, arrow: str) -> StyleBuilder:
        self._parts["startArrow"] = arrow
        return self

    def build(self) -> str:
        parts: list[str] = []
        if self._prefix:
            parts.append(self._prefix)
        for k, v in self._parts.items():
            parts.append(f"{k}={v}")
        return ";".join(parts) + ";"


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

class VertexStyle:
    """Vertex style strings matching draw.io defaults."""

    RECTANGLE = "rounded=0;whiteSpace=wrap;html=1;"
    ROUNDED_RECTANGLE = "rounded=1;whiteSpace=wrap;html=1;"
    STADIUM = "rounded=1;whiteSpace=wrap;html=1;arcSize=50;"
    ELLIPSE = "ellipse;whiteSpace=wrap;html=1;"
    CIRCLE = "ellipse;whiteSpace=wrap;html=1;aspect=fixed;"
    DIAMOND = "rhombus;whiteSpace=wrap;html=1;"
    HEXAGON = "shape=hexagon;perimeter=hexagonPerimeter;whiteSpace=wrap;html=1;"
    PARALLELOGRAM = "shape=parallelogram;perimeter=parallelogramPerimeter;whiteSpace=wrap;html=1;"
    SUBROUTINE = "shape=process;whiteSpace=wrap;html=1;backgroundOutline=1;"
    CYLINDER = "shape=cylinder3;whiteSpace=wrap;html=1;boundedLbl=1;backgroundOutline=1;size=15;"
    NOTE = "shape=note;whiteSpace=wrap;html=1;backgroundOutline=1;size=15;"
    TEXT_BLOCK = "text;align=left;verticalAlign=top;whiteSpace=wrap;strokeColor=none;fillColor=none;"

    UML_ACTOR = "shape=umlActor;verticalLabelPosition=bottom;verticalAlign=top;html=1;"
    UML_COMPONENT = "shape=component;align=left;spacingLeft=36;html=1;"
    UML_NODE = "shape=cube;whiteSpace=wrap;html=1;"
    UML_CLASS = "swimlane;fontStyle=1;align=center;startSize=26;html=1;"


class EdgeStylePreset:
    """Edge style strings matching draw.io defaults."""

    DEFAULT = "edgeStyle=orthogonalEdgeStyle;rounded=1;orthogonalLoop=1;jettySize=auto;html=1;endArrow=classic;"


# Neutral node shape -> vertex preset and default size.
_SHAPE_STYLES: dict[str, tuple[str, float, float]] = {
    "rectangle": (VertexStyle.RECTANGLE, 120, 60),
    "rounded": (VertexStyle.ROUNDED_RECTANGLE, 120, 60),
    "stadium": (VertexStyle.STADIUM, 120, 60),
    "ellipse": (VertexStyle.ELLIPSE, 140, 70),
    "circle": (VertexStyle.CIRCLE, 80, 80),
    "diamond": (VertexStyle.DIAMOND, 120, 80),
    "hexagon": (VertexStyle.HEXAGON, 120, 60),
    "parallelogram": (VertexStyle.PARALLELOGRAM, 120, 60),
    "subroutine": (VertexStyle.SUBROUTINE, 120, 60),
    "cylinder": (VertexStyle.CYLINDER, 80, 80),
    "note": (VertexStyle.NOTE, 120, 60),
    "actor": (VertexStyle.UML_ACTOR, 30, 60),
    "component": (VertexStyle.UML_COMPONENT, 140, 60),
    "node": (VertexStyle.UML_NODE, 120, 80),
    "class": (VertexStyle.UML_CLASS, 140, 60),
    "participant": (VertexStyle.RECTANGLE, 120, 40),
}


def vertex_style(
    shape: str,
    fill: Optional[str] = None,
    stroke: Optional[str] = None,
) -> tuple[str, float, float]:
    """Style string, width and height for a neutral node shape."""
    style, width, height = _SHAPE_STYLES.get(shape, _SHAPE_STYLES["rectangle"])
    if fill or stroke:
        builder = StyleBuilder(style)
        if fill:
            builder.fill_color(fill)
        if stroke:
            builder.stroke_color(stroke)
        style = builder.build()
    return style, width, height


def edge_style(line: str = "solid", arrow: str = "end") -> str:
    """Style string for an edge with the given line kind and arrowheads.

    *line* is ``solid``, ``dashed`` or ``thick``; *arrow* is ``end``,
    ``both`` or ``none``.
    """
    builder = StyleBuilder(EdgeStylePreset.DEFAULT)
    if line == "dashed":
        builder.dashed()
    elif line == "thick":
        builder.stroke_width(2)
    if arrow == "none":
        builder.end_arrow("none")
    elif arrow == "both":
        builder.start_arrow("classic")
    return builder.build()
