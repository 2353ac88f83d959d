"""
Core XML model classes for the graph-xml (draw.io) diagram format.

Provides typed cells that parse from and serialize to the mxGraph
``<mxCell>`` schema, plus the page/file wrappers used on export.
"""

from __future__ import annotations

import datetime
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Optional


# Cell ids reserved for the structural root and default layer.
ROOT_CELL_ID = "0"
LAYER_CELL_ID = "1"
STRUCTURAL_IDS = frozenset({ROOT_CELL_ID, LAYER_CELL_ID})

# Wrapper tags around the cell list; everything inside them is unwrapped.
WRAPPER_TAGS = ("mxfile", "diagram", "mxGraphModel", "root")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class Point:
    """A 2-D coordinate."""
    x: float
    y: float

    def to_element(self, role: Optional[str] = None) -> ET.Element:
        el = ET.Element("mxPoint", attrib={"x": _num(self.x), "y": _num(self.y)})
        if role:
            el.set("as", role)
        return el

    @classmethod
    def from_element(cls, el: ET.Element) -> Point:
        return cls(float(el.get("x", "0")), float(el.get("y", "0")))


@dataclass
class Geometry:
    """Geometry of an mxCell (position + size for vertices, relative for edges)."""
    x: float = 0
    y: float = 0
    width: float = 120
    height: float = 60
    relative: bool = False
    source_point: Optional[Point] = None
    target_point: Optional[Point] = None
    offset: Optional[Point] = None
    points: list[Point] = field(default_factory=list)

    def to_element(self) -> ET.Element:
        attrib: dict[str, str] = {"as": "geometry"}
        if self.relative:
            attrib["relative"] = "1"
            if self.x:
                attrib["x"] = _num(self.x)
        else:
            attrib["x"] = _num(self.x)
            attrib["y"] = _num(self.y)
            attrib["width"] = _num(self.width)
            attrib["height"] = _num(self.height)
        el = ET.Element("mxGeometry", attrib=attrib)
        if self.source_point:
            el.append(self.source_point.to_element("sourcePoint"))
        if self.target_point:
            el.append(self.target_point.to_element("targetPoint"))
        if self.points:
            arr = ET.SubElement(el, "Array", attrib={"as": "points"})
            for pt in self.points:
                arr.append(pt.to_element())
        if self.offset:
            el.append(self.offset.to_element("offset"))
        return el

    @classmethod
    def from_element(cls, geom_el: ET.Element) -> Geometry:
        geometry = cls(
            x=float(geom_el.get("x", "0")),
            y=float(geom_el.get("y", "0")),
            width=float(geom_el.get("width", "0")),
            height=float(geom_el.get("height", "0")),
            relative=geom_el.get("relative", "0") == "1",
        )
        arr_el = geom_el.find("Array[@as='points']")
        if arr_el is not None:
            geometry.points = [Point.from_element(p) for p in arr_el.findall("mxPoint")]
        for role, attr in (("offset", "offset"), ("sourcePoint", "source_point"),
                           ("targetPoint", "target_point")):
            pt_el = geom_el.find(f"mxPoint[@as='{role}']")
            if pt_el is not None:
                setattr(geometry, attr, Point.from_element(pt_el))
        return geometry


@dataclass
class MxCell:
    """A single mxCell element — vertex, edge, or structural cell."""
    id: str
    value: str = ""
    style: str = ""
    parent: str = LAYER_CELL_ID
    vertex: bool = False
    edge: bool = False
    source: Optional[str] = None
    target: Optional[str] = None
    connectable: Optional[bool] = None
    collapsed: bool = False
    visible: bool = True
    geometry: Optional[Geometry] = None
    # Metadata, rendered via an <object> wrapper when any are set
    tooltip: Optional[str] = None
    link: Optional[str] = None
    placeholders: bool = False
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def _has_object_wrapper(self) -> bool:
        return bool(
            self.tooltip or self.link or self.placeholders or self.metadata
        )

    def to_element(self) -> ET.Element:
        attrib: dict[str, str] = {"id": self.id}
        if self.value:
            # held as the label markup itself; ElementTree escapes it once
            attrib["value"] = self.value
        if self.style:
            attrib["style"] = self.style
        if self.parent:
            attrib["parent"] = self.parent
        if self.vertex:
            attrib["vertex"] = "1"
        if self.edge:
            attrib["edge"] = "1"
        if self.source:
            attrib["source"] = self.source
        if self.target:
            attrib["target"] = self.target
        if self.connectable is not None and not self.connectable:
            attrib["connectable"] = "0"
        if self.collapsed:
            attrib["collapsed"] = "1"
        if not self.visible:
            attrib["visible"] = "0"
        el = ET.Element("mxCell", attrib=attrib)
        if self.geometry:
            el.append(self.geometry.to_element())

        if self._has_object_wrapper:
            obj_attrib: dict[str, str] = {
                "label": attrib.pop("value", ""),
                "id": self.id,
            }
            if self.tooltip:
                obj_attrib["tooltip"] = self.tooltip
            if self.link:
                obj_attrib["link"] = self.link
            if self.placeholders:
                obj_attrib["placeholders"] = "1"
            for k, v in self.metadata.items():
                obj_attrib[k] = v
            # id and value move to the <object> wrapper
            el.attrib.pop("id", None)
            el.attrib.pop("value", None)
            wrapper = ET.Element("object", attrib=obj_attrib)
            wrapper.append(el)
            return wrapper

        return el

    @classmethod
    def from_element(cls, el: ET.Element) -> MxCell:
        """Parse an ``<mxCell>`` or an ``<object>``/``<UserObject>`` wrapper.

        Raises ``ValueError`` when a wrapper carries no inner mxCell.
        """
        if el.tag in ("object", "UserObject"):
            inner = el.find("mxCell")
            if inner is None:
                raise ValueError(f"<{el.tag} id=\"{el.get('id', '')}\"> has no inner mxCell")
            known = {"id", "label", "tooltip", "link", "placeholders"}
            cell = cls._from_cell_element(inner)
            cell.id = el.get("id", "") or cell.id
            cell.value = el.get("label", "") or cell.value
            cell.tooltip = el.get("tooltip") or None
            cell.link = el.get("link") or None
            cell.placeholders = el.get("placeholders", "0") == "1"
            cell.metadata = {k: v for k, v in el.attrib.items() if k not in known}
            return cell
        return cls._from_cell_element(el)

    @classmethod
    def _from_cell_element(cls, cell_el: ET.Element) -> MxCell:
        geom_el = cell_el.find("mxGeometry")
        connectable = cell_el.get("connectable")
        return cls(
            id=cell_el.get("id", ""),
            value=cell_el.get("value", ""),
            style=cell_el.get("style", ""),
            parent=cell_el.get("parent", ""),
            vertex=cell_el.get("vertex", "0") == "1",
            edge=cell_el.get("edge", "0") == "1",
            source=cell_el.get("source"),
            target=cell_el.get("target"),
            connectable=None if connectable is None else connectable != "0",
            collapsed=cell_el.get("collapsed", "0") == "1",
            visible=cell_el.get("visible", "1") != "0",
            geometry=Geometry.from_element(geom_el) if geom_el is not None else None,
        )


@dataclass
class Diagram:
    """A single diagram page: structural cells plus user cells."""
    name: str = "Page-1"
    id: str = field(default_factory=lambda: _uid())
    cells: list[MxCell] | None = None
    # mxGraphModel settings
    dx: int = 1354
    dy: int = 981
    grid: bool = True
    grid_size: int = 10
    page_width: int = 827
    page_height: int = 1169
    background: str = "none"

    # internal counter
    _next_id: int = field(default=2, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.cells is None:
            self.cells = []

    def next_id(self) -> str:
        """Generate a sequential cell ID not already in use."""
        taken = {c.id for c in self.cells}
        cid = str(self._next_id)
        while cid in taken:
            self._next_id += 1
            cid = str(self._next_id)
        self._next_id += 1
        return cid

    def add_vertex(
        self,
        value: str,
        x: float,
        y: float,
        width: float = 120,
        height: float = 60,
        style: str = "rounded=1;whiteSpace=wrap;html=1;",
        parent: str = LAYER_CELL_ID,
        cell_id: Optional[str] = None,
    ) -> str:
        cid = cell_id or self.next_id()
        cell = MxCell(
            id=cid,
            value=value,
            style=style,
            parent=parent,
            vertex=True,
            geometry=Geometry(x=x, y=y, width=width, height=height),
        )
        self.cells.append(cell)
        return cid

    def add_edge(
        self,
        source: str,
        target: str,
        value: str = "",
        style: str = "endArrow=classic;html=1;",
        parent: str = LAYER_CELL_ID,
        cell_id: Optional[str] = None,
    ) -> str:
        cid = cell_id or self.next_id()
        cell = MxCell(
            id=cid,
            value=value,
            style=style,
            parent=parent,
            edge=True,
            source=source,
            target=target,
            geometry=Geometry(relative=True),
        )
        self.cells.append(cell)
        return cid

    def to_element(self) -> ET.Element:
        graph_attrs: dict[str, str] = {
            "dx": str(self.dx),
            "dy": str(self.dy),
            "grid": "1" if self.grid else "0",
            "gridSize": str(self.grid_size),
            "guides": "1",
            "tooltips": "1",
            "connect": "1",
            "arrows": "1",
            "fold": "1",
            "page": "1",
            "pageScale": "1",
            "pageWidth": str(self.page_width),
            "pageHeight": str(self.page_height),
            "background": self.background,
            "math": "0",
            "shadow": "0",
        }
        model = ET.Element("mxGraphModel", attrib=graph_attrs)
        root = ET.SubElement(model, "root")
        for cell in structural_cells():
            root.append(cell.to_element())
        for cell in self.cells:
            root.append(cell.to_element())

        diagram = ET.Element("diagram", attrib={"name": self.name, "id": self.id})
        diagram.append(model)
        return diagram


@dataclass
class DrawioFile:
    """Top-level mxfile container — holds one or more diagram pages."""
    diagrams: list[Diagram] | None = None
    host: str = "canvas-mcp"
    type: str = "device"
    agent: str = "canvas-mcp/1.0"
    version: str = "24.7.17"
    modified: Optional[str] = None

    def __post_init__(self) -> None:
        if self.diagrams is None:
            self.diagrams = [Diagram()]

    def to_xml(self, pretty: bool = True) -> str:
        mxfile = ET.Element(
            "mxfile",
            attrib={
                "host": self.host,
                "modified": self.modified or timestamp(),
                "agent": self.agent,
                "version": self.version,
                "type": self.type,
                "compressed": "false",
            },
        )
        for d in self.diagrams:
            mxfile.append(d.to_element())
        if pretty:
            ET.indent(mxfile, space="  ")
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(
            mxfile, encoding="unicode"
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _uid() -> str:
    return uuid.uuid4().hex[:12]


def _num(value: float) -> str:
    """Format a coordinate without a trailing ``.0`` for whole numbers."""
    return str(int(value)) if float(value).is_integer() else str(value)


def snap_to_grid(value: float, grid_size: int = 10) -> float:
    """Snap a coordinate to the nearest grid point."""
    return round(value / grid_size) * grid_size


def structural_cells() -> list[MxCell]:
    """The root cell and default layer every mxGraphModel starts with."""
    return [
        MxCell(id=ROOT_CELL_ID, parent=""),
        MxCell(id=LAYER_CELL_ID, parent=ROOT_CELL_ID),
    ]


def cells_to_xml(cells: list[MxCell]) -> str:
    """Serialize user cells as bare sibling ``<mxCell>`` elements."""
    return "\n".join(ET.tostring(c.to_element(), encoding="unicode") for c in cells)

def timestamp() -> str:
    """Current UTC time in the ``modified`` format draw.io writes."""
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
