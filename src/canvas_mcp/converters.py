"""
Interchange-grammar parsers for diagram conversion.

Mermaid flowcharts and a practical PlantUML subset are parsed into a
format-neutral ``FlowGraph`` (nodes, edges, direction).  Engines lay
the graph out with ``layout.layered_positions`` and render it in their
own native content.

Statements a parser does not understand are collected as warnings
rather than failing the whole conversion; only text that yields no
nodes at all raises ``ConversionError``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional


class ConversionError(Exception):
    """Raised when interchange-grammar text cannot be converted."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Neutral graph
# ---------------------------------------------------------------------------

@dataclass
class FlowNode:
    id: str
    label: str
    shape: str = "rectangle"
    fill: Optional[str] = None
    stroke: Optional[str] = None
    members: list[str] = field(default_factory=list)


@dataclass
class FlowEdge:
    source: str
    target: str
    label: str = ""
    line: str = "solid"  # solid, dashed, thick
    arrow: str = "end"  # end, both, none


@dataclass
class FlowGraph:
    """Nodes and edges in declaration order, plus layout direction."""
    nodes: list[FlowNode] = field(default_factory=list)
    edges: list[FlowEdge] = field(default_factory=list)
    direction: str = "TB"
    warnings: list[str] = field(default_factory=list)

    def node(self, node_id: str) -> Optional[FlowNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def ensure_node(
        self,
        node_id: str,
        label: Optional[str] = None,
        shape: Optional[str] = None,
    ) -> FlowNode:
        """Get or create *node_id*; a later explicit label/shape wins."""
        existing = self.node(node_id)
        if existing is None:
            existing = FlowNode(id=node_id, label=label if label is not None else node_id)
            if shape:
                existing.shape = shape
            self.nodes.append(existing)
            return existing
        if label is not None:
            existing.label = label
        if shape:
            existing.shape = shape
        return existing

    def add_edge(self, edge: FlowEdge) -> None:
        self.edges.append(edge)

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def edge_pairs(self) -> list[tuple[str, str]]:
        return [(e.source, e.target) for e in self.edges]


GRAMMARS = ("mermaid", "plantuml")


def parse_grammar(grammar: str, text: str) -> FlowGraph:
    """Parse *text* written in *grammar* into a ``FlowGraph``."""
    if not text or not text.strip():
        raise ConversionError(f"{grammar} code is empty.")
    parsers = {"mermaid": parse_mermaid, "plantuml": parse_plantuml}
    parser = parsers.get(grammar.strip().lower())
    if parser is None:
        raise ConversionError(
            f"Unsupported grammar '{grammar}'. Supported: {', '.join(GRAMMARS)}."
        )
    graph = parser(text)
    if not graph.nodes:
        raise ConversionError(f"No diagram nodes found in {grammar} code.")
    return graph


def _clean_label(raw: str) -> str:
    label = raw.strip()
    if len(label) >= 2 and label[0] == label[-1] == '"':
        label = label[1:-1]
    return re.sub(r"<br\s*/?>", "\n", label, flags=re.IGNORECASE)


def _slug(label: str) -> str:
    return re.sub(r"\W+", "_", label.strip()).strip("_") or "node"


# ---------------------------------------------------------------------------
# Mermaid
# ---------------------------------------------------------------------------

_MERMAID_HEADER_RE = re.compile(r"^(graph|flowchart)(?:\s+(TB|TD|BT|LR|RL))?\s*$", re.IGNORECASE)

# Shape delimiters, longest openers first.
_MERMAID_SHAPES = (
    ("((", "))", "circle"),
    ("([", "])", "stadium"),
    ("[[", "]]", "subroutine"),
    ("[(", ")]", "cylinder"),
    ("{{", "}}", "hexagon"),
    ("[/", "/]", "parallelogram"),
    ("[", "]", "rectangle"),
    ("(", ")", "rounded"),
    ("{", "}", "diamond"),
    (">", "]", "rectangle"),
)

_MERMAID_ID_RE = re.compile(r"\s*(\w+)")
_MERMAID_LINK_RE = re.compile(
    r"\s*(?P<link>"
    r"--\s+(?P<t1>[^>|]+?)\s+--+>"
    r"|-\.\s+(?P<t2>[^>|]+?)\s+\.-+>"
    r"|==\s+(?P<t3>[^>|]+?)\s+==+>"
    r"|<?-\.+-[>ox]?"
    r"|<?==+[>ox]?"
    r"|<?--+[>ox]?"
    r")\s*(?:\|(?P<label>[^|]*)\|)?"
)
_MERMAID_AMP_RE = re.compile(r"\s*&")
_MERMAID_STYLE_RE = re.compile(r"^style\s+(\w+)\s+(.+)$")
_MERMAID_IGNORED = {"subgraph", "end", "classDef", "class", "click", "linkStyle", "direction"}


def parse_mermaid(text: str) -> FlowGraph:
    """Parse a Mermaid ``graph``/``flowchart`` definition."""
    # Models often send escaped newlines through JSON.
    if "\\n" in text:
        text = text.replace("\\n", "\n")

    graph = FlowGraph()
    header_seen = False
    for statement in _mermaid_statements(text):
        if not header_seen:
            m = _MERMAID_HEADER_RE.match(statement)
            if not m:
                first = statement.split()[0]
                raise ConversionError(
                    f"Only Mermaid flowcharts (graph/flowchart) are supported, got '{first}'."
                )
            graph.direction = (m.group(2) or "TB").upper().replace("TD", "TB")
            header_seen = True
            continue

        style = _MERMAID_STYLE_RE.match(statement)
        if style:
            _apply_mermaid_style(graph, style.group(1), style.group(2))
            continue
        if statement.split()[0] in _MERMAID_IGNORED:
            graph.warnings.append(f"Mermaid statement ignored: {statement[:60]}")
            continue
        if not _parse_mermaid_chain(graph, statement):
            graph.warnings.append(f"Unrecognised Mermaid statement: {statement[:60]}")

    if not header_seen:
        raise ConversionError("Mermaid code is empty.")
    return graph


def _mermaid_statements(text: str) -> list[str]:
    """Split into statements on newlines and top-level ``;``, dropping comments."""
    statements: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("%%"):
            continue
        depth = 0
        quoted = False
        start = 0
        for i, ch in enumerate(line):
            if ch == '"':
                quoted = not quoted
            elif quoted:
                continue
            elif ch in "[({":
                depth += 1
            elif ch in "])}":
                depth = max(0, depth - 1)
            elif ch == ";" and depth == 0:
                statements.append(line[start:i].strip())
                start = i + 1
        statements.append(line[start:].strip())
    return [s for s in statements if s]


def _parse_mermaid_node(graph: FlowGraph, text: str, pos: int) -> tuple[Optional[str], int]:
    m = _MERMAID_ID_RE.match(text, pos)
    if not m:
        return None, pos
    node_id = m.group(1)
    pos = m.end()
    for opener, closer, shape in _MERMAID_SHAPES:
        if text.startswith(opener, pos):
            end = text.find(closer, pos + len(opener))
            if end < 0:
                return None, pos
            label = _clean_label(text[pos + len(opener):end])
            graph.ensure_node(node_id, label, shape)
            return node_id, end + len(closer)
    graph.ensure_node(node_id)
    return node_id, pos


def _parse_mermaid_group(graph: FlowGraph, text: str, pos: int) -> tuple[list[str], int]:
    """One or more ``&``-joined node references."""
    group: list[str] = []
    while True:
        node_id, pos = _parse_mermaid_node(graph, text, pos)
        if node_id is None:
            return [], pos
        group.append(node_id)
        amp = _MERMAID_AMP_RE.match(text, pos)
        if not amp:
            return group, pos
        pos = amp.end()


def _parse_mermaid_chain(graph: FlowGraph, statement: str) -> bool:
    """Parse ``A --> B -- text --> C``; False when the statement is not a chain."""
    snapshot = (list(graph.nodes), list(graph.edges))
    left, pos = _parse_mermaid_group(graph, statement, 0)
    if not left:
        return False
    while pos < len(statement):
        link = _MERMAID_LINK_RE.match(statement, pos)
        if not link:
            break
        right, pos = _parse_mermaid_group(graph, statement, link.end())
        if not right:
            graph.nodes, graph.edges = snapshot
            return False
        edge_kwargs = _mermaid_link_kind(link)
        for src in left:
            for dst in right:
                graph.add_edge(FlowEdge(src, dst, **edge_kwargs))
        left = right
    if statement[pos:].strip():
        graph.nodes, graph.edges = snapshot
        return False
    return True


def _mermaid_link_kind(link: re.Match) -> dict[str, str]:
    token = link.group("link")
    text = link.group("t1") or link.group("t2") or link.group("t3") or link.group("label") or ""
    if "." in token:
        line = "dashed"
    elif "=" in token:
        line = "thick"
    else:
        line = "solid"
    if token.startswith("<"):
        arrow = "both"
    elif token[-1] in ">ox":
        arrow = "end"
    else:
        arrow = "none"
    return {"label": _clean_label(text), "line": line, "arrow": arrow}


def _apply_mermaid_style(graph: FlowGraph, node_id: str, spec: str) -> None:
    node = graph.ensure_node(node_id)
    for prop in spec.split(","):
        key, _, value = prop.partition(":")
        key = key.strip()
        if key == "fill":
            node.fill = value.strip()
        elif key == "stroke":
            node.stroke = value.strip()


# ---------------------------------------------------------------------------
# PlantUML
# ---------------------------------------------------------------------------

_PUML_DECL_SHAPES = {
    "actor": "actor",
    "participant": "participant",
    "boundary": "participant",
    "control": "participant",
    "entity": "participant",
    "collections": "participant",
    "queue": "cylinder",
    "database": "cylinder",
    "component": "component",
    "node": "node",
    "usecase": "ellipse",
    "class": "class",
    "interface": "class",
    "abstract": "class",
    "enum": "class",
    "rectangle": "rectangle",
    "card": "rectangle",
    "agent": "rectangle",
    "artifact": "note",
    "file": "note",
    "storage": "cylinder",
    "cloud": "ellipse",
    "package": "rectangle",
    "folder": "rectangle",
    "frame": "rectangle",
}
_PUML_CONTAINERS = {"package", "rectangle", "node", "cloud", "frame", "folder"}

_PUML_TOKEN = r'(?:"[^"]+"|[^\s{"]+)'
_PUML_DECL_RE = re.compile(
    rf"^(?P<kind>{'|'.join(sorted(_PUML_DECL_SHAPES, key=len, reverse=True))})\s+"
    rf"(?P<first>{_PUML_TOKEN})(?:\s+as\s+(?P<second>{_PUML_TOKEN}))?"
    r"(?:\s*<<[^>]*>>)?(?:\s*#\S+)?\s*(?P<brace>\{)?\s*$"
)
_PUML_ENDPOINT = r'(?:\[[^\]]+\]|\([^)]+\)|:[^:]+:|"[^"]+"|[\w.]+)'
_PUML_REL_RE = re.compile(
    rf"^(?P<a>{_PUML_ENDPOINT})\s*(?:\"[^\"]*\"\s*)?"
    r"(?P<head_l><\|?|<<|(?<=\s)[*ox#](?=[-.]))?"
    r"(?P<shaft>[-.]+(?:\[[^\]]*\])?(?:up|down|left|right|u|d|l|r)?[-.]*)"
    r"(?P<head_r>\|?>|>>|[*ox#](?=\s))?"
    rf"\s*(?:\"[^\"]*\"\s*)?(?P<b>{_PUML_ENDPOINT})(?:\s*:\s*(?P<label>.*))?$"
)
_PUML_ACTIVITY_RE = re.compile(r"^:(?P<text>.*);$")
_PUML_SKIPPED = ("@", "!", "skinparam", "hide", "show", "title", "caption",
                 "legend", "header", "footer", "autonumber", "scale")


def parse_plantuml(text: str) -> FlowGraph:
    """Parse the structural subset of a PlantUML diagram.

    Supports element declarations (with ``as`` aliases and class
    bodies), relations and sequence messages with ``: label``, direction
    hints, and linear activity flows (``start``, ``:action;``, ``stop``).
    Containers are flattened.
    """
    graph = FlowGraph()
    lines = text.splitlines()
    in_block_comment = False
    class_body: Optional[FlowNode] = None
    containers = 0
    previous_activity: Optional[str] = None

    for raw in lines:
        line = raw.strip()
        if in_block_comment:
            if line.endswith("'/"):
                in_block_comment = False
            continue
        if line.startswith("/'"):
            in_block_comment = not line.endswith("'/")
            continue
        if not line or line.startswith("'"):
            continue
        if line.lower().startswith("@end"):
            break

        if class_body is not None:
            if line.startswith("}"):
                class_body = None
            else:
                class_body.members.append(line)
            continue

        lowered = line.lower()
        if lowered.startswith(_PUML_SKIPPED):
            continue
        if lowered == "left to right direction":
            graph.direction = "LR"
            continue
        if lowered == "top to bottom direction":
            graph.direction = "TB"
            continue
        if line == "}":
            containers = max(0, containers - 1)
            continue

        if lowered in ("start", "stop", "end") or _PUML_ACTIVITY_RE.match(line):
            previous_activity = _plantuml_activity(graph, line, previous_activity)
            continue

        decl = _PUML_DECL_RE.match(line)
        if decl:
            kind = decl.group("kind")
            node = _plantuml_declare(graph, kind, decl.group("first"), decl.group("second"))
            if decl.group("brace"):
                if kind in _PUML_CONTAINERS:
                    containers += 1
                    graph.nodes.remove(node)
                    graph.warnings.append(f"Container '{node.label}' was flattened.")
                else:
                    class_body = node
            continue

        rel = _PUML_REL_RE.match(line)
        if rel:
            _plantuml_relation(graph, rel)
            continue

        graph.warnings.append(f"Unrecognised PlantUML statement: {line[:60]}")

    return graph


def _unquote(token: str) -> tuple[str, bool]:
    if len(token) >= 2 and token[0] == token[-1] == '"':
        return token[1:-1], True
    return token, False


def _plantuml_declare(
    graph: FlowGraph, kind: str, first: str, second: Optional[str],
) -> FlowNode:
    first_text, first_quoted = _unquote(first)
    if second is None:
        node_id, label = (_slug(first_text) if first_quoted else first_text), first_text
    else:
        second_text, second_quoted = _unquote(second)
        if second_quoted and not first_quoted:
            node_id, label = first_text, second_text
        else:
            node_id, label = second_text, first_text
    return graph.ensure_node(node_id, _clean_label(label), _PUML_DECL_SHAPES[kind])


def _plantuml_endpoint(graph: FlowGraph, token: str) -> str:
    if token.startswith("[") and token.endswith("]"):
        label, shape = token[1:-1], "component"
    elif token.startswith("(") and token.endswith(")"):
        label, shape = token[1:-1], "ellipse"
    elif token.startswith(":") and token.endswith(":") and len(token) > 1:
        label, shape = token[1:-1], "actor"
    elif token.startswith('"'):
        label, shape = token[1:-1], None
    else:
        existing = graph.node(token)
        if existing is None:
            graph.ensure_node(token)
        return token
    node_id = _slug(label)
    if graph.node(node_id) is None:
        graph.ensure_node(node_id, label.strip(), shape)
    return node_id


def _plantuml_relation(graph: FlowGraph, rel: re.Match) -> None:
    a = _plantuml_endpoint(graph, rel.group("a"))
    b = _plantuml_endpoint(graph, rel.group("b"))
    head_l = rel.group("head_l") or ""
    head_r = rel.group("head_r") or ""
    line = "dashed" if "." in rel.group("shaft") else "solid"
    if head_l and head_r:
        arrow = "both"
    elif head_l or head_r:
        arrow = "end"
    else:
        arrow = "none"
    if head_l and not head_r:
        a, b = b, a
    graph.add_edge(FlowEdge(a, b, _clean_label(rel.group("label") or ""), line, arrow))


def _plantuml_activity(graph: FlowGraph, line: str, previous: Optional[str]) -> str:
    lowered = line.lower()
    if lowered == "start":
        node = graph.ensure_node("start", "", "circle")
    elif lowered in ("stop", "end"):
        node = graph.ensure_node("stop", "", "circle")
    else:
        text = _PUML_ACTIVITY_RE.match(line).group("text")
        node = graph.ensure_node(f"action_{len(graph.nodes) + 1}", _clean_label(text), "rounded")
    if previous is not None and previous != node.id:
        graph.add_edge(FlowEdge(previous, node.id))
    return node.id
