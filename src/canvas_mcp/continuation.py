"""
Truncation and continuation handling for graph-xml content.

An AI response can stop before the closing markup of a diagram.  This
module decides whether a piece of markup is structurally complete,
joins continuation fragments onto the pending text, parses finished
markup into cells, and implements the node-level patch/delete rules on
the resulting cell graph.

Incomplete markup is never auto-closed: a fragment that is still open
after an append stays pending until the model sends the rest.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from canvas_mcp.models import (
    LAYER_CELL_ID,
    STRUCTURAL_IDS,
    WRAPPER_TAGS,
    MxCell,
)
from canvas_mcp.state import Issue, IssueKind
from canvas_mcp.validation import FragmentError


# ---------------------------------------------------------------------------
# Structural scan
# ---------------------------------------------------------------------------

_NAME_RE = re.compile(r"[A-Za-z_][\w:.\-]*")

# Markup constructs that are skipped as a whole: opener -> terminator.
_SKIPPED = (
    ("<!--", "-->"),
    ("<![CDATA[", "]]>"),
    ("<?", "?>"),
    ("<!", ">"),
)


@dataclass
class ScanResult:
    """Outcome of walking a markup string tag by tag."""
    complete: bool
    open_tags: list[str] = field(default_factory=list)
    elements: int = 0
    cut_inside_tag: bool = False


def scan(text: str) -> ScanResult:
    """Walk *text* and track which tags are still open.

    Raises ``FragmentError`` on a closing tag that does not match the
    innermost open tag, since no continuation can repair that.
    """
    stack: list[str] = []
    elements = 0
    i = 0
    while True:
        lt = text.find("<", i)
        if lt < 0:
            tail = text[i:]
            break
        skipped = False
        for opener, terminator in _SKIPPED:
            if text.startswith(opener, lt):
                end = text.find(terminator, lt + len(opener))
                if end < 0:
                    return ScanResult(False, stack, elements, cut_inside_tag=True)
                i = end + len(terminator)
                skipped = True
                break
        if skipped:
            continue

        end = _tag_end(text, lt + 1)
        if end < 0:
            return ScanResult(False, stack, elements, cut_inside_tag=True)
        body = text[lt + 1:end]
        i = end + 1

        if body.startswith("/"):
            m = _NAME_RE.match(body, 1)
            if not m:
                raise FragmentError(f"Invalid closing tag '<{body}>'.")
            name = m.group(0)
            if not stack:
                raise FragmentError(f"Closing tag '</{name}>' has no matching open tag.")
            if stack[-1] != name:
                raise FragmentError(
                    f"Closing tag '</{name}>' does not match open tag '<{stack[-1]}>'."
                )
            stack.pop()
            continue

        m = _NAME_RE.match(body)
        if not m:
            raise FragmentError(f"Invalid tag '<{body[:40]}>'.")
        elements += 1
        if not body.rstrip().endswith("/"):
            stack.append(m.group(0))

    if _ends_mid_entity(tail):
        return ScanResult(False, stack, elements, cut_inside_tag=True)
    return ScanResult(not stack and elements > 0, stack, elements)


def _tag_end(text: str, start: int) -> int:
    """Index of the ``>`` closing the tag body at *start*, honouring quotes."""
    quote = ""
    for j in range(start, len(text)):
        ch = text[j]
        if quote:
            if ch == quote:
                quote = ""
        elif ch in ("'", '"'):
            quote = ch
        elif ch == ">":
            return j
    return -1


def _ends_mid_entity(tail: str) -> bool:
    amp = tail.rfind("&")
    return amp >= 0 and ";" not in tail[amp:]


def is_complete(text: str) -> bool:
    """True when every opened tag is closed and nothing is cut off."""
    if not text or not text.strip():
        return False
    try:
        return scan(text).complete
    except FragmentError:
        return False


def open_tags(text: str) -> list[str]:
    """Names of the tags still open at the end of *text*."""
    try:
        return scan(text).open_tags
    except FragmentError:
        return []


# ---------------------------------------------------------------------------
# Continuation
# ---------------------------------------------------------------------------

_ROOT_CELL_RE = re.compile(r"""<mxCell\s+id\s*=\s*["'](0|1)["']""")
# Not <diagram>: a multi-page file legitimately opens one per page.
_RESTART_TAGS = ("mxfile", "mxGraphModel", "root")


def append_fragment(pending: str, fragment: str) -> str:
    """Join a continuation onto the pending text exactly as received."""
    return pending + fragment


def is_restart(pending: str, fragment: str) -> bool:
    """Detect a continuation that starts the diagram over.

    A model asked to continue sometimes re-emits the wrapper tags or
    root cells from the beginning.  That is recognisable because the
    pending text already opened the same wrapper or root cell.
    """
    head = fragment.lstrip()
    for tag in _RESTART_TAGS:
        opener = re.compile(rf"<{tag}[\s>/]")
        if opener.match(head) and opener.search(pending):
            return True
    m = _ROOT_CELL_RE.match(head)
    if m:
        for prior in _ROOT_CELL_RE.finditer(pending):
            if prior.group(1) == m.group(1):
                return True
    return False


def pending_tail(pending: str, size: int = 500) -> str:
    return pending[-size:]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_XML_DECL_RE = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)
_CELL_TAGS = ("mxCell", "object", "UserObject")


def parse_cells(text: str, issues: list[Issue]) -> list[MxCell]:
    """Parse complete graph-xml markup into user cells.

    Accepts bare sibling ``<mxCell>`` elements or any of the wrapper
    levels (``mxfile``/``diagram``/``mxGraphModel``/``root``).  Root
    cells ``0``/``1`` are implicit and dropped.  Anything that is not a
    cell is reported and skipped.  Raises ``FragmentError`` when the XML
    does not parse.
    """
    body = _XML_DECL_RE.sub("", text, count=1)
    try:
        container = ET.fromstring(f"<fragment>{body}</fragment>")
    except ET.ParseError as exc:
        raise FragmentError(f"Error parsing XML: {exc}") from exc

    cells: list[MxCell] = []
    index: dict[str, int] = {}
    _collect_cells(container, cells, index, issues)
    return cells


def _collect_cells(
    parent_el: ET.Element,
    cells: list[MxCell],
    index: dict[str, int],
    issues: list[Issue],
) -> None:
    for child in parent_el:
        if child.tag in WRAPPER_TAGS:
            if child.tag == "diagram" and len(child) == 0 and (child.text or "").strip():
                issues.append(Issue(
                    IssueKind.IGNORED_CONTENT,
                    f"Compressed diagram page '{child.get('name', '')}' is not supported.",
                ))
                continue
            _collect_cells(child, cells, index, issues)
            continue
        if child.tag not in _CELL_TAGS:
            issues.append(Issue(
                IssueKind.IGNORED_CONTENT,
                f"Element <{child.tag}> is not a cell and was ignored.",
            ))
            continue
        try:
            cell = MxCell.from_element(child)
        except ValueError as exc:
            raise FragmentError(str(exc)) from exc
        if child.tag == "mxCell" and child.find("mxCell") is not None:
            issues.append(Issue(
                IssueKind.IGNORED_CONTENT,
                f"Cell '{cell.id}' contains nested mxCell elements; cells must be siblings.",
            ))
        if not cell.id:
            issues.append(Issue(IssueKind.IGNORED_CONTENT, "Cell without an id was ignored."))
            continue
        if cell.id in STRUCTURAL_IDS:
            continue
        if not cell.parent:
            cell.parent = LAYER_CELL_ID
        if cell.id in index:
            issues.append(Issue(
                IssueKind.DUPLICATE_IDENTIFIER,
                f"Cell id '{cell.id}' appears more than once; the last definition wins.",
            ))
            cells[index[cell.id]] = cell
            continue
        index[cell.id] = len(cells)
        cells.append(cell)


# ---------------------------------------------------------------------------
# Node-level operations on the cell graph
# ---------------------------------------------------------------------------

def descendants(cells: list[MxCell], cell_id: str) -> list[str]:
    """All ids below *cell_id* in the parent tree, depth-first."""
    children: dict[str, list[str]] = {}
    for cell in cells:
        children.setdefault(cell.parent, []).append(cell.id)
    found: list[str] = []
    seen: set[str] = {cell_id}
    stack = list(reversed(children.get(cell_id, [])))
    while stack:
        cid = stack.pop()
        if cid in seen:
            continue
        seen.add(cid)
        found.append(cid)
        stack.extend(reversed(children.get(cid, [])))
    return found


def upsert_cells(
    current: list[MxCell],
    incoming: list[MxCell],
    issues: list[Issue],
) -> tuple[list[MxCell], list[str]]:
    """Merge *incoming* cells by id.

    An existing cell is overwritten in place and keeps its parent; a new
    cell is appended.  Returns the merged list and the touched ids.
    """
    merged = list(current)
    index = {c.id: i for i, c in enumerate(merged)}
    touched: list[str] = []
    for cell in incoming:
        pos = index.get(cell.id)
        if pos is None:
            index[cell.id] = len(merged)
            merged.append(cell)
        else:
            existing = merged[pos]
            if cell.parent != existing.parent:
                issues.append(Issue(
                    IssueKind.IGNORED_CONTENT,
                    f"Cell '{cell.id}' keeps parent '{existing.parent}'; "
                    f"patch cannot move it to '{cell.parent}'.",
                ))
                cell.parent = existing.parent
            merged[pos] = cell
        touched.append(cell.id)
    return merged, touched


def delete_cells(
    current: list[MxCell],
    ids: list[str],
    issues: list[Issue],
) -> tuple[list[MxCell], list[str]]:
    """Remove cells and, cascading, every descendant.

    Unknown ids are no-ops.  Returns the remaining cells and the ids
    actually removed.
    """
    known = {c.id for c in current}
    doomed: list[str] = []
    for cid in ids:
        if cid in STRUCTURAL_IDS:
            issues.append(Issue(
                IssueKind.IGNORED_CONTENT,
                f"Structural cell '{cid}' cannot be deleted.",
            ))
            continue
        if cid not in known or cid in doomed:
            continue
        doomed.append(cid)
        doomed.extend(d for d in descendants(current, cid) if d not in doomed)
    removed = set(doomed)
    return [c for c in current if c.id not in removed], doomed


def check_references(cells: list[MxCell], issues: list[Issue]) -> list[MxCell]:
    """Enforce reference rules on a cell list.

    A cell whose parent chain does not reach the root is rejected and
    dropped.  An edge whose source or target is missing is kept but
    reported.
    """
    resolved: set[str] = set(STRUCTURAL_IDS)
    pending = list(cells)
    progress = True
    while pending and progress:
        progress = False
        still: list[MxCell] = []
        for cell in pending:
            if cell.parent in resolved:
                resolved.add(cell.id)
                progress = True
            else:
                still.append(cell)
        pending = still
    for cell in pending:
        issues.append(Issue(
            IssueKind.DANGLING_REFERENCE,
            f"Cell '{cell.id}' rejected: parent '{cell.parent}' does not resolve.",
        ))

    kept = [c for c in cells if c.id in resolved]
    ids = {c.id for c in kept}
    for cell in kept:
        if not cell.edge:
            continue
        for role, ref in (("source", cell.source), ("target", cell.target)):
            if ref and ref not in ids:
                issues.append(Issue(
                    IssueKind.DANGLING_REFERENCE,
                    f"Edge '{cell.id}' {role} '{ref}' does not resolve.",
                ))
    return kept
