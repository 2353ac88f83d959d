"""
Element-set operations for element-json (Excalidraw-style) content.

Content is an ordered list of JSON objects, each identified by a unique
string ``id``.  Payloads are opaque apart from the structural fields
checked here (a unique string ``id`` per element).
"""

from __future__ import annotations

import copy
import json
import uuid
from typing import Any

from canvas_mcp.state import Issue, IssueKind
from canvas_mcp.validation import FragmentError


def new_element_id() -> str:
    return f"el-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_elements(raw: Any, issues: list[Issue]) -> list[dict[str, Any]]:
    """Turn an incoming payload into a list of element dicts.

    *raw* may be a list or JSON text holding a list (or a scene object
    with an ``elements`` key).  Entries that are not objects are dropped
    and reported; elements without an id get a generated one.  Raises
    ``FragmentError`` when JSON text does not parse.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise FragmentError(f"Error parsing elements JSON: {exc}") from exc
    if isinstance(raw, dict) and "elements" in raw:
        raw = raw["elements"]
    if not isinstance(raw, list):
        raise FragmentError(
            f"Elements must be a JSON array, got {type(raw).__name__}."
        )

    out: list[dict[str, Any]] = []
    for i, el in enumerate(raw):
        if not isinstance(el, dict):
            issues.append(Issue(
                IssueKind.MALFORMED_FRAGMENT,
                f"Element at index {i} is not an object and was dropped.",
            ))
            continue
        el = copy.deepcopy(el)
        el_id = el.get("id")
        if not isinstance(el_id, str) or not el_id.strip():
            el["id"] = new_element_id()
        out.append(el)
    return out


def scan_json(text: str) -> bool:
    """True when *text* holds a finished JSON value.

    Tracks string and bracket nesting only.  An open string or bracket
    at the end means the text was cut off.  Raises ``FragmentError`` on
    a closing bracket that does not match, which no continuation can
    repair.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    seen_value = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            seen_value = True
        elif ch in "[{":
            stack.append("]" if ch == "[" else "}")
            seen_value = True
        elif ch in "]}":
            if not stack or stack[-1] != ch:
                raise FragmentError(f"Unbalanced '{ch}' in elements JSON.")
            stack.pop()
        elif not ch.isspace():
            seen_value = True
    return seen_value and not in_string and not stack


def is_complete(content: Any) -> bool:
    """Structural completeness of element-json content.

    Text is complete when its JSON is finished; a parsed element list is
    complete when every entry is an object with a string id.
    """
    if isinstance(content, str):
        try:
            return scan_json(content)
        except FragmentError:
            return False
    return all(
        isinstance(el, dict) and isinstance(el.get("id"), str) and el["id"]
        for el in content
    )


# ---------------------------------------------------------------------------
# Element-set operations
# ---------------------------------------------------------------------------

def replace_elements(
    incoming: list[dict[str, Any]],
    issues: list[Issue],
) -> list[dict[str, Any]]:
    """New content that wholly supersedes the old, in incoming order.

    A repeated id collapses onto its first position with the last
    definition winning.
    """
    result: list[dict[str, Any]] = []
    index: dict[str, int] = {}
    for el in incoming:
        el_id = el["id"]
        if el_id in index:
            issues.append(Issue(
                IssueKind.DUPLICATE_IDENTIFIER,
                f"Element id '{el_id}' appears more than once; the last definition wins.",
            ))
            result[index[el_id]] = el
            continue
        index[el_id] = len(result)
        result.append(el)
    return result


def patch_elements(
    current: list[dict[str, Any]],
    incoming: list[dict[str, Any]],
    *,
    merge_fields: bool = False,
) -> tuple[list[dict[str, Any]], list[str]]:
    """Upsert *incoming* elements by id.

    An existing element is overwritten where it stands (or, with
    *merge_fields*, has the incoming keys merged over its own); an
    unknown id is appended at the end.  Elements not named are left as
    they are.  Returns the new list and the touched ids.
    """
    result = list(current)
    index = {el["id"]: i for i, el in enumerate(result)}
    touched: list[str] = []
    for el in incoming:
        el_id = el["id"]
        pos = index.get(el_id)
        if pos is None:
            index[el_id] = len(result)
            result.append(el)
        elif merge_fields:
            result[pos] = {**result[pos], **el}
        else:
            result[pos] = el
        if el_id not in touched:
            touched.append(el_id)
    return result, touched


def delete_elements(
    current: list[dict[str, Any]],
    ids: list[str],
) -> tuple[list[dict[str, Any]], list[str]]:
    """Drop elements whose id is listed; unknown ids are ignored."""
    doomed = set(ids)
    kept = [el for el in current if el["id"] not in doomed]
    removed = [el["id"] for el in current if el["id"] in doomed]
    return kept, removed


def append_elements(
    current: list[dict[str, Any]],
    incoming: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[str]]:
    """Continuation for element lists: merge with patch semantics."""
    return patch_elements(current, incoming)
