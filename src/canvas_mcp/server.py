"""
Canvas MCP Server — incremental diagram editing via Model Context Protocol.

Lets an LLM agent build and edit draw.io (mxGraph XML) and Excalidraw
(element JSON) diagrams one tool call at a time, including continuing a
diagram whose markup was cut off mid-response.

Tools:
  1. session                        — lifecycle: create, close, list, state, export
  2. tool_call                      — raw {engineId, operation, payload} call
  3. display_drawio / display_excalidraw     — show a whole new diagram
  4. edit_drawio / edit_excalidraw           — patch or delete by id
  5. append_drawio / append_excalidraw       — continue truncated content
  6. convert_plantuml_to_drawio / convert_mermaid_to_excalidraw
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from canvas_mcp.registry import create_default_registry
from canvas_mcp.session import Session, SessionStore
from canvas_mcp.state import Diagnostics, ToolCall
from canvas_mcp.validation import (
    ValidationError,
    validate_action,
    validate_choice,
    validate_dict,
    validate_drawio_edit,
    validate_excalidraw_edit,
    validate_list,
    _SESSION_ACTIONS,
)

# ---------------------------------------------------------------------------
# Logging: suppress routine FastMCP INFO messages that editors show
# as warnings (they go to stderr).
# ---------------------------------------------------------------------------
logging.getLogger("mcp.server").setLevel(logging.WARNING)
logger = logging.getLogger("canvas-mcp")

# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------
mcp = FastMCP(
    "canvas-mcp",
    instructions=(
        "MCP server for building draw.io and Excalidraw diagrams incrementally.\n\n"
        "Every diagram lives in a session bound to one engine (drawio or\n"
        "excalidraw). Tool calls without a session_id use the engine's\n"
        "default session.\n\n"
        "=== WORKFLOW ===\n"
        "- display_* shows a whole new diagram and discards the old one.\n"
        "- edit_* changes individual cells/elements by id; prefer it over\n"
        "  re-displaying for small changes.\n"
        "- If a result says truncated=true, call append_* with the rest of\n"
        "  the content, continuing from EXACTLY where it ended. Do not repeat\n"
        "  <mxfile>/<mxGraphModel>/<root> or cells id=\"0\"/\"1\".\n"
        "- convert_* turns PlantUML or Mermaid into a laid-out diagram.\n"
        "- Pass expected_version to guard against concurrent edits.\n\n"
        "=== RESULTS ===\n"
        "Mutating tools return JSON diagnostics: accepted, truncated,\n"
        "version, issues[{kind, detail}], affectedIds.\n"
    ),
)

# In-memory sessions: session id -> Session
_registry = create_default_registry()
_store = SessionStore(_registry)


# ===================================================================
# RESOURCES
# ===================================================================

@mcp.resource("canvas://engines")
def engine_catalog() -> str:
    """Return the registered engines and what each supports."""
    entries: list[dict[str, Any]] = []
    for d in _registry.descriptors():
        entries.append({
            "id": d.engine_id,
            "name": d.name,
            "format": d.format.value,
            "content_key": d.content_key,
            "capabilities": sorted(c.value for c in d.capabilities),
            "export_formats": list(d.export_formats),
            "grammars": list(d.grammars),
        })
    return json.dumps(entries, indent=2)


# ===================================================================
# TOOL 1: session — lifecycle
# ===================================================================

@mcp.tool()
def session(
    action: str,
    session_id: str = "",
    engine: str = "drawio",
    target_format: str = "",
) -> str:
    """Diagram session management.

    Actions:
      create — Create a new empty session. Params: engine, session_id (optional).
      close  — Discard a session. Params: session_id.
      list   — List all sessions. No params needed.
      state  — Current version, truncation status and content. Params: session_id.
      export — Export the diagram. Params: session_id, target_format
               (drawio: drawio | xml; excalidraw: excalidraw | json).

    Args:
        action: One of: create, close, list, state, export.
        session_id: Target session. Defaults to the engine's default session.
        engine: Engine for create — drawio or excalidraw.
        target_format: Export format for export.

    Returns:
        Result string or JSON depending on action.
    """
    try:
        action = validate_action(action, "session", _SESSION_ACTIONS)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "create":
        try:
            engine = validate_choice(engine, "engine", set(_registry.ids()))
        except ValidationError as exc:
            return f"Error: {exc.message}"
        try:
            created = _store.create(engine, session_id or None)
        except ValueError as exc:
            return f"Error: {exc}"
        return json.dumps(created.summary(), indent=2)

    elif action == "list":
        return json.dumps(_store.list(), indent=2)

    sid = session_id or engine
    try:
        target = _store.get(sid)
    except KeyError:
        return f"Error: session '{sid}' not found."

    if action == "close":
        _store.close(sid)
        return f"Session '{sid}' closed."

    elif action == "state":
        snapshot = target.current_state()
        result = target.summary()
        result["content"] = target.engine.serialize(snapshot.content)
        if snapshot.truncated:
            result["pending_tail"] = snapshot.pending[-500:]
        return json.dumps(result, indent=2)

    else:  # export
        fmt = target_format or target.engine.descriptor.export_formats[0]
        try:
            return target.export_as(fmt)
        except ValidationError as exc:
            return f"Error: {exc.message}"


# ===================================================================
# TOOL 2: tool_call — raw schema
# ===================================================================

@mcp.tool()
def tool_call(call: dict[str, Any], session_id: str = "") -> str:
    """Apply one raw tool call.

    Args:
        call: {"engineId": "drawio" | "excalidraw", "operation": one of
              display, replace, patch, delete, append, convert,
              "payload": {...}, "expectedVersion": optional int}.
              drawio payloads carry "xml"; excalidraw payloads carry
              "elements"; delete takes "ids"; convert takes "code",
              "grammar" and optional "auto_insert".
        session_id: Target session. Defaults to the engine's default session.

    Returns:
        JSON diagnostics.
    """
    try:
        raw = validate_dict(call, "call")
    except ValidationError as exc:
        return f"Error: {exc.message}"
    parsed = ToolCall.from_dict(raw)
    return _result(_dispatch(session_id, parsed))


# ===================================================================
# TOOLS 3-6: draw.io
# ===================================================================

@mcp.tool()
def display_drawio(xml: str, session_id: str = "", expected_version: int | None = None) -> str:
    """Display a new draw.io diagram, replacing whatever was shown.

    Args:
        xml: mxCell elements (siblings, no wrapper needed) or a full
             <mxfile>/<mxGraphModel>. Cells "0" and "1" are implicit.
        session_id: Target session. Defaults to the drawio session.
        expected_version: Reject the call unless the diagram is at this version.

    Returns:
        JSON diagnostics. If truncated is true, continue with append_drawio.
    """
    return _result(_dispatch(session_id, ToolCall(
        "drawio", "display", {"xml": xml}, expected_version,
    )))


@mcp.tool()
def edit_drawio(
    operations: list[dict[str, Any]],
    session_id: str = "",
    expected_version: int | None = None,
) -> str:
    """Edit cells of the current draw.io diagram by id.

    Each operation is one of:
      {"operation": "update", "cell_id": "3", "new_xml": "<mxCell id=\\"3\\" .../>"}
      {"operation": "add",    "cell_id": "9", "new_xml": "<mxCell id=\\"9\\" .../>"}
      {"operation": "delete", "cell_id": "5"}

    Updated cells keep their place and parent. Deleting a cell also
    deletes its children. An update must target an existing cell and an
    add a new one, and new_xml must define the cell named by cell_id.
    The operations apply all-or-nothing: if one fails, none are kept.

    Args:
        operations: Operations applied in order.
        session_id: Target session. Defaults to the drawio session.
        expected_version: Version precondition for the first operation.

    Returns:
        JSON with "applied", the version and the diagnostics of each batch.
    """
    try:
        validate_list(operations, "operations", min_length=1)
        for i, op in enumerate(operations):
            validate_drawio_edit(op, i)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    calls: list[ToolCall] = []
    for kind, ops in _runs(operations, _drawio_edit_kind):
        if kind == "delete":
            payload = {"ids": [op["cell_id"] for op in ops]}
        else:
            payload = {
                "xml": "\n".join(op["new_xml"] for op in ops),
                "edits": [
                    {"cell_id": op["cell_id"], "operation": op["operation"].strip().lower()}
                    for op in ops
                ],
            }
        calls.append(ToolCall("drawio", kind, payload))
    return _apply_batches(session_id, "drawio", calls, expected_version)


@mcp.tool()
def append_drawio(xml: str, session_id: str = "") -> str:
    """Continue draw.io XML that was cut off.

    Send only the missing remainder, starting exactly where the previous
    fragment ended. Do not restart with wrapper tags or root cells.

    Args:
        xml: The continuation fragment.
        session_id: Target session. Defaults to the drawio session.

    Returns:
        JSON diagnostics; truncated stays true until the XML is complete.
    """
    return _result(_dispatch(session_id, ToolCall("drawio", "append", {"xml": xml})))


@mcp.tool()
def convert_plantuml_to_drawio(code: str, session_id: str = "", auto_insert: bool = True) -> str:
    """Convert PlantUML into a laid-out draw.io diagram.

    Supports element declarations (actor, participant, component, class,
    usecase, database, ...), relations and messages with ": label",
    "left to right direction" and simple start/:action;/stop flows.

    Args:
        code: PlantUML source (@startuml ... @enduml).
        session_id: Target session. Defaults to the drawio session.
        auto_insert: Replace the current diagram with the result. When
                     false, the XML is returned in "result" only.

    Returns:
        JSON diagnostics.
    """
    return _result(_dispatch(session_id, ToolCall(
        "drawio", "convert",
        {"code": code, "grammar": "plantuml", "auto_insert": auto_insert},
    )))


# ===================================================================
# TOOLS 7-10: Excalidraw
# ===================================================================

@mcp.tool()
def display_excalidraw(
    elements: list[dict[str, Any]] | str,
    session_id: str = "",
    app_state: dict[str, Any] | None = None,
    files: dict[str, Any] | None = None,
    expected_version: int | None = None,
) -> str:
    """Display a new Excalidraw scene, replacing whatever was shown.

    Args:
        elements: Excalidraw elements as a list or JSON text. Each
                  element needs a unique string "id"; missing ids are
                  generated.
        session_id: Target session. Defaults to the excalidraw session.
        app_state: Optional Excalidraw appState (e.g. viewBackgroundColor).
        files: Optional Excalidraw files map for image elements.
        expected_version: Reject the call unless the scene is at this version.

    Returns:
        JSON diagnostics. If truncated is true, continue with append_excalidraw.
    """
    payload: dict[str, Any] = {"elements": elements}
    if app_state is not None:
        payload["app_state"] = app_state
    if files is not None:
        payload["files"] = files
    return _result(_dispatch(session_id, ToolCall(
        "excalidraw", "display", payload, expected_version,
    )))


@mcp.tool()
def edit_excalidraw(
    operations: list[dict[str, Any]],
    session_id: str = "",
    expected_version: int | None = None,
) -> str:
    """Edit elements of the current Excalidraw scene by id.

    Each operation is one of:
      {"operation": "replace_elements", "elements": [...]}  — upsert whole elements
      {"operation": "patch_elements",   "elements": [...]}  — merge the given fields
      {"operation": "delete_elements",  "ids": ["a", "b"]}

    Args:
        operations: Operations applied in order.
        session_id: Target session. Defaults to the excalidraw session.
        expected_version: Version precondition for the first operation.

    Returns:
        JSON with "applied", the version and the diagnostics of each batch.
    """
    try:
        validate_list(operations, "operations", min_length=1)
        for i, op in enumerate(operations):
            validate_excalidraw_edit(op, i)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    calls: list[ToolCall] = []
    for kind, ops in _runs(operations, _excalidraw_edit_kind):
        if kind == "delete_elements":
            calls.append(ToolCall(
                "excalidraw", "delete", {"ids": [i for op in ops for i in op["ids"]]},
            ))
        else:
            calls.append(ToolCall("excalidraw", "patch", {
                "elements": [el for op in ops for el in op["elements"]],
                "merge": kind == "patch_elements",
            }))
    return _apply_batches(session_id, "excalidraw", calls, expected_version)


@mcp.tool()
def append_excalidraw(elements: list[dict[str, Any]] | str, session_id: str = "") -> str:
    """Continue an Excalidraw scene.

    Pass JSON text to continue elements JSON that was cut off (send only
    the missing remainder), or a list of elements to add more elements.

    Args:
        elements: Continuation text or additional elements.
        session_id: Target session. Defaults to the excalidraw session.

    Returns:
        JSON diagnostics; truncated stays true until the JSON is complete.
    """
    return _result(_dispatch(session_id, ToolCall(
        "excalidraw", "append", {"elements": elements},
    )))


@mcp.tool()
def convert_mermaid_to_excalidraw(code: str, session_id: str = "", auto_insert: bool = True) -> str:
    """Convert a Mermaid flowchart into a laid-out Excalidraw scene.

    Supports graph/flowchart TB|TD|BT|LR|RL, node shapes [] () {} (())
    ([]) [[]] [()] {{}}, links -->, ---, -.->, ==> with |labels| or
    "-- label -->", chains, "&" groups and "style X fill:...,stroke:...".

    Args:
        code: Mermaid source.
        session_id: Target session. Defaults to the excalidraw session.
        auto_insert: Replace the current scene with the result. When
                     false, the elements JSON is returned in "result" only.

    Returns:
        JSON diagnostics.
    """
    return _result(_dispatch(session_id, ToolCall(
        "excalidraw", "convert",
        {"code": code, "grammar": "mermaid", "auto_insert": auto_insert},
    )))


# ===================================================================
# Helpers
# ===================================================================

def _session_for(session_id: str, engine_id: str) -> Session:
    """The named session, created on first use; defaults to one per engine."""
    if engine_id not in _registry.ids():
        engine_id = _registry.default_id or ""
    sid = session_id or engine_id
    try:
        return _store.get(sid)
    except KeyError:
        pass
    try:
        return _store.create(engine_id, sid)
    except ValueError:
        # created concurrently by another call
        return _store.get(sid)


def _dispatch(session_id: str, call: ToolCall) -> Diagnostics:
    return _session_for(session_id, call.engine_id).call(call)


def _result(diag: Diagnostics) -> str:
    return json.dumps(diag.to_dict(), indent=2)


def _runs(operations: list[dict[str, Any]], kind_of) -> list[tuple[str, list[dict[str, Any]]]]:
    """Group consecutive operations of the same kind, keeping order."""
    runs: list[tuple[str, list[dict[str, Any]]]] = []
    for op in operations:
        kind = kind_of(op)
        if runs and runs[-1][0] == kind:
            runs[-1][1].append(op)
        else:
            runs.append((kind, [op]))
    return runs


def _drawio_edit_kind(op: dict[str, Any]) -> str:
    return "delete" if op["operation"].strip().lower() == "delete" else "patch"


def _excalidraw_edit_kind(op: dict[str, Any]) -> str:
    return op["operation"].strip().lower()


def _apply_batches(
    session_id: str,
    engine_id: str,
    calls: list[ToolCall],
    expected_version: int | None,
) -> str:
    """Apply *calls* as one unit; a rejected batch rolls back the ones before it."""
    target = _session_for(session_id, engine_id)
    calls[0].expected_version = expected_version
    diags = target.call_batch(calls)
    results: list[dict[str, Any]] = [
        {"operation": call.operation, **diag.to_dict()} for call, diag in zip(calls, diags)
    ]
    applied = bool(diags) and diags[-1].accepted
    skipped = len(calls) - len(diags)
    if skipped:
        results.append({"skipped_batches": skipped})
    return json.dumps({
        "version": target.current_state().version,
        "applied": applied,
        "results": results,
    }, indent=2)


# ===================================================================
# Entry point
# ===================================================================

def main() -> None:
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
