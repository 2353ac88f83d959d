"""Tests for the MCP server tools."""

import json

import pytest

from canvas_mcp.server import (
    _store,
    append_drawio,
    append_excalidraw,
    convert_mermaid_to_excalidraw,
    convert_plantuml_to_drawio,
    display_drawio,
    display_excalidraw,
    edit_drawio,
    edit_excalidraw,
    engine_catalog,
    session,
    tool_call,
)

CELLS = (
    '<mxCell id="2" value="A" vertex="1" parent="1">'
    '<mxGeometry x="10" y="10" width="120" height="60" as="geometry"/></mxCell>'
    '<mxCell id="3" value="B" vertex="1" parent="1">'
    '<mxGeometry x="200" y="10" width="120" height="60" as="geometry"/></mxCell>'
)


def setup_function() -> None:
    """Clear sessions between tests."""
    _store.clear()


def _kinds(result: dict) -> list[str]:
    return [i["kind"] for i in result["issues"]]


# ===================================================================
# session tool
# ===================================================================

def test_session_create_and_list() -> None:
    created = json.loads(session(action="create", session_id="board", engine="excalidraw"))
    assert created["session_id"] == "board"
    assert created["format"] == "element-json"
    assert created["version"] == 0

    generated = json.loads(session(action="create"))
    assert generated["engine"] == "drawio"

    listed = json.loads(session(action="list"))
    assert [s["session_id"] for s in listed] == ["board", generated["session_id"]]


def test_session_errors() -> None:
    assert session(action="explode").startswith("Error: Unknown session action")
    assert session(action="create", engine="visio").startswith("Error: 'engine' must be one of")
    session(action="create", session_id="dup")
    assert "already exists" in session(action="create", session_id="dup")
    assert session(action="state", session_id="nope") == "Error: session 'nope' not found."


def test_session_close() -> None:
    session(action="create", session_id="tmp")
    assert session(action="close", session_id="tmp") == "Session 'tmp' closed."
    assert session(action="close", session_id="tmp").startswith("Error")


def test_session_state_and_export() -> None:
    display_drawio(xml=CELLS)
    state = json.loads(session(action="state"))
    assert state["version"] == 1
    assert state["elements"] == 2
    assert 'value="A"' in state["content"]

    assert "<mxfile" in session(action="export")
    assert session(action="export", target_format="xml").startswith("<mxCell")
    assert session(action="export", target_format="svg").startswith("Error:")


def test_session_state_shows_pending_tail() -> None:
    display_drawio(xml="<root><mxCell id=\"2\"")
    state = json.loads(session(action="state"))
    assert state["truncated"] is True
    assert state["pending_tail"] == "<root><mxCell id=\"2\""


def test_engine_catalog() -> None:
    engines = json.loads(engine_catalog())
    assert [e["id"] for e in engines] == ["drawio", "excalidraw"]
    assert engines[0]["content_key"] == "xml"
    assert "append" in engines[1]["capabilities"]
    assert engines[1]["grammars"] == ["mermaid", "plantuml"]


# ===================================================================
# draw.io tools
# ===================================================================

def test_display_drawio() -> None:
    result = json.loads(display_drawio(xml=CELLS))
    assert result["accepted"] is True
    assert result["version"] == 1
    assert result["affectedIds"] == ["2", "3"]


def test_display_drawio_version_guard() -> None:
    display_drawio(xml=CELLS)
    result = json.loads(display_drawio(xml=CELLS, expected_version=0))
    assert result["accepted"] is False
    assert _kinds(result) == ["version_conflict"]


def test_truncated_drawio_then_append() -> None:
    first = json.loads(display_drawio(xml='<mxGraphModel><root><mxCell id="2" value="A" vertex'))
    assert first["truncated"] is True
    assert _kinds(first) == ["incomplete_content"]

    second = json.loads(append_drawio(xml='="1" parent="1"/></root></mxGraphModel>'))
    assert second["accepted"] is True
    assert second["truncated"] is False
    assert second["affectedIds"] == ["2"]


def test_append_drawio_restart_rejected() -> None:
    display_drawio(xml='<mxGraphModel><root><mxCell id="2"')
    result = json.loads(append_drawio(xml="<mxGraphModel><root>"))
    assert result["accepted"] is False
    assert _kinds(result) == ["malformed_fragment"]


def test_edit_drawio_batches() -> None:
    display_drawio(xml=CELLS)
    result = json.loads(edit_drawio(operations=[
        {"operation": "update", "cell_id": "2",
         "new_xml": '<mxCell id="2" value="Renamed" vertex="1" parent="1"/>'},
        {"operation": "add", "cell_id": "9",
         "new_xml": '<mxCell id="9" value="New" vertex="1" parent="1"/>'},
        {"operation": "delete", "cell_id": "3"},
    ]))
    assert result["version"] == 2
    assert result["applied"] is True
    assert [r["operation"] for r in result["results"]] == ["patch", "delete"]
    assert result["results"][0]["affectedIds"] == ["2", "9"]

    content = json.loads(session(action="state"))["content"]
    assert 'value="Renamed"' in content
    assert 'id="3"' not in content


def test_edit_drawio_stops_at_rejection() -> None:
    display_drawio(xml=CELLS)
    result = json.loads(edit_drawio(
        operations=[
            {"operation": "delete", "cell_id": "2"},
            {"operation": "add", "cell_id": "9", "new_xml": '<mxCell id="9" vertex="1"/>'},
        ],
        expected_version=7,
    ))
    assert result["version"] == 1
    assert _kinds(result["results"][0]) == ["version_conflict"]
    assert result["results"][1] == {"skipped_batches": 1}


def test_edit_drawio_is_all_or_nothing() -> None:
    display_drawio(xml=CELLS)
    result = json.loads(edit_drawio(operations=[
        {"operation": "update", "cell_id": "2",
         "new_xml": '<mxCell id="2" value="Changed" vertex="1" parent="1"/>'},
        {"operation": "delete", "cell_id": "2"},
        {"operation": "add", "cell_id": "9", "new_xml": '<mxCell id="9" vertex="1">'},
    ]))
    assert result["applied"] is False
    assert result["version"] == 1
    assert [r["accepted"] for r in result["results"]] == [False, False, False]
    content = json.loads(session(action="state"))["content"]
    assert 'value="A"' in content
    assert 'id="9"' not in content


@pytest.mark.parametrize("op,message", [
    ({"operation": "update", "cell_id": "2",
      "new_xml": '<mxCell id="7" vertex="1" parent="1"/>'}, "no add or update operation names"),
    ({"operation": "update", "cell_id": "8",
      "new_xml": '<mxCell id="8" vertex="1" parent="1"/>'}, "does not exist"),
    ({"operation": "add", "cell_id": "3",
      "new_xml": '<mxCell id="3" vertex="1" parent="1"/>'}, "already exists"),
])
def test_edit_drawio_checks_cell_ids(op, message) -> None:
    display_drawio(xml=CELLS)
    result = json.loads(edit_drawio(operations=[op]))
    assert result["applied"] is False
    assert _kinds(result["results"][0]) == ["invalid_request"]
    assert message in result["results"][0]["issues"][0]["detail"]
    assert json.loads(session(action="state"))["elements"] == 2


def test_edit_excalidraw_rolls_back_on_rejection() -> None:
    display_excalidraw(elements=[{"id": "a", "x": 1}])
    result = json.loads(edit_excalidraw(operations=[
        {"operation": "patch_elements", "elements": [{"id": "a", "x": 9}]},
        {"operation": "replace_elements", "elements": ["not an element"]},
    ]))
    assert result["applied"] is False
    elements = json.loads(session(action="export", session_id="excalidraw", target_format="json"))
    assert elements == [{"id": "a", "x": 1}]


def test_append_excalidraw_json_text_onto_complete_scene() -> None:
    display_excalidraw(elements=[{"id": "a"}])
    result = json.loads(append_excalidraw(elements='[{"id": "b"}]'))
    assert result["accepted"] is True
    assert result["affectedIds"] == ["b"]


def test_drawio_export_is_repeatable() -> None:
    display_drawio(xml=CELLS)
    assert session(action="export") == session(action="export")


def test_edit_drawio_validation() -> None:
    assert edit_drawio(operations=[]).startswith("Error:")
    assert "'new_xml' is required" in edit_drawio(operations=[{"operation": "add", "cell_id": "9"}])


def test_convert_plantuml_to_drawio() -> None:
    result = json.loads(convert_plantuml_to_drawio(
        code="@startuml\nactor User\nUser -> (Login)\n@enduml",
    ))
    assert result["accepted"] is True
    assert result["affectedIds"] == ["2", "3", "4"]
    assert "umlActor" in session(action="export", target_format="xml")


def test_convert_plantuml_preview() -> None:
    display_drawio(xml=CELLS)
    result = json.loads(convert_plantuml_to_drawio(code="A -> B", auto_insert=False))
    assert result["accepted"] is False
    assert result["version"] == 1
    assert "<mxCell" in result["result"]
    assert json.loads(session(action="state"))["elements"] == 2


# ===================================================================
# Excalidraw tools
# ===================================================================

def test_display_excalidraw_with_scene_settings() -> None:
    result = json.loads(display_excalidraw(
        elements=[{"id": "a", "type": "rectangle"}],
        app_state={"viewBackgroundColor": "#fafafa"},
    ))
    assert result["accepted"] is True
    scene = json.loads(session(action="export", session_id="excalidraw"))
    assert scene["appState"] == {"viewBackgroundColor": "#fafafa"}
    assert scene["elements"] == [{"id": "a", "type": "rectangle"}]


def test_excalidraw_text_continuation() -> None:
    first = json.loads(display_excalidraw(elements='[{"id": "a", "type": "ell'))
    assert first["truncated"] is True
    second = json.loads(append_excalidraw(elements='ipse"}, {"id": "b"}]'))
    assert second["truncated"] is False
    assert second["affectedIds"] == ["a", "b"]


def test_append_excalidraw_elements() -> None:
    display_excalidraw(elements=[{"id": "a"}])
    result = json.loads(append_excalidraw(elements=[{"id": "b"}]))
    assert result["version"] == 2
    assert result["affectedIds"] == ["b"]


def test_edit_excalidraw() -> None:
    display_excalidraw(elements=[{"id": "a", "x": 1, "y": 1}, {"id": "b"}, {"id": "c"}])
    result = json.loads(edit_excalidraw(operations=[
        {"operation": "patch_elements", "elements": [{"id": "a", "x": 5}]},
        {"operation": "replace_elements", "elements": [{"id": "b", "type": "text"}]},
        {"operation": "delete_elements", "ids": ["c"]},
        {"operation": "delete_elements", "ids": ["missing"]},
    ]))
    assert result["version"] == 2
    assert [r["operation"] for r in result["results"]] == ["patch", "patch", "delete"]

    elements = json.loads(session(action="export", session_id="excalidraw", target_format="json"))
    assert elements == [{"id": "a", "x": 5, "y": 1}, {"id": "b", "type": "text"}]


def test_convert_mermaid_to_excalidraw() -> None:
    result = json.loads(convert_mermaid_to_excalidraw(code="graph LR\nA[Client] --> B[(DB)]"))
    assert result["accepted"] is True
    assert "node-A" in result["affectedIds"]
    assert "edge-1" in result["affectedIds"]


def test_convert_mermaid_failure_keeps_source() -> None:
    result = json.loads(convert_mermaid_to_excalidraw(code="gantt\ntitle Plan"))
    assert result["accepted"] is True
    assert _kinds(result) == ["conversion_failure"]
    assert result["affectedIds"] == ["conversion-source"]


# ===================================================================
# Raw tool calls
# ===================================================================

def test_tool_call_camel_case() -> None:
    result = json.loads(tool_call(call={
        "engineId": "excalidraw",
        "operation": "patch",
        "payload": {"elements": [{"id": "a", "label": "X"}]},
    }))
    assert result["accepted"] is True
    assert result["version"] == 1


def test_tool_call_unknown_engine_uses_default() -> None:
    result = json.loads(tool_call(call={
        "engineId": "visio", "operation": "display", "payload": {"xml": CELLS},
    }))
    assert result["accepted"] is True
    assert _kinds(result) == ["unknown_engine"]
    assert json.loads(session(action="state"))["version"] == 1


def test_tool_call_format_mismatch_on_named_session() -> None:
    session(action="create", session_id="board", engine="excalidraw")
    result = json.loads(tool_call(
        call={"engineId": "drawio", "operation": "display", "payload": {"xml": CELLS}},
        session_id="board",
    ))
    assert result["accepted"] is False
    assert _kinds(result) == ["format_mismatch"]


def test_tool_call_invalid() -> None:
    assert tool_call(call="display").startswith("Error:")
    result = json.loads(tool_call(call={"engineId": "drawio", "operation": "patch"}))
    assert _kinds(result) == ["invalid_request"]
