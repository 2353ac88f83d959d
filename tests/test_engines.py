"""Tests for the draw.io and Excalidraw engines."""

import json
from dataclasses import replace

import pytest

from canvas_mcp.drawio_engine import DRAWIO_DESCRIPTOR, DrawioEngine
from canvas_mcp.excalidraw_engine import ExcalidrawEngine
from canvas_mcp.state import (
    Capability,
    DiagramFormat,
    DiagramState,
    IssueKind,
    OperationKind,
)
from canvas_mcp.validation import ValidationError

CELLS = (
    '<mxCell id="2" value="A" vertex="1" parent="1">'
    '<mxGeometry x="10" y="10" width="120" height="60" as="geometry"/></mxCell>'
    '<mxCell id="3" value="B" vertex="1" parent="1">'
    '<mxGeometry x="200" y="10" width="120" height="60" as="geometry"/></mxCell>'
    '<mxCell id="4" edge="1" source="2" target="3" parent="1">'
    '<mxGeometry relative="1" as="geometry"/></mxCell>'
)


def _apply(engine, state, operation: str, **payload):
    return engine.apply(state, OperationKind.parse(operation), payload)


def _ids(engine, state) -> list[str]:
    return engine.identifiers(state.content)


# ===================================================================
# draw.io
# ===================================================================

class TestDrawioDisplay:

    def test_display_complete(self) -> None:
        engine = DrawioEngine()
        state, diag = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        assert diag.accepted
        assert diag.version == state.version == 1
        assert diag.affected_ids == ["2", "3", "4"]
        assert diag.issues == []
        assert state.source == CELLS

    def test_display_discards_previous(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        state, _ = _apply(engine, state, "display", xml='<mxCell id="9" vertex="1"/>')
        assert _ids(engine, state) == ["9"]
        assert state.version == 2

    def test_unclosed_fragment_is_truncated(self) -> None:
        engine = DrawioEngine()
        state, diag = _apply(engine, engine.empty_state(), "display", xml='<root><node id="1">')
        assert diag.accepted
        assert state.truncated and diag.truncated
        assert not engine.is_complete(state.pending)
        assert diag.kinds() == [IssueKind.INCOMPLETE_CONTENT]
        assert "Still open: root, node" in diag.issues[0].detail

        state, diag = _apply(engine, state, "append", xml="</node></root>")
        assert diag.accepted
        assert state.truncated is False
        assert engine.is_complete(state.source)
        assert state.pending == ""

    def test_truncated_display_keeps_nothing_from_before(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        state, _ = _apply(engine, state, "display", xml='<mxCell id="7" vertex="1"')
        assert state.truncated
        assert state.content == []

    def test_malformed_display_rejected(self) -> None:
        engine = DrawioEngine()
        start = engine.empty_state()
        state, diag = _apply(engine, start, "display", xml='<root><mxCell id="2"></root>')
        assert not diag.accepted
        assert diag.kinds() == [IssueKind.MALFORMED_FRAGMENT]
        assert state is start

    def test_orphan_cell_dropped_on_display(self) -> None:
        engine = DrawioEngine()
        state, diag = _apply(
            engine, engine.empty_state(), "display",
            xml='<mxCell id="2" vertex="1"/><mxCell id="3" vertex="1" parent="99"/>',
        )
        assert _ids(engine, state) == ["2"]
        assert diag.kinds() == [IssueKind.DANGLING_REFERENCE]


class TestDrawioContinuation:

    def test_append_restart_rejected(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display",
                          xml='<mxGraphModel><root><mxCell id="0"/><mxCell id="2"')
        before = state
        state, diag = _apply(engine, state, "append", xml='<mxGraphModel><root>')
        assert not diag.accepted
        assert diag.kinds() == [IssueKind.MALFORMED_FRAGMENT]
        assert state is before
        assert state.truncated

    def test_append_still_open_stays_truncated(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml="<root><mxCell")
        state, diag = _apply(engine, state, "append", xml=' id="2" vertex="1">')
        assert diag.accepted and state.truncated
        assert state.version == 2
        state, diag = _apply(engine, state, "append", xml="</mxCell></root>")
        assert not state.truncated
        assert _ids(engine, state) == ["2"]

    def test_append_onto_complete_diagram_adds_cells(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        state, diag = _apply(engine, state, "append", xml='<mxCell id="9" vertex="1" parent="1"/>')
        assert diag.accepted
        assert _ids(engine, state) == ["2", "3", "4", "9"]

    def test_escaped_label_survives_reserialization(self) -> None:
        engine = DrawioEngine()
        xml = ('<mxCell id="2" value="x &amp;lt;y&amp;gt; z" vertex="1" parent="1"/>'
               '<mxCell id="3" vertex="1" parent="1"/>')
        state, _ = _apply(engine, engine.empty_state(), "display", xml=xml)
        state, _ = _apply(engine, state, "patch", xml='<mxCell id="3" value="B" vertex="1" parent="1"/>')
        state, diag = _apply(engine, state, "append", xml=" ")
        assert diag.accepted
        assert state.content[0].value == "x &lt;y&gt; z"

    def test_patch_rejected_while_truncated(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml="<root>")
        state2, diag = _apply(engine, state, "patch", xml='<mxCell id="2"/>')
        assert diag.kinds() == [IssueKind.INVALID_REQUEST]
        assert state2 is state

    def test_delete_rejected_while_truncated(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml="<root>")
        _, diag = _apply(engine, state, "delete", ids=["2"])
        assert diag.kinds() == [IssueKind.INVALID_REQUEST]


class TestDrawioEdits:

    def _base(self):
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        return engine, state

    def test_patch_in_place(self) -> None:
        engine, state = self._base()
        state, diag = _apply(engine, state, "patch",
                             xml='<mxCell id="2" value="Renamed" vertex="1" parent="1"/>')
        assert diag.affected_ids == ["2"]
        assert _ids(engine, state) == ["2", "3", "4"]
        assert state.content[0].value == "Renamed"

    def test_patch_without_cells_rejected(self) -> None:
        engine, state = self._base()
        _, diag = _apply(engine, state, "patch", xml="<note>hi</note>")
        assert not diag.accepted
        assert IssueKind.INVALID_REQUEST in diag.kinds()

    def test_incomplete_patch_rejected(self) -> None:
        engine, state = self._base()
        _, diag = _apply(engine, state, "patch", xml='<mxCell id="2">')
        assert diag.kinds() == [IssueKind.MALFORMED_FRAGMENT]

    def test_edits_matching_their_cells_apply(self) -> None:
        engine, state = self._base()
        state, diag = _apply(
            engine, state, "patch",
            xml='<mxCell id="2" value="A2" vertex="1" parent="1"/><mxCell id="9" vertex="1" parent="1"/>',
            edits=[{"cell_id": "2", "operation": "update"}, {"cell_id": "9", "operation": "add"}],
        )
        assert diag.accepted
        assert diag.affected_ids == ["2", "9"]

    @pytest.mark.parametrize("xml,edits,message", [
        ('<mxCell id="7" vertex="1" parent="1"/>',
         [{"cell_id": "2", "operation": "update"}], "no add or update operation names"),
        ('<mxCell id="9" vertex="1" parent="1"/>',
         [{"cell_id": "9", "operation": "update"}], "does not exist"),
        ('<mxCell id="2" vertex="1" parent="1"/>',
         [{"cell_id": "2", "operation": "add"}], "already exists"),
        ('<mxCell id="2" vertex="1" parent="1"/><mxCell id="9" vertex="1" parent="1"/>',
         [{"cell_id": "2", "operation": "update"}, {"cell_id": "9", "operation": "add"},
          {"cell_id": "8", "operation": "add"}], "has no mxCell with id '8'"),
    ])
    def test_edits_must_match_their_cells(self, xml, edits, message) -> None:
        engine, state = self._base()
        after, diag = _apply(engine, state, "patch", xml=xml, edits=edits)
        assert diag.kinds() == [IssueKind.INVALID_REQUEST]
        assert message in diag.issues[0].detail
        assert after is state

    def test_delete_vertex_flags_edge(self) -> None:
        engine, state = self._base()
        state, diag = _apply(engine, state, "delete", ids=["2"])
        assert diag.affected_ids == ["2"]
        assert _ids(engine, state) == ["3", "4"]
        assert diag.kinds() == [IssueKind.DANGLING_REFERENCE]

    def test_delete_cascades_to_children(self) -> None:
        engine = DrawioEngine()
        xml = (
            '<mxCell id="10" value="Group" vertex="1" parent="1"/>'
            '<mxCell id="11" vertex="1" parent="10"/>'
            '<mxCell id="12" vertex="1" parent="11"/>'
            '<mxCell id="13" vertex="1" parent="1"/>'
        )
        state, _ = _apply(engine, engine.empty_state(), "display", xml=xml)
        state, diag = _apply(engine, state, "delete", ids=["10"])
        assert _ids(engine, state) == ["13"]
        assert diag.affected_ids == ["10", "11", "12"]
        assert all(c.parent != "10" for c in state.content)

    def test_delete_unknown_is_noop_with_version_bump(self) -> None:
        engine, state = self._base()
        after, diag = _apply(engine, state, "delete", ids=["nope"])
        assert diag.accepted
        assert diag.issues == []
        assert after.version == state.version + 1
        assert _ids(engine, after) == _ids(engine, state)


class TestDrawioConvertExport:

    def test_convert_plantuml(self) -> None:
        engine = DrawioEngine()
        state, diag = _apply(engine, engine.empty_state(), "convert",
                             code="@startuml\nA -> B : go\n@enduml")
        assert diag.accepted
        assert diag.affected_ids == ["2", "3", "4"]
        edge = state.content[2]
        assert (edge.edge, edge.source, edge.target, edge.value) == (True, "2", "3", "go")
        assert state.content[0].geometry.y < state.content[1].geometry.y

    def test_convert_mermaid_on_drawio(self) -> None:
        engine = DrawioEngine()
        state, diag = _apply(engine, engine.empty_state(), "convert",
                             code="graph LR\nA{Q} --> B", grammar="mermaid")
        assert "rhombus" in state.content[0].style
        assert state.content[0].geometry.x < state.content[1].geometry.x

    def test_convert_class_members_in_label(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "convert",
                          code="class Box {\n+size: int\n}")
        assert state.content[0].value == "Box<hr>+size: int"

    def test_convert_failure_keeps_text(self) -> None:
        engine = DrawioEngine()
        code = "sequenceDiagram\nA->>B: hi"
        state, diag = _apply(engine, engine.empty_state(), "convert",
                             code=code, grammar="mermaid")
        assert diag.accepted
        assert diag.kinds() == [IssueKind.CONVERSION_FAILURE]
        assert len(state.content) == 1
        assert state.content[0].id == "2"
        assert state.content[0].value == code

    def test_convert_warnings_reported(self) -> None:
        engine = DrawioEngine()
        _, diag = _apply(engine, engine.empty_state(), "convert",
                         code="graph TD\nsubgraph s\nA-->B\nend", grammar="mermaid")
        assert diag.kinds() == [IssueKind.IGNORED_CONTENT] * 2

    def test_export_formats(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        assert engine.export_as(state, "xml") == engine.serialize(state.content)
        document = engine.export_as(state, "DRAWIO")
        assert "<mxfile" in document
        assert 'id="0"' in document
        with pytest.raises(ValidationError, match="target_format"):
            engine.export_as(state, "png")

    def test_export_is_a_function_of_state(self) -> None:
        engine = DrawioEngine()
        assert 'modified="1970-01-01T00:00:00.000Z"' in engine.export_as(engine.empty_state(), "drawio")
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        first = engine.export_as(state, "drawio")
        assert engine.export_as(state, "drawio") == first
        assert f'modified="{state.extras["modified"]}"' in first
        assert 'id="canvas-page-1"' in first

    def test_serialize_parse_round_trip(self) -> None:
        engine = DrawioEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", xml=CELLS)
        reparsed = engine.parse(engine.serialize(state.content), [])
        assert engine.serialize(reparsed) == engine.serialize(state.content)


class TestEngineGuards:

    def test_format_mismatch(self) -> None:
        engine = DrawioEngine()
        foreign = DiagramState.empty(DiagramFormat.ELEMENT_JSON)
        state, diag = _apply(engine, foreign, "display", xml=CELLS)
        assert state is foreign
        assert diag.kinds() == [IssueKind.FORMAT_MISMATCH]

    def test_missing_capability(self) -> None:
        engine = DrawioEngine()
        engine.descriptor = replace(DRAWIO_DESCRIPTOR, capabilities=frozenset({Capability.PATCH}))
        state = engine.empty_state()
        after, diag = _apply(engine, state, "append", xml="<root>")
        assert after is state
        assert diag.kinds() == [IssueKind.UNSUPPORTED_OPERATION]
        with pytest.raises(ValidationError, match="cannot export"):
            engine.export_as(state, "xml")


# ===================================================================
# Excalidraw
# ===================================================================

RECT = {"id": "a", "type": "rectangle", "x": 0, "y": 0, "width": 10, "height": 10}


class TestExcalidrawEngine:

    def test_display_list(self) -> None:
        engine = ExcalidrawEngine()
        state, diag = _apply(engine, engine.empty_state(), "display",
                             elements=[RECT, {"id": "b", "type": "text"}])
        assert diag.affected_ids == ["a", "b"]
        assert json.loads(state.source)[0] == RECT

    def test_display_generates_ids(self) -> None:
        engine = ExcalidrawEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", elements=[{"type": "text"}])
        assert state.content[0]["id"].startswith("el-")

    def test_scene_settings(self) -> None:
        engine = ExcalidrawEngine()
        state, _ = _apply(engine, engine.empty_state(), "display",
                          elements={"elements": [RECT], "appState": {"gridSize": 20}},
                          files={"f1": {"mimeType": "image/png"}})
        assert state.extras == {"appState": {"gridSize": 20}, "files": {"f1": {"mimeType": "image/png"}}}

        state, _ = _apply(engine, state, "replace", elements=[RECT],
                          app_state={"viewBackgroundColor": "#000"})
        assert state.extras["appState"] == {"viewBackgroundColor": "#000"}
        assert "files" in state.extras

        state, _ = _apply(engine, state, "display", elements=[RECT])
        assert state.extras == {}

    def test_bad_app_state_rejected(self) -> None:
        engine = ExcalidrawEngine()
        _, diag = _apply(engine, engine.empty_state(), "display", elements=[RECT], app_state=[1])
        assert diag.kinds() == [IssueKind.INVALID_REQUEST]

    def test_patch_overwrite_and_merge(self) -> None:
        engine = ExcalidrawEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", elements=[RECT])
        merged, _ = _apply(engine, state, "patch", elements=[{"id": "a", "x": 99}], merge=True)
        assert merged.content[0]["width"] == 10
        assert merged.content[0]["x"] == 99
        overwritten, _ = _apply(engine, state, "patch", elements=[{"id": "a", "x": 99}])
        assert overwritten.content == [{"id": "a", "x": 99}]

    def test_text_truncation_and_continuation(self) -> None:
        engine = ExcalidrawEngine()
        state, diag = _apply(engine, engine.empty_state(), "display",
                             elements='[{"id": "a", "type": "rect')
        assert state.truncated
        assert diag.kinds() == [IssueKind.INCOMPLETE_CONTENT]
        state, diag = _apply(engine, state, "append", elements='angle"}]')
        assert not state.truncated
        assert state.content == [{"id": "a", "type": "rectangle"}]

    def test_structured_append_while_truncated_rejected(self) -> None:
        engine = ExcalidrawEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", elements='[{"id": "a"')
        after, diag = _apply(engine, state, "append", elements=[{"id": "b"}])
        assert after is state
        assert diag.kinds() == [IssueKind.INVALID_REQUEST]

    def test_structured_append(self) -> None:
        engine = ExcalidrawEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", elements=[RECT])
        state, diag = _apply(engine, state, "append", elements=[{"id": "b"}])
        assert _ids(engine, state) == ["a", "b"]
        assert diag.affected_ids == ["b"]

    def test_malformed_json(self) -> None:
        engine = ExcalidrawEngine()
        _, diag = _apply(engine, engine.empty_state(), "display", elements='[{"id": "a"]')
        assert diag.kinds() == [IssueKind.MALFORMED_FRAGMENT]
        _, diag = _apply(engine, engine.empty_state(), "display", elements='[{"id": }]')
        assert diag.kinds() == [IssueKind.MALFORMED_FRAGMENT]

    def test_convert_mermaid(self) -> None:
        engine = ExcalidrawEngine()
        state, diag = _apply(engine, engine.empty_state(), "convert",
                             code="graph TD\nA[Start] -->|go| B[End]")
        assert diag.affected_ids == [
            "node-A", "node-A-label", "node-B", "node-B-label", "edge-1", "edge-1-label",
        ]
        by_id = {el["id"]: el for el in state.content}
        arrow = by_id["edge-1"]
        assert arrow["type"] == "arrow"
        assert arrow["startBinding"]["elementId"] == "node-A"
        assert arrow["endBinding"]["elementId"] == "node-B"
        assert arrow["points"][1][1] > 0
        assert {"type": "arrow", "id": "edge-1"} in by_id["node-A"]["boundElements"]
        assert by_id["node-A-label"]["containerId"] == "node-A"
        assert by_id["edge-1-label"]["text"] == "go"

    def test_convert_is_deterministic(self) -> None:
        engine = ExcalidrawEngine()
        code = "graph LR\nA --> B"
        first, _ = _apply(engine, engine.empty_state(), "convert", code=code)
        second, _ = _apply(engine, engine.empty_state(), "convert", code=code)
        assert [el["seed"] for el in first.content] == [el["seed"] for el in second.content]

    def test_convert_failure_fallback(self) -> None:
        engine = ExcalidrawEngine()
        state, diag = _apply(engine, engine.empty_state(), "convert", code="pie\n\"a\": 1")
        assert diag.kinds() == [IssueKind.CONVERSION_FAILURE]
        assert state.content[0]["id"] == "conversion-source"
        assert state.content[0]["text"] == 'pie\n"a": 1'

    def test_export(self) -> None:
        engine = ExcalidrawEngine()
        state, _ = _apply(engine, engine.empty_state(), "display", elements=[RECT])
        scene = json.loads(engine.export_as(state, "excalidraw"))
        assert scene["type"] == "excalidraw"
        assert scene["elements"] == [RECT]
        assert scene["appState"] == {"viewBackgroundColor": "#ffffff"}
        assert json.loads(engine.export_as(state, "json")) == [RECT]
