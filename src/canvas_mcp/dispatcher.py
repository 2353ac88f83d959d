"""
Tool-call dispatch: validate, route to an engine, apply, commit.

The dispatcher is stateless.  Everything about one call (validation,
engine resolution, the format and version preconditions, the engine's
own diagnostics) ends up in the returned ``Diagnostics``; only an
accepted operation reaches the session's state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from canvas_mcp.engine import DiagramEngine
from canvas_mcp.registry import EngineRegistry
from canvas_mcp.state import (
    DiagramFormat,
    DiagramState,
    Diagnostics,
    Issue,
    IssueKind,
    OperationKind,
    ToolCall,
    rejected,
)
from canvas_mcp.validation import (
    ValidationError,
    validate_bool,
    validate_cell_edits,
    validate_choice,
    validate_dict,
    validate_elements_payload,
    validate_expected_version,
    validate_id_list,
    validate_non_empty_string,
    validate_string,
)

if TYPE_CHECKING:
    from canvas_mcp.session import Session

logger = logging.getLogger("canvas-mcp")


class ToolDispatcher:
    """Routes tool calls for any session through the engine registry."""

    def __init__(self, registry: EngineRegistry) -> None:
        self.registry = registry

    def dispatch(self, session: Session, call: ToolCall) -> Diagnostics:
        with session.lock:
            new_state, diag = self._evaluate(session, session.state, call)
            if new_state is not None:
                session.commit(new_state)
        self._log(session, call, diag)
        return diag

    def dispatch_batch(self, session: Session, calls: list[ToolCall]) -> list[Diagnostics]:
        """Apply *calls* as one unit.

        Each call runs against the state left by the one before it.  If
        all are accepted the final state commits with a single version
        bump; the first rejection rolls the whole batch back and stops.
        """
        results: list[Diagnostics] = []
        with session.lock:
            start = session.state
            state = start
            for call in calls:
                new_state, diag = self._evaluate(session, state, call)
                self._log(session, call, diag)
                results.append(diag)
                if new_state is None:
                    for earlier in results:
                        earlier.accepted = False
                        earlier.version = start.version
                        earlier.truncated = start.truncated
                    return results
                state = new_state
            if results:
                final = state.evolve(version=start.version + 1)
                session.commit(final)
                for diag in results:
                    diag.version = final.version
        return results

    def _log(self, session: Session, call: ToolCall, diag: Diagnostics) -> None:
        level = logging.DEBUG if diag.accepted else logging.WARNING
        logger.log(
            level,
            "%s %s on session '%s': accepted=%s version=%d issues=%s",
            call.engine_id or "?", call.operation, session.session_id,
            diag.accepted, diag.version, [i.kind.value for i in diag.issues],
        )

    def _evaluate(
        self, session: Session, state: DiagramState, call: ToolCall,
    ) -> tuple[DiagramState | None, Diagnostics]:
        """Run *call* against *state*; the new state is ``None`` unless accepted."""
        try:
            kind = OperationKind.parse(call.operation)
        except (ValueError, AttributeError):
            choices = ", ".join(k.value for k in OperationKind)
            return None, rejected(
                state, IssueKind.INVALID_REQUEST,
                f"Unknown operation {call.operation!r}. Valid operations: {choices}.",
            )

        resolution = self.registry.resolve(call.engine_id)
        engine = resolution.engine
        notes: list[Issue] = []
        if resolution.fallback:
            notes.append(Issue(
                IssueKind.UNKNOWN_ENGINE,
                f"Unknown engine {call.engine_id!r}; used "
                f"'{engine.descriptor.engine_id}' instead.",
            ))

        try:
            payload = validate_dict(call.payload, "payload")
            validate_payload(engine, kind, payload)
            expected = validate_expected_version(call.expected_version)
        except ValidationError as exc:
            return None, rejected(state, IssueKind.INVALID_REQUEST, exc.message, notes)

        if engine.descriptor.format != state.format:
            return None, rejected(
                state, IssueKind.FORMAT_MISMATCH,
                f"Engine '{engine.descriptor.engine_id}' produces "
                f"{engine.descriptor.format.value}, but session '{session.session_id}' "
                f"holds {state.format.value}.",
                notes,
            )
        if expected is not None and expected != state.version:
            return None, rejected(
                state, IssueKind.VERSION_CONFLICT,
                f"Expected version {expected}, but the diagram is at version {state.version}.",
                notes,
            )

        if kind is OperationKind.CONVERT and payload.get("auto_insert") is False:
            return None, self._preview_conversion(engine, state, payload, notes)

        new_state, diag = engine.apply(state, kind, payload)
        diag.issues[:0] = notes
        return (new_state if diag.accepted else None), diag

    def _preview_conversion(self, engine: DiagramEngine, state, payload, notes) -> Diagnostics:
        """Convert without inserting; the content travels in ``result``."""
        grammar = validate_choice(
            payload.get("grammar") or engine.descriptor.grammars[0], "grammar",
            set(engine.descriptor.grammars),
        )
        result = engine.convert_from(grammar, payload["code"].strip())
        return Diagnostics(
            accepted=False,
            truncated=state.truncated,
            version=state.version,
            issues=notes + result.issues,
            affected_ids=engine.identifiers(result.content),
            result=engine.serialize(result.content),
        )


def validate_payload(engine: DiagramEngine, kind: OperationKind, payload: dict[str, Any]) -> None:
    """Check the payload shape for *kind* against the engine's descriptor.

    Raises ``ValidationError`` with a caller-facing message.
    """
    descriptor = engine.descriptor
    key = descriptor.content_key
    text_only = descriptor.format is DiagramFormat.GRAPH_XML

    if kind in (OperationKind.DISPLAY, OperationKind.REPLACE):
        if key not in payload:
            raise ValidationError(f"'{kind.value}' requires '{key}'.")
        if text_only:
            _validate_text(payload[key], key)
        else:
            validate_elements_payload(payload[key], key)
    elif kind is OperationKind.PATCH:
        if text_only:
            _validate_text(payload.get(key), key)
        else:
            validate_elements_payload(payload.get(key), key, min_length=1)
        if "merge" in payload:
            validate_bool(payload["merge"], "merge")
        if text_only and payload.get("edits") is not None:
            validate_cell_edits(payload["edits"])
    elif kind is OperationKind.DELETE:
        validate_id_list(payload.get("ids"), "ids")
    elif kind is OperationKind.APPEND:
        fragment = payload.get(key)
        if text_only or isinstance(fragment, str):
            validate_string(fragment, key, allow_empty=False)
        else:
            validate_elements_payload(fragment, key, min_length=1)
    elif kind is OperationKind.CONVERT:
        validate_non_empty_string(payload.get("code"), "code")
        if payload.get("grammar") is not None:
            validate_choice(payload["grammar"], "grammar", set(descriptor.grammars))
        if "auto_insert" in payload:
            validate_bool(payload["auto_insert"], "auto_insert")


def _validate_text(value: Any, field_name: str) -> str:
    text = validate_string(value, field_name, allow_empty=False)
    if not text.strip():
        raise ValidationError(f"'{field_name}' must not be blank.")
    return text
