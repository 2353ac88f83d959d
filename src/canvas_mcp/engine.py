"""
The diagram engine contract.

Every diagram format is served by one ``DiagramEngine`` subclass.  The
base class owns the operation semantics shared by all formats (fresh
display, whole replace, patch, delete, continuation, conversion,
version bumps and invariant checks); subclasses only supply the
format-specific pieces: parsing, serialization, completeness, the
element-set merge rules and reference checks.

``apply`` never raises for bad input.  It returns the (possibly
unchanged) state together with a ``Diagnostics`` record.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from canvas_mcp.state import (
    DiagramState,
    Diagnostics,
    EngineDescriptor,
    Issue,
    IssueKind,
    OperationKind,
    Capability,
    rejected,
    required_capability,
)
from canvas_mcp.validation import (
    FragmentError,
    InvariantViolation,
    ValidationError,
    validate_bool,
    validate_choice,
    validate_id_list,
    validate_non_empty_string,
)

logger = logging.getLogger("canvas-mcp")


@dataclass
class ConversionResult:
    """Native content produced from an interchange grammar."""
    content: list[Any]
    ok: bool = True
    issues: list[Issue] = field(default_factory=list)


@dataclass
class Outcome:
    """New state produced by an operation handler, before the version bump."""
    state: DiagramState
    affected_ids: list[str] = field(default_factory=list)


class DiagramEngine(ABC):
    """Polymorphic unit binding one format's converter, applier and resolver."""

    descriptor: EngineDescriptor

    # ----- format-specific hooks -----

    @abstractmethod
    def parse(self, raw: Any, issues: list[Issue]) -> list[Any]:
        """Parse complete content (text or already-structured) into native content."""

    @abstractmethod
    def serialize(self, content: list[Any]) -> str:
        """Text form of native content; ``parse`` of it yields the same content."""

    @abstractmethod
    def is_complete(self, content: Any) -> bool:
        """Structural completeness of raw text or native content."""

    @abstractmethod
    def identifiers(self, content: list[Any]) -> list[str]:
        """Identifiers in content order."""

    @abstractmethod
    def upsert(
        self, content: list[Any], incoming: list[Any], payload: dict[str, Any],
        issues: list[Issue],
    ) -> tuple[list[Any], list[str]]:
        """Merge *incoming* into *content* by identifier."""

    @abstractmethod
    def remove(
        self, content: list[Any], ids: list[str], issues: list[Issue],
    ) -> tuple[list[Any], list[str]]:
        """Remove *ids* from *content*; unknown ids are no-ops."""

    @abstractmethod
    def render_conversion(self, graph: Any) -> list[Any]:
        """Lay out a converted ``FlowGraph`` as native content."""

    @abstractmethod
    def fallback_content(self, text: str) -> list[Any]:
        """Content holding *text* verbatim, used when conversion fails."""

    @abstractmethod
    def _export(self, state: DiagramState, target: str) -> str:
        ...

    def check_references(self, content: list[Any], issues: list[Issue]) -> list[Any]:
        """Drop or flag unresolved references; no-op unless a format has them."""
        return content

    def is_restart(self, pending: str, fragment: str) -> bool:
        """Whether a continuation fragment started over instead of continuing."""
        return False

    def join_fragment(self, base: str, fragment: str) -> str:
        """*base* with the continuation *fragment* joined on."""
        return base + fragment

    def scene_extras(
        self, extras: dict[str, Any], raw: Any, payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Scene settings to keep alongside new content; unchanged by default."""
        return extras

    def describe_incomplete(self, text: str) -> str:
        return f"Content is incomplete. It ended with:\n{text[-500:]}"

    # ----- public contract -----

    def empty_state(self) -> DiagramState:
        return DiagramState.empty(self.descriptor.format)

    def convert_from(self, grammar: str, text: str) -> ConversionResult:
        """Convert interchange-grammar *text* into native content.

        A grammar failure never leaves the caller empty-handed: the text
        is preserved verbatim as fallback content and reported.
        """
        from canvas_mcp.converters import ConversionError, parse_grammar

        try:
            graph = parse_grammar(grammar, text)
        except ConversionError as exc:
            logger.warning("Conversion from %s failed: %s", grammar, exc.message)
            return ConversionResult(
                content=self.fallback_content(text),
                ok=False,
                issues=[Issue(IssueKind.CONVERSION_FAILURE, exc.message)],
            )
        issues = [Issue(IssueKind.IGNORED_CONTENT, w) for w in graph.warnings]
        return ConversionResult(content=self.render_conversion(graph), issues=issues)

    def export_as(self, state: DiagramState, target: str) -> str:
        """Text export of *state*; pure, never mutates."""
        if not self.descriptor.supports(Capability.EXPORT):
            raise ValidationError(f"Engine '{self.descriptor.engine_id}' cannot export.")
        target = validate_choice(target, "target_format", set(self.descriptor.export_formats))
        return self._export(state, target)

    def apply(
        self,
        state: DiagramState,
        kind: OperationKind,
        payload: dict[str, Any],
    ) -> tuple[DiagramState, Diagnostics]:
        """Apply one operation; returns the new state and its diagnostics.

        Rejected operations return *state* itself, unchanged.
        """
        if state.format != self.descriptor.format:
            return state, rejected(
                state, IssueKind.FORMAT_MISMATCH,
                f"Engine '{self.descriptor.engine_id}' handles {self.descriptor.format.value}, "
                f"but the diagram is {state.format.value}.",
            )
        cap = required_capability(kind)
        if cap is not None and not self.descriptor.supports(cap):
            return state, rejected(
                state, IssueKind.UNSUPPORTED_OPERATION,
                f"Engine '{self.descriptor.engine_id}' does not support '{kind.value}'.",
            )

        handlers: dict[OperationKind, Callable[..., Outcome]] = {
            OperationKind.DISPLAY: self._display,
            OperationKind.REPLACE: self._replace,
            OperationKind.PATCH: self._patch,
            OperationKind.DELETE: self._delete,
            OperationKind.APPEND: self._append,
            OperationKind.CONVERT: self._convert,
        }
        issues: list[Issue] = []
        try:
            outcome = handlers[kind](state, payload, issues)
        except ValidationError as exc:
            return state, rejected(state, IssueKind.INVALID_REQUEST, exc.message, issues)
        except FragmentError as exc:
            logger.warning("Rejected %s fragment: %s", kind.value, exc.message)
            return state, rejected(state, IssueKind.MALFORMED_FRAGMENT, exc.message, issues)

        new_state = outcome.state.evolve(version=state.version + 1)
        self.check_invariants(new_state)

        diag = Diagnostics(
            accepted=True,
            truncated=new_state.truncated,
            version=new_state.version,
            issues=issues,
            affected_ids=outcome.affected_ids,
        )
        if new_state.truncated:
            diag.add(IssueKind.INCOMPLETE_CONTENT, self.describe_incomplete(new_state.pending))
        logger.debug(
            "Applied %s on %s: version %d -> %d, truncated=%s",
            kind.value, self.descriptor.engine_id, state.version,
            new_state.version, new_state.truncated,
        )
        return new_state, diag

    def check_invariants(self, state: DiagramState) -> None:
        ids = self.identifiers(state.content)
        if len(ids) != len(set(ids)):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise InvariantViolation(f"Duplicate identifiers after merge: {dupes}")
        if not state.truncated and state.pending:
            raise InvariantViolation("Pending fragment left on a complete state.")

    # ----- operation handlers -----

    def _content_arg(self, payload: dict[str, Any]) -> Any:
        return payload.get(self.descriptor.content_key)

    def _settle(
        self, state: DiagramState, content: list[Any], issues: list[Issue], **changes: Any,
    ) -> DiagramState:
        """A complete state for *content* with references checked."""
        content = self.check_references(content, issues)
        return state.evolve(
            content=content,
            source=self.serialize(content),
            truncated=False,
            pending="",
            **changes,
        )

    def _take_text(
        self, state: DiagramState, text: str, issues: list[Issue], *, fresh: bool,
    ) -> Outcome:
        """Install *text* as the whole content, or park it when unfinished."""
        base = self.empty_state() if fresh else state
        if not self.is_complete(text):
            self._reject_malformed(text)
            return Outcome(base.evolve(
                version=state.version, truncated=True, pending=text,
            ))
        content = self.parse(text, issues)
        settled = self._settle(base, content, issues, version=state.version)
        # keep the text as received so a later append joins onto it exactly
        return Outcome(settled.evolve(source=text), self.identifiers(settled.content))

    def _reject_malformed(self, text: str) -> None:
        """Raise ``FragmentError`` if unfinished *text* is also malformed."""

    def _display(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        return self._install(state, payload, issues, fresh=True)

    def _replace(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        return self._install(state, payload, issues, fresh=False)

    def _install(
        self, state: DiagramState, payload: dict[str, Any], issues: list[Issue], *, fresh: bool,
    ) -> Outcome:
        raw = self._content_arg(payload)
        if isinstance(raw, str):
            outcome = self._take_text(state, raw, issues, fresh=fresh)
        else:
            base = self.empty_state() if fresh else state
            content = self.parse(raw, issues)
            settled = self._settle(base, content, issues, version=state.version)
            outcome = Outcome(settled, self.identifiers(settled.content))
        outcome.state = outcome.state.evolve(
            extras=self.scene_extras(outcome.state.extras, raw, payload),
        )
        return outcome

    def _require_settled(self, state: DiagramState, kind: OperationKind) -> None:
        if state.truncated:
            raise ValidationError(
                f"Cannot {kind.value} while the diagram is waiting for a continuation. "
                "Send the rest with append, or display a new diagram."
            )

    def _patch(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        self._require_settled(state, OperationKind.PATCH)
        raw = self._content_arg(payload)
        if isinstance(raw, str) and not self.is_complete(raw):
            self._reject_malformed(raw)
            raise FragmentError("Patch content is incomplete; send whole elements.")
        incoming = self.parse(raw, issues)
        if not incoming:
            raise ValidationError("Patch contains no elements with identifiers.")
        content, touched = self.upsert(state.content, incoming, payload, issues)
        return Outcome(self._settle(state, content, issues), touched)

    def _delete(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        self._require_settled(state, OperationKind.DELETE)
        ids = validate_id_list(payload.get("ids"), "ids")
        content, removed = self.remove(state.content, list(ids), issues)
        return Outcome(self._settle(state, content, issues), removed)

    def _append(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        raw = self._content_arg(payload)
        if not isinstance(raw, str):
            return self._append_structured(state, raw, issues)
        if state.truncated and self.is_restart(state.pending, raw):
            raise FragmentError(
                "Continuation started over instead of continuing. Continue from "
                f"exactly where the partial content ended:\n{state.pending[-500:]}"
            )
        base = state.pending if state.truncated else state.source
        joined = self.join_fragment(base, raw)
        if not self.is_complete(joined):
            self._reject_malformed(joined)
            return Outcome(state.evolve(truncated=True, pending=joined))
        content = self.parse(joined, issues)
        settled = self._settle(state, content, issues)
        return Outcome(settled.evolve(source=joined), self.identifiers(settled.content))

    def _append_structured(self, state: DiagramState, raw: Any, issues: list[Issue]) -> Outcome:
        raise ValidationError(
            f"Append for '{self.descriptor.engine_id}' needs a text fragment."
        )

    def _convert(self, state: DiagramState, payload: dict[str, Any], issues: list[Issue]) -> Outcome:
        grammar = validate_choice(
            payload.get("grammar") or self.descriptor.grammars[0], "grammar",
            set(self.descriptor.grammars),
        )
        code = validate_non_empty_string(payload.get("code"), "code")
        if "auto_insert" in payload:
            validate_bool(payload["auto_insert"], "auto_insert")
        result = self.convert_from(grammar, code)
        issues.extend(result.issues)
        settled = self._settle(state, result.content, issues)
        return Outcome(settled, self.identifiers(settled.content))
