"""
Session-level data model for the diagram mutation engine.

Holds the closed set of diagram formats, the ``DiagramState`` snapshot,
tool-call and diagnostics records, and the engine descriptor metadata.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DiagramFormat(Enum):
    """Native content representation of a diagram."""
    GRAPH_XML = "graph-xml"
    ELEMENT_JSON = "element-json"


class OperationKind(Enum):
    DISPLAY = "display"
    REPLACE = "replace"
    PATCH = "patch"
    DELETE = "delete"
    APPEND = "append"
    CONVERT = "convert"

    @classmethod
    def parse(cls, value: str) -> OperationKind:
        """Look up a kind by its wire name (case-insensitive)."""
        return cls(value.strip().lower())


class Capability(Enum):
    """Optional operations an engine may declare support for."""
    APPEND = "append"
    PATCH = "patch"
    DELETE = "delete"
    CONVERT = "convert"
    EXPORT = "export"


class IssueKind(Enum):
    MALFORMED_FRAGMENT = "malformed_fragment"
    DANGLING_REFERENCE = "dangling_reference"
    VERSION_CONFLICT = "version_conflict"
    CONVERSION_FAILURE = "conversion_failure"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN_ENGINE = "unknown_engine"
    FORMAT_MISMATCH = "format_mismatch"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    INCOMPLETE_CONTENT = "incomplete_content"
    IGNORED_CONTENT = "ignored_content"


# Operations that need the matching capability flag on the descriptor.
_REQUIRED_CAPABILITY: dict[OperationKind, Capability] = {
    OperationKind.APPEND: Capability.APPEND,
    OperationKind.PATCH: Capability.PATCH,
    OperationKind.DELETE: Capability.DELETE,
    OperationKind.CONVERT: Capability.CONVERT,
}


def required_capability(kind: OperationKind) -> Optional[Capability]:
    return _REQUIRED_CAPABILITY.get(kind)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass
class DiagramState:
    """The authoritative snapshot of one diagram.

    ``content`` is format specific: a list of ``MxCell`` for graph-xml,
    a list of element dicts for element-json.  ``pending`` carries the
    partial text of a truncated graph-xml fragment until a continuation
    completes it; ``content`` meanwhile stays at the last valid snapshot.
    """
    format: DiagramFormat
    version: int = 0
    content: list[Any] = field(default_factory=list)
    truncated: bool = False
    pending: str = ""
    source: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls, fmt: DiagramFormat) -> DiagramState:
        return cls(format=fmt)

    def evolve(self, **changes: Any) -> DiagramState:
        """Return a copy with *changes* applied; the receiver is untouched."""
        return replace(self, **changes)

    def snapshot(self) -> DiagramState:
        """Deep copy safe to hand out to readers."""
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Tool calls and diagnostics
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """One mutation request as delivered by the transport layer."""
    engine_id: str
    operation: str
    payload: dict[str, Any] = field(default_factory=dict)
    expected_version: Optional[int] = None
    call_id: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolCall:
        """Build a ToolCall from the wire schema.

        Accepts both camelCase (``engineId``, ``expectedVersion``) and
        snake_case keys.  Values are not validated here; the dispatcher
        does that so a bad call still yields diagnostics.
        """
        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if k in raw:
                    return raw[k]
            return default

        return cls(
            engine_id=pick("engineId", "engine_id", default=""),
            operation=pick("operation", default=""),
            payload=pick("payload", default={}),
            expected_version=pick("expectedVersion", "expected_version"),
            call_id=pick("id", "callId", "call_id", default=""),
        )


@dataclass
class Issue:
    kind: IssueKind
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "detail": self.detail}


@dataclass
class Diagnostics:
    """Outcome of one tool call, returned to the transport layer."""
    accepted: bool
    truncated: bool
    version: int
    issues: list[Issue] = field(default_factory=list)
    affected_ids: list[str] = field(default_factory=list)
    result: Any = None

    def add(self, kind: IssueKind, detail: str) -> None:
        self.issues.append(Issue(kind, detail))

    def kinds(self) -> list[IssueKind]:
        return [i.kind for i in self.issues]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "accepted": self.accepted,
            "truncated": self.truncated,
            "version": self.version,
            "issues": [i.to_dict() for i in self.issues],
            "affectedIds": list(self.affected_ids),
        }
        if self.result is not None:
            out["result"] = self.result
        return out


def rejected(state: DiagramState, kind: IssueKind, detail: str,
             issues: Optional[list[Issue]] = None) -> Diagnostics:
    """Diagnostics for an operation that left *state* untouched."""
    diag = Diagnostics(
        accepted=False,
        truncated=state.truncated,
        version=state.version,
        issues=list(issues or []),
    )
    diag.add(kind, detail)
    return diag


# ---------------------------------------------------------------------------
# Engine metadata
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineDescriptor:
    """Static metadata bound to one engine implementation."""
    engine_id: str
    name: str
    format: DiagramFormat
    content_key: str
    capabilities: frozenset[Capability] = frozenset()
    export_formats: tuple[str, ...] = ()
    grammars: tuple[str, ...] = ()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities
