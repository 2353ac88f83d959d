"""
Per-conversation diagram sessions.

A ``Session`` owns exactly one authoritative ``DiagramState`` and applies
tool calls to it one at a time.  ``SessionStore`` is the in-process
collection of sessions used by the MCP server.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Optional

from canvas_mcp.dispatcher import ToolDispatcher
from canvas_mcp.engine import DiagramEngine
from canvas_mcp.registry import EngineRegistry
from canvas_mcp.state import DiagramState, Diagnostics, ToolCall
from canvas_mcp.validation import InvariantViolation

logger = logging.getLogger("canvas-mcp")


class Session:
    """One diagram, bound to one engine for its whole life.

    The session's engine fixes the diagram format.  Calls are applied
    strictly in arrival order under ``lock``.
    """

    def __init__(
        self,
        session_id: str,
        engine_id: str,
        registry: EngineRegistry,
        dispatcher: Optional[ToolDispatcher] = None,
    ) -> None:
        resolution = registry.resolve(engine_id)
        self.session_id = session_id
        self.registry = registry
        self.engine: DiagramEngine = resolution.engine
        self.engine_id = resolution.engine.descriptor.engine_id
        self.dispatcher = dispatcher or ToolDispatcher(registry)
        self.lock = threading.RLock()
        self._state = self.engine.empty_state()

    @property
    def state(self) -> DiagramState:
        """The live state; callers must hold ``lock`` and must not mutate it."""
        return self._state

    def commit(self, new_state: DiagramState) -> None:
        """Install the state produced by an accepted operation."""
        with self.lock:
            if new_state.format != self._state.format:
                raise InvariantViolation(
                    f"Session '{self.session_id}' cannot change format "
                    f"from {self._state.format.value} to {new_state.format.value}."
                )
            if new_state.version <= self._state.version:
                raise InvariantViolation(
                    f"Version must increase: {self._state.version} -> {new_state.version}."
                )
            self._state = new_state

    def call(self, call: ToolCall) -> Diagnostics:
        """Apply one tool call and return its diagnostics."""
        return self.dispatcher.dispatch(self, call)

    def call_batch(self, calls: list[ToolCall]) -> list[Diagnostics]:
        """Apply *calls* all-or-nothing, as one version bump."""
        return self.dispatcher.dispatch_batch(self, calls)

    def current_state(self) -> DiagramState:
        """Deep-copied snapshot, safe to keep and inspect."""
        with self.lock:
            return self._state.snapshot()

    def export_as(self, target_format: str) -> str:
        with self.lock:
            state = self._state.snapshot()
        return self.engine.export_as(state, target_format)

    def summary(self) -> dict[str, Any]:
        with self.lock:
            state = self._state
            return {
                "session_id": self.session_id,
                "engine": self.engine_id,
                "format": state.format.value,
                "version": state.version,
                "truncated": state.truncated,
                "elements": len(state.content),
            }


class SessionStore:
    """Sessions by id, guarded by a lock."""

    def __init__(self, registry: EngineRegistry) -> None:
        self.registry = registry
        self.dispatcher = ToolDispatcher(registry)
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, engine_id: str, session_id: Optional[str] = None) -> Session:
        """Create a session; raises ``ValueError`` if *session_id* is taken."""
        sid = session_id or uuid.uuid4().hex[:12]
        with self._lock:
            if sid in self._sessions:
                raise ValueError(f"Session '{sid}' already exists.")
            session = Session(sid, engine_id, self.registry, self.dispatcher)
            self._sessions[sid] = session
        logger.info("Created session '%s' with engine '%s'", sid, session.engine_id)
        return session

    def get(self, session_id: str) -> Session:
        """Strict lookup; raises ``KeyError`` for an unknown id."""
        with self._lock:
            return self._sessions[session_id]

    def close(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.summary() for s in sessions]

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
