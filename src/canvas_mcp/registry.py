"""
Engine registry: maps engine identifiers to engine instances.

Resolution never fails once an engine is registered: an unknown id
falls back to the default (first registered) engine and the fallback is
reported to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from canvas_mcp.engine import DiagramEngine
from canvas_mcp.state import DiagramFormat, EngineDescriptor

logger = logging.getLogger("canvas-mcp")


@dataclass
class Resolution:
    engine: DiagramEngine
    fallback: bool = False
    requested: str = ""


class EngineRegistry:
    """Registered engines in registration order."""

    def __init__(self) -> None:
        self._engines: dict[str, DiagramEngine] = {}
        self._default: Optional[str] = None

    def register(
        self,
        engine_id: str,
        descriptor: EngineDescriptor,
        engine: DiagramEngine,
    ) -> None:
        """Add *engine* under *engine_id*.

        Raises ``ValueError`` for a duplicate id, a descriptor that does
        not name a known format, or a descriptor whose id disagrees.
        """
        if not engine_id or not isinstance(engine_id, str):
            raise ValueError("Engine id must be a non-empty string.")
        if engine_id in self._engines:
            raise ValueError(f"Engine '{engine_id}' is already registered.")
        if not isinstance(descriptor.format, DiagramFormat):
            raise ValueError(
                f"Engine '{engine_id}' declares unknown format {descriptor.format!r}."
            )
        if descriptor.engine_id != engine_id:
            raise ValueError(
                f"Descriptor id '{descriptor.engine_id}' does not match '{engine_id}'."
            )
        engine.descriptor = descriptor
        self._engines[engine_id] = engine
        if self._default is None:
            self._default = engine_id
        logger.debug("Registered engine '%s' (%s)", engine_id, descriptor.format.value)

    def resolve(self, engine_id: Optional[str]) -> Resolution:
        """The engine for *engine_id*, or the default engine as a fallback."""
        if self._default is None:
            raise LookupError("No engines are registered.")
        if engine_id in self._engines:
            return Resolution(self._engines[engine_id], requested=engine_id)
        logger.warning(
            "Unknown engine '%s'; falling back to '%s'", engine_id, self._default,
        )
        return Resolution(self._engines[self._default], fallback=True, requested=engine_id or "")

    def get(self, engine_id: str) -> DiagramEngine:
        """Strict lookup; raises ``KeyError`` for an unknown id."""
        return self._engines[engine_id]

    @property
    def default_id(self) -> Optional[str]:
        return self._default

    def ids(self) -> list[str]:
        return list(self._engines)

    def descriptors(self) -> list[EngineDescriptor]:
        return [e.descriptor for e in self._engines.values()]


def create_default_registry() -> EngineRegistry:
    """Registry with draw.io as the primary engine, then Excalidraw."""
    from canvas_mcp.drawio_engine import DRAWIO_DESCRIPTOR, DrawioEngine
    from canvas_mcp.excalidraw_engine import EXCALIDRAW_DESCRIPTOR, ExcalidrawEngine

    registry = EngineRegistry()
    registry.register("drawio", DRAWIO_DESCRIPTOR, DrawioEngine())
    registry.register("excalidraw", EXCALIDRAW_DESCRIPTOR, ExcalidrawEngine())
    return registry
