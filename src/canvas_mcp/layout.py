"""
Automatic layout for converted diagrams.

Interchange grammars (Mermaid, PlantUML) describe nodes and edges but
no coordinates.  This module assigns positions using a layered
(Sugiyama-style) layout:
- Assigns nodes to layers via BFS from every source node
- Orders nodes within each layer by the barycenter of their neighbours
- Centers each layer for balanced appearance
- Snaps all coordinates to grid

The result is format neutral; each engine turns positions into its own
shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from canvas_mcp.models import snap_to_grid


@dataclass
class LayoutConfig:
    """Configuration for the layered layout."""
    start_x: float = 50
    start_y: float = 50
    h_spacing: float = 60
    v_spacing: float = 60
    default_width: float = 120
    default_height: float = 60
    grid_size: int = 10  # Snap to grid


DIRECTIONS = ("TB", "BT", "LR", "RL")


def assign_layers(nodes: list[str], edges: list[tuple[str, str]]) -> dict[str, int]:
    """BFS layer index for every node.

    Nodes without incoming edges start layer 0.  Nodes only reachable
    through a cycle are seeded in declaration order, so every node gets
    a layer.
    """
    adjacency: dict[str, list[str]] = {n: [] for n in nodes}
    indegree: dict[str, int] = {n: 0 for n in nodes}
    for src, dst in edges:
        if src in adjacency and dst in adjacency and src != dst:
            adjacency[src].append(dst)
            indegree[dst] += 1

    levels: dict[str, int] = {}
    seeds = [n for n in nodes if indegree[n] == 0] or nodes[:1]
    pending = list(nodes)
    while True:
        queue = [s for s in seeds if s not in levels]
        for s in queue:
            levels[s] = 0
        while queue:
            node = queue.pop(0)
            for child in adjacency[node]:
                if child not in levels:
                    levels[child] = levels[node] + 1
                    queue.append(child)
        pending = [n for n in pending if n not in levels]
        if not pending:
            return levels
        seeds = pending[:1]


def layered_positions(
    nodes: list[str],
    edges: list[tuple[str, str]],
    direction: str = "TB",
    config: Optional[LayoutConfig] = None,
) -> dict[str, tuple[float, float]]:
    """
    Compute top-left positions for *nodes* connected by *edges*.

    Uses the barycenter heuristic for crossing minimization: a forward
    sweep orders each layer by the mean position of its parents, then a
    backward sweep refines by the mean position of children.

    Returns a mapping of node → (x, y).
    """
    cfg = config or LayoutConfig()
    if not nodes:
        return {}
    if direction not in DIRECTIONS:
        direction = "TB"

    levels = assign_layers(nodes, edges)
    by_level: dict[int, list[str]] = {}
    for node in nodes:
        by_level.setdefault(levels[node], []).append(node)

    parents_of: dict[str, list[str]] = {}
    children_of: dict[str, list[str]] = {}
    for src, dst in edges:
        if src in levels and dst in levels:
            parents_of.setdefault(dst, []).append(src)
            children_of.setdefault(src, []).append(dst)

    max_lvl = max(by_level)
    pos_in_level: dict[str, float] = {}
    for i, node in enumerate(by_level[0]):
        pos_in_level[node] = float(i)

    # Forward sweep (top to bottom)
    for lvl in range(1, max_lvl + 1):
        layer = by_level.get(lvl, [])
        _sort_by_barycenter(layer, parents_of, pos_in_level)

    # Backward sweep (bottom to top) for refinement
    for lvl in range(max_lvl - 1, -1, -1):
        layer = by_level.get(lvl, [])
        _sort_by_barycenter(layer, children_of, pos_in_level)

    widest = max(len(v) for v in by_level.values())
    step_x = cfg.default_width + cfg.h_spacing
    step_y = cfg.default_height + cfg.v_spacing

    positions: dict[str, tuple[float, float]] = {}
    for lvl, layer in sorted(by_level.items()):
        rank = (max_lvl - lvl) if direction in ("BT", "RL") else lvl
        if direction in ("TB", "BT"):
            offset = (widest - len(layer)) * step_x / 2
            for i, node in enumerate(layer):
                x = cfg.start_x + offset + i * step_x
                y = cfg.start_y + rank * step_y
                positions[node] = (snap_to_grid(x, cfg.grid_size), snap_to_grid(y, cfg.grid_size))
        else:
            offset = (widest - len(layer)) * step_y / 2
            for i, node in enumerate(layer):
                x = cfg.start_x + rank * step_x
                y = cfg.start_y + offset + i * step_y
                positions[node] = (snap_to_grid(x, cfg.grid_size), snap_to_grid(y, cfg.grid_size))
    return positions


def _sort_by_barycenter(
    layer: list[str],
    neighbours: dict[str, list[str]],
    pos_in_level: dict[str, float],
) -> None:
    barycenters: dict[str, float] = {}
    for i, node in enumerate(layer):
        placed = [p for p in neighbours.get(node, []) if p in pos_in_level]
        if placed:
            barycenters[node] = sum(pos_in_level[p] for p in placed) / len(placed)
        else:
            barycenters[node] = pos_in_level.get(node, float(i))
    layer.sort(key=lambda n: barycenters[n])
    for i, node in enumerate(layer):
        pos_in_level[node] = float(i)
