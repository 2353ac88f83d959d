"""Tests for the layered layout used by diagram conversion."""

from canvas_mcp.layout import LayoutConfig, assign_layers, layered_positions


# ===================================================================
# Layer assignment
# ===================================================================

class TestAssignLayers:

    def test_chain(self) -> None:
        levels = assign_layers(["A", "B", "C"], [("A", "B"), ("B", "C")])
        assert levels == {"A": 0, "B": 1, "C": 2}

    def test_disconnected_nodes_start_at_zero(self) -> None:
        assert assign_layers(["A", "B"], []) == {"A": 0, "B": 0}

    def test_cycle_seeded_from_first_node(self) -> None:
        levels = assign_layers(["A", "B"], [("A", "B"), ("B", "A")])
        assert levels == {"A": 0, "B": 1}

    def test_cycle_below_a_source(self) -> None:
        levels = assign_layers(["S", "X", "Y"], [("S", "X"), ("X", "Y"), ("Y", "X")])
        assert levels == {"S": 0, "X": 1, "Y": 2}

    def test_self_loop_ignored(self) -> None:
        assert assign_layers(["A"], [("A", "A")]) == {"A": 0}

    def test_unknown_endpoints_ignored(self) -> None:
        assert assign_layers(["A"], [("A", "ghost")]) == {"A": 0}


# ===================================================================
# Positions
# ===================================================================

class TestLayeredPositions:

    def test_empty(self) -> None:
        assert layered_positions([], []) == {}

    def test_chain_top_to_bottom(self) -> None:
        pos = layered_positions(["A", "B", "C"], [("A", "B"), ("B", "C")])
        assert pos == {"A": (50, 50), "B": (50, 170), "C": (50, 290)}

    def test_chain_left_to_right(self) -> None:
        pos = layered_positions(["A", "B", "C"], [("A", "B"), ("B", "C")], "LR")
        assert pos == {"A": (50, 50), "B": (230, 50), "C": (410, 50)}

    def test_bottom_to_top_reverses_rank(self) -> None:
        pos = layered_positions(["A", "B", "C"], [("A", "B"), ("B", "C")], "BT")
        assert pos["A"][1] > pos["B"][1] > pos["C"][1]

    def test_right_to_left_reverses_rank(self) -> None:
        pos = layered_positions(["A", "B"], [("A", "B")], "RL")
        assert pos["A"][0] > pos["B"][0]

    def test_unknown_direction_falls_back(self) -> None:
        assert layered_positions(["A", "B"], [("A", "B")], "XY") == \
            layered_positions(["A", "B"], [("A", "B")], "TB")

    def test_fan_out_centres_parent(self) -> None:
        pos = layered_positions(["A", "B", "C"], [("A", "B"), ("A", "C")])
        assert pos["B"] == (50, 170)
        assert pos["C"] == (230, 170)
        assert pos["A"] == (140, 50)

    def test_barycenter_avoids_crossing(self) -> None:
        pos = layered_positions(["A", "B", "C", "D"], [("A", "D"), ("B", "C")])
        assert pos["A"][0] < pos["B"][0]
        assert pos["D"][0] < pos["C"][0]

    def test_no_two_nodes_share_a_slot(self) -> None:
        nodes = [f"n{i}" for i in range(8)]
        edges = [("n0", f"n{i}") for i in range(1, 8)]
        pos = layered_positions(nodes, edges)
        assert len(set(pos.values())) == len(nodes)

    def test_custom_config_snaps_to_grid(self) -> None:
        cfg = LayoutConfig(start_x=13, start_y=7, default_width=100, h_spacing=33, grid_size=20)
        pos = layered_positions(["A", "B"], [], "TB", cfg)
        for x, y in pos.values():
            assert x % 20 == 0
            assert y % 20 == 0
