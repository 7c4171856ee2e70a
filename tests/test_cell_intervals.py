"""Tests for path to cell-interval decomposition."""

import pytest

from py_persons.core.cell_intervals import (
    END_OF_TIME_MS, CellInterval, cells_at, coalesce_intervals, decompose_into_cell_intervals
)
from py_persons.core.cells import CellId, Point
from py_persons.core.path_walker import Waypoint


def _assert_contiguous(intervals):
    for a, b in zip(intervals, intervals[1:]):
        assert a.end_ms == b.start_ms
        assert a.cell != b.cell
    assert intervals[-1].end_ms == END_OF_TIME_MS
    assert [i.sequence for i in intervals] == list(range(len(intervals)))


class TestDecompose:
    """Test interval decomposition."""

    def test_two_crossings(self):
        path = [Waypoint(0, Point(0, 0)), Waypoint(10000, Point(2500, 0))]
        intervals = decompose_into_cell_intervals("npc-1", path, 1000)

        assert [(i.cell, i.start_ms, i.end_ms) for i in intervals] == [
            ("cell:0,0", 0, 4000),
            ("cell:1,0", 4000, 8000),
            ("cell:2,0", 8000, END_OF_TIME_MS),
        ]
        assert all(i.npc_id == "npc-1" for i in intervals)
        _assert_contiguous(intervals)

    def test_single_cell_path(self):
        path = [Waypoint(1000, Point(10, 10)), Waypoint(5000, Point(900, 900))]
        intervals = decompose_into_cell_intervals("npc-1", path, 1000)

        assert len(intervals) == 1
        assert intervals[0].start_ms == 1000
        assert intervals[0].end_ms == END_OF_TIME_MS

    def test_leading_interval(self):
        path = [Waypoint(2000, Point(1500, 0)), Waypoint(6000, Point(500, 0))]
        intervals = decompose_into_cell_intervals("npc-1", path, 1000, now_ms=0)

        assert [(i.cell, i.start_ms, i.end_ms) for i in intervals] == [
            ("cell:1,0", 0, 4000),
            ("cell:0,0", 4000, END_OF_TIME_MS),
        ]

    def test_moving_toward_negative_cells(self):
        path = [Waypoint(0, Point(1500, 0)), Waypoint(2000, Point(-500, 0))]
        intervals = decompose_into_cell_intervals("npc-1", path, 1000)

        assert [(i.cell, i.start_ms, i.end_ms) for i in intervals] == [
            ("cell:1,0", 0, 500),
            ("cell:0,0", 500, 1500),
            ("cell:-1,0", 1500, END_OF_TIME_MS),
        ]

    def test_diagonal_through_corners(self):
        """Zero-length visits at exact corners are dropped."""
        path = [Waypoint(0, Point(0, 0)), Waypoint(2000, Point(2000, 2000))]
        intervals = decompose_into_cell_intervals("npc-1", path, 1000)

        assert [(i.cell, i.start_ms, i.end_ms) for i in intervals] == [
            ("cell:0,0", 0, 1000),
            ("cell:1,1", 1000, 2000),
            ("cell:2,2", 2000, END_OF_TIME_MS),
        ]
        _assert_contiguous(intervals)

    def test_multi_segment_path(self):
        path = [
            Waypoint(0, Point(500, 500)),
            Waypoint(4000, Point(500, 2500)),
            Waypoint(8000, Point(2500, 2500)),
        ]
        intervals = decompose_into_cell_intervals("npc-1", path, 1000)

        assert [i.cell for i in intervals] == [
            "cell:0,0", "cell:0,1", "cell:0,2", "cell:1,2", "cell:2,2"
        ]
        _assert_contiguous(intervals)

    def test_empty_path(self):
        intervals = decompose_into_cell_intervals("npc-1", [], 2000, now_ms=100,
                                                  origin=(2500, -10))
        assert len(intervals) == 1
        assert intervals[0].cell == "cell:1,-1"
        assert intervals[0].start_ms == 100
        assert intervals[0].end_ms == END_OF_TIME_MS

    def test_empty_path_needs_origin(self):
        with pytest.raises(ValueError):
            decompose_into_cell_intervals("npc-1", [], 2000, now_ms=100)


class TestCoalesce:
    """Test merging of raw pieces."""

    def test_merges_same_cell_and_drops_empty(self):
        pieces = [
            (CellId(0, 0), 0, 100),
            (CellId(0, 0), 100, 200),
            (CellId(1, 0), 200, 200),
            (CellId(0, 0), 200, 300),
            (CellId(1, 0), 300, 400),
        ]
        intervals = coalesce_intervals("npc-1", pieces)

        assert [(i.cell, i.start_ms, i.end_ms, i.sequence) for i in intervals] == [
            ("cell:0,0", 0, 300, 0),
            ("cell:1,0", 300, 400, 1),
        ]


class TestCellsAt:
    """Test interval lookup by time."""

    def test_half_open(self):
        intervals = [
            CellInterval("npc-1", "cell:0,0", 0, 4000),
            CellInterval("npc-1", "cell:1,0", 4000, 8000),
        ]
        assert cells_at(intervals, 0) == ["cell:0,0"]
        assert cells_at(intervals, 4000) == ["cell:1,0"]
        assert cells_at(intervals, 8000) == []
        assert intervals[1].duration_ms == 4000
