"""
Correspondence point storage.

Two parallel sequences of 2-D points, one per image plane.  Index ``i`` in
the source sequence always pairs with index ``i`` in the destination
sequence.  Pairs are appended whole and never removed individually; the
only way to shrink the store is ``clear()``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]

# Proximity pick radius in pixels.
PICK_RADIUS_PX = 20.0


class Plane(str, Enum):
    SOURCE = "source"
    DEST = "dest"


@dataclass(frozen=True)
class CorrespondencePoint:
    source: Point
    dest: Point


@dataclass(frozen=True)
class Selection:
    index: int
    plane: Plane


class CorrespondencePointStore:
    """In-memory store of point pairs with a single movable selection."""

    def __init__(self) -> None:
        self._source: List[Point] = []
        self._dest: List[Point] = []
        self._selected: Optional[Selection] = None
        self._revision = 0

    def __len__(self) -> int:
        return len(self._source)

    def count(self) -> int:
        return len(self._source)

    @property
    def revision(self) -> int:
        """Bumped by every add, move and clear."""
        return self._revision

    def add_pair(self, source_point: Point, dest_point: Point) -> int:
        """Append a pair and return its index."""
        self._source.append((float(source_point[0]), float(source_point[1])))
        self._dest.append((float(dest_point[0]), float(dest_point[1])))
        self._revision += 1
        return len(self._source) - 1

    def _seq(self, plane: Plane) -> List[Point]:
        return self._source if Plane(plane) is Plane.SOURCE else self._dest

    def find_near(self, point: Point, plane: Plane, radius: float = PICK_RADIUS_PX) -> Optional[int]:
        """
        Index of the first point in insertion order strictly closer than
        ``radius`` to ``point``, or None.  This is first-match, not nearest.
        """
        px, py = float(point[0]), float(point[1])
        for i, (x, y) in enumerate(self._seq(plane)):
            if math.hypot(x - px, y - py) < radius:
                return i
        return None

    @property
    def selected(self) -> Optional[Selection]:
        return self._selected

    def select(self, index: int, plane: Plane) -> None:
        if not 0 <= index < len(self._source):
            raise IndexError(f"No correspondence at index {index}")
        self._selected = Selection(index, Plane(plane))

    def select_near(self, point: Point, plane: Plane, radius: float = PICK_RADIUS_PX) -> bool:
        index = self.find_near(point, plane, radius)
        if index is None:
            return False
        self.select(index, plane)
        return True

    def release(self) -> None:
        self._selected = None

    def move_selected(self, new_position: Point) -> None:
        """Move the selected point in place; no-op without a selection."""
        sel = self._selected
        if sel is None:
            return
        self._seq(sel.plane)[sel.index] = (float(new_position[0]), float(new_position[1]))
        self._revision += 1

    def points(self, plane: Plane) -> List[Point]:
        return list(self._seq(plane))

    def pairs(self) -> List[CorrespondencePoint]:
        return [CorrespondencePoint(s, d) for s, d in zip(self._source, self._dest)]

    def as_arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        src = np.array(self._source, dtype=np.float64).reshape(-1, 2)
        dst = np.array(self._dest, dtype=np.float64).reshape(-1, 2)
        return src, dst

    def clear(self) -> None:
        self._source.clear()
        self._dest.clear()
        self._selected = None
        self._revision += 1
