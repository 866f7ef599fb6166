"""
Tests for the correspondence point store: pairing, proximity pick and
selection by index.
"""

import pytest

from src.vision.points import PICK_RADIUS_PX, CorrespondencePointStore, Plane


def _store() -> CorrespondencePointStore:
    store = CorrespondencePointStore()
    store.add_pair((10, 10), (110, 10))
    store.add_pair((50, 50), (150, 50))
    store.add_pair((55, 50), (155, 50))
    return store


def test_add_pair_keeps_sequences_parallel() -> None:
    store = _store()
    assert store.count() == len(store) == 3
    assert len(store.points(Plane.SOURCE)) == len(store.points(Plane.DEST))
    pairs = store.pairs()
    assert pairs[1].source == (50.0, 50.0)
    assert pairs[1].dest == (150.0, 50.0)


def test_find_near_single_hit_and_miss() -> None:
    store = _store()
    assert store.find_near((12, 14), Plane.SOURCE) == 0
    assert store.find_near((112, 14), Plane.DEST) == 0
    assert store.find_near((300, 300), Plane.SOURCE) is None
    # points only match in their own plane
    assert store.find_near((112, 14), Plane.SOURCE) is None


def test_find_near_returns_first_in_insertion_order() -> None:
    store = _store()
    # (54, 50) is nearer to index 2 but index 1 is also inside the radius
    assert store.find_near((54, 50), Plane.SOURCE) == 1


def test_find_near_radius_is_exclusive() -> None:
    store = CorrespondencePointStore()
    store.add_pair((0, 0), (0, 0))
    assert store.find_near((PICK_RADIUS_PX, 0), Plane.SOURCE) is None
    assert store.find_near((PICK_RADIUS_PX - 0.01, 0), Plane.SOURCE) == 0
    assert store.find_near((3, 4), Plane.SOURCE, radius=5) is None
    assert store.find_near((3, 4), Plane.SOURCE, radius=5.001) == 0


def test_move_selected_updates_only_that_plane() -> None:
    store = _store()
    assert store.select_near((11, 11), Plane.SOURCE)
    assert store.selected.index == 0
    assert store.selected.plane is Plane.SOURCE
    store.move_selected((20, 30))
    assert store.points(Plane.SOURCE)[0] == (20.0, 30.0)
    assert store.points(Plane.DEST)[0] == (110.0, 10.0)


def test_move_without_selection_is_noop() -> None:
    store = _store()
    before = store.pairs()
    store.move_selected((1, 1))
    assert store.pairs() == before
    store.select(2, Plane.DEST)
    store.release()
    store.move_selected((1, 1))
    assert store.pairs() == before


def test_selection_survives_appends() -> None:
    store = _store()
    store.select(1, Plane.DEST)
    for i in range(100):
        store.add_pair((i, i), (i, i))
    store.move_selected((7, 8))
    assert store.points(Plane.DEST)[1] == (7.0, 8.0)


def test_select_out_of_range_raises() -> None:
    store = _store()
    with pytest.raises(IndexError):
        store.select(3, Plane.SOURCE)


def test_clear_drops_points_and_selection() -> None:
    store = _store()
    store.select(0, Plane.SOURCE)
    store.clear()
    assert store.count() == 0
    assert store.selected is None
    src, dst = store.as_arrays()
    assert src.shape == (0, 2) and dst.shape == (0, 2)


def test_revision_tracks_adds_moves_and_clear() -> None:
    store = _store()
    rev = store.revision
    store.move_selected((0, 0))           # no selection, no change
    assert store.revision == rev

    store.select(1, Plane.DEST)
    store.move_selected((150, 60))
    assert store.revision == rev + 1
    store.add_pair((1, 1), (2, 2))
    assert store.revision == rev + 2
    store.clear()
    assert store.revision == rev + 3
