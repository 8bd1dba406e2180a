import pytest

import beadsheet
from beadsheet import Bead


TEST_COLORS = {
    "A": "#000000",
    "B": "#FFFFFF",
    "R": "#FF0000",
    "G": "#808080",
    "H7": "#000000",
    "H1": "#FFFFFF",
}


@pytest.fixture
def palette():
    return beadsheet.build_palette(TEST_COLORS)


def grid_from_rows(rows, palette):
    """Build a grid from strings: '.' is empty, any other char is a code."""
    grid = []
    for y, line in enumerate(rows):
        row = []
        for x, ch in enumerate(line):
            row.append(None if ch == "." else Bead(x, y, ch, palette[ch].hex))
        grid.append(row)
    return grid


def codes(grid):
    return ["".join("." if b is None else b.code for b in row) for row in grid]


@pytest.fixture
def make_grid(palette):
    return lambda rows: grid_from_rows(rows, palette)
