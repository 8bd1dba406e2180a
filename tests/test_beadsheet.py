import numpy as np
import pytest
from PIL import Image

import beadsheet
from beadsheet import Bead, ColorCount, CropBox
from conftest import codes


# ---------------------------------------------------------------------------
# Color parsing & distance
# ---------------------------------------------------------------------------

def test_hex_to_rgb_accepts_optional_hash_and_any_case():
    assert beadsheet.hex_to_rgb("#FFaa00") == (255, 170, 0)
    assert beadsheet.hex_to_rgb("ffAA00") == (255, 170, 0)


@pytest.mark.parametrize("bad", ["", "#12345", "#GGGGGG", "red", "#1234567", None])
def test_hex_to_rgb_malformed_is_black(bad):
    assert beadsheet.hex_to_rgb(bad) == (0, 0, 0)


def test_color_distance():
    assert beadsheet.color_distance((10, 20, 30), (10, 20, 30)) == 0
    assert beadsheet.color_distance((0, 0, 0), (3, 4, 0)) == 5
    assert beadsheet.color_distance((0, 0, 0), (1, 0, 0)) > 0


def test_build_palette_canonical_hex(palette):
    assert palette["B"].hex == "#ffffff"
    assert palette["R"].rgb == (255, 0, 0)
    assert list(palette)[:3] == ["A", "B", "R"]


def test_load_bead_colors_default_file():
    brand, palette, presets = beadsheet.load_bead_colors()
    assert brand == "Mard"
    assert palette["H7"].hex == "#000000"
    assert "H1T" not in palette
    assert presets["all_colors"] is None
    assert all(code in palette for code in presets["grayscale"])


# ---------------------------------------------------------------------------
# Nearest color
# ---------------------------------------------------------------------------

def test_find_nearest_color_example():
    palette = beadsheet.build_palette({"A": "#000000", "B": "#FFFFFF"})
    assert beadsheet.find_nearest_color("#101010", palette).code == "A"


def test_find_nearest_color_ties_keep_first():
    palette = beadsheet.build_palette({"X": "#000000", "Y": "#000000"})
    assert beadsheet.find_nearest_color("#010101", palette).code == "X"
    assert beadsheet.find_nearest_color("#010101", palette, ["Y", "X"]).code == "Y"


def test_find_nearest_color_restricted_and_unknown_codes(palette):
    assert beadsheet.find_nearest_color("#F00000", palette).code == "R"
    assert beadsheet.find_nearest_color("#F00000", palette, ["nope", "A", "B"]).code == "A"


def test_find_nearest_color_falls_back_to_black(palette):
    color = beadsheet.find_nearest_color("#FFFFFF", palette, [])
    assert (color.code, color.hex) == ("H7", "#000000")
    color = beadsheet.find_nearest_color("#FFFFFF", palette, ["missing"])
    assert color.code == "H7"


def test_find_nearest_in_palette_never_returns_source(palette):
    assert beadsheet.find_nearest_in_palette("A", ["A", "B"], palette).code == "B"
    assert beadsheet.find_nearest_in_palette("A", ["B", "A", "G"], palette).code == "G"
    assert beadsheet.find_nearest_in_palette("A", ["A"], palette) is None
    assert beadsheet.find_nearest_in_palette("missing", ["A", "B"], palette) is None


# ---------------------------------------------------------------------------
# Quantization
# ---------------------------------------------------------------------------

def test_quantize_pixels_alpha_threshold(palette):
    rgba = np.array([
        [[16, 16, 16, 255], [250, 250, 250, 49]],
        [[250, 250, 250, 50], [0, 0, 0, 0]],
    ], dtype=np.uint8)
    grid = beadsheet.quantize_pixels(rgba, palette, ["A", "B"])
    assert grid[0][0] == Bead(0, 0, "A", "#000000")
    assert grid[0][1] is None
    assert grid[1][0] == Bead(0, 1, "B", "#ffffff")
    assert grid[1][1] is None


def test_quantize_pixels_respects_candidates(palette):
    rgba = np.array([[[255, 0, 0, 255]]], dtype=np.uint8)
    assert beadsheet.quantize_pixels(rgba, palette)[0][0].code == "R"
    assert beadsheet.quantize_pixels(rgba, palette, ["B", "A"])[0][0].code == "A"


def test_quantize_pixels_matches_scalar_lookup(palette):
    rng = np.random.default_rng(7)
    rgba = rng.integers(0, 256, size=(6, 5, 4), dtype=np.uint8)
    rgba[..., 3] = 255
    grid = beadsheet.quantize_pixels(rgba, palette)
    for y in range(6):
        for x in range(5):
            hexval = beadsheet.rgb_to_hex(rgba[y, x, :3])
            assert grid[y][x].code == beadsheet.find_nearest_color(hexval, palette).code


def test_quantize_pixels_rejects_wrong_shape(palette):
    with pytest.raises(ValueError):
        beadsheet.quantize_pixels(np.zeros((2, 2, 3), dtype=np.uint8), palette)


def test_default_crop_contains_whole_image():
    assert beadsheet.default_crop(4, 2) == CropBox(0, -1, 4, 4)
    assert beadsheet.default_crop(3, 5) == CropBox(-1, 0, 5, 5)


def test_image_to_grid_pads_with_transparency(palette):
    img = Image.new("RGBA", (4, 2), (255, 0, 0, 255))
    grid = beadsheet.image_to_grid(img, palette, 4)
    assert len(grid) == 4 and all(len(row) == 4 for row in grid)
    assert codes(grid) == ["....", "RRRR", "RRRR", "...."]


def test_image_to_grid_with_crop(palette):
    img = Image.new("RGBA", (4, 4), (255, 255, 255, 255))
    img.putpixel((2, 2), (0, 0, 0, 255))
    grid = beadsheet.image_to_grid(img, palette, 2, crop=CropBox(2, 2, 2, 2))
    assert codes(grid) == ["AB", "BB"]


def test_sample_image_rejects_bad_resolution():
    img = Image.new("RGBA", (2, 2))
    with pytest.raises(ValueError):
        beadsheet.sample_image(img, 0)


# ---------------------------------------------------------------------------
# Counting & reduction
# ---------------------------------------------------------------------------

def test_count_colors_sorted_by_count_then_scan_order(make_grid):
    grid = make_grid(["AB.", "RRB", "G.."])
    assert beadsheet.count_colors(grid) == [
        ColorCount("B", "#ffffff", 2),
        ColorCount("R", "#ff0000", 2),
        ColorCount("A", "#000000", 1),
        ColorCount("G", "#808080", 1),
    ]


def test_reduce_colors_noop_returns_input(make_grid):
    grid = make_grid(["AB", "RG"])
    assert beadsheet.reduce_colors(grid, 4) is grid
    assert beadsheet.reduce_colors(grid, 10) is grid
    single = make_grid(["AA", "A."])
    assert beadsheet.reduce_colors(single, 1) is single


def test_reduce_colors_hits_budget(make_grid):
    grid = make_grid(["ABRG", "ABRG", "A..."])
    for k in (1, 2, 3):
        assert len(beadsheet.count_colors(beadsheet.reduce_colors(grid, k))) == k


def test_reduce_colors_dominant_color_absorbs_everything():
    palette = beadsheet.build_palette({"X": "#102030", "Y": "#FFEE00", "Z": "#00FF40"})
    cells = ["X"] * 50 + ["Y"] * 3 + ["Z"] * 2
    grid = [[Bead(x, y, cells[y * 11 + x], palette[cells[y * 11 + x]].hex)
             for x in range(11)] for y in range(5)]
    result = beadsheet.reduce_colors(grid, 1)
    assert {b.code for row in result for b in row} == {"X"}
    assert all(b.hex == "#102030" for row in result for b in row)


def test_reduce_colors_smaller_count_is_absorbed(make_grid):
    grid = make_grid(["A", "G", "G"])
    assert codes(beadsheet.reduce_colors(grid, 1)) == ["G", "G", "G"]


def test_reduce_colors_equal_counts_keep_first_seen(make_grid):
    grid = make_grid(["GA"])
    assert codes(beadsheet.reduce_colors(grid, 1)) == ["GG"]


def test_reduce_colors_chained_merge_and_identity():
    palette = beadsheet.build_palette({
        "A": "#000000", "B": "#0A0A0A", "C": "#1E1E1E", "D": "#FFFFFF",
    })
    layout = "A" + "BB" + "C" * 10 + "D" * 20
    grid = [[Bead(x, 0, ch, palette[ch].hex) for x, ch in enumerate(layout)]]
    result = beadsheet.reduce_colors(grid, 2)
    assert "".join(b.code for b in result[0]) == "CCC" + "C" * 10 + "D" * 20
    # A merges into B, then B into C: both resolve to C
    assert result[0][0].hex == palette["C"].hex
    assert all(r is g for r, g in zip(result[0][3:], grid[0][3:]))


def test_reduce_colors_stops_without_pairs(make_grid):
    grid = make_grid(["AB"])
    assert len(beadsheet.count_colors(beadsheet.reduce_colors(grid, 0))) == 1


def test_resolve_merge_map_follows_chains():
    resolved = beadsheet.resolve_merge_map({"A": "B", "B": "C"}, ["A", "B", "C", "D"])
    assert resolved == {"A": "C", "B": "C", "C": "C", "D": "D"}


def test_resolve_merge_map_terminates_on_cycles():
    resolved = beadsheet.resolve_merge_map({"A": "B", "B": "A"}, ["A"])
    assert resolved["A"] in {"A", "B"}


def test_merge_color(make_grid, palette):
    grid = make_grid(["AB", "A."])
    merged = beadsheet.merge_color(grid, "A", "R", palette)
    assert codes(merged) == ["RB", "R."]
    assert merged[1][0].hex == "#ff0000"
    assert merged[0][1] is grid[0][1]
    assert beadsheet.merge_color(grid, "A", "missing", palette) is grid


def test_merge_into_nearest(make_grid, palette):
    grid = make_grid(["AGB"])
    assert codes(beadsheet.merge_into_nearest(grid, "A", palette)) == ["GGB"]
    lonely = make_grid(["AA"])
    assert beadsheet.merge_into_nearest(lonely, "A", palette) is lonely


def test_merge_small_counts(make_grid, palette):
    grid = make_grid(["BBBBBB", "BBBBBB", "GGGGGG", "GGGGGA", "AAR..."])
    merged = beadsheet.merge_small_counts(grid, palette, threshold=10)
    counts = {c.code: c.count for c in beadsheet.count_colors(merged)}
    # black goes to grey, red is closer to grey than to white
    assert counts == {"B": 12, "G": 15}


def test_merge_small_counts_promotes_most_used(make_grid, palette):
    grid = make_grid(["RRB"])
    assert codes(beadsheet.merge_small_counts(grid, palette, threshold=10)) == ["RRR"]
    single = make_grid(["R."])
    assert beadsheet.merge_small_counts(single, palette) is single
    big = make_grid(["RRB"])
    assert beadsheet.merge_small_counts(big, palette, threshold=1) is big


# ---------------------------------------------------------------------------
# Outline
# ---------------------------------------------------------------------------

def test_apply_outline_surrounds_single_bead(make_grid, palette):
    grid = make_grid(["...", ".R.", "..."])
    result = beadsheet.apply_outline(grid, 1, "H7", palette)
    assert result[1][1] is grid[1][1]
    ring = [result[y][x] for y in range(3) for x in range(3) if (x, y) != (1, 1)]
    assert all(b.code == "H7" and b.hex == "#000000" for b in ring)
    assert all(b.x == x and b.y == y for y, row in enumerate(result)
               for x, b in enumerate(row))
    assert grid[0][0] is None


def test_apply_outline_clamps_at_corner(make_grid, palette):
    grid = make_grid(["R....", ".....", ".....", ".....", "....."])
    result = beadsheet.apply_outline(grid, 1, "H7", palette)
    assert codes(result)[:3] == ["RH7...", "H7H7...", "....."]
    assert sum(b is not None for row in result for b in row) == 4


def test_apply_outline_zero_width_and_empty(make_grid, palette):
    grid = make_grid(["R.", ".."])
    assert beadsheet.apply_outline(grid, 0, "H7", palette) is grid
    assert beadsheet.apply_outline([], 3, "H7", palette) == []
    empty = make_grid(["..", ".."])
    assert codes(beadsheet.apply_outline(empty, 2, "H7", palette)) == ["..", ".."]


def test_apply_outline_grows_one_ring_per_pass(make_grid, palette):
    grid = make_grid(["." * 7] * 3 + ["...R..."] + ["." * 7] * 3)
    result = beadsheet.apply_outline(grid, 2, "H7", palette)
    filled = beadsheet.filled_mask(result)
    assert filled.sum() == 25
    assert filled[1:6, 1:6].all()


def test_apply_outline_widths_add_up(make_grid, palette):
    grid = make_grid(["........", "..RR....", "..R.....", "........",
                      "........", "......B.", "........", "........"])
    once = beadsheet.apply_outline(grid, 3, "H7", palette)
    stepwise = beadsheet.apply_outline(
        beadsheet.apply_outline(grid, 1, "H7", palette), 2, "H7", palette)
    assert codes(once) == codes(stepwise)
    assert beadsheet.apply_outline(once, 0, "H7", palette) is once


def test_apply_outline_unknown_code_is_white(make_grid, palette):
    grid = make_grid(["R."])
    result = beadsheet.apply_outline(grid, 1, "ZZ9", palette)
    assert result[0][1] == Bead(1, 0, "ZZ9", "#ffffff")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def test_build_pattern(palette):
    img = Image.new("RGBA", (8, 8), (0, 0, 0, 0))
    for x in range(2, 6):
        for y in range(2, 6):
            img.putpixel((x, y), (250, 10, 10, 255))
    raw, final = beadsheet.build_pattern(
        img, palette, resolution=4, partitions=2,
        outline_width=1, outline_code="B")
    assert len(raw) == 8 and len(final) == 8
    assert {c.code for c in beadsheet.count_colors(raw)} == {"R"}
    counts = {c.code: c.count for c in beadsheet.count_colors(final)}
    assert counts == {"R": 16, "B": 20}


def test_build_pattern_rejects_bad_partitions(palette):
    img = Image.new("RGBA", (4, 4))
    with pytest.raises(ValueError):
        beadsheet.build_pattern(img, palette, resolution=4, partitions=0)
